"""Helpers for calendar-month billing periods."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone


class BillingPeriod:
    """Utility helpers to work with ``YYYY-MM`` billing period keys."""

    VALID_PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

    @staticmethod
    def key_for(day: date) -> str:
        return f"{day.year:04d}-{day.month:02d}"

    @staticmethod
    def previous_key(reference: date) -> str:
        """Return the key of the calendar month before ``reference``."""

        if reference.month == 1:
            return f"{reference.year - 1:04d}-12"
        return f"{reference.year:04d}-{reference.month - 1:02d}"

    @staticmethod
    def next_issue_date(today: date, invoice_day: int) -> date:
        """First date on or after ``today`` falling on ``invoice_day``."""

        if today.day <= invoice_day:
            return today.replace(day=invoice_day)
        if today.month == 12:
            return date(today.year + 1, 1, invoice_day)
        return date(today.year, today.month + 1, invoice_day)

    @classmethod
    def bounds(cls, period_key: str) -> tuple[datetime, datetime]:
        """Return the UTC ``[start, end)`` instants covering ``period_key``."""

        year, month = cls._parse(period_key)
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        if month == 12:
            end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
        else:
            end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
        return start, end

    @classmethod
    def label(cls, period_key: str) -> str:
        """Human label such as ``October 2026``."""

        year, month = cls._parse(period_key)
        return f"{date(year, month, 1):%B} {year}"

    @classmethod
    def _parse(cls, period_key: str) -> tuple[int, int]:
        if not period_key or not cls.VALID_PERIOD_PATTERN.match(period_key.strip()):
            raise ValueError("Invalid period key format, expected YYYY-MM")
        year_str, month_str = period_key.strip().split("-", maxsplit=1)
        return int(year_str), int(month_str)
