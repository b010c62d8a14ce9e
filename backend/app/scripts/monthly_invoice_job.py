"""Command line entry-point to run monthly invoicing on demand."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date
from typing import Optional

from ..database import session_scope
from ..services.invoice_delivery import (
    ConfigurationError,
    ConsoleNotificationClient,
    InvoiceDeliveryService,
    NotificationClient,
    SendGridEmailClient,
    build_notification_client_from_env,
)
from ..services.invoices import process_monthly_invoices

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Issue monthly invoices for trainers whose invoicing day matches the date."
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Run as if today were this ISO date (default: today).",
    )
    parser.add_argument(
        "--workspace",
        default=None,
        help="Only process trainers of this workspace.",
    )
    parser.add_argument(
        "--transport",
        choices=["auto", "console", "sendgrid"],
        default=os.getenv("INVOICE_EMAIL_TRANSPORT", "auto"),
        help="Provider used to email invoices (auto=from environment variables).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Write invoice emails to the console instead of sending them.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print additional debugging output.",
    )
    return parser.parse_args(argv)


def _build_client(args: argparse.Namespace) -> NotificationClient:
    if args.dry_run:
        LOGGER.info("Running with --dry-run: invoice emails go to the console.")
        return ConsoleNotificationClient()

    transport = (args.transport or "auto").strip().lower()
    if transport == "console":
        return ConsoleNotificationClient()

    if transport == "sendgrid":
        try:
            return SendGridEmailClient(
                api_key=os.getenv("SENDGRID_API_KEY"),
                sender_email=os.getenv("SENDGRID_SENDER_EMAIL"),
                sender_name=os.getenv("SENDGRID_SENDER_NAME"),
                sandbox_mode=os.getenv("SENDGRID_SANDBOX_MODE", "false").strip().lower()
                in {"1", "true", "yes", "on"},
            )
        except ConfigurationError as exc:
            LOGGER.error("Invalid SendGrid configuration: %s", exc)
            sys.exit(2)

    return build_notification_client_from_env()


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    client = _build_client(args)

    with session_scope() as session:
        summary = process_monthly_invoices(
            session,
            InvoiceDeliveryService(session, client),
            args.date,
            workspace_id=args.workspace,
        )
        LOGGER.info("Monthly invoicing summary: %s", summary.to_dict())

    return 1 if summary.failed else 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
