"""Email delivery of invoices and the transports behind it."""

from __future__ import annotations

import abc
import html
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from .. import models
from ..db_types import to_money

LOGGER = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when a notification client cannot be configured."""


class NotificationError(RuntimeError):
    """Raised when the external provider rejects a notification."""


@dataclass
class NotificationResult:
    """Outcome returned by a notification provider."""

    success: bool
    status_code: Optional[int] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationClient(abc.ABC):
    """Interface implemented by outbound email providers."""

    channel: str

    @abc.abstractmethod
    def send_message(
        self,
        *,
        destination: str,
        subject: str,
        plain_text: str,
        html_text: str | None = None,
        sender_name: str | None = None,
        reply_to: str | None = None,
    ) -> NotificationResult:
        """Send a message to the destination and return the delivery result."""


class ConsoleNotificationClient(NotificationClient):
    """Fallback client that keeps messages in memory and logs them."""

    channel = "console"

    def __init__(self) -> None:
        self.records: list[dict[str, str]] = []

    def send_message(
        self,
        *,
        destination: str,
        subject: str,
        plain_text: str,
        html_text: str | None = None,
        sender_name: str | None = None,
        reply_to: str | None = None,
    ) -> NotificationResult:
        self.records.append(
            {
                "destination": destination,
                "subject": subject,
                "plain_text": plain_text,
                "html_text": html_text or "",
                "sender_name": sender_name or "",
                "reply_to": reply_to or "",
            }
        )
        LOGGER.info("[console] Invoice email for %s: %s", destination, subject)
        return NotificationResult(success=True, status_code=200, provider_message_id="console")


class SendGridEmailClient(NotificationClient):
    """Send invoice emails through the SendGrid REST API."""

    channel = "email"
    endpoint = "https://api.sendgrid.com/v3/mail/send"

    def __init__(
        self,
        *,
        api_key: str | None,
        sender_email: str | None,
        sender_name: str | None = None,
        sandbox_mode: bool = False,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise ConfigurationError("SENDGRID_API_KEY is required to send invoice emails.")
        if not api_key.startswith("SG."):
            raise ConfigurationError('Invalid SendGrid API key; it must start with "SG.".')
        if not sender_email:
            raise ConfigurationError("SENDGRID_SENDER_EMAIL is required to send invoice emails.")
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name or "Trainer Billing"
        self.sandbox_mode = sandbox_mode
        self.timeout = timeout

    def send_message(
        self,
        *,
        destination: str,
        subject: str,
        plain_text: str,
        html_text: str | None = None,
        sender_name: str | None = None,
        reply_to: str | None = None,
    ) -> NotificationResult:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        content = [{"type": "text/plain", "value": plain_text}]
        if html_text:
            content.append({"type": "text/html", "value": html_text})

        payload: dict[str, object] = {
            "personalizations": [{"to": [{"email": destination}]}],
            "from": {"email": self.sender_email, "name": sender_name or self.sender_name},
            "subject": subject,
            "content": content,
            "tracking_settings": {
                "click_tracking": {"enable": False},
                "open_tracking": {"enable": False},
            },
        }
        if reply_to:
            payload["reply_to"] = {"email": reply_to}
        if self.sandbox_mode:
            payload["mail_settings"] = {"sandbox_mode": {"enable": True}}

        try:
            response = httpx.post(
                self.endpoint,
                headers=headers,
                json=payload,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise NotificationError(f"Network error contacting SendGrid: {exc}") from exc

        if response.status_code >= 400:
            return NotificationResult(
                success=False,
                status_code=response.status_code,
                error=response.text,
            )

        return NotificationResult(
            success=True,
            status_code=response.status_code,
            provider_message_id=response.headers.get("x-message-id"),
        )


def _read_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def build_notification_client_from_env(*, fallback_to_console: bool = True) -> NotificationClient:
    """Instantiate the invoice email transport from environment variables."""

    transport = os.getenv("INVOICE_EMAIL_TRANSPORT", "auto").strip().lower()
    if transport == "console":
        return ConsoleNotificationClient()

    try:
        return SendGridEmailClient(
            api_key=os.getenv("SENDGRID_API_KEY"),
            sender_email=os.getenv("SENDGRID_SENDER_EMAIL"),
            sender_name=os.getenv("SENDGRID_SENDER_NAME"),
            sandbox_mode=_read_bool("SENDGRID_SANDBOX_MODE"),
        )
    except ConfigurationError as exc:
        if transport == "sendgrid" and not fallback_to_console:
            raise
        LOGGER.warning("%s; invoice emails will be written to the console.", exc)
        return ConsoleNotificationClient()


@dataclass
class DeliveryOutcome:
    """Result of one attempt to email an invoice."""

    invoice_id: str
    delivered: bool
    status: models.InvoiceStatus
    error: Optional[str] = None


def invoice_reference(invoice: models.Invoice) -> str:
    return str(invoice.id)[:8]


def _format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return f"{value:%B} {value.day}, {value.year}"


def compose_invoice_email(invoice: models.Invoice) -> tuple[str, str, str]:
    """Return ``(subject, plain_text, html_text)`` for an invoice email."""

    trainer_name = invoice.trainer.full_name
    client_name = invoice.client.full_name
    subject = f"Invoice #{invoice_reference(invoice)} from {trainer_name}"
    credit = to_money(invoice.credit_applied)

    lines = [
        "INVOICE",
        f"From: {trainer_name}",
        f"Bill to: {client_name}",
        f"Invoice date: {_format_date(invoice.created_at)}",
        f"Due date: {_format_date(invoice.due_date)}",
        "",
    ]
    for item in invoice.line_items:
        lines.append(
            f"- {item.description} x{item.quantity} @ ${to_money(item.unit_price):.2f}"
            f" = ${to_money(item.total):.2f}"
        )
    lines.append("")
    if credit > 0:
        lines.append(f"Subtotal: ${to_money(invoice.subtotal):.2f}")
        lines.append(f"Prepaid credit applied: -${credit:.2f}")
    lines.append(f"Total due: ${to_money(invoice.amount):.2f}")
    if invoice.notes:
        lines.extend(["", f"Notes: {invoice.notes}"])
    lines.extend(["", f"Questions? Reply to this email to reach {trainer_name}."])
    plain_text = "\n".join(lines)

    rows = "".join(
        "<tr>"
        f"<td>{html.escape(item.description)}</td>"
        f"<td style=\"text-align:center\">{item.quantity}</td>"
        f"<td style=\"text-align:right\">${to_money(item.unit_price):.2f}</td>"
        f"<td style=\"text-align:right\">${to_money(item.total):.2f}</td>"
        "</tr>"
        for item in invoice.line_items
    )
    credit_row = (
        f"<p>Prepaid credit applied: -${credit:.2f}</p>" if credit > 0 else ""
    )
    notes_block = f"<p>{html.escape(invoice.notes)}</p>" if invoice.notes else ""
    html_text = (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif\">"
        f"<h1>Invoice</h1><p>From {html.escape(trainer_name)}</p>"
        f"<p>Bill to: {html.escape(client_name)}<br>"
        f"Due date: {_format_date(invoice.due_date)}</p>"
        "<table><thead><tr><th>Description</th><th>Qty</th><th>Rate</th><th>Amount</th>"
        f"</tr></thead><tbody>{rows}</tbody></table>"
        f"{credit_row}<p><strong>Total due: ${to_money(invoice.amount):.2f}</strong></p>"
        f"{notes_block}</body></html>"
    )
    return subject, plain_text, html_text


def compose_reminder_email(
    invoice: models.Invoice, reminder_type: models.ReminderType
) -> tuple[str, str]:
    """Return ``(subject, plain_text)`` for a payment reminder."""

    reference = invoice_reference(invoice)
    trainer_name = invoice.trainer.full_name
    due_label = _format_date(invoice.due_date)
    amount = f"${to_money(invoice.amount):.2f}"

    if reminder_type is models.ReminderType.OVERDUE:
        subject = f"Invoice #{reference} from {trainer_name} is past due"
        opening = f"Invoice #{reference} for {amount} was due on {due_label} and is still unpaid."
    elif reminder_type is models.ReminderType.DUE_TODAY:
        subject = f"Invoice #{reference} from {trainer_name} is due today"
        opening = f"Invoice #{reference} for {amount} is due today ({due_label})."
    else:
        subject = f"Reminder: invoice #{reference} from {trainer_name} is due soon"
        opening = f"Invoice #{reference} for {amount} is due on {due_label}."

    body = [
        f"Hi {invoice.client.full_name},",
        "",
        opening,
        "If you have already paid, please ignore this message.",
        "",
        f"Questions? Reply to this email to reach {trainer_name}.",
    ]
    return subject, "\n".join(body)


class InvoiceDeliveryService:
    """Emails invoices and records the outcome of each attempt.

    A failed send demotes a SENT invoice to DRAFT; a successful send promotes
    a DRAFT invoice to SENT. Ledger state is never touched here.
    """

    def __init__(self, db: Session, notification_client: NotificationClient) -> None:
        self.db = db
        self.notification_client = notification_client

    def deliver(self, invoice: models.Invoice) -> DeliveryOutcome:
        result = self._send(invoice)

        if result.success:
            if invoice.status is models.InvoiceStatus.DRAFT:
                invoice.status = models.InvoiceStatus.SENT
            invoice.sent_at = datetime.now(timezone.utc)
        elif invoice.status is models.InvoiceStatus.SENT:
            LOGGER.warning(
                "Invoice %s could not be delivered; reverting to draft: %s",
                invoice.id,
                result.error,
            )
            invoice.status = models.InvoiceStatus.DRAFT

        self.db.add(invoice)
        self.db.commit()
        return DeliveryOutcome(
            invoice_id=str(invoice.id),
            delivered=result.success,
            status=models.InvoiceStatus(invoice.status),
            error=result.error,
        )

    def send_reminder(
        self, invoice: models.Invoice, reminder_type: models.ReminderType
    ) -> NotificationResult:
        """Email a payment reminder and log the attempt; the caller commits."""

        destination = invoice.client.email if invoice.client is not None else None
        if not destination:
            result = NotificationResult(success=False, error="Client has no email address")
        else:
            subject, plain_text = compose_reminder_email(invoice, reminder_type)
            try:
                result = self.notification_client.send_message(
                    destination=destination,
                    subject=subject,
                    plain_text=plain_text,
                    sender_name=invoice.trainer.full_name,
                    reply_to=invoice.trainer.email,
                )
            except NotificationError as exc:
                LOGGER.warning("Reminder for invoice %s failed: %s", invoice.id, exc)
                result = NotificationResult(success=False, error=str(exc))

        self.db.add(
            models.InvoiceReminderLog(
                invoice_id=invoice.id,
                reminder_type=reminder_type,
                delivery_status=(
                    models.DeliveryStatus.SENT if result.success else models.DeliveryStatus.FAILED
                ),
                destination=destination,
                channel=self.notification_client.channel,
                due_date=invoice.due_date,
                provider_message_id=result.provider_message_id,
                response_code=result.status_code,
                error_message=result.error,
            )
        )
        self.db.flush()
        return result

    def _send(self, invoice: models.Invoice) -> NotificationResult:
        destination = invoice.client.email if invoice.client is not None else None
        subject = None
        if not destination:
            result = NotificationResult(success=False, error="Client has no email address")
        else:
            try:
                subject, plain_text, html_text = compose_invoice_email(invoice)
                result = self.notification_client.send_message(
                    destination=destination,
                    subject=subject,
                    plain_text=plain_text,
                    html_text=html_text,
                    sender_name=invoice.trainer.full_name,
                    reply_to=invoice.trainer.email,
                )
            except NotificationError as exc:
                LOGGER.warning("Invoice email to %s failed: %s", destination, exc)
                result = NotificationResult(success=False, error=str(exc))
            except Exception as exc:  # pragma: no cover
                LOGGER.exception("Unexpected error emailing invoice %s", invoice.id)
                result = NotificationResult(success=False, error=str(exc))

        self.db.add(
            models.InvoiceDeliveryLog(
                invoice_id=invoice.id,
                delivery_status=(
                    models.DeliveryStatus.SENT if result.success else models.DeliveryStatus.FAILED
                ),
                destination=destination,
                channel=self.notification_client.channel,
                provider_message_id=result.provider_message_id,
                response_code=result.status_code,
                error_message=result.error,
                subject=subject,
            )
        )
        return result
