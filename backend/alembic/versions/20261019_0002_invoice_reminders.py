"""Add invoice payment reminders and their delivery log.

Revision ID: 20261019_0002_invoice_reminders
Revises: 20261019_0001_billing_schema
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence

import sqlalchemy as sa
from alembic import op

from app.db_types import GUID

revision = "20261019_0002_invoice_reminders"
down_revision = "20261019_0001_billing_schema"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

REMINDER_SETTINGS = (
    ("invoice_reminder_before_due", sa.Boolean(), sa.true()),
    ("invoice_reminder_before_due_days", sa.Integer(), sa.text("3")),
    ("invoice_reminder_on_due", sa.Boolean(), sa.true()),
    ("invoice_reminder_overdue", sa.Boolean(), sa.true()),
)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    def column_exists(table: str, column: str) -> bool:
        return column in {col["name"] for col in inspector.get_columns(table)}

    for name, column_type, default in REMINDER_SETTINGS:
        if not column_exists("trainer_settings", name):
            op.add_column(
                "trainer_settings",
                sa.Column(name, column_type, nullable=False, server_default=default),
            )
    if not column_exists("trainer_settings", "invoice_reminder_overdue_days"):
        op.add_column(
            "trainer_settings",
            sa.Column("invoice_reminder_overdue_days", sa.JSON(), nullable=True),
        )
    if not column_exists("client_profiles", "invoice_alerts_enabled"):
        op.add_column(
            "client_profiles",
            sa.Column(
                "invoice_alerts_enabled", sa.Boolean(), nullable=False, server_default=sa.true()
            ),
        )

    if not inspector.has_table("invoice_reminder_logs"):
        op.create_table(
            "invoice_reminder_logs",
            sa.Column("id", GUID(), primary_key=True),
            sa.Column(
                "invoice_id",
                GUID(),
                sa.ForeignKey("invoices.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("reminder_type", sa.String(20), nullable=False),
            sa.Column("delivery_status", sa.String(20), nullable=False),
            sa.Column("destination", sa.String(255), nullable=True),
            sa.Column("channel", sa.String(50), nullable=False),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("provider_message_id", sa.String(255), nullable=True),
            sa.Column("response_code", sa.Integer(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
        )
        op.create_index(
            "invoice_reminder_logs_invoice_type_idx",
            "invoice_reminder_logs",
            ["invoice_id", "reminder_type"],
        )


def downgrade() -> None:
    op.drop_index("invoice_reminder_logs_invoice_type_idx", table_name="invoice_reminder_logs")
    op.drop_table("invoice_reminder_logs")
    with op.batch_alter_table("client_profiles") as batch:
        batch.drop_column("invoice_alerts_enabled")
    with op.batch_alter_table("trainer_settings") as batch:
        batch.drop_column("invoice_reminder_overdue_days")
        for name, _, _ in reversed(REMINDER_SETTINGS):
            batch.drop_column(name)
