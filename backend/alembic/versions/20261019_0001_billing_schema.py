"""Create the trainer billing schema.

Revision ID: 20261019_0001_billing_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence

import sqlalchemy as sa
from alembic import op

from app.db_types import GUID

revision = "20261019_0001_billing_schema"
down_revision = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

OPEN_TOP_UP_CLAUSE = "is_prepaid_top_up IS true AND status IN ('DRAFT', 'SENT', 'OVERDUE')"


def _money(name: str, *, nullable: bool = False, default: str | None = None) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default=sa.text(default) if default is not None else None,
    )


def _timestamp(name: str, *, nullable: bool = False, server_now: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_now else None,
    )


def upgrade() -> None:
    op.create_table(
        "trainers",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("trainers_workspace_idx", "trainers", ["workspace_id"])

    op.create_table(
        "trainer_settings",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "trainer_id",
            GUID(),
            sa.ForeignKey("trainers.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        _money("default_group_session_rate", nullable=True),
        sa.Column("default_invoice_due_days", sa.Integer(), nullable=True),
        sa.Column(
            "group_session_matching",
            sa.String(20),
            nullable=False,
            server_default="EXACT_MATCH",
        ),
        sa.Column(
            "auto_invoicing_enabled", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("monthly_invoice_day", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint(
            "monthly_invoice_day BETWEEN 1 AND 28",
            name="ck_trainer_settings_monthly_invoice_day",
        ),
        sa.CheckConstraint(
            "default_invoice_due_days IS NULL OR default_invoice_due_days >= 0",
            name="ck_trainer_settings_due_days_non_negative",
        ),
    )

    op.create_table(
        "clients",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column(
            "trainer_id",
            GUID(),
            sa.ForeignKey("trainers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("clients_workspace_idx", "clients", ["workspace_id"])
    op.create_index("clients_trainer_idx", "clients", ["trainer_id"])

    op.create_table(
        "client_profiles",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "client_id",
            GUID(),
            sa.ForeignKey("clients.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column(
            "billing_frequency",
            sa.String(20),
            nullable=False,
            server_default="PER_SESSION",
        ),
        _money("prepaid_balance", nullable=True),
        _money("prepaid_target_balance", nullable=True),
        _money("session_rate", default="0"),
        _money("group_session_rate", nullable=True),
        sa.Column(
            "auto_invoice_enabled", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "prepaid_balance IS NULL OR prepaid_balance >= 0",
            name="ck_client_profiles_balance_non_negative",
        ),
        sa.CheckConstraint(
            "prepaid_target_balance IS NULL OR prepaid_target_balance >= 0",
            name="ck_client_profiles_target_non_negative",
        ),
        sa.CheckConstraint("session_rate >= 0", name="ck_client_profiles_rate_non_negative"),
    )
    op.create_index("client_profiles_workspace_idx", "client_profiles", ["workspace_id"])
    op.create_index(
        "client_profiles_frequency_idx",
        "client_profiles",
        ["workspace_id", "billing_frequency"],
    )

    op.create_table(
        "appointments",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column(
            "trainer_id",
            GUID(),
            sa.ForeignKey("trainers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "client_id",
            GUID(),
            sa.ForeignKey("clients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _timestamp("start_time", server_now=False),
        _timestamp("end_time", server_now=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="SCHEDULED"),
        sa.CheckConstraint("end_time > start_time", name="ck_appointments_valid_range"),
    )
    op.create_index(
        "appointments_trainer_window_idx",
        "appointments",
        ["workspace_id", "trainer_id", "start_time"],
    )
    op.create_index(
        "appointments_client_status_idx",
        "appointments",
        ["client_id", "status", "start_time"],
    )

    op.create_table(
        "prepaid_transactions",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column(
            "client_profile_id",
            GUID(),
            sa.ForeignKey("client_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        _money("amount"),
        _money("balance_after"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "appointment_id",
            GUID(),
            sa.ForeignKey("appointments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "client_profile_id",
            "sequence",
            name="prepaid_transactions_profile_sequence_key",
        ),
    )
    op.create_index(
        "prepaid_transactions_appointment_key",
        "prepaid_transactions",
        ["appointment_id"],
        unique=True,
    )
    op.create_index(
        "prepaid_transactions_profile_type_idx",
        "prepaid_transactions",
        ["client_profile_id", "transaction_type"],
    )

    op.create_table(
        "invoices",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column(
            "client_id",
            GUID(),
            sa.ForeignKey("clients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "trainer_id",
            GUID(),
            sa.ForeignKey("trainers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _money("subtotal", default="0"),
        _money("credit_applied", default="0"),
        _money("amount"),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        _timestamp("due_date", server_now=False),
        sa.Column(
            "is_prepaid_top_up", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("billing_period", sa.String(7), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("sent_at", nullable=True, server_now=False),
        _timestamp("paid_at", nullable=True, server_now=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("amount >= 0", name="ck_invoices_amount_non_negative"),
        sa.CheckConstraint("credit_applied >= 0", name="ck_invoices_credit_non_negative"),
        sa.CheckConstraint(
            "credit_applied <= subtotal", name="ck_invoices_credit_within_subtotal"
        ),
    )
    op.create_index(
        "invoices_open_top_up_key",
        "invoices",
        ["client_id"],
        unique=True,
        sqlite_where=sa.text(OPEN_TOP_UP_CLAUSE),
        postgresql_where=sa.text(OPEN_TOP_UP_CLAUSE),
    )
    op.create_index("invoices_client_trainer_idx", "invoices", ["client_id", "trainer_id"])
    op.create_index("invoices_workspace_status_idx", "invoices", ["workspace_id", "status"])

    op.create_table(
        "invoice_line_items",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "invoice_id",
            GUID(),
            sa.ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        _money("unit_price"),
        _money("total"),
        sa.Column(
            "appointment_id",
            GUID(),
            sa.ForeignKey("appointments.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index("invoice_line_items_invoice_idx", "invoice_line_items", ["invoice_id"])
    op.create_index(
        "invoice_line_items_appointment_idx", "invoice_line_items", ["appointment_id"]
    )

    op.create_table(
        "invoice_delivery_logs",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column(
            "invoice_id",
            GUID(),
            sa.ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("delivery_status", sa.String(20), nullable=False),
        sa.Column("destination", sa.String(255), nullable=True),
        sa.Column("channel", sa.String(50), nullable=False),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("subject", sa.String(255), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "invoice_delivery_logs_invoice_idx", "invoice_delivery_logs", ["invoice_id"]
    )
    op.create_index(
        "invoice_delivery_logs_created_at_idx", "invoice_delivery_logs", ["created_at"]
    )


def downgrade() -> None:
    op.drop_table("invoice_delivery_logs")
    op.drop_table("invoice_line_items")
    op.drop_index("invoices_open_top_up_key", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("prepaid_transactions")
    op.drop_table("appointments")
    op.drop_table("client_profiles")
    op.drop_table("clients")
    op.drop_table("trainer_settings")
    op.drop_table("trainers")
