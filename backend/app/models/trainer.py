"""SQLAlchemy models for trainers and their billing defaults."""

from __future__ import annotations

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_id


class GroupSessionMatching(str, enum.Enum):
    """Policy used to decide whether two bookings share a session window."""

    EXACT_MATCH = "EXACT_MATCH"
    START_MATCH = "START_MATCH"
    END_MATCH = "END_MATCH"
    ANY_OVERLAP = "ANY_OVERLAP"


GROUP_SESSION_MATCHING_ENUM = SAEnum(
    GroupSessionMatching,
    name="group_session_matching_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class Trainer(Base):
    """A trainer issuing invoices inside a workspace."""

    __tablename__ = "trainers"

    id = Column(GUID(), primary_key=True, default=new_id)
    workspace_id = Column(String(64), nullable=False)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    settings = relationship(
        "TrainerSettings",
        back_populates="trainer",
        uselist=False,
        cascade="all, delete-orphan",
    )
    clients = relationship("Client", back_populates="trainer")


class TrainerSettings(Base):
    """Per-trainer defaults consulted by rate resolution and invoicing."""

    __tablename__ = "trainer_settings"
    __table_args__ = (
        CheckConstraint(
            "monthly_invoice_day BETWEEN 1 AND 28",
            name="ck_trainer_settings_monthly_invoice_day",
        ),
        CheckConstraint(
            "default_invoice_due_days IS NULL OR default_invoice_due_days >= 0",
            name="ck_trainer_settings_due_days_non_negative",
        ),
    )

    id = Column(GUID(), primary_key=True, default=new_id)
    trainer_id = Column(
        GUID(),
        ForeignKey("trainers.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    default_group_session_rate = Column(Numeric(12, 2), nullable=True)
    default_invoice_due_days = Column(Integer, nullable=True)
    group_session_matching = Column(
        GROUP_SESSION_MATCHING_ENUM,
        nullable=False,
        default=GroupSessionMatching.EXACT_MATCH,
    )
    auto_invoicing_enabled = Column(Boolean, nullable=False, default=True)
    monthly_invoice_day = Column(Integer, nullable=False, default=1)
    invoice_reminder_before_due = Column(Boolean, nullable=False, default=True)
    invoice_reminder_before_due_days = Column(Integer, nullable=False, default=3)
    invoice_reminder_on_due = Column(Boolean, nullable=False, default=True)
    invoice_reminder_overdue = Column(Boolean, nullable=False, default=True)
    # Days past the due date on which overdue reminders go out; NULL means 3 and 7.
    invoice_reminder_overdue_days = Column(JSON, nullable=True)

    trainer = relationship("Trainer", back_populates="settings")


Index("trainers_workspace_idx", Trainer.workspace_id)
