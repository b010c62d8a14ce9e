"""Appointments as seen by the billing engine (read-only here)."""

from __future__ import annotations

import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    String,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_id


class AppointmentStatus(str, enum.Enum):
    """Lifecycle states of a booked session."""

    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


APPOINTMENT_STATUS_ENUM = SAEnum(
    AppointmentStatus,
    name="appointment_status_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class Appointment(Base):
    """A booked training session between a trainer and a client."""

    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_appointments_valid_range"),
    )

    id = Column(GUID(), primary_key=True, default=new_id)
    workspace_id = Column(String(64), nullable=False)
    trainer_id = Column(GUID(), ForeignKey("trainers.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(GUID(), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        APPOINTMENT_STATUS_ENUM,
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )

    client = relationship("Client", back_populates="appointments")
    trainer = relationship("Trainer")


Index(
    "appointments_trainer_window_idx",
    Appointment.workspace_id,
    Appointment.trainer_id,
    Appointment.start_time,
)
Index(
    "appointments_client_status_idx",
    Appointment.client_id,
    Appointment.status,
    Appointment.start_time,
)
