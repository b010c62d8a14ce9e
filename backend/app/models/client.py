"""SQLAlchemy model definitions for clients."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_id


class Client(Base):
    """Represents a trainer's client."""

    __tablename__ = "clients"

    id = Column(GUID(), primary_key=True, default=new_id)
    workspace_id = Column(String(64), nullable=False)
    trainer_id = Column(
        GUID(), ForeignKey("trainers.id", ondelete="SET NULL"), nullable=True
    )
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    trainer = relationship("Trainer", back_populates="clients")
    profile = relationship(
        "ClientProfile",
        back_populates="client",
        uselist=False,
        cascade="all, delete-orphan",
    )
    appointments = relationship("Appointment", back_populates="client")
    invoices = relationship("Invoice", back_populates="client")


Index("clients_workspace_idx", Client.workspace_id)
Index("clients_trainer_idx", Client.trainer_id)
