"""Append-only ledger of prepaid balance movements."""

from __future__ import annotations

import enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_id


class PrepaidTransactionType(str, enum.Enum):
    """Direction of a ledger movement."""

    CREDIT = "CREDIT"
    DEDUCTION = "DEDUCTION"


PREPAID_TRANSACTION_TYPE_ENUM = SAEnum(
    PrepaidTransactionType,
    name="prepaid_transaction_type_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class PrepaidTransaction(Base):
    """Immutable movement on a client's prepaid balance.

    ``sequence`` numbers the movements of one profile without gaps so the
    running ``balance_after`` values can be replayed in order.
    """

    __tablename__ = "prepaid_transactions"
    __table_args__ = (
        UniqueConstraint(
            "client_profile_id",
            "sequence",
            name="prepaid_transactions_profile_sequence_key",
        ),
    )

    id = Column(GUID(), primary_key=True, default=new_id)
    workspace_id = Column(String(64), nullable=False)
    client_profile_id = Column(
        GUID(),
        ForeignKey("client_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence = Column(Integer, nullable=False)
    transaction_type = Column(PREPAID_TRANSACTION_TYPE_ENUM, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    description = Column(Text, nullable=True)
    appointment_id = Column(
        GUID(),
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    client_profile = relationship("ClientProfile", back_populates="transactions")
    appointment = relationship("Appointment")


Index(
    "prepaid_transactions_appointment_key",
    PrepaidTransaction.appointment_id,
    unique=True,
)
Index(
    "prepaid_transactions_profile_type_idx",
    PrepaidTransaction.client_profile_id,
    PrepaidTransaction.transaction_type,
)
