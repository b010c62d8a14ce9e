"""Billing profile holding a client's prepaid balance."""

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
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_id


class BillingFrequency(str, enum.Enum):
    """Billing models supported for a client."""

    PREPAID = "PREPAID"
    PER_SESSION = "PER_SESSION"
    MONTHLY = "MONTHLY"


BILLING_FREQUENCY_ENUM = SAEnum(
    BillingFrequency,
    name="billing_frequency_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class ClientProfile(Base):
    """Rates, billing model and running prepaid balance of a client.

    ``prepaid_balance`` and ``prepaid_target_balance`` are nullable; ``None``
    reads as zero. ``version`` is bumped by every ledger write and acts as the
    compare-and-swap token for balance updates.
    """

    __tablename__ = "client_profiles"
    __table_args__ = (
        CheckConstraint(
            "prepaid_balance IS NULL OR prepaid_balance >= 0",
            name="ck_client_profiles_balance_non_negative",
        ),
        CheckConstraint(
            "prepaid_target_balance IS NULL OR prepaid_target_balance >= 0",
            name="ck_client_profiles_target_non_negative",
        ),
        CheckConstraint("session_rate >= 0", name="ck_client_profiles_rate_non_negative"),
    )

    id = Column(GUID(), primary_key=True, default=new_id)
    client_id = Column(
        GUID(),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    workspace_id = Column(String(64), nullable=False)
    billing_frequency = Column(
        BILLING_FREQUENCY_ENUM,
        nullable=False,
        default=BillingFrequency.PER_SESSION,
    )
    prepaid_balance = Column(Numeric(12, 2), nullable=True)
    prepaid_target_balance = Column(Numeric(12, 2), nullable=True)
    session_rate = Column(Numeric(12, 2), nullable=False, default=0)
    group_session_rate = Column(Numeric(12, 2), nullable=True)
    auto_invoice_enabled = Column(Boolean, nullable=False, default=True)
    invoice_alerts_enabled = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    client = relationship("Client", back_populates="profile")
    transactions = relationship(
        "PrepaidTransaction",
        back_populates="client_profile",
        order_by="PrepaidTransaction.sequence",
    )


Index("client_profiles_workspace_idx", ClientProfile.workspace_id)
Index(
    "client_profiles_frequency_idx",
    ClientProfile.workspace_id,
    ClientProfile.billing_frequency,
)
