"""
Payment Models
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, Numeric, String, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from school_events.modules.events.models import EventRegistration
from school_events.modules.shared import BaseModel


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    WAIVED = "waived"  # zero-fee events, no gateway involved


class Payment(BaseModel):
    """
    A payment for one event registration.

    ``gateway_reference`` is stored in the ``transaction_id`` column and
    correlates the row with the gateway's payment intent. ``gateway_response``
    holds the latest gateway snapshot, including refund details.
    """

    __tablename__ = "payments"

    registration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("event_registrations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(
            PaymentStatus,
            name="payment_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_method: Mapped[PaymentMethod | None] = mapped_column(
        Enum(
            PaymentMethod,
            name="payment_method",
            values_callable=lambda methods: [m.value for m in methods],
        ),
        nullable=True,
    )

    gateway_reference: Mapped[str | None] = mapped_column(
        "transaction_id", String(255), unique=True, nullable=True
    )
    gateway_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    registration: Mapped[EventRegistration] = relationship(EventRegistration, lazy="selectin")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        # At most one open payment per registration
        Index(
            "uq_payments_pending_registration",
            "registration_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, amount={self.amount}, status={self.status.value})>"
