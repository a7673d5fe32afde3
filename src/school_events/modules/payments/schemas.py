"""
Payments Schemas
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .models import PaymentMethod, PaymentStatus


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    registration_id: UUID
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: PaymentMethod | None = None
    gateway_reference: str | None = None
    processed_at: datetime | None = None
    refunded_amount: Decimal | None = None
    refunded_at: datetime | None = None
    created_at: datetime


class OpenPaymentResponse(BaseModel):
    """A payment ready to be paid.

    ``client_secret`` is used by the client to complete a card payment with
    the payment provider; it is None for waived fees and simulated payments.
    """

    payment: PaymentResponse
    client_secret: str | None = None


class PaymentHistoryResponse(BaseModel):
    payments: list[PaymentResponse]
    total: int = Field(..., ge=0)
    limit: int
    offset: int


class CompletePaymentRequest(BaseModel):
    """Client confirmation that the payer finished the gateway flow."""

    gateway_reference: str = Field(..., min_length=1, max_length=255)


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(
        None,
        gt=0,
        decimal_places=2,
        description="Amount to refund. Defaults to the full payment amount.",
    )
    reason: str = Field(..., min_length=3, max_length=500)


class PaymentStatsResponse(BaseModel):
    """Payment statistics for the admin dashboard."""

    period_days: int
    total: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    completed: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    refunded: int = Field(..., ge=0)
    total_collected: Decimal
    total_refunded: Decimal


class WebhookAck(BaseModel):
    received: bool = True
    event_type: str
    applied: bool = True
