"""
Events Schemas
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from school_events.modules.payments.schemas import PaymentResponse

from .models import RegistrationPaymentStatus, RegistrationStatus


class RegisterStudentRequest(BaseModel):
    student_id: UUID


class EventSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    location: str | None = None
    start_date: datetime
    registration_deadline: datetime | None = None
    fee: Decimal


class RegistrationResponse(BaseModel):
    """A registration with its event summary."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: UUID
    student_id: UUID
    guardian_id: UUID | None = None
    status: RegistrationStatus
    payment_status: RegistrationPaymentStatus
    payment_amount: Decimal
    cancelled_at: datetime | None = None
    created_at: datetime
    event: EventSummary


class RegisterStudentResponse(BaseModel):
    """Response after registering a student.

    ``client_secret`` is returned when a card payment is required and is used
    by the client to complete the payment with the payment provider.
    """

    registration: RegistrationResponse
    payment: PaymentResponse | None = None
    client_secret: str | None = None
    message: str = Field(default="Registration successful.")
