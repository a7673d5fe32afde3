"""
Events Models

Events and the registrations linking students to them.

Store-level guarantees:
- ``events.current_participants`` never exceeds ``max_participants``
  (CHECK constraint); seats are reserved with a conditional UPDATE.
- At most one non-cancelled registration per (event, student), enforced by a
  partial unique index.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from school_events.modules.shared import BaseModel
from school_events.modules.students.models import Student
from school_events.modules.users.models import User


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class EventStatus(str, enum.Enum):
    """Lifecycle of an event."""

    DRAFT = "draft"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RegistrationStatus(str, enum.Enum):
    REGISTERED = "registered"
    CANCELLED = "cancelled"
    ATTENDED = "attended"
    NO_SHOW = "no_show"


class RegistrationPaymentStatus(str, enum.Enum):
    """Payment state of a registration, maintained by the payments module."""

    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Event(BaseModel):
    """A school event that students can be registered for."""

    __tablename__ = "events"

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    registration_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0"), server_default="0"
    )
    # NULL means unlimited capacity
    max_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_participants: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus, name="event_status", values_callable=_enum_values),
        nullable=False,
        default=EventStatus.DRAFT,
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        CheckConstraint("current_participants >= 0", name="ck_events_participants_non_negative"),
        CheckConstraint(
            "max_participants IS NULL OR current_participants <= max_participants",
            name="ck_events_participants_within_capacity",
        ),
        CheckConstraint("fee >= 0", name="ck_events_fee_non_negative"),
        Index("ix_events_status_start_date", "status", "start_date"),
    )

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, title={self.title}, status={self.status.value})>"

    @property
    def is_full(self) -> bool:
        return (
            self.max_participants is not None
            and self.current_participants >= self.max_participants
        )


class EventRegistration(BaseModel):
    """
    Registration of one student for one event, owned by the student's guardian.

    Registrations are never deleted; cancellation is a status change.
    """

    __tablename__ = "event_registrations"

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("events.id", ondelete="RESTRICT"), nullable=False
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id", ondelete="RESTRICT"), nullable=False
    )
    guardian_id: Mapped[uuid.UUID | None] = mapped_column(
        "parent_id",
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Account that performed the registration (guardian or class teacher)
    registered_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[RegistrationStatus] = mapped_column(
        Enum(RegistrationStatus, name="registration_status", values_callable=_enum_values),
        nullable=False,
        default=RegistrationStatus.REGISTERED,
    )
    payment_status: Mapped[RegistrationPaymentStatus] = mapped_column(
        Enum(
            RegistrationPaymentStatus,
            name="registration_payment_status",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=RegistrationPaymentStatus.PENDING,
    )
    payment_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    event: Mapped["Event"] = relationship("Event", lazy="selectin")
    student: Mapped[Student] = relationship("Student", lazy="selectin")
    guardian: Mapped[User | None] = relationship(
        "User", foreign_keys=[guardian_id], lazy="selectin"
    )

    __table_args__ = (
        Index(
            "uq_event_registrations_active_event_student",
            "event_id",
            "student_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
        ),
        Index("ix_event_registrations_payment_status", "payment_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventRegistration(id={self.id}, event={self.event_id}, "
            f"student={self.student_id}, status={self.status.value})>"
        )
