"""
Registration Manager

Business logic for registering students for events and cancelling
registrations. Every operation receives the acting account explicitly as an
``Actor``.

Registration flow:
1. Eligibility: event active, deadline not passed, no active registration
   for the student, capacity left (checked in this order)
2. Seat reservation + registration insert in one transaction
3. Payment opened for the event fee (zero fee completes immediately)
4. RegistrationCreated notification handed off to the dispatcher

Payment and notification problems after step 2 are logged and never undo
the committed registration.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from school_events.core.auth import Actor
from school_events.modules.notifications.models import NotificationKind
from school_events.modules.notifications.service import (
    DispatchResult,
    Recipient,
    dispatch_bulk,
    schedule_dispatch,
)
from school_events.modules.payments import service as payments_service
from school_events.modules.payments.models import Payment
from school_events.modules.shared import NotAuthorizedError, ServiceError
from school_events.modules.students import repository as students_repository
from school_events.modules.students.models import Student

from . import repository
from .models import Event, EventRegistration, EventStatus, RegistrationStatus

logger = logging.getLogger(__name__)

EVENT_REMINDER_WINDOW = timedelta(hours=24)


# ============================================
# Service Exceptions
# ============================================


class EventNotFoundError(ServiceError):
    def __init__(self):
        super().__init__(
            message="Event not found",
            error_code="EVENT_NOT_FOUND",
            status_code=404,
        )


class StudentNotFoundError(ServiceError):
    def __init__(self):
        super().__init__(
            message="Student not found",
            error_code="STUDENT_NOT_FOUND",
            status_code=404,
        )


class RegistrationNotFoundError(ServiceError):
    def __init__(self):
        super().__init__(
            message="Registration not found",
            error_code="REGISTRATION_NOT_FOUND",
            status_code=404,
        )


class EventNotOpenError(ServiceError):
    """Raised when the event is not accepting registrations (not active)."""

    def __init__(self, event_status: EventStatus):
        super().__init__(
            message=f"This event is not open for registration (status: {event_status.value}).",
            error_code="EVENT_NOT_OPEN",
            status_code=409,
        )


class RegistrationClosedError(ServiceError):
    """Raised when the registration deadline has passed."""

    def __init__(self):
        super().__init__(
            message="The registration deadline for this event has passed.",
            error_code="REGISTRATION_CLOSED",
            status_code=409,
        )


class DuplicateRegistrationError(ServiceError):
    def __init__(self):
        super().__init__(
            message="This student is already registered for this event.",
            error_code="DUPLICATE_REGISTRATION",
            status_code=409,
        )


class EventFullError(ServiceError):
    def __init__(self):
        super().__init__(
            message="This event is full.",
            error_code="EVENT_FULL",
            status_code=409,
        )


class InvalidRegistrationStateError(ServiceError):
    def __init__(self, current_status: RegistrationStatus):
        super().__init__(
            message=f"Cannot cancel a registration that is {current_status.value}.",
            error_code="INVALID_REGISTRATION_STATE",
            status_code=409,
        )


@dataclass
class RegistrationOutcome:
    """Result of a successful registration."""

    registration: EventRegistration
    payment: Payment | None
    client_handle: str | None = None


# ============================================
# Helpers
# ============================================


def _now() -> datetime:
    return datetime.now(UTC)


def _format_date(value: datetime | None) -> str | None:
    return value.strftime("%B %d, %Y") if value else None


def can_register(actor: Actor, student: Student) -> bool:
    """
    Guardians may register their own children; teachers may register
    students of their own class.
    """
    if actor.is_guardian:
        return student.guardian_id == actor.id
    if actor.is_teacher:
        return student.class_teacher_id == actor.id
    return False


def _registration_payload(
    registration: EventRegistration, event: Event, actor: Actor
) -> dict[str, Any]:
    return {
        "student_name": registration.student.full_name,
        "event_title": event.title,
        "event_date": _format_date(event.start_date),
        "location": event.location,
        "fee": event.fee,
        "payment_due_date": _format_date(payments_service.payment_due_date(registration)),
        "registered_by": actor.name,
    }


# ============================================
# Operations
# ============================================


async def register_student(
    db: AsyncSession,
    event_id: UUID,
    student_id: UUID,
    actor: Actor,
) -> RegistrationOutcome:
    """
    Register a student for an event.

    Raises:
        EventNotFoundError / StudentNotFoundError: Unknown or inactive ids
        NotAuthorizedError: Actor is neither the student's guardian nor
            their class teacher
        EventNotOpenError: Event is not active
        RegistrationClosedError: Registration deadline has passed
        DuplicateRegistrationError: Student already has an active registration
        EventFullError: No seats left
    """
    event = await repository.get_event(db, event_id)
    if event is None:
        raise EventNotFoundError()

    student = await students_repository.get_by_id(db, student_id)
    if student is None or not student.is_active:
        raise StudentNotFoundError()

    if not can_register(actor, student):
        logger.warning(f"{actor} attempted to register student {student_id} without access")
        raise NotAuthorizedError("You can only register your own children or class students.")

    if event.status != EventStatus.ACTIVE:
        raise EventNotOpenError(event.status)

    if event.registration_deadline is not None and _now() > event.registration_deadline:
        raise RegistrationClosedError()

    if await repository.get_active_registration(db, event_id, student_id) is not None:
        raise DuplicateRegistrationError()

    if event.is_full:
        raise EventFullError()

    try:
        registration = await repository.reserve_seat_and_register(
            db,
            event_id=event_id,
            student_id=student_id,
            guardian_id=student.guardian_id,
            registered_by=actor.id,
            payment_amount=event.fee,
        )
    except IntegrityError as e:
        logger.info(f"Concurrent duplicate registration for student {student_id} rejected")
        raise DuplicateRegistrationError() from e

    if registration is None:
        # Lost the seat (or the event closed) between the checks and the update
        await db.refresh(event)
        if event.status != EventStatus.ACTIVE:
            raise EventNotOpenError(event.status)
        raise EventFullError()

    logger.info(f"Student {student_id} registered for event {event_id} by {actor}")

    payment: Payment | None = None
    client_handle: str | None = None
    try:
        opened = await payments_service.open_payment(db, registration.id, event.fee)
        payment, client_handle = opened.payment, opened.client_handle
    except ServiceError as e:
        logger.error(
            f"Registration {registration.id} created but payment could not be opened: "
            f"{e.error_code}"
        )

    await db.refresh(registration)

    if registration.guardian is not None:
        schedule_dispatch(
            NotificationKind.REGISTRATION_CREATED,
            Recipient.from_user(registration.guardian),
            _registration_payload(registration, event, actor),
        )
    else:
        logger.info(f"Registration {registration.id} has no guardian to notify")

    return RegistrationOutcome(
        registration=registration, payment=payment, client_handle=client_handle
    )


async def cancel_registration(
    db: AsyncSession,
    registration_id: UUID,
    actor: Actor,
) -> EventRegistration:
    """
    Cancel a registration and release its seat.

    Only the owning guardian or an admin may cancel. A completed payment is
    not refunded here; refunds are a separate admin operation.
    """
    registration = await repository.get_registration(db, registration_id)
    if registration is None:
        raise RegistrationNotFoundError()

    if not (actor.is_admin or (actor.is_guardian and registration.guardian_id == actor.id)):
        logger.warning(f"{actor} attempted to cancel registration {registration_id}")
        raise NotAuthorizedError("You can only cancel your own registrations.")

    if registration.status != RegistrationStatus.REGISTERED:
        raise InvalidRegistrationStateError(registration.status)

    cancelled = await repository.cancel_and_release_seat(
        db, registration_id, cancelled_by=actor.id, now=_now()
    )
    await db.refresh(registration)

    if not cancelled:
        raise InvalidRegistrationStateError(registration.status)

    logger.info(
        f"Registration {registration_id} cancelled by {actor} "
        f"(payment status: {registration.payment_status.value})"
    )
    return registration


async def list_guardian_registrations(
    db: AsyncSession, guardian_id: UUID
) -> list[EventRegistration]:
    """All registrations owned by a guardian, most recent events first."""
    return await repository.list_for_guardian(db, guardian_id)


async def send_event_reminders(
    db: AsyncSession,
    now: datetime | None = None,
) -> list[DispatchResult]:
    """
    Send one EventReminder per registration for active events starting in the
    next 24 hours. Not de-duplicated across runs.
    """
    now = now or _now()
    registrations = await repository.get_registrations_starting_within(
        db, now, EVENT_REMINDER_WINDOW
    )

    deliveries: list[tuple[Recipient, dict[str, Any]]] = []
    for registration in registrations:
        if registration.guardian is None:
            continue
        event = registration.event
        deliveries.append(
            (
                Recipient.from_user(registration.guardian),
                {
                    "student_name": registration.student.full_name,
                    "event_title": event.title,
                    "event_date": event.start_date.strftime("%B %d, %Y at %H:%M"),
                    "location": event.location,
                },
            )
        )

    logger.info(f"Sending {len(deliveries)} event reminders")
    return await dispatch_bulk(NotificationKind.EVENT_REMINDER, deliveries)
