"""
Events Repository

Database operations for events and registrations.

Seat reservation is one conditional UPDATE that increments
``current_participants`` only while the event is active and below capacity.
It runs in the same transaction as the registration INSERT, and the partial
unique index on (event_id, student_id) rejects a second active registration,
so neither overbooking nor duplicates depend on application-level checks.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Update, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Event,
    EventRegistration,
    EventStatus,
    RegistrationPaymentStatus,
    RegistrationStatus,
)

logger = logging.getLogger(__name__)


def reserve_seat_statement(event_id: UUID) -> Update:
    """Increment the participant count if the event is active and not full."""
    return (
        update(Event)
        .where(
            Event.id == event_id,
            Event.status == EventStatus.ACTIVE,
            or_(
                Event.max_participants.is_(None),
                Event.current_participants < Event.max_participants,
            ),
        )
        .values(current_participants=Event.current_participants + 1)
        .returning(Event.current_participants)
    )


def release_seat_statement(event_id: UUID) -> Update:
    return (
        update(Event)
        .where(Event.id == event_id, Event.current_participants > 0)
        .values(current_participants=Event.current_participants - 1)
    )


def cancel_registration_statement(
    registration_id: UUID, cancelled_by: UUID, now: datetime
) -> Update:
    """Cancel a registration only if it is still registered."""
    return (
        update(EventRegistration)
        .where(
            EventRegistration.id == registration_id,
            EventRegistration.status == RegistrationStatus.REGISTERED,
        )
        .values(status=RegistrationStatus.CANCELLED, cancelled_at=now, cancelled_by=cancelled_by)
        .returning(EventRegistration.event_id)
    )


async def get_event(db: AsyncSession, id: UUID) -> Event | None:
    """Get event by ID."""
    return await db.get(Event, id)


async def get_registration(db: AsyncSession, id: UUID) -> EventRegistration | None:
    """Get registration by ID."""
    return await db.get(EventRegistration, id)


async def get_active_registration(
    db: AsyncSession, event_id: UUID, student_id: UUID
) -> EventRegistration | None:
    """The non-cancelled registration for an (event, student) pair, if any."""
    result = await db.execute(
        select(EventRegistration).where(
            EventRegistration.event_id == event_id,
            EventRegistration.student_id == student_id,
            EventRegistration.status != RegistrationStatus.CANCELLED,
        )
    )
    return result.scalar_one_or_none()


async def reserve_seat_and_register(
    db: AsyncSession,
    *,
    event_id: UUID,
    student_id: UUID,
    guardian_id: UUID | None,
    registered_by: UUID,
    payment_amount: Decimal,
) -> EventRegistration | None:
    """
    Reserve a seat and insert the registration in one transaction.

    Returns:
        The new registration, or None if no seat could be reserved (event
        full or no longer active); nothing is written in that case

    Raises:
        IntegrityError: If the student already holds an active registration
            for the event (the transaction is rolled back)
    """
    result = await db.execute(reserve_seat_statement(event_id))
    seats_taken = result.scalar_one_or_none()

    if seats_taken is None:
        await db.rollback()
        return None

    registration = EventRegistration(
        event_id=event_id,
        student_id=student_id,
        guardian_id=guardian_id,
        registered_by=registered_by,
        status=RegistrationStatus.REGISTERED,
        payment_status=RegistrationPaymentStatus.PENDING,
        payment_amount=payment_amount,
    )
    db.add(registration)

    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise

    await db.commit()
    await db.refresh(registration)

    logger.info(f"Seat {seats_taken} reserved on event {event_id} for student {student_id}")
    return registration


async def cancel_and_release_seat(
    db: AsyncSession,
    registration_id: UUID,
    *,
    cancelled_by: UUID,
    now: datetime,
) -> bool:
    """
    Cancel a registration and free its seat in one transaction.

    Returns:
        False if the registration was no longer in ``registered`` status
    """
    result = await db.execute(cancel_registration_statement(registration_id, cancelled_by, now))
    event_id = result.scalar_one_or_none()

    if event_id is None:
        await db.rollback()
        return False

    await db.execute(release_seat_statement(event_id))
    await db.commit()
    return True


async def list_for_guardian(db: AsyncSession, guardian_id: UUID) -> list[EventRegistration]:
    result = await db.execute(
        select(EventRegistration)
        .join(Event, EventRegistration.event_id == Event.id)
        .where(EventRegistration.guardian_id == guardian_id)
        .order_by(Event.start_date.desc())
    )
    return list(result.scalars().all())


async def get_registrations_starting_within(
    db: AsyncSession, now: datetime, window: timedelta
) -> list[EventRegistration]:
    """Registered students of active events starting between now and now + window."""
    result = await db.execute(
        select(EventRegistration)
        .join(Event, EventRegistration.event_id == Event.id)
        .where(
            EventRegistration.status == RegistrationStatus.REGISTERED,
            Event.status == EventStatus.ACTIVE,
            Event.start_date > now,
            Event.start_date <= now + window,
        )
        .order_by(Event.start_date)
    )
    return list(result.scalars().all())
