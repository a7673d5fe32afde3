"""
Fixtures for events tests.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from school_events.modules.events.models import (
    Event,
    EventRegistration,
    EventStatus,
    RegistrationPaymentStatus,
    RegistrationStatus,
)
from school_events.modules.students.models import Student


def make_event(**overrides) -> Event:
    values = {
        "id": uuid4(),
        "title": "Science Fair",
        "location": "Main Hall",
        "start_date": datetime.now(UTC) + timedelta(days=10),
        "registration_deadline": datetime.now(UTC) + timedelta(days=5),
        "fee": Decimal("25.00"),
        "max_participants": 30,
        "current_participants": 0,
        "status": EventStatus.ACTIVE,
    }
    values.update(overrides)
    return Event(**values)


def make_student(guardian, class_teacher_id=None) -> MagicMock:
    student = MagicMock(spec=Student)
    student.id = uuid4()
    student.first_name = "Sam"
    student.last_name = "Student"
    student.full_name = "Sam Student"
    student.guardian_id = guardian.id if guardian else None
    student.class_teacher_id = class_teacher_id
    student.is_active = True
    return student


@pytest.fixture
def event():
    return make_event()


@pytest.fixture
def student(guardian_user, teacher_actor):
    return make_student(guardian_user, class_teacher_id=teacher_actor.id)


class InMemoryEventStore:
    """
    Registration store double with the same guarantees as the database:
    the seat check and increment happen without yielding to other tasks,
    and one active registration per (event, student).
    """

    def __init__(self, event: Event, guardian):
        self.event = event
        self.guardian = guardian
        self.registrations: list[EventRegistration] = []
        self.students: dict = {}

    async def get_event(self, db, event_id):
        return self.event if event_id == self.event.id else None

    async def get_active_registration(self, db, event_id, student_id):
        return next(
            (
                r
                for r in self.registrations
                if r.event_id == event_id
                and r.student_id == student_id
                and r.status != RegistrationStatus.CANCELLED
            ),
            None,
        )

    async def reserve_seat_and_register(
        self, db, *, event_id, student_id, guardian_id, registered_by, payment_amount
    ):
        # Let concurrent callers interleave before the conditional update
        await asyncio.sleep(0)

        event = self.event
        if event.status != EventStatus.ACTIVE or event.is_full:
            return None
        event.current_participants += 1

        registration = MagicMock(spec=EventRegistration)
        registration.id = uuid4()
        registration.event_id = event_id
        registration.student_id = student_id
        registration.guardian_id = guardian_id
        registration.guardian = self.guardian
        registration.student = self.students.get(student_id)
        registration.event = event
        registration.status = RegistrationStatus.REGISTERED
        registration.payment_status = RegistrationPaymentStatus.PENDING
        registration.payment_amount = payment_amount
        self.registrations.append(registration)
        return registration


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def student_factory():
    return make_student


@pytest.fixture
def event_store(guardian_user):
    def build(event: Event) -> InMemoryEventStore:
        return InMemoryEventStore(event, guardian_user)

    return build
