"""
Fixtures for notifications tests.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import SQLAlchemyError

from school_events.modules.notifications.models import EmailLog, Notification, SmsLog
from school_events.modules.notifications.service import Recipient


class RecordStore:
    """Collects records written by the dispatcher; can fail per record type."""

    def __init__(self):
        self.saved = []
        self.failing_types: set[type] = set()
        self.sessions_opened = 0

    @asynccontextmanager
    async def session_factory(self):
        self.sessions_opened += 1
        yield AsyncMock()

    async def add_record(self, db, record):
        if type(record) in self.failing_types:
            raise SQLAlchemyError("database unavailable")
        record.id = uuid4()
        self.saved.append(record)
        return record

    def of_type(self, model):
        return [r for r in self.saved if isinstance(r, model)]

    @property
    def email_logs(self):
        return self.of_type(EmailLog)

    @property
    def sms_logs(self):
        return self.of_type(SmsLog)

    @property
    def notifications(self):
        return self.of_type(Notification)


@pytest.fixture
def record_store():
    store = RecordStore()
    with patch(
        "school_events.modules.notifications.repository.add_record",
        AsyncMock(side_effect=store.add_record),
    ):
        yield store


@pytest.fixture
def email_only_recipient():
    return Recipient(account_id=uuid4(), email="parent@test.com", phone=None, name="Grace")


@pytest.fixture
def full_recipient():
    return Recipient(
        account_id=uuid4(), email="parent@test.com", phone="+15550001111", name="Grace"
    )


@pytest.fixture
def confirmation_payload():
    return {
        "student_name": "Sam Student",
        "event_title": "Science Fair",
        "amount": "25",
        "transaction_id": "pi_test_123",
    }
