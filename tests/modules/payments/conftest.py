"""
Fixtures for payments tests.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from school_events.modules.events.models import (
    EventRegistration,
    RegistrationPaymentStatus,
    RegistrationStatus,
)
from school_events.modules.payments.models import Payment, PaymentMethod, PaymentStatus


@pytest.fixture
def registration(guardian_user):
    registration = MagicMock(spec=EventRegistration)
    registration.id = uuid4()
    registration.guardian_id = guardian_user.id
    registration.guardian = guardian_user
    registration.status = RegistrationStatus.REGISTERED
    registration.payment_status = RegistrationPaymentStatus.PENDING
    registration.student = MagicMock(full_name="Sam Student")
    registration.event = MagicMock(
        title="Science Fair",
        registration_deadline=datetime.now(UTC) - timedelta(days=1),
        start_date=datetime.now(UTC) + timedelta(days=3),
    )
    registration.payment_amount = Decimal("25.00")
    return registration


@pytest.fixture
def pending_payment(registration):
    payment = MagicMock(spec=Payment)
    payment.id = uuid4()
    payment.registration_id = registration.id
    payment.registration = registration
    payment.amount = Decimal("25.00")
    payment.currency = "usd"
    payment.status = PaymentStatus.PENDING
    payment.payment_method = None
    payment.gateway_reference = "pi_test_123"
    payment.gateway_response = {"intent": "pi_test_123"}
    return payment


@pytest.fixture
def completed_payment(pending_payment):
    pending_payment.status = PaymentStatus.COMPLETED
    pending_payment.payment_method = PaymentMethod.CARD
    return pending_payment
