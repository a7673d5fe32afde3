"""
Unit tests for the payment orchestrator.

These tests cover:
- Opening payments (fee waived, card, gateway timeout and rejection)
- Reusing the pending payment when a guardian retries
- Idempotent completion and exactly-once confirmation notifications
- Refunds (admin only, completed payments only)
- Overdue payment reminder sweep
"""

import asyncio
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from school_events.core.auth import ROLE_GUARDIAN, Actor
from school_events.core.config import settings
from school_events.core.payment_gateway import (
    GatewayError,
    GatewayTimeout,
    IntentHandle,
    IntentStatus,
    RefundResult,
)
from school_events.modules.events.models import RegistrationPaymentStatus
from school_events.modules.notifications.models import NotificationKind
from school_events.modules.payments.models import Payment, PaymentMethod, PaymentStatus
from school_events.modules.payments.service import (
    GatewayTimeoutError,
    InvalidPaymentAmountError,
    InvalidPaymentStateError,
    OpenedPayment,
    PaymentInProgressError,
    PaymentNotCapturedError,
    PaymentNotFoundError,
    PaymentRejectedError,
    RegistrationNotPayableError,
    complete_payment,
    fail_payment,
    get_payment,
    get_payment_history,
    open_payment,
    pay_registration,
    refund_payment,
    send_overdue_payment_reminders,
)
from school_events.modules.shared import NotAuthorizedError

REPO = "school_events.modules.payments.repository"
GATEWAY = "school_events.core.payment_gateway"
EVENTS_REPO = "school_events.modules.events.repository"
SERVICE = "school_events.modules.payments.service"


class PaymentStoreDouble:
    """Applies transitions only if the stored status still matches the caller's."""

    def __init__(self, payment):
        self.status = payment.status
        self.registration_payment_status = None
        self.transitions = 0

    async def transition_status(
        self, db, payment, new_status, *, registration_payment_status=None, **values
    ):
        expected = payment.status
        # Let concurrent callers interleave between read and write
        await asyncio.sleep(0)
        if self.status != expected:
            payment.status = self.status
            return False
        self.status = new_status
        payment.status = new_status
        self.registration_payment_status = registration_payment_status
        self.transitions += 1
        return True


class TestOpenPayment:
    """Tests for open_payment."""

    @pytest.mark.asyncio
    async def test_zero_amount_completes_without_gateway(self, mock_db, pending_payment):
        """A free event's payment is completed immediately and never reaches the gateway."""
        pending_payment.amount = Decimal("0")
        store = PaymentStoreDouble(pending_payment)

        with (
            patch(f"{REPO}.get_pending_for_registration", AsyncMock(return_value=None)),
            patch(f"{REPO}.create", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", AsyncMock(side_effect=store.transition_status)),
            patch(f"{GATEWAY}.create_intent", new_callable=AsyncMock) as mock_intent,
        ):
            opened = await open_payment(mock_db, pending_payment.registration_id, Decimal("0"))

        mock_intent.assert_not_called()
        assert opened.payment.status == PaymentStatus.COMPLETED
        assert opened.client_handle is None
        assert store.registration_payment_status == RegistrationPaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_card_payment_returns_client_handle(self, mock_db, pending_payment):
        with (
            patch(f"{REPO}.get_pending_for_registration", AsyncMock(return_value=None)),
            patch(f"{REPO}.create", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.set_gateway_reference", new_callable=AsyncMock) as mock_set_ref,
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(
                f"{GATEWAY}.create_intent",
                AsyncMock(return_value=IntentHandle(reference="pi_new", client_handle="secret")),
            ),
        ):
            opened = await open_payment(mock_db, pending_payment.registration_id, Decimal("25"))

        assert opened.client_handle == "secret"
        assert mock_set_ref.call_args.args[2] == "pi_new"
        mock_transition.assert_not_called()
        assert pending_payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_gateway_timeout_leaves_payment_pending(self, mock_db, pending_payment):
        with (
            patch(f"{REPO}.get_pending_for_registration", AsyncMock(return_value=None)),
            patch(f"{REPO}.create", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(f"{GATEWAY}.create_intent", AsyncMock(side_effect=GatewayTimeout("slow"))),
        ):
            with pytest.raises(GatewayTimeoutError):
                await open_payment(mock_db, pending_payment.registration_id, Decimal("25"))

        mock_transition.assert_not_called()
        assert pending_payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_gateway_rejection_fails_payment(self, mock_db, pending_payment):
        with (
            patch(f"{REPO}.get_pending_for_registration", AsyncMock(return_value=None)),
            patch(f"{REPO}.create", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(
                f"{GATEWAY}.create_intent",
                AsyncMock(side_effect=GatewayError("Invalid amount", code="amount_too_small")),
            ),
        ):
            with pytest.raises(PaymentRejectedError):
                await open_payment(mock_db, pending_payment.registration_id, Decimal("25"))

        assert mock_transition.call_args.args[2] == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, mock_db):
        with patch(f"{REPO}.create", new_callable=AsyncMock) as mock_create:
            with pytest.raises(InvalidPaymentAmountError):
                await open_payment(mock_db, uuid4(), Decimal("-1"))

        mock_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_after_timeout_reuses_pending_payment(self, mock_db, pending_payment):
        """A timed-out opening leaves one pending payment that the retry picks up."""
        pending_payment.gateway_reference = None
        opened_rows = []

        async def create(db, **fields):
            opened_rows.append(pending_payment)
            return pending_payment

        async def get_pending(db, registration_id):
            return opened_rows[0] if opened_rows else None

        async def set_reference(db, payment, reference, snapshot=None):
            payment.gateway_reference = reference
            return payment

        with (
            patch(f"{REPO}.get_pending_for_registration", AsyncMock(side_effect=get_pending)),
            patch(f"{REPO}.create", AsyncMock(side_effect=create)) as mock_create,
            patch(f"{REPO}.set_gateway_reference", AsyncMock(side_effect=set_reference)),
            patch(
                f"{GATEWAY}.create_intent",
                AsyncMock(
                    side_effect=[
                        GatewayTimeout("slow"),
                        IntentHandle(reference="pi_retry", client_handle="secret"),
                    ]
                ),
            ),
        ):
            with pytest.raises(GatewayTimeoutError):
                await open_payment(mock_db, pending_payment.registration_id, Decimal("25"))
            opened = await open_payment(mock_db, pending_payment.registration_id, Decimal("25"))

        mock_create.assert_awaited_once()
        assert opened.payment is pending_payment
        assert opened.client_handle == "secret"
        assert pending_payment.gateway_reference == "pi_retry"
        assert pending_payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_existing_intent_is_resumed(self, mock_db, pending_payment):
        with (
            patch(
                f"{REPO}.get_pending_for_registration", AsyncMock(return_value=pending_payment)
            ),
            patch(f"{REPO}.create", new_callable=AsyncMock) as mock_create,
            patch(
                f"{GATEWAY}.retrieve_intent",
                AsyncMock(return_value=IntentStatus("requires_payment_method", None, "secret")),
            ),
            patch(f"{GATEWAY}.create_intent", new_callable=AsyncMock) as mock_intent,
        ):
            opened = await open_payment(mock_db, pending_payment.registration_id, Decimal("25"))

        assert opened.payment is pending_payment
        assert opened.client_handle == "secret"
        mock_create.assert_not_called()
        mock_intent.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_intent_is_replaced(self, mock_db, pending_payment):
        store = PaymentStoreDouble(pending_payment)
        fresh = MagicMock(spec=Payment)
        fresh.id = uuid4()
        fresh.status = PaymentStatus.PENDING

        with (
            patch(
                f"{REPO}.get_pending_for_registration", AsyncMock(return_value=pending_payment)
            ),
            patch(f"{REPO}.transition_status", AsyncMock(side_effect=store.transition_status)),
            patch(f"{REPO}.create", AsyncMock(return_value=fresh)),
            patch(f"{REPO}.set_gateway_reference", new_callable=AsyncMock),
            patch(
                f"{GATEWAY}.retrieve_intent",
                AsyncMock(return_value=IntentStatus("canceled", None)),
            ),
            patch(
                f"{GATEWAY}.create_intent",
                AsyncMock(return_value=IntentHandle(reference="pi_fresh", client_handle="secret")),
            ),
        ):
            opened = await open_payment(mock_db, pending_payment.registration_id, Decimal("25"))

        assert pending_payment.status == PaymentStatus.FAILED
        assert opened.payment is fresh
        assert opened.client_handle == "secret"

    @pytest.mark.asyncio
    async def test_concurrent_opening_is_rejected(self, mock_db, pending_payment):
        with (
            patch(f"{REPO}.get_pending_for_registration", AsyncMock(return_value=None)),
            patch(
                f"{REPO}.create",
                AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("duplicate key"))),
            ),
            patch(f"{GATEWAY}.create_intent", new_callable=AsyncMock) as mock_intent,
        ):
            with pytest.raises(PaymentInProgressError):
                await open_payment(mock_db, pending_payment.registration_id, Decimal("25"))

        mock_intent.assert_not_called()


class TestPayRegistration:
    """Tests for pay_registration."""

    @pytest.mark.asyncio
    async def test_guardian_pays_registration_made_by_teacher(
        self, mock_db, registration, pending_payment, guardian_actor, teacher_actor
    ):
        registration.registered_by = teacher_actor.id
        with (
            patch(f"{EVENTS_REPO}.get_registration", AsyncMock(return_value=registration)),
            patch(
                f"{SERVICE}.open_payment",
                AsyncMock(return_value=OpenedPayment(pending_payment, "secret")),
            ) as mock_open,
        ):
            opened = await pay_registration(mock_db, registration.id, guardian_actor)

        assert opened.client_handle == "secret"
        mock_open.assert_awaited_once_with(mock_db, registration.id, Decimal("25.00"))

    @pytest.mark.asyncio
    async def test_guardian_retries_after_timeout(
        self, mock_db, registration, pending_payment, guardian_actor
    ):
        """The pending payment left by a timeout gets an intent; no second row is created."""
        pending_payment.gateway_reference = None
        with (
            patch(f"{EVENTS_REPO}.get_registration", AsyncMock(return_value=registration)),
            patch(
                f"{REPO}.get_pending_for_registration", AsyncMock(return_value=pending_payment)
            ),
            patch(f"{REPO}.create", new_callable=AsyncMock) as mock_create,
            patch(f"{REPO}.set_gateway_reference", new_callable=AsyncMock) as mock_set_ref,
            patch(
                f"{GATEWAY}.create_intent",
                AsyncMock(return_value=IntentHandle(reference="pi_later", client_handle="secret")),
            ),
        ):
            opened = await pay_registration(mock_db, registration.id, guardian_actor)

        mock_create.assert_not_called()
        assert mock_set_ref.call_args.args[1:3] == (pending_payment, "pi_later")
        assert opened.client_handle == "secret"

    @pytest.mark.asyncio
    async def test_teacher_cannot_pay(self, mock_db, registration, teacher_actor):
        with (
            patch(f"{EVENTS_REPO}.get_registration", AsyncMock(return_value=registration)),
            patch(f"{SERVICE}.open_payment", new_callable=AsyncMock) as mock_open,
        ):
            with pytest.raises(NotAuthorizedError):
                await pay_registration(mock_db, registration.id, teacher_actor)

        mock_open.assert_not_called()

    @pytest.mark.asyncio
    async def test_paid_registration_has_nothing_to_pay(
        self, mock_db, registration, guardian_actor
    ):
        registration.payment_status = RegistrationPaymentStatus.PAID
        with (
            patch(f"{EVENTS_REPO}.get_registration", AsyncMock(return_value=registration)),
            patch(f"{SERVICE}.open_payment", new_callable=AsyncMock) as mock_open,
        ):
            with pytest.raises(RegistrationNotPayableError) as exc_info:
                await pay_registration(mock_db, registration.id, guardian_actor)

        assert exc_info.value.status_code == 409
        mock_open.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_registration(self, mock_db, guardian_actor):
        with patch(f"{EVENTS_REPO}.get_registration", AsyncMock(return_value=None)):
            with pytest.raises(RegistrationNotPayableError) as exc_info:
                await pay_registration(mock_db, uuid4(), guardian_actor)

        assert exc_info.value.status_code == 404


class TestCompletePayment:
    """Tests for complete_payment."""

    @pytest.mark.asyncio
    async def test_complete_twice_notifies_once(self, mock_db, pending_payment):
        """Duplicate completion is a no-op; exactly one PaymentConfirmed is sent."""
        store = PaymentStoreDouble(pending_payment)

        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", AsyncMock(side_effect=store.transition_status)),
            patch(
                f"{GATEWAY}.retrieve_intent",
                AsyncMock(return_value=IntentStatus("succeeded", Decimal("25.00"))),
            ) as mock_retrieve,
            patch(f"{SERVICE}.schedule_dispatch") as mock_dispatch,
        ):
            first = await complete_payment(mock_db, "pi_test_123")
            second = await complete_payment(mock_db, "pi_test_123")

        assert first is second
        assert first.status == PaymentStatus.COMPLETED
        assert store.transitions == 1
        assert store.registration_payment_status == RegistrationPaymentStatus.PAID
        mock_retrieve.assert_awaited_once()
        mock_dispatch.assert_called_once()
        assert mock_dispatch.call_args.args[0] == NotificationKind.PAYMENT_CONFIRMED

    @pytest.mark.asyncio
    async def test_concurrent_completion_notifies_once(self, mock_db, pending_payment):
        """Two simultaneous completions (client + webhook) send one confirmation."""
        store = PaymentStoreDouble(pending_payment)

        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", AsyncMock(side_effect=store.transition_status)),
            patch(
                f"{GATEWAY}.retrieve_intent",
                AsyncMock(return_value=IntentStatus("succeeded", Decimal("25.00"))),
            ),
            patch(f"{SERVICE}.schedule_dispatch") as mock_dispatch,
        ):
            results = await asyncio.gather(
                complete_payment(mock_db, "pi_test_123"),
                complete_payment(mock_db, "pi_test_123"),
            )

        assert all(p.status == PaymentStatus.COMPLETED for p in results)
        assert store.transitions == 1
        mock_dispatch.assert_called_once()

    @pytest.mark.asyncio
    async def test_not_captured_stays_pending(self, mock_db, pending_payment):
        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(
                f"{GATEWAY}.retrieve_intent",
                AsyncMock(return_value=IntentStatus("requires_payment_method", None)),
            ),
            patch(f"{SERVICE}.schedule_dispatch") as mock_dispatch,
        ):
            with pytest.raises(PaymentNotCapturedError) as exc_info:
                await complete_payment(mock_db, "pi_test_123")

        assert exc_info.value.gateway_status == "requires_payment_method"
        assert pending_payment.status == PaymentStatus.PENDING
        mock_transition.assert_not_called()
        mock_dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_partial_capture_is_not_completion(self, mock_db, pending_payment):
        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(
                f"{GATEWAY}.retrieve_intent",
                AsyncMock(return_value=IntentStatus("succeeded", Decimal("10.00"))),
            ),
        ):
            with pytest.raises(PaymentNotCapturedError):
                await complete_payment(mock_db, "pi_test_123")

        mock_transition.assert_not_called()

    @pytest.mark.asyncio
    async def test_gateway_timeout_is_never_failure(self, mock_db, pending_payment):
        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(f"{GATEWAY}.retrieve_intent", AsyncMock(side_effect=GatewayTimeout("slow"))),
        ):
            with pytest.raises(GatewayTimeoutError):
                await complete_payment(mock_db, "pi_test_123")

        mock_transition.assert_not_called()
        assert pending_payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_reference(self, mock_db):
        with patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=None)):
            with pytest.raises(PaymentNotFoundError):
                await complete_payment(mock_db, "pi_missing")

    @pytest.mark.asyncio
    async def test_failed_payment_cannot_complete(self, mock_db, pending_payment):
        pending_payment.status = PaymentStatus.FAILED
        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{GATEWAY}.retrieve_intent", new_callable=AsyncMock) as mock_retrieve,
        ):
            with pytest.raises(InvalidPaymentStateError):
                await complete_payment(mock_db, "pi_test_123")

        mock_retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_guardian_cannot_complete(self, mock_db, pending_payment):
        stranger = Actor(id=uuid4(), role=ROLE_GUARDIAN, email="other@test.com", name="Other")
        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(f"{GATEWAY}.retrieve_intent", new_callable=AsyncMock) as mock_retrieve,
        ):
            with pytest.raises(NotAuthorizedError):
                await complete_payment(mock_db, "pi_test_123", stranger)

        mock_retrieve.assert_not_called()
        mock_transition.assert_not_called()
        assert pending_payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_owning_guardian_completes(self, mock_db, pending_payment, guardian_actor):
        store = PaymentStoreDouble(pending_payment)
        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", AsyncMock(side_effect=store.transition_status)),
            patch(
                f"{GATEWAY}.retrieve_intent",
                AsyncMock(return_value=IntentStatus("succeeded", Decimal("25.00"))),
            ),
            patch(f"{SERVICE}.schedule_dispatch"),
        ):
            payment = await complete_payment(mock_db, "pi_test_123", guardian_actor)

        assert payment.status == PaymentStatus.COMPLETED



class TestFailPayment:
    @pytest.mark.asyncio
    async def test_pending_payment_fails(self, mock_db, pending_payment):
        store = PaymentStoreDouble(pending_payment)
        with (
            patch(f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", AsyncMock(side_effect=store.transition_status)),
        ):
            payment = await fail_payment(mock_db, "pi_test_123", "card_declined")

        assert payment.status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_completed_payment_cannot_fail(self, mock_db, completed_payment):
        with patch(
            f"{REPO}.get_by_gateway_reference", AsyncMock(return_value=completed_payment)
        ):
            with pytest.raises(InvalidPaymentStateError):
                await fail_payment(mock_db, "pi_test_123", "card_declined")

        assert completed_payment.status == PaymentStatus.COMPLETED


class TestRefundPayment:
    """Tests for refund_payment."""

    @pytest.mark.asyncio
    async def test_refund_pending_payment_rejected(self, mock_db, pending_payment, admin_actor):
        """Refunding a pending payment is rejected and leaves it pending."""
        with (
            patch(f"{REPO}.get_by_id", AsyncMock(return_value=pending_payment)),
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(f"{GATEWAY}.refund", new_callable=AsyncMock) as mock_refund,
        ):
            with pytest.raises(InvalidPaymentStateError):
                await refund_payment(
                    mock_db, pending_payment.id, None, "changed plans", admin_actor
                )

        assert pending_payment.status == PaymentStatus.PENDING
        mock_refund.assert_not_called()
        mock_transition.assert_not_called()

    @pytest.mark.asyncio
    async def test_only_admin_can_refund(self, mock_db, completed_payment, guardian_actor):
        with patch(f"{REPO}.get_by_id", AsyncMock(return_value=completed_payment)) as mock_get:
            with pytest.raises(NotAuthorizedError):
                await refund_payment(
                    mock_db, completed_payment.id, None, "changed plans", guardian_actor
                )

        mock_get.assert_not_called()

    @pytest.mark.asyncio
    async def test_full_refund(self, mock_db, completed_payment, admin_actor):
        store = PaymentStoreDouble(completed_payment)
        with (
            patch(f"{REPO}.get_by_id", AsyncMock(return_value=completed_payment)),
            patch(
                f"{REPO}.transition_status", AsyncMock(side_effect=store.transition_status)
            ) as mock_transition,
            patch(
                f"{GATEWAY}.refund",
                AsyncMock(return_value=RefundResult(refund_id="re_1", status="succeeded")),
            ) as mock_refund,
        ):
            payment = await refund_payment(
                mock_db, completed_payment.id, None, "event cancelled", admin_actor
            )

        assert payment.status == PaymentStatus.REFUNDED
        assert store.registration_payment_status == RegistrationPaymentStatus.REFUNDED
        assert mock_refund.call_args.args == ("pi_test_123", Decimal("25.00"), "event cancelled")

        values = mock_transition.call_args.kwargs
        assert values["refunded_amount"] == Decimal("25.00")
        refund = values["gateway_response"]["refund"]
        assert refund["refund_id"] == "re_1"
        assert refund["reason"] == "event cancelled"
        assert refund["refunded_by"] == str(admin_actor.id)

    @pytest.mark.asyncio
    async def test_refund_more_than_paid(self, mock_db, completed_payment, admin_actor):
        with (
            patch(f"{REPO}.get_by_id", AsyncMock(return_value=completed_payment)),
            patch(f"{GATEWAY}.refund", new_callable=AsyncMock) as mock_refund,
        ):
            with pytest.raises(InvalidPaymentAmountError):
                await refund_payment(
                    mock_db, completed_payment.id, Decimal("30"), "too much", admin_actor
                )

        mock_refund.assert_not_called()

    @pytest.mark.asyncio
    async def test_waived_payment_refund_skips_gateway(
        self, mock_db, completed_payment, admin_actor
    ):
        completed_payment.payment_method = PaymentMethod.WAIVED
        completed_payment.gateway_reference = None
        store = PaymentStoreDouble(completed_payment)
        with (
            patch(f"{REPO}.get_by_id", AsyncMock(return_value=completed_payment)),
            patch(f"{REPO}.transition_status", AsyncMock(side_effect=store.transition_status)),
            patch(f"{GATEWAY}.refund", new_callable=AsyncMock) as mock_refund,
        ):
            payment = await refund_payment(
                mock_db, completed_payment.id, None, "waived", admin_actor
            )

        mock_refund.assert_not_called()
        assert payment.status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_gateway_timeout_keeps_payment_completed(
        self, mock_db, completed_payment, admin_actor
    ):
        with (
            patch(f"{REPO}.get_by_id", AsyncMock(return_value=completed_payment)),
            patch(f"{REPO}.transition_status", new_callable=AsyncMock) as mock_transition,
            patch(f"{GATEWAY}.refund", AsyncMock(side_effect=GatewayTimeout("slow"))),
        ):
            with pytest.raises(GatewayTimeoutError):
                await refund_payment(mock_db, completed_payment.id, None, "reason", admin_actor)

        mock_transition.assert_not_called()
        assert completed_payment.status == PaymentStatus.COMPLETED


class TestSendOverduePaymentReminders:
    @pytest.mark.asyncio
    async def test_one_reminder_per_overdue_registration(self, mock_db, registration):
        with (
            patch(f"{REPO}.get_overdue_registrations", AsyncMock(return_value=[registration])),
            patch(f"{SERVICE}.dispatch_bulk", new_callable=AsyncMock) as mock_bulk,
        ):
            mock_bulk.return_value = []
            await send_overdue_payment_reminders(mock_db, now=datetime.now(UTC))

        kind, deliveries = mock_bulk.call_args.args
        assert kind == NotificationKind.PAYMENT_REMINDER
        assert len(deliveries) == 1
        recipient, payload = deliveries[0]
        assert recipient.account_id == registration.guardian.id
        assert payload["amount"] == Decimal("25.00")
        assert mock_bulk.call_args.kwargs["delay_seconds"] == settings.reminder_send_delay_seconds

    @pytest.mark.asyncio
    async def test_registration_without_guardian_skipped(self, mock_db, registration):
        registration.guardian = None
        with (
            patch(f"{REPO}.get_overdue_registrations", AsyncMock(return_value=[registration])),
            patch(f"{SERVICE}.dispatch_bulk", new_callable=AsyncMock) as mock_bulk,
        ):
            mock_bulk.return_value = []
            await send_overdue_payment_reminders(mock_db)

        assert mock_bulk.call_args.args[1] == []


class TestPaymentQueries:
    @pytest.mark.asyncio
    async def test_owner_sees_payment(self, mock_db, pending_payment, guardian_actor):
        with patch(f"{REPO}.get_by_id", AsyncMock(return_value=pending_payment)):
            payment = await get_payment(mock_db, pending_payment.id, guardian_actor)

        assert payment is pending_payment

    @pytest.mark.asyncio
    async def test_admin_sees_any_payment(self, mock_db, pending_payment, admin_actor):
        with patch(f"{REPO}.get_by_id", AsyncMock(return_value=pending_payment)):
            payment = await get_payment(mock_db, pending_payment.id, admin_actor)

        assert payment is pending_payment

    @pytest.mark.asyncio
    async def test_other_guardian_denied(self, mock_db, pending_payment):
        stranger = Actor(id=uuid4(), role=ROLE_GUARDIAN, email="other@test.com", name="Other")
        with patch(f"{REPO}.get_by_id", AsyncMock(return_value=pending_payment)):
            with pytest.raises(NotAuthorizedError):
                await get_payment(mock_db, pending_payment.id, stranger)

    @pytest.mark.asyncio
    async def test_unknown_payment(self, mock_db, admin_actor):
        with patch(f"{REPO}.get_by_id", AsyncMock(return_value=None)):
            with pytest.raises(PaymentNotFoundError):
                await get_payment(mock_db, uuid4(), admin_actor)

    @pytest.mark.asyncio
    async def test_history_is_paged(self, mock_db, pending_payment, guardian_actor):
        with patch(
            f"{REPO}.get_history_for_guardian",
            AsyncMock(return_value=([pending_payment], 3)),
        ) as mock_history:
            payments, total = await get_payment_history(
                mock_db, guardian_actor.id, limit=1, offset=2
            )

        assert payments == [pending_payment]
        assert total == 3
        assert mock_history.call_args.kwargs == {"limit": 1, "offset": 2}
