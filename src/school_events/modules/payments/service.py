"""
Payment Orchestrator

Creates payments for registrations, reconciles them with the payment gateway
and keeps the registration's payment status in step.

Payment state machine (see ``repository.VALID_PAYMENT_TRANSITIONS``):
    pending -> completed   gateway confirmed capture
    pending -> failed      gateway explicitly rejected the payment
    completed -> refunded  explicit admin refund

Gateway timeouts and transient errors are inconclusive: the payment stays
``pending`` and the operation can be retried. A registration has at most one
pending payment, which retries reuse. Notification failures never affect
payment state.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from school_events.core import payment_gateway
from school_events.core.auth import Actor
from school_events.core.config import settings
from school_events.core.payment_gateway import GatewayError, GatewayTimeout
from school_events.modules.events import repository as events_repository
from school_events.modules.events.models import (
    EventRegistration,
    RegistrationPaymentStatus,
    RegistrationStatus,
)
from school_events.modules.notifications.models import NotificationKind
from school_events.modules.notifications.service import (
    DispatchResult,
    Recipient,
    dispatch_bulk,
    schedule_dispatch,
)
from school_events.modules.shared import NotAuthorizedError, ServiceError

from . import repository
from .models import Payment, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)


# ============================================
# Service Exceptions
# ============================================


class PaymentNotFoundError(ServiceError):
    def __init__(self):
        super().__init__(
            message="Payment not found",
            error_code="PAYMENT_NOT_FOUND",
            status_code=404,
        )


class InvalidPaymentStateError(ServiceError):
    """The payment's current status does not allow the requested operation."""

    def __init__(self, current_status: PaymentStatus, action: str):
        self.current_status = current_status
        super().__init__(
            message=f"Cannot {action} a payment that is {current_status.value}.",
            error_code="INVALID_PAYMENT_STATE",
            status_code=409,
        )


class PaymentNotCapturedError(ServiceError):
    """The gateway has not confirmed the funds; the payment stays pending."""

    def __init__(self, gateway_status: str | None = None):
        self.gateway_status = gateway_status
        super().__init__(
            message="The payment has not been captured yet. Please try again later.",
            error_code="PAYMENT_NOT_CAPTURED",
            status_code=402,
        )


class PaymentRejectedError(ServiceError):
    """The gateway explicitly rejected the request."""

    def __init__(self, message: str = "The payment was rejected by the payment provider."):
        super().__init__(
            message=message,
            error_code="PAYMENT_REJECTED",
            status_code=402,
        )


class GatewayTimeoutError(ServiceError):
    """The gateway outcome is unknown; local state was left unchanged."""

    def __init__(self):
        super().__init__(
            message="The payment provider did not respond. Please try again.",
            error_code="GATEWAY_TIMEOUT",
            status_code=504,
        )


class InvalidPaymentAmountError(ServiceError):
    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="INVALID_PAYMENT_AMOUNT",
            status_code=400,
        )


class PaymentInProgressError(ServiceError):
    def __init__(self):
        super().__init__(
            message="A payment for this registration is already being opened. Please try again.",
            error_code="PAYMENT_IN_PROGRESS",
            status_code=409,
        )


class RegistrationNotPayableError(ServiceError):
    """The registration is unknown or has no outstanding fee."""

    def __init__(self, message: str, status_code: int = 409):
        super().__init__(
            message=message,
            error_code="REGISTRATION_NOT_PAYABLE",
            status_code=status_code,
        )


@dataclass
class OpenedPayment:
    """A newly opened payment and the handle the payer completes it with."""

    payment: Payment
    client_handle: str | None = None


# ============================================
# Helpers
# ============================================


def _now() -> datetime:
    return datetime.now(UTC)


def payment_due_date(registration: EventRegistration, now: datetime | None = None) -> datetime:
    """Registration deadline, or ``payment_due_days`` from now when none is set."""
    deadline = registration.event.registration_deadline
    if deadline is not None:
        return deadline
    return (now or _now()) + timedelta(days=settings.payment_due_days)


def _owns_payment(actor: Actor, payment: Payment) -> bool:
    return actor.is_admin or payment.registration.guardian_id == actor.id


async def _resume_intent(db: AsyncSession, payment: Payment) -> OpenedPayment | None:
    """
    Hand back the client handle of a pending payment's existing intent.

    Returns None after failing the payment when the gateway has cancelled
    its intent, so the caller can open a fresh one.
    """
    try:
        intent = await payment_gateway.retrieve_intent(payment.gateway_reference)
    except GatewayTimeout as e:
        logger.warning(f"Could not resume payment {payment.id}, gateway inconclusive: {e}")
        raise GatewayTimeoutError() from e
    except GatewayError as e:
        logger.warning(f"Could not resume payment {payment.id}, gateway rejected: {e.code}")
        raise PaymentRejectedError() from e

    if not intent.canceled:
        logger.info(f"Resuming payment {payment.id} with reference {payment.gateway_reference}")
        return OpenedPayment(payment=payment, client_handle=intent.client_handle)

    await repository.transition_status(
        db,
        payment,
        PaymentStatus.FAILED,
        processed_at=_now(),
        gateway_response={**(payment.gateway_response or {}), "failure_reason": intent.status},
    )
    logger.info(f"Payment {payment.id} failed, gateway intent was cancelled")
    return None


def _notify_payment_confirmed(payment: Payment) -> None:
    registration = payment.registration
    if registration.guardian is None:
        logger.warning(f"Registration {registration.id} has no guardian, skipping confirmation")
        return

    schedule_dispatch(
        NotificationKind.PAYMENT_CONFIRMED,
        Recipient.from_user(registration.guardian),
        {
            "student_name": registration.student.full_name,
            "event_title": registration.event.title,
            "amount": payment.amount,
            "transaction_id": payment.gateway_reference,
        },
    )


# ============================================
# Operations
# ============================================


async def open_payment(db: AsyncSession, registration_id: UUID, amount: Decimal) -> OpenedPayment:
    """
    Open a payment for a registration.

    A zero amount completes immediately without contacting the gateway and
    marks the registration paid. Otherwise a gateway payment intent is
    created and its client handle returned.

    A registration has at most one pending payment. If one exists it is
    reused: an intent it already carries is resumed, and a payment left
    without an intent by an earlier timeout gets a new one.

    Raises:
        InvalidPaymentAmountError: If the amount is negative
        PaymentInProgressError: Another request is opening the same payment
        GatewayTimeoutError: Gateway did not answer; payment stays pending
        PaymentRejectedError: Gateway rejected the intent; payment is failed
    """
    amount = Decimal(amount)
    if amount < 0:
        raise InvalidPaymentAmountError("Payment amount cannot be negative.")

    payment = await repository.get_pending_for_registration(db, registration_id)
    if payment is not None and payment.gateway_reference is not None:
        resumed = await _resume_intent(db, payment)
        if resumed is not None:
            return resumed
        payment = None

    if payment is None:
        try:
            payment = await repository.create(
                db,
                registration_id=registration_id,
                amount=amount,
                currency=settings.payment_currency,
            )
        except IntegrityError as e:
            logger.info(f"Concurrent payment opening for registration {registration_id} rejected")
            raise PaymentInProgressError() from e
    else:
        logger.info(f"Retrying pending payment {payment.id} for registration {registration_id}")

    if amount == 0:
        await repository.transition_status(
            db,
            payment,
            PaymentStatus.COMPLETED,
            registration_payment_status=RegistrationPaymentStatus.PAID,
            payment_method=PaymentMethod.WAIVED,
            processed_at=_now(),
            gateway_response={"waived": True},
        )
        logger.info(f"Fee waived for registration {registration_id}, payment {payment.id}")
        return OpenedPayment(payment=payment)

    try:
        handle = await payment_gateway.create_intent(
            amount,
            settings.payment_currency,
            metadata={"payment_id": str(payment.id), "registration_id": str(registration_id)},
        )
    except GatewayTimeout as e:
        logger.warning(f"Payment {payment.id} left pending, gateway inconclusive: {e}")
        raise GatewayTimeoutError() from e
    except GatewayError as e:
        await repository.transition_status(
            db,
            payment,
            PaymentStatus.FAILED,
            processed_at=_now(),
            gateway_response={"error": e.message, "code": e.code},
        )
        logger.warning(f"Payment {payment.id} failed, gateway rejected intent: {e.code}")
        raise PaymentRejectedError() from e

    await repository.set_gateway_reference(
        db, payment, handle.reference, snapshot={"intent": handle.reference}
    )
    logger.info(f"Opened payment {payment.id} ({amount}) with reference {handle.reference}")
    return OpenedPayment(payment=payment, client_handle=handle.client_handle)


async def pay_registration(
    db: AsyncSession,
    registration_id: UUID,
    actor: Actor,
) -> OpenedPayment:
    """
    Open or resume the payment for one of the guardian's registrations.

    This is how a guardian pays when the payment could not be opened at
    registration time, after a rejected attempt, or when a class teacher
    registered the student.

    Raises:
        RegistrationNotPayableError: Unknown registration, or nothing is owed
        NotAuthorizedError: Actor is not the registration's guardian
    """
    registration = await events_repository.get_registration(db, registration_id)
    if registration is None:
        raise RegistrationNotPayableError("Registration not found", status_code=404)

    if not (actor.is_guardian and registration.guardian_id == actor.id):
        logger.warning(f"{actor} attempted to pay for registration {registration_id}")
        raise NotAuthorizedError("You can only pay for your own registrations.")

    if (
        registration.status != RegistrationStatus.REGISTERED
        or registration.payment_status != RegistrationPaymentStatus.PENDING
    ):
        raise RegistrationNotPayableError("This registration has no outstanding payment.")

    return await open_payment(db, registration_id, registration.payment_amount)


async def complete_payment(
    db: AsyncSession,
    gateway_reference: str,
    actor: Actor | None = None,
) -> Payment:
    """
    Confirm a payment with the gateway and mark it completed.

    Idempotent: an already completed payment is returned unchanged and no
    notification is sent again. ``actor`` is None for gateway webhooks;
    otherwise it must be the registration's guardian or an admin.

    Raises:
        PaymentNotFoundError: No payment carries this reference
        NotAuthorizedError: Actor does not own the payment
        InvalidPaymentStateError: Payment is failed or refunded
        PaymentNotCapturedError: Gateway has not captured the funds
        GatewayTimeoutError: Gateway did not answer
    """
    payment = await repository.get_by_gateway_reference(db, gateway_reference)
    if payment is None:
        raise PaymentNotFoundError()

    if actor is not None and not _owns_payment(actor, payment):
        logger.warning(f"{actor} attempted to complete payment {payment.id}")
        raise NotAuthorizedError("You can only complete your own payments.")

    if payment.status == PaymentStatus.COMPLETED:
        logger.info(f"Payment {payment.id} already completed, ignoring duplicate completion")
        return payment

    if not repository.can_transition(payment.status, PaymentStatus.COMPLETED):
        raise InvalidPaymentStateError(payment.status, "complete")

    try:
        intent = await payment_gateway.retrieve_intent(gateway_reference)
    except GatewayTimeout as e:
        logger.warning(f"Payment {payment.id} left pending, gateway inconclusive: {e}")
        raise GatewayTimeoutError() from e
    except GatewayError as e:
        logger.warning(f"Gateway could not confirm payment {payment.id}: {e.code}")
        raise PaymentNotCapturedError() from e

    if not intent.succeeded:
        logger.info(f"Payment {payment.id} not captured, gateway status: {intent.status}")
        raise PaymentNotCapturedError(intent.status)

    if intent.captured_amount is not None and intent.captured_amount < payment.amount:
        logger.warning(
            f"Payment {payment.id} captured {intent.captured_amount}, expected {payment.amount}"
        )
        raise PaymentNotCapturedError(intent.status)

    completed = await repository.transition_status(
        db,
        payment,
        PaymentStatus.COMPLETED,
        registration_payment_status=RegistrationPaymentStatus.PAID,
        payment_method=PaymentMethod.CARD,
        processed_at=_now(),
        gateway_response={
            "intent": gateway_reference,
            "status": intent.status,
            "captured_amount": (
                str(intent.captured_amount) if intent.captured_amount is not None else None
            ),
        },
    )

    if not completed:
        # Another request changed the status first
        if payment.status == PaymentStatus.COMPLETED:
            return payment
        raise InvalidPaymentStateError(payment.status, "complete")

    logger.info(f"Payment {payment.id} completed")
    _notify_payment_confirmed(payment)
    return payment


async def fail_payment(db: AsyncSession, gateway_reference: str, reason: str) -> Payment:
    """
    Record an explicit gateway rejection (e.g. a declined card reported by
    webhook). Already failed payments are returned unchanged.
    """
    payment = await repository.get_by_gateway_reference(db, gateway_reference)
    if payment is None:
        raise PaymentNotFoundError()

    if payment.status == PaymentStatus.FAILED:
        return payment

    if not repository.can_transition(payment.status, PaymentStatus.FAILED):
        raise InvalidPaymentStateError(payment.status, "fail")

    failed = await repository.transition_status(
        db,
        payment,
        PaymentStatus.FAILED,
        processed_at=_now(),
        gateway_response={**(payment.gateway_response or {}), "failure_reason": reason},
    )
    if not failed and payment.status != PaymentStatus.FAILED:
        raise InvalidPaymentStateError(payment.status, "fail")

    logger.info(f"Payment {payment.id} failed: {reason}")
    return payment


async def refund_payment(
    db: AsyncSession,
    payment_id: UUID,
    amount: Decimal | None,
    reason: str,
    actor: Actor,
) -> Payment:
    """
    Refund a completed payment (admin only).

    Args:
        amount: Amount to refund; defaults to the full payment amount

    Raises:
        NotAuthorizedError: Actor is not an admin
        PaymentNotFoundError: Unknown payment
        InvalidPaymentStateError: Payment is not completed
        InvalidPaymentAmountError: Amount is not positive or exceeds the payment
        GatewayTimeoutError / PaymentRejectedError: Gateway refund failed;
            the payment stays completed
    """
    if not actor.is_admin:
        logger.warning(f"Refund of payment {payment_id} denied for {actor}")
        raise NotAuthorizedError("Only administrators can refund payments.")

    payment = await repository.get_by_id(db, payment_id)
    if payment is None:
        raise PaymentNotFoundError()

    if not repository.can_transition(payment.status, PaymentStatus.REFUNDED):
        logger.warning(f"Refund rejected for payment {payment.id} in {payment.status.value}")
        raise InvalidPaymentStateError(payment.status, "refund")

    refund_amount = payment.amount if amount is None else Decimal(amount)
    if refund_amount <= 0 or refund_amount > payment.amount:
        raise InvalidPaymentAmountError(
            f"Refund amount must be greater than 0 and at most {payment.amount}."
        )

    if payment.payment_method == PaymentMethod.WAIVED or payment.gateway_reference is None:
        refund_id, refund_status, simulated = None, "succeeded", True
    else:
        try:
            result = await payment_gateway.refund(payment.gateway_reference, refund_amount, reason)
        except GatewayTimeout as e:
            logger.warning(f"Refund of payment {payment.id} inconclusive: {e}")
            raise GatewayTimeoutError() from e
        except GatewayError as e:
            logger.warning(f"Refund of payment {payment.id} rejected by gateway: {e.code}")
            raise PaymentRejectedError("The refund was rejected by the payment provider.") from e
        refund_id, refund_status, simulated = result.refund_id, result.status, result.simulated

    refunded_at = _now()
    snapshot = {
        **(payment.gateway_response or {}),
        "refund": {
            "refund_id": refund_id,
            "amount": str(refund_amount),
            "status": refund_status,
            "reason": reason,
            "refunded_by": str(actor.id),
            "refunded_at": refunded_at.isoformat(),
            "simulated": simulated,
        },
    }

    refunded = await repository.transition_status(
        db,
        payment,
        PaymentStatus.REFUNDED,
        registration_payment_status=RegistrationPaymentStatus.REFUNDED,
        refunded_amount=refund_amount,
        refunded_at=refunded_at,
        gateway_response=snapshot,
    )
    if not refunded:
        raise InvalidPaymentStateError(payment.status, "refund")

    logger.info(f"Payment {payment.id} refunded ({refund_amount}) by {actor}")
    return payment


# ============================================
# Queries and sweeps
# ============================================


async def send_overdue_payment_reminders(
    db: AsyncSession,
    now: datetime | None = None,
) -> list[DispatchResult]:
    """
    Send one PaymentReminder per registration whose payment is overdue.

    Overdue: payment still pending, the event's registration deadline has
    passed and the event has not started. Reminders are not de-duplicated
    across runs; every run notifies every overdue registration.
    """
    now = now or _now()
    registrations = await repository.get_overdue_registrations(db, now)

    deliveries: list[tuple[Recipient, dict[str, Any]]] = []
    for registration in registrations:
        if registration.guardian is None:
            logger.warning(f"Overdue registration {registration.id} has no guardian, skipping")
            continue
        event = registration.event
        deliveries.append(
            (
                Recipient.from_user(registration.guardian),
                {
                    "student_name": registration.student.full_name,
                    "event_title": event.title,
                    "amount": registration.payment_amount,
                    "registration_deadline": event.registration_deadline.strftime("%B %d, %Y"),
                    "event_date": event.start_date.strftime("%B %d, %Y"),
                },
            )
        )

    logger.info(f"Found {len(registrations)} overdue registrations, sending {len(deliveries)}")
    return await dispatch_bulk(
        NotificationKind.PAYMENT_REMINDER,
        deliveries,
        delay_seconds=settings.reminder_send_delay_seconds,
    )


async def get_pending_payments(db: AsyncSession, guardian_id: UUID) -> list[Payment]:
    return await repository.get_pending_for_guardian(db, guardian_id)


async def get_payment_stats(db: AsyncSession, days: int = 30) -> dict:
    return await repository.get_stats(db, days)


async def get_payment_history(
    db: AsyncSession,
    guardian_id: UUID,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Payment], int]:
    """All payments for a guardian's registrations, newest first, with the total count."""
    return await repository.get_history_for_guardian(db, guardian_id, limit=limit, offset=offset)


async def get_payment(db: AsyncSession, payment_id: UUID, actor: Actor) -> Payment:
    """
    Get one payment.

    Raises:
        PaymentNotFoundError: Unknown payment
        NotAuthorizedError: Actor is neither the registration's guardian nor an admin
    """
    payment = await repository.get_by_id(db, payment_id)
    if payment is None:
        raise PaymentNotFoundError()

    if not _owns_payment(actor, payment):
        logger.warning(f"{actor} attempted to view payment {payment_id}")
        raise NotAuthorizedError("You can only view your own payments.")

    return payment
