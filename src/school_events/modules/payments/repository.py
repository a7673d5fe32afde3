"""
Payments Repository

Database operations for payments.

Status changes are conditional UPDATEs (``WHERE status = <expected>``), so of
two concurrent requests for the same transition exactly one succeeds. The
registration's payment status is updated in the same transaction.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import Update, case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from school_events.modules.events.models import (
    Event,
    EventRegistration,
    EventStatus,
    RegistrationPaymentStatus,
    RegistrationStatus,
)

from .models import Payment, PaymentStatus

# Payment state machine. Failed and refunded payments are final.
VALID_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.COMPLETED,  # Gateway confirmed capture
        PaymentStatus.FAILED,  # Gateway rejected the payment
    },
    PaymentStatus.COMPLETED: {
        PaymentStatus.REFUNDED,  # Explicit admin refund
    },
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}


class InvalidPaymentTransitionError(ValueError):
    """Raised when a payment status transition is not allowed."""

    def __init__(self, current_status: PaymentStatus, new_status: PaymentStatus):
        self.current_status = current_status
        self.new_status = new_status
        valid_transitions = VALID_PAYMENT_TRANSITIONS.get(current_status, set())
        super().__init__(
            f"Invalid payment transition: {current_status.value} -> {new_status.value}. "
            f"Valid transitions: {sorted(s.value for s in valid_transitions)}"
        )


def can_transition(current_status: PaymentStatus, new_status: PaymentStatus) -> bool:
    return new_status in VALID_PAYMENT_TRANSITIONS.get(current_status, set())


def transition_statement(
    payment_id: UUID,
    current_status: PaymentStatus,
    new_status: PaymentStatus,
    **values: Any,
) -> Update:
    """
    Build the conditional status update for one transition.

    Raises:
        InvalidPaymentTransitionError: If the state machine forbids the transition
    """
    if not can_transition(current_status, new_status):
        raise InvalidPaymentTransitionError(current_status, new_status)

    return (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == current_status)
        .values(status=new_status, **values)
        .returning(Payment.id)
    )


async def create(
    db: AsyncSession,
    *,
    registration_id: UUID,
    amount: Decimal,
    currency: str,
) -> Payment:
    """
    Create a pending payment.

    Raises:
        IntegrityError: If the registration already has a pending payment
            (the transaction is rolled back)
    """
    payment = Payment(
        registration_id=registration_id,
        amount=amount,
        currency=currency,
        status=PaymentStatus.PENDING,
    )
    db.add(payment)

    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise

    await db.commit()
    await db.refresh(payment)
    return payment


async def get_by_id(db: AsyncSession, id: UUID) -> Payment | None:
    """Get payment by ID."""
    return await db.get(Payment, id)


async def get_pending_for_registration(db: AsyncSession, registration_id: UUID) -> Payment | None:
    result = await db.execute(
        select(Payment).where(
            Payment.registration_id == registration_id,
            Payment.status == PaymentStatus.PENDING,
        )
    )
    return result.scalar_one_or_none()


async def get_by_gateway_reference(db: AsyncSession, reference: str) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.gateway_reference == reference))
    return result.scalar_one_or_none()


async def set_gateway_reference(
    db: AsyncSession,
    payment: Payment,
    reference: str,
    snapshot: dict | None = None,
) -> Payment:
    """Attach the gateway's intent reference to a pending payment."""
    payment.gateway_reference = reference
    payment.gateway_response = snapshot
    await db.commit()
    await db.refresh(payment)
    return payment


async def transition_status(
    db: AsyncSession,
    payment: Payment,
    new_status: PaymentStatus,
    *,
    registration_payment_status: RegistrationPaymentStatus | None = None,
    **values: Any,
) -> bool:
    """
    Move a payment to ``new_status`` if it is still in its loaded status.

    Args:
        db: Database session
        payment: Payment as loaded by the caller
        new_status: Target status
        registration_payment_status: Registration payment status to set in
            the same transaction
        **values: Additional payment columns to update

    Returns:
        True if this call performed the transition, False if the payment's
        status changed concurrently (nothing is written)

    Raises:
        InvalidPaymentTransitionError: If the state machine forbids the transition
    """
    statement = transition_statement(payment.id, payment.status, new_status, **values)
    result = await db.execute(statement)

    if result.scalar_one_or_none() is None:
        await db.rollback()
        await db.refresh(payment)
        return False

    if registration_payment_status is not None:
        await db.execute(
            update(EventRegistration)
            .where(EventRegistration.id == payment.registration_id)
            .values(payment_status=registration_payment_status)
        )

    await db.commit()
    await db.refresh(payment)
    return True


async def get_overdue_registrations(db: AsyncSession, now: datetime) -> list[EventRegistration]:
    """
    Registrations still awaiting payment after their event's registration
    deadline, for active events that have not started yet.
    """
    result = await db.execute(
        select(EventRegistration)
        .join(Event, EventRegistration.event_id == Event.id)
        .where(
            EventRegistration.payment_status == RegistrationPaymentStatus.PENDING,
            EventRegistration.status == RegistrationStatus.REGISTERED,
            Event.status == EventStatus.ACTIVE,
            Event.registration_deadline.is_not(None),
            Event.registration_deadline < now,
            Event.start_date > now,
        )
        .order_by(Event.start_date, EventRegistration.created_at)
    )
    return list(result.scalars().all())


async def get_pending_for_guardian(db: AsyncSession, guardian_id: UUID) -> list[Payment]:
    """Pending payments for registrations owned by a guardian."""
    result = await db.execute(
        select(Payment)
        .join(EventRegistration, Payment.registration_id == EventRegistration.id)
        .where(
            EventRegistration.guardian_id == guardian_id,
            EventRegistration.status == RegistrationStatus.REGISTERED,
            Payment.status == PaymentStatus.PENDING,
        )
        .order_by(Payment.created_at.desc())
    )
    return list(result.scalars().all())


async def get_history_for_guardian(
    db: AsyncSession,
    guardian_id: UUID,
    *,
    limit: int,
    offset: int,
) -> tuple[list[Payment], int]:
    """
    Page through all payments for a guardian's registrations, newest first.

    Returns:
        Tuple of (payments on this page, total payment count)
    """
    owned = Payment.registration_id.in_(
        select(EventRegistration.id).where(EventRegistration.guardian_id == guardian_id)
    )

    total = await db.scalar(select(func.count(Payment.id)).where(owned))
    result = await db.execute(
        select(Payment)
        .where(owned)
        .order_by(Payment.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total or 0


async def get_stats(db: AsyncSession, days: int) -> dict:
    """
    Payment counts and amounts over the last ``days`` days.
    """
    since = datetime.now(UTC) - timedelta(days=days)

    def _count(status: PaymentStatus):
        return func.count(case((Payment.status == status, 1)))

    row = (
        await db.execute(
            select(
                func.count(Payment.id).label("total"),
                _count(PaymentStatus.PENDING).label("pending"),
                _count(PaymentStatus.COMPLETED).label("completed"),
                _count(PaymentStatus.FAILED).label("failed"),
                _count(PaymentStatus.REFUNDED).label("refunded"),
                func.coalesce(
                    func.sum(case((Payment.status == PaymentStatus.COMPLETED, Payment.amount))),
                    0,
                ).label("total_collected"),
                func.coalesce(func.sum(Payment.refunded_amount), 0).label("total_refunded"),
            ).where(Payment.created_at >= since)
        )
    ).one()

    return {
        "period_days": days,
        "total": row.total,
        "pending": row.pending,
        "completed": row.completed,
        "failed": row.failed,
        "refunded": row.refunded,
        "total_collected": Decimal(row.total_collected),
        "total_refunded": Decimal(row.total_refunded),
    }
