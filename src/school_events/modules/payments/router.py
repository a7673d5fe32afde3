"""
Payments Router

Endpoints:
- POST /payments/registrations/{id}/pay - Open or resume a registration's payment
- POST /payments/complete - Confirm a payment by gateway reference
- POST /payments/webhook - Gateway webhook (signature verified)
- POST /payments/{id}/refund - Refund a completed payment (admin)
- GET /payments/pending - Current guardian's pending payments
- GET /payments/history - Current guardian's payment history
- GET /payments/stats - Payment statistics (admin)
- GET /payments/{id} - Payment detail (owner or admin)
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from school_events.core.auth import Actor, get_current_actor, get_current_admin
from school_events.core.database import get_db
from school_events.core.payment_gateway import GatewayError, parse_webhook_event
from school_events.modules.shared import ServiceError, to_http_exception

from . import service
from .schemas import (
    CompletePaymentRequest,
    OpenPaymentResponse,
    PaymentHistoryResponse,
    PaymentResponse,
    PaymentStatsResponse,
    RefundRequest,
    WebhookAck,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/registrations/{registration_id}/pay",
    response_model=OpenPaymentResponse,
    summary="Pay Registration",
    description="""
Open the payment for one of your registrations, or resume the one already
opened. Use this to pay after a failed or interrupted attempt, or when a
class teacher registered your child.
""",
)
async def pay_registration(
    registration_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> OpenPaymentResponse:
    try:
        opened = await service.pay_registration(db, registration_id, actor)
    except ServiceError as e:
        logger.warning(f"Payment of registration {registration_id} failed: {e.error_code}")
        raise to_http_exception(e) from e
    return OpenPaymentResponse(
        payment=PaymentResponse.model_validate(opened.payment),
        client_secret=opened.client_handle,
    )


@router.post(
    "/complete",
    response_model=PaymentResponse,
    summary="Complete Payment",
    description="""
Confirm that the payer finished the payment flow.

The payment is verified with the payment provider before it is marked
completed. Calling this endpoint again for a completed payment returns the
payment unchanged.
""",
)
async def complete_payment(
    data: CompletePaymentRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaymentResponse:
    try:
        payment = await service.complete_payment(db, data.gateway_reference, actor)
    except ServiceError as e:
        logger.warning(f"Payment completion by {actor} failed: {e.error_code}")
        raise to_http_exception(e) from e
    return PaymentResponse.model_validate(payment)


@router.post("/webhook", response_model=WebhookAck, summary="Payment Provider Webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    payload = await request.body()
    try:
        event = parse_webhook_event(payload, stripe_signature)
    except GatewayError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "INVALID_WEBHOOK", "message": e.message},
        ) from e

    reference = event["object"].get("id")
    try:
        if event["type"] == "payment_intent.succeeded":
            await service.complete_payment(db, reference)
        elif event["type"] in ("payment_intent.payment_failed", "payment_intent.canceled"):
            error = event["object"].get("last_payment_error") or {}
            await service.fail_payment(db, reference, error.get("message") or event["type"])
        else:
            logger.debug(f"Ignoring webhook event type {event['type']}")
            return WebhookAck(event_type=event["type"], applied=False)
    except (service.PaymentNotFoundError, service.InvalidPaymentStateError) as e:
        # Redelivery cannot change the outcome
        logger.warning(f"Webhook {event['id']} for {reference} ignored: {e.error_code}")
        return WebhookAck(event_type=event["type"], applied=False)
    except ServiceError as e:
        logger.warning(f"Webhook {event['id']} for {reference} not applied: {e.error_code}")
        raise to_http_exception(e) from e

    return WebhookAck(event_type=event["type"])


@router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    summary="Refund Payment",
)
async def refund_payment(
    payment_id: UUID,
    data: RefundRequest,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
) -> PaymentResponse:
    """
    Refund a completed payment, fully or partially.

    Raises:
        HTTPException 409: If the payment is not completed
    """
    try:
        payment = await service.refund_payment(db, payment_id, data.amount, data.reason, admin)
    except ServiceError as e:
        logger.warning(f"Refund of payment {payment_id} failed: {e.error_code}")
        raise to_http_exception(e) from e
    return PaymentResponse.model_validate(payment)


@router.get("/pending", response_model=list[PaymentResponse], summary="My Pending Payments")
async def pending_payments(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[PaymentResponse]:
    payments = await service.get_pending_payments(db, actor.id)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get("/stats", response_model=PaymentStatsResponse, summary="Payment Statistics")
async def payment_stats(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
) -> PaymentStatsResponse:
    return PaymentStatsResponse(**await service.get_payment_stats(db, days))


@router.get("/history", response_model=PaymentHistoryResponse, summary="My Payment History")
async def payment_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaymentHistoryResponse:
    payments, total = await service.get_payment_history(db, actor.id, limit, offset)
    return PaymentHistoryResponse(
        payments=[PaymentResponse.model_validate(p) for p in payments],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{payment_id}", response_model=PaymentResponse, summary="Payment Details")
async def get_payment(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaymentResponse:
    try:
        payment = await service.get_payment(db, payment_id, actor)
    except ServiceError as e:
        raise to_http_exception(e) from e
    return PaymentResponse.model_validate(payment)
