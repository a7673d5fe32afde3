"""
Payment Gateway

Narrow Stripe PaymentIntents client used by the payment orchestrator.

All Stripe SDK calls are blocking, so they run in a worker thread and are
bounded by GATEWAY_TIMEOUT_SECONDS. Outcomes are classified into two errors:

- ``GatewayError``: the gateway explicitly rejected the request
  (card declined, invalid request, authentication problem).
- ``GatewayTimeout``: the outcome is unknown (timeout, connection error,
  rate limiting, 5xx). Callers must leave local state untouched.

When STRIPE_SECRET_KEY is not configured the gateway is simulated: intents
are created with a ``sim_`` reference and every retrieval/refund succeeds
immediately.
"""

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar

import stripe

from school_events.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SIMULATED_PREFIX = "sim_"
STATUS_SUCCEEDED = "succeeded"
STATUS_CANCELED = "canceled"


class GatewayError(Exception):
    """The gateway explicitly rejected the request."""

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(message)


class GatewayTimeout(Exception):
    """The gateway call did not produce a conclusive answer."""


@dataclass
class IntentHandle:
    reference: str
    client_handle: str | None


@dataclass
class IntentStatus:
    status: str
    captured_amount: Decimal | None
    client_handle: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED

    @property
    def canceled(self) -> bool:
        return self.status == STATUS_CANCELED


@dataclass
class RefundResult:
    refund_id: str
    status: str
    simulated: bool = False


def is_gateway_configured() -> bool:
    """Check whether a real payment gateway key is configured."""
    return settings.gateway_configured


def is_simulated_reference(reference: str) -> bool:
    return reference.startswith(SIMULATED_PREFIX)


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to the integer cents Stripe expects."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_cents: int | None) -> Decimal | None:
    if amount_cents is None:
        return None
    return (Decimal(amount_cents) / 100).quantize(Decimal("0.01"))


async def _call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking Stripe call in a thread with a bounded timeout."""
    stripe.api_key = settings.stripe_secret_key
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=settings.gateway_timeout_seconds,
        )
    except TimeoutError as e:
        logger.error(f"Payment gateway call timed out after {settings.gateway_timeout_seconds}s")
        raise GatewayTimeout("Payment gateway did not respond in time") from e
    except (
        stripe.APIConnectionError,
        stripe.RateLimitError,
        stripe.APIError,
    ) as e:
        logger.error(f"Transient payment gateway error: {e}")
        raise GatewayTimeout(str(e)) from e
    except stripe.StripeError as e:
        logger.error(f"Payment gateway rejected request: {e}")
        raise GatewayError(str(e), code=getattr(e, "code", None)) from e


async def create_intent(
    amount: Decimal,
    currency: str,
    metadata: dict[str, str],
) -> IntentHandle:
    """
    Create a payment intent for the given amount.

    Returns:
        IntentHandle with the gateway reference and the client secret the
        payer uses to complete the payment out-of-band
    """
    if not is_gateway_configured():
        reference = f"{SIMULATED_PREFIX}pi_{secrets.token_hex(12)}"
        logger.info(f"SIMULATED payment intent {reference} for {amount} {currency}")
        return IntentHandle(reference=reference, client_handle=None)

    intent = await _call(
        stripe.PaymentIntent.create,
        amount=to_minor_units(amount),
        currency=currency.lower(),
        metadata=metadata,
        automatic_payment_methods={"enabled": True},
    )
    logger.info(f"Payment intent created: {intent.id}, status: {intent.status}")
    return IntentHandle(reference=intent.id, client_handle=intent.client_secret)


async def retrieve_intent(reference: str) -> IntentStatus:
    """Fetch the current status of a payment intent."""
    if not is_gateway_configured() or is_simulated_reference(reference):
        return IntentStatus(status=STATUS_SUCCEEDED, captured_amount=None)

    intent = await _call(stripe.PaymentIntent.retrieve, reference)
    return IntentStatus(
        status=intent.status,
        captured_amount=from_minor_units(getattr(intent, "amount_received", None)),
        client_handle=getattr(intent, "client_secret", None),
    )


async def refund(reference: str, amount: Decimal, reason: str | None = None) -> RefundResult:
    """
    Refund a captured payment intent, fully or partially.
    """
    if not is_gateway_configured() or is_simulated_reference(reference):
        refund_id = f"{SIMULATED_PREFIX}re_{secrets.token_hex(12)}"
        logger.info(f"SIMULATED refund {refund_id} of {amount} for {reference}")
        return RefundResult(refund_id=refund_id, status=STATUS_SUCCEEDED, simulated=True)

    kwargs: dict[str, Any] = {
        "payment_intent": reference,
        "amount": to_minor_units(amount),
        "metadata": {"reason": reason or ""},
    }
    result = await _call(stripe.Refund.create, **kwargs)
    logger.info(f"Refund created: {result.id}, status: {result.status}")
    return RefundResult(refund_id=result.id, status=result.status)


def parse_webhook_event(payload: bytes, signature: str) -> dict[str, Any]:
    """
    Verify a webhook signature and return the event.

    Raises:
        GatewayError: If webhooks are not configured or the signature is invalid
    """
    if not settings.stripe_webhook_secret:
        raise GatewayError("Webhook secret is not configured", code="webhook_not_configured")

    try:
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=settings.stripe_webhook_secret,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise GatewayError("Invalid webhook signature", code="invalid_signature") from e
    except ValueError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        raise GatewayError("Invalid webhook payload", code="invalid_payload") from e

    logger.info(f"Webhook verified: {event['id']} ({event['type']})")
    return {"id": event["id"], "type": event["type"], "object": event["data"]["object"]}
