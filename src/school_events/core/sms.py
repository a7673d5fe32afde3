"""
SMS Service

Narrow SMS transport used by the notification dispatcher.

When SMS_API_KEY is configured, messages are posted to the provider's HTTP
API with httpx. Without a key the transport runs in simulated mode so that
demo deployments still exercise the SMS channel and its audit log.
The transport never raises: every outcome is returned as an ``SmsResult``
carrying the delivery status and cost for audit logging.
"""

import logging
from dataclasses import dataclass

import httpx

from school_events.core.config import settings

logger = logging.getLogger(__name__)

SMS_TIMEOUT_SECONDS = 10.0
MAX_SMS_LENGTH = 480  # three concatenated segments


@dataclass
class SmsResult:
    """Outcome of a single SMS send."""

    success: bool
    status: str  # "sent" | "failed" | "delivered"
    cost: float = 0.0
    provider_message_id: str | None = None
    error: str | None = None
    simulated: bool = False


def is_sms_configured() -> bool:
    """Check whether an SMS provider API key is configured."""
    return bool(settings.sms_api_key)


def _truncate(text: str) -> str:
    if len(text) <= MAX_SMS_LENGTH:
        return text
    return text[: MAX_SMS_LENGTH - 3] + "..."


async def _send_simulated(to_phone: str, text: str) -> SmsResult:
    logger.info(f"SIMULATED SMS TO: {to_phone} | {len(text)} chars")
    return SmsResult(
        success=True,
        status="sent",
        cost=settings.sms_cost_per_message,
        simulated=True,
    )


async def send_sms(to_phone: str, text: str) -> SmsResult:
    """
    Send an SMS message.

    Args:
        to_phone: Recipient phone number (E.164 preferred)
        text: Message text, truncated to the provider limit

    Returns:
        SmsResult with status, cost and any provider error
    """
    body = _truncate(text)

    if not is_sms_configured():
        return await _send_simulated(to_phone, body)

    try:
        async with httpx.AsyncClient(timeout=SMS_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{settings.sms_api_url.rstrip('/')}/messages",
                headers={"Authorization": f"Bearer {settings.sms_api_key}"},
                json={"from": settings.sms_from_number, "to": to_phone, "text": body},
            )
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"SMS provider rejected message to {to_phone}: {e.response.status_code}")
        return SmsResult(
            success=False,
            status="failed",
            error=f"Provider returned HTTP {e.response.status_code}",
        )
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Failed to send SMS to {to_phone}: {e}")
        return SmsResult(success=False, status="failed", error=str(e))

    provider_status = data.get("status", "sent")
    accepted = provider_status in ("sent", "queued", "delivered")
    logger.info(f"SMS to {to_phone} accepted={accepted}, status: {provider_status}")
    if not accepted:
        status = "failed"
    elif provider_status == "delivered":
        status = "delivered"
    else:
        status = "sent"
    return SmsResult(
        success=accepted,
        status=status,
        cost=float(data.get("cost", settings.sms_cost_per_message)),
        provider_message_id=data.get("id"),
    )
