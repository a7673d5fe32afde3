"""
Notification Dispatcher

Fans a single domain notification out to the email, SMS and in-app
channels. Channel attempts run concurrently and are joined with
``asyncio.gather(..., return_exceptions=True)``: each attempt produces a
``ChannelResult`` (or an exception that is converted into one), so a failing
channel never prevents the others from running and failures are returned as
data to the caller.

Every channel task opens its own database session, which lets the tasks run
concurrently and keeps notification writes independent from the caller's
transaction. Business operations hand notifications off with
``schedule_dispatch`` and never wait for delivery.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from school_events.core.config import settings
from school_events.core.database import async_session_maker
from school_events.core.email import send_email
from school_events.core.sms import send_sms
from school_events.modules.shared import ServiceError

from . import repository
from .models import DeliveryStatus, EmailLog, Notification, NotificationKind, SmsLog
from .templates import RenderedNotification, render

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Any]


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


# ============================================
# Recipients and results
# ============================================


@dataclass(frozen=True)
class Recipient:
    """
    Notification recipient with its channel capabilities.

    ``has_email`` and ``has_phone`` are evaluated once from the contact data;
    channel selection only consults these flags.
    """

    account_id: UUID
    email: str | None = None
    phone: str | None = None
    name: str | None = None
    has_email: bool = field(init=False)
    has_phone: bool = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "has_email", bool(self.email and self.email.strip()))
        object.__setattr__(self, "has_phone", bool(self.phone and self.phone.strip()))

    @classmethod
    def from_user(cls, user: Any) -> "Recipient":
        """Build a recipient from a ``User`` account."""
        return cls(
            account_id=user.id,
            email=user.email,
            phone=user.phone,
            name=user.full_name,
        )

    def channels(self) -> list[Channel]:
        """Channels to attempt, honouring the global channel switches."""
        selected = []
        if self.has_email and settings.email_enabled:
            selected.append(Channel.EMAIL)
        if self.has_phone and settings.sms_enabled:
            selected.append(Channel.SMS)
        selected.append(Channel.IN_APP)
        return selected


@dataclass
class ChannelResult:
    """Outcome of one channel attempt."""

    channel: Channel
    success: bool
    status: DeliveryStatus
    record_id: UUID | None = None
    error: str | None = None
    cost: Decimal | None = None


@dataclass
class DispatchResult:
    """Aggregate outcome of one dispatch across all attempted channels."""

    dispatch_id: UUID
    kind: NotificationKind
    recipient_id: UUID
    channel_results: list[ChannelResult]

    @property
    def success(self) -> bool:
        """True if at least one channel succeeded."""
        return any(result.success for result in self.channel_results)

    def result_for(self, channel: Channel) -> ChannelResult | None:
        return next((r for r in self.channel_results if r.channel == channel), None)

    def summary(self) -> dict[str, str]:
        return {r.channel.value: r.status.value for r in self.channel_results}


class NotificationNotFoundError(ServiceError):
    def __init__(self):
        super().__init__(
            message="Notification not found",
            error_code="NOTIFICATION_NOT_FOUND",
            status_code=404,
        )


# ============================================
# Channels
# ============================================


async def _record(session_factory: SessionFactory, record: Any) -> UUID | None:
    """Write a channel log record. Store failures are logged, not raised."""
    try:
        async with session_factory() as db:
            saved = await repository.add_record(db, record)
            return saved.id
    except Exception as e:
        logger.error(f"Failed to write {type(record).__name__} record: {e}", exc_info=True)
        return None


async def _send_email_channel(
    session_factory: SessionFactory,
    dispatch_id: UUID,
    kind: NotificationKind,
    recipient: Recipient,
    rendered: RenderedNotification,
) -> ChannelResult:
    result = await send_email(recipient.email, rendered.subject, rendered.html)
    status = DeliveryStatus.SENT if result.success else DeliveryStatus.FAILED

    record_id = await _record(
        session_factory,
        EmailLog(
            user_id=recipient.account_id,
            dispatch_id=dispatch_id,
            kind=kind,
            recipient_email=recipient.email,
            subject=rendered.subject,
            status=status,
            provider_message_id=result.message_id,
            error_message=result.error,
        ),
    )
    return ChannelResult(
        channel=Channel.EMAIL,
        success=result.success,
        status=status,
        record_id=record_id,
        error=result.error,
    )


async def _send_sms_channel(
    session_factory: SessionFactory,
    dispatch_id: UUID,
    kind: NotificationKind,
    recipient: Recipient,
    rendered: RenderedNotification,
) -> ChannelResult:
    result = await send_sms(recipient.phone, rendered.sms_text)
    status = DeliveryStatus(result.status)
    cost = Decimal(str(result.cost))

    record_id = await _record(
        session_factory,
        SmsLog(
            user_id=recipient.account_id,
            dispatch_id=dispatch_id,
            kind=kind,
            recipient_phone=recipient.phone,
            message=rendered.sms_text,
            status=status,
            cost=cost,
            provider_message_id=result.provider_message_id,
            error_message=result.error,
        ),
    )
    return ChannelResult(
        channel=Channel.SMS,
        success=result.success,
        status=status,
        record_id=record_id,
        error=result.error,
        cost=cost,
    )


async def _create_in_app(
    session_factory: SessionFactory,
    dispatch_id: UUID,
    kind: NotificationKind,
    recipient: Recipient,
    rendered: RenderedNotification,
) -> ChannelResult:
    async with session_factory() as db:
        notification = await repository.add_record(
            db,
            Notification(
                user_id=recipient.account_id,
                dispatch_id=dispatch_id,
                kind=kind,
                title=rendered.title,
                message=rendered.message,
                type=rendered.type,
                category=rendered.category,
                action_url=rendered.action_url,
                status=DeliveryStatus.DELIVERED,
            ),
        )
    return ChannelResult(
        channel=Channel.IN_APP,
        success=True,
        status=DeliveryStatus.DELIVERED,
        record_id=notification.id,
    )


_CHANNEL_SENDERS = {
    Channel.EMAIL: _send_email_channel,
    Channel.SMS: _send_sms_channel,
    Channel.IN_APP: _create_in_app,
}


# ============================================
# Dispatch
# ============================================


async def dispatch(
    kind: NotificationKind,
    recipient: Recipient,
    payload: dict[str, Any],
    *,
    session_factory: SessionFactory = async_session_maker,
) -> DispatchResult:
    """
    Send one notification through every channel the recipient supports.

    Never raises: rendering problems and channel exceptions are reported
    as failed channel results.

    Returns:
        DispatchResult; ``success`` is True if at least one channel succeeded
    """
    dispatch_id = uuid.uuid4()
    channels = recipient.channels()

    try:
        rendered = render(kind, recipient.name, payload)
    except (KeyError, ValueError, ArithmeticError) as e:
        logger.error(f"Failed to render {kind.value} notification: {e}", exc_info=True)
        return DispatchResult(
            dispatch_id=dispatch_id,
            kind=kind,
            recipient_id=recipient.account_id,
            channel_results=[
                ChannelResult(
                    channel=channel,
                    success=False,
                    status=DeliveryStatus.FAILED,
                    error=f"Template rendering failed: {e}",
                )
                for channel in channels
            ],
        )

    outcomes = await asyncio.gather(
        *(
            _CHANNEL_SENDERS[channel](session_factory, dispatch_id, kind, recipient, rendered)
            for channel in channels
        ),
        return_exceptions=True,
    )

    channel_results: list[ChannelResult] = []
    for channel, outcome in zip(channels, outcomes, strict=True):
        if isinstance(outcome, BaseException):
            logger.error(
                f"{channel.value} channel failed for {kind.value} to {recipient.account_id}: "
                f"{outcome}",
                exc_info=outcome,
            )
            channel_results.append(
                ChannelResult(
                    channel=channel,
                    success=False,
                    status=DeliveryStatus.FAILED,
                    error=str(outcome),
                )
            )
        else:
            channel_results.append(outcome)

    result = DispatchResult(
        dispatch_id=dispatch_id,
        kind=kind,
        recipient_id=recipient.account_id,
        channel_results=channel_results,
    )

    if result.success:
        logger.info(f"Dispatched {kind.value} to {recipient.account_id}: {result.summary()}")
    else:
        logger.warning(
            f"All channels failed for {kind.value} to {recipient.account_id}: {result.summary()}"
        )
    return result


async def dispatch_bulk(
    kind: NotificationKind,
    deliveries: Sequence[tuple[Recipient, dict[str, Any]]],
    *,
    delay_seconds: float | None = None,
    session_factory: SessionFactory = async_session_maker,
) -> list[DispatchResult]:
    """
    Dispatch one notification kind to many recipients, one after another.

    A delay between recipients keeps the transports under their rate limits.

    Args:
        kind: Notification kind
        deliveries: (recipient, payload) pairs
        delay_seconds: Pause between recipients (default: bulk_send_delay_seconds)
    """
    delay = settings.bulk_send_delay_seconds if delay_seconds is None else delay_seconds
    results: list[DispatchResult] = []

    for index, (recipient, payload) in enumerate(deliveries):
        if index > 0 and delay > 0:
            await asyncio.sleep(delay)
        results.append(await dispatch(kind, recipient, payload, session_factory=session_factory))

    succeeded = sum(1 for r in results if r.success)
    logger.info(f"Bulk {kind.value} dispatch: {succeeded}/{len(results)} recipients reached")
    return results


# Strong references to in-flight background dispatches
_pending_dispatches: set[asyncio.Task] = set()


def schedule_dispatch(
    kind: NotificationKind,
    recipient: Recipient,
    payload: dict[str, Any],
) -> asyncio.Task:
    """
    Start a dispatch in the background and return immediately.

    The triggering operation does not wait for delivery; the task's
    ``DispatchResult`` is logged by ``dispatch``.
    """
    task = asyncio.create_task(dispatch(kind, recipient, payload))
    _pending_dispatches.add(task)
    task.add_done_callback(_pending_dispatches.discard)
    return task


async def drain_pending_dispatches(timeout: float = 10.0) -> None:
    """Wait for in-flight background dispatches, e.g. on shutdown."""
    if not _pending_dispatches:
        return
    logger.info(f"Waiting for {len(_pending_dispatches)} pending notification dispatches")
    await asyncio.wait(set(_pending_dispatches), timeout=timeout)


# ============================================
# In-app notification queries
# ============================================


async def list_notifications(
    db: AsyncSession,
    user_id: UUID,
    unread_only: bool = False,
) -> tuple[list[Notification], int]:
    """Return the account's notifications and its unread count."""
    notifications = await repository.list_for_user(db, user_id, unread_only=unread_only)
    unread = await repository.count_unread(db, user_id)
    return notifications, unread


async def mark_notification_read(db: AsyncSession, notification_id: UUID, user_id: UUID) -> None:
    if not await repository.mark_read(db, notification_id, user_id):
        raise NotificationNotFoundError()


async def get_notification_stats(db: AsyncSession, days: int = 30) -> dict:
    """Channel delivery statistics for the admin dashboard."""
    return await repository.get_stats(db, days)
