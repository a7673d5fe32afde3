"""
Notifications Repository

Database operations for in-app notifications and channel audit logs.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import DeliveryStatus, EmailLog, Notification, SmsLog


async def add_record(
    db: AsyncSession, record: Notification | EmailLog | SmsLog
) -> Notification | EmailLog | SmsLog:
    """Persist a notification or channel log record."""
    db.add(record)
    await db.commit()
    await db.refresh(record)
    return record


async def list_for_user(
    db: AsyncSession,
    user_id: UUID,
    *,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    result = await db.execute(query.order_by(Notification.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def count_unread(db: AsyncSession, user_id: UUID) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
    )
    return result.scalar_one()


async def mark_read(db: AsyncSession, notification_id: UUID, user_id: UUID) -> bool:
    """
    Mark a notification as read.

    Returns:
        False if the notification does not exist or belongs to someone else
    """
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .values(is_read=True, read_at=datetime.now(UTC))
    )
    await db.commit()
    return result.rowcount > 0


async def get_stats(db: AsyncSession, days: int) -> dict:
    """
    Aggregate channel outcomes over the last ``days`` days.

    Returns:
        Dict with ``email``, ``sms`` and ``in_app`` sections
    """
    since = datetime.now(UTC) - timedelta(days=days)

    def _status_counts(model):
        return (
            func.count(model.id).label("total"),
            func.count(case((model.status == DeliveryStatus.SENT, 1))).label("sent"),
            func.count(case((model.status == DeliveryStatus.DELIVERED, 1))).label("delivered"),
            func.count(case((model.status == DeliveryStatus.FAILED, 1))).label("failed"),
        )

    email_row = (
        await db.execute(select(*_status_counts(EmailLog)).where(EmailLog.created_at >= since))
    ).one()

    sms_row = (
        await db.execute(
            select(
                *_status_counts(SmsLog),
                func.coalesce(func.sum(SmsLog.cost), 0).label("total_cost"),
            ).where(SmsLog.created_at >= since)
        )
    ).one()

    in_app_row = (
        await db.execute(
            select(
                func.count(Notification.id).label("total"),
                func.count(case((Notification.is_read.is_(False), 1))).label("unread"),
            ).where(Notification.created_at >= since)
        )
    ).one()

    return {
        "period_days": days,
        "email": {
            "total": email_row.total,
            "sent": email_row.sent,
            "delivered": email_row.delivered,
            "failed": email_row.failed,
        },
        "sms": {
            "total": sms_row.total,
            "sent": sms_row.sent,
            "delivered": sms_row.delivered,
            "failed": sms_row.failed,
            "total_cost": float(sms_row.total_cost),
        },
        "in_app": {
            "total": in_app_row.total,
            "unread": in_app_row.unread,
        },
    }
