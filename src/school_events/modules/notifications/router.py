"""
Notifications Router

Endpoints:
- GET /notifications - Current account's in-app notifications
- POST /notifications/{id}/read - Mark a notification as read
- GET /notifications/stats - Channel delivery statistics (admin)
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from school_events.core.auth import Actor, get_current_actor, get_current_admin
from school_events.core.database import get_db
from school_events.modules.shared import ServiceError, to_http_exception

from . import service
from .schemas import NotificationListResponse, NotificationResponse, NotificationStatsResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=NotificationListResponse, summary="List My Notifications")
async def list_notifications(
    unread_only: bool = Query(False, description="Only return unread notifications"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> NotificationListResponse:
    notifications, unread = await service.list_notifications(db, actor.id, unread_only)
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=unread,
    )


@router.post(
    "/{notification_id}/read",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Mark Notification Read",
)
async def mark_read(
    notification_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> None:
    try:
        await service.mark_notification_read(db, notification_id, actor.id)
    except ServiceError as e:
        raise to_http_exception(e) from e


@router.get(
    "/stats",
    response_model=NotificationStatsResponse,
    summary="Notification Delivery Statistics",
)
async def notification_stats(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
) -> NotificationStatsResponse:
    """Email, SMS and in-app delivery counts over the last ``days`` days."""
    stats = await service.get_notification_stats(db, days)
    logger.info(f"Notification stats requested by {admin}")
    return NotificationStatsResponse(**stats)
