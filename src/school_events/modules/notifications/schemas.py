"""
Notifications Schemas
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .models import NotificationCategory, NotificationKind, NotificationType


class NotificationResponse(BaseModel):
    """In-app notification as shown in the notification list."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: NotificationKind
    title: str
    message: str
    type: NotificationType
    category: NotificationCategory
    action_url: str | None = None
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int = Field(..., ge=0)


class ChannelStats(BaseModel):
    total: int = Field(..., ge=0)
    sent: int = Field(..., ge=0)
    delivered: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)


class SmsChannelStats(ChannelStats):
    total_cost: float = Field(..., ge=0, description="Total SMS cost over the period")


class InAppStats(BaseModel):
    total: int = Field(..., ge=0)
    unread: int = Field(..., ge=0)


class NotificationStatsResponse(BaseModel):
    """Delivery statistics per channel for the admin dashboard."""

    period_days: int
    email: ChannelStats
    sms: SmsChannelStats
    in_app: InAppStats
