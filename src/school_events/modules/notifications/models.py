"""
Notification Models

One row per channel attempt: ``notifications`` (in-app), ``email_logs`` and
``sms_logs``. Rows written for the same dispatch share a ``dispatch_id``.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from school_events.modules.shared import BaseModel


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class NotificationKind(str, enum.Enum):
    """Domain events that produce notifications."""

    REGISTRATION_CREATED = "registration_created"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_CONFIRMED = "payment_confirmed"
    ACCOUNT_APPROVED = "account_approved"
    EVENT_REMINDER = "event_reminder"


class NotificationType(str, enum.Enum):
    """Visual style of an in-app notification."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    REMINDER = "reminder"


class NotificationCategory(str, enum.Enum):
    GENERAL = "general"
    EVENT = "event"
    PAYMENT = "payment"
    SYSTEM = "system"
    REMINDER = "reminder"


class DeliveryStatus(str, enum.Enum):
    """Delivery status of a single channel attempt."""

    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


_kind_enum = Enum(NotificationKind, name="notification_kind", values_callable=_enum_values)
_delivery_enum = Enum(DeliveryStatus, name="delivery_status", values_callable=_enum_values)


class Notification(BaseModel):
    """In-app notification shown in the recipient's notification list."""

    __tablename__ = "notifications"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    dispatch_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    kind: Mapped[NotificationKind] = mapped_column(_kind_enum, nullable=False)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, name="notification_type", values_callable=_enum_values),
        nullable=False,
        default=NotificationType.INFO,
    )
    category: Mapped[NotificationCategory] = mapped_column(
        Enum(NotificationCategory, name="notification_category", values_callable=_enum_values),
        nullable=False,
        default=NotificationCategory.GENERAL,
    )
    action_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    status: Mapped[DeliveryStatus] = mapped_column(
        _delivery_enum, nullable=False, default=DeliveryStatus.DELIVERED
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_notifications_user_id_is_read", "user_id", "is_read"),)


class EmailLog(BaseModel):
    """Audit record of one email send attempt."""

    __tablename__ = "email_logs"

    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    dispatch_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    kind: Mapped[NotificationKind] = mapped_column(_kind_enum, nullable=False)

    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(_delivery_enum, nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class SmsLog(BaseModel):
    """Audit record of one SMS send attempt, including its cost."""

    __tablename__ = "sms_logs"

    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    dispatch_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    kind: Mapped[NotificationKind] = mapped_column(_kind_enum, nullable=False)

    recipient_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(_delivery_enum, nullable=False)
    cost: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False, default=Decimal("0"))
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
