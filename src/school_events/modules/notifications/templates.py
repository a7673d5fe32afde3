"""
Notification templates.

Each notification kind renders into three channel-specific forms: an HTML
email, a short SMS text and an in-app title/message. Payload values are
escaped before they are placed into HTML.
"""

from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import Any

from school_events.core.config import settings
from school_events.core.email import render_email_layout

from .models import NotificationCategory, NotificationKind, NotificationType


@dataclass(frozen=True)
class RenderedNotification:
    subject: str
    html: str
    sms_text: str
    title: str
    message: str
    type: NotificationType
    category: NotificationCategory
    action_url: str | None = None


def format_amount(amount: Any) -> str:
    """Format a money amount with the configured currency code."""
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    return f"{value} {settings.payment_currency.upper()}"


def _url(path: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}{path}"


def _info_box(rows: list[tuple[str, Any]]) -> str:
    lines = "".join(
        f"<p><strong>{escape(label)}:</strong> {escape(str(value))}</p>"
        for label, value in rows
        if value is not None
    )
    return f'<div class="info-box">{lines}</div>'


def _button(url: str, label: str) -> str:
    return (
        f'<p style="text-align: center;">'
        f'<a href="{escape(url)}" class="button">{escape(label)}</a></p>'
    )


def _registration_created(recipient_name: str, p: dict[str, Any]) -> RenderedNotification:
    student, event = p["student_name"], p["event_title"]
    fee = Decimal(str(p.get("fee") or 0))
    url = _url("/registrations/mine")

    if fee > 0:
        payment_line = f"A fee of {format_amount(fee)} is due by {p.get('payment_due_date')}."
    else:
        payment_line = "There is no fee for this event."

    body = (
        f"<p>Hello {escape(recipient_name)},</p>"
        f"<p>{escape(student)} has been registered for <strong>{escape(event)}</strong>.</p>"
        + _info_box(
            [
                ("Event", event),
                ("Date", p.get("event_date")),
                ("Location", p.get("location")),
                ("Fee", format_amount(fee)),
                ("Payment due", p.get("payment_due_date") if fee > 0 else None),
            ]
        )
        + _button(url, "View Registration")
    )
    return RenderedNotification(
        subject=f"Registration confirmed: {event}",
        html=render_email_layout("Registration Confirmed", body),
        sms_text=f"{student} is registered for {event}. {payment_line}",
        title="Event registration confirmed",
        message=f"{student} has been registered for {event}. {payment_line}",
        type=NotificationType.SUCCESS,
        category=NotificationCategory.EVENT,
        action_url=url,
    )


def _payment_reminder(recipient_name: str, p: dict[str, Any]) -> RenderedNotification:
    student, event = p["student_name"], p["event_title"]
    amount = format_amount(p.get("amount"))
    url = _url("/payments/pending")

    body = (
        f"<p>Hello {escape(recipient_name)},</p>"
        f"<p>The payment for {escape(student)}'s registration for "
        f"<strong>{escape(event)}</strong> is overdue.</p>"
        + _info_box(
            [
                ("Amount due", amount),
                ("Registration deadline", p.get("registration_deadline")),
                ("Event date", p.get("event_date")),
            ]
        )
        + "<p>Please complete the payment before the event starts.</p>"
        + _button(url, "Pay Now")
    )
    return RenderedNotification(
        subject=f"Payment reminder: {event}",
        html=render_email_layout("Payment Reminder", body),
        sms_text=f"Reminder: payment of {amount} for {student} ({event}) is overdue.",
        title="Payment overdue",
        message=f"Payment of {amount} for {student}'s registration for {event} is overdue.",
        type=NotificationType.WARNING,
        category=NotificationCategory.PAYMENT,
        action_url=url,
    )


def _payment_confirmed(recipient_name: str, p: dict[str, Any]) -> RenderedNotification:
    student, event = p["student_name"], p["event_title"]
    amount = format_amount(p.get("amount"))
    url = _url("/registrations/mine")

    body = (
        f"<p>Hello {escape(recipient_name)},</p>"
        f"<p>We received your payment for {escape(student)}'s registration for "
        f"<strong>{escape(event)}</strong>.</p>"
        + _info_box(
            [
                ("Amount", amount),
                ("Transaction", p.get("transaction_id")),
            ]
        )
        + _button(url, "View Registration")
    )
    return RenderedNotification(
        subject=f"Payment received: {event}",
        html=render_email_layout("Payment Confirmed", body),
        sms_text=f"Payment of {amount} received for {student} ({event}). Thank you!",
        title="Payment confirmed",
        message=f"Payment of {amount} for {student}'s registration for {event} was received.",
        type=NotificationType.SUCCESS,
        category=NotificationCategory.PAYMENT,
        action_url=url,
    )


def _account_approved(recipient_name: str, p: dict[str, Any]) -> RenderedNotification:
    url = _url("/login")
    body = (
        f"<p>Hello {escape(recipient_name)},</p>"
        "<p>Your account has been approved. You can now sign in to browse events "
        "and register your children.</p>" + _button(url, "Sign In")
    )
    return RenderedNotification(
        subject="Your account has been approved",
        html=render_email_layout("Account Approved", body),
        sms_text="Your School Events account has been approved. You can now sign in.",
        title="Account approved",
        message="Your account has been approved. Welcome!",
        type=NotificationType.SUCCESS,
        category=NotificationCategory.SYSTEM,
        action_url=url,
    )


def _event_reminder(recipient_name: str, p: dict[str, Any]) -> RenderedNotification:
    student, event = p["student_name"], p["event_title"]
    url = _url("/registrations/mine")

    body = (
        f"<p>Hello {escape(recipient_name)},</p>"
        f"<p>This is a reminder that <strong>{escape(event)}</strong> is coming up "
        f"for {escape(student)}.</p>"
        + _info_box(
            [
                ("Starts", p.get("event_date")),
                ("Location", p.get("location")),
            ]
        )
    )
    return RenderedNotification(
        subject=f"Reminder: {event} starts soon",
        html=render_email_layout("Event Reminder", body),
        sms_text=f"Reminder: {event} for {student} starts {p.get('event_date')}.",
        title="Upcoming event",
        message=f"{event} for {student} starts {p.get('event_date')}.",
        type=NotificationType.REMINDER,
        category=NotificationCategory.REMINDER,
        action_url=url,
    )


_RENDERERS: dict[NotificationKind, Callable[[str, dict[str, Any]], RenderedNotification]] = {
    NotificationKind.REGISTRATION_CREATED: _registration_created,
    NotificationKind.PAYMENT_REMINDER: _payment_reminder,
    NotificationKind.PAYMENT_CONFIRMED: _payment_confirmed,
    NotificationKind.ACCOUNT_APPROVED: _account_approved,
    NotificationKind.EVENT_REMINDER: _event_reminder,
}


def render(
    kind: NotificationKind,
    recipient_name: str | None,
    payload: dict[str, Any],
) -> RenderedNotification:
    """
    Render a notification for all channels.

    Raises:
        KeyError: If the payload is missing a field the template requires
    """
    return _RENDERERS[kind](recipient_name or "there", payload)
