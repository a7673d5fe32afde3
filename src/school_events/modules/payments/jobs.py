"""
Payments Background Jobs

- payments_send_overdue_reminders: daily reminder for registrations whose
  payment is still pending after the registration deadline.

The sweep does not remember which registrations were already reminded;
running it once a day sends at most one reminder per registration per day.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger

from school_events.core.database import async_session_maker
from school_events.core.scheduler import register_job

from . import service

logger = logging.getLogger(__name__)

JOB_ID_SEND_OVERDUE_REMINDERS = "payments_send_overdue_reminders"
REMINDER_INTERVAL_HOURS = 24


async def send_overdue_payment_reminders() -> dict[str, Any]:
    """
    Scheduled entrypoint for the overdue payment reminder sweep.

    Returns:
        Dict with executed_at, total, sent and failed counts
    """
    executed_at = datetime.now(UTC)
    logger.info("Starting overdue payment reminder job")

    async with async_session_maker() as db:
        results = await service.send_overdue_payment_reminders(db, now=executed_at)

    sent = sum(1 for result in results if result.success)
    summary = {
        "executed_at": executed_at.isoformat(),
        "total": len(results),
        "sent": sent,
        "failed": len(results) - sent,
    }
    logger.info(f"Overdue payment reminder job completed: {summary}")
    return summary


def register_payment_jobs() -> None:
    """Register payment background jobs. Call before the scheduler starts."""
    register_job(
        job_id=JOB_ID_SEND_OVERDUE_REMINDERS,
        func=send_overdue_payment_reminders,
        trigger=IntervalTrigger(hours=REMINDER_INTERVAL_HOURS),
    )
    logger.info(
        f"Registered job: {JOB_ID_SEND_OVERDUE_REMINDERS} "
        f"(interval: {REMINDER_INTERVAL_HOURS} hours)"
    )
