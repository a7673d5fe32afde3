"""
Events Background Jobs

- events_send_event_reminders: daily reminder to guardians of students
  registered for events starting within the next 24 hours.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger

from school_events.core.database import async_session_maker
from school_events.core.scheduler import register_job

from . import service

logger = logging.getLogger(__name__)

JOB_ID_SEND_EVENT_REMINDERS = "events_send_event_reminders"


async def send_event_reminders() -> dict[str, Any]:
    """Scheduled entrypoint for the upcoming event reminder sweep."""
    executed_at = datetime.now(UTC)
    logger.info("Starting event reminder job")

    async with async_session_maker() as db:
        results = await service.send_event_reminders(db, now=executed_at)

    sent = sum(1 for result in results if result.success)
    summary = {
        "executed_at": executed_at.isoformat(),
        "total": len(results),
        "sent": sent,
        "failed": len(results) - sent,
    }
    logger.info(f"Event reminder job completed: {summary}")
    return summary


def register_event_jobs() -> None:
    """Register event background jobs. Call before the scheduler starts."""
    register_job(
        job_id=JOB_ID_SEND_EVENT_REMINDERS,
        func=send_event_reminders,
        trigger=IntervalTrigger(hours=24),
    )
    logger.info(f"Registered job: {JOB_ID_SEND_EVENT_REMINDERS} (interval: 24 hours)")
