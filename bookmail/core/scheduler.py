"""
APScheduler integration for FastAPI.

Runs the lesson delivery job in-process. The job fires hourly (minute from
``scheduler.cron_minute``) and evaluates eligibility for every user against
their own local time, so one UTC schedule serves every timezone.
"""

from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.cron import CronTrigger

from bookmail.config import get_config, get_settings
from bookmail.core.database import AsyncSessionLocal
from bookmail.core.logging import get_logger

logger = get_logger(__name__)

DELIVERY_SCHEDULE_ID = "lesson_delivery"

# Global scheduler instance
scheduler: AsyncScheduler | None = None


async def lesson_delivery_job() -> None:
    """Deliver the lessons due this hour."""
    # Import here to avoid circular imports
    from bookmail.models.scheduler_run import TriggerSource
    from bookmail.services.email_service import ResendEmailSender
    from bookmail.services.scheduler_run import build_runner

    config = get_config()
    sender = ResendEmailSender.from_settings(get_settings(), config)

    logger.debug("lesson_delivery_job_started")
    async with AsyncSessionLocal() as db:
        try:
            summary = await build_runner(db, sender, config).run(trigger_source=TriggerSource.CRON)
            if summary.total_eligible:
                logger.bind(
                    run_id=summary.run_id,
                    sent=summary.sent,
                    errors=summary.errors,
                ).info("lesson_delivery_job_completed")
            else:
                logger.debug("lesson_delivery_no_assignments_due")
        except Exception as e:
            logger.bind(error=str(e)).error("lesson_delivery_job_failed")
            raise  # Re-raise so APScheduler records the failure


async def start_scheduler() -> AsyncScheduler | None:
    """Initialize and start the in-process scheduler."""
    global scheduler

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    config = get_config()

    # In-memory schedules; the job is re-registered on every start
    scheduler = AsyncScheduler(data_store=MemoryDataStore())

    # Start the scheduler first (required before calling other methods in APScheduler 4.x)
    await scheduler.__aenter__()

    # One delivery pass at a time within this process
    await scheduler.configure_task(lesson_delivery_job, max_running_jobs=1)

    await scheduler.add_schedule(
        lesson_delivery_job,
        CronTrigger(minute=config.scheduler.cron_minute),
        id=DELIVERY_SCHEDULE_ID,
        conflict_policy=ConflictPolicy.replace,
    )

    await scheduler.start_in_background()

    logger.bind(jobs=[DELIVERY_SCHEDULE_ID], cron_minute=config.scheduler.cron_minute).info(
        "scheduler_started"
    )
    return scheduler


async def stop_scheduler() -> None:
    """Gracefully stop the scheduler."""
    global scheduler
    if scheduler:
        await scheduler.__aexit__(None, None, None)
        logger.info("scheduler_stopped")
        scheduler = None


async def get_job_schedules() -> list[dict[str, Any]]:
    """Get all registered job schedules."""
    if not scheduler:
        return []

    schedules = await scheduler.get_schedules()
    return [
        {
            "id": s.id,
            "task_id": s.task_id,
            "trigger": str(s.trigger),
            "next_fire_time": s.next_fire_time.isoformat() if s.next_fire_time else None,
            "last_fire_time": s.last_fire_time.isoformat() if s.last_fire_time else None,
        }
        for s in schedules
    ]
