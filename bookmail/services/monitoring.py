"""Read-only views over run history and the delivery log."""

import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bookmail.config import SchedulerConfig
from bookmail.core.errors import InvalidTimeFormat, InvalidTimezone
from bookmail.core.logging import get_logger
from bookmail.core.timeconv import (
    format_hhmm,
    get_cutoff,
    local_hhmm,
    next_delivery_after,
    parse_delivery_time,
    to_naive_utc,
    utc_now,
)
from bookmail.models.assignment import AssignmentDeliveryTime, BookAssignment
from bookmail.models.book import Lesson
from bookmail.models.delivery_log import DeliveryLog, DeliveryStatus
from bookmail.models.scheduler_run import RunStatus, SchedulerRun, TriggerSource
from bookmail.services.eligibility import bucket_start
from bookmail.services.store import SqlDeliveryStore

logger = get_logger(__name__)


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 1) if total > 0 else 0.0


async def list_runs(
    db: AsyncSession,
    hours: int = 24,
    limit: int = 50,
    trigger_source: TriggerSource | None = None,
) -> list[SchedulerRun]:
    """Scheduler runs in the last ``hours``, newest first."""
    query = (
        select(SchedulerRun)
        .where(SchedulerRun.timestamp >= get_cutoff(hours=hours))
        .order_by(SchedulerRun.timestamp.desc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    if trigger_source is not None:
        query = query.where(SchedulerRun.trigger_source == trigger_source)

    result = await db.execute(query)
    return list(result.scalars().all())


def summarize_runs(runs: list[SchedulerRun]) -> dict[str, Any]:
    """Aggregate statistics over a list of runs, plus a per trigger source breakdown."""
    completed = [r for r in runs if r.status == RunStatus.COMPLETED]
    failed = [r for r in runs if r.status == RunStatus.FAILED]
    running = [r for r in runs if r.status == RunStatus.RUNNING]

    stats = {
        "total_runs": len(runs),
        "successful_runs": len(completed),
        "failed_runs": len(failed),
        "running_runs": len(running),
        "total_emails_sent": sum(r.emails_sent or 0 for r in runs),
        "total_emails_failed": sum(r.emails_failed or 0 for r in runs),
        "total_eligible_users": sum(r.eligible_users or 0 for r in runs),
        "total_completed_users": sum(r.emails_completed or 0 for r in runs),
        "total_no_content_users": sum(r.emails_no_content or 0 for r in runs),
        "avg_execution_time_ms": (
            sum(r.execution_time_ms or 0 for r in completed) / len(completed) if completed else 0.0
        ),
        "success_rate": _rate(len(completed), len(runs)),
    }

    breakdown: dict[str, dict[str, Any]] = {}
    for run in runs:
        source = run.trigger_source.value
        entry = breakdown.setdefault(
            source, {"count": 0, "completed": 0, "emails_sent": 0, "emails_failed": 0}
        )
        entry["count"] += 1
        entry["emails_sent"] += run.emails_sent or 0
        entry["emails_failed"] += run.emails_failed or 0
        if run.status == RunStatus.COMPLETED:
            entry["completed"] += 1

    for entry in breakdown.values():
        entry["success_rate"] = _rate(entry.pop("completed"), entry["count"])

    return {"stats": stats, "source_breakdown": breakdown}


async def recent_logs(
    db: AsyncSession,
    hours: int = 24,
    status: DeliveryStatus | None = None,
    limit: int = 100,
) -> list[DeliveryLog]:
    """Delivery log rows from the last ``hours``, newest first."""
    query = (
        select(DeliveryLog)
        .where(DeliveryLog.sent_at >= get_cutoff(hours=hours))
        .options(selectinload(DeliveryLog.lesson).selectinload(Lesson.book))
        .order_by(DeliveryLog.sent_at.desc())
        .limit(limit)
    )
    if status is not None:
        query = query.where(DeliveryLog.status == status)

    result = await db.execute(query)
    return list(result.scalars().all())


async def log_stats(db: AsyncSession, hours: int = 24) -> dict[str, Any]:
    """Status counts, success rate and distinct runs over the last ``hours``."""
    cutoff = get_cutoff(hours=hours)

    result = await db.execute(
        select(DeliveryLog.status, func.count(DeliveryLog.id))
        .where(DeliveryLog.sent_at >= cutoff)
        .group_by(DeliveryLog.status)
    )
    counts = {status.value: 0 for status in DeliveryStatus}
    for status, count in result.all():
        counts[DeliveryStatus(status).value] = count
    total = sum(counts.values())

    runs_result = await db.execute(
        select(func.count(func.distinct(DeliveryLog.schedule_run_id))).where(
            DeliveryLog.sent_at >= cutoff,
            DeliveryLog.schedule_run_id.is_not(None),
        )
    )

    return {
        "hours": hours,
        "total": total,
        **counts,
        "success_rate": _rate(counts[DeliveryStatus.SENT.value], total),
        "distinct_runs": runs_result.scalar() or 0,
    }


async def upcoming_deliveries(
    db: AsyncSession,
    config: SchedulerConfig,
    hours: int = 24,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Project the deliveries due in the next ``hours``.

    One entry per matching slot of an assignment whose next local start falls
    inside the window, with the lesson it would currently receive. Delivery
    times sharing a slot are sent once, at the slot start. Finished
    assignments and users without a usable timezone are left out.
    """
    start = now or utc_now()
    end = start + timedelta(hours=hours)
    store = SqlDeliveryStore(db)
    granularity = max(1, int(config.match_granularity_minutes))
    lesson_counts: dict[uuid.UUID, int] = {}

    upcoming = []
    for assignment in await store.get_delivery_candidates():
        user = assignment.user
        timezone = user.timezone or config.default_timezone
        if not timezone:
            continue

        if assignment.book_id not in lesson_counts:
            lesson_counts[assignment.book_id] = await store.count_lessons(assignment.book_id)
        total = lesson_counts[assignment.book_id]
        next_day = assignment.last_lesson_sent + 1
        if next_day > total:
            continue

        times = sorted({dt.delivery_time for dt in assignment.delivery_times}) or [
            config.default_delivery_time
        ]
        # The hourly trigger serves a delivery time at the start of its bucket
        slots: dict[str, str] = {}
        for raw in times:
            try:
                delivery_time = parse_delivery_time(raw)
            except InvalidTimeFormat:
                logger.bind(email=user.email, delivery_time=raw).warning(
                    "upcoming_delivery_time_skipped"
                )
                continue
            slots.setdefault(bucket_start(delivery_time, granularity), format_hhmm(delivery_time))

        for slot, delivery_time in slots.items():
            try:
                scheduled_for = next_delivery_after(timezone, slot, start)
            except InvalidTimezone as e:
                logger.bind(email=user.email, error=str(e)).warning("upcoming_delivery_skipped")
                break
            if scheduled_for > end:
                continue

            lesson = await store.get_lesson_by_day(assignment.book_id, next_day)
            upcoming.append(
                {
                    "scheduled_for": scheduled_for,
                    "user_email": user.email,
                    "timezone": timezone,
                    "local_time": local_hhmm(scheduled_for, timezone),
                    "delivery_time": delivery_time,
                    "book_title": assignment.book.title,
                    "lesson_day": next_day,
                    "lesson_subject": lesson.display_subject if lesson else None,
                    "total_lessons": total,
                }
            )

    upcoming.sort(key=lambda item: item["scheduled_for"])
    return upcoming


async def scheduler_status(
    db: AsyncSession,
    schedules: list[dict[str, Any]] | None = None,
    hours: int = 24,
    now: datetime | None = None,
) -> dict[str, Any]:
    """System overview: who can receive lessons, content size, recent activity, next run.

    The next run comes from the in-process schedules when there are any,
    otherwise it is the top of the next hour, when the external cron fires.
    """
    now = now or utc_now()

    users_with_times = await db.execute(
        select(func.count(func.distinct(BookAssignment.user_id))).join(
            AssignmentDeliveryTime, AssignmentDeliveryTime.user_book_id == BookAssignment.id
        )
    )
    users_with_books = await db.execute(select(func.count(func.distinct(BookAssignment.user_id))))
    total_lessons = await db.execute(select(func.count(Lesson.id)))
    recent = await db.execute(
        select(func.count(DeliveryLog.id)).where(DeliveryLog.sent_at >= get_cutoff(hours=hours))
    )

    fire_times = [
        to_naive_utc(datetime.fromisoformat(s["next_fire_time"]))
        for s in schedules or []
        if s.get("next_fire_time")
    ]
    if fire_times:
        next_run = min(fire_times)
    else:
        next_run = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    return {
        "users_with_delivery_times": users_with_times.scalar() or 0,
        "users_with_books": users_with_books.scalar() or 0,
        "total_lessons": total_lessons.scalar() or 0,
        "recent_deliveries": recent.scalar() or 0,
        "hours": hours,
        "scheduler_active": bool(schedules),
        "next_run_time": next_run,
    }
