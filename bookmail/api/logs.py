"""Delivery log endpoints: retry, recent entries, stats, upcoming deliveries."""

from datetime import timedelta

from fastapi import APIRouter, HTTPException, Query, status

from bookmail.core.timeconv import utc_now
from bookmail.dependencies import Config, DBSession, Sender
from bookmail.models.delivery_log import DeliveryStatus
from bookmail.schemas.logs import (
    DeliveryLogResponse,
    LogStatsResponse,
    RecentLogsResponse,
    RetryRequest,
    RetrySummaryResponse,
    UpcomingDelivery,
    UpcomingResponse,
)
from bookmail.services import monitoring
from bookmail.services.retry import build_retry_coordinator

router = APIRouter()


@router.post("/logs/retry", response_model=RetrySummaryResponse)
async def retry_failed_logs(
    body: RetryRequest,
    db: DBSession,
    sender: Sender,
    config: Config,
) -> RetrySummaryResponse:
    """
    Retry failed deliveries.

    Accepts a single ``logId`` or a list of ``logIds``. Only entries that are
    currently failed are retried; anything else is ignored, so an empty
    summary is a valid answer.
    """
    ids = body.requested_ids()
    if not ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="logId or logIds is required",
        )

    coordinator = build_retry_coordinator(db, sender, config)
    summary = await coordinator.retry(ids)
    return RetrySummaryResponse(**summary.to_dict())


@router.get("/logs/recent", response_model=RecentLogsResponse)
async def get_recent_logs(
    db: DBSession,
    hours: int = Query(default=24, ge=1, le=24 * 90),
    log_status: DeliveryStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> RecentLogsResponse:
    """List recent delivery log entries, newest first."""
    logs = await monitoring.recent_logs(db, hours=hours, status=log_status, limit=limit)

    return RecentLogsResponse(
        logs=[
            DeliveryLogResponse(
                id=log.id,
                status=log.status.value,
                error=log.error,
                schedule_run_id=log.schedule_run_id,
                scheduled_for=log.scheduled_for,
                sent_at=log.sent_at,
                delivery_reason=log.delivery_reason.value,
                provider_message_id=log.provider_message_id,
                retry_of_id=log.retry_of_id,
                user_email=log.user.email if log.user else None,
                lesson_day=log.lesson.day_number if log.lesson else None,
                lesson_subject=log.lesson.display_subject if log.lesson else None,
                book_title=log.lesson.book.title if log.lesson and log.lesson.book else None,
            )
            for log in logs
        ],
        total=len(logs),
        hours=hours,
    )


@router.get("/logs/stats", response_model=LogStatsResponse)
async def get_log_stats(
    db: DBSession,
    hours: int = Query(default=24, ge=1, le=24 * 90),
) -> LogStatsResponse:
    """Delivery status counts and success rate over the last ``hours``."""
    stats = await monitoring.log_stats(db, hours=hours)
    return LogStatsResponse(**stats)


@router.get("/logs/upcoming", response_model=UpcomingResponse)
async def get_upcoming_deliveries(
    db: DBSession,
    config: Config,
    hours: int = Query(default=24, ge=1, le=72),
) -> UpcomingResponse:
    """
    Project the deliveries due in the next ``hours``.

    Each entry is the next start of a slot holding one of an assignment's
    delivery times, with the lesson the assignment would currently receive.
    """
    now = utc_now()
    deliveries = await monitoring.upcoming_deliveries(db, config.scheduler, hours=hours, now=now)

    return UpcomingResponse(
        deliveries=[UpcomingDelivery(**d) for d in deliveries],
        total=len(deliveries),
        hours=hours,
        window_start=now,
        window_end=now + timedelta(hours=hours),
    )
