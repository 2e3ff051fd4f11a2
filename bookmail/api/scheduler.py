"""Scheduler trigger and monitoring endpoints."""

from fastapi import APIRouter, Header, HTTPException, Query, status

from bookmail.core.errors import InvalidTimeFormat, InvalidTimezone
from bookmail.core.logging import get_logger
from bookmail.core.scheduler import get_job_schedules
from bookmail.core.timeconv import ensure_timezone, offset_minutes, to_utc
from bookmail.dependencies import AppSettings, Config, DBSession, Sender
from bookmail.models.scheduler_run import TriggerSource
from bookmail.schemas.scheduler import (
    ConversionInfo,
    RunsResponse,
    RunSummaryResponse,
    ScheduleResponse,
    SchedulerRunResponse,
    SchedulerStatusResponse,
    SimulateRequest,
    SimulateResponse,
)
from bookmail.services import monitoring
from bookmail.services.scheduler_run import build_runner

logger = get_logger(__name__)

router = APIRouter()


@router.api_route("/cron/email-scheduler", methods=["GET", "POST"], response_model=RunSummaryResponse)
async def cron_email_scheduler(
    db: DBSession,
    sender: Sender,
    config: Config,
    settings: AppSettings,
    authorization: str | None = Header(default=None),
) -> RunSummaryResponse:
    """
    Run the delivery scheduler for the current instant.

    Called by an external cron (hourly). When CRON_SECRET is configured the
    caller must send it as a bearer token.
    """
    if settings.cron_secret and authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    runner = build_runner(db, sender, config)
    summary = await runner.run(trigger_source=TriggerSource.CRON)
    return RunSummaryResponse(**summary.to_dict())


@router.post("/scheduler/run", response_model=RunSummaryResponse)
async def run_scheduler(db: DBSession, sender: Sender, config: Config) -> RunSummaryResponse:
    """Run the delivery scheduler now (manual trigger)."""
    runner = build_runner(db, sender, config)
    summary = await runner.run(trigger_source=TriggerSource.MANUAL)
    return RunSummaryResponse(**summary.to_dict())


@router.post("/scheduler/simulate", response_model=SimulateResponse)
async def simulate_scheduler(
    body: SimulateRequest,
    db: DBSession,
    sender: Sender,
    config: Config,
) -> SimulateResponse:
    """
    Simulate a run at a local time in a timezone.

    The local time is converted to UTC for today's date in that timezone.
    Nothing is sent, logged, or advanced; results report WOULD_SEND.
    """
    try:
        ensure_timezone(body.timezone)
        simulated_time = to_utc(body.test_time, body.timezone)
    except (InvalidTimezone, InvalidTimeFormat) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    logger.bind(
        test_time=body.test_time,
        timezone=body.timezone,
        simulated_time=simulated_time.isoformat(),
    ).info("scheduler_simulation_requested")

    runner = build_runner(db, sender, config)
    summary = await runner.run(check_instant=simulated_time, simulate=True)

    return SimulateResponse(
        **summary.to_dict(),
        simulated_time=simulated_time,
        conversion_info=ConversionInfo(
            local_time=body.test_time,
            timezone=body.timezone,
            utc_time=simulated_time.isoformat(),
            offset_minutes=offset_minutes(body.timezone, simulated_time),
        ),
    )


@router.get("/scheduler/runs", response_model=RunsResponse)
async def list_scheduler_runs(
    db: DBSession,
    hours: int = Query(default=24, ge=1, le=24 * 90),
    limit: int = Query(default=50, ge=1, le=500),
    trigger_source: TriggerSource | None = Query(default=None),
) -> RunsResponse:
    """
    List recent scheduler runs with aggregate statistics.

    Stats include success rate, email totals, average execution time of
    completed runs, and a breakdown by trigger source.
    """
    runs = await monitoring.list_runs(db, hours=hours, limit=limit, trigger_source=trigger_source)
    aggregate = monitoring.summarize_runs(runs)

    return RunsResponse(
        runs=[
            SchedulerRunResponse(
                run_id=run.run_id,
                timestamp=run.timestamp,
                trigger_source=run.trigger_source.value,
                status=run.status.value,
                eligible_users=run.eligible_users,
                emails_sent=run.emails_sent,
                emails_failed=run.emails_failed,
                emails_completed=run.emails_completed,
                emails_no_content=run.emails_no_content,
                emails_skipped=run.emails_skipped,
                execution_time_ms=run.execution_time_ms,
                error=run.error,
            )
            for run in runs
        ],
        stats=aggregate["stats"],
        source_breakdown=aggregate["source_breakdown"],
        hours=hours,
        limit=limit,
        trigger_source=trigger_source.value if trigger_source else None,
    )


@router.get("/scheduler/schedules", response_model=list[ScheduleResponse])
async def list_schedules() -> list[ScheduleResponse]:
    """List the in-process schedules with next/last fire times."""
    schedules = await get_job_schedules()
    return [ScheduleResponse(**s) for s in schedules]


@router.get("/scheduler/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status(
    db: DBSession,
    hours: int = Query(default=24, ge=1, le=24 * 7),
) -> SchedulerStatusResponse:
    """
    Scheduler status overview.

    Counts users with delivery times and with assigned books, total lessons,
    and delivery log rows in the last ``hours``, plus the next run time.
    """
    schedules = await get_job_schedules()
    overview = await monitoring.scheduler_status(db, schedules=schedules, hours=hours)
    return SchedulerStatusResponse(**overview)
