from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class RunResultItem(BaseModel):
    """Outcome for one eligible assignment."""

    user_email: str
    book_title: str
    lesson_day: int | None = None
    progress: str | None = None
    action: Literal["SENT", "COMPLETED", "NO_CONTENT", "ERROR", "SKIPPED", "WOULD_SEND"]
    error: str | None = None
    resend_email_id: str | None = None


class RunSummaryResponse(BaseModel):
    """Response for a scheduler run."""

    run_id: str
    timestamp: datetime
    total_eligible: int
    sent: int
    errors: int
    completed: int
    no_content: int
    skipped: int
    execution_time_ms: int
    trigger_source: str
    status: str
    simulation: bool = False
    results: list[RunResultItem] = Field(default_factory=list)


class SimulateRequest(BaseModel):
    """Simulate a run at a local wall-clock time in a timezone."""

    test_time: str = Field(description="Local time in HH:MM format")
    timezone: str = Field(description="IANA timezone, e.g. Europe/London")


class ConversionInfo(BaseModel):
    local_time: str
    timezone: str
    utc_time: str
    offset_minutes: int


class SimulateResponse(RunSummaryResponse):
    simulated_time: datetime
    conversion_info: ConversionInfo


class SchedulerRunResponse(BaseModel):
    """A persisted scheduler run."""

    model_config = {"from_attributes": True}

    run_id: str
    timestamp: datetime
    trigger_source: str
    status: str
    eligible_users: int
    emails_sent: int
    emails_failed: int
    emails_completed: int
    emails_no_content: int
    emails_skipped: int
    execution_time_ms: int | None
    error: str | None


class RunStats(BaseModel):
    total_runs: int
    successful_runs: int
    failed_runs: int
    running_runs: int
    total_emails_sent: int
    total_emails_failed: int
    total_eligible_users: int
    total_completed_users: int
    total_no_content_users: int
    avg_execution_time_ms: float
    success_rate: float


class SourceBreakdown(BaseModel):
    count: int
    emails_sent: int
    emails_failed: int
    success_rate: float


class RunsResponse(BaseModel):
    """Response for /api/scheduler/runs."""

    runs: list[SchedulerRunResponse]
    stats: RunStats
    source_breakdown: dict[str, SourceBreakdown]
    hours: int
    limit: int
    trigger_source: str | None = None


class TimezoneConversionResponse(BaseModel):
    local_time: str
    timezone: str
    date: str
    utc_time: str
    utc_hhmm: str
    offset_minutes: int


class ScheduleResponse(BaseModel):
    """A registered in-process schedule."""

    id: str
    task_id: str
    trigger: str
    next_fire_time: str | None
    last_fire_time: str | None


class SchedulerStatusResponse(BaseModel):
    """System overview for /api/scheduler/status."""

    users_with_delivery_times: int
    users_with_books: int
    total_lessons: int
    recent_deliveries: int
    hours: int
    scheduler_active: bool
    next_run_time: datetime
