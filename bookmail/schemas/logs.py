import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class RetryRequest(BaseModel):
    """Retry one (``logId``) or several (``logIds``) failed deliveries."""

    model_config = ConfigDict(populate_by_name=True)

    log_id: str | None = Field(default=None, alias="logId")
    log_ids: list[str] | None = Field(default=None, alias="logIds")

    def requested_ids(self) -> list[str]:
        if self.log_ids:
            return list(self.log_ids)
        if self.log_id:
            return [self.log_id]
        return []


class RetryResultItem(BaseModel):
    original_log_id: str
    user_email: str
    lesson_subject: str | None = None
    lesson_day: int | None = None
    book_title: str | None = None
    status: Literal["success", "failed"]
    resend_email_id: str | None = None
    error: str | None = None


class RetrySummaryResponse(BaseModel):
    """Response for /api/logs/retry."""

    retry_run_id: str
    timestamp: datetime
    attempted: int
    successful: int
    failed: int
    results: list[RetryResultItem] = Field(default_factory=list)


class DeliveryLogResponse(BaseModel):
    id: uuid.UUID
    status: str
    error: str | None
    schedule_run_id: str | None
    scheduled_for: datetime | None
    sent_at: datetime
    delivery_reason: str
    provider_message_id: str | None
    retry_of_id: uuid.UUID | None
    user_email: str | None
    lesson_day: int | None
    lesson_subject: str | None
    book_title: str | None


class RecentLogsResponse(BaseModel):
    logs: list[DeliveryLogResponse]
    total: int
    hours: int


class LogStatsResponse(BaseModel):
    hours: int
    total: int
    sent: int
    failed: int
    scheduled: int
    success_rate: float
    distinct_runs: int


class UpcomingDelivery(BaseModel):
    scheduled_for: datetime
    user_email: str
    timezone: str
    local_time: str
    delivery_time: str
    book_title: str
    lesson_day: int
    lesson_subject: str | None
    total_lessons: int


class UpcomingResponse(BaseModel):
    deliveries: list[UpcomingDelivery]
    total: int
    hours: int
    window_start: datetime
    window_end: datetime


class TestSendRequest(BaseModel):
    """Send one lesson to an address, outside the schedule."""

    email: EmailStr
    lesson_id: uuid.UUID = Field(alias="lessonId")

    model_config = ConfigDict(populate_by_name=True)


class TestSendResponse(BaseModel):
    success: bool = True
    email_id: str
    recipient: str
    subject: str
    book_title: str
    book_author: str
    lesson_day: int
    sent_at: datetime
