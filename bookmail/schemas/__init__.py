from bookmail.schemas.logs import (
    DeliveryLogResponse,
    LogStatsResponse,
    RecentLogsResponse,
    RetryRequest,
    RetrySummaryResponse,
    UpcomingResponse,
)
from bookmail.schemas.scheduler import (
    RunsResponse,
    RunSummaryResponse,
    SchedulerStatusResponse,
    SimulateRequest,
    SimulateResponse,
    TimezoneConversionResponse,
)

__all__ = [
    "RunSummaryResponse",
    "SimulateRequest",
    "SimulateResponse",
    "RunsResponse",
    "SchedulerStatusResponse",
    "TimezoneConversionResponse",
    "RetryRequest",
    "RetrySummaryResponse",
    "DeliveryLogResponse",
    "RecentLogsResponse",
    "LogStatsResponse",
    "UpcomingResponse",
]
