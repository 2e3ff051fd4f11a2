from datetime import date, datetime

from fastapi import APIRouter, HTTPException, Query, status

from bookmail.core.errors import InvalidTimeFormat, InvalidTimezone
from bookmail.core.timeconv import (
    COMMON_TIMEZONES,
    ensure_timezone,
    normalize_delivery_time,
    offset_minutes,
    to_utc,
)
from bookmail.schemas.scheduler import TimezoneConversionResponse

router = APIRouter()


@router.get("/timezones")
async def list_timezones() -> dict[str, list[str]]:
    """Common IANA timezones for delivery settings."""
    return {"timezones": COMMON_TIMEZONES}


@router.get("/timezones/convert", response_model=TimezoneConversionResponse)
async def convert_time(
    time: str = Query(description="Local time in HH:MM format"),
    timezone: str = Query(description="IANA timezone"),
    on_date: date | None = Query(default=None, alias="date"),
) -> TimezoneConversionResponse:
    """Preview the UTC instant of a local delivery time on a given date (default today)."""
    try:
        tz = ensure_timezone(timezone)
        local_time = normalize_delivery_time(time)
        utc_time = to_utc(local_time, timezone, on_date)
    except (InvalidTimezone, InvalidTimeFormat) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    resolved_date = on_date or datetime.now(tz).date()
    return TimezoneConversionResponse(
        local_time=local_time,
        timezone=timezone,
        date=resolved_date.isoformat(),
        utc_time=utc_time.isoformat(),
        utc_hhmm=utc_time.strftime("%H:%M"),
        offset_minutes=offset_minutes(timezone, utc_time),
    )
