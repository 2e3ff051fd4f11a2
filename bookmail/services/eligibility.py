"""Eligibility resolution: which assignments are due at a given instant.

An assignment is due when the check instant, rendered on the user's clock,
falls in the same matching bucket as one of the assignment's delivery times
(or the configured default when it has none). With a 60 minute bucket an
hourly trigger serves every delivery time of that local hour; with a 1 minute
bucket the rendered HH:MM must equal the delivery time exactly.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, time

from bookmail.config import SchedulerConfig
from bookmail.core.errors import InvalidTimeFormat, InvalidTimezone
from bookmail.core.logging import get_logger
from bookmail.core.timeconv import (
    format_hhmm,
    parse_delivery_time,
    to_local,
    to_naive_utc,
    to_utc,
)
from bookmail.models.assignment import AssignmentStatus, BookAssignment
from bookmail.services.store import DeliveryStore

logger = get_logger(__name__)


def bucket_start(value: time, granularity: int) -> str:
    """Local HH:MM at which the matching bucket holding ``value`` opens."""
    minutes = (value.hour * 60 + value.minute) // granularity * granularity
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class EligibleAssignment:
    """An assignment due for delivery at a check instant."""

    assignment_id: uuid.UUID
    user_id: uuid.UUID
    user_email: str
    timezone: str
    book_id: uuid.UUID
    book_title: str
    matched_delivery_time: str
    local_time: str
    last_lesson_sent: int
    status: AssignmentStatus
    # UTC instant at which the matched local slot starts; used to detect duplicate triggers
    slot_start: datetime


class EligibilityResolver:
    """Resolves the assignments due at a UTC instant. Read-only."""

    def __init__(self, store: DeliveryStore, config: SchedulerConfig) -> None:
        self.store = store
        self.default_delivery_time = config.default_delivery_time
        self.default_timezone = config.default_timezone
        self.granularity = max(1, int(config.match_granularity_minutes))

    def _bucket(self, value: time) -> int:
        return (value.hour * 60 + value.minute) // self.granularity

    def _delivery_times(self, assignment: BookAssignment) -> list[str]:
        times = sorted({dt.delivery_time for dt in assignment.delivery_times})
        return times or [self.default_delivery_time]

    def match(self, assignment: BookAssignment, check_instant: datetime) -> EligibleAssignment | None:
        """Match a single assignment against a check instant.

        Returns None (never raises) for users without a usable timezone.
        """
        user = assignment.user
        timezone = user.timezone or self.default_timezone
        if not timezone:
            logger.bind(user_id=str(user.id), email=user.email).debug("user_without_timezone_skipped")
            return None

        try:
            local_now = to_local(check_instant, timezone)
        except InvalidTimezone:
            logger.bind(user_id=str(user.id), timezone=timezone).warning("user_invalid_timezone_skipped")
            return None

        local_bucket = self._bucket(local_now.time())

        for raw in self._delivery_times(assignment):
            try:
                delivery_time = parse_delivery_time(raw)
            except InvalidTimeFormat:
                logger.bind(assignment_id=str(assignment.id), delivery_time=raw).warning(
                    "invalid_delivery_time_skipped"
                )
                continue

            if self._bucket(delivery_time) != local_bucket:
                continue

            slot_start = to_utc(
                bucket_start(local_now.time(), self.granularity), timezone, local_now.date()
            )
            return EligibleAssignment(
                assignment_id=assignment.id,
                user_id=user.id,
                user_email=user.email,
                timezone=timezone,
                book_id=assignment.book_id,
                book_title=assignment.book.title if assignment.book else "",
                matched_delivery_time=format_hhmm(delivery_time),
                local_time=local_now.strftime("%H:%M"),
                last_lesson_sent=assignment.last_lesson_sent,
                status=assignment.status,
                slot_start=slot_start,
            )

        return None

    async def find_eligible(self, check_instant: datetime) -> list[EligibleAssignment]:
        """Assignments due at ``check_instant`` (naive UTC or aware).

        Each assignment appears at most once, even when several of its
        delivery times fall in the matched bucket.
        """
        check = to_naive_utc(check_instant)
        candidates = await self.store.get_delivery_candidates()

        eligible = []
        for assignment in candidates:
            matched = self.match(assignment, check)
            if matched is not None:
                eligible.append(matched)

        logger.bind(
            check_instant=check.isoformat(),
            candidates=len(candidates),
            eligible=len(eligible),
        ).debug("eligibility_resolved")
        return eligible
