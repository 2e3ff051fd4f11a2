"""Retry of failed lesson deliveries.

A retry never edits the failed row: it sends again and inserts a new log
entry pointing back at the original through ``retry_of_id``. Progress only
moves when the retried lesson is exactly the next one for the assignment,
so retrying an old failure can neither regress nor skip progress.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from bookmail.config import AppConfig, get_config
from bookmail.core.logging import get_logger
from bookmail.core.timeconv import utc_now
from bookmail.models.delivery_log import DeliveryLog, DeliveryReason
from bookmail.services.delivery import DeliveryExecutor, DeliveryRequest
from bookmail.services.email_service import EmailSender
from bookmail.services.store import DeliveryStore, SqlDeliveryStore

logger = get_logger(__name__)


@dataclass
class RetryResult:
    original_log_id: uuid.UUID
    user_email: str
    status: str  # success, failed
    lesson_subject: str | None = None
    lesson_day: int | None = None
    book_title: str | None = None
    resend_email_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_log_id": str(self.original_log_id),
            "user_email": self.user_email,
            "lesson_subject": self.lesson_subject,
            "lesson_day": self.lesson_day,
            "book_title": self.book_title,
            "status": self.status,
            "resend_email_id": self.resend_email_id,
            "error": self.error,
        }


@dataclass
class RetrySummary:
    retry_run_id: str
    timestamp: datetime
    results: list[RetryResult] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.status == "success")

    @property
    def failed(self) -> int:
        return self.attempted - self.successful

    def to_dict(self) -> dict[str, Any]:
        return {
            "retry_run_id": self.retry_run_id,
            "timestamp": self.timestamp.isoformat(),
            "attempted": self.attempted,
            "successful": self.successful,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class FailedDelivery:
    """Plain copy of a failed log row, safe to use after a session rollback."""

    log_id: uuid.UUID
    user_id: uuid.UUID
    user_email: str
    lesson_id: uuid.UUID | None
    assignment_id: uuid.UUID | None
    book_id: uuid.UUID | None
    scheduled_for: datetime | None

    @classmethod
    def from_log(cls, entry: DeliveryLog) -> "FailedDelivery":
        return cls(
            log_id=entry.id,
            user_id=entry.user_id,
            user_email=entry.user.email,
            lesson_id=entry.lesson_id,
            assignment_id=entry.user_book_id,
            book_id=entry.book_id,
            scheduled_for=entry.scheduled_for,
        )


def parse_log_ids(values: Iterable[Any]) -> list[uuid.UUID]:
    """Parse log ids, dropping anything that is not a UUID."""
    ids = []
    for value in values:
        try:
            ids.append(value if isinstance(value, uuid.UUID) else uuid.UUID(str(value)))
        except ValueError:
            logger.bind(log_id=str(value)).debug("retry_invalid_log_id_ignored")
    return ids


class RetryCoordinator:
    """Re-sends failed deliveries identified by log id."""

    def __init__(self, store: DeliveryStore, sender: EmailSender, config: AppConfig) -> None:
        self.store = store
        self.executor = DeliveryExecutor(
            store, sender, config.email, from_email=config.settings.resend_from_email
        )

    async def retry(self, log_ids: Iterable[Any]) -> RetrySummary:
        """Retry the given failed deliveries.

        Ids that do not exist, are not failed, or were already successfully
        retried are silently excluded.
        """
        summary = RetrySummary(retry_run_id=str(uuid.uuid4()), timestamp=utc_now())
        ids = parse_log_ids(log_ids)
        # A rollback on one entry expires every loaded row, so work from copies
        failed_logs = await self.store.get_failed_logs(ids)
        pending = [FailedDelivery.from_log(entry) for entry in failed_logs]

        log = logger.bind(retry_run_id=summary.retry_run_id)
        log.bind(requested=len(ids), eligible=len(pending)).info("retry_started")

        for failed in pending:
            summary.results.append(await self._retry_one(failed, summary.retry_run_id))

        log.bind(
            attempted=summary.attempted,
            successful=summary.successful,
            failed=summary.failed,
        ).info("retry_completed")
        return summary

    async def _retry_one(self, failed: FailedDelivery, retry_run_id: str) -> RetryResult:
        original_id = failed.log_id
        user_id = failed.user_id
        user_email = failed.user_email
        lesson_id = failed.lesson_id
        assignment_id = failed.assignment_id
        logged_book_id = failed.book_id
        scheduled_for = failed.scheduled_for

        result = RetryResult(original_log_id=original_id, user_email=user_email, status="failed")
        log = logger.bind(retry_run_id=retry_run_id, original_log_id=str(original_id), email=user_email)

        try:
            lesson = await self.store.get_lesson(lesson_id) if lesson_id else None
            if lesson is None or not (lesson.body_html or "").strip():
                result.error = "Lesson not found" if lesson is None else "Lesson has no content"
                await self.executor.record_failure(
                    user_id=user_id,
                    error=result.error,
                    assignment_id=assignment_id,
                    book_id=logged_book_id,
                    lesson_id=lesson_id,
                    run_id=retry_run_id,
                    scheduled_for=scheduled_for,
                    reason=DeliveryReason.RETRY,
                    retry_of_id=original_id,
                )
                log.bind(error=result.error).warning("retry_lesson_unavailable")
                return result

            book_id = lesson.book_id
            book_title = lesson.book.title
            result.lesson_subject = lesson.display_subject
            result.lesson_day = lesson.day_number
            result.book_title = book_title

            if assignment_id is not None:
                assignment = await self.store.get_assignment(assignment_id)
            else:
                assignment = await self.store.find_assignment(user_id, book_id)

            expected = None
            if assignment is not None and assignment.last_lesson_sent == lesson.day_number - 1:
                expected = assignment.last_lesson_sent

            outcome = await self.executor.deliver(
                DeliveryRequest(
                    user_id=user_id,
                    user_email=user_email,
                    book_id=book_id,
                    book_title=book_title,
                    lesson=lesson,
                    run_id=retry_run_id,
                    assignment_id=assignment.id if assignment is not None else None,
                    scheduled_for=scheduled_for,
                    reason=DeliveryReason.RETRY,
                    expected_progress=expected,
                    retry_of_id=original_id,
                )
            )
        except Exception as e:
            await self.store.rollback()
            log.bind(error=str(e)).error("retry_failed")
            result.error = str(e)
            return result

        if outcome.sent:
            result.status = "success"
            result.resend_email_id = outcome.provider_message_id
        else:
            result.error = outcome.error
        return result


def build_retry_coordinator(
    db: AsyncSession,
    sender: EmailSender,
    config: AppConfig | None = None,
) -> RetryCoordinator:
    return RetryCoordinator(SqlDeliveryStore(db), sender, config or get_config())
