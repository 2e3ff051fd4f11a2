"""Delivery of a single lesson: send, log, advance progress."""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime

from bookmail.config import EmailConfig
from bookmail.core.errors import EmailProviderError
from bookmail.core.logging import get_logger
from bookmail.models.book import Lesson
from bookmail.models.delivery_log import DeliveryReason, DeliveryStatus
from bookmail.services.email_service import EmailSender
from bookmail.services.store import DeliveryStore

logger = get_logger(__name__)


class DeliveryResult(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"


@dataclass
class DeliveryRequest:
    """Everything needed to deliver one lesson to one user."""

    user_id: uuid.UUID
    user_email: str
    book_id: uuid.UUID
    book_title: str
    lesson: Lesson
    run_id: str | None = None
    assignment_id: uuid.UUID | None = None
    scheduled_for: datetime | None = None
    reason: DeliveryReason = DeliveryReason.SCHEDULED
    # last_lesson_sent read before sending; None leaves progress alone
    expected_progress: int | None = None
    retry_of_id: uuid.UUID | None = None


@dataclass
class DeliveryOutcome:
    result: DeliveryResult
    log_id: uuid.UUID | None = None
    provider_message_id: str | None = None
    progress_advanced: bool = False
    error: str | None = None

    @property
    def sent(self) -> bool:
        return self.result == DeliveryResult.SENT


class DeliveryExecutor:
    """Sends a lesson and records the attempt.

    Progress is only advanced after the provider has accepted the email, and
    only through ``DeliveryStore.advance_progress`` so a concurrent run that
    already advanced the assignment is detected instead of overwritten. The
    log row and the progress update are committed together.
    """

    def __init__(
        self,
        store: DeliveryStore,
        sender: EmailSender,
        config: EmailConfig,
        from_email: str,
    ) -> None:
        self.store = store
        self.sender = sender
        self.header_prefix = config.header_prefix
        self.from_email = from_email

    def build_headers(self, request: DeliveryRequest) -> dict[str, str]:
        """Metadata headers attached to every lesson email."""
        prefix = self.header_prefix
        headers: dict[str, str] = {}

        if request.reason == DeliveryReason.RETRY:
            headers[f"{prefix}-Retry"] = "true"
            if request.retry_of_id:
                headers[f"{prefix}-Original-Log-ID"] = str(request.retry_of_id)
        elif request.reason == DeliveryReason.TEST:
            headers[f"{prefix}-Test"] = "true"
        else:
            headers[f"{prefix}-Scheduler"] = "true"

        if request.run_id:
            headers[f"{prefix}-Run-ID"] = request.run_id
        if request.assignment_id:
            headers[f"{prefix}-User-Book-ID"] = str(request.assignment_id)
        headers[f"{prefix}-Lesson-Day"] = str(request.lesson.day_number)
        headers[f"{prefix}-Book"] = request.book_title
        return headers

    def _log_fields(self, request: DeliveryRequest) -> dict:
        return {
            "user_id": request.user_id,
            "user_book_id": request.assignment_id,
            "book_id": request.book_id,
            "lesson_id": request.lesson.id,
            "schedule_run_id": request.run_id,
            "scheduled_for": request.scheduled_for,
            "delivery_reason": request.reason,
            "retry_of_id": request.retry_of_id,
        }

    async def deliver(self, request: DeliveryRequest) -> DeliveryOutcome:
        """Send one lesson.

        Provider failures are recorded as a failed log entry and returned as a
        FAILED outcome; database errors propagate to the caller.
        """
        lesson = request.lesson
        log = logger.bind(
            run_id=request.run_id,
            email=request.user_email,
            book=request.book_title,
            day=lesson.day_number,
            reason=request.reason.value,
        )

        try:
            message_id = await self.sender.send(
                from_email=self.from_email,
                to=request.user_email,
                subject=lesson.display_subject,
                html=lesson.body_html,
                headers=self.build_headers(request),
            )
        except EmailProviderError as e:
            entry = await self.store.insert_log_entry(
                status=DeliveryStatus.FAILED,
                error=str(e),
                **self._log_fields(request),
            )
            await self.store.commit()
            log.bind(error=str(e)).warning("lesson_send_failed")
            return DeliveryOutcome(result=DeliveryResult.FAILED, log_id=entry.id, error=str(e))

        entry = await self.store.insert_log_entry(
            status=DeliveryStatus.SENT,
            provider_message_id=message_id,
            **self._log_fields(request),
        )

        advanced = False
        if request.assignment_id is not None and request.expected_progress is not None:
            advanced = await self.store.advance_progress(
                request.assignment_id, request.expected_progress, lesson.day_number
            )
            if not advanced:
                log.bind(expected=request.expected_progress).warning("progress_update_conflict")

        await self.store.commit()
        log.bind(message_id=message_id, progress_advanced=advanced).info("lesson_sent")

        return DeliveryOutcome(
            result=DeliveryResult.SENT,
            log_id=entry.id,
            provider_message_id=message_id,
            progress_advanced=advanced,
        )

    async def record_failure(
        self,
        *,
        user_id: uuid.UUID,
        error: str,
        assignment_id: uuid.UUID | None = None,
        book_id: uuid.UUID | None = None,
        lesson_id: uuid.UUID | None = None,
        run_id: str | None = None,
        scheduled_for: datetime | None = None,
        reason: DeliveryReason = DeliveryReason.SCHEDULED,
        retry_of_id: uuid.UUID | None = None,
    ) -> uuid.UUID:
        """Log a delivery that failed before reaching the provider."""
        entry = await self.store.insert_log_entry(
            status=DeliveryStatus.FAILED,
            error=error,
            user_id=user_id,
            user_book_id=assignment_id,
            book_id=book_id,
            lesson_id=lesson_id,
            schedule_run_id=run_id,
            scheduled_for=scheduled_for,
            delivery_reason=reason,
            retry_of_id=retry_of_id,
        )
        await self.store.commit()
        return entry.id

    async def send_test(self, to: str, lesson: Lesson, book_title: str) -> str:
        """Send a lesson to an arbitrary address without logging or touching progress.

        Raises:
            EmailProviderError: If the provider rejects the email
        """
        prefix = self.header_prefix
        message_id = await self.sender.send(
            from_email=self.from_email,
            to=to,
            subject=lesson.display_subject,
            html=lesson.body_html,
            headers={
                f"{prefix}-Test": "true",
                f"{prefix}-Lesson-Day": str(lesson.day_number),
                f"{prefix}-Book": book_title,
            },
        )
        logger.bind(email=to, day=lesson.day_number, book=book_title).info("test_lesson_sent")
        return message_id
