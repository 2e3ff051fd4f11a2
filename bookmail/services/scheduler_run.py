"""
Scheduler run orchestration.

One run:
1. Persists a ``running`` SchedulerRun record
2. Resolves the assignments due at the check instant
3. For each: duplicate-slot guard, next lesson, delivery
4. Persists the terminal record with counts and elapsed time

Per-assignment failures are recorded and never abort the loop. A failure
of the run itself (e.g. the eligibility query) marks the record failed and
raises ``OrchestratorFailure``.
"""

import asyncio
import enum
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from bookmail.config import AppConfig, get_config
from bookmail.core.errors import LessonContentUnavailable, OrchestratorFailure
from bookmail.core.logging import get_logger
from bookmail.core.retry import RetryConfig, retry_with_backoff
from bookmail.core.timeconv import to_naive_utc, utc_now
from bookmail.models.scheduler_run import RunStatus, SchedulerRun, TriggerSource
from bookmail.services.delivery import DeliveryExecutor, DeliveryRequest
from bookmail.services.eligibility import EligibilityResolver, EligibleAssignment
from bookmail.services.email_service import EmailSender
from bookmail.services.lessons import LessonSelector, NoContent
from bookmail.services.store import DeliveryStore, SqlDeliveryStore

logger = get_logger(__name__)

DEADLINE_REACHED = "deadline reached"
ALREADY_DELIVERED = "already delivered for this slot"


class ProcessAction(str, enum.Enum):
    """What happened to one eligible assignment during a run."""

    SENT = "SENT"
    COMPLETED = "COMPLETED"
    NO_CONTENT = "NO_CONTENT"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"
    WOULD_SEND = "WOULD_SEND"


@dataclass
class ProcessResult:
    user_email: str
    book_title: str
    action: ProcessAction
    lesson_day: int | None = None
    progress: str | None = None
    error: str | None = None
    resend_email_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_email": self.user_email,
            "book_title": self.book_title,
            "lesson_day": self.lesson_day,
            "progress": self.progress,
            "action": self.action.value,
            "error": self.error,
            "resend_email_id": self.resend_email_id,
        }


@dataclass
class RunSummary:
    """Aggregate outcome of a scheduler run."""

    run_id: str
    timestamp: datetime
    trigger_source: TriggerSource
    status: RunStatus = RunStatus.RUNNING
    simulation: bool = False
    total_eligible: int = 0
    execution_time_ms: int = 0
    results: list[ProcessResult] = field(default_factory=list)

    def count(self, action: ProcessAction) -> int:
        return sum(1 for r in self.results if r.action == action)

    @property
    def sent(self) -> int:
        return self.count(ProcessAction.SENT)

    @property
    def errors(self) -> int:
        return self.count(ProcessAction.ERROR)

    @property
    def completed(self) -> int:
        return self.count(ProcessAction.COMPLETED)

    @property
    def no_content(self) -> int:
        return self.count(ProcessAction.NO_CONTENT)

    @property
    def skipped(self) -> int:
        return self.count(ProcessAction.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            "total_eligible": self.total_eligible,
            "sent": self.sent,
            "errors": self.errors,
            "completed": self.completed,
            "no_content": self.no_content,
            "skipped": self.skipped,
            "execution_time_ms": self.execution_time_ms,
            "trigger_source": self.trigger_source.value,
            "status": self.status.value,
            "simulation": self.simulation,
            "results": [r.to_dict() for r in self.results],
        }


class SchedulerRunner:
    """Runs one delivery pass over the assignments due at an instant."""

    def __init__(self, store: DeliveryStore, sender: EmailSender, config: AppConfig) -> None:
        self.store = store
        self.resolver = EligibilityResolver(store, config.scheduler)
        self.selector = LessonSelector(store)
        self.executor = DeliveryExecutor(
            store, sender, config.email, from_email=config.settings.resend_from_email
        )
        self.default_deadline = config.scheduler.run_deadline_seconds
        self.finalize_retry = RetryConfig(
            max_attempts=max(1, config.scheduler.finalize_max_attempts),
            backoff_base=0.2,
            backoff_max=2.0,
        )

    async def run(
        self,
        trigger_source: TriggerSource = TriggerSource.MANUAL,
        check_instant: datetime | None = None,
        simulate: bool = False,
        deadline_seconds: float | None = None,
    ) -> RunSummary:
        """Execute a scheduler run.

        Args:
            trigger_source: What started the run (forced to ``test`` when simulating)
            check_instant: Instant to evaluate eligibility at, defaults to now
            simulate: Resolve and select lessons without sending, logging or advancing
            deadline_seconds: Stop starting new assignments after this many seconds

        Returns:
            RunSummary with one result per eligible assignment

        Raises:
            OrchestratorFailure: If the run itself could not proceed
        """
        run_id = str(uuid.uuid4())
        check = to_naive_utc(check_instant) if check_instant else utc_now()
        if simulate:
            trigger_source = TriggerSource.TEST
        if deadline_seconds is None:
            deadline_seconds = self.default_deadline

        started = time.monotonic()
        log = logger.bind(run_id=run_id, trigger=trigger_source.value, simulate=simulate)
        summary = RunSummary(
            run_id=run_id,
            timestamp=check,
            trigger_source=trigger_source,
            simulation=simulate,
        )

        try:
            await self.store.insert_run(
                SchedulerRun(
                    run_id=run_id,
                    timestamp=check,
                    trigger_source=trigger_source,
                    status=RunStatus.RUNNING,
                )
            )
            await self.store.commit()
        except Exception as e:
            log.bind(error=str(e)).error("scheduler_run_record_failed")
            await self.store.rollback()
            raise OrchestratorFailure(f"Could not create run record: {e}", run_id=run_id) from e

        log.bind(check_instant=check.isoformat()).info("scheduler_run_started")

        try:
            eligible = await self.resolver.find_eligible(check)
            summary.total_eligible = len(eligible)

            for index, item in enumerate(eligible):
                if deadline_seconds is not None and time.monotonic() - started >= deadline_seconds:
                    log.bind(remaining=len(eligible) - index).warning("scheduler_run_deadline_reached")
                    summary.results.extend(
                        ProcessResult(
                            user_email=rest.user_email,
                            book_title=rest.book_title,
                            action=ProcessAction.SKIPPED,
                            error=DEADLINE_REACHED,
                        )
                        for rest in eligible[index:]
                    )
                    break
                summary.results.append(await self._process(item, run_id, simulate))

        except asyncio.CancelledError:
            summary.execution_time_ms = self._elapsed_ms(started)
            await self._finalize(summary, RunStatus.FAILED, error="run cancelled")
            raise
        except Exception as e:
            log.bind(error=str(e)).error("scheduler_run_failed")
            await self.store.rollback()
            summary.execution_time_ms = self._elapsed_ms(started)
            await self._finalize(summary, RunStatus.FAILED, error=str(e))
            raise OrchestratorFailure(str(e), run_id=run_id) from e

        summary.execution_time_ms = self._elapsed_ms(started)
        await self._finalize(summary, RunStatus.COMPLETED)

        log.bind(
            eligible=summary.total_eligible,
            sent=summary.sent,
            errors=summary.errors,
            completed=summary.completed,
            no_content=summary.no_content,
            skipped=summary.skipped,
            execution_time_ms=summary.execution_time_ms,
        ).info("scheduler_run_completed")
        return summary

    async def _process(self, item: EligibleAssignment, run_id: str, simulate: bool) -> ProcessResult:
        """Handle one eligible assignment. Never raises for per-assignment problems."""
        log = logger.bind(run_id=run_id, email=item.user_email, book=item.book_title)
        lesson_id = None

        try:
            if not simulate and await self.store.has_sent_for_slot(item.assignment_id, item.slot_start):
                log.bind(slot_start=item.slot_start.isoformat()).info("assignment_slot_already_served")
                return ProcessResult(
                    user_email=item.user_email,
                    book_title=item.book_title,
                    action=ProcessAction.SKIPPED,
                    error=ALREADY_DELIVERED,
                )

            # Re-read so progress reflects anything a concurrent run committed
            assignment = await self.store.get_assignment(item.assignment_id)
            if assignment is None:
                return ProcessResult(
                    user_email=item.user_email,
                    book_title=item.book_title,
                    action=ProcessAction.SKIPPED,
                    error="assignment no longer exists",
                )

            selection = await self.selector.next_lesson(assignment)

            if isinstance(selection, NoContent):
                log.warning("book_has_no_lessons")
                return ProcessResult(
                    user_email=item.user_email,
                    book_title=item.book_title,
                    action=ProcessAction.NO_CONTENT,
                    progress="0/0",
                    error=selection.reason,
                )

            if not selection.should_send or selection.lesson is None:
                if not simulate:
                    await self.store.mark_completed(assignment.id)
                    await self.store.commit()
                    log.info("assignment_completed")
                return ProcessResult(
                    user_email=item.user_email,
                    book_title=item.book_title,
                    action=ProcessAction.COMPLETED,
                    progress=selection.progress,
                )

            lesson = selection.lesson
            lesson_id = lesson.id

            if simulate:
                return ProcessResult(
                    user_email=item.user_email,
                    book_title=item.book_title,
                    action=ProcessAction.WOULD_SEND,
                    lesson_day=lesson.day_number,
                    progress=selection.progress,
                )

            outcome = await self.executor.deliver(
                DeliveryRequest(
                    user_id=item.user_id,
                    user_email=item.user_email,
                    book_id=item.book_id,
                    book_title=item.book_title,
                    lesson=lesson,
                    run_id=run_id,
                    assignment_id=item.assignment_id,
                    scheduled_for=item.slot_start,
                    expected_progress=selection.current_progress,
                )
            )

            if outcome.sent:
                return ProcessResult(
                    user_email=item.user_email,
                    book_title=item.book_title,
                    action=ProcessAction.SENT,
                    lesson_day=lesson.day_number,
                    progress=selection.progress,
                    resend_email_id=outcome.provider_message_id,
                )
            return ProcessResult(
                user_email=item.user_email,
                book_title=item.book_title,
                action=ProcessAction.ERROR,
                lesson_day=lesson.day_number,
                progress=f"{selection.current_progress}/{selection.total_lessons}",
                error=outcome.error,
            )

        except LessonContentUnavailable as e:
            log.bind(error=str(e)).warning("lesson_content_unavailable")
            if not simulate:
                await self._record_failure(item, run_id, str(e), e.lesson_id or lesson_id)
            return ProcessResult(
                user_email=item.user_email,
                book_title=item.book_title,
                action=ProcessAction.ERROR,
                lesson_day=e.day_number,
                error=str(e),
            )
        except Exception as e:
            log.bind(error=str(e)).error("assignment_processing_failed")
            await self.store.rollback()
            if not simulate:
                await self._record_failure(item, run_id, str(e), lesson_id)
            return ProcessResult(
                user_email=item.user_email,
                book_title=item.book_title,
                action=ProcessAction.ERROR,
                error=str(e),
            )

    async def _record_failure(
        self,
        item: EligibleAssignment,
        run_id: str,
        error: str,
        lesson_id: Any = None,
    ) -> None:
        """Best-effort failed log entry for an assignment that errored before sending."""
        try:
            await self.executor.record_failure(
                user_id=item.user_id,
                error=error,
                assignment_id=item.assignment_id,
                book_id=item.book_id,
                lesson_id=lesson_id,
                run_id=run_id,
                scheduled_for=item.slot_start,
            )
        except Exception as log_error:
            await self.store.rollback()
            logger.bind(run_id=run_id, email=item.user_email, error=str(log_error)).error(
                "failed_log_write_failed"
            )

    async def _finalize(self, summary: RunSummary, status: RunStatus, error: str | None = None) -> None:
        """Persist the terminal state of the run. Best effort: a final failure is logged."""
        summary.status = status
        values = {
            "status": status,
            "eligible_users": summary.total_eligible,
            "emails_sent": summary.sent,
            "emails_failed": summary.errors,
            "emails_completed": summary.completed,
            "emails_no_content": summary.no_content,
            "emails_skipped": summary.skipped,
            "execution_time_ms": summary.execution_time_ms,
            "error": error,
        }

        async def write() -> None:
            try:
                await self.store.update_run(summary.run_id, **values)
                await self.store.commit()
            except Exception:
                await self.store.rollback()
                raise

        try:
            await retry_with_backoff(write, self.finalize_retry, operation_name="finalize_scheduler_run")
        except Exception as e:
            logger.bind(run_id=summary.run_id, status=status.value, error=str(e)).error(
                "scheduler_run_finalize_failed"
            )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def build_runner(
    db: AsyncSession,
    sender: EmailSender,
    config: AppConfig | None = None,
) -> SchedulerRunner:
    """Wire a runner to a database session."""
    return SchedulerRunner(SqlDeliveryStore(db), sender, config or get_config())
