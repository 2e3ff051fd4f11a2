"""Tests for scheduler run orchestration."""

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import func, select

from bookmail.core.errors import OrchestratorFailure
from bookmail.models import (
    AssignmentStatus,
    DeliveryLog,
    DeliveryReason,
    DeliveryStatus,
    RunStatus,
    SchedulerRun,
    TriggerSource,
)
from bookmail.services.scheduler_run import (
    ALREADY_DELIVERED,
    DEADLINE_REACHED,
    ProcessAction,
    SchedulerRunner,
)
from bookmail.services.store import SqlDeliveryStore

pytestmark = pytest.mark.asyncio

LONDON_NINE = datetime(2026, 1, 15, 9, 0)
NEXT_DAY_NINE = datetime(2026, 1, 16, 9, 0)


@pytest.fixture
def runner(db_session, email_sender, test_config):
    return SchedulerRunner(SqlDeliveryStore(db_session), email_sender, test_config)


class BrokenCandidatesStore(SqlDeliveryStore):
    async def get_delivery_candidates(self):
        raise RuntimeError("database unavailable")


class UnwritableRunStore(SqlDeliveryStore):
    """Accepts the running record but can never write the terminal state."""

    def __init__(self, db):
        super().__init__(db)
        self.update_attempts = 0

    async def update_run(self, run_id, **values):
        self.update_attempts += 1
        raise RuntimeError("connection reset")


class BrokenRunAndCandidatesStore(UnwritableRunStore, BrokenCandidatesStore):
    pass


class CancelledMidRunStore(SqlDeliveryStore):
    async def has_sent_for_slot(self, assignment_id, slot_start):
        raise asyncio.CancelledError()


async def get_run(db_session, run_id):
    return await db_session.get(SchedulerRun, run_id, populate_existing=True)


async def count_logs(db_session, **filters):
    query = select(func.count(DeliveryLog.id))
    for name, value in filters.items():
        query = query.where(getattr(DeliveryLog, name) == value)
    result = await db_session.execute(query)
    return result.scalar()


class TestRun:
    """Tests for a full scheduler run."""

    async def test_sends_next_lesson(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        user = await user_factory(email="london@example.com", timezone="Europe/London")
        assignment = await assignment_factory(user, await book_factory(lessons=5))

        summary = await runner.run(trigger_source=TriggerSource.TEST, check_instant=LONDON_NINE)

        assert summary.total_eligible == 1
        [result] = summary.results
        assert result.action == ProcessAction.SENT
        assert result.user_email == "london@example.com"
        assert result.lesson_day == 1
        assert result.progress == "1/5"
        assert result.resend_email_id == "msg_1"
        assert summary.sent == 1
        assert summary.status == RunStatus.COMPLETED

        headers = email_sender.sent[0]["headers"]
        assert headers["X-BookMail-Scheduler"] == "true"
        assert headers["X-BookMail-Run-ID"] == summary.run_id

        await db_session.refresh(assignment)
        assert assignment.last_lesson_sent == 1
        assert assignment.status == AssignmentStatus.CURRENTLY_READING
        assert assignment.started_at is not None

        entry = (await db_session.execute(select(DeliveryLog))).scalar_one()
        assert entry.status == DeliveryStatus.SENT
        assert entry.delivery_reason == DeliveryReason.SCHEDULED
        assert entry.schedule_run_id == summary.run_id
        assert entry.scheduled_for == LONDON_NINE

    async def test_run_record_is_persisted(
        self, runner, db_session, user_factory, book_factory, assignment_factory
    ):
        await assignment_factory(await user_factory(), await book_factory())

        summary = await runner.run(trigger_source=TriggerSource.CRON, check_instant=LONDON_NINE)

        run = await get_run(db_session, summary.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.trigger_source == TriggerSource.CRON
        assert run.timestamp == LONDON_NINE
        assert run.eligible_users == 1
        assert run.emails_sent == 1
        assert run.emails_failed == 0
        assert run.execution_time_ms is not None
        assert run.updated_at is not None
        assert run.error is None

    async def test_nothing_eligible(self, runner, db_session, user_factory, book_factory, assignment_factory):
        await assignment_factory(await user_factory(), await book_factory(), delivery_times=["18:00"])

        summary = await runner.run(check_instant=LONDON_NINE)

        assert summary.total_eligible == 0
        assert summary.results == []
        run = await get_run(db_session, summary.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.trigger_source == TriggerSource.MANUAL

    async def test_repeat_trigger_in_same_slot_is_skipped(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        assignment = await assignment_factory(await user_factory(), await book_factory())

        await runner.run(check_instant=LONDON_NINE)
        second = await runner.run(check_instant=datetime(2026, 1, 15, 9, 30))

        [result] = second.results
        assert result.action == ProcessAction.SKIPPED
        assert result.error == ALREADY_DELIVERED
        assert second.skipped == 1
        assert len(email_sender.sent) == 1

        await db_session.refresh(assignment)
        assert assignment.last_lesson_sent == 1

    async def test_next_day_sends_next_lesson(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        assignment = await assignment_factory(await user_factory(), await book_factory())

        await runner.run(check_instant=LONDON_NINE)
        summary = await runner.run(check_instant=NEXT_DAY_NINE)

        assert summary.results[0].action == ProcessAction.SENT
        assert summary.results[0].progress == "2/5"
        assert [m["subject"] for m in email_sender.sent] == ["Deep Work - Day 1", "Deep Work - Day 2"]
        await db_session.refresh(assignment)
        assert assignment.last_lesson_sent == 2

    async def test_provider_failure_keeps_progress(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        assignment = await assignment_factory(
            await user_factory(), await book_factory(), last_lesson_sent=2
        )
        email_sender.fail_all = True

        summary = await runner.run(check_instant=LONDON_NINE)

        [result] = summary.results
        assert result.action == ProcessAction.ERROR
        assert result.lesson_day == 3
        assert result.progress == "2/5"
        assert result.error == "Provider unavailable"
        assert summary.status == RunStatus.COMPLETED

        await db_session.refresh(assignment)
        assert assignment.last_lesson_sent == 2
        assert await count_logs(db_session, status=DeliveryStatus.FAILED) == 1

        run = await get_run(db_session, summary.run_id)
        assert run.emails_failed == 1

    async def test_failed_slot_is_not_treated_as_delivered(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        assignment = await assignment_factory(await user_factory(), await book_factory())
        email_sender.fail_all = True
        await runner.run(check_instant=LONDON_NINE)

        email_sender.fail_all = False
        summary = await runner.run(check_instant=LONDON_NINE)

        assert summary.results[0].action == ProcessAction.SENT
        await db_session.refresh(assignment)
        assert assignment.last_lesson_sent == 1

    async def test_final_lesson_then_completion(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        assignment = await assignment_factory(
            await user_factory(),
            await book_factory(lessons=5),
            last_lesson_sent=4,
            status=AssignmentStatus.CURRENTLY_READING,
        )

        first = await runner.run(check_instant=LONDON_NINE)
        assert first.results[0].action == ProcessAction.SENT
        assert first.results[0].progress == "5/5"

        second = await runner.run(check_instant=NEXT_DAY_NINE)
        assert second.results[0].action == ProcessAction.COMPLETED
        assert second.results[0].progress == "5/5"
        assert second.completed == 1
        assert len(email_sender.sent) == 1

        await db_session.refresh(assignment)
        assert assignment.status == AssignmentStatus.COMPLETED
        assert assignment.last_lesson_sent == 5

        third = await runner.run(check_instant=datetime(2026, 1, 17, 9, 0))
        assert third.total_eligible == 0

    async def test_book_without_lessons(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        await assignment_factory(await user_factory(), await book_factory(lessons=0))

        summary = await runner.run(check_instant=LONDON_NINE)

        [result] = summary.results
        assert result.action == ProcessAction.NO_CONTENT
        assert result.progress == "0/0"
        assert email_sender.sent == []
        assert await count_logs(db_session) == 0
        run = await get_run(db_session, summary.run_id)
        assert run.emails_no_content == 1

    async def test_missing_lesson_day_is_an_error(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        assignment = await assignment_factory(
            await user_factory(), await book_factory(lessons=5, skip_days=(3,)), last_lesson_sent=2
        )

        summary = await runner.run(check_instant=LONDON_NINE)

        [result] = summary.results
        assert result.action == ProcessAction.ERROR
        assert result.lesson_day == 3
        assert email_sender.sent == []
        assert await count_logs(db_session, status=DeliveryStatus.FAILED) == 1
        await db_session.refresh(assignment)
        assert assignment.last_lesson_sent == 2

    async def test_empty_lesson_body_is_an_error(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory,
        lesson_lookup,
    ):
        book = await book_factory(lessons=3, empty_days=(1,))
        await assignment_factory(await user_factory(), book)
        lesson = await lesson_lookup(book, 1)

        summary = await runner.run(check_instant=LONDON_NINE)

        assert summary.results[0].action == ProcessAction.ERROR
        assert email_sender.sent == []
        entry = (await db_session.execute(select(DeliveryLog))).scalar_one()
        assert entry.status == DeliveryStatus.FAILED
        assert entry.lesson_id == lesson.id

    async def test_one_failure_does_not_stop_others(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        failing = await user_factory(email="a-failing@example.com")
        working = await user_factory(email="b-working@example.com")
        await assignment_factory(failing, await book_factory(title="Book A"))
        ok = await assignment_factory(working, await book_factory(title="Book B"))
        email_sender.fail_for = {"a-failing@example.com"}

        summary = await runner.run(check_instant=LONDON_NINE)

        actions = {r.user_email: r.action for r in summary.results}
        assert actions == {
            "a-failing@example.com": ProcessAction.ERROR,
            "b-working@example.com": ProcessAction.SENT,
        }
        assert summary.errors == 1
        assert summary.sent == 1
        await db_session.refresh(ok)
        assert ok.last_lesson_sent == 1

    async def test_users_in_other_timezones_wait(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        await assignment_factory(await user_factory(timezone="Europe/London"), await book_factory())
        await assignment_factory(
            await user_factory(timezone="America/New_York"), await book_factory(title="Other")
        )

        summary = await runner.run(check_instant=LONDON_NINE)

        assert summary.total_eligible == 1
        assert len(email_sender.sent) == 1


class TestSimulation:
    """Tests for simulated runs."""

    async def test_simulation_has_no_side_effects(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        assignment = await assignment_factory(
            await user_factory(), await book_factory(), last_lesson_sent=1
        )

        summary = await runner.run(
            trigger_source=TriggerSource.MANUAL, check_instant=LONDON_NINE, simulate=True
        )

        [result] = summary.results
        assert result.action == ProcessAction.WOULD_SEND
        assert result.lesson_day == 2
        assert result.progress == "2/5"
        assert summary.simulation is True
        assert summary.trigger_source == TriggerSource.TEST

        assert email_sender.sent == []
        assert await count_logs(db_session) == 0
        await db_session.refresh(assignment)
        assert assignment.last_lesson_sent == 1

        run = await get_run(db_session, summary.run_id)
        assert run.trigger_source == TriggerSource.TEST
        assert run.status == RunStatus.COMPLETED

    async def test_simulation_does_not_complete_assignments(
        self, runner, db_session, user_factory, book_factory, assignment_factory
    ):
        assignment = await assignment_factory(
            await user_factory(),
            await book_factory(lessons=2),
            last_lesson_sent=2,
            status=AssignmentStatus.CURRENTLY_READING,
        )

        summary = await runner.run(check_instant=LONDON_NINE, simulate=True)

        assert summary.results[0].action == ProcessAction.COMPLETED
        await db_session.refresh(assignment)
        assert assignment.status == AssignmentStatus.CURRENTLY_READING


class TestDeadlineAndFailure:
    """Tests for deadlines and run-level failures."""

    async def test_deadline_skips_remaining(
        self, runner, db_session, email_sender, user_factory, book_factory, assignment_factory
    ):
        await assignment_factory(await user_factory(), await book_factory(title="Book A"))
        await assignment_factory(await user_factory(), await book_factory(title="Book B"))

        summary = await runner.run(check_instant=LONDON_NINE, deadline_seconds=0)

        assert summary.total_eligible == 2
        assert [r.action for r in summary.results] == [ProcessAction.SKIPPED] * 2
        assert all(r.error == DEADLINE_REACHED for r in summary.results)
        assert email_sender.sent == []

        run = await get_run(db_session, summary.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.emails_skipped == 2

    async def test_orchestrator_failure_marks_run_failed(
        self, db_session, email_sender, test_config
    ):
        runner = SchedulerRunner(BrokenCandidatesStore(db_session), email_sender, test_config)

        with pytest.raises(OrchestratorFailure) as exc:
            await runner.run(check_instant=LONDON_NINE)

        assert exc.value.run_id is not None
        run = await get_run(db_session, exc.value.run_id)
        assert run.status == RunStatus.FAILED
        assert run.error == "database unavailable"
        assert run.execution_time_ms is not None

    async def test_unwritable_terminal_record_still_returns_summary(
        self, db_session, email_sender, test_config, user_factory, book_factory, assignment_factory
    ):
        await assignment_factory(await user_factory(), await book_factory())
        test_config.scheduler.finalize_max_attempts = 2
        store = UnwritableRunStore(db_session)
        runner = SchedulerRunner(store, email_sender, test_config)

        summary = await runner.run(check_instant=LONDON_NINE)

        assert summary.status == RunStatus.COMPLETED
        assert summary.results[0].action == ProcessAction.SENT
        assert store.update_attempts == 2
        run = await get_run(db_session, summary.run_id)
        assert run.status == RunStatus.RUNNING

    async def test_unwritable_terminal_record_after_run_failure(
        self, db_session, email_sender, test_config
    ):
        test_config.scheduler.finalize_max_attempts = 1
        runner = SchedulerRunner(BrokenRunAndCandidatesStore(db_session), email_sender, test_config)

        with pytest.raises(OrchestratorFailure) as exc:
            await runner.run(check_instant=LONDON_NINE)

        assert str(exc.value) == "database unavailable"
        run = await get_run(db_session, exc.value.run_id)
        assert run.status == RunStatus.RUNNING

    async def test_cancellation_marks_run_failed(
        self, db_session, email_sender, test_config, user_factory, book_factory, assignment_factory
    ):
        await assignment_factory(await user_factory(), await book_factory())
        runner = SchedulerRunner(CancelledMidRunStore(db_session), email_sender, test_config)

        with pytest.raises(asyncio.CancelledError):
            await runner.run(check_instant=LONDON_NINE)

        result = await db_session.execute(
            select(SchedulerRun).execution_options(populate_existing=True)
        )
        [run] = result.scalars().all()
        assert run.status == RunStatus.FAILED
        assert run.error == "run cancelled"
        assert run.execution_time_ms is not None
        assert email_sender.sent == []
