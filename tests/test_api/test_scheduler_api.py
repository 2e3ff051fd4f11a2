"""Tests for scheduler endpoints."""

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from bookmail.core.timeconv import utc_now
from bookmail.models import RunStatus, SchedulerRun, TriggerSource
from bookmail.services.store import SqlDeliveryStore

pytestmark = pytest.mark.asyncio

LONDON_NINE = datetime(2026, 1, 15, 9, 0)
CLOCK = "bookmail.services.scheduler_run.utc_now"


class TestRunScheduler:
    """Tests for POST /api/scheduler/run."""

    async def test_manual_run(
        self, client: AsyncClient, email_sender, user_factory, book_factory, assignment_factory
    ):
        user = await user_factory(email="london@example.com", timezone="Europe/London")
        await assignment_factory(user, await book_factory(lessons=5))

        with patch(CLOCK, return_value=LONDON_NINE):
            response = await client.post("/api/scheduler/run")

        assert response.status_code == 200
        data = response.json()
        assert data["trigger_source"] == "manual"
        assert data["status"] == "completed"
        assert data["total_eligible"] == 1
        assert data["sent"] == 1
        assert data["simulation"] is False
        assert data["results"][0] == {
            "user_email": "london@example.com",
            "book_title": "Deep Work",
            "lesson_day": 1,
            "progress": "1/5",
            "action": "SENT",
            "error": None,
            "resend_email_id": "msg_1",
        }
        assert len(email_sender.sent) == 1

    async def test_orchestrator_failure_returns_500(self, client: AsyncClient, db_session):
        with patch.object(
            SqlDeliveryStore,
            "get_delivery_candidates",
            new_callable=AsyncMock,
            side_effect=RuntimeError("database unavailable"),
        ):
            response = await client.post("/api/scheduler/run")

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "database unavailable"
        assert data["run_id"]
        assert "timestamp" in data

        run = await db_session.get(SchedulerRun, data["run_id"], populate_existing=True)
        assert run.status == RunStatus.FAILED


class TestCronTrigger:
    """Tests for /api/cron/email-scheduler."""

    async def test_runs_with_cron_source(self, client: AsyncClient):
        response = await client.get("/api/cron/email-scheduler")

        assert response.status_code == 200
        assert response.json()["trigger_source"] == "cron"

    async def test_post_is_accepted(self, client: AsyncClient):
        response = await client.post("/api/cron/email-scheduler")

        assert response.status_code == 200

    async def test_secret_required_when_configured(self, client: AsyncClient, test_settings):
        test_settings.cron_secret = "s3cret"

        missing = await client.get("/api/cron/email-scheduler")
        wrong = await client.get(
            "/api/cron/email-scheduler", headers={"Authorization": "Bearer nope"}
        )
        right = await client.get(
            "/api/cron/email-scheduler", headers={"Authorization": "Bearer s3cret"}
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200


class TestSimulate:
    """Tests for POST /api/scheduler/simulate."""

    async def test_simulation(
        self,
        client: AsyncClient,
        db_session,
        email_sender,
        user_factory,
        book_factory,
        assignment_factory,
    ):
        assignment = await assignment_factory(
            await user_factory(timezone="Europe/London"), await book_factory(), last_lesson_sent=2
        )

        response = await client.post(
            "/api/scheduler/simulate",
            json={"test_time": "09:00", "timezone": "Europe/London"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["simulation"] is True
        assert data["trigger_source"] == "test"
        assert data["results"][0]["action"] == "WOULD_SEND"
        assert data["results"][0]["lesson_day"] == 3
        assert data["conversion_info"]["local_time"] == "09:00"
        assert data["conversion_info"]["timezone"] == "Europe/London"
        assert data["conversion_info"]["offset_minutes"] in (0, 60)
        assert email_sender.sent == []

        await db_session.refresh(assignment)
        assert assignment.last_lesson_sent == 2

    async def test_invalid_timezone(self, client: AsyncClient):
        response = await client.post(
            "/api/scheduler/simulate",
            json={"test_time": "09:00", "timezone": "Mars/Olympus_Mons"},
        )

        assert response.status_code == 400
        assert "Mars/Olympus_Mons" in response.json()["detail"]

    async def test_invalid_time(self, client: AsyncClient):
        response = await client.post(
            "/api/scheduler/simulate",
            json={"test_time": "25:00", "timezone": "Europe/London"},
        )

        assert response.status_code == 400

    async def test_missing_fields(self, client: AsyncClient):
        response = await client.post("/api/scheduler/simulate", json={"test_time": "09:00"})

        assert response.status_code == 422


class TestRunHistory:
    """Tests for GET /api/scheduler/runs."""

    async def test_lists_runs_with_stats(self, client: AsyncClient, db_session):
        db_session.add_all(
            [
                SchedulerRun(
                    run_id="run-1",
                    timestamp=utc_now(),
                    trigger_source=TriggerSource.CRON,
                    status=RunStatus.COMPLETED,
                    eligible_users=3,
                    emails_sent=2,
                    emails_failed=1,
                    execution_time_ms=120,
                ),
                SchedulerRun(
                    run_id="run-2",
                    timestamp=utc_now(),
                    trigger_source=TriggerSource.MANUAL,
                    status=RunStatus.FAILED,
                    error="database unavailable",
                    execution_time_ms=10,
                ),
            ]
        )
        await db_session.commit()

        response = await client.get("/api/scheduler/runs")

        assert response.status_code == 200
        data = response.json()
        assert {r["run_id"] for r in data["runs"]} == {"run-1", "run-2"}
        assert data["stats"]["total_runs"] == 2
        assert data["stats"]["successful_runs"] == 1
        assert data["stats"]["failed_runs"] == 1
        assert data["stats"]["total_emails_sent"] == 2
        assert data["stats"]["success_rate"] == 50.0
        assert data["source_breakdown"]["cron"]["count"] == 1
        assert data["hours"] == 24

    async def test_filter_by_trigger_source(self, client: AsyncClient, db_session):
        db_session.add_all(
            [
                SchedulerRun(run_id="cron-run", timestamp=utc_now(), trigger_source=TriggerSource.CRON),
                SchedulerRun(run_id="test-run", timestamp=utc_now(), trigger_source=TriggerSource.TEST),
            ]
        )
        await db_session.commit()

        response = await client.get("/api/scheduler/runs", params={"trigger_source": "test"})

        assert response.status_code == 200
        data = response.json()
        assert [r["run_id"] for r in data["runs"]] == ["test-run"]
        assert data["trigger_source"] == "test"

    async def test_rejects_unknown_trigger_source(self, client: AsyncClient):
        response = await client.get("/api/scheduler/runs", params={"trigger_source": "bogus"})

        assert response.status_code == 422

    async def test_run_records_are_queryable(
        self, client: AsyncClient, db_session, user_factory, book_factory, assignment_factory
    ):
        await assignment_factory(await user_factory(), await book_factory())

        await client.post("/api/scheduler/run")

        result = await db_session.execute(
            select(SchedulerRun).execution_options(populate_existing=True)
        )
        [run] = result.scalars().all()
        assert run.trigger_source == TriggerSource.MANUAL
        assert run.status == RunStatus.COMPLETED


class TestSchedules:
    """Tests for GET /api/scheduler/schedules."""

    async def test_empty_when_scheduler_disabled(self, client: AsyncClient):
        response = await client.get("/api/scheduler/schedules")

        assert response.status_code == 200
        assert response.json() == []


class TestStatus:
    """Tests for GET /api/scheduler/status."""

    async def test_status_overview(
        self, client: AsyncClient, user_factory, book_factory, assignment_factory
    ):
        await assignment_factory(await user_factory(), await book_factory(lessons=4))

        response = await client.get("/api/scheduler/status")

        assert response.status_code == 200
        data = response.json()
        assert data["users_with_delivery_times"] == 1
        assert data["users_with_books"] == 1
        assert data["total_lessons"] == 4
        assert data["recent_deliveries"] == 0
        assert data["scheduler_active"] is False
        assert data["next_run_time"].endswith(":00:00")

    async def test_hours_must_be_positive(self, client: AsyncClient):
        response = await client.get("/api/scheduler/status", params={"hours": 0})

        assert response.status_code == 422
