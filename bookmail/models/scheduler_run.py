"""Scheduler run history model."""

import enum
from datetime import datetime

from sqlalchemy import Enum, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from bookmail.models.base import Base


class RunStatus(str, enum.Enum):
    """Lifecycle of a scheduler run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerSource(str, enum.Enum):
    """What started a scheduler run."""

    CRON = "cron"
    MANUAL = "manual"
    CLI = "cli"
    TEST = "test"


class SchedulerRun(Base):
    """Records each execution of the delivery scheduler.

    Created as ``running`` before any work starts and updated in place with
    the final counts; the only delivery record that is mutated.
    """

    __tablename__ = "scheduler_runs"

    run_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(index=True)
    trigger_source: Mapped[TriggerSource] = mapped_column(
        Enum(
            TriggerSource,
            values_callable=lambda e: [x.value for x in e],
            name="triggersource",
            native_enum=False,
            length=16,
        ),
    )
    status: Mapped[RunStatus] = mapped_column(
        Enum(
            RunStatus,
            values_callable=lambda e: [x.value for x in e],
            name="runstatus",
            native_enum=False,
            length=16,
        ),
        default=RunStatus.RUNNING,
    )
    eligible_users: Mapped[int] = mapped_column(Integer, default=0)
    emails_sent: Mapped[int] = mapped_column(Integer, default=0)
    emails_failed: Mapped[int] = mapped_column(Integer, default=0)
    emails_completed: Mapped[int] = mapped_column(Integer, default=0)
    emails_no_content: Mapped[int] = mapped_column(Integer, default=0)
    emails_skipped: Mapped[int] = mapped_column(Integer, default=0)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(default=None)

    def __repr__(self) -> str:
        return f"<SchedulerRun {self.run_id} {self.status.value}>"
