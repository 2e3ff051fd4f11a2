"""Data store capability used by the delivery engine.

The engine never touches a global session: every component receives a
``DeliveryStore``. ``SqlDeliveryStore`` is the SQLAlchemy implementation;
tests run it against in-memory SQLite.
"""

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from bookmail.core.timeconv import utc_now
from bookmail.models.assignment import AssignmentStatus, BookAssignment
from bookmail.models.book import Lesson
from bookmail.models.delivery_log import DeliveryLog, DeliveryReason, DeliveryStatus
from bookmail.models.scheduler_run import SchedulerRun
from bookmail.models.user import User


class DeliveryStore(Protocol):
    """Queries and writes the delivery engine needs from the database."""

    async def get_delivery_candidates(self) -> list[BookAssignment]: ...

    async def get_assignment(self, assignment_id: uuid.UUID) -> BookAssignment | None: ...

    async def find_assignment(
        self, user_id: uuid.UUID, book_id: uuid.UUID
    ) -> BookAssignment | None: ...

    async def count_lessons(self, book_id: uuid.UUID) -> int: ...

    async def get_lesson_by_day(self, book_id: uuid.UUID, day_number: int) -> Lesson | None: ...

    async def get_lesson(self, lesson_id: uuid.UUID) -> Lesson | None: ...

    async def insert_log_entry(self, **fields: Any) -> DeliveryLog: ...

    async def advance_progress(
        self, assignment_id: uuid.UUID, expected: int, day_number: int
    ) -> bool: ...

    async def mark_completed(self, assignment_id: uuid.UUID) -> None: ...

    async def has_sent_for_slot(self, assignment_id: uuid.UUID, slot_start: datetime) -> bool: ...

    async def insert_run(self, run: SchedulerRun) -> None: ...

    async def update_run(self, run_id: str, **values: Any) -> None: ...

    async def get_failed_logs(self, log_ids: Iterable[uuid.UUID]) -> list[DeliveryLog]: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


class SqlDeliveryStore:
    """SQLAlchemy-backed delivery store bound to one session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_delivery_candidates(self) -> list[BookAssignment]:
        """All assignments that may still receive lessons, with user and delivery times loaded."""
        result = await self.db.execute(
            select(BookAssignment)
            .join(User, User.id == BookAssignment.user_id)
            .where(BookAssignment.status != AssignmentStatus.COMPLETED)
            .options(
                selectinload(BookAssignment.user),
                selectinload(BookAssignment.book),
                selectinload(BookAssignment.delivery_times),
            )
            .order_by(User.email, BookAssignment.order_index)
        )
        return list(result.scalars().all())

    async def get_assignment(self, assignment_id: uuid.UUID) -> BookAssignment | None:
        """Fetch an assignment, overwriting any stale copy held by the session."""
        result = await self.db.execute(
            select(BookAssignment)
            .where(BookAssignment.id == assignment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_assignment(
        self, user_id: uuid.UUID, book_id: uuid.UUID
    ) -> BookAssignment | None:
        result = await self.db.execute(
            select(BookAssignment)
            .where(BookAssignment.user_id == user_id, BookAssignment.book_id == book_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def count_lessons(self, book_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(Lesson.id)).where(Lesson.book_id == book_id)
        )
        return result.scalar() or 0

    async def get_lesson_by_day(self, book_id: uuid.UUID, day_number: int) -> Lesson | None:
        result = await self.db.execute(
            select(Lesson).where(Lesson.book_id == book_id, Lesson.day_number == day_number)
        )
        return result.scalar_one_or_none()

    async def get_lesson(self, lesson_id: uuid.UUID) -> Lesson | None:
        return await self.db.get(Lesson, lesson_id)

    async def insert_log_entry(self, **fields: Any) -> DeliveryLog:
        """Insert an immutable delivery log row."""
        fields.setdefault("sent_at", utc_now())
        entry = DeliveryLog(**fields)
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def advance_progress(
        self, assignment_id: uuid.UUID, expected: int, day_number: int
    ) -> bool:
        """Move last_lesson_sent from ``expected`` to ``day_number``.

        Compare-and-swap: the row is only touched if it still holds the value
        read before sending, so two overlapping runs cannot both advance it
        and progress can never move backwards.

        Returns:
            True if this call advanced the progress
        """
        if day_number <= expected:
            return False

        now = utc_now()
        result = await self.db.execute(
            update(BookAssignment)
            .where(
                BookAssignment.id == assignment_id,
                BookAssignment.last_lesson_sent == expected,
            )
            .values(
                last_lesson_sent=day_number,
                progress_updated_at=now,
                status=AssignmentStatus.CURRENTLY_READING,
                started_at=func.coalesce(BookAssignment.started_at, now),
            )
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def mark_completed(self, assignment_id: uuid.UUID) -> None:
        await self.db.execute(
            update(BookAssignment)
            .where(BookAssignment.id == assignment_id)
            .values(status=AssignmentStatus.COMPLETED)
            .execution_options(synchronize_session=False)
        )

    async def has_sent_for_slot(self, assignment_id: uuid.UUID, slot_start: datetime) -> bool:
        """True if a scheduled lesson already went out for this assignment and slot."""
        result = await self.db.execute(
            select(
                exists().where(
                    DeliveryLog.user_book_id == assignment_id,
                    DeliveryLog.scheduled_for == slot_start,
                    DeliveryLog.status == DeliveryStatus.SENT,
                    DeliveryLog.delivery_reason == DeliveryReason.SCHEDULED,
                )
            )
        )
        return bool(result.scalar())

    async def insert_run(self, run: SchedulerRun) -> None:
        self.db.add(run)
        await self.db.flush()

    async def update_run(self, run_id: str, **values: Any) -> None:
        values.setdefault("updated_at", utc_now())
        await self.db.execute(
            update(SchedulerRun)
            .where(SchedulerRun.run_id == run_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def get_failed_logs(self, log_ids: Iterable[uuid.UUID]) -> list[DeliveryLog]:
        """Failed log rows among ``log_ids`` that no later retry has delivered."""
        ids = list(log_ids)
        if not ids:
            return []

        retried = aliased(DeliveryLog)
        result = await self.db.execute(
            select(DeliveryLog)
            .where(
                DeliveryLog.id.in_(ids),
                DeliveryLog.status == DeliveryStatus.FAILED,
                ~exists().where(
                    and_(
                        retried.retry_of_id == DeliveryLog.id,
                        retried.status == DeliveryStatus.SENT,
                    )
                ),
            )
            .order_by(DeliveryLog.sent_at)
        )
        return list(result.scalars().all())

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()
