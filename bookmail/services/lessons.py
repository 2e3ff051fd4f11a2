"""Next-lesson selection for an assignment."""

import uuid
from dataclasses import dataclass
from typing import Protocol

from bookmail.core.errors import LessonContentUnavailable
from bookmail.models.book import Lesson
from bookmail.services.store import DeliveryStore


class ProgressRef(Protocol):
    """Anything carrying a book and the last lesson delivered for it."""

    book_id: uuid.UUID
    last_lesson_sent: int


@dataclass
class LessonSelection:
    """The lesson to deliver next, or the signal that the book is finished."""

    lesson: Lesson | None
    current_progress: int
    total_lessons: int
    should_send: bool

    @property
    def progress(self) -> str:
        if self.should_send and self.lesson is not None:
            return f"{self.lesson.day_number}/{self.total_lessons}"
        return f"{self.current_progress}/{self.total_lessons}"


@dataclass
class NoContent:
    """The book has no lessons at all."""

    book_id: uuid.UUID
    reason: str = "No lesson data available"


class LessonSelector:
    def __init__(self, store: DeliveryStore) -> None:
        self.store = store

    async def next_lesson(self, assignment: ProgressRef) -> LessonSelection | NoContent:
        """Pick the lesson following ``assignment.last_lesson_sent``.

        Returns ``should_send=False`` once every lesson has been delivered;
        the caller is responsible for marking the assignment completed.

        Raises:
            LessonContentUnavailable: If the next day is missing or has no body
        """
        total = await self.store.count_lessons(assignment.book_id)
        if total == 0:
            return NoContent(book_id=assignment.book_id)

        current = assignment.last_lesson_sent
        if current >= total:
            return LessonSelection(
                lesson=None,
                current_progress=current,
                total_lessons=total,
                should_send=False,
            )

        day_number = current + 1
        lesson = await self.store.get_lesson_by_day(assignment.book_id, day_number)
        if lesson is None:
            raise LessonContentUnavailable(
                f"Lesson for day {day_number} is missing ({total} lessons in book)",
                day_number=day_number,
            )
        if not (lesson.body_html or "").strip():
            raise LessonContentUnavailable(
                f"Lesson for day {day_number} has no content",
                lesson_id=lesson.id,
                day_number=day_number,
            )

        return LessonSelection(
            lesson=lesson,
            current_progress=current,
            total_lessons=total,
            should_send=True,
        )
