"""Book and lesson content models."""

from __future__ import annotations

import uuid

from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookmail.models.base import Base, TimestampMixin


class Book(Base, TimestampMixin):
    """A book split into daily lessons."""

    __tablename__ = "books"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255))
    author: Mapped[str] = mapped_column(String(255), default="")
    description: Mapped[str | None] = mapped_column(Text, default=None)

    lessons: Mapped[list[Lesson]] = relationship(
        back_populates="book",
        order_by="Lesson.day_number",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    def __repr__(self) -> str:
        return f"<Book {self.title}>"


class Lesson(Base, TimestampMixin):
    """One day's lesson of a book.

    Day numbers are 1-based and dense per book. Renumbering lessons of a
    book that is already assigned desynchronizes every progress counter.
    """

    __tablename__ = "lessons"
    __table_args__ = (UniqueConstraint("book_id", "day_number", name="uq_lesson_book_day"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), index=True
    )
    day_number: Mapped[int] = mapped_column(Integer)
    subject: Mapped[str | None] = mapped_column(String(255), default=None)
    body_html: Mapped[str] = mapped_column(Text, default="")

    book: Mapped[Book] = relationship(back_populates="lessons", lazy="selectin")

    @property
    def display_subject(self) -> str:
        """Subject line, falling back to the day number."""
        if self.subject:
            return self.subject
        return f"Day {self.day_number}"

    def __repr__(self) -> str:
        return f"<Lesson book={self.book_id} day={self.day_number}>"
