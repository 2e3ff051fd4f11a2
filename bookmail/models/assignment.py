"""Book assignments: a user's subscription to one book and its progress."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookmail.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from bookmail.models.book import Book
    from bookmail.models.user import User


class AssignmentStatus(str, enum.Enum):
    """Reading status of an assignment."""

    QUEUED = "queued"
    CURRENTLY_READING = "currently_reading"
    COMPLETED = "completed"


class BookAssignment(Base):
    """A user's subscription to one book.

    Progress lives on this row: ``last_lesson_sent`` is the day number of the
    last lesson delivered (0 = nothing yet). It only ever moves forward and
    is advanced with a conditional update (see ``SqlDeliveryStore.advance_progress``).
    """

    __tablename__ = "user_books"
    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_user_book"),
        CheckConstraint("last_lesson_sent >= 0", name="ck_user_books_progress_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), index=True
    )
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    last_lesson_sent: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[AssignmentStatus] = mapped_column(
        Enum(
            AssignmentStatus,
            values_callable=lambda e: [x.value for x in e],
            name="assignmentstatus",
            native_enum=False,
            length=32,
        ),
        default=AssignmentStatus.QUEUED,
    )
    assigned_at: Mapped[datetime] = mapped_column(default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(default=None)
    progress_updated_at: Mapped[datetime | None] = mapped_column(default=None)

    # Relationships
    user: Mapped[User] = relationship(back_populates="assignments", lazy="selectin")
    book: Mapped[Book] = relationship(lazy="selectin")
    delivery_times: Mapped[list[AssignmentDeliveryTime]] = relationship(
        back_populates="assignment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<BookAssignment user={self.user_id} book={self.book_id} last={self.last_lesson_sent}>"


class AssignmentDeliveryTime(Base, TimestampMixin):
    """Local time of day ("HH:MM") at which an assignment's lessons go out."""

    __tablename__ = "user_book_delivery_times"
    __table_args__ = (
        UniqueConstraint("user_book_id", "delivery_time", name="uq_user_book_delivery_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("user_books.id", ondelete="CASCADE"), index=True
    )
    delivery_time: Mapped[str] = mapped_column(String(8))

    assignment: Mapped[BookAssignment] = relationship(back_populates="delivery_times")

    def __repr__(self) -> str:
        return f"<AssignmentDeliveryTime {self.user_book_id} {self.delivery_time}>"
