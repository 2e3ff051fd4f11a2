"""Per-attempt delivery audit log."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, Index, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookmail.models.base import Base

if TYPE_CHECKING:
    from bookmail.models.book import Lesson
    from bookmail.models.user import User


class DeliveryStatus(str, enum.Enum):
    """Outcome recorded for a delivery attempt."""

    SENT = "sent"
    FAILED = "failed"
    SCHEDULED = "scheduled"


class DeliveryReason(str, enum.Enum):
    """Why a delivery was attempted."""

    SCHEDULED = "scheduled"
    RETRY = "retry"
    TEST = "test"


class DeliveryLog(Base):
    """One row per attempted send.

    Rows are never updated: a retry inserts a new row pointing back at the
    original through ``retry_of_id``.
    """

    __tablename__ = "email_logs"
    __table_args__ = (
        Index("ix_email_logs_assignment_slot", "user_book_id", "scheduled_for", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    user_book_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("user_books.id", ondelete="SET NULL"), default=None
    )
    book_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="SET NULL"), default=None
    )
    lesson_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="SET NULL"), default=None
    )
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(
            DeliveryStatus,
            values_callable=lambda e: [x.value for x in e],
            name="deliverystatus",
            native_enum=False,
            length=16,
        ),
        index=True,
    )
    error: Mapped[str | None] = mapped_column(Text, default=None)
    schedule_run_id: Mapped[str | None] = mapped_column(String(36), index=True, default=None)
    scheduled_for: Mapped[datetime | None] = mapped_column(default=None)
    sent_at: Mapped[datetime] = mapped_column(default=func.now(), index=True)
    delivery_reason: Mapped[DeliveryReason] = mapped_column(
        Enum(
            DeliveryReason,
            values_callable=lambda e: [x.value for x in e],
            name="deliveryreason",
            native_enum=False,
            length=16,
        ),
        default=DeliveryReason.SCHEDULED,
    )
    provider_message_id: Mapped[str | None] = mapped_column(String(128), default=None)
    retry_of_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("email_logs.id", ondelete="SET NULL"), default=None
    )

    # Relationships
    user: Mapped[User] = relationship(lazy="selectin")
    lesson: Mapped[Lesson | None] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return f"<DeliveryLog {self.id} {self.status.value}>"
