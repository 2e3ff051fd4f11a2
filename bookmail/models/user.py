from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookmail.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from bookmail.models.assignment import BookAssignment


class User(Base, TimestampMixin):
    """Lesson subscriber."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    # IANA timezone; NULL keeps the user out of time-based matching
    timezone: Mapped[str | None] = mapped_column(String(64), default=None)

    # Relationships
    assignments: Mapped[list[BookAssignment]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"
