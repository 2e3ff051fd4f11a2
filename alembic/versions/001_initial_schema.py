"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Enum-valued columns are stored as VARCHAR (non-native enums)

    # Users table
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Books and lessons
    op.create_table(
        "books",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("author", sa.String(255), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "lessons",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "book_id",
            sa.Uuid(),
            sa.ForeignKey("books.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day_number", sa.Integer(), nullable=False),
        sa.Column("subject", sa.String(255), nullable=True),
        sa.Column("body_html", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("book_id", "day_number", name="uq_lesson_book_day"),
    )
    op.create_index("ix_lessons_book_id", "lessons", ["book_id"])

    # Assignments and their delivery times
    op.create_table(
        "user_books",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "book_id",
            sa.Uuid(),
            sa.ForeignKey("books.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_lesson_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(32), nullable=False, server_default="queued"),
        sa.Column("assigned_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("progress_updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("user_id", "book_id", name="uq_user_book"),
        sa.CheckConstraint("last_lesson_sent >= 0", name="ck_user_books_progress_non_negative"),
    )
    op.create_index("ix_user_books_user_id", "user_books", ["user_id"])
    op.create_index("ix_user_books_book_id", "user_books", ["book_id"])

    op.create_table(
        "user_book_delivery_times",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_book_id",
            sa.Uuid(),
            sa.ForeignKey("user_books.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("delivery_time", sa.String(8), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "user_book_id", "delivery_time", name="uq_user_book_delivery_time"
        ),
    )
    op.create_index(
        "ix_user_book_delivery_times_user_book_id",
        "user_book_delivery_times",
        ["user_book_id"],
    )

    # Delivery log (append-only)
    op.create_table(
        "email_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_book_id",
            sa.Uuid(),
            sa.ForeignKey("user_books.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "book_id",
            sa.Uuid(),
            sa.ForeignKey("books.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "lesson_id",
            sa.Uuid(),
            sa.ForeignKey("lessons.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("schedule_run_id", sa.String(36), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("delivery_reason", sa.String(16), nullable=False, server_default="scheduled"),
        sa.Column("provider_message_id", sa.String(128), nullable=True),
        sa.Column(
            "retry_of_id",
            sa.Uuid(),
            sa.ForeignKey("email_logs.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index("ix_email_logs_user_id", "email_logs", ["user_id"])
    op.create_index("ix_email_logs_status", "email_logs", ["status"])
    op.create_index("ix_email_logs_schedule_run_id", "email_logs", ["schedule_run_id"])
    op.create_index("ix_email_logs_sent_at", "email_logs", ["sent_at"])
    op.create_index(
        "ix_email_logs_assignment_slot",
        "email_logs",
        ["user_book_id", "scheduled_for", "status"],
    )

    # Scheduler run history
    op.create_table(
        "scheduler_runs",
        sa.Column("run_id", sa.String(36), primary_key=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("trigger_source", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        sa.Column("eligible_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_no_content", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_scheduler_runs_timestamp", "scheduler_runs", ["timestamp"])


def downgrade() -> None:
    op.drop_table("scheduler_runs")
    op.drop_table("email_logs")
    op.drop_table("user_book_delivery_times")
    op.drop_table("user_books")
    op.drop_table("lessons")
    op.drop_table("books")
    op.drop_table("users")
