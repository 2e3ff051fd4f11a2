"""
Pytest configuration and fixtures for BookMail tests.

Provides:
- Async test database with SQLite
- Test client for API testing
- A fake email sender
- Factory fixtures for creating test data

Factories commit, since the delivery engine commits and rolls back the
session itself.
"""

import uuid
from collections.abc import AsyncGenerator, Iterable
from datetime import datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bookmail.config import AppConfig, Settings, get_config, get_settings
from bookmail.core.database import get_db
from bookmail.core.errors import EmailProviderError
from bookmail.core.timeconv import utc_now
from bookmail.dependencies import get_email_sender
from bookmail.main import app
from bookmail.models import (
    AssignmentDeliveryTime,
    AssignmentStatus,
    Base,
    Book,
    BookAssignment,
    DeliveryLog,
    DeliveryReason,
    DeliveryStatus,
    Lesson,
    User,
)

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# Override settings for testing
class TestSettings(Settings):
    database_url: str = TEST_DATABASE_URL
    debug: bool = True
    resend_api_key: str = "test-key"
    resend_from_email: str = "BookMail <lessons@test.bookmail.app>"
    base_url: str = "http://localhost:8000"
    # Missing on purpose: every test starts from the built-in defaults
    config_path: str = "tests/no-such-config.yml"
    scheduler_enabled: bool = False
    cron_secret: str = ""


class FakeEmailSender:
    """In-memory EmailSender that records what it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail_all = False
        self.fail_for: set[str] = set()
        self.error_message = "Provider unavailable"

    async def send(
        self,
        from_email: str,
        to: str,
        subject: str,
        html: str,
        headers: dict[str, str] | None = None,
    ) -> str:
        if self.fail_all or to in self.fail_for:
            raise EmailProviderError(self.error_message, status_code=503)

        message_id = f"msg_{len(self.sent) + 1}"
        self.sent.append(
            {
                "id": message_id,
                "from": from_email,
                "to": to,
                "subject": subject,
                "html": html,
                "headers": headers or {},
            }
        )
        return message_id


@pytest.fixture
def test_settings() -> TestSettings:
    return TestSettings()


@pytest.fixture
def test_config(test_settings: TestSettings) -> AppConfig:
    return AppConfig(test_settings)


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest_asyncio.fixture
async def db_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    test_settings: TestSettings,
    test_config: AppConfig,
    email_sender: FakeEmailSender,
) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with database, config and email overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_config] = lambda: test_config
    app.dependency_overrides[get_email_sender] = lambda: email_sender

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def user_factory(db_session: AsyncSession):
    """Factory for creating test users."""

    async def _create_user(
        email: str | None = None,
        timezone: str | None = "Europe/London",
    ) -> User:
        if email is None:
            email = f"reader-{uuid.uuid4().hex[:8]}@example.com"

        user = User(email=email, timezone=timezone)
        db_session.add(user)
        await db_session.commit()
        return user

    return _create_user


@pytest_asyncio.fixture
async def book_factory(db_session: AsyncSession):
    """Factory for creating books with dense lessons (day 1..lessons)."""

    async def _create_book(
        title: str = "Deep Work",
        lessons: int = 5,
        author: str = "Cal Newport",
        skip_days: Iterable[int] = (),
        empty_days: Iterable[int] = (),
    ) -> Book:
        book = Book(title=title, author=author)
        db_session.add(book)

        skip, empty = set(skip_days), set(empty_days)
        for day in range(1, lessons + 1):
            if day in skip:
                continue
            db_session.add(
                Lesson(
                    book=book,
                    day_number=day,
                    subject=f"{title} - Day {day}",
                    body_html="" if day in empty else f"<p>{title}, lesson {day}</p>",
                )
            )

        await db_session.commit()
        return book

    return _create_book


@pytest_asyncio.fixture
async def assignment_factory(db_session: AsyncSession):
    """Factory for assigning a book to a user."""

    async def _create_assignment(
        user: User,
        book: Book,
        delivery_times: Iterable[str] = ("09:00",),
        last_lesson_sent: int = 0,
        status: AssignmentStatus = AssignmentStatus.QUEUED,
        order_index: int = 0,
    ) -> BookAssignment:
        assignment = BookAssignment(
            user=user,
            book=book,
            last_lesson_sent=last_lesson_sent,
            status=status,
            order_index=order_index,
            delivery_times=[AssignmentDeliveryTime(delivery_time=t) for t in delivery_times],
        )
        db_session.add(assignment)
        await db_session.commit()
        return assignment

    return _create_assignment


@pytest_asyncio.fixture
async def lesson_lookup(db_session: AsyncSession):
    """Fetch a lesson of a book by day number."""

    async def _get(book: Book, day_number: int) -> Lesson:
        result = await db_session.execute(
            select(Lesson).where(Lesson.book_id == book.id, Lesson.day_number == day_number)
        )
        return result.scalar_one()

    return _get


@pytest_asyncio.fixture
async def delivery_log_factory(db_session: AsyncSession):
    """Factory for creating delivery log entries."""

    async def _create_log(
        user: User,
        lesson: Lesson | None = None,
        assignment: BookAssignment | None = None,
        status: DeliveryStatus = DeliveryStatus.FAILED,
        error: str | None = "Provider unavailable",
        reason: DeliveryReason = DeliveryReason.SCHEDULED,
        schedule_run_id: str | None = None,
        scheduled_for: datetime | None = None,
        sent_at: datetime | None = None,
        retry_of_id: uuid.UUID | None = None,
    ) -> DeliveryLog:
        entry = DeliveryLog(
            user=user,
            lesson=lesson,
            user_book_id=assignment.id if assignment else None,
            book_id=lesson.book_id if lesson else None,
            status=status,
            error=error if status == DeliveryStatus.FAILED else None,
            delivery_reason=reason,
            schedule_run_id=schedule_run_id or str(uuid.uuid4()),
            scheduled_for=scheduled_for,
            retry_of_id=retry_of_id,
            sent_at=sent_at or utc_now(),
        )
        db_session.add(entry)
        await db_session.commit()
        return entry

    return _create_log
