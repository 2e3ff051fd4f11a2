import ssl
from collections.abc import AsyncGenerator
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bookmail.config import get_settings
from bookmail.core.logging import get_logger

logger = get_logger(__name__)

settings = get_settings()

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "db")


def normalize_database_url(url: str) -> tuple[str, dict]:
    """
    Make a hosted Postgres URL usable with asyncpg.

    Hosted providers (Supabase, Neon) hand out URLs with params like sslmode
    and channel_binding that asyncpg doesn't accept. We strip them and handle
    SSL via connect_args.

    - SQLite URLs (tests, local tooling): returned untouched
    - Local Postgres (localhost/127.0.0.1/db): no SSL
    - Anything else: SSL with the default context
    """
    if url.startswith("sqlite"):
        return url, {}

    parsed = urlparse(url)
    params = parse_qs(parsed.query)

    for param in ("sslmode", "channel_binding", "options"):
        params.pop(param, None)

    new_query = urlencode(params, doseq=True)
    clean_url = urlunparse(parsed._replace(query=new_query))

    hostname = parsed.hostname or ""
    if hostname in _LOCAL_HOSTS:
        return clean_url, {}

    return clean_url, {"ssl": ssl.create_default_context()}


clean_url, connect_args = normalize_database_url(settings.database_url)

_pool_kwargs: dict = {}
if not clean_url.startswith("sqlite"):
    _pool_kwargs = {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 280,  # Recycle before the pooler's idle timeout
    }

engine = create_async_engine(
    clean_url,
    echo=settings.debug,
    pool_pre_ping=True,
    connect_args=connect_args,
    **_pool_kwargs,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that provides a database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.bind(error=str(e)).error("database_transaction_rollback")
            await session.rollback()
            raise
