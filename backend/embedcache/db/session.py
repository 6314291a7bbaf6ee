"""Database engine and session utilities.

Attributes:
    engine (AsyncEngine): Primary SQLModel async engine.
    SessionLocal (async_sessionmaker): Factory for yielding AsyncSession objects.

Functions:
    init_db(): Create the embedding cache table and its indexes.
    create_cache_schema(conn): Idempotently create the cache schema on a connection.
    get_session(): Dependency that yields an AsyncSession for request handlers.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from embedcache.core.config import get_settings
from embedcache.models import CachedEmbedding


_settings = get_settings()


if _settings.database_url.startswith("sqlite") and ":memory:" not in _settings.database_url:
    _db_path = Path(_settings.database_url.split(":///", 1)[-1]).resolve()
    if _db_path.parent.name:
        _db_path.parent.mkdir(parents=True, exist_ok=True)


engine: AsyncEngine = create_async_engine(
    _settings.database_url,
    echo=False,
    connect_args=(
        {"check_same_thread": False}
        if _settings.database_url.startswith("sqlite")
        else {}
    ),
)

SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_cache_schema(conn: AsyncConnection) -> None:
    """Create the embedding cache table and version index if missing."""

    await conn.run_sync(
        SQLModel.metadata.create_all,
        tables=[CachedEmbedding.__table__],
        checkfirst=True,
    )


async def init_db() -> None:
    async with engine.begin() as conn:
        await create_cache_schema(conn)
        if _settings.database_url.startswith("sqlite"):
            await _ensure_sqlite_pragmas(conn)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session


async def _ensure_sqlite_pragmas(conn: AsyncConnection) -> None:
    await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
    await conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
