"""
Async database engine and session management.
"""
from typing import AsyncIterator
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from config import Config
from utils.logger import app_logger

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_size": 5, "max_overflow": 10, "pool_recycle": 300, "pool_pre_ping": True}

    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    # In-memory databases must share a single connection
    if url.endswith("://") or ":memory:" in url:
        kwargs["poolclass"] = StaticPool
    return kwargs


def configure_engine(url: str | None = None) -> AsyncEngine:
    """Create (or replace) the process-wide engine and session factory."""
    global _engine, _sessionmaker

    url = url or Config.DATABASE_URL
    _engine = create_async_engine(url, echo=False, **_engine_kwargs(url))
    _sessionmaker = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    app_logger.info(f"Database engine configured for {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_engine()
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        configure_engine()
    return _sessionmaker


async def init_db() -> None:
    """Create all tables that do not exist yet."""
    from db.tables import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _sessionmaker

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a database session."""
    async with get_sessionmaker()() as session:
        yield session
