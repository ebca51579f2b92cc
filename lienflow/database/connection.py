"""
Engine and session factory for the job queue database (SQLAlchemy async).

Provides the engine, the session factory the job store runs its
transactions on, and schema initialization.

Several worker processes may point at the same SQLite file; WAL mode and a
busy timeout let them queue behind each other's claim transactions instead
of failing with "database is locked".
"""

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from lienflow.core.config import get_settings
from lienflow.utils.logging import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _is_memory(database_url: str) -> bool:
    return ":memory:" in database_url or make_url(database_url).database in (None, "")


def create_engine_for(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """
    Build an async engine for the given URL.

    SQLite-specific configuration:
    - check_same_thread=False: required for async (aiosqlite owns the thread)
    - StaticPool for in-memory databases so every session sees the same data
    - WAL, foreign keys and synchronous=NORMAL via a connect event

    Non-SQLite URLs get a pooled engine with pre-ping.
    """
    connect_args: dict[str, bool | int] = {}
    kwargs: dict = {"pool_pre_ping": True}

    if _is_sqlite(database_url):
        connect_args = {
            "check_same_thread": False,
            "timeout": 30,  # busy timeout in seconds
        }
        kwargs = {}
        if _is_memory(database_url):
            kwargs["poolclass"] = StaticPool
        else:
            database = make_url(database_url).database
            if database:
                Path(database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        **kwargs,
    )

    if _is_sqlite(database_url):

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record) -> None:  # noqa: ANN001
            """Configure SQLite for several processes sharing one queue file."""
            cursor = dbapi_conn.cursor()
            if not _is_memory(database_url):
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def get_engine() -> AsyncEngine:
    """Process-wide engine for ``settings.database_url``, built on first use."""
    global _engine

    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.database_url, echo=settings.debug)

        logger.info(
            "queue_engine_created",
            backend=make_url(settings.database_url).get_backend_name(),
        )

    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine`` with the settings the store relies on."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory; ``close_db`` resets it."""
    global _session_factory

    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())

    return _session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Create all tables and indexes if they do not exist.

    Idempotent; called by every entry point (CLI, API lifespan, worker).
    """
    from lienflow.database.models import Base

    engine = engine or get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("queue_schema_ready", tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    """Dispose the global engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("queue_engine_disposed")
