"""Database configuration and utilities."""
import logging

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()

# lock_not_available, serialization_failure, deadlock_detected
LOCK_CONTENTION_SQLSTATES = {"55P03", "40001", "40P01"}


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str, echo: bool = False, lock_timeout_ms: int = 2000):
        """
        Initialize database connection.

        Args:
            database_url: Async connection URL (postgresql+asyncpg or sqlite+aiosqlite)
            echo: Whether to echo SQL queries
            lock_timeout_ms: Upper bound on waiting for a row or database lock
        """
        self.lock_timeout_ms = lock_timeout_ms

        if database_url.startswith("sqlite"):
            self.engine = create_async_engine(
                database_url,
                echo=echo,
                connect_args={"timeout": lock_timeout_ms / 1000},
            )
            _use_immediate_transactions(self.engine)
        else:
            self.engine = create_async_engine(
                database_url,
                echo=echo,
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
            )

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def drop_tables(self):
        """Drop all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")


def _use_immediate_transactions(engine):
    """Make every SQLite transaction take the write lock up front.

    SQLite has no row locks, so ``SELECT ... FOR UPDATE`` is a no-op there.
    ``BEGIN IMMEDIATE`` serializes writers instead, waiting up to the
    driver's busy timeout.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def set_lock_timeout(session: AsyncSession, lock_timeout_ms: int):
    """Bound lock waits for the current transaction (PostgreSQL only)."""
    if session.get_bind().dialect.name == "postgresql":
        await session.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout_ms)}ms'"))


def is_lock_contention(error: DBAPIError) -> bool:
    """Whether a driver error means the row was busy rather than the statement was bad."""
    original = error.orig
    sqlstate = getattr(original, "sqlstate", None) or getattr(original, "pgcode", None)
    if sqlstate in LOCK_CONTENTION_SQLSTATES:
        return True

    message = str(original).lower()
    return "database is locked" in message or "lock timeout" in message
