"""
Database module for the stats bot
Connection management and the durable store for activity aggregates
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional
from sqlalchemy import select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from structlog import get_logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from backend.statsbot.errors import DurableStoreError, RehydrationError
from backend.statsbot.models import Base, DailyStats, UserStats
from backend.statsbot.services.aggregate_store import (
    AggregateStore, ChannelCounts, DailyAggregateRow, UserAggregateRow
)

logger = get_logger()

ASYNC_DRIVERS = {
    'postgresql': 'postgresql+asyncpg',
    'postgres': 'postgresql+asyncpg',
    'sqlite': 'sqlite+aiosqlite',
}


def normalise_database_url(database_url: str) -> str:
    """Rewrite a plain database URL to use the matching asyncio driver"""
    scheme, sep, rest = database_url.partition('://')
    if not sep:
        raise DurableStoreError(f"Not a database URL: {database_url!r}")
    if '+' in scheme:
        return database_url
    driver = ASYNC_DRIVERS.get(scheme)
    if driver is None:
        raise DurableStoreError(f"Unsupported database backend: {scheme}")
    return f"{driver}://{rest}"


def _log_retry(retry_state):
    logger.warning(
        "Database connection attempt failed",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


class DatabaseManager:
    """Database connection and session manager"""

    def __init__(self, database_url: str, pool_size: int = 5, max_overflow: int = 10, echo: bool = False):
        self.database_url = normalise_database_url(database_url)
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker] = None

    @property
    def backend_name(self) -> str:
        return make_url(self.database_url).get_backend_name()

    def _engine_options(self) -> dict:
        options = {'echo': self.echo}
        if self.backend_name != 'sqlite':
            # Connection pool options
            options.update({
                'pool_pre_ping': True,
                'pool_recycle': 300,  # 5 minutes
                'pool_size': self.pool_size,
                'max_overflow': self.max_overflow,
                'pool_timeout': 30,
            })
        return options

    def create_async_engine(self) -> AsyncEngine:
        """Create asynchronous database engine"""
        if self.engine is None:
            self.engine = create_async_engine(self.database_url, **self._engine_options())
            self.session_maker = async_sessionmaker(
                bind=self.engine,
                expire_on_commit=False,
                class_=AsyncSession
            )
        return self.engine

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session wrapped in a transaction that commits on success"""
        self.create_async_engine()
        async with self.session_maker() as session:
            async with session.begin():
                yield session

    async def wait_for_database(self, attempts: int = 5, delay: float = 2.0):
        """
        Wait for the database to accept connections

        Args:
            attempts: Connection attempts before giving up
            delay: Base delay in seconds for exponential back-off

        Raises:
            SQLAlchemyError: the last connection error once attempts are exhausted
        """
        engine = self.create_async_engine()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=delay, max=30),
            retry=retry_if_exception_type((SQLAlchemyError, OSError)),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
        logger.info("Database connection established", backend=self.backend_name)

    async def create_tables(self):
        """Create database tables if they don't exist"""
        engine = self.create_async_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")

    async def is_database_healthy(self) -> bool:
        """Check database health"""
        try:
            engine = self.create_async_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("Database health check failed", error=str(e))
            return False

    async def dispose(self):
        """Close all database connections"""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.session_maker = None
            logger.info("Database connections closed")


class StatsRepository:
    """
    Durable store for the activity aggregates.

    Writes are idempotent merge-upserts: a missing row is inserted, an
    existing row has every non-key column overwritten. Each write runs in its
    own short transaction so one failing row cannot roll back the others.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def _insert(self, table):
        backend = self.db_manager.backend_name
        if backend == 'postgresql':
            return postgresql.insert(table)
        if backend == 'sqlite':
            return sqlite.insert(table)
        raise DurableStoreError(f"Merge-upsert is not supported for backend {backend}")

    def _upsert(self, table, key_columns: List[str], values: dict):
        stmt = self._insert(table).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=key_columns,
            set_={column: stmt.excluded[column] for column in values if column not in key_columns},
        )

    async def upsert_user_aggregate(self, user_id: str, total_messages: int, total_voice_seconds: float):
        stmt = self._upsert(UserStats.__table__, ['user_id'], {
            'user_id': user_id,
            'total_messages': total_messages,
            'total_voice_time': total_voice_seconds,
        })
        async with self.db_manager.session() as session:
            await session.execute(stmt)

    async def upsert_daily_aggregate(self, user_id: str, date: str, messages: int,
                                     voice_seconds: float, channel_counts: ChannelCounts):
        stmt = self._upsert(DailyStats.__table__, ['user_id', 'date'], {
            'user_id': user_id,
            'date': date,
            'messages': messages,
            'voice_time': voice_seconds,
            'channels': channel_counts,
        })
        async with self.db_manager.session() as session:
            await session.execute(stmt)

    async def load_all_user_aggregates(self) -> List[UserAggregateRow]:
        async with self.db_manager.session() as session:
            result = await session.execute(select(UserStats).order_by(UserStats.user_id))
            return [
                UserAggregateRow(row.user_id, row.total_messages or 0, row.total_voice_time or 0.0)
                for row in result.scalars()
            ]

    async def load_all_daily_aggregates(self) -> List[DailyAggregateRow]:
        async with self.db_manager.session() as session:
            result = await session.execute(
                select(DailyStats).order_by(DailyStats.user_id, DailyStats.date)
            )
            return [
                DailyAggregateRow(
                    row.user_id, row.date, row.messages or 0, row.voice_time or 0.0, row.channels
                )
                for row in result.scalars()
            ]


async def rehydrate_store(repository: StatsRepository, store: Optional[AggregateStore] = None) -> AggregateStore:
    """
    Build the aggregate store from the durable store at process start

    Raises:
        RehydrationError: if either table cannot be read or decoded
    """
    store = store if store is not None else AggregateStore()
    try:
        user_rows = await repository.load_all_user_aggregates()
        daily_rows = await repository.load_all_daily_aggregates()
    except (SQLAlchemyError, ValueError, OSError) as e:
        logger.error("Failed to load stats from database", error=str(e))
        raise RehydrationError(f"Could not rehydrate aggregate store: {e}") from e

    store.load(user_rows, daily_rows)
    logger.info("Stats loaded from database", users=len(user_rows), days=len(daily_rows))
    return store


__all__ = [
    'DatabaseManager', 'StatsRepository', 'normalise_database_url', 'rehydrate_store',
]
