"""
Integration tests for the durable store against a temporary SQLite database
"""
import pytest
from sqlalchemy import text

from backend.statsbot.database import (
    DatabaseManager, StatsRepository, normalise_database_url, rehydrate_store
)
from backend.statsbot.errors import DurableStoreError, RehydrationError
from backend.statsbot.services import AggregateStore, AnalyticsEngine, FlushScheduler
from backend.statsbot.services.aggregate_store import ChannelCounts, DailyAggregateRow, UserAggregateRow
from conftest import NOW, utc


class TestDatabaseUrl:
    """Test driver selection for configured URLs."""

    @pytest.mark.unit
    @pytest.mark.parametrize('url, expected', [
        ('sqlite:///stats.db', 'sqlite+aiosqlite:///stats.db'),
        ('postgresql://bot:pw@db/stats', 'postgresql+asyncpg://bot:pw@db/stats'),
        ('postgres://bot:pw@db/stats', 'postgresql+asyncpg://bot:pw@db/stats'),
        ('sqlite+aiosqlite:///x.db', 'sqlite+aiosqlite:///x.db'),
    ])
    def test_normalise(self, url, expected):
        assert normalise_database_url(url) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize('url', ['stats.db', 'oracle://scott@db/stats'])
    def test_rejects_unusable_urls(self, url):
        with pytest.raises(DurableStoreError):
            normalise_database_url(url)

    @pytest.mark.unit
    def test_pool_options_only_for_server_backends(self):
        assert 'pool_size' not in DatabaseManager('sqlite:///stats.db')._engine_options()
        options = DatabaseManager('postgresql://bot@db/stats', pool_size=3)._engine_options()
        assert options['pool_size'] == 3
        assert options['pool_pre_ping'] is True


@pytest.mark.integration
class TestMergeUpsert:
    """Test idempotent merge-upserts."""

    @pytest.mark.asyncio
    async def test_insert_then_overwrite_user(self, repository):
        await repository.upsert_user_aggregate('U1', 3, 60.0)
        await repository.upsert_user_aggregate('U1', 5, 90.5)

        assert await repository.load_all_user_aggregates() == [UserAggregateRow('U1', 5, 90.5)]

    @pytest.mark.asyncio
    async def test_insert_then_overwrite_day(self, repository):
        await repository.upsert_daily_aggregate('U1', '2024-03-15', 1, 0.0, ChannelCounts({'C1': 1}))
        await repository.upsert_daily_aggregate('U1', '2024-03-15', 4, 30.0, ChannelCounts({'C1': 3, 'C2': 1}))

        rows = await repository.load_all_daily_aggregates()
        assert len(rows) == 1
        row = rows[0]
        assert (row.user_id, row.date, row.messages, row.voice_seconds) == ('U1', '2024-03-15', 4, 30.0)
        assert row.channel_counts == {'C1': 3, 'C2': 1}
        assert isinstance(row.channel_counts, ChannelCounts)

    @pytest.mark.asyncio
    async def test_repeated_write_is_idempotent(self, repository, db_manager):
        for _ in range(3):
            await repository.upsert_daily_aggregate('U1', '2024-03-15', 2, 5.0, ChannelCounts({'C1': 2}))

        async with db_manager.session() as session:
            count = (await session.execute(text("SELECT COUNT(*) FROM daily_stats"))).scalar()
            raw = (await session.execute(text("SELECT channels FROM daily_stats"))).scalar()
        assert count == 1
        assert raw == '{"C1":2}'

    @pytest.mark.asyncio
    async def test_load_order(self, repository):
        await repository.upsert_user_aggregate('U2', 1, 0.0)
        await repository.upsert_user_aggregate('U1', 1, 0.0)
        await repository.upsert_daily_aggregate('U1', '2024-03-15', 1, 0.0, ChannelCounts())
        await repository.upsert_daily_aggregate('U1', '2024-03-14', 1, 0.0, ChannelCounts())

        assert [row.user_id for row in await repository.load_all_user_aggregates()] == ['U1', 'U2']
        daily = await repository.load_all_daily_aggregates()
        assert [row.date for row in daily] == ['2024-03-14', '2024-03-15']
        assert daily[0].channel_counts == {}

    @pytest.mark.asyncio
    async def test_health_check(self, db_manager):
        assert await db_manager.is_database_healthy() is True
        await db_manager.wait_for_database(attempts=1, delay=0)


@pytest.mark.integration
class TestRehydration:
    """Test cold-start loading of the aggregate store."""

    @pytest.mark.asyncio
    async def test_flush_then_rehydrate_round_trip(self, repository):
        store = AggregateStore()
        store.record_message('U1', 'C1', NOW)
        store.record_message('U1', 'C2', utc(2024, 3, 14, 8))
        store.record_voice_time('U1', 600, NOW)
        store.record_message('U2', 'C1', NOW)

        report = await FlushScheduler(store, repository).flush_once()
        assert report.ok

        restored = await rehydrate_store(repository)
        assert dict(restored.snapshot().users) == dict(store.snapshot().users)

        analytics = AnalyticsEngine(restored, clock=lambda: NOW)
        assert analytics.messages_in_window('U1', 7) == 2
        assert analytics.top_channels('U1', 3, 7) == [('C1', 1), ('C2', 1)]

    @pytest.mark.asyncio
    async def test_counting_resumes_after_restart(self, repository):
        first = AggregateStore()
        for _ in range(3):
            first.record_message('U1', 'C1', NOW)
        await FlushScheduler(first, repository).flush_once()

        second = await rehydrate_store(repository)
        second.record_message('U1', 'C1', NOW)
        await FlushScheduler(second, repository).flush_once()

        assert await repository.load_all_user_aggregates() == [UserAggregateRow('U1', 4, 0.0)]
        daily = await repository.load_all_daily_aggregates()
        assert daily[0].channel_counts == {'C1': 4}

    @pytest.mark.asyncio
    async def test_day_without_user_row_is_loaded(self, repository):
        await repository.upsert_daily_aggregate('U9', '2024-03-10', 2, 0.0, ChannelCounts({'C1': 2}))

        store = await rehydrate_store(repository)
        user = store.get_user('U9')
        assert user.total_messages == 2
        assert user.daily['2024-03-10'].messages == 2

    @pytest.mark.asyncio
    async def test_failed_user_row_write_keeps_totals_consistent(self, repository):
        """Test recovery after a flush where only the day rows reached the database."""

        class UserRowsFailing:
            async def upsert_user_aggregate(self, *args):
                raise RuntimeError("user row rejected")

            async def upsert_daily_aggregate(self, *args):
                await repository.upsert_daily_aggregate(*args)

        store = AggregateStore()
        for _ in range(3):
            store.record_message('U1', 'C1', NOW)
        report = await FlushScheduler(store, UserRowsFailing()).flush_once()
        assert report.failed_rows == 1

        restored = await rehydrate_store(repository)
        restored.record_message('U1', 'C1', NOW)

        user = restored.get_user('U1')
        assert user.total_messages == 4
        assert sum(day.messages for day in user.daily.values()) == user.total_messages

    @pytest.mark.asyncio
    async def test_malformed_channels_fail_rehydration(self, repository, db_manager):
        async with db_manager.session() as session:
            await session.execute(text(
                "INSERT INTO daily_stats (user_id, date, messages, voice_time, channels) "
                "VALUES ('U1', '2024-03-15', 1, 0.0, 'not json')"
            ))

        with pytest.raises(RehydrationError):
            await rehydrate_store(repository)

    @pytest.mark.asyncio
    async def test_empty_database_gives_empty_store(self, repository):
        store = await rehydrate_store(repository)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_rows_load_into_existing_store(self, repository):
        await repository.upsert_user_aggregate('U1', 7, 0.0)
        store = AggregateStore()
        returned = await rehydrate_store(repository, store)
        assert returned is store
        assert store.get_user('U1').total_messages == 7


@pytest.mark.integration
class TestRowTypes:
    """Test row values handed back to the store."""

    @pytest.mark.asyncio
    async def test_rows_are_plain_values(self, repository):
        await repository.upsert_daily_aggregate('U1', '2024-03-15', 1, 2.5, ChannelCounts({'C1': 1}))
        rows = await repository.load_all_daily_aggregates()
        assert rows == [DailyAggregateRow('U1', '2024-03-15', 1, 2.5, ChannelCounts({'C1': 1}))]


def test_manager_uses_async_driver():
    manager = StatsRepository(DatabaseManager('sqlite:///stats.db')).db_manager
    assert manager.database_url.startswith('sqlite+aiosqlite://')
    assert manager.backend_name == 'sqlite'
