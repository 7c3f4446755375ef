"""
Pytest configuration and fixtures for the stats bot
"""
import os
import sys
from datetime import datetime, timezone

import pytest
import pytest_asyncio

# Ensure backend package is importable when running from repo root
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.statsbot.database import DatabaseManager, StatsRepository  # noqa: E402
from backend.statsbot.services import (  # noqa: E402
    AggregateStore, AnalyticsEngine, EventIngestor, VoiceSessionTracker
)


def utc(year, month, day, hour=0, minute=0, second=0):
    """Aware UTC datetime shorthand for tests"""
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


# A fixed "today" keeps window arithmetic independent of the wall clock
NOW = utc(2024, 3, 15, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store():
    """Empty aggregate store."""
    return AggregateStore()


@pytest.fixture
def tracker(store):
    return VoiceSessionTracker(store)


@pytest.fixture
def ingestor(store, tracker):
    return EventIngestor(store, tracker)


@pytest.fixture
def analytics(store):
    """Analytics engine pinned to NOW."""
    return AnalyticsEngine(store, clock=lambda: NOW)


@pytest_asyncio.fixture
async def db_manager(tmp_path):
    """Database manager backed by a temporary SQLite file with tables created."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'stats.db'}")
    await manager.create_tables()
    yield manager
    await manager.dispose()


@pytest.fixture
def repository(db_manager):
    return StatsRepository(db_manager)


class RecordingRepository:
    """In-memory stand-in for StatsRepository that records merge-upserts."""

    def __init__(self, fail_users=(), fail_dates=()):
        self.users = {}
        self.daily = {}
        self.writes = 0
        self.fail_users = set(fail_users)
        self.fail_dates = set(fail_dates)

    async def upsert_user_aggregate(self, user_id, total_messages, total_voice_seconds):
        self.writes += 1
        if user_id in self.fail_users:
            raise RuntimeError(f"write refused for {user_id}")
        self.users[user_id] = (total_messages, total_voice_seconds)

    async def upsert_daily_aggregate(self, user_id, date, messages, voice_seconds, channel_counts):
        self.writes += 1
        if (user_id, date) in self.fail_dates:
            raise RuntimeError(f"write refused for {user_id} on {date}")
        self.daily[(user_id, date)] = (messages, voice_seconds, dict(channel_counts))


@pytest.fixture
def recording_repository():
    return RecordingRepository()


# Custom pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
