"""
Unit tests for utility helpers and configuration
"""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from backend.statsbot.config import (
    DevelopmentSettings, StatsBotSettings, get_config, validate_config
)
from backend.statsbot.utils import (
    CommandRateLimiter, ensure_utc, trailing_dates, utc_date_key, whole_hours
)
from conftest import NOW

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, start=100.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


class TestDayHelpers:
    """Test UTC day arithmetic."""

    def test_trailing_dates_oldest_first(self):
        assert trailing_dates(3, NOW) == ['2024-03-13', '2024-03-14', '2024-03-15']
        assert trailing_dates(1, NOW) == ['2024-03-15']

    def test_trailing_dates_cross_month(self):
        dates = trailing_dates(7, datetime(2024, 3, 2, tzinfo=timezone.utc))
        assert dates[0] == '2024-02-25'
        assert '2024-02-29' in dates

    @pytest.mark.parametrize('days', [0, -1])
    def test_trailing_dates_rejects_empty_window(self, days):
        with pytest.raises(ValueError):
            trailing_dates(days, NOW)

    def test_ensure_utc(self):
        naive = datetime(2024, 3, 15, 12)
        assert ensure_utc(naive).tzinfo is timezone.utc
        shifted = datetime(2024, 3, 15, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert utc_date_key(shifted) == '2024-03-16'
        assert ensure_utc(None).tzinfo is not None

    @pytest.mark.parametrize('seconds, hours', [(0, 0), (3599, 0), (3600, 1), (7199.9, 1), (36000, 10)])
    def test_whole_hours_floors(self, seconds, hours):
        assert whole_hours(seconds) == hours


class TestCommandRateLimiter:
    """Test per-user command cooldowns."""

    def test_second_call_within_interval_is_limited(self):
        clock = FakeClock()
        limiter = CommandRateLimiter(5.0, clock=clock)

        assert limiter.retry_after('U1') == 0.0
        clock.advance(2)
        assert limiter.retry_after('U1') == pytest.approx(3.0)
        clock.advance(3)
        assert limiter.retry_after('U1') == 0.0

    def test_users_are_independent(self):
        limiter = CommandRateLimiter(5.0, clock=FakeClock())
        assert limiter.retry_after(1) == 0.0
        assert limiter.retry_after(2) == 0.0
        assert limiter.retry_after('1') > 0

    def test_limited_call_does_not_extend_cooldown(self):
        clock = FakeClock()
        limiter = CommandRateLimiter(5.0, clock=clock)
        limiter.retry_after('U1')
        clock.advance(4)
        limiter.retry_after('U1')
        clock.advance(1)
        assert limiter.retry_after('U1') == 0.0

    def test_expired_entries_are_forgotten(self):
        clock = FakeClock()
        limiter = CommandRateLimiter(5.0, clock=clock)
        for user_id in range(50):
            limiter.retry_after(user_id)
        assert len(limiter._last_used) == 50

        clock.advance(5)
        assert limiter.retry_after('late') == 0.0
        assert list(limiter._last_used) == ['late']

    def test_reset(self):
        limiter = CommandRateLimiter(5.0, clock=FakeClock())
        limiter.retry_after('U1')
        limiter.retry_after('U2')
        limiter.reset('U1')
        assert limiter.retry_after('U1') == 0.0
        limiter.reset()
        assert limiter.retry_after('U2') == 0.0


class TestSettings:
    """Test environment-driven settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv('FLUSH_INTERVAL', raising=False)
        monkeypatch.delenv('DATABASE_URL', raising=False)
        config = StatsBotSettings(_env_file=None)
        assert config.FLUSH_INTERVAL == 10.0
        assert config.DATABASE_URL == 'sqlite:///stats.db'
        assert config.STATS_WINDOW_DAYS == 7
        assert config.TOP_CHANNELS_LIMIT == 3
        assert config.LEADERBOARD_LIMIT == 5

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv('FLUSH_INTERVAL', '2.5')
        monkeypatch.setenv('log_level', 'warning')
        config = StatsBotSettings(_env_file=None)
        assert config.FLUSH_INTERVAL == 2.5
        assert config.LOG_LEVEL == 'WARNING'

    @pytest.mark.parametrize('name, value', [
        ('FLUSH_INTERVAL', '0'),
        ('STATS_WINDOW_DAYS', '0'),
        ('TOP_CHANNELS_LIMIT', '-1'),
        ('LEADERBOARD_LIMIT', '0'),
        ('LOG_LEVEL', 'LOUD'),
    ])
    def test_invalid_values_rejected(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValidationError):
            StatsBotSettings(_env_file=None)

    def test_development_profile(self, monkeypatch):
        monkeypatch.delenv('FLUSH_INTERVAL', raising=False)
        monkeypatch.delenv('DEBUG', raising=False)
        config = DevelopmentSettings(_env_file=None)
        assert config.DEBUG is True
        assert config.FLUSH_INTERVAL == 5.0

    def test_get_config_selects_profile(self):
        assert isinstance(get_config('development'), DevelopmentSettings)
        assert not isinstance(get_config('anything-else'), DevelopmentSettings)

    def test_validate_config_requires_token(self, monkeypatch):
        monkeypatch.setenv('DISCORD_BOT_TOKEN', '')
        assert validate_config(StatsBotSettings(_env_file=None)) is False
        monkeypatch.setenv('DISCORD_BOT_TOKEN', 'abc.def.ghi')
        assert validate_config(StatsBotSettings(_env_file=None)) is True
