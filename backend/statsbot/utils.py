"""
Bot Utilities Module
Shared utility functions for logging, UTC day arithmetic and command cooldowns
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union
from structlog import configure, dev, get_logger, processors, stdlib

from backend.statsbot.config import settings

logger = get_logger()

DATE_FORMAT = '%Y-%m-%d'
SECONDS_PER_HOUR = 3600

UserKey = Union[str, int]


class BotLogger:
    """Structured logging setup for the bot"""

    @staticmethod
    def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None,
                      log_format: Optional[str] = None):
        """
        Configure structured logging for the bot

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Optional log file path
            log_format: Format string for the standard library handlers
        """
        # Configure structlog
        configure(
            processors=[
                stdlib.filter_by_level,
                processors.TimeStamper(fmt="iso"),
                processors.add_log_level,
                processors.format_exc_info,
                processors.JSONRenderer() if log_file else dev.ConsoleRenderer(colors=False),
            ],
            logger_factory=stdlib.LoggerFactory(),
            wrapper_class=stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        handlers: List[logging.Handler] = [logging.StreamHandler()]
        if log_file:
            handlers.append(logging.FileHandler(log_file))

        # Configure Python standard logging
        logging.basicConfig(
            level=getattr(logging, log_level.upper()),
            format=log_format or '%(message)s',
            handlers=handlers,
            force=True,
        )

        # Configure discord.py logger
        logging.getLogger('discord').setLevel(logging.WARNING)
        logging.getLogger('discord.http').setLevel(logging.WARNING)
        logging.getLogger('discord.gateway').setLevel(logging.INFO)
        logging.getLogger('apscheduler').setLevel(logging.WARNING)

        logger.info("Logging configured", level=log_level, log_file=log_file)


def setup_logging():
    """Setup bot logging"""
    BotLogger.setup_logging(
        log_level=settings.LOG_LEVEL,
        log_file=settings.LOG_FILE,
        log_format=settings.LOG_FORMAT,
    )


# ---------------------------------------------------------------------------
# UTC day helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(moment: Optional[datetime]) -> datetime:
    """
    Normalise a timestamp to aware UTC

    Naive datetimes are taken to already be UTC, which is what discord.py
    produced before it switched to aware timestamps.
    """
    if moment is None:
        return utc_now()
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utc_date_key(moment: Optional[datetime] = None) -> str:
    """UTC calendar date of `moment` as YYYY-MM-DD"""
    return ensure_utc(moment).strftime(DATE_FORMAT)


def trailing_dates(days: int, now: Optional[datetime] = None) -> List[str]:
    """
    The most recent `days` UTC dates ending today, oldest first

    Args:
        days: Window length in calendar days (>= 1)
        now: Reference time, defaults to the current time

    Returns:
        List of YYYY-MM-DD strings
    """
    if days < 1:
        raise ValueError(f"days must be at least 1, got {days}")
    today = ensure_utc(now).date()
    return [(today - timedelta(days=offset)).strftime(DATE_FORMAT) for offset in range(days - 1, -1, -1)]


def whole_hours(seconds: float) -> int:
    """Floor a duration in seconds to whole hours"""
    return int(seconds // SECONDS_PER_HOUR)


class CommandRateLimiter:
    """Per-user cooldown for interactive commands"""

    def __init__(self, interval_seconds: float, clock=time.monotonic):
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last_used: Dict[str, float] = {}

    def retry_after(self, user_id: UserKey) -> float:
        """
        Register a command use and report how long the user must wait

        Args:
            user_id: Invoking user

        Returns:
            0.0 when the call is allowed, otherwise remaining cooldown in seconds
        """
        key = str(user_id)
        now = self._clock()
        # Expired cooldowns carry no information
        self._last_used = {
            user: used for user, used in self._last_used.items() if now - used < self.interval_seconds
        }
        last = self._last_used.get(key)
        if last is not None and now - last < self.interval_seconds:
            return self.interval_seconds - (now - last)
        self._last_used[key] = now
        return 0.0

    def reset(self, user_id: Optional[UserKey] = None):
        """Forget cooldowns for one user, or for everyone"""
        if user_id is None:
            self._last_used.clear()
        else:
            self._last_used.pop(str(user_id), None)
