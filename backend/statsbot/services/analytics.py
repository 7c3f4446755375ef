"""
Analytics Engine
Read-only windowed statistics computed from the in-memory aggregate store
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from backend.statsbot.services.aggregate_store import AggregateStore, ChannelCounts, UserAggregate
from backend.statsbot.utils import trailing_dates, utc_now, whole_hours

DEFAULT_WINDOW_DAYS = 7


@dataclass(frozen=True)
class DailyPoint:
    date: str
    messages: int
    voice_hours: int


def _window_messages(user: Optional[UserAggregate], dates: List[str]) -> int:
    if user is None:
        return 0
    return sum(user.daily[d].messages for d in dates if d in user.daily)


def _window_voice_seconds(user: Optional[UserAggregate], dates: List[str]) -> float:
    if user is None:
        return 0.0
    return sum(user.daily[d].voice_seconds for d in dates if d in user.daily)


def _ordered_users(users: Mapping[str, UserAggregate], dates: List[str]) -> List[Tuple[str, int]]:
    # sorted() is stable, so equal sums keep first-seen order
    totals = [(user_id, _window_messages(user, dates)) for user_id, user in users.items()]
    return sorted(totals, key=lambda item: -item[1])


class AnalyticsEngine:
    """
    Pure read functions over the aggregate store.

    Nothing here mutates the store or touches the durable store, so answers
    stay available when flushing is failing. Every public method reads under
    the store lock and accepts an optional `now` to pin "today".
    """

    def __init__(self, store: AggregateStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    def _dates(self, days: int, now: Optional[datetime]) -> List[str]:
        return trailing_dates(days, now or self._clock())

    def messages_in_window(self, user_id, days: int, now: Optional[datetime] = None) -> int:
        """Messages sent over the last `days` UTC days, today inclusive"""
        dates = self._dates(days, now)
        with self.store.read_view() as users:
            return _window_messages(users.get(str(user_id)), dates)

    def voice_seconds_in_window(self, user_id, days: int, now: Optional[datetime] = None) -> float:
        dates = self._dates(days, now)
        with self.store.read_view() as users:
            return _window_voice_seconds(users.get(str(user_id)), dates)

    def voice_hours_in_window(self, user_id, days: int, now: Optional[datetime] = None) -> int:
        """Whole hours of voice presence over the last `days` UTC days"""
        return whole_hours(self.voice_seconds_in_window(user_id, days, now))

    def leaderboard(self, days: int = DEFAULT_WINDOW_DAYS, limit: Optional[int] = None,
                    now: Optional[datetime] = None) -> List[Tuple[str, int]]:
        """
        All known users ordered by message count over the window

        Args:
            days: Window length
            limit: Optional maximum number of entries
            now: Reference time

        Returns:
            List of (user_id, messages) pairs, highest first, ties in first-seen order
        """
        if limit is not None and limit < 0:
            raise ValueError(f"limit cannot be negative, got {limit}")
        dates = self._dates(days, now)
        with self.store.read_view() as users:
            ordered = _ordered_users(users, dates)
        return ordered if limit is None else ordered[:limit]

    def rank(self, user_id, days: int = DEFAULT_WINDOW_DAYS, now: Optional[datetime] = None) -> int:
        """
        1-based position of a user in the message leaderboard

        Returns:
            Rank, or 0 for a user the store has never seen
        """
        key = str(user_id)
        for position, (candidate, _) in enumerate(self.leaderboard(days, now=now), start=1):
            if candidate == key:
                return position
        return 0

    def top_channels(self, user_id, n: int = 3, days: int = DEFAULT_WINDOW_DAYS,
                     now: Optional[datetime] = None) -> List[Tuple[str, int]]:
        """
        Channels a user posted in most over the window

        Args:
            user_id: User to inspect
            n: Maximum number of channels
            days: Window length
            now: Reference time

        Returns:
            Up to `n` (channel_id, count) pairs, highest count first
        """
        if n < 0:
            raise ValueError(f"n cannot be negative, got {n}")
        dates = self._dates(days, now)
        totals = ChannelCounts()
        with self.store.read_view() as users:
            user = users.get(str(user_id))
            if user is not None:
                for d in dates:
                    if d in user.daily:
                        totals.update(user.daily[d].channel_counts)
        return totals.ranked()[:n]

    def daily_series(self, user_id, days: int = DEFAULT_WINDOW_DAYS,
                     now: Optional[datetime] = None) -> List[DailyPoint]:
        """Per-day messages and whole voice hours, oldest day first"""
        dates = self._dates(days, now)
        points = []
        with self.store.read_view() as users:
            user = users.get(str(user_id))
            for d in dates:
                day = user.daily.get(d) if user is not None else None
                if day is None:
                    points.append(DailyPoint(d, 0, 0))
                else:
                    points.append(DailyPoint(d, day.messages, whole_hours(day.voice_seconds)))
        return points

    def user_summary(self, user_id, days: int = DEFAULT_WINDOW_DAYS, top_n: int = 3,
                     now: Optional[datetime] = None) -> Dict[str, Any]:
        """Everything the personal stats panel shows, computed against one `now`"""
        now = now or self._clock()
        return {
            'user_id': str(user_id),
            'messages_1d': self.messages_in_window(user_id, 1, now),
            'messages_window': self.messages_in_window(user_id, days, now),
            'voice_hours_1d': self.voice_hours_in_window(user_id, 1, now),
            'voice_hours_window': self.voice_hours_in_window(user_id, days, now),
            'rank': self.rank(user_id, days, now),
            'top_channels': self.top_channels(user_id, top_n, days, now),
            'window_days': days,
        }

    def server_summary(self, days: int = DEFAULT_WINDOW_DAYS, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals across every known user over the window"""
        dates = self._dates(days, now)
        messages = 0
        voice_seconds = 0.0
        active_users = 0
        with self.store.read_view() as users:
            for user in users.values():
                user_messages = _window_messages(user, dates)
                user_voice = _window_voice_seconds(user, dates)
                messages += user_messages
                voice_seconds += user_voice
                if user_messages or user_voice:
                    active_users += 1
        return {
            'messages': messages,
            'voice_hours': whole_hours(voice_seconds),
            'active_users': active_users,
            'known_users': len(self.store),
            'window_days': days,
        }
