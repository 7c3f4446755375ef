"""
Aggregate Store
In-memory per-user lifetime and per-UTC-day activity counters
"""
import copy
import json
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from structlog import get_logger

from backend.statsbot.utils import ensure_utc, utc_date_key

logger = get_logger()


class ChannelCounts(Counter):
    """
    Message counts keyed by channel id.

    Sums and orderings never depend on insertion order: `ranked()` sorts by
    descending count and then by channel id, and `encode()` emits sorted keys.
    """

    def ranked(self) -> List[Tuple[str, int]]:
        return sorted(self.items(), key=lambda item: (-item[1], item[0]))

    def encode(self) -> str:
        return json.dumps(dict(self), sort_keys=True, separators=(',', ':'))

    @classmethod
    def decode(cls, raw: Optional[str]) -> 'ChannelCounts':
        """Parse the JSON form written by `encode()`; raises ValueError on bad input"""
        if not raw:
            return cls()
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"channel counts must be a JSON object, got {type(data).__name__}")
        counts = cls()
        for channel_id, count in data.items():
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ValueError(f"invalid count {count!r} for channel {channel_id}")
            counts[str(channel_id)] = count
        return counts


@dataclass
class DailyAggregate:
    """Activity of one user on one UTC calendar day"""
    date: str
    messages: int = 0
    voice_seconds: float = 0.0
    channel_counts: ChannelCounts = field(default_factory=ChannelCounts)


@dataclass
class UserAggregate:
    """Lifetime activity of one user plus the per-day breakdown"""
    user_id: str
    total_messages: int = 0
    total_voice_seconds: float = 0.0
    daily: Dict[str, DailyAggregate] = field(default_factory=dict)


@dataclass(frozen=True)
class UserAggregateRow:
    """Durable form of a UserAggregate"""
    user_id: str
    total_messages: int
    total_voice_seconds: float


@dataclass(frozen=True)
class DailyAggregateRow:
    """Durable form of a DailyAggregate"""
    user_id: str
    date: str
    messages: int
    voice_seconds: float
    channel_counts: ChannelCounts


@dataclass(frozen=True)
class StoreSnapshot:
    """Point-in-time copy of every aggregate; never shares state with the live store"""
    taken_at: datetime
    users: Mapping[str, UserAggregate]

    def user_rows(self) -> Iterator[UserAggregateRow]:
        for user in self.users.values():
            yield UserAggregateRow(user.user_id, user.total_messages, user.total_voice_seconds)

    def daily_rows(self, user_id: str) -> Iterator[DailyAggregateRow]:
        user = self.users[user_id]
        for date in sorted(user.daily):
            day = user.daily[date]
            yield DailyAggregateRow(user_id, date, day.messages, day.voice_seconds, day.channel_counts)

    @property
    def day_count(self) -> int:
        return sum(len(user.daily) for user in self.users.values())


class AggregateStore:
    """
    Owner of all UserAggregate and DailyAggregate instances.

    Every mutation and every read view holds one lock for the duration of a
    single update, so snapshots and analytics never see a half-applied event.
    User iteration order is first-seen order.
    """

    def __init__(self):
        self._users: Dict[str, UserAggregate] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._users)

    def __contains__(self, user_id) -> bool:
        return str(user_id) in self._users

    def _user(self, user_id: str) -> UserAggregate:
        user = self._users.get(user_id)
        if user is None:
            user = self._users[user_id] = UserAggregate(user_id=user_id)
        return user

    @staticmethod
    def _day(user: UserAggregate, date: str) -> DailyAggregate:
        day = user.daily.get(date)
        if day is None:
            day = user.daily[date] = DailyAggregate(date=date)
        return day

    def record_message(self, user_id: str, channel_id: str, now: Optional[datetime] = None):
        """
        Count one message for a user in a channel on the current UTC day

        Args:
            user_id: Author id
            channel_id: Channel the message was sent in
            now: Event time, defaults to the current time
        """
        date = utc_date_key(now)
        with self._lock:
            user = self._user(user_id)
            day = self._day(user, date)
            user.total_messages += 1
            day.messages += 1
            day.channel_counts[channel_id] += 1

    def record_voice_time(self, user_id: str, seconds: float, now: Optional[datetime] = None) -> float:
        """
        Credit voice time to a user's lifetime total and the current UTC day

        Args:
            user_id: User who was connected
            seconds: Elapsed seconds; negative values are clamped to zero
            now: Event time, defaults to the current time

        Returns:
            The number of seconds actually applied
        """
        if seconds < 0:
            logger.warning("Negative voice duration clamped to zero", user_id=user_id, seconds=seconds)
            seconds = 0.0
        date = utc_date_key(now)
        with self._lock:
            user = self._user(user_id)
            day = self._day(user, date)
            user.total_voice_seconds += seconds
            day.voice_seconds += seconds
        return seconds

    def snapshot(self) -> StoreSnapshot:
        """Deep copy of all aggregates taken under the mutation lock"""
        with self._lock:
            users = copy.deepcopy(self._users)
        return StoreSnapshot(taken_at=ensure_utc(None), users=MappingProxyType(users))

    @contextmanager
    def read_view(self):
        """Hold the mutation lock and expose the live aggregates read-only"""
        with self._lock:
            yield MappingProxyType(self._users)

    def user_ids(self) -> List[str]:
        with self._lock:
            return list(self._users)

    def get_user(self, user_id) -> Optional[UserAggregate]:
        """Copy of one user's aggregate, or None for an unknown user"""
        with self._lock:
            user = self._users.get(str(user_id))
            return copy.deepcopy(user) if user is not None else None

    def load(self, user_rows: Iterable[UserAggregateRow], daily_rows: Iterable[DailyAggregateRow]):
        """
        Rehydrate from durable rows at process start

        Lifetime totals come from the user rows. Users that only appear in the
        daily rows (their user row failed to write) get totals summed from
        those rows. Existing in-memory state for a loaded key is replaced.

        Args:
            user_rows: Rows of the user totals table
            daily_rows: Rows of the daily totals table
        """
        with self._lock:
            for row in user_rows:
                user = self._user(row.user_id)
                user.total_messages = row.total_messages
                user.total_voice_seconds = row.total_voice_seconds

            orphans = set()
            for row in daily_rows:
                if row.user_id not in self._users:
                    orphans.add(row.user_id)
                user = self._user(row.user_id)
                user.daily[row.date] = DailyAggregate(
                    date=row.date,
                    messages=row.messages,
                    voice_seconds=row.voice_seconds,
                    channel_counts=ChannelCounts(row.channel_counts),
                )

            # Lifetime totals must equal the sum of the per-day rows
            for user_id in orphans:
                user = self._users[user_id]
                user.total_messages = sum(day.messages for day in user.daily.values())
                user.total_voice_seconds = sum(day.voice_seconds for day in user.daily.values())

        if orphans:
            logger.warning("Daily stats found for users without lifetime totals", users=len(orphans))
        logger.info("Aggregate store loaded", users=len(self._users))
