"""
Voice Session Tracker
Turns voice join / switch / leave transitions into elapsed-time credits
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional
from structlog import get_logger

from backend.statsbot.services.aggregate_store import AggregateStore
from backend.statsbot.utils import ensure_utc

logger = get_logger()


class VoiceTransition(enum.Enum):
    JOIN = 'join'
    SWITCH = 'switch'
    LEAVE = 'leave'
    NONE = 'none'


def classify_transition(previous_channel_id: Optional[str], new_channel_id: Optional[str]) -> VoiceTransition:
    """Map a before/after channel pair onto a state machine transition"""
    if previous_channel_id is None and new_channel_id is not None:
        return VoiceTransition.JOIN
    if previous_channel_id is not None and new_channel_id is None:
        return VoiceTransition.LEAVE
    if previous_channel_id is not None and previous_channel_id != new_channel_id:
        return VoiceTransition.SWITCH
    # Mute/deafen/stream updates keep the same channel
    return VoiceTransition.NONE


@dataclass
class VoiceSession:
    """An open interval of continuous voice presence"""
    user_id: str
    channel_id: str
    joined_at: datetime


class VoiceSessionTracker:
    """
    Per-user Disconnected / Connected(joined_at) state machine.

    The tracker is the only writer of voice time into the aggregate store.
    A channel switch is a seam, not a session boundary: elapsed time is
    credited and the clock restarts, so totals are continuous across switches.
    """

    def __init__(self, store: AggregateStore):
        self.store = store
        self._sessions: Dict[str, VoiceSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def session_for(self, user_id: str) -> Optional[VoiceSession]:
        return self._sessions.get(user_id)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._sessions

    def handle_transition(self, user_id: str, previous_channel_id: Optional[str],
                          new_channel_id: Optional[str], now: Optional[datetime] = None) -> float:
        """
        Apply one voice state change

        Args:
            user_id: User whose voice state changed
            previous_channel_id: Channel before the change, None if disconnected
            new_channel_id: Channel after the change, None if disconnected
            now: Event time, defaults to the current time

        Returns:
            Seconds credited to the aggregate store by this transition
        """
        now = ensure_utc(now)
        transition = classify_transition(previous_channel_id, new_channel_id)

        if transition is VoiceTransition.JOIN:
            if user_id in self._sessions:
                # Leave event was missed; the old start time cannot be trusted
                logger.warning("Voice join with session already open, restarting session", user_id=user_id)
            self._sessions[user_id] = VoiceSession(user_id, new_channel_id, now)
            logger.debug("Voice session started", user_id=user_id, channel_id=new_channel_id)
            return 0.0

        if transition is VoiceTransition.NONE:
            return 0.0

        session = self._sessions.get(user_id)
        if session is None:
            # Joined before this process started; nothing reliable to credit
            logger.debug("Voice transition without tracked session ignored",
                         user_id=user_id, transition=transition.value)
            return 0.0

        credited = self._credit(session, now)

        if transition is VoiceTransition.SWITCH:
            session.channel_id = new_channel_id
            session.joined_at = now
            logger.debug("Voice channel switch", user_id=user_id,
                         from_channel=previous_channel_id, to_channel=new_channel_id, credited=credited)
        else:
            del self._sessions[user_id]
            logger.debug("Voice session ended", user_id=user_id, channel_id=previous_channel_id, credited=credited)

        return credited

    def resume(self, user_id: str, channel_id: str, now: Optional[datetime] = None) -> bool:
        """
        Open a session for a user found in voice at startup

        The session starts at `now`; time spent before the process started is
        not reconstructed.

        Returns:
            True if a session was opened, False if one was already tracked
        """
        if user_id in self._sessions:
            return False
        self._sessions[user_id] = VoiceSession(user_id, channel_id, ensure_utc(now))
        logger.debug("Resumed voice session on startup", user_id=user_id, channel_id=channel_id)
        return True

    def checkpoint_all(self, now: Optional[datetime] = None) -> float:
        """
        Credit every open session up to `now` and restart its clock

        Used before the shutdown flush so time in sessions that are still open
        reaches the durable store.

        Returns:
            Total seconds credited
        """
        now = ensure_utc(now)
        total = 0.0
        for session in self._sessions.values():
            total += self._credit(session, now)
            session.joined_at = now
        if self._sessions:
            logger.info("Checkpointed open voice sessions", sessions=len(self._sessions), seconds=round(total, 3))
        return total

    def _credit(self, session: VoiceSession, now: datetime) -> float:
        elapsed = (now - session.joined_at).total_seconds()
        return self.store.record_voice_time(session.user_id, elapsed, now)
