"""
Event Ingestor
Single entry point applying platform activity events to the aggregate store
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union
from structlog import get_logger

from backend.statsbot.errors import InvalidEventError
from backend.statsbot.services.aggregate_store import AggregateStore
from backend.statsbot.services.voice_tracker import VoiceSessionTracker
from backend.statsbot.utils import ensure_utc

logger = get_logger()

Identifier = Union[str, int, None]


@dataclass(frozen=True)
class MessageEvent:
    user_id: Identifier
    channel_id: Identifier
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class VoiceTransitionEvent:
    user_id: Identifier
    previous_channel_id: Identifier = None
    new_channel_id: Identifier = None
    timestamp: Optional[datetime] = None


def _require_id(value: Identifier, name: str, event) -> str:
    if value is None or isinstance(value, bool):
        raise InvalidEventError(f"{name} is missing", event)
    normalised = str(value).strip()
    if not normalised:
        raise InvalidEventError(f"{name} is empty", event)
    return normalised


def _optional_id(value: Identifier, name: str, event) -> Optional[str]:
    if value is None:
        return None
    return _require_id(value, name, event)


class EventIngestor:
    """
    Applies message and voice events in the order they are received.

    Retried deliveries are not deduplicated; a duplicate message event counts
    twice. Bad events are logged and dropped so ingestion never stalls.
    """

    def __init__(self, store: AggregateStore, voice_tracker: Optional[VoiceSessionTracker] = None):
        self.store = store
        self.voice_tracker = voice_tracker if voice_tracker is not None else VoiceSessionTracker(store)
        self.dropped_events = 0

    def on_message(self, user_id: Identifier, channel_id: Identifier,
                   timestamp: Optional[datetime] = None) -> bool:
        """
        Record a message sent by a (non-bot) user

        Args:
            user_id: Author id
            channel_id: Channel id
            timestamp: Message time, defaults to now

        Returns:
            True if the event was applied, False if it was dropped
        """
        return self.ingest(MessageEvent(user_id, channel_id, timestamp))

    def on_voice_transition(self, user_id: Identifier, previous_channel_id: Identifier,
                            new_channel_id: Identifier, timestamp: Optional[datetime] = None) -> bool:
        """
        Record a voice state change

        Args:
            user_id: Member id
            previous_channel_id: Channel before the change, or None
            new_channel_id: Channel after the change, or None
            timestamp: Change time, defaults to now

        Returns:
            True if the event was applied, False if it was dropped
        """
        return self.ingest(VoiceTransitionEvent(user_id, previous_channel_id, new_channel_id, timestamp))

    def ingest(self, event: Union[MessageEvent, VoiceTransitionEvent]) -> bool:
        try:
            if isinstance(event, MessageEvent):
                self._apply_message(event)
            elif isinstance(event, VoiceTransitionEvent):
                self._apply_voice(event)
            else:
                raise InvalidEventError(f"Unsupported event type {type(event).__name__}", event)
            return True
        except InvalidEventError as e:
            self.dropped_events += 1
            logger.warning("Dropped invalid event", reason=str(e), event_repr=repr(event))
        except Exception as e:
            self.dropped_events += 1
            logger.error("Unexpected error applying event", event_repr=repr(event), error=str(e), exc_info=True)
        return False

    def _apply_message(self, event: MessageEvent):
        user_id = _require_id(event.user_id, 'user_id', event)
        channel_id = _require_id(event.channel_id, 'channel_id', event)
        self.store.record_message(user_id, channel_id, ensure_utc(event.timestamp))

    def _apply_voice(self, event: VoiceTransitionEvent):
        user_id = _require_id(event.user_id, 'user_id', event)
        self.voice_tracker.handle_transition(
            user_id,
            _optional_id(event.previous_channel_id, 'previous_channel_id', event),
            _optional_id(event.new_channel_id, 'new_channel_id', event),
            ensure_utc(event.timestamp),
        )
