"""
Stats services: in-memory aggregation, voice sessions, ingestion, write-back and analytics
"""
from backend.statsbot.services.aggregate_store import (
    AggregateStore, ChannelCounts, DailyAggregate, DailyAggregateRow, StoreSnapshot,
    UserAggregate, UserAggregateRow
)
from backend.statsbot.services.analytics import AnalyticsEngine, DailyPoint
from backend.statsbot.services.flush_scheduler import FlushReport, FlushScheduler
from backend.statsbot.services.ingestor import EventIngestor, MessageEvent, VoiceTransitionEvent
from backend.statsbot.services.voice_tracker import VoiceSession, VoiceSessionTracker, VoiceTransition

__all__ = [
    'AggregateStore', 'ChannelCounts', 'DailyAggregate', 'DailyAggregateRow', 'StoreSnapshot',
    'UserAggregate', 'UserAggregateRow', 'AnalyticsEngine', 'DailyPoint', 'FlushReport',
    'FlushScheduler', 'EventIngestor', 'MessageEvent', 'VoiceTransitionEvent', 'VoiceSession',
    'VoiceSessionTracker', 'VoiceTransition',
]
