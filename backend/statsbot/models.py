"""
Database Models for the stats bot
SQLAlchemy ORM models for the durable copy of the activity aggregates
"""
from sqlalchemy import CheckConstraint, Column, Float, Integer, String
from sqlalchemy.orm import declarative_base

from backend.statsbot.types import ChannelCountsJSON

Base = declarative_base()


class UserStats(Base):
    """Lifetime totals per user"""
    __tablename__ = 'user_stats'

    user_id = Column(String(32), primary_key=True)
    total_messages = Column(Integer, nullable=False, default=0)
    total_voice_time = Column(Float, nullable=False, default=0.0)  # seconds

    __table_args__ = (
        CheckConstraint('total_messages >= 0', name='ck_user_stats_messages_non_negative'),
        CheckConstraint('total_voice_time >= 0', name='ck_user_stats_voice_non_negative'),
    )

    def __repr__(self):
        return f"<UserStats {self.user_id} messages={self.total_messages} voice={self.total_voice_time}>"


class DailyStats(Base):
    """Per-user totals for one UTC calendar day"""
    __tablename__ = 'daily_stats'

    user_id = Column(String(32), primary_key=True)
    date = Column(String(10), primary_key=True)  # YYYY-MM-DD, UTC
    messages = Column(Integer, nullable=False, default=0)
    voice_time = Column(Float, nullable=False, default=0.0)  # seconds
    channels = Column(ChannelCountsJSON, nullable=False, default=lambda: {})

    __table_args__ = (
        CheckConstraint('messages >= 0', name='ck_daily_stats_messages_non_negative'),
        CheckConstraint('voice_time >= 0', name='ck_daily_stats_voice_non_negative'),
    )

    def __repr__(self):
        return f"<DailyStats {self.user_id} {self.date} messages={self.messages}>"


__all__ = ['Base', 'UserStats', 'DailyStats']
