from sqlalchemy import Column, DateTime, Integer, String
from radar.database.connection import Base
from radar.models.item import utcnow


class StorySequence(Base):
    """Named counter row locked while a new story number is allocated."""
    __tablename__ = "story_sequences"

    name = Column(String(50), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class StoryReservation(Base):
    """Story number handed out for text that had no item to carry it."""
    __tablename__ = "story_reservations"

    content_hash = Column(String(64), primary_key=True)
    story_number = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
