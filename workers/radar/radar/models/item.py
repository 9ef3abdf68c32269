import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Index, Enum
from sqlalchemy.orm import relationship
from radar.database.connection import Base


def utcnow():
    return datetime.now(timezone.utc)


class ItemStatus(str, enum.Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    ERROR = "ERROR"


class Item(Base):
    """One raw ingested message or article."""
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_id = Column(Integer, ForeignKey("items.id"), nullable=True)  # story leader
    source_id = Column(Integer, ForeignKey("sources.id"), nullable=True)
    external_id = Column(String(255))

    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default="")
    content_hash = Column(String(64), nullable=False, unique=True)
    url = Column(String(1024), unique=True)

    published_at = Column(DateTime(timezone=True))
    scraped_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    story_number = Column(Integer, nullable=True)
    is_story_leader = Column(Boolean, nullable=False, default=False)
    is_duplicate = Column(Boolean, nullable=False, default=False)

    status = Column(Enum(ItemStatus, name="item_status"), nullable=False, default=ItemStatus.NEW)
    error_message = Column(Text)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True))

    source = relationship("Source", back_populates="items")
    parent = relationship("Item", remote_side=[id])
    media = relationship("Media", back_populates="item")

    __table_args__ = (
        Index('ix_items_story_number', 'story_number'),
        Index('ix_items_scraped_at', 'scraped_at'),
        Index('ix_items_source_status', 'source_id', 'status'),
    )

    @property
    def text(self) -> str:
        return f"{self.title}\n\n{self.content}".strip()
