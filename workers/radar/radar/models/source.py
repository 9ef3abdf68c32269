from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from radar.database.connection import Base


class Source(Base):
    __tablename__ = "sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    source_type = Column(String(50), nullable=False)  # telegram | website
    is_active = Column(Boolean, nullable=False, default=True)

    # Fetch configuration, see radar.services.source_config.SourceConfig
    config = Column(JSON, nullable=False, default=dict)
    # {"last_message_id": ..., "last_item_id": ..., "last_fetched_at": ...}
    cursor = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    items = relationship("Item", back_populates="source")

    __table_args__ = (
        Index('ix_sources_type_active', 'source_type', 'is_active'),
    )
