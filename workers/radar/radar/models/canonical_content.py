from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, ForeignKey, Index, Table
from sqlalchemy.orm import relationship
from radar.database.connection import Base
from radar.models.item import utcnow


canonical_content_tags = Table(
    "canonical_content_tags",
    Base.metadata,
    Column("canonical_content_id", Integer, ForeignKey("canonical_contents.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class CanonicalContent(Base):
    """Fused bilingual article for a story. New versions are new rows."""
    __tablename__ = "canonical_contents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    story_number = Column(Integer, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)

    title_en = Column(Text, nullable=False)
    content_en = Column(Text, nullable=False)
    title_kh = Column(Text)
    content_kh = Column(Text)

    # Ordered list of item ids; always replaced, never mutated in place
    generated_from = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)

    is_published = Column(Boolean, nullable=False, default=True)
    published_at = Column(DateTime(timezone=True), default=utcnow)
    status = Column(String(20), nullable=False, default="active")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    category = relationship("Category")
    tags = relationship("Tag", secondary=canonical_content_tags, order_by="Tag.id")

    __table_args__ = (
        Index('ix_canonical_contents_story_number', 'story_number'),
        Index('ix_canonical_contents_category_id', 'category_id'),
    )
