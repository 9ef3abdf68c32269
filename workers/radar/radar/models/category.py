from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from radar.database.connection import Base


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name_en = Column(String(255), nullable=False)
    name_kh = Column(String(255))
    slug = Column(String(255), nullable=False, unique=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    keywords = relationship("CategoryKeyword", back_populates="category")


class CategoryKeyword(Base):
    __tablename__ = "category_keywords"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    keyword = Column(String(255), nullable=False)
    language = Column(String(2), nullable=False, default="en")  # en | kh
    weight = Column(Float, nullable=False, default=1.0)
    is_exact_match = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    category = relationship("Category", back_populates="keywords")

    __table_args__ = (
        UniqueConstraint('category_id', 'keyword', 'language', name='uq_category_keyword_language'),
        Index('ix_category_keywords_category_id', 'category_id'),
    )
