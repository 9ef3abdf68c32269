from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from radar.database.connection import Base


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name_en = Column(String(255), nullable=False)
    name_kh = Column(String(255))
    slug = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
