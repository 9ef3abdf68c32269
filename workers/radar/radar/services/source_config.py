"""Typed view of the JSON config stored on a Source row, and the fetched item shape."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class ContentConfig(BaseModel):
    strip_urls: bool = True
    strip_emojis: bool = False
    min_text_length: int = 10
    skip_patterns: List[str] = Field(default_factory=list)


class MediaConfig(BaseModel):
    include: bool = True
    download: bool = True
    allowed_types: List[str] = Field(default_factory=lambda: ["photo"])


class AIConfig(BaseModel):
    enabled: bool = True
    # Only compare against stories seen on other sources
    exclude_own_source: bool = True


class CommonConfig(BaseModel):
    fetch_limit: int = 10
    deduplication_strategy: str = "url"
    content: ContentConfig = Field(default_factory=ContentConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    ai: AIConfig = Field(default_factory=AIConfig)


class TelegramConfig(BaseModel):
    username: str
    include_forwards: bool = False
    include_replies: bool = True


class ArticleSelectors(BaseModel):
    title: List[str] = Field(default_factory=lambda: ["h1"])
    content: List[str] = Field(default_factory=lambda: ["article"])
    publish_date: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    remove: List[str] = Field(default_factory=lambda: ["script", "style", "nav", "footer"])


class WebsiteConfig(BaseModel):
    base_url: str
    rss_feeds: List[str] = Field(default_factory=list)
    listing_path: Optional[str] = None
    listing_selector: Optional[str] = None
    article_selectors: ArticleSelectors = Field(default_factory=ArticleSelectors)


class SourceConfig(BaseModel):
    common: CommonConfig = Field(default_factory=CommonConfig)
    telegram: Optional[TelegramConfig] = None
    website: Optional[WebsiteConfig] = None


class SourceCursor(BaseModel):
    last_message_id: Optional[int] = None
    last_item_id: Optional[str] = None
    last_fetched_at: Optional[str] = None


@dataclass
class RawItem:
    """One fetched message or article before normalization."""
    external_id: str
    url: Optional[str]
    text: str
    title: Optional[str] = None
    published_at: Optional[datetime] = None
    group_id: Optional[str] = None
    is_forward: bool = False
    is_reply: bool = False
    media: List[Any] = field(default_factory=list)
