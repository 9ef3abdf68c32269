from .source import Source
from .item import Item, ItemStatus
from .canonical_content import CanonicalContent, canonical_content_tags
from .category import Category, CategoryKeyword
from .tag import Tag
from .media import Media
from .story_sequence import StoryReservation, StorySequence

__all__ = [
    "Source",
    "Item",
    "ItemStatus",
    "CanonicalContent",
    "canonical_content_tags",
    "Category",
    "CategoryKeyword",
    "Tag",
    "Media",
    "StorySequence",
    "StoryReservation",
]
