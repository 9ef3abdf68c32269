import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from radar.config_manager import get_worker_config
from radar.models import CanonicalContent, Category, CategoryKeyword, Tag
from radar.services.llm_service import (
    CLASSIFICATION_OPTIONS,
    InferenceConnectionError,
    InferenceTimeoutError,
    LLM_ERRORS,
    LLMService,
)
from radar.text_utils import content_hash, slugify, truncate

logger = logging.getLogger(__name__)

STOPWORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "from", "as", "is", "was", "are", "been", "be", "have", "has", "had", "do", "does", "did",
    "will", "would", "should", "could", "may", "might", "must", "can", "this", "that", "these",
    "those", "they", "them", "their", "there", "then", "than", "what", "which", "who", "when",
    "where", "while", "about", "after", "before", "into", "over", "under", "also", "more",
    "most", "some", "such", "only", "other", "said", "says", "very", "just", "being", "were",
}

CLASSIFY_CONTENT_LIMIT = 1500


class ClassificationError(Exception):
    """The model could not classify the text. The caller decides what to do next."""


@dataclass
class ClassificationConfig:
    keyword_threshold: float = 3.0
    use_ai_fallback: bool = True
    combine_results: bool = True
    auto_learn_keywords: bool = True
    auto_learn_min_weight: float = 1.5

    @classmethod
    def from_worker_config(cls) -> "ClassificationConfig":
        defaults = get_worker_config().classification_defaults
        known = {key: value for key, value in defaults.items() if key in cls.__dataclass_fields__}
        return cls(**known)

    def merge(self, **changes) -> "ClassificationConfig":
        unknown = set(changes) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown classification settings: {sorted(unknown)}")
        return replace(self, **changes)

    def __post_init__(self):
        if self.keyword_threshold < 0:
            raise ValueError("keyword_threshold must not be negative")
        if self.auto_learn_min_weight <= 0:
            raise ValueError("auto_learn_min_weight must be positive")


@dataclass
class ClassificationResult:
    category_id: Optional[int]
    tag_ids: List[int] = field(default_factory=list)
    method: str = "none"  # keyword | ai | none
    is_new_category: bool = False
    keyword_score: float = 0.0
    matched_keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class KeywordMatch:
    category_id: int
    score: float
    matched_keywords: List[str]


class CategoryService:
    """Keyword scoring first, LLM classification as fallback."""

    def __init__(self, db_session: Session, llm_service: Optional[LLMService] = None,
                 config: Optional[ClassificationConfig] = None):
        self.db = db_session
        self.llm_service = llm_service or LLMService()
        self.config = config or ClassificationConfig.from_worker_config()
        self.max_learned_keywords = get_worker_config().config.get("algorithms.classification.max_learned_keywords", 5)

    # Configuration

    def get_config(self) -> ClassificationConfig:
        return replace(self.config)

    def set_config(self, config: Optional[ClassificationConfig] = None, **changes) -> ClassificationConfig:
        """Replace the whole config, or change individual fields by keyword."""
        self.config = (config or self.config).merge(**changes)
        logger.info(f"Classification config updated: {asdict(self.config)}")
        return self.get_config()

    # Classification

    def classify(self, title: str, content: str) -> ClassificationResult:
        """
        Assign a category and tags to a piece of text.

        Raises:
            ClassificationError: when a required model call fails
        """
        config = self.config
        match = self.match_keywords(title, content)

        if match and match.score >= config.keyword_threshold:
            logger.info(f"🏷️ Keyword match: category {match.category_id} (score {match.score:.1f})")
            tag_ids: List[int] = []
            if config.combine_results:
                ai_result = self._classify_with_ai(title, content)
                tag_ids = self._process_tags(ai_result["tags"])
            return ClassificationResult(
                category_id=match.category_id,
                tag_ids=tag_ids,
                method="keyword",
                keyword_score=match.score,
                matched_keywords=match.matched_keywords,
            )

        if not config.use_ai_fallback:
            logger.info("No keyword match above threshold and AI fallback disabled")
            return ClassificationResult(
                category_id=None,
                method="none",
                keyword_score=match.score if match else 0.0,
                matched_keywords=match.matched_keywords if match else [],
            )

        ai_result = self._classify_with_ai(title, content)
        category_name = ai_result["category"]

        category = self.find_category_by_name(category_name["en"], category_name.get("kh"))
        is_new_category = category is None
        if is_new_category:
            category = self.create_category(category_name["en"], category_name.get("kh"))
            if config.auto_learn_keywords:
                self._learn_keywords(category, title, content)

        tag_ids = self._process_tags(ai_result["tags"])
        logger.info(f"🤖 AI classification: {category.name_en} ({'new' if is_new_category else 'existing'}), {len(tag_ids)} tags")

        return ClassificationResult(
            category_id=category.id,
            tag_ids=tag_ids,
            method="ai",
            is_new_category=is_new_category,
            keyword_score=match.score if match else 0.0,
            matched_keywords=match.matched_keywords if match else [],
        )

    def reclassify_content(self, canonical_id: int) -> ClassificationResult:
        """Classify stored canonical content again and replace its category and tags."""
        content = self.db.get(CanonicalContent, canonical_id)
        if content is None:
            raise ValueError(f"Canonical content {canonical_id} not found")

        result = self.classify(content.title_en, content.content_en)
        try:
            content.category_id = result.category_id
            content.tags = self.db.query(Tag).filter(Tag.id.in_(result.tag_ids)).all() if result.tag_ids else []
            self.db.commit()
        except Exception as e:
            logger.error(f"Failed to store classification for canonical {canonical_id}: {e}")
            self.db.rollback()
            raise

        return result

    def match_keywords(self, title: str, content: str) -> Optional[KeywordMatch]:
        """Score every active keyword against the text. Returns the best category."""
        title_lower = (title or "").lower()
        text_lower = f"{title or ''} {content or ''}".lower()

        keywords = self.db.query(CategoryKeyword).join(Category).filter(
            CategoryKeyword.is_deleted.is_(False),
            Category.is_deleted.is_(False),
        ).order_by(CategoryKeyword.weight.desc(), CategoryKeyword.id).all()

        scores: Dict[int, float] = {}
        matched: Dict[int, List[str]] = {}

        for keyword in keywords:
            term = keyword.keyword.lower().strip()
            if not term:
                continue

            if keyword.is_exact_match:
                occurrences = len(re.findall(rf"\b{re.escape(term)}\b", text_lower))
            else:
                occurrences = text_lower.count(term)

            if not occurrences:
                continue

            score = keyword.weight * occurrences
            if term in title_lower:
                score *= 2

            scores[keyword.category_id] = scores.get(keyword.category_id, 0.0) + score
            matched.setdefault(keyword.category_id, []).append(keyword.keyword)

        best: Optional[KeywordMatch] = None
        for category_id, score in scores.items():
            if best is None or score > best.score:
                best = KeywordMatch(category_id, score, matched[category_id])
        return best

    def _classify_with_ai(self, title: str, content: str) -> Dict[str, Any]:
        categories = self.db.query(Category).filter(Category.is_deleted.is_(False)).order_by(Category.id).all()
        prompt = self._create_classification_prompt(title, content, categories)

        try:
            response = self.llm_service.generate_json(prompt, CLASSIFICATION_OPTIONS)
        except InferenceConnectionError as e:
            if e.reason == "refused":
                logger.error(f"❌ Inference service not reachable: {e}")
            elif e.reason == "reset":
                logger.error(f"❌ Connection to inference service was reset: {e}")
            else:
                logger.error(f"❌ Connection to inference service failed: {e}")
            raise ClassificationError(f"Classification failed: {e}") from e
        except InferenceTimeoutError as e:
            logger.error(f"❌ Classification request timed out: {e}")
            raise ClassificationError(f"Classification failed: {e}") from e
        except LLM_ERRORS as e:
            logger.error(f"❌ Classification request failed: {e}")
            raise ClassificationError(f"Classification failed: {e}") from e

        return self._validate_classification(response)

    @staticmethod
    def _validate_classification(response: Dict[str, Any]) -> Dict[str, Any]:
        category = response.get("category")
        if not isinstance(category, dict) or not str(category.get("en") or "").strip():
            raise ClassificationError("Classification response has no category.en")

        tags = response.get("tags")
        if not isinstance(tags, list):
            raise ClassificationError("Classification response has no tags array")

        clean_tags = []
        for tag in tags:
            if not isinstance(tag, dict):
                continue
            name_en = str(tag.get("en") or "").strip()
            if not name_en:
                continue
            name_kh = str(tag.get("kh") or "").strip() or name_en
            clean_tags.append({"en": name_en, "kh": name_kh})

        name_en = str(category["en"]).strip()
        name_kh = str(category.get("kh") or "").strip() or None
        return {"category": {"en": name_en, "kh": name_kh}, "tags": clean_tags}

    def _create_classification_prompt(self, title: str, content: str, categories: List[Category]) -> str:
        if categories:
            category_lines = "\n".join(
                f"- {category.name_en} ({category.name_kh})" if category.name_kh else f"- {category.name_en}"
                for category in categories
            )
        else:
            category_lines = "(none yet)"

        return f"""You are a bilingual (English and Khmer) news editor classifying an article.

EXISTING CATEGORIES:
{category_lines}

ARTICLE:
Title: {title}
Content: {truncate(content, CLASSIFY_CONTENT_LIMIT)}

INSTRUCTIONS:
1. Choose ONE category. Use an existing category from the list whenever it fits,
   and copy its English name exactly. Only propose a new category when none fits.
2. Give the category name in English and in Khmer.
3. Generate 2-3 short tags for the key people, organisations, places or topics,
   each in English and Khmer.

Respond with JSON only:
{{
    "category": {{"en": "English name", "kh": "Khmer name"}},
    "tags": [
        {{"en": "tag", "kh": "Khmer tag"}}
    ]
}}"""

    # Categories

    def find_category_by_name(self, name_en: str, name_kh: Optional[str] = None) -> Optional[Category]:
        """Resolve a model-proposed name: slug, then English name, then Khmer name."""
        active = self.db.query(Category).filter(Category.is_deleted.is_(False))

        slug = slugify(name_en)
        if slug:
            category = active.filter(Category.slug == slug).first()
            if category:
                return category

        category = active.filter(func.lower(Category.name_en) == name_en.strip().lower()).first()
        if category:
            return category

        if name_kh:
            return active.filter(Category.name_kh == name_kh.strip()).first()
        return None

    def _unique_slug(self, model, base_slug: str) -> str:
        slug = base_slug
        counter = 1
        while self.db.query(model.id).filter(model.slug == slug).first() is not None:
            slug = f"{base_slug}-{counter}"
            counter += 1
        return slug

    def create_category(self, name_en: str, name_kh: Optional[str] = None) -> Category:
        """Create a category with a slug that does not collide with any existing one."""
        base_slug = slugify(name_en) or "category"

        for attempt in range(3):
            slug = self._unique_slug(Category, base_slug)
            savepoint = self.db.begin_nested()
            try:
                category = Category(name_en=name_en.strip(), name_kh=name_kh, slug=slug)
                self.db.add(category)
                self.db.flush()
                savepoint.commit()
                self.db.commit()
                logger.info(f"📁 Created category '{name_en}' ({slug})")
                return category
            except IntegrityError:
                # Slug taken by a concurrent insert, pick the next suffix
                savepoint.rollback()
                logger.info(f"Slug '{slug}' taken concurrently (attempt {attempt + 1})")

        raise ClassificationError(f"Could not allocate a unique slug for category '{name_en}'")

    # Keywords

    def extract_keywords(self, category_name: str, title: str, content: str) -> List[str]:
        keywords: List[str] = []

        def add(word: str):
            if word and word not in keywords:
                keywords.append(word)

        add(category_name.lower().strip())

        for word in re.sub(r"[^\w\s]", " ", (title or "").lower()).split():
            if len(word) >= 4 and word not in STOPWORDS:
                add(word)

        content_words = [
            word for word in re.sub(r"[^\w\s]", " ", (content or "")[:500].lower()).split()
            if len(word) >= 5 and word not in STOPWORDS
        ]
        for word, _ in Counter(content_words).most_common(3):
            add(word)

        return keywords[:self.max_learned_keywords]

    def _learn_keywords(self, category: Category, title: str, content: str) -> None:
        keywords = self.extract_keywords(category.name_en, title, content)
        learned = 0
        for keyword in keywords:
            try:
                self.add_category_keyword(category.id, keyword, "en", self.config.auto_learn_min_weight, False)
                learned += 1
            except IntegrityError as e:
                logger.debug(f"Keyword '{keyword}' already registered: {e}")
            except ValueError as e:
                logger.warning(f"Skipping learned keyword '{keyword}': {e}")
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning(f"Keyword learning stopped for category '{category.name_en}': {e}")
                break
        logger.info(f"📚 Learned {learned} keywords for category '{category.name_en}'")

    def add_category_keyword(self, category_id: int, keyword: str, language: str = "en",
                             weight: float = 1.0, is_exact_match: bool = False) -> CategoryKeyword:
        """Insert a keyword, or update weight and match mode when it already exists."""
        if weight <= 0:
            raise ValueError("Keyword weight must be positive")
        if language not in ("en", "kh"):
            raise ValueError(f"Unsupported keyword language: {language}")

        keyword = keyword.strip().lower() if language == "en" else keyword.strip()
        existing = self.db.query(CategoryKeyword).filter(
            CategoryKeyword.category_id == category_id,
            CategoryKeyword.keyword == keyword,
            CategoryKeyword.language == language,
        ).first()

        if existing:
            existing.weight = weight
            existing.is_exact_match = is_exact_match
            existing.is_deleted = False
            self.db.commit()
            return existing

        savepoint = self.db.begin_nested()
        try:
            row = CategoryKeyword(
                category_id=category_id,
                keyword=keyword,
                language=language,
                weight=weight,
                is_exact_match=is_exact_match,
            )
            self.db.add(row)
            self.db.flush()
            savepoint.commit()
            self.db.commit()
            return row
        except IntegrityError:
            savepoint.rollback()
            raise

    def bulk_add_keywords(self, category_id: int, keywords: Iterable[Dict[str, Any]]) -> int:
        added = 0
        for entry in keywords:
            try:
                self.add_category_keyword(
                    category_id,
                    entry["keyword"],
                    entry.get("language", "en"),
                    entry.get("weight", 1.0),
                    entry.get("is_exact_match", False),
                )
                added += 1
            except IntegrityError as e:
                logger.debug(f"Skipping duplicate keyword {entry.get('keyword')}: {e}")
        return added

    def get_category_keywords(self, category_id: int) -> List[CategoryKeyword]:
        return self.db.query(CategoryKeyword).filter(
            CategoryKeyword.category_id == category_id,
            CategoryKeyword.is_deleted.is_(False),
        ).order_by(CategoryKeyword.weight.desc(), CategoryKeyword.keyword).all()

    def delete_category_keyword(self, keyword_id: int) -> bool:
        keyword = self.db.get(CategoryKeyword, keyword_id)
        if keyword is None or keyword.is_deleted:
            return False
        keyword.is_deleted = True
        self.db.commit()
        return True

    # Tags

    def get_or_create_tag(self, name_en: str, name_kh: Optional[str] = None) -> Tag:
        """Race-tolerant get-or-create by slug."""
        slug = slugify(name_en)
        if not slug:
            # Non-latin names still need a stable unique key
            slug = f"tag-{content_hash(name_en.strip().lower())[:10]}"

        tag = self.db.query(Tag).filter(Tag.slug == slug).first()
        if tag:
            return tag

        savepoint = self.db.begin_nested()
        try:
            tag = Tag(name_en=name_en.strip(), name_kh=(name_kh or name_en).strip(), slug=slug)
            self.db.add(tag)
            self.db.flush()
            savepoint.commit()
            self.db.commit()
            return tag
        except IntegrityError:
            savepoint.rollback()
            logger.info(f"Tag '{slug}' created concurrently, re-querying")
            tag = self.db.query(Tag).filter(Tag.slug == slug).first()
            if tag is None:
                raise
            return tag

    def _process_tags(self, tags: List[Dict[str, str]]) -> List[int]:
        tag_ids: List[int] = []
        for entry in tags:
            tag = self.get_or_create_tag(entry["en"], entry.get("kh"))
            if tag.id not in tag_ids:
                tag_ids.append(tag.id)
        return tag_ids

