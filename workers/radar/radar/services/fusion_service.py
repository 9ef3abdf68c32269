import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from radar.config_manager import get_worker_config
from radar.models import CanonicalContent, Item, Tag
from radar.services.category_service import CategoryService, ClassificationError
from radar.services.llm_service import (
    DIFFERENCE_OPTIONS,
    GENERATION_OPTIONS,
    LLM_ERRORS,
    UPDATE_OPTIONS,
    LLMService,
)
from radar.text_utils import truncate

logger = logging.getLogger(__name__)


class MissingStoryNumberError(ValueError):
    """Fusion was asked to handle an item that has not been grouped yet."""


class GenerationError(Exception):
    """The model did not return usable bilingual content."""


class ConcurrentUpdateError(Exception):
    """The canonical content changed between the read and the write."""


class FusionAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CREATED_NEW_VERSION = "created_new_version"
    SKIPPED = "skipped"


class FusionDecision(Enum):
    CREATE = "create"
    SKIP = "skip"
    UPDATE = "update"
    NEW_VERSION = "new_version"


@dataclass
class DifferenceJudgment:
    difference: int
    has_new_information: bool
    reasoning: str
    is_default: bool = False


@dataclass
class FusionResult:
    action: FusionAction
    story_number: int
    canonical_id: Optional[int]
    version: Optional[int]
    reason: str
    difference: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


def decide(judgment: Optional[DifferenceJudgment], similarity_threshold: int = 80,
           update_threshold: int = 60) -> Tuple[FusionDecision, str]:
    """
    Map a difference judgment to a fusion decision.

    `difference` is the percentage of changed content, so similarity is
    100 - difference. No judgment means there is no canonical content yet.
    """
    if judgment is None:
        return FusionDecision.CREATE, "New story created"

    difference = judgment.difference
    similarity = 100 - difference

    if not judgment.has_new_information:
        return FusionDecision.SKIP, "No new important information"
    if similarity > similarity_threshold:
        return FusionDecision.SKIP, f"Content too similar ({similarity}% match)"
    if difference >= update_threshold:
        return FusionDecision.NEW_VERSION, "Major content change"
    if 100 - similarity_threshold <= difference < update_threshold:
        return FusionDecision.UPDATE, "Updated with new information"
    return FusionDecision.SKIP, f"No decision band for difference {difference}"


STORY_LOCK_STRIPES = 64

# Striped so the pool stays fixed however many stories a worker sees.
# Cross-process exclusion comes from the row lock taken in FusionService.
_story_locks = [threading.Lock() for _ in range(STORY_LOCK_STRIPES)]


@contextmanager
def story_write_lock(story_number: int):
    with _story_locks[story_number % STORY_LOCK_STRIPES]:
        yield


def merge_generated_from(existing: Optional[List[int]], item_id: int) -> List[int]:
    merged: List[int] = []
    for value in list(existing or []) + [item_id]:
        if value not in merged:
            merged.append(value)
    return merged


class FusionService:
    def __init__(self, db_session: Session, llm_service: Optional[LLMService] = None,
                 category_service: Optional[CategoryService] = None):
        """Initialize the content fusion service"""
        config = get_worker_config()
        self.db = db_session
        self.llm_service = llm_service or LLMService()
        self.category_service = category_service or CategoryService(db_session, self.llm_service)
        self.similarity_threshold = config.fusion_similarity_threshold
        self.update_threshold = config.fusion_update_threshold
        self.truncate_text = config.fusion_truncate_text
        self.content_preview = config.fusion_content_preview
        self.generation_attempts = config.fusion_generation_attempts
        self.update_attempts = config.fusion_update_attempts

        self._handlers: Dict[FusionDecision, Callable[..., FusionResult]] = {
            FusionDecision.CREATE: self._create,
            FusionDecision.SKIP: self._skip,
            FusionDecision.UPDATE: self._update,
            FusionDecision.NEW_VERSION: self._create_new_version,
        }

    def fuse(self, item: Item) -> FusionResult:
        """
        Fold an item into its story's canonical content.

        Raises:
            MissingStoryNumberError: the item has not been grouped
            GenerationError: fresh content could not be generated
        """
        if item.story_number is None:
            raise MissingStoryNumberError(f"Item {item.id} has no story number")

        for attempt in range(2):
            try:
                result = self._fuse_once(item)
                logger.info(f"✅ Story #{result.story_number}: {result.action.value} (v{result.version}) - {result.reason}")
                return result
            except ConcurrentUpdateError as e:
                self.db.rollback()
                if attempt == 0:
                    logger.warning(f"⚠️ {e}, retrying fusion for item {item.id}")
                    continue
                raise

    def _fuse_once(self, item: Item) -> FusionResult:
        current = self.get_current_canonical(item.story_number)

        if current is not None and item.id in (current.generated_from or []):
            return self._skip(item, current, None, "Item already fused into canonical content")

        judgment = None
        if current is not None:
            judgment = self._judge_difference(item, current)

        decision, reason = decide(judgment, self.similarity_threshold, self.update_threshold)
        return self._handlers[decision](item, current, judgment, reason)

    def story_rows_query(self, story_number: int):
        """Item rows of a story, locked FOR UPDATE in id order."""
        return self.db.query(Item.id).filter(
            Item.story_number == story_number
        ).order_by(Item.id).with_for_update()

    def lock_story(self, story_number: int) -> None:
        """
        Hold the story's item rows until the next commit or rollback so writers
        in other worker processes wait for this one.
        """
        self.story_rows_query(story_number).all()

    def get_current_canonical(self, story_number: int) -> Optional[CanonicalContent]:
        """The most recently created canonical row of a story."""
        return self.db.query(CanonicalContent).filter(
            CanonicalContent.story_number == story_number
        ).order_by(CanonicalContent.id.desc()).first()

    # Decision handlers

    def _skip(self, item: Item, current: CanonicalContent, judgment: Optional[DifferenceJudgment],
              reason: str) -> FusionResult:
        return FusionResult(
            action=FusionAction.SKIPPED,
            story_number=item.story_number,
            canonical_id=current.id,
            version=current.version,
            reason=reason,
            difference=judgment.difference if judgment else None,
        )

    def _create(self, item: Item, current: Optional[CanonicalContent], judgment: Optional[DifferenceJudgment],
                reason: str) -> FusionResult:
        generated = self._generate_bilingual(item, require_khmer=True)

        classification = None
        try:
            classification = self.category_service.classify(generated["title_en"], generated["content_en"])
        except ClassificationError as e:
            logger.warning(f"⚠️ Classification failed for story #{item.story_number}, storing uncategorized: {e}")

        with story_write_lock(item.story_number):
            self.lock_story(item.story_number)
            if self.get_current_canonical(item.story_number) is not None:
                raise ConcurrentUpdateError(f"Story #{item.story_number} got canonical content concurrently")

            try:
                now = datetime.now(timezone.utc)
                content = CanonicalContent(
                    story_number=item.story_number,
                    category_id=classification.category_id if classification else None,
                    title_en=generated["title_en"],
                    content_en=generated["content_en"],
                    title_kh=generated["title_kh"],
                    content_kh=generated["content_kh"],
                    generated_from=[item.id],
                    version=1,
                    is_published=True,
                    published_at=now,
                    status="active",
                )
                if classification and classification.tag_ids:
                    content.tags = self.db.query(Tag).filter(Tag.id.in_(classification.tag_ids)).all()
                self.db.add(content)
                self.db.commit()
            except Exception as e:
                logger.error(f"Failed to store canonical content for story #{item.story_number}: {e}")
                self.db.rollback()
                raise

        return FusionResult(FusionAction.CREATED, item.story_number, content.id, content.version, reason)

    def _update(self, item: Item, current: CanonicalContent, judgment: DifferenceJudgment,
                reason: str) -> FusionResult:
        expected_version = current.version
        merged = self._merge_update(item, current)

        values = {
            "title_en": merged.get("title_en") or current.title_en,
            "content_en": merged["content_en"],
            "title_kh": merged.get("title_kh") or current.title_kh,
            "content_kh": merged.get("content_kh") or current.content_kh,
            "generated_from": merge_generated_from(current.generated_from, item.id),
            "version": expected_version + 1,
            "updated_at": datetime.now(timezone.utc),
        }

        with story_write_lock(item.story_number):
            try:
                self.lock_story(item.story_number)
                updated = self.db.query(CanonicalContent).filter(
                    CanonicalContent.id == current.id,
                    CanonicalContent.version == expected_version,
                ).update(values, synchronize_session=False)

                if updated != 1:
                    raise ConcurrentUpdateError(
                        f"Canonical {current.id} moved past version {expected_version}"
                    )
                self.db.commit()
            except ConcurrentUpdateError:
                self.db.rollback()
                raise
            except Exception as e:
                logger.error(f"Failed to update canonical {current.id}: {e}")
                self.db.rollback()
                raise

        self.db.refresh(current)
        return FusionResult(FusionAction.UPDATED, item.story_number, current.id, current.version, reason,
                            judgment.difference)

    def _create_new_version(self, item: Item, current: CanonicalContent, judgment: DifferenceJudgment,
                            reason: str) -> FusionResult:
        generated = self._generate_bilingual(item, require_khmer=False)

        with story_write_lock(item.story_number):
            self.lock_story(item.story_number)
            latest = self.get_current_canonical(item.story_number)
            if latest is None or latest.id != current.id:
                raise ConcurrentUpdateError(f"Story #{item.story_number} got a newer canonical concurrently")

            try:
                now = datetime.now(timezone.utc)
                content = CanonicalContent(
                    story_number=item.story_number,
                    category_id=current.category_id,
                    title_en=generated["title_en"],
                    content_en=generated["content_en"],
                    title_kh=generated.get("title_kh") or current.title_kh,
                    content_kh=generated.get("content_kh") or current.content_kh,
                    generated_from=merge_generated_from(current.generated_from, item.id),
                    version=1,
                    is_published=True,
                    published_at=now,
                    status="active",
                )
                content.tags = list(current.tags)
                self.db.add(content)
                self.db.commit()
            except Exception as e:
                logger.error(f"Failed to store new version for story #{item.story_number}: {e}")
                self.db.rollback()
                raise

        return FusionResult(FusionAction.CREATED_NEW_VERSION, item.story_number, content.id, content.version,
                            reason, judgment.difference)

    # Model calls

    def _judge_difference(self, item: Item, current: CanonicalContent) -> DifferenceJudgment:
        """Compare the item with the canonical English text. Never raises."""
        try:
            prompt = self._create_difference_prompt(item, current)
            response = self.llm_service.generate_json(prompt, DIFFERENCE_OPTIONS)
            return self._parse_difference(response)
        except (*LLM_ERRORS, KeyError, TypeError, ValueError) as e:
            logger.error(f"Difference analysis failed, defaulting to update: {e}")
            return DifferenceJudgment(50, True, "Error in AI analysis, defaulting to update", is_default=True)

    @staticmethod
    def _parse_difference(response: Dict[str, Any]) -> DifferenceJudgment:
        raw_difference = response.get("difference")
        difference = 50 if raw_difference in (None, "") else int(round(float(raw_difference)))
        difference = min(max(difference, 0), 100)

        has_new_information = response.get("has_new_information")
        if isinstance(has_new_information, str):
            has_new_information = has_new_information.strip().lower() != "false"
        else:
            has_new_information = has_new_information is not False

        reasoning = str(response.get("reasoning") or "No reasoning provided")
        return DifferenceJudgment(difference, has_new_information, reasoning)

    def _generate_bilingual(self, item: Item, require_khmer: bool) -> Dict[str, Optional[str]]:
        prompt = self._create_generation_prompt(item)
        last_error: Optional[Exception] = None

        for attempt in range(self.generation_attempts):
            try:
                response = self.llm_service.generate_json(prompt, GENERATION_OPTIONS)
                return self._validate_generated(response, require_khmer)
            except (*LLM_ERRORS, GenerationError) as e:
                last_error = e
                logger.warning(f"Generation attempt {attempt + 1}/{self.generation_attempts} failed for item {item.id}: {e}")

        raise GenerationError(f"Could not generate content for item {item.id}: {last_error}")

    @staticmethod
    def _validate_generated(response: Dict[str, Any], require_khmer: bool) -> Dict[str, Optional[str]]:
        fields = {
            key: (str(response.get(key) or "").strip() or None)
            for key in ("title_en", "content_en", "title_kh", "content_kh")
        }

        if not fields["title_en"] or not fields["content_en"]:
            raise GenerationError("English title and content are required")
        if require_khmer and (not fields["title_kh"] or not fields["content_kh"]):
            raise GenerationError("Khmer title and content are required for new stories")
        return fields

    def _merge_update(self, item: Item, current: CanonicalContent) -> Dict[str, Optional[str]]:
        """Merge the item into the canonical text, falling back to fresh generation."""
        prompt = self._create_update_prompt(item, current)

        for attempt in range(self.update_attempts):
            try:
                response = self.llm_service.generate_json(prompt, UPDATE_OPTIONS)
                content_en = str(response.get("content_en") or "").strip()
                if not content_en:
                    raise GenerationError("Merged English content is empty")
                return {
                    "title_en": str(response.get("title_en") or "").strip() or None,
                    "content_en": content_en,
                    "title_kh": str(response.get("title_kh") or "").strip() or None,
                    "content_kh": str(response.get("content_kh") or "").strip() or None,
                }
            except (*LLM_ERRORS, GenerationError) as e:
                logger.warning(f"Merge attempt {attempt + 1}/{self.update_attempts} failed for story #{item.story_number}: {e}")

        logger.warning(f"Merge failed for story #{item.story_number}, generating fresh content from item {item.id}")
        return self._generate_bilingual(item, require_khmer=False)

    # Prompts

    def _create_difference_prompt(self, item: Item, current: CanonicalContent) -> str:
        return f"""You are a news editor checking whether a new report adds anything to a published article.

PUBLISHED ARTICLE:
Title: {current.title_en}
Content: {truncate(current.content_en, self.truncate_text)}

NEW REPORT:
Title: {item.title}
Content: {truncate(item.content, self.truncate_text)}

NEW IMPORTANT INFORMATION means facts the published article does not contain:
- new numbers (casualties, amounts, results, dates)
- new statements or decisions by the people involved
- new developments, consequences or official responses
Rewording, translations, opinions and repeated facts are NOT new information.

Respond with JSON only:
{{
    "difference": integer 0-100 (share of the new report's facts missing from the article),
    "has_new_information": true or false,
    "reasoning": "one short sentence"
}}"""

    def _create_generation_prompt(self, item: Item) -> str:
        return f"""You are a professional bilingual news editor writing for English and Khmer readers.

SOURCE REPORT:
Title: {item.title}
Content: {truncate(item.content, self.truncate_text)}

Write one clean news article based only on the source report:
1. Keep every fact, name, number and date. Do not invent anything.
2. Neutral, factual tone. No emojis, hashtags, links or promotional text.
3. English title under 120 characters, English body in short paragraphs.
4. Khmer title and Khmer body are REQUIRED: translate the English article faithfully
   into natural Khmer script.

Respond with JSON only:
{{
    "title_en": "English title",
    "content_en": "English article",
    "title_kh": "Khmer title",
    "content_kh": "Khmer article"
}}"""

    def _create_update_prompt(self, item: Item, current: CanonicalContent) -> str:
        return f"""You are a professional bilingual news editor updating a published article with a new report.

PUBLISHED ARTICLE (English):
Title: {current.title_en}
Content: {current.content_en}

PUBLISHED ARTICLE (Khmer):
Title: {current.title_kh or ''}
Content: {truncate(current.content_kh, self.content_preview)}

NEW REPORT:
Title: {item.title}
Content: {truncate(item.content, self.truncate_text)}

INSTRUCTIONS:
1. Keep the structure and all facts of the published article.
2. Add the new facts from the report. Replace a fact only when the report clearly supersedes it.
3. Keep events in chronological order.
4. Update the title only if the new facts change the headline.
5. Provide the Khmer version when you can. Leave Khmer fields empty rather than guessing.

Respond with JSON only:
{{
    "title_en": "English title",
    "content_en": "updated English article",
    "title_kh": "Khmer title or empty",
    "content_kh": "updated Khmer article or empty"
}}"""
