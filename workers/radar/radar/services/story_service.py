import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from radar.config_manager import get_worker_config
from radar.models import CanonicalContent, Item, StoryReservation, StorySequence
from radar.services.llm_service import LLM_ERRORS, SIMILARITY_OPTIONS, LLMService
from radar.text_utils import content_hash, cosine_scores, truncate

logger = logging.getLogger(__name__)

STORY_SEQUENCE_NAME = "story"

# One allocator lock per process. SQLite ignores FOR UPDATE, so this is what
# serializes allocation in tests and single-process deployments.
_allocation_lock = threading.Lock()


@dataclass
class StoryAssignment:
    story_number: int
    is_new_story: bool
    leader_id: Optional[int] = None
    similarity: Optional[float] = None


@dataclass
class StoryCandidate:
    item_id: int
    story_number: int
    title: str
    content: str
    is_leader: bool


class StoryService:
    def __init__(self, db_session: Session, llm_service: Optional[LLMService] = None,
                 similarity_threshold: Optional[float] = None, lookback_days: Optional[int] = None):
        """Initialize the story grouping service"""
        config = get_worker_config()
        self.db = db_session
        self.llm_service = llm_service or LLMService()
        self.similarity_threshold = similarity_threshold if similarity_threshold is not None else config.grouping_similarity_threshold
        self.lookback_days = lookback_days if lookback_days is not None else config.grouping_lookback_days
        self.candidate_scan_limit = config.grouping_candidate_scan_limit
        self.text_comparison_limit = config.grouping_text_comparison_limit
        self.prefilter_min_cosine = config.grouping_prefilter_min_cosine
        self.prefilter_max_candidates = config.grouping_prefilter_max_candidates

    def assign_story(self, title: str, content: str, exclude_source_id: Optional[int] = None,
                     item_id: Optional[int] = None) -> StoryAssignment:
        """
        Find the story a new item belongs to, or allocate a new story number.

        Args:
            title: Item title
            content: Item body text
            exclude_source_id: Skip candidates from this source
            item_id: When given, the assignment is written to this item. Without
                it a new number is reserved under the text hash, so repeating
                the call for the same text returns the same number.

        Returns:
            StoryAssignment with the story number and whether it is new
        """
        item = self.db.get(Item, item_id) if item_id is not None else None

        if item is not None and item.story_number is not None:
            logger.info(f"Item {item.id} already belongs to story #{item.story_number}")
            return StoryAssignment(
                story_number=item.story_number,
                is_new_story=bool(item.is_story_leader),
                leader_id=item.id if item.is_story_leader else item.parent_id,
            )

        new_text = f"{title}\n\n{content}".strip()
        candidates = self._find_candidates(exclude_source_id, item_id)
        candidates = self._prefilter(new_text, candidates)
        logger.info(f"Comparing against {len(candidates)} candidate stories")

        for candidate in candidates:
            similarity = self._judge_similarity(new_text, f"{candidate.title}\n\n{candidate.content}")
            if similarity is None:
                continue

            if similarity > self.similarity_threshold:
                logger.info(f"🔗 Matched story #{candidate.story_number} (similarity {similarity:.2f})")
                leader_id = self._find_leader_id(candidate.story_number)
                if item is not None:
                    item.story_number = candidate.story_number
                    item.is_story_leader = False
                    item.parent_id = leader_id
                    self.db.commit()
                return StoryAssignment(candidate.story_number, False, leader_id, similarity)

        reservation_key = None if item is not None else content_hash(new_text)
        story_number = self._allocate_story_number(item, reservation_key)
        logger.info(f"🆕 Created story #{story_number}")
        return StoryAssignment(story_number, True, item.id if item is not None else None)

    def _find_candidates(self, exclude_source_id: Optional[int], exclude_item_id: Optional[int]) -> List[StoryCandidate]:
        """One representative per story from the lookback window, most recent first."""
        since = datetime.now(timezone.utc) - timedelta(days=self.lookback_days)

        query = self.db.query(Item).filter(
            Item.is_deleted.is_(False),
            Item.story_number.isnot(None),
            Item.scraped_at >= since,
        )
        if exclude_source_id is not None:
            query = query.filter((Item.source_id != exclude_source_id) | Item.source_id.is_(None))
        if exclude_item_id is not None:
            query = query.filter(Item.id != exclude_item_id)

        rows = query.order_by(Item.scraped_at.desc(), Item.id.desc()).limit(self.candidate_scan_limit).all()

        # Stories keep the position of their most recent item; the leader
        # replaces the most recent item as representative when it is in the window.
        representatives: Dict[int, Item] = {}
        for row in rows:
            current = representatives.get(row.story_number)
            if current is None or (row.is_story_leader and not current.is_story_leader):
                representatives[row.story_number] = row

        return [
            StoryCandidate(
                item_id=row.id,
                story_number=row.story_number,
                title=row.title,
                content=row.content or "",
                is_leader=bool(row.is_story_leader),
            )
            for row in representatives.values()
        ]

    def _prefilter(self, new_text: str, candidates: List[StoryCandidate]) -> List[StoryCandidate]:
        """Drop lexically unrelated candidates before spending inference calls."""
        if not self.prefilter_min_cosine or not candidates:
            return candidates

        scores = cosine_scores(new_text, [f"{candidate.title} {candidate.content}" for candidate in candidates])
        kept = [
            candidate for candidate, score in zip(candidates, scores)
            if score >= self.prefilter_min_cosine
        ]
        return kept[:self.prefilter_max_candidates]

    def _judge_similarity(self, new_text: str, candidate_text: str) -> Optional[float]:
        """
        Ask the model whether both texts report the same event.

        Returns confidence when same_story is true, 1 - confidence otherwise,
        or None when the judgment could not be obtained.
        """
        try:
            prompt = self._create_similarity_prompt(new_text, candidate_text)
            decision = self.llm_service.generate_json(prompt, SIMILARITY_OPTIONS)
            return self._parse_similarity(decision)
        except LLM_ERRORS as e:
            logger.warning(f"Similarity judgment failed, treating as no match: {e}")
            return None
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unusable similarity judgment, treating as no match: {e}")
            return None

    @staticmethod
    def _parse_similarity(decision: Dict[str, Any]) -> float:
        if "same_story" not in decision or "confidence" not in decision:
            raise KeyError("same_story and confidence are required")

        confidence = min(max(float(decision["confidence"]), 0.0), 1.0)
        same_story = decision["same_story"]
        if isinstance(same_story, str):
            same_story = same_story.strip().lower() == "true"

        return confidence if same_story else 1.0 - confidence

    def _create_similarity_prompt(self, new_text: str, candidate_text: str) -> str:
        """Create prompt for the same-story judgment"""
        return f"""You are a news editor deciding whether two reports cover the same real-world event.

Two reports describe the SAME STORY only when they share the core facts:
- the same people, organisations or groups
- the same place
- the same date or period
- the same action and outcome

Judge meaning only. Ignore wording, formatting, emojis, hashtags and truncated sentences.
Do not assume facts that are not stated. Reports about the same topic but a different
incident, match, session or announcement are DIFFERENT stories.

Mark is_breaking true for urgent, time-sensitive events (attacks, disasters, arrests,
resignations, emergencies, or wording such as "breaking", "just now", "today").

REPORT A:
<<<
{truncate(new_text, self.text_comparison_limit)}
>>>

REPORT B:
<<<
{truncate(candidate_text, self.text_comparison_limit)}
>>>

Respond with JSON only:
{{
    "same_story": true or false,
    "difference": integer 0-100 (how much the facts differ),
    "is_breaking": true or false,
    "confidence": float 0.0-1.0 (confidence in the same_story answer),
    "reasoning": "one short sentence"
}}"""

    def _find_leader_id(self, story_number: int) -> Optional[int]:
        leader = self.db.query(Item.id).filter(
            Item.story_number == story_number,
            Item.is_story_leader.is_(True),
            Item.is_deleted.is_(False),
        ).order_by(Item.id).first()
        if leader:
            return leader.id

        promoted = self.promote_leader(story_number)
        return promoted.id if promoted else None

    def _allocate_story_number(self, item: Optional[Item], reservation_key: Optional[str] = None) -> int:
        """
        Allocate max(existing) + 1 and record it in the same transaction as the
        sequence bump: on the item when one is given, otherwise as a reservation.
        """
        with _allocation_lock:
            for attempt in range(2):
                try:
                    if reservation_key is not None:
                        reserved = self.db.get(StoryReservation, reservation_key)
                        if reserved is not None:
                            logger.info(f"Reusing reserved story #{reserved.story_number}")
                            return reserved.story_number

                    sequence = self.db.query(StorySequence).filter(
                        StorySequence.name == STORY_SEQUENCE_NAME
                    ).with_for_update().one_or_none()

                    if sequence is None:
                        sequence = StorySequence(name=STORY_SEQUENCE_NAME, last_value=0)
                        self.db.add(sequence)
                        self.db.flush()

                    max_item = self.db.query(func.max(Item.story_number)).scalar() or 0
                    max_canonical = self.db.query(func.max(CanonicalContent.story_number)).scalar() or 0
                    story_number = max(sequence.last_value or 0, max_item, max_canonical) + 1

                    sequence.last_value = story_number
                    if item is not None:
                        item.story_number = story_number
                        item.is_story_leader = True
                        item.parent_id = None
                    if reservation_key is not None:
                        self.db.add(StoryReservation(content_hash=reservation_key, story_number=story_number))

                    self.db.commit()
                    return story_number

                except IntegrityError as e:
                    # Another process created the sequence or reservation row first
                    self.db.rollback()
                    if attempt == 0:
                        logger.info(f"Story allocation raced another writer, retrying: {e}")
                        continue
                    raise
                except Exception:
                    self.db.rollback()
                    raise

    def promote_leader(self, story_number: int) -> Optional[Item]:
        """Make the oldest remaining item of a story its leader."""
        items = self.db.query(Item).filter(
            Item.story_number == story_number,
            Item.is_deleted.is_(False),
        ).order_by(Item.scraped_at.asc(), Item.id.asc()).all()

        if not items:
            return None

        leader = items[0]
        for item in items:
            item.is_story_leader = item.id == leader.id
            item.parent_id = None if item.id == leader.id else leader.id
        self.db.commit()

        logger.info(f"👑 Item {leader.id} is now leader of story #{story_number}")
        return leader

    def soft_delete_item(self, item_id: int) -> bool:
        """Soft delete an item, handing story leadership to the next oldest item."""
        item = self.db.get(Item, item_id)
        if item is None or item.is_deleted:
            return False

        was_leader = bool(item.is_story_leader)
        item.is_deleted = True
        item.deleted_at = datetime.now(timezone.utc)
        item.is_story_leader = False
        self.db.commit()

        if was_leader and item.story_number is not None:
            self.promote_leader(item.story_number)
        return True
