import logging
import re
import threading
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from radar.models import Item, ItemStatus, Source
from radar.services.category_service import CategoryService
from radar.services.fusion_service import FusionResult, FusionService
from radar.services.llm_service import LLMService
from radar.services.media_service import MediaService
from radar.services.source_config import RawItem, SourceConfig, SourceCursor
from radar.services.story_service import StoryService
from radar.services.telegram_service import TelegramService
from radar.services.website_service import WebsiteService
from radar.text_utils import content_hash, generate_title, normalize_text

logger = logging.getLogger(__name__)


@dataclass
class SourceRunResult:
    source_id: int
    source_name: str
    total: int = 0
    saved: int = 0
    skipped: int = 0
    duplicates: int = 0
    media: int = 0
    processed: int = 0
    errors: int = 0
    aborted: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class IngestionPipeline:
    def __init__(self, db_session: Session, llm_service: Optional[LLMService] = None,
                 story_service: Optional[StoryService] = None, fusion_service: Optional[FusionService] = None,
                 category_service: Optional[CategoryService] = None, media_service: Optional[MediaService] = None,
                 fetchers: Optional[Dict] = None):
        self.db = db_session
        self.llm_service = llm_service or LLMService()
        self.category_service = category_service or CategoryService(db_session, self.llm_service)
        self.story_service = story_service or StoryService(db_session, self.llm_service)
        self.fusion_service = fusion_service or FusionService(db_session, self.llm_service, self.category_service)
        self.media_service = media_service or MediaService(db_session)
        self.fetchers = fetchers if fetchers is not None else {
            "telegram": TelegramService(),
            "website": WebsiteService(),
        }

    def run_source_type(self, source_type: str, stop_event: Optional[threading.Event] = None) -> List[SourceRunResult]:
        """Run one pass over every active source of a type, one source at a time"""
        sources = self.db.query(Source).filter(
            Source.source_type == source_type,
            Source.is_active.is_(True),
        ).order_by(Source.id).all()

        logger.info(f"📡 Starting {source_type} pass over {len(sources)} sources")

        results = []
        for source in sources:
            if stop_event is not None and stop_event.is_set():
                logger.info(f"🛑 Stop requested, skipping remaining {source_type} sources")
                break
            results.append(self.run_source(source, stop_event))
        return results

    def run_source(self, source: Source, stop_event: Optional[threading.Event] = None) -> SourceRunResult:
        """
        Fetch and process one batch for a source.

        The cursor is saved only when the whole batch went through, so an
        interrupted batch is fetched again on the next run.
        """
        result = SourceRunResult(source_id=source.id, source_name=source.name)

        try:
            config = SourceConfig.model_validate(source.config or {})
            cursor = SourceCursor.model_validate(source.cursor or {})

            fetcher = self.fetchers.get(source.source_type)
            if fetcher is None:
                raise ValueError(f"No fetcher registered for source type '{source.source_type}'")

            # Step 1: Finish items a previous run left behind
            self._resume_pending(source, config, result, stop_event)
            if result.aborted:
                return result

            # Step 2: Fetch the next batch
            raw_items = fetcher.fetch(config, cursor)
            groups = self.group_messages(raw_items)
            result.total = len(groups)
            logger.info(f"📥 {source.name}: {len(raw_items)} messages in {len(groups)} posts")

            # Step 3: Ingest post by post
            for group in groups:
                if stop_event is not None and stop_event.is_set():
                    result.aborted = True
                    logger.info(f"🛑 Stop requested, leaving cursor of {source.name} unchanged")
                    break
                try:
                    self._ingest_group(source, config, group, result)
                except Exception as e:
                    result.errors += 1
                    logger.error(f"❌ Failed to ingest message {group[0].external_id} from {source.name}: {str(e)}")
                    self.db.rollback()

            # Step 4: Advance the cursor after a complete batch
            if not result.aborted:
                self._save_cursor(source, fetcher.advance_cursor(cursor, raw_items))

        except Exception as e:
            logger.error(f"❌ Source {source.name} failed: {str(e)}")
            self.db.rollback()
            result.error = str(e)

        logger.info(
            f"📊 {source.name}: saved={result.saved} skipped={result.skipped} duplicates={result.duplicates} "
            f"media={result.media} processed={result.processed} errors={result.errors}"
        )
        return result

    @staticmethod
    def group_messages(raw_items: List[RawItem]) -> List[List[RawItem]]:
        """Group album parts by group id, keeping first-seen order."""
        groups: List[List[RawItem]] = []
        by_group_id: Dict[str, List[RawItem]] = {}

        for raw in raw_items:
            if raw.group_id is None:
                groups.append([raw])
            elif raw.group_id in by_group_id:
                by_group_id[raw.group_id].append(raw)
            else:
                by_group_id[raw.group_id] = [raw]
                groups.append(by_group_id[raw.group_id])
        return groups

    def _ingest_group(self, source: Source, config: SourceConfig, group: List[RawItem], result: SourceRunResult) -> None:
        main = next((raw for raw in group if raw.text and raw.text.strip()), group[0])
        media = [entry for raw in group for entry in raw.media]

        content_config = config.common.content
        media_config = config.common.media
        text = normalize_text(main.text, content_config.strip_urls, content_config.strip_emojis)
        has_media = media_config.include and bool(media)

        if self._matches_skip_pattern(f"{main.title or ''}\n{text}", content_config.skip_patterns):
            result.skipped += 1
            logger.info(f"⏭️ Skipping {main.external_id}: matches a skip pattern")
            return

        if len(text) < content_config.min_text_length and not has_media:
            result.skipped += 1
            logger.info(f"⏭️ Skipping {main.external_id}: text too short ({len(text)} chars)")
            return

        title = normalize_text(main.title, content_config.strip_urls, content_config.strip_emojis) if main.title else ""
        title = title or generate_title(text)
        digest = content_hash(text) if text else content_hash(main.url or main.external_id)

        if self.is_duplicate(main.url, digest):
            result.duplicates += 1
            logger.info(f"🔄 Duplicate skipped: {main.url or main.external_id}")
            return

        item = self._save_item(source, main, title, text, digest)
        if item is None:
            result.duplicates += 1
            return
        result.saved += 1

        if has_media:
            stored = self.media_service.handle_media(
                item,
                media,
                include=media_config.include,
                download_files=media_config.download,
                allowed_types=media_config.allowed_types,
            )
            if stored is not None:
                result.media += 1

        if config.common.ai.enabled:
            self.process_item(item, result, exclude_source_id=source.id if config.common.ai.exclude_own_source else None)
        else:
            item.status = ItemStatus.PROCESSED
            self.db.commit()

    @staticmethod
    def _matches_skip_pattern(text: str, patterns: List[str]) -> bool:
        for pattern in patterns:
            try:
                if re.search(pattern, text, re.IGNORECASE):
                    return True
            except re.error:
                if pattern.lower() in text.lower():
                    return True
        return False

    def is_duplicate(self, url: Optional[str], digest: str) -> bool:
        """Exact duplicate by URL or content hash among live items"""
        conditions = [Item.content_hash == digest]
        if url:
            conditions.append(Item.url == url)

        found = self.db.query(Item.id).filter(
            Item.is_deleted.is_(False),
            or_(*conditions),
        ).first()
        return found is not None

    def _save_item(self, source: Source, raw: RawItem, title: str, text: str, digest: str) -> Optional[Item]:
        try:
            item = Item(
                source_id=source.id,
                external_id=raw.external_id,
                title=title,
                content=text,
                content_hash=digest,
                url=raw.url,
                published_at=raw.published_at,
                status=ItemStatus.NEW,
            )
            self.db.add(item)
            self.db.commit()
            return item
        except IntegrityError as e:
            # Same URL or hash written by a concurrent pass or a soft-deleted row
            self.db.rollback()
            logger.info(f"🔄 Duplicate detected on insert for {raw.url or raw.external_id}: {e.orig}")
            return None

    def _resume_pending(self, source: Source, config: SourceConfig, result: SourceRunResult,
                        stop_event: Optional[threading.Event]) -> None:
        if not config.common.ai.enabled:
            return

        pending = self.db.query(Item).filter(
            Item.source_id == source.id,
            Item.is_deleted.is_(False),
            Item.status.in_([ItemStatus.NEW, ItemStatus.PROCESSING]),
        ).order_by(Item.id).all()

        if pending:
            logger.info(f"♻️ Resuming {len(pending)} unfinished items for {source.name}")

        exclude_source_id = source.id if config.common.ai.exclude_own_source else None
        for item in pending:
            if stop_event is not None and stop_event.is_set():
                result.aborted = True
                return
            self.process_item(item, result, exclude_source_id=exclude_source_id)

    def process_item(self, item: Item, result: Optional[SourceRunResult] = None,
                     exclude_source_id: Optional[int] = None) -> Optional[FusionResult]:
        """Group a stored item into a story and fuse it. Failures mark the item ERROR."""
        try:
            item.status = ItemStatus.PROCESSING
            self.db.commit()

            assignment = self.story_service.assign_story(
                item.title,
                item.content,
                exclude_source_id=exclude_source_id,
                item_id=item.id,
            )
            self.db.refresh(item)
            logger.info(f"Item {item.id} -> story #{assignment.story_number} ({'new' if assignment.is_new_story else 'existing'})")

            fusion = self.fusion_service.fuse(item)

            item.status = ItemStatus.PROCESSED
            item.error_message = None
            self.db.commit()
            if result is not None:
                result.processed += 1
            return fusion

        except Exception as e:
            logger.error(f"❌ Processing failed for item {item.id}: {str(e)}")
            self.db.rollback()
            item.status = ItemStatus.ERROR
            item.error_message = str(e)[:1000]
            self.db.commit()
            if result is not None:
                result.errors += 1
            return None

    def reprocess_item(self, item_id: int) -> Optional[FusionResult]:
        """Run grouping and fusion again for one stored item"""
        item = self.db.get(Item, item_id)
        if item is None or item.is_deleted:
            raise ValueError(f"Item {item_id} not found")
        return self.process_item(item)

    def _save_cursor(self, source: Source, cursor: SourceCursor) -> None:
        try:
            source.cursor = cursor.model_dump()
            self.db.commit()
        except Exception as e:
            logger.error(f"Failed to save cursor for {source.name}: {str(e)}")
            self.db.rollback()
            raise
