"""
Media extraction for ingested items.

A post contributes at most one media file: the first attachment whose type
the source allows. Images must arrive in the accepted format (JPEG) and are
re-encoded (WebP) before upload. The metadata row is written only after the
upload succeeded.
"""

import logging
from dataclasses import dataclass
from functools import singledispatch
from io import BytesIO
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import requests
from PIL import Image, UnidentifiedImageError
from sqlalchemy.orm import Session

from radar.config_manager import get_worker_config
from radar.models import Item, Media
from radar.services.storage_service import StorageService

logger = logging.getLogger(__name__)

OUTPUT_EXTENSIONS = {"WEBP": "webp", "JPEG": "jpg", "PNG": "png"}


class MediaRejectedError(ValueError):
    """The downloaded bytes are not an image in the accepted format."""


@dataclass(frozen=True)
class TelegramMedia:
    """Attachment of a public channel post, served from the Telegram CDN."""
    channel: str
    message_id: int
    url: str
    media_type: str = "photo"

    @property
    def source_url(self) -> str:
        return self.url


@dataclass(frozen=True)
class UrlMedia:
    url: str
    media_type: str = "photo"

    @property
    def source_url(self) -> str:
        return self.url


@dataclass(frozen=True)
class AdapterMedia:
    """Media fetched through a source-specific adapter exposing fetch_media(reference) -> bytes."""
    adapter: Any
    reference: str
    media_type: str = "photo"

    @property
    def source_url(self) -> str:
        return self.reference


MediaSource = Union[TelegramMedia, UrlMedia, AdapterMedia]


def _http_get(url: str, timeout: int, headers: Optional[dict] = None) -> bytes:
    response = requests.get(url, timeout=timeout, headers=headers or {})
    response.raise_for_status()
    return response.content


@singledispatch
def download(media, timeout: int = 30) -> bytes:
    raise TypeError(f"Unsupported media source: {type(media).__name__}")


@download.register
def _download_telegram(media: TelegramMedia, timeout: int = 30) -> bytes:
    headers = {
        "Referer": f"https://t.me/{media.channel}/{media.message_id}",
        "User-Agent": get_worker_config().http_user_agent,
    }
    return _http_get(media.url, timeout, headers)


@download.register
def _download_url(media: UrlMedia, timeout: int = 30) -> bytes:
    return _http_get(media.url, timeout, {"User-Agent": get_worker_config().http_user_agent})


@download.register
def _download_adapter(media: AdapterMedia, timeout: int = 30) -> bytes:
    return media.adapter.fetch_media(media.reference)


class MediaService:
    def __init__(self, db_session: Session, storage_service: Optional[StorageService] = None,
                 downloader: Callable[..., bytes] = download):
        config = get_worker_config()
        self.db = db_session
        self._storage_service = storage_service
        self.downloader = downloader
        self.accepted_format = config.media_accepted_format.upper()
        self.output_format = config.media_output_format.upper()
        self.output_quality = config.media_output_quality
        self.download_timeout = config.media_download_timeout
        self.max_bytes = config.media_max_bytes

    @property
    def storage_service(self) -> StorageService:
        if self._storage_service is None:
            self._storage_service = StorageService()
        return self._storage_service

    def handle_media(self, item: Item, media: Sequence[MediaSource], include: bool = True,
                     download_files: bool = True, allowed_types: Optional[List[str]] = None) -> Optional[Media]:
        """
        Store the first allowed attachment of a post.

        Returns the Media row, or None when nothing was stored.
        """
        if not include or not media:
            return None

        allowed = set(allowed_types or ["photo"])
        candidate = next((entry for entry in media if entry.media_type in allowed), None)
        if candidate is None:
            logger.info(f"No allowed media for item {item.id} (allowed: {sorted(allowed)})")
            return None

        if not download_files:
            return self._save_metadata(item, candidate.media_type, candidate.source_url, None, None, None, None, None)

        if candidate.media_type != "photo":
            logger.info(f"Skipping {candidate.media_type} for item {item.id}: only images are downloaded")
            return None

        try:
            data = self.downloader(candidate, timeout=self.download_timeout)
        except Exception as e:
            logger.warning(f"⚠️ Media download failed for item {item.id} ({candidate.source_url}): {e}")
            return None

        try:
            encoded, width, height = self.normalize_image(data)
        except MediaRejectedError as e:
            logger.warning(f"⚠️ Media rejected for item {item.id}: {e}")
            return None

        extension = OUTPUT_EXTENSIONS.get(self.output_format, self.output_format.lower())
        mime_type = f"image/{extension if extension != 'jpg' else 'jpeg'}"

        try:
            url = self.storage_service.upload_media(item.id, encoded, extension, mime_type)
        except Exception as e:
            logger.error(f"❌ Media upload failed for item {item.id}, no media row written: {e}")
            return None

        return self._save_metadata(
            item,
            candidate.media_type,
            url,
            StorageService.media_path(item.id, extension),
            mime_type,
            len(encoded),
            width,
            height,
        )

    def normalize_image(self, data: bytes) -> Tuple[bytes, int, int]:
        """Check the source format and re-encode. Returns (bytes, width, height)."""
        if not data:
            raise MediaRejectedError("Empty download")
        if len(data) > self.max_bytes:
            raise MediaRejectedError(f"File too large ({len(data)} bytes)")

        try:
            with Image.open(BytesIO(data)) as image:
                if (image.format or "").upper() != self.accepted_format:
                    raise MediaRejectedError(f"Unsupported image format {image.format}, expected {self.accepted_format}")

                converted = image.convert("RGB")
                output = BytesIO()
                converted.save(output, format=self.output_format, quality=self.output_quality)
                return output.getvalue(), converted.width, converted.height
        except UnidentifiedImageError as e:
            raise MediaRejectedError("Not a decodable image") from e

    def _save_metadata(self, item: Item, media_type: str, url: str, storage_path: Optional[str],
                       mime_type: Optional[str], file_size: Optional[int], width: Optional[int],
                       height: Optional[int]) -> Media:
        try:
            row = Media(
                item_id=item.id,
                media_type=media_type,
                url=url,
                storage_path=storage_path,
                mime_type=mime_type,
                file_size=file_size,
                width=width,
                height=height,
            )
            self.db.add(row)
            self.db.commit()
            logger.info(f"🖼️ Saved {media_type} for item {item.id}")
            return row
        except Exception as e:
            logger.error(f"Failed to save media metadata for item {item.id}: {e}")
            self.db.rollback()
            raise
