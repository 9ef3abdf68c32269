"""
Telegram channel fetcher.

Reads the public web preview of a channel (https://t.me/s/<channel>), which
needs no API credentials. Album posts are returned as one RawItem per photo
sharing a group id; the first of them carries the caption.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

import requests
from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from radar.config_manager import get_worker_config
from radar.services.media_service import TelegramMedia
from radar.services.source_config import RawItem, SourceConfig, SourceCursor

logger = logging.getLogger(__name__)

BACKGROUND_URL_PATTERN = re.compile(r"url\(['\"]?(.*?)['\"]?\)")
MESSAGE_ID_PATTERN = re.compile(r"/(\d+)(?:\?.*)?$")


class TelegramService:
    BASE_URL = "https://t.me"

    def __init__(self, session: Optional[requests.Session] = None):
        config = get_worker_config()
        self.session = session or requests.Session()
        self.timeout = config.fetch_request_timeout
        self.user_agent = config.http_user_agent

    @staticmethod
    def message_url(username: str, message_id: int) -> str:
        return f"{TelegramService.BASE_URL}/{username}/{message_id}"

    def fetch(self, config: SourceConfig, cursor: SourceCursor) -> List[RawItem]:
        """Fetch posts newer than the cursor, oldest first, at most fetch_limit posts."""
        if config.telegram is None:
            raise ValueError("Telegram source is missing its 'telegram' config section")

        username = config.telegram.username.lstrip("@")
        params = {"after": cursor.last_message_id} if cursor.last_message_id else None

        response = self.session.get(
            f"{self.BASE_URL}/s/{username}",
            params=params,
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent},
        )
        response.raise_for_status()

        items = self.parse_channel_page(response.text, username)
        if cursor.last_message_id:
            items = [item for item in items if int(item.external_id) > cursor.last_message_id]
        if not config.telegram.include_forwards:
            items = [item for item in items if not item.is_forward]
        if not config.telegram.include_replies:
            items = [item for item in items if not item.is_reply]

        items.sort(key=lambda item: int(item.external_id))
        return self._limit_posts(items, config.common.fetch_limit)

    @staticmethod
    def _limit_posts(items: List[RawItem], fetch_limit: int) -> List[RawItem]:
        """Keep whole albums while bounding the number of posts."""
        limited: List[RawItem] = []
        posts = set()
        for item in items:
            key = item.group_id or item.external_id
            if key not in posts:
                if len(posts) >= fetch_limit:
                    break
                posts.add(key)
            limited.append(item)
        return limited

    def parse_channel_page(self, html: str, username: str) -> List[RawItem]:
        soup = BeautifulSoup(html, "html.parser")
        items: List[RawItem] = []

        for message in soup.select(".tgme_widget_message[data-post]"):
            if message.select_one(".tgme_widget_message_service"):
                continue

            try:
                message_id = int(message["data-post"].rsplit("/", 1)[-1])
            except (KeyError, ValueError):
                logger.debug(f"Skipping message without a numeric id in {username}")
                continue

            text_element = message.select_one(".tgme_widget_message_text")
            text = text_element.get_text(separator="\n").strip() if text_element else ""

            published_at = None
            time_element = message.select_one(".tgme_widget_message_date time")
            if time_element and time_element.get("datetime"):
                try:
                    published_at = date_parser.parse(time_element["datetime"]).astimezone(timezone.utc)
                except (ValueError, OverflowError):
                    published_at = None

            is_forward = message.select_one(".tgme_widget_message_forwarded_from") is not None
            is_reply = message.select_one(".tgme_widget_message_reply") is not None

            photos = message.select("a.tgme_widget_message_photo_wrap")
            if len(photos) > 1:
                group_id = f"{username}/{message_id}"
                for index, photo in enumerate(photos):
                    photo_id = self._photo_message_id(photo) or message_id + index
                    items.append(RawItem(
                        external_id=str(photo_id),
                        url=self.message_url(username, photo_id),
                        text=text if index == 0 else "",
                        published_at=published_at,
                        group_id=group_id,
                        is_forward=is_forward,
                        is_reply=is_reply,
                        media=self._photo_media(username, photo_id, photo),
                    ))
                continue

            media = []
            if photos:
                media = self._photo_media(username, message_id, photos[0])
            else:
                video = message.select_one("video.tgme_widget_message_video")
                if video and video.get("src"):
                    media = [TelegramMedia(username, message_id, video["src"], "video")]

            items.append(RawItem(
                external_id=str(message_id),
                url=self.message_url(username, message_id),
                text=text,
                published_at=published_at,
                is_forward=is_forward,
                is_reply=is_reply,
                media=media,
            ))

        return items

    @staticmethod
    def _photo_message_id(photo) -> Optional[int]:
        match = MESSAGE_ID_PATTERN.search(photo.get("href", ""))
        return int(match.group(1)) if match else None

    @staticmethod
    def _photo_media(username: str, message_id: int, photo) -> List[TelegramMedia]:
        match = BACKGROUND_URL_PATTERN.search(photo.get("style", ""))
        if not match:
            return []
        return [TelegramMedia(username, message_id, match.group(1), "photo")]

    @staticmethod
    def advance_cursor(cursor: SourceCursor, items: List[RawItem]) -> SourceCursor:
        ids = [int(item.external_id) for item in items]
        if cursor.last_message_id:
            ids.append(cursor.last_message_id)
        return SourceCursor(
            last_message_id=max(ids) if ids else None,
            last_item_id=cursor.last_item_id,
            last_fetched_at=datetime.now(timezone.utc).isoformat(),
        )
