"""
Website fetcher: RSS feeds when configured, otherwise a listing page.

Article pages are parsed with the source's CSS selectors; when those find no
body text, trafilatura extraction is used instead.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urljoin

import feedparser
import requests
from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from radar.config_manager import get_worker_config
from radar.services.article_content_service import ArticleContentService
from radar.services.media_service import UrlMedia
from radar.services.source_config import RawItem, SourceConfig, SourceCursor, WebsiteConfig

logger = logging.getLogger(__name__)


class WebsiteService:
    def __init__(self, session: Optional[requests.Session] = None,
                 article_content_service: Optional[ArticleContentService] = None):
        config = get_worker_config()
        self.session = session or requests.Session()
        self.article_content_service = article_content_service or ArticleContentService(self.session)
        self.timeout = config.fetch_request_timeout
        self.user_agent = config.http_user_agent

    def fetch(self, config: SourceConfig, cursor: SourceCursor) -> List[RawItem]:
        """Newest articles first, stopping at the first url seen on the previous run."""
        website = config.website
        if website is None:
            raise ValueError("Website source is missing its 'website' config section")

        limit = config.common.fetch_limit
        if website.rss_feeds:
            links = self._links_from_rss(website, limit)
        elif website.listing_selector:
            links = self._links_from_listing(website, limit)
        else:
            raise ValueError(f"Website source {website.base_url} has neither rss_feeds nor listing_selector")

        items: List[RawItem] = []
        for link in links:
            if cursor.last_item_id and link["url"] == cursor.last_item_id:
                break

            try:
                items.append(self._scrape_article(link, website))
            except requests.RequestException as e:
                logger.warning(f"⚠️ Failed to scrape {link['url']}: {e}")

        logger.info(f"Fetched {len(items)} articles from {website.base_url}")
        return items

    def _get(self, url: str) -> requests.Response:
        response = self.session.get(url, timeout=self.timeout, headers={"User-Agent": self.user_agent})
        response.raise_for_status()
        return response

    def _links_from_rss(self, website: WebsiteConfig, limit: int) -> List[dict]:
        links: List[dict] = []
        seen = set()

        for feed_url in website.rss_feeds:
            try:
                feed = feedparser.parse(self._get(feed_url).content)
            except requests.RequestException as e:
                logger.error(f"❌ Failed to fetch RSS {feed_url}: {e}")
                continue

            for entry in feed.entries:
                url = entry.get("link") or entry.get("id")
                if not url or url in seen:
                    continue
                seen.add(url)

                summary = entry.get("summary") or ""
                images = [media.get("url") for media in entry.get("media_content", []) if media.get("url")]
                images += [
                    enclosure.get("href") for enclosure in entry.get("enclosures", [])
                    if enclosure.get("href") and enclosure.get("type", "").startswith("image/")
                ]
                links.append({
                    "url": url,
                    "title": entry.get("title"),
                    "summary": BeautifulSoup(summary, "html.parser").get_text(" ").strip() if summary else "",
                    "published": entry.get("published") or entry.get("updated"),
                    "images": images,
                })
                if len(links) >= limit:
                    return links

        return links

    def _links_from_listing(self, website: WebsiteConfig, limit: int) -> List[dict]:
        listing_url = urljoin(website.base_url.rstrip("/") + "/", (website.listing_path or "").lstrip("/"))
        logger.info(f"🔍 Fetching listing: {listing_url}")

        soup = BeautifulSoup(self._get(listing_url).text, "html.parser")
        links: List[dict] = []
        seen = set()
        for anchor in soup.select(website.listing_selector):
            href = anchor.get("href")
            if not href:
                continue
            url = urljoin(listing_url, href)
            if url in seen:
                continue
            seen.add(url)
            links.append({"url": url, "title": None, "summary": "", "published": None, "images": []})
            if len(links) >= limit:
                break
        return links

    def _scrape_article(self, link: dict, website: WebsiteConfig) -> RawItem:
        url = link["url"]
        html = self.article_content_service.fetch_html(url)
        soup = BeautifulSoup(html, "html.parser")
        selectors = website.article_selectors

        for selector in selectors.remove:
            for element in soup.select(selector):
                element.decompose()

        title = self._first_text(soup, selectors.title) or link.get("title") or ""
        content = self._first_text(soup, selectors.content, separator="\n")
        if not content:
            content = self.article_content_service.extract_text(html) or link.get("summary") or ""

        published_at = self._parse_date(self._first_date(soup, selectors.publish_date) or link.get("published"))

        images = []
        for selector in selectors.images:
            for image in soup.select(selector):
                src = image.get("src") or image.get("data-src")
                if src:
                    images.append(urljoin(url, src))
        images = images or link.get("images") or []

        return RawItem(
            external_id=url,
            url=url,
            text=content,
            title=title.strip() or None,
            published_at=published_at,
            media=[UrlMedia(image_url, "photo") for image_url in images],
        )

    @staticmethod
    def _first_text(soup: BeautifulSoup, selectors: List[str], separator: str = " ") -> str:
        for selector in selectors:
            element = soup.select_one(selector)
            if element:
                text = element.get_text(separator=separator).strip()
                if text:
                    return text
        return ""

    @staticmethod
    def _first_date(soup: BeautifulSoup, selectors: List[str]) -> Optional[str]:
        for selector in selectors:
            element = soup.select_one(selector)
            if element:
                value = element.get("datetime") or element.get("content") or element.get_text().strip()
                if value:
                    return value
        return None

    @staticmethod
    def _parse_date(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            parsed = date_parser.parse(value, fuzzy=True)
        except (ValueError, OverflowError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    @staticmethod
    def advance_cursor(cursor: SourceCursor, items: List[RawItem]) -> SourceCursor:
        return SourceCursor(
            last_message_id=cursor.last_message_id,
            last_item_id=items[0].url if items else cursor.last_item_id,
            last_fetched_at=datetime.now(timezone.utc).isoformat(),
        )
