from __future__ import annotations

from typing import Dict, List

from radar.services.article_content_service import ArticleContentService
from radar.services.media_service import TelegramMedia, UrlMedia
from radar.services.source_config import SourceConfig, SourceCursor
from radar.services.telegram_service import TelegramService
from radar.services.website_service import WebsiteService

CHANNEL_PAGE = """
<html><body>
<div class="tgme_widget_message" data-post="chan/10">
  <div class="tgme_widget_message_text">Flood hits Phnom Penh<br>Heavy rain today.</div>
  <div class="tgme_widget_message_date"><time datetime="2024-05-01T08:00:00+07:00"></time></div>
</div>
<div class="tgme_widget_message" data-post="chan/11">
  <div class="tgme_widget_message_forwarded_from">Other channel</div>
  <div class="tgme_widget_message_text">Forwarded post</div>
</div>
<div class="tgme_widget_message" data-post="chan/12">
  <a class="tgme_widget_message_photo_wrap" href="https://t.me/chan/12" style="background-image:url('https://cdn/a.jpg')"></a>
  <a class="tgme_widget_message_photo_wrap" href="https://t.me/chan/13" style="background-image:url('https://cdn/b.jpg')"></a>
  <div class="tgme_widget_message_text">Album caption</div>
</div>
<div class="tgme_widget_message" data-post="chan/14">
  <div class="tgme_widget_message_service">Channel photo updated</div>
</div>
<div class="tgme_widget_message" data-post="chan/15">
  <video class="tgme_widget_message_video" src="https://cdn/clip.mp4"></video>
  <div class="tgme_widget_message_reply">In reply to</div>
  <div class="tgme_widget_message_text">Video reply</div>
</div>
</body></html>
"""


class _Response:
    def __init__(self, text: str = "", content: bytes = b""):
        self.text = text
        self.content = content or text.encode()

    def raise_for_status(self) -> None:
        return None


class _Session:
    def __init__(self, pages: Dict[str, str]):
        self.pages = pages
        self.requests: List[tuple] = []

    def get(self, url, params=None, timeout=None, headers=None):
        self.requests.append((url, params))
        return _Response(self.pages[url])


def test_parse_channel_page_extracts_posts_albums_and_flags() -> None:
    items = TelegramService(session=_Session({})).parse_channel_page(CHANNEL_PAGE, "chan")

    by_id = {item.external_id: item for item in items}
    assert sorted(by_id) == ["10", "11", "12", "13", "15"]

    first = by_id["10"]
    assert first.text == "Flood hits Phnom Penh\nHeavy rain today."
    assert first.url == "https://t.me/chan/10"
    assert first.published_at.isoformat() == "2024-05-01T01:00:00+00:00"

    assert by_id["11"].is_forward is True
    assert by_id["12"].group_id == by_id["13"].group_id == "chan/12"
    assert by_id["12"].text == "Album caption"
    assert by_id["13"].text == ""
    assert by_id["13"].media == [TelegramMedia("chan", 13, "https://cdn/b.jpg", "photo")]
    assert by_id["15"].is_reply is True
    assert by_id["15"].media[0].media_type == "video"


def test_fetch_filters_by_cursor_and_config() -> None:
    session = _Session({"https://t.me/s/chan": CHANNEL_PAGE})
    config = SourceConfig.model_validate({
        "telegram": {"username": "@chan", "include_forwards": False, "include_replies": False},
    })

    items = TelegramService(session=session).fetch(config, SourceCursor(last_message_id=10))

    assert [item.external_id for item in items] == ["12", "13"]
    assert session.requests[0] == ("https://t.me/s/chan", {"after": 10})


def test_fetch_limit_counts_albums_as_one_post() -> None:
    session = _Session({"https://t.me/s/chan": CHANNEL_PAGE})
    config = SourceConfig.model_validate({
        "common": {"fetch_limit": 2},
        "telegram": {"username": "chan", "include_forwards": True},
    })

    items = TelegramService(session=session).fetch(config, SourceCursor())

    assert [item.external_id for item in items] == ["10", "11"]


def test_telegram_cursor_moves_to_highest_id() -> None:
    items = TelegramService(session=_Session({})).parse_channel_page(CHANNEL_PAGE, "chan")

    cursor = TelegramService.advance_cursor(SourceCursor(last_message_id=3), items)

    assert cursor.last_message_id == 15
    assert cursor.last_fetched_at is not None
    assert TelegramService.advance_cursor(SourceCursor(last_message_id=20), []).last_message_id == 20


RSS_FEED = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example</title>
<item><title>Newest story</title><link>https://example.com/news/3</link>
<pubDate>Wed, 01 May 2024 10:00:00 GMT</pubDate><description>&lt;p&gt;Summary three&lt;/p&gt;</description></item>
<item><title>Middle story</title><link>https://example.com/news/2</link></item>
<item><title>Old story</title><link>https://example.com/news/1</link></item>
</channel></rss>
"""

ARTICLE_PAGE = """
<html><body>
<nav>Menu</nav>
<h1>Newest story headline</h1>
<time datetime="2024-05-01T10:00:00Z">May 1</time>
<article><p>First paragraph of the story.</p><script>track()</script><p>Second paragraph.</p></article>
<img class="hero" src="/img/hero.jpg">
</body></html>
"""


def test_website_fetch_stops_at_previous_first_url() -> None:
    pages = {
        "https://example.com/feed.xml": RSS_FEED,
        "https://example.com/news/3": ARTICLE_PAGE,
        "https://example.com/news/2": ARTICLE_PAGE,
    }
    session = _Session(pages)
    config = SourceConfig.model_validate({
        "website": {
            "base_url": "https://example.com",
            "rss_feeds": ["https://example.com/feed.xml"],
            "article_selectors": {"publish_date": ["time"], "images": ["img.hero"]},
        },
    })
    service = WebsiteService(session=session, article_content_service=ArticleContentService(session))

    items = service.fetch(config, SourceCursor(last_item_id="https://example.com/news/1"))

    assert [item.url for item in items] == ["https://example.com/news/3", "https://example.com/news/2"]
    newest = items[0]
    assert newest.title == "Newest story headline"
    assert "First paragraph" in newest.text
    assert "track()" not in newest.text
    assert newest.published_at.isoformat() == "2024-05-01T10:00:00+00:00"
    assert newest.media == [UrlMedia("https://example.com/img/hero.jpg", "photo")]

    cursor = WebsiteService.advance_cursor(SourceCursor(), items)
    assert cursor.last_item_id == "https://example.com/news/3"
