"""
Article Content Fetcher Service - Downloads article pages and extracts their main text
Uses requests for fetching with timeout, trafilatura for extraction
"""
import logging
from typing import Optional

import requests
import trafilatura

from radar.config_manager import get_worker_config

logger = logging.getLogger(__name__)


class ArticleContentService:
    def __init__(self, session: Optional[requests.Session] = None, min_length: int = 100):
        config = get_worker_config()
        self.session = session or requests.Session()
        self.timeout_seconds = config.fetch_request_timeout
        self.user_agent = config.http_user_agent
        self.min_length = min_length

    def fetch_html(self, url: str) -> str:
        """Download a page. Raises requests.RequestException on failure."""
        logger.info(f"Fetching article page: {url}")
        response = self.session.get(url, timeout=self.timeout_seconds, headers={'User-Agent': self.user_agent})
        response.raise_for_status()
        return response.text

    def extract_text(self, html: str) -> Optional[str]:
        """
        Extract the main article text from a page.

        Returns None when nothing article-like is found.
        """
        if not html:
            return None

        # include_comments=False drops comment sections, include_links=False navigation links
        extracted_text = trafilatura.extract(
            html,
            include_comments=False,
            include_tables=True,
            include_links=False,
            output_format='txt'
        )

        if not extracted_text or len(extracted_text.strip()) < self.min_length:
            logger.warning("Extracted text too short or empty")
            return None
        return extracted_text.strip()

