from __future__ import annotations

import asyncio
import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from src.config import get_settings

MAX_STORED_TEXT = 20000  # chars kept as change-detection baseline
_WHITESPACE = re.compile(r"\s+")


@dataclass
class JobResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    execution_time: int = 0  # ms
    changes_detected: bool = False
    retry_count: int = 0


class ScrapingError(Exception):
    pass


class WebScraper:
    """Fetches a competitor page and compares it with the last snapshot."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        retry_base_delay: float = 1.0,
    ):
        settings = get_settings()
        self.user_agent = settings.scraper_user_agent
        self.timeout = settings.scraper_timeout_seconds
        self.max_retries = settings.scraper_max_retries
        self.retry_base_delay = retry_base_delay
        self._client = client
        self._owns_client = client is None
        self._robots_cache: Dict[str, Optional[RobotFileParser]] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def can_scrape(self, url: str) -> bool:
        """robots.txt 檢查；無法取得 robots.txt 時允許"""
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"

        if origin not in self._robots_cache:
            robots_url = f"{origin}/robots.txt"
            try:
                resp = await self.client.get(robots_url)
            except httpx.RequestError as e:
                logger.warning(f"Could not fetch robots.txt for {url}: {e}")
                return True

            if resp.status_code >= 400:
                self._robots_cache[origin] = None
            else:
                parser = RobotFileParser(robots_url)
                parser.parse(resp.text.splitlines())
                self._robots_cache[origin] = parser

        parser = self._robots_cache[origin]
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, url)

    async def fetch(self, url: str) -> str:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = await self.client.get(url)
                resp.raise_for_status()
                return resp.text
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise ScrapingError(f"HTTP {e.response.status_code} for {url}") from e
                last_error = e
            except httpx.RequestError as e:
                last_error = e

            logger.warning(
                f"Attempt {attempt + 1}/{self.max_retries} failed for {url}: {last_error}"
            )
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_base_delay * 2**attempt)

        raise ScrapingError(
            f"Failed to fetch {url} after {self.max_retries} attempts: {last_error}"
        )

    @staticmethod
    def extract_text(html: str, selectors: Optional[List[str]] = None) -> str:
        soup = BeautifulSoup(html, "lxml")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        chunks: List[str] = []
        for selector in selectors or []:
            chunks.extend(el.get_text(" ", strip=True) for el in soup.select(selector))

        if not chunks:
            root = soup.body or soup
            chunks = [root.get_text(" ", strip=True)]

        return _WHITESPACE.sub(" ", " ".join(chunks)).strip()

    @staticmethod
    def change_percentage(previous: str, current: str) -> float:
        if previous == current:
            return 0.0
        ratio = SequenceMatcher(None, previous.split(), current.split()).ratio()
        return round((1 - ratio) * 100, 2)

    async def scrape(
        self,
        url: str,
        config: Optional[Dict[str, Any]] = None,
        previous: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Scrape a page and diff it against the previous snapshot.

        Args:
            url: Page to fetch.
            config: Job config (selectors, changeDetection, respectRobotsTxt).
            previous: ``data`` of the last successful result, if any.

        Returns:
            Snapshot dict; ``changes_detected`` is True when the change
            percentage reaches the configured threshold.

        Raises:
            ScrapingError: Disallowed by robots.txt or the fetch failed.
        """
        config = config or {}
        if config.get("respectRobotsTxt") and not await self.can_scrape(url):
            raise ScrapingError("Scraping not allowed by robots.txt")

        html = await self.fetch(url)

        selectors: List[str] = []
        for group in (config.get("selectors") or {}).values():
            selectors.extend(group)
        text = self.extract_text(html, selectors)
        content_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()

        detection = config.get("changeDetection") or {}
        threshold = detection.get("threshold", 5)
        change_pct = 0.0
        changes_detected = False
        if previous and previous.get("content_hash") not in (None, content_hash):
            change_pct = self.change_percentage(
                previous.get("text", ""), text[:MAX_STORED_TEXT]
            )
            changes_detected = detection.get("enabled", True) and change_pct >= threshold

        title_match = re.search(r"<title[^>]*>(.*?)</title>", html, re.IGNORECASE | re.DOTALL)
        return {
            "url": url,
            "title": title_match.group(1).strip() if title_match else None,
            "content_hash": content_hash,
            "text": text[:MAX_STORED_TEXT],
            "change_percentage": change_pct,
            "changes_detected": bool(changes_detected),
            "scraped_at": datetime.now(timezone.utc).isoformat(),
        }
