#!/usr/bin/env python3
"""
Best-effort full-text extraction for articles whose feed body is too thin.

Pages are rendered in a headless browser (``browser.BrowserManager``) with human-like
pacing, then readability isolates the main article body. A shared queue admits a
bounded number of concurrent sessions, spaces session launches apart and enforces a
per-task time budget. Timeouts on the direct browser are retried once through the
proxy browser when a proxy is configured.
"""

from asyncio import Semaphore, TimeoutError, gather, get_running_loop, sleep, wait_for
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import random
import re

from bs4 import BeautifulSoup
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from readability import Document

from browser import BrowserManager
from config import config, get_logger, get_setting
from errors import ScrapeTimeoutError
from telemetry import trace_span
from utils import RateLimiter, html_to_plain_text, truncate_string

logger = get_logger("scraper")

TIMEOUT_PATTERN = re.compile(r"timeout|timed[ _]out", re.IGNORECASE)


@dataclass
class ScrapedArticle:
    title: str
    html_content: str
    text_content: str
    byline: Optional[str] = None
    excerpt: Optional[str] = None


def needs_scraping(article: Dict[str, Any], min_length: Optional[int] = None) -> bool:
    """True when the article has a link and no usable snapshot yet."""
    if not article.get("link"):
        return False
    threshold = config.MIN_SNAPSHOT_LENGTH if min_length is None else min_length
    snapshot = article.get("text_snapshot") or ""
    return len(snapshot) <= threshold


def is_timeout_error(error: BaseException) -> bool:
    return isinstance(error, (PlaywrightTimeoutError, TimeoutError)) or bool(TIMEOUT_PATTERN.search(str(error)))


def extract_article(html: str, url: Optional[str] = None) -> Optional[ScrapedArticle]:
    """Run readability over rendered HTML. Returns None when no article body is found."""
    if not html or not html.strip():
        return None
    try:
        doc = Document(html, url=url)
        content_html = doc.summary(html_partial=True)
        title = doc.short_title() or doc.title() or ""
    except Exception as e:
        logger.debug(f"Readability could not parse {url}: {e}")
        return None

    text = html_to_plain_text(content_html, base_url=url)
    if not text:
        return None

    soup = BeautifulSoup(html, "html.parser")
    return ScrapedArticle(
        title=title.strip(),
        html_content=content_html,
        text_content=text,
        byline=_find_byline(soup),
        excerpt=_find_excerpt(soup, text),
    )


def _meta_content(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return str(tag["content"]).strip() or None
    return None


def _find_byline(soup: BeautifulSoup) -> Optional[str]:
    byline = _meta_content(soup, name="author") or _meta_content(soup, property="article:author")
    if byline:
        return byline
    node = soup.find(attrs={"rel": "author"}) or soup.find(class_=re.compile(r"\b(byline|author)\b", re.I))
    if node:
        text = node.get_text(" ", strip=True)
        return text or None
    return None


def _find_excerpt(soup: BeautifulSoup, text: str) -> Optional[str]:
    excerpt = _meta_content(soup, name="description") or _meta_content(soup, property="og:description")
    if excerpt:
        return excerpt
    first_paragraph = next((p.strip() for p in text.split("\n\n") if p.strip()), "")
    return truncate_string(first_paragraph, 200) or None


class BodyScraper:
    """Rate-limited, bounded-concurrency page scraper."""

    def __init__(
        self,
        db,
        browsers: Optional[BrowserManager] = None,
        *,
        concurrency: Optional[int] = None,
        min_interval: Optional[float] = None,
        task_timeout: Optional[float] = None,
        navigation_timeout: Optional[float] = None,
        pre_delay: Tuple[float, float] = (1.0, 3.0),
        post_delay: Tuple[float, float] = (0.5, 1.5),
    ) -> None:
        self.db = db
        self.browsers = browsers or BrowserManager()
        self.task_timeout = task_timeout or config.SCRAPER_TASK_TIMEOUT
        self.navigation_timeout = navigation_timeout or config.SCRAPER_NAVIGATION_TIMEOUT
        self.pre_delay = pre_delay
        self.post_delay = post_delay
        self._semaphore = Semaphore(concurrency or config.SCRAPER_CONCURRENCY)
        self._launch_limiter = RateLimiter(
            min_interval=config.SCRAPER_MIN_INTERVAL if min_interval is None else min_interval
        )
        self._pending = 0
        self._running = 0

    def queue_status(self) -> Dict[str, int]:
        return {"pending": self._pending, "running": self._running}

    @trace_span("scraper.fetch_article_content", tracer_name="scraper", attr_from_args=lambda self, url: {"http.url": url})
    async def fetch_article_content(self, url: str) -> Optional[ScrapedArticle]:
        """Scrape one URL. None means "nothing usable, keep existing content".

        Raises:
            ScrapeTimeoutError: the task exceeded its overall time budget.
        """
        self._pending += 1
        admitted = False
        try:
            async with self._semaphore:
                self._pending -= 1
                admitted = True
                await self._launch_limiter.acquire()
                self._running += 1
                try:
                    return await wait_for(self._scrape(url), timeout=self.task_timeout)
                except TimeoutError as e:
                    raise ScrapeTimeoutError(f"Scraping {url} exceeded {self.task_timeout:.0f}s") from e
                finally:
                    self._running -= 1
        finally:
            if not admitted:
                self._pending -= 1

    async def fetch_batch(self, urls: List[str]) -> Dict[str, Optional[ScrapedArticle]]:
        """Scrape several URLs through the shared queue; failures map to None."""
        outcomes = await gather(*(self.fetch_article_content(u) for u in urls), return_exceptions=True)
        results: Dict[str, Optional[ScrapedArticle]] = {}
        for url, outcome in zip(urls, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Scrape failed for {url}: {outcome}")
                results[url] = None
            else:
                results[url] = outcome
        return results

    async def close(self) -> None:
        await self.browsers.close()

    async def _scrape(self, url: str) -> Optional[ScrapedArticle]:
        try:
            return await self._scrape_once(url, None)
        except Exception as e:
            if not is_timeout_error(e):
                logger.warning(f"Scrape failed for {url}: {e}")
                return None
            proxy_url = await get_setting(self.db, "proxy_url")
            if not proxy_url:
                logger.warning(f"Scrape timed out for {url} and no proxy is configured")
                return None
            logger.info(f"Scrape timed out for {url}; retrying through proxy browser")

        try:
            return await self._scrape_once(url, proxy_url)
        except Exception as e:
            logger.warning(f"Proxy scrape failed for {url}: {e}")
            return None

    async def _scrape_once(self, url: str, proxy_url: Optional[str]) -> Optional[ScrapedArticle]:
        html, final_url = await self._render(url, proxy_url)
        return await get_running_loop().run_in_executor(None, extract_article, html, final_url or url)

    async def _render(self, url: str, proxy_url: Optional[str]) -> Tuple[str, str]:
        """Load ``url`` in a fresh browser context and return (html, final_url)."""
        await sleep(random.uniform(*self.pre_delay))
        context = await self.browsers.new_context(proxy_url)
        try:
            page = await context.new_page()
            await page.goto(url, wait_until="networkidle", timeout=self.navigation_timeout * 1000)
            await sleep(random.uniform(*self.post_delay))
            return await page.content(), page.url
        finally:
            await context.close()
