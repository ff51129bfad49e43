#!/usr/bin/env python3
"""
RSS/Atom feed acquisition.

Fetches a feed through the fetch-mode selector, normalizes its entries and stores
them with insert-or-ignore semantics on (feed_id, guid), so re-fetching an unchanged
feed is a no-op. Parsing runs in a thread pool to keep the event loop responsive.
"""

from time import time
from asyncio import get_running_loop
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional
from dataclasses import dataclass
import re

import feedparser

from config import get_logger
from errors import FetchError
from fetch_mode import FetchModeSelector
from telemetry import trace_span

logger = get_logger("fetcher")

DATE_FIELDS = ('published', 'updated', 'created', 'modified', 'date', 'issued')


def format_db_timestamp(timestamp: float) -> str:
    """Render a Unix timestamp the way SQLite's datetime('now') does (UTC)."""
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class FeedUpdateResult:
    new_count: int = 0
    error: Optional[str] = None


class FeedFetcher:
    """Fetches feeds and stores their new entries."""

    def __init__(self, db, selector: Optional[FetchModeSelector] = None) -> None:
        self.db = db
        self.selector = selector or FetchModeSelector(db)
        self.executor = ThreadPoolExecutor(max_workers=4)

    async def initialize(self) -> None:
        await self.selector.initialize()

    async def close(self) -> None:
        await self.selector.close()
        self.executor.shutdown(wait=False)

    async def run_in_executor(self, func, *args) -> Any:
        return await get_running_loop().run_in_executor(self.executor, func, *args)

    @trace_span(
        "fetcher.update_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed: {"feed.id": int(feed.get("id") or 0), "feed.name": feed.get("name") or ""},
    )
    async def update_feed(self, feed: Dict[str, Any]) -> int:
        """Fetch one feed and store unseen entries.

        Returns:
            The number of articles actually inserted (duplicates are not counted).

        Raises:
            FetchError: the feed could not be downloaded or parsed.
        """
        content = await self.selector.fetch(feed["url"], feed=feed)
        parsed = await self.run_in_executor(feedparser.parse, content)

        entries = parsed.get('entries') or []
        if parsed.get('bozo') and not entries:
            raise FetchError(f"Could not parse feed {feed['url']}: {parsed.get('bozo_exception')}")
        if parsed.get('bozo'):
            logger.debug(f"Feed {feed.get('name')} parsed with warnings: {parsed.get('bozo_exception')}")

        articles = []
        for entry in entries:
            normalized = self.normalize_entry(entry)
            if not normalized["guid"]:
                logger.debug(f"Skipping entry without guid, link or title in {feed.get('name')}")
                continue
            normalized["feed_id"] = feed["id"]
            articles.append(normalized)

        new_count = await self.db.execute('add_articles', articles=articles)
        await self.db.execute('update_feed_fetch_time', feed_id=feed["id"])
        logger.info(f"Feed {feed.get('name')}: {len(articles)} entries, {new_count} new")
        return new_count

    async def update_all_feeds(self, feed_id: Optional[int] = None) -> Dict[str, FeedUpdateResult]:
        """Update every feed (or just ``feed_id``) one after another.

        A failing feed is recorded in its result and does not stop the others.
        """
        if feed_id is not None:
            feed = await self.db.execute('get_feed_by_id', feed_id=feed_id)
            if not feed:
                raise ValueError(f"Feed not found: {feed_id}")
            feeds = [feed]
        else:
            feeds = await self.db.execute('get_all_feeds')

        results: Dict[str, FeedUpdateResult] = {}
        for feed in feeds:
            try:
                results[feed["name"]] = FeedUpdateResult(new_count=await self.update_feed(feed))
            except Exception as e:
                logger.error(f"Failed to update feed {feed['name']}: {e}")
                results[feed["name"]] = FeedUpdateResult(error=str(e))
        return results

    async def detect_feed_info(self, url: str) -> Optional[Dict[str, str]]:
        """Fetch a candidate feed URL and return its title/description, or None."""
        try:
            content = await self.selector.fetch(url)
        except FetchError as e:
            logger.warning(f"Could not fetch {url}: {e}")
            return None
        parsed = await self.run_in_executor(feedparser.parse, content)
        channel = parsed.get('feed') or {}
        if not parsed.get('version') and not parsed.get('entries'):
            return None
        return {
            "title": (channel.get('title') or "").strip() or url,
            "description": (channel.get('subtitle') or channel.get('description') or "").strip(),
        }

    def normalize_entry(self, entry) -> Dict[str, Any]:
        """Map a feedparser entry to the stored article shape."""
        raw_title = (self._get_entry_value(entry, 'title') or "").strip()
        link = (self._get_entry_value(entry, 'link') or "").strip()
        guid = (self._get_entry_value(entry, 'id') or "").strip() or link or raw_title
        return {
            "guid": guid,
            "title": raw_title or "Untitled",
            "link": link or None,
            "content": self.extract_content(entry),
            "pub_date": format_db_timestamp(self.parse_date_enhanced(entry)),
        }

    def extract_content(self, entry) -> str:
        """Rich body (content:encoded) first, then summary/description, else empty."""
        for content_item in self._get_entry_value(entry, 'content') or []:
            value = content_item.get('value') if hasattr(content_item, 'get') else None
            if value:
                return value
        for field in ('summary', 'description'):
            value = self._get_entry_value(entry, field)
            if value:
                return value
        return ""

    def parse_date_enhanced(self, entry) -> int:
        """Best-effort publish timestamp; falls back to now so undated entries stay in the window."""
        for field in DATE_FIELDS:
            for key in (f"{field}_parsed", field):
                timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, key))
                if timestamp:
                    return timestamp

        entry_id = self._get_entry_value(entry, 'id') or self._get_entry_value(entry, 'link')
        if entry_id:
            match = re.search(r'(\d{4})[-/](\d{2})[-/](\d{2})', entry_id)
            if match:
                year, month, day = map(int, match.groups())
                if 1900 <= year <= 2100:
                    try:
                        return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())
                    except ValueError:
                        pass

        return int(time())

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with dict or attribute access."""
        if entry is None or not field:
            return None
        getter = getattr(entry, 'get', None)
        if callable(getter):
            try:
                value = getter(field)
            except (KeyError, TypeError):
                value = None
            if value is not None:
                return value
        return getattr(entry, field, None)

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        if value in (None, ''):
            return None
        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        if isinstance(value, (list, tuple)) or hasattr(value, 'tm_year'):
            # feedparser *_parsed values are UTC struct_time
            try:
                return int(datetime(*tuple(value)[:6], tzinfo=timezone.utc).timestamp())
            except (TypeError, ValueError, OverflowError):
                return None
        if isinstance(value, str):
            return self._parse_date_string(value)
        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return int(datetime(*time_struct[:6], tzinfo=timezone.utc).timestamp())
        except (ValueError, TypeError, AttributeError, OverflowError):
            pass
        try:
            dt = parsedate_to_datetime(date_str)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        except (TypeError, ValueError, OverflowError, IndexError):
            pass
        try:
            dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        except ValueError:
            return None
