from datetime import datetime, timezone

import feedparser
import pytest

from errors import FetchError
from fetch_mode import FetchModeSelector
from fetcher import FeedFetcher, format_db_timestamp


RSS_TWO_ITEMS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>X Test</title><description>Test feed</description>
<item><guid>a1</guid><title>New post</title><link>https://x.test/a1</link>
<description>&lt;p&gt;Hello&lt;/p&gt;</description><pubDate>Mon, 17 Nov 2025 10:00:00 +0000</pubDate></item>
<item><guid>old</guid><title>Old post</title><link>https://x.test/old</link>
<description>Old body</description></item>
</channel></rss>"""


class StaticSelector(FetchModeSelector):
    """Serves fixed content through the real mode-selection path."""

    def __init__(self, db, content=None, error=None):
        super().__init__(db)
        self.content = content
        self.error = error

    async def _do_fetch(self, url, proxy_url):
        if self.error:
            raise self.error
        return self.content


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:
            raise AttributeError(item) from exc


@pytest.mark.asyncio
async def test_update_feed_counts_only_new_entries(db, feed):
    await db.execute('add_articles', articles=[{"feed_id": feed["id"], "guid": "old", "title": "Old post"}])
    fetcher = FeedFetcher(db, selector=StaticSelector(db, content=RSS_TWO_ITEMS))
    try:
        new_count = await fetcher.update_feed(feed)
    finally:
        await fetcher.close()

    stored = await db.execute('get_feed_by_id', feed_id=feed["id"])
    assert new_count == 1
    assert stored["last_fetched_at"] is not None
    assert stored["direct_success_count"] == 1
    assert await db.execute('count_articles', feed_id=feed["id"]) == 2


@pytest.mark.asyncio
async def test_refetching_unchanged_feed_inserts_nothing(db, feed):
    fetcher = FeedFetcher(db, selector=StaticSelector(db, content=RSS_TWO_ITEMS))
    try:
        assert await fetcher.update_feed(feed) == 2
        assert await fetcher.update_feed(feed) == 0
    finally:
        await fetcher.close()
    assert await db.execute('count_articles', feed_id=feed["id"]) == 2


@pytest.mark.asyncio
async def test_last_fetched_updates_even_without_new_entries(db, feed):
    empty = b'<?xml version="1.0"?><rss version="2.0"><channel><title>Empty</title></channel></rss>'
    fetcher = FeedFetcher(db, selector=StaticSelector(db, content=empty))
    try:
        assert await fetcher.update_feed(feed) == 0
    finally:
        await fetcher.close()
    assert (await db.execute('get_feed_by_id', feed_id=feed["id"]))["last_fetched_at"] is not None


@pytest.mark.asyncio
async def test_unparseable_feed_raises(db, feed):
    fetcher = FeedFetcher(db, selector=StaticSelector(db, content=b"this is not xml at all <<<"))
    try:
        with pytest.raises(FetchError):
            await fetcher.update_feed(feed)
    finally:
        await fetcher.close()


class PerFeedFetcher(FeedFetcher):
    async def update_feed(self, feed):
        if feed["name"] == "Broken":
            raise FetchError("Both direct and proxy connections failed for https://broken.test/rss")
        return 3


@pytest.mark.asyncio
async def test_update_all_feeds_records_errors_per_feed(db, feed):
    await db.execute('add_feed', name="Broken", url="https://broken.test/rss")
    await db.execute('add_feed', name="Working", url="https://ok.test/rss")
    fetcher = PerFeedFetcher(db)
    try:
        results = await fetcher.update_all_feeds()
    finally:
        await fetcher.close()

    assert results["Example"].new_count == 3
    assert results["Working"].error is None
    assert "Both direct and proxy" in results["Broken"].error


@pytest.mark.asyncio
async def test_detect_feed_info(db):
    fetcher = FeedFetcher(db, selector=StaticSelector(db, content=RSS_TWO_ITEMS))
    try:
        info = await fetcher.detect_feed_info("https://x.test/rss")
    finally:
        await fetcher.close()
    assert info == {"title": "X Test", "description": "Test feed"}


@pytest.mark.asyncio
async def test_detect_feed_info_returns_none_on_fetch_error(db):
    fetcher = FeedFetcher(db, selector=StaticSelector(db, error=FetchError("HTTP 404: Not Found")))
    try:
        assert await fetcher.detect_feed_info("https://x.test/missing") is None
    finally:
        await fetcher.close()


def test_guid_falls_back_to_link_then_title():
    fetcher = FeedFetcher(None)
    with_link = fetcher.normalize_entry(DummyEntry(link="https://x.test/p", title="Post"))
    title_only = fetcher.normalize_entry(DummyEntry(title="Only a title"))
    untitled = fetcher.normalize_entry(DummyEntry(id="urn:1"))
    fetcher.executor.shutdown(wait=False)

    assert with_link["guid"] == "https://x.test/p"
    assert title_only["guid"] == "Only a title"
    assert title_only["link"] is None
    assert untitled["title"] == "Untitled"


def test_content_prefers_rich_body():
    fetcher = FeedFetcher(None)
    entry = feedparser.FeedParserDict({
        "id": "1",
        "content": [{"value": "<p>Full body</p>"}],
        "summary": "Short",
    })
    assert fetcher.extract_content(entry) == "<p>Full body</p>"
    assert fetcher.extract_content(DummyEntry(summary="Short")) == "Short"
    assert fetcher.extract_content(DummyEntry(title="none")) == ""
    fetcher.executor.shutdown(wait=False)


def test_parse_date_without_weekday():
    fetcher = FeedFetcher(None)
    entry = DummyEntry(pubDate="17 Nov 2025 00:00:00 +0000", id="https://example.com/2025/11/17/post")

    timestamp = fetcher.parse_date_enhanced(entry)
    fetcher.executor.shutdown(wait=False)

    assert timestamp == int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())


def test_undated_entry_gets_current_time():
    fetcher = FeedFetcher(None)
    before = int(datetime.now(timezone.utc).timestamp())
    timestamp = fetcher.parse_date_enhanced(DummyEntry(title="undated"))
    fetcher.executor.shutdown(wait=False)
    assert timestamp >= before


def test_db_timestamp_matches_sqlite_format():
    ts = int(datetime(2025, 11, 17, 10, 0, 5, tzinfo=timezone.utc).timestamp())
    assert format_db_timestamp(ts) == "2025-11-17 10:00:05"
