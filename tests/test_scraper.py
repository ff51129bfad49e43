import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from errors import ScrapeTimeoutError
from scraper import BodyScraper, extract_article, is_timeout_error, needs_scraping

PARAGRAPH = (
    "Structured concurrency keeps every background task tied to a scope, so a failure in one "
    "branch cancels its siblings and the caller always sees the error. This article walks through "
    "task groups, cancellation scopes and the bugs they prevent in long running services. "
)

ARTICLE_HTML = f"""<html><head><title>Structured concurrency in practice</title>
<meta name="author" content="Jane Doe"><meta name="description" content="Why task groups matter."></head>
<body><nav><a href="/">Home</a> <a href="/about">About</a></nav>
<article><h1>Structured concurrency in practice</h1>
<p>{PARAGRAPH}</p><p>{PARAGRAPH}</p><p>{PARAGRAPH}</p><p>{PARAGRAPH}</p></article>
<footer>Copyright and cookie banner</footer></body></html>"""


class FakeBrowsers:
    def __init__(self):
        self.closed = 0

    async def close(self):
        self.closed += 1


class ScriptedScraper(BodyScraper):
    """Scraper whose page rendering is replaced by a per-mode script."""

    def __init__(self, db, outcomes, **kwargs):
        kwargs.setdefault("min_interval", 0)
        super().__init__(db, browsers=FakeBrowsers(), **kwargs)
        self.outcomes = outcomes
        self.renders = []

    async def _render(self, url, proxy_url):
        mode = "proxy" if proxy_url else "direct"
        self.renders.append(mode)
        outcome = self.outcomes[mode]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(), url
        return outcome, url


def test_scrape_threshold():
    assert needs_scraping({"link": "https://x.test/a", "text_snapshot": "x" * 150}) is True
    assert needs_scraping({"link": "https://x.test/a", "text_snapshot": "x" * 250}) is False
    assert needs_scraping({"link": "https://x.test/a", "text_snapshot": None}) is True
    assert needs_scraping({"link": None, "text_snapshot": ""}) is False


def test_timeout_classification():
    assert is_timeout_error(PlaywrightTimeoutError("Timeout 20000ms exceeded."))
    assert is_timeout_error(RuntimeError("net::ERR_TIMED_OUT"))
    assert is_timeout_error(RuntimeError("navigation timed out"))
    assert not is_timeout_error(RuntimeError("net::ERR_NAME_NOT_RESOLVED"))


def test_extract_article_isolates_body():
    article = extract_article(ARTICLE_HTML, "https://x.test/post")

    assert article is not None
    assert "task groups, cancellation scopes" in article.text_content
    assert "cookie banner" not in article.text_content
    assert article.byline == "Jane Doe"
    assert article.excerpt == "Why task groups matter."
    assert "Structured concurrency" in article.title


def test_extract_article_returns_none_for_empty_pages():
    assert extract_article("", "https://x.test/empty") is None
    assert extract_article("<html><body></body></html>", "https://x.test/empty") is None


@pytest.mark.asyncio
async def test_successful_scrape_returns_article(db):
    scraper = ScriptedScraper(db, {"direct": ARTICLE_HTML, "proxy": RuntimeError("unused")})

    article = await scraper.fetch_article_content("https://x.test/post")

    assert article is not None
    assert scraper.renders == ["direct"]


@pytest.mark.asyncio
async def test_timeout_retries_through_proxy(db, monkeypatch):
    monkeypatch.setenv("PROXY_URL", "http://proxy.test:3128")
    scraper = ScriptedScraper(db, {
        "direct": PlaywrightTimeoutError("Timeout 20000ms exceeded."),
        "proxy": ARTICLE_HTML,
    })

    article = await scraper.fetch_article_content("https://x.test/post")

    assert article is not None
    assert scraper.renders == ["direct", "proxy"]


@pytest.mark.asyncio
async def test_timeout_without_proxy_returns_none(db):
    scraper = ScriptedScraper(db, {"direct": PlaywrightTimeoutError("Timeout"), "proxy": ARTICLE_HTML})

    assert await scraper.fetch_article_content("https://x.test/post") is None
    assert scraper.renders == ["direct"]


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(db, monkeypatch):
    monkeypatch.setenv("PROXY_URL", "http://proxy.test:3128")
    scraper = ScriptedScraper(db, {"direct": RuntimeError("net::ERR_CONNECTION_REFUSED"), "proxy": ARTICLE_HTML})

    assert await scraper.fetch_article_content("https://x.test/post") is None
    assert scraper.renders == ["direct"]


@pytest.mark.asyncio
async def test_task_timeout_raises(db):
    async def hang():
        await asyncio.sleep(10)

    scraper = ScriptedScraper(db, {"direct": hang, "proxy": ARTICLE_HTML}, task_timeout=0.05)

    with pytest.raises(ScrapeTimeoutError):
        await scraper.fetch_article_content("https://x.test/slow")
    assert scraper.queue_status() == {"pending": 0, "running": 0}


@pytest.mark.asyncio
async def test_concurrency_is_capped(db):
    active = 0
    peak = 0

    async def render():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return ARTICLE_HTML

    scraper = ScriptedScraper(db, {"direct": render, "proxy": ARTICLE_HTML}, concurrency=2)

    async def scrape(i):
        return await scraper.fetch_article_content(f"https://x.test/{i}")

    results = await asyncio.gather(*(scrape(i) for i in range(5)))

    assert peak == 2
    assert all(r is not None for r in results)


@pytest.mark.asyncio
async def test_fetch_batch_maps_failures_to_none(db):
    async def hang():
        await asyncio.sleep(10)

    scraper = ScriptedScraper(db, {"direct": hang, "proxy": ARTICLE_HTML}, task_timeout=0.05)

    results = await scraper.fetch_batch(["https://x.test/a", "https://x.test/b"])

    assert results == {"https://x.test/a": None, "https://x.test/b": None}


@pytest.mark.asyncio
async def test_close_releases_browsers(db):
    scraper = ScriptedScraper(db, {"direct": ARTICLE_HTML, "proxy": ARTICLE_HTML})
    await scraper.close()
    assert scraper.browsers.closed == 1
