#!/usr/bin/env python3
"""
Pipelined acquisition and analysis across all feeds.

Each feed gets one task that holds an RSS-pool permit while it fetches the feed,
selects the articles to analyze and scrapes thin bodies inline. It then submits that
feed's batch to the LLM pool as its own task, so analysis of early feeds starts while
later feeds are still being fetched. The two pools are sized independently
(``RSS_CONCURRENCY`` / ``LLM_CONCURRENCY``).

Live counters live on ``PipelineStats``; the optional ``on_update`` observer is called
synchronously after every change and is the only coupling to whatever renders them.
"""

from asyncio import Semaphore, Task, create_task, gather
from dataclasses import dataclass, field
from time import time
from typing import Any, Callable, Dict, List, Optional

from analyzer import AnalysisProgress, ArticleAnalyzer, PHASE_SUMMARIZE
from config import config, get_llm_settings, get_logger
from errors import LLMNotConfiguredError, ScrapeTimeoutError
from fetcher import FeedFetcher
from llm_client import TokenUsage
from scraper import BodyScraper, needs_scraping
from telemetry import trace_span
from utils import format_duration

logger = get_logger("pipeline")


@dataclass
class PipelineOptions:
    days: int = field(default_factory=lambda: config.ANALYSIS_DAYS)
    want_summary: bool = True
    force: bool = False
    skip_update: bool = False
    skip_analyze: bool = False
    skip_scrape: bool = False
    rss_concurrency: int = field(default_factory=lambda: config.RSS_CONCURRENCY)
    llm_concurrency: int = field(default_factory=lambda: config.LLM_CONCURRENCY)
    feed_id: Optional[int] = None
    category: Optional[str] = None


@dataclass
class FeedResult:
    new_count: int = 0
    error: Optional[str] = None
    llm_error: Optional[str] = None
    analyzed: int = 0
    interesting: int = 0


@dataclass
class PipelineStats:
    rss_total: int = 0
    rss_completed: int = 0
    new_articles: int = 0
    scrape_total: int = 0
    scrape_completed: int = 0
    scrape_errors: int = 0
    llm_total: int = 0
    llm_analyzed: int = 0
    llm_interesting: int = 0
    llm_pending_feeds: int = 0
    llm_errors: int = 0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    started_at: float = field(default_factory=time)
    feed_results: Dict[str, FeedResult] = field(default_factory=dict)
    llm_skipped_reason: Optional[str] = None

    @property
    def elapsed(self) -> float:
        return time() - self.started_at

    @property
    def feed_errors(self) -> int:
        return sum(1 for r in self.feed_results.values() if r.error)


class PipelineOrchestrator:
    """Runs fetch, scrape and analysis for every selected feed."""

    def __init__(
        self,
        db,
        fetcher: Optional[FeedFetcher] = None,
        scraper: Optional[BodyScraper] = None,
        analyzer: Optional[ArticleAnalyzer] = None,
        options: Optional[PipelineOptions] = None,
        on_update: Optional[Callable[[PipelineStats], None]] = None,
    ) -> None:
        self.db = db
        self.options = options or PipelineOptions()
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or FeedFetcher(db)
        self.scraper = scraper or BodyScraper(db)
        self.analyzer = analyzer or ArticleAnalyzer(db)
        self.on_update = on_update
        self.stats = PipelineStats()
        self._rss_pool = Semaphore(max(1, self.options.rss_concurrency))
        self._llm_pool = Semaphore(max(1, self.options.llm_concurrency))
        self._llm_tasks: List[Task] = []

    def _notify(self) -> None:
        if self.on_update:
            self.on_update(self.stats)

    def _result_for(self, feed: Dict[str, Any]) -> FeedResult:
        return self.stats.feed_results.setdefault(feed["name"], FeedResult())

    @trace_span(
        "pipeline.run",
        tracer_name="pipeline",
        attr_from_args=lambda self: {
            "pipeline.force": bool(self.options.force),
            "pipeline.days": int(self.options.days),
        },
    )
    async def run(self) -> PipelineStats:
        """Process every selected feed. Resolves once all fetch and LLM tasks have settled."""
        self.stats = PipelineStats()
        self._llm_tasks = []
        try:
            feeds = await self._select_feeds()
            self.stats.rss_total = len(feeds)
            for feed in feeds:
                self._result_for(feed)
            self._notify()

            if not self.options.skip_analyze:
                await self._check_llm()

            if self._owns_fetcher and not self.options.skip_update:
                await self.fetcher.initialize()

            logger.info(f"Pipeline starting: {len(feeds)} feeds, rss={self.options.rss_concurrency} llm={self.options.llm_concurrency}")
            await gather(*(self._process_feed(feed) for feed in feeds))
            if self._llm_tasks:
                await gather(*self._llm_tasks)
        finally:
            await self.scraper.close()
            if self._owns_fetcher:
                await self.fetcher.close()

        s = self.stats
        logger.info(
            f"Pipeline finished in {format_duration(s.elapsed)}: {s.new_articles} new, "
            f"{s.llm_analyzed}/{s.llm_total} analyzed ({s.llm_interesting} interesting), "
            f"{s.feed_errors} feed errors, {s.scrape_errors} scrape errors, {s.llm_errors} LLM errors, "
            f"{s.tokens.total_tokens} tokens"
        )
        return self.stats

    async def _select_feeds(self) -> List[Dict[str, Any]]:
        if self.options.feed_id is not None:
            feed = await self.db.execute('get_feed_by_id', feed_id=self.options.feed_id)
            if not feed:
                raise ValueError(f"Feed not found: {self.options.feed_id}")
            return [feed]
        return await self.db.execute('get_all_feeds', category=self.options.category)

    async def _check_llm(self) -> None:
        try:
            await get_llm_settings(self.db)
        except LLMNotConfiguredError as e:
            self.stats.llm_skipped_reason = str(e)
            logger.warning(f"Skipping analysis: {e}")
            self._notify()

    @property
    def _analyzing(self) -> bool:
        return not self.options.skip_analyze and self.stats.llm_skipped_reason is None

    async def _process_feed(self, feed: Dict[str, Any]) -> None:
        result = self._result_for(feed)
        async with self._rss_pool:
            if not self.options.skip_update:
                try:
                    result.new_count = await self.fetcher.update_feed(feed)
                    self.stats.new_articles += result.new_count
                except Exception as e:
                    result.error = str(e)
                    logger.error(f"Failed to update feed {feed['name']}: {e}")
            self.stats.rss_completed += 1
            self._notify()

            if not self._analyzing:
                return
            try:
                articles = await self._select_articles(feed)
                if articles and not self.options.skip_scrape:
                    await self._scrape_thin_articles(articles)
            except Exception as e:
                result.llm_error = str(e)
                self.stats.llm_errors += 1
                logger.error(f"Could not prepare articles for {feed['name']}: {e}")
                self._notify()
                return

        if articles:
            self.stats.llm_total += len(articles)
            self.stats.llm_pending_feeds += 1
            self._notify()
            self._llm_tasks.append(create_task(self._analyze_feed(feed, articles)))

    async def _select_articles(self, feed: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not self.options.force:
            return await self.db.execute('get_unanalyzed_articles', feed_id=feed["id"], days=self.options.days)
        limit = config.FORCE_REANALYZE_LIMIT
        articles = await self.db.execute('get_articles', feed_id=feed["id"], days=self.options.days, limit=limit)
        if len(articles) >= limit:
            logger.warning(f"Force re-analysis of {feed['name']} capped at {limit} articles; older ones in the window are skipped")
        return articles

    async def _scrape_thin_articles(self, articles: List[Dict[str, Any]]) -> None:
        for article in articles:
            if not needs_scraping(article):
                continue
            self.stats.scrape_total += 1
            self._notify()
            try:
                scraped = await self.scraper.fetch_article_content(article["link"])
                if scraped and scraped.text_content:
                    await self.db.execute('save_article_snapshot', article_id=article["id"], text=scraped.text_content)
                    article["text_snapshot"] = scraped.text_content
            except ScrapeTimeoutError as e:
                self.stats.scrape_errors += 1
                logger.warning(str(e))
            except Exception as e:
                self.stats.scrape_errors += 1
                logger.warning(f"Scrape failed for {article['link']}: {e}")
            self.stats.scrape_completed += 1
            self._notify()

    async def _analyze_feed(self, feed: Dict[str, Any], articles: List[Dict[str, Any]]) -> None:
        result = self._result_for(feed)

        def on_progress(progress: AnalysisProgress) -> None:
            if progress.phase == PHASE_SUMMARIZE:
                self._notify()

        async with self._llm_pool:
            self.stats.llm_pending_feeds -= 1
            self._notify()
            try:
                results = await self.analyzer.analyze_articles(
                    articles,
                    want_summary=self.options.want_summary,
                    on_progress=on_progress,
                    token_usage=self.stats.tokens,
                )
            except Exception as e:
                result.llm_error = str(e)
                self.stats.llm_errors += 1
                logger.error(f"Analysis failed for {feed['name']}: {e}")
                self._notify()
                return

        interesting = sum(1 for r in results if r.is_interesting)
        result.analyzed += len(results)
        result.interesting += interesting
        self.stats.llm_analyzed += len(results)
        self.stats.llm_interesting += interesting
        self._notify()
        logger.info(f"Analyzed {len(results)} articles from {feed['name']} ({interesting} interesting)")
