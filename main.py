#!/usr/bin/env python3
"""
RSS Insight command line.

Subcommands:
  run        fetch all feeds, scrape thin articles and analyze them with the LLM
  update     fetch feeds only
  feeds      add / list / remove / mode / import
  prefs      add / list / remove interest and ignore keywords
  config     set / get / unset / list persisted settings
  status     database statistics
  articles   list recent articles, optionally by tag
  read       show one article with its resources and mark it read
  digest     list summarized articles
  search     search articles by keyword
  resources  list hot resources, search them, or show articles about one
  tags       list tags with article and resource counts
  reset      delete articles, tags, resources and preferences (feeds are kept)
"""

import argparse
import asyncio
import sys
from os import environ
from typing import Any, Dict, List, Optional

from config import ENV_KEY_MAP, SECRET_KEYS, _safe_read_yaml, config, get_all_settings, get_logger, mask_secret
from errors import RSSInsightError
from fetcher import FeedFetcher
from models import DatabaseQueue, FETCH_MODES, PREFERENCE_TYPES, RESOURCE_TYPES
from pipeline import PipelineOptions, PipelineOrchestrator, PipelineStats
from telemetry import init_telemetry
from utils import format_duration, truncate_string

logger = get_logger("main")


class ProgressPrinter:
    """Renders pipeline counters on a single terminal line."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout
        self.enabled = self.stream.isatty()
        self._last = ""

    def __call__(self, stats: PipelineStats) -> None:
        if not self.enabled:
            return
        line = (
            f"RSS {stats.rss_completed}/{stats.rss_total} (+{stats.new_articles}) | "
            f"Scrape {stats.scrape_completed}/{stats.scrape_total} ({stats.scrape_errors} err) | "
            f"LLM {stats.llm_analyzed}/{stats.llm_total} ({stats.llm_interesting} interesting, "
            f"{stats.llm_pending_feeds} queued) | {stats.tokens.total_tokens} tokens | {format_duration(stats.elapsed)}"
        )
        if line != self._last:
            self.stream.write("\r" + line.ljust(len(self._last)))
            self.stream.flush()
            self._last = line

    def finish(self) -> None:
        if self.enabled and self._last:
            self.stream.write("\n")
            self.stream.flush()


def print_run_summary(stats: PipelineStats) -> None:
    print(f"\n📊 Run finished in {format_duration(stats.elapsed)}")
    print(f"   📡 Feeds: {stats.rss_completed}/{stats.rss_total} ({stats.feed_errors} failed), {stats.new_articles} new articles")
    print(f"   🌐 Scraped: {stats.scrape_completed}/{stats.scrape_total} ({stats.scrape_errors} errors)")
    if stats.llm_skipped_reason:
        print(f"   🧠 Analysis skipped: {stats.llm_skipped_reason}")
    else:
        print(f"   🧠 Analyzed: {stats.llm_analyzed}/{stats.llm_total} ({stats.llm_interesting} interesting, {stats.llm_errors} errors)")
    tokens = stats.tokens
    print(f"   🔢 Tokens: {tokens.total_tokens} (prompt {tokens.prompt_tokens}, completion {tokens.completion_tokens})")
    failures = [(name, r) for name, r in stats.feed_results.items() if r.error or r.llm_error]
    if failures:
        print("\n⚠️  Problems:")
        for name, result in failures:
            if result.error:
                print(f"   {name}: fetch failed: {result.error}")
            if result.llm_error:
                print(f"   {name}: analysis failed: {result.llm_error}")


def print_articles(articles: List[Dict[str, Any]]) -> None:
    if not articles:
        print("No articles found")
        return
    for article in articles:
        if article.get("is_interesting"):
            marker = "⭐"
        elif article.get("analyzed_at"):
            marker = "  "
        else:
            marker = "··"
        print(f"{marker} [{article['id']}] {article['title']}")
        print(f"     {article.get('feed_name') or ''} | {article.get('pub_date') or ''} | {article.get('link') or ''}")
        if article.get("tag_names"):
            print(f"     #{' #'.join(article['tag_names'].split(','))}")
        if article.get("summary"):
            print(f"     {truncate_string(article['summary'], 200)}")


async def cmd_run(db: DatabaseQueue, args) -> int:
    options = PipelineOptions(
        days=args.days,
        want_summary=not args.no_summary,
        force=args.force,
        skip_update=args.skip_update,
        skip_analyze=args.skip_analyze,
        skip_scrape=args.skip_scrape,
        rss_concurrency=args.rss_concurrency,
        llm_concurrency=args.llm_concurrency,
        feed_id=args.feed,
        category=args.category,
    )
    printer = ProgressPrinter()
    orchestrator = PipelineOrchestrator(db, options=options, on_update=printer)
    try:
        stats = await orchestrator.run()
    finally:
        printer.finish()
    print_run_summary(stats)
    return 0


async def cmd_update(db: DatabaseQueue, args) -> int:
    fetcher = FeedFetcher(db)
    await fetcher.initialize()
    try:
        results = await fetcher.update_all_feeds(feed_id=args.feed)
    finally:
        await fetcher.close()
    failed = 0
    for name, result in results.items():
        if result.error:
            failed += 1
            print(f"❌ {name}: {result.error}")
        else:
            print(f"✅ {name}: {result.new_count} new")
    print(f"\n{len(results) - failed}/{len(results)} feeds updated")
    return 0


async def _add_feed(db: DatabaseQueue, fetcher: Optional[FeedFetcher], url: str, name: Optional[str],
                    category: Optional[str], proxy_mode: str) -> Dict[str, Any]:
    if not name and fetcher is not None:
        info = await fetcher.detect_feed_info(url)
        if info:
            name = info["title"]
    return await db.execute('add_feed', name=name or url, url=url, category=category, proxy_mode=proxy_mode)


async def cmd_feeds(db: DatabaseQueue, args) -> int:
    if args.feeds_command == "list":
        feeds = await db.execute('get_all_feeds', category=args.category)
        if not feeds:
            print("No feeds configured")
            return 0
        for feed in feeds:
            print(
                f"[{feed['id']}] {feed['name']} ({feed.get('category') or 'uncategorized'}) mode={feed['proxy_mode']} "
                f"direct={feed['direct_success_count']} proxy={feed['proxy_success_count']} "
                f"last={feed.get('last_fetched_at') or 'never'}"
            )
            print(f"     {feed['url']}")
        return 0

    if args.feeds_command == "remove":
        if await db.execute('remove_feed', feed_id=args.id):
            print(f"🗑️  Removed feed {args.id}")
            return 0
        print(f"Feed not found: {args.id}")
        return 1

    if args.feeds_command == "mode":
        if await db.execute('set_feed_proxy_mode', feed_id=args.id, proxy_mode=args.mode):
            print(f"Feed {args.id} fetch mode set to {args.mode}")
            return 0
        print(f"Feed not found: {args.id}")
        return 1

    fetcher = None
    if not args.no_detect:
        fetcher = FeedFetcher(db)
        await fetcher.initialize()
    try:
        if args.feeds_command == "add":
            feed = await _add_feed(db, fetcher, args.url, args.name, args.category, args.mode)
            print(f"✅ Added [{feed['id']}] {feed['name']}")
            return 0

        # import
        data = _safe_read_yaml(args.file)
        entries = data.get("feeds") if isinstance(data, dict) else data
        if not isinstance(entries, list):
            print(f"❌ No feed list found in {args.file}")
            return 1
        added = skipped = 0
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("url"):
                skipped += 1
                continue
            if await db.execute('get_feed_by_url', url=entry["url"]):
                skipped += 1
                continue
            try:
                feed = await _add_feed(
                    db, fetcher, entry["url"], entry.get("name"), entry.get("category"), entry.get("proxy_mode") or "auto"
                )
            except Exception as e:
                logger.warning(f"Could not import {entry['url']}: {e}")
                skipped += 1
                continue
            added += 1
            print(f"✅ Added [{feed['id']}] {feed['name']}")
        print(f"\nImported {added} feeds, skipped {skipped}")
        return 0
    finally:
        if fetcher is not None:
            await fetcher.close()


async def cmd_prefs(db: DatabaseQueue, args) -> int:
    if args.prefs_command == "add":
        pref = await db.execute('add_preference', type=args.type, keyword=args.keyword, weight=args.weight)
        print(f"✅ [{pref['id']}] {pref['type']}: {pref['keyword']} (weight {pref['weight']:g})")
    elif args.prefs_command == "remove":
        if not await db.execute('remove_preference', preference_id=args.id):
            print(f"Preference not found: {args.id}")
            return 1
        print(f"🗑️  Removed preference {args.id}")
    else:
        prefs = await db.execute('get_all_preferences', type=args.type)
        if not prefs:
            print("No preferences configured")
        for pref in prefs:
            print(f"[{pref['id']}] {pref['type']}: {pref['keyword']} (weight {pref['weight']:g})")
    return 0


def _display_value(key: str, value: Optional[str]) -> str:
    if key in SECRET_KEYS:
        return mask_secret(value)
    return value if value else "<unset>"


async def cmd_config(db: DatabaseQueue, args) -> int:
    if args.config_command == "set":
        await db.execute('set_config_value', key=args.key, value=args.value)
        print(f"✅ {args.key} = {_display_value(args.key, args.value)}")
        if ENV_KEY_MAP.get(args.key) and ENV_KEY_MAP[args.key] in _environment_overrides():
            print(f"⚠️  {ENV_KEY_MAP[args.key]} is set in the environment and takes precedence")
    elif args.config_command == "unset":
        if not await db.execute('delete_config_value', key=args.key):
            print(f"{args.key} was not set")
            return 1
        print(f"🗑️  Removed {args.key}")
    elif args.config_command == "get":
        settings = await get_all_settings(db)
        if args.key not in settings:
            value = await db.execute('get_config_value', key=args.key)
            print(value if value is not None else "<unset>")
        else:
            entry = settings[args.key]
            print(f"{_display_value(args.key, entry['value'])} ({entry['source']})")
    else:
        for key, entry in (await get_all_settings(db)).items():
            print(f"{key:14} {_display_value(key, entry['value'])} ({entry['source']})")
    return 0


def _environment_overrides() -> List[str]:
    return [name for name in ENV_KEY_MAP.values() if environ.get(name)]


async def cmd_status(db: DatabaseQueue, args) -> int:
    stats = await db.execute('get_stats')
    articles = stats["articles"]
    print("\n📊 RSS Insight Status")
    print(f"💾 Database: {config.DATABASE_PATH}")
    print(f"\n📡 Feeds: {stats['feeds']}")
    for category, count in stats["feeds_by_category"].items():
        print(f"   {category}: {count}")
    print(f"   Successful fetches: direct {stats['fetch_successes']['direct']}, proxy {stats['fetch_successes']['proxy']}")
    print("\n📰 Articles:")
    print(f"   Total: {articles['total']} ({articles['last_7_days']} in the last 7 days)")
    print(f"   Analyzed: {articles['analyzed']} ({articles['unanalyzed']} pending)")
    print(f"   Interesting: {articles['interesting']}")
    print(f"\n🧰 Resources: {sum(stats['resources_by_type'].values())}")
    for resource_type, count in stats["resources_by_type"].items():
        print(f"   {resource_type}: {count}")
    print(f"🏷️  Tags: {stats['tags']}")
    return 0


async def cmd_articles(db: DatabaseQueue, args) -> int:
    articles = await db.execute(
        'get_articles',
        feed_id=args.feed,
        interesting=True if args.interesting else None,
        unread=args.unread,
        days=args.days,
        limit=args.limit,
        tags=args.tag.split(",") if args.tag else None,
    )
    print_articles(articles)
    return 0


async def cmd_read(db: DatabaseQueue, args) -> int:
    article = await db.execute('get_article_by_id', article_id=args.id)
    if not article:
        print(f"❌ Article {args.id} not found")
        return 1
    print(f"\n📰 {article['title']}")
    print(f"   {article['feed_name']} | {article.get('pub_date') or ''}")
    if article.get("link"):
        print(f"   {article['link']}")
    if article.get("analyzed_at"):
        verdict = "⭐ interesting" if article.get("is_interesting") else "not interesting"
        print(f"\n🧠 {verdict}: {article.get('interest_reason') or ''}")
    if article.get("summary"):
        print(f"\n{article['summary']}")
    resources = await db.execute('get_article_resources', article_id=args.id)
    if resources:
        print("\n🧰 Resources:")
        for resource in resources:
            print(f"   [{resource['id']}] {resource['name']} ({resource['type']}, {resource['relevance']})")
    await db.execute('mark_article_as_read', article_id=args.id)
    return 0


async def cmd_digest(db: DatabaseQueue, args) -> int:
    articles = await db.execute(
        'get_articles',
        interesting=None if args.all else True,
        days=args.days,
        limit=args.limit,
        summarized=True,
    )
    if not articles:
        print("No articles with summaries found")
        return 0
    print(f"\n📋 Digest ({len(articles)} articles)")
    for article in articles:
        marker = "⭐" if article.get("is_interesting") else "  "
        print(f"\n{marker} [{article['id']}] {article['title']}")
        print(f"     {article.get('feed_name') or ''} | {(article.get('pub_date') or '')[:10]} | {article.get('link') or ''}")
        if article.get("interest_reason"):
            print(f"     Why: {article['interest_reason']}")
        print(f"     {article['summary']}")
    return 0


async def cmd_search(db: DatabaseQueue, args) -> int:
    print_articles(await db.execute('search_articles', keyword=args.keyword, limit=args.limit))
    return 0


async def cmd_resources(db: DatabaseQueue, args) -> int:
    if args.articles is not None:
        print_articles(await db.execute('get_articles_by_resource', resource_id=args.articles, limit=args.limit))
        return 0
    if args.search:
        resources = await db.execute('search_resources', keyword=args.search, limit=args.limit)
    else:
        resources = await db.execute('get_hot_resources', limit=args.limit, type=args.type)
    if not resources:
        print("No resources found")
    for resource in resources:
        print(f"[{resource['id']}] {resource['name']} ({resource['type']}) x{resource['mention_count']}")
        if resource.get("description"):
            print(f"     {truncate_string(resource['description'], 160)}")
        links = [link for link in (resource.get("url"), resource.get("github_url")) if link]
        if links:
            print(f"     {' '.join(links)}")
    return 0


async def cmd_tags(db: DatabaseQueue, args) -> int:
    tags = await db.execute('get_tags_with_counts', limit=args.limit)
    if not tags:
        print("No tags yet; run an analysis with summaries to extract them")
        return 0
    print("\n🏷️  Tags:")
    for tag in tags:
        print(f"   #{tag['name']:<24} {tag['article_count']} articles | {tag['resource_count']} resources ({tag['category']})")
    return 0


async def cmd_reset(db: DatabaseQueue, args) -> int:
    if not args.yes:
        print("⚠️  This deletes all articles, tags, resources and preferences. Feeds are kept.")
        if input("Continue? (y/N) ").strip().lower() != "y":
            print("Cancelled")
            return 1
    removed = await db.execute('reset_data')
    print(f"🧹 Removed {removed['articles']} articles, {removed['resources']} resources and {removed['tags']} tags; feeds kept")
    return 0


COMMANDS = {
    "run": cmd_run,
    "update": cmd_update,
    "feeds": cmd_feeds,
    "prefs": cmd_prefs,
    "config": cmd_config,
    "status": cmd_status,
    "articles": cmd_articles,
    "read": cmd_read,
    "digest": cmd_digest,
    "search": cmd_search,
    "resources": cmd_resources,
    "tags": cmd_tags,
    "reset": cmd_reset,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rss-insight", description="RSS ingestion and LLM analysis")
    parser.add_argument("--db", type=str, help=f"Database path (default {config.DATABASE_PATH})")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Fetch, scrape and analyze all feeds")
    run.add_argument("--days", type=int, default=config.ANALYSIS_DAYS, help="Analysis window in days")
    run.add_argument("--no-summary", action="store_true", help="Only classify articles, skip summaries")
    run.add_argument("--force", action="store_true", help="Re-analyze articles already analyzed in the window")
    run.add_argument("--skip-update", action="store_true", help="Do not fetch feeds")
    run.add_argument("--skip-analyze", action="store_true", help="Do not run the LLM")
    run.add_argument("--skip-scrape", action="store_true", help="Do not scrape article bodies")
    run.add_argument("--rss-concurrency", type=int, default=config.RSS_CONCURRENCY)
    run.add_argument("--llm-concurrency", type=int, default=config.LLM_CONCURRENCY)
    run.add_argument("--feed", type=int, help="Only this feed id")
    run.add_argument("--category", type=str, help="Only feeds in this category")

    update = sub.add_parser("update", help="Fetch feeds without analysis")
    update.add_argument("--feed", type=int, help="Only this feed id")

    feeds = sub.add_parser("feeds", help="Manage feeds")
    feeds_sub = feeds.add_subparsers(dest="feeds_command", required=True)
    add = feeds_sub.add_parser("add")
    add.add_argument("url")
    add.add_argument("--name")
    add.add_argument("--category")
    add.add_argument("--mode", choices=FETCH_MODES, default="auto")
    add.add_argument("--no-detect", action="store_true", help="Do not fetch the feed to detect its title")
    listing = feeds_sub.add_parser("list")
    listing.add_argument("--category")
    remove = feeds_sub.add_parser("remove")
    remove.add_argument("id", type=int)
    mode = feeds_sub.add_parser("mode")
    mode.add_argument("id", type=int)
    mode.add_argument("mode", choices=FETCH_MODES)
    imp = feeds_sub.add_parser("import")
    imp.add_argument("file")
    imp.add_argument("--no-detect", action="store_true", help="Do not fetch feeds to detect missing titles")

    prefs = sub.add_parser("prefs", help="Manage interest/ignore keywords")
    prefs_sub = prefs.add_subparsers(dest="prefs_command", required=True)
    padd = prefs_sub.add_parser("add")
    padd.add_argument("type", choices=PREFERENCE_TYPES)
    padd.add_argument("keyword")
    padd.add_argument("--weight", type=float, default=1.0)
    plist = prefs_sub.add_parser("list")
    plist.add_argument("--type", choices=PREFERENCE_TYPES)
    premove = prefs_sub.add_parser("remove")
    premove.add_argument("id", type=int)

    cfg = sub.add_parser("config", help="Manage persisted settings")
    cfg_sub = cfg.add_subparsers(dest="config_command", required=True)
    cset = cfg_sub.add_parser("set")
    cset.add_argument("key")
    cset.add_argument("value")
    cget = cfg_sub.add_parser("get")
    cget.add_argument("key")
    cunset = cfg_sub.add_parser("unset")
    cunset.add_argument("key")
    cfg_sub.add_parser("list")

    sub.add_parser("status", help="Show database statistics")

    articles = sub.add_parser("articles", help="List articles")
    articles.add_argument("--feed", type=int)
    articles.add_argument("--interesting", action="store_true")
    articles.add_argument("--unread", action="store_true")
    articles.add_argument("--days", type=int)
    articles.add_argument("--tag", type=str, help="Comma-separated tag names")
    articles.add_argument("--limit", type=int, default=20)

    read = sub.add_parser("read", help="Show an article and mark it read")
    read.add_argument("id", type=int)

    digest = sub.add_parser("digest", help="List summarized articles")
    digest.add_argument("--days", type=int, default=30)
    digest.add_argument("--all", action="store_true", help="Include articles not marked interesting")
    digest.add_argument("--limit", type=int, default=20)

    search = sub.add_parser("search", help="Search articles")
    search.add_argument("keyword")
    search.add_argument("--limit", type=int, default=20)

    resources = sub.add_parser("resources", help="List extracted resources")
    resources.add_argument("--type", choices=RESOURCE_TYPES)
    resources.add_argument("--search", type=str)
    resources.add_argument("--articles", type=int, metavar="RESOURCE_ID", help="Show articles about a resource")
    resources.add_argument("--limit", type=int, default=20)

    tags = sub.add_parser("tags", help="List tags with article and resource counts")
    tags.add_argument("--limit", type=int, default=50)

    reset = sub.add_parser("reset", help="Delete analysis data, keeping feeds")
    reset.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    return parser


async def run_command(args) -> int:
    async with DatabaseQueue(args.db or config.DATABASE_PATH) as db:
        return await COMMANDS[args.command](db, args)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    init_telemetry("rss-insight")
    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except (ValueError, RSSInsightError) as e:
        print(f"❌ {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
