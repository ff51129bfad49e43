import asyncio
import sqlite3

import pytest

from errors import DatabaseError
from models import DatabaseQueue


def _article(feed_id, guid, **extra):
    article = {"feed_id": feed_id, "guid": guid, "title": f"Title {guid}", "link": f"https://x.test/{guid}",
               "content": "<p>body</p>", "pub_date": None}
    article.update(extra)
    return article


@pytest.mark.asyncio
async def test_add_articles_ignores_duplicate_guids(db, feed):
    first = await db.execute('add_articles', articles=[_article(feed["id"], "a1"), _article(feed["id"], "a2")])
    second = await db.execute('add_articles', articles=[_article(feed["id"], "a2"), _article(feed["id"], "a3")])

    assert first == 2
    assert second == 1
    assert await db.execute('count_articles', feed_id=feed["id"]) == 3


@pytest.mark.asyncio
async def test_same_guid_in_different_feeds_is_kept(db, feed):
    other = await db.execute('add_feed', name="Other", url="https://y.test/rss")
    await db.execute('add_articles', articles=[_article(feed["id"], "shared")])
    inserted = await db.execute('add_articles', articles=[_article(other["id"], "shared")])
    assert inserted == 1


@pytest.mark.asyncio
async def test_duplicate_feed_url_is_rejected(db, feed):
    with pytest.raises(DatabaseError):
        await db.execute('add_feed', name="Again", url=feed["url"])


@pytest.mark.asyncio
async def test_proxy_stats_only_count_successes(db, feed):
    await db.execute('update_feed_proxy_stats', feed_id=feed["id"], mode="direct", success=True)
    await db.execute('update_feed_proxy_stats', feed_id=feed["id"], mode="proxy", success=False)
    await db.execute('update_feed_proxy_stats', feed_id=feed["id"], mode="proxy", success=True)

    stored = await db.execute('get_feed_by_id', feed_id=feed["id"])
    assert stored["direct_success_count"] == 1
    assert stored["proxy_success_count"] == 1


@pytest.mark.asyncio
async def test_unanalyzed_articles_respect_window_and_analysis(db, feed):
    await db.execute('add_articles', articles=[
        _article(feed["id"], "recent", pub_date="2999-01-01 00:00:00"),
        _article(feed["id"], "old", pub_date="2000-01-01 00:00:00"),
        _article(feed["id"], "done", pub_date="2999-01-01 00:00:00"),
    ])
    done = [a for a in await db.execute('get_articles', feed_id=feed["id"]) if a["guid"] == "done"][0]
    await db.execute('update_article_analysis', article_id=done["id"], is_interesting=False, reason="meh")

    pending = await db.execute('get_unanalyzed_articles', feed_id=feed["id"], days=3)

    assert [a["guid"] for a in pending] == ["recent"]
    assert pending[0]["feed_name"] == "Example"


@pytest.mark.asyncio
async def test_update_article_analysis_sets_analyzed_at(db, feed):
    await db.execute('add_articles', articles=[_article(feed["id"], "a1")])
    article = (await db.execute('get_articles', feed_id=feed["id"]))[0]

    await db.execute('update_article_analysis', article_id=article["id"], is_interesting=True,
                     reason="relevant", summary="Short summary")

    stored = await db.execute('get_article_by_id', article_id=article["id"])
    assert stored["is_interesting"] == 1
    assert stored["interest_reason"] == "relevant"
    assert stored["summary"] == "Short summary"
    assert stored["analyzed_at"] is not None


@pytest.mark.asyncio
async def test_resource_names_merge_after_normalization(db):
    first = await db.execute('add_or_update_resource', name="Claude (Anthropic)", type="tool",
                             description="Assistant", tags=["ai"])
    second = await db.execute('add_or_update_resource', name="claude", type="tool",
                              url="https://claude.ai", tags=["llm", "AI"])

    assert first["id"] == second["id"]
    assert second["name"] == "Claude"
    assert second["url"] == "https://claude.ai"
    assert second["description"] == "Assistant"
    assert second["tags"] == "ai,llm"

    await db.execute('increment_resource_mention_count', resource_id=first["id"])
    found = await db.execute('get_resource_by_name_and_type', name="Claude by Anthropic", type="tool")
    assert found["mention_count"] == 2


@pytest.mark.asyncio
async def test_link_article_resource_is_unique(db, feed):
    await db.execute('add_articles', articles=[_article(feed["id"], "a1")])
    article = (await db.execute('get_articles', feed_id=feed["id"]))[0]
    resource = await db.execute('add_or_update_resource', name="SQLite", type="library")

    assert await db.execute('link_article_resource', article_id=article["id"], resource_id=resource["id"],
                            relevance="main") is True
    assert await db.execute('link_article_resource', article_id=article["id"], resource_id=resource["id"],
                            relevance="main") is False
    linked = await db.execute('get_articles_by_resource', resource_id=resource["id"])
    assert [a["id"] for a in linked] == [article["id"]]


@pytest.mark.asyncio
async def test_remove_feed_cascades_to_articles(db, feed):
    await db.execute('add_articles', articles=[_article(feed["id"], "a1")])
    assert await db.execute('remove_feed', feed_id=feed["id"]) is True
    assert await db.execute('count_articles') == 0


@pytest.mark.asyncio
async def test_preferences_upsert_weight(db):
    await db.execute('add_preference', type="interest", keyword="rust", weight=1.0)
    await db.execute('add_preference', type="interest", keyword="rust", weight=2.5)
    await db.execute('add_preference', type="ignore", keyword="crypto")

    interests = await db.execute('get_all_preferences', type="interest")
    assert [(p["keyword"], p["weight"]) for p in interests] == [("rust", 2.5)]
    assert len(await db.execute('get_all_preferences')) == 2


@pytest.mark.asyncio
async def test_stats_report_counts(db, feed):
    await db.execute('add_articles', articles=[_article(feed["id"], "a1", pub_date="2999-01-01 00:00:00"),
                                               _article(feed["id"], "a2", pub_date="2999-01-01 00:00:00")])
    article = (await db.execute('get_articles', feed_id=feed["id"]))[0]
    await db.execute('update_article_analysis', article_id=article["id"], is_interesting=True, reason="r")
    await db.execute('update_feed_proxy_stats', feed_id=feed["id"], mode="direct", success=True)

    stats = await db.execute('get_stats')

    assert stats["feeds"] == 1
    assert stats["feeds_by_category"] == {"tech": 1}
    assert stats["articles"]["total"] == 2
    assert stats["articles"]["analyzed"] == 1
    assert stats["articles"]["unanalyzed"] == 1
    assert stats["articles"]["interesting"] == 1
    assert stats["fetch_successes"] == {"direct": 1, "proxy": 0}


@pytest.mark.asyncio
async def test_old_database_gets_snapshot_columns(tmp_path):
    db_path = tmp_path / "old.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """CREATE TABLE feeds (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL, url TEXT NOT NULL UNIQUE,
               category TEXT, proxy_mode TEXT NOT NULL DEFAULT 'auto',
               direct_success_count INTEGER NOT NULL DEFAULT 0, proxy_success_count INTEGER NOT NULL DEFAULT 0,
               last_fetched_at TEXT, created_at TEXT DEFAULT (datetime('now')));
           CREATE TABLE articles (id INTEGER PRIMARY KEY AUTOINCREMENT, feed_id INTEGER NOT NULL, guid TEXT NOT NULL,
               title TEXT, link TEXT, content TEXT, pub_date TEXT, is_interesting INTEGER, interest_reason TEXT,
               summary TEXT, analyzed_at TEXT, is_read INTEGER NOT NULL DEFAULT 0,
               created_at TEXT DEFAULT (datetime('now')), UNIQUE(feed_id, guid));"""
    )
    conn.close()

    async with DatabaseQueue(str(db_path)) as queue:
        feed = await queue.execute('add_feed', name="Old", url="https://old.test/rss")
        await queue.execute('add_articles', articles=[_article(feed["id"], "a1")])
        article = (await queue.execute('get_articles'))[0]
        assert await queue.execute('save_article_snapshot', article_id=article["id"], text="plain text") is True
        assert (await queue.execute('get_article_by_id', article_id=article["id"]))["text_snapshot"] == "plain text"


@pytest.mark.asyncio
async def test_execute_requires_running_worker(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "idle.db"))
    with pytest.raises(DatabaseError):
        await queue.execute('get_all_feeds')


async def _tagged_articles(db, feed):
    await db.execute('add_articles', articles=[
        _article(feed["id"], "a1", pub_date="2999-01-03 00:00:00"),
        _article(feed["id"], "a2", pub_date="2999-01-02 00:00:00"),
        _article(feed["id"], "a3", pub_date="2999-01-01 00:00:00"),
    ])
    articles = {a["guid"]: a for a in await db.execute('get_articles', feed_id=feed["id"])}
    rust = await db.execute('get_or_create_tag', name="Rust", category="language")
    ai = await db.execute('get_or_create_tag', name="ai", category="topic")
    await db.execute('link_article_tag', article_id=articles["a1"]["id"], tag_id=rust["id"])
    await db.execute('link_article_tag', article_id=articles["a1"]["id"], tag_id=ai["id"])
    await db.execute('link_article_tag', article_id=articles["a2"]["id"], tag_id=ai["id"])
    return articles, rust, ai


@pytest.mark.asyncio
async def test_get_articles_filters_by_any_tag(db, feed):
    articles, _, _ = await _tagged_articles(db, feed)

    rust_only = await db.execute('get_articles', tags=["RUST"])
    either = await db.execute('get_articles', tags=["rust", " ai "])

    assert [a["guid"] for a in rust_only] == ["a1"]
    assert [a["guid"] for a in either] == ["a1", "a2"]
    assert sorted(either[0]["tag_names"].split(",")) == ["ai", "rust"]
    assert (await db.execute('get_articles', tags=["missing"])) == []
    assert len(await db.execute('get_articles', tags=[])) == 3


@pytest.mark.asyncio
async def test_get_articles_summarized_only(db, feed):
    articles, _, _ = await _tagged_articles(db, feed)
    await db.execute('update_article_analysis', article_id=articles["a2"]["id"], is_interesting=True,
                     reason="r", summary="A summary.")
    await db.execute('update_article_analysis', article_id=articles["a3"]["id"], is_interesting=True, reason="r")

    summarized = await db.execute('get_articles', summarized=True)

    assert [a["guid"] for a in summarized] == ["a2"]


@pytest.mark.asyncio
async def test_tag_counts_include_resources(db, feed):
    _, rust, ai = await _tagged_articles(db, feed)
    resource = await db.execute('add_or_update_resource', name="Tokio", type="library")
    await db.execute('link_resource_tag', resource_id=resource["id"], tag_id=rust["id"])

    counts = {t["name"]: (t["article_count"], t["resource_count"]) for t in await db.execute('get_tags_with_counts')}

    assert counts == {"rust": (1, 1), "ai": (2, 0)}


@pytest.mark.asyncio
async def test_reset_data_keeps_feeds(db, feed):
    articles, rust, _ = await _tagged_articles(db, feed)
    resource = await db.execute('add_or_update_resource', name="Tokio", type="library")
    await db.execute('link_resource_tag', resource_id=resource["id"], tag_id=rust["id"])
    await db.execute('link_article_resource', article_id=articles["a1"]["id"], resource_id=resource["id"],
                     relevance="main")
    await db.execute('add_preference', type="interest", keyword="rust")
    await db.execute('update_feed_proxy_stats', feed_id=feed["id"], mode="direct", success=True)

    removed = await db.execute('reset_data')

    assert removed["articles"] == 3
    assert removed["resources"] == 1
    assert removed["tags"] == 2
    assert removed["article_tags"] == 3
    assert await db.execute('count_articles') == 0
    assert await db.execute('get_tags_with_counts') == []
    assert await db.execute('get_hot_resources') == []
    assert await db.execute('get_all_preferences') == []
    kept = await db.execute('get_feed_by_id', feed_id=feed["id"])
    assert kept["url"] == feed["url"]
    assert kept["direct_success_count"] == 1


@pytest.mark.asyncio
async def test_record_resource_mention_counts_concurrent_first_sightings(db):
    mentions = await asyncio.gather(*(
        db.execute('record_resource_mention', name=name, type="tool", description="An assistant.")
        for name in ("Claude", "Claude (Anthropic)", "claude")
    ))

    assert [m["created"] for m in mentions] == [True, False, False]
    assert mentions[1]["previous_description"] == "An assistant."
    assert len({m["resource"]["id"] for m in mentions}) == 1
    stored = await db.execute('get_resource_by_name_and_type', name="Claude", type="tool")
    assert stored["mention_count"] == 3


@pytest.mark.asyncio
async def test_mark_article_as_read(db, feed):
    articles, _, _ = await _tagged_articles(db, feed)

    assert await db.execute('mark_article_as_read', article_id=articles["a1"]["id"]) is True

    unread = await db.execute('get_articles', unread=True)
    assert [a["guid"] for a in unread] == ["a2", "a3"]


@pytest.mark.asyncio
async def test_cancelled_caller_leaves_no_stored_result(db):
    task = asyncio.create_task(db.execute('count_articles'))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await db.execute('count_articles') == 0
    assert db.results == {}
    assert db.events == {}
