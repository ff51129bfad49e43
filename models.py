#!/usr/bin/env python3
"""
Database models and operations for RSS Insight.

A single worker coroutine owns the SQLite connection; every caller goes through
``DatabaseQueue.execute(operation_name, **params)``, which serializes all reads and
writes. Each write is one statement or one explicit transaction (bulk article insert),
so concurrent pipeline tasks need no further locking.
"""

from os import path, access, makedirs, R_OK
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Any, Dict, List, Optional

from config import config, get_logger
from errors import DatabaseError
from telemetry import trace_span
from utils import normalize_resource_name

logger = get_logger("models")

FETCH_MODES = ("auto", "direct", "proxy")
PREFERENCE_TYPES = ("interest", "ignore")
RESOURCE_TYPES = ("tool", "library", "framework", "project", "service", "other")
TAG_CATEGORIES = ("tech", "topic", "language", "framework", "other")
RELEVANCE_LEVELS = ("main", "mentioned", "compared")


def initialize_database(conn) -> None:
    """Create the schema on a new database, or migrate an existing one."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            _run_migrations(conn)
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring databases created by older versions up to the current schema."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA table_info(articles)")
        columns = [column[1] for column in cursor.fetchall()]
        for column in ("text_snapshot", "snapshot_at"):
            if column not in columns:
                logger.info(f"Adding {column} column to articles table")
                cursor.execute(f"ALTER TABLE articles ADD COLUMN {column} TEXT")
        conn.commit()

        # Every statement in the schema is IF NOT EXISTS, so this only adds missing tables/indexes
        cursor.executescript(_read_schema_file())
        conn.commit()
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


def _window(days: int) -> str:
    return f"-{int(days)} days"


def _row(row: Optional[Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def _rows(rows: List[Row]) -> List[Dict[str, Any]]:
    return [dict(r) for r in rows]


def _split_tags(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(',') if t.strip()]


class DatabaseQueue:
    """Serializes database operations through a single worker coroutine."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()
        self._startup_error: Optional[Exception] = None

    async def start(self) -> None:
        """Start the database worker and wait until the schema is ready."""
        if self.running:
            return

        self.running = True
        self._ready.clear()
        self._startup_error = None
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self._startup_error is not None:
            self.running = False
            raise DatabaseError(f"Could not open database {self.db_path}: {self._startup_error}")
        logger.debug("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "Database worker stopped"})
            event.set()
        self.events.clear()
        logger.debug("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        try:
            directory = path.dirname(path.abspath(self.db_path))
            if directory and not path.isdir(directory):
                makedirs(directory, exist_ok=True)
            if not path.isfile(self.db_path):
                logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except Exception as e:
            logger.error(f"Error initializing database at {self.db_path}: {e}")
            self._startup_error = e
            self._ready.set()
            return
        self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        outcome = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        outcome = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    outcome = {"error": str(e)}
                finally:
                    self.queue.task_done()

                # The caller may have been cancelled while waiting
                event = self.events.get(operation_id)
                if event is None:
                    logger.debug(f"Discarding result of abandoned operation {operation_name}")
                else:
                    self.results[operation_id] = outcome
                    event.set()

            except CancelledError:
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Run a named operation on the worker and return its result.

        Raises:
            DatabaseError: the worker is not running or the operation failed.
        """
        if not self.running:
            raise DatabaseError(f"Database worker not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)
        if "error" in result:
            raise DatabaseError(result["error"])
        return result["result"]

    # Feeds

    def add_feed(self, name: str, url: str, category: Optional[str] = None, proxy_mode: str = "auto") -> Dict[str, Any]:
        """Insert a feed. The URL must not already be subscribed."""
        if proxy_mode not in FETCH_MODES:
            raise ValueError(f"Invalid fetch mode: {proxy_mode}")
        if self.get_feed_by_url(url):
            raise ValueError(f"Feed already exists: {url}")
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO feeds (name, url, category, proxy_mode) VALUES (?, ?, ?, ?)",
            (name, url, category, proxy_mode),
        )
        self.conn.commit()
        return self.get_feed_by_id(cursor.lastrowid)

    def get_feed_by_id(self, feed_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _row(cursor.fetchone())

    def get_feed_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM feeds WHERE url = ?", (url,))
        return _row(cursor.fetchone())

    def get_all_feeds(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        if category:
            cursor.execute("SELECT * FROM feeds WHERE category = ? ORDER BY name", (category,))
        else:
            cursor.execute("SELECT * FROM feeds ORDER BY category, name")
        return _rows(cursor.fetchall())

    def remove_feed(self, feed_id: int) -> bool:
        """Delete a feed and, by cascade, its articles and their links."""
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def set_feed_proxy_mode(self, feed_id: int, proxy_mode: str) -> bool:
        if proxy_mode not in FETCH_MODES:
            raise ValueError(f"Invalid fetch mode: {proxy_mode}")
        cursor = self.conn.cursor()
        cursor.execute("UPDATE feeds SET proxy_mode = ? WHERE id = ?", (proxy_mode, feed_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def update_feed_fetch_time(self, feed_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("UPDATE feeds SET last_fetched_at = datetime('now') WHERE id = ?", (feed_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def update_feed_proxy_stats(self, feed_id: int, mode: str, success: bool) -> bool:
        """Record a fetch outcome. Only successes move the adaptive counters."""
        if mode not in ("direct", "proxy"):
            raise ValueError(f"Invalid fetch mode for stats: {mode}")
        if not success:
            return False
        column = "proxy_success_count" if mode == "proxy" else "direct_success_count"
        cursor = self.conn.cursor()
        cursor.execute(f"UPDATE feeds SET {column} = {column} + 1 WHERE id = ?", (feed_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Articles

    def add_articles(self, articles: List[Dict[str, Any]]) -> int:
        """Insert-or-ignore a batch of articles in one transaction.

        Returns the number of rows actually inserted; rows whose (feed_id, guid)
        already exist are skipped.
        """
        if not articles:
            return 0
        inserted = 0
        cursor = self.conn.cursor()
        with self.conn:
            for article in articles:
                cursor.execute(
                    """INSERT OR IGNORE INTO articles (feed_id, guid, title, link, content, pub_date)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        article["feed_id"],
                        article["guid"],
                        article.get("title") or "Untitled",
                        article.get("link"),
                        article.get("content") or "",
                        article.get("pub_date"),
                    ),
                )
                inserted += cursor.rowcount
        return inserted

    def get_article_by_id(self, article_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            """SELECT a.*, f.name AS feed_name FROM articles a
               JOIN feeds f ON f.id = a.feed_id WHERE a.id = ?""",
            (article_id,),
        )
        return _row(cursor.fetchone())

    def count_articles(self, feed_id: Optional[int] = None) -> int:
        cursor = self.conn.cursor()
        if feed_id is None:
            cursor.execute("SELECT COUNT(*) FROM articles")
        else:
            cursor.execute("SELECT COUNT(*) FROM articles WHERE feed_id = ?", (feed_id,))
        return cursor.fetchone()[0]

    def get_unanalyzed_articles(self, feed_id: Optional[int] = None, days: int = 7) -> List[Dict[str, Any]]:
        """Articles never analyzed whose publish date falls inside the window, newest first."""
        query = """SELECT a.*, f.name AS feed_name FROM articles a
                   JOIN feeds f ON f.id = a.feed_id
                   WHERE a.analyzed_at IS NULL AND a.pub_date >= datetime('now', ?)"""
        params: List[Any] = [_window(days)]
        if feed_id is not None:
            query += " AND a.feed_id = ?"
            params.append(feed_id)
        query += " ORDER BY a.pub_date DESC"
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return _rows(cursor.fetchall())

    def get_articles(
        self,
        feed_id: Optional[int] = None,
        interesting: Optional[bool] = None,
        unread: bool = False,
        days: Optional[int] = None,
        limit: int = 50,
        tags: Optional[List[str]] = None,
        summarized: bool = False,
    ) -> List[Dict[str, Any]]:
        """General article listing with optional filters, newest first.

        ``tags`` keeps articles carrying any of the given tag names. Each row has a
        comma-separated ``tag_names`` column.
        """
        query = """SELECT a.*, f.name AS feed_name,
                          (SELECT GROUP_CONCAT(t.name, ',') FROM article_tags at
                           JOIN tags t ON t.id = at.tag_id WHERE at.article_id = a.id) AS tag_names
                   FROM articles a JOIN feeds f ON f.id = a.feed_id WHERE 1 = 1"""
        params: List[Any] = []
        tag_names = [t.strip().lower() for t in (tags or []) if t and t.strip()]
        if tag_names:
            placeholders = ", ".join("?" for _ in tag_names)
            query += f""" AND a.id IN (SELECT at.article_id FROM article_tags at
                          JOIN tags t ON t.id = at.tag_id WHERE t.name IN ({placeholders}))"""
            params.extend(tag_names)
        if summarized:
            query += " AND a.summary IS NOT NULL AND a.summary != ''"
        if feed_id is not None:
            query += " AND a.feed_id = ?"
            params.append(feed_id)
        if interesting is not None:
            query += " AND a.is_interesting = ?"
            params.append(1 if interesting else 0)
        if unread:
            query += " AND a.is_read = 0"
        if days is not None:
            query += " AND a.pub_date >= datetime('now', ?)"
            params.append(_window(days))
        query += " ORDER BY a.pub_date DESC LIMIT ?"
        params.append(int(limit))
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return _rows(cursor.fetchall())

    def search_articles(self, keyword: str, limit: int = 50) -> List[Dict[str, Any]]:
        pattern = f"%{keyword}%"
        cursor = self.conn.cursor()
        cursor.execute(
            """SELECT a.*, f.name AS feed_name FROM articles a
               JOIN feeds f ON f.id = a.feed_id
               WHERE a.title LIKE ? OR a.content LIKE ? OR a.summary LIKE ?
               ORDER BY a.pub_date DESC LIMIT ?""",
            (pattern, pattern, pattern, int(limit)),
        )
        return _rows(cursor.fetchall())

    def update_article_analysis(
        self,
        article_id: int,
        is_interesting: bool,
        reason: Optional[str],
        summary: Optional[str] = None,
    ) -> bool:
        """Record one analysis pass; a forced re-analysis overwrites the previous outcome."""
        cursor = self.conn.cursor()
        cursor.execute(
            """UPDATE articles SET is_interesting = ?, interest_reason = ?, summary = ?,
               analyzed_at = datetime('now') WHERE id = ?""",
            (1 if is_interesting else 0, reason, summary, article_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def save_article_snapshot(self, article_id: int, text: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE articles SET text_snapshot = ?, snapshot_at = datetime('now') WHERE id = ?",
            (text, article_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def mark_article_as_read(self, article_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("UPDATE articles SET is_read = 1 WHERE id = ?", (article_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Tags

    def get_or_create_tag(self, name: str, category: str = "other") -> Dict[str, Any]:
        """Tags are stored lowercase; an existing tag keeps its original category."""
        tag_name = (name or "").strip().lower()
        if not tag_name:
            raise ValueError("Tag name must not be empty")
        if category not in TAG_CATEGORIES:
            category = "other"
        cursor = self.conn.cursor()
        cursor.execute("INSERT OR IGNORE INTO tags (name, category) VALUES (?, ?)", (tag_name, category))
        self.conn.commit()
        cursor.execute("SELECT * FROM tags WHERE name = ?", (tag_name,))
        return _row(cursor.fetchone())

    def link_article_tag(self, article_id: int, tag_id: int, source: str = "llm", confidence: float = 1.0) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR IGNORE INTO article_tags (article_id, tag_id, source, confidence) VALUES (?, ?, ?, ?)",
            (article_id, tag_id, source, confidence),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def link_resource_tag(self, resource_id: int, tag_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR IGNORE INTO resource_tags (resource_id, tag_id) VALUES (?, ?)",
            (resource_id, tag_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def get_tags_with_counts(self, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            """SELECT t.*,
                      (SELECT COUNT(*) FROM article_tags at WHERE at.tag_id = t.id) AS article_count,
                      (SELECT COUNT(*) FROM resource_tags rt WHERE rt.tag_id = t.id) AS resource_count
               FROM tags t
               ORDER BY article_count DESC, resource_count DESC, t.name LIMIT ?""",
            (int(limit),),
        )
        return _rows(cursor.fetchall())

    # Resources

    def get_resource_by_name_and_type(self, name: str, type: str) -> Optional[Dict[str, Any]]:
        """Look up a resource by its normalized name (case-insensitive) and type."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM resources WHERE name = ? AND type = ?",
            (normalize_resource_name(name), type),
        )
        return _row(cursor.fetchone())

    def add_or_update_resource(
        self,
        name: str,
        type: str,
        url: Optional[str] = None,
        github_url: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create a resource, or fill in missing fields and union tags on an existing one.

        An existing non-empty description is kept; replacing it is the job of
        ``update_resource_description``. Mention counts are not touched here.
        """
        normalized = normalize_resource_name(name)
        if not normalized:
            raise ValueError("Resource name must not be empty")
        if type not in RESOURCE_TYPES:
            type = "other"
        new_tags = [t.strip().lower() for t in (tags or []) if t and t.strip()]

        existing = self.get_resource_by_name_and_type(normalized, type)
        cursor = self.conn.cursor()
        if existing:
            merged_tags = _split_tags(existing.get("tags"))
            for tag in new_tags:
                if tag not in merged_tags:
                    merged_tags.append(tag)
            cursor.execute(
                """UPDATE resources SET
                       url = COALESCE(NULLIF(url, ''), ?),
                       github_url = COALESCE(NULLIF(github_url, ''), ?),
                       description = COALESCE(NULLIF(description, ''), ?),
                       tags = ?,
                       updated_at = datetime('now')
                   WHERE id = ?""",
                (url or None, github_url or None, description or None, ",".join(merged_tags) or None, existing["id"]),
            )
            self.conn.commit()
            resource_id = existing["id"]
        else:
            cursor.execute(
                """INSERT INTO resources (name, type, url, github_url, description, tags)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (normalized, type, url or None, github_url or None, description or None, ",".join(new_tags) or None),
            )
            self.conn.commit()
            resource_id = cursor.lastrowid

        cursor.execute("SELECT * FROM resources WHERE id = ?", (resource_id,))
        return _row(cursor.fetchone())

    def record_resource_mention(
        self,
        name: str,
        type: str,
        url: Optional[str] = None,
        github_url: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create a resource or count one more sighting of it, in a single worker step.

        Returns ``{"resource": row, "created": bool, "previous_description": str | None}``
        so the caller can decide whether the stored description needs merging.
        """
        if type not in RESOURCE_TYPES:
            type = "other"
        existing = self.get_resource_by_name_and_type(name, type)
        if existing:
            self.increment_resource_mention_count(existing["id"])
        resource = self.add_or_update_resource(
            name=name, type=type, url=url, github_url=github_url, description=description, tags=tags
        )
        return {
            "resource": resource,
            "created": existing is None,
            "previous_description": existing.get("description") if existing else None,
        }

    def update_resource_description(self, resource_id: int, description: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE resources SET description = ?, updated_at = datetime('now') WHERE id = ?",
            (description, resource_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def increment_resource_mention_count(self, resource_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE resources SET mention_count = mention_count + 1, updated_at = datetime('now') WHERE id = ?",
            (resource_id,),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def link_article_resource(
        self,
        article_id: int,
        resource_id: int,
        context: Optional[str] = None,
        relevance: str = "mentioned",
    ) -> bool:
        if relevance not in RELEVANCE_LEVELS:
            relevance = "mentioned"
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT OR IGNORE INTO article_resources (article_id, resource_id, context, relevance)
               VALUES (?, ?, ?, ?)""",
            (article_id, resource_id, context, relevance),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def get_hot_resources(self, limit: int = 20, type: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM resources"
        params: List[Any] = []
        if type:
            query += " WHERE type = ?"
            params.append(type)
        query += " ORDER BY mention_count DESC, updated_at DESC LIMIT ?"
        params.append(int(limit))
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return _rows(cursor.fetchall())

    def search_resources(self, keyword: str, limit: int = 50) -> List[Dict[str, Any]]:
        pattern = f"%{keyword}%"
        cursor = self.conn.cursor()
        cursor.execute(
            """SELECT * FROM resources WHERE name LIKE ? OR description LIKE ? OR tags LIKE ?
               ORDER BY mention_count DESC LIMIT ?""",
            (pattern, pattern, pattern, int(limit)),
        )
        return _rows(cursor.fetchall())

    def get_articles_by_resource(self, resource_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            """SELECT a.*, f.name AS feed_name, ar.relevance, ar.context FROM article_resources ar
               JOIN articles a ON a.id = ar.article_id
               JOIN feeds f ON f.id = a.feed_id
               WHERE ar.resource_id = ? ORDER BY a.pub_date DESC LIMIT ?""",
            (resource_id, int(limit)),
        )
        return _rows(cursor.fetchall())

    def get_article_resources(self, article_id: int) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            """SELECT r.*, ar.relevance, ar.context FROM article_resources ar
               JOIN resources r ON r.id = ar.resource_id
               WHERE ar.article_id = ? ORDER BY r.name""",
            (article_id,),
        )
        return _rows(cursor.fetchall())

    # Preferences

    def add_preference(self, type: str, keyword: str, weight: float = 1.0) -> Dict[str, Any]:
        """Add a keyword preference; re-adding an existing keyword updates its weight."""
        if type not in PREFERENCE_TYPES:
            raise ValueError(f"Invalid preference type: {type}")
        keyword = (keyword or "").strip()
        if not keyword:
            raise ValueError("Preference keyword must not be empty")
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT INTO user_preferences (type, keyword, weight) VALUES (?, ?, ?)
               ON CONFLICT(type, keyword) DO UPDATE SET weight = excluded.weight""",
            (type, keyword, float(weight)),
        )
        self.conn.commit()
        cursor.execute("SELECT * FROM user_preferences WHERE type = ? AND keyword = ?", (type, keyword))
        return _row(cursor.fetchone())

    def get_all_preferences(self, type: Optional[str] = None) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        if type:
            cursor.execute("SELECT * FROM user_preferences WHERE type = ? ORDER BY weight DESC, keyword", (type,))
        else:
            cursor.execute("SELECT * FROM user_preferences ORDER BY type, weight DESC, keyword")
        return _rows(cursor.fetchall())

    def remove_preference(self, preference_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM user_preferences WHERE id = ?", (preference_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Persisted settings

    def get_config_value(self, key: str) -> Optional[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row["value"] if row else None

    def set_config_value(self, key: str, value: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT INTO config (key, value, updated_at) VALUES (?, ?, datetime('now'))
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (key, value),
        )
        self.conn.commit()
        return True

    def delete_config_value(self, key: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM config WHERE key = ?", (key,))
        self.conn.commit()
        return cursor.rowcount > 0

    def get_all_config(self) -> Dict[str, Optional[str]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT key, value FROM config ORDER BY key")
        return {row["key"]: row["value"] for row in cursor.fetchall()}

    # Reporting

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate counts for the status view."""
        cursor = self.conn.cursor()
        stats: Dict[str, Any] = {}

        cursor.execute("SELECT COALESCE(category, 'uncategorized') AS category, COUNT(*) AS count FROM feeds GROUP BY 1 ORDER BY 1")
        stats["feeds_by_category"] = {row["category"]: row["count"] for row in cursor.fetchall()}
        stats["feeds"] = sum(stats["feeds_by_category"].values())

        cursor.execute(
            """SELECT COUNT(*) AS total,
                      COALESCE(SUM(CASE WHEN analyzed_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS analyzed,
                      COALESCE(SUM(CASE WHEN is_interesting = 1 THEN 1 ELSE 0 END), 0) AS interesting,
                      COALESCE(SUM(CASE WHEN pub_date >= datetime('now', '-7 days') THEN 1 ELSE 0 END), 0) AS recent
               FROM articles"""
        )
        row = cursor.fetchone()
        stats["articles"] = {
            "total": row["total"],
            "analyzed": row["analyzed"],
            "unanalyzed": row["total"] - row["analyzed"],
            "interesting": row["interesting"],
            "last_7_days": row["recent"],
        }

        cursor.execute("SELECT type, COUNT(*) AS count FROM resources GROUP BY type ORDER BY count DESC")
        stats["resources_by_type"] = {row["type"]: row["count"] for row in cursor.fetchall()}

        cursor.execute("SELECT COUNT(*) FROM tags")
        stats["tags"] = cursor.fetchone()[0]

        cursor.execute(
            """SELECT COALESCE(SUM(direct_success_count), 0) AS direct,
                      COALESCE(SUM(proxy_success_count), 0) AS proxy FROM feeds"""
        )
        row = cursor.fetchone()
        stats["fetch_successes"] = {"direct": row["direct"], "proxy": row["proxy"]}
        return stats

    def reset_data(self) -> Dict[str, int]:
        """Delete articles, tags, resources and preferences in one transaction.

        Feeds and their fetch statistics are kept. Returns the rows removed per table.
        """
        removed: Dict[str, int] = {}
        cursor = self.conn.cursor()
        with self.conn:
            for table in (
                "article_resources", "article_tags", "resource_tags",
                "resources", "tags", "articles", "user_preferences",
            ):
                cursor.execute(f"DELETE FROM {table}")
                removed[table] = cursor.rowcount
        logger.info(f"Reset data: {removed}")
        return removed
