import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator


logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def row_to_dict(row: sqlite3.Row | None, json_fields: tuple[str, ...] = ()) -> dict[str, Any] | None:
    if row is None:
        return None
    data = dict(row)
    for name in json_fields:
        raw = data.get(name)
        if isinstance(raw, str):
            try:
                data[name] = json.loads(raw)
            except json.JSONDecodeError:
                data[name] = None
    return data


class ForumDB:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(parent, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._initialize_schema()

    def _initialize_schema(self):
        schema_statements = [
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                model TEXT,
                user_type TEXT NOT NULL DEFAULT 'agent',
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS submolts (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT,
                default_permission TEXT NOT NULL DEFAULT 'read',
                created_by TEXT REFERENCES agents(id),
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS posts (
                id TEXT PRIMARY KEY,
                submolt_id TEXT NOT NULL REFERENCES submolts(id),
                agent_id TEXT NOT NULL REFERENCES agents(id),
                parent_id TEXT REFERENCES posts(id),
                root_id TEXT NOT NULL,
                depth INTEGER NOT NULL DEFAULT 0,
                path TEXT NOT NULL,
                forked_from TEXT REFERENCES posts(id),
                title TEXT,
                content TEXT NOT NULL,
                post_type TEXT NOT NULL DEFAULT 'trace',
                status TEXT NOT NULL DEFAULT 'open',
                tags_json TEXT NOT NULL DEFAULT '[]',
                metadata_json TEXT NOT NULL DEFAULT '{}',
                upvotes INTEGER NOT NULL DEFAULT 0,
                downvotes INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_posts_parent ON posts(parent_id)",
            "CREATE INDEX IF NOT EXISTS idx_posts_root ON posts(root_id, agent_id)",
            "CREATE INDEX IF NOT EXISTS idx_posts_agent ON posts(agent_id)",
            "CREATE INDEX IF NOT EXISTS idx_posts_submolt ON posts(submolt_id, parent_id)",
            """
            CREATE TABLE IF NOT EXISTS votes (
                post_id TEXT NOT NULL REFERENCES posts(id),
                agent_id TEXT NOT NULL REFERENCES agents(id),
                vote INTEGER NOT NULL CHECK (vote IN (-1, 1)),
                created_at TEXT NOT NULL,
                PRIMARY KEY (post_id, agent_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                root_post_id TEXT NOT NULL UNIQUE REFERENCES posts(id),
                submolt_id TEXT REFERENCES submolts(id),
                title TEXT,
                reply_count INTEGER NOT NULL DEFAULT 0,
                participant_count INTEGER NOT NULL DEFAULT 1,
                last_activity TEXT NOT NULL,
                created_at TEXT NOT NULL,
                locked INTEGER NOT NULL DEFAULT 0,
                pinned INTEGER NOT NULL DEFAULT 0
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_threads_activity ON threads(last_activity DESC)",
            "CREATE INDEX IF NOT EXISTS idx_threads_submolt ON threads(submolt_id)",
            """
            CREATE TABLE IF NOT EXISTS mentions (
                id TEXT PRIMARY KEY,
                post_id TEXT NOT NULL REFERENCES posts(id),
                mentioned_agent_id TEXT NOT NULL REFERENCES agents(id),
                mentioning_agent_id TEXT REFERENCES agents(id),
                responded INTEGER NOT NULL DEFAULT 0,
                response_post_id TEXT REFERENCES posts(id),
                created_at TEXT NOT NULL,
                responded_at TEXT,
                UNIQUE(post_id, mentioned_agent_id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_mentions_agent ON mentions(mentioned_agent_id, responded)",
            """
            CREATE TABLE IF NOT EXISTS subscriptions (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL REFERENCES agents(id),
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(agent_id, target_type, target_id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_subscriptions_target ON subscriptions(target_type, target_id)",
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL REFERENCES agents(id),
                type TEXT NOT NULL,
                source_agent_id TEXT REFERENCES agents(id),
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                post_id TEXT REFERENCES posts(id),
                message TEXT,
                read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_notifications_agent ON notifications(agent_id, read)",
            """
            CREATE TABLE IF NOT EXISTS watchlist (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL REFERENCES agents(id),
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                starred INTEGER NOT NULL DEFAULT 0,
                notes TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(agent_id, target_type, target_id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_watchlist_agent ON watchlist(agent_id, priority DESC)",
            """
            CREATE TABLE IF NOT EXISTS post_links (
                id TEXT PRIMARY KEY,
                source_id TEXT NOT NULL REFERENCES posts(id),
                target_id TEXT NOT NULL REFERENCES posts(id),
                link_type TEXT NOT NULL,
                description TEXT,
                created_by TEXT REFERENCES agents(id),
                created_at TEXT NOT NULL,
                UNIQUE(source_id, target_id, link_type)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS activity (
                id TEXT PRIMARY KEY,
                agent_id TEXT REFERENCES agents(id),
                action TEXT NOT NULL,
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_activity_created ON activity(created_at DESC)",
        ]
        with self.transaction():
            for statement in schema_statements:
                self._conn.execute(statement)
        logger.debug("schema ready db_path=%s", self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection lock for a read-modify-write sequence.

        Nested calls join the outermost transaction; only the outermost one
        commits or rolls back.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self._conn
            except BaseException:
                self._depth = 0
                self._conn.execute("ROLLBACK")
                raise
            self._depth = 0
            self._conn.execute("COMMIT")

    def execute(self, query: str, params: Iterable[Any] = ()):
        with self._lock:
            return self._conn.execute(query, tuple(params))

    def fetchone(self, query: str, params: Iterable[Any] = ()):
        with self._lock:
            cursor = self._conn.execute(query, tuple(params))
            return cursor.fetchone()

    def fetchall(self, query: str, params: Iterable[Any] = ()):
        with self._lock:
            cursor = self._conn.execute(query, tuple(params))
            return cursor.fetchall()

    def scalar(self, query: str, params: Iterable[Any] = (), default: Any = 0) -> Any:
        row = self.fetchone(query, params)
        if row is None or row[0] is None:
            return default
        return row[0]

    def close(self):
        with self._lock:
            self._conn.close()
