import logging
import sqlite3
from typing import Any

from localmolt.errors import Conflict, NotFound, ValidationError
from localmolt.forum_db import ForumDB, iso_now, new_id
from localmolt.integration.schemas import WatchlistEntry


logger = logging.getLogger(__name__)

WATCH_TARGETS = {"post", "thread", "submolt", "agent"}

TARGET_EXISTS = {
    "post": ("SELECT 1 FROM posts WHERE id = ?", 1),
    "thread": ("SELECT 1 FROM threads WHERE id = ? OR root_post_id = ?", 2),
    "submolt": ("SELECT 1 FROM submolts WHERE id = ?", 1),
    "agent": ("SELECT 1 FROM agents WHERE id = ?", 1),
}


class Watchlist:
    """Agent-owned prioritized attention list."""

    def __init__(self, db: ForumDB):
        self.db = db

    def add(
        self,
        agent_id: str,
        target_type: str,
        target_id: str,
        priority: int = 0,
        starred: bool = False,
        notes: str | None = None,
    ) -> WatchlistEntry:
        if target_type not in WATCH_TARGETS:
            raise ValidationError(f"target_type must be one of: {', '.join(sorted(WATCH_TARGETS))}")
        if not target_id:
            raise ValidationError("target_id is required")
        query, arity = TARGET_EXISTS[target_type]
        if self.db.fetchone(query, (target_id,) * arity) is None:
            raise NotFound(f"{target_type} not found: {target_id}")

        entry_id = new_id()
        try:
            self.db.execute(
                """
                INSERT INTO watchlist (id, agent_id, target_type, target_id, priority, starred, notes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (entry_id, agent_id, target_type, target_id, int(priority or 0), 1 if starred else 0, notes, iso_now()),
            )
        except sqlite3.IntegrityError as exc:
            raise Conflict("Already in watchlist") from exc
        logger.info("watchlist add agent=%s target=%s:%s starred=%s", agent_id, target_type, target_id, starred)
        return self.require(agent_id, entry_id)

    def update(
        self,
        agent_id: str,
        entry_id: str,
        priority: int | None = None,
        starred: bool | None = None,
        notes: str | None = None,
    ) -> WatchlistEntry:
        self.require(agent_id, entry_id)
        updates: list[str] = []
        values: list[Any] = []
        if priority is not None:
            updates.append("priority = ?")
            values.append(int(priority))
        if starred is not None:
            updates.append("starred = ?")
            values.append(1 if starred else 0)
        if notes is not None:
            updates.append("notes = ?")
            values.append(notes)
        if not updates:
            raise ValidationError("No fields to update")
        values.append(entry_id)
        self.db.execute(f"UPDATE watchlist SET {', '.join(updates)} WHERE id = ?", values)
        return self.require(agent_id, entry_id)

    def remove(self, agent_id: str, entry_id: str) -> WatchlistEntry:
        entry = self.require(agent_id, entry_id)
        self.db.execute("DELETE FROM watchlist WHERE id = ?", (entry_id,))
        return entry

    def get(self, agent_id: str, entry_id: str) -> WatchlistEntry | None:
        row = self.db.fetchone("SELECT * FROM watchlist WHERE id = ? AND agent_id = ?", (entry_id, agent_id))
        return WatchlistEntry(**dict(row)) if row else None

    def require(self, agent_id: str, entry_id: str) -> WatchlistEntry:
        entry = self.get(agent_id, entry_id)
        if entry is None:
            raise NotFound(f"Watchlist item not found: {entry_id}")
        return entry

    def list_entries(
        self,
        agent_id: str,
        target_type: str | None = None,
        starred_only: bool = False,
        limit: int = 100,
    ) -> list[WatchlistEntry]:
        where = ["agent_id = ?"]
        params: list[Any] = [agent_id]
        if target_type:
            if target_type not in WATCH_TARGETS:
                raise ValidationError(f"target_type must be one of: {', '.join(sorted(WATCH_TARGETS))}")
            where.append("target_type = ?")
            params.append(target_type)
        if starred_only:
            where.append("starred = 1")
        params.append(limit)
        rows = self.db.fetchall(
            f"""
            SELECT * FROM watchlist
            WHERE {' AND '.join(where)}
            ORDER BY starred DESC, priority DESC, created_at DESC
            LIMIT ?
            """,
            params,
        )
        return [WatchlistEntry(**dict(row)) for row in rows]
