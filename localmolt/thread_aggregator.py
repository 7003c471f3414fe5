import logging
from datetime import datetime, timezone
from typing import Any

from localmolt.errors import InvalidOperation, NotFound, ValidationError
from localmolt.forum_db import ForumDB, iso_now
from localmolt.integration.schemas import Post, Thread, ThreadTransition


logger = logging.getLogger(__name__)

# status transitions allowed for root posts, keyed by operation
TRANSITIONS = {
    "lock": ({"open"}, "locked"),
    "resolve": ({"open"}, "resolved"),
    "reopen": ({"locked", "resolved"}, "open"),
}

SORT_ORDERS = {
    "activity": "t.last_activity DESC",
    "created": "t.created_at DESC",
    "replies": "t.reply_count DESC, t.last_activity DESC",
    "top": "(p.upvotes - p.downvotes) DESC, t.last_activity DESC",
}

THREAD_SELECT = """
    SELECT t.*, p.status AS status, p.upvotes AS upvotes, p.downvotes AS downvotes
    FROM threads t
    JOIN posts p ON p.id = t.root_post_id
"""


def thread_id_for(root_post_id: str) -> str:
    return f"thr_{root_post_id}"


def _hot_score(row: dict[str, Any], now_hours: float) -> float:
    created = datetime.fromisoformat(row["created_at"]).timestamp() / 3600
    age_hours = max(0.0, now_hours - created)
    return (row["upvotes"] - row["downvotes"] + 1) / ((age_hours + 2) ** 1.5)


class ThreadAggregator:
    """Maintains the denormalized Thread record of every root post."""

    def __init__(self, db: ForumDB):
        self.db = db

    # ---------- Reads ----------
    def get(self, thread_or_root_id: str) -> Thread | None:
        row = self.db.fetchone(
            f"{THREAD_SELECT} WHERE t.id = ? OR t.root_post_id = ?",
            (thread_or_root_id, thread_or_root_id),
        )
        return Thread(**dict(row)) if row else None

    def require(self, thread_or_root_id: str) -> Thread:
        thread = self.get(thread_or_root_id)
        if thread is None:
            raise NotFound(f"Thread not found: {thread_or_root_id}")
        return thread

    def list_threads(
        self,
        submolt_id: str | None = None,
        sort: str = "activity",
        pinned_first: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Thread]:
        if sort not in SORT_ORDERS and sort != "hot":
            raise ValidationError("sort must be one of: activity, created, replies, top, hot")
        where = "1=1"
        params: list[Any] = []
        if submolt_id:
            where = "t.submolt_id = ?"
            params.append(submolt_id)

        if sort == "hot":
            rows = [dict(row) for row in self.db.fetchall(f"{THREAD_SELECT} WHERE {where}", params)]
            now_hours = datetime.now(timezone.utc).timestamp() / 3600
            rows.sort(key=lambda row: (row["pinned"] if pinned_first else 0, _hot_score(row, now_hours)), reverse=True)
            return [Thread(**row) for row in rows[offset : offset + limit]]

        order_by = SORT_ORDERS[sort]
        if pinned_first:
            order_by = f"t.pinned DESC, {order_by}"
        params.extend([limit, offset])
        rows = self.db.fetchall(
            f"{THREAD_SELECT} WHERE {where} ORDER BY {order_by} LIMIT ? OFFSET ?",
            params,
        )
        return [Thread(**dict(row)) for row in rows]

    # ---------- Writes ----------
    def create_thread(self, root: Post) -> Thread:
        self.db.execute(
            """
            INSERT INTO threads (
                id, root_post_id, submolt_id, title, reply_count, participant_count,
                last_activity, created_at
            )
            VALUES (?, ?, ?, ?, 0, 1, ?, ?)
            """,
            (thread_id_for(root.id), root.id, root.submolt_id, root.title, root.created_at, root.created_at),
        )
        return self.require(root.id)

    def record_reply(self, root_id: str, new_participant: bool, activity_at: str | None = None):
        """Fold one reply into the aggregate; callers hold the reply transaction."""
        self.db.execute(
            """
            UPDATE threads
            SET reply_count = reply_count + 1,
                participant_count = participant_count + ?,
                last_activity = ?
            WHERE root_post_id = ?
            """,
            (1 if new_participant else 0, activity_at or iso_now(), root_id),
        )

    def transition(self, root_post_id: str, operation: str) -> ThreadTransition:
        allowed_from, target = TRANSITIONS[operation]
        with self.db.transaction():
            row = self.db.fetchone("SELECT parent_id, status FROM posts WHERE id = ?", (root_post_id,))
            if row is None:
                raise NotFound(f"Post not found: {root_post_id}")
            if row["parent_id"] is not None:
                raise InvalidOperation(f"Only root posts can {operation} a thread")
            if row["status"] == target:
                return ThreadTransition(
                    thread=self.require(root_post_id),
                    changed=False,
                    message=f"Thread already {target}",
                )
            if row["status"] not in allowed_from:
                raise InvalidOperation(f"Cannot {operation} a thread that is {row['status']}")
            self.db.execute(
                "UPDATE posts SET status = ?, updated_at = ? WHERE id = ?",
                (target, iso_now(), root_post_id),
            )
            self.db.execute(
                "UPDATE threads SET locked = ? WHERE root_post_id = ?",
                (1 if target == "locked" else 0, root_post_id),
            )
            thread = self.require(root_post_id)
        logger.info("thread transition root=%s op=%s status=%s", root_post_id, operation, target)
        return ThreadTransition(thread=thread)

    def lock(self, root_post_id: str) -> ThreadTransition:
        return self.transition(root_post_id, "lock")

    def resolve(self, root_post_id: str) -> ThreadTransition:
        return self.transition(root_post_id, "resolve")

    def reopen(self, root_post_id: str) -> ThreadTransition:
        return self.transition(root_post_id, "reopen")

    def set_pinned(self, thread_or_root_id: str, pinned: bool) -> Thread:
        with self.db.transaction():
            thread = self.require(thread_or_root_id)
            self.db.execute("UPDATE threads SET pinned = ? WHERE id = ?", (1 if pinned else 0, thread.id))
            return self.require(thread.id)

    def recompute(self, root_id: str) -> Thread:
        """Rebuild counters from the subtree, the recovery path for drifted aggregates."""
        with self.db.transaction():
            stats = self.db.fetchone(
                """
                SELECT COUNT(*) - 1 AS replies,
                       COUNT(DISTINCT agent_id) AS participants,
                       MAX(created_at) AS last_activity
                FROM posts WHERE root_id = ?
                """,
                (root_id,),
            )
            if not stats or stats["last_activity"] is None:
                raise NotFound(f"Post not found: {root_id}")
            self.db.execute(
                """
                UPDATE threads
                SET reply_count = ?, participant_count = ?, last_activity = ?
                WHERE root_post_id = ?
                """,
                (stats["replies"], max(1, stats["participants"]), stats["last_activity"], root_id),
            )
            return self.require(root_id)

    def recompute_all(self) -> int:
        rows = self.db.fetchall("SELECT root_post_id FROM threads")
        for row in rows:
            self.recompute(row["root_post_id"])
        return len(rows)
