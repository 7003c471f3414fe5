import logging

from localmolt.errors import NotFound, Unauthenticated, ValidationError
from localmolt.forum_db import ForumDB, iso_now
from localmolt.integration.schemas import Post, Vote, VoteResult
from localmolt.post_store import post_from_row


logger = logging.getLogger(__name__)

COUNTER_COLUMNS = {1: "upvotes", -1: "downvotes"}


class VoteLedger:
    """One vote per (post, voter); the source of truth for cached counters."""

    def __init__(self, db: ForumDB):
        self.db = db

    def apply_vote(self, post_id: str, voter_id: str | None, value: int) -> VoteResult:
        if not voter_id:
            raise Unauthenticated("Authentication required to vote")
        if value not in (1, -1, 0) or isinstance(value, bool):
            raise ValidationError("vote must be 1 (up), -1 (down), or 0 (remove)")

        with self.db.transaction():
            post_row = self.db.fetchone("SELECT * FROM posts WHERE id = ?", (post_id,))
            if post_row is None:
                raise NotFound(f"Post not found: {post_id}")
            existing = self.db.fetchone(
                "SELECT vote FROM votes WHERE post_id = ? AND agent_id = ?",
                (post_id, voter_id),
            )
            current = existing["vote"] if existing else None

            if current == value or (current is None and value == 0):
                message = "No vote to remove" if value == 0 else "Already voted"
                return VoteResult(post=post_from_row(post_row), vote=current, changed=False, message=message)

            if value == 0:
                self.db.execute("DELETE FROM votes WHERE post_id = ? AND agent_id = ?", (post_id, voter_id))
                self._shift_counter(post_id, current, -1)
            elif current is None:
                self.db.execute(
                    "INSERT INTO votes (post_id, agent_id, vote, created_at) VALUES (?, ?, ?, ?)",
                    (post_id, voter_id, value, iso_now()),
                )
                self._shift_counter(post_id, value, 1)
            else:
                self.db.execute(
                    "UPDATE votes SET vote = ?, created_at = ? WHERE post_id = ? AND agent_id = ?",
                    (value, iso_now(), post_id, voter_id),
                )
                self._shift_counter(post_id, current, -1)
                self._shift_counter(post_id, value, 1)

            updated = self.db.fetchone("SELECT * FROM posts WHERE id = ?", (post_id,))

        logger.info("vote applied post_id=%s voter=%s from=%s to=%s", post_id, voter_id, current, value)
        return VoteResult(post=post_from_row(updated), vote=value or None, changed=True)

    def _shift_counter(self, post_id: str, value: int, delta: int):
        column = COUNTER_COLUMNS[value]
        self.db.execute(
            f"UPDATE posts SET {column} = {column} + ? WHERE id = ?",
            (delta, post_id),
        )

    def get_vote(self, post_id: str, voter_id: str) -> Vote | None:
        row = self.db.fetchone(
            "SELECT * FROM votes WHERE post_id = ? AND agent_id = ?",
            (post_id, voter_id),
        )
        return Vote(**dict(row)) if row else None

    def list_voters(self, post_id: str, kind: str | None = None, limit: int = 100) -> list[Vote]:
        where = "post_id = ?"
        if kind == "up":
            where += " AND vote = 1"
        elif kind == "down":
            where += " AND vote = -1"
        elif kind is not None:
            raise ValidationError("kind must be 'up', 'down' or omitted")
        rows = self.db.fetchall(
            f"SELECT * FROM votes WHERE {where} ORDER BY created_at DESC LIMIT ?",
            (post_id, limit),
        )
        return [Vote(**dict(row)) for row in rows]

    def recount(self, post_id: str) -> Post:
        """Rebuild the cached counters of one post from the ledger."""
        with self.db.transaction():
            if self.db.fetchone("SELECT 1 FROM posts WHERE id = ?", (post_id,)) is None:
                raise NotFound(f"Post not found: {post_id}")
            self.db.execute(
                """
                UPDATE posts SET
                    upvotes = (SELECT COUNT(*) FROM votes WHERE post_id = posts.id AND vote = 1),
                    downvotes = (SELECT COUNT(*) FROM votes WHERE post_id = posts.id AND vote = -1)
                WHERE id = ?
                """,
                (post_id,),
            )
            row = self.db.fetchone("SELECT * FROM posts WHERE id = ?", (post_id,))
        return post_from_row(row)

    def recount_all(self) -> int:
        with self.db.transaction():
            cursor = self.db.execute(
                """
                UPDATE posts SET
                    upvotes = (SELECT COUNT(*) FROM votes WHERE post_id = posts.id AND vote = 1),
                    downvotes = (SELECT COUNT(*) FROM votes WHERE post_id = posts.id AND vote = -1)
                """
            )
        return cursor.rowcount
