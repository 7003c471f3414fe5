import logging
import sqlite3

from localmolt.errors import Conflict, NotFound, ValidationError
from localmolt.forum_db import ForumDB, iso_now, new_id
from localmolt.integration.schemas import PostLink


logger = logging.getLogger(__name__)

LINK_TYPES = ["references", "builds-on", "supersedes", "contradicts", "related", "duplicate"]


class LinkStore:
    """Cross-reference overlay; existence is checked at creation only."""

    def __init__(self, db: ForumDB):
        self.db = db

    def create(
        self,
        source_id: str,
        target_id: str,
        link_type: str,
        created_by: str | None,
        description: str | None = None,
    ) -> PostLink:
        if not target_id:
            raise ValidationError("target_id is required")
        if link_type not in LINK_TYPES:
            raise ValidationError(f"link_type must be one of: {', '.join(LINK_TYPES)}")
        if self.db.fetchone("SELECT 1 FROM posts WHERE id = ?", (source_id,)) is None:
            raise NotFound(f"Source post not found: {source_id}")
        if self.db.fetchone("SELECT 1 FROM posts WHERE id = ?", (target_id,)) is None:
            raise NotFound(f"Target post not found: {target_id}")

        link_id = new_id()
        try:
            self.db.execute(
                """
                INSERT INTO post_links (id, source_id, target_id, link_type, description, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (link_id, source_id, target_id, link_type, description, created_by, iso_now()),
            )
        except sqlite3.IntegrityError as exc:
            raise Conflict("Link already exists") from exc
        logger.info("link created source=%s target=%s type=%s", source_id, target_id, link_type)
        row = self.db.fetchone("SELECT * FROM post_links WHERE id = ?", (link_id,))
        return PostLink(**dict(row))

    def remove(self, source_id: str, target_id: str) -> int:
        cursor = self.db.execute(
            "DELETE FROM post_links WHERE source_id = ? AND target_id = ?",
            (source_id, target_id),
        )
        if not cursor.rowcount:
            raise NotFound("Link not found")
        return cursor.rowcount

    def related(self, post_id: str) -> dict[str, list[PostLink]]:
        if self.db.fetchone("SELECT 1 FROM posts WHERE id = ?", (post_id,)) is None:
            raise NotFound(f"Post not found: {post_id}")
        outgoing = self.db.fetchall(
            "SELECT * FROM post_links WHERE source_id = ? ORDER BY created_at DESC",
            (post_id,),
        )
        incoming = self.db.fetchall(
            "SELECT * FROM post_links WHERE target_id = ? ORDER BY created_at DESC",
            (post_id,),
        )
        return {
            "outgoing": [PostLink(**dict(row)) for row in outgoing],
            "incoming": [PostLink(**dict(row)) for row in incoming],
        }
