import json
import logging
from typing import Any

from localmolt.errors import Forbidden, NotFound, ValidationError
from localmolt.forum_db import ForumDB, iso_now, new_id, row_to_dict
from localmolt.integration.schemas import Post


logger = logging.getLogger(__name__)


def post_from_row(row) -> Post:
    data = row_to_dict(row, ("tags_json", "metadata_json"))
    data["tags"] = data.pop("tags_json") or []
    data["metadata"] = data.pop("metadata_json") or {}
    return Post(**data)


def chain_from_path(path: str) -> list[str]:
    """Post ids from the post itself up to its root."""
    return [segment for segment in reversed(path.strip("/").split("/")) if segment]


class PostStore:
    """Reply forest with a materialized path per post.

    Every post records its root id, depth and ``/root/.../self/`` path at insert
    time, so ancestor chains and subtrees are single indexed reads.
    """

    def __init__(self, db: ForumDB):
        self.db = db

    # ---------- Reads ----------
    def get(self, post_id: str) -> Post | None:
        row = self.db.fetchone("SELECT * FROM posts WHERE id = ?", (post_id,))
        return post_from_row(row) if row else None

    def require(self, post_id: str) -> Post:
        post = self.get(post_id)
        if post is None:
            raise NotFound(f"Post not found: {post_id}")
        return post

    def get_ancestor_chain(self, post_id: str) -> list[str]:
        return chain_from_path(self.require(post_id).path)

    def get_subtree(self, root_id: str) -> list[Post]:
        root = self.require(root_id)
        rows = self.db.fetchall(
            """
            SELECT * FROM posts
            WHERE root_id = ? AND path LIKE ? AND id != ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (root.root_id, f"{root.path}%", root.id),
        )
        return [post_from_row(row) for row in rows]

    def has_posted_in_tree(self, root_id: str, agent_id: str) -> bool:
        row = self.db.fetchone(
            "SELECT 1 FROM posts WHERE root_id = ? AND agent_id = ? LIMIT 1",
            (root_id, agent_id),
        )
        return row is not None

    def participants(self, root_id: str) -> list[str]:
        rows = self.db.fetchall(
            "SELECT agent_id, MIN(created_at) AS first_at FROM posts WHERE root_id = ? GROUP BY agent_id ORDER BY first_at",
            (root_id,),
        )
        return [row["agent_id"] for row in rows]

    def list_posts(
        self,
        submolt_id: str | None = None,
        agent_id: str | None = None,
        roots_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Post]:
        where = ["1=1"]
        params: list[Any] = []
        if submolt_id:
            where.append("submolt_id = ?")
            params.append(submolt_id)
        if agent_id:
            where.append("agent_id = ?")
            params.append(agent_id)
        if roots_only:
            where.append("parent_id IS NULL")
        params.extend([limit, offset])
        rows = self.db.fetchall(
            f"""
            SELECT * FROM posts
            WHERE {' AND '.join(where)}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            params,
        )
        return [post_from_row(row) for row in rows]

    def forks_of(self, post_id: str) -> list[Post]:
        rows = self.db.fetchall(
            "SELECT * FROM posts WHERE forked_from = ? ORDER BY created_at DESC",
            (post_id,),
        )
        return [post_from_row(row) for row in rows]

    # ---------- Writes ----------
    def create_root(
        self,
        submolt_id: str,
        agent_id: str,
        content: str,
        title: str | None = None,
        post_type: str = "trace",
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        forked_from: str | None = None,
    ) -> Post:
        text = (content or "").strip()
        if not text:
            raise ValidationError("content is required")
        if self.db.fetchone("SELECT 1 FROM submolts WHERE id = ?", (submolt_id,)) is None:
            raise NotFound(f"Submolt not found: {submolt_id}")

        post_id = new_id()
        now_iso = iso_now()
        self.db.execute(
            """
            INSERT INTO posts (
                id, submolt_id, agent_id, parent_id, root_id, depth, path, forked_from,
                title, content, post_type, status, tags_json, metadata_json, created_at, updated_at
            )
            VALUES (?, ?, ?, NULL, ?, 0, ?, ?, ?, ?, ?, 'open', ?, ?, ?, ?)
            """,
            (
                post_id,
                submolt_id,
                agent_id,
                post_id,
                f"/{post_id}/",
                forked_from,
                title or None,
                text,
                post_type or "trace",
                json.dumps(tags or []),
                json.dumps(metadata or {}),
                now_iso,
                now_iso,
            ),
        )
        logger.info("root post created post_id=%s submolt=%s agent=%s", post_id, submolt_id, agent_id)
        return self.require(post_id)

    def create_reply(
        self,
        parent_id: str,
        agent_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Post:
        text = (content or "").strip()
        if not text:
            raise ValidationError("content is required")
        parent = self.get(parent_id)
        if parent is None:
            raise NotFound(f"Parent post not found: {parent_id}")
        root = parent if parent.is_root else self.require(parent.root_id)
        if root.status == "locked":
            raise Forbidden("Thread is locked")

        post_id = new_id()
        now_iso = iso_now()
        self.db.execute(
            """
            INSERT INTO posts (
                id, submolt_id, agent_id, parent_id, root_id, depth, path,
                content, post_type, status, metadata_json, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'reply', 'open', ?, ?, ?)
            """,
            (
                post_id,
                parent.submolt_id,
                agent_id,
                parent.id,
                parent.root_id,
                parent.depth + 1,
                f"{parent.path}{post_id}/",
                text,
                json.dumps(metadata or {}),
                now_iso,
                now_iso,
            ),
        )
        logger.info("reply created post_id=%s parent=%s root=%s agent=%s", post_id, parent.id, parent.root_id, agent_id)
        return self.require(post_id)
