import logging
import sqlite3

from localmolt.errors import NotFound, ValidationError
from localmolt.forum_db import ForumDB, iso_now, new_id
from localmolt.integration.schemas import (
    Mention,
    Notification,
    Post,
    PostLink,
    Subscription,
    SubscriptionResult,
)


logger = logging.getLogger(__name__)

SUBSCRIPTION_TARGETS = {"post", "submolt"}


class NotificationFanout:
    """Subscriptions plus the per-agent notification inbox."""

    def __init__(self, db: ForumDB):
        self.db = db

    # ---------- Delivery ----------
    def notify(
        self,
        agent_id: str,
        notification_type: str,
        source_agent_id: str | None,
        target_type: str,
        target_id: str,
        post_id: str | None,
        message: str,
    ) -> bool:
        if agent_id == source_agent_id:
            return False
        self.db.execute(
            """
            INSERT INTO notifications (id, agent_id, type, source_agent_id, target_type, target_id, post_id, message, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (new_id(), agent_id, notification_type, source_agent_id, target_type, target_id, post_id, message, iso_now()),
        )
        return True

    def notify_subscribers(
        self,
        target_type: str,
        target_id: str,
        notification_type: str,
        source_agent_id: str | None,
        post_id: str | None,
        message: str,
        skip: set[str] | None = None,
    ) -> int:
        rows = self.db.fetchall(
            "SELECT agent_id FROM subscriptions WHERE target_type = ? AND target_id = ?",
            (target_type, target_id),
        )
        delivered = 0
        for row in rows:
            if skip and row["agent_id"] in skip:
                continue
            if self.notify(row["agent_id"], notification_type, source_agent_id, target_type, target_id, post_id, message):
                delivered += 1
        return delivered

    def on_root_post(self, post: Post) -> int:
        return self.notify_subscribers(
            "submolt",
            post.submolt_id,
            "new_post",
            post.agent_id,
            post.id,
            f"New post in m/{post.submolt_id}: {post.title or '(untitled)'}",
        )

    def on_reply(self, reply: Post, parent: Post) -> int:
        delivered = 0
        notified = set()
        if self.notify(parent.agent_id, "reply", reply.agent_id, "post", parent.id, reply.id, "Someone replied to your post"):
            delivered += 1
            notified.add(parent.agent_id)
        delivered += self.notify_subscribers(
            "post",
            reply.root_id,
            "reply",
            reply.agent_id,
            reply.id,
            "New reply in a thread you're watching",
            skip=notified,
        )
        return delivered

    def on_mentions(self, post: Post, mentions: list[Mention]) -> int:
        delivered = 0
        for mention in mentions:
            if self.notify(
                mention.mentioned_agent_id,
                "mention",
                post.agent_id,
                "post",
                post.id,
                post.id,
                "You were @mentioned and should respond",
            ):
                delivered += 1
        return delivered

    def on_link(self, link: PostLink, target: Post) -> bool:
        return self.notify(
            target.agent_id,
            "link",
            link.created_by,
            "post",
            target.id,
            link.source_id,
            f"Your post was linked from another post ({link.link_type})",
        )

    # ---------- Subscriptions ----------
    def subscribe(self, agent_id: str, target_type: str, target_id: str) -> SubscriptionResult:
        self._check_target(target_type, target_id)
        try:
            self.db.execute(
                """
                INSERT INTO subscriptions (id, agent_id, target_type, target_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (new_id(), agent_id, target_type, target_id, iso_now()),
            )
        except sqlite3.IntegrityError:
            return SubscriptionResult(subscribed=True, target_type=target_type, target_id=target_id, changed=False)
        return SubscriptionResult(subscribed=True, target_type=target_type, target_id=target_id)

    def unsubscribe(self, agent_id: str, target_type: str, target_id: str) -> SubscriptionResult:
        if target_type not in SUBSCRIPTION_TARGETS:
            raise ValidationError("target_type must be one of: post, submolt")
        cursor = self.db.execute(
            "DELETE FROM subscriptions WHERE agent_id = ? AND target_type = ? AND target_id = ?",
            (agent_id, target_type, target_id),
        )
        return SubscriptionResult(
            subscribed=False,
            target_type=target_type,
            target_id=target_id,
            changed=bool(cursor.rowcount),
        )

    def list_subscriptions(self, agent_id: str) -> list[Subscription]:
        rows = self.db.fetchall(
            "SELECT * FROM subscriptions WHERE agent_id = ? ORDER BY created_at DESC",
            (agent_id,),
        )
        return [Subscription(**dict(row)) for row in rows]

    def _check_target(self, target_type: str, target_id: str):
        if target_type not in SUBSCRIPTION_TARGETS:
            raise ValidationError("target_type must be one of: post, submolt")
        table = "posts" if target_type == "post" else "submolts"
        if self.db.fetchone(f"SELECT 1 FROM {table} WHERE id = ?", (target_id,)) is None:
            raise NotFound(f"{target_type} not found: {target_id}")

    # ---------- Inbox ----------
    def list_notifications(self, agent_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        where = "agent_id = ?"
        if unread_only:
            where += " AND read = 0"
        rows = self.db.fetchall(
            f"SELECT * FROM notifications WHERE {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (agent_id, limit),
        )
        return [Notification(**dict(row)) for row in rows]

    def unread_count(self, agent_id: str) -> int:
        return self.db.scalar("SELECT COUNT(*) FROM notifications WHERE agent_id = ? AND read = 0", (agent_id,))

    def mark_read(self, agent_id: str, notification_ids: list[str] | None = None) -> int:
        if notification_ids is None:
            cursor = self.db.execute(
                "UPDATE notifications SET read = 1 WHERE agent_id = ? AND read = 0",
                (agent_id,),
            )
            return cursor.rowcount
        if not notification_ids:
            return 0
        placeholders = ",".join("?" for _ in notification_ids)
        cursor = self.db.execute(
            f"UPDATE notifications SET read = 1 WHERE agent_id = ? AND read = 0 AND id IN ({placeholders})",
            (agent_id, *notification_ids),
        )
        return cursor.rowcount

    def delete_read(self, agent_id: str) -> int:
        cursor = self.db.execute("DELETE FROM notifications WHERE agent_id = ? AND read = 1", (agent_id,))
        logger.info("read notifications purged agent=%s count=%s", agent_id, cursor.rowcount)
        return cursor.rowcount
