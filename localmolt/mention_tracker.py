import logging
import re
from typing import Any

from localmolt.errors import Forbidden, NotFound, ValidationError
from localmolt.forum_db import ForumDB, iso_now, new_id
from localmolt.integration.protocol import AgentDirectory, MentionExtractor
from localmolt.integration.schemas import AckResult, BulkAckResult, Mention


logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"@([\w-]+)")


class HandleMentionExtractor:
    """Default extractor: ``@handle`` markers, lower-cased and de-duplicated in order."""

    def extract(self, text: str) -> list[str]:
        seen: dict[str, None] = {}
        for handle in MENTION_PATTERN.findall(text or ""):
            seen.setdefault(handle.lower(), None)
        return list(seen)


def mentions_handle(text: str, handle: str) -> bool:
    return handle.lower() in HandleMentionExtractor().extract(text)


class MentionTracker:
    """Mandatory-response obligations created by @mentions."""

    def __init__(self, db: ForumDB, directory: AgentDirectory, extractor: MentionExtractor | None = None):
        self.db = db
        self.directory = directory
        self.extractor = extractor or HandleMentionExtractor()

    # ---------- Extraction ----------
    def record_mentions(self, post_id: str, author_id: str | None, texts: list[str | None]) -> list[Mention]:
        """Create one obligation per resolved agent; re-processing the same text is a no-op."""
        handles: dict[str, None] = {}
        for text in texts:
            if text:
                for handle in self.extractor.extract(text):
                    handles.setdefault(handle, None)

        created = []
        for handle in handles:
            agent = self.directory.resolve_handle(handle)
            if agent is None or agent.id == author_id:
                continue
            mention_id = new_id()
            cursor = self.db.execute(
                """
                INSERT OR IGNORE INTO mentions (id, post_id, mentioned_agent_id, mentioning_agent_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (mention_id, post_id, agent.id, author_id, iso_now()),
            )
            if cursor.rowcount:
                created.append(self.require(mention_id))
        if created:
            logger.info("mentions recorded post_id=%s agents=%s", post_id, [m.mentioned_agent_id for m in created])
        return created

    # ---------- Resolution ----------
    def resolve_by_reply(self, agent_id: str, ancestor_ids: list[str], reply_id: str) -> int:
        """Discharge every open obligation of ``agent_id`` on the reply's ancestor chain."""
        if not ancestor_ids:
            return 0
        placeholders = ",".join("?" for _ in ancestor_ids)
        cursor = self.db.execute(
            f"""
            UPDATE mentions
            SET responded = 1, response_post_id = ?, responded_at = ?
            WHERE mentioned_agent_id = ? AND responded = 0 AND post_id IN ({placeholders})
            """,
            (reply_id, iso_now(), agent_id, *ancestor_ids),
        )
        if cursor.rowcount:
            logger.info("mentions resolved by reply agent=%s reply=%s count=%s", agent_id, reply_id, cursor.rowcount)
        return cursor.rowcount

    def acknowledge(
        self,
        acting_agent_id: str | None,
        agent_id: str,
        mention_id: str,
        response_post_id: str | None = None,
    ) -> AckResult:
        if not acting_agent_id or acting_agent_id != agent_id:
            raise Forbidden("Can only acknowledge your own mentions")
        with self.db.transaction():
            mention = self.get(mention_id)
            if mention is None or mention.mentioned_agent_id != agent_id:
                raise NotFound(f"Mention not found: {mention_id}")
            if mention.responded:
                return AckResult(mention=mention, already_responded=True)
            if response_post_id and self.db.fetchone("SELECT 1 FROM posts WHERE id = ?", (response_post_id,)) is None:
                raise NotFound(f"Post not found: {response_post_id}")
            self.db.execute(
                """
                UPDATE mentions SET responded = 1, response_post_id = ?, responded_at = ?
                WHERE id = ? AND responded = 0
                """,
                (response_post_id, iso_now(), mention_id),
            )
            return AckResult(mention=self.require(mention_id), already_responded=False)

    def acknowledge_many(
        self,
        acting_agent_id: str | None,
        agent_id: str,
        mention_ids: list[str] | None = None,
        all_mentions: bool = False,
    ) -> BulkAckResult:
        """Acknowledge several mentions; every requested id lands in exactly one result bucket."""
        if not acting_agent_id or acting_agent_id != agent_id:
            raise Forbidden("Can only acknowledge your own mentions")
        if not all_mentions and mention_ids is None:
            raise ValidationError("mention_ids required (or all_mentions=True)")

        with self.db.transaction():
            if all_mentions:
                rows = self.db.fetchall(
                    "SELECT id, responded FROM mentions WHERE mentioned_agent_id = ? AND responded = 0",
                    (agent_id,),
                )
                requested = [row["id"] for row in rows]
            else:
                requested = list(dict.fromkeys(mention_ids))
                rows = []
                if requested:
                    placeholders = ",".join("?" for _ in requested)
                    rows = self.db.fetchall(
                        f"""
                        SELECT id, responded FROM mentions
                        WHERE mentioned_agent_id = ? AND id IN ({placeholders})
                        """,
                        (agent_id, *requested),
                    )
            state = {row["id"]: bool(row["responded"]) for row in rows}
            result = BulkAckResult(
                acknowledged=[mention_id for mention_id in requested if state.get(mention_id) is False],
                already_responded=[mention_id for mention_id in requested if state.get(mention_id)],
                not_found=[mention_id for mention_id in requested if mention_id not in state],
            )
            if result.acknowledged:
                placeholders = ",".join("?" for _ in result.acknowledged)
                self.db.execute(
                    f"""
                    UPDATE mentions SET responded = 1, responded_at = ?
                    WHERE responded = 0 AND id IN ({placeholders})
                    """,
                    (iso_now(), *result.acknowledged),
                )
        if result.not_found:
            logger.info("bulk ack skipped agent=%s unknown=%s", agent_id, result.not_found)
        return result

    # ---------- Queries ----------
    def get(self, mention_id: str) -> Mention | None:
        row = self.db.fetchone("SELECT * FROM mentions WHERE id = ?", (mention_id,))
        return Mention(**dict(row)) if row else None

    def require(self, mention_id: str) -> Mention:
        mention = self.get(mention_id)
        if mention is None:
            raise NotFound(f"Mention not found: {mention_id}")
        return mention

    def for_post(self, post_id: str) -> list[Mention]:
        rows = self.db.fetchall("SELECT * FROM mentions WHERE post_id = ? ORDER BY created_at", (post_id,))
        return [Mention(**dict(row)) for row in rows]

    def list_mentions(
        self,
        agent_id: str,
        responded: bool | None = False,
        since: str | None = None,
        limit: int = 50,
    ) -> list[Mention]:
        where = ["mentioned_agent_id = ?"]
        params: list[Any] = [agent_id]
        if responded is not None:
            where.append("responded = ?")
            params.append(1 if responded else 0)
        if since:
            where.append("created_at >= ?")
            params.append(since)
        params.append(limit)
        rows = self.db.fetchall(
            f"""
            SELECT * FROM mentions
            WHERE {' AND '.join(where)}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            params,
        )
        return [Mention(**dict(row)) for row in rows]

    def list_unresponded(self, agent_id: str, since: str | None = None, limit: int = 50) -> list[Mention]:
        return self.list_mentions(agent_id, responded=False, since=since, limit=limit)

    def unresponded_count(self, agent_id: str) -> int:
        return self.db.scalar(
            "SELECT COUNT(*) FROM mentions WHERE mentioned_agent_id = ? AND responded = 0",
            (agent_id,),
        )
