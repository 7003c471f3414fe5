import logging
from typing import Any

from localmolt.activity import ActivityLog
from localmolt.directory import Directory
from localmolt.errors import Forbidden, NotFound, Unauthenticated, ValidationError
from localmolt.feed import FeedEngine
from localmolt.forum_config import ForumConfig
from localmolt.forum_db import ForumDB
from localmolt.integration.protocol import MentionExtractor
from localmolt.integration.schemas import (
    AckResult,
    Agent,
    BulkAckResult,
    FeedResult,
    Mention,
    Notification,
    Post,
    PostLink,
    Submolt,
    Subscription,
    SubscriptionResult,
    Thread,
    ThreadTransition,
    Vote,
    VoteResult,
    WatchlistEntry,
)
from localmolt.links import LinkStore
from localmolt.mention_tracker import MentionTracker
from localmolt.notifications import NotificationFanout
from localmolt.post_store import PostStore, chain_from_path
from localmolt.thread_aggregator import ThreadAggregator
from localmolt.vote_ledger import VoteLedger
from localmolt.watchlist import Watchlist


logger = logging.getLogger(__name__)


def _require_actor(agent_id: str | None, action: str = "perform this action") -> str:
    if not agent_id:
        raise Unauthenticated(f"Authentication required to {action}")
    return agent_id


class ForumService:
    """Operation boundary of the thread engine.

    Every write that touches a denormalized view (thread stats, vote counters,
    mention state) runs inside one ``ForumDB.transaction()`` together with the
    ledger mutation that caused it.
    """

    def __init__(self, config: ForumConfig, extractor: MentionExtractor | None = None):
        self.config = config
        self.db = ForumDB(config.db_path)
        self.directory = Directory(self.db)
        self.posts = PostStore(self.db)
        self.votes = VoteLedger(self.db)
        self.threads = ThreadAggregator(self.db)
        self.mentions = MentionTracker(self.db, self.directory, extractor)
        self.notifications = NotificationFanout(self.db)
        self.watchlist = Watchlist(self.db)
        self.links = LinkStore(self.db)
        self.activity = ActivityLog(self.db)
        self.feed = FeedEngine(self.db, trending_min_score=config.trending_min_score)

        if config.seed_submolts:
            self.directory.seed_default_submolts(config.submolts)

    def close(self):
        self.db.close()

    # ---------- Directory ----------
    def register_agent(
        self,
        name: str,
        agent_id: str | None = None,
        model: str | None = None,
        user_type: str = "agent",
    ) -> Agent:
        return self.directory.register_agent(name, agent_id=agent_id, model=model, user_type=user_type)

    def get_agent(self, agent_id: str) -> Agent:
        return self.directory.require_agent(agent_id)

    def list_agents(self) -> list[Agent]:
        return self.directory.list_agents()

    def create_submolt(
        self,
        submolt_id: str,
        name: str | None = None,
        description: str | None = None,
        default_permission: str = "read",
        created_by: str | None = None,
    ) -> Submolt:
        return self.directory.create_submolt(submolt_id, name, description, default_permission, created_by)

    def list_submolts(self) -> list[Submolt]:
        return self.directory.list_submolts()

    # ---------- Posts ----------
    def create_root_post(
        self,
        author_id: str | None,
        content: str,
        submolt_id: str | None = None,
        title: str | None = None,
        post_type: str = "trace",
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Post:
        author_id = _require_actor(author_id, "post")
        if not (content or "").strip():
            raise ValidationError("content is required")
        with self.db.transaction():
            self.directory.ensure_agent(author_id)
            post = self.posts.create_root(
                submolt_id or self.config.default_submolt,
                author_id,
                content,
                title=title,
                post_type=post_type,
                tags=tags,
                metadata=metadata,
            )
            self._index_root(post, "post")
        return post

    def fork_post(
        self,
        post_id: str,
        author_id: str | None,
        title: str | None = None,
        content: str | None = None,
    ) -> Post:
        author_id = _require_actor(author_id, "fork")
        with self.db.transaction():
            original = self.posts.require(post_id)
            self.directory.ensure_agent(author_id)
            fork = self.posts.create_root(
                original.submolt_id,
                author_id,
                content or f"Forked from [{original.title or original.id}]\n\n---\n\n{original.content}",
                title=title or f"Fork: {original.title or 'Untitled'}",
                post_type="fork",
                tags=original.tags,
                forked_from=original.id,
            )
            self._index_root(fork, "fork", forked_from=original.id)
        return fork

    def _index_root(self, post: Post, action: str, **metadata: Any):
        thread = self.threads.create_thread(post)
        created = self.mentions.record_mentions(post.id, post.agent_id, [post.content, post.title])
        self.notifications.on_root_post(post)
        self.notifications.on_mentions(post, created)
        self.activity.record(
            post.agent_id,
            action,
            "post",
            post.id,
            {"submolt": post.submolt_id, "title": post.title, "thread_id": thread.id, **metadata},
        )

    def create_reply(
        self,
        parent_id: str,
        author_id: str | None,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Post:
        author_id = _require_actor(author_id, "reply")
        with self.db.transaction():
            parent = self.posts.get(parent_id)
            if parent is None:
                raise NotFound(f"Parent post not found: {parent_id}")
            self.directory.ensure_agent(author_id)
            new_participant = not self.posts.has_posted_in_tree(parent.root_id, author_id)
            reply = self.posts.create_reply(parent.id, author_id, content, metadata=metadata)

            self.threads.record_reply(reply.root_id, new_participant, reply.created_at)
            created = self.mentions.record_mentions(reply.id, author_id, [reply.content])
            self.mentions.resolve_by_reply(author_id, chain_from_path(parent.path), reply.id)
            self.notifications.on_reply(reply, parent)
            self.notifications.on_mentions(reply, created)
            self.activity.record(author_id, "reply", "post", reply.id, {"parent_id": parent.id, "root_id": reply.root_id})
        return reply

    def get_post(self, post_id: str) -> Post:
        return self.posts.require(post_id)

    def get_post_detail(self, post_id: str) -> dict[str, Any]:
        post = self.posts.require(post_id)
        return {
            "post": post,
            "replies": self.posts.get_subtree(post.id),
            "ancestors": chain_from_path(post.path)[1:],
            "forked_from": self.posts.get(post.forked_from) if post.forked_from else None,
            "forks": self.posts.forks_of(post.id),
            "mentions": self.mentions.for_post(post.id),
        }

    def list_posts(self, submolt_id: str | None = None, agent_id: str | None = None, limit: int = 50) -> list[Post]:
        return self.posts.list_posts(submolt_id=submolt_id, agent_id=agent_id, limit=limit)

    # ---------- Votes ----------
    def apply_vote(self, post_id: str, voter_id: str | None, value: int) -> VoteResult:
        voter_id = _require_actor(voter_id, "vote")
        with self.db.transaction():
            self.directory.ensure_agent(voter_id)
            result = self.votes.apply_vote(post_id, voter_id, value)
            if result.changed:
                action = {1: "upvote", -1: "downvote", 0: "unvote"}[value]
                self.activity.record(voter_id, action, "post", post_id)
        return result

    def upvote(self, post_id: str, voter_id: str | None) -> VoteResult:
        return self.apply_vote(post_id, voter_id, 1)

    def downvote(self, post_id: str, voter_id: str | None) -> VoteResult:
        return self.apply_vote(post_id, voter_id, -1)

    def remove_vote(self, post_id: str, voter_id: str | None) -> VoteResult:
        return self.apply_vote(post_id, voter_id, 0)

    def get_vote(self, post_id: str, voter_id: str) -> Vote | None:
        self.posts.require(post_id)
        return self.votes.get_vote(post_id, voter_id)

    def list_voters(self, post_id: str, kind: str | None = None, limit: int = 100) -> list[Vote]:
        self.posts.require(post_id)
        return self.votes.list_voters(post_id, kind=kind, limit=limit)

    # ---------- Threads ----------
    def _transition(self, acting_agent_id: str | None, root_post_id: str, operation: str) -> ThreadTransition:
        acting_agent_id = _require_actor(acting_agent_id, f"{operation} a thread")
        with self.db.transaction():
            self.directory.ensure_agent(acting_agent_id)
            result = self.threads.transition(root_post_id, operation)
            if result.changed:
                self.activity.record(acting_agent_id, operation, "thread", result.thread.id)
        return result

    def lock_thread(self, acting_agent_id: str | None, root_post_id: str) -> ThreadTransition:
        return self._transition(acting_agent_id, root_post_id, "lock")

    def resolve_thread(self, acting_agent_id: str | None, root_post_id: str) -> ThreadTransition:
        return self._transition(acting_agent_id, root_post_id, "resolve")

    def reopen_thread(self, acting_agent_id: str | None, root_post_id: str) -> ThreadTransition:
        return self._transition(acting_agent_id, root_post_id, "reopen")

    def pin_thread(self, acting_agent_id: str | None, thread_id: str) -> Thread:
        _require_actor(acting_agent_id, "pin a thread")
        return self.threads.set_pinned(thread_id, True)

    def unpin_thread(self, acting_agent_id: str | None, thread_id: str) -> Thread:
        _require_actor(acting_agent_id, "unpin a thread")
        return self.threads.set_pinned(thread_id, False)

    def get_thread(self, thread_id: str) -> Thread:
        return self.threads.require(thread_id)

    def get_thread_detail(self, thread_id: str) -> dict[str, Any]:
        thread = self.threads.require(thread_id)
        participants = [
            self.directory.get_agent(agent_id) for agent_id in self.posts.participants(thread.root_post_id)
        ]
        return {
            "thread": thread,
            "root": self.posts.require(thread.root_post_id),
            "replies": self.posts.get_subtree(thread.root_post_id),
            "participants": [agent for agent in participants if agent is not None],
        }

    def list_threads(
        self,
        submolt_id: str | None = None,
        sort: str = "activity",
        pinned_first: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Thread]:
        return self.threads.list_threads(submolt_id, sort, pinned_first, limit, offset)

    # ---------- Mentions ----------
    def acknowledge_mention(
        self,
        acting_agent_id: str | None,
        agent_id: str,
        mention_id: str,
        response_post_id: str | None = None,
    ) -> AckResult:
        return self.mentions.acknowledge(acting_agent_id, agent_id, mention_id, response_post_id)

    def acknowledge_mentions(
        self,
        acting_agent_id: str | None,
        agent_id: str,
        mention_ids: list[str] | None = None,
        all_mentions: bool = False,
    ) -> BulkAckResult:
        return self.mentions.acknowledge_many(acting_agent_id, agent_id, mention_ids, all_mentions)

    def list_unresponded(self, agent_id: str, since: str | None = None, limit: int = 50) -> list[Mention]:
        return self.mentions.list_unresponded(agent_id, since=since, limit=limit)

    def list_mentions(
        self,
        agent_id: str,
        responded: bool | None = False,
        since: str | None = None,
        limit: int = 50,
    ) -> list[Mention]:
        return self.mentions.list_mentions(agent_id, responded=responded, since=since, limit=limit)

    # ---------- Subscriptions & notifications ----------
    def subscribe(self, agent_id: str | None, target_type: str, target_id: str) -> SubscriptionResult:
        agent_id = _require_actor(agent_id, "subscribe")
        with self.db.transaction():
            self.directory.ensure_agent(agent_id)
            return self.notifications.subscribe(agent_id, target_type, target_id)

    def unsubscribe(self, agent_id: str | None, target_type: str, target_id: str) -> SubscriptionResult:
        agent_id = _require_actor(agent_id, "unsubscribe")
        return self.notifications.unsubscribe(agent_id, target_type, target_id)

    def list_subscriptions(self, agent_id: str) -> list[Subscription]:
        return self.notifications.list_subscriptions(agent_id)

    def list_notifications(self, agent_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        return self.notifications.list_notifications(agent_id, unread_only=unread_only, limit=limit)

    def unread_count(self, agent_id: str) -> int:
        return self.notifications.unread_count(agent_id)

    def mark_read(self, agent_id: str, notification_ids: list[str] | None = None) -> int:
        return self.notifications.mark_read(agent_id, notification_ids)

    def delete_read_notifications(self, agent_id: str) -> int:
        return self.notifications.delete_read(agent_id)

    # ---------- Watchlist ----------
    def _require_owner(self, acting_agent_id: str | None, agent_id: str):
        _require_actor(acting_agent_id, "modify a watchlist")
        if acting_agent_id != agent_id:
            raise Forbidden("Can only modify your own watchlist")

    def upsert_watchlist(
        self,
        acting_agent_id: str | None,
        agent_id: str,
        target_type: str,
        target_id: str,
        priority: int = 0,
        starred: bool = False,
        notes: str | None = None,
    ) -> WatchlistEntry:
        self._require_owner(acting_agent_id, agent_id)
        with self.db.transaction():
            self.directory.ensure_agent(agent_id)
            return self.watchlist.add(agent_id, target_type, target_id, priority, starred, notes)

    def update_watchlist(
        self,
        acting_agent_id: str | None,
        agent_id: str,
        entry_id: str,
        priority: int | None = None,
        starred: bool | None = None,
        notes: str | None = None,
    ) -> WatchlistEntry:
        self._require_owner(acting_agent_id, agent_id)
        return self.watchlist.update(agent_id, entry_id, priority, starred, notes)

    def remove_watchlist(self, acting_agent_id: str | None, agent_id: str, entry_id: str) -> WatchlistEntry:
        self._require_owner(acting_agent_id, agent_id)
        return self.watchlist.remove(agent_id, entry_id)

    def list_watchlist(
        self,
        agent_id: str,
        target_type: str | None = None,
        starred_only: bool = False,
        limit: int = 100,
    ) -> list[WatchlistEntry]:
        return self.watchlist.list_entries(agent_id, target_type, starred_only, limit)

    # ---------- Cross-references ----------
    def create_link(
        self,
        source_id: str,
        target_id: str,
        link_type: str,
        created_by: str | None,
        description: str | None = None,
    ) -> PostLink:
        created_by = _require_actor(created_by, "link posts")
        with self.db.transaction():
            self.directory.ensure_agent(created_by)
            link = self.links.create(source_id, target_id, link_type, created_by, description)
            self.notifications.on_link(link, self.posts.require(target_id))
            self.activity.record(
                created_by,
                "link",
                "post_link",
                link.id,
                {"source": source_id, "target": target_id, "type": link_type},
            )
        return link

    def remove_link(self, acting_agent_id: str | None, source_id: str, target_id: str) -> int:
        acting_agent_id = _require_actor(acting_agent_id, "remove a link")
        removed = self.links.remove(source_id, target_id)
        if removed:
            logger.info("links removed by=%s source=%s target=%s count=%s", acting_agent_id, source_id, target_id, removed)
        return removed

    def related_posts(self, post_id: str) -> dict[str, list[PostLink]]:
        return self.links.related(post_id)

    # ---------- Feed & timeline ----------
    def compute_feed(self, agent_id: str, since: str | None = None, limit: int | None = None) -> FeedResult:
        limit = self.config.feed_limit if limit is None else min(limit, self.config.feed_max_limit)
        return self.feed.compute_feed(agent_id, since=since, limit=limit)

    def timeline(
        self,
        since: str | None = None,
        until: str | None = None,
        agent_id: str | None = None,
        actions: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        return self.activity.timeline(since, until, agent_id, actions, limit)

    # ---------- Maintenance ----------
    def recount_all(self, acting_agent_id: str | None) -> dict[str, int]:
        """Recompute every cached counter from its ledger."""
        acting_agent_id = _require_actor(acting_agent_id, "recount counters")
        posts = self.votes.recount_all()
        threads = self.threads.recompute_all()
        logger.info("recount finished by=%s posts=%s threads=%s", acting_agent_id, posts, threads)
        return {"posts": posts, "threads": threads}
