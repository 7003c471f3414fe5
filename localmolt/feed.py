"""Personalized feed ranking.

Candidate facts are loaded once into a read-only ``FeedSnapshot``; ``rank_feed``
is a pure function over that snapshot so ranking can be exercised with
synthetic inputs. Each source has a base tier; an item's score is

    tier + watchlist priority + net_score * 5

and an item reachable from several sources keeps its best score.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from localmolt.errors import NotFound, ValidationError
from localmolt.forum_db import ForumDB
from localmolt.integration.schemas import (
    FeedItem,
    FeedResult,
    Mention,
    Post,
    Subscription,
    Thread,
    WatchlistEntry,
)
from localmolt.mention_tracker import mentions_handle
from localmolt.post_store import post_from_row
from localmolt.thread_aggregator import THREAD_SELECT


logger = logging.getLogger(__name__)

TIERS = {
    "starred_watchlist": 100,
    "starred_agent_activity": 95,
    "unresponded_mention": 90,
    "upvoted_by_watched": 85,
    "watchlist": 80,
    "mention": 70,
    "reply_to_you": 60,
    "subscription": 50,
    "trending": 40,
    "submolt_activity": 30,
}

# per-source caps; None keeps every candidate
SOURCE_CAPS = {
    "starred_watchlist": None,
    "starred_agent_activity": 20,
    "unresponded_mention": None,
    "upvoted_by_watched": 20,
    "watchlist": None,
    "mention": 20,
    "reply_to_you": 20,
    "subscription": 30,
    "trending": 15,
    "submolt_activity": 30,
}

VOTE_WEIGHT = 5
SOURCE_FETCH_LIMIT = 100


@dataclass(frozen=True)
class FeedSnapshot:
    """Everything the ranking needs about one agent, read at one instant."""

    agent_id: str
    since: str | None = None
    posts: dict[str, Post] = field(default_factory=dict)
    threads: dict[str, Thread] = field(default_factory=dict)
    watchlist: tuple[WatchlistEntry, ...] = ()
    unresponded: tuple[Mention, ...] = ()
    subscriptions: tuple[Subscription, ...] = ()
    watched_upvotes: dict[str, tuple[str, ...]] = field(default_factory=dict)
    parent_authors: dict[str, str] = field(default_factory=dict)
    caller_submolts: frozenset[str] = frozenset()
    trending_min_score: int = 3

    def thread_for(self, target_id: str) -> Thread | None:
        thread = self.threads.get(target_id)
        if thread:
            return thread
        for candidate in self.threads.values():
            if candidate.id == target_id:
                return candidate
        return None

    def is_new(self, timestamp: str) -> bool:
        return self.since is None or timestamp > self.since

    @property
    def watched_agent_ids(self) -> list[str]:
        return [entry.target_id for entry in self.watchlist if entry.target_type == "agent"]


def _item(post: Post, reason: str, adjustment: int = 0, activity_at: str | None = None, **extra: Any) -> FeedItem:
    return FeedItem(
        post=post,
        reason=reason,
        priority_score=TIERS[reason] + adjustment + post.score * VOTE_WEIGHT,
        activity_at=activity_at or post.created_at,
        **extra,
    )


def _sort_key(item: FeedItem) -> tuple[int, str]:
    return (item.priority_score, item.activity_at)


def _capped(reason: str, items: Iterable[FeedItem]) -> list[FeedItem]:
    ordered = sorted(items, key=_sort_key, reverse=True)
    cap = SOURCE_CAPS[reason]
    return ordered if cap is None else ordered[:cap]


def _roots(snapshot: FeedSnapshot, predicate: Callable[[Post], bool]) -> list[Post]:
    return [
        post
        for post in snapshot.posts.values()
        if post.is_root and snapshot.is_new(post.created_at) and predicate(post)
    ]


def _watched_threads(snapshot: FeedSnapshot, starred: bool) -> list[FeedItem]:
    reason = "starred_watchlist" if starred else "watchlist"
    items = []
    for entry in snapshot.watchlist:
        if entry.target_type != "thread" or entry.starred != starred:
            continue
        thread = snapshot.thread_for(entry.target_id)
        post = snapshot.posts.get(thread.root_post_id) if thread else None
        if post is None or not snapshot.is_new(thread.last_activity):
            continue
        items.append(_item(post, reason, entry.priority, thread.last_activity, watchlist_id=entry.id))
    return _capped(reason, items)


def _starred_agents(snapshot: FeedSnapshot) -> list[FeedItem]:
    priorities = {
        entry.target_id: entry
        for entry in snapshot.watchlist
        if entry.target_type == "agent" and entry.starred
    }
    items = [
        _item(post, "starred_agent_activity", priorities[post.agent_id].priority, watchlist_id=priorities[post.agent_id].id)
        for post in _roots(snapshot, lambda post: post.agent_id in priorities)
    ]
    return _capped("starred_agent_activity", items)


def _unresponded_mentions(snapshot: FeedSnapshot) -> list[FeedItem]:
    items = []
    for mention in snapshot.unresponded:
        post = snapshot.posts.get(mention.post_id)
        if post is not None:
            items.append(_item(post, "unresponded_mention", mention_id=mention.id))
    return _capped("unresponded_mention", items)


def _upvoted_by_watched(snapshot: FeedSnapshot) -> list[FeedItem]:
    items = [
        _item(post, "upvoted_by_watched", upvoted_by=list(snapshot.watched_upvotes[post.id]))
        for post in _roots(
            snapshot,
            lambda post: post.agent_id != snapshot.agent_id and bool(snapshot.watched_upvotes.get(post.id)),
        )
    ]
    return _capped("upvoted_by_watched", items)


def _text_mentions(snapshot: FeedSnapshot) -> list[FeedItem]:
    items = [
        _item(post, "mention")
        for post in snapshot.posts.values()
        if snapshot.is_new(post.created_at) and mentions_handle(post.content, snapshot.agent_id)
    ]
    return _capped("mention", items)


def _replies_to_caller(snapshot: FeedSnapshot) -> list[FeedItem]:
    items = [
        _item(post, "reply_to_you")
        for post in snapshot.posts.values()
        if not post.is_root
        and post.agent_id != snapshot.agent_id
        and snapshot.parent_authors.get(post.id) == snapshot.agent_id
        and snapshot.is_new(post.created_at)
    ]
    return _capped("reply_to_you", items)


def _subscribed(snapshot: FeedSnapshot) -> list[FeedItem]:
    watched_posts = {sub.target_id for sub in snapshot.subscriptions if sub.target_type == "post"}
    watched_submolts = {sub.target_id for sub in snapshot.subscriptions if sub.target_type == "submolt"}

    def matches(post: Post) -> bool:
        if post.is_root and post.submolt_id in watched_submolts:
            return True
        return any(f"/{target}/" in post.path for target in watched_posts if target != post.id)

    items = [
        _item(post, "subscription")
        for post in snapshot.posts.values()
        if post.agent_id != snapshot.agent_id and snapshot.is_new(post.created_at) and matches(post)
    ]
    return _capped("subscription", items)


def _trending(snapshot: FeedSnapshot) -> list[FeedItem]:
    items = [
        _item(post, "trending")
        for post in _roots(snapshot, lambda post: post.score >= snapshot.trending_min_score)
    ]
    return _capped("trending", items)


def _submolt_activity(snapshot: FeedSnapshot) -> list[FeedItem]:
    items = [
        _item(post, "submolt_activity")
        for post in _roots(
            snapshot,
            lambda post: post.submolt_id in snapshot.caller_submolts and post.agent_id != snapshot.agent_id,
        )
    ]
    return _capped("submolt_activity", items)


SOURCES: list[Callable[[FeedSnapshot], list[FeedItem]]] = [
    lambda snapshot: _watched_threads(snapshot, starred=True),
    _starred_agents,
    _unresponded_mentions,
    _upvoted_by_watched,
    lambda snapshot: _watched_threads(snapshot, starred=False),
    _text_mentions,
    _replies_to_caller,
    _subscribed,
    _trending,
    _submolt_activity,
]


def rank_feed(snapshot: FeedSnapshot, limit: int) -> list[FeedItem]:
    best: dict[str, FeedItem] = {}
    for source in SOURCES:
        for item in source(snapshot):
            current = best.get(item.post.id)
            if current is None or item.priority_score > current.priority_score:
                best[item.post.id] = item
    ranked = sorted(best.values(), key=_sort_key, reverse=True)
    return ranked[: max(0, limit)]


class FeedEngine:
    """Loads a snapshot from the stores and ranks it; never writes."""

    def __init__(self, db: ForumDB, trending_min_score: int = 3):
        self.db = db
        self.trending_min_score = trending_min_score

    def compute_feed(self, agent_id: str, since: str | None = None, limit: int = 50) -> FeedResult:
        if limit < 0:
            raise ValidationError("limit must be non-negative")
        if self.db.fetchone("SELECT 1 FROM agents WHERE id = ?", (agent_id,)) is None:
            raise NotFound(f"Agent not found: {agent_id}")
        snapshot = self.load_snapshot(agent_id, since)
        feed = rank_feed(snapshot, limit)
        logger.debug("feed computed agent=%s candidates=%s returned=%s", agent_id, len(snapshot.posts), len(feed))
        return FeedResult(
            agent_id=agent_id,
            feed=feed,
            total_items=len(feed),
            meta=self._meta(snapshot),
        )

    def _meta(self, snapshot: FeedSnapshot) -> dict[str, Any]:
        agent_id = snapshot.agent_id
        return {
            "watchlist_count": len(snapshot.watchlist),
            "starred_count": sum(1 for entry in snapshot.watchlist if entry.starred),
            "unread_notifications": self.db.scalar(
                "SELECT COUNT(*) FROM notifications WHERE agent_id = ? AND read = 0", (agent_id,)
            ),
            "unresponded_mentions": len(snapshot.unresponded),
            "watched_agents": snapshot.watched_agent_ids,
            "since": snapshot.since,
            "reasons": list(TIERS),
            "scoring": "tier + watchlist priority + (net score * 5) = priority_score",
        }

    # ---------- Snapshot loading ----------
    def load_snapshot(self, agent_id: str, since: str | None = None) -> FeedSnapshot:
        posts: dict[str, Post] = {}
        since_sql, since_params = ("AND p.created_at > ?", [since]) if since else ("", [])

        def collect(query: str, params: list[Any]) -> list[Post]:
            loaded = [post_from_row(row) for row in self.db.fetchall(query, params)]
            for post in loaded:
                posts[post.id] = post
            return loaded

        watchlist = tuple(
            WatchlistEntry(**dict(row))
            for row in self.db.fetchall("SELECT * FROM watchlist WHERE agent_id = ?", (agent_id,))
        )

        threads: dict[str, Thread] = {}
        thread_targets = [entry.target_id for entry in watchlist if entry.target_type == "thread"]
        if thread_targets:
            marks = ",".join("?" for _ in thread_targets)
            for row in self.db.fetchall(
                f"{THREAD_SELECT} WHERE t.id IN ({marks}) OR t.root_post_id IN ({marks})",
                thread_targets * 2,
            ):
                thread = Thread(**dict(row))
                threads[thread.root_post_id] = thread
            if threads:
                marks = ",".join("?" for _ in threads)
                collect(f"SELECT * FROM posts WHERE id IN ({marks})", list(threads))

        starred_agents = [e.target_id for e in watchlist if e.target_type == "agent" and e.starred]
        if starred_agents:
            marks = ",".join("?" for _ in starred_agents)
            collect(
                f"""
                SELECT p.* FROM posts p
                WHERE p.agent_id IN ({marks}) AND p.parent_id IS NULL {since_sql}
                ORDER BY (p.upvotes - p.downvotes) DESC, p.created_at DESC
                LIMIT ?
                """,
                [*starred_agents, *since_params, SOURCE_FETCH_LIMIT],
            )

        unresponded = tuple(
            Mention(**dict(row))
            for row in self.db.fetchall(
                "SELECT * FROM mentions WHERE mentioned_agent_id = ? AND responded = 0 ORDER BY created_at DESC",
                (agent_id,),
            )
        )
        if unresponded:
            marks = ",".join("?" for _ in unresponded)
            collect(f"SELECT * FROM posts WHERE id IN ({marks})", [m.post_id for m in unresponded])

        watched_upvotes: dict[str, tuple[str, ...]] = {}
        watched_agents = [e.target_id for e in watchlist if e.target_type == "agent"]
        if watched_agents:
            marks = ",".join("?" for _ in watched_agents)
            voters: dict[str, list[str]] = {}
            for row in self.db.fetchall(
                f"""
                SELECT v.post_id, v.agent_id FROM votes v
                JOIN posts p ON p.id = v.post_id AND p.parent_id IS NULL
                WHERE v.vote = 1 AND v.agent_id IN ({marks}) AND p.agent_id != ? {since_sql}
                """,
                [*watched_agents, agent_id, *since_params],
            ):
                voters.setdefault(row["post_id"], []).append(row["agent_id"])
            watched_upvotes = {post_id: tuple(ids) for post_id, ids in voters.items()}
            if voters:
                marks = ",".join("?" for _ in voters)
                collect(f"SELECT * FROM posts WHERE id IN ({marks})", list(voters))

        collect(
            f"""
            SELECT p.* FROM posts p
            WHERE p.content LIKE ? {since_sql}
            ORDER BY (p.upvotes - p.downvotes) DESC, p.created_at DESC
            LIMIT ?
            """,
            [f"%@{agent_id}%", *since_params, SOURCE_FETCH_LIMIT],
        )

        parent_authors: dict[str, str] = {}
        for row in self.db.fetchall(
            f"""
            SELECT p.*, parent.agent_id AS parent_agent_id
            FROM posts p
            JOIN posts parent ON parent.id = p.parent_id
            WHERE parent.agent_id = ? AND p.agent_id != ? {since_sql}
            ORDER BY (p.upvotes - p.downvotes) DESC, p.created_at DESC
            LIMIT ?
            """,
            [agent_id, agent_id, *since_params, SOURCE_FETCH_LIMIT],
        ):
            post = post_from_row(row)
            posts[post.id] = post
            parent_authors[post.id] = row["parent_agent_id"]

        subscriptions = tuple(
            Subscription(**dict(row))
            for row in self.db.fetchall("SELECT * FROM subscriptions WHERE agent_id = ?", (agent_id,))
        )
        for sub in subscriptions:
            if sub.target_type == "post":
                collect(
                    f"""
                    SELECT p.* FROM posts p
                    WHERE p.path LIKE ? AND p.id != ? AND p.agent_id != ? {since_sql}
                    ORDER BY p.created_at DESC
                    LIMIT ?
                    """,
                    [f"%/{sub.target_id}/%", sub.target_id, agent_id, *since_params, SOURCE_FETCH_LIMIT],
                )
            else:
                collect(
                    f"""
                    SELECT p.* FROM posts p
                    WHERE p.submolt_id = ? AND p.parent_id IS NULL AND p.agent_id != ? {since_sql}
                    ORDER BY p.created_at DESC
                    LIMIT ?
                    """,
                    [sub.target_id, agent_id, *since_params, SOURCE_FETCH_LIMIT],
                )

        collect(
            f"""
            SELECT p.* FROM posts p
            WHERE p.parent_id IS NULL AND (p.upvotes - p.downvotes) >= ? {since_sql}
            ORDER BY (p.upvotes - p.downvotes) DESC, p.created_at DESC
            LIMIT ?
            """,
            [self.trending_min_score, *since_params, SOURCE_FETCH_LIMIT],
        )

        caller_submolts = frozenset(
            row["submolt_id"]
            for row in self.db.fetchall("SELECT DISTINCT submolt_id FROM posts WHERE agent_id = ?", (agent_id,))
        )
        if caller_submolts:
            marks = ",".join("?" for _ in caller_submolts)
            collect(
                f"""
                SELECT p.* FROM posts p
                WHERE p.submolt_id IN ({marks}) AND p.parent_id IS NULL AND p.agent_id != ? {since_sql}
                ORDER BY (p.upvotes - p.downvotes) DESC, p.created_at DESC
                LIMIT ?
                """,
                [*caller_submolts, agent_id, *since_params, SOURCE_FETCH_LIMIT],
            )

        return FeedSnapshot(
            agent_id=agent_id,
            since=since,
            posts=posts,
            threads=threads,
            watchlist=watchlist,
            unresponded=unresponded,
            subscriptions=subscriptions,
            watched_upvotes=watched_upvotes,
            parent_authors=parent_authors,
            caller_submolts=caller_submolts,
            trending_min_score=self.trending_min_score,
        )
