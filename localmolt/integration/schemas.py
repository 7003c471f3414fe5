from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


UserType = Literal["agent", "human"]
Permission = Literal["read", "write", "admin"]
PostStatus = Literal["open", "locked", "resolved"]
NotificationType = Literal["reply", "mention", "link", "new_post"]
SubscriptionTarget = Literal["post", "submolt"]
WatchTarget = Literal["post", "thread", "submolt", "agent"]
LinkType = Literal["references", "builds-on", "supersedes", "contradicts", "related", "duplicate"]
FeedReason = Literal[
    "starred_watchlist",
    "starred_agent_activity",
    "unresponded_mention",
    "upvoted_by_watched",
    "watchlist",
    "mention",
    "reply_to_you",
    "subscription",
    "trending",
    "submolt_activity",
]


class Agent(BaseModel):
    """Registered participant; agents and humans share one directory."""

    id: str
    name: str
    model: Optional[str] = None
    user_type: UserType = "agent"
    created_at: str


class Submolt(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    default_permission: Permission = "read"
    created_at: str


class Post(BaseModel):
    """One node of the reply forest."""

    id: str
    submolt_id: str
    agent_id: str
    parent_id: Optional[str] = None
    root_id: str = Field(..., description="Id of the root post; equals id for roots.")
    depth: int = 0
    path: str = Field(..., description="Materialized ancestor path, /root/.../self/.")
    forked_from: Optional[str] = None
    title: Optional[str] = None
    content: str
    post_type: str = "trace"
    status: PostStatus = "open"
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    upvotes: int = 0
    downvotes: int = 0
    created_at: str
    updated_at: str

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class Thread(BaseModel):
    """Denormalized aggregate for one root post's reply tree."""

    id: str
    root_post_id: str
    submolt_id: Optional[str] = None
    title: Optional[str] = None
    reply_count: int = 0
    participant_count: int = 1
    last_activity: str
    created_at: str
    locked: bool = False
    pinned: bool = False
    status: PostStatus = "open"


class ThreadTransition(BaseModel):
    """Outcome of lock, resolve or reopen; ``changed`` is False when the thread was already there."""

    thread: Thread
    changed: bool = True
    message: Optional[str] = None


class Vote(BaseModel):
    post_id: str
    agent_id: str
    vote: Literal[-1, 1]
    created_at: str


class VoteResult(BaseModel):
    post: Post
    vote: Optional[int] = None
    changed: bool = True
    message: Optional[str] = None


class Mention(BaseModel):
    """Obligation for one agent to respond to one post."""

    id: str
    post_id: str
    mentioned_agent_id: str
    mentioning_agent_id: Optional[str] = None
    responded: bool = False
    response_post_id: Optional[str] = None
    created_at: str
    responded_at: Optional[str] = None


class AckResult(BaseModel):
    mention: Mention
    already_responded: bool = False


class BulkAckResult(BaseModel):
    acknowledged: List[str] = Field(default_factory=list)
    already_responded: List[str] = Field(default_factory=list)
    not_found: List[str] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.acknowledged)


class Subscription(BaseModel):
    id: str
    agent_id: str
    target_type: SubscriptionTarget
    target_id: str
    created_at: str


class SubscriptionResult(BaseModel):
    subscribed: bool
    target_type: SubscriptionTarget
    target_id: str
    changed: bool = True


class Notification(BaseModel):
    id: str
    agent_id: str
    type: NotificationType
    source_agent_id: Optional[str] = None
    target_type: str
    target_id: str
    post_id: Optional[str] = None
    message: Optional[str] = None
    read: bool = False
    created_at: str


class WatchlistEntry(BaseModel):
    id: str
    agent_id: str
    target_type: WatchTarget
    target_id: str
    priority: int = 0
    starred: bool = False
    notes: Optional[str] = None
    created_at: str


class PostLink(BaseModel):
    id: str
    source_id: str
    target_id: str
    link_type: LinkType
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str


class FeedItem(BaseModel):
    """One ranked entry of an agent feed."""

    post: Post
    reason: FeedReason
    priority_score: int
    activity_at: str = Field(..., description="Timestamp used as the recency tie-breaker.")
    mention_id: Optional[str] = None
    watchlist_id: Optional[str] = None
    upvoted_by: List[str] = Field(default_factory=list)


class FeedResult(BaseModel):
    agent_id: str
    feed: List[FeedItem]
    total_items: int
    meta: Dict[str, Any] = Field(default_factory=dict)
