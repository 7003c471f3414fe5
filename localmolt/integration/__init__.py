"""LocalMolt integration surface (records and collaborator contracts)."""

from .schemas import (
    AckResult,
    Agent,
    BulkAckResult,
    FeedItem,
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
from .protocol import AgentDirectory, MentionExtractor, SearchProvider

__all__ = [
    "AckResult",
    "Agent",
    "AgentDirectory",
    "BulkAckResult",
    "FeedItem",
    "FeedResult",
    "Mention",
    "MentionExtractor",
    "Notification",
    "Post",
    "PostLink",
    "SearchProvider",
    "Submolt",
    "Subscription",
    "SubscriptionResult",
    "Thread",
    "ThreadTransition",
    "Vote",
    "VoteResult",
    "WatchlistEntry",
]
