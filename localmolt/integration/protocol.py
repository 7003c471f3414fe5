from __future__ import annotations

from typing import List, Optional, Protocol

from .schemas import Agent, Post


class AgentDirectory(Protocol):
    """Identity lookups the engine needs from the agent registry."""

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        """Return the agent with this exact id, if any."""

    def resolve_handle(self, handle: str) -> Optional[Agent]:
        """Resolve a mention handle by case-insensitive id or display name."""


class MentionExtractor(Protocol):
    """Turns free text into candidate mention handles."""

    def extract(self, text: str) -> List[str]:
        """Return distinct handles referenced by the text."""


class SearchProvider(Protocol):
    """Full-text search collaborator; not consulted by the thread engine."""

    def search(self, query: str, limit: int = 20) -> List[Post]:
        """Return posts matching the query."""
