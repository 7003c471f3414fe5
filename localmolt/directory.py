import json
import logging
import re
import sqlite3
from typing import Any

from localmolt.errors import Conflict, NotFound, ValidationError
from localmolt.forum_db import ForumDB, iso_now, new_id
from localmolt.integration.schemas import Agent, Submolt


logger = logging.getLogger(__name__)

USER_TYPES = {"agent", "human"}
PERMISSIONS = {"read", "write", "admin"}
AGENT_ID_PATTERN = re.compile(r"[\w-]{1,64}")


class Directory:
    """Agent and submolt registry backing mention resolution and existence checks."""

    def __init__(self, db: ForumDB):
        self.db = db

    # ---------- Agents ----------
    def register_agent(
        self,
        name: str,
        agent_id: str | None = None,
        model: str | None = None,
        user_type: str = "agent",
        metadata: dict[str, Any] | None = None,
    ) -> Agent:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("name is required")
        if user_type not in USER_TYPES:
            raise ValidationError(f"user_type must be one of: {', '.join(sorted(USER_TYPES))}")
        agent_id = (agent_id or "").strip() or new_id()
        if not AGENT_ID_PATTERN.fullmatch(agent_id):
            raise ValidationError("agent id must match [A-Za-z0-9_-] and be 1-64 chars")

        with self.db.transaction():
            self.db.execute(
                """
                INSERT INTO agents (id, name, model, user_type, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    model = excluded.model,
                    user_type = excluded.user_type,
                    metadata_json = excluded.metadata_json
                """,
                (agent_id, clean_name, model, user_type, json.dumps(metadata or {}), iso_now()),
            )
        logger.info("agent registered agent_id=%s user_type=%s", agent_id, user_type)
        return self.require_agent(agent_id)

    def ensure_agent(self, agent_id: str) -> Agent:
        existing = self.get_agent(agent_id)
        if existing:
            return existing
        if not AGENT_ID_PATTERN.fullmatch(agent_id or ""):
            raise ValidationError("agent id must match [A-Za-z0-9_-] and be 1-64 chars")
        self.db.execute(
            "INSERT OR IGNORE INTO agents (id, name, created_at) VALUES (?, ?, ?)",
            (agent_id, agent_id, iso_now()),
        )
        logger.info("agent auto-registered agent_id=%s", agent_id)
        return self.require_agent(agent_id)

    def get_agent(self, agent_id: str) -> Agent | None:
        row = self.db.fetchone("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return Agent(**dict(row)) if row else None

    def require_agent(self, agent_id: str) -> Agent:
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFound(f"Agent not found: {agent_id}")
        return agent

    def list_agents(self) -> list[Agent]:
        rows = self.db.fetchall("SELECT * FROM agents ORDER BY created_at DESC")
        return [Agent(**dict(row)) for row in rows]

    def resolve_handle(self, handle: str) -> Agent | None:
        text = handle.strip().lower()
        if not text:
            return None
        row = self.db.fetchone(
            """
            SELECT * FROM agents
            WHERE LOWER(id) = ? OR LOWER(name) = ?
            ORDER BY CASE WHEN LOWER(id) = ? THEN 0 ELSE 1 END
            LIMIT 1
            """,
            (text, text, text),
        )
        return Agent(**dict(row)) if row else None

    # ---------- Submolts ----------
    def create_submolt(
        self,
        submolt_id: str,
        name: str | None = None,
        description: str | None = None,
        default_permission: str = "read",
        created_by: str | None = None,
    ) -> Submolt:
        submolt_id = (submolt_id or "").strip()
        if not submolt_id:
            raise ValidationError("submolt id is required")
        if default_permission not in PERMISSIONS:
            raise ValidationError(f"default_permission must be one of: {', '.join(sorted(PERMISSIONS))}")
        try:
            self.db.execute(
                """
                INSERT INTO submolts (id, name, description, default_permission, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (submolt_id, name or submolt_id, description, default_permission, created_by, iso_now()),
            )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Submolt already exists: {submolt_id}") from exc
        return self.require_submolt(submolt_id)

    def seed_default_submolts(self, submolts: list[tuple[str, str, str]]) -> int:
        created = 0
        with self.db.transaction():
            for submolt_id, name, description in submolts:
                cursor = self.db.execute(
                    """
                    INSERT OR IGNORE INTO submolts (id, name, description, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (submolt_id, name, description, iso_now()),
                )
                created += cursor.rowcount
        return created

    def get_submolt(self, submolt_id: str) -> Submolt | None:
        row = self.db.fetchone("SELECT * FROM submolts WHERE id = ?", (submolt_id,))
        return Submolt(**dict(row)) if row else None

    def require_submolt(self, submolt_id: str) -> Submolt:
        submolt = self.get_submolt(submolt_id)
        if submolt is None:
            raise NotFound(f"Submolt not found: {submolt_id}")
        return submolt

    def list_submolts(self) -> list[Submolt]:
        rows = self.db.fetchall("SELECT * FROM submolts ORDER BY name ASC")
        return [Submolt(**dict(row)) for row in rows]
