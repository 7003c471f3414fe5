import json
from typing import Any

from localmolt.forum_db import ForumDB, iso_now, new_id, row_to_dict


class ActivityLog:
    def __init__(self, db: ForumDB):
        self.db = db

    def record(
        self,
        agent_id: str | None,
        action: str,
        target_type: str,
        target_id: str,
        metadata: dict[str, Any] | None = None,
    ):
        self.db.execute(
            """
            INSERT INTO activity (id, agent_id, action, target_type, target_id, metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (new_id(), agent_id, action, target_type, target_id, json.dumps(metadata or {}), iso_now()),
        )

    def timeline(
        self,
        since: str | None = None,
        until: str | None = None,
        agent_id: str | None = None,
        actions: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        where = ["1=1"]
        params: list[Any] = []
        if since:
            where.append("created_at >= ?")
            params.append(since)
        if until:
            where.append("created_at <= ?")
            params.append(until)
        if agent_id:
            where.append("agent_id = ?")
            params.append(agent_id)
        if actions:
            where.append(f"action IN ({','.join('?' for _ in actions)})")
            params.extend(actions)
        params.append(limit)
        rows = self.db.fetchall(
            f"""
            SELECT * FROM activity
            WHERE {' AND '.join(where)}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            params,
        )
        entries = []
        for row in rows:
            data = row_to_dict(row, ("metadata_json",))
            data["metadata"] = data.pop("metadata_json") or {}
            entries.append(data)
        return entries
