"""PostgreSQL implementation of content restriction and hidden-entity storage."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg


class PostgresRestrictionRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def list_user_ids(self) -> list[int]:
        rows = await self.db.fetch("SELECT id FROM users ORDER BY id")
        return [int(r["id"]) for r in rows]

    async def list_restrictions(self, user_id: int) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT id, user_id, entity_type, mode, entity_ids, restrict_empty, updated_at
               FROM user_content_restrictions WHERE user_id = $1 ORDER BY id""",
            user_id,
        )
        result = []
        for r in rows:
            row = dict(r)
            row["restrict_empty"] = bool(row["restrict_empty"])
            row["updated_at"] = row["updated_at"].isoformat() if row["updated_at"] else ""
            result.append(row)
        return result

    async def replace_restrictions(self, user_id: int, restrictions: list[dict]) -> None:
        now = datetime.now(timezone.utc)
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM user_content_restrictions WHERE user_id = $1", user_id)
                await conn.executemany(
                    """INSERT INTO user_content_restrictions (
                        user_id, entity_type, mode, entity_ids, restrict_empty, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)""",
                    [
                        (
                            user_id,
                            r["entity_type"],
                            r.get("mode", "EXCLUDE"),
                            json.dumps(list(r.get("entity_ids") or [])),
                            bool(r.get("restrict_empty")),
                            now,
                            now,
                        )
                        for r in restrictions
                    ],
                )

    async def delete_restrictions(self, user_id: int) -> int:
        status = await self.db.execute("DELETE FROM user_content_restrictions WHERE user_id = $1", user_id)
        return int(status.split()[-1])

    async def list_hidden(self, user_id: int) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT entity_type, entity_id, instance_id, hidden_at
               FROM user_hidden_entities WHERE user_id = $1
               ORDER BY hidden_at, entity_type, entity_id, instance_id""",
            user_id,
        )
        return [dict(r) for r in rows]

    async def add_hidden(self, user_id: int, entity_type: str, entity_id: str, instance_id: str = "") -> bool:
        status = await self.db.execute(
            """INSERT INTO user_hidden_entities (user_id, entity_type, entity_id, instance_id)
               VALUES ($1, $2, $3, $4)
               ON CONFLICT (user_id, entity_type, entity_id, instance_id) DO NOTHING""",
            user_id, entity_type, entity_id, instance_id,
        )
        return status.split()[-1] != "0"

    async def remove_hidden(self, user_id: int, entity_type: str, entity_id: str, instance_id: str = "") -> bool:
        status = await self.db.execute(
            """DELETE FROM user_hidden_entities
               WHERE user_id = $1 AND entity_type = $2 AND entity_id = $3 AND instance_id = $4""",
            user_id, entity_type, entity_id, instance_id,
        )
        return status.split()[-1] != "0"
