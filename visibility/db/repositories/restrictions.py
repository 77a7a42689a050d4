"""SQLite implementation of content restriction and hidden-entity storage."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from visibility.db.connection import write_lock


class SqliteRestrictionRepository:
    """Admin restrictions and user-hidden entities, per user."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_user_ids(self) -> list[int]:
        async with self.db.execute("SELECT id FROM users ORDER BY id") as cur:
            return [int(r[0]) for r in await cur.fetchall()]

    async def list_restrictions(self, user_id: int) -> list[dict]:
        async with self.db.execute(
            """SELECT id, user_id, entity_type, mode, entity_ids, restrict_empty, updated_at
               FROM user_content_restrictions WHERE user_id = ? ORDER BY id""",
            (user_id,),
        ) as cur:
            rows = [dict(r) for r in await cur.fetchall()]
        for row in rows:
            row["restrict_empty"] = bool(row["restrict_empty"])
        return rows

    async def replace_restrictions(self, user_id: int, restrictions: list[dict]) -> None:
        """Swap all of a user's restriction rows in one transaction."""
        now = datetime.now(timezone.utc).isoformat()
        async with write_lock(self.db):
            try:
                await self.db.execute("DELETE FROM user_content_restrictions WHERE user_id = ?", (user_id,))
                await self.db.executemany(
                    """INSERT INTO user_content_restrictions (
                        user_id, entity_type, mode, entity_ids, restrict_empty, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    [
                        (
                            user_id,
                            r["entity_type"],
                            r.get("mode", "EXCLUDE"),
                            json.dumps(list(r.get("entity_ids") or [])),
                            1 if r.get("restrict_empty") else 0,
                            now,
                            now,
                        )
                        for r in restrictions
                    ],
                )
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

    async def delete_restrictions(self, user_id: int) -> int:
        async with write_lock(self.db):
            cur = await self.db.execute("DELETE FROM user_content_restrictions WHERE user_id = ?", (user_id,))
            await self.db.commit()
            return cur.rowcount

    async def list_hidden(self, user_id: int) -> list[dict]:
        async with self.db.execute(
            """SELECT entity_type, entity_id, instance_id, hidden_at
               FROM user_hidden_entities WHERE user_id = ?
               ORDER BY hidden_at, entity_type, entity_id, instance_id""",
            (user_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def add_hidden(self, user_id: int, entity_type: str, entity_id: str, instance_id: str = "") -> bool:
        now = datetime.now(timezone.utc).isoformat()
        async with write_lock(self.db):
            cur = await self.db.execute(
                """INSERT INTO user_hidden_entities (user_id, entity_type, entity_id, instance_id, hidden_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, entity_type, entity_id, instance_id) DO NOTHING""",
                (user_id, entity_type, entity_id, instance_id, now),
            )
            await self.db.commit()
            return cur.rowcount > 0

    async def remove_hidden(self, user_id: int, entity_type: str, entity_id: str, instance_id: str = "") -> bool:
        async with write_lock(self.db):
            cur = await self.db.execute(
                """DELETE FROM user_hidden_entities
                   WHERE user_id = ? AND entity_type = ? AND entity_id = ? AND instance_id = ?""",
                (user_id, entity_type, entity_id, instance_id),
            )
            await self.db.commit()
            return cur.rowcount > 0
