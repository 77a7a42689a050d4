"""SQLite implementation of the per-user exclusion record store."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

import aiosqlite

from visibility import config
from visibility.db.connection import write_lock
from visibility.entity_refs import EntityRef, EntityType

if TYPE_CHECKING:
    from visibility.exclusion_graph import ExclusionRecord


class SqliteExclusionRepository:
    """Computed exclusions and visibility stats.

    Rows are only ever replaced wholesale per user or appended; readers take
    the connection's write lock so they never observe an open replace.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def replace_for_user(
        self,
        user_id: int,
        records: Iterable["ExclusionRecord"],
        stats: list[dict] | None = None,
    ) -> None:
        rows = [
            (user_id, r.entity_type.value, r.ref.id, r.ref.instance_id, r.reason.value)
            for r in records
        ]
        now = datetime.now(timezone.utc).isoformat()
        batch_size = config.EXCLUSION_INSERT_BATCH_SIZE
        async with write_lock(self.db):
            try:
                await self.db.execute("DELETE FROM user_excluded_entities WHERE user_id = ?", (user_id,))
                for start in range(0, len(rows), batch_size):
                    await self.db.executemany(
                        """INSERT INTO user_excluded_entities (user_id, entity_type, entity_id, instance_id, reason)
                           VALUES (?, ?, ?, ?, ?)""",
                        rows[start:start + batch_size],
                    )
                if stats is not None:
                    await self.db.executemany(
                        """INSERT INTO user_entity_stats (
                            user_id, entity_type, total_count, excluded_count, visible_count, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, entity_type) DO UPDATE SET
                            total_count=excluded.total_count,
                            excluded_count=excluded.excluded_count,
                            visible_count=excluded.visible_count,
                            updated_at=excluded.updated_at
                        """,
                        [
                            (
                                user_id,
                                s["entity_type"],
                                s["total_count"],
                                s["excluded_count"],
                                s["visible_count"],
                                now,
                            )
                            for s in stats
                        ],
                    )
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

    async def upsert_records(self, user_id: int, records: Iterable["ExclusionRecord"]) -> int:
        """Append records, keeping any existing row (and reason) for the same key."""
        inserted = 0
        async with write_lock(self.db):
            for r in records:
                cur = await self.db.execute(
                    """INSERT INTO user_excluded_entities (user_id, entity_type, entity_id, instance_id, reason)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(user_id, entity_type, entity_id, instance_id) DO NOTHING""",
                    (user_id, r.entity_type.value, r.ref.id, r.ref.instance_id, r.reason.value),
                )
                await self.db.commit()
                inserted += max(cur.rowcount, 0)
        return inserted

    async def delete_record(
        self,
        user_id: int,
        entity_type: EntityType,
        ref: EntityRef,
        reason: str | None = None,
    ) -> int:
        query = """DELETE FROM user_excluded_entities
                   WHERE user_id = ? AND entity_type = ? AND entity_id = ? AND instance_id = ?"""
        params: list = [user_id, entity_type.value, ref.id, ref.instance_id]
        if reason is not None:
            query += " AND reason = ?"
            params.append(reason)
        async with write_lock(self.db):
            cur = await self.db.execute(query, params)
            await self.db.commit()
            return cur.rowcount

    async def list_for_user(self, user_id: int) -> list[dict]:
        async with write_lock(self.db):
            async with self.db.execute(
                """SELECT entity_type, entity_id, instance_id, reason FROM user_excluded_entities
                   WHERE user_id = ? ORDER BY entity_type, entity_id, instance_id""",
                (user_id,),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]

    async def is_excluded(self, user_id: int, entity_type: EntityType, ref: EntityRef) -> bool:
        async with write_lock(self.db):
            async with self.db.execute(
                """SELECT 1 FROM user_excluded_entities
                   WHERE user_id = ? AND entity_type = ? AND entity_id = ?
                     AND (instance_id = ? OR instance_id = '')
                   LIMIT 1""",
                (user_id, entity_type.value, ref.id, ref.instance_id),
            ) as cur:
                return await cur.fetchone() is not None

    async def list_refs(self, user_id: int, entity_type: EntityType) -> list[EntityRef]:
        async with write_lock(self.db):
            async with self.db.execute(
                """SELECT entity_id, instance_id FROM user_excluded_entities
                   WHERE user_id = ? AND entity_type = ? ORDER BY entity_id, instance_id""",
                (user_id, entity_type.value),
            ) as cur:
                return [EntityRef(r[0], r[1] or "") for r in await cur.fetchall()]

    async def get_stats(self, user_id: int) -> list[dict]:
        async with write_lock(self.db):
            async with self.db.execute(
                """SELECT entity_type, total_count, excluded_count, visible_count, updated_at
                   FROM user_entity_stats WHERE user_id = ? ORDER BY entity_type""",
                (user_id,),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
