"""PostgreSQL implementation of the per-user exclusion record store."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

import asyncpg

from visibility import config
from visibility.entity_refs import EntityRef, EntityType

if TYPE_CHECKING:
    from visibility.exclusion_graph import ExclusionRecord


class PostgresExclusionRepository:
    def __init__(self, db: asyncpg.Pool):
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
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM user_excluded_entities WHERE user_id = $1", user_id)
                for start in range(0, len(rows), batch_size):
                    await conn.executemany(
                        """INSERT INTO user_excluded_entities (user_id, entity_type, entity_id, instance_id, reason)
                           VALUES ($1, $2, $3, $4, $5)""",
                        rows[start:start + batch_size],
                    )
                if stats is not None:
                    await conn.executemany(
                        """INSERT INTO user_entity_stats (
                            user_id, entity_type, total_count, excluded_count, visible_count, updated_at
                        ) VALUES ($1, $2, $3, $4, $5, $6)
                        ON CONFLICT (user_id, entity_type) DO UPDATE SET
                            total_count=EXCLUDED.total_count,
                            excluded_count=EXCLUDED.excluded_count,
                            visible_count=EXCLUDED.visible_count,
                            updated_at=EXCLUDED.updated_at
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

    async def upsert_records(self, user_id: int, records: Iterable["ExclusionRecord"]) -> int:
        inserted = 0
        for r in records:
            status = await self.db.execute(
                """INSERT INTO user_excluded_entities (user_id, entity_type, entity_id, instance_id, reason)
                   VALUES ($1, $2, $3, $4, $5)
                   ON CONFLICT (user_id, entity_type, entity_id, instance_id) DO NOTHING""",
                user_id, r.entity_type.value, r.ref.id, r.ref.instance_id, r.reason.value,
            )
            inserted += int(status.split()[-1])
        return inserted

    async def delete_record(
        self,
        user_id: int,
        entity_type: EntityType,
        ref: EntityRef,
        reason: str | None = None,
    ) -> int:
        query = """DELETE FROM user_excluded_entities
                   WHERE user_id = $1 AND entity_type = $2 AND entity_id = $3 AND instance_id = $4"""
        params: list = [user_id, entity_type.value, ref.id, ref.instance_id]
        if reason is not None:
            query += " AND reason = $5"
            params.append(reason)
        status = await self.db.execute(query, *params)
        return int(status.split()[-1])

    async def list_for_user(self, user_id: int) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT entity_type, entity_id, instance_id, reason FROM user_excluded_entities
               WHERE user_id = $1 ORDER BY entity_type, entity_id, instance_id""",
            user_id,
        )
        return [dict(r) for r in rows]

    async def is_excluded(self, user_id: int, entity_type: EntityType, ref: EntityRef) -> bool:
        val = await self.db.fetchval(
            """SELECT 1 FROM user_excluded_entities
               WHERE user_id = $1 AND entity_type = $2 AND entity_id = $3
                 AND (instance_id = $4 OR instance_id = '')
               LIMIT 1""",
            user_id, entity_type.value, ref.id, ref.instance_id,
        )
        return val is not None

    async def list_refs(self, user_id: int, entity_type: EntityType) -> list[EntityRef]:
        rows = await self.db.fetch(
            """SELECT entity_id, instance_id FROM user_excluded_entities
               WHERE user_id = $1 AND entity_type = $2 ORDER BY entity_id, instance_id""",
            user_id, entity_type.value,
        )
        return [EntityRef(r["entity_id"], r["instance_id"] or "") for r in rows]

    async def get_stats(self, user_id: int) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT entity_type, total_count, excluded_count, visible_count, updated_at
               FROM user_entity_stats WHERE user_id = $1 ORDER BY entity_type""",
            user_id,
        )
        return [dict(r) for r in rows]
