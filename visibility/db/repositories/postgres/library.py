"""PostgreSQL implementation of the cached library reads."""
from __future__ import annotations

import asyncpg

from visibility.entity_refs import EntityRef, EntityType
from visibility.db.repositories.relations import ENTITY_TABLES, junctions_for


class PostgresLibraryRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def list_refs(self, entity_type: EntityType) -> list[EntityRef]:
        table = ENTITY_TABLES[entity_type]
        rows = await self.db.fetch(
            f"SELECT id, instance_id FROM {table} WHERE deleted_at IS NULL ORDER BY id, instance_id"
        )
        return [EntityRef(str(r["id"]), r["instance_id"] or "") for r in rows]

    async def related_refs(
        self,
        source_type: EntityType,
        target_type: EntityType,
        scoped_refs: list[EntityRef],
        global_ids: list[str],
    ) -> list[EntityRef]:
        found: set[EntityRef] = set()
        for junction in junctions_for(source_type, target_type):
            live = f"{junction.live_filter} AND " if junction.live_filter else ""
            if scoped_refs:
                rows = await self.db.fetch(
                    f"""SELECT DISTINCT j.{junction.target_id} AS target_id, j.{junction.target_instance} AS target_instance
                        FROM {junction.table} j
                        JOIN unnest($1::text[], $2::text[]) AS s(source_id, source_instance)
                          ON j.{junction.source_id} = s.source_id AND j.{junction.source_instance} = s.source_instance
                        WHERE {live}TRUE""",
                    [r.id for r in scoped_refs],
                    [r.instance_id for r in scoped_refs],
                )
                found.update(EntityRef(str(r["target_id"]), r["target_instance"] or "") for r in rows)
            if global_ids:
                rows = await self.db.fetch(
                    f"""SELECT DISTINCT {junction.target_id} AS target_id FROM {junction.table}
                        WHERE {live}{junction.source_id} = ANY($1::text[])""",
                    list(global_ids),
                )
                found.update(EntityRef(str(r["target_id"]), "") for r in rows)
        return sorted(found)

    async def list_links(self, source_type: EntityType, target_type: EntityType) -> list[tuple[EntityRef, EntityRef]]:
        pairs: set[tuple[EntityRef, EntityRef]] = set()
        for junction in junctions_for(source_type, target_type):
            where = f"WHERE {junction.live_filter} AND {junction.source_id} IS NOT NULL" if junction.live_filter else ""
            rows = await self.db.fetch(
                f"""SELECT {junction.source_id} AS source_id, {junction.source_instance} AS source_instance,
                           {junction.target_id} AS target_id, {junction.target_instance} AS target_instance
                    FROM {junction.table} {where}"""
            )
            for r in rows:
                pairs.add((
                    EntityRef(str(r["source_id"]), r["source_instance"] or ""),
                    EntityRef(str(r["target_id"]), r["target_instance"] or ""),
                ))
        return sorted(pairs)
