"""SQLite implementation of the cached library reads used by the exclusion engine."""
from __future__ import annotations

from typing import Iterable

import aiosqlite

from visibility import config
from visibility.entity_refs import EntityRef, EntityType
from visibility.db.repositories.relations import ENTITY_TABLES, junctions_for


def _chunks(items: list, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SqliteLibraryRepository:
    """Read-only access to cached entities and their relationship tables."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_refs(self, entity_type: EntityType) -> list[EntityRef]:
        """All live (not soft-deleted) refs of one entity type."""
        table = ENTITY_TABLES[entity_type]
        async with self.db.execute(
            f"SELECT id, instance_id FROM {table} WHERE deleted_at IS NULL ORDER BY id, instance_id"
        ) as cur:
            return [EntityRef(str(r[0]), r[1] or "") for r in await cur.fetchall()]

    async def related_refs(
        self,
        source_type: EntityType,
        target_type: EntityType,
        scoped_refs: list[EntityRef],
        global_ids: list[str],
    ) -> list[EntityRef]:
        """Targets linked to the given sources.

        Scoped sources match on id and instance and keep the target's
        instance; global ids match any instance and yield global targets.
        """
        found: set[EntityRef] = set()
        size = config.EXCLUSION_QUERY_CHUNK_SIZE
        for junction in junctions_for(source_type, target_type):
            live = f"{junction.live_filter} AND " if junction.live_filter else ""
            for chunk in _chunks(scoped_refs, size):
                clause = " OR ".join(
                    f"({junction.source_id} = ? AND {junction.source_instance} = ?)" for _ in chunk
                )
                params: list[str] = []
                for ref in chunk:
                    params.extend((ref.id, ref.instance_id))
                async with self.db.execute(
                    f"SELECT DISTINCT {junction.target_id}, {junction.target_instance} "
                    f"FROM {junction.table} WHERE {live}({clause})",
                    params,
                ) as cur:
                    for row in await cur.fetchall():
                        found.add(EntityRef(str(row[0]), row[1] or ""))
            for chunk in _chunks(global_ids, size):
                placeholders = ",".join("?" for _ in chunk)
                async with self.db.execute(
                    f"SELECT DISTINCT {junction.target_id} FROM {junction.table} "
                    f"WHERE {live}{junction.source_id} IN ({placeholders})",
                    chunk,
                ) as cur:
                    for row in await cur.fetchall():
                        found.add(EntityRef(str(row[0]), ""))
        return sorted(found)

    async def list_links(self, source_type: EntityType, target_type: EntityType) -> list[tuple[EntityRef, EntityRef]]:
        """Every (source, target) pair of one relation."""
        pairs: set[tuple[EntityRef, EntityRef]] = set()
        for junction in junctions_for(source_type, target_type):
            where = f"WHERE {junction.live_filter} AND {junction.source_id} IS NOT NULL" if junction.live_filter else ""
            async with self.db.execute(
                f"SELECT {junction.source_id}, {junction.source_instance}, "
                f"{junction.target_id}, {junction.target_instance} FROM {junction.table} {where}"
            ) as cur:
                for row in await cur.fetchall():
                    pairs.add((EntityRef(str(row[0]), row[1] or ""), EntityRef(str(row[2]), row[3] or "")))
        return sorted(pairs)
