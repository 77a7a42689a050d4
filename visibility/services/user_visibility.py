"""User-facing hide/unhide and admin restriction services.

Both persist their own rows, then hand off to the exclusion engine so the
materialized exclusion set follows.
"""
from __future__ import annotations

import logging
import time
from typing import Any

from visibility import config
from visibility.db.factory import get_restriction_repository
from visibility.entity_refs import EntityRef, EntityType, format_ref, parse_ref
from visibility.models import ContentRestrictionInput
from visibility.services.exclusion_engine import ExclusionEngine, get_exclusion_engine

logger = logging.getLogger("peek.services")


class HiddenEntityService:
    def __init__(self, db: Any, engine: ExclusionEngine | None = None):
        self.restriction_repo = get_restriction_repository(db)
        self.engine = engine or get_exclusion_engine(db)
        self._cache: dict[int, tuple[float, dict[EntityType, set[str]]]] = {}

    async def hide_entity(self, user_id: int, entity_type: EntityType | str, entity_id: str, instance_id: str = "") -> bool:
        """Hide one entity for a user. Returns False when it was already hidden."""
        parsed = EntityType.parse(entity_type)
        ref = EntityRef(str(entity_id or "").strip(), str(instance_id or "").strip())
        if not ref.id:
            raise ValueError("entity_id is required")
        created = await self.restriction_repo.add_hidden(user_id, parsed.value, ref.id, ref.instance_id)
        self.clear_cache(user_id)
        await self.engine.add_hidden_entity(user_id, parsed, ref.id, ref.instance_id)
        return created

    async def unhide_entity(self, user_id: int, entity_type: EntityType | str, entity_id: str, instance_id: str = "") -> bool:
        """Unhide one entity. Cascaded exclusions clear after the background recompute."""
        parsed = EntityType.parse(entity_type)
        ref = EntityRef(str(entity_id or "").strip(), str(instance_id or "").strip())
        if not ref.id:
            raise ValueError("entity_id is required")
        removed = await self.restriction_repo.remove_hidden(user_id, parsed.value, ref.id, ref.instance_id)
        self.clear_cache(user_id)
        await self.engine.remove_hidden_entity(user_id, parsed, ref.id, ref.instance_id)
        return removed

    async def get_hidden_ids(self, user_id: int) -> dict[EntityType, set[str]]:
        cached = self._cache.get(user_id)
        now = time.monotonic()
        if cached and now - cached[0] < config.HIDDEN_CACHE_TTL_SECONDS:
            return cached[1]

        hidden: dict[EntityType, set[str]] = {entity_type: set() for entity_type in EntityType}
        for row in await self.restriction_repo.list_hidden(user_id):
            try:
                entity_type = EntityType.parse(row["entity_type"])
            except ValueError:
                continue
            hidden[entity_type].add(format_ref(EntityRef(row["entity_id"], row.get("instance_id") or "")))
        self._cache[user_id] = (now, hidden)
        return hidden

    def clear_cache(self, user_id: int | None = None) -> None:
        if user_id is None:
            self._cache.clear()
        else:
            self._cache.pop(user_id, None)


class ContentRestrictionService:
    def __init__(self, db: Any, engine: ExclusionEngine | None = None):
        self.restriction_repo = get_restriction_repository(db)
        self.engine = engine or get_exclusion_engine(db)

    async def get_restrictions(self, user_id: int) -> list[dict]:
        return await self.restriction_repo.list_restrictions(user_id)

    async def save_restrictions(self, user_id: int, restrictions: list[ContentRestrictionInput]) -> None:
        """Replace a user's restrictions and recompute their exclusions."""
        rows: dict[str, dict] = {}
        for restriction in restrictions:
            entity_type = EntityType.parse(restriction.entityType)
            refs = [format_ref(parse_ref(raw.strip())) for raw in restriction.entityIds if str(raw).strip()]
            rows[entity_type.value] = {
                "entity_type": entity_type.value,
                "mode": restriction.mode.value,
                "entity_ids": sorted(set(refs)),
                "restrict_empty": restriction.restrictEmpty,
            }
        await self.restriction_repo.replace_restrictions(user_id, list(rows.values()))
        logger.info("Saved %s content restrictions for user %s", len(rows), user_id)
        await self.engine.recompute_for_user(user_id)

    async def clear_restrictions(self, user_id: int) -> None:
        removed = await self.restriction_repo.delete_restrictions(user_id)
        logger.info("Cleared %s content restrictions for user %s", removed, user_id)
        await self.engine.recompute_for_user(user_id)
