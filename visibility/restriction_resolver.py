"""Load and normalize a user's restrictions and hidden entities."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from visibility.entity_refs import EntityRef, EntityType, matches, parse_ref
from visibility.models import RestrictionMode

logger = logging.getLogger("peek.exclusions")


@dataclass(frozen=True)
class ResolvedRestriction:
    entity_type: EntityType
    mode: RestrictionMode
    scoped_refs: frozenset[EntityRef] = frozenset()
    global_ids: frozenset[str] = frozenset()
    restrict_empty: bool = False

    def selects(self, ref: EntityRef) -> bool:
        """Whether any listed ref matches ``ref`` (global ids match every instance)."""
        if ref.id in self.global_ids:
            return True
        return any(matches(ref, scoped) for scoped in self.scoped_refs if scoped.id == ref.id)

    def listed_refs(self) -> list[EntityRef]:
        return sorted(self.scoped_refs) + [EntityRef(entity_id) for entity_id in sorted(self.global_ids)]


@dataclass
class ResolvedVisibility:
    user_id: int
    restrictions: dict[EntityType, ResolvedRestriction] = field(default_factory=dict)
    hidden: list[tuple[EntityType, EntityRef]] = field(default_factory=list)


def split_refs(refs: Iterable[EntityRef]) -> tuple[frozenset[EntityRef], frozenset[str]]:
    scoped: set[EntityRef] = set()
    global_ids: set[str] = set()
    for ref in refs:
        if ref.is_global:
            global_ids.add(ref.id)
        else:
            scoped.add(ref)
    return frozenset(scoped), frozenset(global_ids)


def parse_ref_list(raw: Any) -> list[EntityRef]:
    """Decode a stored ref list (JSON array text or list) into refs.

    Raises ValueError when the value is not a JSON array.
    """
    values = raw
    if isinstance(raw, (str, bytes)):
        try:
            values = json.loads(raw) if raw else []
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON: {exc}") from exc
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValueError(f"expected a list of entity refs, got {type(values).__name__}")
    refs = []
    for value in values:
        token = str(value).strip() if value is not None else ""
        if token:
            refs.append(parse_ref(token))
    return refs


def resolve_restriction(row: dict) -> ResolvedRestriction:
    """Normalize one stored restriction row; raises ValueError on malformed data."""
    entity_type = EntityType.parse(row.get("entity_type", ""))
    try:
        mode = RestrictionMode(str(row.get("mode") or "").strip().upper())
    except ValueError:
        raise ValueError(f"unknown restriction mode {row.get('mode')!r}") from None
    scoped, global_ids = split_refs(parse_ref_list(row.get("entity_ids")))
    return ResolvedRestriction(
        entity_type=entity_type,
        mode=mode,
        scoped_refs=scoped,
        global_ids=global_ids,
        restrict_empty=bool(row.get("restrict_empty")),
    )


class RestrictionResolver:
    """Builds a :class:`ResolvedVisibility` from stored restriction and hidden rows."""

    def __init__(self, restriction_repo: Any):
        self.restriction_repo = restriction_repo

    async def resolve(self, user_id: int) -> ResolvedVisibility:
        resolved = ResolvedVisibility(user_id=user_id)

        for row in await self.restriction_repo.list_restrictions(user_id):
            try:
                restriction = resolve_restriction(row)
            except ValueError as exc:
                logger.warning(
                    "Skipping malformed restriction %s for user %s: %s",
                    row.get("id"), user_id, exc,
                )
                continue
            if restriction.entity_type in resolved.restrictions:
                logger.warning(
                    "Ignoring duplicate %s restriction %s for user %s",
                    restriction.entity_type.value, row.get("id"), user_id,
                )
                continue
            resolved.restrictions[restriction.entity_type] = restriction

        seen: set[tuple[EntityType, EntityRef]] = set()
        for row in await self.restriction_repo.list_hidden(user_id):
            try:
                entity_type = EntityType.parse(row.get("entity_type", ""))
            except ValueError as exc:
                logger.warning("Skipping hidden entity for user %s: %s", user_id, exc)
                continue
            key = (entity_type, EntityRef(str(row["entity_id"]), row.get("instance_id") or ""))
            if key not in seen:
                seen.add(key)
                resolved.hidden.append(key)

        return resolved
