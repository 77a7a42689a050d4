"""Exclusion set computation.

Direct exclusions (restrictions, hidden entities) seed a fixed point that
alternates two monotonic steps until neither adds anything:

* cascade: an excluded source excludes its dependents along ``CASCADE_EDGES``;
* empty: a container whose children are all excluded is itself excluded.

Each entity keeps the first reason it was excluded for.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from visibility.entity_refs import EntityRef, EntityType
from visibility.models import ExclusionReason, RestrictionMode
from visibility.restriction_resolver import ResolvedVisibility

logger = logging.getLogger("peek.exclusions")

CASCADE_EDGES: dict[EntityType, tuple[EntityType, ...]] = {
    EntityType.PERFORMER: (EntityType.SCENE,),
    EntityType.STUDIO: (EntityType.SCENE,),
    EntityType.TAG: (EntityType.SCENE, EntityType.PERFORMER, EntityType.STUDIO, EntityType.GROUP),
    EntityType.GROUP: (EntityType.SCENE,),
    EntityType.GALLERY: (EntityType.SCENE, EntityType.IMAGE),
}

# Containers checked for emptiness, in evaluation order, with the child types that keep them visible.
EMPTY_CHILDREN: dict[EntityType, tuple[EntityType, ...]] = {
    EntityType.GALLERY: (EntityType.SCENE, EntityType.IMAGE),
    EntityType.PERFORMER: (EntityType.SCENE, EntityType.IMAGE),
    EntityType.STUDIO: (EntityType.SCENE, EntityType.IMAGE),
    EntityType.GROUP: (EntityType.SCENE,),
    EntityType.TAG: (EntityType.SCENE, EntityType.PERFORMER, EntityType.STUDIO, EntityType.GROUP),
}

# Restriction types whose restrict-empty flag hides scenes lacking any link of that type.
RESTRICT_EMPTY_TYPES = frozenset({
    EntityType.PERFORMER,
    EntityType.STUDIO,
    EntityType.TAG,
    EntityType.GROUP,
    EntityType.GALLERY,
})

ExclusionKey = tuple[EntityType, EntityRef]


@dataclass(frozen=True)
class ExclusionRecord:
    entity_type: EntityType
    ref: EntityRef
    reason: ExclusionReason


class ExclusionSet:
    """First-reason-wins collection of excluded entities for one user."""

    def __init__(self) -> None:
        self._reasons: dict[ExclusionKey, ExclusionReason] = {}

    def __len__(self) -> int:
        return len(self._reasons)

    def __iter__(self) -> Iterator[ExclusionKey]:
        return iter(self._reasons)

    def __contains__(self, key: object) -> bool:
        return key in self._reasons

    def reason(self, entity_type: EntityType, ref: EntityRef) -> ExclusionReason | None:
        return self._reasons.get((entity_type, ref))

    def covers(self, entity_type: EntityType, ref: EntityRef) -> bool:
        """True if ``ref`` is excluded exactly or through a global record with the same id."""
        if (entity_type, ref) in self._reasons:
            return True
        return not ref.is_global and (entity_type, EntityRef(ref.id)) in self._reasons

    def add(self, entity_type: EntityType, ref: EntityRef, reason: ExclusionReason) -> bool:
        """Record an exclusion unless the key already has one. Returns True when added."""
        key = (entity_type, ref)
        if key in self._reasons:
            return False
        self._reasons[key] = reason
        return True

    def add_uncovered(self, entity_type: EntityType, ref: EntityRef, reason: ExclusionReason) -> bool:
        if self.covers(entity_type, ref):
            return False
        return self.add(entity_type, ref, reason)

    def records(self) -> list[ExclusionRecord]:
        return [
            ExclusionRecord(entity_type, ref, reason)
            for (entity_type, ref), reason in sorted(
                self._reasons.items(), key=lambda item: (item[0][0].value, item[0][1])
            )
        ]


class LibrarySnapshot:
    """Per-run memo over a library repository.

    Universes and link tables are loaded at most once per recompute so the
    fixed point iterates in memory; cascade lookups go to the repository.
    """

    def __init__(self, library_repo: Any):
        self.library_repo = library_repo
        self._universe: dict[EntityType, list[EntityRef]] = {}
        self._links: dict[tuple[EntityType, EntityType], list[tuple[EntityRef, EntityRef]]] = {}
        self._children: dict[EntityType, dict[EntityRef, list[ExclusionKey]]] = {}
        self._live: dict[EntityType, tuple[set[EntityRef], set[str]]] = {}

    async def universe(self, entity_type: EntityType) -> list[EntityRef]:
        if entity_type not in self._universe:
            self._universe[entity_type] = await self.library_repo.list_refs(entity_type)
        return self._universe[entity_type]

    async def is_live(self, entity_type: EntityType, ref: EntityRef) -> bool:
        """True if ``ref`` names a cached, non-deleted entity; a global ref matches any instance."""
        if entity_type not in self._live:
            refs = set(await self.universe(entity_type))
            self._live[entity_type] = (refs, {r.id for r in refs})
        refs, ids = self._live[entity_type]
        return ref.id in ids if ref.is_global else ref in refs

    async def links(self, source_type: EntityType, target_type: EntityType) -> list[tuple[EntityRef, EntityRef]]:
        key = (source_type, target_type)
        if key not in self._links:
            self._links[key] = await self.library_repo.list_links(source_type, target_type)
        return self._links[key]

    async def related(
        self,
        source_type: EntityType,
        target_type: EntityType,
        scoped_refs: list[EntityRef],
        global_ids: list[str],
    ) -> list[EntityRef]:
        return await self.library_repo.related_refs(source_type, target_type, scoped_refs, global_ids)

    async def children(self, parent_type: EntityType) -> dict[EntityRef, list[ExclusionKey]]:
        """Live children of every live parent of ``parent_type``."""
        if parent_type in self._children:
            return self._children[parent_type]
        children: dict[EntityRef, list[ExclusionKey]] = {ref: [] for ref in await self.universe(parent_type)}
        for child_type in EMPTY_CHILDREN[parent_type]:
            live_children = set(await self.universe(child_type))
            for parent, child in await self.links(parent_type, child_type):
                if parent in children and child in live_children:
                    children[parent].append((child_type, child))
        self._children[parent_type] = children
        return children

    async def scenes_without(self, entity_type: EntityType) -> list[EntityRef]:
        linked = {scene for _, scene in await self.links(entity_type, EntityType.SCENE)}
        return [scene for scene in await self.universe(EntityType.SCENE) if scene not in linked]


async def compute_direct_exclusions(resolved: ResolvedVisibility, library: LibrarySnapshot) -> ExclusionSet:
    exclusions = ExclusionSet()

    for entity_type in EntityType:
        restriction = resolved.restrictions.get(entity_type)
        if restriction is None:
            continue
        if restriction.mode is RestrictionMode.EXCLUDE:
            for ref in restriction.listed_refs():
                exclusions.add(entity_type, ref, ExclusionReason.RESTRICTED)
        else:
            for ref in await library.universe(entity_type):
                if not restriction.selects(ref):
                    exclusions.add(entity_type, ref, ExclusionReason.RESTRICTED)
        if restriction.restrict_empty and entity_type in RESTRICT_EMPTY_TYPES:
            for scene in await library.scenes_without(entity_type):
                exclusions.add(EntityType.SCENE, scene, ExclusionReason.RESTRICTED)

    for entity_type, ref in resolved.hidden:
        exclusions.add(entity_type, ref, ExclusionReason.HIDDEN)

    return exclusions


async def cascade_once(
    exclusions: ExclusionSet,
    sources: Iterable[ExclusionKey],
    library: Any,
) -> list[ExclusionKey]:
    """One hop along ``CASCADE_EDGES`` from ``sources``; returns the newly excluded targets.

    Junction rows pointing at soft-deleted or uncached entities are ignored.
    """
    by_source: dict[EntityType, list[EntityRef]] = defaultdict(list)
    for entity_type, ref in sources:
        if entity_type in CASCADE_EDGES:
            by_source[entity_type].append(ref)

    added: list[ExclusionKey] = []
    for source_type in EntityType:
        refs = by_source.get(source_type)
        if not refs:
            continue
        scoped = sorted({ref for ref in refs if not ref.is_global})
        global_ids = sorted({ref.id for ref in refs if ref.is_global})
        for target_type in CASCADE_EDGES[source_type]:
            for target in await library.related(source_type, target_type, scoped, global_ids):
                if not await library.is_live(target_type, target):
                    continue
                if exclusions.add_uncovered(target_type, target, ExclusionReason.CASCADE):
                    added.append((target_type, target))
    return added


async def expand_cascades(
    exclusions: ExclusionSet,
    frontier: Iterable[ExclusionKey],
    library: Any,
) -> list[ExclusionKey]:
    """Cascade from ``frontier`` until no new targets appear."""
    added: list[ExclusionKey] = []
    pending = list(frontier)
    while pending:
        pending = await cascade_once(exclusions, pending, library)
        added.extend(pending)
    return added


async def classify_empty(exclusions: ExclusionSet, library: LibrarySnapshot) -> list[ExclusionKey]:
    """Exclude containers with no visible children; returns the newly emptied ones."""
    emptied: list[ExclusionKey] = []
    for parent_type in EMPTY_CHILDREN:
        children = await library.children(parent_type)
        for parent, kids in children.items():
            if exclusions.covers(parent_type, parent):
                continue
            if any(not exclusions.covers(child_type, child) for child_type, child in kids):
                continue
            exclusions.add(parent_type, parent, ExclusionReason.EMPTY)
            emptied.append((parent_type, parent))
    return emptied


async def compute_exclusions(resolved: ResolvedVisibility, library: LibrarySnapshot) -> ExclusionSet:
    exclusions = await compute_direct_exclusions(resolved, library)
    frontier: list[ExclusionKey] = list(exclusions)
    passes = 0
    while True:
        passes += 1
        cascaded = await expand_cascades(exclusions, frontier, library)
        frontier = await classify_empty(exclusions, library)
        logger.debug(
            "Exclusion pass %s for user %s: cascaded=%s emptied=%s",
            passes, resolved.user_id, len(cascaded), len(frontier),
        )
        if not frontier:
            return exclusions


async def summarize_visibility(exclusions: ExclusionSet, library: LibrarySnapshot) -> list[dict]:
    """Per-type total/excluded/visible counts over the live library."""
    stats = []
    for entity_type in EntityType:
        universe = await library.universe(entity_type)
        excluded = sum(1 for ref in universe if exclusions.covers(entity_type, ref))
        stats.append({
            "entity_type": entity_type.value,
            "total_count": len(universe),
            "excluded_count": excluded,
            "visible_count": len(universe) - excluded,
        })
    return stats
