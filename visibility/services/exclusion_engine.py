"""Per-user exclusion recompute coordination and incremental updates."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Iterable

from visibility.db.factory import (
    get_exclusion_repository,
    get_library_repository,
    get_restriction_repository,
)
from visibility.entity_refs import EntityRef, EntityType, format_ref
from visibility.exclusion_graph import (
    ExclusionRecord,
    ExclusionSet,
    LibrarySnapshot,
    cascade_once,
    compute_exclusions,
    summarize_visibility,
)
from visibility.models import (
    EntityVisibilityStats,
    ExclusionReason,
    RecomputeAllResult,
    RecomputeFailure,
)
from visibility.observability import (
    record_coalesced_request,
    record_incremental_update,
    record_recompute,
    start_span,
)
from visibility.restriction_resolver import RestrictionResolver

logger = logging.getLogger("peek.exclusions")


@dataclass
class _RunState:
    running: bool = True
    rerun_requested: bool = False
    waiter: asyncio.Future | None = None


class RecomputeCoalescer:
    """Runs at most one job per key at a time.

    Calls arriving while a job runs share a single follow-up run, which
    starts when the current one finishes and which they all await.
    Distinct keys never wait on each other.
    """

    def __init__(self) -> None:
        self._states: dict[Hashable, _RunState] = {}

    def is_running(self, key: Hashable) -> bool:
        state = self._states.get(key)
        return state is not None and state.running

    async def run(self, key: Hashable, job: Callable[[], Awaitable[None]]) -> None:
        state = self._states.get(key)
        if state is not None:
            state.rerun_requested = True
            if state.waiter is None:
                state.waiter = asyncio.get_running_loop().create_future()
            record_coalesced_request()
            await asyncio.shield(state.waiter)
            return

        state = _RunState()
        self._states[key] = state
        try:
            await job()
        finally:
            await self._drain(key, state, job)

    async def _drain(self, key: Hashable, state: _RunState, job: Callable[[], Awaitable[None]]) -> None:
        try:
            while state.rerun_requested:
                state.rerun_requested = False
                waiter, state.waiter = state.waiter, None
                try:
                    await job()
                except Exception as exc:
                    if waiter is not None and not waiter.done():
                        waiter.set_exception(exc)
                else:
                    if waiter is not None and not waiter.done():
                        waiter.set_result(None)
        finally:
            state.running = False
            del self._states[key]


class ExclusionEngine:
    """Computes and persists each user's exclusion set."""

    def __init__(self, db: Any):
        self.db = db
        self.restriction_repo = get_restriction_repository(db)
        self.library_repo = get_library_repository(db)
        self.exclusion_repo = get_exclusion_repository(db)
        self.resolver = RestrictionResolver(self.restriction_repo)
        self._coalescer = RecomputeCoalescer()
        self._background_tasks: set[asyncio.Task] = set()

    # ── Full recompute ──────────────────────────────────────────────

    async def compute_for_user(self, user_id: int) -> tuple[ExclusionSet, list[dict]]:
        """Compute (without persisting) the exclusion set and per-type stats."""
        resolved = await self.resolver.resolve(user_id)
        library = LibrarySnapshot(self.library_repo)
        exclusions = await compute_exclusions(resolved, library)
        stats = await summarize_visibility(exclusions, library)
        return exclusions, stats

    async def recompute_for_user(self, user_id: int) -> None:
        await self._coalescer.run(user_id, lambda: self._recompute_once(user_id))

    async def _recompute_once(self, user_id: int) -> None:
        t0 = time.monotonic()
        with start_span("exclusions.recompute", {"user_id": user_id}):
            try:
                exclusions, stats = await self.compute_for_user(user_id)
                records = exclusions.records()
                await self.exclusion_repo.replace_for_user(user_id, records, stats)
            except Exception:
                record_recompute("error", (time.monotonic() - t0) * 1000)
                raise
        elapsed = int((time.monotonic() - t0) * 1000)
        record_recompute("success", elapsed, record_count=len(records))
        logger.info(
            "Recomputed exclusions for user %s: %s records in %sms",
            user_id, len(records), elapsed,
        )

    async def recompute_all_users(self) -> RecomputeAllResult:
        result = RecomputeAllResult()
        for user_id in await self.restriction_repo.list_user_ids():
            try:
                await self.recompute_for_user(user_id)
                result.successCount += 1
            except Exception as exc:
                logger.exception("Exclusion recompute failed for user %s", user_id)
                result.failedCount += 1
                result.errors.append(RecomputeFailure(userId=user_id, error=str(exc) or type(exc).__name__))
        logger.info(
            "Recomputed exclusions for all users: %s succeeded, %s failed",
            result.successCount, result.failedCount,
        )
        return result

    # ── Incremental hide / unhide ───────────────────────────────────

    async def add_hidden_entity(
        self,
        user_id: int,
        entity_type: EntityType | str,
        entity_id: str,
        instance_id: str = "",
    ) -> None:
        """Append a hidden record and its one-hop cascade targets."""
        entity_type, ref = _normalize_target(entity_type, entity_id, instance_id)
        await self.exclusion_repo.upsert_records(
            user_id, [ExclusionRecord(entity_type, ref, ExclusionReason.HIDDEN)]
        )

        exclusions = ExclusionSet()
        exclusions.add(entity_type, ref, ExclusionReason.HIDDEN)
        targets = await cascade_once(exclusions, [(entity_type, ref)], LibrarySnapshot(self.library_repo))
        inserted = await self.exclusion_repo.upsert_records(
            user_id,
            [ExclusionRecord(target_type, target, ExclusionReason.CASCADE) for target_type, target in targets],
        )
        record_incremental_update("hide")
        logger.info(
            "Hid %s %s for user %s (%s cascade targets, %s new)",
            entity_type.value, format_ref(ref), user_id, len(targets), inserted,
        )
        # An in-flight recompute read the hidden rows before this one and would
        # overwrite these records; queue a rerun behind it.
        if self._coalescer.is_running(user_id):
            self._schedule_recompute(user_id)

    async def remove_hidden_entity(
        self,
        user_id: int,
        entity_type: EntityType | str,
        entity_id: str,
        instance_id: str = "",
    ) -> None:
        """Drop the hidden record now; cascades are reconciled by a background recompute."""
        entity_type, ref = _normalize_target(entity_type, entity_id, instance_id)
        await self.exclusion_repo.delete_record(user_id, entity_type, ref, reason=ExclusionReason.HIDDEN.value)
        record_incremental_update("unhide")
        self._schedule_recompute(user_id)

    def _schedule_recompute(self, user_id: int) -> None:
        task = asyncio.create_task(self._deferred_recompute(user_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _deferred_recompute(self, user_id: int) -> None:
        try:
            await self.recompute_for_user(user_id)
        except Exception:
            logger.exception("Deferred exclusion recompute failed for user %s", user_id)

    async def wait_for_background(self) -> None:
        """Wait until scheduled recomputes (including ones they schedule) have finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ── Reads ───────────────────────────────────────────────────────

    async def is_excluded(
        self,
        user_id: int,
        entity_type: EntityType | str,
        entity_id: str,
        instance_id: str = "",
    ) -> bool:
        entity_type, ref = _normalize_target(entity_type, entity_id, instance_id)
        return await self.exclusion_repo.is_excluded(user_id, entity_type, ref)

    async def filter_excluded(
        self,
        user_id: int,
        entity_type: EntityType | str,
        refs: Iterable[EntityRef],
    ) -> list[EntityRef]:
        """Keep the refs visible to the user, in input order."""
        entity_type = EntityType.parse(entity_type)
        excluded = set(await self.exclusion_repo.list_refs(user_id, entity_type))
        return [ref for ref in refs if ref not in excluded and EntityRef(ref.id) not in excluded]

    async def get_excluded_ids(self, user_id: int, entity_type: EntityType | str) -> set[str]:
        entity_type = EntityType.parse(entity_type)
        return {format_ref(ref) for ref in await self.exclusion_repo.list_refs(user_id, entity_type)}

    async def get_entity_stats(self, user_id: int) -> list[EntityVisibilityStats]:
        return [
            EntityVisibilityStats(
                entityType=row["entity_type"],
                totalCount=row["total_count"],
                excludedCount=row["excluded_count"],
                visibleCount=row["visible_count"],
                updatedAt=str(row.get("updated_at") or ""),
            )
            for row in await self.exclusion_repo.get_stats(user_id)
        ]


def _normalize_target(entity_type: EntityType | str, entity_id: str, instance_id: str = "") -> tuple[EntityType, EntityRef]:
    parsed_type = entity_type if isinstance(entity_type, EntityType) else EntityType.parse(entity_type)
    token = str(entity_id or "").strip()
    if not token:
        raise ValueError("entity_id is required")
    return parsed_type, EntityRef(token, str(instance_id or "").strip())


# Keyed by id(); each engine holds its handle, so the id stays unique while cached.
_engines: dict[int, ExclusionEngine] = {}


def get_exclusion_engine(db: Any) -> ExclusionEngine:
    """Shared engine per connection or pool, so coalescing spans every caller."""
    engine = _engines.get(id(db))
    if engine is None:
        engine = ExclusionEngine(db)
        _engines[id(db)] = engine
    return engine


def reset_exclusion_engine(db: Any) -> None:
    """Forget the engine cached for ``db``; call before closing the handle."""
    _engines.pop(id(db), None)
