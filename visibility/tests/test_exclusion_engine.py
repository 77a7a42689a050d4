import asyncio
import sqlite3
import unittest
from unittest.mock import patch

import aiosqlite

from visibility.db.repositories.postgres.exclusions import PostgresExclusionRepository
from visibility.db.sqlite_migrations import run_migrations
from visibility.entity_refs import EntityRef, EntityType
from visibility.exclusion_graph import ExclusionRecord
from visibility.models import ExclusionReason
from visibility.services.exclusion_engine import ExclusionEngine, get_exclusion_engine, reset_exclusion_engine
from visibility.services.user_visibility import ContentRestrictionService, HiddenEntityService
from visibility.tests.library_seed import (
    seed_entities,
    seed_hidden,
    seed_links,
    seed_performer_scenario,
    seed_restriction,
    seed_users,
)

SCENARIO_ROWS = [
    {"entity_type": "gallery", "entity_id": "gallery1", "instance_id": "", "reason": "empty"},
    {"entity_type": "performer", "entity_id": "perf1", "instance_id": "", "reason": "hidden"},
    {"entity_type": "scene", "entity_id": "scene1", "instance_id": "", "reason": "cascade"},
    {"entity_type": "scene", "entity_id": "scene2", "instance_id": "", "reason": "cascade"},
]


class _DuplicateRecords:
    """Computed set whose records collide on the primary key."""

    def records(self) -> list[ExclusionRecord]:
        record = ExclusionRecord(EntityType.SCENE, EntityRef("dup"), ExclusionReason.HIDDEN)
        return [record, record]


class ExclusionEngineRecomputeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await seed_users(self.db, 1, 2, 3)
        await seed_performer_scenario(self.db)
        self.engine = ExclusionEngine(self.db)

    async def asyncTearDown(self) -> None:
        await self.engine.wait_for_background()
        await self.db.close()

    async def test_recompute_persists_the_scenario_set(self) -> None:
        await seed_hidden(self.db, 1, "performer", "perf1")

        await self.engine.recompute_for_user(1)

        self.assertEqual(await self.engine.exclusion_repo.list_for_user(1), SCENARIO_ROWS)
        self.assertEqual(await self.engine.exclusion_repo.list_for_user(2), [])

    async def test_recompute_is_idempotent(self) -> None:
        await seed_hidden(self.db, 1, "performer", "perf1")
        await seed_restriction(self.db, 1, "scenes", "EXCLUDE", ["scene2"])

        await self.engine.recompute_for_user(1)
        first = await self.engine.exclusion_repo.list_for_user(1)
        await self.engine.recompute_for_user(1)
        second = await self.engine.exclusion_repo.list_for_user(1)

        self.assertEqual(first, second)
        reasons = {row["entity_id"]: row["reason"] for row in second}
        self.assertEqual(reasons["scene2"], "restricted")

    async def test_recompute_drops_records_no_longer_justified(self) -> None:
        await seed_hidden(self.db, 1, "performer", "perf1")
        await self.engine.recompute_for_user(1)

        await self.engine.restriction_repo.remove_hidden(1, "performer", "perf1")
        await self.engine.recompute_for_user(1)

        self.assertEqual(await self.engine.exclusion_repo.list_for_user(1), [])

    async def test_recompute_writes_entity_stats(self) -> None:
        await seed_hidden(self.db, 1, "performer", "perf1")

        await self.engine.recompute_for_user(1)

        stats = {s.entityType: s for s in await self.engine.get_entity_stats(1)}
        self.assertEqual(stats["scene"].totalCount, 2)
        self.assertEqual(stats["scene"].visibleCount, 0)
        self.assertEqual(stats["performer"].excludedCount, 1)
        self.assertEqual(len(stats), len(EntityType))

    async def test_malformed_restriction_does_not_hide_everything(self) -> None:
        await seed_restriction(self.db, 1, "scene", "INCLUDE", "not-json")

        with self.assertLogs("peek.exclusions", level="WARNING"):
            await self.engine.recompute_for_user(1)

        self.assertFalse(await self.engine.is_excluded(1, "scene", "scene1"))

    async def test_storage_failure_keeps_previous_set(self) -> None:
        await seed_hidden(self.db, 1, "performer", "perf1")
        await self.engine.recompute_for_user(1)

        async def broken_compute(user_id: int):
            return _DuplicateRecords(), []

        with patch.object(self.engine, "compute_for_user", broken_compute):
            with self.assertRaises(sqlite3.IntegrityError):
                await self.engine.recompute_for_user(1)

        self.assertEqual(await self.engine.exclusion_repo.list_for_user(1), SCENARIO_ROWS)
        await self.engine.recompute_for_user(1)
        self.assertEqual(await self.engine.exclusion_repo.list_for_user(1), SCENARIO_ROWS)

    async def test_recompute_all_isolates_failures(self) -> None:
        await seed_hidden(self.db, 1, "performer", "perf1")
        original = self.engine.compute_for_user

        async def flaky_compute(user_id: int):
            if user_id == 2:
                raise RuntimeError("library unavailable")
            return await original(user_id)

        with patch.object(self.engine, "compute_for_user", flaky_compute):
            with self.assertLogs("peek.exclusions", level="ERROR"):
                result = await self.engine.recompute_all_users()

        self.assertEqual(result.successCount, 2)
        self.assertEqual(result.failedCount, 1)
        self.assertEqual([(e.userId, e.error) for e in result.errors], [(2, "library unavailable")])
        self.assertEqual(await self.engine.exclusion_repo.list_for_user(1), SCENARIO_ROWS)


class ExclusionEngineIncrementalTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await seed_users(self.db, 1)
        await seed_performer_scenario(self.db)
        self.engine = ExclusionEngine(self.db)

    async def asyncTearDown(self) -> None:
        await self.engine.wait_for_background()
        await self.db.close()

    async def _reasons(self) -> dict[tuple[str, str, str], str]:
        return {
            (row["entity_type"], row["entity_id"], row["instance_id"]): row["reason"]
            for row in await self.engine.exclusion_repo.list_for_user(1)
        }

    async def test_add_hidden_appends_one_hop_without_empty_check(self) -> None:
        await self.engine.add_hidden_entity(1, "performer", "perf1")
        await self.engine.add_hidden_entity(1, EntityType.PERFORMER, "perf1")

        self.assertEqual(
            await self._reasons(),
            {
                ("performer", "perf1", ""): "hidden",
                ("scene", "scene1", ""): "cascade",
                ("scene", "scene2", ""): "cascade",
            },
        )

    async def test_add_hidden_keeps_existing_reasons(self) -> None:
        await seed_restriction(self.db, 1, "scene", "EXCLUDE", ["scene1"])
        await self.engine.recompute_for_user(1)

        await self.engine.add_hidden_entity(1, "performer", "perf1")

        reasons = await self._reasons()
        self.assertEqual(reasons[("scene", "scene1", "")], "restricted")
        self.assertEqual(reasons[("scene", "scene2", "")], "cascade")

    async def test_add_hidden_scoped_ref_only_reaches_its_instance(self) -> None:
        await seed_entities(self.db, EntityType.SCENE, "x1:a", "x2:b")
        await seed_links(self.db, "scene_performers", ("x1:a", "p9:a"), ("x2:b", "p9:b"))

        await self.engine.add_hidden_entity(1, "performer", "p9", "a")

        reasons = await self._reasons()
        self.assertIn(("scene", "x1", "a"), reasons)
        self.assertNotIn(("scene", "x2", "b"), reasons)

    async def test_add_hidden_rejects_blank_ids(self) -> None:
        with self.assertRaises(ValueError):
            await self.engine.add_hidden_entity(1, "scene", "  ")

    async def test_remove_hidden_deletes_now_and_reconciles_later(self) -> None:
        await seed_hidden(self.db, 1, "performer", "perf1")
        await self.engine.recompute_for_user(1)
        await self.engine.restriction_repo.remove_hidden(1, "performer", "perf1")

        await self.engine.remove_hidden_entity(1, "performer", "perf1")
        self.assertNotIn(("performer", "perf1", ""), await self._reasons())

        await self.engine.wait_for_background()
        self.assertEqual(await self._reasons(), {})

    async def test_deferred_recompute_failure_is_logged(self) -> None:
        async def broken_compute(user_id: int):
            raise RuntimeError("boom")

        with patch.object(self.engine, "compute_for_user", broken_compute):
            with self.assertLogs("peek.exclusions", level="ERROR") as logs:
                await self.engine.remove_hidden_entity(1, "scene", "scene1")
                await self.engine.wait_for_background()

        self.assertTrue(any("Deferred exclusion recompute failed" in line for line in logs.output))


class ExclusionEngineReadTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await seed_users(self.db, 1)
        self.engine = ExclusionEngine(self.db)
        await self.engine.exclusion_repo.replace_for_user(1, [
            ExclusionRecord(EntityType.SCENE, EntityRef("s1"), ExclusionReason.CASCADE),
            ExclusionRecord(EntityType.SCENE, EntityRef("s2", "a"), ExclusionReason.HIDDEN),
        ])

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_is_excluded(self) -> None:
        self.assertTrue(await self.engine.is_excluded(1, "scene", "s1", "b"))
        self.assertTrue(await self.engine.is_excluded(1, "scenes", "s2", "a"))
        self.assertFalse(await self.engine.is_excluded(1, "scene", "s2", "b"))
        self.assertFalse(await self.engine.is_excluded(1, "image", "s1"))

    async def test_filter_excluded_keeps_visible_refs_in_order(self) -> None:
        refs = [EntityRef("s3"), EntityRef("s1", "z"), EntityRef("s2", "b"), EntityRef("s2", "a")]

        visible = await self.engine.filter_excluded(1, "scene", refs)

        self.assertEqual(visible, [EntityRef("s3"), EntityRef("s2", "b")])

    async def test_get_excluded_ids_uses_composite_format(self) -> None:
        self.assertEqual(await self.engine.get_excluded_ids(1, "scene"), {"s1", "s2:a"})


class RecomputeCoordinationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await seed_users(self.db, 1, 2)
        await seed_entities(self.db, EntityType.SCENE, *[f"s{i}" for i in range(6)])
        self.engine = ExclusionEngine(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_rerun_reflects_changes_saved_during_the_first_run(self) -> None:
        original = self.engine.compute_for_user
        gate = asyncio.Event()
        started = asyncio.Event()
        calls: list[int] = []

        async def gated_compute(user_id: int):
            result = await original(user_id)
            calls.append(user_id)
            if len(calls) == 1:
                started.set()
                await gate.wait()
            return result

        with patch.object(self.engine, "compute_for_user", gated_compute):
            leader = asyncio.create_task(self.engine.recompute_for_user(1))
            await started.wait()
            followers = []
            for i in range(1, 6):
                await self.engine.restriction_repo.add_hidden(1, "scene", f"s{i}")
                followers.append(asyncio.create_task(self.engine.recompute_for_user(1)))
            await asyncio.sleep(0)
            gate.set()
            await asyncio.gather(leader, *followers)

        self.assertEqual(calls, [1, 1])
        hidden = {row["entity_id"] for row in await self.engine.exclusion_repo.list_for_user(1)}
        self.assertEqual(hidden, {f"s{i}" for i in range(1, 6)})

    async def test_users_recompute_independently(self) -> None:
        original = self.engine.compute_for_user
        gate = asyncio.Event()
        calls: list[int] = []

        async def gated_compute(user_id: int):
            calls.append(user_id)
            if user_id == 1:
                await gate.wait()
            return await original(user_id)

        with patch.object(self.engine, "compute_for_user", gated_compute):
            slow = asyncio.create_task(self.engine.recompute_for_user(1))
            await asyncio.sleep(0)
            await asyncio.wait_for(self.engine.recompute_for_user(2), timeout=5)
            self.assertFalse(slow.done())
            gate.set()
            await slow

        self.assertEqual(sorted(calls), [1, 2])

    async def test_hide_during_recompute_survives_the_stale_replace(self) -> None:
        original = self.engine.compute_for_user
        gate = asyncio.Event()
        started = asyncio.Event()
        calls: list[int] = []

        async def gated_compute(user_id: int):
            result = await original(user_id)
            calls.append(user_id)
            if len(calls) == 1:
                started.set()
                await gate.wait()
            return result

        with patch.object(self.engine, "compute_for_user", gated_compute):
            running = asyncio.create_task(self.engine.recompute_for_user(1))
            await started.wait()
            await self.engine.restriction_repo.add_hidden(1, "scene", "s1")
            await self.engine.add_hidden_entity(1, "scene", "s1")
            self.assertTrue(await self.engine.is_excluded(1, "scene", "s1"))

            gate.set()
            await running
            await self.engine.wait_for_background()

        self.assertEqual(calls, [1, 1])
        self.assertTrue(await self.engine.is_excluded(1, "scene", "s1"))

    async def test_idle_hide_schedules_no_recompute(self) -> None:
        with patch.object(self.engine, "recompute_for_user") as recompute:
            await self.engine.add_hidden_entity(1, "scene", "s1")
            await self.engine.wait_for_background()

        recompute.assert_not_called()


class _PoolHandle:
    """Stands in for an asyncpg pool: not an aiosqlite connection, not weak-referenceable."""

    __slots__ = ()


class ExclusionEngineCacheTests(unittest.TestCase):
    def test_engine_is_shared_per_non_sqlite_handle(self) -> None:
        handle = _PoolHandle()
        self.addCleanup(reset_exclusion_engine, handle)

        engine = get_exclusion_engine(handle)

        self.assertIs(get_exclusion_engine(handle), engine)
        self.assertIsInstance(engine.exclusion_repo, PostgresExclusionRepository)
        self.assertIs(HiddenEntityService(handle).engine, engine)
        self.assertIs(ContentRestrictionService(handle).engine, engine)

    def test_reset_drops_the_cached_engine(self) -> None:
        handle = _PoolHandle()
        self.addCleanup(reset_exclusion_engine, handle)
        engine = get_exclusion_engine(handle)

        reset_exclusion_engine(handle)

        self.assertIsNot(get_exclusion_engine(handle), engine)


if __name__ == "__main__":
    unittest.main()
