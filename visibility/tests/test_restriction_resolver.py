import unittest

from visibility.entity_refs import EntityRef, EntityType
from visibility.models import RestrictionMode
from visibility.restriction_resolver import RestrictionResolver, parse_ref_list, resolve_restriction


class _FakeRestrictionRepo:
    def __init__(self, restrictions: list[dict], hidden: list[dict] | None = None):
        self.restrictions = restrictions
        self.hidden = hidden or []

    async def list_restrictions(self, user_id: int) -> list[dict]:
        return self.restrictions

    async def list_hidden(self, user_id: int) -> list[dict]:
        return self.hidden


class ResolveRestrictionTests(unittest.TestCase):
    def test_splits_scoped_refs_from_global_ids(self) -> None:
        restriction = resolve_restriction(
            {"entity_type": "groups", "mode": "EXCLUDE", "entity_ids": '["6:inst1", "7", 8]'}
        )
        self.assertIs(restriction.entity_type, EntityType.GROUP)
        self.assertIs(restriction.mode, RestrictionMode.EXCLUDE)
        self.assertEqual(restriction.scoped_refs, frozenset({EntityRef("6", "inst1")}))
        self.assertEqual(restriction.global_ids, frozenset({"7", "8"}))

    def test_selects_uses_instance_aware_matching(self) -> None:
        restriction = resolve_restriction(
            {"entity_type": "tag", "mode": "include", "entity_ids": '["6:inst1", "7"]'}
        )
        self.assertTrue(restriction.selects(EntityRef("6", "inst1")))
        self.assertFalse(restriction.selects(EntityRef("6", "inst2")))
        self.assertFalse(restriction.selects(EntityRef("6:inst1")))
        self.assertTrue(restriction.selects(EntityRef("7", "inst9")))

    def test_malformed_ref_lists_raise(self) -> None:
        with self.assertRaises(ValueError):
            parse_ref_list("[not json")
        with self.assertRaises(ValueError):
            parse_ref_list('{"ids": ["1"]}')
        self.assertEqual(parse_ref_list(""), [])
        self.assertEqual(parse_ref_list('["", " 3 "]'), [EntityRef("3")])

    def test_unknown_mode_raises(self) -> None:
        with self.assertRaises(ValueError):
            resolve_restriction({"entity_type": "tag", "mode": "HIDE", "entity_ids": "[]"})


class RestrictionResolverTests(unittest.IsolatedAsyncioTestCase):
    async def test_malformed_row_is_skipped_and_logged(self) -> None:
        repo = _FakeRestrictionRepo([
            {"id": 1, "entity_type": "tags", "mode": "INCLUDE", "entity_ids": "{{broken"},
            {"id": 2, "entity_type": "studio", "mode": "EXCLUDE", "entity_ids": '["s1"]'},
        ])
        with self.assertLogs("peek.exclusions", level="WARNING") as logs:
            resolved = await RestrictionResolver(repo).resolve(5)

        self.assertNotIn(EntityType.TAG, resolved.restrictions)
        self.assertEqual(resolved.restrictions[EntityType.STUDIO].global_ids, frozenset({"s1"}))
        self.assertTrue(any("malformed restriction 1" in line for line in logs.output))

    async def test_duplicate_type_keeps_first_row(self) -> None:
        repo = _FakeRestrictionRepo([
            {"id": 1, "entity_type": "tag", "mode": "EXCLUDE", "entity_ids": '["a"]'},
            {"id": 2, "entity_type": "tags", "mode": "EXCLUDE", "entity_ids": '["b"]'},
        ])
        with self.assertLogs("peek.exclusions", level="WARNING"):
            resolved = await RestrictionResolver(repo).resolve(5)
        self.assertEqual(resolved.restrictions[EntityType.TAG].global_ids, frozenset({"a"}))

    async def test_hidden_rows_are_parsed_and_deduplicated(self) -> None:
        repo = _FakeRestrictionRepo([], hidden=[
            {"entity_type": "performer", "entity_id": "p1", "instance_id": ""},
            {"entity_type": "performers", "entity_id": "p1", "instance_id": ""},
            {"entity_type": "scene", "entity_id": "s1", "instance_id": "inst1"},
            {"entity_type": "bogus", "entity_id": "x", "instance_id": ""},
        ])
        with self.assertLogs("peek.exclusions", level="WARNING"):
            resolved = await RestrictionResolver(repo).resolve(5)
        self.assertEqual(
            resolved.hidden,
            [(EntityType.PERFORMER, EntityRef("p1")), (EntityType.SCENE, EntityRef("s1", "inst1"))],
        )


if __name__ == "__main__":
    unittest.main()
