#!/usr/bin/env python3
"""Recompute materialized per-user content exclusions.

Usage:
  python -m visibility.scripts.recompute_exclusions --all-users
  python -m visibility.scripts.recompute_exclusions --user 3
  python -m visibility.scripts.recompute_exclusions --all-users --json
"""
from __future__ import annotations

import argparse
import asyncio
import logging

from visibility import observability
from visibility.db import connection, migrations
from visibility.models import RecomputeAllResult, RecomputeFailure
from visibility.services.exclusion_engine import get_exclusion_engine, reset_exclusion_engine


async def _run(user_id: int | None, as_json: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        engine = get_exclusion_engine(db)

        if user_id is not None:
            result = RecomputeAllResult()
            try:
                await engine.recompute_for_user(user_id)
                result.successCount = 1
            except Exception as exc:
                result.failedCount = 1
                result.errors.append(RecomputeFailure(userId=user_id, error=str(exc) or type(exc).__name__))
        else:
            result = await engine.recompute_all_users()

        if as_json:
            print(result.model_dump_json(indent=2))
        else:
            print(f"Recomputed: {result.successCount} succeeded, {result.failedCount} failed")
            for failure in result.errors:
                print(f"  user={failure.userId} error={failure.error}")
            if user_id is not None and result.successCount:
                for stats in await engine.get_entity_stats(user_id):
                    print(
                        f"  {stats.entityType}: visible={stats.visibleCount} "
                        f"excluded={stats.excludedCount} total={stats.totalCount}"
                    )
        return 1 if result.failedCount else 0
    finally:
        reset_exclusion_engine(db)
        await connection.close_connection()
        observability.shutdown()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user", type=int, help="Recompute a single user by id")
    target.add_argument("--all-users", action="store_true", help="Recompute every user")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    observability.initialize()
    return asyncio.run(_run(args.user, args.json))


if __name__ == "__main__":
    raise SystemExit(main())
