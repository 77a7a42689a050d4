"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from visibility.db.repositories.exclusions import SqliteExclusionRepository
from visibility.db.repositories.library import SqliteLibraryRepository
from visibility.db.repositories.restrictions import SqliteRestrictionRepository


def get_restriction_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteRestrictionRepository(db)
    from visibility.db.repositories.postgres.restrictions import PostgresRestrictionRepository
    return PostgresRestrictionRepository(db)


def get_library_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteLibraryRepository(db)
    from visibility.db.repositories.postgres.library import PostgresLibraryRepository
    return PostgresLibraryRepository(db)


def get_exclusion_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteExclusionRepository(db)
    from visibility.db.repositories.postgres.exclusions import PostgresExclusionRepository
    return PostgresExclusionRepository(db)
