"""PostgreSQL schema creation and versioning.

Mirrors sqlite_migrations with Postgres types.
"""
from __future__ import annotations

import logging

import asyncpg

from visibility.db.sqlite_migrations import SCHEMA_VERSION

logger = logging.getLogger("peek.db")

_LIBRARY_ENTITY_TABLES = (
    "library_performers",
    "library_studios",
    "library_tags",
    "library_groups",
    "library_galleries",
)

_JUNCTIONS = (
    ("scene_performers", "scene", "performer"),
    ("scene_tags", "scene", "tag"),
    ("scene_inherited_tags", "scene", "tag"),
    ("scene_groups", "scene", "group"),
    ("scene_galleries", "scene", "gallery"),
    ("image_galleries", "image", "gallery"),
    ("image_performers", "image", "performer"),
    ("performer_tags", "performer", "tag"),
    ("studio_tags", "studio", "tag"),
    ("group_tags", "group", "tag"),
)

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS users (
    id          SERIAL PRIMARY KEY,
    username    TEXT NOT NULL UNIQUE,
    role        TEXT NOT NULL DEFAULT 'USER',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_content_restrictions (
    id              SERIAL PRIMARY KEY,
    user_id         INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    entity_type     TEXT NOT NULL,
    mode            TEXT NOT NULL DEFAULT 'EXCLUDE',
    entity_ids      TEXT NOT NULL DEFAULT '[]',
    restrict_empty  BOOLEAN NOT NULL DEFAULT FALSE,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, entity_type)
);

CREATE TABLE IF NOT EXISTS user_hidden_entities (
    user_id      INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    entity_type  TEXT NOT NULL,
    entity_id    TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    hidden_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, entity_type, entity_id, instance_id)
);

CREATE TABLE IF NOT EXISTS user_excluded_entities (
    user_id      INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    entity_type  TEXT NOT NULL,
    entity_id    TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    reason       TEXT NOT NULL,
    PRIMARY KEY (user_id, entity_type, entity_id, instance_id)
);

CREATE INDEX IF NOT EXISTS idx_excluded_lookup ON user_excluded_entities(user_id, entity_type, entity_id);

CREATE TABLE IF NOT EXISTS user_entity_stats (
    user_id         INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    entity_type     TEXT NOT NULL,
    total_count     INTEGER NOT NULL DEFAULT 0,
    excluded_count  INTEGER NOT NULL DEFAULT 0,
    visible_count   INTEGER NOT NULL DEFAULT 0,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (user_id, entity_type)
);

CREATE TABLE IF NOT EXISTS library_scenes (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    title        TEXT DEFAULT '',
    studio_id    TEXT,
    deleted_at   TIMESTAMPTZ,
    PRIMARY KEY (id, instance_id)
);

CREATE INDEX IF NOT EXISTS idx_scenes_studio ON library_scenes(studio_id, instance_id);

CREATE TABLE IF NOT EXISTS library_images (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    title        TEXT DEFAULT '',
    studio_id    TEXT,
    deleted_at   TIMESTAMPTZ,
    PRIMARY KEY (id, instance_id)
);

CREATE INDEX IF NOT EXISTS idx_images_studio ON library_images(studio_id, instance_id);
"""


def _entity_table_ddl(table: str) -> str:
    return f"""
CREATE TABLE IF NOT EXISTS {table} (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    name         TEXT DEFAULT '',
    deleted_at   TIMESTAMPTZ,
    PRIMARY KEY (id, instance_id)
);
"""


def _junction_ddl(table: str, left: str, right: str) -> str:
    return f"""
CREATE TABLE IF NOT EXISTS {table} (
    {left}_id           TEXT NOT NULL,
    {left}_instance_id  TEXT NOT NULL DEFAULT '',
    {right}_id          TEXT NOT NULL,
    {right}_instance_id TEXT NOT NULL DEFAULT '',
    PRIMARY KEY ({left}_id, {left}_instance_id, {right}_id, {right}_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_{table}_src ON {table}({right}_id, {right}_instance_id);
"""


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables and record the schema version."""
    ddl = _TABLES
    ddl += "".join(_entity_table_ddl(table) for table in _LIBRARY_ENTITY_TABLES)
    ddl += "".join(_junction_ddl(*spec) for spec in _JUNCTIONS)
    await db.execute(ddl)

    current_version = await db.fetchval("SELECT MAX(version) FROM schema_version") or 0
    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    await db.execute(
        "ALTER TABLE user_content_restrictions ADD COLUMN IF NOT EXISTS restrict_empty BOOLEAN NOT NULL DEFAULT FALSE"
    )
    await db.execute("ALTER TABLE library_images ADD COLUMN IF NOT EXISTS studio_id TEXT")
    await db.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
