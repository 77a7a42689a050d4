"""Database schema creation and versioning.

All CREATE TABLE statements for the visibility engine and the cached
library tables it reads. Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("peek.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Users ───────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS users (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    username    TEXT NOT NULL UNIQUE,
    role        TEXT NOT NULL DEFAULT 'USER',
    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 2. Admin content restrictions (one per user + entity type) ─────
CREATE TABLE IF NOT EXISTS user_content_restrictions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    entity_type     TEXT NOT NULL,
    mode            TEXT NOT NULL DEFAULT 'EXCLUDE',
    entity_ids      TEXT NOT NULL DEFAULT '[]',
    restrict_empty  INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_restrictions_user_type ON user_content_restrictions(user_id, entity_type);

-- ── 3. User-hidden entities ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS user_hidden_entities (
    user_id      INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    entity_type  TEXT NOT NULL,
    entity_id    TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    hidden_at    TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (user_id, entity_type, entity_id, instance_id)
);

-- ── 4. Computed exclusions (owned by the exclusion engine) ─────────
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

-- ── 5. Cached library entities (written by upstream sync) ──────────
CREATE TABLE IF NOT EXISTS library_scenes (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    title        TEXT DEFAULT '',
    studio_id    TEXT,
    deleted_at   TEXT,
    PRIMARY KEY (id, instance_id)
);

CREATE INDEX IF NOT EXISTS idx_scenes_studio ON library_scenes(studio_id, instance_id);

CREATE TABLE IF NOT EXISTS library_performers (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    name         TEXT DEFAULT '',
    deleted_at   TEXT,
    PRIMARY KEY (id, instance_id)
);

CREATE TABLE IF NOT EXISTS library_studios (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    name         TEXT DEFAULT '',
    deleted_at   TEXT,
    PRIMARY KEY (id, instance_id)
);

CREATE TABLE IF NOT EXISTS library_tags (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    name         TEXT DEFAULT '',
    deleted_at   TEXT,
    PRIMARY KEY (id, instance_id)
);

CREATE TABLE IF NOT EXISTS library_groups (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    name         TEXT DEFAULT '',
    deleted_at   TEXT,
    PRIMARY KEY (id, instance_id)
);

CREATE TABLE IF NOT EXISTS library_galleries (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    title        TEXT DEFAULT '',
    deleted_at   TEXT,
    PRIMARY KEY (id, instance_id)
);

CREATE TABLE IF NOT EXISTS library_images (
    id           TEXT NOT NULL,
    instance_id  TEXT NOT NULL DEFAULT '',
    title        TEXT DEFAULT '',
    studio_id    TEXT,
    deleted_at   TEXT,
    PRIMARY KEY (id, instance_id)
);

-- ── 6. Library junctions (both sides instance-qualified) ───────────
CREATE TABLE IF NOT EXISTS scene_performers (
    scene_id               TEXT NOT NULL,
    scene_instance_id      TEXT NOT NULL DEFAULT '',
    performer_id           TEXT NOT NULL,
    performer_instance_id  TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (scene_id, scene_instance_id, performer_id, performer_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_scene_performers_src ON scene_performers(performer_id, performer_instance_id);

CREATE TABLE IF NOT EXISTS scene_tags (
    scene_id           TEXT NOT NULL,
    scene_instance_id  TEXT NOT NULL DEFAULT '',
    tag_id             TEXT NOT NULL,
    tag_instance_id    TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (scene_id, scene_instance_id, tag_id, tag_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_scene_tags_src ON scene_tags(tag_id, tag_instance_id);

-- Tags a scene inherits from its performers, studio and groups
CREATE TABLE IF NOT EXISTS scene_inherited_tags (
    scene_id           TEXT NOT NULL,
    scene_instance_id  TEXT NOT NULL DEFAULT '',
    tag_id             TEXT NOT NULL,
    tag_instance_id    TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (scene_id, scene_instance_id, tag_id, tag_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_scene_inherited_tags_src ON scene_inherited_tags(tag_id, tag_instance_id);

CREATE TABLE IF NOT EXISTS scene_groups (
    scene_id           TEXT NOT NULL,
    scene_instance_id  TEXT NOT NULL DEFAULT '',
    group_id           TEXT NOT NULL,
    group_instance_id  TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (scene_id, scene_instance_id, group_id, group_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_scene_groups_src ON scene_groups(group_id, group_instance_id);

CREATE TABLE IF NOT EXISTS scene_galleries (
    scene_id             TEXT NOT NULL,
    scene_instance_id    TEXT NOT NULL DEFAULT '',
    gallery_id           TEXT NOT NULL,
    gallery_instance_id  TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (scene_id, scene_instance_id, gallery_id, gallery_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_scene_galleries_src ON scene_galleries(gallery_id, gallery_instance_id);

CREATE TABLE IF NOT EXISTS image_galleries (
    image_id             TEXT NOT NULL,
    image_instance_id    TEXT NOT NULL DEFAULT '',
    gallery_id           TEXT NOT NULL,
    gallery_instance_id  TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (image_id, image_instance_id, gallery_id, gallery_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_image_galleries_src ON image_galleries(gallery_id, gallery_instance_id);

CREATE TABLE IF NOT EXISTS image_performers (
    image_id               TEXT NOT NULL,
    image_instance_id      TEXT NOT NULL DEFAULT '',
    performer_id           TEXT NOT NULL,
    performer_instance_id  TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (image_id, image_instance_id, performer_id, performer_instance_id)
);

CREATE TABLE IF NOT EXISTS performer_tags (
    performer_id           TEXT NOT NULL,
    performer_instance_id  TEXT NOT NULL DEFAULT '',
    tag_id                 TEXT NOT NULL,
    tag_instance_id        TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (performer_id, performer_instance_id, tag_id, tag_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_performer_tags_src ON performer_tags(tag_id, tag_instance_id);

CREATE TABLE IF NOT EXISTS studio_tags (
    studio_id            TEXT NOT NULL,
    studio_instance_id   TEXT NOT NULL DEFAULT '',
    tag_id               TEXT NOT NULL,
    tag_instance_id      TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (studio_id, studio_instance_id, tag_id, tag_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_studio_tags_src ON studio_tags(tag_id, tag_instance_id);

CREATE TABLE IF NOT EXISTS group_tags (
    group_id             TEXT NOT NULL,
    group_instance_id    TEXT NOT NULL DEFAULT '',
    tag_id               TEXT NOT NULL,
    tag_instance_id      TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (group_id, group_instance_id, tag_id, tag_instance_id)
);
CREATE INDEX IF NOT EXISTS idx_group_tags_src ON group_tags(tag_id, tag_instance_id);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and record the schema version."""
    await db.executescript(_TABLES)

    async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
        row = await cur.fetchone()
    current_version = row[0] if row and row[0] is not None else 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    # v2: restrict-empty flag on restrictions
    await _ensure_column(db, "user_content_restrictions", "restrict_empty", "INTEGER NOT NULL DEFAULT 0")
    # v3: studio ownership on images
    await _ensure_column(db, "library_images", "studio_id", "TEXT")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_images_studio ON library_images(studio_id, instance_id)")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
