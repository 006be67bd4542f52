from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger(__name__)

# entity_subtype is '' rather than NULL so the UNIQUE constraint also holds
# for entities without a subtype (SQLite treats NULLs as distinct).
# canonical_key / alias_key hold name_key() of the name; NOCASE only folds ASCII.
SCHEMA = """
CREATE TABLE IF NOT EXISTS fact_entities (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT NOT NULL,
    entity_type     TEXT NOT NULL CHECK (entity_type IN ('person', 'pet', 'place', 'thing')),
    entity_subtype  TEXT NOT NULL DEFAULT '',
    canonical_name  TEXT NOT NULL,
    canonical_key   TEXT NOT NULL,
    confidence      REAL NOT NULL DEFAULT 1.0 CHECK (confidence >= 0.0 AND confidence <= 1.0),
    source_type     TEXT NOT NULL DEFAULT 'user_stated'
                    CHECK (source_type IN ('user_stated', 'inferred', 'corrected')),
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    UNIQUE (user_id, entity_type, entity_subtype, canonical_key)
);
CREATE INDEX IF NOT EXISTS idx_fact_entities_user_type
    ON fact_entities(user_id, entity_type, entity_subtype) WHERE is_active = 1;

CREATE TABLE IF NOT EXISTS fact_aliases (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id   INTEGER NOT NULL REFERENCES fact_entities(id) ON DELETE CASCADE,
    alias_name  TEXT NOT NULL,
    alias_key   TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    UNIQUE (entity_id, alias_key)
);
CREATE INDEX IF NOT EXISTS idx_fact_aliases_key ON fact_aliases(alias_key);

CREATE TABLE IF NOT EXISTS fact_attributes (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id          INTEGER NOT NULL REFERENCES fact_entities(id) ON DELETE CASCADE,
    attribute_name     TEXT NOT NULL,
    attribute_value    TEXT NOT NULL,
    source_message_id  TEXT,
    updated_at         TEXT NOT NULL,
    UNIQUE (entity_id, attribute_name)
);

CREATE TABLE IF NOT EXISTS fact_relationships (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id            TEXT NOT NULL,
    subject_entity_id  INTEGER NOT NULL REFERENCES fact_entities(id) ON DELETE CASCADE,
    relationship_type  TEXT NOT NULL,
    object_entity_id   INTEGER REFERENCES fact_entities(id) ON DELETE CASCADE,
    object_value       TEXT,
    source_message_id  TEXT,
    created_at         TEXT NOT NULL,
    CHECK (object_entity_id IS NOT NULL OR object_value IS NOT NULL)
);
CREATE INDEX IF NOT EXISTS idx_fact_relationships_subject
    ON fact_relationships(user_id, subject_entity_id);
CREATE INDEX IF NOT EXISTS idx_fact_relationships_type
    ON fact_relationships(user_id, relationship_type);

CREATE TABLE IF NOT EXISTS fact_corrections (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id            TEXT NOT NULL,
    entity_id          INTEGER NOT NULL REFERENCES fact_entities(id) ON DELETE CASCADE,
    field              TEXT NOT NULL,
    old_value          TEXT,
    new_value          TEXT,
    source_message_id  TEXT,
    created_at         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_fact_corrections_user ON fact_corrections(user_id, created_at);

CREATE TABLE IF NOT EXISTS fact_cache (
    user_id    TEXT PRIMARY KEY,
    cached_at  TEXT NOT NULL
);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """Open the database and make sure the fact schema exists."""
    conn = await aiosqlite.connect(db_path)
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")   # Faster, safe with WAL
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.executescript(SCHEMA)
    await conn.commit()
    logger.info("Fact database ready at %s", db_path)
    return conn
