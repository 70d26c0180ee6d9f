"""
Schema Migrations — ordered, forward-only

Each migration is a (version, name, step) triple.  A step is either an SQL
script or a callable taking the raw connection.  Migrations above the
recorded ``schema_meta.schema_version`` are applied in order, each inside its
own transaction, and every statement is guarded (IF NOT EXISTS, column
checks) so a partially migrated database can be re-opened safely.

A database stamped with a version newer than this library knows is opened
as-is: nothing is applied and nothing is downgraded.

Public API:
    MIGRATIONS, SCHEMA_VERSION, apply_migrations(conn), current_version(conn)
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, List, Tuple, Union

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Migration scripts
# ---------------------------------------------------------------------------

_META_SQL = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_001_INIT = """
CREATE TABLE IF NOT EXISTS expertises (
    id          TEXT PRIMARY KEY,
    version     TEXT NOT NULL,
    scope       TEXT NOT NULL CHECK(scope IN ('personal', 'company', 'project')),
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL,
    data_json   TEXT NOT NULL,
    description TEXT,
    UNIQUE(id, scope)
);

CREATE INDEX IF NOT EXISTS idx_expertises_scope ON expertises(scope);
CREATE INDEX IF NOT EXISTS idx_expertises_updated ON expertises(updated_at DESC);

CREATE TABLE IF NOT EXISTS tags (
    expertise_id TEXT NOT NULL,
    tag          TEXT NOT NULL,
    FOREIGN KEY (expertise_id) REFERENCES expertises(id) ON DELETE CASCADE,
    PRIMARY KEY (expertise_id, tag)
);

CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags(tag);

CREATE TABLE IF NOT EXISTS relations (
    from_id       TEXT NOT NULL,
    to_id         TEXT NOT NULL,
    relation_type TEXT NOT NULL
                  CHECK(relation_type IN ('uses', 'extends', 'conflicts', 'requires')),
    metadata      TEXT,
    created_at    INTEGER NOT NULL,
    FOREIGN KEY (from_id) REFERENCES expertises(id) ON DELETE CASCADE,
    FOREIGN KEY (to_id) REFERENCES expertises(id) ON DELETE CASCADE,
    PRIMARY KEY (from_id, to_id, relation_type)
);

CREATE INDEX IF NOT EXISTS idx_relations_from ON relations(from_id);
CREATE INDEX IF NOT EXISTS idx_relations_to ON relations(to_id);
CREATE INDEX IF NOT EXISTS idx_relations_type ON relations(relation_type);

CREATE TABLE IF NOT EXISTS versions (
    expertise_id TEXT NOT NULL,
    version      TEXT NOT NULL,
    created_at   INTEGER NOT NULL,
    data_json    TEXT NOT NULL,
    FOREIGN KEY (expertise_id) REFERENCES expertises(id) ON DELETE CASCADE,
    PRIMARY KEY (expertise_id, version)
);

CREATE INDEX IF NOT EXISTS idx_versions_expertise ON versions(expertise_id);
CREATE INDEX IF NOT EXISTS idx_versions_created ON versions(created_at DESC);

CREATE VIRTUAL TABLE IF NOT EXISTS expertises_fts USING fts5(
    id UNINDEXED,
    description,
    tags
);

CREATE TRIGGER IF NOT EXISTS expertises_ai AFTER INSERT ON expertises BEGIN
    INSERT INTO expertises_fts(id, description, tags)
    VALUES (
        new.id,
        new.description,
        (SELECT group_concat(tag, ' ') FROM tags WHERE expertise_id = new.id)
    );
END;

CREATE TRIGGER IF NOT EXISTS expertises_ad AFTER DELETE ON expertises BEGIN
    DELETE FROM expertises_fts WHERE id = old.id;
END;

CREATE TRIGGER IF NOT EXISTS expertises_au AFTER UPDATE ON expertises BEGIN
    UPDATE expertises_fts
    SET description = new.description,
        tags = (SELECT group_concat(tag, ' ') FROM tags WHERE expertise_id = new.id)
    WHERE id = new.id;
END;

CREATE TRIGGER IF NOT EXISTS tags_ai AFTER INSERT ON tags BEGIN
    UPDATE expertises_fts
    SET tags = (SELECT group_concat(tag, ' ') FROM tags WHERE expertise_id = new.expertise_id)
    WHERE id = new.expertise_id;
END;

CREATE TRIGGER IF NOT EXISTS tags_ad AFTER DELETE ON tags BEGIN
    UPDATE expertises_fts
    SET tags = (SELECT group_concat(tag, ' ') FROM tags WHERE expertise_id = old.expertise_id)
    WHERE id = old.expertise_id;
END;
"""

_002_PROCESSED_SESSIONS = """
CREATE TABLE IF NOT EXISTS processed_sessions (
    file_path    TEXT PRIMARY KEY,
    file_hash    TEXT NOT NULL,
    expertise_id TEXT NOT NULL,
    processed_at INTEGER NOT NULL,
    FOREIGN KEY (expertise_id) REFERENCES expertises(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_processed_sessions_expertise
    ON processed_sessions(expertise_id);
CREATE INDEX IF NOT EXISTS idx_processed_sessions_processed_at
    ON processed_sessions(processed_at DESC);
"""

_003_GARDEN_PATHS = """
CREATE TABLE IF NOT EXISTS garden_paths (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    path        TEXT NOT NULL UNIQUE,
    preset_name TEXT,
    enabled     BOOLEAN NOT NULL DEFAULT 1,
    added_at    INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_garden_paths_enabled ON garden_paths(enabled);
"""

# Priority 0 is reserved for the '*' fallback; it always matches, so
# resolution is total.
_004_SCOPE_MAPPINGS = """
CREATE TABLE IF NOT EXISTS scope_mappings (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern    TEXT NOT NULL UNIQUE,
    scope      TEXT NOT NULL CHECK (scope IN ('personal', 'company', 'project')),
    priority   INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_scope_mappings_priority ON scope_mappings(priority DESC);

INSERT OR IGNORE INTO scope_mappings (pattern, scope, priority) VALUES ('*', 'personal', 0);
"""


def _table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]


def _005_garden_last_scanned(conn: sqlite3.Connection) -> None:
    """Record when each garden path was last crawled (nullable)."""
    if "last_scanned_at" not in _table_columns(conn, "garden_paths"):
        conn.execute("ALTER TABLE garden_paths ADD COLUMN last_scanned_at INTEGER")


MigrationStep = Union[str, Callable[[sqlite3.Connection], None]]

MIGRATIONS: List[Tuple[int, str, MigrationStep]] = [
    (1, "init", _001_INIT),
    (2, "add_processed_sessions", _002_PROCESSED_SESSIONS),
    (3, "add_garden_paths", _003_GARDEN_PATHS),
    (4, "add_scope_mappings", _004_SCOPE_MAPPINGS),
    (5, "add_garden_last_scanned", _005_garden_last_scanned),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def current_version(conn: sqlite3.Connection) -> int:
    """Return the recorded schema version (0 for a fresh database)."""
    row = conn.execute(
        "SELECT value FROM schema_meta WHERE key = 'schema_version'"
    ).fetchone()
    if row is None:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def _stamp_sql(version: int) -> str:
    return (
        "INSERT OR REPLACE INTO schema_meta (key, value) "
        f"VALUES ('schema_version', '{int(version)}');"
    )


def apply_migrations(conn: sqlite3.Connection) -> int:
    """Bring the database up to SCHEMA_VERSION.

    The connection must be in autocommit mode (isolation_level=None); each
    migration opens and closes its own transaction.

    Returns:
        Number of migrations applied (0 when already current or newer).
    """
    conn.executescript(_META_SQL)
    conn.execute(
        "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'niwa')"
    )
    start = current_version(conn)
    if start >= SCHEMA_VERSION:
        if start > SCHEMA_VERSION:
            logger.info(
                f"Schema version {start} is newer than {SCHEMA_VERSION}; "
                f"opening without migrations"
            )
        return 0

    applied = 0
    for version, name, step in MIGRATIONS:
        if version <= start:
            continue
        try:
            if isinstance(step, str):
                # executescript commits any pending transaction first, so the
                # BEGIN/COMMIT pair lives inside the script itself.
                conn.executescript(
                    f"BEGIN IMMEDIATE;\n{step}\n{_stamp_sql(version)}\nCOMMIT;"
                )
            else:
                conn.execute("BEGIN IMMEDIATE")
                step(conn)
                conn.execute(_stamp_sql(version))
                conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Migration {version:03d}_{name} failed")
            raise
        applied += 1
        logger.info(f"Applied migration {version:03d}_{name}")
    return applied
