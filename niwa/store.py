"""
Expertise Store — versioned record store

Tables:
    expertises  - Current state of each unit (one row per id)
    tags        - (expertise_id, tag) pairs, owned by the unit
    versions    - Append-only payload history keyed by (expertise_id, version)

Every write is all-or-nothing: the unit row, its tags and its version
snapshot commit together or not at all.  Full-text index rows are kept in
step by triggers (see niwa.migrations), so they commit with the same write.

Identity: an id is unique across the whole store.  ``get``/``delete``/
``exists`` accept an optional scope which must match the stored scope.

Public API:
    ExpertiseStore(db)
    store.create(unit) / get(id, scope) / exists(id, scope)
    store.update(unit) / delete(id, scope) / list(scope) / count(scope)
    store.list_versions(id) / get_version(id, version) / has_version(id, version)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from niwa.db import Database
from niwa.errors import ConflictError, NotFoundError, StorageError
from niwa.types import Expertise, Scope, VersionSnapshot

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = (
    "id, version, scope, created_at, updated_at, data_json, description"
)


def _load_json(raw: Optional[str], where: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw) if raw else {}
    except json.JSONDecodeError as exc:
        raise StorageError(f"corrupt payload for {where}: {exc}") from exc
    return data if isinstance(data, dict) else {"value": data}


class ExpertiseStore:
    """CRUD and version history for expertise units."""

    def __init__(self, db: Database):
        self.db = db

    # -- helpers -------------------------------------------------------------

    def _tags_for(self, expertise_id: str) -> List[str]:
        rows = self.db.fetchall(
            "SELECT tag FROM tags WHERE expertise_id = ? ORDER BY rowid",
            (expertise_id,),
        )
        return [r["tag"] for r in rows]

    def _row_to_expertise(self, row: sqlite3.Row) -> Expertise:
        return Expertise(
            id=row["id"],
            version=row["version"],
            scope=Scope.parse(row["scope"]),
            description=row["description"],
            tags=self._tags_for(row["id"]),
            data=_load_json(row["data_json"], row["id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _insert_tags(self, expertise_id: str, tags: List[str]) -> None:
        for tag in tags:
            self.db.execute(
                "INSERT OR IGNORE INTO tags (expertise_id, tag) VALUES (?, ?)",
                (expertise_id, tag),
            )

    def _append_version(self, unit: Expertise, ts: int) -> None:
        try:
            self.db.execute(
                "INSERT INTO versions (expertise_id, version, created_at, data_json) "
                "VALUES (?, ?, ?, ?)",
                (unit.id, unit.version, ts, unit.data_json),
            )
        except ConflictError:
            raise ConflictError(
                f"expertise {unit.id}: version {unit.version!r} already recorded"
            ) from None

    # -- CRUD ----------------------------------------------------------------

    def create(self, unit: Expertise) -> Expertise:
        """Insert a new unit with its tags and first version snapshot.

        Returns:
            The stored unit, with created_at == updated_at == now.

        Raises:
            ConflictError: If a unit with the same id exists (any scope).
        """
        with self.db.transaction():
            if self.exists(unit.id):
                raise ConflictError(f"expertise {unit.id} already exists")
            ts = self.db.now()
            self.db.execute(
                "INSERT INTO expertises "
                "(id, version, scope, created_at, updated_at, data_json, description) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (unit.id, unit.version, unit.scope.value, ts, ts,
                 unit.data_json, unit.description),
            )
            self._insert_tags(unit.id, unit.tags)
            self._append_version(unit, ts)
        unit.created_at = ts
        unit.updated_at = ts
        logger.info(f"Created expertise {unit.id} v{unit.version} ({unit.scope})")
        return unit

    def get(self, expertise_id: str, scope: Optional[Scope] = None) -> Optional[Expertise]:
        """Return the current unit, or None if absent (or in another scope)."""
        sql = f"SELECT {_SELECT_COLUMNS} FROM expertises WHERE id = ?"
        params: List[Any] = [expertise_id]
        if scope is not None:
            sql += " AND scope = ?"
            params.append(Scope.parse(scope).value)
        row = self.db.fetchone(sql, params)
        if row is None:
            return None
        return self._row_to_expertise(row)

    def exists(self, expertise_id: str, scope: Optional[Scope] = None) -> bool:
        sql = "SELECT 1 FROM expertises WHERE id = ?"
        params: List[Any] = [expertise_id]
        if scope is not None:
            sql += " AND scope = ?"
            params.append(Scope.parse(scope).value)
        return self.db.fetchone(sql, params) is not None

    def update(self, unit: Expertise) -> Expertise:
        """Overwrite the current unit and append a version snapshot.

        The unit's scope, version, description and payload replace the stored
        ones; tags are replaced as a set; created_at is preserved.

        Raises:
            NotFoundError: If no unit has this id.
            ConflictError: If (id, version) is already in the history.
        """
        with self.db.transaction():
            row = self.db.fetchone(
                "SELECT created_at FROM expertises WHERE id = ?", (unit.id,),
            )
            if row is None:
                raise NotFoundError(f"expertise {unit.id} not found")
            ts = self.db.now()
            # Version first: a duplicate must abort before anything else moves.
            self._append_version(unit, ts)
            self.db.execute("DELETE FROM tags WHERE expertise_id = ?", (unit.id,))
            self.db.execute(
                "UPDATE expertises SET version = ?, scope = ?, updated_at = ?, "
                "data_json = ?, description = ? WHERE id = ?",
                (unit.version, unit.scope.value, ts, unit.data_json,
                 unit.description, unit.id),
            )
            self._insert_tags(unit.id, unit.tags)
        unit.created_at = row["created_at"]
        unit.updated_at = ts
        logger.info(f"Updated expertise {unit.id} -> v{unit.version}")
        return unit

    def delete(self, expertise_id: str, scope: Optional[Scope] = None) -> None:
        """Remove a unit; tags, relations, versions and ledger rows cascade.

        Raises:
            NotFoundError: If no matching unit exists.
        """
        sql = "DELETE FROM expertises WHERE id = ?"
        params: List[Any] = [expertise_id]
        if scope is not None:
            sql += " AND scope = ?"
            params.append(Scope.parse(scope).value)
        with self.db.transaction():
            cur = self.db.execute(sql, params)
            if cur.rowcount == 0:
                raise NotFoundError(f"expertise {expertise_id} not found")
        logger.info(f"Deleted expertise {expertise_id}")

    def list(self, scope: Optional[Scope] = None) -> List[Expertise]:
        """All units, most recently updated first."""
        sql = f"SELECT {_SELECT_COLUMNS} FROM expertises"
        params: List[Any] = []
        if scope is not None:
            sql += " WHERE scope = ?"
            params.append(Scope.parse(scope).value)
        sql += " ORDER BY updated_at DESC, id ASC"
        return [self._row_to_expertise(r) for r in self.db.fetchall(sql, params)]

    def count(self, scope: Optional[Scope] = None) -> int:
        if scope is None:
            row = self.db.fetchone("SELECT COUNT(*) AS n FROM expertises")
        else:
            row = self.db.fetchone(
                "SELECT COUNT(*) AS n FROM expertises WHERE scope = ?",
                (Scope.parse(scope).value,),
            )
        return row["n"]

    # -- history -------------------------------------------------------------

    def list_versions(self, expertise_id: str) -> List[VersionSnapshot]:
        """Version snapshots, newest first (insertion order breaks ties).

        Raises:
            NotFoundError: If the unit does not exist.
        """
        if not self.exists(expertise_id):
            raise NotFoundError(f"expertise {expertise_id} not found")
        rows = self.db.fetchall(
            "SELECT expertise_id, version, created_at, data_json FROM versions "
            "WHERE expertise_id = ? ORDER BY created_at DESC, rowid DESC",
            (expertise_id,),
        )
        return [
            VersionSnapshot(
                expertise_id=r["expertise_id"],
                version=r["version"],
                created_at=r["created_at"],
                data=_load_json(r["data_json"], f"{expertise_id}@{r['version']}"),
            )
            for r in rows
        ]

    def get_version(self, expertise_id: str, version: str) -> Optional[VersionSnapshot]:
        row = self.db.fetchone(
            "SELECT expertise_id, version, created_at, data_json FROM versions "
            "WHERE expertise_id = ? AND version = ?",
            (expertise_id, version),
        )
        if row is None:
            return None
        return VersionSnapshot(
            expertise_id=row["expertise_id"],
            version=row["version"],
            created_at=row["created_at"],
            data=_load_json(row["data_json"], f"{expertise_id}@{version}"),
        )

    def has_version(self, expertise_id: str, version: str) -> bool:
        return self.db.fetchone(
            "SELECT 1 FROM versions WHERE expertise_id = ? AND version = ?",
            (expertise_id, version),
        ) is not None
