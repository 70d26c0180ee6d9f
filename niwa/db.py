"""
Database Handle — the single long-lived connection

One Database per process, passed explicitly to every component (store,
search index, relation graph, scope resolver, garden registry, ledger,
gardener).  It owns:

    - one sqlite3 connection (autocommit mode, WAL on disk, foreign keys ON)
    - a re-entrant lock serializing all statements on that connection
    - the clock used to stamp created_at / updated_at / processed_at
    - the migration run performed on open

Thread safety: uses sqlite3 check_same_thread=False with explicit
serialization.  ``transaction()`` holds the lock for the whole unit of work,
so component operations composed inside one outer transaction commit or roll
back together.

Public API:
    Database(path, wal_mode, busy_timeout, clock)
    Database.open(config)
    db.transaction(), db.execute(), db.fetchone(), db.fetchall(), db.now()
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence

from niwa.config import NiwaConfig, resolve_db_path
from niwa.errors import ConflictError, NotFoundError, StorageError
from niwa.migrations import SCHEMA_VERSION, apply_migrations, current_version
from niwa.types import now_ts

logger = logging.getLogger(__name__)


def translate_error(exc: sqlite3.Error) -> Exception:
    """Map a sqlite3 error onto the niwa taxonomy."""
    if isinstance(exc, sqlite3.IntegrityError):
        msg = str(exc)
        if "UNIQUE" in msg or "PRIMARY KEY" in msg:
            return ConflictError(msg)
        if "FOREIGN KEY" in msg:
            return NotFoundError(f"referenced record missing: {msg}")
    return StorageError(f"{type(exc).__name__}: {exc}")


class Database:
    """SQLite connection, lock, clock and transaction scope."""

    def __init__(
        self,
        path: Optional[str] = None,
        wal_mode: bool = True,
        busy_timeout: float = 5.0,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Open (creating if needed) and migrate the database.

        Args:
            path: SQLite file path or ":memory:".  None resolves through
                NIWA_DB and then ~/.niwa/graph.db.
            wal_mode: Enable WAL journal mode for disk databases.
            busy_timeout: Seconds to wait on a locked database.
            clock: Callable returning Unix seconds; injectable for tests.

        Raises:
            StorageError: If the file cannot be opened, FTS5 is missing, or
                a migration fails.
        """
        self.path = resolve_db_path(path)
        self._clock = clock or now_ts
        self._lock = threading.RLock()
        self._depth = 0
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self.path, check_same_thread=False,
                isolation_level=None, timeout=busy_timeout,
            )
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"cannot open database {self.path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        try:
            if wal_mode and self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._check_fts5()
            applied = apply_migrations(self._conn)
            self.schema_version = current_version(self._conn)
        except sqlite3.Error as exc:
            self._conn.close()
            raise translate_error(exc) from exc
        except StorageError:
            self._conn.close()
            raise
        logger.info(
            f"Database opened: {self.path} (schema={self.schema_version}, "
            f"applied={applied})"
        )

    @classmethod
    def open(cls, config: Optional[NiwaConfig] = None, **kwargs) -> Database:
        """Open the database described by a NiwaConfig."""
        cfg = config or NiwaConfig()
        return cls(
            path=cfg.store.db_path,
            wal_mode=cfg.store.wal_mode,
            busy_timeout=cfg.store.busy_timeout,
            **kwargs,
        )

    def _check_fts5(self) -> None:
        try:
            self._conn.execute(
                "CREATE VIRTUAL TABLE IF NOT EXISTS temp._niwa_fts5_probe USING fts5(x)"
            )
            self._conn.execute("DROP TABLE temp._niwa_fts5_probe")
        except sqlite3.OperationalError as exc:
            raise StorageError(f"SQLite build lacks FTS5: {exc}") from exc

    # -- clock ---------------------------------------------------------------

    def now(self) -> int:
        """Current time from the injected clock (Unix seconds)."""
        return int(self._clock())

    # -- statements ----------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run one statement under the lock, translating sqlite3 errors."""
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise translate_error(exc) from exc

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise translate_error(exc) from exc

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise translate_error(exc) from exc

    # -- transactions --------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """All-or-nothing unit of work.

        The outermost call issues BEGIN IMMEDIATE and COMMIT; nested calls use
        savepoints, so a failing inner block rolls back only its own writes
        unless the exception propagates further.  Any exception, including
        KeyboardInterrupt, rolls back.
        """
        with self._lock:
            depth = self._depth
            savepoint = f"niwa_sp_{depth}"
            try:
                if depth == 0:
                    self._conn.execute("BEGIN IMMEDIATE")
                else:
                    self._conn.execute(f"SAVEPOINT {savepoint}")
            except sqlite3.Error as exc:
                raise translate_error(exc) from exc
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                self._rollback(depth, savepoint)
                raise
            self._depth -= 1
            try:
                if depth == 0:
                    self._conn.execute("COMMIT")
                else:
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            except sqlite3.Error as exc:
                self._rollback(depth, savepoint)
                raise translate_error(exc) from exc

    def _rollback(self, depth: int, savepoint: str) -> None:
        try:
            if depth == 0:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
            else:
                self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
        except sqlite3.Error as exc:
            logger.error(f"Rollback failed: {exc}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # -- lifecycle -----------------------------------------------------------

    def table_names(self) -> List[str]:
        rows = self.fetchall(
            "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') ORDER BY name"
        )
        return [r["name"] for r in rows]

    def close(self) -> None:
        """Close the connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Database({self.path!r}, schema={self.schema_version}/{SCHEMA_VERSION})"
