"""
Processed-Session Ledger

One row per ingested file: its path, the SHA-256 of the content that was
processed, the expertise it produced, and when.  The crawler consults the
ledger to skip unchanged files; rows cascade away when their expertise is
deleted, so a deleted unit is regenerated on the next crawl.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from niwa.db import Database
from niwa.errors import NotFoundError
from niwa.types import ProcessedSession

logger = logging.getLogger(__name__)


def _row_to_session(row) -> ProcessedSession:
    return ProcessedSession(
        file_path=row["file_path"],
        file_hash=row["file_hash"],
        expertise_id=row["expertise_id"],
        processed_at=row["processed_at"],
    )


class SessionLedger:
    """Lookup and upsert over processed_sessions."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, file_path: str) -> Optional[ProcessedSession]:
        row = self.db.fetchone(
            "SELECT file_path, file_hash, expertise_id, processed_at "
            "FROM processed_sessions WHERE file_path = ?",
            (file_path,),
        )
        return _row_to_session(row) if row else None

    def record(self, file_path: str, file_hash: str, expertise_id: str) -> ProcessedSession:
        """Insert or replace the row for ``file_path``.

        processed_at strictly increases for a given path, even when two
        records land within the same clock second.
        """
        with self.db.transaction():
            previous = self.get(file_path)
            ts = self.db.now()
            if previous is not None and ts <= previous.processed_at:
                ts = previous.processed_at + 1
            self.db.execute(
                "INSERT INTO processed_sessions "
                "(file_path, file_hash, expertise_id, processed_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(file_path) DO UPDATE SET "
                "file_hash = excluded.file_hash, "
                "expertise_id = excluded.expertise_id, "
                "processed_at = excluded.processed_at",
                (file_path, file_hash, expertise_id, ts),
            )
        logger.debug(f"Ledger: {file_path} -> {expertise_id} ({file_hash[:12]})")
        return ProcessedSession(file_path, file_hash, expertise_id, ts)

    def list(self, expertise_id: Optional[str] = None) -> List[ProcessedSession]:
        """Rows, most recently processed first."""
        sql = (
            "SELECT file_path, file_hash, expertise_id, processed_at "
            "FROM processed_sessions"
        )
        params = []
        if expertise_id is not None:
            sql += " WHERE expertise_id = ?"
            params.append(expertise_id)
        sql += " ORDER BY processed_at DESC, file_path ASC"
        return [_row_to_session(r) for r in self.db.fetchall(sql, params)]

    def forget(self, file_path: str) -> None:
        """Drop a row so the file is reprocessed on the next crawl."""
        cur = self.db.execute(
            "DELETE FROM processed_sessions WHERE file_path = ?", (file_path,),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"{file_path} is not in the ledger")

    def count(self) -> int:
        return self.db.fetchone("SELECT COUNT(*) AS n FROM processed_sessions")["n"]
