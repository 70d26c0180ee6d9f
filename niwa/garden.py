"""
Garden — monitored directories for the crawler

Registers directories ("garden paths") whose session logs the Gardener
crawls.  Registration is metadata-only; scanning and ingestion are handled
by niwa.crawler.

Presets name well-known tool log locations:
    claude-code (alias: claude)   ~/.claude/projects
    cursor                        Cursor workspaceStorage (per platform)

Public API:
    GardenRegistry(db)
    registry.add(path, preset_name) / init_preset(name) / list(enabled_only)
    registry.get(id) / get_by_path(path) / remove(id)
    registry.set_enabled(id, enabled) / mark_scanned(id)
    PRESETS, get_preset(name)
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from niwa.db import Database
from niwa.errors import InvalidInputError, NotFoundError
from niwa.types import GardenPath

logger = logging.getLogger(__name__)

DEFAULT_FILE_PATTERNS = ["*.log", "*.md", "*.txt", "*.jsonl"]


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------


def _cursor_dir() -> Optional[Path]:
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Cursor" / "User" / "workspaceStorage"
    if sys.platform.startswith("win"):
        appdata = os.environ.get("APPDATA")
        if not appdata:
            return None
        return Path(appdata) / "Cursor" / "User" / "workspaceStorage"
    return home / ".config" / "Cursor" / "User" / "workspaceStorage"


@dataclass(frozen=True)
class GardenPreset:
    """A named recipe for a tool's session-log directory."""

    name: str
    description: str
    file_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_FILE_PATTERNS))
    aliases: tuple = ()

    def default_path(self) -> Optional[Path]:
        if self.name == "claude-code":
            return Path.home() / ".claude" / "projects"
        if self.name == "cursor":
            return _cursor_dir()
        return None


PRESETS: Dict[str, GardenPreset] = {
    "claude-code": GardenPreset(
        name="claude-code",
        description="Claude Code session transcripts (JSONL)",
        file_patterns=["*.jsonl"],
        aliases=("claude",),
    ),
    "cursor": GardenPreset(
        name="cursor",
        description="Cursor workspace storage",
    ),
}


def get_preset(name: Optional[str]) -> Optional[GardenPreset]:
    """Look up a preset by name or alias (case-insensitive); None for None."""
    if name is None:
        return None
    key = name.strip().lower()
    for preset in PRESETS.values():
        if key == preset.name or key in preset.aliases:
            return preset
    raise InvalidInputError(
        f"Unknown preset: {name} (available: {', '.join(sorted(PRESETS))})"
    )


def _row_to_garden_path(row) -> GardenPath:
    return GardenPath(
        id=row["id"],
        path=row["path"],
        preset_name=row["preset_name"],
        enabled=bool(row["enabled"]),
        added_at=row["added_at"],
        last_scanned_at=row["last_scanned_at"],
    )


_COLUMNS = "id, path, preset_name, enabled, added_at, last_scanned_at"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class GardenRegistry:
    """CRUD over the garden_paths table."""

    def __init__(self, db: Database):
        self.db = db

    def add(self, path: str, preset_name: Optional[str] = None) -> GardenPath:
        """Register a directory; re-adding an existing path re-enables it.

        The path is resolved to an absolute canonical path first.

        Raises:
            NotFoundError: If the path does not exist.
            InvalidInputError: If the path is not a directory or the preset
                name is unknown.
        """
        preset = get_preset(preset_name)
        canonical = os.path.realpath(os.path.expanduser(str(path)))
        if not os.path.exists(canonical):
            raise NotFoundError(f"Garden path does not exist: {canonical}")
        if not os.path.isdir(canonical):
            raise InvalidInputError(f"Garden path is not a directory: {canonical}")
        with self.db.transaction():
            self.db.execute(
                "INSERT INTO garden_paths (path, preset_name, enabled, added_at) "
                "VALUES (?, ?, 1, ?) "
                "ON CONFLICT(path) DO UPDATE SET enabled = 1",
                (canonical, preset.name if preset else None, self.db.now()),
            )
            garden = self.get_by_path(canonical)
        logger.info(f"Registered garden path {garden.id} -> {canonical}")
        return garden

    def init_preset(self, name: str) -> GardenPath:
        """Register the default directory of a preset.

        Raises:
            InvalidInputError: Unknown preset, or no location on this platform.
            NotFoundError: The tool's directory does not exist.
        """
        preset = get_preset(name)
        location = preset.default_path()
        if location is None:
            raise InvalidInputError(f"Preset {preset.name} is not supported on this platform")
        if not location.exists():
            raise NotFoundError(
                f"Preset path does not exist: {location} (is {preset.name} installed?)"
            )
        return self.add(str(location), preset.name)

    def get(self, garden_id: int) -> Optional[GardenPath]:
        row = self.db.fetchone(
            f"SELECT {_COLUMNS} FROM garden_paths WHERE id = ?", (garden_id,),
        )
        return _row_to_garden_path(row) if row else None

    def get_by_path(self, path: str) -> Optional[GardenPath]:
        row = self.db.fetchone(
            f"SELECT {_COLUMNS} FROM garden_paths WHERE path = ?", (path,),
        )
        return _row_to_garden_path(row) if row else None

    def list(self, enabled_only: bool = False) -> List[GardenPath]:
        sql = f"SELECT {_COLUMNS} FROM garden_paths"
        if enabled_only:
            sql += " WHERE enabled = 1"
        sql += " ORDER BY id ASC"
        return [_row_to_garden_path(r) for r in self.db.fetchall(sql)]

    def remove(self, garden_id: int) -> None:
        """Unregister a path. Ledger rows for its files are kept.

        Raises:
            NotFoundError: Unknown id.
        """
        with self.db.transaction():
            cur = self.db.execute("DELETE FROM garden_paths WHERE id = ?", (garden_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"No garden path with id {garden_id}")
        logger.info(f"Removed garden path {garden_id}")

    def set_enabled(self, garden_id: int, enabled: bool) -> GardenPath:
        with self.db.transaction():
            cur = self.db.execute(
                "UPDATE garden_paths SET enabled = ? WHERE id = ?",
                (1 if enabled else 0, garden_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"No garden path with id {garden_id}")
        return self.get(garden_id)

    def mark_scanned(self, garden_id: int) -> None:
        """Stamp last_scanned_at with the current time."""
        self.db.execute(
            "UPDATE garden_paths SET last_scanned_at = ? WHERE id = ?",
            (self.db.now(), garden_id),
        )
