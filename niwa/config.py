"""
niwa Configuration

Configuration dataclasses for niwa: store, search, crawler and generator
settings.  Includes load_config() for reading a JSON config file with silent
fallback to compiled defaults, and resolve_db_path() for locating the
database (explicit argument > NIWA_DB environment variable > ~/.niwa/graph.db).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_DB_PATH = "~/.niwa/graph.db"
DB_ENV_VAR = "NIWA_DB"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: Optional[str] = None  # None -> NIWA_DB or ~/.niwa/graph.db
    wal_mode: bool = True
    busy_timeout: float = 5.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout", self.busy_timeout, 0, 600, (int, float))
        return errors


@dataclass
class SearchConfig:
    """Full-text search defaults."""
    default_limit: int = 20
    or_fallback: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.default_limit", self.default_limit, 1, 10000, int)
        return errors


@dataclass
class CrawlerConfig:
    """Gardener scan and processing thresholds."""
    file_patterns: List[str] = field(
        default_factory=lambda: ["*.log", "*.md", "*.txt", "*.jsonl"]
    )
    ignore_patterns: List[str] = field(
        default_factory=lambda: [".git", "__pycache__", "node_modules"]
    )
    min_messages: int = 3
    min_chars: int = 200
    recent_days: Optional[int] = None
    max_files: Optional[int] = None
    parallelism: int = 1
    generation_timeout: float = 300.0
    follow_links: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "crawler.min_messages", self.min_messages, 0, 10000, int)
        _check_range(errors, "crawler.min_chars", self.min_chars, 0, 10_000_000, int)
        _check_range(errors, "crawler.parallelism", self.parallelism, 1, 64, int)
        _check_range(
            errors, "crawler.generation_timeout", self.generation_timeout,
            0.1, 86400, (int, float),
        )
        if self.recent_days is not None:
            _check_range(errors, "crawler.recent_days", self.recent_days, 1, 36500, int)
        if self.max_files is not None:
            _check_range(errors, "crawler.max_files", self.max_files, 1, 10_000_000, int)
        if not self.file_patterns:
            errors.append("crawler.file_patterns: must not be empty")
        return errors


@dataclass
class GeneratorConfig:
    """External LLM command used to turn a session log into an expertise."""
    command: str = "claude -p"
    mode: str = "stdin"  # "stdin" | "file"
    timeout: int = 300

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.mode not in ("stdin", "file"):
            errors.append(f"generator.mode: {self.mode!r} not in ('stdin', 'file')")
        if not self.command.strip():
            errors.append("generator.command: must not be empty")
        _check_range(errors, "generator.timeout", self.timeout, 1, 86400, int)
        return errors


# ---------------------------------------------------------------------------
# Top-level
# ---------------------------------------------------------------------------


@dataclass
class NiwaConfig:
    """Top-level niwa configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> NiwaConfig:
        """Build config from a nested dict, ignoring unknown keys."""
        def _sub(klass, key):
            raw = d.get(key, {}) or {}
            return klass(**{
                k: v for k, v in raw.items()
                if k in klass.__dataclass_fields__
            })

        return cls(
            store=_sub(StoreConfig, "store"),
            search=_sub(SearchConfig, "search"),
            crawler=_sub(CrawlerConfig, "crawler"),
            generator=_sub(GeneratorConfig, "generator"),
        )

    def validate(self) -> List[str]:
        """Validate all sub-configs. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.search.validate())
        errors.extend(self.crawler.validate())
        errors.extend(self.generator.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> NiwaConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        NiwaConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = NiwaConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = NiwaConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError,
                AttributeError):
            cfg = NiwaConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg


def resolve_db_path(explicit: Optional[str] = None) -> str:
    """Resolve the database path: explicit > $NIWA_DB > ~/.niwa/graph.db."""
    if explicit:
        path = explicit
    else:
        path = os.environ.get(DB_ENV_VAR, "").strip() or DEFAULT_DB_PATH
    if path == ":memory:":
        return path
    return os.path.expanduser(path)
