"""
Gardener — incremental crawler over session logs

Scans garden paths for session logs and turns new or modified ones into
expertises, using a content-addressed ledger so each file's content is
processed exactly once:

  1. scan      walk the tree (following links), keep files matching the
               preset's patterns, apply the recency window, drop trivial
               sessions
  2. classify  sha256 the content and compare with the ledger row:
                 no row            -> UNSEEN
                 different hash    -> CHANGED
                 same hash         -> UNCHANGED (no generation, no write)
  3. process   resolve scope, generate a candidate under a timeout, then in
               one transaction re-check the ledger, create or update the
               expertise and upsert the ledger row

A failure on one file (generation error or timeout, store error, unreadable
file) is recorded in the report and leaves that file's ledger row untouched,
so it is retried on the next run.  Other files are unaffected.

Public API:
    Gardener(db, generator, config)
    gardener.crawl(directory, preset, ...) -> CrawlReport
    gardener.run(...) -> dict[str, CrawlReport]
    scan_session_files(root, patterns, ...), has_meaningful_content(path, ...)
    generate_expertise_id(path), file_sha256(path), next_version(version)
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import os
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from niwa.config import CrawlerConfig
from niwa.db import Database
from niwa.errors import GenerationError, NiwaError, StorageError
from niwa.garden import GardenPreset, GardenRegistry, get_preset
from niwa.generator import ExpertiseGenerator, call_with_timeout
from niwa.ledger import SessionLedger
from niwa.scope import ScopeResolver
from niwa.store import ExpertiseStore
from niwa.types import Expertise, ProcessedSession, Scope

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 50
JSONL_MESSAGE_TYPES = ("user", "assistant")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class FileState(Enum):
    """Ledger classification of a scanned file."""

    UNSEEN = "unseen"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass
class SessionFile:
    """A scanned candidate file and its ledger classification."""
    path: str
    size_bytes: int
    mtime_epoch: int
    sha256: Optional[str] = None
    state: Optional[FileState] = None
    previous: Optional[ProcessedSession] = None


@dataclass
class FileOutcome:
    """What happened to one actionable file."""
    file_path: str
    status: str  # created | updated | skipped | planned | failed
    expertise_id: Optional[str] = None
    scope: Optional[Scope] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "status": self.status,
            "expertise_id": self.expertise_id,
            "scope": self.scope.value if self.scope else None,
            "error": self.error,
        }


@dataclass
class CrawlReport:
    """Result of crawling one directory."""
    root: str
    dry_run: bool = False
    missing: bool = False
    files_scanned: int = 0
    files_trivial: int = 0
    files_unseen: int = 0
    files_changed: int = 0
    files_unchanged: int = 0
    outcomes: List[FileOutcome] = field(default_factory=list)

    def _with_status(self, status: str) -> List[FileOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def created(self) -> List[str]:
        return [o.expertise_id for o in self._with_status("created")]

    @property
    def updated(self) -> List[str]:
        return [o.expertise_id for o in self._with_status("updated")]

    @property
    def planned(self) -> List[str]:
        return [o.file_path for o in self._with_status("planned")]

    @property
    def failures(self) -> List[FileOutcome]:
        return self._with_status("failed")

    @property
    def ok(self) -> bool:
        return not self.missing and not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "dry_run": self.dry_run,
            "missing": self.missing,
            "files_scanned": self.files_scanned,
            "files_trivial": self.files_trivial,
            "files_unseen": self.files_unseen,
            "files_changed": self.files_changed,
            "files_unchanged": self.files_unchanged,
            "created": self.created,
            "updated": self.updated,
            "failures": [o.to_dict() for o in self.failures],
        }


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def file_sha256(path: str) -> str:
    """Compute SHA-256 hex digest of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            h.update(block)
    return h.hexdigest()


def generate_expertise_id(path: str) -> str:
    """Derive a slug id from a file name.

    Examples:
        >>> generate_expertise_id("logs/session-2024-01-15.log")
        'session-2024-01-15'
        >>> generate_expertise_id("My Session Log.txt")
        'my-session-log'
    """
    stem = os.path.splitext(os.path.basename(str(path)))[0] or "session"
    slug = "".join(c if c.isalnum() else "-" for c in stem.lower())
    slug = "-".join(part for part in slug.split("-") if part)
    return slug[:MAX_ID_LENGTH].strip("-") or "session"


_VERSION_TAIL_RE = re.compile(r"^(.*?)(\d+)$")


def next_version(version: str) -> str:
    """Bump the trailing number of a version string.

    '1.0.0' -> '1.0.1', 'v2' -> 'v3', 'draft' -> 'draft.1'
    """
    m = _VERSION_TAIL_RE.match(version)
    if m is None:
        return f"{version}.1"
    return f"{m.group(1)}{int(m.group(2)) + 1}"


def _message_text_length(message: Any) -> int:
    if isinstance(message, str):
        return len(message)
    if not isinstance(message, dict):
        return 0
    content = message.get("content")
    if isinstance(content, list):
        total = 0
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                total += len(item["text"])
        return total
    if isinstance(content, str):
        return len(content)
    return 0


def has_meaningful_content(path: str, min_messages: int = 3, min_chars: int = 200) -> bool:
    """True if a JSONL transcript holds a real conversation.

    Counts user/assistant lines and the characters of their message text.
    Lines that are not JSON objects are ignored; an unreadable file counts
    as trivial.
    """
    messages = 0
    chars = 0
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict):
                    continue
                if entry.get("type") not in JSONL_MESSAGE_TYPES:
                    continue
                messages += 1
                chars += _message_text_length(entry.get("message"))
                if messages >= min_messages and chars >= min_chars:
                    return True
    except OSError:
        return False
    return messages >= min_messages and chars >= min_chars


def _is_trivial(path: str, config: CrawlerConfig) -> bool:
    if path.lower().endswith(".jsonl"):
        return not has_meaningful_content(path, config.min_messages, config.min_chars)
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read(config.min_chars * 4 + 1)
    except OSError:
        return True
    return len(text.strip()) < config.min_chars


def _matches_any(name: str, patterns: List[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatch(lowered, p.lower()) for p in patterns)


def scan_session_files(
    root: str,
    patterns: List[str],
    *,
    ignore_patterns: Optional[List[str]] = None,
    recent_days: Optional[int] = None,
    follow_links: bool = True,
) -> List[SessionFile]:
    """Walk ``root`` for files whose name matches ``patterns``.

    Directories matching ``ignore_patterns`` are pruned.  With
    ``recent_days``, files last modified before the window are dropped.
    Symlink loops are cut by tracking visited real directories.

    Returns:
        SessionFile entries sorted by path (hash not yet computed).
    """
    ignore = ignore_patterns or []
    cutoff = time.time() - recent_days * 86400 if recent_days else None
    seen_dirs = set()
    found: List[SessionFile] = []

    for dirpath, dirnames, filenames in os.walk(root, followlinks=follow_links):
        real = os.path.realpath(dirpath)
        if real in seen_dirs:
            dirnames[:] = []
            continue
        seen_dirs.add(real)
        dirnames[:] = sorted(d for d in dirnames if not _matches_any(d, ignore))
        for fname in sorted(filenames):
            if not _matches_any(fname, patterns):
                continue
            abs_path = os.path.join(dirpath, fname)
            try:
                stat = os.stat(abs_path)
            except OSError:
                logger.warning(f"Cannot stat {abs_path}, skipping")
                continue
            if not os.path.isfile(abs_path):
                continue
            if cutoff is not None and stat.st_mtime < cutoff:
                continue
            found.append(SessionFile(
                path=abs_path,
                size_bytes=stat.st_size,
                mtime_epoch=int(stat.st_mtime),
            ))
    found.sort(key=lambda sf: sf.path)
    return found


# ---------------------------------------------------------------------------
# Gardener
# ---------------------------------------------------------------------------


class Gardener:
    """Scan -> classify -> generate -> persist, per garden path."""

    def __init__(
        self,
        db: Database,
        generator: ExpertiseGenerator,
        config: Optional[CrawlerConfig] = None,
    ):
        self.db = db
        self.generator = generator
        self.config = config or CrawlerConfig()
        self.store = ExpertiseStore(db)
        self.ledger = SessionLedger(db)
        self.resolver = ScopeResolver(db)
        self.garden = GardenRegistry(db)

    # -- classification ------------------------------------------------------

    def classify(self, session_file: SessionFile) -> SessionFile:
        """Hash the file and set its state from the ledger."""
        session_file.sha256 = file_sha256(session_file.path)
        previous = self.ledger.get(session_file.path)
        session_file.previous = previous
        if previous is None:
            session_file.state = FileState.UNSEEN
        elif previous.file_hash == session_file.sha256:
            session_file.state = FileState.UNCHANGED
        else:
            session_file.state = FileState.CHANGED
        return session_file

    # -- per-file processing -------------------------------------------------

    def _proposed_id(self, session_file: SessionFile) -> str:
        if session_file.state is FileState.CHANGED and session_file.previous is not None:
            return session_file.previous.expertise_id
        return generate_expertise_id(session_file.path)

    def _free_id(self, base: str, sha256: str) -> str:
        candidate = f"{base}-{sha256[:8]}"
        n = 2
        while self.store.exists(candidate):
            candidate = f"{base}-{sha256[:8]}-{n}"
            n += 1
        return candidate

    def _persist(self, path: str, sha256: str, unit: Expertise) -> Tuple[str, str]:
        """Write the unit and the ledger row atomically.

        Returns:
            (status, expertise_id) where status is created, updated or
            skipped (another writer already recorded this content).
        """
        with self.db.transaction():
            current = self.ledger.get(path)
            if current is not None and current.file_hash == sha256:
                return "skipped", current.expertise_id
            own_id = current.expertise_id if current is not None else None
            if own_id is not None and unit.id == own_id and self.store.exists(own_id):
                while self.store.has_version(unit.id, unit.version):
                    unit.version = next_version(unit.version)
                self.store.update(unit)
                status = "updated"
            else:
                if self.store.exists(unit.id):
                    unit.id = self._free_id(unit.id, sha256)
                self.store.create(unit)
                status = "created"
            self.ledger.record(path, sha256, unit.id)
        return status, unit.id

    def process_file(self, session_file: SessionFile, scope: Optional[Scope] = None) -> FileOutcome:
        """Generate and persist one UNSEEN/CHANGED file; never raises NiwaError."""
        path = session_file.path
        outcome = FileOutcome(file_path=path, status="failed")
        try:
            with open(path, "rb") as f:
                raw = f.read()
            sha256 = hashlib.sha256(raw).hexdigest()
            text = raw.decode("utf-8", errors="replace")
            file_scope = Scope.parse(scope) if scope is not None else self.resolver.resolve(path)
            outcome.scope = file_scope
            proposed = self._proposed_id(session_file)
            unit = call_with_timeout(
                self.generator.generate, self.config.generation_timeout,
                text, proposed, file_scope, time_limit=self.config.generation_timeout,
            )
            if not isinstance(unit, Expertise):
                raise GenerationError(
                    f"generator returned {type(unit).__name__}, expected Expertise"
                )
            try:
                status, expertise_id = self._persist(path, sha256, unit)
            except NiwaError:
                raise
            except Exception as exc:
                raise StorageError(
                    f"cannot persist {unit.id}: {type(exc).__name__}: {exc}"
                ) from exc
        except (NiwaError, OSError) as exc:
            outcome.error = f"{type(exc).__name__}: {exc}"
            logger.warning(f"Failed to process {path}: {outcome.error}")
            return outcome
        outcome.status = status
        outcome.expertise_id = expertise_id
        logger.info(f"{status.capitalize()} {expertise_id} from {path}")
        return outcome

    # -- crawl ---------------------------------------------------------------

    def crawl(
        self,
        directory: str,
        preset: Optional[str] = None,
        *,
        scope: Optional[Scope] = None,
        dry_run: bool = False,
        max_files: Optional[int] = None,
        recent_days: Optional[int] = None,
        parallelism: Optional[int] = None,
    ) -> CrawlReport:
        """Crawl one directory.

        Args:
            directory: Root to scan.
            preset: Preset name whose file patterns apply (default: config).
            scope: Force this scope instead of resolving from the path.
            dry_run: Classify only; report UNSEEN/CHANGED files as planned.
            max_files: Act on at most this many UNSEEN/CHANGED files.
            recent_days: Only files modified within this many days.
            parallelism: Concurrent files in flight (default: config).

        Returns:
            CrawlReport; ``missing`` is set when the directory is absent.
        """
        root = os.path.realpath(os.path.expanduser(str(directory)))
        report = CrawlReport(root=root, dry_run=dry_run)
        if not os.path.isdir(root):
            logger.warning(f"Skipping missing garden path: {root}")
            report.missing = True
            return report

        preset_obj: Optional[GardenPreset] = get_preset(preset)
        patterns = preset_obj.file_patterns if preset_obj else self.config.file_patterns
        if recent_days is None:
            recent_days = self.config.recent_days
        if max_files is None:
            max_files = self.config.max_files
        workers = parallelism or self.config.parallelism

        logger.info(f"Scanning {root} (patterns={patterns})")
        scanned = scan_session_files(
            root, patterns,
            ignore_patterns=self.config.ignore_patterns,
            recent_days=recent_days,
            follow_links=self.config.follow_links,
        )
        report.files_scanned = len(scanned)

        actionable: List[SessionFile] = []
        for sf in scanned:
            if _is_trivial(sf.path, self.config):
                report.files_trivial += 1
                continue
            try:
                self.classify(sf)
            except (NiwaError, OSError) as exc:
                report.outcomes.append(FileOutcome(
                    file_path=sf.path, status="failed",
                    error=f"{type(exc).__name__}: {exc}",
                ))
                logger.warning(f"Cannot classify {sf.path}: {exc}")
                continue
            if sf.state is FileState.UNCHANGED:
                report.files_unchanged += 1
                continue
            actionable.append(sf)

        if report.files_trivial:
            logger.info(
                f"Skipped {report.files_trivial} trivial sessions "
                f"(< {self.config.min_messages} messages or < {self.config.min_chars} chars)"
            )
        if max_files is not None:
            actionable = actionable[:max_files]
        report.files_unseen = sum(1 for sf in actionable if sf.state is FileState.UNSEEN)
        report.files_changed = sum(1 for sf in actionable if sf.state is FileState.CHANGED)

        if dry_run:
            for sf in actionable:
                report.outcomes.append(FileOutcome(file_path=sf.path, status="planned"))
            return report

        if workers <= 1 or len(actionable) <= 1:
            for sf in actionable:
                report.outcomes.append(self.process_file(sf, scope))
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {pool.submit(self.process_file, sf, scope): sf for sf in actionable}
                for future in as_completed(futures):
                    report.outcomes.append(future.result())
            report.outcomes.sort(key=lambda o: o.file_path)

        logger.info(
            f"Crawled {root}: {len(report.created)} created, {len(report.updated)} updated, "
            f"{report.files_unchanged} unchanged, {len(report.failures)} failed"
        )
        return report

    def run(
        self,
        *,
        scope: Optional[Scope] = None,
        dry_run: bool = False,
        max_files: Optional[int] = None,
        recent_days: Optional[int] = None,
        parallelism: Optional[int] = None,
    ) -> Dict[str, CrawlReport]:
        """Crawl every enabled garden path.

        Missing directories are skipped and reported with ``missing=True``.
        ``max_files`` applies per path.
        """
        reports: Dict[str, CrawlReport] = {}
        for garden in self.garden.list(enabled_only=True):
            report = self.crawl(
                garden.path, garden.preset_name,
                scope=scope, dry_run=dry_run, max_files=max_files,
                recent_days=recent_days, parallelism=parallelism,
            )
            reports[garden.path] = report
            if not report.missing and not dry_run:
                self.garden.mark_scanned(garden.id)
        return reports
