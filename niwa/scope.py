"""
Scope Resolver — path-glob rules mapping files to a scope

Rules live in ``scope_mappings`` and are evaluated by priority (highest
first, lowest id first on ties).  The first rule whose pattern matches the
path decides the scope.  The fallback rule ``'*' -> personal`` at priority 0
always matches, and the mutation operations refuse to remove it or to move
it above any other rule, so resolution never fails.

Pattern language (case-insensitive, matches anywhere in the path):
    *       any run of characters except '/'
    **      any run of characters including '/'
    ?       one character except '/'
    [...]   character class ('[!...]' negates)
    other   literal

Public API:
    ScopeResolver(db)
    resolver.resolve(path) / add_mapping(pattern, scope, priority)
    resolver.update_mapping(id, scope, priority) / remove_mapping(id)
    resolver.list_mappings() / get_mapping(id)
    matches_pattern(path, pattern), compile_pattern(pattern)
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import List, Optional

from niwa.db import Database
from niwa.errors import ConflictError, InvalidInputError, NotFoundError
from niwa.types import Scope, ScopeMapping

logger = logging.getLogger(__name__)

FALLBACK_PATTERN = "*"
FALLBACK_PRIORITY = 0
DEFAULT_PRIORITY = 10


# ---------------------------------------------------------------------------
# Glob matching
# ---------------------------------------------------------------------------


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> "re.Pattern[str]":
    """Translate a scope glob into a compiled, case-insensitive regex.

    Raises:
        InvalidInputError: On an empty pattern or an unterminated class.
    """
    if not pattern or not pattern.strip():
        raise InvalidInputError("scope pattern must not be empty")
    out: List[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                raise InvalidInputError(f"unterminated character class in {pattern!r}")
            body = pattern[i + 1:j].replace("\\", "\\\\")
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = j
        else:
            out.append(re.escape(c))
        i += 1
    try:
        return re.compile("".join(out), re.IGNORECASE)
    except re.error as exc:
        raise InvalidInputError(f"invalid scope pattern {pattern!r}: {exc}") from exc


def matches_pattern(path: str, pattern: str) -> bool:
    """True if ``pattern`` matches anywhere in ``path``."""
    return compile_pattern(pattern).search(path) is not None


def _row_to_mapping(row) -> ScopeMapping:
    return ScopeMapping(
        id=row["id"],
        pattern=row["pattern"],
        scope=Scope.parse(row["scope"]),
        priority=row["priority"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ScopeResolver:
    """Rule CRUD and first-match scope resolution."""

    def __init__(self, db: Database):
        self.db = db

    def list_mappings(self) -> List[ScopeMapping]:
        """Rules in evaluation order: priority DESC, id ASC."""
        rows = self.db.fetchall(
            "SELECT id, pattern, scope, priority, created_at, updated_at "
            "FROM scope_mappings ORDER BY priority DESC, id ASC"
        )
        return [_row_to_mapping(r) for r in rows]

    def get_mapping(self, mapping_id: int) -> Optional[ScopeMapping]:
        row = self.db.fetchone(
            "SELECT id, pattern, scope, priority, created_at, updated_at "
            "FROM scope_mappings WHERE id = ?",
            (mapping_id,),
        )
        return _row_to_mapping(row) if row else None

    def resolve(self, path: str) -> Scope:
        """Scope of the first matching rule; total over all inputs."""
        path = str(path)
        for mapping in self.list_mappings():
            try:
                if matches_pattern(path, mapping.pattern):
                    logger.debug(
                        f"Scope {mapping.scope} for {path} (rule {mapping.id}: "
                        f"{mapping.pattern!r})"
                    )
                    return mapping.scope
            except InvalidInputError:
                logger.warning(f"Skipping malformed scope rule {mapping.id}: {mapping.pattern!r}")
        logger.warning(f"No scope rule matched {path}; defaulting to personal")
        return Scope.PERSONAL

    def add_mapping(
        self,
        pattern: str,
        scope,
        priority: int = DEFAULT_PRIORITY,
        replace: bool = False,
    ) -> ScopeMapping:
        """Add a rule.

        Args:
            pattern: Glob pattern (see module docstring).
            scope: Target scope.
            priority: Evaluation priority; must be >= 1 so the fallback
                rule stays last.
            replace: Overwrite scope/priority of an existing rule with the
                same pattern instead of raising ConflictError.

        Raises:
            InvalidInputError: Malformed pattern, or priority < 1.
            ConflictError: Pattern already present and ``replace`` is False.
        """
        scope = Scope.parse(scope)
        if not isinstance(pattern, str):
            raise InvalidInputError("scope pattern must be a string")
        pattern = pattern.strip()
        compile_pattern(pattern)
        if pattern == FALLBACK_PATTERN:
            raise InvalidInputError(
                "the '*' fallback rule already exists; use update_mapping to change its scope"
            )
        if not isinstance(priority, int) or priority < 1:
            raise InvalidInputError(f"priority must be an integer >= 1, got {priority!r}")
        ts = self.db.now()
        with self.db.transaction():
            existing = self.db.fetchone(
                "SELECT id FROM scope_mappings WHERE pattern = ?", (pattern,),
            )
            if existing is not None:
                if not replace:
                    raise ConflictError(f"scope mapping for {pattern!r} already exists")
                self.db.execute(
                    "UPDATE scope_mappings SET scope = ?, priority = ?, updated_at = ? "
                    "WHERE id = ?",
                    (scope.value, priority, ts, existing["id"]),
                )
                mapping_id = existing["id"]
            else:
                cur = self.db.execute(
                    "INSERT INTO scope_mappings (pattern, scope, priority, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (pattern, scope.value, priority, ts, ts),
                )
                mapping_id = cur.lastrowid
        logger.info(f"Scope mapping {pattern!r} -> {scope} (priority {priority})")
        return self.get_mapping(mapping_id)

    def update_mapping(
        self,
        mapping_id: int,
        scope=None,
        priority: Optional[int] = None,
    ) -> ScopeMapping:
        """Change a rule's scope and/or priority.

        The fallback rule keeps priority 0; only its scope may change.

        Raises:
            NotFoundError: Unknown rule id.
            InvalidInputError: Invalid priority, or a priority change on the
                fallback rule.
        """
        with self.db.transaction():
            current = self.get_mapping(mapping_id)
            if current is None:
                raise NotFoundError(f"scope mapping {mapping_id} not found")
            new_scope = Scope.parse(scope) if scope is not None else current.scope
            new_priority = current.priority
            if priority is not None:
                if current.is_fallback and priority != FALLBACK_PRIORITY:
                    raise InvalidInputError("the '*' fallback rule must keep priority 0")
                if not current.is_fallback and (not isinstance(priority, int) or priority < 1):
                    raise InvalidInputError(
                        f"priority must be an integer >= 1, got {priority!r}"
                    )
                new_priority = priority
            self.db.execute(
                "UPDATE scope_mappings SET scope = ?, priority = ?, updated_at = ? "
                "WHERE id = ?",
                (new_scope.value, new_priority, self.db.now(), mapping_id),
            )
        return self.get_mapping(mapping_id)

    def remove_mapping(self, mapping_id: int) -> None:
        """Delete a rule.

        Raises:
            NotFoundError: Unknown rule id.
            InvalidInputError: Attempt to remove the '*' fallback rule.
        """
        with self.db.transaction():
            current = self.get_mapping(mapping_id)
            if current is None:
                raise NotFoundError(f"scope mapping {mapping_id} not found")
            if current.is_fallback:
                raise InvalidInputError("the '*' fallback rule cannot be removed")
            self.db.execute("DELETE FROM scope_mappings WHERE id = ?", (mapping_id,))
        logger.info(f"Removed scope mapping {mapping_id} ({current.pattern!r})")
