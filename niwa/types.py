"""
Expertise Data Model

Defines the expertise unit, its version snapshots, typed relations, scope
mapping rules, monitored garden paths and processed-session ledger rows.
Timestamps are integer Unix seconds assigned by the writer.

Public API:
    Scope, RelationType, Expertise, VersionSnapshot, Relation,
    ScopeMapping, GardenPath, ProcessedSession, SearchOptions,
    now_ts()
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from niwa.errors import InvalidInputError


def now_ts() -> int:
    """Current time as integer Unix seconds."""
    return int(time.time())


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Scope(str, Enum):
    """Visibility/ownership class of an expertise."""

    PERSONAL = "personal"
    COMPANY = "company"
    PROJECT = "project"

    @classmethod
    def parse(cls, value) -> Scope:
        """Coerce a string (case-insensitive) or Scope into a Scope."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise InvalidInputError(
                f"Invalid scope {value!r} (expected one of: {valid})"
            ) from None

    def __str__(self) -> str:
        return self.value


class RelationType(str, Enum):
    """Kind of a directed edge between two expertises."""

    USES = "uses"
    EXTENDS = "extends"
    CONFLICTS = "conflicts"
    REQUIRES = "requires"

    @classmethod
    def parse(cls, value) -> RelationType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(r.value for r in cls)
            raise InvalidInputError(
                f"Invalid relation type {value!r} (expected one of: {valid})"
            ) from None

    def __str__(self) -> str:
        return self.value


# ---------------------------------------------------------------------------
# Expertise
# ---------------------------------------------------------------------------


def _clean_tags(tags) -> List[str]:
    """Strip, drop empties and de-duplicate while keeping first-seen order."""
    if tags is None:
        return []
    if isinstance(tags, str):
        raise InvalidInputError("tags must be a list of strings, not a string")
    out: List[str] = []
    seen = set()
    for t in tags:
        if not isinstance(t, str):
            raise InvalidInputError(f"tag must be a string, got {type(t).__name__}")
        t = t.strip()
        if t and t not in seen:
            seen.add(t)
            out.append(t)
    return out


@dataclass
class Expertise:
    """
    A versioned unit of reusable knowledge.

    Rules:
    - id is a non-empty string, unique across the whole store.
    - version is an opaque, non-empty string; each update appends a snapshot
      keyed by (id, version), so version strings never repeat for one id.
    - data is the opaque payload; only description and tags are indexed.
    """

    id: str
    version: str = "1.0.0"
    scope: Scope = Scope.PERSONAL
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id.strip():
            raise InvalidInputError("expertise id must be a non-empty string")
        self.id = self.id.strip()
        if not isinstance(self.version, str) or not self.version.strip():
            raise InvalidInputError(f"expertise {self.id}: version must be non-empty")
        self.scope = Scope.parse(self.scope)
        self.tags = _clean_tags(self.tags)
        if self.data is None:
            self.data = {}
        if not isinstance(self.data, dict):
            raise InvalidInputError(f"expertise {self.id}: data must be a mapping")
        self.data_json  # raises on unserializable payloads

    @property
    def data_json(self) -> str:
        """Payload serialized for storage.

        Raises:
            InvalidInputError: If the payload is not JSON-serializable.
        """
        try:
            return json.dumps(self.data, ensure_ascii=False, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(
                f"expertise {self.id}: data is not JSON-serializable ({exc})"
            ) from None

    @classmethod
    def from_payload(
        cls, id: str, version: str, scope, payload: Dict[str, Any],
    ) -> Expertise:
        """Build a unit from a collaborator payload.

        Only ``description`` and ``tags`` are read from the payload; the rest
        is kept verbatim as opaque data.
        """
        if not isinstance(payload, dict):
            raise InvalidInputError("expertise payload must be a JSON object")
        description = payload.get("description")
        if description is not None and not isinstance(description, str):
            description = str(description)
        return cls(
            id=id,
            version=version,
            scope=scope,
            description=description,
            tags=payload.get("tags") or [],
            data=dict(payload),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dict."""
        return {
            "id": self.id,
            "version": self.version,
            "scope": self.scope.value,
            "description": self.description,
            "tags": list(self.tags),
            "data": dict(self.data),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class VersionSnapshot:
    """An immutable historical payload of one expertise."""

    expertise_id: str
    version: str
    created_at: int
    data: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------


@dataclass
class Relation:
    """A typed, directed edge from_id -> to_id."""

    from_id: str
    to_id: str
    relation_type: RelationType
    metadata: Optional[str] = None
    created_at: Optional[int] = None

    def __post_init__(self):
        self.relation_type = RelationType.parse(self.relation_type)

    @property
    def key(self):
        return (self.from_id, self.to_id, self.relation_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_id": self.from_id,
            "to_id": self.to_id,
            "relation_type": self.relation_type.value,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Scope mapping, garden paths, ledger
# ---------------------------------------------------------------------------


@dataclass
class ScopeMapping:
    """A path-glob rule mapping file locations to a scope."""

    id: int
    pattern: str
    scope: Scope
    priority: int = 0
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def is_fallback(self) -> bool:
        return self.pattern == "*"


@dataclass
class GardenPath:
    """A directory registered for crawling."""

    id: int
    path: str
    preset_name: Optional[str] = None
    enabled: bool = True
    added_at: Optional[int] = None
    last_scanned_at: Optional[int] = None


@dataclass
class ProcessedSession:
    """Ledger row: which file produced which unit, and from which content."""

    file_path: str
    file_hash: str
    expertise_id: str
    processed_at: int


@dataclass
class SearchOptions:
    """Paging and filtering for search and tag queries."""

    limit: int = 20
    offset: int = 0
    scope: Optional[Scope] = None
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.limit < 0 or self.offset < 0:
            raise InvalidInputError("limit and offset must be non-negative")
        if self.scope is not None:
            self.scope = Scope.parse(self.scope)
        self.tags = _clean_tags(self.tags)
