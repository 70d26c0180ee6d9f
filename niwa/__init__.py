"""
niwa — a local, versioned expertise graph.

One file, one truth. Expertises, their tags, version history, relations,
scope rules and the crawler ledger live in a single SQLite + FTS5 + WAL
database, opened once per process and passed to every component.
"""

__version__ = "0.1.0"

from niwa.types import (
    Expertise,
    Relation,
    RelationType,
    Scope,
    SearchOptions,
    VersionSnapshot,
)
from niwa.errors import (
    ConflictError,
    GenerationError,
    InvalidInputError,
    NiwaError,
    NotFoundError,
    StorageError,
)
from niwa.config import NiwaConfig, load_config
from niwa.db import Database
from niwa.migrations import SCHEMA_VERSION
from niwa.store import ExpertiseStore
from niwa.query import SearchIndex
from niwa.graph import ExpertiseGraph, RelationGraph
from niwa.scope import ScopeResolver
from niwa.garden import GardenRegistry
from niwa.ledger import SessionLedger
from niwa.generator import CommandGenerator, ExpertiseGenerator
from niwa.crawler import CrawlReport, Gardener

__all__ = [
    "__version__",
    "Expertise",
    "Relation",
    "RelationType",
    "Scope",
    "SearchOptions",
    "VersionSnapshot",
    "NiwaError",
    "NotFoundError",
    "ConflictError",
    "InvalidInputError",
    "StorageError",
    "GenerationError",
    "NiwaConfig",
    "load_config",
    "Database",
    "SCHEMA_VERSION",
    "ExpertiseStore",
    "SearchIndex",
    "ExpertiseGraph",
    "RelationGraph",
    "ScopeResolver",
    "GardenRegistry",
    "SessionLedger",
    "CommandGenerator",
    "ExpertiseGenerator",
    "CrawlReport",
    "Gardener",
]
