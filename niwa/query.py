"""
Search Index — full-text and tag queries over expertises

The FTS5 table ``expertises_fts`` indexes each unit's description and its
space-joined tags.  Triggers on ``expertises`` and ``tags`` keep it in step
with the record store, so a search issued after a committed write always
sees that write.

Query cascade:
    1. AND    - every term must match (quoted, so FTS5 operators are inert)
    2. OR     - if AND finds nothing and the query has several terms
               (disabled by SearchConfig.or_fallback=False)

Results are ranked by bm25 (best first); equal ranks fall back to the most
recently updated unit.

Public API:
    SearchIndex(db, config)
    index.search(query, options) / filter_by_tags(tags, options)
    index.list_tags(scope) / count(scope) / rebuild()
    normalize_query(text), build_match_expression(terms, operator)
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional, Sequence, Tuple

from niwa.config import SearchConfig
from niwa.db import Database
from niwa.errors import InvalidInputError
from niwa.store import ExpertiseStore
from niwa.types import Expertise, Scope, SearchOptions, _clean_tags

logger = logging.getLogger(__name__)

EN_STOP_WORDS = frozenset({
    "the", "a", "an", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "is", "are", "was", "were", "be", "it", "its",
    "this", "that", "and", "or", "how", "what", "which",
})

_TERM_RE = re.compile(r"[^\s\"]+")


# ── Query normalization ─────────────────────────────────────────────────

def normalize_query(text: str) -> List[str]:
    """Split a free-text query into search terms, dropping stop words.

    Never returns an empty list for a non-blank query: when every word is a
    stop word, the words are kept as-is.

    Examples:
        >>> normalize_query("how to use the tokio runtime")
        ['use', 'tokio', 'runtime']
        >>> normalize_query("the")
        ['the']
    """
    words = _TERM_RE.findall(text or "")
    kept = [w for w in words if w.lower() not in EN_STOP_WORDS]
    return kept or words


def build_match_expression(terms: Sequence[str], operator: str = "AND") -> str:
    """Quote each term and join them for an FTS5 MATCH clause."""
    quoted = ['"' + t.replace('"', '""') + '"' for t in terms]
    if operator == "OR":
        return " OR ".join(quoted)
    return " ".join(quoted)


def _tag_filter(tags: List[str]) -> Tuple[str, List[Any]]:
    """SQL fragment requiring every tag in ``tags`` on unit ``e``."""
    marks = ", ".join("?" for _ in tags)
    sql = (
        " AND (SELECT COUNT(DISTINCT t.tag) FROM tags t "
        f"WHERE t.expertise_id = e.id AND t.tag IN ({marks})) = ?"
    )
    return sql, list(tags) + [len(tags)]


class SearchIndex:
    """Ranked text search and tag aggregation."""

    def __init__(self, db: Database, config: Optional[SearchConfig] = None):
        self.db = db
        self.config = config or SearchConfig()
        self._store = ExpertiseStore(db)
        self.last_strategy: Optional[str] = None

    def _default_options(self, options: Optional[SearchOptions]) -> SearchOptions:
        if options is not None:
            return options
        return SearchOptions(limit=self.config.default_limit)

    def _run(self, match: str, options: SearchOptions) -> List[Expertise]:
        sql = (
            "SELECT e.id, e.version, e.scope, e.created_at, e.updated_at, "
            "e.data_json, e.description, bm25(expertises_fts) AS rank "
            "FROM expertises_fts JOIN expertises e ON e.id = expertises_fts.id "
            "WHERE expertises_fts MATCH ?"
        )
        params: List[Any] = [match]
        if options.scope is not None:
            sql += " AND e.scope = ?"
            params.append(options.scope.value)
        if options.tags:
            frag, frag_params = _tag_filter(options.tags)
            sql += frag
            params.extend(frag_params)
        sql += " ORDER BY rank ASC, e.updated_at DESC, e.id ASC LIMIT ? OFFSET ?"
        params.extend([options.limit, options.offset])
        logger.debug(f"FTS query: {match!r} scope={options.scope} tags={options.tags}")
        return [self._store._row_to_expertise(r) for r in self.db.fetchall(sql, params)]

    def search(self, query: str, options: Optional[SearchOptions] = None) -> List[Expertise]:
        """Full-text search over description and tags.

        Args:
            query: Free text; each word is a literal term.
            options: limit/offset paging plus optional scope and required tags.

        Raises:
            InvalidInputError: If the query has no terms.
        """
        options = self._default_options(options)
        terms = normalize_query(query)
        if not terms:
            raise InvalidInputError("search query must not be blank")
        self.last_strategy = "AND"
        results = self._run(build_match_expression(terms, "AND"), options)
        if not results and len(terms) > 1 and self.config.or_fallback:
            self.last_strategy = "OR_FALLBACK"
            results = self._run(build_match_expression(terms, "OR"), options)
        return results

    def filter_by_tags(
        self, tags: Sequence[str], options: Optional[SearchOptions] = None,
    ) -> List[Expertise]:
        """Units carrying at least one of ``tags``.

        Ordered by number of matching tags (most first), then most recently
        updated.  An empty tag set yields an empty list.

        Raises:
            InvalidInputError: If ``tags`` is a bare string.
        """
        options = self._default_options(options)
        wanted = _clean_tags(tags)
        if not wanted:
            return []
        marks = ", ".join("?" for _ in wanted)
        sql = (
            "SELECT e.id, e.version, e.scope, e.created_at, e.updated_at, "
            "e.data_json, e.description, COUNT(DISTINCT t.tag) AS matched "
            "FROM expertises e JOIN tags t ON t.expertise_id = e.id "
            f"WHERE t.tag IN ({marks})"
        )
        params: List[Any] = list(wanted)
        if options.scope is not None:
            sql += " AND e.scope = ?"
            params.append(options.scope.value)
        sql += (
            " GROUP BY e.id ORDER BY matched DESC, e.updated_at DESC, e.id ASC"
            " LIMIT ? OFFSET ?"
        )
        params.extend([options.limit, options.offset])
        return [self._store._row_to_expertise(r) for r in self.db.fetchall(sql, params)]

    def list_tags(self, scope: Optional[Scope] = None) -> List[Tuple[str, int]]:
        """(tag, number of units carrying it), most used first, then by name."""
        sql = (
            "SELECT t.tag AS tag, COUNT(*) AS n FROM tags t "
            "JOIN expertises e ON e.id = t.expertise_id"
        )
        params: List[Any] = []
        if scope is not None:
            sql += " WHERE e.scope = ?"
            params.append(Scope.parse(scope).value)
        sql += " GROUP BY t.tag ORDER BY n DESC, t.tag ASC"
        return [(r["tag"], r["n"]) for r in self.db.fetchall(sql, params)]

    def count(self, scope: Optional[Scope] = None) -> int:
        return self._store.count(scope)

    def rebuild(self) -> int:
        """Repopulate the FTS table from the record store.

        Returns:
            Number of units indexed.
        """
        with self.db.transaction():
            self.db.execute("DELETE FROM expertises_fts")
            self.db.execute(
                "INSERT INTO expertises_fts (id, description, tags) "
                "SELECT e.id, e.description, "
                "(SELECT group_concat(tag, ' ') FROM tags WHERE expertise_id = e.id) "
                "FROM expertises e"
            )
            n = self.db.fetchone("SELECT COUNT(*) AS n FROM expertises_fts")["n"]
        logger.info(f"Rebuilt search index: {n} units")
        return n
