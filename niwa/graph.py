"""
Relation Graph — typed, directed edges between expertises

Edges live in the ``relations`` table keyed by (from_id, to_id, type): at
most one edge of a given type per ordered pair, several types per pair
allowed.  Cycles and self-loops are legal; every traversal carries an
explicit visited set and is iterative, so cyclic input always terminates.

The in-memory ExpertiseGraph is an adjacency structure: a node table keyed
by expertise id, an edge arena indexed by integer, and per-node lists of
outgoing/incoming edge indices.

Public API:
    RelationGraph(db)
    graph.create_relation(from_id, to_id, type, metadata)
    graph.delete_relation(from_id, to_id, type)
    graph.get_dependencies(id) / get_dependents(id) / get_relations(id)
    graph.list_relations() / build_graph() / transitive_dependencies(id)
    ExpertiseGraph (reachable, subgraph, roots, isolated, has_cycle, to_dict)
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from niwa.db import Database
from niwa.errors import ConflictError, InvalidInputError, NotFoundError
from niwa.types import Relation, RelationType, Scope

logger = logging.getLogger(__name__)

OUTGOING = "out"
INCOMING = "in"
BOTH = "both"

_RELATION_COLUMNS = "from_id, to_id, relation_type, metadata, created_at"


def _row_to_relation(row) -> Relation:
    return Relation(
        from_id=row["from_id"],
        to_id=row["to_id"],
        relation_type=RelationType.parse(row["relation_type"]),
        metadata=row["metadata"],
        created_at=row["created_at"],
    )


# ---------------------------------------------------------------------------
# In-memory graph
# ---------------------------------------------------------------------------


@dataclass
class GraphNode:
    """A node table entry: the unit plus indices into the edge arena."""

    id: str
    scope: Optional[Scope] = None
    description: Optional[str] = None
    out_edges: List[int] = field(default_factory=list)
    in_edges: List[int] = field(default_factory=list)


class ExpertiseGraph:
    """Materialized node and edge sets, tolerant of cycles and parallel edges."""

    def __init__(self):
        self.nodes: Dict[str, GraphNode] = {}
        self.edges: List[Relation] = []

    def add_node(self, node_id: str, scope=None, description=None) -> GraphNode:
        node = self.nodes.get(node_id)
        if node is None:
            node = GraphNode(id=node_id, scope=scope, description=description)
            self.nodes[node_id] = node
        return node

    def add_edge(self, relation: Relation) -> int:
        """Append an edge to the arena and index it on both endpoints."""
        index = len(self.edges)
        self.edges.append(relation)
        self.add_node(relation.from_id).out_edges.append(index)
        self.add_node(relation.to_id).in_edges.append(index)
        return index

    def outgoing(self, node_id: str) -> List[Relation]:
        node = self.nodes.get(node_id)
        return [self.edges[i] for i in node.out_edges] if node else []

    def incoming(self, node_id: str) -> List[Relation]:
        node = self.nodes.get(node_id)
        return [self.edges[i] for i in node.in_edges] if node else []

    def _neighbours(
        self, node_id: str, direction: str,
        types: Optional[Set[RelationType]],
    ) -> Iterable[str]:
        node = self.nodes[node_id]
        if direction in (OUTGOING, BOTH):
            for i in node.out_edges:
                edge = self.edges[i]
                if types is None or edge.relation_type in types:
                    yield edge.to_id
        if direction in (INCOMING, BOTH):
            for i in node.in_edges:
                edge = self.edges[i]
                if types is None or edge.relation_type in types:
                    yield edge.from_id

    def reachable(
        self,
        start: str,
        max_depth: Optional[int] = None,
        direction: str = OUTGOING,
        relation_types: Optional[Iterable] = None,
    ) -> Dict[str, int]:
        """Breadth-first reach from ``start``.

        Returns:
            Mapping of reached node id -> hop distance, excluding ``start``
            itself unless a cycle leads back to it.
        """
        if start not in self.nodes:
            raise NotFoundError(f"expertise {start} not in graph")
        if direction not in (OUTGOING, INCOMING, BOTH):
            raise InvalidInputError(f"direction must be one of out/in/both, got {direction!r}")
        types = None
        if relation_types is not None:
            types = {RelationType.parse(t) for t in relation_types}

        distances: Dict[str, int] = {}
        visited: Set[str] = {start}
        queue = deque([(start, 0)])
        while queue:
            current, depth = queue.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for nxt in self._neighbours(current, direction, types):
                if nxt == start and start not in distances:
                    distances[start] = depth + 1
                if nxt in visited:
                    continue
                visited.add(nxt)
                distances[nxt] = depth + 1
                queue.append((nxt, depth + 1))
        return distances

    def subgraph(self, center: str, depth: int = 1) -> ExpertiseGraph:
        """Nodes within ``depth`` hops of ``center`` (either direction) and
        every edge among them."""
        keep = set(self.reachable(center, max_depth=depth, direction=BOTH))
        keep.add(center)
        sub = ExpertiseGraph()
        for node_id in sorted(keep):
            node = self.nodes[node_id]
            sub.add_node(node_id, node.scope, node.description)
        for edge in self.edges:
            if edge.from_id in keep and edge.to_id in keep:
                sub.add_edge(edge)
        return sub

    def roots(self) -> List[str]:
        """Nodes with outgoing edges and no incoming edges."""
        return sorted(
            n.id for n in self.nodes.values() if n.out_edges and not n.in_edges
        )

    def isolated(self) -> List[str]:
        """Nodes with no edges at all."""
        return sorted(
            n.id for n in self.nodes.values() if not n.out_edges and not n.in_edges
        )

    def has_cycle(self) -> bool:
        """True if any directed cycle (self-loops included) exists."""
        # Iterative three-colour DFS.
        state: Dict[str, int] = {}
        for root in self.nodes:
            if state.get(root):
                continue
            stack = [(root, iter(self.nodes[root].out_edges))]
            state[root] = 1
            while stack:
                node_id, it = stack[-1]
                advanced = False
                for i in it:
                    nxt = self.edges[i].to_id
                    s = state.get(nxt, 0)
                    if s == 1:
                        return True
                    if s == 0:
                        state[nxt] = 1
                        stack.append((nxt, iter(self.nodes[nxt].out_edges)))
                        advanced = True
                        break
                if not advanced:
                    state[node_id] = 2
                    stack.pop()
        return False

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe node/edge lists for downstream visualization."""
        return {
            "nodes": [
                {
                    "id": n.id,
                    "scope": n.scope.value if n.scope else None,
                    "description": n.description,
                }
                for n in sorted(self.nodes.values(), key=lambda n: n.id)
            ],
            "edges": [e.to_dict() for e in self.edges],
        }

    def __len__(self) -> int:
        return len(self.nodes)


# ---------------------------------------------------------------------------
# Persistent relation engine
# ---------------------------------------------------------------------------


class RelationGraph:
    """CRUD over relation edges plus graph materialization."""

    def __init__(self, db: Database):
        self.db = db

    def _require_unit(self, expertise_id: str) -> None:
        row = self.db.fetchone("SELECT 1 FROM expertises WHERE id = ?", (expertise_id,))
        if row is None:
            raise NotFoundError(f"expertise {expertise_id} not found")

    def create_relation(
        self,
        from_id: str,
        to_id: str,
        relation_type,
        metadata: Optional[str] = None,
    ) -> Relation:
        """Add a typed edge.

        Raises:
            NotFoundError: If either endpoint does not exist.
            ConflictError: If the same (from, to, type) edge exists.
            InvalidInputError: If the relation type is unknown.
        """
        relation = Relation(from_id, to_id, relation_type, metadata)
        with self.db.transaction():
            self._require_unit(from_id)
            self._require_unit(to_id)
            ts = self.db.now()
            try:
                self.db.execute(
                    "INSERT INTO relations "
                    "(from_id, to_id, relation_type, metadata, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (from_id, to_id, relation.relation_type.value, metadata, ts),
                )
            except ConflictError:
                raise ConflictError(
                    f"relation {from_id} --{relation.relation_type}--> {to_id} exists"
                ) from None
        relation.created_at = ts
        logger.info(f"Linked {from_id} --{relation.relation_type}--> {to_id}")
        return relation

    def delete_relation(self, from_id: str, to_id: str, relation_type) -> None:
        """Remove one typed edge.

        Raises:
            NotFoundError: If the edge does not exist.
        """
        rtype = RelationType.parse(relation_type)
        with self.db.transaction():
            cur = self.db.execute(
                "DELETE FROM relations WHERE from_id = ? AND to_id = ? "
                "AND relation_type = ?",
                (from_id, to_id, rtype.value),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"relation {from_id} --{rtype}--> {to_id} not found")
        logger.info(f"Unlinked {from_id} --{rtype}--> {to_id}")

    def get_dependencies(self, expertise_id: str) -> List[Relation]:
        """Outgoing edges: the units ``expertise_id`` depends on."""
        rows = self.db.fetchall(
            f"SELECT {_RELATION_COLUMNS} FROM relations WHERE from_id = ? "
            "ORDER BY to_id, relation_type",
            (expertise_id,),
        )
        return [_row_to_relation(r) for r in rows]

    def get_dependents(self, expertise_id: str) -> List[Relation]:
        """Incoming edges: the units that depend on ``expertise_id``."""
        rows = self.db.fetchall(
            f"SELECT {_RELATION_COLUMNS} FROM relations WHERE to_id = ? "
            "ORDER BY from_id, relation_type",
            (expertise_id,),
        )
        return [_row_to_relation(r) for r in rows]

    def get_relations(self, expertise_id: str) -> List[Relation]:
        """Outgoing then incoming edges; a self-loop appears once."""
        out = self.get_dependencies(expertise_id)
        inc = [r for r in self.get_dependents(expertise_id) if r.from_id != expertise_id]
        return out + inc

    def list_relations(self, relation_type=None) -> List[Relation]:
        sql = f"SELECT {_RELATION_COLUMNS} FROM relations"
        params: List[Any] = []
        if relation_type is not None:
            sql += " WHERE relation_type = ?"
            params.append(RelationType.parse(relation_type).value)
        sql += " ORDER BY from_id, to_id, relation_type"
        return [_row_to_relation(r) for r in self.db.fetchall(sql, params)]

    def build_graph(self, scope: Optional[Scope] = None) -> ExpertiseGraph:
        """Materialize every unit (isolated ones included) and every edge.

        With ``scope``, only units of that scope and edges between them.
        """
        graph = ExpertiseGraph()
        sql = "SELECT id, scope, description FROM expertises"
        params: List[Any] = []
        if scope is not None:
            sql += " WHERE scope = ?"
            params.append(Scope.parse(scope).value)
        sql += " ORDER BY id"
        with self.db.transaction():
            for row in self.db.fetchall(sql, params):
                graph.add_node(row["id"], Scope.parse(row["scope"]), row["description"])
            relations = self.list_relations()
        for relation in relations:
            if relation.from_id in graph.nodes and relation.to_id in graph.nodes:
                graph.add_edge(relation)
        logger.debug(f"Built graph: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
        return graph

    def transitive_dependencies(
        self, expertise_id: str, max_depth: Optional[int] = None,
    ) -> Dict[str, int]:
        """Every unit reachable along outgoing edges, with its hop distance."""
        self._require_unit(expertise_id)
        return self.build_graph().reachable(expertise_id, max_depth=max_depth)
