"""
Tests for niwa.graph — relation CRUD, cyclic traversal, graph materialization.
"""

import pytest

from niwa.db import Database
from niwa.errors import ConflictError, InvalidInputError, NotFoundError
from niwa.graph import BOTH, INCOMING, ExpertiseGraph, RelationGraph
from niwa.store import ExpertiseStore
from niwa.types import Expertise, Relation, RelationType, Scope


@pytest.fixture
def db():
    d = Database(":memory:")
    yield d
    d.close()


@pytest.fixture
def graph(db):
    store = ExpertiseStore(db)
    for uid in ("a", "b", "c", "d", "lonely"):
        store.create(Expertise(id=uid, description=f"unit {uid}"))
    return RelationGraph(db)


# ---------------------------------------------------------------------------
# Relation CRUD
# ---------------------------------------------------------------------------


class TestCreateRelation:
    def test_create_and_read(self, graph):
        rel = graph.create_relation("a", "b", "uses", metadata="shared parser")
        assert rel.relation_type is RelationType.USES
        assert rel.created_at is not None
        deps = graph.get_dependencies("a")
        assert len(deps) == 1
        assert deps[0].to_id == "b"
        assert deps[0].metadata == "shared parser"

    def test_duplicate_edge_conflicts(self, graph):
        graph.create_relation("a", "b", RelationType.USES)
        with pytest.raises(ConflictError):
            graph.create_relation("a", "b", RelationType.USES)

    def test_parallel_typed_edges(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("a", "b", "requires")
        deps = graph.get_dependencies("a")
        assert {(r.to_id, r.relation_type) for r in deps} == {
            ("b", RelationType.USES), ("b", RelationType.REQUIRES),
        }
        dependents = graph.get_dependents("b")
        assert {(r.from_id, r.relation_type) for r in dependents} == {
            ("a", RelationType.USES), ("a", RelationType.REQUIRES),
        }

    def test_missing_endpoint(self, graph):
        with pytest.raises(NotFoundError):
            graph.create_relation("a", "ghost", "uses")
        with pytest.raises(NotFoundError):
            graph.create_relation("ghost", "a", "uses")

    def test_invalid_type(self, graph):
        with pytest.raises(InvalidInputError):
            graph.create_relation("a", "b", "likes")

    def test_cycles_and_self_loops_allowed(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("b", "a", "extends")
        graph.create_relation("c", "c", "conflicts")
        assert len(graph.list_relations()) == 3


class TestDeleteRelation:
    def test_delete(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.delete_relation("a", "b", "uses")
        assert graph.get_dependencies("a") == []

    def test_delete_only_that_type(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("a", "b", "requires")
        graph.delete_relation("a", "b", "uses")
        assert [r.relation_type for r in graph.get_dependencies("a")] == [
            RelationType.REQUIRES,
        ]

    def test_delete_missing(self, graph):
        with pytest.raises(NotFoundError):
            graph.delete_relation("a", "b", "uses")


class TestQueries:
    def test_get_relations_both_directions(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("c", "a", "requires")
        rels = graph.get_relations("a")
        assert {(r.from_id, r.to_id) for r in rels} == {("a", "b"), ("c", "a")}

    def test_self_loop_listed_once(self, graph):
        graph.create_relation("a", "a", "uses")
        assert len(graph.get_relations("a")) == 1

    def test_list_relations_by_type(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("b", "c", "extends")
        assert [r.to_id for r in graph.list_relations("extends")] == ["c"]

    def test_unit_delete_cascades_edges(self, db, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("c", "b", "uses")
        ExpertiseStore(db).delete("b")
        assert graph.list_relations() == []


# ---------------------------------------------------------------------------
# Graph materialization and traversal
# ---------------------------------------------------------------------------


class TestBuildGraph:
    def test_includes_isolated_nodes(self, graph):
        graph.create_relation("a", "b", "uses")
        g = graph.build_graph()
        assert set(g.nodes) == {"a", "b", "c", "d", "lonely"}
        assert len(g.edges) == 1
        assert "lonely" in g.isolated()

    def test_parallel_edges_kept(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("a", "b", "requires")
        g = graph.build_graph()
        assert len(g.outgoing("a")) == 2
        assert len(g.incoming("b")) == 2

    def test_cycle_terminates(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("b", "c", "uses")
        graph.create_relation("c", "a", "uses")
        g = graph.build_graph()
        reach = g.reachable("a")
        assert reach == {"b": 1, "c": 2, "a": 3}
        assert g.has_cycle()

    def test_no_cycle(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("a", "c", "uses")
        graph.create_relation("b", "d", "uses")
        graph.create_relation("c", "d", "uses")
        g = graph.build_graph()
        assert not g.has_cycle()
        assert g.roots() == ["a"]

    def test_self_loop_is_cycle(self, graph):
        graph.create_relation("d", "d", "uses")
        assert graph.build_graph().has_cycle()

    def test_reachable_depth_bound(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("b", "c", "uses")
        graph.create_relation("c", "d", "uses")
        g = graph.build_graph()
        assert g.reachable("a", max_depth=2) == {"b": 1, "c": 2}

    def test_reachable_incoming_and_types(self, graph):
        graph.create_relation("a", "c", "uses")
        graph.create_relation("b", "c", "extends")
        g = graph.build_graph()
        assert g.reachable("c", direction=INCOMING) == {"a": 1, "b": 1}
        assert g.reachable("c", direction=INCOMING, relation_types=["extends"]) == {"b": 1}

    def test_reachable_unknown_node(self, graph):
        with pytest.raises(NotFoundError):
            graph.build_graph().reachable("ghost")

    def test_subgraph(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("b", "c", "uses")
        graph.create_relation("c", "d", "uses")
        sub = graph.build_graph().subgraph("b", depth=1)
        assert set(sub.nodes) == {"a", "b", "c"}
        assert {(e.from_id, e.to_id) for e in sub.edges} == {("a", "b"), ("b", "c")}

    def test_scope_filter(self, db, graph):
        ExpertiseStore(db).create(Expertise(id="corp", scope=Scope.COMPANY))
        graph.create_relation("a", "corp", "uses")
        g = graph.build_graph(Scope.COMPANY)
        assert set(g.nodes) == {"corp"}
        assert g.edges == []

    def test_to_dict(self, graph):
        graph.create_relation("a", "b", "uses")
        d = graph.build_graph().to_dict()
        assert len(d["nodes"]) == 5
        assert d["edges"][0]["relation_type"] == "uses"

    def test_transitive_dependencies(self, graph):
        graph.create_relation("a", "b", "uses")
        graph.create_relation("b", "a", "uses")
        graph.create_relation("b", "c", "requires")
        assert graph.transitive_dependencies("a") == {"b": 1, "a": 2, "c": 2}

    def test_transitive_dependencies_missing(self, graph):
        with pytest.raises(NotFoundError):
            graph.transitive_dependencies("ghost")


class TestExpertiseGraphDirect:
    def test_edge_arena_indices(self):
        g = ExpertiseGraph()
        i = g.add_edge(Relation("x", "y", "uses"))
        j = g.add_edge(Relation("y", "x", "uses"))
        assert (i, j) == (0, 1)
        assert g.nodes["x"].out_edges == [0]
        assert g.nodes["x"].in_edges == [1]
        assert g.reachable("x", direction=BOTH) == {"y": 1, "x": 2}
