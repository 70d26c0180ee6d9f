"""
Tests for niwa.types — enum parsing, unit validation, payload mapping.
"""

import json

import pytest

from niwa.errors import InvalidInputError, NiwaError
from niwa.types import Expertise, Relation, RelationType, Scope, SearchOptions


class TestEnums:
    def test_scope_parse(self):
        assert Scope.parse("Company") is Scope.COMPANY
        assert Scope.parse(" project ") is Scope.PROJECT
        assert Scope.parse(Scope.PERSONAL) is Scope.PERSONAL

    def test_scope_invalid(self):
        with pytest.raises(InvalidInputError, match="personal, company, project"):
            Scope.parse("team")

    def test_relation_parse(self):
        assert RelationType.parse("REQUIRES") is RelationType.REQUIRES
        with pytest.raises(InvalidInputError):
            RelationType.parse("depends")

    def test_str(self):
        assert str(Scope.COMPANY) == "company"
        assert str(RelationType.USES) == "uses"

    def test_invalid_input_is_value_error(self):
        err = InvalidInputError("x")
        assert isinstance(err, ValueError)
        assert isinstance(err, NiwaError)


class TestExpertise:
    def test_defaults(self):
        e = Expertise(id="x")
        assert e.version == "1.0.0"
        assert e.scope is Scope.PERSONAL
        assert e.tags == []
        assert e.data == {}

    def test_empty_id(self):
        with pytest.raises(InvalidInputError):
            Expertise(id="  ")

    def test_empty_version(self):
        with pytest.raises(InvalidInputError):
            Expertise(id="x", version="")

    def test_scope_string_coerced(self):
        assert Expertise(id="x", scope="company").scope is Scope.COMPANY

    def test_tags_cleaned(self):
        e = Expertise(id="x", tags=[" rust ", "", "async", "rust"])
        assert e.tags == ["rust", "async"]

    def test_tags_string_rejected(self):
        with pytest.raises(InvalidInputError):
            Expertise(id="x", tags="rust")

    def test_data_must_be_mapping(self):
        with pytest.raises(InvalidInputError):
            Expertise(id="x", data=[1, 2])

    def test_data_json_stable(self):
        e = Expertise(id="x", data={"b": 1, "a": "é"})
        assert e.data_json == '{"a": "é", "b": 1}'
        assert json.loads(e.data_json) == e.data

    def test_data_not_serializable(self):
        with pytest.raises(InvalidInputError, match="not JSON-serializable"):
            Expertise(id="x", data={"when": object()})

    def test_from_payload_not_serializable(self):
        with pytest.raises(InvalidInputError):
            Expertise.from_payload("x", "1.0.0", "personal", {"tags": ["a"], "n": {1, 2}})

    def test_from_payload(self):
        payload = {
            "description": "Tokio patterns",
            "tags": ["rust", "tokio"],
            "knowledge": [{"title": "spawn", "content": "..."}],
        }
        e = Expertise.from_payload("tokio", "1.0.0", "project", payload)
        assert e.description == "Tokio patterns"
        assert e.tags == ["rust", "tokio"]
        assert e.data == payload
        assert e.scope is Scope.PROJECT

    def test_from_payload_non_dict(self):
        with pytest.raises(InvalidInputError):
            Expertise.from_payload("x", "1.0.0", "personal", ["nope"])

    def test_to_dict(self):
        d = Expertise(id="x", scope="company", tags=["a"]).to_dict()
        assert d["scope"] == "company"
        assert d["tags"] == ["a"]
        json.dumps(d)


class TestRelationAndOptions:
    def test_relation_coerces_type(self):
        r = Relation("a", "b", "uses")
        assert r.relation_type is RelationType.USES
        assert r.key == ("a", "b", RelationType.USES)
        assert r.to_dict()["relation_type"] == "uses"

    def test_search_options_defaults(self):
        opts = SearchOptions()
        assert (opts.limit, opts.offset, opts.scope, opts.tags) == (20, 0, None, [])

    def test_search_options_negative(self):
        with pytest.raises(InvalidInputError):
            SearchOptions(limit=-1)
        with pytest.raises(InvalidInputError):
            SearchOptions(offset=-5)

    def test_search_options_scope(self):
        assert SearchOptions(scope="project").scope is Scope.PROJECT
