"""
Tests for niwa.scope — glob translation, rule CRUD, first-match resolution.
"""

import pytest

from niwa.db import Database
from niwa.errors import ConflictError, InvalidInputError, NotFoundError
from niwa.scope import ScopeResolver, compile_pattern, matches_pattern
from niwa.types import Scope


@pytest.fixture
def db():
    d = Database(":memory:")
    yield d
    d.close()


@pytest.fixture
def resolver(db):
    return ScopeResolver(db)


# ---------------------------------------------------------------------------
# Pattern matching
# ---------------------------------------------------------------------------


class TestMatchesPattern:
    def test_simple_wildcard(self):
        assert matches_pattern("/Users/test/projects/company-foo/file", "company-*")
        assert matches_pattern("/Users/test/projects/niwa-cli/src", "niwa-*")

    def test_double_wildcard(self):
        assert matches_pattern("/Users/test/work/client/project/file", "work/**")

    def test_literal_anywhere(self):
        assert matches_pattern("/Users/test/projects/niwa", "niwa")

    def test_character_class(self):
        assert matches_pattern("/Users/test/projects/y1/file", "y[0-9]*")
        assert matches_pattern("/Users/test/projects/y23/file", "y[0-9]*")
        assert matches_pattern("/Users/test/projects/y100/file", "y[0-9]*")
        assert not matches_pattern("/Users/test/projects/yui/file", "y[0-9]*")
        assert not matches_pattern("/Users/test/projects/ya/file", "y[0-9]*")

    def test_no_match(self):
        assert not matches_pattern("/Users/test/personal/stuff", "company-*")

    def test_single_star_stops_at_slash(self):
        assert not matches_pattern("/work/a/b", "work/*/c")
        assert matches_pattern("/work/a/b/c", "work/**/c")

    def test_question_mark(self):
        assert matches_pattern("/p/v1/x", "/v?/")
        assert not matches_pattern("/p/v/x/", "/v?x")

    def test_negated_class(self):
        assert matches_pattern("/p/ya", "y[!0-9]")
        assert not matches_pattern("/p/y1", "y[!0-9]")

    def test_case_insensitive(self):
        assert matches_pattern("/Home/Work/Acme", "work/acme")

    def test_regex_metacharacters_literal(self):
        assert matches_pattern("/p/a.b+c", "a.b+c")
        assert not matches_pattern("/p/aXb+c", "a.b+c")

    def test_fallback_matches_everything(self):
        for path in ("", "/", "relative/path", "C:\\Users\\x", "ünïcode/ñ"):
            assert matches_pattern(path, "*")

    def test_unterminated_class(self):
        with pytest.raises(InvalidInputError):
            compile_pattern("y[0-9")

    def test_empty_pattern(self):
        with pytest.raises(InvalidInputError):
            compile_pattern("")


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolve:
    def test_fallback_rule_present(self, resolver):
        rules = resolver.list_mappings()
        assert len(rules) == 1
        assert rules[0].pattern == "*"
        assert rules[0].scope is Scope.PERSONAL
        assert rules[0].priority == 0

    def test_default_personal(self, resolver):
        assert resolver.resolve("/anything/at/all") is Scope.PERSONAL

    def test_total_over_odd_inputs(self, resolver):
        resolver.add_mapping("work/**", Scope.COMPANY, priority=5)
        for path in ("", "::", "\n", "a" * 5000, "/work"):
            assert isinstance(resolver.resolve(path), Scope)

    def test_higher_priority_wins(self, resolver):
        resolver.add_mapping("work/**", Scope.COMPANY, priority=5)
        resolver.add_mapping("work/side-*", Scope.PROJECT, priority=20)
        assert resolver.resolve("/home/me/work/side-gig/log.md") is Scope.PROJECT
        assert resolver.resolve("/home/me/work/acme/log.md") is Scope.COMPANY
        assert resolver.resolve("/home/me/play/log.md") is Scope.PERSONAL

    def test_equal_priority_lowest_id_wins(self, resolver):
        resolver.add_mapping("acme", Scope.COMPANY, priority=10)
        resolver.add_mapping("acme-labs", Scope.PROJECT, priority=10)
        assert resolver.resolve("/x/acme-labs/y") is Scope.COMPANY

    def test_fallback_scope_can_change(self, resolver):
        fallback = resolver.list_mappings()[-1]
        resolver.update_mapping(fallback.id, scope=Scope.PROJECT)
        assert resolver.resolve("/anywhere") is Scope.PROJECT

    def test_tampered_table_defaults_personal(self, db, resolver):
        db.execute("DELETE FROM scope_mappings")
        assert resolver.resolve("/anywhere") is Scope.PERSONAL


# ---------------------------------------------------------------------------
# Rule CRUD
# ---------------------------------------------------------------------------


class TestMappings:
    def test_add_and_list_order(self, resolver):
        resolver.add_mapping("b", Scope.COMPANY, priority=5)
        resolver.add_mapping("a", Scope.PROJECT, priority=50)
        patterns = [m.pattern for m in resolver.list_mappings()]
        assert patterns == ["a", "b", "*"]

    def test_add_duplicate_conflicts(self, resolver):
        resolver.add_mapping("work/**", Scope.COMPANY)
        with pytest.raises(ConflictError):
            resolver.add_mapping("work/**", Scope.PROJECT)

    def test_add_replace(self, resolver):
        first = resolver.add_mapping("work/**", Scope.COMPANY)
        second = resolver.add_mapping("work/**", Scope.PROJECT, priority=3, replace=True)
        assert second.id == first.id
        assert second.scope is Scope.PROJECT
        assert second.priority == 3

    def test_add_rejects_bad_priority(self, resolver):
        with pytest.raises(InvalidInputError):
            resolver.add_mapping("work", Scope.COMPANY, priority=0)

    def test_add_rejects_bad_pattern(self, resolver):
        with pytest.raises(InvalidInputError):
            resolver.add_mapping("y[0-9", Scope.COMPANY)

    def test_add_rejects_fallback_pattern(self, resolver):
        with pytest.raises(InvalidInputError):
            resolver.add_mapping("*", Scope.COMPANY)

    def test_add_rejects_bad_scope(self, resolver):
        with pytest.raises(InvalidInputError):
            resolver.add_mapping("work", "team")

    def test_update(self, resolver):
        m = resolver.add_mapping("work", Scope.COMPANY)
        updated = resolver.update_mapping(m.id, scope="project", priority=99)
        assert updated.scope is Scope.PROJECT
        assert updated.priority == 99

    def test_update_fallback_priority_rejected(self, resolver):
        fallback = resolver.list_mappings()[-1]
        with pytest.raises(InvalidInputError):
            resolver.update_mapping(fallback.id, priority=5)

    def test_update_missing(self, resolver):
        with pytest.raises(NotFoundError):
            resolver.update_mapping(9999, scope=Scope.COMPANY)

    def test_remove(self, resolver):
        m = resolver.add_mapping("work", Scope.COMPANY)
        resolver.remove_mapping(m.id)
        assert [x.pattern for x in resolver.list_mappings()] == ["*"]

    def test_remove_missing(self, resolver):
        with pytest.raises(NotFoundError):
            resolver.remove_mapping(9999)

    def test_remove_fallback_rejected(self, resolver):
        fallback = resolver.list_mappings()[-1]
        with pytest.raises(InvalidInputError):
            resolver.remove_mapping(fallback.id)
        assert resolver.resolve("/x") is Scope.PERSONAL
