"""
Tests for niwa.garden and niwa.ledger — monitored paths, presets, ledger rows.
"""

import os

import pytest

from niwa.db import Database
from niwa.errors import InvalidInputError, NotFoundError
from niwa.garden import PRESETS, GardenRegistry, get_preset
from niwa.ledger import SessionLedger
from niwa.store import ExpertiseStore
from niwa.types import Expertise


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, t=1_700_000_000):
        self.t = t

    def __call__(self):
        return self.t


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db(clock):
    d = Database(":memory:", clock=clock)
    yield d
    d.close()


@pytest.fixture
def registry(db):
    return GardenRegistry(db)


@pytest.fixture
def ledger(db):
    ExpertiseStore(db).create(Expertise(id="unit-a"))
    ExpertiseStore(db).create(Expertise(id="unit-b"))
    return SessionLedger(db)


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------


class TestPresets:
    def test_known_presets(self):
        assert set(PRESETS) == {"claude-code", "cursor"}

    def test_alias(self):
        assert get_preset("claude").name == "claude-code"
        assert get_preset("Claude-Code").name == "claude-code"

    def test_none(self):
        assert get_preset(None) is None

    def test_unknown(self):
        with pytest.raises(InvalidInputError):
            get_preset("vim")

    def test_claude_path(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert str(get_preset("claude").default_path()).endswith(
            os.path.join(".claude", "projects")
        )

    def test_init_preset_missing_dir(self, registry, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        with pytest.raises(NotFoundError):
            registry.init_preset("claude-code")

    def test_init_preset(self, registry, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / ".claude" / "projects").mkdir(parents=True)
        garden = registry.init_preset("claude")
        assert garden.preset_name == "claude-code"
        assert garden.path == os.path.realpath(str(tmp_path / ".claude" / "projects"))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestGardenRegistry:
    def test_add_and_list(self, registry, tmp_path):
        g = registry.add(str(tmp_path))
        assert g.id > 0
        assert g.enabled
        assert g.path == os.path.realpath(str(tmp_path))
        assert g.last_scanned_at is None
        assert [x.id for x in registry.list()] == [g.id]

    def test_add_canonicalises(self, registry, tmp_path):
        sub = tmp_path / "logs"
        sub.mkdir()
        g = registry.add(str(tmp_path / "logs" / ".." / "logs"))
        assert g.path == os.path.realpath(str(sub))

    def test_add_missing(self, registry, tmp_path):
        with pytest.raises(NotFoundError):
            registry.add(str(tmp_path / "nope"))

    def test_add_file_rejected(self, registry, tmp_path):
        f = tmp_path / "file.txt"
        f.write_text("x")
        with pytest.raises(InvalidInputError):
            registry.add(str(f))

    def test_readd_reenables(self, registry, tmp_path):
        g = registry.add(str(tmp_path))
        registry.set_enabled(g.id, False)
        assert registry.list(enabled_only=True) == []
        again = registry.add(str(tmp_path))
        assert again.id == g.id
        assert again.enabled
        assert len(registry.list()) == 1

    def test_remove(self, registry, tmp_path):
        g = registry.add(str(tmp_path))
        registry.remove(g.id)
        assert registry.list() == []
        with pytest.raises(NotFoundError):
            registry.remove(g.id)

    def test_set_enabled_missing(self, registry):
        with pytest.raises(NotFoundError):
            registry.set_enabled(42, True)

    def test_mark_scanned(self, registry, clock, tmp_path):
        g = registry.add(str(tmp_path))
        clock.t += 100
        registry.mark_scanned(g.id)
        assert registry.get(g.id).last_scanned_at == clock.t


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class TestSessionLedger:
    def test_record_and_get(self, ledger):
        row = ledger.record("/logs/a.jsonl", "h1", "unit-a")
        got = ledger.get("/logs/a.jsonl")
        assert got == row
        assert got.file_hash == "h1"

    def test_get_missing(self, ledger):
        assert ledger.get("/nope") is None

    def test_upsert_single_row(self, ledger):
        ledger.record("/logs/a.jsonl", "h1", "unit-a")
        ledger.record("/logs/a.jsonl", "h2", "unit-b")
        assert ledger.count() == 1
        got = ledger.get("/logs/a.jsonl")
        assert (got.file_hash, got.expertise_id) == ("h2", "unit-b")

    def test_processed_at_strictly_increases(self, ledger, clock):
        first = ledger.record("/logs/a.jsonl", "h1", "unit-a")
        second = ledger.record("/logs/a.jsonl", "h2", "unit-a")
        assert second.processed_at > first.processed_at
        clock.t += 1000
        third = ledger.record("/logs/a.jsonl", "h3", "unit-a")
        assert third.processed_at == clock.t

    def test_list_by_expertise(self, ledger):
        ledger.record("/logs/a", "h1", "unit-a")
        ledger.record("/logs/b", "h2", "unit-b")
        assert [r.file_path for r in ledger.list("unit-b")] == ["/logs/b"]
        assert len(ledger.list()) == 2

    def test_forget(self, ledger):
        ledger.record("/logs/a", "h1", "unit-a")
        ledger.forget("/logs/a")
        assert ledger.get("/logs/a") is None
        with pytest.raises(NotFoundError):
            ledger.forget("/logs/a")

    def test_unknown_expertise_rejected(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.record("/logs/a", "h1", "ghost")
