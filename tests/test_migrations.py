"""Tests for the migration engine and the built-in migration registry."""

from __future__ import annotations

import copy
from unittest.mock import MagicMock

import pytest

from ideagraph.knowledge_base.errors import MigrationError, PersistenceError
from ideagraph.knowledge_base.migrations import (
    CURRENT_VERSION,
    MIGRATIONS,
    Migration,
    MigrationEngine,
    read_stored_version,
)
from ideagraph.knowledge_base.models import StoreSnapshot
from ideagraph.knowledge_base.persistence import PersistenceAdapter


# --- Fixtures ---


@pytest.fixture
def adapter(tmp_path):
    adapter = PersistenceAdapter(tmp_path / "migrate.sqlite")
    yield adapter
    adapter.close()


def _mark(n):
    def transform(state):
        return {**state, f"m{n}": True}
    return transform


def _boom(state):
    raise RuntimeError("boom")


LEGACY_V0 = {
    "theses": [{"id": "t1", "title": "Legacy question", "paperIds": ["p1", "ghost"]}],
    "papers": [
        {
            "id": "p1",
            "thesisId": "t1",
            "title": "Old paper",
            "readingStatus": "to-read",
            "screeningDecision": "maybe",
            "thesisRole": "unknown",
            "evidence": [{"id": "e1", "description": "d", "linkedArgumentId": "missing"}],
        },
        {"id": "p2", "thesisId": "t1", "title": "Revisit", "readingStatus": "to-revisit"},
        {"id": "p3", "thesisId": "gone", "title": "Orphan"},
    ],
    "connections": [
        {"id": "c1", "thesisId": "t1", "fromPaperId": "p1", "toPaperId": "p2", "type": "supports"},
        {"id": "c2", "thesisId": "t1", "fromPaperId": "p1", "toPaperId": "p3", "type": "supports"},
    ],
    "synthesisThemes": [{"id": "th1", "thesisId": "t1", "name": "Theme", "paperIds": ["p1", "p3"]}],
    "reviewSections": [{"id": "s1", "thesisId": "t1", "title": "Intro", "paperIds": ["p2"]}],
    "researchGaps": [],
    "activeThesisId": "t1",
}


class TestRegistry:
    def test_current_version_is_last(self):
        assert CURRENT_VERSION == MIGRATIONS[-1].version == 4

    def test_versions_strictly_increasing(self):
        versions = [m.version for m in MIGRATIONS]
        assert versions == sorted(set(versions))

    def test_non_increasing_registry_rejected(self):
        with pytest.raises(ValueError):
            MigrationEngine(None, [Migration(1, "a", "", _mark(1)), Migration(1, "b", "", _mark(2))])
        with pytest.raises(ValueError):
            MigrationEngine(None, [Migration(2, "a", "", _mark(2)), Migration(1, "b", "", _mark(1))])

    def test_zero_version_rejected(self):
        with pytest.raises(ValueError):
            MigrationEngine(None, [Migration(0, "zero", "", _mark(0))])


class TestReadStoredVersion:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ({"schemaVersion": 3}, 3),
            ({}, 0),
            ({"schemaVersion": "3"}, 0),
            ({"schemaVersion": -1}, 0),
            ({"schemaVersion": True}, 0),
            (None, 0),
        ],
    )
    def test_versions(self, raw, expected):
        assert read_stored_version(raw) == expected


class TestEnsureMigrated:
    def test_partial_failure_keeps_earlier_migrations(self, adapter):
        engine = MigrationEngine(adapter, [Migration(1, "one", "", _mark(1)), Migration(2, "two", "", _boom)])
        result = engine.ensure_migrated({"schemaVersion": 0})
        assert not result.success
        assert result.migrations_applied == [1]
        assert result.to_version == 1
        assert len(result.errors) == 1
        assert isinstance(result.errors[0], MigrationError)
        assert result.errors[0].version == 2
        assert adapter.stored_version() == 1
        assert adapter.load()["m1"] is True

    def test_failure_stops_later_migrations(self):
        ran = []

        def record(n):
            def transform(state):
                ran.append(n)
                return state
            return transform

        engine = MigrationEngine(None, [
            Migration(1, "one", "", record(1)),
            Migration(2, "two", "", record(2)),
            Migration(3, "three", "", _boom),
            Migration(4, "four", "", record(4)),
        ])
        result = engine.ensure_migrated({})
        assert ran == [1, 2]
        assert result.migrations_applied == [1, 2]
        assert result.state["schemaVersion"] == 2

    def test_failed_transform_does_not_leak_partial_changes(self):
        def half_done(state):
            state["touched"] = True
            raise ValueError("halfway")

        engine = MigrationEngine(None, [Migration(1, "one", "", _mark(1)), Migration(2, "two", "", half_done)])
        result = engine.ensure_migrated({})
        assert "touched" not in result.state

    def test_non_dict_transform_result_is_failure(self):
        engine = MigrationEngine(None, [Migration(1, "bad", "", lambda s: None)])
        result = engine.ensure_migrated({})
        assert not result.success
        assert result.migrations_applied == []

    def test_idempotent_when_current(self, adapter):
        engine = MigrationEngine(adapter)
        first = engine.ensure_migrated({})
        assert first.migrations_applied == [1, 2, 3, 4]
        second = engine.ensure_migrated(first.state)
        assert second.success
        assert second.migrations_applied == []
        assert second.from_version == second.to_version == CURRENT_VERSION

    def test_no_save_when_nothing_applied(self):
        adapter = MagicMock()
        MigrationEngine(adapter).ensure_migrated({"schemaVersion": CURRENT_VERSION})
        adapter.save.assert_not_called()

    def test_input_not_mutated(self):
        raw = copy.deepcopy(LEGACY_V0)
        MigrationEngine(None).ensure_migrated(raw)
        assert raw == LEGACY_V0

    def test_records_applied_migrations(self):
        result = MigrationEngine(None).ensure_migrated({"schemaVersion": 2, "appliedMigrations": [1, 2]})
        assert result.state["appliedMigrations"] == [1, 2, 3, 4]
        assert result.state["schemaVersion"] == 4
        assert result.state["migratedAt"]

    def test_newer_stored_version_left_untouched(self):
        raw = {"schemaVersion": 99, "futureField": 1}
        result = MigrationEngine(None).ensure_migrated(raw)
        assert result.success
        assert result.migrations_applied == []
        assert result.from_version == 99
        assert result.state == raw

    def test_storage_tag_overrides_payload_version(self):
        engine = MigrationEngine(None, [Migration(1, "one", "", _mark(1)), Migration(2, "two", "", _mark(2))])
        result = engine.ensure_migrated({"schemaVersion": 0}, stored_version=1)
        assert result.from_version == 1
        assert result.migrations_applied == [2]
        assert "m1" not in result.state

        current = engine.ensure_migrated({}, stored_version=2)
        assert current.migrations_applied == []
        assert current.state["schemaVersion"] == 2

    def test_pending_accepts_bare_version(self):
        engine = MigrationEngine(None)
        assert [m.version for m in engine.pending(2)] == [3, 4]
        assert not engine.needs_migration(CURRENT_VERSION)
        assert engine.needs_migration({"schemaVersion": CURRENT_VERSION - 1})

    def test_save_failure_reported(self):
        adapter = MagicMock()
        adapter.save.side_effect = PersistenceError("disk full")
        result = MigrationEngine(adapter).ensure_migrated({})
        assert not result.success
        assert result.migrations_applied == [1, 2, 3, 4]
        assert any(isinstance(e, PersistenceError) for e in result.errors)

    def test_not_reentrant(self):
        engine = MigrationEngine(None)

        def reenter(state):
            return engine.ensure_migrated(state).state

        engine.migrations = (Migration(1, "reenter", "", reenter),)
        result = engine.ensure_migrated({})
        assert not result.success
        assert "not re-entrant" in str(result.errors[0])

    def test_to_dict_shape(self):
        result = MigrationEngine(None).ensure_migrated({})
        data = result.to_dict()
        assert data["fromVersion"] == 0
        assert data["toVersion"] == CURRENT_VERSION
        assert data["migrationsApplied"] == [1, 2, 3, 4]
        assert data["errors"] == []


class TestBuiltinMigrations:
    @pytest.fixture
    def migrated(self):
        return MigrationEngine(None).ensure_migrated(copy.deepcopy(LEGACY_V0)).state

    def test_legacy_collections_renamed(self, migrated):
        assert "synthesisThemes" not in migrated
        assert "reviewSections" not in migrated
        assert [t["id"] for t in migrated["themes"]] == ["th1"]
        assert [s["id"] for s in migrated["sections"]] == ["s1"]
        assert migrated["gaps"] == []

    def test_status_enums_normalized(self, migrated):
        papers = {p["id"]: p for p in migrated["papers"]}
        assert papers["p1"]["readingStatus"] == "unread"
        assert papers["p1"]["screeningDecision"] == "pending"
        assert papers["p1"]["thesisRole"] == "other"
        assert papers["p2"]["readingStatus"] == "read"

    def test_orphans_and_dangling_refs_dropped(self, migrated):
        assert {p["id"] for p in migrated["papers"]} == {"p1", "p2"}
        assert [c["id"] for c in migrated["connections"]] == ["c1"]
        assert migrated["themes"][0]["paperIds"] == ["p1"]
        p1 = next(p for p in migrated["papers"] if p["id"] == "p1")
        assert p1["evidence"][0]["linkedArgumentId"] is None

    def test_back_references_rebuilt(self, migrated):
        thesis = migrated["theses"][0]
        assert thesis["paperIds"] == ["p1", "p2"]
        assert thesis["connectionIds"] == ["c1"]

    def test_default_settings_added(self, migrated):
        assert migrated["settings"]["defaultView"] == "list"
        assert migrated["activeThesisId"] == "t1"

    def test_result_is_a_valid_snapshot(self, migrated):
        snapshot = StoreSnapshot.model_validate(migrated)
        assert snapshot.schema_version == CURRENT_VERSION
        assert len(snapshot.papers) == 2

    def test_missing_active_thesis_cleared(self):
        raw = {**copy.deepcopy(LEGACY_V0), "activeThesisId": "nope"}
        state = MigrationEngine(None).ensure_migrated(raw).state
        assert state["activeThesisId"] is None
