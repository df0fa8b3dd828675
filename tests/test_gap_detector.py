"""Tests for heuristic research-gap detection."""

from __future__ import annotations

import pytest

from ideagraph.knowledge_base.models import EvidenceSource, GapPriority, GapType
from ideagraph.knowledge_base.persistence import PersistenceAdapter
from ideagraph.knowledge_base.store import EntityStore
from ideagraph.synthesis.gap_detector import detect_gaps


@pytest.fixture
def store(tmp_path):
    adapter = PersistenceAdapter(tmp_path / "gaps.sqlite")
    store = EntityStore(adapter)
    store.init()
    yield store
    adapter.close()


@pytest.fixture
def thesis_id(store):
    return store.create_thesis({"title": "Sleep and memory"}).id


def _included(store, thesis_id, title, **extra):
    paper = store.add_paper({"thesis_id": thesis_id, "title": title, **extra})
    return store.set_screening_decision(paper.id, "include")


def _types(gaps):
    return {g.type for g in gaps}


class TestDetectGaps:
    def test_no_papers_no_gaps(self, store, thesis_id):
        assert detect_gaps(store, thesis_id, current_year=2024) == []

    def test_unknown_thesis(self, store):
        assert detect_gaps(store, "missing", current_year=2024) == []

    def test_contradictory_gap(self, store, thesis_id):
        a = _included(store, thesis_id, "A", year=2023)
        b = _included(store, thesis_id, "B", year=2023)
        store.create_connection({
            "thesis_id": thesis_id, "from_paper_id": a.id, "to_paper_id": b.id, "type": "contradicts",
        })
        gaps = detect_gaps(store, thesis_id, current_year=2024)
        contradictory = [g for g in gaps if g.type is GapType.CONTRADICTORY]
        assert len(contradictory) == 1
        assert contradictory[0].priority is GapPriority.HIGH
        assert contradictory[0].evidence_source is EvidenceSource.INFERRED
        assert contradictory[0].related_paper_ids == [a.id, b.id]

    def test_temporal_gap(self, store, thesis_id):
        for i in range(3):
            _included(store, thesis_id, f"Old {i}", year=2005)
        _included(store, thesis_id, "New", year=2023)
        gaps = detect_gaps(store, thesis_id, current_year=2024)
        assert GapType.TEMPORAL in _types(gaps)

    def test_no_temporal_gap_for_recent_literature(self, store, thesis_id):
        for i in range(4):
            _included(store, thesis_id, f"New {i}", year=2023)
        assert GapType.TEMPORAL not in _types(detect_gaps(store, thesis_id, current_year=2024))

    def test_methodological_gap(self, store, thesis_id):
        for i in range(5):
            _included(
                store, thesis_id, f"P{i}", year=2023,
                evidence=[{"description": "trial", "type": "experimental"}],
            )
        gaps = detect_gaps(store, thesis_id, current_year=2024)
        method = next(g for g in gaps if g.type is GapType.METHODOLOGICAL)
        assert "computational" in method.title
        assert "meta-analysis" in method.title

    def test_knowledge_gap_from_weak_arguments(self, store, thesis_id):
        for i in range(3):
            _included(store, thesis_id, f"P{i}", year=2023, arguments=[{"claim": f"C{i}", "strength": "weak"}])
        gaps = detect_gaps(store, thesis_id, current_year=2024)
        knowledge = next(g for g in gaps if g.type is GapType.KNOWLEDGE)
        assert len(knowledge.related_paper_ids) == 3

    def test_excluded_papers_ignored(self, store, thesis_id):
        for i in range(3):
            paper = store.add_paper({
                "thesis_id": thesis_id, "title": f"P{i}", "arguments": [{"claim": "C", "strength": "weak"}],
            })
            store.set_screening_decision(paper.id, "exclude", "not-relevant")
        assert detect_gaps(store, thesis_id, current_year=2024) == []

    def test_existing_gap_type_not_proposed_again(self, store, thesis_id):
        for i in range(3):
            _included(store, thesis_id, f"P{i}", year=2023, arguments=[{"claim": f"C{i}", "strength": "weak"}])
        first = detect_gaps(store, thesis_id, current_year=2024)
        for gap in first:
            store.create_gap(gap.model_dump(exclude={"id", "created_at"}))
        assert detect_gaps(store, thesis_id, current_year=2024) == []

    def test_detection_does_not_mutate_store(self, store, thesis_id):
        a = _included(store, thesis_id, "A")
        b = _included(store, thesis_id, "B")
        store.create_connection({
            "thesis_id": thesis_id, "from_paper_id": a.id, "to_paper_id": b.id, "type": "contradicts",
        })
        detect_gaps(store, thesis_id, current_year=2024)
        assert store.list_gaps(thesis_id) == []
