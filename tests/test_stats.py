"""Tests for the read-only RelationshipIndex projections."""

from __future__ import annotations

import pytest

from ideagraph.knowledge_base.persistence import PersistenceAdapter
from ideagraph.knowledge_base.store import EntityStore


@pytest.fixture
def store(tmp_path):
    adapter = PersistenceAdapter(tmp_path / "stats.sqlite")
    store = EntityStore(adapter)
    store.init()
    yield store
    adapter.close()


@pytest.fixture
def thesis_id(store):
    return store.create_thesis({"title": "Urban heat"}).id


def _paper(store, thesis_id, title, decision="include", **extra):
    paper = store.add_paper({"thesis_id": thesis_id, "title": title, **extra})
    return store.set_screening_decision(paper.id, decision)


class TestRelationshipIndex:
    def test_unknown_thesis_yields_empty_results(self, store):
        index = store.index
        assert index.papers_for_thesis("nope") == []
        assert index.screening_stats("nope") == {"pending": 0, "include": 0, "exclude": 0}
        assert index.reading_progress("nope") == 0.0
        assert index.synthesis_matrix("nope").matrix == {}

    def test_included_and_pending_papers(self, store, thesis_id):
        kept = _paper(store, thesis_id, "Kept")
        _paper(store, thesis_id, "Dropped", decision="exclude")
        waiting = store.add_paper({"thesis_id": thesis_id, "title": "Waiting"})
        assert [p.id for p in store.index.included_papers(thesis_id)] == [kept.id]
        assert [p.id for p in store.index.papers_for_screening(thesis_id)] == [waiting.id]

    def test_connections_for_paper(self, store, thesis_id):
        a = _paper(store, thesis_id, "A")
        b = _paper(store, thesis_id, "B")
        c = _paper(store, thesis_id, "C")
        conn = store.create_connection({
            "thesis_id": thesis_id, "from_paper_id": a.id, "to_paper_id": b.id, "type": "supports",
        })
        assert [x.id for x in store.index.connections_for_paper(b.id)] == [conn.id]
        assert store.index.connections_for_paper(c.id) == []

    def test_has_paper_with_doi_is_case_insensitive(self, store, thesis_id):
        store.add_paper({"thesis_id": thesis_id, "title": "A", "doi": "10.1000/ABC"})
        assert store.index.has_paper_with_doi(thesis_id, " 10.1000/abc ")
        assert not store.index.has_paper_with_doi(thesis_id, "10.1000/xyz")

    def test_synthesis_matrix(self, store, thesis_id):
        a = _paper(store, thesis_id, "A")
        b = _paper(store, thesis_id, "B")
        theme = store.create_theme({"thesis_id": thesis_id, "name": "Cooling", "paper_ids": [a.id]})
        result = store.index.synthesis_matrix(thesis_id)
        assert result.matrix == {theme.id: {a.id: True, b.id: False}}

    def test_argument_clusters(self, store, thesis_id):
        a = _paper(store, thesis_id, "A")
        b = _paper(store, thesis_id, "B")
        c = _paper(store, thesis_id, "C")
        store.update_paper(a.id, {"arguments": [{"claim": "Trees cool streets"}]})
        store.update_paper(b.id, {"arguments": [{"claim": "trees cool streets ", "your_assessment": "agree"}]})
        store.update_paper(c.id, {"arguments": [
            {"claim": "Trees cool streets", "your_assessment": "disagree"},
            {"claim": "Only mentioned once"},
        ]})
        clusters = store.index.argument_clusters(thesis_id)
        assert len(clusters) == 1
        assert clusters[0].claim == "trees cool streets"
        assert set(clusters[0].paper_ids) == {a.id, b.id, c.id}
        assert clusters[0].agreement == "partial"

    def test_conflicting_cluster(self, store, thesis_id):
        a = _paper(store, thesis_id, "A")
        b = _paper(store, thesis_id, "B")
        store.update_paper(a.id, {"arguments": [{"claim": "X", "your_assessment": "agree"}]})
        store.update_paper(b.id, {"arguments": [{"claim": "X", "your_assessment": "disagree"}]})
        assert store.index.argument_clusters(thesis_id)[0].agreement == "conflicting"
