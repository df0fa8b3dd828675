"""Read-only projections over the entity store.

Everything here is recomputed from the store on each call and never
mutates it. Unknown thesis or paper ids yield empty or zero results.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from .models import (
    Assessment,
    Cluster,
    Connection,
    Paper,
    ReadingStatus,
    ReviewSection,
    ScreeningDecision,
    SynthesisTheme,
)

if TYPE_CHECKING:
    from .store import EntityStore


class SynthesisMatrix(BaseModel):
    themes: list[SynthesisTheme] = Field(default_factory=list)
    papers: list[Paper] = Field(default_factory=list)
    matrix: dict[str, dict[str, bool]] = Field(default_factory=dict)  # theme id -> paper id -> member


class ArgumentCluster(BaseModel):
    """A claim made by two or more included papers."""

    claim: str
    paper_ids: list[str] = Field(default_factory=list)
    agreement: str = "consensus"  # consensus, partial, conflicting


class RelationshipIndex:
    def __init__(self, store: EntityStore):
        self._store = store

    def papers_for_thesis(self, thesis_id: str) -> list[Paper]:
        return self._store.list_papers(thesis_id)

    def included_papers(self, thesis_id: str) -> list[Paper]:
        return [
            p for p in self.papers_for_thesis(thesis_id)
            if p.screening_decision is ScreeningDecision.INCLUDE
        ]

    def papers_for_screening(self, thesis_id: str) -> list[Paper]:
        return [
            p for p in self.papers_for_thesis(thesis_id)
            if p.screening_decision is ScreeningDecision.PENDING
        ]

    def screening_stats(self, thesis_id: str) -> dict[str, int]:
        stats = {decision.value: 0 for decision in ScreeningDecision}
        for paper in self.papers_for_thesis(thesis_id):
            stats[paper.screening_decision.value] += 1
        return stats

    def reading_progress(self, thesis_id: str) -> float:
        """Fraction of the thesis's papers marked read; 0.0 for an empty thesis."""
        papers = self.papers_for_thesis(thesis_id)
        if not papers:
            return 0.0
        read = sum(1 for p in papers if p.reading_status is ReadingStatus.READ)
        return read / len(papers)

    def connections_for_thesis(self, thesis_id: str) -> list[Connection]:
        return self._store.list_connections(thesis_id)

    def connections_for_paper(self, paper_id: str) -> list[Connection]:
        return [
            c for c in self._store.list_connections()
            if c.from_paper_id == paper_id or c.to_paper_id == paper_id
        ]

    def has_paper_with_doi(self, thesis_id: str, doi: str) -> bool:
        wanted = doi.strip().lower()
        return any(
            p.doi and p.doi.strip().lower() == wanted for p in self.papers_for_thesis(thesis_id)
        )

    def sections_for_thesis(self, thesis_id: str) -> list[ReviewSection]:
        return self._store.list_sections(thesis_id)

    def cluster_for_paper(self, paper_id: str) -> Optional[Cluster]:
        for cluster in self._store.list_clusters():
            if paper_id in cluster.paper_ids:
                return cluster
        return None

    def synthesis_matrix(self, thesis_id: str) -> SynthesisMatrix:
        themes = self._store.list_themes(thesis_id)
        papers = self.included_papers(thesis_id)
        matrix = {
            theme.id: {paper.id: paper.id in theme.paper_ids for paper in papers}
            for theme in themes
        }
        return SynthesisMatrix(themes=themes, papers=papers, matrix=matrix)

    def argument_clusters(self, thesis_id: str) -> list[ArgumentCluster]:
        """Group included papers by shared (case-insensitive) argument claims.

        Agreement is ``consensus`` when nobody disagrees, ``conflicting`` when
        disagreeing papers are at least as many as supporting ones, and
        ``partial`` otherwise. Uncertain assessments are not counted.
        """
        claims: dict[str, dict[str, list[str]]] = {}
        for paper in self.included_papers(thesis_id):
            for arg in paper.arguments:
                key = arg.claim.strip().lower()
                bucket = claims.setdefault(key, {"supporting": [], "contradicting": []})
                if arg.your_assessment in (None, Assessment.AGREE):
                    bucket["supporting"].append(paper.id)
                elif arg.your_assessment is Assessment.DISAGREE:
                    bucket["contradicting"].append(paper.id)

        clusters = []
        for claim, bucket in claims.items():
            paper_ids = list(dict.fromkeys(bucket["supporting"] + bucket["contradicting"]))
            if len(paper_ids) < 2:
                continue
            supporting, contradicting = len(bucket["supporting"]), len(bucket["contradicting"])
            agreement = "consensus"
            if contradicting and supporting:
                agreement = "conflicting" if contradicting >= supporting else "partial"
            elif contradicting:
                agreement = "conflicting"
            clusters.append(ArgumentCluster(claim=claim, paper_ids=paper_ids, agreement=agreement))
        return sorted(clusters, key=lambda c: len(c.paper_ids), reverse=True)
