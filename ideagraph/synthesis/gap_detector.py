"""Heuristic research-gap detection over a thesis's included papers.

Detected gaps are proposals only: they get fresh ids but are not stored.
Persist the ones worth keeping with ``EntityStore.create_gap``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ideagraph.knowledge_base.models import (
    ArgumentStrength,
    ConnectionType,
    EvidenceSource,
    EvidenceType,
    GapPriority,
    GapType,
    ResearchGap,
    new_id,
)
from ideagraph.knowledge_base.store import EntityStore

logger = logging.getLogger(__name__)

# Evidence types a balanced literature is expected to cover.
EXPECTED_EVIDENCE = (
    EvidenceType.EXPERIMENTAL,
    EvidenceType.COMPUTATIONAL,
    EvidenceType.THEORETICAL,
    EvidenceType.META_ANALYSIS,
)

OLD_PAPER_YEARS = 5
RECENT_PAPER_YEARS = 3
MIN_RECENT_PAPERS = 3
MIN_PAPERS_FOR_METHOD_GAP = 5
MIN_WEAK_ARGUMENTS = 3


def _gap(thesis_id: str, gap_type: GapType, priority: GapPriority, title: str,
         description: str, related: list[str]) -> ResearchGap:
    return ResearchGap(
        id=new_id(),
        thesis_id=thesis_id,
        title=title,
        description=description,
        type=gap_type,
        priority=priority,
        evidence_source=EvidenceSource.INFERRED,
        related_paper_ids=related,
    )


def detect_gaps(
    store: EntityStore,
    thesis_id: str,
    current_year: Optional[int] = None,
) -> list[ResearchGap]:
    """Propose contradictory, temporal, methodological and knowledge gaps.

    A gap type already recorded for the thesis is never proposed again.
    Returns an empty list for an unknown thesis.
    """
    index = store.index
    papers = index.included_papers(thesis_id)
    connections = index.connections_for_thesis(thesis_id)
    existing = {g.type for g in store.list_gaps(thesis_id)}
    year = current_year or datetime.now().year
    detected: list[ResearchGap] = []

    contradictions = [c for c in connections if c.type is ConnectionType.CONTRADICTS]
    if contradictions and GapType.CONTRADICTORY not in existing:
        related = list(dict.fromkeys(
            pid for c in contradictions for pid in (c.from_paper_id, c.to_paper_id)
        ))
        detected.append(_gap(
            thesis_id,
            GapType.CONTRADICTORY,
            GapPriority.HIGH,
            "Conflicting findings need resolution",
            f"{len(contradictions)} contradictory relationships identified between papers. "
            "These conflicting findings suggest an opportunity for resolution through "
            "meta-analysis or new research.",
            related,
        ))

    old = [p for p in papers if p.year and p.year < year - OLD_PAPER_YEARS]
    recent = [p for p in papers if p.year and p.year >= year - RECENT_PAPER_YEARS]
    if papers and len(old) > len(papers) * 0.5 and len(recent) < MIN_RECENT_PAPERS \
            and GapType.TEMPORAL not in existing:
        detected.append(_gap(
            thesis_id,
            GapType.TEMPORAL,
            GapPriority.MEDIUM,
            "Limited recent research",
            f"More than half of the papers are over {OLD_PAPER_YEARS} years old, with few "
            "recent publications. Consider searching for more current literature.",
            [p.id for p in old],
        ))

    covered = {ev.type for p in papers for ev in p.evidence}
    missing = [t.value for t in EXPECTED_EVIDENCE if t not in covered]
    if len(missing) >= 2 and len(papers) >= MIN_PAPERS_FOR_METHOD_GAP \
            and GapType.METHODOLOGICAL not in existing:
        joined = " and ".join(missing)
        detected.append(_gap(
            thesis_id,
            GapType.METHODOLOGICAL,
            GapPriority.MEDIUM,
            f"Missing {joined} evidence",
            f"The literature lacks {joined} studies. This methodological gap could be "
            "addressed with future research.",
            [],
        ))

    weak = [
        (p.id, a) for p in papers for a in p.arguments if a.strength is ArgumentStrength.WEAK
    ]
    if len(weak) >= MIN_WEAK_ARGUMENTS and GapType.KNOWLEDGE not in existing:
        detected.append(_gap(
            thesis_id,
            GapType.KNOWLEDGE,
            GapPriority.HIGH,
            "Weak evidence for key claims",
            f"{len(weak)} arguments across papers have been marked as weakly supported. "
            "These represent potential knowledge gaps requiring stronger empirical evidence.",
            list(dict.fromkeys(pid for pid, _ in weak)),
        ))

    logger.debug("Detected %d gap candidates for thesis %s", len(detected), thesis_id)
    return detected
