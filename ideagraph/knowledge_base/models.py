"""Data models for the thesis knowledge base."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

NonBlankStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

CLUSTER_COLORS = (
    "#6366f1",
    "#10b981",
    "#f59e0b",
    "#ef4444",
    "#8b5cf6",
    "#06b6d4",
    "#ec4899",
    "#84cc16",
)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ThesisRole(str, enum.Enum):
    """How a paper relates to the thesis it belongs to."""

    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    METHOD = "method"
    BACKGROUND = "background"
    OTHER = "other"


class ReadingStatus(str, enum.Enum):
    UNREAD = "unread"
    READING = "reading"
    READ = "read"


class ScreeningDecision(str, enum.Enum):
    """Triage state of a paper in a systematic-review workflow."""

    PENDING = "pending"
    INCLUDE = "include"
    EXCLUDE = "exclude"


class ExclusionReason(str, enum.Enum):
    NOT_RELEVANT = "not-relevant"
    WRONG_STUDY_TYPE = "wrong-study-type"
    DUPLICATE = "duplicate"
    NO_FULL_TEXT = "no-full-text"
    WRONG_POPULATION = "wrong-population"
    WRONG_OUTCOME = "wrong-outcome"
    LOW_QUALITY = "low-quality"
    LANGUAGE = "language"
    DATE_RANGE = "date-range"
    OTHER = "other"


class ConnectionType(str, enum.Enum):
    """Directed relationship between two papers of the same thesis."""

    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    EXTENDS = "extends"
    USES_METHOD = "uses-method"
    SAME_TOPIC = "same-topic"
    REVIEWS = "reviews"
    REPLICATES = "replicates"
    CRITIQUES = "critiques"


class ArgumentStrength(str, enum.Enum):
    STRONG = "strong"
    MODERATE = "moderate"
    WEAK = "weak"


class Assessment(str, enum.Enum):
    AGREE = "agree"
    DISAGREE = "disagree"
    UNCERTAIN = "uncertain"


class EvidenceType(str, enum.Enum):
    EXPERIMENTAL = "experimental"
    COMPUTATIONAL = "computational"
    THEORETICAL = "theoretical"
    META_ANALYSIS = "meta-analysis"
    OTHER = "other"


class GapType(str, enum.Enum):
    KNOWLEDGE = "knowledge"
    METHODOLOGICAL = "methodological"
    POPULATION = "population"
    THEORETICAL = "theoretical"
    TEMPORAL = "temporal"
    GEOGRAPHIC = "geographic"
    CONTRADICTORY = "contradictory"


class GapPriority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EvidenceSource(str, enum.Enum):
    USER = "user"
    INFERRED = "inferred"


class PaperSource(str, enum.Enum):
    DOI = "doi"
    URL = "url"
    BIBTEX = "bibtex"
    ZOTERO = "zotero"
    MANUAL = "manual"
    SEARCH = "search"


class _Record(BaseModel):
    """Base for persisted records: camelCase on disk, immutable in memory."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


# --- Thesis ---


class Thesis(_Record):
    """Root research question owning a paper collection."""

    id: str
    title: NonBlankStr
    description: str = ""
    is_archived: bool = False
    paper_ids: list[str] = Field(default_factory=list)
    connection_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- Paper and its embedded synthesis ---


class Author(_Record):
    name: NonBlankStr
    orcid: Optional[str] = None


class Argument(_Record):
    """A claim made by a paper. Owned by the paper, no independent identity."""

    id: str = Field(default_factory=new_id)
    claim: NonBlankStr
    strength: Optional[ArgumentStrength] = None
    your_assessment: Optional[Assessment] = None


class Evidence(_Record):
    id: str = Field(default_factory=new_id)
    description: NonBlankStr
    type: EvidenceType = EvidenceType.OTHER
    linked_argument_id: Optional[str] = None  # weak reference into Paper.arguments


class Paper(_Record):
    """A literature item with user-authored synthesis and triage state."""

    id: str
    thesis_id: str
    title: NonBlankStr
    authors: list[Author] = Field(default_factory=list)
    year: Optional[int] = None
    doi: Optional[str] = None
    journal: Optional[str] = None
    abstract: Optional[str] = None
    url: Optional[str] = None

    # User synthesis
    takeaway: str = ""
    arguments: list[Argument] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)
    assessment: Optional[str] = None

    # Organization
    thesis_role: ThesisRole = ThesisRole.OTHER
    reading_status: ReadingStatus = ReadingStatus.UNREAD
    screening_decision: ScreeningDecision = ScreeningDecision.PENDING
    exclusion_reason: Optional[ExclusionReason] = None
    exclusion_note: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    source: PaperSource = PaperSource.MANUAL

    added_at: datetime = Field(default_factory=utcnow)
    read_at: Optional[datetime] = None
    screened_at: Optional[datetime] = None
    last_accessed_at: datetime = Field(default_factory=utcnow)


# --- Connection ---


class Connection(_Record):
    """A typed, directed edge between two papers of one thesis."""

    id: str
    thesis_id: str
    from_paper_id: str
    to_paper_id: str
    type: ConnectionType
    note: Optional[str] = None
    ai_suggested: bool = False
    ai_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    user_approved: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# --- Synthesis artifacts ---


class SynthesisTheme(_Record):
    id: str
    thesis_id: str
    name: NonBlankStr
    description: str = ""
    paper_ids: list[str] = Field(default_factory=list)
    related_argument_ids: list[str] = Field(default_factory=list)
    color: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ResearchGap(_Record):
    id: str
    thesis_id: str
    title: NonBlankStr
    description: str = ""
    type: GapType = GapType.KNOWLEDGE
    priority: GapPriority = GapPriority.MEDIUM
    evidence_source: EvidenceSource = EvidenceSource.USER
    related_paper_ids: list[str] = Field(default_factory=list)
    future_research_note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ReviewSection(_Record):
    id: str
    thesis_id: str
    title: NonBlankStr
    description: str = ""
    order: int = 0
    paper_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class EvidenceSynthesis(_Record):
    id: str
    thesis_id: str
    claim: NonBlankStr
    description: str = ""
    supporting_paper_ids: list[str] = Field(default_factory=list)
    contradicting_paper_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class Cluster(_Record):
    id: str
    thesis_id: str
    name: NonBlankStr
    paper_ids: list[str] = Field(default_factory=list)
    color: str = CLUSTER_COLORS[0]
    is_collapsed: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# --- Application state ---


class UserSettings(_Record):
    default_view: str = "list"  # list, graph
    graph_layout: str = "force"  # force, hierarchical, timeline
    theme: str = "system"  # light, dark, system
    auto_save: bool = True
    show_ai_suggestions: bool = True


class StoreSnapshot(_Record):
    """Full persisted state of the knowledge base at one schema version."""

    schema_version: int = 0
    applied_migrations: list[int] = Field(default_factory=list)
    migrated_at: Optional[datetime] = None
    theses: list[Thesis] = Field(default_factory=list)
    papers: list[Paper] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    themes: list[SynthesisTheme] = Field(default_factory=list)
    gaps: list[ResearchGap] = Field(default_factory=list)
    sections: list[ReviewSection] = Field(default_factory=list)
    evidence_syntheses: list[EvidenceSynthesis] = Field(default_factory=list)
    clusters: list[Cluster] = Field(default_factory=list)
    active_thesis_id: Optional[str] = None
    settings: UserSettings = Field(default_factory=UserSettings)

    def to_raw(self) -> dict:
        """Plain JSON-compatible dict with the on-disk (camelCase) keys."""
        return self.model_dump(mode="json", by_alias=True)


# Collection key in StoreSnapshot -> entity model, in cascade-delete order.
COLLECTIONS: dict[str, type[_Record]] = {
    "connections": Connection,
    "themes": SynthesisTheme,
    "gaps": ResearchGap,
    "sections": ReviewSection,
    "evidence_syntheses": EvidenceSynthesis,
    "clusters": Cluster,
    "papers": Paper,
    "theses": Thesis,
}
