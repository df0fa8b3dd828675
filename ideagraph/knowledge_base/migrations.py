"""Versioned, forward-only migrations for the stored knowledge-base blob.

Each migration is a transform from the raw state at version ``n - 1`` to
the raw state at version ``n``. The engine applies pending migrations in
ascending order on working copies, stops at the first failure, and persists
the furthest state it reached.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from .errors import IdeaGraphError, MigrationError, PersistenceError
from .models import ReadingStatus, ScreeningDecision, ThesisRole
from .persistence import PersistenceAdapter

logger = logging.getLogger(__name__)

RawState = dict[str, Any]


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    description: str
    transform: Callable[[RawState], RawState]


@dataclass
class MigrationResult:
    """Outcome of one ensure_migrated() run."""

    success: bool
    from_version: int
    to_version: int
    migrations_applied: list[int] = field(default_factory=list)
    errors: list[IdeaGraphError] = field(default_factory=list)
    state: RawState = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "fromVersion": self.from_version,
            "toVersion": self.to_version,
            "migrationsApplied": list(self.migrations_applied),
            "errors": [str(e) for e in self.errors],
        }


def read_stored_version(raw: Any) -> int:
    """Schema version recorded in a raw blob; 0 when absent or corrupt."""
    if not isinstance(raw, dict):
        return 0
    version = raw.get("schemaVersion")
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        return 0
    return version


# --- Migration definitions ---


_LEGACY_COLLECTIONS = (
    "theses",
    "papers",
    "connections",
    "reviewSections",
    "synthesisThemes",
    "researchGaps",
    "evidenceSyntheses",
    "clusters",
)

_DEFAULT_SETTINGS = {
    "defaultView": "list",
    "graphLayout": "force",
    "theme": "system",
    "autoSave": True,
    "showAiSuggestions": True,
}


def _initial_schema(state: RawState) -> RawState:
    settings = state.get("settings")
    return {
        **state,
        **{name: state.get(name) or [] for name in _LEGACY_COLLECTIONS},
        "activeThesisId": state.get("activeThesisId"),
        "settings": {**_DEFAULT_SETTINGS, **(settings if isinstance(settings, dict) else {})},
    }


_RENAMES = {
    "synthesisThemes": "themes",
    "researchGaps": "gaps",
    "reviewSections": "sections",
}


def _rename_synthesis_collections(state: RawState) -> RawState:
    out = dict(state)
    for old, new in _RENAMES.items():
        legacy = out.pop(old, None) or []
        current = out.get(new) or []
        seen = {item.get("id") for item in current if isinstance(item, dict)}
        out[new] = list(current) + [
            item for item in legacy if isinstance(item, dict) and item.get("id") not in seen
        ]
    return out


_LEGACY_READING_STATUS = {
    "screening": ReadingStatus.UNREAD.value,
    "to-read": ReadingStatus.UNREAD.value,
    "to-revisit": ReadingStatus.READ.value,
}
_LEGACY_SCREENING = {"maybe": ScreeningDecision.PENDING.value}


def _normalize_status_enums(state: RawState) -> RawState:
    reading_values = {s.value for s in ReadingStatus}
    screening_values = {s.value for s in ScreeningDecision}
    role_values = {r.value for r in ThesisRole}

    papers = []
    for paper in state.get("papers") or []:
        if not isinstance(paper, dict):
            continue
        status = paper.get("readingStatus")
        status = _LEGACY_READING_STATUS.get(status, status)
        if status not in reading_values:
            status = ReadingStatus.UNREAD.value
        decision = paper.get("screeningDecision")
        decision = _LEGACY_SCREENING.get(decision, decision)
        if decision not in screening_values:
            decision = ScreeningDecision.PENDING.value
        role = paper.get("thesisRole")
        if role not in role_values:
            role = ThesisRole.OTHER.value
        papers.append(
            {
                **paper,
                "readingStatus": status,
                "screeningDecision": decision,
                "thesisRole": role,
                "arguments": paper.get("arguments") or [],
                "evidence": paper.get("evidence") or [],
                "tags": paper.get("tags") or [],
            }
        )
    return {**state, "papers": papers}


def _unique(ids: Any, allowed: set[str]) -> list[str]:
    if not isinstance(ids, list):
        return []
    out: list[str] = []
    for item in ids:
        if item in allowed and item not in out:
            out.append(item)
    return out


def _rebuild_back_references(state: RawState) -> RawState:
    theses = [t for t in state.get("theses") or [] if isinstance(t, dict) and t.get("id")]
    thesis_ids = {t["id"] for t in theses}

    papers = [
        p for p in state.get("papers") or []
        if isinstance(p, dict) and p.get("id") and p.get("thesisId") in thesis_ids
    ]
    paper_thesis = {p["id"]: p["thesisId"] for p in papers}
    papers_by_thesis: dict[str, list[str]] = {tid: [] for tid in thesis_ids}
    args_by_thesis: dict[str, set[str]] = {tid: set() for tid in thesis_ids}
    fixed_papers = []
    for paper in papers:
        papers_by_thesis[paper["thesisId"]].append(paper["id"])
        arg_ids = {a.get("id") for a in paper.get("arguments") or [] if isinstance(a, dict)}
        args_by_thesis[paper["thesisId"]] |= arg_ids
        evidence = []
        for ev in paper.get("evidence") or []:
            if not isinstance(ev, dict):
                continue
            if ev.get("linkedArgumentId") not in arg_ids:
                ev = {**ev, "linkedArgumentId": None}
            evidence.append(ev)
        fixed_papers.append({**paper, "evidence": evidence})

    connections = [
        c for c in state.get("connections") or []
        if isinstance(c, dict)
        and c.get("thesisId") in thesis_ids
        and c.get("fromPaperId") != c.get("toPaperId")
        and paper_thesis.get(c.get("fromPaperId")) == c.get("thesisId")
        and paper_thesis.get(c.get("toPaperId")) == c.get("thesisId")
    ]
    connections_by_thesis: dict[str, list[str]] = {tid: [] for tid in thesis_ids}
    for conn in connections:
        connections_by_thesis[conn["thesisId"]].append(conn["id"])

    def scoped(collection: str, paper_fields: Sequence[str]) -> list[dict]:
        out = []
        for item in state.get(collection) or []:
            if not isinstance(item, dict) or item.get("thesisId") not in thesis_ids:
                continue
            allowed = set(papers_by_thesis[item["thesisId"]])
            fixed = {**item, **{f: _unique(item.get(f), allowed) for f in paper_fields}}
            if collection == "themes":
                fixed["relatedArgumentIds"] = _unique(
                    item.get("relatedArgumentIds"), args_by_thesis[item["thesisId"]]
                )
            out.append(fixed)
        return out

    rebuilt_theses = []
    for thesis in theses:
        owned = papers_by_thesis[thesis["id"]]
        ordered = _unique(thesis.get("paperIds"), set(owned))
        ordered += [pid for pid in owned if pid not in ordered]
        owned_conns = connections_by_thesis[thesis["id"]]
        ordered_conns = _unique(thesis.get("connectionIds"), set(owned_conns))
        ordered_conns += [cid for cid in owned_conns if cid not in ordered_conns]
        rebuilt_theses.append({**thesis, "paperIds": ordered, "connectionIds": ordered_conns})

    active = state.get("activeThesisId")
    return {
        **state,
        "theses": rebuilt_theses,
        "papers": fixed_papers,
        "connections": connections,
        "themes": scoped("themes", ("paperIds",)),
        "gaps": scoped("gaps", ("relatedPaperIds",)),
        "sections": scoped("sections", ("paperIds",)),
        "evidenceSyntheses": scoped(
            "evidenceSyntheses", ("supportingPaperIds", "contradictingPaperIds")
        ),
        "clusters": scoped("clusters", ("paperIds",)),
        "activeThesisId": active if active in thesis_ids else None,
    }


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        name="initial-schema",
        description="Ensure every collection, the active thesis and default settings exist",
        transform=_initial_schema,
    ),
    Migration(
        version=2,
        name="rename-synthesis-collections",
        description="Store synthesis themes, research gaps and review sections as themes/gaps/sections",
        transform=_rename_synthesis_collections,
    ),
    Migration(
        version=3,
        name="normalize-status-enums",
        description="Map legacy reading statuses and screening decisions onto the closed enums",
        transform=_normalize_status_enums,
    ),
    Migration(
        version=4,
        name="rebuild-back-references",
        description="Recompute thesis back-references and drop orphaned or dangling references",
        transform=_rebuild_back_references,
    ),
)

CURRENT_VERSION = MIGRATIONS[-1].version


# --- Engine ---


class MigrationEngine:
    """Walks a migration registry from the stored version to the newest one."""

    def __init__(
        self,
        adapter: Optional[PersistenceAdapter] = None,
        migrations: Sequence[Migration] = MIGRATIONS,
    ):
        versions = [m.version for m in migrations]
        if any(v < 1 for v in versions):
            raise ValueError("Migration versions must be positive integers")
        if any(b <= a for a, b in zip(versions, versions[1:])):
            raise ValueError(f"Migration versions must be strictly increasing: {versions}")
        self.adapter = adapter
        self.migrations = tuple(migrations)
        self._running = False

    @property
    def latest_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    def pending(self, raw: Any) -> list[Migration]:
        """Migrations newer than ``raw``, which is a raw blob or a bare version number."""
        stored = raw if isinstance(raw, int) and not isinstance(raw, bool) else read_stored_version(raw)
        return [m for m in self.migrations if m.version > stored]

    def needs_migration(self, raw: Any) -> bool:
        return bool(self.pending(raw))

    def ensure_migrated(self, raw: Any, stored_version: Optional[int] = None) -> MigrationResult:
        """Apply every pending migration to a copy of ``raw``.

        The input is never modified. On the first failing transform the loop
        stops; migrations applied before it are kept and persisted. The
        furthest state reached is returned as ``result.state``.

        ``stored_version`` is the version the storage layer tagged the blob
        with. When given it wins over the ``schemaVersion`` inside the payload.
        """
        if self._running:
            raise RuntimeError("ensure_migrated() is not re-entrant")
        self._running = True
        try:
            return self._run(raw, stored_version)
        finally:
            self._running = False

    def _run(self, raw: Any, stored_version: Optional[int] = None) -> MigrationResult:
        working: RawState = copy.deepcopy(raw) if isinstance(raw, dict) else {}
        stored = read_stored_version(raw)
        if stored_version is not None and stored_version != stored:
            if isinstance(raw, dict):
                logger.warning(
                    "Payload reports schema v%d but storage tag says v%d; using the tag",
                    stored,
                    stored_version,
                )
                working["schemaVersion"] = stored_version
            stored = stored_version
        result = MigrationResult(success=True, from_version=stored, to_version=stored)

        if stored > self.latest_version:
            logger.warning(
                "Stored schema v%d is newer than this application (v%d); leaving it untouched",
                stored,
                self.latest_version,
            )
        pending = self.pending(stored)
        if not pending:
            logger.debug("Schema already at v%d, no migrations needed", stored)
            result.state = working
            return result

        logger.info("Running migrations from v%d to v%d", stored, pending[-1].version)
        for migration in pending:
            candidate = copy.deepcopy(working)
            try:
                migrated = migration.transform(candidate)
                if not isinstance(migrated, dict):
                    raise TypeError(f"transform returned {type(migrated).__name__}, expected dict")
            except Exception as e:
                error = MigrationError(migration.version, migration.name, str(e))
                error.__cause__ = e
                logger.error("%s", error)
                result.errors.append(error)
                result.success = False
                break

            applied = working.get("appliedMigrations")
            migrated["appliedMigrations"] = [
                *(applied if isinstance(applied, list) else []),
                migration.version,
            ]
            migrated["schemaVersion"] = migration.version
            migrated["migratedAt"] = datetime.now(timezone.utc).isoformat()
            working = migrated
            result.migrations_applied.append(migration.version)
            result.to_version = migration.version
            logger.info("Applied migration %d: %s", migration.version, migration.name)

        result.state = working
        if result.migrations_applied and self.adapter is not None:
            try:
                self.adapter.save(working)
            except PersistenceError as e:
                logger.error("Failed to save migrated state: %s", e)
                result.errors.append(e)
                result.success = False
        return result
