"""In-memory entity store with referential integrity and snapshot persistence."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence, TypeVar

from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import NotFoundError, PersistenceError, ValidationError
from .migrations import MIGRATIONS, Migration, MigrationEngine, MigrationResult
from .models import (
    CLUSTER_COLORS,
    COLLECTIONS,
    Cluster,
    Connection,
    EvidenceSynthesis,
    ExclusionReason,
    Paper,
    ReadingStatus,
    ResearchGap,
    ReviewSection,
    ScreeningDecision,
    StoreSnapshot,
    SynthesisTheme,
    Thesis,
    UserSettings,
    new_id,
    utcnow,
)
from .persistence import PersistenceAdapter, empty_state
from .stats import RelationshipIndex

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Fields on thesis-scoped records that list paper ids.
PAPER_REF_FIELDS: dict[str, tuple[str, ...]] = {
    "themes": ("paper_ids",),
    "gaps": ("related_paper_ids",),
    "sections": ("paper_ids",),
    "evidence_syntheses": ("supporting_paper_ids", "contradicting_paper_ids"),
    "clusters": ("paper_ids",),
}

_KIND_NAMES = {
    "theses": "Thesis",
    "papers": "Paper",
    "connections": "Connection",
    "themes": "SynthesisTheme",
    "gaps": "ResearchGap",
    "sections": "ReviewSection",
    "evidence_syntheses": "EvidenceSynthesis",
    "clusters": "Cluster",
}

# Fields the store assigns itself; callers may not set them on create.
_MANAGED_ON_CREATE: dict[str, frozenset[str]] = {
    "theses": frozenset({"id", "paper_ids", "connection_ids", "created_at", "updated_at"}),
    "papers": frozenset({"id", "added_at", "last_accessed_at"}),
}
_MANAGED_DEFAULT = frozenset({"id", "created_at"})

# Fields that can never change after creation.
_IMMUTABLE = frozenset({"id", "thesis_id", "created_at", "added_at"})
# Fields kept in sync by the store itself.
_DERIVED: dict[str, frozenset[str]] = {
    "theses": frozenset({"paper_ids", "connection_ids", "updated_at"}),
    "papers": frozenset({"last_accessed_at"}),
}


@dataclass
class _Tables:
    """One consistent version of every collection, keyed by id in insertion order."""

    collections: dict[str, dict[str, Any]] = field(
        default_factory=lambda: {name: {} for name in COLLECTIONS}
    )
    active_thesis_id: Optional[str] = None
    settings: UserSettings = field(default_factory=UserSettings)

    @classmethod
    def from_snapshot(cls, snapshot: StoreSnapshot) -> _Tables:
        tables = cls(active_thesis_id=snapshot.active_thesis_id, settings=snapshot.settings)
        for name in COLLECTIONS:
            tables.collections[name] = {record.id: record for record in getattr(snapshot, name)}
        return tables

    def copy(self) -> _Tables:
        return _Tables(
            collections={name: dict(records) for name, records in self.collections.items()},
            active_thesis_id=self.active_thesis_id,
            settings=self.settings,
        )

    def get(self, collection: str, record_id: Optional[str]) -> Any:
        if record_id is None:
            return None
        return self.collections[collection].get(record_id)

    def values(self, collection: str) -> list[Any]:
        return list(self.collections[collection].values())

    def put(self, collection: str, record: Any) -> None:
        self.collections[collection][record.id] = record

    def remove(self, collection: str, record_id: str) -> None:
        self.collections[collection].pop(record_id, None)

    def has_id(self, record_id: str) -> bool:
        return any(record_id in records for records in self.collections.values())


def _pydantic_message(exc: PydanticValidationError) -> tuple[str, Optional[str]]:
    parts = []
    first_field = None
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        first_field = first_field or loc or None
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
    return "; ".join(parts), first_field


def _build(model_cls: type[R], data: Mapping[str, Any]) -> R:
    try:
        return model_cls.model_validate(dict(data))
    except PydanticValidationError as e:
        message, field_name = _pydantic_message(e)
        raise ValidationError(f"Invalid {model_cls.__name__}: {message}", field=field_name) from e


def _normalize(model_cls: type, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Map camelCase or snake_case payload keys onto model field names."""
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{model_cls.__name__} payload must be a mapping")
    names = {}
    for name in model_cls.model_fields:
        names[name] = name
        names[to_camel(name)] = name
    out: dict[str, Any] = {}
    for key, value in payload.items():
        if key not in names:
            raise ValidationError(f"Unknown field {key!r} for {model_cls.__name__}", field=key)
        out[names[key]] = value
    return out


def _dedupe(ids: Iterable[str]) -> list[str]:
    out: list[str] = []
    for item in ids:
        if item not in out:
            out.append(item)
    return out


class EntityStore:
    """Sole authority for entity lifecycle and referential integrity.

    Construct with a PersistenceAdapter and call ``init()`` once before use.
    Every successful mutation writes the full snapshot through the adapter
    before returning; a failed mutation leaves both memory and storage
    untouched.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        migrations: Sequence[Migration] = MIGRATIONS,
    ):
        self.adapter = adapter
        self.engine = MigrationEngine(adapter, migrations)
        self.index = RelationshipIndex(self)
        self.migration_result: Optional[MigrationResult] = None
        self.read_only = False
        self._tables = _Tables()
        self._schema_version = self.engine.latest_version
        self._applied_migrations: list[int] = []
        self._migrated_at: Optional[datetime] = None

    # --- Startup ---

    def init(self, read_only_on_failure: bool = True) -> MigrationResult:
        """Load, migrate and hydrate. Never raises for bad stored data.

        The schema version is read from the storage key tag before the payload,
        so a current store skips the migration pass. Unreadable or unusable
        stored state is quarantined and replaced by an empty, schema-current
        store.

        When a migration fails the store hydrates the furthest state reached.
        With ``read_only_on_failure`` (the default) it then refuses writes for
        the session; pass False to keep working on the partially migrated
        data. A stored schema newer than this release is always read-only.
        """
        tagged: Optional[int] = None
        try:
            tagged = self.adapter.stored_version()
            if tagged is not None and not self.engine.needs_migration(tagged):
                logger.debug("Storage tag reports schema v%d, no migration pass needed", tagged)
            raw = self.adapter.load()
        except PersistenceError as e:
            logger.warning("Stored state unreadable, starting with an empty store: %s", e)
            result = MigrationResult(
                success=False,
                from_version=tagged or 0,
                to_version=self.engine.latest_version,
                errors=[e],
            )
            self._fall_back_to_empty()
            self.migration_result = result
            return result

        result = self.engine.ensure_migrated(raw, stored_version=tagged)
        try:
            snapshot = StoreSnapshot.model_validate(result.state)
        except PydanticValidationError as e:
            message, _ = _pydantic_message(e)
            error = PersistenceError(f"Stored state does not match the schema: {message}")
            error.__cause__ = e
            logger.warning("%s; starting with an empty store", error)
            result.errors.append(error)
            result.success = False
            self._fall_back_to_empty()
            self.migration_result = result
            return result

        self._hydrate(snapshot)
        newer = result.from_version > self.engine.latest_version
        self.read_only = newer or (read_only_on_failure and not result.success)
        if self.read_only:
            logger.warning("Store opened read-only at schema v%d", result.to_version)
        for problem in self.integrity_report():
            logger.warning("Integrity: %s", problem)
        self.migration_result = result
        return result

    def _fall_back_to_empty(self) -> None:
        try:
            self.adapter.quarantine()
        except PersistenceError as e:
            logger.error("Could not quarantine stored state: %s", e)
        self._hydrate(StoreSnapshot.model_validate(empty_state(self.engine.latest_version)))
        self.read_only = False

    def _hydrate(self, snapshot: StoreSnapshot) -> None:
        self._tables = _Tables.from_snapshot(snapshot)
        self._schema_version = snapshot.schema_version
        self._applied_migrations = list(snapshot.applied_migrations)
        self._migrated_at = snapshot.migrated_at

    # --- Snapshot / transactions ---

    def _snapshot_of(self, tables: _Tables) -> StoreSnapshot:
        return StoreSnapshot(
            schema_version=self._schema_version,
            applied_migrations=list(self._applied_migrations),
            migrated_at=self._migrated_at,
            active_thesis_id=tables.active_thesis_id,
            settings=tables.settings,
            **{name: tables.values(name) for name in COLLECTIONS},
        )

    def snapshot(self) -> StoreSnapshot:
        return self._snapshot_of(self._tables).model_copy(deep=True)

    @contextmanager
    def _transaction(self) -> Iterator[_Tables]:
        """Stage changes on a copy; persist, then swap it in."""
        self._check_writable()
        staged = self._tables.copy()
        yield staged
        self.adapter.save(self._snapshot_of(staged).to_raw())
        self._tables = staged

    def _check_writable(self) -> None:
        if self.read_only:
            raise PersistenceError("Store is read-only: stored schema could not be brought up to date")

    def _fresh_id(self, tables: _Tables) -> str:
        record_id = new_id()
        while tables.has_id(record_id):
            record_id = new_id()
        return record_id

    # --- Validation helpers ---

    def _require(self, tables: _Tables, collection: str, record_id: str) -> Any:
        record = tables.get(collection, record_id)
        if record is None:
            raise NotFoundError(_KIND_NAMES[collection], record_id)
        return record

    def _require_thesis(self, tables: _Tables, thesis_id: str) -> Thesis:
        thesis = tables.get("theses", thesis_id)
        if thesis is None:
            raise ValidationError(f"Thesis does not exist: {thesis_id}", field="thesis_id")
        return thesis

    def _check_paper_refs(self, tables: _Tables, thesis_id: str, ids: Iterable[str], field_name: str) -> None:
        for paper_id in ids:
            paper = tables.get("papers", paper_id)
            if paper is None:
                raise ValidationError(f"Paper does not exist: {paper_id}", field=field_name)
            if paper.thesis_id != thesis_id:
                raise ValidationError(
                    f"Paper {paper_id} belongs to another thesis", field=field_name
                )

    def _thesis_argument_ids(
        self, tables: _Tables, thesis_id: str, exclude_paper: Optional[str] = None
    ) -> set[str]:
        return {
            arg.id
            for paper in tables.values("papers")
            if paper.thesis_id == thesis_id and paper.id != exclude_paper
            for arg in paper.arguments
        }

    def _validate(self, tables: _Tables, collection: str, record: Any) -> Any:
        """Check foreign keys of ``record``; return it with list references deduplicated."""
        if collection == "theses":
            return record
        self._require_thesis(tables, record.thesis_id)

        if collection == "papers":
            arg_ids = [a.id for a in record.arguments]
            if len(set(arg_ids)) != len(arg_ids):
                raise ValidationError("Argument ids must be unique within a paper", field="arguments")
            taken = set(arg_ids) & self._thesis_argument_ids(tables, record.thesis_id, exclude_paper=record.id)
            if taken:
                raise ValidationError(
                    f"Argument ids already used by another paper in this thesis: {sorted(taken)}",
                    field="arguments",
                )
            ev_ids = [e.id for e in record.evidence]
            if len(set(ev_ids)) != len(ev_ids):
                raise ValidationError("Evidence ids must be unique within a paper", field="evidence")
            for ev in record.evidence:
                if ev.linked_argument_id is not None and ev.linked_argument_id not in arg_ids:
                    raise ValidationError(
                        f"Evidence {ev.id} links to unknown argument {ev.linked_argument_id}",
                        field="evidence",
                    )
            return record.model_copy(update={"tags": _dedupe(record.tags)})

        if collection == "connections":
            if record.from_paper_id == record.to_paper_id:
                raise ValidationError("A connection cannot link a paper to itself", field="to_paper_id")
            self._check_paper_refs(tables, record.thesis_id, [record.from_paper_id], "from_paper_id")
            self._check_paper_refs(tables, record.thesis_id, [record.to_paper_id], "to_paper_id")
            return record

        updates = {}
        for field_name in PAPER_REF_FIELDS[collection]:
            ids = _dedupe(getattr(record, field_name))
            self._check_paper_refs(tables, record.thesis_id, ids, field_name)
            updates[field_name] = ids
        if collection == "themes":
            known = self._thesis_argument_ids(tables, record.thesis_id)
            related = _dedupe(record.related_argument_ids)
            for arg_id in related:
                if arg_id not in known:
                    raise ValidationError(
                        f"Argument does not exist in this thesis: {arg_id}",
                        field="related_argument_ids",
                    )
            updates["related_argument_ids"] = related
        if collection == "evidence_syntheses":
            overlap = set(updates["supporting_paper_ids"]) & set(updates["contradicting_paper_ids"])
            if overlap:
                raise ValidationError(
                    f"Papers cannot both support and contradict a claim: {sorted(overlap)}",
                    field="contradicting_paper_ids",
                )
        return record.model_copy(update=updates)

    # --- Generic CRUD ---

    def _create(
        self,
        collection: str,
        payload: Mapping[str, Any],
        defaults: Optional[Callable[[_Tables, dict], dict]] = None,
    ) -> Any:
        model_cls = COLLECTIONS[collection]
        data = _normalize(model_cls, payload)
        managed = _MANAGED_ON_CREATE.get(collection, _MANAGED_DEFAULT) & data.keys()
        if managed:
            raise ValidationError(
                f"{', '.join(sorted(managed))} assigned by the store", field=sorted(managed)[0]
            )
        with self._transaction() as tx:
            merged = {**(defaults(tx, data) if defaults else {}), **data}
            record = _build(model_cls, {**merged, "id": self._fresh_id(tx)})
            record = self._validate(tx, collection, record)
            tx.put(collection, record)
            if collection in ("papers", "connections"):
                self._link_to_thesis(tx, collection, record)
        logger.debug("Created %s %s", _KIND_NAMES[collection], record.id)
        return record.model_copy(deep=True)

    def _link_to_thesis(self, tx: _Tables, collection: str, record: Any) -> None:
        thesis = tx.get("theses", record.thesis_id)
        field_name = "paper_ids" if collection == "papers" else "connection_ids"
        tx.put(
            "theses",
            thesis.model_copy(
                update={field_name: [*getattr(thesis, field_name), record.id], "updated_at": utcnow()}
            ),
        )

    def _update(self, collection: str, record_id: str, patch: Mapping[str, Any]) -> Any:
        model_cls = COLLECTIONS[collection]
        fields = _normalize(model_cls, patch)
        with self._transaction() as tx:
            current = self._require(tx, collection, record_id)
            # Compare parsed values so an echoed record passes unchanged fields back cleanly.
            candidate = _build(model_cls, {**current.model_dump(), **fields})
            for name in sorted(_IMMUTABLE & fields.keys()):
                if getattr(candidate, name) != getattr(current, name):
                    raise ValidationError(f"{name} cannot be changed after creation", field=name)
            derived = _DERIVED.get(collection, frozenset()) & fields.keys()
            changed = sorted(n for n in derived if getattr(candidate, n) != getattr(current, n))
            if changed:
                raise ValidationError(f"{', '.join(changed)} maintained by the store", field=changed[0])
            for name in _IMMUTABLE | derived:
                fields.pop(name, None)
            stamps: dict[str, Any] = {}
            if collection == "theses":
                stamps["updated_at"] = utcnow()
            if collection == "papers":
                stamps["last_accessed_at"] = utcnow()
            merged = {**current.model_dump(), **fields, **stamps}
            removed_args: set[str] = set()
            if collection == "papers" and "arguments" in fields:
                new_paper = _build(model_cls, merged)
                kept = {a.id for a in new_paper.arguments}
                removed_args = {a.id for a in current.arguments} - kept
                if "evidence" not in fields:
                    merged["evidence"] = [
                        {**ev.model_dump(), "linked_argument_id": None}
                        if ev.linked_argument_id not in kept
                        else ev.model_dump()
                        for ev in current.evidence
                    ]
            updated = self._validate(tx, collection, _build(model_cls, merged))
            tx.put(collection, updated)
            if removed_args:
                self._strip_references(tx, set(), removed_args)
        logger.debug("Updated %s %s", _KIND_NAMES[collection], record_id)
        return updated.model_copy(deep=True)

    def _strip_references(self, tx: _Tables, paper_ids: set[str], argument_ids: set[str]) -> None:
        """Remove dangling paper/argument ids from every list that mentions them.

        An argument id is only dropped from a theme when no remaining paper of
        that theme's thesis still carries it.
        """
        for conn in tx.values("connections"):
            if conn.from_paper_id in paper_ids or conn.to_paper_id in paper_ids:
                tx.remove("connections", conn.id)
        removed_conns = {
            cid for thesis in tx.values("theses") for cid in thesis.connection_ids
            if tx.get("connections", cid) is None
        }
        for thesis in tx.values("theses"):
            paper_list = [pid for pid in thesis.paper_ids if pid not in paper_ids]
            conn_list = [cid for cid in thesis.connection_ids if cid not in removed_conns]
            if paper_list != thesis.paper_ids or conn_list != thesis.connection_ids:
                tx.put(
                    "theses",
                    thesis.model_copy(
                        update={"paper_ids": paper_list, "connection_ids": conn_list, "updated_at": utcnow()}
                    ),
                )
        for collection, field_names in PAPER_REF_FIELDS.items():
            for record in tx.values(collection):
                updates = {}
                for field_name in field_names:
                    ids = getattr(record, field_name)
                    kept = [i for i in ids if i not in paper_ids]
                    if kept != ids:
                        updates[field_name] = kept
                if collection == "themes" and argument_ids:
                    gone = argument_ids - self._thesis_argument_ids(tx, record.thesis_id)
                    related = [a for a in record.related_argument_ids if a not in gone]
                    if related != record.related_argument_ids:
                        updates["related_argument_ids"] = related
                if updates:
                    tx.put(collection, record.model_copy(update=updates))

    def _delete(self, collection: str, record_id: str) -> None:
        with self._transaction() as tx:
            self._require(tx, collection, record_id)
            if collection == "theses":
                self._cascade_thesis(tx, record_id)
            elif collection == "papers":
                self._remove_papers(tx, [record_id])
            else:
                tx.remove(collection, record_id)
                if collection == "connections":
                    self._strip_references(tx, set(), set())
        logger.debug("Deleted %s %s", _KIND_NAMES[collection], record_id)

    def _cascade_thesis(self, tx: _Tables, thesis_id: str) -> None:
        for collection in COLLECTIONS:
            if collection == "theses":
                continue
            for record in tx.values(collection):
                if record.thesis_id == thesis_id:
                    tx.remove(collection, record.id)
        tx.remove("theses", thesis_id)
        if tx.active_thesis_id == thesis_id:
            tx.active_thesis_id = None

    def _remove_papers(self, tx: _Tables, paper_ids: Sequence[str]) -> None:
        argument_ids = set()
        for paper_id in paper_ids:
            paper = tx.get("papers", paper_id)
            argument_ids |= {a.id for a in paper.arguments}
            tx.remove("papers", paper_id)
        self._strip_references(tx, set(paper_ids), argument_ids)

    def _get(self, collection: str, record_id: str) -> Any:
        record = self._tables.get(collection, record_id)
        return None if record is None else record.model_copy(deep=True)

    def _list(self, collection: str, thesis_id: Optional[str] = None) -> list[Any]:
        return [
            record.model_copy(deep=True)
            for record in self._tables.values(collection)
            if thesis_id is None or record.thesis_id == thesis_id
        ]

    # --- Theses ---

    def create_thesis(self, payload: Mapping[str, Any]) -> Thesis:
        return self._create("theses", payload)

    def update_thesis(self, thesis_id: str, patch: Mapping[str, Any]) -> Thesis:
        return self._update("theses", thesis_id, patch)

    def delete_thesis(self, thesis_id: str) -> None:
        """Delete a thesis and everything it owns in one transaction."""
        self._delete("theses", thesis_id)

    def get_thesis(self, thesis_id: str) -> Optional[Thesis]:
        return self._get("theses", thesis_id)

    def list_theses(self, include_archived: bool = True) -> list[Thesis]:
        return [t for t in self._list("theses") if include_archived or not t.is_archived]

    @property
    def active_thesis_id(self) -> Optional[str]:
        return self._tables.active_thesis_id

    def set_active_thesis(self, thesis_id: Optional[str]) -> None:
        with self._transaction() as tx:
            if thesis_id is not None:
                self._require(tx, "theses", thesis_id)
            tx.active_thesis_id = thesis_id

    # --- Papers ---

    def add_paper(self, payload: Mapping[str, Any]) -> Paper:
        return self._create("papers", payload)

    def add_papers_batch(self, payloads: Sequence[Mapping[str, Any]]) -> list[Paper]:
        """Add several papers; either all are added or none."""
        normalized = []
        for payload in payloads:
            data = _normalize(Paper, payload)
            managed = _MANAGED_ON_CREATE["papers"] & data.keys()
            if managed:
                raise ValidationError(f"{', '.join(sorted(managed))} assigned by the store")
            normalized.append(data)
        created = []
        with self._transaction() as tx:
            for data in normalized:
                paper = self._validate(tx, "papers", _build(Paper, {**data, "id": self._fresh_id(tx)}))
                tx.put("papers", paper)
                self._link_to_thesis(tx, "papers", paper)
                created.append(paper)
        logger.debug("Added %d papers", len(created))
        return [p.model_copy(deep=True) for p in created]

    def update_paper(self, paper_id: str, patch: Mapping[str, Any]) -> Paper:
        return self._update("papers", paper_id, patch)

    def delete_paper(self, paper_id: str) -> None:
        """Delete a paper, its connections, and every reference to it."""
        self._delete("papers", paper_id)

    def delete_papers_batch(self, paper_ids: Sequence[str]) -> None:
        with self._transaction() as tx:
            for paper_id in paper_ids:
                self._require(tx, "papers", paper_id)
            self._remove_papers(tx, _dedupe(paper_ids))

    def get_paper(self, paper_id: str) -> Optional[Paper]:
        return self._get("papers", paper_id)

    def list_papers(self, thesis_id: Optional[str] = None) -> list[Paper]:
        return self._list("papers", thesis_id)

    def set_screening_decision(
        self,
        paper_id: str,
        decision: ScreeningDecision | str,
        reason: Optional[ExclusionReason | str] = None,
        note: Optional[str] = None,
    ) -> Paper:
        return self._update("papers", paper_id, self._screening_patch(decision, reason, note))

    def set_screening_decision_batch(
        self,
        paper_ids: Sequence[str],
        decision: ScreeningDecision | str,
        reason: Optional[ExclusionReason | str] = None,
    ) -> list[Paper]:
        patch = self._screening_patch(decision, reason, None)
        updated = []
        with self._transaction() as tx:
            for paper_id in _dedupe(paper_ids):
                current = self._require(tx, "papers", paper_id)
                paper = _build(Paper, {**current.model_dump(), **patch, "last_accessed_at": utcnow()})
                tx.put("papers", paper)
                updated.append(paper)
        return [p.model_copy(deep=True) for p in updated]

    @staticmethod
    def _screening_patch(decision, reason, note) -> dict[str, Any]:
        try:
            decision = ScreeningDecision(decision)
            reason = ExclusionReason(reason) if reason is not None else None
        except ValueError as e:
            raise ValidationError(str(e), field="screening_decision") from e
        excluded = decision is ScreeningDecision.EXCLUDE
        return {
            "screening_decision": decision,
            "exclusion_reason": reason if excluded else None,
            "exclusion_note": note if excluded and reason is ExclusionReason.OTHER else None,
            "screened_at": utcnow(),
        }

    def set_reading_status(self, paper_id: str, status: ReadingStatus | str) -> Paper:
        try:
            status = ReadingStatus(status)
        except ValueError as e:
            raise ValidationError(str(e), field="reading_status") from e
        patch: dict[str, Any] = {"reading_status": status}
        if status is ReadingStatus.READ:
            patch["read_at"] = utcnow()
        return self._update("papers", paper_id, patch)

    # --- Connections ---

    def create_connection(self, payload: Mapping[str, Any]) -> Connection:
        return self._create("connections", payload)

    def update_connection(self, connection_id: str, patch: Mapping[str, Any]) -> Connection:
        return self._update("connections", connection_id, patch)

    def delete_connection(self, connection_id: str) -> None:
        self._delete("connections", connection_id)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._get("connections", connection_id)

    def list_connections(self, thesis_id: Optional[str] = None) -> list[Connection]:
        return self._list("connections", thesis_id)

    # --- Synthesis themes ---

    def create_theme(self, payload: Mapping[str, Any]) -> SynthesisTheme:
        return self._create("themes", payload)

    def update_theme(self, theme_id: str, patch: Mapping[str, Any]) -> SynthesisTheme:
        return self._update("themes", theme_id, patch)

    def delete_theme(self, theme_id: str) -> None:
        self._delete("themes", theme_id)

    def get_theme(self, theme_id: str) -> Optional[SynthesisTheme]:
        return self._get("themes", theme_id)

    def list_themes(self, thesis_id: Optional[str] = None) -> list[SynthesisTheme]:
        return self._list("themes", thesis_id)

    def assign_paper_to_theme(self, paper_id: str, theme_id: str) -> SynthesisTheme:
        return self._membership("themes", theme_id, "paper_ids", paper_id, add=True)

    def remove_paper_from_theme(self, paper_id: str, theme_id: str) -> SynthesisTheme:
        return self._membership("themes", theme_id, "paper_ids", paper_id, add=False)

    # --- Research gaps ---

    def create_gap(self, payload: Mapping[str, Any]) -> ResearchGap:
        return self._create("gaps", payload)

    def update_gap(self, gap_id: str, patch: Mapping[str, Any]) -> ResearchGap:
        return self._update("gaps", gap_id, patch)

    def delete_gap(self, gap_id: str) -> None:
        self._delete("gaps", gap_id)

    def get_gap(self, gap_id: str) -> Optional[ResearchGap]:
        return self._get("gaps", gap_id)

    def list_gaps(self, thesis_id: Optional[str] = None) -> list[ResearchGap]:
        return self._list("gaps", thesis_id)

    # --- Review sections ---

    def create_section(self, payload: Mapping[str, Any]) -> ReviewSection:
        def next_order(tx: _Tables, data: dict) -> dict:
            siblings = [s for s in tx.values("sections") if s.thesis_id == data.get("thesis_id")]
            return {"order": max((s.order for s in siblings), default=-1) + 1}

        return self._create("sections", payload, defaults=next_order)

    def update_section(self, section_id: str, patch: Mapping[str, Any]) -> ReviewSection:
        return self._update("sections", section_id, patch)

    def delete_section(self, section_id: str) -> None:
        self._delete("sections", section_id)

    def get_section(self, section_id: str) -> Optional[ReviewSection]:
        return self._get("sections", section_id)

    def list_sections(self, thesis_id: Optional[str] = None) -> list[ReviewSection]:
        return sorted(self._list("sections", thesis_id), key=lambda s: s.order)

    def assign_paper_to_section(self, paper_id: str, section_id: str) -> ReviewSection:
        return self._membership("sections", section_id, "paper_ids", paper_id, add=True)

    def remove_paper_from_section(self, paper_id: str, section_id: str) -> ReviewSection:
        return self._membership("sections", section_id, "paper_ids", paper_id, add=False)

    # --- Evidence syntheses ---

    def create_evidence_synthesis(self, payload: Mapping[str, Any]) -> EvidenceSynthesis:
        return self._create("evidence_syntheses", payload)

    def update_evidence_synthesis(self, synthesis_id: str, patch: Mapping[str, Any]) -> EvidenceSynthesis:
        return self._update("evidence_syntheses", synthesis_id, patch)

    def delete_evidence_synthesis(self, synthesis_id: str) -> None:
        self._delete("evidence_syntheses", synthesis_id)

    def get_evidence_synthesis(self, synthesis_id: str) -> Optional[EvidenceSynthesis]:
        return self._get("evidence_syntheses", synthesis_id)

    def list_evidence_syntheses(self, thesis_id: Optional[str] = None) -> list[EvidenceSynthesis]:
        return self._list("evidence_syntheses", thesis_id)

    # --- Clusters ---

    def create_cluster(self, payload: Mapping[str, Any]) -> Cluster:
        def next_color(tx: _Tables, data: dict) -> dict:
            count = sum(1 for c in tx.values("clusters") if c.thesis_id == data.get("thesis_id"))
            return {"color": CLUSTER_COLORS[count % len(CLUSTER_COLORS)]}

        return self._create("clusters", payload, defaults=next_color)

    def update_cluster(self, cluster_id: str, patch: Mapping[str, Any]) -> Cluster:
        return self._update("clusters", cluster_id, patch)

    def delete_cluster(self, cluster_id: str) -> None:
        self._delete("clusters", cluster_id)

    def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        return self._get("clusters", cluster_id)

    def list_clusters(self, thesis_id: Optional[str] = None) -> list[Cluster]:
        return self._list("clusters", thesis_id)

    def toggle_cluster_collapse(self, cluster_id: str) -> Cluster:
        current = self._require(self._tables, "clusters", cluster_id)
        return self._update("clusters", cluster_id, {"is_collapsed": not current.is_collapsed})

    def add_paper_to_cluster(self, paper_id: str, cluster_id: str) -> Cluster:
        return self._membership("clusters", cluster_id, "paper_ids", paper_id, add=True)

    def remove_paper_from_cluster(self, paper_id: str, cluster_id: str) -> Cluster:
        return self._membership("clusters", cluster_id, "paper_ids", paper_id, add=False)

    def _membership(self, collection: str, record_id: str, field_name: str, paper_id: str, add: bool) -> Any:
        current = self._require(self._tables, collection, record_id)
        ids = list(getattr(current, field_name))
        if add and paper_id not in ids:
            ids.append(paper_id)
        elif not add:
            ids = [i for i in ids if i != paper_id]
        return self._update(collection, record_id, {field_name: ids})

    # --- Derived views ---

    def get_papers_for_thesis(self, thesis_id: str) -> list[Paper]:
        return self.index.papers_for_thesis(thesis_id)

    def get_screening_stats(self, thesis_id: str) -> dict[str, int]:
        return self.index.screening_stats(thesis_id)

    def get_reading_progress(self, thesis_id: str) -> float:
        return self.index.reading_progress(thesis_id)

    # --- Settings ---

    @property
    def settings(self) -> UserSettings:
        return self._tables.settings

    def update_settings(self, patch: Mapping[str, Any]) -> UserSettings:
        fields = _normalize(UserSettings, patch)
        with self._transaction() as tx:
            tx.settings = _build(UserSettings, {**tx.settings.model_dump(), **fields})
        return self._tables.settings

    # --- Import / export ---

    def export_data(self) -> str:
        return json.dumps(self.snapshot().to_raw(), indent=2, ensure_ascii=False)

    def import_data(self, text: str) -> MigrationResult:
        """Replace the whole store with exported data.

        The data is migrated to the current schema and checked for integrity
        first; on any problem ValidationError is raised and nothing changes.
        """
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON data: {e}") from e
        if not isinstance(raw, dict):
            raise ValidationError("Imported data must be a JSON object")

        result = MigrationEngine(None, self.engine.migrations).ensure_migrated(raw)
        if not result.success:
            raise ValidationError(
                "Imported data could not be migrated: " + "; ".join(str(e) for e in result.errors)
            )
        snapshot = _build(StoreSnapshot, result.state)
        problems = _integrity_problems(snapshot)
        if problems:
            raise ValidationError("Imported data violates integrity: " + "; ".join(problems[:5]))

        self._check_writable()
        self.adapter.save(snapshot.to_raw())
        self._hydrate(snapshot)
        logger.info("Imported %d theses, %d papers", len(snapshot.theses), len(snapshot.papers))
        return result

    def clear_all_data(self) -> None:
        with self._transaction() as tx:
            tx.collections = {name: {} for name in COLLECTIONS}
            tx.active_thesis_id = None
            tx.settings = UserSettings()

    # --- Integrity ---

    def integrity_report(self) -> list[str]:
        """Describe every violated invariant; empty when the store is consistent."""
        return _integrity_problems(self._snapshot_of(self._tables))


def _integrity_problems(snapshot: StoreSnapshot) -> list[str]:
    problems: list[str] = []
    seen: set[str] = set()
    for name in COLLECTIONS:
        for record in getattr(snapshot, name):
            if record.id in seen:
                problems.append(f"duplicate id {record.id} ({name})")
            seen.add(record.id)

    theses = {t.id: t for t in snapshot.theses}
    papers = {p.id: p for p in snapshot.papers}
    connections = {c.id: c for c in snapshot.connections}

    for paper in snapshot.papers:
        if paper.thesis_id not in theses:
            problems.append(f"paper {paper.id} references missing thesis {paper.thesis_id}")
        arg_ids = {a.id for a in paper.arguments}
        for ev in paper.evidence:
            if ev.linked_argument_id is not None and ev.linked_argument_id not in arg_ids:
                problems.append(f"evidence {ev.id} links to missing argument {ev.linked_argument_id}")

    for thesis in snapshot.theses:
        owned = sorted(p.id for p in snapshot.papers if p.thesis_id == thesis.id)
        if sorted(thesis.paper_ids) != owned:
            problems.append(f"thesis {thesis.id} paperIds out of sync with its papers")
        owned_conns = sorted(c.id for c in snapshot.connections if c.thesis_id == thesis.id)
        if sorted(thesis.connection_ids) != owned_conns:
            problems.append(f"thesis {thesis.id} connectionIds out of sync with its connections")

    for conn in connections.values():
        if conn.thesis_id not in theses:
            problems.append(f"connection {conn.id} references missing thesis {conn.thesis_id}")
        for end in (conn.from_paper_id, conn.to_paper_id):
            paper = papers.get(end)
            if paper is None:
                problems.append(f"connection {conn.id} references missing paper {end}")
            elif paper.thesis_id != conn.thesis_id:
                problems.append(f"connection {conn.id} crosses theses via paper {end}")

    for collection, field_names in PAPER_REF_FIELDS.items():
        for record in getattr(snapshot, collection):
            if record.thesis_id not in theses:
                problems.append(f"{collection} {record.id} references missing thesis {record.thesis_id}")
            for field_name in field_names:
                for paper_id in getattr(record, field_name):
                    paper = papers.get(paper_id)
                    if paper is None or paper.thesis_id != record.thesis_id:
                        problems.append(f"{collection} {record.id} has dangling {field_name} entry {paper_id}")
    for theme in snapshot.themes:
        known = {a.id for p in snapshot.papers if p.thesis_id == theme.thesis_id for a in p.arguments}
        for arg_id in theme.related_argument_ids:
            if arg_id not in known:
                problems.append(f"themes {theme.id} has dangling argument {arg_id}")

    if snapshot.active_thesis_id is not None and snapshot.active_thesis_id not in theses:
        problems.append(f"active thesis {snapshot.active_thesis_id} does not exist")
    return problems
