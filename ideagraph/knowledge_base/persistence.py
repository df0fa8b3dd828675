"""SQLite-backed key-value persistence for the knowledge-base snapshot.

The whole store is kept as one JSON blob per namespace. The row key embeds
the schema version (``<namespace>:v<version>``) and the version is also
stored in its own column, so staleness can be detected without parsing the
payload.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import PersistenceError
from .models import StoreSnapshot

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data/db/ideagraph.sqlite")
DEFAULT_NAMESPACE = "ideagraph-storage"
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024

WARNING_THRESHOLD = 0.75
CRITICAL_THRESHOLD = 0.90


def empty_state(schema_version: int = 0) -> dict[str, Any]:
    """Raw blob of an empty store at the given schema version."""
    raw = StoreSnapshot().to_raw()
    raw["schemaVersion"] = schema_version
    return raw


class StorageUsage(BaseModel):
    """Size report for the stored snapshot."""

    key: Optional[str] = None
    schema_version: Optional[int] = None
    payload_bytes: int = 0
    quota_bytes: int = DEFAULT_QUOTA_BYTES
    counts: dict[str, int] = Field(default_factory=dict)

    @property
    def usage_percent(self) -> float:
        if self.quota_bytes <= 0:
            return 0.0
        return round(self.payload_bytes / self.quota_bytes * 100, 2)

    @property
    def level(self) -> str:
        ratio = self.usage_percent / 100
        if ratio >= CRITICAL_THRESHOLD:
            return "critical"
        if ratio >= WARNING_THRESHOLD:
            return "warning"
        return "info"


class PersistenceAdapter:
    """Reads and writes the versioned store blob in a local SQLite file."""

    def __init__(
        self,
        db_path: Path | str = DEFAULT_DB_PATH,
        namespace: str = DEFAULT_NAMESPACE,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
    ):
        self.db_path = Path(db_path)
        self.namespace = namespace
        self.quota_bytes = quota_bytes
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> PersistenceAdapter:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def storage_key(self, schema_version: int) -> str:
        return f"{self.namespace}:v{schema_version}"

    # --- Reads ---

    def _current_row(self) -> Optional[sqlite3.Row]:
        try:
            return self.conn.execute(
                """SELECT key, schema_version, payload FROM kv_store
                WHERE namespace = ?
                ORDER BY schema_version DESC, updated_at DESC LIMIT 1""",
                (self.namespace,),
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot read {self.db_path}: {e}") from e

    def stored_version(self) -> Optional[int]:
        """Schema version of the stored blob, or None when nothing is stored."""
        try:
            row = self.conn.execute(
                """SELECT schema_version FROM kv_store WHERE namespace = ?
                ORDER BY schema_version DESC, updated_at DESC LIMIT 1""",
                (self.namespace,),
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot read {self.db_path}: {e}") from e
        return None if row is None else row["schema_version"]

    def load(self) -> dict[str, Any]:
        """Return the stored blob, or an empty-store shape when nothing is stored.

        Raises:
            PersistenceError: the stored payload is not a JSON object.
        """
        row = self._current_row()
        if row is None:
            logger.debug("No stored state under %s, starting empty", self.namespace)
            return empty_state()
        try:
            data = json.loads(row["payload"])
        except (json.JSONDecodeError, TypeError) as e:
            raise PersistenceError(f"Malformed payload under {row['key']}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(
                f"Malformed payload under {row['key']}: expected object, got {type(data).__name__}"
            )
        return data

    # --- Writes ---

    def save(self, state: dict[str, Any]) -> None:
        """Write the full snapshot, replacing the previous one atomically.

        The new row is inserted and every older row of the namespace removed
        inside one transaction, so a reader sees either the old or the new
        blob. Failures are not retried.
        """
        version = state.get("schemaVersion", 0)
        if not isinstance(version, int) or isinstance(version, bool) or version < 0:
            raise PersistenceError(f"Invalid schemaVersion in snapshot: {version!r}")
        try:
            payload = json.dumps(state, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Snapshot is not JSON serializable: {e}") from e

        key = self.storage_key(version)
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self.conn:
                self.conn.execute(
                    """INSERT OR REPLACE INTO kv_store
                    (key, namespace, schema_version, payload, updated_at)
                    VALUES (?, ?, ?, ?, ?)""",
                    (key, self.namespace, version, payload, now),
                )
                self.conn.execute(
                    "DELETE FROM kv_store WHERE namespace = ? AND key != ?",
                    (self.namespace, key),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to write {key}: {e}") from e
        logger.debug("Saved %s (%d bytes)", key, len(payload))

    def quarantine(self) -> Optional[str]:
        """Move the stored blob aside so later saves cannot overwrite it.

        Returns the quarantine key, or None when nothing was stored.
        """
        row = self._current_row()
        if row is None:
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        new_key = f"{self.namespace}:corrupt:{stamp}"
        try:
            with self.conn:
                self.conn.execute(
                    "UPDATE kv_store SET key = ?, namespace = ? WHERE key = ?",
                    (new_key, f"{self.namespace}:corrupt", row["key"]),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to quarantine {row['key']}: {e}") from e
        logger.warning("Quarantined unreadable state %s as %s", row["key"], new_key)
        return new_key

    def storage_usage(self) -> StorageUsage:
        row = self._current_row()
        if row is None:
            return StorageUsage(quota_bytes=self.quota_bytes)
        payload = row["payload"] or ""
        counts: dict[str, int] = {}
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            for name, value in data.items():
                if isinstance(value, list) and name != "appliedMigrations":
                    counts[name] = len(value)
        return StorageUsage(
            key=row["key"],
            schema_version=row["schema_version"],
            payload_bytes=len(payload.encode("utf-8")),
            quota_bytes=self.quota_bytes,
            counts=counts,
        )


_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    namespace TEXT NOT NULL,
    schema_version INTEGER NOT NULL DEFAULT 0,
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_namespace ON kv_store(namespace, schema_version);
"""
