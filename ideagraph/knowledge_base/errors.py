"""Error taxonomy for the knowledge base."""

from __future__ import annotations

from typing import Optional


class IdeaGraphError(Exception):
    """Base class for all knowledge-base errors."""


class ValidationError(IdeaGraphError):
    """A create/update referenced a missing or out-of-scope entity, or broke a field constraint."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(IdeaGraphError):
    """An update or delete targeted an id that does not exist."""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class MigrationError(IdeaGraphError):
    """A schema transform failed. Collected in MigrationResult, never raised out of startup."""

    def __init__(self, version: int, name: str, message: str):
        super().__init__(f"Migration {version} ({name}) failed: {message}")
        self.version = version
        self.name = name


class PersistenceError(IdeaGraphError):
    """Stored data could not be parsed, or the storage backend rejected a read/write."""
