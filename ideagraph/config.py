"""Application configuration loaded from config/ideagraph.yaml."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from ideagraph.knowledge_base.blob_store import DEFAULT_PDF_DIR
from ideagraph.knowledge_base.persistence import (
    DEFAULT_DB_PATH,
    DEFAULT_NAMESPACE,
    DEFAULT_QUOTA_BYTES,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/ideagraph.yaml")
DB_PATH_ENV = "IDEAGRAPH_DB_PATH"


class StorageConfig(BaseModel):
    db_path: Path = DEFAULT_DB_PATH
    namespace: str = DEFAULT_NAMESPACE
    quota_bytes: int = DEFAULT_QUOTA_BYTES
    pdf_dir: Path = DEFAULT_PDF_DIR


class Settings(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    log_level: str = "INFO"


def load_config(path: Path | str = DEFAULT_CONFIG_PATH) -> Settings:
    """Read settings from YAML; a missing file yields the defaults."""
    path = Path(path)
    data: dict = {}
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    else:
        logger.debug("Config file %s not found, using defaults", path)
    settings = Settings.model_validate(data)
    override = os.environ.get(DB_PATH_ENV)
    if override:
        settings.storage.db_path = Path(override)
    return settings
