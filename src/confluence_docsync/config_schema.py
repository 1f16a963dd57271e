"""Unified configuration schema for confluence_docsync.

Pydantic models for the YAML config with sections for the Confluence
connection, sync behaviour, and logging, plus an adapter producing the
``Config`` dataclass the client consumes.

Usage:
    from confluence_docsync.config_schema import build_config, to_client_config

    unified = build_config(load_hierarchical_config())
    config = to_client_config(unified, overrides={"space_key": "DOCS"})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ConfluenceConfig(BaseModel):
    """Confluence connection settings.

    All fields are optional: environment variables can supply them at
    runtime instead.
    """

    base_url: str | None = Field(
        default=None, description="Confluence site URL"
    )
    username: str | None = Field(default=None, description="Account e-mail")
    api_token: str | None = Field(default=None, description="API token")
    space_key: str | None = Field(default=None, description="Space key")
    root_page_title: str | None = Field(
        default=None, description="Page the docs tree is mirrored under"
    )
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Sync behaviour.

    Attributes:
        docs_dir: Documentation folder below the project root.
        state_dir: Folder holding the sync ledger.
        exclude: Glob patterns of documents to skip.
        max_workers: Documents processed in parallel.
        diagram_languages: Fence languages rendered as diagrams.
        render_diagrams: Whether to render diagrams at all.
    """

    docs_dir: str = "docs"
    state_dir: str = ".docsync"
    exclude: list[str] = Field(default_factory=lambda: ["_*", "*/_*"])
    max_workers: int = Field(default=4, ge=1, le=32)
    diagram_languages: list[str] = Field(default_factory=lambda: ["mermaid"])
    render_diagrams: bool = True

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", pattern="^(text|json)$")

    model_config = {"frozen": True}


class UnifiedConfig(BaseModel):
    """Top-level configuration.  ``UnifiedConfig()`` is always valid."""

    confluence: ConfluenceConfig = Field(default_factory=ConfluenceConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from ``load_hierarchical_config()``
    output.  Missing sections get defaults.
    """
    if not raw_data:
        return UnifiedConfig()
    return UnifiedConfig(**raw_data)


def to_client_config(
    unified: UnifiedConfig,
    overrides: dict | None = None,
) -> Config:
    """Resolve the client ``Config`` with full precedence.

    Explicit *overrides* win, then environment variables, then the YAML
    ``confluence`` section (via ``load_config``'s fallbacks).

    Raises:
        ValueError: If a required setting is missing or invalid.
    """
    from .config import load_config

    overrides = overrides or {}
    fallbacks = unified.confluence.model_dump(exclude_none=True)
    fallbacks["max_workers"] = unified.sync.max_workers
    return load_config(
        base_url=overrides.get("base_url"),
        username=overrides.get("username"),
        api_token=overrides.get("api_token"),
        space_key=overrides.get("space_key"),
        root_page_title=overrides.get("root_page_title"),
        insecure=bool(overrides.get("insecure", False)),
        debug=bool(overrides.get("debug", False)),
        yaml_fallbacks=fallbacks,
    )
