"""Unified configuration schema for annosync.

Defines Pydantic models for the unified config structure with dedicated
sections for the remote store, the workspace, the analysis tools, and
logging.  Includes adapter functions that feed the YAML values into the
flat ``Config`` dataclass.

Usage:
    from annosync.config_schema import build_config, yaml_fallbacks

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=yaml_fallbacks(unified))
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class RemoteConfig(BaseModel):
    """Shared remote store settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    enabled: bool = Field(
        default=False, description="Synchronize with the remote store"
    )
    uri: str | None = Field(default=None, description="MongoDB URI")
    database: str = Field(default="annosync", description="Database name")
    expire_after_seconds: int = Field(
        default=30 * 24 * 3600,
        description="Retention window for remote documents; <= 0 disables expiry",
    )
    server_timeout_ms: int = Field(
        default=5000,
        ge=100,
        description="Server selection timeout in milliseconds",
    )
    max_parallel_requests: int = Field(
        default=4,
        ge=1,
        le=100,
        description="Maximum concurrent remote calls (1-100)",
    )

    model_config = {"frozen": True}


class WorkspaceConfig(BaseModel):
    """Workspace and annotation settings."""

    root: str | None = Field(default=None, description="Workspace root")
    storage_dir: str = Field(
        default="~/.annosync",
        description="Directory holding project stores and secrets",
    )
    author_name: str | None = Field(
        default=None, description="Author name stamped on comments"
    )
    anchor_lines: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Lines captured on each side of an anchored line",
    )
    full_resync: bool = Field(
        default=True,
        description="Ignore the sync watermark and re-pull everything",
    )

    model_config = {"frozen": True}


class AnalysisConfig(BaseModel):
    """External analysis and diagram tool settings."""

    executable: str = Field(
        default="semgrep", description="Static analysis executable"
    )
    rules: str | None = Field(default=None, description="Rule-set path")
    timeout_seconds: int = Field(
        default=600, ge=1, description="Analysis run timeout"
    )
    extra_args: list[str] = Field(
        default_factory=list, description="Extra analyzer arguments"
    )
    diagram_executable: str | None = Field(
        default=None, description="Diagram generator executable"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapters: UnifiedConfig -> flat Config
# ---------------------------------------------------------------------------


def yaml_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten *unified* into ``Config`` field names, dropping ``None``.

    The result is passed to ``load_config(yaml_fallbacks=...)`` so that
    env vars and CLI args still take precedence over YAML values.
    """
    flat = {
        "remote_enabled": unified.remote.enabled,
        "remote_uri": unified.remote.uri,
        "remote_database": unified.remote.database,
        "expire_after_seconds": unified.remote.expire_after_seconds,
        "server_timeout_ms": unified.remote.server_timeout_ms,
        "max_parallel_requests": unified.remote.max_parallel_requests,
        "workspace_root": unified.workspace.root,
        "storage_dir": unified.workspace.storage_dir,
        "author_name": unified.workspace.author_name,
        "anchor_lines": unified.workspace.anchor_lines,
        "full_resync": unified.workspace.full_resync,
        "analysis_executable": unified.analysis.executable,
        "analysis_rules": unified.analysis.rules,
        "analysis_timeout": unified.analysis.timeout_seconds,
        "analysis_extra_args": list(unified.analysis.extra_args),
        "diagram_executable": unified.analysis.diagram_executable,
    }
    return {k: v for k, v in flat.items() if v is not None}
