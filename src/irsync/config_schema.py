"""Configuration schema for irsync.

Defines Pydantic models for the config structure with dedicated sections
for the watched roots, conflict handling, the conversion cache, retries,
the engine and logging. Every section has defaults, so an empty config is
valid apart from the two watch roots, which must be supplied before a
``BidirectionalSync`` can start.

Usage:
    from irsync.config_schema import SyncConfig, build_config

    raw = load_hierarchical_config()
    config = build_config(raw)
"""

from __future__ import annotations

import logging
import os
from typing import Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ConflictStrategyName = Literal["prefer-A", "prefer-B", "manual", "skip"]
SyncModeName = Literal["universal", "side-A", "side-B"]


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class WatchConfig(BaseModel):
    """Watched roots and event shaping.

    Attributes:
        side_a_root: Root of the component-tree (side A) sources.
        side_b_root: Root of the widget-tree (side B) sources.
        debounce_ms: Write-quiescence interval before a change is emitted.
        suppression_ms: How long an engine-written path ignores events.
        mode: Which side is edited by hand. ``universal`` syncs both ways;
            ``side-A`` and ``side-B`` watch only that side and treat the
            other as generated output.
    """

    side_a_root: str | None = Field(
        default=None, description="Root directory of side A sources"
    )
    side_b_root: str | None = Field(
        default=None, description="Root directory of side B sources"
    )
    mode: SyncModeName = Field(
        default="universal",
        description="Source-of-truth side: universal, side-A or side-B",
    )
    debounce_ms: int = Field(
        default=200,
        ge=0,
        le=10000,
        description="Per-file write quiescence before emitting (ms)",
    )
    suppression_ms: int = Field(
        default=1000,
        ge=0,
        le=60000,
        description="Self-write suppression window (ms)",
    )
    side_a_extensions: list[str] = Field(
        default_factory=lambda: [".tsx", ".jsx", ".ts", ".js"],
        description="Source extensions watched on side A",
    )
    side_b_extensions: list[str] = Field(
        default_factory=lambda: [".dart"],
        description="Source extensions watched on side B",
    )
    side_a_output_extension: str = Field(
        default=".tsx", description="Extension of files generated on side A"
    )
    side_b_output_extension: str = Field(
        default=".dart", description="Extension of files generated on side B"
    )
    ignore_patterns: list[str] = Field(
        default_factory=lambda: [
            "node_modules",
            "build",
            "dist",
            ".dart_tool",
            "*.swp",
            "*~",
        ],
        description="fnmatch patterns matched against each path segment",
    )

    model_config = {"frozen": True}


class ConflictConfig(BaseModel):
    """Conflict detection and resolution settings."""

    strategy: ConflictStrategyName = Field(
        default="prefer-A", description="Conflict resolution strategy"
    )
    window_ms: int = Field(
        default=1000,
        ge=0,
        le=600000,
        description="Maximum gap between edits counted as concurrent (ms)",
    )
    manual_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Fail manual conflicts not resolved within this time",
    )
    conflict_dir: str | None = Field(
        default=None,
        description="Directory for persisted conflict records",
    )
    webhook_url: str | None = Field(
        default=None, description="Optional webhook notified of conflicts"
    )

    model_config = {"frozen": True}


class CacheConfig(BaseModel):
    """Conversion cache limits."""

    enabled: bool = Field(default=True, description="Enable the cache")
    ttl_seconds: float = Field(
        default=3600, gt=0, description="Entry time-to-live (seconds)"
    )
    max_entries: int = Field(
        default=1000, ge=1, description="Maximum AST+IR entries"
    )
    max_memory_mb: float = Field(
        default=100, gt=0, description="Estimated memory bound (MB)"
    )

    model_config = {"frozen": True}


class RetryConfig(BaseModel):
    """Retry policy for transient I/O failures."""

    attempts: int = Field(
        default=3, ge=1, le=20, description="Attempts per I/O call"
    )
    backoff_ms: int = Field(
        default=100, ge=0, le=60000, description="Initial backoff (ms)"
    )
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0, le=10.0, description="Backoff growth factor"
    )

    model_config = {"frozen": True}


class EngineConfig(BaseModel):
    """Sync engine settings."""

    store_dir: str = Field(
        default=".irsync/store", description="IR store root directory"
    )
    worker_pool_size: int = Field(
        default_factory=lambda: os.cpu_count() or 1,
        ge=1,
        le=256,
        description="Concurrent convert/generate calls",
    )
    propagate_deletes: bool = Field(
        default=False,
        description="Delete the counterpart file when a source is deleted",
    )
    queue_max_size: int = Field(
        default=1000, ge=1, description="Maximum queued changes"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: "text" or "json".
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = Field(
        default="text", description="Log line format"
    )

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


class SyncConfig(BaseModel):
    """Top-level configuration.

    Aggregates all config sections. ``SyncConfig()`` is always valid.
    """

    watch: WatchConfig = Field(default_factory=WatchConfig)
    conflict: ConflictConfig = Field(default_factory=ConflictConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict | None) -> SyncConfig:
    """Construct a ``SyncConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.
    Unknown top-level sections are ignored with a warning.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``SyncConfig`` instance.
    """
    if not raw_data:
        return SyncConfig()

    known = set(SyncConfig.model_fields)
    unknown = sorted(k for k in raw_data if k not in known)
    if unknown:
        logger.warning(
            "Ignoring unknown config sections: %s", ", ".join(unknown)
        )
    return SyncConfig(**{k: v for k, v in raw_data.items() if k in known})
