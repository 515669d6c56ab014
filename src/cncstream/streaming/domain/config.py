"""
Streaming engine configuration.

StreamingConfig is built once at startup and passed by reference to every
component. It is frozen; use ``model_copy(update=...)`` to derive variants.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from cncstream.shared.infrastructure.config import settings
from cncstream.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class StreamingConfig(BaseModel):
    """Immutable configuration for the chunked streaming engine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # File analysis
    chunk_size: int = Field(default=1000, ge=1, description="Lines per chunk")
    buffer_size: int = Field(default=64 * 1024, ge=1024, description="File read buffer size (bytes)")
    enable_metadata: bool = True
    validate_chunks: bool = True
    skip_empty_lines: bool = True
    skip_comments: bool = True

    # Chunk processing
    max_concurrent_chunks: int = Field(default=1, ge=1, description="In-flight chunk bound")
    retry_failed_chunks: bool = True
    max_chunk_retries: int = Field(default=3, ge=0)
    chunk_timeout: float = Field(default=30.0, gt=0, description="Per-chunk timeout (seconds)")
    line_failure_tolerance: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Fraction of failed lines above which a chunk is treated as failed",
    )
    validate_chunk_completion: bool = True

    # Memory management
    max_memory_usage: int = Field(default=512 * 1024 * 1024, gt=0, description="Memory ceiling (bytes)")
    warning_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    critical_threshold: float = Field(default=0.9, gt=0.0, le=1.0)
    monitoring_interval: float = Field(default=1.0, gt=0, description="Sampling interval (seconds)")
    enable_garbage_collection: bool = True
    # Must stay below the 0.75 warning-level factor so recommendations shrink monotonically
    chunk_size_reduction: float = Field(default=0.5, gt=0.0, lt=0.75)
    enable_memory_optimization: bool = True
    track_object_counts: bool = True
    enable_memory_leak_detection: bool = True

    # Checkpointing
    enable_checkpointing: bool = True
    checkpoint_interval: int = Field(default=5000, ge=1, description="Lines between checkpoints")
    checkpoint_directory: str = ".checkpoints"
    max_checkpoints: int = Field(default=10, ge=1)
    compression_enabled: bool = False
    validate_checksums: bool = True
    auto_cleanup: bool = True
    retention_days: float = Field(default=7, gt=0)
    resume_from_checkpoint: bool = True

    # Pause / resume
    enable_pause_resume: bool = True
    enable_graceful_pause: bool = True
    pause_timeout: float = Field(default=5.0, gt=0, description="Pause readiness timeout (seconds)")
    save_state_on_pause: bool = True
    validate_state_on_resume: bool = True
    max_pause_duration: float = Field(default=300.0, ge=0, description="0 disables the watchdog")

    @model_validator(mode="after")
    def _check_thresholds(self) -> "StreamingConfig":
        if self.warning_threshold >= self.critical_threshold:
            raise ValueError(
                f"warning_threshold ({self.warning_threshold}) must be below "
                f"critical_threshold ({self.critical_threshold})"
            )
        return self


def load_streaming_config(path: str | Path | None = None, **overrides: Any) -> StreamingConfig:
    """
    Build the engine configuration.

    Starts from the process settings, reads the YAML file (flat mapping, or
    nested under a ``streaming:`` key) given by ``path`` or
    ``CNCSTREAM_CONFIG_FILE``, and applies keyword overrides on top.
    """
    data: dict[str, Any] = {"checkpoint_directory": settings.checkpoint_directory}

    if path is None:
        path = settings.config_file

    if path is not None:
        config_path = Path(path)
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Streaming config must be a mapping: {config_path}")
        data.update(raw.get("streaming", raw))
        logger.debug("streaming_config_loaded", path=str(config_path), keys=sorted(data))

    data.update(overrides)
    return StreamingConfig(**data)
