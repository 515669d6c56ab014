"""
Streaming domain enums.

Defines memory pressure levels and chunk lifecycle states.
"""

from enum import Enum


class MemoryPressure(Enum):
    """
    Host memory pressure classification.

    Relative to StreamingConfig.max_memory_usage.
    """

    NORMAL = "normal"
    WARNING = "warning"  # >= warning_threshold
    CRITICAL = "critical"  # >= critical_threshold


class ChunkStatus(Enum):
    """Lifecycle of a chunk inside the ChunkProcessor."""

    QUEUED = "queued"
    ACTIVE = "active"
    RETRY_QUEUED = "retry_queued"
    COMPLETED = "completed"
    FAILED = "failed"  # Retries exhausted
