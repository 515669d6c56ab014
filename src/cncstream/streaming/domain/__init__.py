"""Streaming domain package."""

from cncstream.streaming.domain.config import StreamingConfig, load_streaming_config
from cncstream.streaming.domain.enums import ChunkStatus, MemoryPressure
from cncstream.streaming.domain.exceptions import (
    AnalysisError,
    CheckpointCorruption,
    ChunkExecutionError,
    ChunkTimeoutError,
    ProcessingInProgressError,
    StreamingError,
)
from cncstream.streaming.domain.interfaces import ICheckpointStore, IStreamingManager, ProgressCallback
from cncstream.streaming.domain.models import (
    Checkpoint,
    CheckpointState,
    Chunk,
    FileAnalysis,
    LineContext,
    PauseResult,
    ResumeResult,
    StreamingState,
)

__all__ = [
    "StreamingConfig",
    "load_streaming_config",
    "ChunkStatus",
    "MemoryPressure",
    "StreamingError",
    "AnalysisError",
    "ProcessingInProgressError",
    "ChunkTimeoutError",
    "ChunkExecutionError",
    "CheckpointCorruption",
    "IStreamingManager",
    "ICheckpointStore",
    "ProgressCallback",
    "Chunk",
    "FileAnalysis",
    "LineContext",
    "Checkpoint",
    "CheckpointState",
    "StreamingState",
    "PauseResult",
    "ResumeResult",
]
