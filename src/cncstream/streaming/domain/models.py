"""
Streaming domain models.

Core records for chunked G-code streaming: analysis results, chunks,
processing/pause/memory state and persisted checkpoints.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from cncstream.shared.domain.base_model import BaseDomainModel
from cncstream.streaming.domain.enums import MemoryPressure

CHECKPOINT_VERSION = "1.0"


@dataclass(frozen=True)
class ChunkMetadata(BaseDomainModel):
    """Per-chunk operation summary."""

    has_tool_change: bool = False
    has_coordinate_change: bool = False
    complexity: float = 0.0


@dataclass(frozen=True)
class Chunk(BaseDomainModel):
    """
    Contiguous slice of program lines.

    Line numbers are 1-based and count only lines kept by analysis.
    Byte offsets refer to the source file.
    """

    index: int
    start_line: int
    end_line: int
    line_count: int
    start_byte_offset: int
    end_byte_offset: int
    byte_length: int
    lines: Tuple[str, ...]
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    @property
    def chunk_id(self) -> str:
        return f"chunk_{self.index}"


@dataclass
class FileMetadata(BaseDomainModel):
    """Program-level metadata accumulated while analyzing."""

    has_comments: bool = False
    has_sub_programs: bool = False
    tool_changes: int = 0
    coordinate_system_changes: int = 0
    estimated_time: float = 0.0
    estimated_distance: float = 0.0


@dataclass(frozen=True)
class ChunkStatistics(BaseDomainModel):
    """Aggregate view over an analysis' chunks."""

    total_chunks: int = 0
    average_chunk_size: int = 0
    largest_chunk: int = 0
    smallest_chunk: int = 0
    total_complexity: float = 0.0


@dataclass(frozen=True)
class FileAnalysis(BaseDomainModel):
    """Result of analyzing one source file. Owned by the caller."""

    file_path: str
    file_size: int
    file_modified: float
    total_lines: int
    total_bytes: int
    chunks: Tuple[Chunk, ...]
    metadata: FileMetadata
    chunk_statistics: ChunkStatistics
    analysis_time: float  # seconds


@dataclass(frozen=True)
class LineContext:
    """Context passed with every line to the streaming manager."""

    line_number: int
    chunk_index: int
    is_last_line_in_chunk: bool


@dataclass
class LineResult(BaseDomainModel):
    """Outcome of sending a single line. Failures are data, not exceptions."""

    line_number: int
    line: str
    success: bool
    result: Any = None
    error: Optional[str] = None


@dataclass
class ProcessingState(BaseDomainModel):
    """ChunkProcessor progress. Mutated only by the ChunkProcessor."""

    is_processing: bool = False
    is_paused: bool = False
    current_chunk_index: int = 0
    total_chunks: int = 0
    processed_chunks: int = 0
    failed_chunks: int = 0  # permanently failed only
    start_time: Optional[float] = None


@dataclass(frozen=True)
class CheckpointState(BaseDomainModel):
    """Progress snapshot stored inside a checkpoint."""

    current_chunk: int = 0
    total_chunks: int = 0
    current_line: int = 0
    total_lines: int = 0
    bytes_processed: int = 0
    total_bytes: int = 0
    start_time: Optional[float] = None
    pause_time: Optional[float] = None


@dataclass
class Checkpoint(BaseDomainModel):
    """
    Persisted, checksum-verified progress snapshot.

    The checksum covers every serialized field except ``checksum`` itself.
    """

    id: str
    timestamp: float
    file_path: str
    state: CheckpointState
    version: str = CHECKPOINT_VERSION
    metrics: Dict[str, Any] = field(default_factory=dict)
    chunks: List[int] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    checksum: Optional[str] = None

    def checksum_payload(self) -> Dict[str, Any]:
        """JSON form used for checksum calculation."""
        data = self.to_json()
        data.pop("checksum", None)
        return data

    @classmethod
    def missing_record_keys(cls, data: Dict[str, Any]) -> List[str]:
        """Keys absent from a persisted record, nested state keys as ``state.<key>``."""
        missing = cls.missing_json_keys(data)
        state = data.get("state")
        if isinstance(state, dict):
            missing.extend(f"state.{key}" for key in CheckpointState.missing_json_keys(state))
        return missing

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Checkpoint":
        """Deserialize, converting the nested state snapshot."""
        checkpoint = super().from_json(data)
        if isinstance(checkpoint.state, dict):
            checkpoint.state = CheckpointState.from_json(checkpoint.state)
        return checkpoint


@dataclass
class MemorySample(BaseDomainModel):
    """One entry of the rolling memory history."""

    timestamp: float
    usage: int


@dataclass
class MemoryState(BaseDomainModel):
    """MemoryManager state. Read-only to consumers."""

    is_monitoring: bool = False
    current_usage: int = 0
    peak_usage: int = 0
    baseline_usage: int = 0
    last_gc_time: Optional[float] = None
    gc_count: int = 0


@dataclass
class MemoryStatus(BaseDomainModel):
    """Point-in-time memory report."""

    current: int
    peak: int
    baseline: int
    percentage: float
    limit: int
    available: int
    status: MemoryPressure
    chunk_memory_tracked: int
    is_monitoring: bool


@dataclass
class MemoryLeakReport(BaseDomainModel):
    """Heuristic leak signal. Never blocks processing."""

    detected: bool
    growth_percentage: float
    recent_growth: int
    suspicious_objects: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PauseState(BaseDomainModel):
    """StreamPauseResume state."""

    is_paused: bool = False
    is_pausing: bool = False
    is_resuming: bool = False
    pause_time: Optional[float] = None
    resume_time: Optional[float] = None
    pause_duration: float = 0.0
    total_pause_duration: float = 0.0
    pause_reason: Optional[str] = None
    saved_state: Optional[Dict[str, Any]] = None


@dataclass
class PauseResult(BaseDomainModel):
    """Outcome of a pause request."""

    success: bool
    reason: Optional[str] = None
    pause_time: Optional[float] = None
    error: Optional[str] = None


@dataclass
class ResumeResult(BaseDomainModel):
    """Outcome of a resume request."""

    success: bool
    reason: Optional[str] = None
    resume_time: Optional[float] = None
    pause_duration: Optional[float] = None
    error: Optional[str] = None


@dataclass
class StreamingState(BaseDomainModel):
    """Facade-level streaming progress. Owned by ChunkedFileStreamer."""

    is_streaming: bool = False
    is_paused: bool = False
    current_file: Optional[str] = None
    current_chunk: int = 0
    total_chunks: int = 0
    current_line: int = 0
    total_lines: int = 0
    bytes_processed: int = 0
    total_bytes: int = 0
    start_time: Optional[float] = None
    pause_time: Optional[float] = None
    resume_time: Optional[float] = None
