"""Streaming module - chunked file streaming with checkpoints and pause/resume."""

from cncstream.streaming.application.checkpoint_manager import CheckpointManager
from cncstream.streaming.application.chunk_processor import ChunkProcessor
from cncstream.streaming.application.chunked_file_streamer import ChunkedFileStreamer
from cncstream.streaming.application.file_analyzer import FileAnalyzer
from cncstream.streaming.application.memory_manager import MemoryManager
from cncstream.streaming.application.pause_resume import StreamPauseResume
from cncstream.streaming.domain.config import StreamingConfig, load_streaming_config

__all__ = [
    "ChunkedFileStreamer",
    "FileAnalyzer",
    "ChunkProcessor",
    "MemoryManager",
    "CheckpointManager",
    "StreamPauseResume",
    "StreamingConfig",
    "load_streaming_config",
]
