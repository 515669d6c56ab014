"""
Streaming error taxonomy.

Only AnalysisError and ProcessingInProgressError ever reach callers; chunk
errors drive retries inside the ChunkProcessor and checkpoint corruption only
disqualifies a single candidate during load.
"""


class StreamingError(Exception):
    """Base class for streaming engine errors."""

    pass


class AnalysisError(StreamingError):
    """Source file could not be opened or read."""

    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"Failed to analyze '{file_path}': {reason}")


class ProcessingInProgressError(StreamingError):
    """A processing run is already active on this instance."""

    pass


class ChunkTimeoutError(StreamingError):
    """Chunk did not finish within chunk_timeout."""

    def __init__(self, chunk_index: int, timeout_seconds: float):
        self.chunk_index = chunk_index
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Chunk {chunk_index} processing timeout after {timeout_seconds}s")


class ChunkExecutionError(StreamingError):
    """Too many lines of a chunk failed to send."""

    def __init__(self, chunk_index: int, failed_lines: int, line_count: int, last_error: str | None = None):
        self.chunk_index = chunk_index
        self.failed_lines = failed_lines
        self.line_count = line_count
        self.last_error = last_error
        message = f"Chunk {chunk_index}: {failed_lines}/{line_count} lines failed"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


class CheckpointCorruption(StreamingError):
    """Checkpoint failed validation (missing field, checksum mismatch or stale)."""

    def __init__(self, checkpoint_id: str | None, reason: str):
        self.checkpoint_id = checkpoint_id
        self.reason = reason
        super().__init__(f"Checkpoint {checkpoint_id or '<unknown>'} rejected: {reason}")
