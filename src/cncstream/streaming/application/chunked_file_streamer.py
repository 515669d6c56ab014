"""
Chunked File Streamer - end-to-end streaming of one G-code program.

Wires the FileAnalyzer, MemoryManager, CheckpointManager, StreamPauseResume
and ChunkProcessor together. Component notifications are routed through this
facade, which reacts to the ones that drive other components and forwards
all of them to the caller's progress_callback.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any

from cncstream.shared.infrastructure.logging import get_logger
from cncstream.streaming.application.checkpoint_manager import CheckpointManager
from cncstream.streaming.application.chunk_processor import ChunkProcessor
from cncstream.streaming.application.file_analyzer import FileAnalyzer
from cncstream.streaming.application.memory_manager import MemoryManager
from cncstream.streaming.application.pause_resume import StreamPauseResume
from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.exceptions import ProcessingInProgressError
from cncstream.streaming.domain.interfaces import IStreamingManager, ProgressCallback
from cncstream.streaming.domain.models import (
    Checkpoint,
    FileAnalysis,
    PauseResult,
    ResumeResult,
    StreamingState,
)

logger = get_logger(__name__)


class ChunkedFileStreamer:
    """
    Streams large programs chunk by chunk with checkpointing and pause/resume.

    Usage:
        streamer = ChunkedFileStreamer(manager, config, progress_callback=on_event)
        summary = await streamer.start_chunked_streaming("part.nc", resume_from_checkpoint=True)
    """

    def __init__(
        self,
        streaming_manager: IStreamingManager,
        config: StreamingConfig | None = None,
        progress_callback: ProgressCallback | None = None,
        memory_manager: MemoryManager | None = None,
        checkpoint_manager: CheckpointManager | None = None,
    ):
        self.config = config or StreamingConfig()
        self.progress_callback = progress_callback

        self.file_analyzer = FileAnalyzer(self.config, self._forward)
        self.memory_manager = memory_manager or MemoryManager(self.config, self._forward)
        self.checkpoint_manager = checkpoint_manager or CheckpointManager(self.config, self._forward)
        self.pause_resume = StreamPauseResume(self.config, self._on_pause_event)
        self.chunk_processor = ChunkProcessor(
            streaming_manager,
            self.config,
            self._on_processor_event,
            memory_manager=self.memory_manager,
        )
        self.pause_resume.add_readiness_waiter(self.chunk_processor.wait_until_idle)

        self.streaming_state = StreamingState()
        self.current_analysis: FileAnalysis | None = None
        self._chunk_size = self.config.chunk_size
        self._lines_since_checkpoint = 0
        self._pending_checkpoints: set[asyncio.Task] = set()
        self._stop_requested = False
        self._failed_checkpoints = 0

    def _forward(self, event: str, data: dict[str, Any]) -> None:
        if self.progress_callback:
            self.progress_callback(event, data)

    # ------------------------------------------------------------------
    # Component wiring
    # ------------------------------------------------------------------

    def _on_pause_event(self, event: str, data: dict[str, Any]) -> None:
        if event == "pause_requested":
            # Stop dispatching so in-flight chunks can drain
            self.chunk_processor.pause()
        elif event == "pause_execute":
            self.chunk_processor.pause()
            self.streaming_state.is_paused = True
            self.streaming_state.pause_time = time.time()
        elif event == "pause_failed":
            self.chunk_processor.resume()
        elif event == "resume_execute":
            self.chunk_processor.resume()
            self.streaming_state.is_paused = False
            self.streaming_state.resume_time = time.time()

        self._forward(event, data)

    def _on_processor_event(self, event: str, data: dict[str, Any]) -> None:
        # Permanently failed chunks are passed over and count toward line and byte progress
        if event in ("chunk_completed", "chunk_failed"):
            self._record_chunk_progress(data["chunk_index"], data["current_chunk_index"])

        self._forward(event, data)

    def _record_chunk_progress(self, chunk_index: int, resume_point: int) -> None:
        state = self.streaming_state
        state.current_chunk = resume_point

        if self.current_analysis is None:
            return

        chunk = self.current_analysis.chunks[chunk_index]
        state.current_line += chunk.line_count
        state.bytes_processed += chunk.byte_length

        self._lines_since_checkpoint += chunk.line_count
        if self.config.enable_checkpointing and self._lines_since_checkpoint >= self.config.checkpoint_interval:
            self._lines_since_checkpoint = 0
            task = asyncio.get_running_loop().create_task(self.create_checkpoint())
            self._pending_checkpoints.add(task)
            task.add_done_callback(self._on_checkpoint_done)

    def _on_checkpoint_done(self, task: asyncio.Task) -> None:
        self._pending_checkpoints.discard(task)
        if task.cancelled():
            return

        error = task.exception()
        if error is not None:
            self._failed_checkpoints += 1
            logger.error(
                "checkpoint_failed",
                file=self.streaming_state.current_file,
                error=str(error),
                error_type=type(error).__name__,
            )
            self._forward(
                "checkpoint_failed",
                {"file_path": self.streaming_state.current_file, "error": str(error), "error_type": type(error).__name__},
            )

    # ------------------------------------------------------------------
    # Streaming lifecycle
    # ------------------------------------------------------------------

    async def start_chunked_streaming(self, file_path: str | Path, resume_from_checkpoint: bool = False) -> dict[str, Any]:
        """
        Analyze and stream a program.

        Raises:
            ProcessingInProgressError: If this streamer is already streaming
            AnalysisError: If the file cannot be read
        """
        if self.streaming_state.is_streaming:
            raise ProcessingInProgressError("Streaming already in progress")

        path = str(file_path)
        self.streaming_state = StreamingState(is_streaming=True, current_file=path, start_time=time.time())
        self._lines_since_checkpoint = 0
        self._stop_requested = False
        self._failed_checkpoints = 0

        logger.info("chunked_streaming_started", file=path, resume=resume_from_checkpoint)
        self.memory_manager.start_monitoring()

        try:
            checkpoint = None
            if resume_from_checkpoint and self.config.resume_from_checkpoint:
                checkpoint = await self.checkpoint_manager.load_checkpoint(path)

            self.memory_manager.check_memory_usage()
            chunk_size = self.memory_manager.get_chunk_size_recommendation(self.config.chunk_size)
            if checkpoint is not None:
                # Chunk indexes are only meaningful with the chunking they were recorded under
                chunk_size = checkpoint.metrics.get("chunk_size", chunk_size)
            self._chunk_size = chunk_size

            analysis = await self.file_analyzer.analyze_file(path, chunk_size)
            self.current_analysis = analysis

            if checkpoint is not None and checkpoint.state.total_lines != analysis.total_lines:
                logger.warning(
                    "checkpoint_file_mismatch",
                    checkpoint_id=checkpoint.id,
                    checkpoint_lines=checkpoint.state.total_lines,
                    file_lines=analysis.total_lines,
                )
                checkpoint = None

            start_index = checkpoint.state.current_chunk if checkpoint is not None else 0
            self._restore_position(analysis, start_index)

            if self._stop_requested:
                summary = {
                    "total_chunks": len(analysis.chunks),
                    "processed_chunks": 0,
                    "failed_chunks": 0,
                    "total_retries": 0,
                    "duration": 0.0,
                }
            else:
                # A pause requested during analysis must hold the first dispatch
                summary = await self.chunk_processor.start_processing(
                    analysis.chunks,
                    start_index,
                    start_paused=self.pause_resume.pause_state.is_paused,
                )

            if self._pending_checkpoints:
                # Failures are reported by _on_checkpoint_done
                await asyncio.gather(*self._pending_checkpoints, return_exceptions=True)
            if not self._stop_requested and self.config.enable_checkpointing:
                await self.create_checkpoint()
        finally:
            self.memory_manager.stop_monitoring()
            self.streaming_state.is_streaming = False

        result = {
            **summary,
            "file_path": path,
            "total_lines": analysis.total_lines,
            "start_chunk": start_index,
            "resumed": checkpoint is not None,
            "chunk_size": chunk_size,
            "stopped": self._stop_requested,
            "failed_checkpoints": self._failed_checkpoints,
        }
        logger.info("chunked_streaming_finished", **result)
        return result

    def _restore_position(self, analysis: FileAnalysis, start_index: int) -> None:
        skipped = analysis.chunks[:start_index]
        state = self.streaming_state
        state.total_chunks = len(analysis.chunks)
        state.total_lines = analysis.total_lines
        state.total_bytes = analysis.total_bytes
        state.current_chunk = start_index
        state.current_line = sum(chunk.line_count for chunk in skipped)
        state.bytes_processed = sum(chunk.byte_length for chunk in skipped)

    async def pause_streaming(self, reason: str = "user_request") -> PauseResult:
        if not self.streaming_state.is_streaming:
            return PauseResult(success=False, reason="not_streaming")

        result = await self.pause_resume.request_pause(reason=reason, state=self.streaming_state.to_json())
        if result.success and self.config.save_state_on_pause and self.config.enable_checkpointing:
            await self.create_checkpoint()
        return result

    async def resume_streaming(self) -> ResumeResult:
        return await self.pause_resume.request_resume()

    async def stop_streaming(self, reason: str = "user_request") -> dict[str, Any] | None:
        """Stop the active stream. Lines already handed to the streaming manager are abandoned."""
        if not self.streaming_state.is_streaming:
            return None

        self._stop_requested = True
        counts = self.chunk_processor.stop()
        if self.pause_resume.pause_state.is_paused:
            await self.pause_resume.request_resume(forced=True)

        logger.info("chunked_streaming_stopped", reason=reason, **counts)
        return {**counts, "reason": reason}

    async def create_checkpoint(self, persist_to_disk: bool = True) -> Checkpoint | None:
        if not self.streaming_state.current_file:
            return None

        processor = self.chunk_processor
        metrics = processor.metrics
        return await self.checkpoint_manager.create_checkpoint(
            self.streaming_state,
            persist_to_disk=persist_to_disk,
            metrics={"chunk_size": self._chunk_size},
            processed_chunks=processor.completed_chunk_indexes(),
            chunks_successful=metrics["total_chunks_processed"],
            chunks_failed=metrics["total_chunks_failed"],
            average_chunk_time=metrics["average_chunk_time"],
            last_error=metrics["last_error"],
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_progress(self) -> dict[str, Any]:
        state = self.streaming_state
        elapsed = time.time() - state.start_time if state.start_time else 0.0
        line_fraction = state.current_line / state.total_lines if state.total_lines else 0.0

        estimated_remaining = None
        if 0 < line_fraction < 1:
            estimated_remaining = elapsed / line_fraction - elapsed

        return {
            "file_path": state.current_file,
            "is_streaming": state.is_streaming,
            "is_paused": state.is_paused,
            "current_chunk": state.current_chunk,
            "total_chunks": state.total_chunks,
            "current_line": state.current_line,
            "total_lines": state.total_lines,
            "bytes_processed": state.bytes_processed,
            "total_bytes": state.total_bytes,
            "chunk_progress": state.current_chunk / state.total_chunks * 100 if state.total_chunks else 0.0,
            "line_progress": line_fraction * 100,
            "byte_progress": state.bytes_processed / state.total_bytes * 100 if state.total_bytes else 0.0,
            "elapsed_time": elapsed,
            "estimated_remaining": estimated_remaining,
        }

    def get_streaming_stats(self) -> dict[str, Any]:
        return {
            "streaming": self.streaming_state.to_json(),
            "analysis": self.file_analyzer.get_analysis_statistics(),
            "processing": self.chunk_processor.get_metrics(),
            "memory": self.memory_manager.get_statistics(),
            "checkpoints": self.checkpoint_manager.get_statistics(),
            "pause_resume": self.pause_resume.get_pause_metrics(),
        }

    def get_component_status(self) -> dict[str, Any]:
        return {
            "processor": self.chunk_processor.get_status(),
            "memory": self.memory_manager.get_memory_status().to_json(),
            "pause_resume": self.pause_resume.get_capabilities(),
            "checkpointing": {
                "enabled": self.config.enable_checkpointing,
                "checkpoints_in_memory": len(self.checkpoint_manager.memory_store),
            },
        }

    def cleanup(self) -> None:
        if self.chunk_processor.processing_state.is_processing:
            self.chunk_processor.stop()
        for task in self._pending_checkpoints:
            task.cancel()
        self._pending_checkpoints.clear()

        self.memory_manager.cleanup()
        self.checkpoint_manager.cleanup()
        self.pause_resume.cleanup()
        self.current_analysis = None
        logger.debug("chunked_file_streamer_cleaned_up")
