"""
Chunk Processor - drive chunks through the streaming manager.

Chunks are dispatched in index order with a bounded number in flight. Lines
within a chunk are sent strictly in order. Failed chunks are retried after
the main queue drains; a chunk that exhausts its retries is recorded as
failed and processing carries on with the rest of the program.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Sequence

from cncstream.shared.infrastructure.logging import get_logger
from cncstream.shared.infrastructure.resilience import OperationTimeoutError, with_timeout_async
from cncstream.streaming.application.memory_manager import MemoryManager
from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.enums import ChunkStatus
from cncstream.streaming.domain.exceptions import ChunkExecutionError, ChunkTimeoutError, ProcessingInProgressError
from cncstream.streaming.domain.interfaces import IStreamingManager, ProgressCallback
from cncstream.streaming.domain.models import Chunk, LineContext, LineResult, ProcessingState

logger = get_logger(__name__)

HIGH_FAILURE_RATE = 0.1


class ChunkProcessor:
    """
    Processes analyzed chunks against an IStreamingManager.

    ``processing_state.current_chunk_index`` is the resume point: the lowest
    chunk index not yet finished (completed or permanently failed). It never
    moves backwards.
    """

    def __init__(
        self,
        streaming_manager: IStreamingManager,
        config: StreamingConfig | None = None,
        progress_callback: ProgressCallback | None = None,
        memory_manager: MemoryManager | None = None,
    ):
        self.streaming_manager = streaming_manager
        self.config = config or StreamingConfig()
        self.progress_callback = progress_callback
        self.memory_manager = memory_manager

        self.processing_state = ProcessingState()
        self._chunk_queue: deque[Chunk] = deque()
        self._retry_queue: deque[Chunk] = deque()
        self._active: dict[int, asyncio.Task] = {}
        self._chunk_status: dict[int, ChunkStatus] = {}
        self._retry_counts: dict[int, int] = {}
        self._finished: set[int] = set()
        self._completed: set[int] = set()
        self._first_index = 0
        self._stopped = False

        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._idle_event = asyncio.Event()
        self._idle_event.set()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_chunks)

        self._reset_metrics()

    def _reset_metrics(self) -> None:
        self.metrics = {
            "total_chunks_processed": 0,
            "total_chunks_failed": 0,
            "total_retries": 0,
            "total_lines_processed": 0,
            "total_lines_failed": 0,
            "total_processing_time": 0.0,
            "average_chunk_time": 0.0,
            "max_concurrent_reached": 0,
            "last_error": None,
        }

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.progress_callback:
            self.progress_callback(event, data)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def start_processing(
        self, chunks: Sequence[Chunk], start_index: int = 0, start_paused: bool = False
    ) -> dict[str, Any]:
        """
        Process chunks from ``start_index`` until every chunk is finished or stop() is called.

        ``start_paused`` holds dispatch until resume() is called.

        Raises:
            ProcessingInProgressError: If a run is already active
        """
        if self.processing_state.is_processing:
            raise ProcessingInProgressError("Chunk processing already in progress")

        pending = [chunk for chunk in chunks if chunk.index >= start_index]

        self.processing_state = ProcessingState(
            is_processing=True,
            current_chunk_index=start_index,
            total_chunks=len(chunks),
            start_time=time.time(),
        )
        self._chunk_queue = deque(pending)
        self._retry_queue.clear()
        self._active.clear()
        self._retry_counts.clear()
        self._finished.clear()
        self._completed.clear()
        self._chunk_status = {chunk.index: ChunkStatus.QUEUED for chunk in pending}
        self._first_index = start_index
        self._stopped = False
        self._resume_event.set()
        self._idle_event.set()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_chunks)

        logger.info(
            "chunk_processing_started",
            total_chunks=len(chunks),
            start_index=start_index,
            queued=len(pending),
            max_concurrent=self.config.max_concurrent_chunks,
        )
        if start_paused:
            self.pause()

        started = time.monotonic()
        try:
            await self._run()
        finally:
            self.processing_state.is_processing = False
            self.processing_state.is_paused = False

        summary = self._summary(time.monotonic() - started)
        if not self._stopped:
            logger.info("chunk_processing_finished", **summary)
            self._emit("processing_completed", summary)
        return summary

    async def _run(self) -> None:
        while not self._stopped:
            await self._resume_event.wait()
            if self._stopped:
                break

            chunk = self._next_chunk()
            if chunk is None:
                if not self._active:
                    break
                # A running chunk may still queue a retry
                await asyncio.wait(list(self._active.values()), return_when=asyncio.FIRST_COMPLETED)
                continue

            semaphore = self._semaphore
            await semaphore.acquire()

            if self._stopped:
                semaphore.release()
                break
            if not self._resume_event.is_set():
                # Paused while waiting for a slot
                semaphore.release()
                self._requeue(chunk)
                continue

            self._dispatch(chunk, semaphore)

    def _next_chunk(self) -> Chunk | None:
        if self._chunk_queue:
            return self._chunk_queue.popleft()
        if self._retry_queue:
            return self._retry_queue.popleft()
        return None

    def _requeue(self, chunk: Chunk) -> None:
        if self._chunk_status.get(chunk.index) is ChunkStatus.RETRY_QUEUED:
            self._retry_queue.appendleft(chunk)
        else:
            self._chunk_queue.appendleft(chunk)

    def _dispatch(self, chunk: Chunk, semaphore: asyncio.Semaphore) -> None:
        self._chunk_status[chunk.index] = ChunkStatus.ACTIVE
        self._idle_event.clear()

        if self.memory_manager is not None:
            self.memory_manager.track_chunk_memory(chunk.chunk_id, chunk.byte_length)

        task = asyncio.get_running_loop().create_task(self._run_chunk(chunk, semaphore))
        self._active[chunk.index] = task
        self.metrics["max_concurrent_reached"] = max(self.metrics["max_concurrent_reached"], len(self._active))

    async def _run_chunk(self, chunk: Chunk, semaphore: asyncio.Semaphore) -> None:
        started = time.monotonic()
        try:
            results = await self._execute_chunk(chunk)
        except (ChunkTimeoutError, ChunkExecutionError) as e:
            self._handle_chunk_failure(chunk, e)
        else:
            self._handle_chunk_success(chunk, results, time.monotonic() - started)
        finally:
            semaphore.release()
            if self._active.get(chunk.index) is asyncio.current_task():
                del self._active[chunk.index]
            if not self._active:
                self._idle_event.set()
            if self.memory_manager is not None:
                self.memory_manager.release_chunk_memory(chunk.chunk_id)

    async def _execute_chunk(self, chunk: Chunk) -> list[LineResult]:
        try:
            return await with_timeout_async(
                self._process_chunk(chunk),
                timeout_seconds=self.config.chunk_timeout,
                operation_name=f"chunk_{chunk.index}",
            )
        except OperationTimeoutError as e:
            raise ChunkTimeoutError(chunk.index, self.config.chunk_timeout) from e

    async def _process_chunk(self, chunk: Chunk) -> list[LineResult]:
        """Send every line of the chunk in order. Raises ChunkExecutionError past the failure tolerance."""
        results: list[LineResult] = []
        failed = 0
        last_error = None
        last_offset = chunk.line_count - 1

        for offset, line in enumerate(chunk.lines):
            line_number = chunk.start_line + offset
            context = LineContext(
                line_number=line_number,
                chunk_index=chunk.index,
                is_last_line_in_chunk=offset == last_offset,
            )
            try:
                result = await self.streaming_manager.send_line(line, context)
            except Exception as e:
                failed += 1
                last_error = str(e)
                results.append(LineResult(line_number=line_number, line=line, success=False, error=last_error))
                logger.debug("line_send_failed", chunk_index=chunk.index, line_number=line_number, error=last_error)
            else:
                results.append(LineResult(line_number=line_number, line=line, success=True, result=result))

            self.metrics["total_lines_processed"] += 1
            self._emit(
                "line_processed",
                {"chunk_index": chunk.index, "line_number": line_number, "success": results[-1].success},
            )

        self.metrics["total_lines_failed"] += failed

        if chunk.line_count and failed / chunk.line_count > self.config.line_failure_tolerance:
            raise ChunkExecutionError(chunk.index, failed, chunk.line_count, last_error)
        return results

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _mark_finished(self, chunk: Chunk) -> None:
        self._finished.add(chunk.index)
        state = self.processing_state
        index = max(state.current_chunk_index, self._first_index)
        while index in self._finished:
            index += 1
        state.current_chunk_index = index

    def _handle_chunk_success(self, chunk: Chunk, results: list[LineResult], elapsed: float) -> None:
        self._chunk_status[chunk.index] = ChunkStatus.COMPLETED
        self._completed.add(chunk.index)
        self.processing_state.processed_chunks += 1
        self._mark_finished(chunk)

        m = self.metrics
        m["total_chunks_processed"] += 1
        m["total_processing_time"] += elapsed
        m["average_chunk_time"] = m["total_processing_time"] / m["total_chunks_processed"]

        failed_lines = sum(1 for r in results if not r.success)
        if self.config.validate_chunk_completion:
            self._validate_chunk_completion(chunk, results, failed_lines)

        logger.info(
            "chunk_processing_completed",
            index=chunk.index,
            lines=chunk.line_count,
            failed_lines=failed_lines,
            duration=f"{elapsed:.3f}s",
        )
        self._emit(
            "chunk_completed",
            {
                "chunk_index": chunk.index,
                "line_count": chunk.line_count,
                "failed_lines": failed_lines,
                "processing_time": elapsed,
                "retries": self._retry_counts.get(chunk.index, 0),
                "current_chunk_index": self.processing_state.current_chunk_index,
            },
        )

    def _validate_chunk_completion(self, chunk: Chunk, results: list[LineResult], failed_lines: int) -> None:
        if len(results) != chunk.line_count:
            logger.warning(
                "chunk_line_count_mismatch", index=chunk.index, expected=chunk.line_count, actual=len(results)
            )
        if results and failed_lines / len(results) > HIGH_FAILURE_RATE:
            logger.warning(
                "chunk_high_failure_rate",
                index=chunk.index,
                failure_rate=f"{failed_lines / len(results) * 100:.1f}%",
            )

    def _handle_chunk_failure(self, chunk: Chunk, error: Exception) -> None:
        self.metrics["last_error"] = str(error)
        retries = self._retry_counts.get(chunk.index, 0)

        if self.config.retry_failed_chunks and retries < self.config.max_chunk_retries:
            self._retry_counts[chunk.index] = retries + 1
            self.metrics["total_retries"] += 1
            self._chunk_status[chunk.index] = ChunkStatus.RETRY_QUEUED
            self._retry_queue.append(chunk)

            logger.warning("chunk_retry_queued", index=chunk.index, retry=retries + 1, error=str(error))
            self._emit(
                "chunk_retry_queued",
                {"chunk_index": chunk.index, "retry_count": retries + 1, "error": str(error)},
            )
            return

        self._chunk_status[chunk.index] = ChunkStatus.FAILED
        self.processing_state.failed_chunks += 1
        self.metrics["total_chunks_failed"] += 1
        self._mark_finished(chunk)

        logger.error("chunk_failed_permanently", index=chunk.index, retries=retries, error=str(error))
        self._emit(
            "chunk_failed",
            {
                "chunk_index": chunk.index,
                "retries": retries,
                "error": str(error),
                "error_type": type(error).__name__,
                "current_chunk_index": self.processing_state.current_chunk_index,
            },
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def pause(self) -> bool:
        """Stop dispatching new chunks. In-flight chunks run to completion."""
        if not self.processing_state.is_processing or self.processing_state.is_paused:
            return False

        self._resume_event.clear()
        self.processing_state.is_paused = True
        logger.info("chunk_processing_paused", active=len(self._active))
        self._emit("processing_paused", {"current_chunk_index": self.processing_state.current_chunk_index})
        return True

    def resume(self) -> bool:
        if not self.processing_state.is_paused:
            return False

        self.processing_state.is_paused = False
        self._resume_event.set()
        logger.info("chunk_processing_resumed", current_chunk_index=self.processing_state.current_chunk_index)
        self._emit("processing_resumed", {"current_chunk_index": self.processing_state.current_chunk_index})
        return True

    def stop(self) -> dict[str, Any]:
        """Cancel in-flight chunks and drop all queued work. Returns final counts."""
        self._stopped = True
        for task in self._active.values():
            task.cancel()

        self._active.clear()
        self._chunk_queue.clear()
        self._retry_queue.clear()
        self._idle_event.set()
        self._resume_event.set()

        state = self.processing_state
        state.is_processing = False
        state.is_paused = False

        counts = {
            "processed_chunks": state.processed_chunks,
            "failed_chunks": state.failed_chunks,
            "total_chunks": state.total_chunks,
            "current_chunk_index": state.current_chunk_index,
        }
        logger.info("chunk_processing_stopped", **counts)
        self._emit("processing_stopped", counts)
        return counts

    async def wait_until_idle(self) -> None:
        """Return once no chunk is in flight."""
        await self._idle_event.wait()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recommended_chunk_size(self, current_chunk_size: int) -> int:
        if self.memory_manager is None:
            return current_chunk_size
        return self.memory_manager.get_chunk_size_recommendation(current_chunk_size)

    def get_chunk_status(self, index: int) -> ChunkStatus | None:
        return self._chunk_status.get(index)

    def get_retry_count(self, index: int) -> int:
        return self._retry_counts.get(index, 0)

    def completed_chunk_indexes(self) -> list[int]:
        return sorted(self._completed)

    def _summary(self, duration: float) -> dict[str, Any]:
        state = self.processing_state
        return {
            "total_chunks": state.total_chunks,
            "processed_chunks": state.processed_chunks,
            "failed_chunks": state.failed_chunks,
            "total_retries": self.metrics["total_retries"],
            "duration": duration,
        }

    def get_status(self) -> dict[str, Any]:
        return {
            **self.processing_state.to_json(),
            "queuedChunks": len(self._chunk_queue),
            "retryQueuedChunks": len(self._retry_queue),
            "activeChunks": sorted(self._active),
        }

    def get_metrics(self) -> dict[str, Any]:
        m = self.metrics
        attempts = m["total_chunks_processed"] + m["total_chunks_failed"]
        return {
            **m,
            "success_rate": m["total_chunks_processed"] / attempts if attempts else 0.0,
            "failure_rate": m["total_chunks_failed"] / attempts if attempts else 0.0,
            "retry_rate": m["total_retries"] / attempts if attempts else 0.0,
        }

    def export_data(self) -> dict[str, Any]:
        return {
            "state": self.processing_state.to_json(),
            "metrics": self.get_metrics(),
            "chunk_statuses": {index: status.value for index, status in sorted(self._chunk_status.items())},
            "retry_counts": dict(self._retry_counts),
            "config": {
                "max_concurrent_chunks": self.config.max_concurrent_chunks,
                "max_chunk_retries": self.config.max_chunk_retries,
                "chunk_timeout": self.config.chunk_timeout,
            },
        }

    def reset_statistics(self) -> None:
        self._reset_metrics()
        logger.debug("chunk_processor_statistics_reset")
