"""
Checkpoint Manager - persist and restore streaming progress.

Checkpoints are kept in an in-memory index and, unless suppressed, on disk
next to the source file. Every checkpoint carries a sha256 checksum over its
canonical JSON; loading skips candidates that are incomplete, corrupted or
older than the retention window.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import time
from typing import Any

from cncstream.shared.infrastructure.logging import get_logger
from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.exceptions import CheckpointCorruption
from cncstream.streaming.domain.interfaces import ICheckpointStore, ProgressCallback
from cncstream.streaming.domain.models import Checkpoint, CheckpointState, StreamingState
from cncstream.streaming.infrastructure.checkpoint_store import FileCheckpointStore, MemoryCheckpointStore

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
REQUIRED_FIELDS = ("id", "timestamp", "file_path", "state", "checksum")


def calculate_checksum(payload: dict[str, Any]) -> str:
    """sha256 over canonical (sorted, compact) JSON."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CheckpointManager:
    """
    Creates, validates, loads and rotates checkpoints.

    Notifications: checkpoint_created, checkpoint_loaded, checkpoint_removed,
    checkpoints_cleared.
    """

    def __init__(
        self,
        config: StreamingConfig | None = None,
        progress_callback: ProgressCallback | None = None,
        memory_store: MemoryCheckpointStore | None = None,
        disk_store: ICheckpointStore | None = None,
    ):
        self.config = config or StreamingConfig()
        self.progress_callback = progress_callback
        self.memory_store = memory_store or MemoryCheckpointStore()
        self.disk_store = disk_store or FileCheckpointStore(
            directory_name=self.config.checkpoint_directory,
            compression_enabled=self.config.compression_enabled,
        )
        self._last_id_ns = 0
        self._reset_metrics()

    def _reset_metrics(self) -> None:
        self.metrics = {
            "checkpoints_created": 0,
            "checkpoints_loaded": 0,
            "checkpoints_removed": 0,
            "checkpoints_corrupted": 0,
            "last_checkpoint_time": None,
        }

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.progress_callback:
            self.progress_callback(event, data)

    def _generate_id(self) -> str:
        # Strictly increasing so ids sort in creation order
        now = max(time.time_ns(), self._last_id_ns + 1)
        self._last_id_ns = now
        return f"cp_{now:020d}_{secrets.token_hex(4)}"

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_checkpoint(
        self,
        streaming_state: StreamingState,
        persist_to_disk: bool = True,
        metrics: dict[str, Any] | None = None,
        processed_chunks: list[int] | None = None,
        chunks_successful: int = 0,
        chunks_failed: int = 0,
        average_chunk_time: float = 0.0,
        last_error: str | None = None,
    ) -> Checkpoint | None:
        """
        Snapshot the current streaming state.

        Returns:
            The saved checkpoint, or None when checkpointing is disabled
        """
        if not self.config.enable_checkpointing:
            return None
        if not streaming_state.current_file:
            raise ValueError("Cannot checkpoint a stream without a current file")

        checkpoint = Checkpoint(
            id=self._generate_id(),
            timestamp=time.time(),
            file_path=streaming_state.current_file,
            state=CheckpointState(
                current_chunk=streaming_state.current_chunk,
                total_chunks=streaming_state.total_chunks,
                current_line=streaming_state.current_line,
                total_lines=streaming_state.total_lines,
                bytes_processed=streaming_state.bytes_processed,
                total_bytes=streaming_state.total_bytes,
                start_time=streaming_state.start_time,
                pause_time=streaming_state.pause_time,
            ),
            metrics=dict(metrics or {}),
            chunks=list(processed_chunks or []),
            metadata={
                "chunks_successful": chunks_successful,
                "chunks_failed": chunks_failed,
                "average_chunk_time": average_chunk_time,
                "last_error": last_error,
            },
        )
        checkpoint.checksum = self.calculate_checksum(checkpoint)

        await self.memory_store.save_async(checkpoint)
        if persist_to_disk:
            await self.disk_store.save_async(checkpoint)

        if self.config.auto_cleanup:
            await self._cleanup_old_checkpoints(checkpoint.file_path, include_disk=persist_to_disk)

        self.metrics["checkpoints_created"] += 1
        self.metrics["last_checkpoint_time"] = checkpoint.timestamp

        logger.info(
            "checkpoint_created",
            checkpoint_id=checkpoint.id,
            file=checkpoint.file_path,
            chunk=checkpoint.state.current_chunk,
            line=checkpoint.state.current_line,
            persisted=persist_to_disk,
        )
        self._emit("checkpoint_created", checkpoint.to_json())
        return checkpoint

    async def _cleanup_old_checkpoints(self, file_path: str, include_disk: bool = True) -> None:
        keep = self.config.max_checkpoints
        removed = await self.memory_store.prune_async(file_path, keep)
        if include_disk:
            removed += await self.disk_store.prune_async(file_path, keep)

        if removed:
            logger.debug("old_checkpoints_pruned", file=file_path, removed=len(removed), keep=keep)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def calculate_checksum(self, checkpoint: Checkpoint) -> str:
        return calculate_checksum(checkpoint.checksum_payload())

    def validate_checkpoint(self, checkpoint: Checkpoint) -> None:
        """
        Check completeness, integrity and age.

        Raises:
            CheckpointCorruption: If any check fails
        """
        for name in REQUIRED_FIELDS:
            if getattr(checkpoint, name, None) in (None, ""):
                raise CheckpointCorruption(checkpoint.id, f"missing field '{name}'")
        if not isinstance(checkpoint.state, CheckpointState):
            raise CheckpointCorruption(checkpoint.id, "malformed state snapshot")

        if self.config.validate_checksums:
            expected = self.calculate_checksum(checkpoint)
            if checkpoint.checksum != expected:
                raise CheckpointCorruption(checkpoint.id, "checksum mismatch")

        age = time.time() - checkpoint.timestamp
        if age > self.config.retention_days * SECONDS_PER_DAY:
            raise CheckpointCorruption(checkpoint.id, f"stale ({age / SECONDS_PER_DAY:.1f} days old)")

    def _is_valid(self, checkpoint: Checkpoint) -> bool:
        try:
            self.validate_checkpoint(checkpoint)
        except CheckpointCorruption as e:
            self.metrics["checkpoints_corrupted"] += 1
            logger.warning("checkpoint_rejected", checkpoint_id=e.checkpoint_id, reason=e.reason)
            return False
        return True

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load_checkpoint(self, file_path: str, load_from_disk: bool = True) -> Checkpoint | None:
        """
        Newest valid checkpoint for a file, in memory first, then on disk.

        Invalid candidates are skipped; returns None when none validate.
        """
        path = str(file_path)
        checkpoint = await self._find_valid(self.memory_store, path)
        source = "memory"

        if checkpoint is None and load_from_disk:
            checkpoint = await self._find_valid(self.disk_store, path)
            source = "disk"
            if checkpoint is not None:
                await self.memory_store.save_async(checkpoint)

        if checkpoint is None:
            logger.debug("no_valid_checkpoint", file=path)
            return None

        self.metrics["checkpoints_loaded"] += 1
        logger.info(
            "checkpoint_loaded",
            checkpoint_id=checkpoint.id,
            file=path,
            source=source,
            chunk=checkpoint.state.current_chunk,
        )
        self._emit("checkpoint_loaded", checkpoint.to_json())
        return checkpoint

    async def _find_valid(self, store: ICheckpointStore, file_path: str) -> Checkpoint | None:
        for checkpoint_id in await store.list_ids_async(file_path):
            try:
                candidate = await store.get_async(file_path, checkpoint_id)
            except (OSError, ValueError) as e:
                self.metrics["checkpoints_corrupted"] += 1
                logger.warning("checkpoint_unreadable", checkpoint_id=checkpoint_id, error=str(e))
                continue
            except CheckpointCorruption as e:
                self.metrics["checkpoints_corrupted"] += 1
                logger.warning("checkpoint_rejected", checkpoint_id=checkpoint_id, reason=e.reason)
                continue

            if candidate is not None and self._is_valid(candidate):
                return candidate
        return None

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def get_checkpoints_for_file(self, file_path: str) -> list[Checkpoint]:
        """In-memory checkpoints for a file, newest first."""
        checkpoints = []
        for checkpoint_id in await self.memory_store.list_ids_async(str(file_path)):
            checkpoint = await self.memory_store.get_async(str(file_path), checkpoint_id)
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints

    async def remove_checkpoint(self, checkpoint_id: str, remove_from_disk: bool = True) -> bool:
        checkpoint = next((cp for cp in self.memory_store.all() if cp.id == checkpoint_id), None)
        if checkpoint is None:
            return False

        await self.memory_store.delete_async(checkpoint.file_path, checkpoint_id)
        if remove_from_disk:
            await self.disk_store.delete_async(checkpoint.file_path, checkpoint_id)

        self.metrics["checkpoints_removed"] += 1
        logger.debug("checkpoint_removed", checkpoint_id=checkpoint_id)
        self._emit("checkpoint_removed", {"checkpoint_id": checkpoint_id, "file_path": checkpoint.file_path})
        return True

    async def clear_all_checkpoints(self, file_path: str | None = None) -> int:
        """Remove in-memory checkpoints (for one file or all). Disk records are kept."""
        if file_path is None:
            count = len(self.memory_store)
            self.memory_store.clear()
        else:
            ids = await self.memory_store.list_ids_async(str(file_path))
            for checkpoint_id in ids:
                await self.memory_store.delete_async(str(file_path), checkpoint_id)
            count = len(ids)

        logger.info("checkpoints_cleared", file=file_path, count=count)
        self._emit("checkpoints_cleared", {"file_path": file_path, "count": count})
        return count

    def get_statistics(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "checkpoints_in_memory": len(self.memory_store),
            "checkpointing_enabled": self.config.enable_checkpointing,
            "compression_enabled": self.config.compression_enabled,
        }

    def reset_statistics(self) -> None:
        self._reset_metrics()

    def cleanup(self) -> None:
        self.memory_store.clear()
        logger.debug("checkpoint_manager_cleaned_up")
