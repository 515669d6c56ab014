"""
Streaming collaborator contracts.

IStreamingManager is implemented outside this package by the line-level
transport. ICheckpointStore backends live in streaming.infrastructure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from cncstream.streaming.domain.models import Checkpoint, LineContext

# progress_callback(event_name, payload)
ProgressCallback = Callable[[str, Dict[str, Any]], None]


class IStreamingManager(ABC):
    """
    Sends one program line to the controller.

    A failed send raises an exception carrying a human readable message;
    the engine does not interpret failure causes. Per-line timeouts are the
    implementation's responsibility.
    """

    @abstractmethod
    async def send_line(self, line: str, context: LineContext) -> Any:
        """Send a line and return the controller's result."""
        ...


class ICheckpointStore(ABC):
    """
    Checkpoint storage backend.

    Retention and validation live in CheckpointManager; stores only persist.
    """

    @abstractmethod
    async def save_async(self, checkpoint: Checkpoint) -> Checkpoint:
        """Save or replace a checkpoint."""
        ...

    @abstractmethod
    async def get_async(self, file_path: str, checkpoint_id: str) -> Checkpoint | None:
        """Get a checkpoint by id. Raises on unreadable records."""
        ...

    @abstractmethod
    async def list_ids_async(self, file_path: str) -> list[str]:
        """Checkpoint ids stored for a source file, newest first."""
        ...

    @abstractmethod
    async def delete_async(self, file_path: str, checkpoint_id: str) -> bool:
        """Delete a checkpoint. Returns True if deleted."""
        ...

    async def prune_async(self, file_path: str, keep: int) -> list[str]:
        """Delete all but the newest ``keep`` checkpoints. Returns removed ids."""
        ids = await self.list_ids_async(file_path)
        removed = []
        for checkpoint_id in ids[keep:]:
            if await self.delete_async(file_path, checkpoint_id):
                removed.append(checkpoint_id)
        return removed
