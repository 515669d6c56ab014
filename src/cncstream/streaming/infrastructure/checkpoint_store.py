"""
Checkpoint store backends.

MemoryCheckpointStore keeps checkpoints in-process; FileCheckpointStore writes
one JSON record per checkpoint under ``<source dir>/<checkpoint_directory>``.
Compressed records are ``compressed:`` followed by base64-encoded JSON.
"""

from __future__ import annotations

import base64
import json
from pathlib import Path

import aiofiles
import aiofiles.os

from cncstream.shared.infrastructure.logging import get_logger
from cncstream.streaming.domain.exceptions import CheckpointCorruption
from cncstream.streaming.domain.interfaces import ICheckpointStore
from cncstream.streaming.domain.models import Checkpoint

logger = get_logger(__name__)

COMPRESSED_PREFIX = "compressed:"
CHECKPOINT_SUFFIX = ".json"
RECORD_SEPARATOR = "__"


def encode_checkpoint(checkpoint: Checkpoint, compressed: bool = False) -> str:
    """Serialize a checkpoint record for disk."""
    if compressed:
        payload = json.dumps(checkpoint.to_json())
        return COMPRESSED_PREFIX + base64.b64encode(payload.encode("utf-8")).decode("ascii")
    return json.dumps(checkpoint.to_json(), indent=2)


def decode_checkpoint(data: str) -> Checkpoint:
    """
    Parse a checkpoint record.

    Raises:
        ValueError: If the record is not valid JSON
        CheckpointCorruption: If any record or state field is missing
    """
    if data.startswith(COMPRESSED_PREFIX):
        data = base64.b64decode(data[len(COMPRESSED_PREFIX):]).decode("utf-8")
    raw = json.loads(data)
    if not isinstance(raw, dict):
        raise ValueError("Checkpoint record is not an object")
    missing = Checkpoint.missing_record_keys(raw)
    if missing:
        raise CheckpointCorruption(raw.get("id"), "missing fields: " + ", ".join(missing))
    return Checkpoint.from_json(raw)


class MemoryCheckpointStore(ICheckpointStore):
    """In-process checkpoint index keyed by checkpoint id."""

    def __init__(self):
        self._checkpoints: dict[str, Checkpoint] = {}

    async def save_async(self, checkpoint: Checkpoint) -> Checkpoint:
        self._checkpoints[checkpoint.id] = checkpoint
        return checkpoint

    async def get_async(self, file_path: str, checkpoint_id: str) -> Checkpoint | None:
        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None or checkpoint.file_path != file_path:
            return None
        return checkpoint

    async def list_ids_async(self, file_path: str) -> list[str]:
        matching = [cp for cp in self._checkpoints.values() if cp.file_path == file_path]
        matching.sort(key=lambda cp: (cp.timestamp, cp.id), reverse=True)
        return [cp.id for cp in matching]

    async def delete_async(self, file_path: str, checkpoint_id: str) -> bool:
        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None or checkpoint.file_path != file_path:
            return False
        del self._checkpoints[checkpoint_id]
        return True

    def all(self) -> list[Checkpoint]:
        return list(self._checkpoints.values())

    def clear(self) -> None:
        self._checkpoints.clear()

    def __len__(self) -> int:
        return len(self._checkpoints)


class FileCheckpointStore(ICheckpointStore):
    """
    Disk-backed checkpoint store.

    Storage layout:
        <dir of source file>/<directory_name>/<source file name>__<checkpoint id>.json
    """

    def __init__(self, directory_name: str = ".checkpoints", compression_enabled: bool = False):
        self.directory_name = directory_name
        self.compression_enabled = compression_enabled

    def directory_for(self, file_path: str) -> Path:
        """Checkpoint directory for a source file."""
        return Path(file_path).parent / self.directory_name

    @staticmethod
    def _record_prefix(file_path: str) -> str:
        # Several programs can share a directory
        return f"{Path(file_path).name}{RECORD_SEPARATOR}"

    def _record_path(self, file_path: str, checkpoint_id: str) -> Path:
        return self.directory_for(file_path) / f"{self._record_prefix(file_path)}{checkpoint_id}{CHECKPOINT_SUFFIX}"

    async def save_async(self, checkpoint: Checkpoint) -> Checkpoint:
        directory = self.directory_for(checkpoint.file_path)
        await aiofiles.os.makedirs(directory, exist_ok=True)

        record_path = self._record_path(checkpoint.file_path, checkpoint.id)
        content = encode_checkpoint(checkpoint, compressed=self.compression_enabled)

        async with aiofiles.open(record_path, mode="w", encoding="utf-8") as f:
            await f.write(content)

        logger.debug("checkpoint_saved_to_disk", checkpoint_id=checkpoint.id, path=str(record_path))
        return checkpoint

    async def get_async(self, file_path: str, checkpoint_id: str) -> Checkpoint | None:
        record_path = self._record_path(file_path, checkpoint_id)
        if not record_path.exists():
            return None

        async with aiofiles.open(record_path, encoding="utf-8") as f:
            content = await f.read()

        return decode_checkpoint(content)

    async def list_ids_async(self, file_path: str) -> list[str]:
        directory = self.directory_for(file_path)
        if not directory.is_dir():
            return []

        prefix = self._record_prefix(file_path)
        names = await aiofiles.os.listdir(directory)
        ids = [
            name[len(prefix) : -len(CHECKPOINT_SUFFIX)]
            for name in names
            if name.startswith(prefix) and name.endswith(CHECKPOINT_SUFFIX)
        ]
        # Ids embed a zero-padded creation time, so lexical order is creation order
        return sorted(ids, reverse=True)

    async def delete_async(self, file_path: str, checkpoint_id: str) -> bool:
        record_path = self._record_path(file_path, checkpoint_id)
        try:
            await aiofiles.os.remove(record_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("checkpoint_file_remove_failed", checkpoint_id=checkpoint_id, error=str(e))
            return False

        logger.debug("checkpoint_file_removed", checkpoint_id=checkpoint_id)
        return True
