"""
Tests for CheckpointManager and the checkpoint stores.

Uses real files under tmp_path; checkpoint directories live next to the
source program.
"""

import json
import time
from unittest.mock import patch

import pytest

from cncstream.streaming.application import checkpoint_manager as checkpoint_module
from cncstream.streaming.application.checkpoint_manager import CheckpointManager, calculate_checksum
from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.exceptions import CheckpointCorruption
from cncstream.streaming.domain.models import StreamingState
from cncstream.streaming.infrastructure.checkpoint_store import (
    COMPRESSED_PREFIX,
    FileCheckpointStore,
    decode_checkpoint,
    encode_checkpoint,
)


@pytest.fixture
def program(tmp_path):
    path = tmp_path / "part.nc"
    path.write_text("G0 X0\n", encoding="utf-8")
    return path


def make_state(program, current_chunk=3, current_line=3000):
    return StreamingState(
        is_streaming=True,
        current_file=str(program),
        current_chunk=current_chunk,
        total_chunks=10,
        current_line=current_line,
        total_lines=10_000,
        bytes_processed=current_line * 20,
        total_bytes=200_000,
        start_time=time.time(),
    )


def checkpoint_files(program, directory=".checkpoints"):
    return sorted((program.parent / directory).glob("*.json"))


class TestCreateAndLoad:
    """Round trip through memory and disk."""

    @pytest.mark.asyncio
    async def test_round_trip_from_disk(self, program, events):
        """A fresh manager restores the same snapshot from disk."""
        writer = CheckpointManager(StreamingConfig(), events)
        created = await writer.create_checkpoint(
            make_state(program),
            metrics={"chunk_size": 1000},
            processed_chunks=[0, 1, 2],
            chunks_successful=3,
            average_chunk_time=0.25,
        )

        reader = CheckpointManager(StreamingConfig())
        loaded = await reader.load_checkpoint(str(program))

        assert loaded is not None
        assert loaded.id == created.id
        assert loaded.checksum == created.checksum
        assert loaded.state == created.state
        assert loaded.state.current_chunk == 3
        assert loaded.chunks == [0, 1, 2]
        assert loaded.metrics == {"chunk_size": 1000}
        assert loaded.metadata["chunks_successful"] == 3
        assert len(events.of("checkpoint_created")) == 1

    @pytest.mark.asyncio
    async def test_prefers_memory(self, program, events):
        manager = CheckpointManager(StreamingConfig(), events)
        await manager.create_checkpoint(make_state(program), persist_to_disk=False)

        loaded = await manager.load_checkpoint(str(program))

        assert loaded is not None
        assert checkpoint_files(program) == []
        assert events.of("checkpoint_loaded")[0]["id"] == loaded.id

    @pytest.mark.asyncio
    async def test_newest_wins(self, program):
        manager = CheckpointManager(StreamingConfig())
        await manager.create_checkpoint(make_state(program, current_chunk=1))
        newest = await manager.create_checkpoint(make_state(program, current_chunk=2))

        loaded = await CheckpointManager(StreamingConfig()).load_checkpoint(str(program))

        assert loaded.id == newest.id
        assert loaded.state.current_chunk == 2

    @pytest.mark.asyncio
    async def test_disabled_returns_none(self, program):
        manager = CheckpointManager(StreamingConfig(enable_checkpointing=False))

        assert await manager.create_checkpoint(make_state(program)) is None
        assert checkpoint_files(program) == []

    @pytest.mark.asyncio
    async def test_no_checkpoint(self, program):
        assert await CheckpointManager(StreamingConfig()).load_checkpoint(str(program)) is None

    @pytest.mark.asyncio
    async def test_programs_in_same_directory_are_separate(self, program, tmp_path):
        other = tmp_path / "other.nc"
        other.write_text("G0 X0\n", encoding="utf-8")
        manager = CheckpointManager(StreamingConfig())
        await manager.create_checkpoint(make_state(other))

        assert await CheckpointManager(StreamingConfig()).load_checkpoint(str(program)) is None
        assert await CheckpointManager(StreamingConfig()).load_checkpoint(str(other)) is not None

    @pytest.mark.asyncio
    async def test_ids_sort_in_creation_order(self, program):
        manager = CheckpointManager(StreamingConfig(max_checkpoints=50))
        ids = [(await manager.create_checkpoint(make_state(program), persist_to_disk=False)).id for _ in range(20)]

        assert ids == sorted(ids)
        assert len(set(ids)) == 20


class TestValidation:
    """Checksum, completeness and staleness."""

    @pytest.mark.asyncio
    async def test_mutated_checkpoint_rejected(self, program):
        """Any field change after creation fails checksum validation."""
        manager = CheckpointManager(StreamingConfig())
        await manager.create_checkpoint(make_state(program))
        record = checkpoint_files(program)[0]
        data = json.loads(record.read_text(encoding="utf-8"))
        data["state"]["currentLine"] = 9999
        record.write_text(json.dumps(data), encoding="utf-8")

        reader = CheckpointManager(StreamingConfig())
        assert await reader.load_checkpoint(str(program)) is None
        assert reader.metrics["checkpoints_corrupted"] == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_older_valid_checkpoint(self, program):
        manager = CheckpointManager(StreamingConfig())
        older = await manager.create_checkpoint(make_state(program, current_chunk=1))
        await manager.create_checkpoint(make_state(program, current_chunk=2))
        newest_record = checkpoint_files(program)[-1]
        newest_record.write_text("{not json", encoding="utf-8")

        loaded = await CheckpointManager(StreamingConfig()).load_checkpoint(str(program))

        assert loaded.id == older.id

    @pytest.mark.parametrize(
        "key",
        ["filePath", "version", "chunks", "metrics", "checksum", "state.pauseTime", "state.currentChunk"],
    )
    @pytest.mark.asyncio
    async def test_missing_field_rejected(self, program, key):
        """Any absent record or state key disqualifies the record, defaulted or not."""
        manager = CheckpointManager(StreamingConfig())
        await manager.create_checkpoint(make_state(program))
        record = checkpoint_files(program)[0]
        data = json.loads(record.read_text(encoding="utf-8"))
        if key.startswith("state."):
            del data["state"][key.split(".", 1)[1]]
        else:
            del data[key]
        record.write_text(json.dumps(data), encoding="utf-8")

        reader = CheckpointManager(StreamingConfig())
        assert await reader.load_checkpoint(str(program)) is None
        assert reader.metrics["checkpoints_corrupted"] == 1

    def test_decode_reports_missing_keys(self, program):
        data = {"id": "cp_1", "timestamp": 1.0, "filePath": str(program), "state": {"currentChunk": 1}}

        with pytest.raises(CheckpointCorruption) as exc_info:
            decode_checkpoint(json.dumps(data))

        assert exc_info.value.checkpoint_id == "cp_1"
        assert "version" in exc_info.value.reason
        assert "state.pauseTime" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_stale_checkpoint_rejected(self, program):
        manager = CheckpointManager(StreamingConfig(retention_days=1))
        await manager.create_checkpoint(make_state(program))

        reader = CheckpointManager(StreamingConfig(retention_days=1))
        with patch.object(checkpoint_module, "time") as fake_time:
            fake_time.time.return_value = time.time() + 2 * 24 * 60 * 60
            assert await reader.load_checkpoint(str(program)) is None

    @pytest.mark.asyncio
    async def test_validate_checkpoint_raises_corruption(self, program):
        manager = CheckpointManager(StreamingConfig())
        checkpoint = await manager.create_checkpoint(make_state(program), persist_to_disk=False)
        checkpoint.file_path = "/elsewhere/part.nc"

        with pytest.raises(CheckpointCorruption) as exc_info:
            manager.validate_checkpoint(checkpoint)

        assert exc_info.value.reason == "checksum mismatch"

    def test_checksum_is_order_independent(self):
        assert calculate_checksum({"a": 1, "b": [1, 2]}) == calculate_checksum({"b": [1, 2], "a": 1})
        assert calculate_checksum({"a": 1}) != calculate_checksum({"a": 2})


class TestRetention:
    """Pruning to max_checkpoints."""

    @pytest.mark.asyncio
    async def test_prunes_memory_and_disk(self, program):
        manager = CheckpointManager(StreamingConfig(max_checkpoints=3))
        created = [await manager.create_checkpoint(make_state(program, current_chunk=i)) for i in range(5)]

        kept_in_memory = await manager.get_checkpoints_for_file(str(program))
        assert [cp.id for cp in kept_in_memory] == [cp.id for cp in reversed(created[-3:])]
        assert len(checkpoint_files(program)) == 3

    @pytest.mark.asyncio
    async def test_remove_checkpoint(self, program, events):
        manager = CheckpointManager(StreamingConfig(), events)
        checkpoint = await manager.create_checkpoint(make_state(program))

        assert await manager.remove_checkpoint(checkpoint.id) is True
        assert await manager.remove_checkpoint(checkpoint.id) is False
        assert checkpoint_files(program) == []
        assert events.of("checkpoint_removed")[0]["checkpoint_id"] == checkpoint.id

    @pytest.mark.asyncio
    async def test_clear_all_checkpoints(self, program, events):
        manager = CheckpointManager(StreamingConfig(), events)
        await manager.create_checkpoint(make_state(program))
        await manager.create_checkpoint(make_state(program))

        assert await manager.clear_all_checkpoints(str(program)) == 2
        assert len(manager.memory_store) == 0
        assert events.of("checkpoints_cleared")[0]["count"] == 2
        # Disk copies survive a memory clear
        assert await manager.load_checkpoint(str(program)) is not None


class TestStores:
    """Record encoding and the file store."""

    @pytest.mark.asyncio
    async def test_compressed_records(self, program):
        config = StreamingConfig(compression_enabled=True)
        created = await CheckpointManager(config).create_checkpoint(make_state(program))

        content = checkpoint_files(program)[0].read_text(encoding="utf-8")
        assert content.startswith(COMPRESSED_PREFIX)

        # Uncompressed readers still recognize the marker
        loaded = await CheckpointManager(StreamingConfig()).load_checkpoint(str(program))
        assert loaded.checksum == created.checksum

    @pytest.mark.asyncio
    async def test_encode_decode(self, program):
        checkpoint = await CheckpointManager(StreamingConfig()).create_checkpoint(
            make_state(program), persist_to_disk=False
        )

        for compressed in (False, True):
            decoded = decode_checkpoint(encode_checkpoint(checkpoint, compressed=compressed))
            assert decoded.to_json() == checkpoint.to_json()

    def test_decode_rejects_non_object(self):
        with pytest.raises(ValueError):
            decode_checkpoint("[1, 2, 3]")

    @pytest.mark.asyncio
    async def test_custom_directory(self, program):
        store = FileCheckpointStore(directory_name="cp")
        manager = CheckpointManager(StreamingConfig(), disk_store=store)
        await manager.create_checkpoint(make_state(program))

        assert len(checkpoint_files(program, "cp")) == 1
        assert store.directory_for(str(program)) == program.parent / "cp"
