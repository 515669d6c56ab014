"""
Tests for the camelCase domain model mixin.
"""

from dataclasses import dataclass

import pytest

from cncstream.shared.domain.base_model import BaseDomainModel, to_camel_case, to_snake_case
from cncstream.streaming.domain.enums import MemoryPressure
from cncstream.streaming.domain.models import Checkpoint, CheckpointState, MemoryStatus


@dataclass
class Sample(BaseDomainModel):
    file_path: str
    chunk_count: int = 0


class TestCaseConversion:
    @pytest.mark.parametrize(
        "snake,camel",
        [("file_path", "filePath"), ("start_byte_offset", "startByteOffset"), ("id", "id")],
    )
    def test_round_trip(self, snake, camel):
        assert to_camel_case(snake) == camel
        assert to_snake_case(camel) == snake


class TestSerialization:
    def test_to_json_uses_camel_case(self):
        assert Sample("a.nc", 3).to_json() == {"filePath": "a.nc", "chunkCount": 3}

    def test_from_json_applies_defaults(self):
        assert Sample.from_json({"filePath": "a.nc"}) == Sample("a.nc", 0)

    def test_missing_required_field(self):
        with pytest.raises(ValueError, match="filePath"):
            Sample.from_json({"chunkCount": 1})

    def test_enum_values(self):
        status = MemoryStatus(
            current=1,
            peak=2,
            baseline=1,
            percentage=10.0,
            limit=10,
            available=9,
            status=MemoryPressure.CRITICAL,
            chunk_memory_tracked=0,
            is_monitoring=False,
        )

        data = status.to_json()
        assert data["status"] == "critical"
        assert MemoryStatus.from_json(data).status is MemoryPressure.CRITICAL

    def test_checkpoint_nested_state(self):
        checkpoint = Checkpoint(
            id="cp_1",
            timestamp=1.5,
            file_path="/jobs/part.nc",
            state=CheckpointState(current_chunk=4, total_chunks=9),
            chunks=[0, 1, 2, 3],
            checksum="abc",
        )

        data = checkpoint.to_json()
        restored = Checkpoint.from_json(data)

        assert data["state"]["currentChunk"] == 4
        assert "checksum" not in checkpoint.checksum_payload()
        assert restored.state == checkpoint.state
        assert restored == checkpoint
