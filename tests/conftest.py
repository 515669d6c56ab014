"""Shared test fixtures for the cncstream test suite."""

import asyncio
from typing import Any, Callable, Optional

import pytest

from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.interfaces import IStreamingManager
from cncstream.streaming.domain.models import Chunk, ChunkMetadata, LineContext


class StubStreamingManager(IStreamingManager):
    """Records every line sent; optional per-line delay and failure rule."""

    def __init__(
        self,
        delay: float = 0.0,
        fail_when: Optional[Callable[[str, LineContext], bool]] = None,
    ):
        self.delay = delay
        self.fail_when = fail_when
        self.sent: list[tuple[str, LineContext]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send_line(self, line: str, context: LineContext) -> Any:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_when and self.fail_when(line, context):
                raise RuntimeError(f"controller rejected line {context.line_number}")
            self.sent.append((line, context))
            return "ok"
        finally:
            self.in_flight -= 1

    @property
    def line_numbers(self) -> list[int]:
        return [context.line_number for _, context in self.sent]


class EventRecorder:
    """progress_callback that keeps every notification."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> list[dict]:
        return [data for event, data in self.events if event == name]


class FakeSampler:
    """Deterministic memory sampler. Set ``value`` or feed a sequence."""

    def __init__(self, value: int = 0, sequence: Optional[list[int]] = None):
        self.value = value
        self._sequence = list(sequence or [])

    def __call__(self) -> int:
        if self._sequence:
            self.value = self._sequence.pop(0)
        return self.value


def build_chunks(count: int, size: int, prefix: str = "G1 X") -> list[Chunk]:
    """Contiguous chunks of ``size`` lines each."""
    chunks = []
    for index in range(count):
        start = index * size + 1
        lines = tuple(f"{prefix}{start + offset}" for offset in range(size))
        chunks.append(
            Chunk(
                index=index,
                start_line=start,
                end_line=start + size - 1,
                line_count=size,
                start_byte_offset=(start - 1) * 10,
                end_byte_offset=(start - 1 + size) * 10,
                byte_length=size * 10,
                lines=lines,
                metadata=ChunkMetadata(complexity=1.0),
            )
        )
    return chunks


@pytest.fixture
def stub_manager_factory():
    """Factory for stub streaming managers."""
    return StubStreamingManager


@pytest.fixture
def stub_manager():
    """Stub streaming manager that accepts every line."""
    return StubStreamingManager()


@pytest.fixture
def events():
    """Event recorder used as progress_callback."""
    return EventRecorder()


@pytest.fixture
def fake_sampler():
    """Memory sampler fixed at 60% of a 1000-byte budget."""
    return FakeSampler(600)


@pytest.fixture
def sampler_factory():
    """Factory for deterministic memory samplers."""
    return FakeSampler


@pytest.fixture
def chunk_factory():
    """Factory for synthetic chunk lists."""
    return build_chunks


@pytest.fixture
def gcode_file(tmp_path):
    """
    Factory writing a G-code program.

    Each line is ``G1 X<n> Y<n> F1000``; ``extra`` lines are appended verbatim.
    """

    def _write(line_count: int, name: str = "program.nc", extra: Optional[list[str]] = None):
        lines = [f"G1 X{n} Y{n} F1000" for n in range(1, line_count + 1)]
        lines.extend(extra or [])
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def fast_config():
    """Config with short timers for async tests."""
    return StreamingConfig(
        chunk_timeout=5.0,
        pause_timeout=1.0,
        max_pause_duration=0,
        monitoring_interval=0.01,
        max_memory_usage=1000,
    )
