"""
File Analyzer - split large G-code programs into bounded chunks.

Reads the source in fixed-size blocks so the whole program is never resident,
extracts program metadata and produces contiguous, line-ordered chunks with
per-chunk complexity scores.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Sequence

import aiofiles

from cncstream.shared.infrastructure.logging import get_logger
from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.exceptions import AnalysisError
from cncstream.streaming.domain.interfaces import ProgressCallback
from cncstream.streaming.domain.models import (
    Chunk,
    ChunkMetadata,
    ChunkStatistics,
    FileAnalysis,
    FileMetadata,
)

logger = get_logger(__name__)

PROGRESS_EVERY_LINES = 10_000

LINEAR_MOVE_RE = re.compile(r"G0?1(?!\d)", re.IGNORECASE)
RAPID_MOVE_RE = re.compile(r"G0?0(?!\d)", re.IGNORECASE)
ARC_MOVE_RE = re.compile(r"G0?[23](?!\d)", re.IGNORECASE)
TOOL_CHANGE_RE = re.compile(r"T\d+|M0?6(?!\d)", re.IGNORECASE)
COORDINATE_SYSTEM_RE = re.compile(r"G5[4-9](?!\d)", re.IGNORECASE)
SUB_PROGRAM_RE = re.compile(r"M9[89](?!\d)", re.IGNORECASE)
FEED_RATE_RE = re.compile(r"F[\d.]+", re.IGNORECASE)
FEED_MOVE_RE = re.compile(r"G0?[01](?!\d)", re.IGNORECASE)

# Operation weights for chunk complexity
LINEAR_WEIGHT = 1.0
RAPID_WEIGHT = 0.5
ARC_WEIGHT = 3.0
TOOL_CHANGE_WEIGHT = 5.0
COORDINATE_CHANGE_WEIGHT = 2.0


@dataclass
class _SourceLine:
    number: int
    content: str
    byte_offset: int
    byte_length: int


def calculate_chunk_complexity(lines: Sequence[str]) -> float:
    """
    Average weighted operation cost per line, rounded to one decimal.

    Pure function of the line contents.
    """
    if not lines:
        return 0.0

    complexity = 0.0
    for raw in lines:
        content = raw.strip()
        if LINEAR_MOVE_RE.search(content):
            complexity += LINEAR_WEIGHT
        if RAPID_MOVE_RE.search(content):
            complexity += RAPID_WEIGHT
        if ARC_MOVE_RE.search(content):
            complexity += ARC_WEIGHT
        if TOOL_CHANGE_RE.search(content):
            complexity += TOOL_CHANGE_WEIGHT
        if COORDINATE_SYSTEM_RE.search(content):
            complexity += COORDINATE_CHANGE_WEIGHT

    return round(complexity / len(lines), 1)


def build_chunk(lines: Sequence[_SourceLine], index: int) -> Chunk:
    """Finalize accumulated lines into an immutable chunk."""
    first, last = lines[0], lines[-1]
    contents = tuple(line.content for line in lines)
    end_offset = last.byte_offset + last.byte_length

    return Chunk(
        index=index,
        start_line=first.number,
        end_line=last.number,
        line_count=len(lines),
        start_byte_offset=first.byte_offset,
        end_byte_offset=end_offset,
        byte_length=end_offset - first.byte_offset,
        lines=contents,
        metadata=ChunkMetadata(
            has_tool_change=any(TOOL_CHANGE_RE.search(c) for c in contents),
            has_coordinate_change=any(COORDINATE_SYSTEM_RE.search(c) for c in contents),
            complexity=calculate_chunk_complexity(contents),
        ),
    )


def compute_chunk_statistics(chunks: Sequence[Chunk], total_lines: int) -> ChunkStatistics:
    if not chunks:
        return ChunkStatistics()

    sizes = [c.line_count for c in chunks]
    return ChunkStatistics(
        total_chunks=len(chunks),
        average_chunk_size=round(total_lines / len(chunks)),
        largest_chunk=max(sizes),
        smallest_chunk=min(sizes),
        total_complexity=round(sum(c.metadata.complexity for c in chunks), 1),
    )


def find_chunk_violations(chunks: Iterable[Chunk]) -> list[str]:
    """Index, continuity and range violations, in chunk order."""
    violations = []
    expected_start = 1

    for position, chunk in enumerate(chunks):
        if chunk.index != position:
            violations.append(f"Chunk index mismatch: expected {position}, got {chunk.index}")
        if chunk.start_line != expected_start:
            violations.append(
                f"Line continuity broken: expected start line {expected_start}, got {chunk.start_line}"
            )
        if chunk.end_line < chunk.start_line:
            violations.append(f"Invalid chunk: end line {chunk.end_line} < start line {chunk.start_line}")
        expected_start = chunk.end_line + 1

    return violations


class FileAnalyzer:
    """
    Analyzes G-code files and prepares chunk metadata before streaming.

    Notifications: ``analysis_progress`` every 10 000 kept lines and
    ``file_analyzed`` once the analysis is complete.
    """

    def __init__(self, config: StreamingConfig | None = None, progress_callback: ProgressCallback | None = None):
        self.config = config or StreamingConfig()
        self.progress_callback = progress_callback
        self._reset_metrics()

    def _reset_metrics(self) -> None:
        self.analysis_metrics = {
            "total_files": 0,
            "total_lines": 0,
            "total_bytes": 0,
            "total_analysis_time": 0.0,
            "average_analysis_time": 0.0,
        }

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.progress_callback:
            self.progress_callback(event, data)

    async def analyze_file(self, file_path: str | Path, chunk_size: int | None = None) -> FileAnalysis:
        """
        Analyze a file and split it into chunks.

        Args:
            file_path: Program to analyze
            chunk_size: Lines per chunk, defaults to config.chunk_size

        Raises:
            AnalysisError: If the file cannot be opened or read
        """
        started = time.monotonic()
        path = str(file_path)
        size = chunk_size or self.config.chunk_size
        if size < 1:
            raise ValueError(f"chunk_size must be positive, got {size}")

        logger.debug("file_analysis_started", file=path, chunk_size=size)

        try:
            stat = Path(path).stat()
        except OSError as e:
            logger.error("file_analysis_failed", file=path, error=str(e))
            raise AnalysisError(path, str(e)) from e

        metadata = FileMetadata()
        chunks: list[Chunk] = []
        current: list[_SourceLine] = []
        line_count = 0
        byte_offset = 0

        try:
            async for raw, raw_length in self._read_lines(path):
                content = raw.rstrip("\r\n")
                trimmed = content.strip()

                if self._should_skip_line(trimmed):
                    byte_offset += raw_length
                    continue

                self._analyze_line(trimmed, metadata)

                line_count += 1
                current.append(_SourceLine(line_count, content, byte_offset, raw_length))
                byte_offset += raw_length

                if len(current) >= size:
                    chunks.append(build_chunk(current, len(chunks)))
                    current = []

                if line_count % PROGRESS_EVERY_LINES == 0:
                    self._emit(
                        "analysis_progress",
                        {
                            "file_path": path,
                            "lines_processed": line_count,
                            "bytes_processed": byte_offset,
                            "chunks_created": len(chunks),
                        },
                    )
                    await asyncio.sleep(0)
        except OSError as e:
            logger.error("file_analysis_failed", file=path, error=str(e))
            raise AnalysisError(path, str(e)) from e

        if current:
            chunks.append(build_chunk(current, len(chunks)))

        if self.config.validate_chunks:
            for violation in find_chunk_violations(chunks):
                logger.warning("chunk_validation_failed", file=path, violation=violation)

        analysis = FileAnalysis(
            file_path=path,
            file_size=stat.st_size,
            file_modified=stat.st_mtime,
            total_lines=line_count,
            total_bytes=stat.st_size,
            chunks=tuple(chunks),
            metadata=metadata,
            chunk_statistics=compute_chunk_statistics(chunks, line_count),
            analysis_time=time.monotonic() - started,
        )

        self._update_metrics(analysis)

        logger.info(
            "file_analysis_completed",
            file=path,
            lines=analysis.total_lines,
            chunks=len(analysis.chunks),
            analysis_time=f"{analysis.analysis_time:.3f}s",
        )
        self._emit(
            "file_analyzed",
            {
                "file_path": path,
                "total_lines": analysis.total_lines,
                "total_chunks": len(analysis.chunks),
                "file_size": analysis.file_size,
                "chunk_statistics": analysis.chunk_statistics.to_json(),
            },
        )
        return analysis

    async def _read_lines(self, path: str) -> AsyncIterator[tuple[str, int]]:
        """Yield (decoded line incl. terminator, raw byte length) using bounded reads."""
        pending = b""
        async with aiofiles.open(path, mode="rb") as f:
            while True:
                block = await f.read(self.config.buffer_size)
                if not block:
                    break
                pending += block
                *complete, pending = pending.split(b"\n")
                for raw in complete:
                    yield raw.decode("utf-8", errors="replace") + "\n", len(raw) + 1

        if pending:
            yield pending.decode("utf-8", errors="replace"), len(pending)

    def _should_skip_line(self, line: str) -> bool:
        if self.config.skip_empty_lines and not line:
            return True
        if self.config.skip_comments and line.startswith((";", "(")):
            return True
        return False

    def _analyze_line(self, line: str, metadata: FileMetadata) -> None:
        if not self.config.enable_metadata:
            return

        if ";" in line or "(" in line:
            metadata.has_comments = True
        if SUB_PROGRAM_RE.search(line):
            metadata.has_sub_programs = True
        if TOOL_CHANGE_RE.search(line):
            metadata.tool_changes += 1
        if COORDINATE_SYSTEM_RE.search(line):
            metadata.coordinate_system_changes += 1
        # Rough estimates, refined by the motion planner downstream
        if FEED_RATE_RE.search(line):
            metadata.estimated_time += 0.1
        if FEED_MOVE_RE.search(line):
            metadata.estimated_distance += 1.0

    def _update_metrics(self, analysis: FileAnalysis) -> None:
        m = self.analysis_metrics
        m["total_files"] += 1
        m["total_lines"] += analysis.total_lines
        m["total_bytes"] += analysis.total_bytes
        m["total_analysis_time"] += analysis.analysis_time
        m["average_analysis_time"] = m["total_analysis_time"] / m["total_files"]

    async def get_file_metadata(self, file_path: str | Path) -> dict[str, Any]:
        """Basic file facts without a full analysis. Never raises."""
        path = Path(file_path)
        try:
            stat = path.stat()
        except OSError as e:
            logger.error("file_metadata_failed", file=str(path), error=str(e))
            return {
                "file_path": str(path),
                "file_name": path.name,
                "file_size": 0,
                "file_modified": None,
                "is_accessible": False,
                "error": str(e),
            }

        return {
            "file_path": str(path),
            "file_name": path.name,
            "file_size": stat.st_size,
            "file_modified": stat.st_mtime,
            "is_accessible": True,
        }

    async def estimate_analysis_time(self, file_path: str | Path) -> float:
        """Estimated analysis duration in seconds, from historical throughput."""
        metadata = await self.get_file_metadata(file_path)
        if not metadata["is_accessible"]:
            return 0.0

        m = self.analysis_metrics
        if m["total_bytes"] > 0 and m["total_analysis_time"] > 0:
            bytes_per_second = m["total_bytes"] / m["total_analysis_time"]
        else:
            bytes_per_second = 1024 * 1024

        return metadata["file_size"] / bytes_per_second

    def get_analysis_statistics(self) -> dict[str, Any]:
        m = self.analysis_metrics
        files = m["total_files"]
        return {
            **m,
            "avg_lines_per_file": round(m["total_lines"] / files) if files else 0,
            "avg_bytes_per_file": round(m["total_bytes"] / files) if files else 0,
        }

    def reset_statistics(self) -> None:
        self._reset_metrics()
        logger.debug("analysis_statistics_reset")
