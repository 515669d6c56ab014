"""
Tests for FileAnalyzer.

Covers chunking, line/byte accounting, metadata extraction and complexity.
"""

import pytest

from cncstream.streaming.application.file_analyzer import (
    FileAnalyzer,
    calculate_chunk_complexity,
    find_chunk_violations,
)
from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.exceptions import AnalysisError


class TestChunking:
    """Chunk boundaries and coverage."""

    @pytest.mark.asyncio
    async def test_ten_thousand_lines_make_ten_chunks(self, gcode_file):
        """10 000 lines at chunk_size 1000 give 10 full chunks."""
        path = gcode_file(10_000)
        analysis = await FileAnalyzer(StreamingConfig(chunk_size=1000)).analyze_file(path)

        assert analysis.total_lines == 10_000
        assert len(analysis.chunks) == 10
        assert all(chunk.line_count == 1000 for chunk in analysis.chunks)
        assert analysis.chunk_statistics.total_chunks == 10
        assert analysis.chunk_statistics.average_chunk_size == 1000

    @pytest.mark.asyncio
    async def test_chunks_are_contiguous_and_cover_file(self, gcode_file):
        """Chunks tile [1, total_lines] with no gaps or overlaps."""
        path = gcode_file(2_345)
        analysis = await FileAnalyzer().analyze_file(path, chunk_size=500)

        assert [c.index for c in analysis.chunks] == list(range(5))
        assert analysis.chunks[0].start_line == 1
        assert analysis.chunks[-1].end_line == analysis.total_lines
        for previous, current in zip(analysis.chunks, analysis.chunks[1:]):
            assert current.start_line == previous.end_line + 1
            assert current.start_byte_offset == previous.end_byte_offset
        assert analysis.chunks[-1].line_count == 345
        assert sum(c.line_count for c in analysis.chunks) == analysis.total_lines
        assert find_chunk_violations(analysis.chunks) == []

    @pytest.mark.asyncio
    async def test_byte_offsets_match_file(self, gcode_file):
        """Byte lengths add up to the file size when nothing is skipped."""
        path = gcode_file(1_200)
        analysis = await FileAnalyzer().analyze_file(path, chunk_size=400)

        assert analysis.chunks[-1].end_byte_offset == path.stat().st_size
        assert sum(c.byte_length for c in analysis.chunks) == analysis.total_bytes

    @pytest.mark.asyncio
    async def test_small_buffer_keeps_lines_intact(self, gcode_file):
        """Lines spanning read-buffer boundaries are reassembled."""
        path = gcode_file(3_000)
        small = await FileAnalyzer(StreamingConfig(buffer_size=1024)).analyze_file(path, chunk_size=1000)
        default = await FileAnalyzer().analyze_file(path, chunk_size=1000)

        assert small.total_lines == default.total_lines == 3_000
        assert small.chunks[1].lines == default.chunks[1].lines
        assert small.chunks[2].lines[-1] == "G1 X3000 Y3000 F1000"

    @pytest.mark.asyncio
    async def test_last_line_without_newline(self, tmp_path):
        """A trailing line without terminator is still kept."""
        path = tmp_path / "short.nc"
        path.write_text("G0 X0\nG1 X1\nM30", encoding="utf-8")

        analysis = await FileAnalyzer().analyze_file(path, chunk_size=10)

        assert analysis.total_lines == 3
        assert analysis.chunks[0].lines == ("G0 X0", "G1 X1", "M30")

    @pytest.mark.asyncio
    async def test_empty_and_comment_lines_are_skipped(self, tmp_path):
        """Skipped lines do not consume line numbers."""
        path = tmp_path / "commented.nc"
        path.write_text("(header)\n\nG0 X0\n; note\nG1 X1\r\n\nG1 X2\n", encoding="utf-8")

        analysis = await FileAnalyzer().analyze_file(path, chunk_size=2)

        assert analysis.total_lines == 3
        assert analysis.chunks[0].lines == ("G0 X0", "G1 X1")
        assert analysis.chunks[1].start_line == 3
        assert analysis.chunks[1].lines == ("G1 X2",)

    @pytest.mark.asyncio
    async def test_comments_kept_when_skipping_disabled(self, tmp_path):
        """skip_comments=False keeps comment lines."""
        path = tmp_path / "commented.nc"
        path.write_text("(header)\nG0 X0\n", encoding="utf-8")
        config = StreamingConfig(skip_comments=False)

        analysis = await FileAnalyzer(config).analyze_file(path)

        assert analysis.total_lines == 2
        assert analysis.metadata.has_comments is True

    @pytest.mark.asyncio
    async def test_empty_file_has_no_chunks(self, tmp_path):
        path = tmp_path / "empty.nc"
        path.write_text("", encoding="utf-8")

        analysis = await FileAnalyzer().analyze_file(path)

        assert analysis.total_lines == 0
        assert analysis.chunks == ()
        assert analysis.chunk_statistics.total_chunks == 0

    @pytest.mark.asyncio
    async def test_invalid_chunk_size_rejected(self, gcode_file):
        with pytest.raises(ValueError):
            await FileAnalyzer().analyze_file(gcode_file(10), chunk_size=-1)


class TestMetadata:
    """Program metadata and notifications."""

    @pytest.mark.asyncio
    async def test_metadata_extraction(self, tmp_path):
        path = tmp_path / "tools.nc"
        path.write_text("G54\nT1 M6\nG0 X0\nG1 X10 F500 ; cut\nG2 X0 Y10 I-5 J5\nM98 P100\nG55\n", encoding="utf-8")

        analysis = await FileAnalyzer().analyze_file(path, chunk_size=100)

        metadata = analysis.metadata
        assert metadata.tool_changes == 1
        assert metadata.coordinate_system_changes == 2
        assert metadata.has_sub_programs is True
        assert metadata.has_comments is True
        assert analysis.chunks[0].metadata.has_tool_change is True
        assert analysis.chunks[0].metadata.has_coordinate_change is True

    @pytest.mark.asyncio
    async def test_events_emitted(self, gcode_file, events):
        """analysis_progress fires every 10 000 lines; file_analyzed once."""
        path = gcode_file(20_500)
        await FileAnalyzer(progress_callback=events).analyze_file(path)

        progress = events.of("analysis_progress")
        assert [p["lines_processed"] for p in progress] == [10_000, 20_000]
        analyzed = events.of("file_analyzed")
        assert len(analyzed) == 1
        assert analyzed[0]["total_lines"] == 20_500
        assert analyzed[0]["total_chunks"] == 21

    @pytest.mark.asyncio
    async def test_statistics_accumulate(self, gcode_file):
        analyzer = FileAnalyzer()
        await analyzer.analyze_file(gcode_file(100, name="a.nc"))
        await analyzer.analyze_file(gcode_file(300, name="b.nc"))

        stats = analyzer.get_analysis_statistics()
        assert stats["total_files"] == 2
        assert stats["total_lines"] == 400
        assert stats["avg_lines_per_file"] == 200

        analyzer.reset_statistics()
        assert analyzer.get_analysis_statistics()["total_files"] == 0


class TestComplexity:
    """Chunk complexity scoring."""

    def test_weighted_average(self):
        """linear 1, arc 3, tool change 5, coordinate change 2, rapid 0.5."""
        lines = ["G1 X1", "G2 X1 Y1 I1 J0", "T1 M6", "G54", "G0 X0"]

        assert calculate_chunk_complexity(lines) == 2.3

    def test_deterministic(self):
        lines = ["G1 X1 Y2", "G3 X4 Y5 R2", "G0 Z5"] * 50

        assert calculate_chunk_complexity(lines) == calculate_chunk_complexity(list(lines))

    def test_empty_chunk(self):
        assert calculate_chunk_complexity([]) == 0.0

    def test_g10_is_not_linear_move(self):
        assert calculate_chunk_complexity(["G10 L2 P1"]) == 0.0


class TestErrors:
    """Failure handling."""

    @pytest.mark.asyncio
    async def test_missing_file_raises_analysis_error(self, tmp_path):
        with pytest.raises(AnalysisError) as exc_info:
            await FileAnalyzer().analyze_file(tmp_path / "missing.nc")

        assert "missing.nc" in exc_info.value.file_path

    @pytest.mark.asyncio
    async def test_file_metadata_never_raises(self, tmp_path):
        metadata = await FileAnalyzer().get_file_metadata(tmp_path / "missing.nc")

        assert metadata["is_accessible"] is False
        assert metadata["file_size"] == 0

    @pytest.mark.asyncio
    async def test_estimate_analysis_time(self, gcode_file):
        path = gcode_file(1000)
        estimate = await FileAnalyzer().estimate_analysis_time(path)

        assert estimate > 0
