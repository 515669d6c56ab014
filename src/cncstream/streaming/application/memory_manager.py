"""
Memory Manager - keep streaming inside a host memory budget.

Samples process memory on an interval, classifies pressure against the
configured ceiling, prunes its own bookkeeping under pressure, requests
garbage collection when critical and recommends chunk sizes for future
analysis.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from typing import Any

from cncstream.shared.infrastructure.logging import get_logger
from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.enums import MemoryPressure
from cncstream.streaming.domain.interfaces import ProgressCallback
from cncstream.streaming.domain.models import MemoryLeakReport, MemorySample, MemoryState, MemoryStatus
from cncstream.streaming.infrastructure.memory_probe import collect_garbage, process_memory_usage, top_object_types

logger = get_logger(__name__)

MAX_HISTORY = 100
TRIMMED_HISTORY = 50
HISTORY_RETENTION_SECONDS = 5 * 60
CHUNK_TRACKING_RETENTION_SECONDS = 10 * 60
LEAK_WINDOW = 10
LEAK_GROWTH_RATIO = 0.8

WARNING_SIZE_FACTOR = 0.75
GROWTH_SIZE_FACTOR = 1.25
LOW_USAGE_RATIO = 0.5


def _mb(value: int) -> str:
    return f"{round(value / 1024 / 1024)}MB"


class MemoryManager:
    """
    Monitors and controls memory usage during streaming.

    Responsibilities:
    1. Periodic sampling with peak / rolling history tracking
    2. Pressure classification (normal / warning / critical)
    3. Mitigation: bookkeeping cleanup and forced garbage collection
    4. Chunk size recommendations and leak heuristics
    """

    def __init__(
        self,
        config: StreamingConfig | None = None,
        progress_callback: ProgressCallback | None = None,
        usage_sampler: Callable[[], int] = process_memory_usage,
        gc_collector: Callable[[], Any] | None = collect_garbage,
    ):
        self.config = config or StreamingConfig()
        self.progress_callback = progress_callback
        self._sample_usage = usage_sampler
        self._gc_collector = gc_collector

        self.memory_state = MemoryState()
        self.memory_history: list[MemorySample] = []
        self.chunk_memory: dict[str, dict[str, float]] = {}
        self._monitor_task: asyncio.Task | None = None
        self._reset_metrics()

    def _reset_metrics(self) -> None:
        self.metrics = {
            "total_allocations": 0,
            "total_deallocations": 0,
            "garbage_collections": 0,
            "memory_warnings": 0,
            "memory_criticals": 0,
            "optimizations_triggered": 0,
            "average_usage": 0.0,
            "peak_usage": 0,
        }

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.progress_callback:
            self.progress_callback(event, data)

    # ------------------------------------------------------------------
    # Monitoring lifecycle
    # ------------------------------------------------------------------

    def start_monitoring(self) -> None:
        """Start the periodic sampler. Must be called from a running event loop."""
        if self.memory_state.is_monitoring:
            return

        self.memory_state.is_monitoring = True
        self.memory_state.baseline_usage = self._sample_usage()
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_loop())

        logger.info(
            "memory_monitoring_started",
            baseline=_mb(self.memory_state.baseline_usage),
            limit=_mb(self.config.max_memory_usage),
        )
        self._emit(
            "monitoring_started",
            {"baseline_usage": self.memory_state.baseline_usage, "limit": self.config.max_memory_usage},
        )

    def stop_monitoring(self) -> None:
        if not self.memory_state.is_monitoring:
            return

        self.memory_state.is_monitoring = False
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None

        logger.info("memory_monitoring_stopped", peak=_mb(self.memory_state.peak_usage))
        self._emit(
            "monitoring_stopped",
            {"peak_usage": self.memory_state.peak_usage, "average_usage": self.metrics["average_usage"]},
        )

    async def _monitor_loop(self) -> None:
        while self.memory_state.is_monitoring:
            await asyncio.sleep(self.config.monitoring_interval)
            self.check_memory_usage()
            if self.config.enable_memory_leak_detection and len(self.memory_history) % LEAK_WINDOW == 0:
                self.detect_memory_leaks()

    # ------------------------------------------------------------------
    # Sampling and classification
    # ------------------------------------------------------------------

    def usage_fraction(self, usage: int | None = None) -> float:
        current = self.memory_state.current_usage if usage is None else usage
        return current / self.config.max_memory_usage

    def classify(self, fraction: float) -> MemoryPressure:
        if fraction >= self.config.critical_threshold:
            return MemoryPressure.CRITICAL
        if fraction >= self.config.warning_threshold:
            return MemoryPressure.WARNING
        return MemoryPressure.NORMAL

    def check_memory_usage(self) -> MemoryPressure:
        """Take one sample, update state and history, and apply mitigation."""
        usage = self._sample_usage()
        self.memory_state.current_usage = usage

        if usage > self.memory_state.peak_usage:
            self.memory_state.peak_usage = usage
            self.metrics["peak_usage"] = usage

        self._add_to_history(usage)
        self._update_average()

        fraction = self.usage_fraction(usage)
        pressure = self.classify(fraction)

        if pressure is MemoryPressure.CRITICAL:
            self._handle_critical_memory(usage, fraction)
        elif pressure is MemoryPressure.WARNING:
            self._handle_memory_warning(usage, fraction)

        self._emit(
            "memory_status",
            {
                "current": usage,
                "percentage": fraction * 100,
                "peak": self.memory_state.peak_usage,
                "limit": self.config.max_memory_usage,
                "status": pressure.value,
            },
        )
        return pressure

    def _add_to_history(self, usage: int) -> None:
        self.memory_history.append(MemorySample(timestamp=time.time(), usage=usage))
        if len(self.memory_history) > MAX_HISTORY:
            self.memory_history = self.memory_history[-TRIMMED_HISTORY:]

    def _update_average(self) -> None:
        if self.memory_history:
            total = sum(sample.usage for sample in self.memory_history)
            self.metrics["average_usage"] = total / len(self.memory_history)

    def _handle_memory_warning(self, usage: int, fraction: float) -> None:
        self.metrics["memory_warnings"] += 1
        logger.warning(
            "memory_usage_warning",
            current=_mb(usage),
            percentage=f"{fraction * 100:.1f}%",
            limit=_mb(self.config.max_memory_usage),
        )
        self._emit("memory_warning", {"usage": usage, "percentage": fraction, "limit": self.config.max_memory_usage})

        if self.config.enable_memory_optimization:
            self.optimize_memory_usage(MemoryPressure.WARNING)

    def _handle_critical_memory(self, usage: int, fraction: float) -> None:
        self.metrics["memory_criticals"] += 1
        logger.error(
            "memory_usage_critical",
            current=_mb(usage),
            percentage=f"{fraction * 100:.1f}%",
            limit=_mb(self.config.max_memory_usage),
        )
        self._emit("memory_critical", {"usage": usage, "percentage": fraction, "limit": self.config.max_memory_usage})

        self.optimize_memory_usage(MemoryPressure.CRITICAL)
        if self.config.enable_garbage_collection:
            self.force_garbage_collection()

    # ------------------------------------------------------------------
    # Mitigation
    # ------------------------------------------------------------------

    def optimize_memory_usage(self, level: MemoryPressure = MemoryPressure.NORMAL) -> None:
        """Prune stale history and chunk tracking entries."""
        self.metrics["optimizations_triggered"] += 1

        now = time.time()
        history_cutoff = now - HISTORY_RETENTION_SECONDS
        self.memory_history = [s for s in self.memory_history if s.timestamp > history_cutoff]

        tracking_cutoff = now - CHUNK_TRACKING_RETENTION_SECONDS
        for chunk_id in [cid for cid, entry in self.chunk_memory.items() if entry["allocated_at"] < tracking_cutoff]:
            del self.chunk_memory[chunk_id]
            logger.debug("stale_chunk_memory_released", chunk_id=chunk_id)

        logger.info("memory_optimization_completed", level=level.value)
        self._emit("memory_optimized", {"level": level.value, "usage_after": self._sample_usage()})

    def force_garbage_collection(self) -> bool:
        """Request a full collection. Returns False when no collector is available."""
        if self._gc_collector is None:
            logger.debug("garbage_collection_unavailable")
            return False

        before = self._sample_usage()
        self._gc_collector()
        after = self._sample_usage()

        self.memory_state.last_gc_time = time.time()
        self.memory_state.gc_count += 1
        self.metrics["garbage_collections"] += 1

        freed = before - after
        logger.debug("garbage_collection_forced", freed=_mb(freed), before=_mb(before), after=_mb(after))
        self._emit("garbage_collected", {"freed": freed, "before_gc": before, "after_gc": after})
        return True

    # ------------------------------------------------------------------
    # Chunk tracking
    # ------------------------------------------------------------------

    def track_chunk_memory(self, chunk_id: str, memory_size: int) -> None:
        if not self.config.track_object_counts:
            return

        self.chunk_memory[chunk_id] = {"size": memory_size, "allocated_at": time.time()}
        self.metrics["total_allocations"] += 1

    def release_chunk_memory(self, chunk_id: str) -> None:
        if not self.config.track_object_counts:
            return

        entry = self.chunk_memory.pop(chunk_id, None)
        if entry is not None:
            self.metrics["total_deallocations"] += 1
            logger.debug(
                "chunk_memory_released",
                chunk_id=chunk_id,
                size_kb=round(entry["size"] / 1024),
                held_for=f"{time.time() - entry['allocated_at']:.3f}s",
            )

    # ------------------------------------------------------------------
    # Advice
    # ------------------------------------------------------------------

    def get_chunk_size_recommendation(self, current_chunk_size: int) -> int:
        """
        Recommend a chunk size for the last sampled usage.

        critical -> shrink by chunk_size_reduction, warning -> shrink by 25%,
        below 50% -> grow by 25%, otherwise unchanged.

        The result is floored at 1 line, so for very small sizes the warning
        and critical recommendations can be equal rather than strictly
        decreasing.
        """
        fraction = self.usage_fraction()

        if fraction >= self.config.critical_threshold:
            recommended = math.floor(current_chunk_size * self.config.chunk_size_reduction)
        elif fraction >= self.config.warning_threshold:
            recommended = math.floor(current_chunk_size * WARNING_SIZE_FACTOR)
        elif fraction < LOW_USAGE_RATIO:
            recommended = math.floor(current_chunk_size * GROWTH_SIZE_FACTOR)
        else:
            recommended = current_chunk_size

        return max(1, recommended)

    def is_memory_available(self, required_bytes: int) -> bool:
        """Whether usage plus ``required_bytes`` stays under the warning threshold."""
        projected = self._sample_usage() + required_bytes
        return projected <= self.config.max_memory_usage * self.config.warning_threshold

    def detect_memory_leaks(self) -> MemoryLeakReport | None:
        """
        Heuristic leak check over the last 10 samples.

        Reports when usage grew in more than 80% of consecutive pairs. This
        only warns; it never blocks processing.
        """
        if not self.config.enable_memory_leak_detection or len(self.memory_history) < LEAK_WINDOW:
            return None

        recent = self.memory_history[-LEAK_WINDOW:]
        growth_count = sum(1 for prev, cur in zip(recent, recent[1:]) if cur.usage > prev.usage)
        growth_ratio = growth_count / (len(recent) - 1)

        if growth_ratio <= LEAK_GROWTH_RATIO:
            return None

        report = MemoryLeakReport(
            detected=True,
            growth_percentage=growth_ratio * 100,
            recent_growth=recent[-1].usage - recent[0].usage,
            suspicious_objects=top_object_types() if self.config.track_object_counts else [],
        )

        logger.warning(
            "memory_leak_suspected",
            growth_percentage=f"{report.growth_percentage:.1f}%",
            recent_growth=_mb(report.recent_growth),
        )
        self._emit("memory_leak_detected", report.to_json())
        return report

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_memory_status(self) -> MemoryStatus:
        current = self._sample_usage()
        fraction = self.usage_fraction(current)
        return MemoryStatus(
            current=current,
            peak=self.memory_state.peak_usage,
            baseline=self.memory_state.baseline_usage,
            percentage=fraction * 100,
            limit=self.config.max_memory_usage,
            available=self.config.max_memory_usage - current,
            status=self.classify(fraction),
            chunk_memory_tracked=len(self.chunk_memory),
            is_monitoring=self.memory_state.is_monitoring,
        )

    def get_statistics(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "current_usage": self.memory_state.current_usage,
            "peak_usage": self.memory_state.peak_usage,
            "baseline_usage": self.memory_state.baseline_usage,
            "tracked_chunks": len(self.chunk_memory),
            "history_entries": len(self.memory_history),
            "gc_count": self.memory_state.gc_count,
            "last_gc_time": self.memory_state.last_gc_time,
        }

    def reset_statistics(self) -> None:
        self._reset_metrics()
        self.memory_history = []
        self.chunk_memory.clear()
        logger.debug("memory_statistics_reset")

    def cleanup(self) -> None:
        self.stop_monitoring()
        self.chunk_memory.clear()
        self.memory_history = []
        logger.debug("memory_manager_cleaned_up")
