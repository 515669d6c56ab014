"""
Host memory probes used by the MemoryManager.

Kept separate so tests can inject deterministic samplers.
"""

import gc

import psutil

from cncstream.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def process_memory_usage() -> int:
    """Resident set size of the current process in bytes (0 if unavailable)."""
    try:
        return psutil.Process().memory_info().rss
    except (psutil.Error, OSError) as e:
        logger.debug("memory_probe_failed", error=str(e))
        return 0


def collect_garbage() -> int:
    """Run a full collection. Returns the number of unreachable objects found."""
    return gc.collect()


def top_object_types(limit: int = 5) -> list[dict]:
    """Most frequent live object types tracked by the collector."""
    counts: dict[str, int] = {}
    for obj in gc.get_objects():
        name = type(obj).__name__
        counts[name] = counts.get(name, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [{"type": name, "count": count} for name, count in ranked]
