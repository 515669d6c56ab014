"""
Resilience Patterns for cncstream.

Provides the timeout guard used around per-chunk execution.
"""

from .timeout import OperationTimeoutError, with_timeout_async

__all__ = [
    "OperationTimeoutError",
    "with_timeout_async",
]
