"""Timeout Resilience Pattern."""

import asyncio
from typing import Any

from cncstream.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class OperationTimeoutError(Exception):
    """
    Raised when an operation exceeds its time budget.

    Named to avoid shadowing Python's built-in asyncio.TimeoutError.
    """

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation '{operation}' timed out after {timeout_seconds}s")


async def with_timeout_async(
    coro,
    timeout_seconds: float,
    operation_name: str = "operation",
) -> Any:
    """Execute a coroutine with a timeout. The coroutine is cancelled on expiry."""
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "operation_timeout",
            operation=operation_name,
            timeout=timeout_seconds,
        )
        raise OperationTimeoutError(operation_name, timeout_seconds)
