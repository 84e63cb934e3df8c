"""Time source and operation deadlines.

Every component takes a ``clock`` callable so expiry logic can be driven
deterministically in tests. Deadlines fail closed: a verification or
rotation that does not finish in time is a denial.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from finguard.core.errors import OperationTimeoutError

T = TypeVar("T")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


async def with_deadline(
    awaitable: Awaitable[T],
    timeout: float | None,
    operation: str,
) -> T:
    """Await ``awaitable`` with a deadline.

    Args:
        awaitable: The operation to run
        timeout: Seconds allowed, or None for no deadline
        operation: Operation name used in the error

    Raises:
        OperationTimeoutError: If the deadline passes first
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(operation) from e
