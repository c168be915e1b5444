from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ojekkampus.logging import get_logger
from ojekkampus.service.errors import ServiceTimeoutError

logger = get_logger(__name__)

T = TypeVar("T")


async def call_with_deadline(
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float],
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking ledger call in a worker thread bounded by ``timeout``.

    A missed deadline raises ``ServiceTimeoutError``; the caller must not
    assume the underlying write was or was not committed.
    """

    if not timeout or timeout <= 0:
        return await asyncio.to_thread(func, *args, **kwargs)
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError as exc:
        logger.error("deadline_exceeded", operation=operation, timeout=timeout)
        raise ServiceTimeoutError(
            f"{operation} timed out",
            detail={"operation": operation, "timeout": timeout},
        ) from exc


async def run_with_deadline(
    awaitable: Awaitable[T], timeout: Optional[float], operation: str
) -> T:
    """Bound a whole service operation by a caller-supplied deadline."""

    if not timeout or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        logger.error("deadline_exceeded", operation=operation, timeout=timeout)
        raise ServiceTimeoutError(
            f"{operation} timed out",
            detail={"operation": operation, "timeout": timeout},
        ) from exc
