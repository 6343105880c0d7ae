"""Deadline wrapper for store and routing calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from pyfleettrack.exceptions import TrackingTimeoutError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_deadline(awaitable: Awaitable[T], timeout: float | None, *, operation: str) -> T:
    """Await *awaitable*, raising :class:`TrackingTimeoutError` after *timeout* seconds.

    ``None`` disables the deadline.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as exc:
        if isinstance(exc, TrackingTimeoutError):
            raise
        _logger.debug("%s exceeded deadline of %ss", operation, timeout)
        raise TrackingTimeoutError(
            f"{operation} timed out after {timeout}s",
            operation=operation,
            timeout=timeout,
        ) from exc
