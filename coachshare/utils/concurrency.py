"""Bounded fan-out helpers for bulk remote work."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class ConnectionClass(str, Enum):
    """Coarse link quality reported by the host platform."""

    WIFI = "wifi"
    CELLULAR = "cellular"
    CONSTRAINED = "constrained"
    OFFLINE = "offline"


def concurrency_for(connection: ConnectionClass | str | None, limit: int) -> int:
    """Scale the configured ``limit`` down for slower links, never below one."""

    limit = max(int(limit), 1)
    if connection is None:
        return limit
    connection = ConnectionClass(connection)
    if connection is ConnectionClass.CELLULAR:
        return max(limit // 2, 1)
    if connection in (ConnectionClass.CONSTRAINED, ConnectionClass.OFFLINE):
        return 1
    return limit


async def gather_bounded(
    items: Iterable[T],
    func: Callable[[T], Awaitable[R]],
    *,
    limit: int,
    return_exceptions: bool = False,
) -> list[Any]:
    """Run ``func`` over ``items`` with at most ``limit`` calls in flight.

    Results keep the order of ``items``. With ``return_exceptions`` a failing
    call yields its exception in place of a result.
    """

    semaphore = asyncio.Semaphore(max(int(limit), 1))

    async def _run(item: T) -> R:
        async with semaphore:
            return await func(item)

    return await asyncio.gather(*(_run(item) for item in items), return_exceptions=return_exceptions)


__all__ = ["ConnectionClass", "concurrency_for", "gather_bounded"]
