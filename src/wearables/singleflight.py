"""Per-key request coalescing for asyncio.

``SingleFlight.do(key, fn)`` runs ``fn()`` at most once at a time per key.
Callers arriving while a call for the same key is in flight await that call
and receive its result (or its exception) instead of starting their own.

Scope is one process.  Multiple workers may each refresh once; the credential
store's monotonic expiry keeps that harmless.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger("carelink.wearables.singleflight")

T = TypeVar("T")


class SingleFlight(Generic[T]):
    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future[T]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight call for %s", key)
            # shield: one waiter being cancelled must not cancel the shared call
            return await asyncio.shield(existing)

        task: asyncio.Task[T] = asyncio.ensure_future(fn())
        self._inflight[key] = task
        task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)
