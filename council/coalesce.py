"""Request deduplication for identical concurrent calls."""

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class RequestCoalescer:
    """Merges concurrent calls that share a key into one physical call.

    The first caller for a key starts the operation as a task; callers that
    arrive while it is in flight await that same task. Everyone gets their
    own deep copy of the result. The task is shielded, so a waiter being
    cancelled leaves the shared call running for the others.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def dedupe(self, key: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        task = self._pending.get(key)
        if task is not None:
            logger.debug("Deduplicating request: %s", key)
        else:
            task = asyncio.ensure_future(operation())
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))

        result = await asyncio.shield(task)
        return copy.deepcopy(result)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def clear(self) -> None:
        self._pending.clear()
