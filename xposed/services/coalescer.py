"""In-flight request coalescing."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Hashable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class InFlightRequest(Generic[T]):
    key: Hashable
    task: "asyncio.Future[T]"
    subscriber_count: int = 1


class InFlightCoalescer(Generic[T]):
    """Ensures at most one outstanding operation per key.

    The first caller for a key starts ``factory()``; anyone arriving while it
    runs awaits the same task. Once it settles the key is released and the
    next caller starts fresh. Callers are shielded from each other, so one
    cancelled waiter does not cancel the shared task.
    """

    def __init__(self):
        self._in_flight: Dict[Hashable, InFlightRequest[T]] = {}

    async def run_exclusive(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        request = self._in_flight.get(key)
        if request is not None:
            request.subscriber_count += 1
            logger.debug(f"Joining in-flight request for {key} ({request.subscriber_count} subscribers)")
        else:
            task = asyncio.ensure_future(factory())
            request = InFlightRequest(key=key, task=task)
            self._in_flight[key] = request
            task.add_done_callback(lambda t, r=request: self._settle(r))

        return await asyncio.shield(request.task)

    def _settle(self, request: InFlightRequest[T]) -> None:
        # A newer request may already own the key after clear()
        if self._in_flight.get(request.key) is request:
            del self._in_flight[request.key]
        task = request.task
        if not task.cancelled():
            # Mark the exception retrieved when every subscriber has gone away
            task.exception()

    def subscriber_count(self, key: Hashable) -> int:
        request = self._in_flight.get(key)
        return request.subscriber_count if request else 0

    def clear(self) -> None:
        """Cancel and forget every in-flight request."""
        requests = list(self._in_flight.values())
        self._in_flight.clear()
        for request in requests:
            if not request.task.done():
                request.task.cancel()
        if requests:
            logger.debug(f"Cancelled {len(requests)} in-flight requests")

    def __contains__(self, key: object) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)
