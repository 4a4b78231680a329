#!/usr/bin/env python3
"""
Per-host concurrency limiting for outbound fetches.

Every fetch goes through a single HostLimiter so that no origin ever sees more than
``max_per_host`` simultaneous requests from this process, while requests to
different hosts never wait on each other.
"""

from asyncio import CancelledError, Future, get_running_loop
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, TypeVar

from config import get_logger

logger = get_logger("host_limiter")

T = TypeVar("T")


class HostLimiter:
    """A per-hostname counting gate with FIFO hand-off.

    Each host has an active-operation count and a queue of suspended callers. When
    an operation finishes and someone is waiting, its slot is handed straight to
    the oldest waiter (the count does not change), so waiters are served in
    arrival order and a newcomer can never jump the queue. When nobody is waiting
    the count is decremented, and the host is forgotten entirely at zero.

    State is only touched from the event loop and never across an ``await``, which
    makes try-acquire, enqueue and release-and-handoff atomic with respect to
    other tasks.
    """

    def __init__(self, max_per_host: int = 3):
        """Initialize the limiter.

        Args:
            max_per_host: Maximum concurrently running operations per hostname.
        """
        if max_per_host < 1:
            raise ValueError("max_per_host must be at least 1")
        self.max_per_host = max_per_host
        self._active: Dict[str, int] = {}
        self._waiters: Dict[str, Deque[Future]] = {}

    async def acquire_and_run(self, host: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation()`` once a slot for ``host`` is available.

        The operation's result or exception is passed through untouched; the
        limiter never retries.
        """
        await self._acquire(host)
        try:
            return await operation()
        finally:
            self._release(host)

    def active(self, host: str) -> int:
        """Number of operations currently holding a slot for ``host``."""
        return self._active.get(host, 0)

    def waiting(self, host: str) -> int:
        """Number of callers queued for ``host``."""
        return sum(1 for waiter in self._waiters.get(host, ()) if not waiter.done())

    @property
    def tracked_hosts(self) -> List[str]:
        """Hosts with at least one active operation."""
        return list(self._active)

    async def _acquire(self, host: str) -> None:
        active = self._active.get(host, 0)
        if active < self.max_per_host and not self._waiters.get(host):
            self._active[host] = active + 1
            return

        waiter = get_running_loop().create_future()
        self._waiters.setdefault(host, deque()).append(waiter)
        logger.debug(f"Host {host} at capacity ({active}/{self.max_per_host}), queued caller")
        try:
            await waiter
        except CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was already handed to us; pass it on
                self._release(host)
            else:
                self._discard_waiter(host, waiter)
            raise

    def _release(self, host: str) -> None:
        queue = self._waiters.get(host)
        while queue:
            waiter = queue.popleft()
            if not waiter.done():
                waiter.set_result(None)
                if not queue:
                    del self._waiters[host]
                return
        self._waiters.pop(host, None)

        remaining = self._active.get(host, 0) - 1
        if remaining > 0:
            self._active[host] = remaining
        else:
            self._active.pop(host, None)

    def _discard_waiter(self, host: str, waiter: Future) -> None:
        queue = self._waiters.get(host)
        if not queue:
            return
        try:
            queue.remove(waiter)
        except ValueError:
            pass
        if not queue:
            del self._waiters[host]
