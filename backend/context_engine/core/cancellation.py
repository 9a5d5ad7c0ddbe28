"""
Cooperative cancellation for pipeline operations
"""
import asyncio
from typing import Optional, Set

from context_engine.core.errors import PipelineCancelled


class CancellationToken:
    """
    Cancellation flag checked at every suspend point of the pipeline

    The token is created by the caller and passed down to every async
    operation; cancelling it makes the next check (or an in-progress backoff
    sleep) raise PipelineCancelled.
    """

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None
        # One event per pending sleep, created inside the running loop
        self._waiters: Set[asyncio.Event] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Optional[str] = None):
        """Request cancellation"""
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        for waiter in self._waiters:
            waiter.set()

    def raise_if_cancelled(self):
        """Raise PipelineCancelled if cancellation was requested"""
        if self._cancelled:
            raise PipelineCancelled(self.reason)

    async def sleep(self, seconds: float):
        """Sleep for the given delay, waking early and raising if cancelled"""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        waiter = asyncio.Event()
        self._waiters.add(waiter)
        try:
            await asyncio.wait_for(waiter.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        finally:
            self._waiters.discard(waiter)
        self.raise_if_cancelled()


def check_cancelled(token: Optional[CancellationToken]):
    """Raise if an optional token has been cancelled"""
    if token is not None:
        token.raise_if_cancelled()
