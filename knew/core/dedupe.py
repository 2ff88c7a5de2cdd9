"""
In-flight request coalescing for KNEW.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from knew.errors import RequestCancelled

# Configure logging
logger = logging.getLogger(__name__)


class CancelToken:
    """
    Cancellation signal handed to a cancellable operation.

    Setting the token does not stop anything by itself; the operation polls
    ``cancelled`` or awaits ``wait()`` and settles with RequestCancelled.
    """
    def __init__(self):
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelled("Request aborted")


async def run_cancellable(awaitable: Awaitable, token: Optional[CancelToken]) -> Any:
    """
    Await an operation, aborting it as soon as the token fires.

    Args:
        awaitable: Coroutine or future doing the I/O
        token: Cancel token, or None for an uncancellable call

    Returns:
        The operation's result

    Raises:
        RequestCancelled: If the token fired first
    """
    if token is None:
        return await awaitable

    token.raise_if_cancelled()
    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()

    if work.done():
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise RequestCancelled("Request aborted")


@dataclass
class InFlightRequest:
    key: str
    task: "asyncio.Future[Any]"
    token: CancelToken = field(default_factory=CancelToken)

    def cancel(self) -> None:
        self.token.cancel()


class RequestDeduplicator:
    """
    Guarantees at most one running operation per logical key.

    Concurrent callers with the same key share one future and observe the
    same result or the same exception. The registry entry is dropped exactly
    once, from the future's done callback. A cancelled operation is never
    joined: the next call for its key starts fresh work and takes over the
    registry slot while the aborted one settles.
    """
    def __init__(self):
        self._in_flight: Dict[str, InFlightRequest] = {}

    def __len__(self) -> int:
        return len(self._in_flight)

    def __contains__(self, key: str) -> bool:
        return key in self._in_flight

    async def execute(self, key: str, op: Callable[[CancelToken], Awaitable[Any]]) -> Any:
        """
        Run ``op`` for ``key`` unless the same key is already running.

        Args:
            key: Dedup key identifying the logical request
            op: Callable receiving a CancelToken and returning an awaitable

        Returns:
            The shared result
        """
        existing = self._in_flight.get(key)
        if existing is not None and not existing.token.cancelled:
            logger.debug(f"Reusing existing request for key: {key}")
            return await asyncio.shield(existing.task)

        token = CancelToken()
        task = asyncio.ensure_future(op(token))
        entry = InFlightRequest(key=key, task=task, token=token)
        self._in_flight[key] = entry
        task.add_done_callback(lambda _: self._release(entry))

        # A caller giving up must not cancel the work other callers share
        return await asyncio.shield(task)

    def _release(self, entry: InFlightRequest) -> None:
        if self._in_flight.get(entry.key) is entry:
            del self._in_flight[entry.key]

    def cancel(self, key: str) -> bool:
        """
        Signal the in-flight operation for ``key`` to abort.

        Args:
            key: Dedup key

        Returns:
            True if an operation was signalled
        """
        entry = self._in_flight.get(key)
        if entry is None:
            return False
        logger.debug(f"Cancelling request for key: {key}")
        entry.cancel()
        return True

    def cancel_all(self) -> int:
        """Signal every in-flight operation; returns how many were signalled."""
        entries = list(self._in_flight.values())
        for entry in entries:
            entry.cancel()
        return len(entries)
