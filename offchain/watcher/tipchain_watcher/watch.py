"""
Shared primitives for keyed, single-flight, cancellable poll loops.

Every watcher runs its loops as asyncio tasks on one event loop. A loop is
identified by a watch key and registered in a SingleFlight registry, so a
second request for the same key attaches to the running loop instead of
starting another one.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Iterator, Optional, Protocol, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class WatchCancelledError(Exception):
    """Raised into a watch result when the watch is cancelled."""

    def __init__(self, key: str, message: str = "Watch was cancelled"):
        self.key = key
        self.message = message
        super().__init__(f"{message}: {key}")


def transaction_key(chain_id: int, tx_hash: str) -> str:
    """Watch key for a transaction."""
    return f"{chain_id}-{tx_hash.lower()}"


def balance_key(chain_id: int, address: str, token_address: Optional[str] = None) -> str:
    """Watch/cache key for a balance."""
    token = token_address.lower() if token_address else "native"
    return f"{chain_id}-{address.lower()}-{token}"


class CancellationToken:
    """Cooperative cancellation signal checked by poll loops."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class Clock(Protocol):
    """Time source and timer used by the poll loops."""

    def now(self) -> float:
        ...

    async def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> None:
        ...


class SystemClock:
    """Wall-clock time. Sleeps end early when the token is cancelled."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        if token is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class VirtualClock:
    """
    Deterministic clock for tests and simulations.

    Each sleep advances virtual time by the requested amount and yields once
    to the event loop, so loops run as fast as the CPU allows while the
    elapsed time they observe is exact.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> None:
        self.sleeps.append(seconds)
        if token is None or not token.cancelled:
            self._now += max(seconds, 0.0)
        await asyncio.sleep(0)


class PollState(str, Enum):
    """Where a poll loop currently is."""

    SCHEDULED = "scheduled"
    READING = "reading"
    SLEEPING = "sleeping"
    TERMINAL = "terminal"


@dataclass
class WatchHandle(Generic[T]):
    """Per-key state: cancellation token, shared result and listeners."""

    key: str
    token: CancellationToken
    task: "asyncio.Task[T]"
    state: PollState = PollState.SCHEDULED
    listeners: list[Any] = field(default_factory=list)
    last_value: Any = None  # last value reported to listeners
    context: Any = None  # what the loop is watching, for callers that revisit it


class SingleFlight(Generic[T]):
    """
    Registry of in-flight poll loops, at most one per key.

    Handles are removed when their task finishes, whatever the outcome,
    and when they are cancelled.
    """

    def __init__(self, name: str):
        self.name = name
        self._handles: dict[str, WatchHandle[T]] = {}

    def get(self, key: str) -> Optional[WatchHandle[T]]:
        return self._handles.get(key)

    def get_or_start(
        self,
        key: str,
        factory: Callable[[WatchHandle[T]], Awaitable[T]],
    ) -> tuple[WatchHandle[T], bool]:
        """
        Return the running handle for key, or start a new loop.

        The lookup and registration happen without yielding to the event
        loop, so concurrent callers for one key always share a handle.

        Returns (handle, started).
        """
        existing = self._handles.get(key)
        if existing is not None and not existing.task.done():
            return existing, False

        token = CancellationToken()
        handle: WatchHandle[T] = WatchHandle(key=key, token=token, task=None)  # type: ignore[arg-type]

        async def _run() -> T:
            return await factory(handle)

        handle.task = asyncio.ensure_future(_run())
        self._handles[key] = handle
        handle.task.add_done_callback(lambda task: self._finished(handle, task))
        logger.debug("watch_started", registry=self.name, key=key)
        return handle, True

    def cancel(self, key: str) -> bool:
        """Signal cancellation and drop the handle. Returns False if unknown."""
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.token.cancel()
        logger.info("watch_cancelled", registry=self.name, key=key)
        return True

    def cancel_all(self) -> int:
        keys = list(self._handles)
        for key in keys:
            self.cancel(key)
        return len(keys)

    def keys(self) -> list[str]:
        return list(self._handles)

    def __iter__(self) -> Iterator[WatchHandle[T]]:
        return iter(list(self._handles.values()))

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def _finished(self, handle: WatchHandle[T], task: "asyncio.Task[T]") -> None:
        handle.state = PollState.TERMINAL
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]

        # Retrieve the exception so an unawaited loop does not warn on GC.
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, WatchCancelledError):
            logger.error(
                "watch_crashed", registry=self.name, key=handle.key, error=str(exc)
            )


def notify(callback: Callable[[Any], Any], update: Any, **context: Any) -> None:
    """Invoke a progress callback, logging instead of propagating its errors."""
    try:
        callback(update)
    except Exception as e:
        logger.warning("callback_error", error=str(e), **context)
