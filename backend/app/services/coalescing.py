from __future__ import annotations

from collections.abc import Callable, Hashable
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from threading import Lock
from typing import Generic, TypeVar

from backend.app.services.error_taxonomy import ErrorType, SummaryPipelineError

T = TypeVar("T")


@dataclass
class _InFlightEntry(Generic[T]):
    future: Future[T]
    waiters: int


class InFlightRegistry(Generic[T]):
    """
    Process-wide map of key -> pending result handle.

    At most one entry exists per key. The first caller for an absent key starts
    the computation; later callers join the same future until it resolves, after
    which the key is absent again regardless of outcome.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[Hashable, _InFlightEntry[T]] = {}

    def compare_and_swap_in_flight(
        self,
        key: Hashable,
        start: Callable[[], Future[T]],
    ) -> tuple[Future[T], bool]:
        """Return `(future, started)`; `started` is True only for the caller that launched it."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                entry.waiters += 1
                return entry.future, False
            future = start()
            self._entries[key] = _InFlightEntry(future=future, waiters=1)

        # Outside the lock: the callback runs inline when the future is already done.
        future.add_done_callback(lambda done: self._discard(key, done))
        return future, True

    def join(self, key: Hashable) -> Future[T] | None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            entry.waiters += 1
            return entry.future

    def is_in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def waiter_count(self, key: Hashable) -> int:
        with self._lock:
            entry = self._live_entry(key)
            return 0 if entry is None else entry.waiters

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live_entry(self, key: Hashable) -> _InFlightEntry[T] | None:
        # A resolved future can linger until its done-callback runs; it no longer counts.
        entry = self._entries.get(key)
        if entry is None or entry.future.done():
            return None
        return entry

    def _discard(self, key: Hashable, future: Future[T]) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.future is future:
                del self._entries[key]


def wait_for_result(future: Future[T], *, timeout_seconds: float, what: str) -> T:
    """
    Block on a shared future; exceeding `timeout_seconds` is a `network_timeout` failure.

    A computation still queued for a worker when the wait expires is cancelled,
    which resolves the future and returns its key to absent. One that is already
    running keeps going for the other waiters.
    """
    try:
        return future.result(timeout=timeout_seconds)
    except CancelledError as exc:
        raise SummaryPipelineError(
            f"{what} was cancelled before a worker picked it up",
            ErrorType.NETWORK_TIMEOUT,
        ) from exc
    except FutureTimeoutError as exc:
        future.cancel()
        raise SummaryPipelineError(
            f"{what} timed out after {timeout_seconds:.0f}s",
            ErrorType.NETWORK_TIMEOUT,
        ) from exc
