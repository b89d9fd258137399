"""
In-process concurrency guards.

- KeyedMutex: one lock per key (e.g. per PMS reservation id), created on demand
  and dropped when no thread holds or waits on it. Unrelated keys never contend.
- SingleFlight: concurrent calls for the same key share one execution; callers
  that arrive while it runs wait for it and receive its result.

Both are thread-safe using threading.Lock, the same primitive the service uses
for its other in-memory state.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Generic, Hashable, Iterator, TypeVar

T = TypeVar("T")


class KeyedMutex:
    """
    Mutex per key.

    Example:
        >>> mutex = KeyedMutex()
        >>> with mutex.hold("pms:42"):
        ...     apply_event()
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, refs + 1)

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, refs = self._locks[key]
                if refs <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, refs - 1)

    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        with self._guard:
            return len(self._locks)


class _Call(Generic[T]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: T | None = None
        self.error: BaseException | None = None


class SingleFlight(Generic[T]):
    """
    Coalesce concurrent identical operations into one execution.

    Example:
        >>> flight = SingleFlight()
        >>> report, shared = flight.do("rates", refresh_all)
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._calls: dict[Hashable, _Call[Any]] = {}

    def in_flight(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._calls

    def do(self, key: Hashable, fn: Callable[[], T]) -> tuple[T, bool]:
        """
        Run fn once for all concurrent callers of the same key.

        Returns:
            (result, shared): shared is True for callers that waited on
            another caller's execution instead of running fn themselves.

        Raises:
            Whatever fn raised, re-raised to every waiting caller.
        """
        with self._guard:
            call = self._calls.get(key)
            leader = call is None
            if call is None:
                call = _Call()
                self._calls[key] = call

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result, True  # type: ignore[return-value]

        try:
            call.result = fn()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._guard:
                del self._calls[key]
            call.done.set()

        return call.result, False
