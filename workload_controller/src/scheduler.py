from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

K = TypeVar("K", bound=Hashable)


@dataclass(frozen=True)
class RequeueAfter:
    """Run again ``seconds`` after the start of the attempt that returned this."""

    seconds: float


@dataclass(frozen=True)
class RequeueImmediate:
    pass


@dataclass(frozen=True)
class AwaitChange:
    """Schedule nothing; the next watch notification triggers the next run."""


@dataclass(frozen=True)
class Failed:
    error: BaseException


Action = Union[RequeueAfter, RequeueImmediate, AwaitChange]
ReconcileResult = Union[RequeueAfter, RequeueImmediate, AwaitChange, Failed]


def next_due(action: Action, started_at: float, now: float) -> float | None:
    """Return the monotonic due-at time for ``action``, or ``None`` to wait for the watch.

    ``RequeueAfter`` is measured from ``started_at`` but never lands in the past.
    """
    if isinstance(action, RequeueAfter):
        return max(now, started_at + action.seconds)
    if isinstance(action, RequeueImmediate):
        return now
    return None


class WorkQueue(Generic[K]):
    """Keyed delay queue with per-key serialization.

    - A key is queued at most once; adding it again keeps the earliest due time.
    - ``get`` marks a key in flight and no other ``get`` returns it until
      ``done`` is called.
    - Adds for an in-flight key are parked and collapse into a single entry
      that becomes eligible once ``done`` is called.
    - After ``shut_down`` no key is handed out; ``get`` returns ``None``.

    Heap entries are invalidated lazily: an entry is live only while its due
    time still matches ``_due[key]``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, K]] = []
        self._seq = itertools.count()
        self._due: dict[K, float] = {}
        self._parked: dict[K, float] = {}
        self._processing: set[K] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._due) + len(self._parked)

    @property
    def in_flight(self) -> int:
        with self._cond:
            return len(self._processing)

    def is_shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: K, delay: float = 0.0) -> None:
        self.add_at(key, self.clock() + max(0.0, delay))

    def add_at(self, key: K, due_at: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if key in self._processing:
                existing = self._parked.get(key)
                if existing is None or due_at < existing:
                    self._parked[key] = due_at
                return
            self._push(key, due_at)

    def _push(self, key: K, due_at: float) -> None:
        existing = self._due.get(key)
        if existing is not None and existing <= due_at:
            return
        self._due[key] = due_at
        heapq.heappush(self._heap, (due_at, next(self._seq), key))
        self._cond.notify()

    def scheduled_at(self, key: K) -> float | None:
        with self._cond:
            return self._due.get(key, self._parked.get(key))

    def forget(self, key: K) -> None:
        """Drop any queued or parked entry for ``key``."""
        with self._cond:
            self._due.pop(key, None)
            self._parked.pop(key, None)

    def get(self, timeout: float | None = None) -> K | None:
        """Block until a key is due and return it, or ``None`` on shutdown/timeout."""
        deadline = None if timeout is None else self.clock() + timeout
        with self._cond:
            while not self._shutting_down:
                now = self.clock()
                while self._heap:
                    due_at, _, key = self._heap[0]
                    if self._due.get(key) != due_at:
                        heapq.heappop(self._heap)
                        continue
                    if due_at > now:
                        break
                    heapq.heappop(self._heap)
                    del self._due[key]
                    self._processing.add(key)
                    return key

                wait_for: float | None = None
                if self._heap:
                    wait_for = self._heap[0][0] - now
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)
            return None

    def done(self, key: K) -> None:
        with self._cond:
            self._processing.discard(key)
            parked = self._parked.pop(key, None)
            if parked is not None and not self._shutting_down:
                self._push(key, parked)
            self._cond.notify_all()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def wait_idle(self, timeout: float) -> bool:
        """Wait until nothing is in flight; return ``False`` if ``timeout`` expires first."""
        deadline = self.clock() + timeout
        with self._cond:
            while self._processing:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining)
            return True
