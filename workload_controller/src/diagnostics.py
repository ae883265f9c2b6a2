from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from kubernetes.client import CoreV1Api

from workload_controller.src.events import EventRecorder, utc_now


class ReadWriteLock:
    """Many concurrent readers or a single writer.

    Waiting writers block new readers so a steady stream of readers cannot
    starve a timestamp update.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class DiagnosticsSnapshot:
    last_event: datetime
    reporter: str

    def to_dict(self) -> dict[str, Any]:
        return {"last_event": self.last_event.isoformat(), "reporter": self.reporter}


class Diagnostics:
    """Process-wide reconciliation diagnostics shared by every worker.

    ``reporter`` is fixed at construction; ``last_event`` starts at the
    construction time and is refreshed right before each lifecycle event is
    recorded.  Reads and writes go through a :class:`ReadWriteLock`.
    """

    def __init__(self, reporter: str, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._lock = ReadWriteLock()
        self._reporter = reporter
        self._now_fn = now_fn
        self._last_event = now_fn()

    def snapshot(self) -> DiagnosticsSnapshot:
        with self._lock.read():
            return DiagnosticsSnapshot(last_event=self._last_event, reporter=self._reporter)

    def touch(self) -> datetime:
        with self._lock.write():
            self._last_event = self._now_fn()
            return self._last_event

    def recorder(self, core_api: CoreV1Api, instance: str | None = None) -> EventRecorder:
        with self._lock.read():
            reporter = self._reporter
        return EventRecorder(core_api=core_api, reporter=reporter, instance=instance)
