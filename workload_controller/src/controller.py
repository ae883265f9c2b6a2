from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from workload_controller.src.config import ControllerConfig
from workload_controller.src.diagnostics import Diagnostics
from workload_controller.src.errors import ReconcileError, StoreError
from workload_controller.src.kube import WorkloadList, WorkloadStore
from workload_controller.src.metrics import METRICS
from workload_controller.src.reconciler import Context, error_policy, reconcile
from workload_controller.src.resource import ObjectKey, Workload
from workload_controller.src.scheduler import (
    Action,
    Failed,
    ReconcileResult,
    WorkQueue,
    next_due,
)

WATCH_TIMEOUT_SECONDS = 30
WORKER_POLL_SECONDS = 0.5


class WorkloadController:
    """Keeps every ``MyWorkLoad`` converging on its spec.

    The calling thread runs a list-then-watch loop that only maintains an
    in-memory object cache and enqueues object keys.  A fixed pool of worker
    threads pulls keys from a :class:`WorkQueue` and runs :func:`reconcile`
    for the cached object.  The queue guarantees that a key is never handled
    by two workers at once and that a burst of notifications arriving while a
    key is in flight collapses into one follow-up run.

    After each attempt the returned action is turned into the key's next due
    time: ``RequeueAfter`` from the start of the attempt, failures after the
    error policy's fixed backoff, ``AwaitChange`` not at all.
    """

    def __init__(
        self,
        store: WorkloadStore,
        context: Context,
        *,
        workers: int = 4,
        shutdown_grace_seconds: float = 30.0,
        queue: WorkQueue[ObjectKey] | None = None,
        logger: logging.Logger | None = None,
        reconcile_fn: Callable[[Workload, Context], Action] = reconcile,
        error_policy_fn: Callable[[Workload, BaseException, Context], Action] = error_policy,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.store = store
        self.context = context
        self.workers = workers
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.queue: WorkQueue[ObjectKey] = queue or WorkQueue()
        self.logger = logger or logging.getLogger(__name__)
        self.reconcile_fn = reconcile_fn
        self.error_policy_fn = error_policy_fn

        self._cache: dict[ObjectKey, Workload] = {}
        self._cache_lock = threading.Lock()
        self._worker_threads: list[threading.Thread] = []

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._stop_event = threading.Event()
        self._active_watcher: watch.Watch | None = None
        # Reentrant: request_stop may run from a signal handler on the watch thread.
        self._watcher_lock = threading.RLock()

    def ensure_queryable(self) -> None:
        """Fail fast with :class:`StoreError` if the CRD cannot be listed."""
        self.store.list(limit=1)

    def cached(self, key: ObjectKey) -> Workload | None:
        with self._cache_lock:
            return self._cache.get(key)

    def _update_queue_depth(self) -> None:
        METRICS.queue_depth.set(len(self.queue))

    def _sync_cache_from_list(self, listing: WorkloadList) -> None:
        """Replace the cache with a full listing and enqueue every key.

        Keys that vanished while the watch was disconnected are forgotten.
        """
        fresh = {obj.key: obj for obj in listing.items}
        with self._cache_lock:
            removed = set(self._cache) - set(fresh)
            self._cache = fresh
        for key in removed:
            self.queue.forget(key)
        for key in fresh:
            self.queue.add(key)
        self._update_queue_depth()

    def handle_watch_event(self, event_type: str, raw: Any) -> ObjectKey | None:
        """Apply one watch notification to the cache and enqueue its key."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        if not isinstance(raw, dict):
            return None
        try:
            obj = Workload.from_dict(raw)
        except ValueError:
            self.logger.warning("Skipping %s event for an object without a name", event_type)
            return None

        key = obj.key
        if event_type == "DELETED":
            with self._cache_lock:
                self._cache.pop(key, None)
            self.queue.forget(key)
            self.logger.info("%s was removed from the store", key)
        else:
            with self._cache_lock:
                self._cache[key] = obj
            self.queue.add(key)
        self._update_queue_depth()
        return key

    def reconcile_key(self, key: ObjectKey) -> ReconcileResult | None:
        """Run one reconciliation for ``key`` and schedule its next run.

        Returns ``None`` when the object is no longer cached.  Must only be
        called by the worker that currently holds ``key``.
        """
        obj = self.cached(key)
        if obj is None:
            return None

        started_at = self.queue.clock()
        METRICS.reconciliations_total.inc()
        result: ReconcileResult
        try:
            with METRICS.reconcile_duration_seconds.time():
                action = self.reconcile_fn(obj, self.context)
            result = action
        except ReconcileError as exc:
            METRICS.reconcile_failures_total.labels(error=exc.label).inc()
            result = Failed(exc)
            action = self.error_policy_fn(obj, exc, self.context)
            started_at = self.queue.clock()
        except Exception as exc:
            self.logger.exception("Unexpected error reconciling %s", key)
            METRICS.reconcile_failures_total.labels(error="unexpected").inc()
            result = Failed(exc)
            action = self.error_policy_fn(obj, exc, self.context)
            started_at = self.queue.clock()

        due_at = next_due(action, started_at=started_at, now=self.queue.clock())
        if due_at is not None:
            self.queue.add_at(key, due_at)
        self._update_queue_depth()
        return result

    def _worker_loop(self) -> None:
        while True:
            key = self.queue.get(timeout=WORKER_POLL_SECONDS)
            if self._should_stop(self._stop_event):
                # No new runs once shutdown was requested; in-flight ones finish elsewhere.
                self.queue.shut_down()
                if key is not None:
                    self.queue.done(key)
                return
            if key is None:
                if self.queue.is_shutting_down():
                    return
                continue
            try:
                self.reconcile_key(key)
            except Exception:
                self.logger.exception("Worker failed while handling %s", key)
            finally:
                self.queue.done(key)

    def start_workers(self) -> None:
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"reconcile-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._worker_threads.append(thread)

    def stop_workers(self) -> bool:
        """Stop handing out keys and wait for in-flight runs, bounded by the grace period.

        Returns ``False`` if any worker was still busy when the grace period ran out.
        """
        self.queue.shut_down()
        drained = self.queue.wait_idle(timeout=self.shutdown_grace_seconds)
        for thread in self._worker_threads:
            thread.join(timeout=1.0)
        if not drained:
            self.logger.error(
                "%d reconciliation(s) still in flight after %ss shutdown grace period",
                self.queue.in_flight,
                self.shutdown_grace_seconds,
            )
        self._worker_threads = [t for t in self._worker_threads if t.is_alive()]
        return drained

    def request_stop(self) -> None:
        """Request a cooperative stop.

        Workers stop taking keys at once (in-flight runs still finish) and any
        open watch stream is interrupted.  Safe to call from a signal handler.
        """
        self._external_stop.set()
        self.queue.shut_down()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list, start workers, then watch until shutdown.

        1. Retries the initial list with exponential backoff so transient API
           startup failures do not crash-loop the controller.
        2. Seeds the object cache, enqueues every key and starts the workers.
        3. Opens a streaming watch from the list's ``resourceVersion``.
        4. On ``410 Gone`` (etcd compaction), re-lists and resyncs the cache.
        5. On transient errors, applies exponential backoff with jitter
           (capped at 30 s).
        6. On shutdown, stops the queue and waits for in-flight
           reconciliations for at most ``shutdown_grace_seconds``.

        ``401`` / ``403`` responses are treated as configuration errors
        (RBAC/auth) and terminate the loop immediately.
        """
        stop = shutdown_event or threading.Event()
        self._stop_event = stop

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self.store.list()
                resource_version = initial.resource_version
                self._sync_cache_from_list(initial)
                self.ready.set()
                self.logger.info(
                    "Listed %d object(s); starting watch from resourceVersion %s",
                    len(initial.items),
                    resource_version,
                )
                break
            except StoreError as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial MyWorkLoad list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial MyWorkLoad list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        self.start_workers()
        try:
            self._watch_until_stopped(stop, resource_version)
        finally:
            self.ready.clear()
            self.stop_workers()
            self.logger.info("Controller loop stopped")

    def _watch_until_stopped(self, stop: threading.Event, resource_version: str | None) -> None:
        # Reset to 1 after every clean stream; doubled on error up to 30 s.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = self.store.watch(
                    watcher,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue

                    metadata = obj.get("metadata") or {}
                    if metadata.get("resourceVersion"):
                        resource_version = metadata["resourceVersion"]

                    event_type = str(event.get("type", ""))
                    self.handle_watch_event(event_type=event_type, raw=obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        fresh = self.store.list()
                        resource_version = fresh.resource_version
                        self._sync_cache_from_list(fresh)
                    except StoreError as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


def build_controller_from_config(
    config: ControllerConfig,
    custom_api: CustomObjectsApi,
    core_api: CoreV1Api,
) -> WorkloadController:
    """Wire a :class:`WorkloadController` and its collaborators from ``config``."""
    store = WorkloadStore(
        custom_api=custom_api,
        field_manager=config.field_manager,
        namespace=config.namespace,
    )
    context = Context(
        store=store,
        core_api=core_api,
        diagnostics=Diagnostics(reporter=config.reporter),
        requeue_seconds=float(config.requeue_seconds),
        error_backoff_seconds=float(config.error_backoff_seconds),
        conflict_retries=config.conflict_retries,
    )
    return WorkloadController(
        store=store,
        context=context,
        workers=config.workers,
        shutdown_grace_seconds=float(config.shutdown_grace_seconds),
    )
