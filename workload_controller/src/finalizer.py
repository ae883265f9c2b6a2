from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Union

from workload_controller.src.errors import (
    ConflictError,
    FinalizerProtocolError,
    NotFoundError,
    StoreError,
)
from workload_controller.src.kube import WorkloadStore
from workload_controller.src.resource import Workload
from workload_controller.src.scheduler import Action, AwaitChange

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFLICT_RETRIES = 3


@dataclass(frozen=True)
class Apply:
    """The object is alive and carries our finalizer."""

    obj: Workload


@dataclass(frozen=True)
class Cleanup:
    """Deletion was requested and our finalizer still blocks it."""

    obj: Workload


FinalizerEvent = Union[Apply, Cleanup]


def _reread(store: WorkloadStore, obj: Workload) -> Workload | None:
    try:
        return store.get(obj.namespace or "", obj.name)
    except StoreError as exc:
        raise FinalizerProtocolError(f"failed to re-read {obj.key} after conflict") from exc


def finalizer(
    store: WorkloadStore,
    finalizer_name: str,
    obj: Workload,
    handler: Callable[[FinalizerEvent], Action],
    *,
    max_conflict_retries: int = DEFAULT_CONFLICT_RETRIES,
) -> Action:
    """Run ``handler`` for ``obj`` while keeping ``finalizer_name`` consistent.

    ======================  =============================================
    state                   effect
    ======================  =============================================
    absent, alive           add the marker, then ``handler(Apply(obj))``
    present, alive          ``handler(Apply(obj))``
    present, deleting       ``handler(Cleanup(obj))``, then remove marker
    absent, deleting        nothing; :class:`AwaitChange`
    ======================  =============================================

    Marker patches carry the observed ``resourceVersion``.  On a conflict the
    object is re-read and the state is evaluated again, up to
    ``max_conflict_retries`` times; after that a
    :class:`FinalizerProtocolError` is raised from the last conflict.  Errors
    raised by ``handler`` propagate unchanged, and a failed cleanup leaves the
    marker in place.
    """
    current: Workload | None = obj
    last_conflict: ConflictError | None = None

    for attempt in range(max_conflict_retries + 1):
        if current is None:
            return AwaitChange()

        if not current.is_alive:
            if not current.has_finalizer(finalizer_name):
                return AwaitChange()
            action = handler(Cleanup(current))
            _remove_finalizer(store, finalizer_name, current, max_conflict_retries)
            return action

        if current.has_finalizer(finalizer_name):
            return handler(Apply(current))

        try:
            current = store.patch_finalizers(current, [*current.finalizers, finalizer_name])
        except ConflictError as exc:
            last_conflict = exc
            LOGGER.info(
                "Conflict adding finalizer to %s (attempt %d/%d); re-reading",
                current.key,
                attempt + 1,
                max_conflict_retries + 1,
            )
            if attempt < max_conflict_retries:
                current = _reread(store, current)
            continue
        except NotFoundError:
            return AwaitChange()
        except StoreError as exc:
            raise FinalizerProtocolError(f"failed to add finalizer to {current.key}") from exc

        LOGGER.info("Added finalizer %s to %s", finalizer_name, current.key)
        return handler(Apply(current))

    raise FinalizerProtocolError(
        f"gave up adding finalizer to {obj.key} after {max_conflict_retries + 1} conflicting attempts"
    ) from last_conflict


def _remove_finalizer(
    store: WorkloadStore,
    finalizer_name: str,
    obj: Workload,
    max_conflict_retries: int,
) -> None:
    current = obj
    last_conflict: ConflictError | None = None

    for attempt in range(max_conflict_retries + 1):
        remaining = [f for f in current.finalizers if f != finalizer_name]
        try:
            store.patch_finalizers(current, remaining)
        except ConflictError as exc:
            last_conflict = exc
            LOGGER.info(
                "Conflict removing finalizer from %s (attempt %d/%d); re-reading",
                current.key,
                attempt + 1,
                max_conflict_retries + 1,
            )
            if attempt == max_conflict_retries:
                break
            fresh = _reread(store, current)
            if fresh is None or not fresh.has_finalizer(finalizer_name):
                return
            current = fresh
            continue
        except NotFoundError:
            return
        except StoreError as exc:
            raise FinalizerProtocolError(f"failed to remove finalizer from {current.key}") from exc

        LOGGER.info("Removed finalizer %s from %s", finalizer_name, current.key)
        return

    raise FinalizerProtocolError(
        f"gave up removing finalizer from {obj.key} after {max_conflict_retries + 1} conflicting attempts"
    ) from last_conflict
