from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from kubernetes.client import CoreV1Api

from workload_controller.src.diagnostics import Diagnostics
from workload_controller.src.errors import ReconcileError, ValidationError
from workload_controller.src.events import EventType, LifecycleEvent
from workload_controller.src.finalizer import (
    DEFAULT_CONFLICT_RETRIES,
    Apply,
    Cleanup,
    FinalizerEvent,
    finalizer,
)
from workload_controller.src.kube import WorkloadStore
from workload_controller.src.resource import FINALIZER, RESERVED_NAME, Workload, WorkloadStatus
from workload_controller.src.scheduler import Action, AwaitChange, RequeueAfter

LOGGER = logging.getLogger(__name__)


def derive_status(obj: Workload) -> WorkloadStatus:
    """Default desired-status rule: a workload scaled to zero is hidden."""
    return WorkloadStatus(hidden=obj.spec.replicas == 0)


@dataclass
class Context:
    """Everything a reconciliation needs besides the object itself."""

    store: WorkloadStore
    core_api: CoreV1Api
    diagnostics: Diagnostics
    requeue_seconds: float = 60.0
    error_backoff_seconds: float = 10.0
    conflict_retries: int = DEFAULT_CONFLICT_RETRIES
    desired_status: Callable[[Workload], WorkloadStatus] = field(default=derive_status)


def preflight(obj: Workload) -> None:
    """Reject structurally invalid objects before any write is attempted."""
    if not obj.namespace:
        raise RuntimeError(f"{obj.name} has no namespace; MyWorkLoad is namespace-scoped")
    if obj.name == RESERVED_NAME:
        raise ValidationError(f"{obj.key}: the name {RESERVED_NAME!r} is reserved")
    try:
        obj.spec.validate()
    except ValidationError as exc:
        raise ValidationError(f"{obj.key}: {exc}") from exc


def apply_workload(obj: Workload, ctx: Context) -> Action:
    """Drive ``obj`` toward its desired status and resync after ``requeue_seconds``."""
    preflight(obj)
    status = ctx.desired_status(obj)
    if obj.status != status:
        LOGGER.info(
            "Status of %s drifted: observed %s, desired %s",
            obj.key,
            obj.status.to_dict() if obj.status is not None else None,
            status.to_dict(),
        )
    ctx.store.patch_status(obj.namespace, obj.name, status)
    LOGGER.debug("Applied status %s to %s", status.to_dict(), obj.key)
    return RequeueAfter(ctx.requeue_seconds)


def cleanup_workload(obj: Workload, ctx: Context) -> Action:
    """Record that deletion was requested; the finalizer is released by the caller.

    Nothing is scheduled afterwards: the next trigger is our own finalizer
    removal or a forced delete.
    """
    ctx.diagnostics.touch()
    recorder = ctx.diagnostics.recorder(ctx.core_api)
    recorder.publish(
        obj,
        LifecycleEvent(
            type=EventType.NORMAL,
            reason="DeleteRequested",
            note=f"Delete `{obj.name}`",
            action="Deleting",
        ),
    )
    return AwaitChange()


def handle_event(event: FinalizerEvent, ctx: Context) -> Action:
    if isinstance(event, Apply):
        return apply_workload(event.obj, ctx)
    if isinstance(event, Cleanup):
        return cleanup_workload(event.obj, ctx)
    raise TypeError(f"unsupported finalizer event: {event!r}")


def reconcile(obj: Workload, ctx: Context) -> Action:
    """Single entry point for one reconciliation of ``obj``.

    Live objects are checked up front so an invalid one never even gets the
    finalizer; deleting objects always go through cleanup.
    """
    if obj.is_alive:
        preflight(obj)
    return finalizer(
        ctx.store,
        FINALIZER,
        obj,
        lambda event: handle_event(event, ctx),
        max_conflict_retries=ctx.conflict_retries,
    )


def error_policy(obj: Workload, error: BaseException, ctx: Context) -> Action:
    """Every failure is retried after the fixed backoff; nothing is dropped."""
    label = error.label if isinstance(error, ReconcileError) else type(error).__name__
    cause = error.__cause__
    if cause is not None:
        LOGGER.warning(
            "Reconcile of %s failed [%s]: %s (cause: %s); retrying in %ss",
            obj.key,
            label,
            error,
            cause,
            ctx.error_backoff_seconds,
        )
    else:
        LOGGER.warning(
            "Reconcile of %s failed [%s]: %s; retrying in %ss",
            obj.key,
            label,
            error,
            ctx.error_backoff_seconds,
        )
    return RequeueAfter(ctx.error_backoff_seconds)
