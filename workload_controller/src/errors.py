from __future__ import annotations


class ReconcileError(Exception):
    """Base class for every failure a reconciliation attempt can report.

    ``label`` is the low-cardinality value used for the ``error`` metric
    label and in log lines.
    """

    label = "reconcile"


class ValidationError(ReconcileError):
    """The object is structurally invalid and will not be written as-is."""

    label = "validation"


class StoreError(ReconcileError):
    """A read or write against the Kubernetes API failed."""

    label = "store"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    label = "not_found"


class ConflictError(StoreError):
    """The object's resourceVersion moved underneath a patch (HTTP 409)."""

    label = "conflict"


class EventPublishError(ReconcileError):
    """A lifecycle event could not be recorded."""

    label = "event_publish"


class FinalizerProtocolError(ReconcileError):
    """Adding or removing the finalizer marker failed.

    Always raised ``from`` the underlying error so the original cause stays
    available on ``__cause__``.
    """

    label = "finalizer"
