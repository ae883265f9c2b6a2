from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from workload_controller.src.errors import ValidationError

GROUP = "org.mars"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "MyWorkLoad"
PLURAL = "myworkloads"

FINALIZER = f"{PLURAL}.{GROUP}/cleanup"
RESERVED_NAME = "illegal"
MAX_REPLICAS = 255


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Queue and cache key for a namespaced workload."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class WorkloadSpec:
    image: Any = None
    replicas: Any = None

    @classmethod
    def from_dict(cls, raw: Any) -> WorkloadSpec:
        if not isinstance(raw, dict):
            return cls()
        return cls(image=raw.get("image"), replicas=raw.get("replicas"))

    def validate(self) -> None:
        """Raise :class:`ValidationError` unless the spec matches the CRD schema.

        Parsing is lenient so a malformed object can still be cleaned up on
        deletion; validation only gates the apply path.
        """
        if not isinstance(self.image, str) or not self.image:
            raise ValidationError(f"spec.image must be a non-empty string, got: {self.image!r}")
        # bool is an int subclass
        if isinstance(self.replicas, bool) or not isinstance(self.replicas, int):
            raise ValidationError(f"spec.replicas must be an integer, got: {self.replicas!r}")
        if not 0 <= self.replicas <= MAX_REPLICAS:
            raise ValidationError(
                f"spec.replicas must be within [0, {MAX_REPLICAS}], got: {self.replicas}"
            )


@dataclass(frozen=True)
class WorkloadStatus:
    hidden: bool = False

    @classmethod
    def from_dict(cls, raw: Any) -> WorkloadStatus | None:
        """Parse an observed status; ``None`` when absent or not well-formed."""
        if not isinstance(raw, dict):
            return None
        hidden = raw.get("hidden", False)
        if not isinstance(hidden, bool):
            return None
        return cls(hidden=hidden)

    def to_dict(self) -> dict[str, Any]:
        return {"hidden": self.hidden}


@dataclass(frozen=True)
class Workload:
    """Read-only view of a ``MyWorkLoad`` object as returned by the API server.

    The Kubernetes ``CustomObjectsApi`` hands back plain dicts; this wrapper
    pulls out the handful of fields the reconciler cares about so the rest
    of the controller never digs through nested ``metadata`` by hand.
    """

    name: str
    namespace: str | None
    spec: WorkloadSpec = field(default_factory=WorkloadSpec)
    status: WorkloadStatus | None = None
    finalizers: tuple[str, ...] = ()
    deletion_timestamp: str | None = None
    resource_version: str | None = None
    uid: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Workload:
        metadata = raw.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            raise ValueError("object is missing metadata.name")
        return cls(
            name=name,
            namespace=metadata.get("namespace") or None,
            spec=WorkloadSpec.from_dict(raw.get("spec")),
            status=WorkloadStatus.from_dict(raw.get("status")),
            finalizers=tuple(f for f in metadata.get("finalizers") or [] if isinstance(f, str)),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=metadata.get("resourceVersion"),
            uid=metadata.get("uid"),
        )

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace or "", name=self.name)

    @property
    def is_alive(self) -> bool:
        return self.deletion_timestamp is None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers
