from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from workload_controller.src.errors import ConflictError, NotFoundError, StoreError
from workload_controller.src.resource import (
    API_VERSION,
    GROUP,
    KIND,
    PLURAL,
    VERSION,
    Workload,
    WorkloadStatus,
)

LOGGER = logging.getLogger(__name__)

APPLY_PATCH = "application/apply-patch+yaml"
MERGE_PATCH = "application/merge-patch+json"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CustomObjectsApi, CoreV1Api]:
    """Return the CustomObjects and CoreV1 API clients using the active kube configuration."""
    return client.CustomObjectsApi(), client.CoreV1Api()


def translate_api_exception(exc: ApiException, action: str) -> StoreError:
    """Map an ``ApiException`` onto the controller's store error classes."""
    message = f"{action} failed (status={exc.status}): {exc.reason}"
    if exc.status == 404:
        return NotFoundError(message, status=exc.status)
    if exc.status == 409:
        return ConflictError(message, status=exc.status)
    return StoreError(message, status=exc.status)


def status_apply_patch(status: WorkloadStatus) -> dict[str, Any]:
    """Build the server-side apply body for the status subresource.

    Only ``apiVersion``, ``kind`` and ``status`` are set; every field left
    out stays owned by whichever manager last wrote it.
    """
    return {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "status": status.to_dict(),
    }


@dataclass(frozen=True)
class WorkloadList:
    items: list[Workload]
    resource_version: str | None


class WorkloadStore:
    """Thin typed facade over ``CustomObjectsApi`` for ``MyWorkLoad`` objects.

    Every Kubernetes error is translated into :mod:`workload_controller.src.errors`
    so callers never need to inspect HTTP status codes themselves.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        field_manager: str,
        namespace: str | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.field_manager = field_manager
        self.namespace = namespace or None

    def get(self, namespace: str, name: str) -> Workload | None:
        """Read a single object; ``None`` when it no longer exists."""
        try:
            raw = self.custom_api.get_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise translate_api_exception(exc, f"get {namespace}/{name}") from exc
        return Workload.from_dict(raw)

    def _list_call(self, **kwargs: Any) -> Any:
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=self.namespace,
                plural=PLURAL,
                **kwargs,
            )
        return self.custom_api.list_cluster_custom_object(
            group=GROUP,
            version=VERSION,
            plural=PLURAL,
            **kwargs,
        )

    def list(self, limit: int | None = None) -> WorkloadList:
        kwargs: dict[str, Any] = {}
        if limit is not None:
            kwargs["limit"] = limit
        try:
            raw = self._list_call(**kwargs)
        except ApiException as exc:
            raise translate_api_exception(exc, f"list {PLURAL}") from exc

        items: list[Workload] = []
        for item in raw.get("items") or []:
            try:
                items.append(Workload.from_dict(item))
            except ValueError:
                LOGGER.warning("Skipping listed %s without a name", KIND)
        resource_version = (raw.get("metadata") or {}).get("resourceVersion")
        return WorkloadList(items=items, resource_version=resource_version)

    def patch_status(self, namespace: str, name: str, status: WorkloadStatus) -> Workload:
        """Server-side apply ``status`` to the status subresource of one object."""
        try:
            raw = self.custom_api.patch_namespaced_custom_object_status(
                group=GROUP,
                version=VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
                body=status_apply_patch(status),
                field_manager=self.field_manager,
                force=True,
                _content_type=APPLY_PATCH,
            )
        except ApiException as exc:
            raise translate_api_exception(exc, f"patch status of {namespace}/{name}") from exc
        return Workload.from_dict(raw)

    def patch_finalizers(self, obj: Workload, finalizers: list[str]) -> Workload:
        """Replace the finalizer list of ``obj``.

        The merge patch carries the ``resourceVersion`` we last observed, so
        the API server rejects it with 409 when anyone else wrote to the
        object since; callers re-read and decide again.
        """
        metadata: dict[str, Any] = {"finalizers": finalizers}
        if obj.resource_version:
            metadata["resourceVersion"] = obj.resource_version
        try:
            raw = self.custom_api.patch_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=obj.namespace,
                plural=PLURAL,
                name=obj.name,
                body={"metadata": metadata},
                _content_type=MERGE_PATCH,
            )
        except ApiException as exc:
            raise translate_api_exception(exc, f"patch finalizers of {obj.key}") from exc
        return Workload.from_dict(raw)

    def watch(
        self,
        watcher: watch.Watch,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[dict[str, Any]]:
        """Open a watch stream of raw ``{type, object}`` events."""
        kwargs: dict[str, Any] = {
            "group": GROUP,
            "version": VERSION,
            "plural": PLURAL,
            "resource_version": resource_version,
            "timeout_seconds": timeout_seconds,
        }
        if self.namespace:
            return watcher.stream(
                self.custom_api.list_namespaced_custom_object,
                namespace=self.namespace,
                **kwargs,
            )
        return watcher.stream(self.custom_api.list_cluster_custom_object, **kwargs)
