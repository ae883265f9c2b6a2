from __future__ import annotations

import enum
import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes import client
from kubernetes.client import ApiException, CoreV1Api

from workload_controller.src.errors import EventPublishError
from workload_controller.src.resource import API_VERSION, KIND, Workload

LOGGER = logging.getLogger(__name__)


class EventType(enum.Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class LifecycleEvent:
    type: EventType
    reason: str
    note: str
    action: str


def utc_now() -> datetime:
    return datetime.now(UTC)


def default_instance() -> str:
    return socket.gethostname()


class EventRecorder:
    """Publishes core/v1 Events that reference a single workload.

    Instances are cheap and carry the reporter identity they were created
    with; obtain one from :meth:`Diagnostics.recorder` so every event uses the
    shared reporter.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        reporter: str,
        instance: str | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.core_api = core_api
        self.reporter = reporter
        self.instance = instance or default_instance()
        self.now_fn = now_fn

    def build_event(self, obj: Workload, event: LifecycleEvent) -> client.CoreV1Event:
        now = self.now_fn()
        return client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{obj.name}.", namespace=obj.namespace),
            involved_object=client.V1ObjectReference(
                api_version=API_VERSION,
                kind=KIND,
                name=obj.name,
                namespace=obj.namespace,
                uid=obj.uid,
                resource_version=obj.resource_version,
            ),
            type=event.type.value,
            reason=event.reason,
            message=event.note,
            action=event.action,
            reporting_component=self.reporter,
            reporting_instance=self.instance,
            source=client.V1EventSource(component=self.reporter),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    def publish(self, obj: Workload, event: LifecycleEvent) -> None:
        body = self.build_event(obj, event)
        try:
            self.core_api.create_namespaced_event(namespace=obj.namespace, body=body)
        except ApiException as exc:
            raise EventPublishError(
                f"failed to publish {event.reason} event for {obj.key} "
                f"(status={exc.status}): {exc.reason}"
            ) from exc
        LOGGER.info("Published %s event %s for %s", event.type.value, event.reason, obj.key)
