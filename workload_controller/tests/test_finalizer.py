from __future__ import annotations

import pytest
from kubernetes.client import ApiException

from workload_controller.src.errors import (
    ConflictError,
    EventPublishError,
    FinalizerProtocolError,
    ValidationError,
)
from workload_controller.src.finalizer import Apply, Cleanup, FinalizerEvent, finalizer
from workload_controller.src.kube import WorkloadStore
from workload_controller.src.resource import FINALIZER, Workload
from workload_controller.src.scheduler import Action, AwaitChange, RequeueAfter
from workload_controller.tests.fakes import FakeCustomObjectsApi, make_workload


class RecordingHandler:
    def __init__(
        self,
        action: Action | None = None,
        error: Exception | None = None,
        api: FakeCustomObjectsApi | None = None,
    ) -> None:
        self.action = action or RequeueAfter(60.0)
        self.error = error
        self.api = api
        self.events: list[FinalizerEvent] = []
        self.calls_seen_by_handler: list[list[tuple[str, str]]] = []

    def __call__(self, event: FinalizerEvent) -> Action:
        self.events.append(event)
        if self.api is not None:
            self.calls_seen_by_handler.append(list(self.api.calls))
        if self.error is not None:
            raise self.error
        return self.action


def _setup(**workload: object) -> tuple[FakeCustomObjectsApi, WorkloadStore, Workload]:
    api = FakeCustomObjectsApi([make_workload(**workload)])  # type: ignore[arg-type]
    store = WorkloadStore(custom_api=api, field_manager="test")
    name = str(workload.get("name", "sample"))
    return api, store, Workload.from_dict(api.stored("default", name))


def test_absent_and_alive_adds_marker_before_apply() -> None:
    api, store, obj = _setup()
    handler = RecordingHandler(api=api)

    action = finalizer(store, FINALIZER, obj, handler)

    assert action == RequeueAfter(60.0)
    assert api.stored("default", "sample")["metadata"]["finalizers"] == [FINALIZER]
    assert len(handler.events) == 1
    assert isinstance(handler.events[0], Apply)
    assert handler.events[0].obj.has_finalizer(FINALIZER)
    assert handler.calls_seen_by_handler[0] == [("patch_metadata", "sample")]


def test_marker_patch_carries_observed_resource_version() -> None:
    api, store, obj = _setup()

    finalizer(store, FINALIZER, obj, RecordingHandler())

    body = api.metadata_patches[0]["body"]
    assert body["metadata"]["resourceVersion"] == obj.resource_version
    assert api.metadata_patches[0]["_content_type"] == "application/merge-patch+json"


def test_add_marker_preserves_foreign_finalizers() -> None:
    api, store, obj = _setup(finalizers=["other.io/keep"])

    finalizer(store, FINALIZER, obj, RecordingHandler())

    assert api.stored("default", "sample")["metadata"]["finalizers"] == [
        "other.io/keep",
        FINALIZER,
    ]


def test_present_and_alive_applies_without_metadata_patch() -> None:
    api, store, obj = _setup(finalizers=[FINALIZER])
    handler = RecordingHandler()

    action = finalizer(store, FINALIZER, obj, handler)

    assert action == RequeueAfter(60.0)
    assert api.metadata_patches == []
    assert isinstance(handler.events[0], Apply)


def test_present_and_deleting_runs_cleanup_then_removes_marker() -> None:
    api, store, obj = _setup(finalizers=[FINALIZER], deletion_timestamp="2026-10-19T12:00:00Z")
    handler = RecordingHandler(action=AwaitChange(), api=api)

    action = finalizer(store, FINALIZER, obj, handler)

    assert action == AwaitChange()
    assert isinstance(handler.events[0], Cleanup)
    # cleanup ran before any metadata write
    assert handler.calls_seen_by_handler[0] == []
    assert api.metadata_patches[0]["body"]["metadata"]["finalizers"] == []
    assert api.stored("default", "sample") is None


def test_failed_cleanup_keeps_marker() -> None:
    api, store, obj = _setup(finalizers=[FINALIZER], deletion_timestamp="2026-10-19T12:00:00Z")
    handler = RecordingHandler(error=EventPublishError("sink down"))

    with pytest.raises(EventPublishError):
        finalizer(store, FINALIZER, obj, handler)

    assert api.metadata_patches == []
    assert api.stored("default", "sample")["metadata"]["finalizers"] == [FINALIZER]


def test_absent_and_deleting_is_a_noop() -> None:
    obj = Workload.from_dict(
        make_workload(deletion_timestamp="2026-10-19T12:00:00Z", finalizers=["other.io/keep"])
    )
    api = FakeCustomObjectsApi()
    store = WorkloadStore(custom_api=api, field_manager="test")
    handler = RecordingHandler()

    action = finalizer(store, FINALIZER, obj, handler)

    assert action == AwaitChange()
    assert handler.events == []
    assert api.calls == []


def test_apply_errors_propagate_unwrapped() -> None:
    _, store, obj = _setup(finalizers=[FINALIZER])

    with pytest.raises(ValidationError):
        finalizer(store, FINALIZER, obj, RecordingHandler(error=ValidationError("bad")))


def test_add_conflict_rereads_and_retries() -> None:
    api, store, obj = _setup()
    api.conflicts = 2
    handler = RecordingHandler()

    action = finalizer(store, FINALIZER, obj, handler, max_conflict_retries=3)

    assert action == RequeueAfter(60.0)
    assert [c[0] for c in api.calls] == [
        "patch_metadata",
        "get",
        "patch_metadata",
        "get",
        "patch_metadata",
    ]
    assert api.stored("default", "sample")["metadata"]["finalizers"] == [FINALIZER]
    assert len(handler.events) == 1


def test_add_conflict_exhaustion_raises_protocol_error_with_cause() -> None:
    api, store, obj = _setup()
    api.conflicts = 10
    handler = RecordingHandler()

    with pytest.raises(FinalizerProtocolError) as excinfo:
        finalizer(store, FINALIZER, obj, handler, max_conflict_retries=2)

    assert isinstance(excinfo.value.__cause__, ConflictError)
    assert [c[0] for c in api.calls].count("patch_metadata") == 3
    assert handler.events == []


def test_add_conflict_reread_sees_deletion_and_skips_apply() -> None:
    api, store, obj = _setup(finalizers=["other.io/keep"])
    api.conflicts = 1
    api.request_deletion("default", "sample")
    handler = RecordingHandler()

    action = finalizer(store, FINALIZER, obj, handler)

    assert action == AwaitChange()
    assert handler.events == []
    assert [c[0] for c in api.calls] == ["patch_metadata", "get"]
    assert api.stored("default", "sample")["metadata"]["finalizers"] == ["other.io/keep"]


def test_add_marker_store_failure_is_wrapped() -> None:
    api, store, obj = _setup()
    api.metadata_error = ApiException(status=500, reason="boom")

    with pytest.raises(FinalizerProtocolError) as excinfo:
        finalizer(store, FINALIZER, obj, RecordingHandler())

    assert excinfo.value.__cause__ is not None
    assert excinfo.value.__cause__.status == 500


def test_remove_conflict_retries_removal_without_rerunning_cleanup() -> None:
    api, store, obj = _setup(
        finalizers=[FINALIZER, "other.io/keep"],
        deletion_timestamp="2026-10-19T12:00:00Z",
    )
    api.conflicts = 1
    handler = RecordingHandler(action=AwaitChange())

    action = finalizer(store, FINALIZER, obj, handler)

    assert action == AwaitChange()
    assert len(handler.events) == 1
    assert api.stored("default", "sample")["metadata"]["finalizers"] == ["other.io/keep"]


def test_remove_conflict_stops_when_marker_already_gone() -> None:
    api, store, obj = _setup(finalizers=[FINALIZER], deletion_timestamp="2026-10-19T12:00:00Z")
    api.conflicts = 1
    # someone else stripped the marker concurrently
    api.stored("default", "sample")["metadata"]["finalizers"] = ["other.io/keep"]

    finalizer(store, FINALIZER, obj, RecordingHandler(action=AwaitChange()))

    assert [c[0] for c in api.calls] == ["patch_metadata", "get"]


def test_remove_conflict_exhaustion_raises_protocol_error() -> None:
    api, store, obj = _setup(finalizers=[FINALIZER], deletion_timestamp="2026-10-19T12:00:00Z")
    api.conflicts = 10

    with pytest.raises(FinalizerProtocolError) as excinfo:
        finalizer(store, FINALIZER, obj, RecordingHandler(action=AwaitChange()), max_conflict_retries=1)

    assert isinstance(excinfo.value.__cause__, ConflictError)
    assert api.stored("default", "sample")["metadata"]["finalizers"] == [FINALIZER]
