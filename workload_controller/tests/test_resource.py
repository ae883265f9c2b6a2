from __future__ import annotations

import pytest

from workload_controller.src.errors import ValidationError
from workload_controller.src.resource import (
    FINALIZER,
    ObjectKey,
    Workload,
    WorkloadSpec,
    WorkloadStatus,
)
from workload_controller.tests.fakes import make_workload


def test_from_dict_reads_metadata_spec_and_status() -> None:
    obj = Workload.from_dict(
        make_workload(
            finalizers=[FINALIZER],
            resource_version="7",
            status={"hidden": True},
        )
    )

    assert obj.key == ObjectKey("default", "sample")
    assert str(obj.key) == "default/sample"
    assert obj.spec == WorkloadSpec(image="nginx", replicas=3)
    assert obj.status == WorkloadStatus(hidden=True)
    assert obj.finalizers == (FINALIZER,)
    assert obj.resource_version == "7"
    assert obj.uid == "uid-sample"
    assert obj.is_alive
    assert obj.has_finalizer(FINALIZER)


def test_deletion_timestamp_marks_object_not_alive() -> None:
    obj = Workload.from_dict(make_workload(deletion_timestamp="2026-10-19T12:00:00Z"))

    assert not obj.is_alive


def test_missing_status_and_finalizers_are_tolerated() -> None:
    raw = make_workload()
    raw["metadata"].pop("finalizers")

    obj = Workload.from_dict(raw)

    assert obj.status is None
    assert obj.finalizers == ()


def test_from_dict_requires_name() -> None:
    with pytest.raises(ValueError):
        Workload.from_dict({"metadata": {"namespace": "default"}})


def test_malformed_spec_still_parses() -> None:
    raw = make_workload()
    raw["spec"] = "not-a-mapping"

    obj = Workload.from_dict(raw)

    assert obj.spec == WorkloadSpec()
    with pytest.raises(ValidationError):
        obj.spec.validate()


@pytest.mark.parametrize("replicas", [0, 1, 255])
def test_valid_replica_bounds(replicas: int) -> None:
    WorkloadSpec(image="nginx", replicas=replicas).validate()


@pytest.mark.parametrize("replicas", [-1, 256, 3.5, None])
def test_invalid_replicas(replicas: object) -> None:
    with pytest.raises(ValidationError):
        WorkloadSpec(image="nginx", replicas=replicas).validate()


@pytest.mark.parametrize("hidden", ["yes", 1, None])
def test_malformed_observed_status_reads_as_unknown(hidden: object) -> None:
    obj = Workload.from_dict(make_workload(status={"hidden": hidden}))

    assert obj.status is None
