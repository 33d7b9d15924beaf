"""Tests for the Pydantic record models."""

import pytest
from pydantic import ValidationError

from cfoperator.models import (
    CFApp,
    CFTask,
    GlobalNetworkPolicy,
    NetworkPolicy,
    ObjectMeta,
    OwnershipError,
    Secret,
    TaskWorkload,
    add_finalizer,
    controller_owner,
    get_resource_class,
    has_finalizer,
    remove_finalizer,
    set_controller_reference,
)


def _owned(name: str = "task-1", namespace: str = "ns-1", uid: str | None = "uid-1") -> CFTask:
    return CFTask(metadata=ObjectMeta(name=name, namespace=namespace, uid=uid))


class TestParsing:
    """Tests for wire-shape parsing and serialization."""

    def test_camel_case_fields(self) -> None:
        task = CFTask.model_validate(
            {
                "metadata": {"name": "task-1", "namespace": "ns-1", "resourceVersion": "3"},
                "spec": {"command": "echo", "appRef": {"name": "app-1"}},
                "status": {"memoryMB": 256, "diskQuotaMB": 512, "dropletRef": {"name": "b"}},
            }
        )

        assert task.metadata.resource_version == "3"
        assert task.spec.app_ref.name == "app-1"
        assert task.status.memory_mb == 256
        assert task.status.droplet_ref.name == "b"

    def test_to_dict_adds_type_fields(self) -> None:
        data = NetworkPolicy(metadata=ObjectMeta(name="default.sg", namespace="ns-1")).to_dict()

        assert data["apiVersion"] == "projectcalico.org/v3"
        assert data["kind"] == "NetworkPolicy"
        assert "namespaceSelector" not in data["spec"]

    def test_null_collections_become_empty(self) -> None:
        app = CFApp.model_validate(
            {
                "metadata": {"name": "a", "labels": None, "finalizers": None},
                "status": {"conditions": None},
            }
        )

        assert app.metadata.labels == {}
        assert app.metadata.finalizers == []
        assert app.status.conditions == []

    def test_name_required(self) -> None:
        with pytest.raises(ValidationError):
            CFApp.model_validate({"metadata": {"name": ""}})

    def test_invalid_desired_state(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            CFApp.model_validate({"metadata": {"name": "a"}, "spec": {"desiredState": "RUNNING"}})

        assert "desiredState" in str(exc_info.value)

    def test_unknown_fields_ignored(self) -> None:
        app = CFApp.model_validate({"metadata": {"name": "a", "managedFields": []}, "extra": 1})

        assert app.name == "a"

    def test_deep_copy_is_independent(self) -> None:
        app = CFApp(metadata=ObjectMeta(name="a", labels={"x": "1"}))

        copied = app.deep_copy()
        copied.metadata.labels["x"] = "2"

        assert app.metadata.labels == {"x": "1"}


class TestKindRegistry:
    def test_known_kind(self) -> None:
        assert get_resource_class("GlobalNetworkPolicy") is GlobalNetworkPolicy

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError) as exc_info:
            get_resource_class("Deployment")

        assert "Unknown kind" in str(exc_info.value)

    def test_scope_and_status_flags(self) -> None:
        assert CFTask.NAMESPACED and CFTask.HAS_STATUS
        assert not GlobalNetworkPolicy.NAMESPACED
        assert not NetworkPolicy.HAS_STATUS


class TestSecret:
    def test_plain_values_roundtrip(self) -> None:
        secret = Secret.from_plain("env", "ns-1", {"A": "ä"})

        assert secret.data["A"] != "ä"
        assert secret.decoded_data() == {"A": "ä"}


class TestFinalizers:
    def test_add_and_remove(self) -> None:
        app = CFApp(metadata=ObjectMeta(name="a"))

        assert add_finalizer(app, "f") is True
        assert add_finalizer(app, "f") is False
        assert has_finalizer(app, "f")
        assert remove_finalizer(app, "f") is True
        assert remove_finalizer(app, "f") is False
        assert app.metadata.finalizers == []


class TestControllerReference:
    """Tests for set_controller_reference."""

    def test_sets_controller_owner(self) -> None:
        task = _owned()
        workload = TaskWorkload(metadata=ObjectMeta(name="task-1", namespace="ns-1"))

        set_controller_reference(task, workload)

        owner = controller_owner(workload)
        assert owner is not None
        assert owner.kind == "CFTask"
        assert owner.uid == "uid-1"
        assert owner.block_owner_deletion is True

    def test_idempotent(self) -> None:
        task = _owned()
        workload = TaskWorkload(metadata=ObjectMeta(name="task-1", namespace="ns-1"))

        set_controller_reference(task, workload)
        set_controller_reference(task, workload)

        assert len(workload.metadata.owner_references) == 1

    def test_owner_without_uid(self) -> None:
        workload = TaskWorkload(metadata=ObjectMeta(name="task-1", namespace="ns-1"))

        with pytest.raises(OwnershipError):
            set_controller_reference(_owned(uid=None), workload)

    def test_cross_namespace_rejected(self) -> None:
        workload = TaskWorkload(metadata=ObjectMeta(name="task-1", namespace="ns-2"))

        with pytest.raises(OwnershipError) as exc_info:
            set_controller_reference(_owned(), workload)

        assert "cross-namespace" in str(exc_info.value)

    def test_second_controller_rejected(self) -> None:
        workload = TaskWorkload(metadata=ObjectMeta(name="task-1", namespace="ns-1"))
        set_controller_reference(_owned(uid="uid-1"), workload)

        with pytest.raises(OwnershipError) as exc_info:
            set_controller_reference(_owned(name="task-2", uid="uid-2"), workload)

        assert "already controlled" in str(exc_info.value)
