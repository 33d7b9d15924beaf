"""Pydantic models for the resource records reconciled by the operator.

These models provide:
1. Type-safe parsing of records coming from the store or from YAML manifests
2. Validation at the boundary (fail fast, fail loudly)
3. A stable JSON shape (camelCase aliases) used to compute merge patches

Every record has three logical subtrees: ``metadata``, ``spec`` (desired
state) and ``status`` (observed state). Whether a kind carries a status
subtree is a class-level fact (``HAS_STATUS``) so the engine never has to
probe a record at runtime.
"""

from __future__ import annotations

import base64
import copy
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Label keys and well-known values
# =============================================================================

KORIFI_API_VERSION = "korifi.cloudfoundry.org/v1alpha1"
CALICO_API_VERSION = "projectcalico.org/v3"

SPACE_GUID_LABEL = "korifi.cloudfoundry.org/space-guid"
APP_GUID_LABEL = "korifi.cloudfoundry.org/app-guid"
PROCESS_TYPE_LABEL = "korifi.cloudfoundry.org/process-type"
TASK_GUID_LABEL = "korifi.cloudfoundry.org/task-guid"
WORKLOAD_TYPE_LABEL = "korifi.cloudfoundry.org/workload-type"
SECURITY_GROUP_TYPE_LABEL = "korifi.cloudfoundry.org/security-group-type"

WORKLOAD_TYPE_APP = "app"
WORKLOAD_TYPE_BUILD = "build"

SECURITY_GROUP_TYPE_SPACE_SCOPED = "space-scoped"
SECURITY_GROUP_TYPE_GLOBAL = "global"

PROCESS_TYPE_WEB = "web"

PROTOCOL_TCP = "tcp"
PROTOCOL_UDP = "udp"
PROTOCOL_ALL = "all"

# Condition types
READY_CONDITION = "Ready"
TASK_INITIALIZED_CONDITION = "Initialized"
TASK_STARTED_CONDITION = "Started"
TASK_SUCCEEDED_CONDITION = "Succeeded"
TASK_FAILED_CONDITION = "Failed"
TASK_CANCELED_CONDITION = "Canceled"

_MODEL_CONFIG: dict[str, Any] = {"extra": "ignore", "populate_by_name": True}


class OwnershipError(Exception):
    """Raised when a record already has a different controlling owner."""

    pass


# =============================================================================
# Metadata
# =============================================================================


class ObjectRef(BaseModel):
    """Local (same namespace) reference to another record by name."""

    model_config = _MODEL_CONFIG

    name: str = ""


class OwnerReference(BaseModel):
    """Weak link from a dependent record to its owner.

    Only the store looks at these (cascading deletion); controllers never
    follow them for control flow.
    """

    model_config = _MODEL_CONFIG

    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = Field(False, alias="blockOwnerDeletion")


class ObjectMeta(BaseModel):
    """Record metadata. ``finalizers`` are the deletion guards."""

    model_config = _MODEL_CONFIG

    name: str = Field(min_length=1)
    namespace: str | None = None
    uid: str | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")
    generation: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(
        default_factory=list, alias="ownerReferences"
    )
    creation_timestamp: datetime | None = Field(None, alias="creationTimestamp")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def none_as_empty_map(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("finalizers", "owner_references", mode="before")
    @classmethod
    def none_as_empty_list(cls, v: Any) -> Any:
        return [] if v is None else v


# =============================================================================
# Conditions
# =============================================================================


class ConditionStatus(str, Enum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(BaseModel):
    """A typed readiness/failure signal attached to a record's status."""

    model_config = _MODEL_CONFIG

    type: str = Field(min_length=1)
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    observed_generation: int = Field(0, alias="observedGeneration")
    last_transition_time: datetime | None = Field(None, alias="lastTransitionTime")


class ConditionedStatus(BaseModel):
    """Status fields shared by every kind with a status subtree."""

    model_config = _MODEL_CONFIG

    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int = Field(0, alias="observedGeneration")

    @field_validator("conditions", mode="before")
    @classmethod
    def none_as_empty_list(cls, v: Any) -> Any:
        return [] if v is None else v


# =============================================================================
# Base record
# =============================================================================


class Resource(BaseModel):
    """Base record: a versioned, named, optionally namespaced object."""

    model_config = _MODEL_CONFIG

    API_VERSION: ClassVar[str] = KORIFI_API_VERSION
    KIND: ClassVar[str] = ""
    PLURAL: ClassVar[str] = ""
    NAMESPACED: ClassVar[bool] = True
    HAS_STATUS: ClassVar[bool] = True

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str | None:
        return self.metadata.namespace

    @property
    def key(self) -> tuple[str | None, str]:
        """Store key: (namespace, name)."""
        return (self.metadata.namespace, self.metadata.name)

    @property
    def is_terminating(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape (apiVersion/kind + camelCase fields)."""
        data = self.model_dump(by_alias=True, mode="json", exclude_none=True)
        return {"apiVersion": self.API_VERSION, "kind": self.KIND, **data}

    @classmethod
    def from_dict(cls: type[R], data: dict[str, Any]) -> R:
        return cls.model_validate(copy.deepcopy(data))

    def deep_copy(self: R) -> R:
        return self.model_copy(deep=True)

    @classmethod
    def reference(cls: type[R], name: str, namespace: str | None = None) -> R:
        """Build a bare record usable as a Get/Delete target."""
        return cls(metadata=ObjectMeta(name=name, namespace=namespace))


R = TypeVar("R", bound=Resource)


def has_finalizer(obj: Resource, finalizer: str) -> bool:
    return finalizer in obj.metadata.finalizers


def add_finalizer(obj: Resource, finalizer: str) -> bool:
    """Add a finalizer; returns True when the list changed."""
    if finalizer in obj.metadata.finalizers:
        return False
    obj.metadata.finalizers.append(finalizer)
    return True


def remove_finalizer(obj: Resource, finalizer: str) -> bool:
    """Remove a finalizer; returns True when the list changed."""
    if finalizer not in obj.metadata.finalizers:
        return False
    obj.metadata.finalizers = [f for f in obj.metadata.finalizers if f != finalizer]
    return True


def set_controller_reference(owner: Resource, obj: Resource) -> None:
    """Make ``owner`` the controlling owner of ``obj``.

    Idempotent: an existing reference to the same owner is refreshed in
    place.

    Raises:
        OwnershipError: If the owner has no uid, lives in another namespace,
            or ``obj`` is already controlled by a different record.
    """
    if not owner.metadata.uid:
        raise OwnershipError(f"owner {owner.KIND}/{owner.name} has no uid")
    if owner.NAMESPACED and owner.metadata.namespace != obj.metadata.namespace:
        raise OwnershipError(
            f"cross-namespace owner references are not allowed: "
            f"{owner.metadata.namespace}/{owner.name} -> {obj.metadata.namespace}/{obj.name}"
        )

    ref = OwnerReference(
        api_version=owner.API_VERSION,
        kind=owner.KIND,
        name=owner.name,
        uid=owner.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )

    refs = obj.metadata.owner_references
    for i, existing in enumerate(refs):
        if existing.uid == ref.uid:
            refs[i] = ref
            return
        if existing.controller:
            raise OwnershipError(
                f"{obj.KIND}/{obj.name} is already controlled by "
                f"{existing.kind}/{existing.name}"
            )
    refs.append(ref)


def controller_owner(obj: Resource) -> OwnerReference | None:
    for ref in obj.metadata.owner_references:
        if ref.controller:
            return ref
    return None


# =============================================================================
# Workloads: apps, builds, processes
# =============================================================================


class CFAppSpec(BaseModel):
    model_config = _MODEL_CONFIG

    display_name: str = Field("", alias="displayName")
    desired_state: str = Field("STOPPED", alias="desiredState")
    current_droplet_ref: ObjectRef = Field(default_factory=ObjectRef, alias="currentDropletRef")
    env_secret_name: str = Field("", alias="envSecretName")

    @field_validator("desired_state")
    @classmethod
    def validate_desired_state(cls, v: str) -> str:
        valid = {"STARTED", "STOPPED"}
        if v not in valid:
            raise ValueError(f"desiredState must be one of {valid}")
        return v


class CFApp(Resource):
    """A Cloud Foundry application."""

    KIND: ClassVar[str] = "CFApp"
    PLURAL: ClassVar[str] = "cfapps"

    spec: CFAppSpec = Field(default_factory=CFAppSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


class Registry(BaseModel):
    model_config = _MODEL_CONFIG

    image: str = ""
    image_pull_secrets: list[ObjectRef] = Field(default_factory=list, alias="imagePullSecrets")


class ProcessType(BaseModel):
    model_config = _MODEL_CONFIG

    type: str
    command: str = ""


class BuildDropletStatus(BaseModel):
    """The droplet: build output an app runs from."""

    model_config = _MODEL_CONFIG

    registry: Registry = Field(default_factory=Registry)
    stack: str = ""
    process_types: list[ProcessType] = Field(default_factory=list, alias="processTypes")
    ports: list[int] = Field(default_factory=list)


class CFBuildSpec(BaseModel):
    model_config = _MODEL_CONFIG

    package_ref: ObjectRef = Field(default_factory=ObjectRef, alias="packageRef")
    app_ref: ObjectRef = Field(default_factory=ObjectRef, alias="appRef")
    staging_memory_mb: int = Field(0, alias="stagingMemoryMB", ge=0)
    staging_disk_mb: int = Field(0, alias="stagingDiskMB", ge=0)


class CFBuildStatus(ConditionedStatus):
    droplet: BuildDropletStatus | None = None


class CFBuild(Resource):
    """A build; its status carries the droplet once staging succeeds."""

    KIND: ClassVar[str] = "CFBuild"
    PLURAL: ClassVar[str] = "cfbuilds"

    spec: CFBuildSpec = Field(default_factory=CFBuildSpec)
    status: CFBuildStatus = Field(default_factory=CFBuildStatus)


class CFProcessSpec(BaseModel):
    model_config = _MODEL_CONFIG

    app_ref: ObjectRef = Field(default_factory=ObjectRef, alias="appRef")
    process_type: str = Field(PROCESS_TYPE_WEB, alias="processType")
    command: str = ""
    memory_mb: int = Field(0, alias="memoryMB", ge=0)
    disk_quota_mb: int = Field(0, alias="diskQuotaMB", ge=0)
    desired_instances: int | None = Field(None, alias="desiredInstances", ge=0)


class CFProcess(Resource):
    """One process type of an app (``web``, ``worker``, ...)."""

    KIND: ClassVar[str] = "CFProcess"
    PLURAL: ClassVar[str] = "cfprocesses"

    spec: CFProcessSpec = Field(default_factory=CFProcessSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


# =============================================================================
# Tasks
# =============================================================================


class CFTaskSpec(BaseModel):
    model_config = _MODEL_CONFIG

    command: str = ""
    app_ref: ObjectRef = Field(default_factory=ObjectRef, alias="appRef")
    canceled: bool = False


class CFTaskStatus(ConditionedStatus):
    sequence_id: int = Field(0, alias="sequenceId")
    droplet_ref: ObjectRef = Field(default_factory=ObjectRef, alias="dropletRef")
    memory_mb: int = Field(0, alias="memoryMB", ge=0)
    disk_quota_mb: int = Field(0, alias="diskQuotaMB", ge=0)


class CFTask(Resource):
    """One run of a command against an app's current droplet."""

    KIND: ClassVar[str] = "CFTask"
    PLURAL: ClassVar[str] = "cftasks"

    spec: CFTaskSpec = Field(default_factory=CFTaskSpec)
    status: CFTaskStatus = Field(default_factory=CFTaskStatus)


class EnvVar(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    value: str = ""


class ResourceRequirements(BaseModel):
    """Kubernetes-style resource quantities, e.g. ``{"memory": "500M"}``."""

    model_config = _MODEL_CONFIG

    requests: dict[str, str] = Field(default_factory=dict)
    limits: dict[str, str] = Field(default_factory=dict)


class TaskWorkloadSpec(BaseModel):
    model_config = _MODEL_CONFIG

    command: list[str] = Field(default_factory=list)
    image: str = ""
    image_pull_secrets: list[ObjectRef] = Field(default_factory=list, alias="imagePullSecrets")
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    env: list[EnvVar] = Field(default_factory=list)


class TaskWorkload(Resource):
    """The execution unit derived from a CFTask (1:1, same name)."""

    KIND: ClassVar[str] = "TaskWorkload"
    PLURAL: ClassVar[str] = "taskworkloads"

    spec: TaskWorkloadSpec = Field(default_factory=TaskWorkloadSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


class Secret(Resource):
    """Core Secret. ``data`` values are base64 encoded, as on the wire."""

    API_VERSION: ClassVar[str] = "v1"
    KIND: ClassVar[str] = "Secret"
    PLURAL: ClassVar[str] = "secrets"
    HAS_STATUS: ClassVar[bool] = False

    data: dict[str, str] = Field(default_factory=dict)
    type: str = "Opaque"

    def decoded_data(self) -> dict[str, str]:
        return {k: base64.b64decode(v).decode("utf-8") for k, v in self.data.items()}

    @classmethod
    def from_plain(
        cls, name: str, namespace: str, values: dict[str, str]
    ) -> Secret:
        return cls(
            metadata=ObjectMeta(name=name, namespace=namespace),
            data={
                k: base64.b64encode(v.encode("utf-8")).decode("ascii")
                for k, v in values.items()
            },
        )


# =============================================================================
# Security groups and network policies
# =============================================================================


class SecurityGroupRule(BaseModel):
    """One egress rule: protocol, ports and destination are raw strings."""

    model_config = _MODEL_CONFIG

    protocol: str = PROTOCOL_TCP
    ports: str = ""
    destination: str
    description: str = ""
    log: bool = False


class SecurityGroupWorkloads(BaseModel):
    """Which workload types a security group applies to."""

    model_config = _MODEL_CONFIG

    running: bool = False
    staging: bool = False


class CFSecurityGroupSpec(BaseModel):
    model_config = _MODEL_CONFIG

    display_name: str = Field("", alias="displayName")
    rules: list[SecurityGroupRule] = Field(default_factory=list)
    spaces: dict[str, SecurityGroupWorkloads] = Field(default_factory=dict)
    globally_enabled: SecurityGroupWorkloads = Field(
        default_factory=SecurityGroupWorkloads, alias="globallyEnabled"
    )


class CFSecurityGroup(Resource):
    """Security group compiled into network policies."""

    KIND: ClassVar[str] = "CFSecurityGroup"
    PLURAL: ClassVar[str] = "cfsecuritygroups"

    spec: CFSecurityGroupSpec = Field(default_factory=CFSecurityGroupSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


class PolicyPort(BaseModel):
    model_config = _MODEL_CONFIG

    min_port: int = Field(alias="minPort", ge=0, le=65535)
    max_port: int = Field(alias="maxPort", ge=0, le=65535)


class EntityRule(BaseModel):
    model_config = _MODEL_CONFIG

    nets: list[str] = Field(default_factory=list)
    ports: list[PolicyPort] = Field(default_factory=list)


class PolicyRule(BaseModel):
    model_config = _MODEL_CONFIG

    action: str = "Allow"
    protocol: str = "TCP"
    destination: EntityRule = Field(default_factory=EntityRule)


class NetworkPolicySpec(BaseModel):
    model_config = _MODEL_CONFIG

    egress: list[PolicyRule] = Field(default_factory=list)
    types: list[str] = Field(default_factory=list)
    selector: str = ""
    namespace_selector: str | None = Field(None, alias="namespaceSelector")


class NetworkPolicy(Resource):
    """Namespaced egress policy consumed by the external policy engine."""

    API_VERSION: ClassVar[str] = CALICO_API_VERSION
    KIND: ClassVar[str] = "NetworkPolicy"
    PLURAL: ClassVar[str] = "networkpolicies"
    HAS_STATUS: ClassVar[bool] = False

    spec: NetworkPolicySpec = Field(default_factory=NetworkPolicySpec)


class GlobalNetworkPolicy(Resource):
    """Cluster-scoped variant of :class:`NetworkPolicy`."""

    API_VERSION: ClassVar[str] = CALICO_API_VERSION
    KIND: ClassVar[str] = "GlobalNetworkPolicy"
    PLURAL: ClassVar[str] = "globalnetworkpolicies"
    NAMESPACED: ClassVar[bool] = False
    HAS_STATUS: ClassVar[bool] = False

    spec: NetworkPolicySpec = Field(default_factory=NetworkPolicySpec)


# =============================================================================
# Kind registry
# =============================================================================

RESOURCE_CLASSES: dict[str, type[Resource]] = {
    cls.KIND: cls
    for cls in (
        CFApp,
        CFBuild,
        CFProcess,
        CFTask,
        TaskWorkload,
        Secret,
        CFSecurityGroup,
        NetworkPolicy,
        GlobalNetworkPolicy,
    )
}


def get_resource_class(kind: str) -> type[Resource]:
    """Get the model class for a record kind.

    Raises:
        ValueError: If the kind is not known.
    """
    resource_class = RESOURCE_CLASSES.get(kind)
    if resource_class is None:
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {sorted(RESOURCE_CLASSES)}")
    return resource_class
