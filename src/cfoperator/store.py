"""Resource store interface and the in-memory implementation.

The store is the only shared state between controllers. It offers:
- Get/List/Create/Patch/Delete on typed records
- optimistic concurrency: every write bumps ``resourceVersion`` and a patch
  computed against a stale version is rejected with ConflictError
- deletion guards: a record with finalizers is only marked terminating
  (``deletionTimestamp``) and is removed once its last finalizer goes away
- cascading deletion of records whose controller owner reference points at
  a removed record
- watch notifications for every change

Controllers only depend on the :class:`ResourceStore` protocol, so the same
domain logic runs against :class:`InMemoryStore` or the Kubernetes adapter.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, TypeVar

from .models import Resource
from .patch import (
    SERVER_MANAGED_METADATA,
    STATUS_KEY,
    apply_merge_patch,
    object_merge_patch,
    status_merge_patch,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

# Maximum records to prevent unbounded growth
MAX_RECORDS = 100_000


class StoreError(Exception):
    """Base class for store failures."""

    pass


class NotFoundError(StoreError):
    """Raised when a record does not exist."""

    def __init__(self, kind: str, namespace: str | None, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {where} not found")


class AlreadyExistsError(StoreError):
    """Raised when creating a record whose key is taken."""

    pass


class ConflictError(StoreError):
    """Raised when a write is based on a stale resourceVersion."""

    pass


class WatchEventType(str, Enum):
    """Kinds of change notifications."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A single change notification."""

    type: WatchEventType
    obj: Resource


WatchHandler = Callable[[WatchEvent], None]


class ResourceStore(Protocol):
    """Versioned object store consumed by the controllers."""

    async def get(self, kind: type[R], namespace: str | None, name: str) -> R: ...

    async def list(
        self,
        kind: type[R],
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
        fields: Mapping[str, str] | None = None,
    ) -> list[R]: ...

    async def create(self, obj: R) -> R: ...

    async def patch(self, obj: R, base: R) -> R: ...

    async def patch_status(self, obj: R, base: R) -> R: ...

    async def delete(self, obj: Resource) -> None: ...

    def watch(self, kind: type[Resource], handler: WatchHandler) -> None: ...


def matches_labels(obj: Resource, labels: Mapping[str, str] | None) -> bool:
    if not labels:
        return True
    return all(obj.metadata.labels.get(k) == v for k, v in labels.items())


def matches_fields(obj: Resource, fields: Mapping[str, str] | None) -> bool:
    """Field selectors support ``metadata.name`` and ``metadata.namespace``.

    Raises:
        ValueError: For any other field.
    """
    if not fields:
        return True
    for field_name, value in fields.items():
        if field_name == "metadata.name":
            if obj.metadata.name != value:
                return False
        elif field_name == "metadata.namespace":
            if obj.metadata.namespace != value:
                return False
        else:
            raise ValueError(f"unsupported field selector: {field_name}")
    return True


_StoreKey = tuple[str, str | None, str]


class InMemoryStore:
    """In-memory implementation of :class:`ResourceStore`.

    Records are kept serialized so callers never share mutable state with
    the store. All methods run to completion without awaiting, which makes
    each operation atomic on the event loop.

    ``create`` keeps the status given by the caller, which is how tests and
    manifest seeding populate observed state for other controllers' kinds.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._records: dict[_StoreKey, dict[str, Any]] = {}
        self._classes: dict[str, type[Resource]] = {}
        self._watchers: dict[str, list[WatchHandler]] = {}
        self._revision = 0
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def record_count(self) -> int:
        return len(self._records)

    @property
    def revision(self) -> int:
        """Current store revision; increases on every write."""
        return self._revision

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, kind: type[R], namespace: str | None, name: str) -> R:
        key = self._key(kind, namespace, name)
        data = self._records.get(key)
        if data is None:
            raise NotFoundError(kind.KIND, self._scope(kind, namespace), name)
        return kind.from_dict(data)

    async def list(
        self,
        kind: type[R],
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
        fields: Mapping[str, str] | None = None,
    ) -> list[R]:
        results: list[R] = []
        for (kind_name, ns, _), data in sorted(
            self._records.items(), key=lambda item: (item[0][0], item[0][1] or "", item[0][2])
        ):
            if kind_name != kind.KIND:
                continue
            if namespace is not None and ns != namespace:
                continue
            obj = kind.from_dict(data)
            if matches_labels(obj, labels) and matches_fields(obj, fields):
                results.append(obj)
        return results

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, obj: R) -> R:
        kind = type(obj)
        self._check_scope(obj)
        key = self._key(kind, obj.namespace, obj.name)
        if key in self._records:
            raise AlreadyExistsError(f"{kind.KIND} {self._describe(obj)} already exists")
        if len(self._records) >= MAX_RECORDS:
            raise StoreError(f"Record limit exceeded: {MAX_RECORDS}")

        data = obj.to_dict()
        metadata = data["metadata"]
        metadata["uid"] = str(uuid.uuid4())
        metadata["generation"] = 1
        metadata["creationTimestamp"] = self._timestamp()
        metadata.pop("deletionTimestamp", None)
        metadata["resourceVersion"] = self._next_version()

        self._classes[kind.KIND] = kind
        self._records[key] = data
        created = kind.from_dict(data)
        self._notify(WatchEventType.ADDED, created)
        return created

    async def patch(self, obj: R, base: R) -> R:
        """Apply the non-status merge patch from ``base`` to ``obj``."""
        body = object_merge_patch(base, obj)
        body.pop(STATUS_KEY, None)
        return self._apply(obj, body, base.metadata.resource_version, status=False)

    async def patch_status(self, obj: R, base: R) -> R:
        """Apply the status-subtree merge patch from ``base`` to ``obj``."""
        body = status_merge_patch(base, obj)
        return self._apply(obj, body, base.metadata.resource_version, status=True)

    async def delete(self, obj: Resource) -> None:
        kind = type(obj)
        key = self._key(kind, obj.namespace, obj.name)
        data = self._records.get(key)
        if data is None:
            raise NotFoundError(kind.KIND, self._scope(kind, obj.namespace), obj.name)

        if data["metadata"].get("finalizers"):
            if not data["metadata"].get("deletionTimestamp"):
                data["metadata"]["deletionTimestamp"] = self._timestamp()
                data["metadata"]["resourceVersion"] = self._next_version()
                self._notify(WatchEventType.MODIFIED, kind.from_dict(data))
            return

        self._remove(key)

    def watch(self, kind: type[Resource], handler: WatchHandler) -> None:
        self._classes[kind.KIND] = kind
        self._watchers.setdefault(kind.KIND, []).append(handler)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(
        self,
        obj: Resource,
        body: dict[str, Any],
        expected_version: str | None,
        *,
        status: bool,
    ) -> Any:
        kind = type(obj)
        key = self._key(kind, obj.namespace, obj.name)
        current = self._records.get(key)
        if current is None:
            raise NotFoundError(kind.KIND, self._scope(kind, obj.namespace), obj.name)

        current_version = current["metadata"].get("resourceVersion")
        if expected_version is not None and expected_version != current_version:
            raise ConflictError(
                f"{kind.KIND} {self._describe(obj)} was modified: "
                f"expected resourceVersion {expected_version}, found {current_version}"
            )

        if not body:
            return kind.from_dict(current)

        if status:
            body = {STATUS_KEY: body.get(STATUS_KEY, {})}
        else:
            for field_name in SERVER_MANAGED_METADATA:
                body.get("metadata", {}).pop(field_name, None)

        updated = apply_merge_patch(current, body)
        # Validate before committing; a bad patch must not corrupt the record.
        kind.from_dict(updated)

        if not status and self._content(updated) != self._content(current):
            updated["metadata"]["generation"] = current["metadata"].get("generation", 1) + 1
        updated["metadata"]["resourceVersion"] = self._next_version()

        if updated["metadata"].get("deletionTimestamp") and not updated["metadata"].get(
            "finalizers"
        ):
            self._records[key] = updated
            result = kind.from_dict(updated)
            self._remove(key)
            return result

        self._records[key] = updated
        result = kind.from_dict(updated)
        self._notify(WatchEventType.MODIFIED, result)
        return result

    def _remove(self, key: _StoreKey) -> None:
        data = self._records.pop(key)
        kind = self._classes[key[0]]
        removed = kind.from_dict(data)
        logger.debug(
            "Record removed",
            extra={"kind": key[0], "namespace": key[1], "record_name": key[2]},
        )
        self._notify(WatchEventType.DELETED, removed)
        self._cascade(data["metadata"].get("uid"))

    def _cascade(self, owner_uid: str | None) -> None:
        """Delete every record whose controller owner is ``owner_uid``."""
        if not owner_uid:
            return
        dependents = [
            key
            for key, data in self._records.items()
            if any(
                ref.get("uid") == owner_uid and ref.get("controller")
                for ref in data["metadata"].get("ownerReferences", [])
            )
        ]
        for key in dependents:
            data = self._records.get(key)
            if data is None:
                continue
            if data["metadata"].get("finalizers"):
                if not data["metadata"].get("deletionTimestamp"):
                    data["metadata"]["deletionTimestamp"] = self._timestamp()
                    data["metadata"]["resourceVersion"] = self._next_version()
                    self._notify(WatchEventType.MODIFIED, self._classes[key[0]].from_dict(data))
                continue
            self._remove(key)

    def _notify(self, event_type: WatchEventType, obj: Resource) -> None:
        for handler in list(self._watchers.get(obj.KIND, [])):
            handler(WatchEvent(type=event_type, obj=obj.deep_copy()))

    def _next_version(self) -> str:
        self._revision += 1
        return str(self._revision)

    def _timestamp(self) -> str:
        return self._clock().astimezone(UTC).replace(microsecond=0).isoformat().replace(
            "+00:00", "Z"
        )

    @staticmethod
    def _content(data: dict[str, Any]) -> dict[str, Any]:
        """Everything that counts towards ``generation``."""
        content = copy.deepcopy(data)
        content.pop("metadata", None)
        content.pop(STATUS_KEY, None)
        return content

    @staticmethod
    def _scope(kind: type[Resource], namespace: str | None) -> str | None:
        return namespace if kind.NAMESPACED else None

    def _key(self, kind: type[Resource], namespace: str | None, name: str) -> _StoreKey:
        return (kind.KIND, self._scope(kind, namespace), name)

    @staticmethod
    def _check_scope(obj: Resource) -> None:
        if obj.NAMESPACED and not obj.namespace:
            raise StoreError(f"{obj.KIND} {obj.name} requires a namespace")

    @staticmethod
    def _describe(obj: Resource) -> str:
        return f"{obj.namespace}/{obj.name}" if obj.NAMESPACED else obj.name
