"""In-memory store with call recording and error injection."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from cfoperator.models import Resource
from cfoperator.store import InMemoryStore

WRITE_METHODS = ("create", "patch", "patch_status", "delete")


@dataclass(frozen=True)
class RecordedCall:
    method: str
    kind: str
    namespace: str | None
    name: str


@dataclass
class _Fault:
    method: str
    kind: str | None
    error: Exception
    remaining: int


class FaultInjectingStore(InMemoryStore):
    """InMemoryStore that records every call and can fail chosen ones.

    Usage:
        store = FaultInjectingStore()
        store.fail("patch_status", ConflictError("stale"), kind="CFTask")
        ...
        assert store.writes() == []
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(clock=clock)
        self.calls: list[RecordedCall] = []
        self._faults: list[_Fault] = []

    def fail(
        self,
        method: str,
        error: Exception,
        *,
        kind: str | None = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``method`` (optionally for ``kind``) raise ``error``."""
        self._faults.append(_Fault(method=method, kind=kind, error=error, remaining=times))

    def reset_calls(self) -> None:
        self.calls.clear()

    def writes(self, kind: str | None = None) -> list[RecordedCall]:
        return [
            c
            for c in self.calls
            if c.method in WRITE_METHODS and (kind is None or c.kind == kind)
        ]

    def call_counts(self) -> Counter[str]:
        return Counter(c.method for c in self.calls)

    def _record(self, method: str, kind: str, namespace: str | None, name: str) -> None:
        self.calls.append(RecordedCall(method=method, kind=kind, namespace=namespace, name=name))
        for fault in self._faults:
            if fault.method != method or fault.remaining <= 0:
                continue
            if fault.kind is not None and fault.kind != kind:
                continue
            fault.remaining -= 1
            raise fault.error

    async def get(self, kind: Any, namespace: str | None, name: str) -> Any:
        self._record("get", kind.KIND, namespace, name)
        return await super().get(kind, namespace, name)

    async def list(
        self,
        kind: Any,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
        fields: Mapping[str, str] | None = None,
    ) -> Any:
        self._record("list", kind.KIND, namespace, "")
        return await super().list(kind, namespace, labels, fields)

    async def create(self, obj: Any) -> Any:
        self._record("create", obj.KIND, obj.namespace, obj.name)
        return await super().create(obj)

    async def patch(self, obj: Any, base: Any) -> Any:
        self._record("patch", obj.KIND, obj.namespace, obj.name)
        return await super().patch(obj, base)

    async def patch_status(self, obj: Any, base: Any) -> Any:
        self._record("patch_status", obj.KIND, obj.namespace, obj.name)
        return await super().patch_status(obj, base)

    async def delete(self, obj: Resource) -> None:
        self._record("delete", obj.KIND, obj.namespace, obj.name)
        await super().delete(obj)
