"""Generic patch-based reconciliation engine.

Every controller is a :class:`PatchingReconciler` parameterised with a
domain-specific :class:`ObjectReconciler`. One pass:

1. Get the record by key; a missing record means it is already gone.
2. Keep a deep copy of the record as fetched.
3. Let the domain function mutate the record; capture its result or error.
4. Derive the composite Ready condition from that outcome.
5. Patch every non-status field (skipped when the patch is empty).
6. Patch the status subtree (skipped when the patch is empty).
7. Hand the domain error (if any) back to the scheduler.

Patches are written even when the domain function fails, so partial
progress such as an added finalizer is never lost. A failed patch aborts
the pass; the scheduler retries it from scratch.
"""

from __future__ import annotations

import contextvars
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Generic, Protocol, TypeVar

from .conditions import ReadyConditionBuilder, set_condition
from .models import Resource
from .patch import object_merge_patch, status_merge_patch
from .store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)
R_contra = TypeVar("R_contra", bound=Resource, contravariant=True)

# Fields attached to every log record emitted during a reconcile pass.
_log_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "cfoperator_log_context", default=None
)


class ReconcileContextFilter(logging.Filter):
    """Copy the current reconcile pass fields (log_id, namespace, ...) onto records."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _log_context.get()
        if fields:
            for key, value in fields.items():
                if not hasattr(record, key):
                    setattr(record, key, value)
        return True


@dataclass(frozen=True)
class Result:
    """Requeue hint returned by a reconcile pass."""

    requeue: bool = False
    requeue_after: float = 0.0  # seconds

    @property
    def is_empty(self) -> bool:
        return not self.requeue and self.requeue_after <= 0


class PermanentReconcileError(Exception):
    """A failure that retrying cannot fix (e.g. malformed user input).

    Permanent errors still go through the normal retry path; they are marked
    so the Ready condition and the logs can tell them apart from transient
    store failures.
    """

    pass


class NotReadyError(Exception):
    """The record cannot become ready yet.

    Carries the Ready condition's reason and message, an optional cause and
    an optional requeue directive. With a directive the engine returns the
    matching :class:`Result` instead of failing the pass.
    """

    def __init__(
        self,
        reason: str = "Unknown",
        message: str = "",
        *,
        cause: BaseException | None = None,
        requeue: bool = False,
        requeue_after: float | None = None,
        no_requeue: bool = False,
    ) -> None:
        self.reason = reason
        self.message = message
        self.cause = cause
        self.requeue = requeue
        self.requeue_after = requeue_after
        self.no_requeue = no_requeue
        super().__init__(self.condition_message or reason)

    @property
    def condition_message(self) -> str:
        if self.cause is not None and self.message:
            return f"{self.message}: {self.cause}"
        if self.cause is not None:
            return str(self.cause)
        return self.message

    @property
    def has_requeue_directive(self) -> bool:
        return self.requeue or self.requeue_after is not None or self.no_requeue

    def to_result(self) -> Result:
        if self.requeue_after is not None:
            return Result(requeue_after=self.requeue_after)
        if self.requeue:
            return Result(requeue=True)
        return Result()


class ObjectReconciler(Protocol[R_contra]):
    """Domain function: mutate ``obj`` toward its desired state."""

    async def reconcile_resource(self, obj: R_contra) -> Result: ...


class PatchingReconciler(Generic[R]):
    """Fetch, delegate, split-patch loop shared by every controller."""

    def __init__(
        self,
        store: ResourceStore,
        kind: type[R],
        object_reconciler: ObjectReconciler[R],
        *,
        name: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._kind = kind
        self._object_reconciler = object_reconciler
        self._name = name or kind.KIND.lower()
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def kind(self) -> type[R]:
        return self._kind

    @property
    def name(self) -> str:
        return self._name

    async def reconcile(self, namespace: str | None, name: str) -> Result:
        """Run one reconcile pass for the record at (namespace, name).

        Raises:
            Exception: The domain function's error, or a store error from
                the get or patch calls.
        """
        token = _log_context.set(
            {
                "log_id": uuid.uuid4().hex[:12],
                "controller": self._name,
                "namespace": namespace,
                "record_name": name,
            }
        )
        try:
            return await self._reconcile(namespace, name)
        finally:
            _log_context.reset(token)

    async def _reconcile(self, namespace: str | None, name: str) -> Result:
        try:
            obj = await self._store.get(self._kind, namespace, name)
        except NotFoundError:
            logger.debug("Record not found, nothing to reconcile")
            return Result()

        original = obj.deep_copy()

        result = Result()
        domain_error: Exception | None = None
        try:
            result = await self._object_reconciler.reconcile_resource(obj)
        except Exception as e:
            domain_error = e
            logger.info(
                "Reconcile failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )

        if obj.HAS_STATUS and not obj.is_terminating:
            self._set_ready_condition(obj, domain_error)

        after_status = obj.deep_copy()

        try:
            await self._write(obj, original, after_status)
        except NotFoundError:
            # The domain function (or someone else) removed the record.
            logger.debug("Record disappeared during reconcile, skipping patches")

        if isinstance(domain_error, NotReadyError) and domain_error.has_requeue_directive:
            return domain_error.to_result()
        if domain_error is not None:
            raise domain_error

        return result

    async def _write(self, obj: R, original: R, after_status: R) -> None:
        resource_version = original.metadata.resource_version

        if object_merge_patch(original, obj):
            updated = await self._store.patch(obj, original)
            resource_version = updated.metadata.resource_version
            logger.debug("Patched record", extra={"resource_version": resource_version})

        if status_merge_patch(original, after_status):
            status_base = original.deep_copy()
            status_base.metadata.resource_version = resource_version
            await self._store.patch_status(after_status, status_base)
            logger.debug("Patched record status")

    def _set_ready_condition(self, obj: Resource, err: Exception | None) -> None:
        status = getattr(obj, "status", None)
        conditions = getattr(status, "conditions", None)
        if conditions is None:
            return
        ready = ReadyConditionBuilder(generation=obj.metadata.generation).with_error(err).build()
        set_condition(conditions, ready, now=self._clock())
