"""Reconciliation scheduler: a deduplicated work queue driving a reconciler.

A :class:`Controller` binds one :class:`~cfoperator.reconcile.PatchingReconciler`
to the store:

- store watch events for the primary kind enqueue the record's key
- secondary kinds enqueue keys through a mapping function (``owns`` maps a
  dependent to its controlling owner, ``watches`` takes any function)
- N workers pull keys; a key is never processed by two workers at once, and
  a key enqueued while it is being processed is re-run afterwards
- failed passes are retried with capped exponential backoff; a successful
  pass resets the failure counter
- ``Result.requeue_after`` schedules a delayed re-run regardless of any
  intervening watch event

The :class:`Manager` runs several controllers until shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Protocol

from .models import Resource
from .reconcile import PermanentReconcileError, Result
from .store import ResourceStore, WatchEvent

logger = logging.getLogger(__name__)

Key = tuple[str | None, str]
MapFunc = Callable[[Resource], Iterable[Key]]

DEFAULT_WORKERS = 1
DEFAULT_BACKOFF_BASE_SECONDS = 0.5
DEFAULT_BACKOFF_MAX_SECONDS = 300.0


class Reconciler(Protocol):
    """What a controller drives; satisfied by PatchingReconciler."""

    @property
    def kind(self) -> type[Resource]: ...

    @property
    def name(self) -> str: ...

    async def reconcile(self, namespace: str | None, name: str) -> Result: ...


class WorkQueue:
    """Level-triggered queue of keys with per-key exclusivity.

    ``dirty`` holds keys waiting to be processed, ``processing`` the keys a
    worker currently owns. A key is in the underlying FIFO at most once.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Key | None] = asyncio.Queue()
        self._dirty: set[Key] = set()
        self._processing: set[Key] = set()
        self._shutting_down = False
        self._idle = asyncio.Event()
        self._idle.set()

    def __len__(self) -> int:
        return len(self._dirty)

    @property
    def is_idle(self) -> bool:
        return not self._dirty and not self._processing

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Key) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        self._idle.clear()
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    async def get(self) -> Key | None:
        """Next key to process, or None once the queue shuts down."""
        key = await self._queue.get()
        if key is None:
            return None
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: Key) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)
        self._update_idle()

    def shutdown(self, waiters: int) -> None:
        """Stop accepting keys and wake ``waiters`` blocked getters."""
        self._shutting_down = True
        self._dirty.clear()
        for _ in range(waiters):
            self._queue.put_nowait(None)
        self._update_idle()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def _update_idle(self) -> None:
        if self.is_idle:
            self._idle.set()


class Controller:
    """Runs a reconciler for every key enqueued by store watch events."""

    def __init__(
        self,
        store: ResourceStore,
        reconciler: Reconciler,
        *,
        workers: int = DEFAULT_WORKERS,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_max: float = DEFAULT_BACKOFF_MAX_SECONDS,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._store = store
        self._reconciler = reconciler
        self._workers = workers
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max

        self._queue: WorkQueue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker_tasks: list[asyncio.Task[None]] = []
        self._delayed: set[asyncio.TimerHandle] = set()
        self._failures: dict[Key, int] = {}
        self._secondary: list[tuple[type[Resource], MapFunc]] = []
        self._started = False

    @property
    def name(self) -> str:
        return self._reconciler.name

    @property
    def started(self) -> bool:
        return self._started

    @property
    def is_idle(self) -> bool:
        return self._queue is None or self._queue.is_idle

    def owns(self, kind: type[Resource]) -> Controller:
        """Re-run the owner when a record it controls changes."""
        owner_kind = self._reconciler.kind.KIND

        def map_owner(obj: Resource) -> Iterable[Key]:
            for ref in obj.metadata.owner_references:
                if ref.controller and ref.kind == owner_kind:
                    yield (obj.namespace, ref.name)

        return self.watches(kind, map_owner)

    def watches(self, kind: type[Resource], map_fn: MapFunc) -> Controller:
        """Re-run the keys ``map_fn`` returns whenever a ``kind`` record changes."""
        if self._started:
            raise RuntimeError("watches must be registered before the controller starts")
        self._secondary.append((kind, map_fn))
        return self

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the store, enqueue existing records, start workers."""
        if self._started:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = WorkQueue()
        self._started = True

        kind = self._reconciler.kind
        self._store.watch(kind, self._on_primary_event)
        for secondary_kind, map_fn in self._secondary:
            self._store.watch(secondary_kind, self._secondary_handler(map_fn))

        existing = await self._store.list(kind)
        for obj in existing:
            self._queue.add(obj.key)

        self._worker_tasks = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self._workers)
        ]
        logger.info(
            "Controller started",
            extra={"controller": self.name, "workers": self._workers, "initial_keys": len(existing)},
        )

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop workers after their current item and drop pending requeues."""
        if not self._started or self._queue is None:
            return

        for handle in self._delayed:
            handle.cancel()
        self._delayed.clear()

        self._queue.shutdown(len(self._worker_tasks))
        _, pending = await asyncio.wait(self._worker_tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._worker_tasks = []
        self._started = False
        logger.info(
            "Controller stopped",
            extra={"controller": self.name, "cancelled_workers": len(pending)},
        )

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until no key is queued or being processed.

        Delayed requeues do not count; they fire later.
        """
        if self._queue is None:
            return
        queue = self._queue

        async def settled() -> None:
            while True:
                # Let watch callbacks scheduled with call_soon_threadsafe run.
                await asyncio.sleep(0)
                await queue.wait_idle()
                await asyncio.sleep(0)
                if queue.is_idle:
                    return

        await asyncio.wait_for(settled(), timeout=timeout)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, namespace: str | None, name: str) -> None:
        """Schedule a pass for (namespace, name). Safe to call from any thread."""
        if self._loop is None or self._queue is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.add, (namespace, name))

    def enqueue_after(self, key: Key, delay: float) -> None:
        if self._queue is None or self._loop is None:
            return
        if delay <= 0:
            self._queue.add(key)
            return

        handle: asyncio.TimerHandle

        def fire() -> None:
            self._delayed.discard(handle)
            if self._queue is not None:
                self._queue.add(key)

        handle = self._loop.call_later(delay, fire)
        self._delayed.add(handle)

    def _on_primary_event(self, event: WatchEvent) -> None:
        self.enqueue(*event.obj.key)

    def _secondary_handler(self, map_fn: MapFunc) -> Callable[[WatchEvent], None]:
        def handler(event: WatchEvent) -> None:
            for namespace, name in map_fn(event.obj):
                self.enqueue(namespace, name)

        return handler

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def backoff(self, key: Key) -> float:
        """Next retry delay for ``key``; grows with each consecutive failure."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self._backoff_base * (2**failures), self._backoff_max)

    def forget(self, key: Key) -> None:
        self._failures.pop(key, None)

    def failures(self, key: Key) -> int:
        return self._failures.get(key, 0)

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            key = await queue.get()
            if key is None:
                return
            if queue.shutting_down:
                queue.done(key)
                return
            try:
                await self._process(key)
            finally:
                queue.done(key)

    async def _process(self, key: Key) -> None:
        namespace, name = key
        try:
            result = await self._reconciler.reconcile(namespace, name)
        except Exception as e:
            delay = self.backoff(key)
            permanent = isinstance(e, PermanentReconcileError)
            extra = {
                "controller": self.name,
                "namespace": namespace,
                "record_name": name,
                "error": str(e),
                "error_type": type(e).__name__,
                "permanent": permanent,
                "failures": self._failures[key],
                "retry_in_seconds": delay,
            }
            if permanent:
                logger.error("Reconcile failed permanently, retrying with backoff", extra=extra)
            else:
                logger.warning("Reconcile failed, retrying with backoff", extra=extra)
            self.enqueue_after(key, delay)
            return

        if result.requeue_after > 0:
            self.forget(key)
            self.enqueue_after(key, result.requeue_after)
        elif result.requeue:
            self.enqueue_after(key, self.backoff(key))
        else:
            self.forget(key)


class Manager:
    """Runs a set of controllers until shutdown is requested."""

    def __init__(self) -> None:
        self._controllers: list[Controller] = []
        self._shutdown_event = asyncio.Event()

    @property
    def controllers(self) -> list[Controller]:
        return list(self._controllers)

    def add(self, controller: Controller) -> Controller:
        self._controllers.append(controller)
        return controller

    async def start(self) -> None:
        for controller in self._controllers:
            await controller.start()

    async def stop(self) -> None:
        for controller in self._controllers:
            await controller.stop()

    async def run(self) -> None:
        """Start every controller and block until :meth:`shutdown`."""
        await self.start()
        logger.info("Manager running", extra={"controllers": [c.name for c in self._controllers]})
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()
        logger.info("Manager shutdown complete")

    def shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def wait_idle(self, timeout: float = 5.0) -> None:
        # Controllers feed each other through store writes; loop until all settle together.
        async def settled() -> None:
            while True:
                for controller in self._controllers:
                    await controller.wait_idle(timeout=timeout)
                await asyncio.sleep(0)
                if all(c.is_idle for c in self._controllers):
                    return

        await asyncio.wait_for(settled(), timeout=timeout)
