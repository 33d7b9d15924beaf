"""Tests for the work queue, controller and manager."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from cfoperator.models import CFApp, CFTask, ObjectMeta, TaskWorkload, set_controller_reference
from cfoperator.reconcile import Result
from cfoperator.scheduler import Controller, Key, Manager, WorkQueue
from cfoperator.store import InMemoryStore

NAMESPACE = "ns-1"


class RecordingReconciler:
    """Reconciler whose outcome per call is scripted by ``behaviour``."""

    def __init__(
        self,
        kind: type = CFApp,
        behaviour: Callable[[Key, int], Result] | None = None,
        delay: float = 0.0,
    ) -> None:
        self._kind = kind
        self._behaviour = behaviour
        self._delay = delay
        self.calls: list[Key] = []
        self.in_flight: set[Key] = set()
        self.max_in_flight = 0
        self.overlapping_key = False

    @property
    def kind(self) -> type:
        return self._kind

    @property
    def name(self) -> str:
        return "recording"

    async def reconcile(self, namespace: str | None, name: str) -> Result:
        key = (namespace, name)
        if key in self.in_flight:
            self.overlapping_key = True
        self.in_flight.add(key)
        self.max_in_flight = max(self.max_in_flight, len(self.in_flight))
        self.calls.append(key)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._behaviour is None:
                return Result()
            return self._behaviour(key, self.calls.count(key))
        finally:
            self.in_flight.discard(key)


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


async def _app(store: InMemoryStore, name: str) -> CFApp:
    return await store.create(CFApp(metadata=ObjectMeta(name=name, namespace=NAMESPACE)))


class TestWorkQueue:
    """Tests for key deduplication."""

    @pytest.mark.asyncio
    async def test_duplicate_keys_collapse(self) -> None:
        queue = WorkQueue()

        queue.add(("ns", "a"))
        queue.add(("ns", "a"))
        queue.add(("ns", "b"))

        assert len(queue) == 2
        assert await queue.get() == ("ns", "a")
        assert await queue.get() == ("ns", "b")

    @pytest.mark.asyncio
    async def test_key_added_while_processing_is_requeued_after_done(self) -> None:
        queue = WorkQueue()
        queue.add(("ns", "a"))
        key = await queue.get()
        assert key is not None

        queue.add(key)
        assert queue._queue.empty()

        queue.done(key)
        assert await queue.get() == key

    @pytest.mark.asyncio
    async def test_shutdown_wakes_getters(self) -> None:
        queue = WorkQueue()
        queue.add(("ns", "a"))

        queue.shutdown(waiters=1)
        queue.add(("ns", "b"))

        assert queue.is_idle
        assert await queue.get() == ("ns", "a")
        assert await queue.get() is None


class TestController:
    """Tests for Controller scheduling."""

    def test_requires_a_worker(self) -> None:
        with pytest.raises(ValueError):
            Controller(InMemoryStore(), RecordingReconciler(), workers=0)

    def test_backoff_doubles_and_caps(self) -> None:
        controller = Controller(
            InMemoryStore(), RecordingReconciler(), backoff_base=0.5, backoff_max=3.0
        )
        key = (NAMESPACE, "a")

        delays = [controller.backoff(key) for _ in range(5)]

        assert delays == [0.5, 1.0, 2.0, 3.0, 3.0]
        assert controller.failures(key) == 5
        controller.forget(key)
        assert controller.failures(key) == 0

    @pytest.mark.asyncio
    async def test_existing_records_processed_on_start(self) -> None:
        store = InMemoryStore()
        await _app(store, "a")
        await _app(store, "b")
        reconciler = RecordingReconciler()
        controller = Controller(store, reconciler)

        await controller.start()
        try:
            await controller.wait_idle()
        finally:
            await controller.stop()

        assert sorted(reconciler.calls) == [(NAMESPACE, "a"), (NAMESPACE, "b")]

    @pytest.mark.asyncio
    async def test_watch_event_enqueues(self) -> None:
        store = InMemoryStore()
        reconciler = RecordingReconciler()
        controller = Controller(store, reconciler)
        await controller.start()
        try:
            await _app(store, "late")
            await controller.wait_idle()
        finally:
            await controller.stop()

        assert reconciler.calls == [(NAMESPACE, "late")]

    @pytest.mark.asyncio
    async def test_same_key_never_processed_concurrently(self) -> None:
        store = InMemoryStore()
        for name in ("a", "b", "c"):
            await _app(store, name)
        reconciler = RecordingReconciler(delay=0.02)
        controller = Controller(store, reconciler, workers=4)

        await controller.start()
        try:
            for _ in range(5):
                for name in ("a", "b", "c"):
                    controller.enqueue(NAMESPACE, name)
                await asyncio.sleep(0.005)
            await controller.wait_idle()
        finally:
            await controller.stop()

        assert not reconciler.overlapping_key
        assert reconciler.max_in_flight > 1

    @pytest.mark.asyncio
    async def test_failures_retried_with_backoff(self) -> None:
        store = InMemoryStore()
        await _app(store, "a")

        def fail_twice(key: Key, attempt: int) -> Result:
            if attempt <= 2:
                raise RuntimeError("transient")
            return Result()

        reconciler = RecordingReconciler(behaviour=fail_twice)
        controller = Controller(store, reconciler, backoff_base=0.01, backoff_max=0.05)

        await controller.start()
        try:
            await eventually(lambda: len(reconciler.calls) >= 3)
            await controller.wait_idle()
        finally:
            await controller.stop()

        assert len(reconciler.calls) == 3
        assert controller.failures((NAMESPACE, "a")) == 0

    @pytest.mark.asyncio
    async def test_requeue_after_reruns_key(self) -> None:
        store = InMemoryStore()
        await _app(store, "a")

        def requeue_once(key: Key, attempt: int) -> Result:
            return Result(requeue_after=0.01) if attempt == 1 else Result()

        reconciler = RecordingReconciler(behaviour=requeue_once)
        controller = Controller(store, reconciler)

        await controller.start()
        try:
            await eventually(lambda: len(reconciler.calls) >= 2)
        finally:
            await controller.stop()

        assert reconciler.calls == [(NAMESPACE, "a"), (NAMESPACE, "a")]

    @pytest.mark.asyncio
    async def test_stop_drops_delayed_requeues(self) -> None:
        store = InMemoryStore()
        await _app(store, "a")
        reconciler = RecordingReconciler(behaviour=lambda key, attempt: Result(requeue_after=60))
        controller = Controller(store, reconciler)

        await controller.start()
        await controller.wait_idle()
        await controller.stop()

        assert reconciler.calls == [(NAMESPACE, "a")]
        assert controller._delayed == set()
        assert not controller.started

    @pytest.mark.asyncio
    async def test_owned_record_change_enqueues_owner(self) -> None:
        store = InMemoryStore()
        task = await store.create(CFTask(metadata=ObjectMeta(name="task-1", namespace=NAMESPACE)))
        reconciler = RecordingReconciler(kind=CFTask)
        controller = Controller(store, reconciler).owns(TaskWorkload)
        await controller.start()
        try:
            await controller.wait_idle()
            reconciler.calls.clear()

            workload = TaskWorkload(metadata=ObjectMeta(name="task-1", namespace=NAMESPACE))
            set_controller_reference(task, workload)
            await store.create(workload)
            await store.create(
                TaskWorkload(metadata=ObjectMeta(name="orphan", namespace=NAMESPACE))
            )
            await controller.wait_idle()
        finally:
            await controller.stop()

        assert reconciler.calls == [(NAMESPACE, "task-1")]

    @pytest.mark.asyncio
    async def test_watches_must_be_registered_before_start(self) -> None:
        store = InMemoryStore()
        controller = Controller(store, RecordingReconciler())
        await controller.start()
        try:
            with pytest.raises(RuntimeError):
                controller.watches(TaskWorkload, lambda obj: [])
        finally:
            await controller.stop()


class TestManager:
    @pytest.mark.asyncio
    async def test_run_until_shutdown(self) -> None:
        store = InMemoryStore()
        await _app(store, "a")
        reconciler = RecordingReconciler()
        manager = Manager()
        controller = manager.add(Controller(store, reconciler))

        runner = asyncio.create_task(manager.run())
        await eventually(lambda: controller.started)
        await manager.wait_idle()
        manager.shutdown()
        await asyncio.wait_for(runner, timeout=2.0)

        assert reconciler.calls == [(NAMESPACE, "a")]
        assert not controller.started
