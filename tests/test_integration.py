"""Integration tests for the controllers running under the manager.

These tests use the in-memory store and the real scheduler: records are
written to the store and the watch-driven controllers converge on them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from fake_cluster import (
    DEFAULT_NAMESPACE,
    make_security_group,
    make_task_fixture,
    mark_workload_condition,
)

from cfoperator.config import Config
from cfoperator.conditions import is_status_condition_true
from cfoperator.main import build_manager
from cfoperator.models import (
    TASK_INITIALIZED_CONDITION,
    TASK_SUCCEEDED_CONDITION,
    CFTask,
    NetworkPolicy,
    SecurityGroupWorkloads,
    TaskWorkload,
)
from cfoperator.scheduler import Manager
from cfoperator.store import InMemoryStore


@pytest_asyncio.fixture
async def cluster() -> AsyncIterator[tuple[InMemoryStore, Manager]]:
    store = InMemoryStore()
    manager = build_manager(
        Config(workers=2, retry_backoff_base_seconds=0.01, retry_backoff_max_seconds=0.05),
        store,
    )
    await manager.start()
    try:
        yield store, manager
    finally:
        await manager.stop()


class TestTaskLifecycle:
    """A task flows from creation to completion through the watch loop."""

    @pytest.mark.asyncio
    async def test_task_gets_workload_and_mirrors_completion(
        self, cluster: tuple[InMemoryStore, Manager]
    ) -> None:
        store, manager = cluster

        await make_task_fixture(store)
        await manager.wait_idle()

        workload = await store.get(TaskWorkload, DEFAULT_NAMESPACE, "task-1")
        task = await store.get(CFTask, DEFAULT_NAMESPACE, "task-1")
        assert workload.spec.command[1] == "echo hello"
        assert is_status_condition_true(task.status.conditions, TASK_INITIALIZED_CONDITION)

        await mark_workload_condition(store, "task-1", TASK_SUCCEEDED_CONDITION)
        await manager.wait_idle()

        task = await store.get(CFTask, DEFAULT_NAMESPACE, "task-1")
        assert is_status_condition_true(task.status.conditions, TASK_SUCCEEDED_CONDITION)


class TestSecurityGroupLifecycle:
    @pytest.mark.asyncio
    async def test_policies_follow_bindings(self, cluster: tuple[InMemoryStore, Manager]) -> None:
        store, manager = cluster

        sg = await make_security_group(
            store, spaces={"space-a": SecurityGroupWorkloads(running=True)}
        )
        await manager.wait_idle()

        assert [p.namespace for p in await store.list(NetworkPolicy)] == ["space-a"]

        await store.delete(await store.get(type(sg), sg.namespace, sg.name))
        await manager.wait_idle()

        assert await store.list(NetworkPolicy) == []
