"""Fake cluster helpers for controller tests.

This package provides what the controllers need to run end to end without
a Kubernetes API server:

- FakeClock: a controllable clock for TTL and transition-time assertions
- FaultInjectingStore: an InMemoryStore wrapper that records calls and can
  fail chosen operations
- builders: async helpers that create realistic apps, builds, processes,
  tasks and security groups

Usage:
    from fake_cluster import FakeClock, FaultInjectingStore, make_ready_app

    clock = FakeClock()
    store = FaultInjectingStore(clock=clock)
    app = await make_ready_app(store)
"""

from .builders import (
    DEFAULT_IMAGE,
    DEFAULT_NAMESPACE,
    make_build,
    make_env_secret,
    make_process,
    make_ready_app,
    make_security_group,
    make_task,
    make_task_fixture,
    mark_workload_condition,
)
from .clock import FakeClock
from .store import FaultInjectingStore

__all__ = [
    "DEFAULT_IMAGE",
    "DEFAULT_NAMESPACE",
    "FakeClock",
    "FaultInjectingStore",
    "make_build",
    "make_env_secret",
    "make_process",
    "make_ready_app",
    "make_security_group",
    "make_task",
    "make_task_fixture",
    "mark_workload_condition",
]
