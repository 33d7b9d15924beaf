"""Tests for the logging event recorder."""

import logging

import pytest
from fake_cluster import FakeClock

from cfoperator.events import EventType, LoggingEventRecorder
from cfoperator.models import CFTask, ObjectMeta


def _task() -> CFTask:
    return CFTask(metadata=ObjectMeta(name="task-1", namespace="ns-1"))


class TestLoggingEventRecorder:
    def test_records_event(self) -> None:
        clock = FakeClock()
        recorder = LoggingEventRecorder("test", clock=clock)

        recorder.event(_task(), EventType.NORMAL, "TaskWorkloadCreated", "Created task workload task-1")

        (event,) = recorder.events
        assert event.kind == "CFTask"
        assert event.namespace == "ns-1"
        assert event.timestamp == clock.now
        assert event.to_dict()["type"] == "Normal"

    def test_history_is_bounded(self) -> None:
        recorder = LoggingEventRecorder("test", max_history=2)

        for reason in ("A", "B", "C"):
            recorder.event(_task(), EventType.NORMAL, reason, "")

        assert recorder.reasons() == ["B", "C"]

    def test_warning_events_logged_as_warnings(self, caplog: pytest.LogCaptureFixture) -> None:
        recorder = LoggingEventRecorder("test")

        with caplog.at_level(logging.INFO, logger="cfoperator.events"):
            recorder.event(_task(), EventType.WARNING, "AppNotFound", "Did not find app")

        (record,) = caplog.records
        assert record.levelno == logging.WARNING
        assert record.reason == "AppNotFound"  # type: ignore[attr-defined]
        assert record.involved_name == "task-1"  # type: ignore[attr-defined]
