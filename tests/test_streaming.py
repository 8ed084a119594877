from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import pytest

from mas_orchestrator.streaming import EventStreamAdapter, ListEventSink, LoggingEventSink, QueueEventSink


def _event(type_: str, visibility: str = "user", summary: str = "") -> dict[str, Any]:
    return {"type": type_, "visibility": visibility, "summary": summary or type_, "stage": "QC1", "agent": "qc"}


class _BrokenSink:
    def __init__(self) -> None:
        self.writes = 0

    def write(self, event: Mapping[str, Any]) -> None:
        self.writes += 1
        raise ConnectionResetError("client went away")


def test_adapter_filters_by_type_and_visibility_in_order() -> None:
    sink = ListEventSink()
    adapter = EventStreamAdapter(sink, event_types={"qc_review", "error"})

    sent = adapter.forward(
        [
            _event("qc_review", summary="first"),
            _event("patch_applied"),
            _event("error", visibility="internal"),
            _event("error", visibility="expert"),
            _event("error", summary="second"),
        ]
    )

    assert sent == 2
    assert [event["summary"] for event in sink.events] == ["first", "second"]
    assert adapter.forwarded == 2


def test_diagnostic_adapter_opts_into_expert_events() -> None:
    sink = ListEventSink()
    adapter = EventStreamAdapter(sink, event_types={"qc_review"}, visibilities={"user", "expert"})

    adapter.forward([_event("qc_review", visibility="expert"), _event("qc_review", visibility="internal")])

    assert [event["visibility"] for event in sink.events] == ["expert"]


def test_failing_sink_is_detached_and_forwarding_stops() -> None:
    sink = _BrokenSink()
    adapter = EventStreamAdapter(sink)

    assert adapter.forward([_event("run_started"), _event("run_completed")]) == 0
    assert sink.writes == 1
    assert not adapter.attached
    assert adapter.forward([_event("run_completed")]) == 0
    assert sink.writes == 1


def test_adapter_without_sink_is_a_no_op() -> None:
    adapter = EventStreamAdapter(None)
    assert adapter.forward([_event("run_started")]) == 0


def test_logging_sink_writes_one_record_per_event(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="mas_orchestrator.streaming")
    LoggingEventSink().write(_event("qc_passed", summary="QC passed"))
    assert "[QC1] qc/qc_passed: QC passed" in caplog.text


def test_queue_sink_iterates_until_closed() -> None:
    async def scenario() -> list[str]:
        sink = QueueEventSink()
        adapter = EventStreamAdapter(sink)
        adapter.forward([_event("run_started"), _event("stage_completed")])
        sink.close()
        sink.close()
        with pytest.raises(RuntimeError, match="closed"):
            sink.write(_event("run_completed"))
        return [event["type"] async for event in sink]

    assert asyncio.run(scenario()) == ["run_started", "stage_completed"]


def test_queue_sink_keeps_returning_none_after_close() -> None:
    async def scenario() -> list[Any]:
        sink = QueueEventSink()
        for index in range(500):
            sink.write(_event("patch_applied", summary=str(index)))
        sink.close()
        drained = [event async for event in sink]
        return [len(drained), await sink.get(), await sink.get()]

    assert asyncio.run(scenario()) == [500, None, None]
