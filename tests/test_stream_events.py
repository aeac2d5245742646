"""
Unit tests for QueueEventSink.
"""

from __future__ import annotations

import pytest

from sleuth.core.models import ToolResult
from sleuth.evidence.extractor import ResourceEvidence
from sleuth.llm.errors import classify_error
from sleuth.streaming.events import ActivityEvent, QueueEventSink


def _drain(sink: QueueEventSink):
    out = []
    while not sink.queue.empty():
        out.append(sink.queue.get_nowait())
    return out


@pytest.mark.asyncio
async def test_callbacks_become_stream_events() -> None:
    sink = QueueEventSink()
    sink.on_text_chunk("hello")
    sink.on_tool_call("get_pod_logs", {"pod_name": "api-1"}, "c1")
    sink.on_tool_result(ToolResult.fail("gone", "EXECUTION_ERROR"), "get_pod_logs", {}, 12, 40, "c1")
    sink.on_activity(ActivityEvent(tool_call_id="c1", tool="get_pod_logs", status="failed", preview="gone"))
    sink.on_evidence(ResourceEvidence(tool_call_id="c1", resource_type="pod", resource_name="api-1", namespace="e"))
    sink.on_error(classify_error("openai", RuntimeError("boom")))
    sink.on_done({"metrics": {"iterations": 1}})

    events = _drain(sink)
    assert [e.event_type for e in events] == [
        "token",
        "tool_call",
        "tool_result",
        "activity",
        "evidence",
        "error",
        "done",
    ]
    assert events[0].content == "hello"
    assert events[1].metadata == {"args": {"pod_name": "api-1"}}
    assert events[2].metadata["success"] is False
    assert events[2].metadata["error"]["code"] == "EXECUTION_ERROR"
    assert events[2].metadata["total_duration_ms"] == 40
    assert events[3].metadata == {"status": "failed", "duration_ms": 0}
    assert events[4].metadata["resource_name"] == "api-1"
    assert events[5].metadata["provider"] == "openai"
    assert events[6].metadata == {"metrics": {"iterations": 1}}


@pytest.mark.asyncio
async def test_debug_events_only_when_verbose() -> None:
    quiet = QueueEventSink()
    quiet.on_debug("iteration", {"iteration": 1})
    assert quiet.queue.empty()

    loud = QueueEventSink(verbose=True)
    loud.on_debug("iteration", {"iteration": 1})
    ev = loud.queue.get_nowait()
    assert ev.event_type == "debug"
    assert ev.content == "iteration"
