"""
Event sink contract between the orchestrator and the transport boundary.

`EventSink` is a no-op base; transports override what they need. `QueueEventSink` turns the
callbacks into `StreamEvent` records on an asyncio queue for push-style transports.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

from sleuth.core.models import ToolResult

ActivityStatus = Literal["pending", "completed", "failed"]


@dataclass
class ActivityEvent:
    tool_call_id: str
    tool: str
    status: ActivityStatus
    preview: str = ""
    duration_ms: int = 0


@dataclass
class StreamEvent:
    """Single event for streaming transports."""

    event_type: Literal[
        "thinking",
        "token",
        "tool_call",
        "tool_result",
        "activity",
        "evidence",
        "debug",
        "error",
        "done",
    ]
    content: Optional[str] = None
    tool: Optional[str] = None
    tool_call_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventSink:
    # Set to an async callable `(details) -> bool` to allow confirming CAUTIOUS/DANGEROUS tools.
    on_tool_confirmation: Any = None

    def on_text_chunk(self, text: str) -> None:
        pass

    def on_thinking(self, message: str) -> None:
        pass

    def on_tool_call(self, name: str, args: Dict[str, Any], tool_call_id: str) -> None:
        pass

    def on_tool_result(
        self,
        result: ToolResult,
        name: str,
        args: Dict[str, Any],
        tool_duration_ms: int,
        total_duration_ms: int,
        tool_call_id: str,
    ) -> None:
        pass

    def on_activity(self, event: ActivityEvent) -> None:
        pass

    def on_evidence(self, event: Any) -> None:
        pass

    def on_debug(self, label: str, payload: Dict[str, Any]) -> None:
        pass

    def on_error(self, error: Any) -> None:
        pass

    def on_done(self, summary: Dict[str, Any]) -> None:
        pass


class QueueEventSink(EventSink):
    def __init__(self, queue: Optional["asyncio.Queue[StreamEvent]"] = None, *, verbose: bool = False) -> None:
        self.queue: "asyncio.Queue[StreamEvent]" = queue or asyncio.Queue()
        self.verbose = verbose

    def _put(self, ev: StreamEvent) -> None:
        self.queue.put_nowait(ev)

    def on_text_chunk(self, text: str) -> None:
        self._put(StreamEvent(event_type="token", content=text))

    def on_thinking(self, message: str) -> None:
        self._put(StreamEvent(event_type="thinking", content=message))

    def on_tool_call(self, name: str, args: Dict[str, Any], tool_call_id: str) -> None:
        self._put(StreamEvent(event_type="tool_call", tool=name, tool_call_id=tool_call_id, metadata={"args": args}))

    def on_tool_result(
        self,
        result: ToolResult,
        name: str,
        args: Dict[str, Any],
        tool_duration_ms: int,
        total_duration_ms: int,
        tool_call_id: str,
    ) -> None:
        self._put(
            StreamEvent(
                event_type="tool_result",
                tool=name,
                tool_call_id=tool_call_id,
                content=result.display_content,
                metadata={
                    "success": result.success,
                    "error": result.error.model_dump() if result.error else None,
                    "tool_duration_ms": tool_duration_ms,
                    "total_duration_ms": total_duration_ms,
                },
            )
        )

    def on_activity(self, event: ActivityEvent) -> None:
        self._put(
            StreamEvent(
                event_type="activity",
                tool=event.tool,
                tool_call_id=event.tool_call_id,
                content=event.preview,
                metadata={"status": event.status, "duration_ms": event.duration_ms},
            )
        )

    def on_evidence(self, event: Any) -> None:
        payload = event.model_dump() if hasattr(event, "model_dump") else dict(event)
        self._put(StreamEvent(event_type="evidence", metadata=payload))

    def on_debug(self, label: str, payload: Dict[str, Any]) -> None:
        if self.verbose:
            self._put(StreamEvent(event_type="debug", content=label, metadata=dict(payload)))

    def on_error(self, error: Any) -> None:
        payload = error.to_dict() if hasattr(error, "to_dict") else {"message": str(error)}
        content = payload.get("user_message") or payload.get("message")
        self._put(StreamEvent(event_type="error", content=content, metadata=payload))

    def on_done(self, summary: Dict[str, Any]) -> None:
        self._put(StreamEvent(event_type="done", metadata=dict(summary)))
