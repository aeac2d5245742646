"""
Unit tests for the tool registry, guarded execution and repeated-call detection.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from sleuth.authz.policy import FixTargetAuthorizer, FixTargetScope
from sleuth.core.cancel import CancelToken
from sleuth.core.models import ToolResult
from sleuth.orchestration.loop_protection import REPEAT_WINDOW_ITERATIONS, LoopDetector
from sleuth.orchestration.safety import ToolSafetyManager, validate_args
from sleuth.streaming.events import EventSink
from sleuth.tools.base import BaseTool, SafetyLevel, ToolCategory
from sleuth.tools.registry import ToolRegistry


class EchoTool(BaseTool):
    name = "echo"
    description = "Echo the message back"
    parameters = {
        "type": "object",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    }

    def __init__(self, *, level: SafetyLevel = SafetyLevel.SAFE, name: Optional[str] = None, delay: float = 0):
        self.safety_level = level
        if name:
            self.name = name
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        self.calls.append(dict(args))
        if self.delay:
            await asyncio.sleep(self.delay)
        return ToolResult.ok(str(args.get("message")), "echoed")


class BoomTool(EchoTool):
    name = "boom"

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        raise RuntimeError("kaboom")


class ConfirmingSink(EventSink):
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.asked: List[Dict[str, Any]] = []

    async def on_tool_confirmation(self, details: Dict[str, Any]) -> bool:
        self.asked.append(details)
        return self.answer


def _manager(*tools: BaseTool, **kwargs: Any) -> ToolSafetyManager:
    reg = ToolRegistry()
    reg.register_many(tools)
    return ToolSafetyManager(reg, **kwargs)


# ---- registry -------------------------------------------------------------------------------


def test_registry_rejects_duplicate_names() -> None:
    reg = ToolRegistry()
    reg.register(EchoTool())
    with pytest.raises(ValueError, match="already registered"):
        reg.register(EchoTool())


def test_registry_lookup_and_definitions() -> None:
    reg = ToolRegistry()
    reg.register_many([EchoTool(), BoomTool()])

    assert reg.names() == ["echo", "boom"]
    assert reg.get("echo") is not None
    assert reg.get("nope") is None
    assert [t.name for t in reg.get_by_category(ToolCategory.K8S)] == ["echo", "boom"]
    assert reg.get_by_category(ToolCategory.GITHUB) == []
    assert reg.to_definitions()[0] == {
        "name": "echo",
        "description": "Echo the message back",
        "parameters": EchoTool.parameters,
    }

    assert reg.unregister("boom") is True
    assert reg.unregister("boom") is False
    assert reg.names() == ["echo"]


@pytest.mark.asyncio
async def test_registry_execute_never_raises() -> None:
    reg = ToolRegistry()
    reg.register(BoomTool())

    missing = await reg.execute("nope", {})
    assert missing.success is False
    assert missing.error.code == "TOOL_NOT_FOUND"

    crashed = await reg.execute("boom", {"message": "x"})
    assert crashed.success is False
    assert crashed.error.code == "TOOL_EXECUTION_ERROR"
    assert crashed.error.recoverable is True
    assert "kaboom" in crashed.error.message
    assert crashed.agent_content.startswith("Error: ")


# ---- safe_execute ---------------------------------------------------------------------------


def test_validate_args_reports_schema_errors() -> None:
    assert validate_args(EchoTool.parameters, {"message": "hi"}) == []
    errors = validate_args(EchoTool.parameters, {"message": 3})
    assert len(errors) == 1 and "string" in errors[0]
    assert validate_args(None, {"anything": 1}) == []


@pytest.mark.asyncio
async def test_invalid_arguments_never_reach_the_tool() -> None:
    tool = EchoTool()
    res = await _manager(tool).safe_execute(tool, {}, EventSink())

    assert res.success is False
    assert res.error.code == "INVALID_ARGUMENTS"
    assert "'message' is a required property" in res.error.message
    assert tool.calls == []


@pytest.mark.asyncio
async def test_safe_tool_runs_without_confirmation() -> None:
    tool = EchoTool()
    sink = ConfirmingSink(False)
    res = await _manager(tool).safe_execute(tool, {"message": "hello"}, sink)

    assert res.success is True
    assert res.agent_content == "hello"
    assert sink.asked == []


@pytest.mark.asyncio
async def test_dangerous_tool_without_handler_is_refused() -> None:
    tool = EchoTool(level=SafetyLevel.DANGEROUS)
    res = await _manager(tool).safe_execute(tool, {"message": "x"}, EventSink())

    assert res.error.code == "NO_CONFIRMATION_HANDLER"
    assert res.error.recoverable is False
    assert tool.calls == []


@pytest.mark.asyncio
async def test_dangerous_tool_declined_by_user() -> None:
    tool = EchoTool(level=SafetyLevel.DANGEROUS)
    sink = ConfirmingSink(False)
    res = await _manager(tool).safe_execute(tool, {"message": "x"}, sink)

    assert res.error.code == "USER_CANCELLED"
    assert sink.asked[0]["tool"] == "echo"
    assert sink.asked[0]["safety_level"] == "DANGEROUS"
    assert tool.calls == []


@pytest.mark.asyncio
async def test_dangerous_tool_confirmed_runs_even_without_confirmation_setting() -> None:
    tool = EchoTool(level=SafetyLevel.DANGEROUS)
    sink = ConfirmingSink(True)
    res = await _manager(tool, require_confirmation=False).safe_execute(tool, {"message": "x"}, sink)

    assert res.success is True
    assert len(sink.asked) == 1


@pytest.mark.asyncio
async def test_cautious_tool_prompts_only_when_required() -> None:
    tool = EchoTool(level=SafetyLevel.CAUTIOUS)

    sink = ConfirmingSink(True)
    await _manager(tool, require_confirmation=True).safe_execute(tool, {"message": "x"}, sink)
    assert len(sink.asked) == 1

    sink = ConfirmingSink(False)
    res = await _manager(tool, require_confirmation=False).safe_execute(tool, {"message": "x"}, sink)
    assert res.success is True
    assert sink.asked == []


@pytest.mark.asyncio
async def test_timeout_becomes_recoverable_failure() -> None:
    tool = EchoTool(delay=5)
    res = await _manager(tool, timeout_seconds=0.05).safe_execute(tool, {"message": "x"}, EventSink())

    assert res.success is False
    assert res.error.code == "TIMEOUT"
    assert res.error.recoverable is True
    assert res.error.message == "echo timed out after 0.05 seconds"


@pytest.mark.asyncio
async def test_cancellation_during_execution() -> None:
    tool = EchoTool(delay=5)
    tok = CancelToken()
    asyncio.get_running_loop().call_later(0.01, tok.cancel)

    res = await _manager(tool).safe_execute(tool, {"message": "x"}, EventSink(), tok)

    assert res.error.code == "CANCELLED"
    assert res.error.recoverable is False


@pytest.mark.asyncio
async def test_successful_output_is_truncated() -> None:
    tool = EchoTool()
    res = await _manager(tool, output_max_chars=1000).safe_execute(tool, {"message": "y" * 5000}, EventSink())

    assert res.success is True
    assert len(res.agent_content) <= 1000
    assert "[Truncated:" in res.agent_content


@pytest.mark.asyncio
async def test_fix_mode_without_scope_denies_writes() -> None:
    tool = EchoTool(level=SafetyLevel.DANGEROUS, name="update_file")
    sink = ConfirmingSink(True)
    mgr = _manager(tool, authorizer=FixTargetAuthorizer("fix"))

    res = await mgr.safe_execute(tool, {"message": "x"}, sink)
    assert res.error.code == "AUTHORIZATION_DENIED"
    assert sink.asked == []

    scope = FixTargetScope(auto_fix_action="update_file")
    res = await mgr.safe_execute(tool, {"message": "x"}, sink, scope=scope)
    assert res.success is True


# ---- loop detection -------------------------------------------------------------------------


def test_loop_detector_counts_identical_calls_in_window() -> None:
    d = LoopDetector(max_repeated_calls=1)
    d.record_call("get_pod_logs", {"pod_name": "api-1", "namespace": "ns"}, 1)

    assert d.count_repeated_calls("get_pod_logs", {"namespace": "ns", "pod_name": "api-1"}, 2) == 1
    assert d.is_loop("get_pod_logs", {"namespace": "ns", "pod_name": "api-1"}, 2)
    assert not d.is_loop("get_pod_logs", {"namespace": "ns", "pod_name": "api-2"}, 2)
    assert not d.is_loop("get_k8s_resources", {"namespace": "ns", "pod_name": "api-1"}, 2)

    far = 1 + REPEAT_WINDOW_ITERATIONS + 1
    assert d.count_repeated_calls("get_pod_logs", {"pod_name": "api-1", "namespace": "ns"}, far) == 0


def test_loop_detector_treats_same_file_path_as_repeat() -> None:
    d = LoopDetector()
    d.record_call("get_file", {"file_path": "lifecycle.yaml", "branch": "a"}, 1)
    assert d.count_repeated_calls("get_file", {"file_path": "lifecycle.yaml", "branch": "b"}, 1) == 1

    d.reset()
    assert d.count_repeated_calls("get_file", {"file_path": "lifecycle.yaml"}, 1) == 0


def test_loop_hints_are_tool_specific() -> None:
    assert "lifecycle.yaml" in LoopDetector.loop_hint("get_file", {"file_path": "lifecycle.yaml"})
    assert "check deployment status" in LoopDetector.loop_hint("get_k8s_resources", {"namespace": "ns"})
    assert "logs" in LoopDetector.loop_hint("get_pod_logs", {})
    assert LoopDetector.loop_hint("query_database", {}) == "Consider trying a different tool or different arguments."


def test_result_round_trips_as_json() -> None:
    res = ToolResult.fail("nope", "X", recoverable=False, suggested_action="stop")
    data = json.loads(res.model_dump_json())
    assert data["error"] == {"message": "nope", "code": "X", "recoverable": False, "suggested_action": "stop"}
