"""
Unit tests for the LangSmith hooks when tracing is off or misconfigured.
"""

from __future__ import annotations

import pytest

from sleuth.tracing import build_invoke_config, trace_tool_call, tracing_enabled


def test_tracing_disabled_by_default() -> None:
    assert tracing_enabled() is False
    assert build_invoke_config(kind="agent_turn", run_name="llm:openai") == {}


def test_tracing_requires_api_key(monkeypatch) -> None:
    monkeypatch.setenv("LANGSMITH_TRACING", "true")
    monkeypatch.delenv("LANGSMITH_API_KEY", raising=False)
    monkeypatch.delenv("LANGCHAIN_API_KEY", raising=False)

    assert tracing_enabled() is False
    assert build_invoke_config(kind="agent_turn", run_name="llm:openai") == {}


@pytest.mark.asyncio
async def test_trace_tool_call_awaits_once_when_disabled() -> None:
    calls = []

    async def run() -> str:
        calls.append(1)
        return "ok"

    assert await trace_tool_call(tool="get_pods", args={"namespace": "env-1"}, fn=run) == "ok"
    assert calls == [1]
