"""
LangSmith hooks for provider streams and tool executions.

Both wrappers are no-ops unless LANGSMITH_TRACING (or LANGCHAIN_TRACING_V2) is set and an
API key is present.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sleuth.config import _env_bool, _split_csv

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _api_key() -> Optional[str]:
    return (os.getenv("LANGSMITH_API_KEY") or "").strip() or (os.getenv("LANGCHAIN_API_KEY") or "").strip() or None


def tracing_enabled() -> bool:
    if not (_env_bool("LANGSMITH_TRACING") or _env_bool("LANGCHAIN_TRACING_V2")):
        return False
    if _api_key() is None:
        logger.warning("tracing: requested but LANGSMITH_API_KEY is not set, disabled")
        return False
    return True


def build_invoke_config(*, kind: str, run_name: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """RunnableConfig for one chat model stream; {} when tracing is off."""
    if not tracing_enabled():
        return {}

    from langchain_core.tracers.langchain import LangChainTracer
    from langsmith import Client

    project = (os.getenv("LANGSMITH_PROJECT") or "").strip() or "sleuth"
    tags = _split_csv(os.getenv("LANGSMITH_TAGS") or "")
    tracer = LangChainTracer(project_name=project, client=Client(api_key=_api_key()), tags=tags or None)

    cfg: Dict[str, Any] = {
        "metadata": {**(metadata or {}), "kind": kind},
        "run_name": run_name,
        "callbacks": [tracer],
    }
    if tags:
        cfg["tags"] = tags
    return cfg


async def trace_tool_call(*, tool: str, args: Dict[str, Any], fn: Callable[[], Awaitable[T]]) -> T:
    """Await `fn()` exactly once, inside a `tool:<name>` span when tracing is on."""
    if not tracing_enabled():
        return await fn()

    from langsmith import traceable

    @traceable(name=f"tool:{tool}", run_type="tool")
    async def _span(_tool: str, _args: Dict[str, Any]) -> T:
        return await fn()

    return await _span(tool, dict(args or {}))
