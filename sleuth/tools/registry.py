from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sleuth.core.cancel import CancelToken, OperationCancelled
from sleuth.core.models import ToolResult
from sleuth.tools.base import Tool, ToolCategory
from sleuth.tracing import trace_tool_call

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Name -> Tool lookup plus a never-raising execution facade."""

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def register_many(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get_all(self) -> List[Tool]:
        return list(self._tools.values())

    def get_by_category(self, category: ToolCategory) -> List[Tool]:
        return [t for t in self._tools.values() if t.category == category]

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def to_definitions(self) -> List[Dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "parameters": t.parameters} for t in self._tools.values()
        ]

    async def execute(self, name: str, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.fail(f"Tool '{name}' not found", "TOOL_NOT_FOUND", recoverable=True)

        async def _run() -> ToolResult:
            return await tool.execute(args, cancel)

        try:
            return await trace_tool_call(tool=name, args=args, fn=_run)
        except OperationCancelled:
            return ToolResult.fail("Operation cancelled", "CANCELLED", recoverable=False)
        except Exception as e:
            logger.exception("tool execution raised tool=%s", name)
            return ToolResult.fail(
                f"Tool '{name}' failed: {type(e).__name__}: {e}",
                "TOOL_EXECUTION_ERROR",
                recoverable=True,
            )
