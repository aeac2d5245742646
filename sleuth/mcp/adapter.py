from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from sleuth.core.cancel import CancelToken
from sleuth.core.models import ToolResult
from sleuth.mcp.client import McpClient
from sleuth.mcp.types import (
    MCP_CONNECTION_ERROR,
    MCP_PROTOCOL_ERROR,
    MCP_TOOL_ERROR,
    McpServerConfig,
    McpToolAnnotations,
    McpToolInfo,
)
from sleuth.tools.base import SafetyLevel, ToolCategory
from sleuth.tools.output_limiter import truncate

logger = logging.getLogger(__name__)

_CONNECTION_MARKERS = ("econnrefused", "connection refused", "timeout", "timed out", "abort", "connection failed",
                       "connecterror", "fetch failed")
_PROTOCOL_MARKERS = ("protocol", "json-rpc", "jsonrpc")


def qualified_name(server_slug: str, tool_name: str) -> str:
    return f"mcp__{server_slug}__{tool_name}"


def safety_from_annotations(annotations: Optional[McpToolAnnotations]) -> SafetyLevel:
    if annotations is None:
        return SafetyLevel.CAUTIOUS
    if annotations.destructive_hint is True:
        return SafetyLevel.DANGEROUS
    if annotations.read_only_hint is True:
        return SafetyLevel.SAFE
    return SafetyLevel.CAUTIOUS


def _prefix_description(description: str, level: SafetyLevel) -> str:
    if level == SafetyLevel.DANGEROUS:
        return f"[DANGEROUS] {description}"
    if level == SafetyLevel.SAFE:
        return f"[SAFE] {description}"
    return description


def extract_text_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return json.dumps(content, default=str)
    return "\n".join(
        str(block.get("text"))
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    )


def classify_mcp_error(error: BaseException) -> str:
    low = f"{type(error).__name__}: {error}".lower()
    if any(m in low for m in _CONNECTION_MARKERS):
        return MCP_CONNECTION_ERROR
    if any(m in low for m in _PROTOCOL_MARKERS):
        return MCP_PROTOCOL_ERROR
    return MCP_TOOL_ERROR


class McpToolAdapter:
    """Exposes one remote tool as a local `Tool`; every execution uses its own connection."""

    category = ToolCategory.MCP

    def __init__(
        self,
        server: McpServerConfig,
        tool: McpToolInfo,
        *,
        client_factory: Callable[[], McpClient] = McpClient,
    ) -> None:
        self.server_slug = server.slug
        self.original_name = tool.name
        self.name = qualified_name(server.slug, tool.name)
        self.safety_level = safety_from_annotations(tool.annotations)
        self.description = _prefix_description(
            tool.description or f"MCP tool {tool.name} from {server.slug}", self.safety_level
        )
        self.parameters: Dict[str, Any] = dict(tool.input_schema or {"type": "object", "properties": {}})
        self._url = server.url
        self._headers = dict(server.headers or {})
        self._timeout_ms = int(server.timeout_ms)
        self._client_factory = client_factory

    async def confirmation_details(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.safety_level == SafetyLevel.SAFE:
            return None
        return {
            "tool": self.name,
            "server": self.server_slug,
            "description": self.description,
            "safety_level": self.safety_level.value,
            "args": dict(args or {}),
        }

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return ToolResult.fail("Operation cancelled", "CANCELLED", recoverable=False)

        client = self._client_factory()
        try:
            try:
                await client.connect(self._url, self._headers, self._timeout_ms)
            except Exception as e:
                logger.warning("mcp: connection failed tool=%s error=%s", self.name, e)
                return ToolResult.fail(
                    f"Failed to connect to MCP server: {e}",
                    MCP_CONNECTION_ERROR,
                    recoverable=True,
                    suggested_action="MCP server may be temporarily unavailable. Try again or skip this tool.",
                )

            result = await client.call_tool(self.original_name, args, self._timeout_ms, cancel)
            text = extract_text_content(result.content)
            if result.is_error:
                return ToolResult(
                    success=False,
                    agent_content=text,
                    error={
                        "message": f"MCP tool returned error: {text}",
                        "code": MCP_TOOL_ERROR,
                        "recoverable": True,
                        "suggested_action": "Check tool arguments and try again.",
                    },
                )
            return ToolResult.ok(truncate(text))
        except Exception as e:
            if cancel is not None and cancel.cancelled:
                return ToolResult.fail("Operation cancelled", "CANCELLED", recoverable=False)
            code = classify_mcp_error(e)
            logger.warning("mcp: tool error tool=%s code=%s error=%s", self.name, code, e)
            return ToolResult.fail(
                str(e) or type(e).__name__,
                code,
                recoverable=code != MCP_PROTOCOL_ERROR,
                suggested_action=(
                    "MCP server may have a compatibility issue."
                    if code == MCP_PROTOCOL_ERROR
                    else "Check tool arguments and try again."
                ),
            )
        finally:
            await client.close()


def create_mcp_tools(servers: Iterable[McpServerConfig]) -> List[McpToolAdapter]:
    tools: List[McpToolAdapter] = []
    for server in servers:
        for cached in server.cached_tools:
            tools.append(McpToolAdapter(server, cached))
    return tools
