from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DEFAULT_SERVER_TIMEOUT_MS = 30000

MCP_CONNECTION_ERROR = "MCP_CONNECTION_ERROR"
MCP_TOOL_ERROR = "MCP_TOOL_ERROR"
MCP_PROTOCOL_ERROR = "MCP_PROTOCOL_ERROR"


class McpError(Exception):
    pass


class McpConnectionError(McpError):
    pass


class McpNotConnectedError(McpError):
    def __init__(self) -> None:
        super().__init__("MCP client not connected. Call connect() first.")


class McpTimeoutError(McpError):
    def __init__(self, tool_name: str, timeout_ms: int) -> None:
        super().__init__(f"MCP tool call '{tool_name}' timed out after {timeout_ms}ms")
        self.tool_name = tool_name
        self.timeout_ms = timeout_ms


class McpToolAnnotations(BaseModel):
    read_only_hint: Optional[bool] = None
    destructive_hint: Optional[bool] = None
    open_world_hint: Optional[bool] = None


class McpToolInfo(BaseModel):
    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    annotations: Optional[McpToolAnnotations] = None


class McpCallResult(BaseModel):
    content: List[Dict[str, Any]] = Field(default_factory=list)
    is_error: bool = False


class McpServerConfig(BaseModel):
    """A remote tool server as supplied by the server registry (global or per-repository scope)."""

    slug: str
    name: str = ""
    url: str
    scope: str = "global"
    headers: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    timeout_ms: int = DEFAULT_SERVER_TIMEOUT_MS
    cached_tools: List[McpToolInfo] = Field(default_factory=list)
