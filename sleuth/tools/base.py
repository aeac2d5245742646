from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from sleuth.core.cancel import CancelToken
from sleuth.core.models import ToolResult


class SafetyLevel(str, Enum):
    SAFE = "SAFE"
    CAUTIOUS = "CAUTIOUS"
    DANGEROUS = "DANGEROUS"


class ToolCategory(str, Enum):
    K8S = "k8s"
    GITHUB = "github"
    DATABASE = "database"
    MCP = "mcp"


@runtime_checkable
class Tool(Protocol):
    name: str
    description: str
    parameters: Dict[str, Any]
    safety_level: SafetyLevel
    category: ToolCategory

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult: ...

    async def confirmation_details(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...


class BaseTool:
    """
    Convenience base for built-in tools.

    Subclasses set `name`, `description`, `parameters`, `safety_level` and `category` as
    class attributes and implement `execute`.
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}}
    safety_level: SafetyLevel = SafetyLevel.SAFE
    category: ToolCategory = ToolCategory.K8S

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        raise NotImplementedError

    async def confirmation_details(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return details to show the user before running, or None when no prompt is needed."""
        if self.safety_level == SafetyLevel.SAFE:
            return None
        return {
            "tool": self.name,
            "description": self.description,
            "safety_level": self.safety_level.value,
            "args": dict(args or {}),
        }

    @staticmethod
    def cancelled_result() -> ToolResult:
        return ToolResult.fail("Operation cancelled", "CANCELLED", recoverable=False)

    def definition(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}
