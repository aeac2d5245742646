"""Conversation and tool-result models shared by every layer.

A turn is a list of `Message`s; each message holds ordered `Part`s:
- `TextPart`: prose from the user or the model
- `ToolCallPart`: a model request to run a tool (name + args + correlation id)
- `ToolResultPart`: the `ToolResult` for a previous call, same correlation id

Messages are treated as immutable once appended. Code that needs a changed history
(observation masking) builds a copy with `model_copy(update=...)`.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]


class ToolError(BaseModel):
    message: str
    code: str
    recoverable: bool = True
    suggested_action: Optional[str] = None


class ToolResult(BaseModel):
    success: bool
    agent_content: Optional[str] = None
    # Short human-facing summary (activity feed); never sent to the model.
    display_content: Optional[str] = None
    error: Optional[ToolError] = None

    @classmethod
    def ok(cls, agent_content: str, display_content: Optional[str] = None) -> "ToolResult":
        return cls(success=True, agent_content=agent_content, display_content=display_content)

    @classmethod
    def fail(
        cls,
        message: str,
        code: str,
        *,
        recoverable: bool = True,
        suggested_action: Optional[str] = None,
    ) -> "ToolResult":
        return cls(
            success=False,
            agent_content=f"Error: {message}",
            error=ToolError(
                message=message,
                code=code,
                recoverable=recoverable,
                suggested_action=suggested_action,
            ),
        )


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    content: str


class ToolCallPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    tool_call_id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    # Backend-specific opaque data that must round-trip (e.g. Gemini thought signatures).
    metadata: Optional[Dict[str, Any]] = None


class ToolResultPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    name: str
    result: ToolResult


Part = Annotated[Union[TextPart, ToolCallPart, ToolResultPart], Field(discriminator="type")]


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    parts: List[Part] = Field(default_factory=list)


def text_message(role: Role, content: str) -> Message:
    return Message(role=role, parts=[TextPart(content=content)])


def extract_text(parts: List[Any]) -> str:
    return "".join(p.content for p in parts if isinstance(p, TextPart))
