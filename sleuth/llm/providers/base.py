"""
Uniform streaming contract over LangChain chat models.

Each backend adapter:
- maps the generic `Message` history onto LangChain messages (`format_history`)
- builds its chat model lazily (tests inject a fake via `chat_model=`)
- streams with `astream`, yielding `StreamChunk`s: text deltas in arrival order, then at most
  one `tool_calls` batch, then one `usage` chunk

Every read from the model stream is raced against the turn's `CancelToken`.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from sleuth.core.cancel import CancelToken
from sleuth.core.models import Message, TextPart, ToolCallPart, ToolResult, ToolResultPart
from sleuth.core.tokens import estimate_tokens
from sleuth.llm.errors import ErrorCategory, ProviderStreamError
from sleuth.tracing import build_invoke_config

logger = logging.getLogger(__name__)


@dataclass
class StreamChunk:
    type: Literal["text", "tool_calls", "usage"]
    content: str = ""
    tool_calls: List[ToolCallPart] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelInfo:
    model: str
    max_tokens: int


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:16]}"


def chunk_text(chunk: Any) -> str:
    """Text carried by one streamed message chunk (string content or text blocks)."""
    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        return content
    out = ""
    if isinstance(content, list):
        for block in content:
            if isinstance(block, str):
                out += block
            elif isinstance(block, dict) and block.get("type") == "text":
                out += str(block.get("text") or "")
    return out


def result_content(result: ToolResult) -> str:
    return result.agent_content or result.model_dump_json(exclude_none=True)


class Provider(ABC):
    name: str = ""
    default_model: str = ""
    context_tokens: int = 100000

    def __init__(self, model_id: Optional[str] = None, api_key: Optional[str] = None, *, chat_model: Any = None):
        self.model_id = model_id or self.default_model
        self.api_key = api_key
        self._chat_model = chat_model

    # ---- construction -------------------------------------------------

    @abstractmethod
    def _build_chat_model(self) -> Any: ...

    def chat_model(self) -> Any:
        if self._chat_model is None:
            self._chat_model = self._build_chat_model()
        return self._chat_model

    def model_info(self) -> ModelInfo:
        return ModelInfo(model=self.model_id, max_tokens=self.context_tokens)

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    # ---- history mapping ----------------------------------------------

    def format_tool_definition(self, tool: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description") or "",
                "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
            },
        }

    def system_message(self, system_prompt: str) -> SystemMessage:
        return SystemMessage(content=system_prompt)

    def tool_call_dict(self, part: ToolCallPart) -> Dict[str, Any]:
        return {"name": part.name, "args": dict(part.arguments), "id": part.tool_call_id, "type": "tool_call"}

    def ai_tool_call_message(self, text: str, calls: List[ToolCallPart]) -> AIMessage:
        return AIMessage(content=text, tool_calls=[self.tool_call_dict(p) for p in calls])

    def tool_result_message(self, part: ToolResultPart) -> ToolMessage:
        return ToolMessage(
            content=result_content(part.result),
            tool_call_id=part.tool_call_id,
            name=part.name,
            status="success" if part.result.success else "error",
        )

    def format_history(self, messages: List[Message]) -> List[BaseMessage]:
        """System messages are dropped here; the prompt goes through `system_message`."""
        out: List[BaseMessage] = []
        for msg in messages:
            if msg.role == "system":
                continue
            text = " ".join(p.content for p in msg.parts if isinstance(p, TextPart))
            calls = [p for p in msg.parts if isinstance(p, ToolCallPart)]
            results = [p for p in msg.parts if isinstance(p, ToolResultPart)]
            if calls:
                out.append(self.ai_tool_call_message(text, calls))
            elif results:
                out.extend(self.tool_result_message(p) for p in results)
            elif msg.role == "assistant":
                out.append(AIMessage(content=text))
            else:
                out.append(HumanMessage(content=text))
        return out

    # ---- calls --------------------------------------------------------

    async def complete(
        self,
        messages: List[Message],
        *,
        system_prompt: str,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        """One non-streaming call without tools; returns the reply text."""
        tok = cancel or CancelToken()
        lc_messages: List[BaseMessage] = [self.system_message(system_prompt)] + self.format_history(messages)
        config = build_invoke_config(kind="summary", run_name=f"llm:{self.name}", metadata={"model": self.model_id})
        msg = await tok.race(self.chat_model().ainvoke(lc_messages, config=config or None))
        return chunk_text(msg)

    def bind(self, tools: List[Dict[str, Any]]) -> Any:
        model = self.chat_model()
        if not tools:
            return model
        return model.bind_tools([self.format_tool_definition(t) for t in tools])

    def parse_tool_calls(self, acc: Optional[AIMessageChunk]) -> List[ToolCallPart]:
        if acc is None:
            return []
        invalid = list(getattr(acc, "invalid_tool_calls", None) or [])
        if invalid:
            bad = invalid[0]
            raise ProviderStreamError(
                f"{self.name} returned malformed tool call arguments for {bad.get('name') or 'unknown'}: "
                f"{bad.get('error') or bad.get('args')}",
                category=ErrorCategory.TRANSIENT,
            )
        calls: List[ToolCallPart] = []
        for tc in getattr(acc, "tool_calls", None) or []:
            name = str(tc.get("name") or "")
            if not name:
                continue
            calls.append(
                ToolCallPart(
                    tool_call_id=str(tc.get("id") or new_tool_call_id()),
                    name=name,
                    arguments=dict(tc.get("args") or {}),
                )
            )
        return calls

    def check_completion(self, acc: Optional[AIMessageChunk], text: str, calls: List[ToolCallPart]) -> None:
        """Hook for backends that signal failures through finish reasons."""

    def usage_from(self, acc: Optional[AIMessageChunk]) -> Dict[str, int]:
        um = getattr(acc, "usage_metadata", None) or {}
        return {
            "input_tokens": int(um.get("input_tokens") or 0),
            "output_tokens": int(um.get("output_tokens") or 0),
        }

    async def stream_completion(
        self,
        messages: List[Message],
        *,
        system_prompt: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        tok = cancel or CancelToken()
        tok.raise_if_cancelled()
        tools = list(tools or [])
        if tools:
            logger.info("provider: sending tools provider=%s count=%s", self.name, len(tools))

        lc_messages: List[BaseMessage] = [self.system_message(system_prompt)] + self.format_history(messages)
        runnable = self.bind(tools)
        config = build_invoke_config(kind="agent_turn", run_name=f"llm:{self.name}", metadata={"model": self.model_id})

        stream = runnable.astream(lc_messages, config=config or None)
        acc: Optional[AIMessageChunk] = None
        text = ""
        try:
            while True:
                try:
                    chunk = await tok.race(stream.__anext__())
                except StopAsyncIteration:
                    break
                acc = chunk if acc is None else acc + chunk
                delta = chunk_text(chunk)
                if delta:
                    text += delta
                    yield StreamChunk(type="text", content=delta)
        finally:
            try:
                await stream.aclose()
            except (RuntimeError, StopAsyncIteration) as e:
                # A cancelled read may still be unwinding inside the generator.
                logger.debug("provider: stream close skipped provider=%s error=%s", self.name, type(e).__name__)

        calls = self.parse_tool_calls(acc)
        self.check_completion(acc, text, calls)
        if calls:
            yield StreamChunk(type="tool_calls", tool_calls=calls)
        usage = self.usage_from(acc)
        if usage["input_tokens"] or usage["output_tokens"]:
            yield StreamChunk(type="usage", usage=usage)
