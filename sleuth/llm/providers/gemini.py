"""
Gemini via Vertex AI (`langchain_google_vertexai.ChatVertexAI`).

Auth is Application Default Credentials (Workload Identity or GOOGLE_APPLICATION_CREDENTIALS)
and requires GOOGLE_CLOUD_PROJECT + GOOGLE_CLOUD_LOCATION. ADC is preflighted so a missing
credential fails at construction with a clear message rather than mid-stream.

Gemini specifics handled here:
- function responses must be JSON objects: arrays are wrapped as {"items": [...]}, non-JSON
  output as {"content": raw}, failed results as {"error": msg, "success": false}
- function names may come back prefixed with `default_api:`
- thought signatures on function calls must be sent back with the same call
- finish reason MALFORMED_FUNCTION_CALL and empty replies are stream errors
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

from langchain_core.messages import AIMessage, AIMessageChunk, ToolMessage

from sleuth.core.models import ToolCallPart, ToolResult, ToolResultPart
from sleuth.llm.errors import ErrorCategory, ProviderStreamError
from sleuth.llm.providers.base import Provider

logger = logging.getLogger(__name__)

_NAME_PREFIX = "default_api:"
_THOUGHT_SIGNATURES_KEY = "__gemini_function_call_thought_signatures__"


def function_response_payload(result: ToolResult) -> Dict[str, Any]:
    if not result.success:
        msg = result.error.message if result.error else "Tool execution failed"
        return {"error": msg or "Tool execution failed", "success": False}
    raw = result.agent_content or result.model_dump_json(exclude_none=True)
    try:
        obj = json.loads(raw)
    except ValueError:
        return {"content": raw}
    if isinstance(obj, list):
        return {"items": obj}
    if not isinstance(obj, dict):
        return {"content": raw}
    return obj


def strip_name_prefix(name: str) -> str:
    return name[len(_NAME_PREFIX) :] if name.startswith(_NAME_PREFIX) else name


class GeminiProvider(Provider):
    name = "gemini"
    default_model = "gemini-2.5-flash"
    context_tokens = 900000
    max_output_tokens = 65536

    def _build_chat_model(self) -> Any:
        project = (os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip()
        location = (os.getenv("GOOGLE_CLOUD_LOCATION") or "").strip()
        if not project or not location:
            raise ValueError("Gemini requires GOOGLE_CLOUD_PROJECT and GOOGLE_CLOUD_LOCATION (Vertex AI).")

        import google.auth  # type: ignore[import-not-found]
        import google.auth.exceptions  # type: ignore[import-not-found]

        try:
            google.auth.default(scopes=["https://www.googleapis.com/auth/cloud-platform"])
        except google.auth.exceptions.DefaultCredentialsError as e:
            raise ValueError(f"Gemini requires Application Default Credentials: {e}") from e

        from langchain_google_vertexai import ChatVertexAI  # type: ignore[import-not-found]

        return ChatVertexAI(
            model=self.model_id,
            temperature=0.1,
            top_p=0.95,
            max_output_tokens=self.max_output_tokens,
            project=project,
            location=location,
            timeout=180,
        )

    def format_tool_definition(self, tool: Dict[str, Any]) -> Dict[str, Any]:
        params = tool.get("parameters") or {}
        return {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description") or "",
                "parameters": {
                    "type": "object",
                    "properties": params.get("properties") or {},
                    "required": params.get("required") or [],
                },
            },
        }

    def ai_tool_call_message(self, text: str, calls: List[ToolCallPart]) -> AIMessage:
        signatures = {
            p.tool_call_id: p.metadata["thought_signature"]
            for p in calls
            if p.metadata and p.metadata.get("thought_signature")
        }
        kwargs = {_THOUGHT_SIGNATURES_KEY: signatures} if signatures else {}
        return AIMessage(
            content=text,
            tool_calls=[self.tool_call_dict(p) for p in calls],
            additional_kwargs=kwargs,
        )

    def tool_result_message(self, part: ToolResultPart) -> ToolMessage:
        return ToolMessage(
            content=json.dumps(function_response_payload(part.result), default=str),
            tool_call_id=part.tool_call_id,
            name=part.name,
        )

    def parse_tool_calls(self, acc: Optional[AIMessageChunk]) -> List[ToolCallPart]:
        calls = super().parse_tool_calls(acc)
        if not calls:
            return calls
        signatures = {}
        if acc is not None:
            signatures = (getattr(acc, "additional_kwargs", None) or {}).get(_THOUGHT_SIGNATURES_KEY) or {}
        out: List[ToolCallPart] = []
        for c in calls:
            sig = signatures.get(c.tool_call_id) if isinstance(signatures, dict) else None
            out.append(
                c.model_copy(
                    update={
                        "name": strip_name_prefix(c.name),
                        "metadata": {"thought_signature": sig} if sig else None,
                    }
                )
            )
        return out

    def check_completion(self, acc: Optional[AIMessageChunk], text: str, calls: List[ToolCallPart]) -> None:
        md = (getattr(acc, "response_metadata", None) or {}) if acc is not None else {}
        finish = str(md.get("finish_reason") or "") or None

        if finish == "MALFORMED_FUNCTION_CALL":
            raise ProviderStreamError(
                "Gemini generated a malformed function call. This is a transient model error.",
                category=ErrorCategory.TRANSIENT,
                finish_reason=finish,
            )
        if not text and not calls:
            logger.error("gemini: empty response finish_reason=%s", finish)
            raise ProviderStreamError(
                f"Gemini returned an empty response. finishReason: {finish}",
                category=ErrorCategory.AMBIGUOUS if finish == "STOP" else ErrorCategory.TRANSIENT,
                finish_reason=finish,
            )
