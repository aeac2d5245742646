"""
Conversation compression.

When a session's history outgrows `COMPRESSION_THRESHOLD` estimated tokens, the provider
summarizes it into a `ConversationState` and the history is replaced by one context
message built from that state plus the newest user message.
"""

from __future__ import annotations

import json
import logging
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from sleuth.core.cancel import CancelToken
from sleuth.core.models import Message, TextPart, ToolCallPart, ToolResultPart, text_message
from sleuth.core.tokens import estimate_tokens
from sleuth.llm.providers.base import Provider
from sleuth.orchestration.masker import estimate_history_tokens
from sleuth.streaming.classifier import strip_fences

logger = logging.getLogger(__name__)

COMPRESSION_THRESHOLD = 80000

SUMMARIZER_SYSTEM_PROMPT = "You are a conversation summarizer."

COMPRESSION_PROMPT = """Analyze this debugging conversation and create a structured summary.

Extract:
1. What issues have been identified
2. Which services have been investigated
3. What tools were used
4. Current task/focus
5. Key findings

Return only a JSON object with these keys:
{{"summary": str, "identified_issues": [{{"service": str, "issue": str, "confidence": "high"|"medium"|"low"}}],
 "investigated_services": [str], "tools_used": [str], "current_task": str}}

Conversation:
{conversation}
"""


class IdentifiedIssue(BaseModel):
    service: str
    issue: str
    confidence: Literal["high", "medium", "low"] = "medium"


class ConversationState(BaseModel):
    summary: str = ""
    identified_issues: List[IdentifiedIssue] = Field(default_factory=list)
    investigated_services: List[str] = Field(default_factory=list)
    tools_used: List[str] = Field(default_factory=list)
    current_task: str = ""
    token_count: int = 0
    message_count: int = 0
    compression_level: int = 0


def format_messages(messages: List[Message]) -> str:
    blocks: List[str] = []
    for m in messages:
        lines: List[str] = []
        for p in m.parts:
            if isinstance(p, TextPart):
                lines.append(p.content)
            elif isinstance(p, ToolCallPart):
                lines.append(f"[called {p.name} {json.dumps(p.arguments, sort_keys=True, default=str)}]")
            elif isinstance(p, ToolResultPart):
                lines.append(f"[{p.name} result] {p.result.agent_content}")
        blocks.append(f"{m.role}: " + "\n".join(lines))
    return "\n\n".join(blocks)


class ConversationManager:
    def __init__(self, threshold: int = COMPRESSION_THRESHOLD) -> None:
        self.threshold = int(threshold)

    def should_compress(self, messages: List[Message]) -> bool:
        return estimate_history_tokens(messages) > self.threshold

    async def compress(
        self,
        messages: List[Message],
        provider: Provider,
        *,
        session_id: str = "",
        cancel: Optional[CancelToken] = None,
    ) -> ConversationState:
        """
        Summarize `messages` with one non-streaming provider call.

        Raises:
            pydantic.ValidationError: the reply is not a JSON object of the expected shape
        """
        logger.info("conversation: compression starting messages=%s session=%s", len(messages), session_id or "none")
        prompt = COMPRESSION_PROMPT.format(conversation=format_messages(messages))
        reply = await provider.complete(
            [text_message("user", prompt)], system_prompt=SUMMARIZER_SYSTEM_PROMPT, cancel=cancel
        )

        state = ConversationState.model_validate_json(strip_fences(reply))
        state.token_count = estimate_tokens(state.model_dump_json())
        state.message_count = len(messages)
        state.compression_level = 1
        logger.info(
            "conversation: compression complete messages=%s tokens=%s issues=%s services=%s",
            len(messages),
            state.token_count,
            len(state.identified_issues),
            len(state.investigated_services),
        )
        return state

    @staticmethod
    def build_prompt_from_state(state: ConversationState) -> str:
        issues = "\n".join(f"- **{i.service}**: {i.issue} ({i.confidence} confidence)" for i in state.identified_issues)
        return (
            "# Conversation Context (Compressed)\n\n"
            f"## Summary\n{state.summary}\n\n"
            f"## Identified Issues\n{issues or '- none yet'}\n\n"
            "## Already Investigated\n"
            f"Services: {', '.join(state.investigated_services)}\n"
            f"Tools used: {', '.join(state.tools_used)}\n\n"
            f"## Current Task\n{state.current_task}\n\n"
            "Continue the investigation from this point."
        )

    async def compact(
        self,
        messages: List[Message],
        provider: Provider,
        *,
        session_id: str = "",
        cancel: Optional[CancelToken] = None,
    ) -> Optional[List[Message]]:
        """
        The compressed replacement for `messages`, or None when under the threshold.

        The last message (the user's new question) is kept verbatim after the context message.
        """
        if not messages or not self.should_compress(messages):
            return None
        state = await self.compress(messages, provider, session_id=session_id, cancel=cancel)
        return [text_message("user", self.build_prompt_from_state(state)), messages[-1]]
