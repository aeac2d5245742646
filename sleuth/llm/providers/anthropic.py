from __future__ import annotations

from typing import Any

from langchain_core.messages import SystemMessage

from sleuth.llm.providers.base import Provider


class AnthropicProvider(Provider):
    """Claude via `langchain_anthropic.ChatAnthropic`; tool results go out as `tool_result` blocks."""

    name = "anthropic"
    default_model = "claude-sonnet-4-5-20250929"
    context_tokens = 180000
    max_output_tokens = 16384

    def _build_chat_model(self) -> Any:
        if not self.api_key:
            raise ValueError("Anthropic API key is required (ANTHROPIC_API_KEY or AI_API_KEY).")
        from langchain_anthropic import ChatAnthropic  # type: ignore[import-not-found]

        return ChatAnthropic(
            model=self.model_id,
            temperature=0,
            max_tokens=self.max_output_tokens,
            anthropic_api_key=self.api_key,
            timeout=180,
        )

    def system_message(self, system_prompt: str) -> SystemMessage:
        # Prompt prefix is cached across turns (ephemeral).
        return SystemMessage(
            content=[{"type": "text", "text": system_prompt, "cache_control": {"type": "ephemeral"}}]
        )
