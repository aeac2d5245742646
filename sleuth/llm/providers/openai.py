from __future__ import annotations

from typing import Any

from sleuth.llm.providers.base import Provider


class OpenAIProvider(Provider):
    """
    GPT models via `langchain_openai.ChatOpenAI`.

    Tool-call argument fragments arrive per index and are merged by LangChain's chunk
    addition; fragments that never form valid JSON surface as `invalid_tool_calls`, which
    `parse_tool_calls` turns into a TRANSIENT stream error.
    """

    name = "openai"
    default_model = "gpt-4o"
    context_tokens = 110000
    max_output_tokens = 16384

    def _build_chat_model(self) -> Any:
        if not self.api_key:
            raise ValueError("OpenAI API key is required (OPENAI_API_KEY or AI_API_KEY).")
        from langchain_openai import ChatOpenAI  # type: ignore[import-not-found]

        return ChatOpenAI(
            model=self.model_id,
            api_key=self.api_key,
            max_tokens=self.max_output_tokens,
            stream_usage=True,
            timeout=180,
        )
