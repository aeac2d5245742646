from __future__ import annotations

import os
from enum import Enum
from typing import Any, Optional, Union

from sleuth.llm.providers.anthropic import AnthropicProvider
from sleuth.llm.providers.base import Provider
from sleuth.llm.providers.gemini import GeminiProvider
from sleuth.llm.providers.openai import OpenAIProvider


class ProviderType(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GEMINI = "gemini"


_API_KEY_ENV = {
    ProviderType.ANTHROPIC: ("ANTHROPIC_API_KEY",),
    ProviderType.OPENAI: ("OPENAI_API_KEY",),
    # Vertex AI authenticates with ADC; a key is accepted but not required.
    ProviderType.GEMINI: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


def parse_provider_type(raw: Union[str, ProviderType]) -> ProviderType:
    if isinstance(raw, ProviderType):
        return raw
    try:
        return ProviderType(str(raw or "").strip().lower())
    except ValueError:
        raise ValueError(f"Unknown provider: {raw}") from None


def default_api_key(provider: ProviderType) -> Optional[str]:
    for name in _API_KEY_ENV[provider] + ("AI_API_KEY",):
        val = (os.getenv(name) or "").strip()
        if val:
            return val
    return None


def create_provider(
    provider: Union[str, ProviderType],
    model_id: Optional[str] = None,
    api_key: Optional[str] = None,
    *,
    chat_model: Any = None,
) -> Provider:
    ptype = parse_provider_type(provider)
    key = api_key or default_api_key(ptype)
    if ptype == ProviderType.ANTHROPIC:
        return AnthropicProvider(model_id, key, chat_model=chat_model)
    if ptype == ProviderType.OPENAI:
        return OpenAIProvider(model_id, key, chat_model=chat_model)
    return GeminiProvider(model_id, key, chat_model=chat_model)
