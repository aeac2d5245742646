from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _split_csv(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


@dataclass(frozen=True)
class AgentConfig:
    provider: str = "anthropic"
    model: Optional[str] = None
    mode: str = "investigate"

    # Loop protection
    max_iterations: int = 20
    max_tool_calls: int = 50
    max_repeated_calls: int = 1
    retry_budget: int = 10

    # Tool execution
    tool_timeout_seconds: int = 30
    tool_output_max_chars: int = 30000
    require_tool_confirmation: bool = True
    excluded_tools: List[str] = field(default_factory=list)
    excluded_file_patterns: List[str] = field(default_factory=list)

    # Observation masking
    mask_token_threshold: int = 25000
    mask_recency_window: int = 3

    # Conversation compression
    compression_threshold: int = 80000

    # Storage / cache
    redis_url: Optional[str] = None
    conversation_ttl_seconds: int = 3600
    cache_max_entries: int = 512
    cache_ttl_seconds: int = 300
    database_url: Optional[str] = None


def load_agent_config() -> AgentConfig:
    """
    Load agent runtime config from env (ConfigMap/Secret friendly).

    Recommended vars:
    - AI_PROVIDER=anthropic|openai|gemini
    - AI_MODEL=claude-sonnet-4-5-20250929
    - AI_MODE=investigate|fix
    - AI_MAX_ITERATIONS=20
    - AI_MAX_TOOL_CALLS=50
    - AI_TOOL_TIMEOUT_SECONDS=30
    - AI_REQUIRE_TOOL_CONFIRMATION=1
    - AI_MASK_TOKEN_THRESHOLD=25000
    - AI_MASK_RECENCY_WINDOW=3
    - AI_COMPRESSION_THRESHOLD=80000
    - AI_EXCLUDED_TOOLS=update_file,patch_k8s_resource
    - AI_EXCLUDED_FILE_PATTERNS=**/*.pem,secrets/**
    - REDIS_URL=redis://localhost:6379/0
    - DATABASE_URL=postgresql://readonly@db/app
    """
    provider = (os.getenv("AI_PROVIDER") or "").strip().lower() or "anthropic"
    mode = (os.getenv("AI_MODE") or "").strip().lower() or "investigate"
    if mode not in ("investigate", "fix"):
        mode = "investigate"

    return AgentConfig(
        provider=provider,
        model=(os.getenv("AI_MODEL") or "").strip() or None,
        mode=mode,
        max_iterations=max(1, min(_env_int("AI_MAX_ITERATIONS", 20), 50)),
        max_tool_calls=max(1, min(_env_int("AI_MAX_TOOL_CALLS", 50), 200)),
        max_repeated_calls=max(1, min(_env_int("AI_MAX_REPEATED_CALLS", 1), 10)),
        retry_budget=max(0, min(_env_int("AI_RETRY_BUDGET", 10), 100)),
        tool_timeout_seconds=max(1, min(_env_int("AI_TOOL_TIMEOUT_SECONDS", 30), 300)),
        tool_output_max_chars=max(1000, min(_env_int("AI_TOOL_OUTPUT_MAX_CHARS", 30000), 200000)),
        require_tool_confirmation=_env_bool("AI_REQUIRE_TOOL_CONFIRMATION", True),
        excluded_tools=_split_csv(os.getenv("AI_EXCLUDED_TOOLS", "")),
        excluded_file_patterns=_split_csv(os.getenv("AI_EXCLUDED_FILE_PATTERNS", "")),
        mask_token_threshold=max(1, _env_int("AI_MASK_TOKEN_THRESHOLD", 25000)),
        mask_recency_window=max(0, min(_env_int("AI_MASK_RECENCY_WINDOW", 3), 50)),
        compression_threshold=max(1000, _env_int("AI_COMPRESSION_THRESHOLD", 80000)),
        redis_url=(os.getenv("REDIS_URL") or "").strip() or None,
        conversation_ttl_seconds=max(60, min(_env_int("AI_CONVERSATION_TTL_SECONDS", 3600), 7 * 24 * 3600)),
        cache_max_entries=max(16, min(_env_int("AI_CACHE_MAX_ENTRIES", 512), 100000)),
        cache_ttl_seconds=max(1, min(_env_int("AI_CACHE_TTL_SECONDS", 300), 24 * 3600)),
        database_url=(os.getenv("DATABASE_URL") or "").strip() or (os.getenv("POSTGRES_DSN") or "").strip() or None,
    )
