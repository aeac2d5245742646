"""
Pytest config.

Local imports like `import sleuth` rely on the repo root being on sys.path. When invoking a
global `pytest` entrypoint that doesn't happen reliably during collection, so we pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


@pytest.fixture(autouse=True)
def _clear_agent_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Unit tests never pick up a developer's AI_* / provider settings."""
    for key in (
        "AI_PROVIDER",
        "AI_MODEL",
        "AI_MODE",
        "AI_MAX_ITERATIONS",
        "AI_MAX_TOOL_CALLS",
        "AI_EXCLUDED_TOOLS",
        "AI_EXCLUDED_FILE_PATTERNS",
        "AI_REQUIRE_TOOL_CONFIRMATION",
        "REDIS_URL",
        "DATABASE_URL",
        "POSTGRES_DSN",
        "LANGSMITH_TRACING",
        "LANGCHAIN_TRACING_V2",
    ):
        monkeypatch.delenv(key, raising=False)
