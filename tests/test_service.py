"""
Unit tests for AgentService turns, tool selection and prompt building.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from sleuth.config import AgentConfig
from sleuth.core.cancel import CancelToken
from sleuth.core.context import AgentContext
from sleuth.core.models import ToolResult, text_message
from sleuth.llm.providers.base import Provider, StreamChunk
from sleuth.mcp.types import McpServerConfig, McpToolInfo
from sleuth.prompts import PromptBuilder, SessionContext
from sleuth.service import AgentError, AgentService, builtin_tools
from sleuth.streaming.events import EventSink
from sleuth.tools.base import BaseTool, SafetyLevel
from sleuth.tools.database import DatabaseClient
from sleuth.tools.github import GitHubClient


class HTTPStatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ScriptedProvider(Provider):
    name = "fake"
    default_model = "fake-1"

    def __init__(self, scripts: List[List[Any]]) -> None:
        super().__init__()
        self.scripts = list(scripts)
        self.seen: List[Any] = []
        self.prompts: List[str] = []

    def _build_chat_model(self) -> Any:
        return None

    async def stream_completion(self, messages, *, system_prompt, tools=None, cancel=None):
        self.seen.append(list(messages))
        self.prompts.append(system_prompt)
        for item in self.scripts.pop(0) if self.scripts else [StreamChunk(type="text", content="done")]:
            if isinstance(item, BaseException):
                raise item
            yield item


class NoopTool(BaseTool):
    name = "noop"
    description = "Does nothing"
    safety_level = SafetyLevel.SAFE

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        return ToolResult.ok("nothing")


class DoneSink(EventSink):
    def __init__(self) -> None:
        self.done: List[Dict[str, Any]] = []
        self.errors: List[Any] = []

    def on_done(self, summary: Dict[str, Any]) -> None:
        self.done.append(summary)

    def on_error(self, error: Any) -> None:
        self.errors.append(error)


def _reply(text: str) -> List[Any]:
    return [StreamChunk(type="text", content=text)]


def _github() -> GitHubClient:
    return GitHubClient(app_id="1", private_key="key", installation_id="1", session=object())


def _service(provider: Provider, **kw: Any) -> AgentService:
    kw.setdefault("tools", [NoopTool()])
    return AgentService(
        AgentContext(AgentConfig()),
        provider=provider,
        github=_github(),
        database=DatabaseClient(None),
        **kw,
    )


def _server(**kw: Any) -> McpServerConfig:
    base = {"slug": "docs", "name": "Docs", "url": "https://mcp.example.com/mcp"}
    base.update(kw)
    return McpServerConfig(**base)


@pytest.mark.asyncio
async def test_turn_persists_history_and_reports_done() -> None:
    provider = ScriptedProvider([_reply("First answer."), _reply("Second answer.")])
    svc = _service(provider)
    sink = DoneSink()

    out = await svc.process_query("s1", "why is api down?", sink)
    assert out["response"] == "First answer."
    assert out["is_json"] is False
    assert out["metrics"]["iterations"] == 1
    assert len(sink.done) == 1

    await svc.process_query("s1", "and now?", sink)
    second = provider.seen[1]
    assert [m.role for m in second] == ["user", "assistant", "user"]
    assert second[1].parts[0].content == "First answer."
    assert second[2].parts[0].content == "and now?"

    stored = await svc.store.load("s1")
    assert len(stored) == 4


@pytest.mark.asyncio
async def test_provider_failure_raises_agent_error() -> None:
    provider = ScriptedProvider([[HTTPStatusError("invalid api key", 401)]])
    svc = _service(provider)
    sink = DoneSink()

    with pytest.raises(AgentError) as exc:
        await svc.process_query("s1", "hello", sink)

    assert exc.value.code == "auth"
    assert exc.value.retryable is False
    assert len(sink.errors) == 1
    assert sink.done == []
    assert await svc.store.load("s1") == []


@pytest.mark.asyncio
async def test_cancelled_turn_is_not_stored() -> None:
    token = CancelToken()
    token.cancel()
    svc = _service(ScriptedProvider([_reply("unused")]))
    sink = DoneSink()

    out = await svc.process_query("s1", "hello", sink, token)

    assert out["response"] == "Operation cancelled by user"
    assert sink.done == []
    assert await svc.store.load("s1") == []


@pytest.mark.asyncio
async def test_session_context_fences_github_writes() -> None:
    provider = ScriptedProvider([_reply("ok")])
    svc = _service(provider)
    session = SessionContext(
        repository_owner="acme",
        repository_name="shop",
        branch="feature/login",
        namespace="env-1",
        lifecycle_yaml="services:\n  - dockerfilePath: docker/api.Dockerfile\n",
    )

    await svc.process_query("s1", "check the build", DoneSink(), session=session)

    assert svc.github.allowed_branch == "feature/login"
    assert svc.github.is_path_allowed("docker/api.dockerfile", "write")
    prompt = provider.prompts[0]
    assert "- repository: acme/shop" in prompt
    assert "- namespace: env-1" in prompt
    assert "- noop [SAFE]: Does nothing" in prompt


@pytest.mark.asyncio
async def test_mcp_tools_are_registered_once() -> None:
    server = _server(cached_tools=[McpToolInfo(name="search", description="Search docs")])
    provider = ScriptedProvider([_reply("a"), _reply("b")])
    svc = _service(provider, mcp_servers=[server])

    await svc.process_query("s1", "q1", DoneSink())
    await svc.process_query("s1", "q2", DoneSink())

    assert svc.registry.names().count("mcp__docs__search") == 1
    assert "- mcp__docs__search (Docs): Search docs" in provider.prompts[0]


@pytest.mark.asyncio
async def test_broken_mcp_server_does_not_fail_the_turn() -> None:
    provider = ScriptedProvider([_reply("still works")])
    svc = _service(provider, mcp_servers=[_server(slug="Bad Slug")])

    out = await svc.process_query("s1", "hello", DoneSink())

    assert out["response"] == "still works"
    assert svc.registry.names() == ["noop"]


class SummarizingProvider(ScriptedProvider):
    def __init__(self, scripts: List[List[Any]], summary: str) -> None:
        super().__init__(scripts)
        self.summary = summary
        self.summaries = 0

    async def complete(self, messages, *, system_prompt, cancel=None) -> str:
        self.summaries += 1
        return self.summary


def _small_threshold_service(provider: Provider) -> AgentService:
    return AgentService(
        AgentContext(AgentConfig(compression_threshold=100)),
        provider=provider,
        github=_github(),
        database=DatabaseClient(None),
        tools=[NoopTool()],
    )


@pytest.mark.asyncio
async def test_oversized_history_is_compressed_before_the_turn() -> None:
    summary = '{"summary": "api pods OOMKilled", "investigated_services": ["api"], "current_task": "limits"}'
    provider = SummarizingProvider([_reply("Raise the memory limit.")], summary)
    svc = _small_threshold_service(provider)
    await svc.store.append("s1", [text_message("user", "why?"), text_message("assistant", "y" * 800)])

    out = await svc.process_query("s1", "what should I change?", DoneSink())

    assert out["response"] == "Raise the memory limit."
    assert provider.summaries == 1
    sent = provider.seen[0]
    assert [m.role for m in sent] == ["user", "user"]
    assert "api pods OOMKilled" in sent[0].parts[0].content
    assert sent[1].parts[0].content == "what should I change?"

    stored = await svc.store.load("s1")
    assert [m.role for m in stored] == ["user", "user", "assistant"]
    assert stored[0].parts[0].content.startswith("# Conversation Context (Compressed)")


@pytest.mark.asyncio
async def test_failed_compression_runs_the_turn_uncompressed() -> None:
    provider = SummarizingProvider([_reply("ok")], "not json")
    svc = _small_threshold_service(provider)
    await svc.store.append("s1", [text_message("user", "why?"), text_message("assistant", "y" * 800)])

    out = await svc.process_query("s1", "again", DoneSink())

    assert out["response"] == "ok"
    assert [m.role for m in provider.seen[0]] == ["user", "assistant", "user"]
    assert len(await svc.store.load("s1")) == 4


def test_builtin_tools_by_mode() -> None:
    db = DatabaseClient(None)
    investigate = {t.name for t in builtin_tools("investigate", github=_github(), database=db)}
    fix = {t.name for t in builtin_tools("fix", github=_github(), database=db)}

    assert "update_file" not in investigate
    assert "patch_k8s_resource" not in investigate
    assert {"get_file", "list_directory", "get_k8s_resources", "get_pod_logs", "query_database"} <= investigate
    assert fix - investigate == {"update_file", "patch_k8s_resource", "update_pr_labels"}
    assert "get_issue_comment" in investigate

    trimmed = {t.name for t in builtin_tools("fix", github=_github(), database=db, excluded=["query_database"])}
    assert "query_database" not in trimmed


def test_prompt_builder_modes_and_override() -> None:
    fix = PromptBuilder(mode="fix", additive_rules=["Never touch prod"], excluded_file_patterns=["**/.env"])
    text = fix.build([NoopTool()], SessionContext(branch="feature/x"))
    assert "Mode: FIX." in text
    assert "- branch: feature/x" in text
    assert "- Never touch prod" in text
    assert "off limits: **/.env" in text

    assert "Mode: INVESTIGATE" in PromptBuilder().build([])

    custom = PromptBuilder(system_prompt_override="You are a test bot.").build([])
    assert custom.startswith("You are a test bot.")
    assert "Mode:" not in custom
