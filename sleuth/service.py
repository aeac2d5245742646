"""
Turn entry point.

`AgentService` is built once per agent session (provider + mode + tool set) and serves any
number of turns through `process_query`. Per turn it:

1. loads remote (MCP) tools the first time it runs, never failing the turn if that breaks
2. fences GitHub writes to the session branch and the files its lifecycle config references
3. loads text history, masks stale observations, compresses an oversized history into a
   summary, builds the system prompt
4. runs the orchestrator and persists `user message + assistant response` on success

A classified provider failure reaches the sink through `on_error` first and is then raised
as `AgentError`.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from sleuth.authz.policy import FixTargetAuthorizer, FixTargetScope
from sleuth.config import AgentConfig
from sleuth.conversation.manager import ConversationManager
from sleuth.conversation.store import ConversationStore
from sleuth.core.cancel import CancelToken, OperationCancelled
from sleuth.core.context import AgentContext
from sleuth.core.models import Message, extract_text, text_message
from sleuth.llm.errors import ClassifiedError
from sleuth.llm.providers.base import Provider
from sleuth.llm.providers.factory import create_provider
from sleuth.mcp.adapter import create_mcp_tools
from sleuth.mcp.config import refresh_cached_tools
from sleuth.mcp.types import McpServerConfig
from sleuth.orchestration.masker import MaskingPolicy, mask_observations
from sleuth.orchestration.orchestrator import AgentOrchestrator, OrchestrationResult
from sleuth.orchestration.safety import ToolSafetyManager
from sleuth.prompts import McpToolInfoLine, PromptBuilder, SessionContext, mcp_tool_infos
from sleuth.streaming.events import EventSink
from sleuth.tools.base import Tool
from sleuth.tools.database import DatabaseClient, QueryDatabaseTool
from sleuth.tools.github import GitHubClient, extract_referenced_files, github_tools
from sleuth.tools.k8s import k8s_tools
from sleuth.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

WRITE_TOOLS = ("update_file", "patch_k8s_resource", "update_pr_labels")


class AgentError(Exception):
    """A turn failed at the provider level; `classified` carries code, message and retry hints."""

    def __init__(self, classified: ClassifiedError) -> None:
        super().__init__(classified.user_message)
        self.classified = classified

    @property
    def code(self) -> str:
        return self.classified.category.value

    @property
    def retryable(self) -> bool:
        return self.classified.retryable


def builtin_tools(
    mode: str,
    *,
    github: GitHubClient,
    database: DatabaseClient,
    excluded: Optional[List[str]] = None,
) -> List[Tool]:
    tools: List[Tool] = [*k8s_tools(), QueryDatabaseTool(database), *github_tools(github)]
    if mode != "fix":
        tools = [t for t in tools if t.name not in WRITE_TOOLS]
    skip = set(excluded or [])
    return [t for t in tools if t.name not in skip]


class AgentService:
    def __init__(
        self,
        context: Optional[AgentContext] = None,
        *,
        provider: Optional[Provider] = None,
        mode: Optional[str] = None,
        additive_rules: Optional[List[str]] = None,
        system_prompt_override: Optional[str] = None,
        mcp_servers: Optional[List[McpServerConfig]] = None,
        github: Optional[GitHubClient] = None,
        database: Optional[DatabaseClient] = None,
        store: Optional[ConversationStore] = None,
        tools: Optional[List[Tool]] = None,
    ) -> None:
        self.context = context or AgentContext()
        cfg: AgentConfig = self.context.config
        self.config = cfg
        self.mode = mode or cfg.mode
        self.provider = provider or create_provider(cfg.provider, cfg.model)
        self.github = github or GitHubClient()
        self.github.set_excluded_patterns(cfg.excluded_file_patterns)
        self.database = database or DatabaseClient(cfg.database_url)
        self.store = store or ConversationStore(self.context.redis, ttl_seconds=cfg.conversation_ttl_seconds)
        self.conversation = ConversationManager(cfg.compression_threshold)

        self.registry = ToolRegistry()
        if tools is None:
            tools = builtin_tools(self.mode, github=self.github, database=self.database, excluded=cfg.excluded_tools)
        self.registry.register_many(tools)

        self.prompt_builder = PromptBuilder(
            mode=self.mode,
            additive_rules=list(additive_rules or []),
            system_prompt_override=system_prompt_override,
            excluded_file_patterns=list(cfg.excluded_file_patterns),
        )
        self.safety = ToolSafetyManager(
            self.registry,
            require_confirmation=cfg.require_tool_confirmation,
            timeout_seconds=cfg.tool_timeout_seconds,
            output_max_chars=cfg.tool_output_max_chars,
            authorizer=FixTargetAuthorizer(self.mode),
        )
        self.masking_policy = MaskingPolicy(
            token_threshold=cfg.mask_token_threshold, recency_window=cfg.mask_recency_window
        )

        self._mcp_servers = list(mcp_servers or [])
        self._mcp_loaded = False
        self._mcp_infos: List[McpToolInfoLine] = []

    @property
    def provider_name(self) -> str:
        return self.provider.name

    async def load_mcp_tools(self) -> None:
        """Register remote tools once per service; any failure leaves only built-in tools."""
        if self._mcp_loaded:
            return
        self._mcp_loaded = True
        if not self._mcp_servers:
            return
        excluded = set(self.config.excluded_tools)
        try:
            servers: List[McpServerConfig] = []
            for server in self._mcp_servers:
                try:
                    servers.append(await refresh_cached_tools(server, self.context))
                except Exception as e:
                    logger.warning("service: mcp server skipped slug=%s error=%s", server.slug, e)
            added = 0
            for tool in create_mcp_tools(servers):
                if tool.name in excluded or self.registry.get(tool.name) is not None:
                    continue
                self.registry.register(tool)
                added += 1
            self._mcp_infos = [i for i in mcp_tool_infos(servers) if i.qualified_name not in excluded]
            if added:
                logger.info("service: registered mcp tools count=%s servers=%s", added, len(servers))
        except Exception as e:
            logger.warning("service: mcp tool resolution failed, continuing with built-in tools error=%s", e)

    def _prepare_github(self, session: SessionContext) -> None:
        if session.branch:
            self.github.set_allowed_branch(session.branch)
        if session.lifecycle_yaml:
            self.github.set_referenced_files(extract_referenced_files(session.lifecycle_yaml))

    async def _history(self, session_id: str) -> List[Message]:
        stored = await self.store.load(session_id)
        history = [
            text_message(m.role, extract_text(m.parts))
            for m in stored
            if m.role in ("user", "assistant") and extract_text(m.parts)
        ]
        masked = mask_observations(history, self.masking_policy)
        if masked.masked:
            logger.info(
                "service: observation masking applied masked_parts=%s saved_tokens=%s session=%s",
                masked.stats.masked_parts,
                masked.stats.saved_tokens,
                session_id,
            )
        return masked.messages

    async def _compress(self, session_id: str, messages: List[Message], cancel: CancelToken) -> List[Message]:
        """Swap an oversized history for a summary; on any failure the turn runs uncompressed."""
        try:
            compacted = await self.conversation.compact(messages, self.provider, session_id=session_id, cancel=cancel)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning("service: conversation compression failed, continuing uncompressed error=%s", e)
            return messages
        if compacted is None:
            return messages
        # The stored history becomes the summary; this turn's exchange is appended on success.
        await self.store.replace(session_id, compacted[:-1])
        return compacted

    def new_orchestrator(self) -> AgentOrchestrator:
        cfg = self.config
        return AgentOrchestrator(
            self.registry,
            self.safety,
            max_iterations=cfg.max_iterations,
            max_tool_calls=cfg.max_tool_calls,
            max_repeated_calls=cfg.max_repeated_calls,
            retry_budget=cfg.retry_budget,
            masking_policy=self.masking_policy,
            breaker=self.context.breaker_for(self.provider.name),
        )

    async def process_query(
        self,
        session_id: str,
        user_message: str,
        sink: EventSink,
        cancel: Optional[CancelToken] = None,
        scope: Optional[FixTargetScope] = None,
        *,
        session: Optional[SessionContext] = None,
    ) -> Dict[str, Any]:
        start = time.monotonic()
        tok = cancel or CancelToken()
        ctx = session or SessionContext()

        await self.load_mcp_tools()
        self._prepare_github(ctx)

        messages = await self._history(session_id)
        messages.append(text_message("user", user_message))
        messages = await self._compress(session_id, messages, tok)
        system_prompt = self.prompt_builder.build(self.registry.get_all(), ctx, self._mcp_infos)

        result: OrchestrationResult = await self.new_orchestrator().run(
            self.provider, system_prompt, messages, sink, tok, scope=scope
        )
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "service: query %s iterations=%s tool_calls=%s duration=%sms is_json=%s session=%s",
            "completed" if result.success else "failed",
            result.metrics.iterations,
            result.metrics.tool_calls,
            duration_ms,
            result.is_json,
            session_id,
        )

        if not result.success and result.classified_error is not None:
            raise AgentError(result.classified_error)

        response = result.response or result.error or ""
        if result.success:
            await self.store.append(
                session_id, [text_message("user", user_message), text_message("assistant", response)]
            )
            if not tok.cancelled:
                sink.on_done({"metrics": result.metrics.to_dict(), "is_json": result.is_json})

        return {
            "response": response,
            "is_json": result.is_json,
            "preamble": result.preamble,
            "metrics": result.metrics.to_dict(),
        }
