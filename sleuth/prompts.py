from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sleuth.mcp.adapter import qualified_name
from sleuth.mcp.types import McpServerConfig
from sleuth.tools.base import Tool


@dataclass(frozen=True)
class SessionContext:
    """What the caller knows about the environment under investigation."""

    repository_owner: str = ""
    repository_name: str = ""
    branch: Optional[str] = None
    namespace: Optional[str] = None
    build_id: Optional[str] = None
    lifecycle_yaml: Optional[str] = None

    @property
    def repository(self) -> Optional[str]:
        if self.repository_owner and self.repository_name:
            return f"{self.repository_owner}/{self.repository_name}"
        return None


@dataclass(frozen=True)
class McpToolInfoLine:
    server_name: str
    qualified_name: str
    description: str


def mcp_tool_infos(servers: List[McpServerConfig]) -> List[McpToolInfoLine]:
    out: List[McpToolInfoLine] = []
    for s in servers:
        for t in s.cached_tools:
            out.append(
                McpToolInfoLine(
                    server_name=s.name or s.slug,
                    qualified_name=qualified_name(s.slug, t.name),
                    description=t.description or t.name,
                )
            )
    return out


_ROLE = (
    "You are Sleuth, a senior SRE investigating a broken ephemeral deployment environment.\n"
    "Work from evidence: inspect cluster state, pod logs, repository files and deployment records with the "
    "tools below before drawing conclusions. Do not guess resource names; discover them.\n"
)

_INVESTIGATE_RULES = (
    "Mode: INVESTIGATE (read-only).\n"
    "- You cannot modify files or cluster resources. Recommend fixes instead.\n"
    "- Do not call the same tool with the same arguments twice; reuse earlier results.\n"
)

_FIX_RULES = (
    "Mode: FIX.\n"
    "- Only change the files and services named in the approved fix scope.\n"
    "- Read a file before updating it and send the complete new content.\n"
    "- Every change needs a short, specific commit message.\n"
)

_OUTPUT_RULES = (
    "When the investigation is complete, reply with a short sentence followed by one fenced ```json block "
    'whose object has a "type" key ("investigation_complete" or "fix_applied"), a "summary", and a '
    '"findings" list. Otherwise answer in plain prose.\n'
)


@dataclass
class PromptBuilder:
    mode: str = "investigate"
    additive_rules: List[str] = field(default_factory=list)
    system_prompt_override: Optional[str] = None
    excluded_file_patterns: List[str] = field(default_factory=list)

    def build(
        self,
        tools: List[Tool],
        context: Optional[SessionContext] = None,
        mcp_tools: Optional[List[McpToolInfoLine]] = None,
    ) -> str:
        if self.system_prompt_override:
            base = self.system_prompt_override.strip() + "\n"
        else:
            base = _ROLE + "\n" + (_FIX_RULES if self.mode == "fix" else _INVESTIGATE_RULES) + "\n" + _OUTPUT_RULES

        sections = [base]

        ctx = context or SessionContext()
        ctx_lines = []
        if ctx.repository:
            ctx_lines.append(f"- repository: {ctx.repository}")
        if ctx.branch:
            ctx_lines.append(f"- branch: {ctx.branch}")
        if ctx.namespace:
            ctx_lines.append(f"- namespace: {ctx.namespace}")
        if ctx.build_id:
            ctx_lines.append(f"- build: {ctx.build_id}")
        if ctx_lines:
            sections.append("Environment:\n" + "\n".join(ctx_lines) + "\n")

        if tools:
            lines = [f"- {t.name} [{t.safety_level.value}]: {t.description}" for t in tools]
            sections.append("Available tools:\n" + "\n".join(lines) + "\n")

        if mcp_tools:
            lines = [f"- {m.qualified_name} ({m.server_name}): {m.description}" for m in mcp_tools]
            sections.append("External tools:\n" + "\n".join(lines) + "\n")

        if self.excluded_file_patterns:
            sections.append(
                "Files matching these patterns are off limits: " + ", ".join(self.excluded_file_patterns) + "\n"
            )

        if self.additive_rules:
            sections.append("Additional rules:\n" + "\n".join(f"- {r}" for r in self.additive_rules) + "\n")

        return "\n".join(sections).strip() + "\n"
