"""
Fix-mode authorization for mutating tools.

In fix mode the caller selects one concrete problem to fix (a `FixTargetScope`). Every
DANGEROUS tool call is checked against that scope before it runs:
- file writes need the `file_write` capability and, when the scope names files, a path in it
- Kubernetes patches need `k8s_patch` and must target the scoped service
- PR label changes need `pr_label_write`
- any other DANGEROUS tool is denied

No scope means deny. Investigate mode never reaches this gate: write tools are not
registered there at all.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from sleuth.core.models import ToolResult
from sleuth.tools.base import SafetyLevel, Tool

logger = logging.getLogger(__name__)

FILE_WRITE = "file_write"
PR_LABEL_WRITE = "pr_label_write"
K8S_PATCH = "k8s_patch"

_SINGLE_LINE_FIX_RE = re.compile(r"from '([^']+)' to '([^']+)' in ([\w/.+-]+\.\w+)", re.IGNORECASE)
_PR_LABEL_MUTATION_RE = re.compile(r"\b(add|apply|set|remove|update|edit)\b", re.IGNORECASE)
_PR_CONTEXT_RE = re.compile(r"\b(pr|pull[\s-]?request)\b", re.IGNORECASE)
_LABEL_RE = re.compile(r"\blabels?\b", re.IGNORECASE)

_FILE_WRITE_VERB_RE = re.compile(r"\b(update|edit|modify|write|create|commit|patch|replace)\b")
_FILE_RE = re.compile(r"\bfile\b")
_TOOL_LABEL_CONTEXT_RE = re.compile(r"\b(pr|pull[\s_-]?request|issue)\b")
_TOOL_LABEL_VERB_RE = re.compile(r"\b(add|set|remove|update|edit|patch|apply)\b")
_K8S_RE = re.compile(r"\b(k8s|kubernetes)\b")
_K8S_VERB_RE = re.compile(r"\b(patch|apply|update|edit|scale|restart)\b")


class FixTargetScope(BaseModel):
    """What the user chose to fix. Accepts the camelCase hint names used by the UI."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    service_name: Optional[str] = Field(default=None, alias="serviceName")
    suggested_fix: Optional[str] = Field(default=None, alias="suggestedFix")
    file_path: Optional[str] = Field(default=None, alias="filePath")
    files: List[Dict[str, Any]] = Field(default_factory=list)
    auto_fix_action: Optional[str] = Field(default=None, alias="autoFixAction")
    action_type: Optional[str] = Field(default=None, alias="actionType")
    fix_type: Optional[str] = Field(default=None, alias="fixType")
    tool: Optional[str] = None
    tool_name: Optional[str] = Field(default=None, alias="toolName")

    def allowed_paths(self) -> Set[str]:
        paths: Set[str] = set()
        if self.file_path and self.file_path.strip():
            paths.add(self.file_path.strip().lower())
        for f in self.files:
            p = f.get("path") if isinstance(f, dict) else None
            if isinstance(p, str) and p.strip():
                paths.add(p.strip().lower())
        return paths

    def capabilities(self) -> Set[str]:
        caps: Set[str] = set()
        hints = " ".join(
            h.strip()
            for h in (self.auto_fix_action, self.action_type, self.fix_type, self.tool, self.tool_name)
            if isinstance(h, str) and h.strip()
        ).lower()

        if "label" in hints and ("pr" in hints or "pull" in hints):
            caps.add(PR_LABEL_WRITE)
        if "patch_k8s" in hints or ("patch" in hints and ("k8s" in hints or "kubernetes" in hints)):
            caps.add(K8S_PATCH)
        if any(h in hints for h in ("update_file", "commit_lifecycle_fix", "file", "config")):
            caps.add(FILE_WRITE)

        if self.allowed_paths():
            caps.add(FILE_WRITE)
        fix = self.suggested_fix or ""
        if fix and _SINGLE_LINE_FIX_RE.search(fix):
            caps.add(FILE_WRITE)
        if fix and _PR_LABEL_MUTATION_RE.search(fix) and _LABEL_RE.search(fix) and _PR_CONTEXT_RE.search(fix):
            caps.add(PR_LABEL_WRITE)
        return caps


def derive_scope(hints: Dict[str, Any]) -> FixTargetScope:
    return FixTargetScope.model_validate(hints or {})


def _tool_text(tool: Tool) -> str:
    return f"{tool.name} {tool.description}".lower()


def is_file_write_tool(tool: Tool) -> bool:
    text = _tool_text(tool)
    if any(k in text for k in ("update_file", "commit_lifecycle_fix", "write_file", "edit_file", "modify_file")):
        return True
    return bool(_FILE_WRITE_VERB_RE.search(text) and _FILE_RE.search(text))


def is_pr_label_write_tool(tool: Tool) -> bool:
    text = _tool_text(tool)
    return bool(_LABEL_RE.search(text) and _TOOL_LABEL_CONTEXT_RE.search(text) and _TOOL_LABEL_VERB_RE.search(text))


def is_k8s_patch_tool(tool: Tool) -> bool:
    text = _tool_text(tool)
    if "patch_k8s_resource" in text:
        return True
    return bool(_K8S_RE.search(text) and _K8S_VERB_RE.search(text))


def _requested_path(args: Dict[str, Any]) -> Optional[str]:
    for key in ("file_path", "path"):
        v = args.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip().lower()
    return None


def _requested_service(args: Dict[str, Any]) -> Optional[str]:
    for key in ("service", "service_name", "deployment", "name"):
        v = args.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip().lower()
    return None


def _service_matches(requested: str, service: str) -> bool:
    s = service.strip().lower()
    # Workload names in ephemeral environments carry a generated suffix (svc-abc123).
    return requested == s or requested.startswith(s + "-")


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: Optional[str] = None


class FixTargetAuthorizer:
    def __init__(self, mode: str = "investigate") -> None:
        self.mode = mode

    def check(self, tool: Tool, args: Dict[str, Any], scope: Optional[FixTargetScope]) -> AuthorizationDecision:
        if self.mode != "fix" or tool.safety_level != SafetyLevel.DANGEROUS:
            return AuthorizationDecision(True)
        if scope is None:
            return AuthorizationDecision(False, f"Blocked {tool.name}: no fix target selected")

        caps = scope.capabilities()
        target = scope.service_name or "selected service"
        args = args or {}

        if is_file_write_tool(tool):
            if FILE_WRITE not in caps:
                return AuthorizationDecision(
                    False, f'Blocked {tool.name}: fix target "{target}" does not allow file edits'
                )
            allowed = scope.allowed_paths()
            if allowed:
                requested = _requested_path(args)
                if not requested or requested not in allowed:
                    return AuthorizationDecision(
                        False, f"Blocked {tool.name}: file path is outside the selected fix target scope"
                    )
            return AuthorizationDecision(True)

        if is_pr_label_write_tool(tool):
            if PR_LABEL_WRITE not in caps:
                return AuthorizationDecision(
                    False, f"Blocked {tool.name}: selected fix target does not allow PR label changes"
                )
            return AuthorizationDecision(True)

        if is_k8s_patch_tool(tool):
            if K8S_PATCH not in caps:
                return AuthorizationDecision(
                    False, f"Blocked {tool.name}: selected fix target does not allow Kubernetes patching"
                )
            requested = _requested_service(args)
            if scope.service_name and (not requested or not _service_matches(requested, scope.service_name)):
                return AuthorizationDecision(
                    False, f'Blocked {tool.name}: resource is outside fix target "{scope.service_name}"'
                )
            return AuthorizationDecision(True)

        return AuthorizationDecision(
            False, f"Blocked {tool.name}: mutating tool is outside the selected fix target scope"
        )

    def authorize(self, tool: Tool, args: Dict[str, Any], scope: Optional[FixTargetScope]) -> Optional[ToolResult]:
        """Return None when the call may proceed, else an AUTHORIZATION_DENIED failure."""
        decision = self.check(tool, args, scope)
        if decision.allowed:
            return None
        logger.warning("authz: denied tool=%s reason=%s", tool.name, decision.reason)
        return ToolResult.fail(
            decision.reason or f"Blocked {tool.name}",
            "AUTHORIZATION_DENIED",
            recoverable=True,
            suggested_action="Stay within the selected fix target, or ask the user to widen it.",
        )
