"""
Derive referenceable evidence (files, commits, cluster resources) from tool results.

Both entry points are best-effort: any internal failure yields no evidence / no preview.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel

from sleuth.core.models import ToolResult

logger = logging.getLogger(__name__)

_EXTENSION_LANGUAGE = {
    "ts": "typescript",
    "tsx": "typescriptreact",
    "js": "javascript",
    "jsx": "javascriptreact",
    "py": "python",
    "go": "go",
    "yaml": "yaml",
    "yml": "yaml",
    "json": "json",
    "md": "markdown",
    "rs": "rust",
    "rb": "ruby",
    "java": "java",
    "sh": "shell",
    "css": "css",
    "html": "html",
    "dockerfile": "dockerfile",
}

_K8S_TOOLS = ("get_k8s_resources", "patch_k8s_resource")


class FileEvidence(BaseModel):
    type: Literal["evidence_file"] = "evidence_file"
    tool_call_id: str = ""
    file_path: str
    repository: str
    branch: Optional[str] = None
    language: Optional[str] = None


class CommitEvidence(BaseModel):
    type: Literal["evidence_commit"] = "evidence_commit"
    tool_call_id: str = ""
    commit_url: str
    commit_sha: str
    commit_message: str = ""
    file_paths: List[str] = []


class ResourceEvidence(BaseModel):
    type: Literal["evidence_resource"] = "evidence_resource"
    tool_call_id: str = ""
    resource_type: str
    resource_name: str
    namespace: str
    status: Optional[str] = None


EvidenceEvent = Union[FileEvidence, CommitEvidence, ResourceEvidence]


def infer_language(file_path: str) -> Optional[str]:
    if "." not in file_path:
        return None
    return _EXTENSION_LANGUAGE.get(file_path.rsplit(".", 1)[-1].lower())


def _parse(content: Optional[str]) -> Optional[Dict[str, Any]]:
    if not content:
        return None
    try:
        obj = json.loads(content)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _repo(args: Dict[str, Any]) -> str:
    return f"{args.get('repository_owner') or ''}/{args.get('repository_name') or ''}"


def _branch(args: Dict[str, Any]) -> Optional[str]:
    b = args.get("branch")
    return str(b) if b else None


def _extract(tool_name: str, args: Dict[str, Any], result: ToolResult, tool_call_id: str) -> List[EvidenceEvent]:
    if tool_name == "get_file":
        parsed = _parse(result.agent_content) or {}
        path = str(parsed.get("path") or args.get("file_path") or "")
        return [
            FileEvidence(
                tool_call_id=tool_call_id,
                file_path=path,
                repository=_repo(args),
                branch=_branch(args),
                language=infer_language(path),
            )
        ]

    if tool_name == "update_file":
        parsed = _parse(result.agent_content) or {}
        path = str(args.get("file_path") or "")
        events: List[EvidenceEvent] = []
        if parsed.get("commit_sha") and parsed.get("commit_url"):
            events.append(
                CommitEvidence(
                    tool_call_id=tool_call_id,
                    commit_url=str(parsed["commit_url"]),
                    commit_sha=str(parsed["commit_sha"]),
                    commit_message=str(args.get("commit_message") or ""),
                    file_paths=[path],
                )
            )
        events.append(
            FileEvidence(
                tool_call_id=tool_call_id,
                file_path=path,
                repository=_repo(args),
                branch=_branch(args),
                language=infer_language(path),
            )
        )
        return events

    if tool_name == "get_pod_logs":
        return [
            ResourceEvidence(
                tool_call_id=tool_call_id,
                resource_type="pod",
                resource_name=str(args.get("pod_name") or ""),
                namespace=str(args.get("namespace") or ""),
            )
        ]

    if tool_name in _K8S_TOOLS:
        parsed = _parse(result.agent_content) or {}
        status = parsed.get("status") if isinstance(parsed.get("status"), str) else None
        return [
            ResourceEvidence(
                tool_call_id=tool_call_id,
                resource_type=str(args.get("resource_type") or "unknown"),
                resource_name=str(args.get("name") or ""),
                namespace=str(args.get("namespace") or ""),
                status=status,
            )
        ]

    return []


def extract_evidence(
    tool_name: str,
    args: Dict[str, Any],
    result: ToolResult,
    tool_call_id: str = "",
) -> List[EvidenceEvent]:
    if not result.success:
        return []
    try:
        return _extract(tool_name, dict(args or {}), result, tool_call_id)
    except Exception as e:
        logger.debug("evidence: extraction skipped tool=%s error=%s", tool_name, type(e).__name__)
        return []


def _clip(s: str, n: int = 100) -> str:
    return s if len(s) <= n else s[: n - 3] + "..."


def generate_result_preview(tool_name: str, args: Dict[str, Any], result: ToolResult) -> Optional[str]:
    """One-line (<=100 chars) summary of a successful result for activity events."""
    if not result.success:
        return None
    try:
        parsed = _parse(result.agent_content)
        if tool_name == "get_file" and parsed:
            path = str(parsed.get("path") or args.get("file_path") or "")
            content = parsed.get("content")
            lines = len(content.split("\n")) if isinstance(content, str) else 0
            return _clip(f"{path} ({lines} lines)")
        if tool_name == "update_file":
            msg = str((parsed or {}).get("message") or args.get("commit_message") or "")
            return _clip(f"Committed: {msg}")
        if tool_name == "get_k8s_resources" and parsed:
            items = parsed.get("items")
            if not isinstance(items, list):
                return None
            kind = str(args.get("resource_type") or "resources")
            if kind in ("pod", "pods"):
                phases: Dict[str, int] = {}
                for it in items:
                    phase = str((it or {}).get("status") or "Unknown") if isinstance(it, dict) else "Unknown"
                    phases[phase] = phases.get(phase, 0) + 1
                summary = ", ".join(f"{n} {p}" for p, n in phases.items())
                return _clip(f"{len(items)} pods: {summary}" if summary else "0 pods")
            return _clip(f"{len(items)} {kind} found")
        if tool_name == "get_pod_logs" and parsed:
            logs = str(parsed.get("logs") or "")
            lines = len(logs.split("\n")) if logs else 0
            return _clip(f"{lines} log lines from {args.get('pod_name') or 'pod'}")
        if tool_name == "query_database" and parsed:
            records = parsed.get("records")
            if isinstance(records, list):
                return _clip(f"{len(records)} rows returned")
            return None
        if tool_name == "patch_k8s_resource":
            return _clip(f"Patched {args.get('resource_type') or 'resource'}/{args.get('name') or ''}")
    except Exception as e:
        logger.debug("evidence: preview skipped tool=%s error=%s", tool_name, type(e).__name__)
    return None
