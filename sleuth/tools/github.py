"""
GitHub repository tools (contents and issues APIs) with GitHub App authentication.

`GitHubClient` authenticates via GitHub App with the JWT + installation token flow. Tokens
are cached and refreshed five minutes before expiry.

Environment variables:
- GITHUB_APP_ID: GitHub App ID
- GITHUB_APP_PRIVATE_KEY: GitHub App private key (PEM format)
- GITHUB_APP_INSTALLATION_ID: GitHub App installation ID

Writes are fenced by three rules: the target branch must equal the allowed branch set for
the turn; the path must be referenced by the lifecycle config or match the write allow-list;
and it must not match an excluded-file glob (excluded globs also block reads).
"""

from __future__ import annotations

import asyncio
import base64
import fnmatch
import json
import logging
import os
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import jwt
import requests

from sleuth.core.cancel import CancelToken
from sleuth.core.models import ToolResult
from sleuth.tools.base import BaseTool, SafetyLevel, ToolCategory
from sleuth.tools.output_limiter import truncate

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"
COMMIT_PREFIX = "[Sleuth]"
LIFECYCLE_FILES = ("lifecycle.yaml", "lifecycle.yml")

_WRITE_ALLOWED = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^sysops/dockerfiles/.+\.dockerfile$",
        r"^helm/.+\.(yaml|yml)$",
        r"^\.github/workflows/.+\.(yaml|yml)$",
        r"^sysops/helm/.+\.(yaml|yml)$",
        r"^docker-compose\.(yaml|yml)$",
        r"^package\.json$",
        r"^requirements\.txt$",
        r"^go\.(mod|sum)$",
        r"^pom\.xml$",
        r"^build\.gradle$",
    )
]

_DOCKERFILE_REF = re.compile(r"dockerfilePath:\s*['\"]?([^\s'\"]+)['\"]?", re.IGNORECASE)
_VALUE_FILES_BLOCK = re.compile(r"valueFiles:\s*\n((?:\s*-\s*[^\n]+\n?)+)", re.IGNORECASE)
_VALUE_FILE_ITEM = re.compile(r"^\s*-\s*['\"]?([^\s'\"#]+)['\"]?", re.IGNORECASE | re.MULTILINE)
_CHART_REF = re.compile(r"chart:\s*['\"]?(\.[^\s'\"]+)['\"]?", re.IGNORECASE)


def extract_referenced_files(yaml_content: str) -> List[str]:
    """Paths a lifecycle config points at (dockerfilePath, valueFiles entries, local chart paths)."""
    found: List[str] = []
    found.extend(m.group(1) for m in _DOCKERFILE_REF.finditer(yaml_content or ""))
    for block in _VALUE_FILES_BLOCK.finditer(yaml_content or ""):
        found.extend(m.group(1) for m in _VALUE_FILE_ITEM.finditer(block.group(1)))
    found.extend(m.group(1) for m in _CHART_REF.finditer(yaml_content or ""))
    # Keep first-seen order.
    return list(dict.fromkeys(f for f in found if f))


def unescape_content(content: str) -> str:
    return content.replace("\\n", "\n").replace("\\r", "\r").replace("\\t", "\t")


def number_lines(content: str) -> str:
    return "\n".join(f"{i:>5}: {line}" for i, line in enumerate(content.split("\n"), start=1))


class GitHubClient:
    def __init__(
        self,
        *,
        app_id: Optional[str] = None,
        private_key: Optional[str] = None,
        installation_id: Optional[str] = None,
        session: Any = None,
    ) -> None:
        self.app_id = app_id if app_id is not None else os.getenv("GITHUB_APP_ID", "")
        raw_key = private_key if private_key is not None else os.getenv("GITHUB_APP_PRIVATE_KEY", "")
        self.private_key = raw_key.replace("\\n", "\n")
        self.installation_id = (
            installation_id
            if installation_id is not None
            else (os.getenv("GITHUB_APP_INSTALLATION_ID", "") or os.getenv("GITHUB_INSTALLATION_ID", ""))
        )
        self._http = session or requests

        self._installation_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

        self.allowed_branch: Optional[str] = None
        self._referenced: Set[str] = set()
        self.excluded_patterns: List[str] = []

    # -- write fence -----------------------------------------------------------------------

    def set_allowed_branch(self, branch: Optional[str]) -> None:
        self.allowed_branch = branch or None

    def set_referenced_files(self, files: Iterable[str]) -> None:
        self._referenced = {f[2:].lower() if f.startswith("./") else f.lower() for f in files}
        self._referenced.update(LIFECYCLE_FILES)

    def set_excluded_patterns(self, patterns: Iterable[str]) -> None:
        self.excluded_patterns = [p for p in patterns if p]

    def is_excluded(self, path: str) -> bool:
        p = (path or "").lower()
        for pattern in self.excluded_patterns:
            pat = pattern.lower()
            if fnmatch.fnmatch(p, pat):
                return True
            # `**/x` also matches `x` at the repository root.
            if pat.startswith("**/") and fnmatch.fnmatch(p, pat[3:]):
                return True
        return False

    def is_path_allowed(self, path: str, mode: str) -> bool:
        if self.is_excluded(path):
            return False
        if mode == "read":
            return True
        p = (path or "").lower()
        if p in self._referenced or p in LIFECYCLE_FILES:
            return True
        return any(rx.match(p) for rx in _WRITE_ALLOWED)

    def validate_branch(self, branch: str) -> Optional[str]:
        """Return an error message when committing to `branch` is not allowed."""
        if not self.allowed_branch:
            return "SAFETY ERROR: No allowed branch set. Cannot commit."
        if branch != self.allowed_branch:
            return (
                f'SAFETY ERROR: Attempted to commit to branch "{branch}" but only "{self.allowed_branch}" '
                "is allowed. This prevents accidental commits to main/master."
            )
        return None

    # -- auth / transport ------------------------------------------------------------------

    def _generate_jwt(self) -> str:
        if not self.app_id or not self.private_key:
            raise ValueError("GITHUB_APP_ID and GITHUB_APP_PRIVATE_KEY required")
        now = int(time.time())
        payload = {
            "iat": now - 60,  # clock drift
            "exp": now + (10 * 60),
            "iss": self.app_id,
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    def _get_installation_token(self) -> str:
        if self._installation_token and self._token_expires_at:
            if datetime.now(timezone.utc) < (self._token_expires_at - timedelta(minutes=5)):
                return self._installation_token

        if not self.installation_id:
            raise ValueError("GITHUB_APP_INSTALLATION_ID required")

        response = self._http.post(
            f"{API_URL}/app/installations/{self.installation_id}/access_tokens",
            headers={
                "Authorization": f"Bearer {self._generate_jwt()}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=10,
        )
        response.raise_for_status()
        data = response.json()
        self._installation_token = data["token"]
        self._token_expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
        return self._installation_token

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = kwargs.pop("headers", {})
        headers.update(
            {
                "Authorization": f"Bearer {self._get_installation_token()}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )
        kwargs["headers"] = headers
        kwargs.setdefault("timeout", 10)
        response = self._http.request(method, f"{API_URL}{path}", **kwargs)
        response.raise_for_status()
        return response

    # -- contents API ----------------------------------------------------------------------

    def get_contents(self, owner: str, repo: str, path: str, ref: str) -> Any:
        return self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref}).json()

    def get_file_text(self, owner: str, repo: str, path: str, ref: str) -> Dict[str, Any]:
        data = self.get_contents(owner, repo, path, ref)
        if not isinstance(data, dict) or data.get("type") != "file" or "content" not in data:
            raise FileNotFoundError(f"{path} is not a file or does not exist")
        text = base64.b64decode(data["content"].replace("\n", "")).decode("utf-8")
        return {"path": path, "content": text, "sha": data.get("sha")}

    def put_file(
        self, owner: str, repo: str, path: str, *, branch: str, content: str, message: str, sha: Optional[str]
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            body["sha"] = sha
        return self._request("PUT", f"/repos/{owner}/{repo}/contents/{path}", json=body).json()

    # -- issues API -------------------------------------------------------------------------

    def get_issue_labels(self, owner: str, repo: str, number: int) -> List[str]:
        data = self._request("GET", f"/repos/{owner}/{repo}/issues/{number}").json()
        return [lbl["name"] for lbl in data.get("labels") or [] if isinstance(lbl, dict) and lbl.get("name")]

    def set_issue_labels(self, owner: str, repo: str, number: int, labels: List[str]) -> Any:
        return self._request("PUT", f"/repos/{owner}/{repo}/issues/{number}/labels", json={"labels": labels}).json()

    def get_issue_comment(self, owner: str, repo: str, comment_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/repos/{owner}/{repo}/issues/comments/{comment_id}").json()

    def load_referenced_files(self, owner: str, repo: str, ref: str) -> List[str]:
        """Read the lifecycle config on `ref` and register the files it references as writable."""
        for name in LIFECYCLE_FILES:
            try:
                cfg = self.get_file_text(owner, repo, name, ref)
            except Exception as e:
                logger.debug("github: lifecycle config not readable path=%s error=%s", name, type(e).__name__)
                continue
            files = extract_referenced_files(cfg["content"])
            self.set_referenced_files(files)
            return files
        self.set_referenced_files([])
        return []


_REPO_PROPS = {
    "repository_owner": {"type": "string", "description": "Repository owner"},
    "repository_name": {"type": "string", "description": "Repository name"},
    "branch": {"type": "string", "description": "Branch name"},
}


def _http_error(e: Exception, fallback: str) -> ToolResult:
    if isinstance(e, requests.HTTPError) and getattr(e.response, "status_code", None) == 404:
        return ToolResult.fail(fallback, "FILE_NOT_FOUND")
    if isinstance(e, FileNotFoundError):
        return ToolResult.fail(str(e), "FILE_NOT_FOUND")
    return ToolResult.fail(str(e) or fallback, "EXECUTION_ERROR")


class _GitHubTool(BaseTool):
    category = ToolCategory.GITHUB

    def __init__(self, client: GitHubClient) -> None:
        self.client = client


class GetFileTool(_GitHubTool):
    name = "get_file"
    description = (
        'Read a file from the repository. Returns content with line numbers ("  123: line"). '
        "Use this for lifecycle.yaml, Dockerfiles, Helm values, source code or any other file."
    )
    parameters = {
        "type": "object",
        "properties": {
            **_REPO_PROPS,
            "file_path": {"type": "string", "description": "Path of the file in the repository"},
        },
        "required": ["repository_owner", "repository_name", "branch", "file_path"],
    }
    safety_level = SafetyLevel.SAFE

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        path = str(args.get("file_path") or "")
        if not self.client.is_path_allowed(path, "read"):
            return ToolResult.fail(f"Access to {path} is excluded by configuration", "FILE_EXCLUDED", recoverable=False)
        try:
            data = await asyncio.to_thread(
                self.client.get_file_text,
                str(args.get("repository_owner") or ""),
                str(args.get("repository_name") or ""),
                path,
                str(args.get("branch") or ""),
            )
        except Exception as e:
            return _http_error(e, f"{path} is not a file or does not exist")

        payload = {"success": True, "path": path, "content": number_lines(data["content"]), "sha": data["sha"]}
        return ToolResult.ok(truncate(json.dumps(payload)), f"Read {path}")


class ListDirectoryTool(_GitHubTool):
    name = "list_directory"
    description = "List files and folders at a path in the repository."
    parameters = {
        "type": "object",
        "properties": {
            **_REPO_PROPS,
            "path": {"type": "string", "description": 'Directory path ("" for the repository root)'},
        },
        "required": ["repository_owner", "repository_name", "branch"],
    }
    safety_level = SafetyLevel.SAFE

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        path = str(args.get("path") or "").strip("/")
        try:
            data = await asyncio.to_thread(
                self.client.get_contents,
                str(args.get("repository_owner") or ""),
                str(args.get("repository_name") or ""),
                path,
                str(args.get("branch") or ""),
            )
        except Exception as e:
            return _http_error(e, f"{path or '/'} does not exist")
        if not isinstance(data, list):
            return ToolResult.fail(f"{path} is a file, not a directory", "NOT_A_DIRECTORY")

        entries = [
            {"name": d.get("name"), "path": d.get("path"), "type": d.get("type")}
            for d in data
            if isinstance(d, dict) and not self.client.is_excluded(str(d.get("path") or ""))
        ]
        payload = {"success": True, "path": path, "entries": entries}
        return ToolResult.ok(truncate(json.dumps(payload)), f"{len(entries)} entries in {path or '/'}")


class UpdateFileTool(_GitHubTool):
    name = "update_file"
    description = (
        "Update or create a configuration file in the repository and commit it to the working branch. "
        "Can modify lifecycle.yaml, Dockerfiles, Helm charts and values files, and common config files."
    )
    parameters = {
        "type": "object",
        "properties": {
            **_REPO_PROPS,
            "file_path": {"type": "string", "description": "Path of the file to update"},
            "new_content": {"type": "string", "description": "The complete new file content"},
            "commit_message": {"type": "string", "description": "Commit message describing the change"},
        },
        "required": ["repository_owner", "repository_name", "branch", "file_path", "new_content", "commit_message"],
    }
    safety_level = SafetyLevel.DANGEROUS

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        owner = str(args.get("repository_owner") or "")
        repo = str(args.get("repository_name") or "")
        branch = str(args.get("branch") or "")
        path = str(args.get("file_path") or "")

        if not self.client.is_path_allowed(path, "write"):
            return ToolResult.fail(
                f'SAFETY ERROR: File path "{path}" is not allowed for modification. Allowed files: lifecycle '
                "config, files it references, sysops/dockerfiles, helm charts and values, common config files.",
                "FILE_PATH_NOT_ALLOWED",
                recoverable=False,
            )
        branch_error = self.client.validate_branch(branch)
        if branch_error:
            return ToolResult.fail(branch_error, "BRANCH_VALIDATION_FAILED", recoverable=False)

        try:
            data = await asyncio.to_thread(
                self._commit,
                owner,
                repo,
                branch,
                path,
                unescape_content(str(args.get("new_content") or "")),
                f"{COMMIT_PREFIX} {args.get('commit_message') or 'Update ' + path}",
            )
        except Exception as e:
            return ToolResult.fail(str(e) or "Failed to commit changes", "EXECUTION_ERROR")
        logger.info("github: committed path=%s branch=%s sha=%s", path, branch, data["commit_sha"])
        return ToolResult.ok(json.dumps(data), data["message"])

    def _commit(self, owner: str, repo: str, branch: str, path: str, content: str, message: str) -> Dict[str, Any]:
        try:
            sha = self.client.get_contents(owner, repo, path, branch).get("sha")
        except requests.HTTPError:
            sha = None
        resp = self.client.put_file(owner, repo, path, branch=branch, content=content, message=message, sha=sha)
        commit = resp.get("commit") or {}
        return {
            "success": True,
            "message": f"Successfully {'updated' if sha else 'created'} {path}",
            "commit_sha": commit.get("sha"),
            "commit_url": commit.get("html_url"),
        }


LABEL_ACTIONS = ("add", "remove", "set")


def normalize_labels(raw: Any) -> List[str]:
    """Trimmed, non-empty labels, deduplicated case-insensitively (first spelling wins)."""
    values = raw if isinstance(raw, list) else [raw] if isinstance(raw, str) else []
    by_lower: Dict[str, str] = {}
    for v in values:
        if not isinstance(v, str) or not v.strip():
            continue
        by_lower.setdefault(v.strip().lower(), v.strip())
    return list(by_lower.values())


def apply_label_action(current: List[str], labels: List[str], action: str) -> List[str]:
    if action == "set":
        return list(labels)
    if action == "add":
        by_lower = {lbl.lower(): lbl for lbl in current}
        for lbl in labels:
            by_lower.setdefault(lbl.lower(), lbl)
        return list(by_lower.values())
    drop = {lbl.lower() for lbl in labels}
    return [lbl for lbl in current if lbl.lower() not in drop]


class UpdatePrLabelsTool(_GitHubTool):
    name = "update_pr_labels"
    description = (
        "Update pull request labels in GitHub. Supports add/remove/set actions for labels on a PR. "
        "Labels must be non-empty. To remove and re-add a label, use two calls: remove, then add."
    )
    parameters = {
        "type": "object",
        "properties": {
            "repository_owner": _REPO_PROPS["repository_owner"],
            "repository_name": _REPO_PROPS["repository_name"],
            "pull_request_number": {"type": "number", "description": "Pull request number"},
            "action": {
                "type": "string",
                "enum": list(LABEL_ACTIONS),
                "description": "Label operation: add, remove, or set (replace all labels)",
            },
            "labels": {
                "type": "array",
                "items": {"type": "string"},
                "minItems": 1,
                "description": "Labels to add/remove/set",
            },
        },
        "required": ["repository_owner", "repository_name", "pull_request_number", "action", "labels"],
    }
    safety_level = SafetyLevel.DANGEROUS

    async def confirmation_details(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        details = await super().confirmation_details(args) or {}
        action = args.get("action") if args.get("action") in LABEL_ACTIONS else "add"
        repo = f"{args.get('repository_owner')}/{args.get('repository_name')}"
        details.update(
            {
                "title": "Update PR labels",
                "summary": f"PR #{args.get('pull_request_number')} in {repo}: {action} labels "
                f"[{', '.join(normalize_labels(args.get('labels')))}]",
                "impact": "This will modify pull request labels in GitHub.",
            }
        )
        return details

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        action = args.get("action")
        if action not in LABEL_ACTIONS:
            return ToolResult.fail(
                "Invalid action. Expected one of: add, remove, set", "INVALID_ACTION", recoverable=False
            )
        labels = normalize_labels(args.get("labels"))
        if not labels:
            return ToolResult.fail("At least one non-empty label is required", "INVALID_LABELS", recoverable=False)

        owner = str(args.get("repository_owner") or "")
        repo = str(args.get("repository_name") or "")
        try:
            number = int(args.get("pull_request_number"))
        except (TypeError, ValueError):
            return ToolResult.fail("pull_request_number must be a number", "INVALID_ARGUMENTS", recoverable=False)

        try:
            before, after = await asyncio.to_thread(self._apply, owner, repo, number, str(action), labels)
        except Exception as e:
            return ToolResult.fail(str(e) or "Failed to update pull request labels", "EXECUTION_ERROR")
        logger.info(
            "github: labels updated repo=%s/%s pr=%s action=%s count=%s", owner, repo, number, action, len(after)
        )
        payload = {"success": True, "action": action, "labels_before": before, "labels_after": after}
        return ToolResult.ok(json.dumps(payload), f"Updated PR #{number} labels ({len(after)} total)")

    def _apply(
        self, owner: str, repo: str, number: int, action: str, labels: List[str]
    ) -> Tuple[List[str], List[str]]:
        current = [] if action == "set" else self.client.get_issue_labels(owner, repo, number)
        updated = apply_label_action(current, labels, action)
        self.client.set_issue_labels(owner, repo, number, updated)
        return current, updated


class GetIssueCommentTool(_GitHubTool):
    name = "get_issue_comment"
    description = (
        "Get a specific comment from a GitHub issue or pull request by comment ID. Use this to read the "
        "lifecycle PR comment that shows which services are ENABLED (checked) vs DISABLED (unchecked)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "repository_owner": _REPO_PROPS["repository_owner"],
            "repository_name": _REPO_PROPS["repository_name"],
            "comment_id": {"type": "number", "description": "Comment ID from pull_requests.commentId or issues"},
        },
        "required": ["repository_owner", "repository_name", "comment_id"],
    }
    safety_level = SafetyLevel.SAFE

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        comment_id = args.get("comment_id")
        try:
            number = int(comment_id)
        except (TypeError, ValueError):
            return ToolResult.fail("comment_id must be a number", "INVALID_ARGUMENTS", recoverable=False)
        try:
            data = await asyncio.to_thread(
                self.client.get_issue_comment,
                str(args.get("repository_owner") or ""),
                str(args.get("repository_name") or ""),
                number,
            )
        except Exception as e:
            return ToolResult.fail(str(e) or f"Failed to fetch comment {comment_id}", "EXECUTION_ERROR")

        author = (data.get("user") or {}).get("login")
        payload = {
            "success": True,
            "body": data.get("body"),
            "created_at": data.get("created_at"),
            "updated_at": data.get("updated_at"),
            "author": author,
        }
        display = f"Comment by {author or 'unknown'} at {data.get('created_at')}"
        return ToolResult.ok(truncate(json.dumps(payload)), display)


def github_tools(client: GitHubClient) -> List[BaseTool]:
    return [
        GetFileTool(client),
        ListDirectoryTool(client),
        GetIssueCommentTool(client),
        UpdateFileTool(client),
        UpdatePrLabelsTool(client),
    ]
