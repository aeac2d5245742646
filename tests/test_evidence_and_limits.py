"""
Unit tests for evidence extraction, activity previews and tool output limits.
"""

from __future__ import annotations

import json

from sleuth.core.models import ToolResult
from sleuth.evidence.extractor import (
    CommitEvidence,
    FileEvidence,
    ResourceEvidence,
    extract_evidence,
    generate_result_preview,
    infer_language,
)
from sleuth.tools.output_limiter import truncate, truncate_log_output

REPO_ARGS = {"repository_owner": "acme", "repository_name": "shop", "branch": "feature/login"}


def test_get_file_yields_file_evidence() -> None:
    result = ToolResult.ok(json.dumps({"success": True, "path": "helm/values.yaml", "content": "    1: a\n    2: b"}))
    events = extract_evidence("get_file", {**REPO_ARGS, "file_path": "helm/values.yaml"}, result, "call_1")

    assert events == [
        FileEvidence(
            tool_call_id="call_1",
            file_path="helm/values.yaml",
            repository="acme/shop",
            branch="feature/login",
            language="yaml",
        )
    ]


def test_update_file_yields_commit_then_file() -> None:
    result = ToolResult.ok(
        json.dumps(
            {
                "success": True,
                "message": "Successfully updated lifecycle.yaml",
                "commit_sha": "abc123",
                "commit_url": "https://github.com/acme/shop/commit/abc123",
            }
        )
    )
    args = {**REPO_ARGS, "file_path": "lifecycle.yaml", "commit_message": "Fix port"}
    events = extract_evidence("update_file", args, result, "call_2")

    assert isinstance(events[0], CommitEvidence)
    assert events[0].commit_sha == "abc123"
    assert events[0].commit_message == "Fix port"
    assert events[0].file_paths == ["lifecycle.yaml"]
    assert isinstance(events[1], FileEvidence)
    assert events[1].file_path == "lifecycle.yaml"


def test_k8s_tools_yield_resource_evidence() -> None:
    logs = extract_evidence("get_pod_logs", {"pod_name": "api-1", "namespace": "env-1"}, ToolResult.ok("{}"))
    assert logs == [ResourceEvidence(resource_type="pod", resource_name="api-1", namespace="env-1")]

    detail = ToolResult.ok(json.dumps({"name": "api", "status": "Degraded"}))
    args = {"namespace": "env-1", "resource_type": "deployment", "name": "api"}
    ev = extract_evidence("get_k8s_resources", args, detail)[0]
    assert ev.status == "Degraded"
    assert ev.resource_type == "deployment"


def test_failed_results_and_unknown_tools_yield_nothing() -> None:
    assert extract_evidence("get_file", REPO_ARGS, ToolResult.fail("nope", "FILE_NOT_FOUND")) == []
    assert extract_evidence("query_database", {"table": "builds"}, ToolResult.ok("{}")) == []


def test_infer_language() -> None:
    assert infer_language("src/app.tsx") == "typescriptreact"
    assert infer_language("sysops/dockerfiles/api.Dockerfile") == "dockerfile"
    assert infer_language("Makefile") is None
    assert infer_language("notes.xyz") is None


def test_previews() -> None:
    pods = ToolResult.ok(
        json.dumps({"items": [{"status": "Running"}, {"status": "Running"}, {"status": "Pending"}]})
    )
    preview = generate_result_preview("get_k8s_resources", {"resource_type": "pods"}, pods)
    assert preview == "3 pods: 2 Running, 1 Pending"

    svcs = ToolResult.ok(json.dumps({"items": [{}, {}]}))
    assert generate_result_preview("get_k8s_resources", {"resource_type": "services"}, svcs) == "2 services found"

    f = ToolResult.ok(json.dumps({"path": "lifecycle.yaml", "content": "    1: a\n    2: b"}))
    assert generate_result_preview("get_file", {}, f) == "lifecycle.yaml (2 lines)"

    logs = ToolResult.ok(json.dumps({"logs": "a\nb\nc"}))
    assert generate_result_preview("get_pod_logs", {"pod_name": "api-1"}, logs) == "3 log lines from api-1"

    rows = ToolResult.ok(json.dumps({"records": [{}]}))
    assert generate_result_preview("query_database", {}, rows) == "1 rows returned"

    long_msg = ToolResult.ok(json.dumps({"message": "m" * 300}))
    preview = generate_result_preview("update_file", {}, long_msg)
    assert len(preview) == 100 and preview.endswith("...")

    assert generate_result_preview("get_file", {}, ToolResult.fail("x", "Y")) is None
    assert generate_result_preview("get_file", {}, ToolResult.ok("not json")) is None
    assert generate_result_preview("mcp__docs__search", {}, ToolResult.ok("{}")) is None


# ---- output limiter -------------------------------------------------------------------------


def test_short_output_is_untouched() -> None:
    assert truncate("hello", 100) == "hello"


def test_plain_text_is_cut_with_marker() -> None:
    out = truncate("a" * 5000, 1000)
    assert len(out) <= 1000
    assert out.startswith("a" * 500)
    assert "[Truncated: showing" in out and "of 5000 chars" in out


def test_json_object_stays_valid_json() -> None:
    payload = {"success": True, "path": "big.log", "content": "x" * 10_000, "items": list(range(50))}
    out = truncate(json.dumps(payload), 4000)

    parsed = json.loads(out)
    assert parsed["success"] is True
    assert parsed["path"] == "big.log"
    assert len(out) <= 4000
    assert "[Truncated:" in parsed["content"]


def test_log_output_keeps_head_and_tail() -> None:
    lines = [f"line {i}" for i in range(1, 501)]
    out = truncate_log_output("\n".join(lines), head_lines=50, tail_lines=100)

    assert out.startswith("line 1\n")
    assert out.endswith("line 500")
    assert "... [Truncated: 350 lines omitted of 500 total] ..." in out
    assert "line 51\n" not in out
    assert "line 401" in out


def test_log_output_shorter_than_window_is_unchanged() -> None:
    text = "\n".join(f"l{i}" for i in range(10))
    assert truncate_log_output(text) == text
