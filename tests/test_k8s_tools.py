"""
Unit tests for Kubernetes tools with mocked API clients.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from sleuth.tools.k8s import (
    SUMMARY_THRESHOLD,
    GetK8sResourcesTool,
    GetLifecycleLogsTool,
    GetPodLogsTool,
    PatchK8sResourceTool,
    dedupe_lines,
    k8s_tools,
    strip_ansi,
)

CREATED = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _pod(name: str, phase: str = "Running", ready: bool = True, restarts: int = 0, waiting: bool = False):
    state = SimpleNamespace(
        running=None if waiting else SimpleNamespace(),
        waiting=SimpleNamespace(reason="CrashLoopBackOff") if waiting else None,
        terminated=None,
    )
    cs = SimpleNamespace(name="app", ready=ready, restart_count=restarts, state=state)
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, creation_timestamp=CREATED),
        status=SimpleNamespace(phase=phase, container_statuses=[cs], conditions=[]),
        spec=SimpleNamespace(node_name="node-1"),
    )


def _deployment(name: str, desired: int, ready: int):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, creation_timestamp=CREATED),
        spec=SimpleNamespace(
            replicas=desired,
            strategy=SimpleNamespace(type="RollingUpdate"),
            template=SimpleNamespace(spec=SimpleNamespace(containers=[SimpleNamespace(name="app", image="api:1")])),
        ),
        status=SimpleNamespace(ready_replicas=ready, available_replicas=ready, conditions=[]),
    )


def test_k8s_tools_safety_levels() -> None:
    levels = {t.name: t.safety_level.value for t in k8s_tools()}
    assert levels == {
        "get_k8s_resources": "SAFE",
        "get_pod_logs": "SAFE",
        "get_lifecycle_logs": "SAFE",
        "patch_k8s_resource": "DANGEROUS",
    }


@pytest.mark.asyncio
async def test_list_pods() -> None:
    v1 = MagicMock()
    v1.list_namespaced_pod.return_value = SimpleNamespace(
        items=[_pod("api-1"), _pod("api-2", phase="Pending", ready=False)]
    )
    with patch("sleuth.tools.k8s._get_core_v1", return_value=v1):
        res = await GetK8sResourcesTool().execute(
            {"namespace": "env-1", "resource_type": "pods", "label_selector": "app=api"}
        )

    assert res.success is True
    data = json.loads(res.agent_content)
    assert data["resource_type"] == "pods"
    assert data["count"] == 2
    assert data["items"][0]["name"] == "api-1"
    assert data["items"][0]["ready"] == "1/1"
    assert data["items"][1]["status"] == "Pending"
    assert res.display_content == "2 pods in env-1"
    v1.list_namespaced_pod.assert_called_once_with(namespace="env-1", label_selector="app=api")


@pytest.mark.asyncio
async def test_large_pod_lists_are_summarized() -> None:
    pods = [_pod(f"ok-{i}") for i in range(SUMMARY_THRESHOLD + 5)] + [_pod("bad", restarts=9, waiting=True)]
    v1 = MagicMock()
    v1.list_namespaced_pod.return_value = SimpleNamespace(items=pods)
    with patch("sleuth.tools.k8s._get_core_v1", return_value=v1):
        res = await GetK8sResourcesTool().execute({"namespace": "env-1", "resource_type": "pod"})

    data = json.loads(res.agent_content)
    assert data["count"] == SUMMARY_THRESHOLD + 6
    assert data["items"][0]["name"] == "bad"
    assert data["items"][0]["containers"][0]["state"] == "waiting"
    assert data["items"][1] == {"name": "ok-0", "status": "Running"}
    assert "1 unhealthy" in data["note"]


@pytest.mark.asyncio
async def test_single_deployment_detail() -> None:
    apps = MagicMock()
    apps.read_namespaced_deployment.return_value = _deployment("api", desired=2, ready=1)
    with patch("sleuth.tools.k8s._get_apps_v1", return_value=apps):
        res = await GetK8sResourcesTool().execute({"namespace": "env-1", "resource_type": "deployment", "name": "api"})

    data = json.loads(res.agent_content)
    assert data["status"] == "Degraded"
    assert data["replicas"] == {"desired": 2, "ready": 1, "available": 1}
    assert data["containers"] == [{"name": "app", "image": "api:1"}]
    assert res.display_content == "deployment/api: Degraded"


@pytest.mark.asyncio
async def test_events_use_field_selector_and_newest_first() -> None:
    def ev(reason: str, ts: datetime):
        return SimpleNamespace(
            type="Warning",
            reason=reason,
            message=f"{reason} happened",
            count=1,
            involved_object=SimpleNamespace(kind="Pod", name="api-1"),
            last_timestamp=ts,
        )

    v1 = MagicMock()
    v1.list_namespaced_event.return_value = SimpleNamespace(
        items=[
            ev("Old", datetime(2025, 1, 1, tzinfo=timezone.utc)),
            ev("New", datetime(2025, 1, 2, tzinfo=timezone.utc)),
        ]
    )
    with patch("sleuth.tools.k8s._get_core_v1", return_value=v1):
        res = await GetK8sResourcesTool().execute(
            {"namespace": "env-1", "resource_type": "events", "field_selector": "involvedObject.name=api-1"}
        )

    data = json.loads(res.agent_content)
    assert [e["reason"] for e in data["items"]] == ["New", "Old"]
    assert data["items"][0]["object"] == "Pod/api-1"
    v1.list_namespaced_event.assert_called_once_with(namespace="env-1", field_selector="involvedObject.name=api-1")


@pytest.mark.asyncio
async def test_unsupported_type_and_api_errors() -> None:
    res = await GetK8sResourcesTool().execute({"namespace": "env-1", "resource_type": "secrets"})
    assert res.error.code == "INVALID_RESOURCE_TYPE"

    v1 = MagicMock()
    v1.list_namespaced_service.side_effect = RuntimeError("forbidden")
    with patch("sleuth.tools.k8s._get_core_v1", return_value=v1):
        res = await GetK8sResourcesTool().execute({"namespace": "env-1", "resource_type": "services"})
    assert res.error.code == "EXECUTION_ERROR"
    assert "forbidden" in res.error.message


def test_log_cleanup_helpers() -> None:
    assert strip_ansi("\x1b[31mERROR\x1b[0m boom\x07") == "ERROR boom"
    assert dedupe_lines(["a", "a", "a", "", "b", "b", "c"]) == ["[repeated 3x] a", "[repeated 2x] b", "c"]


@pytest.mark.asyncio
async def test_pod_logs_are_cleaned_and_bounded() -> None:
    raw = "\n".join(["\x1b[32mstarting\x1b[0m"] + ["retrying db"] * 4 + [f"line {i}" for i in range(300)])
    v1 = MagicMock()
    v1.read_namespaced_pod_log.return_value = raw
    with patch("sleuth.tools.k8s._get_core_v1", return_value=v1):
        res = await GetPodLogsTool().execute(
            {"pod_name": "api-1", "namespace": "env-1", "container": "app", "previous": True, "tail_lines": 20}
        )

    v1.read_namespaced_pod_log.assert_called_once_with(
        name="api-1", namespace="env-1", tail_lines=20, previous=True, container="app"
    )
    logs = json.loads(res.agent_content)["logs"]
    assert logs.startswith("starting\n[repeated 4x] retrying db\n")
    assert "lines omitted" in logs
    assert logs.endswith("line 299")
    assert res.display_content == "Pod logs: 70 lines from api-1 (302 total)"


@pytest.mark.asyncio
async def test_pod_logs_api_error() -> None:
    v1 = MagicMock()
    v1.read_namespaced_pod_log.side_effect = RuntimeError("pod not found")
    with patch("sleuth.tools.k8s._get_core_v1", return_value=v1):
        res = await GetPodLogsTool().execute({"pod_name": "gone", "namespace": "env-1"})
    assert res.success is False
    assert res.error.code == "EXECUTION_ERROR"


@pytest.mark.asyncio
async def test_patch_validation() -> None:
    tool = PatchK8sResourceTool()
    base = {"namespace": "env-1", "resource_type": "deployment", "name": "api"}

    assert (await tool.execute({**base, "operation": "patch"})).error.code == "INVALID_PARAMETERS"
    assert (await tool.execute({**base, "operation": "scale"})).error.code == "INVALID_PARAMETERS"
    assert (await tool.execute({**base, "operation": "explode"})).error.code == "INVALID_OPERATION"

    res = await tool.execute({**base, "resource_type": "service", "operation": "restart"})
    assert res.error.code == "INVALID_OPERATION"
    assert "not supported for resource type: service" in res.error.message


@pytest.mark.asyncio
async def test_scale_deployment() -> None:
    apps = MagicMock()
    apps.read_namespaced_deployment.return_value = _deployment("api", desired=1, ready=1)
    with patch("sleuth.tools.k8s._get_apps_v1", return_value=apps):
        res = await PatchK8sResourceTool().execute(
            {"namespace": "env-1", "resource_type": "deployments", "name": "api", "operation": "scale", "replicas": 3}
        )

    assert res.success is True
    assert res.display_content == "Scaled deployment api from 1 to 3 replicas"
    assert json.loads(res.agent_content)["status"] == "Scaled"
    apps.patch_namespaced_deployment.assert_called_once_with(
        name="api", namespace="env-1", body={"spec": {"replicas": 3}}
    )


@pytest.mark.asyncio
async def test_restart_deployment_sets_restarted_at() -> None:
    apps = MagicMock()
    with patch("sleuth.tools.k8s._get_apps_v1", return_value=apps):
        res = await PatchK8sResourceTool().execute(
            {"namespace": "env-1", "resource_type": "deployment", "name": "api", "operation": "restart"}
        )

    assert res.success is True
    body = apps.patch_namespaced_deployment.call_args.kwargs["body"]
    annotations = body["spec"]["template"]["metadata"]["annotations"]
    assert "kubectl.kubernetes.io/restartedAt" in annotations


@pytest.mark.asyncio
async def test_delete_job_uses_background_propagation() -> None:
    batch = MagicMock()
    with patch("sleuth.tools.k8s._get_batch_v1", return_value=batch):
        res = await PatchK8sResourceTool().execute(
            {"namespace": "env-1", "resource_type": "job", "name": "migrate", "operation": "delete"}
        )

    assert res.display_content == "Deleted job migrate"
    batch.delete_namespaced_job.assert_called_once_with(
        name="migrate", namespace="env-1", propagation_policy="Background"
    )


@pytest.mark.asyncio
async def test_lifecycle_logs_filter_by_build_uuid() -> None:
    v1 = MagicMock()
    v1.list_namespaced_pod.side_effect = lambda namespace, label_selector: SimpleNamespace(
        items=[_pod("worker-1")] if label_selector == "app=lifecycle-worker" else []
    )
    v1.read_namespaced_pod_log.return_value = "\n".join(
        ["[BUILD abc-123] building api", "unrelated line", "\x1b[31m[DEPLOY abc-123]\x1b[0m helm failed"]
    )
    with patch("sleuth.tools.k8s._get_core_v1", return_value=v1):
        res = await GetLifecycleLogsTool().execute(
            {"build_uuid": "abc-123", "service_type": "all", "since_minutes": 90}
        )

    v1.read_namespaced_pod_log.assert_called_once_with(
        name="worker-1", namespace="lifecycle-app", since_seconds=3600, tail_lines=500
    )
    data = json.loads(res.agent_content)
    assert data["logs"] == (
        "[lifecycle-worker/worker-1] [BUILD abc-123] building api\n"
        "[lifecycle-worker/worker-1] [DEPLOY abc-123] helm failed"
    )
    assert data["total_matching_lines"] == 2
    assert data["time_range"] == "Last 60 minutes"
    assert data["warnings"] == ["No pods found for lifecycle-web"]


@pytest.mark.asyncio
async def test_lifecycle_logs_without_matches() -> None:
    v1 = MagicMock()
    v1.list_namespaced_pod.return_value = SimpleNamespace(items=[_pod("worker-1")])
    v1.read_namespaced_pod_log.return_value = "nothing relevant"
    with patch("sleuth.tools.k8s._get_core_v1", return_value=v1):
        res = await GetLifecycleLogsTool().execute({"build_uuid": "abc-123"})

    data = json.loads(res.agent_content)
    assert data["pods_checked"] == 0
    assert data["message"] == "No logs found for build UUID abc-123 in worker service(s)"
    assert "warnings" not in data

    missing = await GetLifecycleLogsTool().execute({"build_uuid": " "})
    assert missing.error.code == "INVALID_ARGUMENTS"
