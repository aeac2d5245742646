"""
Kubernetes tools backed by the official python client.

API objects are created lazily on first use and cached for the process (in-cluster config,
falling back to the local kubeconfig). Every client call is blocking, so tools run them in a
worker thread.
"""

from __future__ import annotations

import asyncio
import json
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sleuth.core.cancel import CancelToken
from sleuth.core.models import ToolResult
from sleuth.tools.base import BaseTool, SafetyLevel, ToolCategory
from sleuth.tools.output_limiter import truncate, truncate_log_output

# Cached API clients (lazy init).
_core_v1_api = None
_apps_v1_api = None
_batch_v1_api = None
_config_loaded = False
_init_lock = threading.Lock()

# Lists longer than this keep full detail only for unhealthy items.
SUMMARY_THRESHOLD = 50


def _load_config() -> Any:
    """Import the client and load cluster config once. Caller holds `_init_lock`."""
    global _config_loaded
    try:
        from kubernetes import client, config
    except Exception as import_err:
        raise Exception(f"Kubernetes client not available: {import_err}")

    if not _config_loaded:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()
        _config_loaded = True
    return client


def _get_core_v1():
    """Return a cached CoreV1Api client (thread-safe lazy init)."""
    global _core_v1_api
    if _core_v1_api is not None:
        return _core_v1_api
    with _init_lock:
        if _core_v1_api is None:
            _core_v1_api = _load_config().CoreV1Api()
        return _core_v1_api


def _get_apps_v1():
    """Return a cached AppsV1Api client (thread-safe lazy init)."""
    global _apps_v1_api
    if _apps_v1_api is not None:
        return _apps_v1_api
    with _init_lock:
        if _apps_v1_api is None:
            _apps_v1_api = _load_config().AppsV1Api()
        return _apps_v1_api


def _get_batch_v1():
    """Return a cached BatchV1Api client (thread-safe lazy init)."""
    global _batch_v1_api
    if _batch_v1_api is not None:
        return _batch_v1_api
    with _init_lock:
        if _batch_v1_api is None:
            _batch_v1_api = _load_config().BatchV1Api()
        return _batch_v1_api


def _api_error_message(e: Exception) -> str:
    try:
        from kubernetes.client.rest import ApiException  # type: ignore

        if isinstance(e, ApiException):
            return f"Kubernetes API error: {e.status} {e.reason}"
    except ImportError:
        pass
    return str(e) or type(e).__name__


def _iso(ts: Any) -> Optional[str]:
    return ts.isoformat() if ts is not None and hasattr(ts, "isoformat") else None


def _normalize_type(raw: str) -> str:
    t = (raw or "").strip().lower()
    return t[:-1] if t.endswith("s") else t


def _meta(obj: Any, attr: str) -> Any:
    return getattr(getattr(obj, "metadata", None), attr, None)


# ----------------------------------------------------------------------------------------------
# Read helpers (blocking; called via asyncio.to_thread)
# ----------------------------------------------------------------------------------------------


def _pod_summary(pod: Any) -> Dict[str, Any]:
    statuses = getattr(getattr(pod, "status", None), "container_statuses", None) or []
    containers = []
    for cs in statuses:
        state = getattr(cs, "state", None)
        state_name = None
        for key in ("running", "waiting", "terminated"):
            if state is not None and getattr(state, key, None) is not None:
                state_name = key
                break
        containers.append(
            {
                "name": cs.name,
                "ready": bool(cs.ready),
                "state": state_name,
                "restarts": int(cs.restart_count or 0),
            }
        )
    return {
        "name": _meta(pod, "name"),
        "status": getattr(getattr(pod, "status", None), "phase", None),
        "ready": f"{sum(1 for c in containers if c['ready'])}/{len(containers)}",
        "restarts": sum(c["restarts"] for c in containers),
        "created": _iso(_meta(pod, "creation_timestamp")),
        "containers": containers,
    }


def _pod_unhealthy(p: Dict[str, Any]) -> bool:
    if p.get("status") != "Running" or p.get("restarts", 0) > 5:
        return True
    return any(not c["ready"] or c["state"] not in ("running", None) for c in p.get("containers") or [])


def _deployment_summary(d: Any) -> Dict[str, Any]:
    desired = getattr(d.spec, "replicas", None) or 0
    ready = getattr(d.status, "ready_replicas", None) or 0
    available = getattr(d.status, "available_replicas", None) or 0
    return {
        "name": _meta(d, "name"),
        "status": "Healthy" if ready >= desired and available >= desired else "Degraded",
        "replicas": {"desired": desired, "ready": ready, "available": available},
        "created": _iso(_meta(d, "creation_timestamp")),
    }


def _summarize(kind: str, items: List[Dict[str, Any]], unhealthy) -> Dict[str, Any]:
    if len(items) <= SUMMARY_THRESHOLD:
        return {"resource_type": kind, "count": len(items), "items": items}
    bad = [i for i in items if unhealthy(i)]
    good = [{"name": i.get("name"), "status": i.get("status")} for i in items if not unhealthy(i)]
    return {
        "resource_type": kind,
        "count": len(items),
        "items": bad + good,
        "note": (
            f"{len(items)} {kind} total. {len(bad)} unhealthy shown with full detail, "
            f"{len(good)} healthy shown as summary. Use label_selector to narrow results."
        ),
    }


def list_resources(
    kind: str,
    namespace: str,
    *,
    name: Optional[str] = None,
    label_selector: Optional[str] = None,
    field_selector: Optional[str] = None,
) -> Dict[str, Any]:
    selectors: Dict[str, Any] = {}
    if label_selector:
        selectors["label_selector"] = label_selector

    if kind == "pod":
        v1 = _get_core_v1()
        if name:
            pod = v1.read_namespaced_pod(name=name, namespace=namespace)
            out = _pod_summary(pod)
            out["conditions"] = [
                {"type": c.type, "status": c.status, "reason": getattr(c, "reason", None)}
                for c in (getattr(pod.status, "conditions", None) or [])
            ]
            out["node_name"] = getattr(pod.spec, "node_name", None)
            return out
        pods = [_pod_summary(p) for p in v1.list_namespaced_pod(namespace=namespace, **selectors).items or []]
        return _summarize("pods", pods, _pod_unhealthy)

    if kind == "deployment":
        apps = _get_apps_v1()
        if name:
            d = apps.read_namespaced_deployment(name=name, namespace=namespace)
            out = _deployment_summary(d)
            out["strategy"] = getattr(getattr(d.spec, "strategy", None), "type", None)
            out["containers"] = [{"name": c.name, "image": c.image} for c in d.spec.template.spec.containers or []]
            out["conditions"] = [
                {"type": c.type, "status": c.status, "reason": c.reason, "message": c.message}
                for c in (getattr(d.status, "conditions", None) or [])
            ]
            return out
        deps = [_deployment_summary(d) for d in apps.list_namespaced_deployment(namespace=namespace, **selectors).items]
        return _summarize("deployments", deps, lambda d: d["status"] != "Healthy")

    if kind == "service":
        svcs = _get_core_v1().list_namespaced_service(namespace=namespace, **selectors).items or []
        items = [
            {
                "name": _meta(s, "name"),
                "type": s.spec.type,
                "cluster_ip": s.spec.cluster_ip,
                "ports": [{"name": p.name, "port": p.port, "protocol": p.protocol} for p in s.spec.ports or []],
                "selector": dict(s.spec.selector or {}),
            }
            for s in svcs
        ]
        return {"resource_type": "services", "count": len(items), "items": items}

    if kind == "configmap":
        cms = _get_core_v1().list_namespaced_config_map(namespace=namespace, **selectors).items or []
        items = [{"name": _meta(cm, "name"), "keys": sorted((cm.data or {}).keys())} for cm in cms]
        return {"resource_type": "configmaps", "count": len(items), "items": items}

    if kind == "job":
        jobs = _get_batch_v1().list_namespaced_job(namespace=namespace, **selectors).items or []
        items = []
        for j in jobs:
            st = j.status
            failed = getattr(st, "failed", None) or 0
            succeeded = getattr(st, "succeeded", None) or 0
            items.append(
                {
                    "name": _meta(j, "name"),
                    "status": "Failed" if failed else ("Complete" if succeeded else "Active"),
                    "active": getattr(st, "active", None) or 0,
                    "succeeded": succeeded,
                    "failed": failed,
                    "start_time": _iso(getattr(st, "start_time", None)),
                }
            )
        return {"resource_type": "jobs", "count": len(items), "items": items}

    if kind == "event":
        kwargs: Dict[str, Any] = {"namespace": namespace}
        if field_selector:
            kwargs["field_selector"] = field_selector
        evs = _get_core_v1().list_namespaced_event(**kwargs).items or []
        items = [
            {
                "type": ev.type,
                "reason": ev.reason,
                "message": ev.message,
                "count": ev.count,
                "object": f"{ev.involved_object.kind}/{ev.involved_object.name}" if ev.involved_object else None,
                "last_timestamp": _iso(getattr(ev, "last_timestamp", None)),
            }
            for ev in evs
        ]
        items.sort(key=lambda e: e.get("last_timestamp") or "", reverse=True)
        return {"resource_type": "events", "count": len(items), "items": items[:100]}

    raise ValueError(f"Unsupported resource type: {kind}")


_ANSI_CSI = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_ANSI_OSC = re.compile(r"\x1b\][^\x07]*\x07")
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def strip_ansi(text: str) -> str:
    return _CONTROL.sub("", _ANSI_OSC.sub("", _ANSI_CSI.sub("", text)))


def dedupe_lines(lines: List[str]) -> List[str]:
    """Collapse consecutive duplicate lines into `[repeated Nx] line`; blank lines are dropped."""
    out: List[str] = []
    last = ""
    count = 1
    for line in lines:
        if line == last:
            count += 1
            continue
        if count > 1:
            out.append(f"[repeated {count}x] {last}")
        elif last:
            out.append(last)
        last = line
        count = 1
    if count > 1:
        out.append(f"[repeated {count}x] {last}")
    elif last:
        out.append(last)
    return out


# ----------------------------------------------------------------------------------------------
# Tools
# ----------------------------------------------------------------------------------------------


class GetK8sResourcesTool(BaseTool):
    name = "get_k8s_resources"
    description = (
        "Get Kubernetes resources in a namespace. Supports: pods, deployments, services, configmaps, "
        "jobs, events. Use this to discover what exists in the namespace and its health."
    )
    parameters = {
        "type": "object",
        "properties": {
            "namespace": {"type": "string", "description": "The Kubernetes namespace"},
            "resource_type": {
                "type": "string",
                "description": "Resource type to list. Accepts singular or plural forms.",
                "enum": [
                    "pods", "deployments", "services", "configmaps", "jobs", "events",
                    "pod", "deployment", "service", "configmap", "job", "event",
                ],
            },
            "name": {"type": "string", "description": "Optional: details for one resource (pods, deployments)"},
            "label_selector": {"type": "string", "description": 'Optional label selector, e.g. "app=myapp"'},
            "field_selector": {
                "type": "string",
                "description": 'Optional field selector for events, e.g. "involvedObject.name=mypod"',
            },
        },
        "required": ["namespace", "resource_type"],
    }
    safety_level = SafetyLevel.SAFE
    category = ToolCategory.K8S

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        kind = _normalize_type(str(args.get("resource_type") or ""))
        if kind not in ("pod", "deployment", "service", "configmap", "job", "event"):
            return ToolResult.fail(
                f"Unsupported resource type: {args.get('resource_type')}. "
                "Supported types: pods, deployments, services, configmaps, jobs, events",
                "INVALID_RESOURCE_TYPE",
            )
        try:
            data = await asyncio.to_thread(
                list_resources,
                kind,
                str(args.get("namespace") or ""),
                name=args.get("name") or None,
                label_selector=args.get("label_selector") or None,
                field_selector=args.get("field_selector") or None,
            )
        except Exception as e:
            return ToolResult.fail(_api_error_message(e), "EXECUTION_ERROR")

        if "items" in data:
            display = f"{data['count']} {data['resource_type']} in {args.get('namespace')}"
        else:
            display = f"{kind}/{data.get('name')}: {data.get('status') or 'unknown'}"
        return ToolResult.ok(truncate(json.dumps(data, default=str)), display)


class GetPodLogsTool(BaseTool):
    name = "get_pod_logs"
    description = "Fetch recent logs from a specific pod. Use this to diagnose application errors."
    parameters = {
        "type": "object",
        "properties": {
            "pod_name": {"type": "string", "description": "The pod name"},
            "namespace": {"type": "string", "description": "The Kubernetes namespace"},
            "container": {"type": "string", "description": "Optional specific container name"},
            "previous": {"type": "boolean", "description": "Read logs of the previous (crashed) container"},
            "tail_lines": {"type": "integer", "description": "Lines from the end of the logs (default: 100)"},
            "head_lines": {"type": "integer", "description": "Lines kept from the start (default: 50)"},
        },
        "required": ["pod_name", "namespace"],
    }
    safety_level = SafetyLevel.SAFE
    category = ToolCategory.K8S

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        pod_name = str(args.get("pod_name") or "")
        tail_lines = int(args.get("tail_lines") or 100)
        head_lines = int(args.get("head_lines") or 50)

        kwargs: Dict[str, Any] = {
            "name": pod_name,
            "namespace": str(args.get("namespace") or ""),
            "tail_lines": tail_lines,
            "previous": bool(args.get("previous")),
        }
        if args.get("container"):
            kwargs["container"] = str(args["container"])
        try:
            raw = await asyncio.to_thread(lambda: _get_core_v1().read_namespaced_pod_log(**kwargs))
        except Exception as e:
            return ToolResult.fail(_api_error_message(e) or "Failed to fetch pod logs", "EXECUTION_ERROR")

        lines = dedupe_lines([strip_ansi(line) for line in (raw or "").split("\n")])
        logs = truncate_log_output("\n".join(lines), head_lines=head_lines, tail_lines=tail_lines)
        display = f"Pod logs: {min(len(lines), head_lines + tail_lines)} lines from {pod_name} ({len(lines)} total)"
        return ToolResult.ok(json.dumps({"success": True, "logs": logs}), display)


LIFECYCLE_NAMESPACE = "lifecycle-app"
LIFECYCLE_DEPLOYMENTS = {"worker": ["lifecycle-worker"], "web": ["lifecycle-web"]}
LIFECYCLE_DEPLOYMENTS["all"] = LIFECYCLE_DEPLOYMENTS["worker"] + LIFECYCLE_DEPLOYMENTS["web"]


def collect_lifecycle_logs(
    build_uuid: str, deployments: List[str], *, since_seconds: int, tail_lines: int
) -> Dict[str, Any]:
    """Lines mentioning `build_uuid` from every pod of the control plane `deployments`."""
    v1 = _get_core_v1()
    found: List[Dict[str, Any]] = []
    warnings: List[str] = []
    for deployment in deployments:
        try:
            pods = v1.list_namespaced_pod(namespace=LIFECYCLE_NAMESPACE, label_selector=f"app={deployment}").items or []
        except Exception as e:
            warnings.append(f"Failed to process deployment {deployment}: {_api_error_message(e)}")
            continue
        if not pods:
            warnings.append(f"No pods found for {deployment}")
            continue
        for pod in pods:
            pod_name = _meta(pod, "name")
            if not pod_name:
                continue
            try:
                raw = v1.read_namespaced_pod_log(
                    name=pod_name, namespace=LIFECYCLE_NAMESPACE, since_seconds=since_seconds, tail_lines=tail_lines
                )
            except Exception as e:
                warnings.append(f"Failed to get logs from pod {pod_name}: {_api_error_message(e)}")
                continue
            # Bracketed build/deploy tags all contain the bare UUID.
            lines = [strip_ansi(line) for line in (raw or "").split("\n") if build_uuid in line]
            if lines:
                found.append({"pod": pod_name, "service": deployment, "logs": lines})
    return {"entries": found, "warnings": warnings}


class GetLifecycleLogsTool(BaseTool):
    name = "get_lifecycle_logs"
    description = (
        "Fetch logs from the Lifecycle control plane services (lifecycle-worker or lifecycle-web pods in the "
        "lifecycle-app namespace), filtered by build UUID. Use this to diagnose environment provisioning, build "
        "orchestration or deployment coordination. For user service logs, use get_pod_logs instead."
    )
    parameters = {
        "type": "object",
        "properties": {
            "build_uuid": {"type": "string", "description": "The build UUID to filter logs for"},
            "service_type": {
                "type": "string",
                "enum": ["worker", "web", "all"],
                "description": 'Which service: "worker" (builds/deploys), "web" (webhooks) or "all". Default: worker',
            },
            "tail_lines": {"type": "integer", "description": "Recent log lines per pod to scan (default: 500)"},
            "since_minutes": {"type": "integer", "description": "Logs from the last N minutes (default: 30, max: 60)"},
        },
        "required": ["build_uuid"],
    }
    safety_level = SafetyLevel.SAFE
    category = ToolCategory.K8S

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        build_uuid = str(args.get("build_uuid") or "").strip()
        if not build_uuid:
            return ToolResult.fail("build_uuid is required", "INVALID_ARGUMENTS", recoverable=False)
        service_type = str(args.get("service_type") or "worker")
        if service_type not in LIFECYCLE_DEPLOYMENTS:
            return ToolResult.fail(f"Unsupported service_type: {service_type}", "INVALID_ARGUMENTS")
        since_minutes = min(int(args.get("since_minutes") or 30), 60)
        tail_lines = int(args.get("tail_lines") or 500)

        try:
            data = await asyncio.to_thread(
                collect_lifecycle_logs,
                build_uuid,
                LIFECYCLE_DEPLOYMENTS[service_type],
                since_seconds=since_minutes * 60,
                tail_lines=tail_lines,
            )
        except Exception as e:
            return ToolResult.fail(f"Failed to fetch Lifecycle logs: {_api_error_message(e)}", "EXECUTION_ERROR")

        entries = data["entries"]
        total = sum(len(e["logs"]) for e in entries)
        payload: Dict[str, Any] = {
            "success": True,
            "build_uuid": build_uuid,
            "service_type": service_type,
            "time_range": f"Last {since_minutes} minutes",
            "pods_checked": len(entries),
            "total_matching_lines": total,
        }
        if entries:
            payload["logs"] = "\n".join(f"[{e['service']}/{e['pod']}] {line}" for e in entries for line in e["logs"])
            payload["pod_details"] = [
                {"pod": e["pod"], "service": e["service"], "matching_lines": len(e["logs"])} for e in entries
            ]
        elif not data["warnings"]:
            payload["message"] = f"No logs found for build UUID {build_uuid} in {service_type} service(s)"
        if data["warnings"]:
            payload["warnings"] = data["warnings"]
        display = f"Lifecycle logs: {total} lines for {build_uuid} from {len(entries)} pods"
        return ToolResult.ok(truncate(json.dumps(payload)), display)


class PatchK8sResourceTool(BaseTool):
    name = "patch_k8s_resource"
    description = (
        "Modify Kubernetes resources. Operations: patch (strategic merge patch of a deployment), "
        "scale (deployment replicas), restart (rolling restart of a deployment), delete (pod or job)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "namespace": {"type": "string", "description": "The Kubernetes namespace"},
            "resource_type": {"type": "string", "description": 'Resource type ("deployment", "pod", "job")'},
            "name": {"type": "string", "description": "The resource name"},
            "operation": {"type": "string", "enum": ["patch", "scale", "restart", "delete"]},
            "patch": {"type": "object", "description": "For operation=patch: strategic merge patch body"},
            "replicas": {"type": "integer", "minimum": 0, "description": "For operation=scale"},
        },
        "required": ["namespace", "resource_type", "name", "operation"],
    }
    safety_level = SafetyLevel.DANGEROUS
    category = ToolCategory.K8S

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        kind = _normalize_type(str(args.get("resource_type") or ""))
        op = str(args.get("operation") or "").lower()
        name = str(args.get("name") or "")
        namespace = str(args.get("namespace") or "")

        if op == "patch" and not args.get("patch"):
            return ToolResult.fail("Patch operation requires a patch object", "INVALID_PARAMETERS")
        if op == "scale" and args.get("replicas") is None:
            return ToolResult.fail("Scale operation requires replicas parameter", "INVALID_PARAMETERS")
        if op not in ("patch", "scale", "restart", "delete"):
            return ToolResult.fail(
                f"Unknown operation: {op}. Supported operations: patch, scale, restart, delete", "INVALID_OPERATION"
            )
        try:
            data = await asyncio.to_thread(self._apply, op, kind, name, namespace, args)
        except ValueError as e:
            return ToolResult.fail(str(e), "INVALID_OPERATION")
        except Exception as e:
            return ToolResult.fail(_api_error_message(e) or "Failed to modify resource", "EXECUTION_ERROR")
        return ToolResult.ok(json.dumps(data, default=str), data["message"])

    @staticmethod
    def _apply(op: str, kind: str, name: str, namespace: str, args: Dict[str, Any]) -> Dict[str, Any]:
        if op == "delete":
            if kind == "pod":
                _get_core_v1().delete_namespaced_pod(name=name, namespace=namespace)
            elif kind == "job":
                _get_batch_v1().delete_namespaced_job(name=name, namespace=namespace, propagation_policy="Background")
            else:
                raise ValueError(f"Delete operation not supported for resource type: {kind}")
            return {"success": True, "status": "Deleted", "message": f"Deleted {kind} {name}"}

        if kind != "deployment":
            raise ValueError(f"{op.capitalize()} operation not supported for resource type: {kind}")

        apps = _get_apps_v1()
        if op == "scale":
            before = apps.read_namespaced_deployment(name=name, namespace=namespace).spec.replicas or 0
            replicas = int(args["replicas"])
            apps.patch_namespaced_deployment(name=name, namespace=namespace, body={"spec": {"replicas": replicas}})
            return {
                "success": True,
                "status": "Scaled",
                "message": f"Scaled deployment {name} from {before} to {replicas} replicas",
                "before": {"desired": before},
                "after": {"desired": replicas},
            }
        if op == "restart":
            now = datetime.now(timezone.utc).isoformat()
            body = {"spec": {"template": {"metadata": {"annotations": {"kubectl.kubernetes.io/restartedAt": now}}}}}
            apps.patch_namespaced_deployment(name=name, namespace=namespace, body=body)
            return {"success": True, "status": "Restarted", "message": f"Restarted deployment {name}", "at": now}

        d = apps.patch_namespaced_deployment(name=name, namespace=namespace, body=args["patch"])
        return {
            "success": True,
            "status": "Patched",
            "message": f"Successfully patched deployment {name}",
            "replicas": {
                "desired": getattr(d.spec, "replicas", None) or 0,
                "ready": getattr(d.status, "ready_replicas", None) or 0,
            },
        }


def k8s_tools() -> List[BaseTool]:
    return [GetK8sResourcesTool(), GetPodLogsTool(), GetLifecycleLogsTool(), PatchK8sResourceTool()]
