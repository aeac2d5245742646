from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

# Calls older than this many iterations no longer count as repeats.
REPEAT_WINDOW_ITERATIONS = 5


@dataclass
class ToolCallRecord:
    tool: str
    args: Dict[str, Any]
    iteration: int
    timestamp: float = field(default_factory=time.time)


def _canonical(args: Dict[str, Any]) -> str:
    return json.dumps(args or {}, sort_keys=True, default=str, separators=(",", ":"))


class LoopDetector:
    """Per-turn limits plus repeated-call detection for the tool loop."""

    def __init__(self, max_iterations: int = 20, max_tool_calls: int = 50, max_repeated_calls: int = 1) -> None:
        self.max_iterations = max_iterations or 20
        self.max_tool_calls = max_tool_calls or 50
        self.max_repeated_calls = max_repeated_calls or 1
        self.history: List[ToolCallRecord] = []

    def record_call(self, tool: str, args: Dict[str, Any], iteration: int) -> None:
        self.history.append(ToolCallRecord(tool=tool, args=dict(args or {}), iteration=iteration))

    def count_repeated_calls(self, tool: str, args: Dict[str, Any], iteration: int) -> int:
        key = _canonical(args)
        path = (args or {}).get("file_path")
        n = 0
        for rec in self.history:
            if iteration - rec.iteration > REPEAT_WINDOW_ITERATIONS or rec.tool != tool:
                continue
            if _canonical(rec.args) == key:
                n += 1
            elif tool == "get_file" and path and rec.args.get("file_path") == path:
                n += 1
        return n

    def is_loop(self, tool: str, args: Dict[str, Any], iteration: int) -> bool:
        return self.count_repeated_calls(tool, args, iteration) >= self.max_repeated_calls

    @staticmethod
    def loop_hint(tool: str, args: Dict[str, Any]) -> str:
        args = args or {}
        if tool == "get_file":
            return (
                f"You already read {args.get('file_path') or 'this file'}. "
                "Use the content from the previous result instead of re-fetching."
            )
        if tool == "get_k8s_resources" and not args.get("name"):
            return (
                "You keep searching for resources with the same criteria. "
                "If resources don't exist, check deployment status instead."
            )
        if tool == "get_pod_logs":
            return (
                "Repeatedly fetching logs suggests the pattern isn't found. "
                "Try a different search term or check a different service."
            )
        return "Consider trying a different tool or different arguments."

    def reset(self) -> None:
        self.history = []
