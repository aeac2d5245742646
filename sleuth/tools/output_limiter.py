"""
Bound the size of tool output before it reaches the model.

JSON objects are shrunk field by field (largest first) so the result usually stays valid
JSON; anything else is cut with a visible truncation marker.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

DEFAULT_MAX_CHARS = 30000
_MARKER_RESERVE = 200


def _marker(kept: int, total: int) -> str:
    return f"\n[Truncated: showing {kept} of {total} chars - use tighter filters to get specific data]"


def _dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str)


def _plain(content: str, max_chars: int) -> str:
    marker = _marker(max(0, max_chars - _MARKER_RESERVE), len(content))
    keep = max(0, max_chars - len(marker))
    return content[:keep] + marker


def _truncate_json_object(obj: Dict[str, Any], max_chars: int) -> str:
    sizes = sorted(((k, len(_dumps(v))) for k, v in obj.items()), key=lambda kv: kv[1], reverse=True)
    out = dict(obj)
    serialized = _dumps(out)

    for key, _size in sizes:
        if len(serialized) <= max_chars:
            break
        val = out[key]
        if isinstance(val, str) and len(val) > 200:
            overage = len(serialized) - max_chars
            target = max(100, len(val) - overage - _MARKER_RESERVE)
            out[key] = val[:target] + _marker(target, len(val))
        elif isinstance(val, list) and len(val) > 5:
            out[key] = val[:3] + val[-2:]
        else:
            continue
        serialized = _dumps(out)

    if len(serialized) > max_chars:
        return _plain(serialized, max_chars)
    return serialized


def truncate(content: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    if len(content) <= max_chars:
        return content

    if content.lstrip().startswith(("{", "[")):
        try:
            parsed = json.loads(content)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return _truncate_json_object(parsed, max_chars)

    return _plain(content, max_chars)


def truncate_log_output(
    content: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    head_lines: int = 50,
    tail_lines: int = 100,
) -> str:
    lines: List[str] = content.split("\n")
    if len(lines) <= head_lines + tail_lines:
        return truncate(content, max_chars)

    omitted = len(lines) - head_lines - tail_lines
    tail = lines[-tail_lines:] if tail_lines > 0 else []
    out = (
        "\n".join(lines[:head_lines])
        + f"\n... [Truncated: {omitted} lines omitted of {len(lines)} total] ...\n"
        + "\n".join(tail)
    )
    return truncate(out, max_chars)
