"""
Observation masking.

Long investigations accumulate large tool outputs that the model rarely needs again. Once
the estimated history size reaches `token_threshold`, every successful tool_result outside
the `recency_window` most recent ones has its content replaced by a short placeholder.

- all-or-nothing: every eligible result is masked, not just enough to fit the budget
- failed results are never masked (the model needs the error to adapt)
- text and tool_call parts are never touched
- the input list is never mutated; below threshold the same list object is returned
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set, Tuple

from pydantic import BaseModel

from sleuth.core.models import Message, TextPart, ToolCallPart, ToolResultPart
from sleuth.core.tokens import estimate_tokens


class MaskingPolicy(BaseModel):
    token_threshold: int = 25000
    recency_window: int = 3


@dataclass
class MaskingStats:
    masked_parts: int = 0
    total_tokens_before: int = 0
    total_tokens_after: int = 0
    saved_tokens: int = 0


@dataclass
class MaskingResult:
    messages: List[Message]
    masked: bool
    stats: MaskingStats = field(default_factory=MaskingStats)


def placeholder_for(tool_name: str) -> str:
    return f"[{tool_name} output omitted - re-call tool if needed]"


def _part_tokens(part: Any) -> int:
    if isinstance(part, TextPart):
        return estimate_tokens(part.content)
    if isinstance(part, ToolCallPart):
        return estimate_tokens(json.dumps(part.arguments, sort_keys=True, default=str)) + estimate_tokens(part.name)
    if isinstance(part, ToolResultPart):
        content = part.result.agent_content
        if not content:
            content = part.result.model_dump_json()
        return estimate_tokens(content)
    return 0


def estimate_history_tokens(messages: List[Message]) -> int:
    return sum(_part_tokens(p) for m in messages for p in m.parts)


def _maskable_positions(messages: List[Message], recency_window: int) -> Set[Tuple[int, int]]:
    positions = [
        (mi, pi) for mi, m in enumerate(messages) for pi, p in enumerate(m.parts) if isinstance(p, ToolResultPart)
    ]
    keep = max(0, int(recency_window))
    candidates = positions[: len(positions) - keep] if keep else positions
    return {
        (mi, pi) for mi, pi in candidates if messages[mi].parts[pi].result.success  # type: ignore[union-attr]
    }


def mask_observations(messages: List[Message], policy: Optional[MaskingPolicy] = None) -> MaskingResult:
    pol = policy or MaskingPolicy()
    before = estimate_history_tokens(messages)

    if before < pol.token_threshold:
        return MaskingResult(
            messages=messages,
            masked=False,
            stats=MaskingStats(total_tokens_before=before, total_tokens_after=before),
        )

    eligible = _maskable_positions(messages, pol.recency_window)
    masked_parts = 0
    out: List[Message] = []
    for mi, msg in enumerate(messages):
        if not any((mi, pi) in eligible for pi in range(len(msg.parts))):
            out.append(msg)
            continue
        parts = []
        for pi, part in enumerate(msg.parts):
            if (mi, pi) in eligible:
                ph = placeholder_for(part.name)
                if part.result.agent_content != ph:
                    masked_parts += 1
                part = part.model_copy(update={"result": part.result.model_copy(update={"agent_content": ph})})
            parts.append(part)
        out.append(msg.model_copy(update={"parts": parts}))

    after = estimate_history_tokens(out)
    return MaskingResult(
        messages=out,
        masked=True,
        stats=MaskingStats(
            masked_parts=masked_parts,
            total_tokens_before=before,
            total_tokens_after=after,
            saved_tokens=before - after,
        ),
    )
