"""
Unit tests for ConversationStore (redis-backed and in-process).
"""

from __future__ import annotations

from typing import Any, Dict, List

import pytest

from sleuth.conversation.store import ConversationStore, conversation_key
from sleuth.core.models import Message, ToolCallPart, ToolResult, ToolResultPart, text_message


class FakeRedis:
    def __init__(self) -> None:
        self.lists: Dict[str, List[str]] = {}
        self.ttls: Dict[str, int] = {}

    async def rpush(self, key: str, *values: str) -> int:
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True

    async def lrange(self, key: str, start: int, end: int) -> List[Any]:
        items = self.lists.get(key, [])
        if start < 0:
            start = max(0, len(items) + start)
        return items[start:] if end == -1 else items[start : end + 1]

    async def delete(self, key: str) -> int:
        return 1 if self.lists.pop(key, None) is not None else 0


def _tool_turn() -> Message:
    return Message(
        role="assistant",
        parts=[
            ToolCallPart(tool_call_id="c1", name="get_pod_logs", arguments={"pod_name": "api-1"}),
            ToolResultPart(tool_call_id="c1", name="get_pod_logs", result=ToolResult.ok("{}", "Pod logs")),
        ],
    )


@pytest.mark.asyncio
async def test_redis_append_and_load_round_trips_parts() -> None:
    redis = FakeRedis()
    store = ConversationStore(redis, ttl_seconds=120)

    await store.append("s1", [text_message("user", "why is api down?"), _tool_turn()])
    history = await store.load("s1")

    assert history[0] == text_message("user", "why is api down?")
    assert history[1] == _tool_turn()
    assert redis.ttls[conversation_key("s1")] == 120
    assert conversation_key("s1") == "sleuth:conversation:s1"


@pytest.mark.asyncio
async def test_ttl_is_refreshed_on_every_append() -> None:
    redis = FakeRedis()
    store = ConversationStore(redis, ttl_seconds=60)
    await store.append("s1", [text_message("user", "a")])
    redis.ttls.clear()

    await store.append("s1", [text_message("assistant", "b")])
    assert redis.ttls == {"sleuth:conversation:s1": 60}


@pytest.mark.asyncio
async def test_load_keeps_most_recent_messages() -> None:
    store = ConversationStore(FakeRedis())
    await store.append("s1", [text_message("user", str(i)) for i in range(10)])

    recent = await store.load("s1", max_messages=3)
    assert [m.parts[0].content for m in recent] == ["7", "8", "9"]


@pytest.mark.asyncio
async def test_unreadable_items_are_skipped(caplog) -> None:
    redis = FakeRedis()
    redis.lists[conversation_key("s1")] = ["{not json", text_message("user", "ok").model_dump_json()]
    store = ConversationStore(redis)

    history = await store.load("s1")
    assert history == [text_message("user", "ok")]
    assert "dropping unreadable message" in caplog.text


@pytest.mark.asyncio
async def test_empty_append_is_a_noop() -> None:
    redis = FakeRedis()
    await ConversationStore(redis).append("s1", [])
    assert redis.lists == {}
    assert redis.ttls == {}


@pytest.mark.asyncio
async def test_clear() -> None:
    redis = FakeRedis()
    store = ConversationStore(redis)
    await store.append("s1", [text_message("user", "a")])
    await store.clear("s1")
    assert await store.load("s1") == []


@pytest.mark.asyncio
async def test_in_process_fallback() -> None:
    store = ConversationStore()
    await store.append("s1", [text_message("user", "a"), text_message("assistant", "b")])
    await store.append("s2", [text_message("user", "other")])

    assert [m.role for m in await store.load("s1")] == ["user", "assistant"]
    assert len(await store.load("s1", max_messages=1)) == 1
    await store.clear("s1")
    assert await store.load("s1") == []
    assert len(await store.load("s2")) == 1
