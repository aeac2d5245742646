"""
Per-session conversation history.

Each session is a redis list of `Message` JSON documents under
`sleuth:conversation:{session_id}`; the TTL is refreshed on every append so active
sessions never expire mid-conversation. Without a redis client the store keeps history
in-process (single worker / CLI use).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from sleuth.core.models import Message

logger = logging.getLogger(__name__)

KEY_PREFIX = "sleuth:conversation:"
DEFAULT_TTL_SECONDS = 3600


def conversation_key(session_id: str) -> str:
    return f"{KEY_PREFIX}{session_id}"


class ConversationStore:
    def __init__(self, redis_client: Any = None, *, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self.redis = redis_client
        self.ttl_seconds = int(ttl_seconds)
        self._local: Dict[str, List[Message]] = {}

    async def append(self, session_id: str, messages: List[Message]) -> None:
        if not messages:
            return
        if self.redis is None:
            self._local.setdefault(session_id, []).extend(messages)
            return
        key = conversation_key(session_id)
        await self.redis.rpush(key, *[m.model_dump_json() for m in messages])
        await self.redis.expire(key, self.ttl_seconds)

    async def load(self, session_id: str, *, max_messages: Optional[int] = None) -> List[Message]:
        if self.redis is None:
            history = list(self._local.get(session_id, []))
        else:
            start = -int(max_messages) if max_messages else 0
            raw = await self.redis.lrange(conversation_key(session_id), start, -1)
            history = []
            for item in raw or []:
                try:
                    history.append(Message.model_validate_json(item))
                except ValidationError:
                    logger.warning("conversation: dropping unreadable message session=%s", session_id)
        if max_messages:
            history = history[-int(max_messages):]
        return history

    async def clear(self, session_id: str) -> None:
        if self.redis is None:
            self._local.pop(session_id, None)
            return
        await self.redis.delete(conversation_key(session_id))

    async def replace(self, session_id: str, messages: List[Message]) -> None:
        await self.clear(session_id)
        await self.append(session_id, messages)
