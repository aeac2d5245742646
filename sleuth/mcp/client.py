"""
Remote tool server client (Model Context Protocol).

Connection strategy:
- try Streamable HTTP first
- on any failure, build a fresh session and retry over SSE
- both attempts are bounded by the same handshake timeout

The client is single-use in practice: callers connect, list or call, then `close()`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from sleuth.core.cancel import CancelToken, OperationCancelled
from sleuth.mcp.types import (
    McpCallResult,
    McpConnectionError,
    McpNotConnectedError,
    McpTimeoutError,
    McpToolAnnotations,
    McpToolInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT_MS = 5000
DEFAULT_CALL_TIMEOUT_MS = 30000

# (url, headers, timeout_seconds) -> async context manager yielding (read_stream, write_stream)
TransportFactory = Callable[[str, Dict[str, str], float], Any]


@asynccontextmanager
async def streamable_http_transport(
    url: str, headers: Dict[str, str], timeout_s: float
) -> AsyncIterator[Tuple[Any, Any]]:
    from mcp.client.streamable_http import streamablehttp_client

    async with streamablehttp_client(url, headers=headers or None) as (read, write, _get_session_id):
        yield read, write


@asynccontextmanager
async def sse_transport(url: str, headers: Dict[str, str], timeout_s: float) -> AsyncIterator[Tuple[Any, Any]]:
    from mcp.client.sse import sse_client

    async with sse_client(url, headers=headers or None, timeout=timeout_s) as (read, write):
        yield read, write


def default_session_factory(read: Any, write: Any) -> Any:
    from mcp import ClientSession

    return ClientSession(read, write)


def _annotations(raw: Any) -> Optional[McpToolAnnotations]:
    if raw is None:
        return None
    return McpToolAnnotations(
        read_only_hint=getattr(raw, "readOnlyHint", None),
        destructive_hint=getattr(raw, "destructiveHint", None),
        open_world_hint=getattr(raw, "openWorldHint", None),
    )


def _content_to_dict(item: Any) -> Dict[str, Any]:
    if isinstance(item, dict):
        return item
    if hasattr(item, "model_dump"):
        return item.model_dump()
    text = getattr(item, "text", None)
    if text is not None:
        return {"type": "text", "text": str(text)}
    return {"type": "unknown", "value": str(item)}


class McpClient:
    def __init__(
        self,
        *,
        primary_transport: Optional[TransportFactory] = None,
        fallback_transport: Optional[TransportFactory] = None,
        session_factory: Optional[Callable[[Any, Any], Any]] = None,
    ) -> None:
        self._primary = primary_transport or streamable_http_transport
        self._fallback = fallback_transport or sse_transport
        self._session_factory = session_factory or default_session_factory
        self._stack: Optional[AsyncExitStack] = None
        self._session: Any = None
        self.transport: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def _open(self, factory: TransportFactory, url: str, headers: Dict[str, str], timeout_s: float) -> None:
        stack = AsyncExitStack()
        try:
            # One deadline covers transport setup, session entry and initialize.
            async with asyncio.timeout(timeout_s):
                read, write = await stack.enter_async_context(factory(url, headers, timeout_s))
                session = await stack.enter_async_context(self._session_factory(read, write))
                await session.initialize()
        except BaseException:
            try:
                await stack.aclose()
            except Exception as close_err:
                logger.debug("mcp: cleanup after failed handshake raised %s", type(close_err).__name__)
            raise
        self._stack = stack
        self._session = session

    async def connect(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        handshake_timeout_ms: int = DEFAULT_HANDSHAKE_TIMEOUT_MS,
    ) -> None:
        hdrs = dict(headers or {})
        timeout_s = max(0.001, handshake_timeout_ms / 1000.0)

        try:
            await self._open(self._primary, url, hdrs, timeout_s)
            self.transport = "streamable-http"
            return
        except Exception as e:
            primary_err = e
            logger.info(
                "mcp: streamable-http handshake failed url=%s error=%s, falling back to sse",
                url,
                type(e).__name__,
            )

        try:
            await self._open(self._fallback, url, hdrs, timeout_s)
            self.transport = "sse"
        except Exception as fallback_err:
            raise McpConnectionError(
                f"MCP connection failed for {url}: both StreamableHTTP and SSE transports failed. "
                f"StreamableHTTP error: {_describe(primary_err)}; SSE error: {_describe(fallback_err)}"
            ) from fallback_err

    async def list_tools(self) -> List[McpToolInfo]:
        if self._session is None:
            raise McpNotConnectedError()

        tools: List[McpToolInfo] = []
        cursor: Optional[str] = None
        while True:
            result = await (self._session.list_tools(cursor) if cursor else self._session.list_tools())
            for t in getattr(result, "tools", None) or []:
                tools.append(
                    McpToolInfo(
                        name=t.name,
                        description=getattr(t, "description", None),
                        input_schema=dict(getattr(t, "inputSchema", None) or {"type": "object", "properties": {}}),
                        annotations=_annotations(getattr(t, "annotations", None)),
                    )
                )
            cursor = getattr(result, "nextCursor", None)
            if not cursor:
                break
        return tools

    async def call_tool(
        self,
        name: str,
        args: Dict[str, Any],
        timeout_ms: int = DEFAULT_CALL_TIMEOUT_MS,
        cancel: Optional[CancelToken] = None,
    ) -> McpCallResult:
        if self._session is None:
            raise McpNotConnectedError()

        token = cancel or CancelToken()
        try:
            result = await token.race(self._session.call_tool(name, args), timeout=timeout_ms / 1000.0)
        except (asyncio.TimeoutError, OperationCancelled):
            raise McpTimeoutError(name, timeout_ms)

        return McpCallResult(
            content=[_content_to_dict(c) for c in (getattr(result, "content", None) or [])],
            is_error=bool(getattr(result, "isError", False)),
        )

    async def close(self) -> None:
        stack, self._stack = self._stack, None
        self._session = None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as e:
            logger.warning("mcp: client close warning: %s", _describe(e))


def _describe(e: BaseException) -> str:
    msg = str(e).strip()
    return f"{type(e).__name__}: {msg}" if msg else type(e).__name__
