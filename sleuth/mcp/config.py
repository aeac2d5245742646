from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from sleuth.mcp.client import McpClient
from sleuth.mcp.types import McpConnectionError, McpServerConfig, McpToolInfo

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$")
MAX_SLUG_LENGTH = 100
VALIDATION_TIMEOUT_MS = 5000


def validate_slug(slug: str) -> None:
    if not slug or len(slug) > MAX_SLUG_LENGTH or not SLUG_RE.match(slug):
        raise ValueError(
            f"Invalid slug '{slug}': must be 1-{MAX_SLUG_LENGTH} lowercase alphanumeric characters or hyphens, "
            "no leading/trailing hyphens"
        )


def resolve_servers_for_repo(
    global_servers: Iterable[McpServerConfig],
    repo_servers: Iterable[McpServerConfig],
    disabled_slugs: Optional[Iterable[str]] = None,
) -> List[McpServerConfig]:
    """
    Merge global and repository-scoped servers into the list used for one session.

    - disabled servers (`enabled=False`) are skipped in both scopes
    - `disabled_slugs` opts a repository out of specific global servers
    - a repository server replaces a global server with the same slug
    """
    disabled = set(disabled_slugs or [])
    merged: Dict[str, McpServerConfig] = {}
    for s in global_servers:
        if s.enabled and s.slug not in disabled:
            merged[s.slug] = s
    for s in repo_servers:
        if s.enabled:
            merged[s.slug] = s
    return list(merged.values())


async def discover_tools(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    *,
    timeout_ms: int = VALIDATION_TIMEOUT_MS,
    client: Optional[McpClient] = None,
) -> List[McpToolInfo]:
    """Connect, list every tool, close. Raises McpConnectionError with the url on any failure."""
    c = client or McpClient()
    try:
        await c.connect(url, headers, timeout_ms)
        return await c.list_tools()
    except Exception as e:
        raise McpConnectionError(f"MCP server connectivity validation failed for {url}: {e}") from e
    finally:
        await c.close()


async def validate_connectivity(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    *,
    client: Optional[McpClient] = None,
) -> Dict[str, Any]:
    try:
        tools = await discover_tools(url, headers, client=client)
    except McpConnectionError as e:
        logger.info("mcp: connectivity check failed url=%s", url)
        return {"ok": False, "error": str(e)}
    return {"ok": True, "tools": [t.model_dump() for t in tools]}


async def refresh_cached_tools(server: McpServerConfig, context: Any = None) -> McpServerConfig:
    """
    Fill `cached_tools` for a server registered without a tool snapshot.

    Listings are cached on the shared `AgentContext` (keyed by slug + url) when one is given.
    """
    validate_slug(server.slug)
    if server.cached_tools:
        return server

    key = f"mcp_tools:{server.slug}:{server.url}"
    cached = await context.cache_get(key) if context is not None else None
    if cached:
        tools = [McpToolInfo.model_validate(t) for t in cached]
    else:
        tools = await discover_tools(server.url, server.headers)
        if context is not None:
            await context.cache_set(key, [t.model_dump() for t in tools])
    return server.model_copy(update={"cached_tools": tools})
