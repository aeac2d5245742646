"""
Guarded tool execution.

`ToolSafetyManager.safe_execute` is the only path from the orchestrator to a tool:

1. validate args against the tool's JSON Schema
2. fix-target authorization (fix mode, DANGEROUS tools)
3. user confirmation (DANGEROUS always; CAUTIOUS when confirmation is required)
4. execute through the registry with a timeout, raced against cancellation
5. truncate successful output for the model

Every outcome is a `ToolResult`; nothing raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import jsonschema

from sleuth.authz.policy import FixTargetAuthorizer, FixTargetScope
from sleuth.core.cancel import CancelToken, OperationCancelled
from sleuth.core.models import ToolResult
from sleuth.streaming.events import EventSink
from sleuth.tools.base import SafetyLevel, Tool
from sleuth.tools.output_limiter import DEFAULT_MAX_CHARS, truncate
from sleuth.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def validate_args(schema: Optional[Dict[str, Any]], args: Dict[str, Any]) -> List[str]:
    if not schema:
        return []
    try:
        validator = jsonschema.Draft7Validator(schema)
        return [e.message or "Validation error" for e in validator.iter_errors(args)]
    except jsonschema.SchemaError as e:
        logger.warning("safety: tool schema is invalid, skipping validation error=%s", e.message)
        return []


class ToolSafetyManager:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        require_confirmation: bool = True,
        timeout_seconds: float = 30,
        output_max_chars: int = DEFAULT_MAX_CHARS,
        authorizer: Optional[FixTargetAuthorizer] = None,
    ) -> None:
        self.registry = registry
        self.require_confirmation = require_confirmation
        self.timeout_seconds = timeout_seconds
        self.output_max_chars = output_max_chars
        self.authorizer = authorizer or FixTargetAuthorizer("investigate")

    def needs_confirmation(self, tool: Tool) -> bool:
        if tool.safety_level == SafetyLevel.DANGEROUS:
            return True
        return self.require_confirmation and tool.safety_level == SafetyLevel.CAUTIOUS

    async def safe_execute(
        self,
        tool: Tool,
        args: Dict[str, Any],
        sink: EventSink,
        cancel: Optional[CancelToken] = None,
        *,
        scope: Optional[FixTargetScope] = None,
    ) -> ToolResult:
        tok = cancel or CancelToken()
        args = dict(args or {})

        errors = validate_args(tool.parameters, args)
        if errors:
            logger.warning("safety: validation failed tool=%s errors=%s", tool.name, ", ".join(errors))
            return ToolResult.fail(f"Invalid arguments: {', '.join(errors)}", "INVALID_ARGUMENTS", recoverable=True)

        denied = self.authorizer.authorize(tool, args, scope)
        if denied is not None:
            return denied

        if self.needs_confirmation(tool):
            details = await tool.confirmation_details(args)
            if details:
                handler = getattr(sink, "on_tool_confirmation", None)
                if handler is None:
                    logger.error("safety: confirmation handler missing tool=%s", tool.name)
                    return ToolResult.fail(
                        "This operation requires user confirmation, but the confirmation system is not available.",
                        "NO_CONFIRMATION_HANDLER",
                        recoverable=False,
                    )
                try:
                    confirmed = await tok.race(handler(details))
                except OperationCancelled:
                    return ToolResult.fail("Operation cancelled during tool execution", "CANCELLED", recoverable=False)
                if not confirmed:
                    return ToolResult.fail("Operation cancelled by user", "USER_CANCELLED", recoverable=False)

        child = tok.child()
        try:
            result = await tok.race(self.registry.execute(tool.name, args, child), timeout=self.timeout_seconds)
        except OperationCancelled:
            child.cancel("turn cancelled")
            return ToolResult.fail("Operation cancelled during tool execution", "CANCELLED", recoverable=False)
        except asyncio.TimeoutError:
            child.cancel("timeout")
            logger.warning("safety: tool timeout tool=%s timeout=%ss", tool.name, self.timeout_seconds)
            return ToolResult.fail(
                f"{tool.name} timed out after {self.timeout_seconds:g} seconds",
                "TIMEOUT",
                recoverable=True,
                suggested_action="The operation took too long. Try narrowing your query.",
            )

        if result.success and result.agent_content:
            result = result.model_copy(update={"agent_content": truncate(result.agent_content, self.output_max_chars)})
        elif not result.success and result.error is not None:
            level = logging.WARNING if result.error.recoverable else logging.ERROR
            logger.log(
                level,
                "safety: tool error tool=%s code=%s recoverable=%s error=%s",
                tool.name,
                result.error.code,
                result.error.recoverable,
                result.error.message,
            )
        return result
