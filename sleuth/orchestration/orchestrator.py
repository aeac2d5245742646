"""
The tool-calling loop for one conversational turn.

    INIT -> CONTEXT_READY -> (STREAMING <-> TOOL_EXECUTING)* -> FINALIZING -> DONE | FAILED

STREAMING drives the provider; every text delta goes through a per-segment
`ResponseClassifier` on its way to the sink. A segment that ends with tool calls moves to
TOOL_EXECUTING: calls run concurrently through the safety manager, each yields exactly one
`ToolResult` that is appended to history next to its call. Before streaming again the
history is passed through the observation masker.

The loop ends on a plain answer, a structured (JSON) answer, or a per-turn limit. Limits
finalize with whatever partial text exists. Provider failures are classified once here;
tool failures are folded back into history and never end the turn.

After cancellation is observed no further sink events are emitted.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sleuth.authz.policy import FixTargetScope
from sleuth.core.cancel import CancelToken, OperationCancelled
from sleuth.core.models import Message, ToolCallPart, ToolResult, ToolResultPart
from sleuth.evidence.extractor import extract_evidence, generate_result_preview
from sleuth.llm.errors import ClassifiedError, classify_error
from sleuth.llm.providers.base import Provider, StreamChunk
from sleuth.llm.resilience import (
    BrokenCircuitError,
    CircuitBreaker,
    RetryBudget,
    RetryConfig,
    counts_against_breaker,
    retry_with_backoff,
)
from sleuth.orchestration.loop_protection import LoopDetector
from sleuth.orchestration.masker import MaskingPolicy, mask_observations
from sleuth.orchestration.safety import ToolSafetyManager
from sleuth.streaming.classifier import ClassifiedResponse, ResponseClassifier
from sleuth.streaming.events import ActivityEvent, EventSink
from sleuth.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "The response was interrupted. Here is what was generated before the error."


class TurnState(str, Enum):
    INIT = "INIT"
    CONTEXT_READY = "CONTEXT_READY"
    STREAMING = "STREAMING"
    TOOL_EXECUTING = "TOOL_EXECUTING"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class TurnMetrics:
    iterations: int = 0
    tool_calls: int = 0
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    retries: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "iterations": self.iterations,
            "tool_calls": self.tool_calls,
            "duration_ms": self.duration_ms,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "retries": self.retries,
        }


@dataclass
class OrchestrationResult:
    success: bool
    response: str = ""
    is_json: bool = False
    preamble: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    classified_error: Optional[ClassifiedError] = None
    metrics: TurnMetrics = field(default_factory=TurnMetrics)
    messages: List[Message] = field(default_factory=list)


@dataclass
class _Segment:
    """Output of one STREAMING pass."""

    classifier: ResponseClassifier
    text: str = ""
    tool_calls: List[ToolCallPart] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
    chunks: int = 0


class _GuardedSink:
    """Forwards to the caller's sink until the turn is cancelled."""

    def __init__(self, sink: EventSink, cancel: CancelToken) -> None:
        self._sink = sink
        self._cancel = cancel

    def __getattr__(self, name: str) -> Any:
        target = getattr(self._sink, name)
        if not callable(target) or name == "on_tool_confirmation":
            return target

        def _call(*args: Any, **kwargs: Any) -> Any:
            if self._cancel.cancelled:
                return None
            return target(*args, **kwargs)

        return _call


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class AgentOrchestrator:
    def __init__(
        self,
        registry: ToolRegistry,
        safety: ToolSafetyManager,
        *,
        max_iterations: int = 20,
        max_tool_calls: int = 50,
        max_repeated_calls: int = 1,
        retry_budget: int = 10,
        retry_config: Optional[RetryConfig] = None,
        masking_policy: Optional[MaskingPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.registry = registry
        self.safety = safety
        self.loop_detector = LoopDetector(max_iterations, max_tool_calls, max_repeated_calls)
        self.retry_budget_size = retry_budget
        self.retry_config = retry_config or RetryConfig()
        self.masking_policy = masking_policy or MaskingPolicy()
        self.breaker = breaker
        self.state = TurnState.INIT

    # ---- streaming ----------------------------------------------------

    async def _stream_segment(
        self,
        seg: _Segment,
        provider: Provider,
        system_prompt: str,
        history: List[Message],
        cancel: CancelToken,
    ) -> None:
        if self.breaker is not None:
            self.breaker.before_call()
        try:
            stream = provider.stream_completion(
                history,
                system_prompt=system_prompt,
                tools=self.registry.to_definitions(),
                cancel=cancel,
            )
            async for chunk in stream:
                self._absorb(seg, chunk)
        except OperationCancelled:
            raise
        except Exception as e:
            if self.breaker is not None and not cancel.cancelled:
                if counts_against_breaker(classify_error(provider.name, e, model=provider.model_id)):
                    self.breaker.record_failure()
            raise
        if self.breaker is not None:
            self.breaker.record_success()

    @staticmethod
    def _absorb(seg: _Segment, chunk: StreamChunk) -> None:
        seg.chunks += 1
        if chunk.type == "text" and chunk.content:
            seg.text += chunk.content
            seg.classifier.feed(chunk.content)
        elif chunk.type == "tool_calls":
            seg.tool_calls.extend(chunk.tool_calls)
        elif chunk.type == "usage":
            seg.usage = dict(chunk.usage)

    # ---- tool execution -----------------------------------------------

    async def _execute_one(
        self,
        call: ToolCallPart,
        sink: Any,
        cancel: CancelToken,
        scope: Optional[FixTargetScope],
    ) -> Tuple[ToolResult, int]:
        if cancel.cancelled:
            return ToolResult.fail("Operation cancelled during tool execution", "CANCELLED", recoverable=False), 0
        tool = self.registry.get(call.name)
        if tool is None:
            return ToolResult.fail(f"Tool '{call.name}' not found", "TOOL_NOT_FOUND", recoverable=True), 0
        start = time.monotonic()
        result = await self.safety.safe_execute(tool, call.arguments, sink, cancel, scope=scope)
        return result, _elapsed_ms(start)

    def _report(
        self,
        sink: Any,
        call: ToolCallPart,
        result: ToolResult,
        tool_ms: int,
        total_ms: int,
    ) -> None:
        sink.on_tool_result(result, call.name, call.arguments, tool_ms, total_ms, call.tool_call_id)
        preview = generate_result_preview(call.name, call.arguments, result)
        if not result.success and result.error is not None:
            preview = preview or result.error.message
        sink.on_activity(
            ActivityEvent(
                tool_call_id=call.tool_call_id,
                tool=call.name,
                status="completed" if result.success else "failed",
                preview=(preview or "")[:100],
                duration_ms=tool_ms,
            )
        )
        for ev in extract_evidence(call.name, call.arguments, result, call.tool_call_id):
            sink.on_evidence(ev)

    async def _run_tools(
        self,
        calls: List[ToolCallPart],
        iteration: int,
        think_ms: int,
        sink: Any,
        cancel: CancelToken,
        scope: Optional[FixTargetScope],
    ) -> List[ToolResultPart]:
        results: List[Optional[ToolResult]] = [None] * len(calls)
        looped = set()

        for i, call in enumerate(calls):
            repeats = self.loop_detector.count_repeated_calls(call.name, call.arguments, iteration)
            if repeats >= self.loop_detector.max_repeated_calls:
                res = ToolResult.fail(
                    f"This tool has been called {repeats} times with the same arguments. "
                    "This suggests a loop. Please try a different approach.",
                    "LOOP_DETECTED",
                    recoverable=False,
                    suggested_action=self.loop_detector.loop_hint(call.name, call.arguments),
                )
                results[i] = res
                looped.add(i)
                logger.warning(
                    "orchestrator: loop detected tool=%s repeats=%s iteration=%s", call.name, repeats, iteration
                )
                self._report(sink, call, res, 0, think_ms if i == 0 else 0)

        run_idx = [i for i in range(len(calls)) if i not in looped]
        for i in run_idx:
            call = calls[i]
            self.loop_detector.record_call(call.name, call.arguments, iteration)
            sink.on_tool_call(call.name, call.arguments, call.tool_call_id)
            sink.on_activity(ActivityEvent(tool_call_id=call.tool_call_id, tool=call.name, status="pending"))

        if run_idx:
            logger.info(
                "orchestrator: executing tools=[%s] iteration=%s",
                ",".join(calls[i].name for i in run_idx),
                iteration,
            )

        settled = await asyncio.gather(
            *(self._execute_one(calls[i], sink, cancel, scope) for i in run_idx),
            return_exceptions=True,
        )

        for i, outcome in zip(run_idx, settled):
            call = calls[i]
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("orchestrator: tool crashed tool=%s error=%s", call.name, outcome)
                res, tool_ms = (
                    ToolResult.fail(str(outcome) or "Unknown error", "EXECUTION_ERROR", recoverable=True),
                    0,
                )
            else:
                res, tool_ms = outcome
                if res.success:
                    logger.info("orchestrator: tool completed tool=%s duration=%sms", call.name, tool_ms)
            results[i] = res
            self._report(sink, call, res, tool_ms, think_ms + tool_ms if i == 0 else tool_ms)

        return [
            ToolResultPart(tool_call_id=c.tool_call_id, name=c.name, result=r)  # type: ignore[arg-type]
            for c, r in zip(calls, results)
        ]

    # ---- the loop -----------------------------------------------------

    async def run(
        self,
        provider: Provider,
        system_prompt: str,
        messages: List[Message],
        sink: EventSink,
        cancel: Optional[CancelToken] = None,
        *,
        scope: Optional[FixTargetScope] = None,
    ) -> OrchestrationResult:
        tok = cancel or CancelToken()
        out = _GuardedSink(sink, tok)
        start = time.monotonic()
        metrics = TurnMetrics()
        history: List[Message] = list(messages)
        full_text = ""
        budget = RetryBudget(self.retry_budget_size)
        self.loop_detector.reset()
        self.state = TurnState.CONTEXT_READY

        def finish(**kw: Any) -> OrchestrationResult:
            metrics.duration_ms = _elapsed_ms(start)
            metrics.retries = budget.used
            ok = kw.get("success", False)
            self.state = TurnState.DONE if ok else TurnState.FAILED
            return OrchestrationResult(metrics=metrics, messages=history, **kw)

        def cancelled() -> OrchestrationResult:
            logger.info("orchestrator: cancelled iteration=%s", metrics.iterations)
            return finish(success=False, error="Operation cancelled by user", cancelled=True, response=full_text)

        while metrics.iterations < self.loop_detector.max_iterations:
            if tok.cancelled:
                return cancelled()
            metrics.iterations += 1
            iteration = metrics.iterations
            iter_start = time.monotonic()
            out.on_debug("iteration", {"iteration": iteration, "messages": len(history)})

            # ---- STREAMING
            self.state = TurnState.STREAMING
            attempts: List[_Segment] = []

            async def attempt() -> _Segment:
                seg = _Segment(classifier=ResponseClassifier(out.on_text_chunk, on_thinking=out.on_thinking))
                attempts.append(seg)
                await self._stream_segment(seg, provider, system_prompt, history, tok)
                return seg

            def may_retry(ce: ClassifiedError) -> bool:
                # Only before anything reached the caller, and never once the user cancelled.
                if tok.cancelled or isinstance(ce.original, BrokenCircuitError):
                    return False
                return not (attempts and attempts[-1].chunks)

            try:
                segment = await retry_with_backoff(
                    attempt,
                    provider=provider.name,
                    model=provider.model_id,
                    budget=budget,
                    config=self.retry_config,
                    should_retry=may_retry,
                )
            except OperationCancelled:
                return cancelled()
            except Exception as e:
                if tok.cancelled:
                    return cancelled()
                partial = attempts[-1] if attempts and attempts[-1].chunks else None
                if partial is not None:
                    full_text += partial.text
                    partial.classifier.finalize()
                return self._stream_failure(e, provider, full_text, partial is not None, out, finish)

            metrics.input_tokens += int(segment.usage.get("input_tokens") or 0)
            metrics.output_tokens += int(segment.usage.get("output_tokens") or 0)
            full_text += segment.text
            last = segment.classifier.finalize()
            think_ms = _elapsed_ms(iter_start)

            if not segment.tool_calls:
                self.state = TurnState.FINALIZING
                return self._finish_answer(full_text, last, finish)

            if last.is_json:
                logger.info(
                    "orchestrator: structured answer with tool calls, ignoring calls count=%s",
                    len(segment.tool_calls),
                )
                self.state = TurnState.FINALIZING
                return self._finish_answer(full_text, last, finish)

            metrics.tool_calls += len(segment.tool_calls)
            if metrics.tool_calls > self.loop_detector.max_tool_calls:
                limit = self.loop_detector.max_tool_calls
                logger.warning("orchestrator: tool call limit exceeded total=%s max=%s", metrics.tool_calls, limit)
                self.state = TurnState.FINALIZING
                msg = (
                    f"Tool call limit exceeded ({limit}). "
                    "The investigation is too broad. Try asking about specific services."
                )
                return finish(success=True, response=full_text or msg, error=msg)

            # ---- TOOL_EXECUTING
            self.state = TurnState.TOOL_EXECUTING
            calls = [
                c if c.tool_call_id else c.model_copy(update={"tool_call_id": uuid.uuid4().hex})
                for c in segment.tool_calls
            ]
            history.append(Message(role="assistant", parts=list(calls)))
            result_parts = await self._run_tools(calls, iteration, think_ms, out, tok, scope)
            history.append(Message(role="user", parts=list(result_parts)))

            if tok.cancelled:
                return cancelled()

            masked = mask_observations(history, self.masking_policy)
            if masked.masked:
                logger.info(
                    "orchestrator: observation masking applied masked_parts=%s saved_tokens=%s",
                    masked.stats.masked_parts,
                    masked.stats.saved_tokens,
                )
                history = masked.messages

        limit = self.loop_detector.max_iterations
        logger.warning(
            "orchestrator: iteration limit reached iterations=%s tool_calls=%s", metrics.iterations, metrics.tool_calls
        )
        self.state = TurnState.FINALIZING
        msg = (
            f"Investigation incomplete - hit iteration limit ({limit}). "
            "This may indicate the issue is complex or unclear from available data."
        )
        return finish(success=True, response=full_text or msg, error=msg)

    @staticmethod
    def _finish_answer(full_text: str, last: ClassifiedResponse, finish: Any) -> OrchestrationResult:
        if last.is_json:
            return finish(success=True, response=last.response, is_json=True, preamble=last.preamble)
        return finish(success=True, response=full_text)

    @staticmethod
    def _stream_failure(
        error: BaseException,
        provider: Provider,
        full_text: str,
        had_chunks: bool,
        sink: Any,
        finish: Any,
    ) -> OrchestrationResult:
        classified = classify_error(provider.name, error, model=provider.model_id)
        if isinstance(error, BrokenCircuitError):
            logger.warning("orchestrator: circuit breaker rejected request provider=%s", provider.name)
            sink.on_error(classified)
            return finish(success=False, error="Provider circuit breaker is open", classified_error=classified)

        if full_text or had_chunks:
            logger.warning(
                "orchestrator: stream error with partial results, preserving text_len=%s error=%s",
                len(full_text),
                classified.message,
            )
            return finish(
                success=True,
                response=full_text or INTERRUPTED_MESSAGE,
                error=f"Stream interrupted: {classified.message}",
                classified_error=classified,
            )

        logger.error(
            "orchestrator: stream error provider=%s category=%s error=%s",
            provider.name,
            classified.category.value,
            classified.message,
        )
        sink.on_error(classified)
        return finish(success=False, error=classified.message or "Provider error", classified_error=classified)
