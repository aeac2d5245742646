"""
Provider error classification.

Every provider failure that reaches the orchestrator boundary is turned into one
`ClassifiedError`. Classification works on duck-typed attributes (`status_code`, `status`,
`code`, `response.status_code`, `headers`) and message text so it covers the Anthropic,
OpenAI and Google SDK exceptions that LangChain re-raises, without importing any of them.

`classify_error` never raises: unknown shapes fall back to AMBIGUOUS.
"""

from __future__ import annotations

import asyncio
import email.utils
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sleuth.core.cancel import OperationCancelled

MAX_RETRY_AFTER_SECONDS = 300

_RETRY_AFTER_TEXT_RE = re.compile(r"retry[\s_-]*after[:\s]*(\d+(?:\.\d+)?)", re.IGNORECASE)


class ErrorCategory(str, Enum):
    CONNECTION = "connection"
    PROTOCOL = "protocol"
    TOOL = "tool"
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMITED = "rate-limited"
    TRANSIENT = "transient"
    DETERMINISTIC = "deterministic"
    AMBIGUOUS = "ambiguous"
    CANCELLED = "cancelled"


_RETRYABLE = {
    ErrorCategory.CONNECTION,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMITED,
    ErrorCategory.TRANSIENT,
    ErrorCategory.AMBIGUOUS,
}


def is_retryable(category: ErrorCategory) -> bool:
    return category in _RETRYABLE


class ProviderStreamError(Exception):
    """
    Raised by provider adapters for failures detected while parsing a stream
    (malformed tool arguments, empty responses, bad finish reasons).
    """

    def __init__(self, message: str, *, category: ErrorCategory, finish_reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.category = category
        self.finish_reason = finish_reason


@dataclass
class ClassifiedError:
    category: ErrorCategory
    provider: str
    original: BaseException
    retryable: bool
    model: str = ""
    http_status: Optional[int] = None
    finish_reason: Optional[str] = None
    retry_after: Optional[float] = None

    @property
    def message(self) -> str:
        return str(self.original) or type(self.original).__name__

    @property
    def is_auth_error(self) -> bool:
        return self.category == ErrorCategory.AUTH

    @property
    def user_message(self) -> str:
        model = self.model or self.provider or "The model"
        if self.category == ErrorCategory.RATE_LIMITED:
            if self.retry_after:
                return f"{model} is rate limited. Retrying in {int(self.retry_after)}s..."
            return f"{model} is rate limited. Please wait and try again."
        if self.category in (ErrorCategory.TRANSIENT, ErrorCategory.CONNECTION):
            return f"{model} is temporarily unavailable. Retrying..."
        if self.category == ErrorCategory.TIMEOUT:
            return f"{model} took too long to respond. Please try again."
        if self.category == ErrorCategory.AUTH:
            return f"{self.provider} API key is invalid or lacks permission. Check AI agent configuration."
        if self.category == ErrorCategory.DETERMINISTIC:
            return "Request failed. Please try a different approach."
        if self.category == ErrorCategory.CANCELLED:
            return "Request was cancelled."
        return "Something went wrong. Please try again."

    @property
    def suggested_action(self) -> Optional[str]:
        if self.category in (ErrorCategory.RATE_LIMITED, ErrorCategory.AMBIGUOUS, ErrorCategory.TIMEOUT):
            return "retry"
        if self.category in (ErrorCategory.TRANSIENT, ErrorCategory.CONNECTION):
            return "switch-model"
        if self.category == ErrorCategory.AUTH:
            return "check-config"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.category.value,
            "category": self.category.value,
            "provider": self.provider,
            "model": self.model or None,
            "message": self.message,
            "user_message": self.user_message,
            "suggested_action": self.suggested_action,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
            "http_status": self.http_status,
            "finish_reason": self.finish_reason,
        }


def _as_int(v: Any) -> Optional[int]:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, str) and v.strip().isdigit():
        return int(v.strip())
    return None


def _http_status(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "code", "http_status"):
        n = _as_int(getattr(error, attr, None))
        if n is not None and 100 <= n <= 599:
            return n
    resp = getattr(error, "response", None)
    n = _as_int(getattr(resp, "status_code", None))
    if n is not None and 100 <= n <= 599:
        return n
    return None


def _header(error: BaseException, name: str) -> Optional[str]:
    for holder in (error, getattr(error, "response", None)):
        headers = getattr(holder, "headers", None)
        if headers is None:
            continue
        try:
            val = headers.get(name)
            if val is None:
                val = headers.get(name.lower())
        except Exception:
            continue
        if val is not None:
            return str(val)
    return None


def extract_retry_after(error: BaseException) -> Optional[float]:
    """Seconds to wait before retrying, capped at MAX_RETRY_AFTER_SECONDS; None when unknown."""
    raw: Optional[Any] = getattr(error, "retry_after", None)
    if raw is None:
        raw = _header(error, "Retry-After")
    if raw is None:
        m = _RETRY_AFTER_TEXT_RE.search(str(error))
        raw = m.group(1) if m else None
    if raw is None:
        return None

    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        seconds = None
    if seconds is not None:
        if seconds < 0:
            return None
        return min(seconds, float(MAX_RETRY_AFTER_SECONDS))

    try:
        ts = email.utils.parsedate_to_datetime(str(raw)).timestamp()
    except (TypeError, ValueError, IndexError):
        return None
    delta = ts - time.time()
    if delta <= 0:
        return 0.0
    return min(float(int(delta + 0.999)), float(MAX_RETRY_AFTER_SECONDS))


def _categorize(error: BaseException, status: Optional[int]) -> ErrorCategory:
    if isinstance(error, (OperationCancelled, asyncio.CancelledError)):
        return ErrorCategory.CANCELLED
    category = getattr(error, "category", None)
    if isinstance(category, ErrorCategory):
        return category

    name = type(error).__name__
    up = str(error).upper()

    if status in (401, 403) or name in ("AuthenticationError", "PermissionDeniedError", "Unauthenticated"):
        return ErrorCategory.AUTH
    if "INVALID API KEY" in up or "INVALID X-API-KEY" in up or "PERMISSION_DENIED" in up or "PERMISSION DENIED" in up:
        return ErrorCategory.AUTH
    if "UNAUTHENTICATED" in up:
        return ErrorCategory.AUTH

    if status == 429 or name in ("RateLimitError", "ResourceExhausted", "TooManyRequests"):
        return ErrorCategory.RATE_LIMITED
    if ("RATE" in up and "LIMIT" in up) or "QUOTA" in up or "RESOURCE_EXHAUSTED" in up:
        return ErrorCategory.RATE_LIMITED

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) or status in (408, 504):
        return ErrorCategory.TIMEOUT
    if name in ("APITimeoutError", "DeadlineExceeded", "ReadTimeout", "ConnectTimeout"):
        return ErrorCategory.TIMEOUT
    if "DEADLINE_EXCEEDED" in up or "TIMED OUT" in up:
        return ErrorCategory.TIMEOUT

    if (status is not None and status >= 500) or status == 409:
        return ErrorCategory.TRANSIENT
    if name in (
        "InternalServerError",
        "APIConnectionError",
        "ConflictError",
        "ServiceUnavailable",
        "BrokenCircuitError",
        "ConnectionError",
        "ConnectionResetError",
    ):
        return ErrorCategory.TRANSIENT
    if "OVERLOADED" in up or "UNAVAILABLE" in up or "CONNECTION RESET" in up or "MALFORMED_FUNCTION_CALL" in up:
        return ErrorCategory.TRANSIENT

    if status in (400, 404, 422) or name in ("BadRequestError", "NotFoundError", "UnprocessableEntityError"):
        return ErrorCategory.DETERMINISTIC
    if "CONTEXT LENGTH" in up or "CONTEXT_LENGTH" in up or "INVALID REQUEST" in up or "INVALID_ARGUMENT" in up:
        return ErrorCategory.DETERMINISTIC

    return ErrorCategory.AMBIGUOUS


def classify_error(provider: str, error: BaseException, *, model: str = "") -> ClassifiedError:
    try:
        status = _http_status(error)
        category = _categorize(error, status)
        retry_after = extract_retry_after(error)
    except Exception:
        status, category, retry_after = None, ErrorCategory.AMBIGUOUS, None
    return ClassifiedError(
        category=category,
        provider=str(provider or "unknown"),
        original=error,
        retryable=is_retryable(category),
        model=model,
        http_status=status,
        finish_reason=getattr(error, "finish_reason", None),
        retry_after=retry_after,
    )
