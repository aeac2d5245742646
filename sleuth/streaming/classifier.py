"""
Separate prose from a structured JSON reply while the model is still streaming.

States (terminal once left):

    UNCLASSIFIED -> TEXT | JSON_RAW | JSON_FENCED

- JSON_RAW: the reply (ignoring leading whitespace) starts with `{` and has a `"type"` key
  within the first RAW_WINDOW chars.
- JSON_FENCED: a ``` fence (optionally tagged json) whose body starts with `{` opens within
  the first PREAMBLE_WINDOW chars. Text before the fence is the preamble.
- TEXT: neither is possible any more.

A transition is taken only once no continuation of the buffered text could lead to a
different outcome, so the final classification depends on the full text alone and never on
how the model split it into fragments. While UNCLASSIFIED, leading prose that no continuation
can turn into JSON is released to the prose sink; anything from a backtick run that could
still open a fence is held back. Leading whitespace of the reply is never sent as prose.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

RAW_WINDOW = 200
PREAMBLE_WINDOW = 400

_TYPE_KEY = '"type"'
_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\r?\n?\s*\{", re.IGNORECASE)
# A suffix that could still grow into a fence opening.
_PARTIAL_FENCE_RE = re.compile(r"`{1,2}|```(?:j|js|jso|json)?[ \t]*\r?\n?\s*", re.IGNORECASE)
_LEADING_FENCE_RE = re.compile(r"^```[a-zA-Z]*[ \t]*\r?\n?")
_TRAILING_FENCE_RE = re.compile(r"\s*```\s*$")


class StreamState(str, Enum):
    UNCLASSIFIED = "UNCLASSIFIED"
    TEXT = "TEXT"
    JSON_RAW = "JSON_RAW"
    JSON_FENCED = "JSON_FENCED"


@dataclass(frozen=True)
class ClassifiedResponse:
    response: str
    is_json: bool
    preamble: Optional[str] = None


def _raw_match(s: str) -> bool:
    return s.startswith("{") and _TYPE_KEY in s[:RAW_WINDOW]


def _raw_possible(s: str) -> bool:
    return s.startswith("{") and len(s) < RAW_WINDOW


def _fence_match(s: str) -> Optional[re.Match]:
    m = _FENCE_RE.search(s)
    if m is not None and m.start() < PREAMBLE_WINDOW:
        return m
    return None


def _fence_possible(s: str) -> bool:
    if len(s) < PREAMBLE_WINDOW:
        return True
    i = s.find("`")
    while 0 <= i < PREAMBLE_WINDOW:
        if _PARTIAL_FENCE_RE.fullmatch(s, i):
            return True
        i = s.find("`", i + 1)
    return False


def prose_safe_len(text: str) -> int:
    """Length of the prefix of `text` that stays prose whatever is streamed next."""
    s = text.lstrip()
    if not s or s.startswith("{"):
        return 0
    i = s.find("`")
    while i >= 0 and not _PARTIAL_FENCE_RE.fullmatch(s, i):
        i = s.find("`", i + 1)
    head = (s if i < 0 else s[:i]).rstrip()
    return len(text) - len(s) + len(head) if head else 0


def strip_fences(text: str) -> str:
    t = text.strip()
    t = _LEADING_FENCE_RE.sub("", t, count=1)
    t = _TRAILING_FENCE_RE.sub("", t)
    return t.strip()


def classify_text(text: str, *, final: bool = True) -> StreamState:
    """
    Decide the state for `text`.

    With final=False the answer is UNCLASSIFIED while a longer text could still change it.
    """
    s = text.lstrip()
    if not s:
        return StreamState.UNCLASSIFIED if not final else StreamState.TEXT
    if _raw_match(s):
        return StreamState.JSON_RAW
    if not final and _raw_possible(s):
        return StreamState.UNCLASSIFIED
    if _fence_match(s) is not None:
        return StreamState.JSON_FENCED
    if not final and _fence_possible(s):
        return StreamState.UNCLASSIFIED
    return StreamState.TEXT


def _split_fenced(text: str) -> ClassifiedResponse:
    s = text.lstrip()
    m = _fence_match(s)
    if m is None:
        return ClassifiedResponse(response=text, is_json=False)
    preamble = s[: m.start()].strip() or None
    body = s[m.end() - 1 :]
    return ClassifiedResponse(response=strip_fences(body), is_json=True, preamble=preamble)


class ResponseClassifier:
    """
    Feed fragments with `feed()`; read the outcome with `finalize()`.

    `on_text` receives prose only. Concatenated, it is the reply without leading whitespace
    for TEXT, the preamble for a fenced JSON reply, and nothing for raw JSON.
    """

    def __init__(
        self,
        on_text: Callable[[str], None],
        *,
        on_thinking: Optional[Callable[[str], None]] = None,
        label: str = "",
    ) -> None:
        self._on_text = on_text
        self._on_thinking = on_thinking
        self._label = label or "none"
        self._chunks: List[str] = []
        self._buffer = ""
        self._released = 0
        self._started = False
        self.state = StreamState.UNCLASSIFIED
        self.preamble: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    def _emit(self, text: str) -> None:
        if not text:
            return
        if not self._started:
            text = text.lstrip()
            if not text:
                return
            self._started = True
        self._on_text(text)

    def feed(self, fragment: str) -> None:
        if not fragment:
            return
        self._chunks.append(fragment)

        if self.state == StreamState.TEXT:
            self._emit(fragment)
            return
        if self.state != StreamState.UNCLASSIFIED:
            return

        self._buffer += fragment
        self._transition(classify_text(self._buffer, final=False))
        if self.state == StreamState.UNCLASSIFIED:
            safe = prose_safe_len(self._buffer)
            if safe > self._released:
                self._emit(self._buffer[self._released : safe])
                self._released = safe

    def _transition(self, new_state: StreamState) -> None:
        if new_state == StreamState.UNCLASSIFIED:
            return
        self.state = new_state
        buffered, self._buffer = self._buffer, ""
        released, self._released = buffered[: self._released], 0

        if new_state == StreamState.TEXT:
            self._emit(buffered[len(released) :])
            return

        logger.info("stream: structured response detected state=%s session=%s", new_state.value, self._label)
        if self._on_thinking is not None:
            self._on_thinking("Generating structured report...")
        if new_state == StreamState.JSON_FENCED:
            self.preamble = _split_fenced(buffered).preamble
            self._emit((self.preamble or "")[len(released.lstrip()) :])

    def finalize(self) -> ClassifiedResponse:
        if self.state == StreamState.UNCLASSIFIED:
            self._transition(classify_text(self._buffer, final=True))

        full = self.text
        if self.state == StreamState.JSON_RAW:
            return ClassifiedResponse(response=strip_fences(full), is_json=True)
        if self.state == StreamState.JSON_FENCED:
            out = _split_fenced(full)
            return ClassifiedResponse(response=out.response, is_json=True, preamble=out.preamble)
        return ClassifiedResponse(response=full, is_json=False)


def classify_response(text: str) -> ClassifiedResponse:
    """Classify a complete reply in one shot (same result as streaming it)."""
    sink: List[str] = []
    c = ResponseClassifier(sink.append)
    c.feed(text)
    return c.finalize()
