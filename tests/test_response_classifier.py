"""
Unit tests for streaming prose / structured-answer classification.
"""

from __future__ import annotations

import json
from typing import Callable, List

import pytest

from sleuth.streaming.classifier import (
    PREAMBLE_WINDOW,
    ClassifiedResponse,
    ResponseClassifier,
    StreamState,
    classify_response,
    classify_text,
    prose_safe_len,
    strip_fences,
)

FENCED = 'Here are the findings:\n\n```json\n{"type":"x"}\n```'
RAW = '{"type": "investigation_complete", "summary": "OOMKilled", "findings": []}'
PROSE = "The api pod is crash looping because the DATABASE_URL secret is missing."


def _whole(text: str) -> List[str]:
    return [text]


def _chars(text: str) -> List[str]:
    return list(text)


def _sevens(text: str) -> List[str]:
    return [text[i : i + 7] for i in range(0, len(text), 7)]


def _run(fragments: List[str]):
    prose: List[str] = []
    thinking: List[str] = []
    c = ResponseClassifier(prose.append, on_thinking=thinking.append)
    for f in fragments:
        c.feed(f)
    return c.finalize(), "".join(prose), thinking, c


SPLITS: List[Callable[[str], List[str]]] = [_whole, _chars, _sevens]


@pytest.mark.parametrize("split", SPLITS)
def test_fenced_answer_emits_only_preamble(split) -> None:
    result, prose, thinking, c = _run(split(FENCED))

    assert c.state == StreamState.JSON_FENCED
    assert result.is_json is True
    assert result.preamble == "Here are the findings:"
    assert json.loads(result.response) == {"type": "x"}
    assert prose == "Here are the findings:"
    assert "{" not in prose
    assert thinking == ["Generating structured report..."]


@pytest.mark.parametrize("split", SPLITS)
def test_raw_json_answer_emits_no_prose(split) -> None:
    result, prose, _thinking, c = _run(split("  \n" + RAW))

    assert c.state == StreamState.JSON_RAW
    assert result == ClassifiedResponse(response=RAW, is_json=True)
    assert prose == ""


@pytest.mark.parametrize("split", SPLITS)
def test_prose_is_forwarded_unchanged(split) -> None:
    result, prose, thinking, c = _run(split(PROSE))

    assert c.state == StreamState.TEXT
    assert result.is_json is False
    assert result.response == PROSE
    assert prose == PROSE
    assert thinking == []


@pytest.mark.parametrize("split", SPLITS)
def test_long_prose_streams_before_finalize(split) -> None:
    text = "log line without code\n" * 40
    prose: List[str] = []
    c = ResponseClassifier(prose.append)
    for f in split(text):
        c.feed(f)

    assert c.state == StreamState.TEXT
    assert "".join(prose) == text
    assert c.finalize().response == text


def test_brace_without_type_key_is_text() -> None:
    result = classify_response('{"note": "not a report"}')
    assert result.is_json is False


def test_fence_after_preamble_window_is_text() -> None:
    text = "x" * (PREAMBLE_WINDOW + 10) + '\n```json\n{"type":"x"}\n```'
    assert classify_response(text).is_json is False


def test_classification_waits_while_outcome_is_open() -> None:
    assert classify_text("{", final=False) == StreamState.UNCLASSIFIED
    assert classify_text("Here ``", final=False) == StreamState.UNCLASSIFIED
    assert classify_text("Here ``", final=True) == StreamState.TEXT
    assert classify_text("", final=True) == StreamState.TEXT


def test_strip_fences() -> None:
    assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_fences('  {"a": 1}  ') == '{"a": 1}'


def test_split_invariance_across_all_cut_points() -> None:
    expected = classify_response(FENCED)
    for cut in range(1, len(FENCED)):
        result, prose, _thinking, _c = _run([FENCED[:cut], FENCED[cut:]])
        assert result == expected
        assert prose == "Here are the findings:"


def test_short_prose_streams_before_finalize() -> None:
    prose: List[str] = []
    c = ResponseClassifier(prose.append)
    for f in _sevens(PROSE):
        c.feed(f)

    assert c.state == StreamState.UNCLASSIFIED
    assert "".join(prose) == PROSE
    c.finalize()
    assert "".join(prose) == PROSE


def test_prose_held_back_only_from_a_possible_fence() -> None:
    prose: List[str] = []
    c = ResponseClassifier(prose.append)
    c.feed("Run `kubectl get pods` then check ")
    c.feed("``")

    assert "".join(prose) == "Run `kubectl get pods` then check"
    c.feed("`json\n")
    assert "".join(prose) == "Run `kubectl get pods` then check"
    c.feed('{"type": "x"}\n```')

    result = c.finalize()
    assert result.is_json is True
    assert result.preamble == "Run `kubectl get pods` then check"
    assert "".join(prose) == result.preamble


def test_prose_safe_len() -> None:
    assert prose_safe_len("") == 0
    assert prose_safe_len('  {"type"') == 0
    assert prose_safe_len("Findings:\n\n``") == len("Findings:")
    assert prose_safe_len("\n\nAll good. ") == len("\n\nAll good.")
    assert prose_safe_len("```yaml\nreplicas: 2") == len("```yaml\nreplicas: 2")


@pytest.mark.parametrize("split", SPLITS)
def test_leading_whitespace_is_not_sent_as_prose(split) -> None:
    result, prose, _thinking, _c = _run(split("\n\n" + PROSE))

    assert result.response == "\n\n" + PROSE
    assert prose == PROSE
