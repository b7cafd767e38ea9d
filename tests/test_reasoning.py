"""Tests for reasoning extraction."""

from __future__ import annotations

from types import SimpleNamespace

from agentdesk.ai.orchestration import ReasoningProcessor
from agentdesk.ai.orchestration.reasoning import extract_reasoning_from_message

from tests.helpers import chunk


def test_reasoning_then_content_produces_think_block() -> None:
    processor = ReasoningProcessor()
    pieces = []
    for item in (chunk(reasoning="a"), chunk(reasoning="b"), chunk("c")):
        prefix = processor.process_chunk(item)
        if prefix:
            pieces.append(prefix)
        content = item["choices"][0]["delta"].get("content")
        if content:
            pieces.append(content)
    pieces.append(processor.finalize())

    assert "".join(pieces) == "<think>ab</think>c"


def test_content_without_reasoning_passes_through() -> None:
    processor = ReasoningProcessor()

    assert processor.process_chunk(chunk("plain")) is None
    assert processor.finalize() == ""


def test_finalize_closes_open_block_once() -> None:
    processor = ReasoningProcessor()
    processor.process_chunk(chunk(reasoning="thinking"))

    assert processor.is_open
    assert processor.finalize() == "</think>"
    assert processor.finalize() == ""


def test_reasoning_field_alias_is_recognized() -> None:
    processor = ReasoningProcessor()
    alias = {"choices": [{"delta": {"reasoning": "via alias"}}]}

    assert processor.process_chunk(alias) == "<think>via alias"


def test_chunks_without_choices_are_ignored() -> None:
    assert ReasoningProcessor().process_chunk({"choices": []}) is None


def test_reasoning_from_sdk_extra_fields() -> None:
    message = SimpleNamespace(content="x", model_extra={"reasoning_content": "hidden"})

    assert extract_reasoning_from_message(message) == "hidden"
    assert extract_reasoning_from_message({"content": "x"}) is None
