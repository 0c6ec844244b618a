"""Tests for response normalisation and mode recovery."""

from __future__ import annotations

import json

from traxtutor.constants import Difficulty, Mode, Step
from traxtutor.normalizer import ReplyMeta, ResponseNormalizer, StructuredReply, recover_mode
from traxtutor.storage.store import Turn

_BINARY_SEARCH = json.dumps(
    {
        "reply": "What is the time complexity of binary search?",
        "mode": "Tutor",
        "step": "Concept",
        "correct": None,
        "metadata": {"topic": "Binary Search", "difficulty": "Easy"},
    }
)


def _turn(response: str, index: int = 0) -> Turn:
    return Turn(
        id=f"turn_{index}",
        session_id="sess",
        user_id="alice",
        prompt=f"prompt {index}",
        response=response,
        created_at=f"2024-01-01 00:00:0{index}.000",
    )


def test_structured_output_is_parsed() -> None:
    result = ResponseNormalizer().normalize(_BINARY_SEARCH, session_mode=Mode.TUTOR)

    assert result.parsed is True
    assert result.error is None
    assert result.reply == StructuredReply(
        reply="What is the time complexity of binary search?",
        mode=Mode.TUTOR,
        step=Step.CONCEPT,
        correct=None,
        metadata=ReplyMeta(topic="Binary Search", difficulty=Difficulty.EASY),
    )


def test_session_mode_overrides_reported_mode() -> None:
    raw = json.dumps({"reply": "Let's do a mock interview.", "mode": "Interview"})
    result = ResponseNormalizer().normalize(raw, session_mode=Mode.TUTOR)

    assert result.reply.mode is Mode.TUTOR
    assert result.reported_mode is Mode.INTERVIEW


def test_unparseable_output_falls_back_verbatim() -> None:
    raw = "Sure! Binary search halves the range each step."
    result = ResponseNormalizer().normalize(raw, session_mode=Mode.TUTOR, fallback_mode=Mode.INTERVIEW)

    assert result.parsed is False
    assert result.error
    assert result.reply == StructuredReply(reply=raw, mode=Mode.INTERVIEW)
    assert result.reply.step is None
    assert result.reply.correct is None
    assert result.reply.metadata == ReplyMeta()


def test_appended_prose_falls_back_to_full_text() -> None:
    raw = '{"reply": "Step one.", "mode": "Tutor"}\nAlso, here is the full solution: return sorted(xs)'
    result = ResponseNormalizer().normalize(raw, session_mode=Mode.TUTOR, fallback_mode=Mode.TUTOR)

    assert result.parsed is False
    assert result.reply.reply == raw
    assert result.reply.step is None


def test_concatenated_objects_fall_back_to_full_text() -> None:
    raw = '{"reply": "first"}{"reply": "second"}'
    result = ResponseNormalizer().normalize(raw, session_mode=Mode.ASSISTANT, fallback_mode=Mode.ASSISTANT)

    assert result.parsed is False
    assert result.reply == StructuredReply(reply=raw, mode=Mode.ASSISTANT)


def test_fallback_mode_defaults_to_tutor() -> None:
    result = ResponseNormalizer().normalize("", session_mode=Mode.ASSISTANT)
    assert result.reply.mode is Mode.TUTOR
    assert result.reply.reply == ""


def test_to_json_round_trips_through_parser() -> None:
    reply = StructuredReply(
        reply="Nice, that's O(log n).",
        mode=Mode.TUTOR,
        step=Step.ALGORITHM,
        correct=True,
        metadata=ReplyMeta(topic="Binary Search", difficulty=Difficulty.MEDIUM),
    )
    blob = reply.to_json()

    assert json.loads(blob) == {
        "reply": "Nice, that's O(log n).",
        "mode": "Tutor",
        "step": "Algorithm",
        "correct": True,
        "metadata": {"topic": "Binary Search", "difficulty": "Medium"},
    }
    assert ResponseNormalizer().normalize(blob, session_mode=Mode.TUTOR).reply == reply


def test_to_json_keeps_non_ascii() -> None:
    assert "日本語" in StructuredReply(reply="日本語", mode=Mode.ASSISTANT).to_json()


def test_recover_mode_uses_latest_structured_turn() -> None:
    turns = [
        _turn(json.dumps({"reply": "a", "mode": "Assistant"}), 0),
        _turn(json.dumps({"reply": "b", "mode": "Interview"}), 1),
        _turn("plain prose", 2),
        _turn(json.dumps({"reply": "c"}), 3),
    ]
    assert recover_mode(turns) is Mode.INTERVIEW


def test_recover_mode_skips_raw_newest_turn() -> None:
    turns = [
        _turn(StructuredReply(reply="Tell me about yourself.", mode=Mode.INTERVIEW).to_json(), 0),
        _turn("Legacy reply stored as plain text.", 1),
    ]
    assert recover_mode(turns) is Mode.INTERVIEW


def test_recover_mode_defaults_to_tutor() -> None:
    assert recover_mode([]) is Mode.TUTOR
    assert recover_mode([_turn("not json"), _turn('{"reply": "x", "mode": "Pirate"}', 1)]) is Mode.TUTOR
