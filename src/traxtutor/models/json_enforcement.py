"""JSON extraction and schema enforcement for tutor model outputs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, StrictStr, ValidationError, field_validator

from traxtutor.constants import Difficulty, Mode, Step

_logger = logging.getLogger(__name__)


def _enum_or_none(enum_cls: type, value: Any, field_name: str) -> Any:
    """Map a raw value to an enum member, treating blanks and unknown values as absent."""
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return enum_cls(value.strip())
    except ValueError:
        _logger.debug("json_enforcement.unknown_%s: %r", field_name, value)
        return None


class ReplyMetadata(BaseModel):
    topic: Optional[str] = None
    difficulty: Optional[Difficulty] = None

    @field_validator("topic", mode="before")
    @classmethod
    def _blank_topic_is_absent(cls, value: Any) -> Any:
        if not isinstance(value, str) or not value.strip():
            return None
        return value

    @field_validator("difficulty", mode="before")
    @classmethod
    def _known_difficulty(cls, value: Any) -> Any:
        return _enum_or_none(Difficulty, value, "difficulty")


class TutorReply(BaseModel):
    """Shape the tutor instructions ask the model to emit.

    Only ``reply`` is required. Optional fields never carry empty strings: a blank or
    unrecognised value is read as absent, and ``correct`` is only set by a JSON boolean.
    """

    reply: StrictStr
    mode: Optional[Mode] = None
    step: Optional[Step] = None
    correct: Optional[bool] = None
    metadata: ReplyMetadata = Field(default_factory=ReplyMetadata)

    @field_validator("mode", mode="before")
    @classmethod
    def _known_mode(cls, value: Any) -> Any:
        return _enum_or_none(Mode, value, "mode")

    @field_validator("step", mode="before")
    @classmethod
    def _known_step(cls, value: Any) -> Any:
        return _enum_or_none(Step, value, "step")

    @field_validator("correct", mode="before")
    @classmethod
    def _strict_correct(cls, value: Any) -> Any:
        return value if isinstance(value, bool) else None

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_mapping(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class ParseResult:
    model: Optional[TutorReply]
    raw_json: Optional[Dict[str, Any]]
    error: Optional[str]


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse text that must consist of exactly one JSON object.

    Surrounding whitespace is allowed; any other content before or after the object
    is an error, so prose the model appended is never silently dropped.

    Parameters
    ----------
    text : str
        Fence-stripped LLM output or a persisted response blob.

    Returns
    -------
    dict[str, Any]
        Parsed JSON object.

    Raises
    ------
    json.JSONDecodeError
        If the text does not start with a valid JSON value.
    ValueError
        If the value is not an object or is followed by other content.
    """
    stripped = text.strip()
    obj, end = json.JSONDecoder().raw_decode(stripped)
    if end != len(stripped):
        raise ValueError(f"Unexpected content after JSON object at position {end}.")
    if not isinstance(obj, dict):
        raise ValueError("JSON value is not an object.")
    return obj


def parse_tutor_reply(text: str) -> ParseResult:
    """Parse and validate tutor JSON output without raising.

    Parameters
    ----------
    text : str
        Raw (fence-stripped) LLM output or a persisted response blob.

    Returns
    -------
    ParseResult
        Parsed model, or the error that prevented parsing.
    """
    if not isinstance(text, str):
        return ParseResult(model=None, raw_json=None, error="Response is not text.")
    try:
        raw_json = parse_json_object(text)
        model = TutorReply.model_validate(raw_json)
        return ParseResult(model=model, raw_json=raw_json, error=None)
    except (json.JSONDecodeError, ValueError, ValidationError) as exc:
        return ParseResult(model=None, raw_json=None, error=str(exc))
