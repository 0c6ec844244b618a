"""Turn raw model text into a StructuredReply, with a deterministic fallback.

This is the only place that absorbs malformed model output. ``normalize`` never
raises: text that does not parse as the tutor JSON shape is shown to the user
verbatim, with every optional field absent and the mode carried over from the
session's most recent structured turn.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from traxtutor.constants import DEFAULT_MODE, Difficulty, Mode, Step
from traxtutor.models.json_enforcement import parse_tutor_reply
from traxtutor.storage.store import Turn

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplyMeta:
    topic: Optional[str] = None
    difficulty: Optional[Difficulty] = None


@dataclass(frozen=True)
class StructuredReply:
    reply: str
    mode: Mode
    step: Optional[Step] = None
    correct: Optional[bool] = None
    metadata: ReplyMeta = field(default_factory=ReplyMeta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply": self.reply,
            "mode": self.mode.value,
            "step": self.step.value if self.step is not None else None,
            "correct": self.correct,
            "metadata": {
                "topic": self.metadata.topic,
                "difficulty": self.metadata.difficulty.value if self.metadata.difficulty is not None else None,
            },
        }

    def to_json(self) -> str:
        """Serialise to the persisted response blob."""
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass(frozen=True)
class NormalizedReply:
    reply: StructuredReply
    parsed: bool
    reported_mode: Optional[Mode] = None
    error: Optional[str] = None


def recover_mode(turns: Iterable[Turn]) -> Mode:
    """Return the mode of the most recent turn whose stored response is structured.

    Turns are expected in creation order. Turns whose response does not parse, or
    whose mode is missing or unknown, are skipped. Falls back to Tutor.
    """
    for turn in reversed(list(turns)):
        parsed = parse_tutor_reply(turn.response)
        if parsed.model is not None and parsed.model.mode is not None:
            return parsed.model.mode
    return DEFAULT_MODE


class ResponseNormalizer:
    """Normalise cleaned model output against the session's resolved mode."""

    def normalize(self, raw_text: str, session_mode: Mode, fallback_mode: Mode = DEFAULT_MODE) -> NormalizedReply:
        """Produce a StructuredReply from raw text.

        Parameters
        ----------
        raw_text : str
            Fence-stripped completion text.
        session_mode : Mode
            Mode resolved for the session at the start of the turn. Overrides the
            model's self-reported mode on a successful parse.
        fallback_mode : Mode
            Mode used when the text cannot be parsed (see :func:`recover_mode`).

        Returns
        -------
        NormalizedReply
            The structured reply plus parse diagnostics.
        """
        text = raw_text if isinstance(raw_text, str) else str(raw_text)
        parsed = parse_tutor_reply(text)
        if parsed.model is None:
            _logger.warning("normalizer.parse_failed fallback_mode=%s error=%s", Mode(fallback_mode).value, parsed.error)
            return NormalizedReply(
                reply=StructuredReply(reply=text, mode=Mode(fallback_mode)),
                parsed=False,
                error=parsed.error,
            )

        model = parsed.model
        if model.mode is not None and model.mode != session_mode:
            _logger.info(
                "normalizer.mode_overridden reported=%s session=%s",
                model.mode.value,
                Mode(session_mode).value,
            )
        reply = StructuredReply(
            reply=model.reply,
            mode=Mode(session_mode),
            step=model.step,
            correct=model.correct,
            metadata=ReplyMeta(topic=model.metadata.topic, difficulty=model.metadata.difficulty),
        )
        return NormalizedReply(reply=reply, parsed=True, reported_mode=model.mode)
