"""Shared constants for traxtutor."""

from enum import Enum


class Mode(str, Enum):
    TUTOR = "Tutor"
    INTERVIEW = "Interview"
    ASSISTANT = "Assistant"


class Step(str, Enum):
    CONCEPT = "Concept"
    ALGORITHM = "Algorithm"
    CODING = "Coding"
    FEEDBACK = "Feedback"


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


DEFAULT_MODE = Mode.TUTOR
SUPPORTED_MODES = {mode.value for mode in Mode}

DEFAULT_TITLE = "New Chat"
TITLE_MAX_WORDS = 6

SUPPORTED_BACKENDS = {"openai", "mlx"}

# Per-role output caps.
ROLE_MAX_NEW_TOKENS = {
    "conversation": 500,
    "title": 20,
}
