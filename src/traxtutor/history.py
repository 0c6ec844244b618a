"""Rebuild the role-tagged conversation for a session from its persisted turns."""

from __future__ import annotations

from typing import Iterable, Sequence

from traxtutor.models.json_enforcement import parse_tutor_reply
from traxtutor.models.llm_client import ChatMessage
from traxtutor.storage.store import ChatStore, Turn


def reply_text_from_blob(blob: str) -> str:
    """Return the reply text of a stored response, or the blob itself if it is not structured."""
    parsed = parse_tutor_reply(blob)
    if parsed.model is None:
        return blob
    return parsed.model.reply


def truncate_history(messages: Sequence[ChatMessage], max_turns: int | None) -> list[ChatMessage]:
    """Keep only the newest ``max_turns`` user/assistant pairs (None keeps everything)."""
    if max_turns is None:
        return list(messages)
    if max_turns <= 0:
        return []
    return list(messages[-2 * max_turns :])


class HistoryReconstructor:
    """Produce exactly two messages per turn, user then assistant, in creation order.

    A stored response that is not a structured reply is used verbatim as the
    assistant content; a turn is never dropped.
    """

    def __init__(self, store: ChatStore) -> None:
        self._store = store

    def load(self, session_id: str) -> list[ChatMessage]:
        return self.build(self._store.list_turns(session_id))

    @staticmethod
    def build(turns: Iterable[Turn]) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        for turn in turns:
            messages.append(ChatMessage(role="user", content=turn.prompt))
            messages.append(ChatMessage(role="assistant", content=reply_text_from_blob(turn.response)))
        return messages
