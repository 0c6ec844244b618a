"""Completion invoker: tutor instructions + mode note + history + new message."""

from __future__ import annotations

import logging
from typing import Sequence

from traxtutor.constants import Mode
from traxtutor.errors import InvalidInput
from traxtutor.models.llm_client import ChatLLM, ChatMessage, LLMResult
from traxtutor.prompts.loader import PromptLoader

CONVERSATION_ROLE = "conversation"
TITLE_ROLE = "title"


class CompletionInvoker:
    """Assemble the ordered message list for a turn and run the model.

    The message order is fixed: the tutor system instruction, a second system note
    carrying the session mode, the reconstructed history, then the new user message.
    When the wrapped LLM can count tokens, the oldest history pairs are dropped until
    the prompt fits its context limit.
    """

    def __init__(self, llm: ChatLLM, prompt_loader: PromptLoader) -> None:
        self._llm = llm
        self._prompt_loader = prompt_loader
        self._logger = logging.getLogger(__name__)

    def system_messages(self, mode: Mode) -> list[ChatMessage]:
        instructions = self._prompt_loader.render("tutor_system.md")
        mode_note = self._prompt_loader.render("mode_note.md", {"mode": Mode(mode).value})
        return [
            ChatMessage(role="system", content=instructions.text.strip()),
            ChatMessage(role="system", content=mode_note.text.strip()),
        ]

    def build_messages(
        self,
        mode: Mode,
        history: Sequence[ChatMessage],
        user_message: str,
    ) -> list[ChatMessage]:
        system = self.system_messages(mode)
        user = ChatMessage(role="user", content=user_message)
        fitted = self._fit_history(system, list(history), user)
        return [*system, *fitted, user]

    def invoke(self, mode: Mode, history: Sequence[ChatMessage], user_message: str) -> LLMResult:
        """Run the conversation completion for one turn.

        Raises
        ------
        InvalidInput
            If the message does not fit the context limit even without history.
        ProviderUnavailable
            If the completion provider fails.
        """
        messages = self.build_messages(mode, history, user_message)
        try:
            return self._llm.complete(messages, role=CONVERSATION_ROLE)
        except ValueError as exc:
            raise InvalidInput(str(exc)) from exc

    def _fit_history(
        self,
        system: list[ChatMessage],
        history: list[ChatMessage],
        user: ChatMessage,
    ) -> list[ChatMessage]:
        limit = self._llm.max_context_tokens
        if limit is None or self._llm.count_tokens([user]) is None:
            return history
        dropped = 0
        while history:
            tokens = self._llm.count_tokens([*system, *history, user])
            if tokens is not None and tokens <= limit:
                break
            # Drop one user/assistant pair at a time to keep roles alternating.
            history = history[2:]
            dropped += 1
        if dropped:
            self._logger.info("completion.history_truncated dropped_turns=%d", dropped)
        return history


class TitleGenerator:
    """Ask a (usually smaller) model for a short session title."""

    def __init__(self, llm: ChatLLM, prompt_loader: PromptLoader) -> None:
        self._llm = llm
        self._prompt_loader = prompt_loader

    def generate(self, first_user_message: str, first_reply: str) -> str:
        system = self._prompt_loader.render("title_system.md")
        prompt = self._prompt_loader.render(
            "title.md",
            {"first_user_message": first_user_message, "first_reply": first_reply},
        )
        messages = [
            ChatMessage(role="system", content=system.text.strip()),
            ChatMessage(role="user", content=prompt.text.strip()),
        ]
        return self._llm.complete(messages, role=TITLE_ROLE).text
