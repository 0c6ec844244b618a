"""Tests for the chat-completion wrapper and backends."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Sequence

import pytest

from traxtutor.errors import ProviderUnavailable
from traxtutor.models.llm_client import (
    ChatLLM,
    ChatMessage,
    OpenAIChatBackend,
    strip_code_fences,
)


class _Backend:
    def __init__(self, reply_text: str = "ok") -> None:
        self._reply_text = reply_text
        self.last_max_tokens: int | None = None
        self.last_messages: list[ChatMessage] | None = None
        self.calls = 0

    def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str:
        self.last_max_tokens = max_tokens
        self.last_messages = list(messages)
        self.calls += 1
        return self._reply_text


class _FailingBackend:
    def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str:
        raise ConnectionError("network down")


def _messages() -> list[ChatMessage]:
    return [ChatMessage(role="system", content="sys"), ChatMessage(role="user", content="hi")]


def test_rejects_invalid_max_context_tokens() -> None:
    """max_context_tokens must be positive."""
    with pytest.raises(ValueError, match="max_context_tokens must be > 0"):
        ChatLLM(model_id="model-x", role_max_new_tokens={"role": 1}, backend=_Backend(), max_context_tokens=0)


def test_unknown_role_raises() -> None:
    """Unknown roles should raise a clear error."""
    llm = ChatLLM(model_id="model-x", role_max_new_tokens={"known": 5}, backend=_Backend())
    with pytest.raises(ValueError, match="Unknown role"):
        llm.complete(_messages(), role="unknown")


def test_token_counter_enforces_context_limit() -> None:
    """Prompt tokens above max_context_tokens should fail before the backend is called."""
    backend = _Backend()
    llm = ChatLLM(
        model_id="model-x",
        role_max_new_tokens={"role": 5},
        backend=backend,
        max_context_tokens=3,
        token_counter=lambda _: 10,
    )
    with pytest.raises(ValueError, match="Prompt exceeds max_context_tokens"):
        llm.complete(_messages(), role="role")
    assert backend.calls == 0


def test_context_limit_ignored_without_token_counter() -> None:
    llm = ChatLLM(model_id="model-x", role_max_new_tokens={"role": 5}, backend=_Backend(), max_context_tokens=1)
    assert llm.count_tokens(_messages()) is None
    assert llm.complete(_messages(), role="role").text == "ok"


def test_max_new_tokens_capped_by_role() -> None:
    """Explicit max_new_tokens should be capped by the role limit."""
    backend = _Backend()
    llm = ChatLLM(model_id="model-x", role_max_new_tokens={"role": 5}, backend=backend)
    llm.complete(_messages(), role="role", max_new_tokens=10)
    assert backend.last_max_tokens == 5


def test_max_new_tokens_uses_role_default() -> None:
    """Without an override, role default max_new_tokens is used."""
    backend = _Backend()
    llm = ChatLLM(model_id="model-x", role_max_new_tokens={"role": 7}, backend=backend)
    llm.complete(_messages(), role="role")
    assert backend.last_max_tokens == 7


def test_complete_passes_messages_and_records_meta() -> None:
    backend = _Backend()
    llm = ChatLLM(
        model_id="model-x",
        role_max_new_tokens={"conversation": 500},
        backend=backend,
        token_counter=len,
    )
    result = llm.complete(_messages(), role="conversation")

    assert backend.last_messages == _messages()
    assert result.meta["model_id"] == "model-x"
    assert result.meta["role"] == "conversation"
    assert result.meta["max_new_tokens"] == 500
    assert result.meta["message_count"] == 2
    assert result.meta["prompt_tokens"] == len("sys\nhi")
    assert result.meta["fences_stripped"] is False
    assert len(result.meta["prompt_hash"]) == 64


def test_prompt_hash_depends_on_roles() -> None:
    llm = ChatLLM(model_id="model-x", role_max_new_tokens={"role": 5}, backend=_Backend())
    as_user = llm.complete([ChatMessage(role="user", content="x")], role="role")
    as_system = llm.complete([ChatMessage(role="system", content="x")], role="role")
    assert as_user.meta["prompt_hash"] != as_system.meta["prompt_hash"]


def test_backend_failure_maps_to_provider_unavailable() -> None:
    llm = ChatLLM(model_id="model-x", role_max_new_tokens={"role": 5}, backend=_FailingBackend())
    with pytest.raises(ProviderUnavailable, match="network down"):
        llm.complete(_messages(), role="role")


def test_complete_strips_fences() -> None:
    llm = ChatLLM(
        model_id="model-x",
        role_max_new_tokens={"role": 5},
        backend=_Backend('```json\n{"reply": "hi"}\n```'),
    )
    result = llm.complete(_messages(), role="role")
    assert result.text == '{"reply": "hi"}'
    assert result.meta["fences_stripped"] is True


def test_none_backend_text_becomes_empty() -> None:
    class _NoneBackend:
        def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str | None:
            return None

    llm = ChatLLM(model_id="model-x", role_max_new_tokens={"role": 5}, backend=_NoneBackend())
    assert llm.complete(_messages(), role="role").text == ""


@pytest.mark.parametrize(
    ("raw", "expected", "changed"),
    [
        ('```json\n{"reply": "a"}\n```', '{"reply": "a"}', True),
        ('```\n{"reply": "a"}\n```', '{"reply": "a"}', True),
        ('```JSON {"reply": "a"}```', '{"reply": "a"}', True),
        ('  {"reply": "a"}  ', '{"reply": "a"}', False),
        ("plain prose", "plain prose", False),
    ],
)
def test_strip_code_fences(raw: str, expected: str, changed: bool) -> None:
    text, was_changed = strip_code_fences(raw)
    assert text == expected
    assert was_changed is changed


def test_strip_code_fences_keeps_inner_fences() -> None:
    raw = "Here is code:\n```python\nprint(1)\n```\nDone."
    text, changed = strip_code_fences(raw)
    assert text == raw
    assert changed is False


def test_openai_backend_calls_chat_completions() -> None:
    captured: dict[str, object] = {}

    def _create(**kwargs: object) -> SimpleNamespace:
        captured.update(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content='{"reply": "ok"}'))])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=_create)))
    backend = OpenAIChatBackend("gpt-4o", client=client)

    text = backend.complete(_messages(), max_tokens=500)

    assert text == '{"reply": "ok"}'
    assert captured["model"] == "gpt-4o"
    assert captured["max_tokens"] == 500
    assert captured["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]


def test_openai_backend_handles_empty_choices() -> None:
    client = SimpleNamespace(
        chat=SimpleNamespace(completions=SimpleNamespace(create=lambda **_: SimpleNamespace(choices=[])))
    )
    assert OpenAIChatBackend("gpt-4o", client=client).complete(_messages(), max_tokens=5) == ""
