"""Chat-completion wrapper with output caps, fence stripping and metadata capture."""

from __future__ import annotations

import hashlib
import inspect
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence

from traxtutor.errors import ProviderUnavailable

_logger = logging.getLogger(__name__)

_LEADING_FENCE = re.compile(r"^```[A-Za-z0-9_+-]*[ \t]*(?:\r?\n)?")
_TRAILING_FENCE = re.compile(r"(?:\r?\n)?```\s*$")


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class LLMResult:
    text: str
    meta: Dict[str, Any]


class LLMBackend(Protocol):
    """Protocol for chat-completion backends.

    Implementations receive the full ordered message list and an output token cap,
    and return the decoded completion text.
    """

    def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str: ...


class OpenAIChatBackend:
    """OpenAI-compatible chat completions backend implementing the LLMBackend protocol."""

    def __init__(
        self,
        model_id: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 60.0,
        client: Any | None = None,
    ) -> None:
        self._model_id = model_id
        if client is not None:
            self._client = client
            return
        try:
            import openai  # type: ignore
        except Exception as exc:  # pragma: no cover
            raise RuntimeError(
                "openai is not available. Install the openai dependency to enable hosted completions."
            ) from exc
        self._client = openai.OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_seconds)

    def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str:
        response = self._client.chat.completions.create(
            model=self._model_id,
            messages=[message.to_dict() for message in messages],
            max_tokens=max_tokens,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class MlxLmBackend:
    """Local MLX-LM backend rendering messages through the tokenizer chat template."""

    def __init__(self, model_id: str) -> None:
        try:
            from mlx_lm import generate, load  # type: ignore
            from mlx_lm.sample_utils import make_sampler  # type: ignore
        except Exception as exc:  # pragma: no cover
            raise RuntimeError(
                "mlx-lm is not available. Install the LLM dependency to enable local generation."
            ) from exc

        model, tokenizer = load(model_id)
        self._model = model
        self._tokenizer = tokenizer
        self._generate_fn = generate
        self._sampler = make_sampler(temp=0.0)
        self._supports_sampler = "sampler" in inspect.signature(self._generate_fn).parameters

    def render_prompt(self, messages: Sequence[ChatMessage]) -> str:
        return str(
            self._tokenizer.apply_chat_template(
                [message.to_dict() for message in messages],
                tokenize=False,
                add_generation_prompt=True,
            )
        )

    def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str:
        kwargs: Dict[str, Any] = {
            "prompt": self.render_prompt(messages),
            "max_tokens": max_tokens,
        }
        if self._supports_sampler:
            kwargs["sampler"] = self._sampler
        return str(self._generate_fn(self._model, self._tokenizer, **kwargs))

    def count_tokens(self, text: str) -> int:
        return len(self._tokenizer.encode(text))


def strip_code_fences(text: str) -> tuple[str, bool]:
    """Remove a leading and trailing triple-backtick fence, with or without a language tag.

    Parameters
    ----------
    text : str
        Raw completion text.

    Returns
    -------
    tuple[str, bool]
        The trimmed text and whether any fence marker was removed.
    """
    stripped = text.strip()
    result = _LEADING_FENCE.sub("", stripped, count=1)
    result = _TRAILING_FENCE.sub("", result, count=1)
    changed = result != stripped
    return result.strip(), changed


class ChatLLM:
    """LLM wrapper enforcing per-role output caps and an optional context limit."""

    def __init__(
        self,
        model_id: str,
        role_max_new_tokens: Mapping[str, int],
        backend: LLMBackend,
        max_context_tokens: int | None = None,
        token_counter: Callable[[str], int] | None = None,
    ) -> None:
        """Initialize the LLM wrapper.

        Parameters
        ----------
        model_id : str
            Model identifier, recorded in result metadata.
        role_max_new_tokens : Mapping[str, int]
            Per-role max output tokens.
        backend : LLMBackend
            Backend performing the completion.
        max_context_tokens : int | None
            Maximum prompt tokens, enforced only when a token counter is available.
        token_counter : Callable[[str], int] | None
            Optional token counter for context length validation.
        """
        if max_context_tokens is not None and max_context_tokens <= 0:
            raise ValueError("max_context_tokens must be > 0")
        self._model_id = model_id
        self._role_max_new_tokens = dict(role_max_new_tokens)
        self._backend = backend
        self._max_context_tokens = max_context_tokens
        self._token_counter = token_counter

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def max_context_tokens(self) -> int | None:
        return self._max_context_tokens

    def count_tokens(self, messages: Sequence[ChatMessage]) -> int | None:
        if self._token_counter is None:
            return None
        return self._token_counter("\n".join(message.content for message in messages))

    def complete(
        self,
        messages: Sequence[ChatMessage],
        role: str,
        max_new_tokens: Optional[int] = None,
    ) -> LLMResult:
        """Run one completion for a role and return fence-stripped text.

        Parameters
        ----------
        messages : Sequence[ChatMessage]
            Ordered messages (system, history, user).
        role : str
            Logical role name for output cap lookup.
        max_new_tokens : int | None
            Optional override, capped by the role limit.

        Returns
        -------
        LLMResult
            Cleaned completion text and metadata.

        Raises
        ------
        ValueError
            If the role is unknown or the prompt exceeds the context limit.
        ProviderUnavailable
            If the backend call fails for any reason.
        """
        if role not in self._role_max_new_tokens:
            raise ValueError(f"Unknown role: {role}")

        prompt_tokens = self.count_tokens(messages)
        if (
            prompt_tokens is not None
            and self._max_context_tokens is not None
            and prompt_tokens > self._max_context_tokens
        ):
            raise ValueError(
                f"Prompt exceeds max_context_tokens ({prompt_tokens} > {self._max_context_tokens})."
            )

        role_cap = self._role_max_new_tokens[role]
        if max_new_tokens is None or max_new_tokens <= 0:
            effective_max_new_tokens = role_cap
        else:
            effective_max_new_tokens = min(max_new_tokens, role_cap)

        digest = hashlib.sha256()
        for message in messages:
            digest.update(f"{message.role}\x00{message.content}\x00".encode("utf-8"))
        prompt_hash = digest.hexdigest()

        start = time.perf_counter()
        try:
            raw_text = self._backend.complete(messages, effective_max_new_tokens)
        except Exception as exc:
            _logger.warning("llm.complete_failed role=%s model=%s: %s", role, self._model_id, exc)
            raise ProviderUnavailable(f"Completion provider failed: {exc}") from exc
        elapsed = time.perf_counter() - start

        text, fences_stripped = strip_code_fences(str(raw_text or ""))
        meta = {
            "model_id": self._model_id,
            "role": role,
            "max_new_tokens": effective_max_new_tokens,
            "prompt_tokens": prompt_tokens,
            "message_count": len(messages),
            "elapsed_seconds": elapsed,
            "prompt_hash": prompt_hash,
            "fences_stripped": fences_stripped,
        }
        return LLMResult(text=text, meta=meta)
