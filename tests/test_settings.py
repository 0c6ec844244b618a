"""Tests for configuration loading, overrides and validation."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from traxtutor.settings import configure_logging, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("TRAXTUTOR_"):
            monkeypatch.delenv(key, raising=False)


def _write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.yaml")

    assert config.llm.backend == "openai"
    assert config.llm.conversation_model_id == "gpt-4o"
    assert config.llm.title_model_id == "gpt-4o-mini"
    assert config.llm.role_max_new_tokens.conversation == 500
    assert config.llm.role_max_new_tokens.title == 20
    assert config.llm.api_key_env == "OPENAI_API_KEY"
    assert config.llm.base_url is None
    assert config.history.max_turns == 50
    assert config.titles.enabled is True
    assert config.logging.level == "INFO"


def test_yaml_values_merge_over_defaults(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        """
llm:
  title_model_id: small-model
  role_max_new_tokens:
    title: 12
storage:
  root_dir: /tmp/traxtutor-test
titles:
  enabled: false
""",
    )
    config = load_config(path)

    assert config.llm.conversation_model_id == "gpt-4o"
    assert config.llm.title_model_id == "small-model"
    assert config.llm.role_max_new_tokens.conversation == 500
    assert config.llm.role_max_new_tokens.title == 12
    assert config.storage.root_dir == "/tmp/traxtutor-test"
    assert config.titles.enabled is False


def test_env_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = _write_config(tmp_path, "history:\n  max_turns: 5\n")
    monkeypatch.setenv("TRAXTUTOR_HISTORY_MAX_TURNS", "7")
    monkeypatch.setenv("TRAXTUTOR_LLM_BACKEND", " MLX ")
    monkeypatch.setenv("TRAXTUTOR_TITLES_ENABLED", "no")
    monkeypatch.setenv("TRAXTUTOR_LOGGING_LEVEL", "debug")
    monkeypatch.setenv("TRAXTUTOR_LLM_BASE_URL", "http://localhost:8000/v1")

    config = load_config(path)

    assert config.history.max_turns == 7
    assert config.llm.backend == "mlx"
    assert config.titles.enabled is False
    assert config.logging.level == "DEBUG"
    assert config.llm.base_url == "http://localhost:8000/v1"


def test_invalid_env_value_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TRAXTUTOR_HISTORY_MAX_TURNS", "many")
    with pytest.raises(ValueError, match="TRAXTUTOR_HISTORY_MAX_TURNS must be an integer"):
        load_config(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("llm:\n  backend: anthropic\n", "Unsupported llm.backend"),
        ("llm:\n  role_max_new_tokens:\n    conversation: 0\n", "conversation must be > 0"),
        ("history:\n  max_turns: -1\n", "history.max_turns must be >= 0"),
        ("titles:\n  max_workers: 0\n", "titles.max_workers must be > 0"),
        ("logging:\n  level: chatty\n", "logging.level must be one of"),
        ("titles:\n  enabled: maybe\n", "titles.enabled must be a boolean"),
        ("- just\n- a list\n", "mapping at the top level"),
    ],
)
def test_invalid_config_values_raise(tmp_path: Path, text: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        load_config(_write_config(tmp_path, text))


def test_config_path_directory_raises(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="is a directory"):
        load_config(tmp_path)


def test_to_dict_reflects_values(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.yaml")
    data = config.to_dict()

    assert data["llm"]["role_max_new_tokens"] == {"conversation": 500, "title": 20}
    assert data["titles"] == {"enabled": True, "max_workers": 2}


def test_configure_logging_uses_configured_level(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, object]] = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setenv("TRAXTUTOR_LOGGING_LEVEL", "WARNING")

    configure_logging(load_config(tmp_path / "missing.yaml"))

    assert calls[0]["level"] == logging.WARNING
    assert calls[0]["force"] is True
    assert "%(name)s" in str(calls[0]["format"])
