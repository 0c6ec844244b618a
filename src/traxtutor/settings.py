"""Application configuration loading and validation."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from traxtutor.constants import ROLE_MAX_NEW_TOKENS, SUPPORTED_BACKENDS

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _load_model_defaults() -> dict[str, str]:
    """Load model defaults from `config/models.py` via package import.

    Returns
    -------
    dict[str, str]
        Mapping of model roles to default model IDs.

    Raises
    ------
    ImportError
        If the defaults module cannot be imported.
    """
    from traxtutor.config import models as model_module  # type: ignore

    return {
        "conversation": getattr(model_module, "CONVERSATION_MODEL_ID"),
        "title": getattr(model_module, "TITLE_MODEL_ID"),
        "local": getattr(model_module, "LOCAL_MODEL_ID"),
    }


def _find_repo_root() -> Path:
    """Locate the repo root by searching upward for `pyproject.toml`.

    Returns
    -------
    pathlib.Path
        The repository root path, or the current directory when running from an
        installed wheel.
    """
    current = Path(__file__).resolve()
    for parent in [current.parent, *current.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return Path.cwd()


@dataclass(frozen=True)
class LLMRoleCaps:
    conversation: int = ROLE_MAX_NEW_TOKENS["conversation"]
    title: int = ROLE_MAX_NEW_TOKENS["title"]


@dataclass(frozen=True)
class LLMConfig:
    backend: str = "openai"
    conversation_model_id: str = ""
    title_model_id: str = ""
    local_model_id: str = ""
    base_url: str | None = None
    api_key_env: str = "OPENAI_API_KEY"
    timeout_seconds: float = 60.0
    max_context_tokens: int = 16384
    role_max_new_tokens: LLMRoleCaps = field(default_factory=LLMRoleCaps)


@dataclass(frozen=True)
class HistoryConfig:
    max_turns: int = 50


@dataclass(frozen=True)
class StorageConfig:
    root_dir: str


@dataclass(frozen=True)
class TitlesConfig:
    enabled: bool = True
    max_workers: int = 2


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    timing_logs: bool = True


@dataclass(frozen=True)
class AppConfig:
    llm: LLMConfig
    history: HistoryConfig
    storage: StorageConfig
    titles: TitlesConfig
    logging: LoggingConfig

    def to_dict(self) -> dict[str, Any]:
        return {
            "llm": {
                "backend": self.llm.backend,
                "conversation_model_id": self.llm.conversation_model_id,
                "title_model_id": self.llm.title_model_id,
                "local_model_id": self.llm.local_model_id,
                "base_url": self.llm.base_url,
                "api_key_env": self.llm.api_key_env,
                "timeout_seconds": self.llm.timeout_seconds,
                "max_context_tokens": self.llm.max_context_tokens,
                "role_max_new_tokens": {
                    "conversation": self.llm.role_max_new_tokens.conversation,
                    "title": self.llm.role_max_new_tokens.title,
                },
            },
            "history": {"max_turns": self.history.max_turns},
            "storage": {"root_dir": self.storage.root_dir},
            "titles": {"enabled": self.titles.enabled, "max_workers": self.titles.max_workers},
            "logging": {"level": self.logging.level, "timing_logs": self.logging.timing_logs},
        }


def _deep_merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge `overlay` into `base`, returning a new dictionary.

    Parameters
    ----------
    base : dict[str, Any]
        Baseline configuration dictionary.
    overlay : Mapping[str, Any]
        Overlay values that take precedence.

    Returns
    -------
    dict[str, Any]
        The merged configuration.
    """
    result = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _parse_config_file(path: Path | None) -> dict[str, Any]:
    """Parse an optional YAML config file into a dictionary.

    Parameters
    ----------
    path : pathlib.Path | None
        Path to the YAML file, or None to skip parsing.

    Returns
    -------
    dict[str, Any]
        Parsed configuration data.

    Raises
    ------
    ValueError
        If the path is a directory or the YAML root is not a mapping.
    """
    if path is None:
        return {}
    if not path.exists():
        return {}
    if path.is_dir():
        raise ValueError(f"Config path is a directory, expected a file: {path}")

    import yaml

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError("Config file must contain a mapping at the top level.")
    return dict(data)


def _apply_env_overrides(config: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Override config values using supported environment variables.

    Parameters
    ----------
    config : dict[str, Any]
        Configuration dictionary to update.
    env : Mapping[str, str]
        Environment mapping (typically `os.environ`).

    Returns
    -------
    dict[str, Any]
        Updated configuration with applied overrides.
    """
    def _to_str(value: str, _env_key: str) -> str:
        return str(value)

    def _to_lower_str(value: str, _env_key: str) -> str:
        return str(value).strip().lower()

    def _to_upper_str(value: str, _env_key: str) -> str:
        return str(value).strip().upper()

    def _to_int(value: str, env_key: str) -> int:
        return _coerce_int(value, f"env override {env_key}")

    def _to_float(value: str, env_key: str) -> float:
        return _coerce_float(value, f"env override {env_key}")

    def _to_bool(value: str, env_key: str) -> bool:
        return _coerce_bool(value, f"env override {env_key}")

    mapping: dict[str, tuple[tuple[str, ...], Any]] = {
        "TRAXTUTOR_LLM_BACKEND": (("llm", "backend"), _to_lower_str),
        "TRAXTUTOR_LLM_CONVERSATION_MODEL_ID": (("llm", "conversation_model_id"), _to_str),
        "TRAXTUTOR_LLM_TITLE_MODEL_ID": (("llm", "title_model_id"), _to_str),
        "TRAXTUTOR_LLM_LOCAL_MODEL_ID": (("llm", "local_model_id"), _to_str),
        "TRAXTUTOR_LLM_BASE_URL": (("llm", "base_url"), _to_str),
        "TRAXTUTOR_LLM_API_KEY_ENV": (("llm", "api_key_env"), _to_str),
        "TRAXTUTOR_LLM_TIMEOUT_SECONDS": (("llm", "timeout_seconds"), _to_float),
        "TRAXTUTOR_LLM_MAX_CONTEXT_TOKENS": (("llm", "max_context_tokens"), _to_int),
        "TRAXTUTOR_LLM_ROLE_CONVERSATION_MAX_NEW_TOKENS": (
            ("llm", "role_max_new_tokens", "conversation"),
            _to_int,
        ),
        "TRAXTUTOR_LLM_ROLE_TITLE_MAX_NEW_TOKENS": (
            ("llm", "role_max_new_tokens", "title"),
            _to_int,
        ),
        "TRAXTUTOR_HISTORY_MAX_TURNS": (("history", "max_turns"), _to_int),
        "TRAXTUTOR_STORAGE_ROOT_DIR": (("storage", "root_dir"), _to_str),
        "TRAXTUTOR_TITLES_ENABLED": (("titles", "enabled"), _to_bool),
        "TRAXTUTOR_TITLES_MAX_WORKERS": (("titles", "max_workers"), _to_int),
        "TRAXTUTOR_LOGGING_LEVEL": (("logging", "level"), _to_upper_str),
        "TRAXTUTOR_LOGGING_TIMING_LOGS": (("logging", "timing_logs"), _to_bool),
    }

    result = dict(config)
    for env_key, (path, caster) in mapping.items():
        if env_key not in env:
            continue
        raw_value = env[env_key]
        typed_value = caster(raw_value, env_key)
        target = result
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = typed_value
    return result


def _coerce_int(value: Any, field: str) -> int:
    """Convert a value to int with a field-specific error message.

    Parameters
    ----------
    value : Any
        Input value to convert.
    field : str
        Field name for error reporting.

    Returns
    -------
    int
        Converted integer value.

    Raises
    ------
    ValueError
        If the value cannot be converted.
    """
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be an integer") from exc


def _coerce_float(value: Any, field: str) -> float:
    """Convert a value to float with a field-specific error message."""
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be a float") from exc


def _coerce_bool(value: Any, field: str) -> bool:
    """Convert YAML/env booleans ("true", "0", ...) to bool."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{field} must be a boolean")


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from defaults, optional file, and environment overrides.

    Parameters
    ----------
    config_path : str | pathlib.Path | None
        Optional path to the YAML config file. If None, `config.yaml` in the repo root is used.

    Returns
    -------
    AppConfig
        Validated application configuration.

    Raises
    ------
    ValueError
        If any configuration values are invalid.
    """
    repo_root = _find_repo_root()
    resolved_path = Path(config_path) if config_path else repo_root / "config.yaml"

    model_defaults = _load_model_defaults()
    defaults = {
        "llm": {
            "backend": "openai",
            "conversation_model_id": model_defaults["conversation"],
            "title_model_id": model_defaults["title"],
            "local_model_id": model_defaults["local"],
            "base_url": None,
            "api_key_env": "OPENAI_API_KEY",
            "timeout_seconds": 60.0,
            "max_context_tokens": 16384,
            "role_max_new_tokens": dict(ROLE_MAX_NEW_TOKENS),
        },
        "history": {"max_turns": 50},
        "storage": {"root_dir": str(repo_root / "storage")},
        "titles": {"enabled": True, "max_workers": 2},
        "logging": {"level": "INFO", "timing_logs": True},
    }
    file_data = _parse_config_file(resolved_path)
    merged = _deep_merge(defaults, file_data)
    merged = _apply_env_overrides(merged, os.environ)

    backend = str(merged["llm"]["backend"]).strip().lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(f"Unsupported llm.backend: {backend}. Must be one of {SUPPORTED_BACKENDS}.")

    llm_caps = merged["llm"]["role_max_new_tokens"]

    config = AppConfig(
        llm=LLMConfig(
            backend=backend,
            conversation_model_id=str(merged["llm"]["conversation_model_id"]),
            title_model_id=str(merged["llm"]["title_model_id"]),
            local_model_id=str(merged["llm"]["local_model_id"]),
            base_url=_optional_str(merged["llm"]["base_url"]),
            api_key_env=str(merged["llm"]["api_key_env"]),
            timeout_seconds=_coerce_float(merged["llm"]["timeout_seconds"], "llm.timeout_seconds"),
            max_context_tokens=_coerce_int(merged["llm"]["max_context_tokens"], "llm.max_context_tokens"),
            role_max_new_tokens=LLMRoleCaps(
                conversation=_coerce_int(llm_caps["conversation"], "llm.role_max_new_tokens.conversation"),
                title=_coerce_int(llm_caps["title"], "llm.role_max_new_tokens.title"),
            ),
        ),
        history=HistoryConfig(max_turns=_coerce_int(merged["history"]["max_turns"], "history.max_turns")),
        storage=StorageConfig(root_dir=str(merged["storage"]["root_dir"])),
        titles=TitlesConfig(
            enabled=_coerce_bool(merged["titles"]["enabled"], "titles.enabled"),
            max_workers=_coerce_int(merged["titles"]["max_workers"], "titles.max_workers"),
        ),
        logging=LoggingConfig(
            level=str(merged["logging"]["level"]).strip().upper(),
            timing_logs=_coerce_bool(merged["logging"]["timing_logs"], "logging.timing_logs"),
        ),
    )

    _validate_config(config)
    return config


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values and raise ValueError on invalid settings.

    Parameters
    ----------
    config : AppConfig
        Configuration to validate.

    Raises
    ------
    ValueError
        If any configuration values are invalid.
    """
    if not config.llm.conversation_model_id:
        raise ValueError("llm.conversation_model_id must be set")
    if not config.llm.title_model_id:
        raise ValueError("llm.title_model_id must be set")
    if config.llm.backend == "mlx" and not config.llm.local_model_id:
        raise ValueError("llm.local_model_id must be set for the mlx backend")
    if config.llm.max_context_tokens <= 0:
        raise ValueError("llm.max_context_tokens must be > 0")
    if config.llm.timeout_seconds <= 0:
        raise ValueError("llm.timeout_seconds must be > 0")
    if config.llm.role_max_new_tokens.conversation <= 0:
        raise ValueError("llm.role_max_new_tokens.conversation must be > 0")
    if config.llm.role_max_new_tokens.title <= 0:
        raise ValueError("llm.role_max_new_tokens.title must be > 0")
    if config.history.max_turns < 0:
        raise ValueError("history.max_turns must be >= 0")
    if config.titles.max_workers <= 0:
        raise ValueError("titles.max_workers must be > 0")
    if not config.storage.root_dir:
        raise ValueError("storage.root_dir must be set")
    if config.logging.level not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}")


def configure_logging(config: AppConfig) -> None:
    """Apply the configured root log level and format."""
    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        force=True,
    )
