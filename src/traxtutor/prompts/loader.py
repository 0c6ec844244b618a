"""Prompt template loading and rendering."""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping


@dataclass(frozen=True)
class PromptRenderResult:
    text: str
    sha256: str
    path: Path


class PromptLoader:
    """Load markdown prompt templates and render them with variables.

    Templates use ``str.format`` placeholders (``{mode}``); literal braces, such as
    the JSON shape in the tutor instructions, are written doubled (``{{``).
    Template text is read once per file and cached.
    """

    def __init__(self, root_dir: str | Path) -> None:
        self._root_dir = Path(root_dir)
        self._templates: dict[str, str] = {}
        self._lock = threading.Lock()

    def render(self, name: str, variables: Mapping[str, Any] | None = None) -> PromptRenderResult:
        """Render a prompt by filename with variables.

        Parameters
        ----------
        name : str
            Prompt filename (e.g., "tutor_system.md").
        variables : Mapping[str, Any] | None
            Variables to substitute using `{var}` placeholders.

        Returns
        -------
        PromptRenderResult
            Rendered text, SHA256 hash, and source path.

        Raises
        ------
        FileNotFoundError
            If the template does not exist.
        KeyError
            If a placeholder has no matching variable.
        """
        path = self._root_dir / name
        template = self._load(name, path)
        try:
            rendered = template.format_map(_StrictDict(variables or {}))
        except KeyError as exc:
            missing = exc.args[0]
            raise KeyError(f"Missing prompt variable: {missing}") from exc

        sha256 = hashlib.sha256(rendered.encode("utf-8")).hexdigest()
        return PromptRenderResult(text=rendered, sha256=sha256, path=path)

    def _load(self, name: str, path: Path) -> str:
        with self._lock:
            cached = self._templates.get(name)
            if cached is not None:
                return cached
            if not path.exists():
                raise FileNotFoundError(f"Prompt not found: {path}")
            template = path.read_text(encoding="utf-8")
            self._templates[name] = template
            return template


class _StrictDict(dict):
    def __missing__(self, key: str) -> str:  # pragma: no cover - raised in format_map
        raise KeyError(key)
