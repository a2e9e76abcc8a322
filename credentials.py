"""Keyed credential lookup: environment first, then ~/.secrets files."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

# name -> environment variables, first match wins
KEY_MAP: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "openrouter": ("OPENROUTER_API_KEY",),
}


class Credentials:
    """Resolve provider secrets by short name.

    Lookup order for ``get("google")``: ``GOOGLE_API_KEY``, ``GEMINI_API_KEY``,
    then the files ``<secrets_dir>/GOOGLE_API_KEY`` and
    ``<secrets_dir>/GEMINI_API_KEY``. Unknown names fall back to
    ``<NAME>_API_KEY``.
    """

    def __init__(self, environ: Mapping[str, str] | None = None, secrets_dir: Path | None = None):
        self._environ = os.environ if environ is None else environ
        self._secrets_dir = secrets_dir if secrets_dir is not None else Path.home() / ".secrets"

    def _env_names(self, name: str) -> tuple[str, ...]:
        return KEY_MAP.get(name.lower(), (f"{name.upper()}_API_KEY",))

    def get(self, name: str) -> str | None:
        env_names = self._env_names(name)
        for env_name in env_names:
            value = self._environ.get(env_name)
            if value:
                return value.strip()
        for env_name in env_names:
            path = self._secrets_dir / env_name
            if path.is_file():
                value = path.read_text().strip()
                if value:
                    return value
        return None

    def has(self, name: str) -> bool:
        return self.get(name) is not None
