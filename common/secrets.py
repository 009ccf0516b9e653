"""Secrets lookup for aggregator credentials and operator API tokens."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional


class SecretsManager:
    """JSON secrets file (``SECRETS_PATH``) with environment fallback.

    The file is read once. A key absent from it is looked up in the process
    environment, so local runs can ``export AA_STATIC_BEARER=...``.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path or os.getenv("SECRETS_PATH", "/var/run/secrets/aa-core.json"))
        self._data: dict[str, Any] | None = None
        self._use_env = True

    def _file(self) -> dict[str, Any]:
        if self._data is None:
            if self._path.is_file():
                self._data = json.loads(self._path.read_text(encoding="utf-8"))
            else:
                self._data = {}
        return self._data

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        data = self._file()
        if key in data:
            return data[key]
        if self._use_env and key in os.environ:
            return os.environ[key]
        return default

    def get_json(self, key: str, default: Optional[Any] = None) -> Any:
        """Like :meth:`get`, decoding string values such as ``API_TOKENS='{"ops": "..."}'``."""
        value = self.get(key, default)
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"secret {key} is not valid JSON") from exc
        return value

    def set_override(self, data: dict[str, Any], *, env_fallback: bool = False) -> None:
        """Replace the loaded secrets (tests)."""
        self._data = dict(data)
        self._use_env = env_fallback


secrets = SecretsManager()


def get_secret(key: str, default: Optional[Any] = None) -> Any:
    return secrets.get(key, default)


def get_json_secret(key: str, default: Optional[Any] = None) -> Any:
    return secrets.get_json(key, default)
