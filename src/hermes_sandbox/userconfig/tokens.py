"""Cloud access token storage."""

from __future__ import annotations

import os
from pathlib import Path

TOKEN_FILE = "cloud_token"


class CloudCredentials:
    """Reads the cloud token from the environment, then from the config directory."""

    def __init__(self, config_dir: Path, env_token: str | None = None) -> None:
        self._path = Path(config_dir) / TOKEN_FILE
        self._env_token = env_token

    @property
    def path(self) -> Path:
        return self._path

    def token(self) -> str | None:
        if self._env_token:
            return self._env_token
        if self._path.is_file():
            value = self._path.read_text(encoding="utf-8").strip()
            return value or None
        return None

    def save(self, token: str) -> None:
        token = token.strip()
        if not token:
            raise ValueError("token must not be empty")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # the mode above only applies on creation
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(token + "\n")


__all__ = ["CloudCredentials", "TOKEN_FILE"]
