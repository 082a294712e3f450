"""Host credential files that sandboxes need for the agents and the gh CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Paths are relative to the home directory on both sides.
CREDENTIAL_PATHS = (
    ".claude/.credentials.json",
    ".claude.json",
    ".local/share/opencode/auth.json",
    ".config/gh/hosts.yml",
)


@dataclass(slots=True)
class CredentialFile:
    relative_path: str
    host_path: Path
    content: str

    def remote_path(self, home: str) -> str:
        return f"{home.rstrip('/')}/{self.relative_path}"


def collect_credential_files(home: Path | None = None) -> list[CredentialFile]:
    """Return the credential files present on the host."""

    base = home or Path.home()
    files: list[CredentialFile] = []
    for relative in CREDENTIAL_PATHS:
        path = base / relative
        if not path.is_file():
            continue
        try:
            files.append(CredentialFile(relative, path, path.read_text(encoding="utf-8")))
        except OSError as exc:
            logger.debug("Skipping unreadable credential file", extra={"file": str(path), "error": str(exc)})
    return files


__all__ = ["CREDENTIAL_PATHS", "CredentialFile", "collect_credential_files"]
