"""Error taxonomy shared by sandbox providers and the orchestration engine."""

from __future__ import annotations

from typing import Sequence


class SandboxError(RuntimeError):
    """Base class for sandbox errors."""


class SetupRequiredError(SandboxError):
    """The substrate or a credential is not ready; callers should branch into setup."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class SessionNotFoundError(SandboxError):
    """The addressed session no longer exists."""

    def __init__(self, session_id: str, *, provider: str | None = None) -> None:
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id
        self.provider = provider


class ConfigurationError(SandboxError):
    """An unsupported combination of options or missing host credentials."""


class LogsUnavailableError(SandboxError):
    """Interactive sessions have no line-structured log stream."""


class CommandError(SandboxError):
    """An external command exited with a non-zero status."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"{args[0] if args else 'command'} failed: {detail}")
        self.args_list = tuple(args)
        self.returncode = returncode
        self.stderr = stderr


class CommandNotFoundError(SetupRequiredError):
    """The executable for an external command cannot be located."""


class CloudApiError(SandboxError):
    """The cloud sandbox API returned a non-success response."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "CloudApiError",
    "CommandError",
    "CommandNotFoundError",
    "ConfigurationError",
    "LogsUnavailableError",
    "SandboxError",
    "SessionNotFoundError",
    "SetupRequiredError",
]
