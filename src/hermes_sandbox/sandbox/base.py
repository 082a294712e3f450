"""Contract shared by the local and cloud sandbox providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Protocol, Sequence, runtime_checkable

from ..sessions import (
    CreateSessionSpec,
    ProviderType,
    ResumeOptions,
    SandboxStats,
    Session,
    ShellSpec,
)

ImageProgress = Callable[[str], None]


@dataclass(slots=True)
class ShellSession:
    """A disposable sandbox for an ad hoc shell.

    ``connect`` takes over the terminal and returns the shell's exit code;
    ``cleanup`` releases whatever ``connect`` left behind.
    """

    connect: Callable[[], Awaitable[int]]
    cleanup: Callable[[], Awaitable[None]]
    labels: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class SandboxProvider(Protocol):
    """Lifecycle operations against one execution substrate."""

    type: ProviderType

    async def ensure_ready(self) -> None:
        """Raise ``SetupRequiredError`` when the substrate cannot create sessions yet."""
        ...

    async def ensure_image(self, on_progress: ImageProgress | None = None) -> str:
        ...

    async def create(self, spec: CreateSessionSpec) -> Session:
        ...

    async def resume(self, session_id: str, options: ResumeOptions) -> Session:
        ...

    async def attach(self, session_id: str) -> int:
        ...

    async def shell(self, session_id: str) -> int:
        ...

    async def stop(self, session_id: str) -> None:
        ...

    async def remove(self, session_id: str) -> None:
        ...

    async def get(self, session_id: str) -> Session | None:
        ...

    async def list(self) -> list[Session]:
        ...

    def stream_logs(self, session_id: str) -> AsyncIterator[str]:
        ...

    async def create_shell(self, spec: ShellSpec) -> ShellSession:
        ...

    async def get_stats(self, session_ids: Sequence[str]) -> dict[str, SandboxStats]:
        ...


__all__ = ["ImageProgress", "SandboxProvider", "ShellSession"]
