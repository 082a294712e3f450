"""Async runner for the external CLIs the providers drive (docker, ssh, gh, git, tiger)."""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable, Mapping

from .errors import CommandError, CommandNotFoundError

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of an external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        if not self.ok:
            raise CommandError(self.args, self.returncode, self.stderr)
        return self


class CommandRunner:
    """Execute external commands asynchronously."""

    def __init__(self, executables: Mapping[str, str] | None = None) -> None:
        self._executables = dict(executables or {})

    def resolve(self, name: str) -> str:
        explicit = self._executables.get(name)
        if explicit is not None:
            if os.path.isfile(explicit):
                return explicit
            raise CommandNotFoundError(f"{name} executable not found at {explicit}")
        binary = shutil.which(name)
        if binary is None:
            raise CommandNotFoundError(f"{name} executable not found on PATH")
        return binary

    async def run(
        self,
        *args: str,
        check: bool = False,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        result = await self._invoke(*args, input=input, env=env)
        if check:
            result.check()
        return result

    async def _invoke(
        self,
        *args: str,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        cmd = [self.resolve(args[0]), *args[1:]]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(env),
        )
        stdout_bytes, stderr_bytes = await process.communicate(
            input.encode("utf-8") if input is not None else None
        )
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=tuple(args), returncode=process.returncode, stdout=stdout, stderr=stderr)

    async def stream(self, *args: str) -> AsyncIterator[str]:
        """Yield stdout lines (stderr merged) until the process exits."""

        cmd = [self.resolve(args[0]), *args[1:]]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=sanitize_environment(),
        )
        assert process.stdout is not None
        try:
            async for raw in process.stdout:
                yield raw.decode("utf-8", errors="replace").rstrip("\r\n")
        finally:
            if process.returncode is None:
                process.terminate()
            await process.wait()

    async def run_interactive(self, *args: str) -> int:
        """Run a command that owns the terminal's stdio and return its exit code."""

        cmd = [self.resolve(args[0]), *args[1:]]
        process = await asyncio.create_subprocess_exec(*cmd, env=sanitize_environment())
        return await process.wait()


Handler = Callable[[tuple[str, ...]], "CommandResult | None"]


class FakeCommandRunner(CommandRunner):
    """Test double that replays scripted command results."""

    def __init__(
        self,
        responses: Iterable[CommandResult] | None = None,
        *,
        handler: Handler | None = None,
        stream_lines: Iterable[str] | None = None,
        interactive_returncode: int = 0,
    ) -> None:
        super().__init__()
        self._responses = list(responses or [])
        self._handler = handler
        self._stream_lines = list(stream_lines or [])
        self._interactive_returncode = interactive_returncode
        self._invocations: list[tuple[str, ...]] = []
        self._inputs: list[str | None] = []
        self.interactive_invocations: list[tuple[str, ...]] = []

    def resolve(self, name: str) -> str:
        return name

    async def _invoke(self, *args: str, input: str | None = None, env=None) -> CommandResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        self._inputs.append(input)
        if self._handler is not None:
            handled = self._handler(tuple(args))
            if handled is not None:
                return handled
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=tuple(args), returncode=0, stdout="", stderr="")

    async def stream(self, *args: str) -> AsyncIterator[str]:  # type: ignore[override]
        self._invocations.append(tuple(args))
        for line in self._stream_lines:
            yield line

    async def run_interactive(self, *args: str) -> int:  # type: ignore[override]
        self.interactive_invocations.append(tuple(args))
        return self._interactive_returncode

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    @property
    def inputs(self) -> list[str | None]:
        return self._inputs


__all__ = [
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "sanitize_environment",
]
