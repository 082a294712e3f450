"""Sandbox providers and the registry that selects between them."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable

from ..sessions import ProviderType, Session
from .base import SandboxProvider, ShellSession
from .cloud import CloudSandboxProvider
from .docker import DockerSandboxProvider
from .errors import (
    CloudApiError,
    CommandError,
    CommandNotFoundError,
    ConfigurationError,
    LogsUnavailableError,
    SandboxError,
    SessionNotFoundError,
    SetupRequiredError,
)
from .runner import CommandResult, CommandRunner, FakeCommandRunner
from .store import ChromaUnavailableError, SessionStore

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Lazily constructs one provider per substrate and caches it for the loop's lifetime."""

    def __init__(self, factories: dict[ProviderType, Callable[[], SandboxProvider]]) -> None:
        self._factories = dict(factories)
        self._providers: dict[ProviderType, SandboxProvider] = {}

    def get(self, provider_type: ProviderType | str) -> SandboxProvider:
        key = ProviderType.parse(provider_type)
        if key not in self._providers:
            try:
                factory = self._factories[key]
            except KeyError as exc:
                raise ConfigurationError(f"Unknown sandbox provider '{key.value}'") from exc
            self._providers[key] = factory()
        return self._providers[key]

    def for_session(self, session: Session) -> SandboxProvider:
        return self.get(session.provider)

    def default_type(self, configured: ProviderType | str | None) -> ProviderType:
        """The provider a new session uses when none is given on the command line."""

        if configured is None:
            return ProviderType.LOCAL
        return ProviderType.parse(configured)

    def default_provider(self, configured: ProviderType | str | None) -> SandboxProvider:
        return self.get(self.default_type(configured))

    def all(self) -> list[SandboxProvider]:
        return [self.get(key) for key in self._factories]

    async def aclose(self) -> None:
        """Release network clients held by providers that were constructed."""

        for provider in self._providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()


async def list_all_sessions(providers: Iterable[SandboxProvider]) -> list[Session]:
    """List sessions across providers, newest first.

    A provider that fails (for example cloud without a token) is logged and
    skipped so the others still show up.
    """

    providers = list(providers)
    results = await asyncio.gather(*(provider.list() for provider in providers), return_exceptions=True)
    sessions: list[Session] = []
    for provider, result in zip(providers, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.debug(
                "Failed to list sessions from provider",
                extra={"provider": provider.type.value, "error": str(result)},
            )
            continue
        sessions.extend(result)
    sessions.sort(key=lambda session: session.created, reverse=True)
    return sessions


async def find_session(registry: ProviderRegistry, ref: str) -> Session | None:
    """Resolve a session by name, then by id or id prefix, across all providers."""

    sessions = await list_all_sessions(registry.all())
    for session in sessions:
        if session.name == ref:
            return session
    for session in sessions:
        if session.id == ref or (len(ref) >= 6 and session.id.startswith(ref)):
            return session
    for provider in registry.all():
        try:
            found = await provider.get(ref)
        except SandboxError as exc:
            logger.debug("Lookup failed", extra={"provider": provider.type.value, "error": str(exc)})
            continue
        if found is not None:
            return found
    return None


__all__ = [
    "ChromaUnavailableError",
    "CloudApiError",
    "CloudSandboxProvider",
    "CommandError",
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "ConfigurationError",
    "DockerSandboxProvider",
    "FakeCommandRunner",
    "LogsUnavailableError",
    "ProviderRegistry",
    "SandboxError",
    "SandboxProvider",
    "SessionNotFoundError",
    "SessionStore",
    "SetupRequiredError",
    "ShellSession",
    "find_session",
    "list_all_sessions",
]
