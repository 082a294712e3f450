"""Credential checks and interactive login for the coding agents."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from ..sandbox.runner import CommandRunner
from ..sessions import AgentType

logger = logging.getLogger(__name__)

CLAUDE_CREDENTIALS = ".claude/.credentials.json"
CLAUDE_CONFIG = ".claude.json"
OPENCODE_AUTH = ".local/share/opencode/auth.json"

# opencode models are "<provider>/<model>"; each provider accepts an API key env var.
OPENCODE_PROVIDER_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

LOGIN_COMMANDS: dict[AgentType, tuple[str, ...]] = {
    AgentType.CLAUDE: ("claude", "/login"),
    AgentType.OPENCODE: ("opencode", "auth", "login"),
}


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.debug("Unreadable credential file", extra={"file": str(path), "error": str(exc)})
        return None


class AgentAuth:
    """Checks host credentials for each agent and runs its login flow when they are missing."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        home: Path | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._runner = runner
        self._home = home or Path.home()
        self._environ = environ if environ is not None else os.environ
        self._clock = clock

    def _claude_ok(self) -> bool:
        if self._environ.get("ANTHROPIC_API_KEY"):
            return True
        creds = _read_json(self._home / CLAUDE_CREDENTIALS)
        oauth = creds.get("claudeAiOauth") if isinstance(creds, dict) else None
        if isinstance(oauth, dict) and oauth.get("accessToken"):
            # expiresAt is milliseconds since the epoch
            expires_at = oauth.get("expiresAt") or 0
            if expires_at > self._clock() * 1000:
                return True
            logger.debug("Claude OAuth token has expired")
        config = _read_json(self._home / CLAUDE_CONFIG)
        return isinstance(config, dict) and bool(config.get("primaryApiKey"))

    def _opencode_ok(self, model: str | None) -> bool:
        auth = _read_json(self._home / OPENCODE_AUTH)
        providers = set(auth) if isinstance(auth, dict) else set()
        if model and "/" in model:
            provider = model.split("/", 1)[0]
            env_key = OPENCODE_PROVIDER_KEYS.get(provider)
            return provider in providers or bool(env_key and self._environ.get(env_key))
        return bool(providers) or any(self._environ.get(key) for key in OPENCODE_PROVIDER_KEYS.values())

    async def check_credentials(self, agent: AgentType, model: str | None = None) -> bool:
        ok = self._claude_ok() if agent is AgentType.CLAUDE else self._opencode_ok(model)
        logger.debug("Agent credentials checked", extra={"agent": agent.value, "valid": ok})
        return ok

    async def ensure_auth(self, agent: AgentType) -> bool:
        """Run the agent's interactive login; succeed only if credentials now check out."""

        if await self.check_credentials(agent):
            return True
        code = await self._runner.run_interactive(*LOGIN_COMMANDS[agent])
        if code != 0:
            logger.warning("Agent login exited with an error", extra={"agent": agent.value, "exit_code": code})
            return False
        return await self.check_credentials(agent)


__all__ = ["AgentAuth", "LOGIN_COMMANDS", "OPENCODE_PROVIDER_KEYS"]
