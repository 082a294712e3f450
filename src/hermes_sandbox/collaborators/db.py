"""Database forking through the tiger CLI."""

from __future__ import annotations

import json
import logging

from ..engine.workflow import ForkResult
from ..sandbox.errors import SandboxError
from ..sandbox.runner import CommandRunner

logger = logging.getLogger(__name__)


def parse_env_output(output: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines; values may themselves contain ``=``."""

    env: dict[str, str] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line or "=" not in line:
            continue
        key, value = line.split("=", 1)
        env[key] = value
    return env


class TigerDatabaseForker:
    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def fork(self, branch: str, service_id: str) -> ForkResult:
        forked = await self._runner.run(
            "tiger", "svc", "fork", service_id,
            "--now", "--name", branch, "--with-password",
            "-o", "json",
            check=True,
        )
        try:
            metadata = json.loads(forked.stdout)
            new_id = metadata["service_id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise SandboxError(f"Unexpected output from tiger svc fork: {exc}") from exc
        logger.info("Database forked", extra={"service_id": new_id, "branch": branch})
        env = await self._runner.run("tiger", "svc", "get", new_id, "-o", "env", "--with-password", check=True)
        return ForkResult(env_vars=parse_env_output(env.stdout), service_id=new_id)


__all__ = ["TigerDatabaseForker", "parse_env_output"]
