"""Repository context and branch naming backed by git, docker and the agent CLIs."""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import string
from typing import Callable, Iterable, Optional

from ..sandbox.errors import SandboxError
from ..sandbox.runner import CommandRunner
from ..sessions import AgentType, RepoInfo

logger = logging.getLogger(__name__)

BRANCH_PATTERN = re.compile(r"^[a-z][a-z0-9-]*[a-z0-9]$")
MIN_BRANCH_LENGTH = 5
MAX_BRANCH_LENGTH = 50
MAX_ATTEMPTS = 3
FALLBACK_PREFIX = "hermes-branch-"

_GITHUB_PREFIXES = ("https://github.com/", "http://github.com/", "ssh://git@github.com/", "git@github.com:")


def parse_github_url(remote_url: str) -> RepoInfo:
    """Parse ``https://github.com/o/r.git`` or ``git@github.com:o/r.git``."""

    path = remote_url.strip()
    for prefix in _GITHUB_PREFIXES:
        if path.startswith(prefix):
            path = path[len(prefix):]
            break
    path = path.removesuffix(".git").rstrip("/")
    parts = path.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Unable to parse GitHub repository from remote URL: {remote_url}")
    return RepoInfo(owner=parts[0], name=parts[1])


def validate_branch_name(name: str) -> Optional[str]:
    """Return why ``name`` is unusable, or None when it is valid."""

    if len(name) < MIN_BRANCH_LENGTH:
        return "too short"
    if len(name) > MAX_BRANCH_LENGTH:
        return "too long"
    if not BRANCH_PATTERN.match(name):
        return "invalid characters"
    if "--" in name:
        return "double hyphens not allowed"
    return None


def random_branch_name(existing: Iterable[str] = ()) -> str:
    taken = set(existing)
    alphabet = string.ascii_lowercase + string.digits
    while True:
        suffix = "".join(secrets.choice(alphabet) for _ in range(12))
        candidate = f"{FALLBACK_PREFIX}{suffix}"
        if candidate not in taken:
            return candidate


class GitRepoResolver:
    """Resolves the GitHub repository of the working directory via ``git remote``."""

    def __init__(self, runner: CommandRunner, *, cwd: str | None = None) -> None:
        self._runner = runner
        self._cwd = cwd

    def _git(self, *args: str) -> tuple[str, ...]:
        if self._cwd:
            return ("git", "-C", self._cwd, *args)
        return ("git", *args)

    async def get_repo_info(self) -> RepoInfo | None:
        try:
            result = await self._runner.run(*self._git("remote", "get-url", "origin"))
        except SandboxError as exc:
            logger.debug("git unavailable", extra={"error": str(exc)})
            return None
        if not result.ok:
            logger.debug("Not in a git repository with an origin remote", extra={"stderr": result.stderr.strip()})
            return None
        try:
            return parse_github_url(result.stdout)
        except ValueError as exc:
            logger.debug("Origin is not a GitHub remote", extra={"error": str(exc)})
            return None

    async def list_branches(self) -> list[str]:
        try:
            result = await self._runner.run(*self._git("branch", "--list"))
        except SandboxError:
            return []
        if not result.ok:
            return []
        names = []
        for line in result.stdout.splitlines():
            name = line.lstrip("*").strip()
            if name:
                names.append(name)
        return names


NAMING_PROMPT = """Generate a git branch name for the following task:

<task>
```markdown
{task}
```
</task>

Requirements:
- Lowercase letters, numbers, and hyphens only
- No special characters, spaces, or underscores
- Keep it concise (2-4 words max)
- Example format: add-user-auth, fix-login-bug

CRITICAL: Output ONLY the branch name, nothing else"""


class AgentBranchNamer:
    """Asks the coding agent for a short branch name and validates it.

    Names already used by local git branches or hermes containers are fed back
    to the agent. After ``max_attempts`` unusable answers, or as soon as the
    agent CLI itself fails, a random ``hermes-branch-*`` name is used.
    """

    def __init__(
        self,
        runner: CommandRunner,
        repo: GitRepoResolver,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self._runner = runner
        self._repo = repo
        self._max_attempts = max_attempts
        self._on_progress = on_progress

    def _report(self, message: str) -> None:
        logger.debug(message)
        if self._on_progress is not None:
            self._on_progress(message)

    async def _existing_containers(self) -> list[str]:
        try:
            result = await self._runner.run("docker", "ps", "-a", "--format", "{{.Names}}")
        except SandboxError:
            return []
        if not result.ok:
            return []
        return [name.strip().removeprefix("hermes-") for name in result.stdout.splitlines() if name.strip()]

    async def existing_names(self) -> set[str]:
        branches, containers = await asyncio.gather(self._repo.list_branches(), self._existing_containers())
        return {name.removeprefix("hermes/") for name in branches} | set(containers)

    def _agent_command(self, agent: AgentType, model: str | None, prompt: str) -> tuple[str, ...]:
        if agent is AgentType.CLAUDE:
            effective = model or "haiku"
            return ("claude", "--model", effective, "-p", prompt)
        if model:
            return ("opencode", "run", "--model", model, prompt)
        return ("opencode", "run", prompt)

    async def generate(self, prompt: str, agent: AgentType, model: str | None = None) -> str:
        taken = await self.existing_names()
        last_attempt = ""
        for attempt in range(1, self._max_attempts + 1):
            request = NAMING_PROMPT.format(task=prompt.replace("```", "\\`\\`\\`"))
            if taken:
                request += "\n\nIMPORTANT: Do NOT use any of these names (they already exist):\n"
                request += ", ".join(sorted(taken))
            if last_attempt:
                request += f"\n\nThe name '{last_attempt}' is invalid. Suggest a different name."
            try:
                result = await self._runner.run(*self._agent_command(agent, model, request), check=True)
            except SandboxError as exc:
                logger.warning("Branch name generation failed", extra={"agent": agent.value, "error": str(exc)})
                self._report(f"Failed to generate branch name with {agent.value}")
                break
            candidate = re.sub(r"['\"\s]", "", result.stdout.strip().lower())
            reason = validate_branch_name(candidate)
            if reason is not None:
                self._report(f"Attempt {attempt} is invalid ({reason})")
                last_attempt = candidate[:100]
                continue
            if candidate in taken:
                self._report(f"Attempt {attempt}: '{candidate}' already exists")
                last_attempt = candidate
                continue
            return candidate
        self._report("Failed to generate a valid branch name, using a random name.")
        return random_branch_name(taken)


__all__ = [
    "AgentBranchNamer",
    "BRANCH_PATTERN",
    "GitRepoResolver",
    "parse_github_url",
    "random_branch_name",
    "validate_branch_name",
]
