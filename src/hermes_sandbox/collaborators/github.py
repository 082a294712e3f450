"""GitHub host credentials and pull-request lookup through the gh CLI."""

from __future__ import annotations

import json
import logging

from ..sandbox.errors import SandboxError
from ..sandbox.runner import CommandRunner
from ..sessions import PrInfo

logger = logging.getLogger(__name__)

GITHUB_HOST = "github.com"
BRANCH_PREFIX = "hermes/"


class GhHostAuth:
    def __init__(self, runner: CommandRunner, *, host: str = GITHUB_HOST) -> None:
        self._runner = runner
        self._host = host

    async def check_credentials(self) -> bool:
        try:
            result = await self._runner.run("gh", "auth", "status", "-h", self._host)
        except SandboxError as exc:
            logger.debug("gh unavailable", extra={"error": str(exc)})
            return False
        return result.ok


class GhPrLookup:
    """Finds the most relevant pull request for a session branch.

    Session branches are stored without the ``hermes/`` prefix that the git
    branch actually carries. Open PRs win, then the highest number. Any
    failure yields None.
    """

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def get_pr_for_branch(self, repo: str, branch: str) -> PrInfo | None:
        head = branch if branch.startswith(BRANCH_PREFIX) else f"{BRANCH_PREFIX}{branch}"
        try:
            result = await self._runner.run(
                "gh", "pr", "list",
                "--head", head,
                "--repo", repo,
                "--json", "number,state,url",
                "--limit", "10",
                "--state", "all",
            )
        except SandboxError as exc:
            logger.debug("PR lookup failed", extra={"repo": repo, "branch": head, "error": str(exc)})
            return None
        if not result.ok:
            logger.debug("gh pr list failed", extra={"repo": repo, "branch": head, "stderr": result.stderr.strip()})
            return None
        text = result.stdout.strip()
        if not text:
            return None
        try:
            items = [PrInfo.model_validate(item) for item in json.loads(text)]
        except ValueError as exc:
            logger.debug("Unparseable gh output", extra={"error": str(exc)})
            return None
        if not items:
            return None
        items.sort(key=lambda pr: (pr.state != "OPEN", -pr.number))
        return items[0]


__all__ = ["GhHostAuth", "GhPrLookup"]
