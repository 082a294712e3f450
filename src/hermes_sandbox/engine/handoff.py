"""Outer control loop that passes terminal ownership between the UI and child processes.

The UI loop runs until the user asks for something that needs the raw
terminal (attach, shell, login). It then tears itself down and returns a
tagged ``Outcome``; the controller runs the blocking interaction and
re-enters the UI at the ``NextView`` computed from that tag.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterator, Optional, Protocol, Union

from ..sandbox import ProviderRegistry, SandboxProvider
from ..sessions import ProviderType, ResumeMode, Session, ShellSpec
from .workflow import (
    AgentAuth,
    NeedsCloudSetup,
    ResumeRequest,
    ResumeWorkflow,
    SessionReady,
    StartFailed,
    StartRequest,
    StartStep,
)

logger = logging.getLogger(__name__)


class OutcomeTag(str, Enum):
    ATTACH_SESSION = "attach-session"
    EXEC_SHELL = "exec-shell"
    NEEDS_AGENT_AUTH = "needs-agent-auth"
    SHELL = "shell"
    RESUME_SESSION = "resume-session"
    QUIT = "quit"


@dataclass(frozen=True, slots=True)
class Outcome:
    """Why the UI loop returned, and what it carried across the boundary."""

    tag: OutcomeTag
    session: Optional[Session] = None
    request: Optional[StartRequest] = None
    resume: Optional[ResumeRequest] = None
    shell_spec: Optional[ShellSpec] = None
    provider: Optional[ProviderType] = None

    @classmethod
    def quit(cls) -> "Outcome":
        return cls(tag=OutcomeTag.QUIT)


class ViewKind(str, Enum):
    PROMPT = "prompt"
    STARTING = "starting"
    CLOUD_SETUP = "cloud-setup"
    LIST = "list"
    DETAIL = "detail"
    LOGS = "logs"


@dataclass(frozen=True, slots=True)
class NextView:
    """Where the UI loop (re-)enters."""

    kind: ViewKind
    session: Optional[Session] = None
    request: Optional[Union[StartRequest, ResumeRequest]] = None
    start_at: StartStep = StartStep.CHECKING_CREDENTIALS
    notice: Optional[str] = None
    notice_is_error: bool = False

    def __post_init__(self) -> None:
        if self.kind in (ViewKind.DETAIL, ViewKind.LOGS) and self.session is None:
            raise ValueError(f"{self.kind.value} view needs a session")
        if self.kind is ViewKind.STARTING and not isinstance(self.request, StartRequest):
            raise ValueError("starting view needs a start request")
        if self.kind is ViewKind.CLOUD_SETUP and self.request is None:
            raise ValueError("cloud-setup view needs the request to resume")


class UiLoop(Protocol):
    async def run(self, view: NextView) -> Outcome:
        """Render until an outcome is reached; teardown is complete on return."""
        ...


class TerminalBusyError(RuntimeError):
    """Raised when two owners try to hold the terminal at once."""


class TerminalOwnership:
    """Tracks which side currently owns the terminal.

    ``events`` records every claim and release in order, which is what the
    hand-off tests assert on.
    """

    def __init__(self) -> None:
        self._holder: str | None = None
        self.events: list[tuple[str, str]] = []

    @property
    def holder(self) -> str | None:
        return self._holder

    def claim(self, owner: str) -> None:
        if self._holder is not None:
            raise TerminalBusyError(f"terminal is held by {self._holder}; {owner} cannot claim it")
        self._holder = owner
        self.events.append(("claim", owner))

    def release(self, owner: str) -> None:
        if self._holder != owner:
            raise TerminalBusyError(f"{owner} does not hold the terminal")
        self._holder = None
        self.events.append(("release", owner))

    @contextmanager
    def hold(self, owner: str) -> Iterator[None]:
        self.claim(owner)
        try:
            yield
        finally:
            self.release(owner)


class LoginFailedError(RuntimeError):
    """The interactive agent login did not succeed; the process exits."""


Reporter = Callable[[str], None]
StepReporter = Callable[[StartStep, Optional[str]], None]


def _print_to_stderr(message: str) -> None:
    print(message, file=sys.stderr)


async def run_ad_hoc_shell(provider: SandboxProvider, spec: ShellSpec) -> int:
    """Create a disposable shell sandbox, hand it the terminal, then clean it up."""

    shell = await provider.create_shell(spec)
    try:
        code = await shell.connect()
        logger.info("Ad hoc shell exited", extra={"provider": provider.type.value, "exit_code": code})
        return code
    finally:
        await shell.cleanup()


class HandoffController:
    """Loops UI → child process → UI until the user quits."""

    def __init__(
        self,
        ui: UiLoop,
        registry: ProviderRegistry,
        *,
        agent_auth: AgentAuth,
        resume_workflow: ResumeWorkflow,
        reporter: Reporter | None = None,
        terminal: TerminalOwnership | None = None,
    ) -> None:
        self._ui = ui
        self._registry = registry
        self._agent_auth = agent_auth
        self._resume_workflow = resume_workflow
        self._report = reporter or _print_to_stderr
        self.terminal = terminal or TerminalOwnership()
        self._dispatch: dict[OutcomeTag, Callable[[Outcome], Awaitable[NextView]]] = {
            OutcomeTag.ATTACH_SESSION: self._attach,
            OutcomeTag.EXEC_SHELL: self._exec_shell,
            OutcomeTag.NEEDS_AGENT_AUTH: self._agent_login,
            OutcomeTag.SHELL: self._ad_hoc_shell,
            OutcomeTag.RESUME_SESSION: self._resume_then_attach,
        }

    async def run(self, initial: NextView) -> int:
        """Drive the loop and return the process exit code."""

        view = initial
        while True:
            with self.terminal.hold("ui"):
                outcome = await self._ui.run(view)
            logger.debug("UI loop returned", extra={"outcome": outcome.tag.value})
            if outcome.tag is OutcomeTag.QUIT:
                return 0
            handler = self._dispatch[outcome.tag]
            try:
                with self.terminal.hold("child"):
                    view = await handler(outcome)
            except LoginFailedError as exc:
                self._report(str(exc))
                logger.error("Agent login failed", extra={"error": str(exc)})
                return 1
            except Exception as exc:
                message = f"{outcome.tag.value} failed: {exc}"
                self._report(message)
                logger.warning("Hand-off failed", extra={"outcome": outcome.tag.value, "error": str(exc)})
                view = self._fallback(outcome, message)

    def _fallback(self, outcome: Outcome, notice: str) -> NextView:
        if outcome.session is not None:
            return NextView(ViewKind.DETAIL, session=outcome.session, notice=notice, notice_is_error=True)
        if outcome.request is not None:
            return NextView(ViewKind.PROMPT, request=outcome.request, notice=notice, notice_is_error=True)
        return NextView(ViewKind.LIST, notice=notice, notice_is_error=True)

    @staticmethod
    def _require_session(outcome: Outcome) -> Session:
        if outcome.session is None:
            raise ValueError(f"{outcome.tag.value} outcome carries no session")
        return outcome.session

    async def _attach(self, outcome: Outcome) -> NextView:
        session = self._require_session(outcome)
        code = await self._registry.for_session(session).attach(session.id)
        logger.info("Detached from session", extra={"session_id": session.id, "exit_code": code})
        return NextView(ViewKind.DETAIL, session=session)

    async def _exec_shell(self, outcome: Outcome) -> NextView:
        session = self._require_session(outcome)
        code = await self._registry.for_session(session).shell(session.id)
        logger.info("Shell exited", extra={"session_id": session.id, "exit_code": code})
        return NextView(ViewKind.DETAIL, session=session)

    async def _ad_hoc_shell(self, outcome: Outcome) -> NextView:
        provider = self._registry.get(outcome.provider or ProviderType.LOCAL)
        await run_ad_hoc_shell(provider, outcome.shell_spec or ShellSpec())
        return NextView(ViewKind.LIST)

    async def _agent_login(self, outcome: Outcome) -> NextView:
        request = outcome.request
        if request is None:
            raise ValueError("needs-agent-auth outcome carries no start request")
        try:
            ok = await self._agent_auth.ensure_auth(request.agent)
        except Exception as exc:
            raise LoginFailedError(f"{request.agent.value} login failed: {exc}") from exc
        if not ok:
            raise LoginFailedError(f"{request.agent.value} login failed")
        # Re-enter with the exact parameters captured before the login.
        return NextView(ViewKind.STARTING, request=request, start_at=StartStep.RESOLVING_REPO_CONTEXT)

    async def _resume_then_attach(self, outcome: Outcome) -> NextView:
        request = outcome.resume
        if request is None:
            raise ValueError("resume-session outcome carries no resume request")
        result = await self._resume_workflow.run(
            request, on_step=lambda step, detail: self._report(detail or step.value)
        )
        if isinstance(result, NeedsCloudSetup):
            return NextView(ViewKind.CLOUD_SETUP, request=result.request)
        if isinstance(result, StartFailed):
            self._report(result.message)
            if outcome.session is not None and not result.not_found:
                return NextView(
                    ViewKind.DETAIL, session=outcome.session, notice=result.message, notice_is_error=True
                )
            return NextView(ViewKind.LIST, notice=result.message, notice_is_error=True)
        assert isinstance(result, SessionReady)
        session = result.session
        if result.handoff:
            provider = self._registry.for_session(session)
            if request.mode is ResumeMode.SHELL:
                await provider.shell(session.id)
            else:
                await provider.attach(session.id)
        return NextView(ViewKind.DETAIL, session=session)


__all__ = [
    "HandoffController",
    "LoginFailedError",
    "NextView",
    "Outcome",
    "OutcomeTag",
    "TerminalBusyError",
    "TerminalOwnership",
    "UiLoop",
    "ViewKind",
    "run_ad_hoc_shell",
]
