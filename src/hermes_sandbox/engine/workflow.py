"""Start and resume workflows: turn a prompt or a prior session into a live session.

A fresh start walks the ``StartStep`` states in order. Every step failure is
caught at the step boundary and turned into a ``StartFailed`` result; side
effects of earlier steps (a database fork, for instance) are not rolled back.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Union

from ..sandbox import ProviderRegistry
from ..sandbox.agent_command import PLAN_MODE_ARGS
from ..sandbox.errors import (
    ConfigurationError,
    SessionNotFoundError,
    SetupRequiredError,
)
from ..sessions import (
    AgentType,
    CreateSessionSpec,
    PrInfo,
    ProviderType,
    RepoInfo,
    ResumeMode,
    ResumeOptions,
    Session,
)
from ..userconfig import HermesConfig

logger = logging.getLogger(__name__)


class StartStep(str, Enum):
    CHECKING_CREDENTIALS = "checking-credentials"
    PREPARING_SUBSTRATE = "preparing-substrate"
    CHECKING_AGENT_CREDENTIALS = "checking-agent-credentials"
    RESOLVING_REPO_CONTEXT = "resolving-repo-context"
    NAMING_BRANCH = "naming-branch"
    FORKING_DATABASE = "forking-database"
    CHECKING_HOST_CREDENTIALS = "checking-host-credentials"
    CREATING_SESSION = "creating-session"


STEP_ORDER = tuple(StartStep)

STEP_LABELS = {
    StartStep.CHECKING_CREDENTIALS: "Checking cloud credentials",
    StartStep.PREPARING_SUBSTRATE: "Preparing sandbox",
    StartStep.CHECKING_AGENT_CREDENTIALS: "Checking agent credentials",
    StartStep.RESOLVING_REPO_CONTEXT: "Resolving repository",
    StartStep.NAMING_BRANCH: "Naming branch",
    StartStep.FORKING_DATABASE: "Forking database",
    StartStep.CHECKING_HOST_CREDENTIALS: "Checking GitHub credentials",
    StartStep.CREATING_SESSION: "Creating session",
}


class RunMode(str, Enum):
    ASYNC = "async"
    INTERACTIVE = "interactive"
    PLAN = "plan"

    @property
    def interactive(self) -> bool:
        return self is not RunMode.ASYNC


# Collaborator contracts


class ConfigReader(Protocol):
    def read(self) -> HermesConfig:
        ...


class AgentAuth(Protocol):
    async def check_credentials(self, agent: AgentType, model: str | None = None) -> bool:
        ...

    async def ensure_auth(self, agent: AgentType) -> bool:
        ...


class HostAuth(Protocol):
    async def check_credentials(self) -> bool:
        ...


class BranchNamer(Protocol):
    async def generate(self, prompt: str, agent: AgentType, model: str | None = None) -> str:
        ...


class RepoResolver(Protocol):
    async def get_repo_info(self) -> RepoInfo | None:
        ...


@dataclass(frozen=True, slots=True)
class ForkResult:
    env_vars: dict[str, str]
    service_id: str | None = None


class DatabaseForker(Protocol):
    async def fork(self, branch: str, service_id: str) -> ForkResult:
        ...


class PrLookup(Protocol):
    async def get_pr_for_branch(self, repo: str, branch: str) -> PrInfo | None:
        ...


# Requests and results


@dataclass(frozen=True, slots=True)
class StartRequest:
    """Parameters of one start attempt, carried unchanged across hand-offs."""

    prompt: str
    agent: AgentType
    model: Optional[str]
    mode: RunMode
    provider: ProviderType
    mount_dir: Optional[str] = None
    is_git_repo: Optional[bool] = None
    agent_args: tuple[str, ...] = ()
    service_id: Optional[str] = None
    db_fork: bool = True


@dataclass(frozen=True, slots=True)
class ResumeRequest:
    provider: ProviderType
    session_id: str
    mode: ResumeMode = ResumeMode.INTERACTIVE
    prompt: Optional[str] = None
    model: Optional[str] = None
    agent_args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SessionReady:
    session: Session
    handoff: bool
    """True when the session should be attached to (interactive or plan mode)."""


@dataclass(frozen=True, slots=True)
class NeedsCloudSetup:
    request: Union[StartRequest, ResumeRequest]
    resume_at: StartStep = StartStep.CHECKING_CREDENTIALS


@dataclass(frozen=True, slots=True)
class NeedsAgentAuth:
    request: StartRequest
    resume_at: StartStep = StartStep.RESOLVING_REPO_CONTEXT


@dataclass(frozen=True, slots=True)
class StartFailed:
    message: str
    step: Optional[StartStep] = None
    configuration_error: bool = False
    setup_required: bool = False
    not_found: bool = False


WorkflowResult = Union[SessionReady, NeedsCloudSetup, NeedsAgentAuth, StartFailed]
StepCallback = Callable[[StartStep, Optional[str]], None]


@dataclass(slots=True)
class _Context:
    request: StartRequest
    config: HermesConfig
    repo_info: Optional[RepoInfo] = None
    mount_dir: Optional[str] = None
    branch: Optional[str] = None
    env_vars: dict[str, str] = field(default_factory=dict)


def fallback_branch_name(mode: RunMode) -> str:
    return f"{mode.value}-{secrets.token_hex(3)}"


class StartWorkflow:
    """Runs the fresh-start state machine against one provider registry."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        config: ConfigReader,
        agent_auth: AgentAuth,
        host_auth: HostAuth,
        branch_namer: BranchNamer,
        repo_resolver: RepoResolver,
        db_forker: DatabaseForker,
        cloud_token: Callable[[], str | None],
        default_service_id: str | None = None,
        cwd: Callable[[], str] | None = None,
    ) -> None:
        self._registry = registry
        self._config = config
        self._agent_auth = agent_auth
        self._host_auth = host_auth
        self._branch_namer = branch_namer
        self._repo_resolver = repo_resolver
        self._db_forker = db_forker
        self._cloud_token = cloud_token
        self._default_service_id = default_service_id
        self._cwd = cwd or os.getcwd

    async def run(
        self,
        request: StartRequest,
        *,
        start_at: StartStep = StartStep.CHECKING_CREDENTIALS,
        on_step: StepCallback | None = None,
    ) -> WorkflowResult:
        report = on_step or (lambda _step, _detail: None)
        try:
            context = _Context(request=request, config=self._config.read())
        except Exception as exc:
            logger.warning("Failed to read config", extra={"error": str(exc)})
            return StartFailed(message=str(exc), configuration_error=True)

        # Cloud has no mount mode, so a missing git context is a hard error
        # before the provider is touched.
        if request.provider is ProviderType.CLOUD and start_at is StartStep.CHECKING_CREDENTIALS:
            try:
                await self._preflight_cloud(context)
            except ConfigurationError as exc:
                logger.info("Start rejected", extra={"reason": str(exc)})
                return StartFailed(message=str(exc), configuration_error=True)

        steps: list[tuple[StartStep, Callable[[_Context, StepCallback], Awaitable[Optional[WorkflowResult]]]]] = [
            (StartStep.CHECKING_CREDENTIALS, self._check_cloud_credentials),
            (StartStep.PREPARING_SUBSTRATE, self._prepare_substrate),
            (StartStep.CHECKING_AGENT_CREDENTIALS, self._check_agent_credentials),
            (StartStep.RESOLVING_REPO_CONTEXT, self._resolve_repo_context),
            (StartStep.NAMING_BRANCH, self._name_branch),
            (StartStep.FORKING_DATABASE, self._fork_database),
            (StartStep.CHECKING_HOST_CREDENTIALS, self._check_host_credentials),
            (StartStep.CREATING_SESSION, self._create_session),
        ]
        first = STEP_ORDER.index(start_at)
        for step, handler in steps[first:]:
            if step is StartStep.CHECKING_CREDENTIALS and request.provider is not ProviderType.CLOUD:
                continue
            report(step, None)
            logger.debug("Workflow step", extra={"step": step.value})
            try:
                result = await handler(context, report)
            except Exception as exc:
                logger.warning("Workflow step failed", extra={"step": step.value, "error": str(exc)})
                return StartFailed(
                    message=str(exc),
                    step=step,
                    configuration_error=isinstance(exc, ConfigurationError),
                    setup_required=isinstance(exc, SetupRequiredError),
                )
            if result is not None:
                return result
        raise AssertionError("workflow finished without creating a session")

    async def _preflight_cloud(self, context: _Context) -> None:
        if context.request.mount_dir:
            raise ConfigurationError("Cloud sandboxes do not support mount mode; run without --mount")
        if await self._repo_resolver.get_repo_info() is None:
            raise ConfigurationError(
                "Cloud sandboxes need a GitHub repository; run from a git checkout with an origin remote"
            )

    async def _check_cloud_credentials(self, context: _Context, report: StepCallback) -> Optional[WorkflowResult]:
        if not self._cloud_token():
            return NeedsCloudSetup(request=context.request)
        return None

    async def _prepare_substrate(self, context: _Context, report: StepCallback) -> Optional[WorkflowResult]:
        provider = self._registry.get(context.request.provider)
        try:
            await provider.ensure_ready()
        except SetupRequiredError:
            if context.request.provider is ProviderType.CLOUD:
                return NeedsCloudSetup(request=context.request)
            raise
        await provider.ensure_image(lambda message: report(StartStep.PREPARING_SUBSTRATE, message))
        return None

    async def _check_agent_credentials(self, context: _Context, report: StepCallback) -> Optional[WorkflowResult]:
        request = context.request
        if await self._agent_auth.check_credentials(request.agent, request.model):
            return None
        repo_info = await self._repo_resolver.get_repo_info()
        return NeedsAgentAuth(request=replace(request, is_git_repo=repo_info is not None))

    async def _resolve_repo_context(self, context: _Context, report: StepCallback) -> Optional[WorkflowResult]:
        request = context.request
        repo_info = await self._repo_resolver.get_repo_info()
        if request.is_git_repo is False:
            repo_info = None
        if request.mount_dir or repo_info is None:
            if request.provider is ProviderType.CLOUD:
                raise ConfigurationError("Cloud sandboxes do not support mount mode")
            context.mount_dir = request.mount_dir or self._cwd()
            context.repo_info = None
            report(StartStep.RESOLVING_REPO_CONTEXT, f"Mounting {context.mount_dir}")
        else:
            context.repo_info = repo_info
            report(StartStep.RESOLVING_REPO_CONTEXT, repo_info.full_name)
        return None

    async def _name_branch(self, context: _Context, report: StepCallback) -> Optional[WorkflowResult]:
        request = context.request
        if request.prompt.strip():
            context.branch = await self._branch_namer.generate(request.prompt, request.agent, request.model)
        else:
            context.branch = fallback_branch_name(request.mode)
        report(StartStep.NAMING_BRANCH, context.branch)
        return None

    async def _fork_database(self, context: _Context, report: StepCallback) -> Optional[WorkflowResult]:
        request = context.request
        if request.mode is RunMode.PLAN or not request.db_fork:
            return None
        service_id = request.service_id or context.config.service_id(self._default_service_id)
        if not service_id:
            logger.debug("No database service configured; skipping fork")
            return None
        assert context.branch is not None
        result = await self._db_forker.fork(context.branch, service_id)
        context.env_vars.update(result.env_vars)
        return None

    async def _check_host_credentials(self, context: _Context, report: StepCallback) -> Optional[WorkflowResult]:
        if context.mount_dir:
            return None
        if not await self._host_auth.check_credentials():
            raise ConfigurationError("GitHub CLI is not authenticated; run `gh auth login` and try again")
        return None

    async def _create_session(self, context: _Context, report: StepCallback) -> Optional[WorkflowResult]:
        request = context.request
        assert context.branch is not None
        agent_args = list(request.agent_args)
        if request.mode is RunMode.PLAN and request.agent is AgentType.CLAUDE:
            agent_args.extend(PLAN_MODE_ARGS)
        spec = CreateSessionSpec(
            branch_name=context.branch,
            prompt=request.prompt,
            agent=request.agent,
            model=request.model,
            interactive=request.mode.interactive,
            env_vars=context.env_vars,
            mount_dir=context.mount_dir,
            repo_info=context.repo_info,
            agent_args=agent_args,
            init_script=context.config.init_script,
            on_progress=lambda message: report(StartStep.CREATING_SESSION, message),
        )
        session = await self._registry.get(request.provider).create(spec)
        logger.info(
            "Session created",
            extra={"session_id": session.id, "provider": session.provider.value, "branch": context.branch},
        )
        return SessionReady(session=session, handoff=request.mode.interactive)


class ResumeWorkflow:
    """Resume skips repo, branch and fork steps and targets an existing session."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        agent_auth: AgentAuth,
        cloud_token: Callable[[], str | None],
    ) -> None:
        self._registry = registry
        self._agent_auth = agent_auth
        self._cloud_token = cloud_token

    async def run(self, request: ResumeRequest, *, on_step: StepCallback | None = None) -> WorkflowResult:
        report = on_step or (lambda _step, _detail: None)
        provider = self._registry.get(request.provider)
        step = StartStep.CHECKING_CREDENTIALS
        try:
            if request.provider is ProviderType.CLOUD:
                report(step, None)
                if not self._cloud_token():
                    return NeedsCloudSetup(request=request)
            step = StartStep.PREPARING_SUBSTRATE
            report(step, None)
            await provider.ensure_ready()
            previous = await provider.get(request.session_id)
            if previous is None:
                raise SessionNotFoundError(request.session_id, provider=request.provider.value)
            if request.mode is not ResumeMode.SHELL:
                step = StartStep.CHECKING_AGENT_CREDENTIALS
                report(step, None)
                if not await self._agent_auth.check_credentials(previous.agent, request.model or previous.model):
                    return StartFailed(
                        message=f"{previous.agent.value} credentials are missing; log in and resume again",
                        step=step,
                        setup_required=True,
                    )
            step = StartStep.CREATING_SESSION
            report(step, None)
            options = ResumeOptions(
                mode=request.mode,
                prompt=request.prompt if request.mode is ResumeMode.DETACHED else None,
                model=request.model,
                agent_args=list(request.agent_args),
                on_progress=lambda message: report(StartStep.CREATING_SESSION, message),
            )
            session = await provider.resume(request.session_id, options)
        except Exception as exc:
            logger.warning("Resume failed", extra={"step": step.value, "error": str(exc)})
            return StartFailed(
                message=str(exc),
                step=step,
                configuration_error=isinstance(exc, ConfigurationError),
                setup_required=isinstance(exc, SetupRequiredError),
                not_found=isinstance(exc, SessionNotFoundError),
            )
        return SessionReady(session=session, handoff=request.mode is not ResumeMode.DETACHED)


__all__ = [
    "AgentAuth",
    "BranchNamer",
    "ConfigReader",
    "DatabaseForker",
    "ForkResult",
    "HostAuth",
    "NeedsAgentAuth",
    "NeedsCloudSetup",
    "PrLookup",
    "RepoResolver",
    "ResumeRequest",
    "ResumeWorkflow",
    "RunMode",
    "STEP_LABELS",
    "STEP_ORDER",
    "SessionReady",
    "StartFailed",
    "StartRequest",
    "StartStep",
    "StartWorkflow",
    "WorkflowResult",
    "fallback_branch_name",
]
