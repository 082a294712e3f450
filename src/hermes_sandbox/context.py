"""Builds the provider registry, collaborators and engine from settings and config."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rich.console import Console

from .collaborators import (
    AgentAuth,
    AgentBranchNamer,
    GhHostAuth,
    GhPrLookup,
    GitRepoResolver,
    TigerDatabaseForker,
)
from .config import HermesSettings, get_settings
from .engine import (
    BackgroundTaskQueue,
    EngineState,
    HandoffController,
    Reconciler,
    ResumeWorkflow,
    StartWorkflow,
)
from .sandbox import (
    CloudSandboxProvider,
    CommandRunner,
    DockerSandboxProvider,
    ProviderRegistry,
    SessionStore,
)
from .sandbox.deno_api import DenoApiClient
from .sessions import ProviderType
from .ui.app import AppDefaults, HermesApp
from .userconfig import CloudCredentials, ConfigLoader, HermesConfig, default_search_paths

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HermesContext:
    """Everything one CLI invocation shares."""

    settings: HermesSettings
    config_loader: ConfigLoader
    config: HermesConfig
    runner: CommandRunner
    credentials: CloudCredentials
    registry: ProviderRegistry
    repo_resolver: GitRepoResolver
    agent_auth: AgentAuth
    host_auth: GhHostAuth
    pr_lookup: GhPrLookup

    def default_provider_type(self, override: Optional[str] = None) -> ProviderType:
        return self.registry.default_type(override or self.config.sandbox_provider)

    def start_workflow(self) -> StartWorkflow:
        return StartWorkflow(
            self.registry,
            config=self.config_loader,
            agent_auth=self.agent_auth,
            host_auth=self.host_auth,
            branch_namer=AgentBranchNamer(self.runner, self.repo_resolver),
            repo_resolver=self.repo_resolver,
            db_forker=TigerDatabaseForker(self.runner),
            cloud_token=self.credentials.token,
            default_service_id=self.settings.default_service_id,
        )

    def resume_workflow(self) -> ResumeWorkflow:
        return ResumeWorkflow(self.registry, agent_auth=self.agent_auth, cloud_token=self.credentials.token)


def build_registry(
    settings: HermesSettings,
    config: HermesConfig,
    runner: CommandRunner,
    credentials: CloudCredentials,
) -> ProviderRegistry:
    """Providers are only constructed when first used, so cloud costs nothing locally."""

    def local() -> DockerSandboxProvider:
        return DockerSandboxProvider(
            runner,
            image=settings.sandbox_image,
            overlay_mounts=config.overlay_mounts,
        )

    def cloud() -> CloudSandboxProvider:
        assert settings.store_path is not None
        return CloudSandboxProvider(
            SessionStore(settings.store_path),
            credentials.token,
            region=config.cloud_region or settings.cloud_region,
            runner=runner,
            api_factory=lambda token: DenoApiClient(token, base_url=settings.cloud_api_url),
        )

    return ProviderRegistry({ProviderType.LOCAL: local, ProviderType.CLOUD: cloud})


def build_context(
    settings: HermesSettings | None = None,
    *,
    project_dir: Path | None = None,
    runner: CommandRunner | None = None,
) -> HermesContext:
    """Load config and wire the collaborators. Raises ``ConfigLoadError`` on a bad file."""

    settings = settings or get_settings()
    runner = runner or CommandRunner({"docker": settings.docker_path} if settings.docker_path else None)
    loader = ConfigLoader(default_search_paths(settings.config_dir, project_dir))
    config = loader.load()
    logger.debug(
        "Config loaded",
        extra={"search_paths": [str(path) for path in loader.search_paths], "provider": config.sandbox_provider.value},
    )
    credentials = CloudCredentials(settings.config_dir, settings.cloud_token)
    repo_resolver = GitRepoResolver(runner, cwd=str(project_dir) if project_dir else None)
    return HermesContext(
        settings=settings,
        config_loader=loader,
        config=config,
        runner=runner,
        credentials=credentials,
        registry=build_registry(settings, config, runner, credentials),
        repo_resolver=repo_resolver,
        agent_auth=AgentAuth(runner),
        host_auth=GhHostAuth(runner),
        pr_lookup=GhPrLookup(runner),
    )


def build_controller(
    context: HermesContext,
    defaults: AppDefaults,
    *,
    console: Console | None = None,
) -> tuple[HandoffController, BackgroundTaskQueue]:
    """One orchestration loop: its stores, pollers, task queue, UI and controller."""

    console = console or Console()
    state = EngineState.create()
    tasks = BackgroundTaskQueue(state.sessions, state.toasts)
    reconciler = Reconciler(state, context.registry, pr_lookup=context.pr_lookup.get_pr_for_branch)
    resume = context.resume_workflow()
    app = HermesApp(
        registry=context.registry,
        state=state,
        reconciler=reconciler,
        tasks=tasks,
        start_workflow=context.start_workflow(),
        resume_workflow=resume,
        credentials=context.credentials,
        defaults=defaults,
        console=console,
    )
    controller = HandoffController(
        app,
        context.registry,
        agent_auth=context.agent_auth,
        resume_workflow=resume,
        reporter=lambda message: console.print(message, markup=False, highlight=False),
    )
    return controller, tasks


__all__ = ["HermesContext", "build_context", "build_controller", "build_registry"]
