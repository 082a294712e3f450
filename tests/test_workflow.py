from __future__ import annotations

import asyncio
from dataclasses import replace

from hermes_sandbox.engine import (
    ForkResult,
    NeedsAgentAuth,
    NeedsCloudSetup,
    ResumeRequest,
    ResumeWorkflow,
    RunMode,
    SessionReady,
    StartFailed,
    StartRequest,
    StartStep,
    StartWorkflow,
)
from hermes_sandbox.sandbox import ProviderRegistry, SetupRequiredError
from hermes_sandbox.sessions import (
    AgentType,
    CreateSessionSpec,
    ProviderType,
    RepoInfo,
    ResumeMode,
    ResumeOptions,
    Session,
    SessionStatus,
)
from hermes_sandbox.userconfig import HermesConfig, ConfigLoadError

REPO = RepoInfo(owner="acme", name="widgets")


class RecordingProvider:
    def __init__(self, provider_type: ProviderType) -> None:
        self.type = provider_type
        self.calls: list[str] = []
        self.specs: list[CreateSessionSpec] = []
        self.resume_options: list[ResumeOptions] = []
        self.ready_error: Exception | None = None
        self.existing: dict[str, Session] = {}

    async def ensure_ready(self) -> None:
        self.calls.append("ensure_ready")
        if self.ready_error is not None:
            raise self.ready_error

    async def ensure_image(self, on_progress=None) -> str:
        self.calls.append("ensure_image")
        if on_progress is not None:
            on_progress("exists")
        return "image"

    async def create(self, spec: CreateSessionSpec) -> Session:
        self.calls.append("create")
        self.specs.append(spec)
        spec.report("Starting container")
        return Session(
            id="new-id",
            name=f"hermes-{spec.branch_name}",
            branch=spec.branch_name,
            agent=spec.agent,
            provider=self.type,
            repo=spec.repo,
            prompt=spec.prompt,
            mount_dir=spec.mount_dir,
            status=SessionStatus.RUNNING,
            interactive=spec.interactive,
            created="2025-01-01T00:00:00+00:00",
        )

    async def get(self, session_id: str) -> Session | None:
        self.calls.append("get")
        return self.existing.get(session_id)

    async def resume(self, session_id: str, options: ResumeOptions) -> Session:
        self.calls.append("resume")
        self.resume_options.append(options)
        previous = self.existing[session_id]
        return previous.model_copy(update={"id": "resumed-id", "resumed_from": previous.name, "status": SessionStatus.RUNNING})


class FakeConfig:
    def __init__(self, config: HermesConfig | None = None, error: Exception | None = None) -> None:
        self.config = config or HermesConfig()
        self.error = error
        self.reads = 0

    def read(self) -> HermesConfig:
        self.reads += 1
        if self.error is not None:
            raise self.error
        return self.config


class FakeAgentAuth:
    def __init__(self, valid: bool = True) -> None:
        self.valid = valid
        self.checked: list[tuple[AgentType, str | None]] = []

    async def check_credentials(self, agent, model=None) -> bool:
        self.checked.append((agent, model))
        return self.valid

    async def ensure_auth(self, agent) -> bool:
        return True


class FakeHostAuth:
    def __init__(self, valid: bool = True) -> None:
        self.valid = valid

    async def check_credentials(self) -> bool:
        return self.valid


class FakeNamer:
    def __init__(self, name: str = "fix-login-flow") -> None:
        self.name = name
        self.prompts: list[str] = []

    async def generate(self, prompt, agent, model=None) -> str:
        self.prompts.append(prompt)
        return self.name


class FakeRepo:
    def __init__(self, repo: RepoInfo | None = REPO) -> None:
        self.repo = repo
        self.lookups = 0

    async def get_repo_info(self):
        self.lookups += 1
        return self.repo


class FakeForker:
    def __init__(self) -> None:
        self.forks: list[tuple[str, str]] = []

    async def fork(self, branch: str, service_id: str) -> ForkResult:
        self.forks.append((branch, service_id))
        return ForkResult(env_vars={"PGHOST": "fork.db"}, service_id="svc-fork")


def _request(**overrides) -> StartRequest:
    base = StartRequest(
        prompt="fix the login flow",
        agent=AgentType.CLAUDE,
        model=None,
        mode=RunMode.ASYNC,
        provider=ProviderType.LOCAL,
    )
    return replace(base, **overrides)


def _workflow(
    *,
    local: RecordingProvider | None = None,
    cloud: RecordingProvider | None = None,
    config: FakeConfig | None = None,
    agent_auth: FakeAgentAuth | None = None,
    host_auth: FakeHostAuth | None = None,
    repo: FakeRepo | None = None,
    forker: FakeForker | None = None,
    token: str | None = "tok",
    default_service_id: str | None = None,
    namer: FakeNamer | None = None,
) -> StartWorkflow:
    local = local or RecordingProvider(ProviderType.LOCAL)
    cloud = cloud or RecordingProvider(ProviderType.CLOUD)
    registry = ProviderRegistry({ProviderType.LOCAL: lambda: local, ProviderType.CLOUD: lambda: cloud})
    return StartWorkflow(
        registry,
        config=config or FakeConfig(),
        agent_auth=agent_auth or FakeAgentAuth(),
        host_auth=host_auth or FakeHostAuth(),
        branch_namer=namer or FakeNamer(),
        repo_resolver=repo or FakeRepo(),
        db_forker=forker or FakeForker(),
        cloud_token=lambda: token,
        default_service_id=default_service_id,
        cwd=lambda: "/home/me/project",
    )


def test_async_start_without_fork_returns_running_session() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    forker = FakeForker()
    steps: list[tuple[StartStep, str | None]] = []

    result = asyncio.run(
        _workflow(local=local, forker=forker).run(_request(), on_step=lambda step, detail: steps.append((step, detail)))
    )

    assert isinstance(result, SessionReady)
    assert result.handoff is False
    assert result.session.status is SessionStatus.RUNNING
    assert result.session.repo == "acme/widgets"
    assert forker.forks == []
    assert local.calls == ["ensure_ready", "ensure_image", "create"]
    assert StartStep.CHECKING_CREDENTIALS not in [step for step, _ in steps]
    assert (StartStep.NAMING_BRANCH, "fix-login-flow") in steps
    assert (StartStep.CREATING_SESSION, "Starting container") in steps


def test_interactive_start_hands_off() -> None:
    result = asyncio.run(_workflow().run(_request(mode=RunMode.INTERACTIVE)))
    assert isinstance(result, SessionReady)
    assert result.handoff is True
    assert result.session.interactive


def test_plan_mode_adds_permission_args_and_skips_fork() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    forker = FakeForker()

    result = asyncio.run(
        _workflow(local=local, forker=forker, default_service_id="svc-1").run(_request(mode=RunMode.PLAN))
    )

    assert isinstance(result, SessionReady)
    assert local.specs[0].agent_args == ["--permission-mode", "plan"]
    assert forker.forks == []


def test_database_fork_uses_default_and_overrides() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    forker = FakeForker()
    workflow = _workflow(local=local, forker=forker, default_service_id="svc-default")

    asyncio.run(workflow.run(_request()))
    asyncio.run(workflow.run(_request(service_id="svc-cli")))
    asyncio.run(workflow.run(_request(db_fork=False)))

    assert forker.forks == [("fix-login-flow", "svc-default"), ("fix-login-flow", "svc-cli")]
    assert local.specs[0].env_vars == {"PGHOST": "fork.db"}
    assert local.specs[2].env_vars == {}


def test_explicit_null_service_id_in_config_disables_fork() -> None:
    forker = FakeForker()
    config = FakeConfig(HermesConfig.model_validate({"tiger_service_id": None}))

    asyncio.run(_workflow(forker=forker, config=config, default_service_id="svc-default").run(_request()))

    assert forker.forks == []


def test_cloud_without_git_fails_before_provider_is_touched() -> None:
    cloud = RecordingProvider(ProviderType.CLOUD)

    result = asyncio.run(
        _workflow(cloud=cloud, repo=FakeRepo(None)).run(_request(provider=ProviderType.CLOUD))
    )

    assert isinstance(result, StartFailed)
    assert result.configuration_error
    assert cloud.calls == []


def test_cloud_with_mount_is_rejected() -> None:
    cloud = RecordingProvider(ProviderType.CLOUD)
    result = asyncio.run(
        _workflow(cloud=cloud).run(_request(provider=ProviderType.CLOUD, mount_dir="/src"))
    )
    assert isinstance(result, StartFailed) and result.configuration_error
    assert cloud.calls == []


def test_cloud_without_token_needs_setup_and_can_resume() -> None:
    cloud = RecordingProvider(ProviderType.CLOUD)
    request = _request(provider=ProviderType.CLOUD)

    needs = asyncio.run(_workflow(cloud=cloud, token=None).run(request))

    assert isinstance(needs, NeedsCloudSetup)
    assert needs.request == request
    assert needs.resume_at is StartStep.CHECKING_CREDENTIALS
    assert cloud.calls == []

    resumed = asyncio.run(_workflow(cloud=cloud).run(needs.request, start_at=needs.resume_at))
    assert isinstance(resumed, SessionReady)


def test_cloud_substrate_setup_error_routes_to_setup() -> None:
    cloud = RecordingProvider(ProviderType.CLOUD)
    cloud.ready_error = SetupRequiredError("token rejected", provider="cloud")

    result = asyncio.run(_workflow(cloud=cloud).run(_request(provider=ProviderType.CLOUD)))

    assert isinstance(result, NeedsCloudSetup)


def test_local_substrate_error_fails_at_step() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    local.ready_error = SetupRequiredError("Docker daemon is not reachable")

    result = asyncio.run(_workflow(local=local).run(_request()))

    assert isinstance(result, StartFailed)
    assert result.step is StartStep.PREPARING_SUBSTRATE
    assert result.setup_required


def test_missing_agent_credentials_returns_needs_auth_with_git_context() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    request = _request(mode=RunMode.INTERACTIVE)

    result = asyncio.run(_workflow(local=local, agent_auth=FakeAgentAuth(valid=False)).run(request))

    assert isinstance(result, NeedsAgentAuth)
    assert result.request == replace(request, is_git_repo=True)
    assert result.resume_at is StartStep.RESOLVING_REPO_CONTEXT
    assert "create" not in local.calls

    after_login = asyncio.run(_workflow(local=local).run(result.request, start_at=result.resume_at))
    assert isinstance(after_login, SessionReady)
    assert local.specs[0].prompt == request.prompt


def test_no_git_repo_mounts_working_directory() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    host_auth = FakeHostAuth(valid=False)

    result = asyncio.run(_workflow(local=local, repo=FakeRepo(None), host_auth=host_auth).run(_request()))

    assert isinstance(result, SessionReady)
    assert local.specs[0].mount_dir == "/home/me/project"
    assert result.session.repo == "local"


def test_unauthenticated_gh_fails_for_clone_mode() -> None:
    result = asyncio.run(_workflow(host_auth=FakeHostAuth(valid=False)).run(_request()))
    assert isinstance(result, StartFailed)
    assert result.step is StartStep.CHECKING_HOST_CREDENTIALS
    assert result.configuration_error


def test_empty_prompt_uses_mode_branch_name() -> None:
    namer = FakeNamer()
    local = RecordingProvider(ProviderType.LOCAL)

    asyncio.run(_workflow(local=local, namer=namer).run(_request(prompt="", mode=RunMode.INTERACTIVE)))

    assert namer.prompts == []
    assert local.specs[0].branch_name.startswith("interactive-")
    assert len(local.specs[0].branch_name) == len("interactive-") + 6


def test_config_error_is_reported_as_configuration_failure() -> None:
    config = FakeConfig(error=ConfigLoadError("Failed to parse YAML in config.yml"))
    result = asyncio.run(_workflow(config=config).run(_request()))
    assert isinstance(result, StartFailed)
    assert result.configuration_error
    assert "Failed to parse YAML" in result.message


def test_config_is_reread_on_every_attempt() -> None:
    config = FakeConfig()
    workflow = _workflow(config=config)
    asyncio.run(workflow.run(_request()))
    asyncio.run(workflow.run(_request()))
    assert config.reads == 2


def _previous() -> Session:
    return Session(
        id="old-id",
        name="hermes-fix-login",
        branch="fix-login",
        agent="opencode",
        model="gpt-5",
        status="exited",
        exit_code=0,
        created="2025-01-01T00:00:00+00:00",
    )


def _resume_workflow(provider: RecordingProvider, *, agent_auth: FakeAgentAuth | None = None, token=None):
    registry = ProviderRegistry({provider.type: lambda: provider})
    return ResumeWorkflow(registry, agent_auth=agent_auth or FakeAgentAuth(), cloud_token=lambda: token)


def test_resume_detached_passes_prompt() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    local.existing["old-id"] = _previous()
    auth = FakeAgentAuth()

    result = asyncio.run(
        _resume_workflow(local, agent_auth=auth).run(
            ResumeRequest(provider=ProviderType.LOCAL, session_id="old-id", mode=ResumeMode.DETACHED, prompt="add tests")
        )
    )

    assert isinstance(result, SessionReady)
    assert result.handoff is False
    assert local.resume_options[0].prompt == "add tests"
    assert auth.checked == [(AgentType.OPENCODE, "gpt-5")]


def test_resume_shell_skips_agent_credentials() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    local.existing["old-id"] = _previous()
    auth = FakeAgentAuth(valid=False)

    result = asyncio.run(
        _resume_workflow(local, agent_auth=auth).run(
            ResumeRequest(provider=ProviderType.LOCAL, session_id="old-id", mode=ResumeMode.SHELL)
        )
    )

    assert isinstance(result, SessionReady)
    assert result.handoff is True
    assert auth.checked == []


def test_resume_missing_session_is_not_found() -> None:
    local = RecordingProvider(ProviderType.LOCAL)
    result = asyncio.run(
        _resume_workflow(local).run(ResumeRequest(provider=ProviderType.LOCAL, session_id="gone"))
    )
    assert isinstance(result, StartFailed)
    assert result.not_found


def test_resume_cloud_without_token_needs_setup() -> None:
    cloud = RecordingProvider(ProviderType.CLOUD)
    request = ResumeRequest(provider=ProviderType.CLOUD, session_id="sbx-1")
    result = asyncio.run(_resume_workflow(cloud).run(request))
    assert isinstance(result, NeedsCloudSetup)
    assert result.request is request
    assert cloud.calls == []
