"""Session record models shared by providers, the engine and renderers."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

LOCAL_REPO = "local"
"""Repo sentinel for sessions that operate on a mounted local directory."""

ProgressCallback = Callable[[str], None]


class SessionStatus(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class ProviderType(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"

    @classmethod
    def parse(cls, value: "str | ProviderType") -> "ProviderType":
        if isinstance(value, ProviderType):
            return value
        normalized = value.strip().lower()
        if normalized == "docker":
            return cls.LOCAL
        return cls(normalized)


class AgentType(str, Enum):
    CLAUDE = "claude"
    OPENCODE = "opencode"


class ExecType(str, Enum):
    AGENT = "agent"
    SHELL = "shell"


class Session(BaseModel):
    """One sandboxed run, as reported by its provider."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Provider-assigned identifier.")
    name: str = Field(..., description="Human-facing session name.")
    branch: str = Field(..., description="Git branch the agent works on (without the hermes/ prefix).")
    agent: AgentType = AgentType.CLAUDE
    model: Optional[str] = None
    provider: ProviderType = ProviderType.LOCAL
    repo: str = LOCAL_REPO
    prompt: str = ""
    mount_dir: Optional[str] = None
    resumed_from: Optional[str] = None
    status: SessionStatus = SessionStatus.UNKNOWN
    exit_code: Optional[int] = None
    interactive: bool = False
    exec_type: ExecType = ExecType.AGENT
    created: str = Field(..., description="ISO-8601 creation timestamp.")
    region: Optional[str] = None
    volume_slug: Optional[str] = None
    snapshot_slug: Optional[str] = None

    @field_validator("provider", mode="before")
    @classmethod
    def _parse_provider(cls, value: Any):
        if isinstance(value, str):
            return ProviderType.parse(value)
        return value

    @model_validator(mode="after")
    def _check_invariants(self) -> "Session":
        if self.status is SessionStatus.EXITED:
            if self.exit_code is None:
                raise ValueError("exit_code is required when status is exited")
        elif self.exit_code is not None:
            raise ValueError("exit_code is only allowed when status is exited")
        if self.provider is ProviderType.LOCAL and (
            self.region or self.volume_slug or self.snapshot_slug
        ):
            raise ValueError("region/volume_slug/snapshot_slug are cloud-only attributes")
        return self

    @property
    def key(self) -> tuple[ProviderType, str]:
        """Cross-provider address of this session."""

        return (self.provider, self.id)

    @property
    def is_running(self) -> bool:
        return self.status is SessionStatus.RUNNING

    def with_status(self, status: SessionStatus, exit_code: int | None = None) -> "Session":
        """Return a copy carrying a new status, keeping the exit-code invariant."""

        if status is SessionStatus.EXITED:
            exit_code = exit_code if exit_code is not None else self.exit_code
            if exit_code is None:
                raise ValueError("exit_code is required when status is exited")
        else:
            exit_code = None
        return self.model_copy(update={"status": status, "exit_code": exit_code})

    def public_dict(self) -> dict[str, Any]:
        """Render the interchange shape used by the machine-readable outputs."""

        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "branch": self.branch,
            "agent": self.agent.value,
            "model": self.model,
            "provider": self.provider.value,
            "repo": self.repo,
            "prompt": self.prompt,
            "mountDir": self.mount_dir,
            "resumedFrom": self.resumed_from,
            "status": self.status.value,
            "interactive": self.interactive,
            "created": self.created,
        }
        if self.status is SessionStatus.EXITED:
            data["exitCode"] = self.exit_code
        if self.provider is ProviderType.CLOUD:
            data["region"] = self.region
            data["volumeSlug"] = self.volume_slug
            data["snapshotSlug"] = self.snapshot_slug
        return {key: value for key, value in data.items() if value is not None}


class RepoInfo(BaseModel):
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class CreateSessionSpec(BaseModel):
    """Everything a provider needs to materialize a new session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    branch_name: str
    prompt: str = ""
    agent: AgentType = AgentType.CLAUDE
    model: Optional[str] = None
    interactive: bool = False
    env_vars: dict[str, str] = Field(default_factory=dict)
    mount_dir: Optional[str] = None
    repo_info: Optional[RepoInfo] = None
    agent_args: list[str] = Field(default_factory=list)
    init_script: Optional[str] = None
    on_progress: Optional[ProgressCallback] = None

    @property
    def repo(self) -> str:
        if self.mount_dir or self.repo_info is None:
            return LOCAL_REPO
        return self.repo_info.full_name

    def report(self, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(message)


class ResumeMode(str, Enum):
    INTERACTIVE = "interactive"
    DETACHED = "detached"
    SHELL = "shell"


class ResumeOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    mode: ResumeMode = ResumeMode.INTERACTIVE
    prompt: Optional[str] = None
    model: Optional[str] = None
    agent_args: list[str] = Field(default_factory=list)
    on_progress: Optional[ProgressCallback] = None

    @model_validator(mode="after")
    def _prompt_only_detached(self) -> "ResumeOptions":
        if self.prompt and self.mode is not ResumeMode.DETACHED:
            raise ValueError("a resume prompt is only meaningful in detached mode")
        return self

    def report(self, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(message)


class ShellSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    repo_info: Optional[RepoInfo] = None
    mount_dir: Optional[str] = None
    on_progress: Optional[ProgressCallback] = None

    def report(self, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(message)


class SandboxStats(BaseModel):
    id: str
    cpu_percent: float = 0.0
    mem_usage: str = ""
    mem_percent: float = 0.0


class PrInfo(BaseModel):
    number: int
    state: str
    url: str


__all__ = [
    "AgentType",
    "CreateSessionSpec",
    "ExecType",
    "LOCAL_REPO",
    "PrInfo",
    "ProgressCallback",
    "ProviderType",
    "RepoInfo",
    "ResumeMode",
    "ResumeOptions",
    "SandboxStats",
    "Session",
    "SessionStatus",
    "ShellSpec",
]
