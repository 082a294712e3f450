"""Session record types."""

from .models import (
    AgentType,
    CreateSessionSpec,
    ExecType,
    LOCAL_REPO,
    PrInfo,
    ProgressCallback,
    ProviderType,
    RepoInfo,
    ResumeMode,
    ResumeOptions,
    SandboxStats,
    Session,
    SessionStatus,
    ShellSpec,
)

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
