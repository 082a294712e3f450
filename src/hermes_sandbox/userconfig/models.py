"""User and project configuration model."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..sessions import AgentType, ProviderType


class HermesConfig(BaseModel):
    """Merged view of the user-level and project-level config files."""

    model_config = ConfigDict(extra="ignore")

    agent: AgentType = Field(default=AgentType.CLAUDE, description="Coding agent to run.")
    model: Optional[str] = Field(default=None, description="Agent-specific model name.")
    tiger_service_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("tiger_service_id", "tigerServiceId"),
        description="Parent database service to fork. An explicit null disables forking.",
    )
    sandbox_provider: ProviderType = Field(
        default=ProviderType.LOCAL,
        validation_alias=AliasChoices("sandbox_provider", "sandboxProvider"),
        description="Substrate new sessions are created on.",
    )
    cloud_region: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("cloud_region", "cloudRegion")
    )
    init_script: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("init_script", "initScript"),
        description="Shell command run in the sandbox before the agent starts.",
    )
    overlay_mounts: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("overlay_mounts", "overlayMounts"),
        description="Paths under a mounted directory that get an isolated volume.",
    )

    @field_validator("sandbox_provider", mode="before")
    @classmethod
    def _parse_provider(cls, value: Any):
        if value is None:
            return ProviderType.LOCAL
        if isinstance(value, str):
            return ProviderType.parse(value)
        return value

    @field_validator("overlay_mounts", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("overlay_mounts must be a sequence of paths")

    def service_id(self, default: str | None = None) -> str | None:
        """Resolve the database service to fork.

        A key that is present but null means "never fork"; an absent key falls
        back to ``default``.
        """

        if "tiger_service_id" in self.model_fields_set:
            return self.tiger_service_id
        return default


__all__ = ["HermesConfig"]
