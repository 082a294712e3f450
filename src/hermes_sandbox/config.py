"""Runtime settings and logging setup for Hermes."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


class HermesSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    config_dir: Path = Field(
        default=Path("~/.config/hermes"), validation_alias="HERMES_CONFIG_DIR"
    )
    log_level: str = Field(default="INFO", validation_alias="HERMES_LOG_LEVEL")
    log_file: Path | None = Field(default=None, validation_alias="HERMES_LOG_FILE")
    sandbox_image: str = Field(
        default="ghcr.io/timescale/hermes/sandbox:latest",
        validation_alias="HERMES_SANDBOX_IMAGE",
    )
    docker_path: str | None = Field(default=None, validation_alias="DOCKER_PATH")
    cloud_token: str | None = Field(default=None, validation_alias="DENO_DEPLOY_TOKEN")
    cloud_api_url: str = Field(
        default="https://api.deno.com/v1", validation_alias="HERMES_CLOUD_API"
    )
    cloud_region: str = Field(default="ord", validation_alias="HERMES_CLOUD_REGION")
    default_service_id: str | None = Field(
        default=None, validation_alias="HERMES_DEFAULT_SERVICE_ID"
    )
    store_path: Path | None = Field(default=None, validation_alias="HERMES_STORE_PATH")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "HERMES_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("cloud_region")
    @classmethod
    def _validate_region(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"ord", "ams"}:
            raise ValueError("HERMES_CLOUD_REGION must be one of ord, ams")
        return normalized

    @field_validator("cloud_token", "default_service_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache(maxsize=1)
def get_settings() -> HermesSettings:
    """Return cached settings instance."""

    settings = HermesSettings()
    settings.config_dir = settings.config_dir.expanduser().resolve()
    settings.log_file = (settings.log_file or settings.config_dir / "hermes.log").expanduser()
    settings.store_path = (settings.store_path or settings.config_dir / "sessions").expanduser()
    return settings


def configure_logging(level: str, log_file: Path | None = None, *, verbose: bool = False) -> None:
    """Configure root logging.

    The terminal belongs to the UI while it runs, so records go to ``log_file``.
    ``verbose`` mirrors them to stderr for the non-interactive commands.
    """

    handlers: list[logging.Handler] = []
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    if verbose or not handlers:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


__all__ = ["HermesSettings", "LOG_FORMAT", "configure_logging", "get_settings"]
