"""Configuration file loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from .models import HermesConfig

PROJECT_CONFIG = Path(".hermes") / "config.yml"


class ConfigLoadError(RuntimeError):
    """Raised when a config file cannot be parsed or validated."""


def default_search_paths(config_dir: Path, project_dir: Path | None = None) -> list[Path]:
    """User config first, project config last so it wins."""

    return [config_dir / "config.yml", (project_dir or Path.cwd()) / PROJECT_CONFIG]


class ConfigLoader:
    """Loads and merges YAML config files.

    Later files override earlier ones key by key. A key explicitly set to null in
    a later file still overrides, which is how a project disables database forking.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths = [Path(path) for path in (search_paths or [])]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_raw(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        errors: list[str] = []
        for path in self._search_paths:
            if not path.is_file():
                continue
            try:
                document = yaml.safe_load(path.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                errors.append(f"Failed to parse YAML in {path}: {exc}")
                continue
            if document is None:
                continue
            if not isinstance(document, dict):
                errors.append(f"Config file {path} must contain a mapping")
                continue
            merged.update(document)
        if errors:
            raise ConfigLoadError("; ".join(errors))
        return merged

    def load(self) -> HermesConfig:
        raw = self.load_raw()
        try:
            return HermesConfig.model_validate(raw)
        except ValidationError as exc:
            sources = ", ".join(str(path) for path in self._search_paths)
            raise ConfigLoadError(f"Config validation error in {sources}: {exc}") from exc

    def read(self) -> HermesConfig:
        """Re-read the files; the start workflow calls this once per attempt."""

        return self.load()


__all__ = ["ConfigLoadError", "ConfigLoader", "PROJECT_CONFIG", "default_search_paths"]
