from __future__ import annotations

import pytest
from pydantic import ValidationError

from hermes_sandbox.sessions import (
    CreateSessionSpec,
    ProviderType,
    RepoInfo,
    ResumeMode,
    ResumeOptions,
    Session,
    SessionStatus,
)


def _session(**overrides) -> Session:
    data = {
        "id": "abc123def456",
        "name": "hermes-fix-login",
        "branch": "fix-login",
        "created": "2025-01-01T00:00:00+00:00",
    }
    data.update(overrides)
    return Session(**data)


def test_exit_code_only_with_exited_status() -> None:
    with pytest.raises(ValidationError):
        _session(status="exited")
    with pytest.raises(ValidationError):
        _session(status="running", exit_code=0)

    exited = _session(status="exited", exit_code=2)
    assert exited.exit_code == 2


def test_cloud_attributes_rejected_on_local_sessions() -> None:
    with pytest.raises(ValidationError):
        _session(provider="local", region="ord")

    cloud = _session(provider="cloud", region="ord", volume_slug="vol-1")
    assert cloud.key == (ProviderType.CLOUD, "abc123def456")


def test_provider_accepts_docker_alias() -> None:
    assert _session(provider="docker").provider is ProviderType.LOCAL
    assert ProviderType.parse(" Cloud ") is ProviderType.CLOUD


def test_with_status_clears_or_keeps_exit_code() -> None:
    running = _session(status="running")
    exited = running.with_status(SessionStatus.EXITED, 1)
    assert exited.exit_code == 1
    assert exited.with_status(SessionStatus.STOPPED).exit_code is None
    with pytest.raises(ValueError):
        running.with_status(SessionStatus.EXITED)


def test_public_dict_uses_interchange_keys() -> None:
    local = _session(status="exited", exit_code=0, mount_dir="/tmp/app").public_dict()
    assert local["exitCode"] == 0
    assert local["mountDir"] == "/tmp/app"
    assert "region" not in local
    assert "model" not in local

    cloud = _session(provider="cloud", status="running", region="ams", snapshot_slug="snap").public_dict()
    assert cloud["provider"] == "cloud"
    assert cloud["region"] == "ams"
    assert cloud["snapshotSlug"] == "snap"
    assert "exitCode" not in cloud


def test_create_spec_repo_falls_back_to_local() -> None:
    repo = RepoInfo(owner="acme", name="widgets")
    assert CreateSessionSpec(branch_name="x", repo_info=repo).repo == "acme/widgets"
    assert CreateSessionSpec(branch_name="x", repo_info=repo, mount_dir="/src").repo == "local"
    assert CreateSessionSpec(branch_name="x").repo == "local"


def test_resume_prompt_requires_detached_mode() -> None:
    with pytest.raises(ValidationError):
        ResumeOptions(mode=ResumeMode.INTERACTIVE, prompt="keep going")
    assert ResumeOptions(mode=ResumeMode.DETACHED, prompt="keep going").prompt == "keep going"
