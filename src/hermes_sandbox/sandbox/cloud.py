"""Cloud sandbox provider backed by Deno Deploy sandboxes.

The API only knows about live sandboxes, volumes and snapshots, so the full
session record is kept in the local ``SessionStore`` and reconciled against the
live sandbox list on every read.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import shlex
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Sequence

from .. import __version__
from ..sessions import (
    CreateSessionSpec,
    ExecType,
    LOCAL_REPO,
    ProviderType,
    ResumeMode,
    ResumeOptions,
    SandboxStats,
    Session,
    SessionStatus,
    ShellSpec,
)
from .agent_command import build_agent_command, build_continue_command
from .base import ImageProgress, ShellSession
from .credentials import CredentialFile, collect_credential_files
from .deno_api import DenoApiClient, DenoSandbox, SshEndpoint
from .errors import (
    CloudApiError,
    ConfigurationError,
    LogsUnavailableError,
    SandboxError,
    SessionNotFoundError,
    SetupRequiredError,
)
from .runner import CommandRunner
from .store import SessionStore

logger = logging.getLogger(__name__)

TMUX_SESSION = "hermes"
AGENT_LOG = "/work/agent.log"
SANDBOX_TIMEOUT = "30m"
SANDBOX_MEMORY = "2GiB"
VOLUME_CAPACITY = "10GiB"
MANAGED_LABELS = {"hermes.managed": "true"}
SSH_OPTIONS = (
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
    "-o", "SetEnv=TERM=xterm-256color",
)

_BUILD_STEPS: tuple[tuple[str, str, str | None], ...] = (
    (
        "Installing system packages",
        "apt-get update && apt-get install -y git curl ca-certificates zip unzip tar gzip jq"
        " openssh-client tmux",
        None,
    ),
    (
        "Installing GitHub CLI",
        "curl -fsSL https://cli.github.com/packages/githubcli-archive-keyring.gpg"
        " | dd of=/usr/share/keyrings/githubcli-archive-keyring.gpg"
        " && chmod go+r /usr/share/keyrings/githubcli-archive-keyring.gpg"
        ' && echo "deb [arch=$(dpkg --print-architecture)'
        " signed-by=/usr/share/keyrings/githubcli-archive-keyring.gpg]"
        ' https://cli.github.com/packages stable main"'
        " | tee /etc/apt/sources.list.d/github-cli.list > /dev/null"
        " && apt-get update && apt-get install -y gh",
        None,
    ),
    (
        "Creating hermes user",
        "groupadd -g 10000 hermes && useradd -u 10000 -g hermes -m -s /bin/bash hermes"
        " && mkdir -p /home/hermes/.local/bin /home/hermes/.config/gh /home/hermes/.claude"
        " && chown -R hermes:hermes /home/hermes && mkdir -p /work && chown hermes:hermes /work",
        None,
    ),
    ("Installing Claude Code", "curl -fsSL https://claude.ai/install.sh | bash", "hermes"),
    ("Installing Tiger CLI", "curl -fsSL https://cli.tigerdata.com | sh", "hermes"),
    ("Installing OpenCode", "curl -fsSL https://opencode.ai/install | bash", "hermes"),
)


def deno_slug(prefix: str, name: str | None = None) -> str:
    """Build a unique, API-safe slug such as ``hs-fix-login-3fa9c1``."""

    parts = [prefix]
    if name:
        cleaned = re.sub(r"[^a-z0-9-]+", "-", name.lower()).strip("-")[:24].strip("-")
        if cleaned:
            parts.append(cleaned)
    parts.append(secrets.token_hex(3))
    return "-".join(parts)


def _is_limit_error(message: str) -> bool:
    lowered = message.lower()
    return "limit" in lowered or "concurrent" in lowered or "quota" in lowered


def ssh_command(endpoint: SshEndpoint, remote: str | None = None) -> list[str]:
    args = ["ssh", *SSH_OPTIONS]
    if remote:
        args.append("-t")
    args.append(f"{endpoint.username}@{endpoint.hostname}")
    if remote:
        args.append(remote)
    return args


class CloudSandboxProvider:
    """Sandbox provider for remote Deno Deploy sandboxes."""

    type = ProviderType.CLOUD

    def __init__(
        self,
        store: SessionStore,
        token_source: Callable[[], str | None],
        *,
        region: str = "ord",
        runner: CommandRunner | None = None,
        api_factory: Callable[[str], DenoApiClient] = DenoApiClient,
        credentials: Callable[[], list[CredentialFile]] = collect_credential_files,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        detach_delay: float = 5.0,
        log_poll_interval: float = 2.0,
    ) -> None:
        self._store = store
        self._token_source = token_source
        self._region = region
        self._runner = runner or CommandRunner()
        self._api_factory = api_factory
        self._credentials = credentials
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._detach_delay = detach_delay
        self._log_poll_interval = log_poll_interval
        self._client: DenoApiClient | None = None
        self._client_token: str | None = None
        self._retired: list[DenoApiClient] = []

    async def aclose(self) -> None:
        """Close every API client this provider opened."""

        clients, self._retired = [*self._retired, self._client], []
        self._client = None
        self._client_token = None
        for client in clients:
            if client is not None:
                await client.aclose()

    # Helpers

    def _api(self) -> DenoApiClient:
        token = self._token_source()
        if not token:
            raise SetupRequiredError("No Deno Deploy token configured", provider=self.type.value)
        if self._client is None or token != self._client_token:
            if self._client is not None:
                self._retired.append(self._client)
            self._client = self._api_factory(token)
            self._client_token = token
        return self._client

    async def _sh(self, sandbox_id: str, command: str, *, user: str | None = None) -> str:
        result = await self._api().exec(sandbox_id, ["bash", "-c", command], user=user)
        if not result.ok:
            logger.warning(
                "Sandbox command failed",
                extra={"sandbox_id": sandbox_id, "exit_code": result.exit_code, "command": command[:200]},
            )
            raise SandboxError(
                f"Sandbox command failed (exit {result.exit_code}): {result.stderr.strip() or command}"
            )
        return result.stdout

    async def _inject_credentials(self, sandbox_id: str) -> None:
        home = (await self._sh(sandbox_id, "echo $HOME")).strip() or "/home/hermes"
        for credential in self._credentials():
            remote = credential.remote_path(home)
            await self._sh(sandbox_id, f"mkdir -p {shlex.quote(remote.rsplit('/', 1)[0])}")
            await self._api().write_file(sandbox_id, remote, credential.content, mode=0o600)

    async def _start_agent(self, sandbox_id: str, command: str, *, interactive: bool) -> None:
        if interactive:
            await self._sh(
                sandbox_id,
                f"tmux new-session -d -s {TMUX_SESSION} -c /work/app {shlex.quote(command)}",
            )
        else:
            await self._sh(sandbox_id, f"cd /work/app && nohup {command} > {AGENT_LOG} 2>&1 &")

    def _limit_error(self, exc: CloudApiError) -> SandboxError | None:
        if not _is_limit_error(str(exc)):
            return None
        running = self._store.list(ProviderType.CLOUD, SessionStatus.RUNNING)
        return SandboxError(
            f"Cloud sandbox limit reached ({len(running)} running). "
            "Stop a running session or wait for one to finish."
        )

    async def _boot(self, root: str, labels: dict[str, str], env: dict[str, str] | None = None, *, region: str) -> DenoSandbox:
        try:
            return await self._api().create_sandbox(
                region=region,
                root=root,
                timeout=SANDBOX_TIMEOUT,
                memory=SANDBOX_MEMORY,
                labels=labels,
                env=env,
            )
        except CloudApiError as exc:
            limit = self._limit_error(exc)
            if limit is not None:
                raise limit from exc
            raise

    async def _best_effort(self, what: str, action: Awaitable[None], **context: str) -> None:
        try:
            await action
        except SandboxError as exc:
            logger.debug("Failed to %s", what, extra={**context, "error": str(exc)})

    async def _reconcile(self, sessions: list[Session]) -> list[Session]:
        if not any(session.is_running for session in sessions):
            return sessions
        try:
            live = {sandbox.id for sandbox in await self._api().list_sandboxes(MANAGED_LABELS)}
        except SandboxError as exc:
            logger.debug("Failed to sync cloud session status", extra={"error": str(exc)})
            return sessions
        reconciled: list[Session] = []
        for session in sessions:
            if session.is_running and session.id not in live:
                # The sandbox is gone and its exit code is not observable.
                session = self._store.upsert(session.with_status(SessionStatus.STOPPED))
            reconciled.append(session)
        return reconciled

    # Setup

    async def ensure_ready(self) -> None:
        self._api()

    async def ensure_image(self, on_progress: ImageProgress | None = None) -> str:
        report = on_progress or (lambda _message: None)
        api = self._api()
        slug = f"hermes-base-{__version__}"
        report("checking")
        try:
            if any(snapshot.slug == slug for snapshot in await api.list_snapshots()):
                report("exists")
                return slug
        except CloudApiError as exc:
            logger.debug("Failed to list snapshots", extra={"error": str(exc)})

        report("Creating build volume")
        volume = await api.create_volume(
            slug=f"hermes-base-build-{secrets.token_hex(4)}",
            region=self._region,
            capacity=VOLUME_CAPACITY,
            source="builtin:debian-13",
        )
        sandbox_id: str | None = None
        try:
            report("Booting build sandbox")
            sandbox = await api.create_sandbox(
                region=self._region, root=volume.slug, timeout=SANDBOX_TIMEOUT, memory=SANDBOX_MEMORY
            )
            sandbox_id = sandbox.id
            for message, command, user in _BUILD_STEPS:
                report(message)
                await self._sh(sandbox_id, command, user=user)
            report("Cleaning up")
            await api.kill_sandbox(sandbox_id)
            sandbox_id = None
            await self._sleep(self._detach_delay)
            report("Creating snapshot")
            await api.snapshot_volume(volume.id, slug)
        finally:
            if sandbox_id is not None:
                await self._best_effort("kill build sandbox", api.kill_sandbox(sandbox_id))
        report("done")
        return slug

    # Lifecycle

    async def create(self, spec: CreateSessionSpec) -> Session:
        if spec.mount_dir:
            raise ConfigurationError("Cloud sandboxes do not support mount mode")
        api = self._api()
        base_snapshot = await self.ensure_image()

        spec.report("Creating volume")
        volume = await api.create_volume(
            slug=deno_slug("hs", spec.branch_name),
            region=self._region,
            capacity=VOLUME_CAPACITY,
            source=base_snapshot,
        )

        spec.report("Booting sandbox")
        labels = {
            **MANAGED_LABELS,
            "hermes.name": spec.branch_name,
            "hermes.agent": spec.agent.value,
            "hermes.repo": spec.repo,
        }
        try:
            sandbox = await self._boot(volume.slug, labels, dict(spec.env_vars), region=self._region)
        except SandboxError:
            await self._best_effort("clean up volume", api.delete_volume(volume.id), volume=volume.slug)
            raise

        try:
            spec.report("Setting up credentials")
            await self._inject_credentials(sandbox.id)
            if spec.repo_info is not None:
                spec.report("Cloning repository")
                await self._sh(
                    sandbox.id,
                    f"cd /work && gh auth setup-git && gh repo clone {shlex.quote(spec.repo_info.full_name)} app"
                    f" && cd app && git switch -c {shlex.quote('hermes/' + spec.branch_name)}",
                )
            else:
                await self._sh(sandbox.id, "mkdir -p /work/app")
            if spec.init_script:
                spec.report("Running init script")
                await self._sh(sandbox.id, f"cd /work/app && {spec.init_script}")
            spec.report("Starting agent")
            command = build_agent_command(
                spec.agent,
                mode="interactive" if spec.interactive else "detached",
                model=spec.model,
                agent_args=spec.agent_args,
                prompt=spec.prompt,
            )
            await self._start_agent(sandbox.id, command, interactive=spec.interactive)
        except SandboxError:
            await self._best_effort("kill sandbox", api.kill_sandbox(sandbox.id), sandbox_id=sandbox.id)
            await self._best_effort("clean up volume", api.delete_volume(volume.id), volume=volume.slug)
            raise

        session = Session(
            id=sandbox.id,
            name=spec.branch_name,
            branch=spec.branch_name,
            agent=spec.agent,
            model=spec.model,
            provider=ProviderType.CLOUD,
            repo=spec.repo,
            prompt=spec.prompt,
            status=SessionStatus.RUNNING,
            interactive=spec.interactive,
            created=self._clock().isoformat(),
            region=self._region,
            volume_slug=volume.slug,
        )
        logger.info("Cloud sandbox created", extra={"session_id": session.id, "volume": volume.slug})
        return self._store.upsert(session)

    async def resume(self, session_id: str, options: ResumeOptions) -> Session:
        existing = self._store.get(ProviderType.CLOUD, session_id)
        if existing is None:
            raise SessionNotFoundError(session_id, provider=self.type.value)
        if not existing.snapshot_slug and not existing.volume_slug:
            raise SandboxError("No resume snapshot or volume available for this session")
        api = self._api()
        region = existing.region or self._region

        created_volume: str | None = None
        if existing.snapshot_slug:
            options.report("Creating volume from snapshot")
            volume = await api.create_volume(
                slug=deno_slug("hr", existing.name),
                region=region,
                capacity=VOLUME_CAPACITY,
                source=existing.snapshot_slug,
            )
            boot_volume = created_volume = volume.slug
        else:
            boot_volume = existing.volume_slug or ""
            logger.info("No resume snapshot, booting from session volume", extra={"volume": boot_volume})

        options.report("Booting sandbox")
        labels = {
            **MANAGED_LABELS,
            "hermes.name": existing.name,
            "hermes.agent": existing.agent.value,
            "hermes.repo": existing.repo,
        }
        try:
            sandbox = await self._boot(boot_volume, labels, region=region)
        except SandboxError:
            if created_volume is not None:
                await self._best_effort("clean up volume", api.delete_volume(created_volume), volume=created_volume)
            raise

        model = options.model or existing.model
        interactive = options.mode is not ResumeMode.DETACHED
        options.report("Setting up credentials")
        await self._inject_credentials(sandbox.id)
        if options.mode is not ResumeMode.SHELL:
            options.report("Starting agent")
            command = build_agent_command(
                existing.agent,
                mode="interactive" if interactive else "detached",
                model=model,
                agent_args=options.agent_args,
                continue_=True,
                prompt=None if interactive else options.prompt,
            )
            await self._start_agent(sandbox.id, command, interactive=interactive)

        session = Session(
            id=sandbox.id,
            name=existing.name,
            branch=existing.branch,
            agent=existing.agent,
            model=model,
            provider=ProviderType.CLOUD,
            repo=existing.repo,
            prompt=options.prompt or existing.prompt,
            resumed_from=session_id,
            status=SessionStatus.RUNNING,
            interactive=interactive,
            exec_type=ExecType.SHELL if options.mode is ResumeMode.SHELL else ExecType.AGENT,
            created=self._clock().isoformat(),
            region=region,
            volume_slug=boot_volume,
        )
        return self._store.upsert(session)

    async def list(self) -> list[Session]:
        return await self._reconcile(self._store.list(ProviderType.CLOUD))

    async def get(self, session_id: str) -> Session | None:
        session = self._store.get(ProviderType.CLOUD, session_id)
        if session is None:
            return None
        return (await self._reconcile([session]))[0]

    async def remove(self, session_id: str) -> None:
        session = self._store.get(ProviderType.CLOUD, session_id)
        try:
            api = self._api()
            await self._best_effort("kill sandbox", api.kill_sandbox(session_id), sandbox_id=session_id)
            # Snapshots pin their source volume, so they go first.
            if session is not None and session.snapshot_slug:
                await self._best_effort(
                    "delete snapshot", api.delete_snapshot(session.snapshot_slug), snapshot=session.snapshot_slug
                )
            if session is not None and session.volume_slug:
                await self._best_effort(
                    "delete volume", api.delete_volume(session.volume_slug), volume=session.volume_slug
                )
        except SetupRequiredError as exc:
            logger.debug("Skipping cloud cleanup", extra={"session_id": session_id, "error": str(exc)})
        finally:
            self._store.delete(ProviderType.CLOUD, session_id)

    async def stop(self, session_id: str) -> None:
        session = self._store.get(ProviderType.CLOUD, session_id)
        if session is None:
            return
        api = self._api()
        try:
            await api.kill_sandbox(session_id)
        except CloudApiError as exc:
            if exc.status_code != 404:
                raise
        session = self._store.upsert(session.with_status(SessionStatus.STOPPED))

        if not session.volume_slug:
            return
        # The platform needs a moment to detach the volume before it can be snapshotted.
        await self._sleep(self._detach_delay)
        if session.snapshot_slug:
            await self._best_effort(
                "delete previous snapshot", api.delete_snapshot(session.snapshot_slug), snapshot=session.snapshot_slug
            )
        snapshot_slug = deno_slug("hsnap", session.name)
        try:
            await api.snapshot_volume(session.volume_slug, snapshot_slug)
        except CloudApiError as exc:
            logger.warning(
                "Failed to snapshot volume after stop; resume will boot from the volume",
                extra={"volume": session.volume_slug, "error": str(exc)},
            )
            self._store.update_snapshot(ProviderType.CLOUD, session_id, None)
            return
        self._store.update_snapshot(ProviderType.CLOUD, session_id, snapshot_slug)

    # Interactive access

    async def attach(self, session_id: str) -> int:
        session = self._store.get(ProviderType.CLOUD, session_id)
        if session is None:
            raise SessionNotFoundError(session_id, provider=self.type.value)
        endpoint = await self._api().expose_ssh(session_id)
        resume_command = build_continue_command(session.agent, session.model)
        remote = f"tmux -u new-session -A -s {TMUX_SESSION} -c /work/app {shlex.quote(resume_command)}"
        returncode = await self._runner.run_interactive(*ssh_command(endpoint, remote))
        if returncode != 0:
            logger.warning("SSH exited with non-zero status", extra={"exit_code": returncode})
        return returncode

    async def shell(self, session_id: str) -> int:
        if self._store.get(ProviderType.CLOUD, session_id) is None:
            raise SessionNotFoundError(session_id, provider=self.type.value)
        endpoint = await self._api().expose_ssh(session_id)
        return await self._runner.run_interactive(*ssh_command(endpoint))

    async def stream_logs(self, session_id: str) -> AsyncIterator[str]:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, provider=self.type.value)
        if session.interactive:
            raise LogsUnavailableError("Interactive sessions do not produce text logs")
        api = self._api()
        offset = 0
        partial = ""
        while True:
            try:
                content = await api.read_file(session_id, AGENT_LOG)
            except CloudApiError as exc:
                if exc.status_code == 404 and not session.is_running:
                    break
                logger.debug("Log read failed", extra={"session_id": session_id, "error": str(exc)})
                content = None
            if content is not None:
                fresh = content[offset:]
                offset = len(content)
                if fresh:
                    lines = (partial + fresh).split("\n")
                    partial = lines.pop()
                    for line in lines:
                        if line:
                            yield line
            if not session.is_running:
                break
            await self._sleep(self._log_poll_interval)
        if partial:
            yield partial

    async def create_shell(self, spec: ShellSpec) -> ShellSession:
        if spec.mount_dir:
            raise ConfigurationError("Cloud sandboxes do not support mount mode")
        api = self._api()
        base_snapshot = await self.ensure_image()
        spec.report("Creating shell volume")
        volume = await api.create_volume(
            slug=deno_slug("hsh"), region=self._region, capacity=VOLUME_CAPACITY, source=base_snapshot
        )
        spec.report("Booting sandbox")
        try:
            sandbox = await self._boot(volume.slug, dict(MANAGED_LABELS), region=self._region)
        except SandboxError:
            await self._best_effort("clean up volume", api.delete_volume(volume.id), volume=volume.slug)
            raise

        async def cleanup() -> None:
            await self._best_effort("kill shell sandbox", api.kill_sandbox(sandbox.id), sandbox_id=sandbox.id)
            await self._best_effort("delete shell volume", api.delete_volume(volume.id), volume=volume.slug)

        try:
            await self._inject_credentials(sandbox.id)
            await self._sh(sandbox.id, "mkdir -p /work")
            if spec.repo_info is not None:
                spec.report("Cloning repository")
                await self._sh(
                    sandbox.id,
                    f"cd /work && gh auth setup-git && gh repo clone {shlex.quote(spec.repo_info.full_name)} app",
                )
        except SandboxError:
            await cleanup()
            raise

        async def connect() -> int:
            endpoint = await api.expose_ssh(sandbox.id)
            return await self._runner.run_interactive(*ssh_command(endpoint))

        return ShellSession(
            connect=connect,
            cleanup=cleanup,
            labels={"repo": spec.repo_info.full_name if spec.repo_info else LOCAL_REPO},
        )

    async def get_stats(self, session_ids: Sequence[str]) -> dict[str, SandboxStats]:
        return {}


__all__ = ["CloudSandboxProvider", "TMUX_SESSION", "deno_slug", "ssh_command"]
