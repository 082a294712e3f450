"""Local sandbox provider driving the docker CLI.

Session metadata is stored in container labels, so ``docker inspect`` is the
source of truth and nothing is persisted on the host.
"""

from __future__ import annotations

import json
import logging
import secrets
import shlex
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from ..sessions import (
    AgentType,
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
from .agent_command import build_agent_command
from .base import ImageProgress, ShellSession
from .credentials import CredentialFile, collect_credential_files
from .errors import (
    LogsUnavailableError,
    SandboxError,
    SessionNotFoundError,
    SetupRequiredError,
)
from .runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

MANAGED_LABEL = "hermes.managed"
WORKDIR = "/work/app"
SANDBOX_HOME = "/home/hermes"
_MISSING_MARKERS = ("No such container", "No such object")


def _is_missing(result: CommandResult) -> bool:
    return any(marker in result.stderr for marker in _MISSING_MARKERS)


def map_container_status(state: str) -> SessionStatus:
    """Translate a docker container state into a session status.

    ``created`` containers never started, so their status is unknown; paused,
    restarting, dead and removing containers are all reported as stopped.
    """

    if state == "running":
        return SessionStatus.RUNNING
    if state == "exited":
        return SessionStatus.EXITED
    if state == "created":
        return SessionStatus.UNKNOWN
    return SessionStatus.STOPPED


def session_from_inspect(container: dict[str, Any]) -> Session | None:
    """Build a session from one ``docker inspect`` entry, or None if it is not ours."""

    labels = (container.get("Config") or {}).get("Labels") or {}
    if labels.get(MANAGED_LABEL) != "true":
        return None
    state = container.get("State") or {}
    status = map_container_status(state.get("Status", ""))
    container_name = str(container.get("Name", "")).lstrip("/")
    return Session(
        id=container["Id"],
        name=labels.get("hermes.name") or container_name,
        branch=labels.get("hermes.branch", ""),
        agent=labels.get("hermes.agent", AgentType.CLAUDE.value),
        model=labels.get("hermes.model") or None,
        provider=ProviderType.LOCAL,
        repo=labels.get("hermes.repo", LOCAL_REPO),
        prompt=labels.get("hermes.prompt", ""),
        mount_dir=labels.get("hermes.mount") or None,
        resumed_from=labels.get("hermes.resumed-from") or None,
        status=status,
        exit_code=int(state.get("ExitCode", 0)) if status is SessionStatus.EXITED else None,
        interactive=labels.get("hermes.interactive") == "true",
        exec_type=labels.get("hermes.exec-type", ExecType.AGENT.value),
        created=labels.get("hermes.created") or container.get("Created", ""),
    )


def build_labels(
    *,
    name: str,
    branch: str,
    agent: AgentType,
    repo: str,
    created: str,
    exec_type: ExecType = ExecType.AGENT,
    prompt: str | None = None,
    model: str | None = None,
    interactive: bool = False,
    mount_dir: str | None = None,
    resumed_from: str | None = None,
    resume_image: str | None = None,
) -> dict[str, str]:
    labels = {
        MANAGED_LABEL: "true",
        "hermes.name": name,
        "hermes.branch": branch,
        "hermes.agent": agent.value,
        "hermes.exec-type": exec_type.value,
        "hermes.repo": repo,
        "hermes.created": created,
    }
    optional = {
        "hermes.prompt": prompt or None,
        "hermes.model": model,
        "hermes.interactive": "true" if interactive else None,
        "hermes.mount": mount_dir,
        "hermes.resumed-from": resumed_from,
        "hermes.resume-image": resume_image,
    }
    labels.update({key: value for key, value in optional.items() if value})
    return labels


def _parse_percent(value: str) -> float:
    try:
        return float(value.strip().rstrip("%"))
    except ValueError:
        return 0.0


class DockerSandboxProvider:
    """Sandbox provider backed by a local docker daemon."""

    type = ProviderType.LOCAL

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        image: str = "ghcr.io/timescale/hermes/sandbox:latest",
        overlay_mounts: Iterable[str] | None = None,
        clock: Callable[[], datetime] | None = None,
        credentials: Callable[[], list[CredentialFile]] = collect_credential_files,
    ) -> None:
        self._runner = runner or CommandRunner()
        self._credentials = credentials
        self._image = image
        self._overlay_mounts = list(overlay_mounts or [])
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def image(self) -> str:
        return self._image

    async def ensure_ready(self) -> None:
        result = await self._runner.run("docker", "info", "--format", "{{.ServerVersion}}")
        if not result.ok:
            raise SetupRequiredError(
                "Docker is installed but the daemon is not reachable. Start Docker and try again.",
                provider=self.type.value,
            )

    async def ensure_image(self, on_progress: ImageProgress | None = None) -> str:
        report = on_progress or (lambda _message: None)
        report("checking")
        inspect = await self._runner.run("docker", "image", "inspect", self._image)
        if inspect.ok:
            report("exists")
            return self._image
        report("pulling")
        logger.info("Pulling sandbox image", extra={"image": self._image})
        await self._runner.run("docker", "pull", self._image, check=True)
        report("done")
        return self._image

    def _volume_args(self, mount_dir: str | None) -> list[str]:
        args: list[str] = []
        for credential in self._credentials():
            args.extend(["-v", f"{credential.host_path}:{credential.remote_path(SANDBOX_HOME)}:ro"])
        if not mount_dir:
            return args
        args.extend(["-v", f"{mount_dir}:{WORKDIR}"])
        for overlay in self._overlay_mounts:
            args.extend(["-v", f"{WORKDIR}/{overlay.strip('/')}"])
        return args

    @staticmethod
    def _label_args(labels: dict[str, str]) -> list[str]:
        args: list[str] = []
        for key, value in labels.items():
            args.extend(["--label", f"{key}={value}"])
        return args

    @staticmethod
    def _clone_script(repo: str, branch: str) -> str:
        return (
            f"cd /work && gh auth setup-git && gh repo clone {shlex.quote(repo)} app"
            f" && cd app && git switch -c {shlex.quote('hermes/' + branch)}"
        )

    def _startup_script(self, spec: CreateSessionSpec, agent_cmd: str) -> str:
        steps: list[str] = []
        if not spec.mount_dir and spec.repo_info is not None:
            steps.append(self._clone_script(spec.repo_info.full_name, spec.branch_name))
        else:
            steps.append(f"cd {WORKDIR}")
        if spec.init_script:
            steps.append(spec.init_script)
        steps.append(agent_cmd)
        return " && ".join(steps)

    async def _inspect(self, *refs: str) -> list[dict[str, Any]]:
        if not refs:
            return []
        result = await self._runner.run("docker", "inspect", *refs)
        if not result.ok:
            if not _is_missing(result):
                result.check()
            # docker still prints the containers it found; only the missing ones drop out.
            logger.debug("Some containers vanished during inspect", extra={"refs": list(refs)})
        return json.loads(result.stdout.strip() or "[]")

    async def _load(self, ref: str, what: str) -> Session:
        session = await self.get(ref)
        if session is None:
            raise SandboxError(f"Failed to find {what} docker session '{ref}'")
        return session

    async def create(self, spec: CreateSessionSpec) -> Session:
        logger.debug(
            "Creating docker sandbox",
            extra={"branch": spec.branch_name, "agent": spec.agent.value, "interactive": spec.interactive},
        )
        spec.report("Starting container")
        name = f"hermes-{spec.branch_name}"
        labels = build_labels(
            name=name,
            branch=spec.branch_name,
            agent=spec.agent,
            repo=spec.repo,
            created=self._clock().isoformat(),
            prompt=spec.prompt,
            model=spec.model,
            interactive=spec.interactive,
            mount_dir=spec.mount_dir,
        )
        agent_cmd = build_agent_command(
            spec.agent,
            mode="interactive" if spec.interactive else "detached",
            model=spec.model,
            agent_args=spec.agent_args,
            prompt=spec.prompt,
        )
        args = ["docker", "run", "-d"]
        if spec.interactive:
            args.extend(["-i", "-t"])
        args.extend(["--name", name, "-w", WORKDIR if spec.mount_dir else "/work"])
        args.extend(self._label_args(labels))
        for key, value in sorted(spec.env_vars.items()):
            args.extend(["-e", f"{key}={value}"])
        args.extend(self._volume_args(spec.mount_dir))
        args.extend([self._image, "bash", "-lc", self._startup_script(spec, agent_cmd)])
        await self._runner.run(*args, check=True)

        spec.report("Loading session")
        session = await self._load(name, "created")
        logger.debug("Docker sandbox created", extra={"session_id": session.id, "session_name": session.name})
        return session

    async def resume(self, session_id: str, options: ResumeOptions) -> Session:
        previous = await self.get(session_id)
        if previous is None:
            raise SessionNotFoundError(session_id, provider=self.type.value)

        options.report("Saving container state")
        resume_image = f"hermes-resume:{previous.id[:12]}"
        await self._runner.run("docker", "commit", previous.id, resume_image, check=True)

        model = options.model or previous.model
        shell_mode = options.mode is ResumeMode.SHELL
        interactive = options.mode is not ResumeMode.DETACHED
        if shell_mode:
            command = "bash"
        else:
            command = build_agent_command(
                previous.agent,
                mode="detached" if options.mode is ResumeMode.DETACHED else "interactive",
                model=model,
                agent_args=options.agent_args,
                continue_=True,
                prompt=options.prompt,
            )

        name = f"hermes-{previous.branch}-{secrets.token_hex(2)}"
        labels = build_labels(
            name=name,
            branch=previous.branch,
            agent=previous.agent,
            repo=previous.repo,
            created=self._clock().isoformat(),
            exec_type=ExecType.SHELL if shell_mode else ExecType.AGENT,
            prompt=options.prompt or previous.prompt,
            model=model,
            interactive=interactive,
            mount_dir=previous.mount_dir,
            resumed_from=previous.id,
            resume_image=resume_image,
        )
        options.report("Starting container")
        args = ["docker", "run", "-d"]
        if interactive:
            args.extend(["-i", "-t"])
        args.extend(["--name", name, "-w", WORKDIR])
        args.extend(self._label_args(labels))
        args.extend(self._volume_args(previous.mount_dir))
        args.extend([resume_image, "bash", "-lc", command])
        await self._runner.run(*args, check=True)

        options.report("Loading session")
        session = await self._load(name, "resumed")
        logger.debug("Docker sandbox resumed", extra={"session_id": session.id, "resumed_from": previous.id})
        return session

    async def list(self) -> list[Session]:
        result = await self._runner.run(
            "docker", "ps", "-a", "--filter", f"label={MANAGED_LABEL}=true", "--format", "{{.ID}}",
            check=True,
        )
        ids = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        sessions = [
            session
            for session in (session_from_inspect(entry) for entry in await self._inspect(*ids))
            if session is not None
        ]
        logger.debug("Listed docker sessions", extra={"count": len(sessions)})
        return sessions

    async def get(self, session_id: str) -> Session | None:
        entries = await self._inspect(session_id)
        return session_from_inspect(entries[0]) if entries else None

    async def stop(self, session_id: str) -> None:
        logger.debug("Stopping docker sandbox", extra={"session_id": session_id})
        result = await self._runner.run("docker", "stop", session_id)
        if not result.ok and not _is_missing(result):
            result.check()

    async def remove(self, session_id: str) -> None:
        logger.debug("Removing docker sandbox", extra={"session_id": session_id})
        result = await self._runner.run("docker", "rm", "-f", "-v", session_id)
        if not result.ok and not _is_missing(result):
            result.check()

    async def attach(self, session_id: str) -> int:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, provider=self.type.value)
        if not session.is_running:
            raise SandboxError(f"Session '{session.name}' is not running; resume it instead")
        return await self._runner.run_interactive(
            "docker", "attach", "--detach-keys", "ctrl-\\", session.id
        )

    async def shell(self, session_id: str) -> int:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, provider=self.type.value)
        return await self._runner.run_interactive(
            "docker", "exec", "-it", "-w", WORKDIR, session.id, "bash"
        )

    async def stream_logs(self, session_id: str) -> AsyncIterator[str]:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, provider=self.type.value)
        if session.interactive:
            raise LogsUnavailableError("Interactive sessions do not produce text logs")
        follow = ["-f"] if session.is_running else []
        async for line in self._runner.stream("docker", "logs", *follow, "--tail", "200", session.id):
            yield line

    async def create_shell(self, spec: ShellSpec) -> ShellSession:
        spec.report("Starting shell container")
        labels = build_labels(
            name=f"hermes-shell-{secrets.token_hex(3)}",
            branch="",
            agent=AgentType.CLAUDE,
            repo=spec.repo_info.full_name if spec.repo_info and not spec.mount_dir else LOCAL_REPO,
            created=self._clock().isoformat(),
            exec_type=ExecType.SHELL,
            mount_dir=spec.mount_dir,
        )
        if spec.mount_dir:
            script = f"cd {WORKDIR} && exec bash"
        elif spec.repo_info is None:
            script = "exec bash"
        else:
            script = (
                f"cd /work && gh auth setup-git && gh repo clone {shlex.quote(spec.repo_info.full_name)} app"
                f" && cd app && exec bash"
            )
        args = ["docker", "run", "--rm", "-it", "-w", WORKDIR if spec.mount_dir else "/work"]
        args.extend(self._label_args(labels))
        args.extend(self._volume_args(spec.mount_dir))
        args.extend([self._image, "bash", "-lc", script])

        async def connect() -> int:
            return await self._runner.run_interactive(*args)

        async def cleanup() -> None:
            # --rm removes the container when the shell exits
            return None

        return ShellSession(connect=connect, cleanup=cleanup, labels=labels)

    async def get_stats(self, session_ids: Sequence[str]) -> dict[str, SandboxStats]:
        if not session_ids:
            return {}
        result = await self._runner.run(
            "docker", "stats", "--no-stream", "--format", "{{json .}}", *session_ids
        )
        if not result.ok:
            logger.debug("docker stats failed", extra={"stderr": result.stderr.strip()})
            return {}
        stats: dict[str, SandboxStats] = {}
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            row = json.loads(line)
            short_id = row.get("ID", "")
            for session_id in session_ids:
                if short_id and session_id.startswith(short_id):
                    stats[session_id] = SandboxStats(
                        id=session_id,
                        cpu_percent=_parse_percent(row.get("CPUPerc", "0")),
                        mem_usage=row.get("MemUsage", ""),
                        mem_percent=_parse_percent(row.get("MemPerc", "0")),
                    )
        return stats


__all__ = [
    "DockerSandboxProvider",
    "build_labels",
    "map_container_status",
    "session_from_inspect",
]
