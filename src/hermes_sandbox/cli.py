"""Command-line entry point for hermes."""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import Awaitable, Optional, TypeVar

from pydantic import ValidationError
from rich.console import Console

from . import __version__
from .config import configure_logging, get_settings
from .context import HermesContext, build_context, build_controller
from .engine import (
    BackgroundTaskQueue,
    NeedsCloudSetup,
    NextView,
    ResumeRequest,
    RunMode,
    STEP_LABELS,
    SessionReady,
    SessionState,
    StartFailed,
    StartRequest,
    TaskStatus,
    ViewKind,
)
from .engine.handoff import run_ad_hoc_shell
from .sandbox import SandboxError, find_session, list_all_sessions
from .sessions import AgentType, ProviderType, ResumeMode, Session, ShellSpec
from .ui import AppDefaults, print_sessions
from .userconfig import ConfigLoadError

SUBCOMMANDS = {"start", "sessions", "session", "status", "s", "resume", "stop", "rm", "shell", "logs"}

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def _error(message: str) -> int:
    err_console.print(f"[bold red]Error:[/] {message}", highlight=False)
    return 1


def _run(context: HermesContext, work: Awaitable[T]) -> T:
    """Run ``work`` on a fresh event loop, closing provider clients before the loop ends."""

    async def runner() -> T:
        try:
            return await work
        finally:
            await context.registry.aclose()

    return asyncio.run(runner())


def _mount_dir(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return str(Path(value).expanduser().resolve())


async def _shell_spec(context: HermesContext, mount_dir: Optional[str]) -> ShellSpec:
    if mount_dir:
        return ShellSpec(mount_dir=mount_dir)
    repo = await context.repo_resolver.get_repo_info()
    if repo is not None:
        return ShellSpec(repo_info=repo)
    return ShellSpec(mount_dir=str(Path.cwd()))


async def _run_tui(context: HermesContext, defaults: AppDefaults, initial: NextView) -> int:
    controller, tasks = build_controller(context, defaults, console=console)
    try:
        return await controller.run(initial)
    finally:
        await tasks.wait_for_all()


def _defaults(context: HermesContext, args: argparse.Namespace, shell_spec: Optional[ShellSpec]) -> AppDefaults:
    config = context.config
    agent = AgentType(args.agent) if getattr(args, "agent", None) else config.agent
    model = getattr(args, "model", None)
    if model is None and agent is config.agent:
        model = config.model
    return AppDefaults(
        agent=agent,
        model=model,
        mode=RunMode(getattr(args, "mode", None) or RunMode.ASYNC.value),
        provider=context.default_provider_type(getattr(args, "provider", None)),
        mount_dir=_mount_dir(getattr(args, "mount", None)),
        service_id=getattr(args, "service_id", None),
        db_fork=not getattr(args, "no_db_fork", False),
        shell_spec=shell_spec,
    )


def cmd_start(args: argparse.Namespace) -> int:
    prompt = (args.prompt or "").strip()
    if prompt and " " not in prompt:
        return _error(f"Prompt must be more than one word. Did you mean to run a command? (got '{prompt}')")
    context = build_context()

    async def run() -> int:
        mount_dir = _mount_dir(args.mount)
        defaults = _defaults(context, args, await _shell_spec(context, mount_dir))
        if prompt:
            request = StartRequest(
                prompt=prompt,
                agent=defaults.agent,
                model=defaults.model,
                mode=defaults.mode,
                provider=defaults.provider,
                mount_dir=defaults.mount_dir,
                service_id=defaults.service_id,
                db_fork=defaults.db_fork,
            )
            initial = NextView(ViewKind.STARTING, request=request)
        else:
            initial = NextView(ViewKind.PROMPT)
        return await _run_tui(context, defaults, initial)

    return _run(context, run())


def cmd_sessions(args: argparse.Namespace) -> int:
    context = build_context()
    if args.output == "tui":

        async def run() -> int:
            defaults = _defaults(context, args, await _shell_spec(context, None))
            return await _run_tui(context, defaults, NextView(ViewKind.LIST))

        return _run(context, run())

    sessions = _run(context, list_all_sessions(context.registry.all()))
    print_sessions(console, sessions, output=args.output, show_all=args.all)
    return 0


async def remove_sessions(context: HermesContext, sessions: list[Session]) -> BackgroundTaskQueue:
    """Remove ``sessions`` concurrently through the background queue and wait for all of them."""

    state = SessionState()
    state.replace_all(sessions)
    queue = BackgroundTaskQueue(state)
    for session in sessions:
        provider = context.registry.for_session(session)
        queue.enqueue(
            session.name,
            lambda provider=provider, session_id=session.id: provider.remove(session_id),
            target=session.key,
        )
    await queue.wait_for_all()
    return queue


def cmd_sessions_clean(args: argparse.Namespace) -> int:
    context = build_context()
    sessions = _run(context, list_all_sessions(context.registry.all()))
    targets = sessions if args.all else [session for session in sessions if not session.is_running]
    if not targets:
        console.print("No sessions to remove.")
        return 0
    console.print(f"Found {len(targets)} session(s) to remove:")
    for session in targets:
        console.print(f"  - {session.name} ({session.status.value})", highlight=False)
    if not args.force:
        answer = input("\nProceed? [y/N] ")
        if answer.strip().lower() != "y":
            console.print("Cancelled.")
            return 0

    queue = _run(context, remove_sessions(context, targets))
    failed = 0
    for task in queue.tasks:
        if task.status is TaskStatus.COMPLETED:
            console.print(f"Removed {task.label}", highlight=False)
        else:
            failed += 1
            err_console.print(f"Failed to remove {task.label}: {task.error}", highlight=False)
    return 1 if failed else 0


def cmd_resume(args: argparse.Namespace) -> int:
    if args.detach and not args.prompt:
        return _error("--detach requires a prompt")
    if args.prompt and not args.detach:
        return _error("A prompt can only be given together with --detach")
    context = build_context()
    if args.shell:
        mode = ResumeMode.SHELL
    elif args.detach:
        mode = ResumeMode.DETACHED
    else:
        mode = ResumeMode.INTERACTIVE

    async def run() -> int:
        session = await find_session(context.registry, args.session)
        if session is None:
            return _error(f"Session '{args.session}' not found")
        request = ResumeRequest(
            provider=session.provider,
            session_id=session.id,
            mode=mode,
            prompt=args.prompt,
            model=args.model,
        )
        result = await context.resume_workflow().run(
            request,
            on_step=lambda step, detail: err_console.print(detail or STEP_LABELS[step], style="dim", highlight=False),
        )
        if isinstance(result, NeedsCloudSetup):
            return _error("No cloud token configured. Set DENO_DEPLOY_TOKEN or run `hermes --provider cloud`.")
        if isinstance(result, StartFailed):
            return _error(result.message)
        assert isinstance(result, SessionReady)
        resumed = result.session
        console.print(f"Resumed {session.name} as {resumed.name}", highlight=False)
        if result.handoff:
            provider = context.registry.for_session(resumed)
            if mode is ResumeMode.SHELL:
                await provider.shell(resumed.id)
            else:
                await provider.attach(resumed.id)
        return 0

    return _run(context, run())


def _resolve_and(args: argparse.Namespace, action: str) -> int:
    context = build_context()

    async def run() -> int:
        session = await find_session(context.registry, args.session)
        if session is None:
            return _error(f"Session '{args.session}' not found")
        provider = context.registry.for_session(session)
        if action == "stop":
            await provider.stop(session.id)
            console.print(f"Stopped {session.name}", highlight=False)
        else:
            await provider.remove(session.id)
            console.print(f"Removed {session.name}", highlight=False)
        return 0

    return _run(context, run())


def cmd_stop(args: argparse.Namespace) -> int:
    return _resolve_and(args, "stop")


def cmd_rm(args: argparse.Namespace) -> int:
    return _resolve_and(args, "remove")


def cmd_shell(args: argparse.Namespace) -> int:
    context = build_context()

    async def run() -> int:
        provider = context.registry.default_provider(args.provider or context.config.sandbox_provider)
        spec = await _shell_spec(context, _mount_dir(args.mount))
        spec.on_progress = lambda message: err_console.print(message, style="dim", highlight=False)
        return await run_ad_hoc_shell(provider, spec)

    return _run(context, run())


def cmd_logs(args: argparse.Namespace) -> int:
    log_file = get_settings().log_file
    if log_file is None or not log_file.is_file():
        return _error(f"No log file at {log_file}")
    with log_file.open(encoding="utf-8", errors="replace") as handle:
        lines = handle.readlines()
        for line in lines[-args.lines:]:
            sys.stdout.write(line)
        sys.stdout.flush()
        if not args.follow:
            return 0
        try:
            while True:
                line = handle.readline()
                if line:
                    sys.stdout.write(line)
                    sys.stdout.flush()
                else:
                    time.sleep(0.5)
        except KeyboardInterrupt:
            return 0


def _add_start_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-a", "--agent", choices=[agent.value for agent in AgentType], help="Coding agent to run")
    parser.add_argument("-m", "--model", help="Agent-specific model")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in RunMode],
        default=RunMode.ASYNC.value,
        help="async runs detached; interactive and plan attach to the agent",
    )
    parser.add_argument(
        "--mount",
        nargs="?",
        const=".",
        metavar="DIR",
        help="Mount a local directory instead of cloning (defaults to the current directory)",
    )
    parser.add_argument("--service-id", help="Database service to fork for this session")
    parser.add_argument("--no-db-fork", action="store_true", help="Skip database forking")
    parser.add_argument(
        "--provider",
        choices=["docker", ProviderType.LOCAL.value, ProviderType.CLOUD.value],
        help="Sandbox provider (default from config, else docker)",
    )


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Mirror log records to stderr"
    )

    parser = argparse.ArgumentParser(prog="hermes", description="Run AI coding agents in sandboxes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Mirror log records to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd")

    p_start = sub.add_parser("start", help="Start a new session (the default command)", parents=[common])
    p_start.add_argument("prompt", nargs="?", help="Natural language description of the task")
    _add_start_options(p_start)
    p_start.set_defaults(func=cmd_start)

    p_sessions = sub.add_parser(
        "sessions", aliases=["session", "status", "s"], help="Show hermes sessions", parents=[common]
    )
    p_sessions.add_argument(
        "-o", "--output", choices=["tui", "table", "json", "yaml"], default="tui", help="Output format"
    )
    p_sessions.add_argument(
        "-a", "--all", action="store_true", help="Include sessions that are not running in table/json/yaml output"
    )
    p_sessions.set_defaults(func=cmd_sessions)
    sessions_sub = p_sessions.add_subparsers(dest="sessions_cmd")
    p_clean = sessions_sub.add_parser("clean", help="Remove stopped sessions", parents=[common])
    p_clean.add_argument("-a", "--all", action="store_true", help="Remove running sessions too")
    p_clean.add_argument("-f", "--force", action="store_true", help="Skip confirmation")
    p_clean.set_defaults(func=cmd_sessions_clean)

    p_resume = sub.add_parser("resume", help="Resume a stopped session", parents=[common])
    p_resume.add_argument("session", help="Session name or id")
    p_resume.add_argument("prompt", nargs="?", help="New prompt (requires --detach)")
    p_resume.add_argument("-m", "--model", help="Override the model")
    resume_mode = p_resume.add_mutually_exclusive_group()
    resume_mode.add_argument("-d", "--detach", action="store_true", help="Resume in the background with a prompt")
    resume_mode.add_argument("-s", "--shell", action="store_true", help="Open a shell instead of the agent")
    p_resume.set_defaults(func=cmd_resume)

    p_stop = sub.add_parser("stop", help="Stop a running session", parents=[common])
    p_stop.add_argument("session", help="Session name or id")
    p_stop.set_defaults(func=cmd_stop)

    p_rm = sub.add_parser("rm", help="Remove a session", parents=[common])
    p_rm.add_argument("session", help="Session name or id")
    p_rm.set_defaults(func=cmd_rm)

    p_shell = sub.add_parser("shell", help="Open a shell in a disposable sandbox", parents=[common])
    p_shell.add_argument("--mount", nargs="?", const=".", metavar="DIR", help="Mount a local directory")
    p_shell.add_argument("--provider", choices=["docker", ProviderType.LOCAL.value, ProviderType.CLOUD.value])
    p_shell.set_defaults(func=cmd_shell)

    p_logs = sub.add_parser("logs", help="Print the hermes log file", parents=[common])
    p_logs.add_argument("-f", "--follow", action="store_true", help="Keep printing new records")
    p_logs.add_argument("-n", "--lines", type=int, default=200, help="Number of trailing lines to show")
    p_logs.set_defaults(func=cmd_logs)

    return parser


def _with_default_command(argv: list[str]) -> list[str]:
    if argv and argv[0] in ("-h", "--help", "--version"):
        return argv
    for token in argv:
        if token.startswith("-"):
            continue
        if token in SUBCOMMANDS:
            return argv
        break
    return ["start", *argv]


def _is_tui(args: argparse.Namespace) -> bool:
    return args.func is cmd_start or (args.func is cmd_sessions and args.output == "tui")


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(_with_default_command(argv))
    try:
        settings = get_settings()
    except ValidationError as exc:
        return _error(f"Invalid environment configuration: {exc}")
    configure_logging(settings.log_level, settings.log_file, verbose=args.verbose and not _is_tui(args))
    try:
        return args.func(args)
    except (ConfigLoadError, SandboxError) as exc:
        return _error(str(exc))
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    sys.exit(main())
