"""The interactive terminal UI.

``HermesApp.run`` renders with ``rich.live.Live`` and reads raw keys until the
user picks something that needs the real terminal. It then stops every
poller, leaves the alternate screen, restores the terminal mode and only then
returns the ``Outcome`` to the hand-off controller.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, ContextManager, Optional, Union

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..engine.handoff import NextView, Outcome, OutcomeTag, ViewKind
from ..engine.reconcile import Reconciler
from ..engine.state import EngineState
from ..engine.tasks import BackgroundTaskQueue
from ..engine.workflow import (
    STEP_LABELS,
    STEP_ORDER,
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
    WorkflowResult,
)
from ..sandbox import ProviderRegistry
from ..sessions import AgentType, ProviderType, ResumeMode, Session, ShellSpec
from ..userconfig import CloudCredentials
from .display import format_relative_time, status_color, status_icon, status_text, truncate
from .keys import KeySource, TerminalKeys
from .output import build_table

logger = logging.getLogger(__name__)

LOG_LINES = 500
TICK_INTERVAL = 0.25

_MODES = tuple(RunMode)

_HOTKEYS = {
    ViewKind.PROMPT: "enter start · tab mode · esc sessions · ctrl-c quit",
    ViewKind.STARTING: "esc back",
    ViewKind.CLOUD_SETUP: "enter save token · esc cancel",
    ViewKind.LIST: "↑/↓ select · enter open · n new · s shell · r refresh · d delete · q quit",
    ViewKind.DETAIL: "a attach · s shell · r resume · R resume detached · x stop · d delete · l logs · esc back",
    ViewKind.LOGS: "esc back",
}


@dataclass(frozen=True, slots=True)
class AppDefaults:
    """Start parameters taken from the command line and the config files."""

    agent: AgentType = AgentType.CLAUDE
    model: Optional[str] = None
    mode: RunMode = RunMode.ASYNC
    provider: ProviderType = ProviderType.LOCAL
    mount_dir: Optional[str] = None
    service_id: Optional[str] = None
    db_fork: bool = True
    shell_spec: Optional[ShellSpec] = None


@dataclass(slots=True)
class _Screen:
    kind: ViewKind
    session: Optional[Session] = None
    request: Optional[Union[StartRequest, ResumeRequest]] = None
    buffer: str = ""
    mode: RunMode = RunMode.ASYNC
    step: Optional[StartStep] = None
    step_detail: Optional[str] = None
    completed: tuple[StartStep, ...] = ()
    logs: deque[str] = field(default_factory=lambda: deque(maxlen=LOG_LINES))
    resume_prompt: Optional[str] = None
    shutting_down: bool = False


KeysFactory = Callable[[], ContextManager[KeySource]]


class HermesApp:
    """Renders views over the engine state and turns keys into engine actions."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        state: EngineState,
        reconciler: Reconciler,
        tasks: BackgroundTaskQueue,
        start_workflow: StartWorkflow,
        resume_workflow: ResumeWorkflow,
        credentials: CloudCredentials | None = None,
        defaults: AppDefaults | None = None,
        console: Console | None = None,
        keys: KeysFactory | None = None,
        fullscreen: bool = True,
        tick_interval: float = TICK_INTERVAL,
    ) -> None:
        self._registry = registry
        self._state = state
        self._reconciler = reconciler
        self._tasks = tasks
        self._start_workflow = start_workflow
        self._resume_workflow = resume_workflow
        self._credentials = credentials
        self._defaults = defaults or AppDefaults()
        self._console = console or Console()
        self._keys = keys or TerminalKeys
        self._fullscreen = fullscreen
        self._tick_interval = tick_interval
        self._screen = _Screen(kind=ViewKind.LIST)
        self._live: Live | None = None
        self._outcome: asyncio.Future[Outcome] | None = None
        self._attempt = 0
        self._log_task: asyncio.Task[None] | None = None
        # Abandoned starts keep running; hold references until they settle.
        self._detached: set[asyncio.Task[None]] = set()

    @property
    def screen(self) -> ViewKind:
        return self._screen.kind

    # Loop lifecycle

    async def run(self, view: NextView) -> Outcome:
        loop = asyncio.get_running_loop()
        self._outcome = loop.create_future()
        stores = (self._state.sessions, self._state.prs, self._state.toasts, self._state.selection)
        unsubscribers = [store.subscribe(self._invalidate) for store in stores]
        try:
            with self._keys() as keys, Live(
                console=self._console,
                screen=self._fullscreen,
                auto_refresh=False,
                transient=True,
            ) as live:
                self._live = live
                reader = loop.create_task(self._read_keys(keys))
                ticker = loop.create_task(self._tick())
                try:
                    await self._enter(view)
                    outcome = await self._outcome
                finally:
                    for task in (reader, ticker):
                        task.cancel()
                    await asyncio.gather(reader, ticker, return_exceptions=True)
                    await self._leave_view()
                    await self._reconciler.stop_all()
                    self._live = None
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
        logger.debug("UI torn down", extra={"outcome": outcome.tag.value})
        return outcome

    def _resolve(self, outcome: Outcome) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)

    def _spawn(self, coro) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        return task

    async def _read_keys(self, keys: KeySource) -> None:
        while True:
            key = await keys.get()
            try:
                await self._handle_key(key)
            except Exception as exc:
                logger.warning("Key action failed", extra={"key": key, "error": str(exc)})
                self._state.toasts.error(str(exc))
            if self._outcome is not None and self._outcome.done():
                return
            self._invalidate()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            self._invalidate()

    def _invalidate(self) -> None:
        if self._live is not None:
            self._live.update(self._render(), refresh=True)

    # Navigation

    async def _leave_view(self) -> None:
        if self._log_task is not None:
            self._log_task.cancel()
            await asyncio.gather(self._log_task, return_exceptions=True)
            self._log_task = None
        await self._reconciler.unwatch_detail()
        if self._screen.kind is ViewKind.LIST:
            await self._reconciler.unwatch_list()

    async def _enter(self, view: NextView) -> None:
        await self._leave_view()
        screen = _Screen(kind=view.kind, session=view.session, request=view.request, mode=self._defaults.mode)
        self._screen = screen
        if view.notice:
            if view.notice_is_error:
                self._state.toasts.error(view.notice)
            else:
                self._state.toasts.show(view.notice)

        if view.kind is ViewKind.PROMPT:
            if isinstance(view.request, StartRequest):
                screen.buffer = view.request.prompt
                screen.mode = view.request.mode
        elif view.kind is ViewKind.STARTING:
            assert isinstance(view.request, StartRequest)
            self._begin_start(view.request, view.start_at)
        elif view.kind is ViewKind.LIST:
            self._reconciler.watch_list()
        elif view.kind is ViewKind.DETAIL:
            assert view.session is not None
            self._reconciler.watch_detail(view.session, on_vanished=self._back_to_list)
        elif view.kind is ViewKind.LOGS:
            assert view.session is not None
            self._log_task = asyncio.get_running_loop().create_task(self._follow_logs(view.session))
        self._invalidate()

    def _back_to_list(self) -> None:
        if self._screen.kind in (ViewKind.DETAIL, ViewKind.LOGS):
            self._spawn(self._enter(NextView(ViewKind.LIST)))

    def _current_session(self) -> Session | None:
        session = self._screen.session
        if session is None:
            return None
        return self._state.sessions.find(session.key) or session

    # Start workflow

    def _begin_start(self, request: StartRequest, start_at: StartStep) -> None:
        self._attempt += 1
        attempt = self._attempt
        self._spawn(self._run_start(request, start_at, attempt))

    def _on_step(self, attempt: int, step: StartStep, detail: Optional[str]) -> None:
        screen = self._screen
        if attempt != self._attempt or screen.kind is not ViewKind.STARTING:
            return
        if screen.step is not None and step is not screen.step and screen.step not in screen.completed:
            screen.completed = (*screen.completed, screen.step)
        screen.step = step
        screen.step_detail = detail
        self._invalidate()

    async def _run_start(self, request: StartRequest, start_at: StartStep, attempt: int) -> None:
        try:
            result: WorkflowResult = await self._start_workflow.run(
                request,
                start_at=start_at,
                on_step=lambda step, detail: self._on_step(attempt, step, detail),
            )
        except Exception as exc:
            logger.exception("Start workflow crashed")
            result = StartFailed(message=str(exc))
        if attempt != self._attempt or self._screen.kind is not ViewKind.STARTING:
            logger.info("Discarding result of an abandoned start", extra={"result": type(result).__name__})
            return
        await self._apply_start_result(result)

    async def _apply_start_result(self, result: WorkflowResult) -> None:
        if isinstance(result, SessionReady):
            self._state.sessions.upsert(result.session)
            if result.handoff:
                self._resolve(Outcome(OutcomeTag.ATTACH_SESSION, session=result.session))
            else:
                await self._enter(NextView(ViewKind.DETAIL, session=result.session))
        elif isinstance(result, NeedsCloudSetup):
            await self._enter(NextView(ViewKind.CLOUD_SETUP, request=result.request, start_at=result.resume_at))
        elif isinstance(result, NeedsAgentAuth):
            self._resolve(Outcome(OutcomeTag.NEEDS_AGENT_AUTH, request=result.request))
        else:
            request = self._screen.request
            await self._enter(NextView(ViewKind.PROMPT, request=request, notice=result.message, notice_is_error=True))

    # Session actions

    def _remove(self, session: Session) -> None:
        provider = self._registry.for_session(session)
        key = session.key

        async def remove() -> None:
            await provider.remove(session.id)
            self._state.sessions.retire(key)

        self._tasks.enqueue(f"Remove {session.name}", remove, target=key)
        self._state.toasts.show(f"Removing {session.name}")

    def _stop(self, session: Session) -> None:
        provider = self._registry.for_session(session)

        async def stop() -> None:
            await provider.stop(session.id)
            await self._reconciler.poll_detail(session.provider, session.id)

        self._tasks.enqueue(f"Stop {session.name}", stop)
        self._state.toasts.show(f"Stopping {session.name}")

    async def _resume_detached(self, session: Session, prompt: str) -> None:
        request = ResumeRequest(
            provider=session.provider,
            session_id=session.id,
            mode=ResumeMode.DETACHED,
            prompt=prompt,
        )
        result = await self._resume_workflow.run(
            request,
            on_step=lambda step, detail: self._state.toasts.show(detail or STEP_LABELS[step]),
        )
        if isinstance(result, SessionReady):
            self._state.sessions.upsert(result.session)
            self._state.toasts.show(f"Resumed as {result.session.name}")
            if self._screen.kind is ViewKind.DETAIL:
                await self._enter(NextView(ViewKind.DETAIL, session=result.session))
        elif isinstance(result, NeedsCloudSetup):
            await self._enter(NextView(ViewKind.CLOUD_SETUP, request=result.request))
        elif isinstance(result, StartFailed):
            self._state.toasts.error(result.message)

    async def _follow_logs(self, session: Session) -> None:
        provider = self._registry.for_session(session)
        try:
            async for line in provider.stream_logs(session.id):
                self._screen.logs.append(line)
                self._invalidate()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Log stream ended", extra={"session_id": session.id, "error": str(exc)})
            self._state.toasts.error(str(exc))

    async def _quit(self) -> None:
        if self._tasks.pending_count:
            self._screen.shutting_down = True
            self._invalidate()
            await self._tasks.wait_for_all()
        self._resolve(Outcome.quit())

    # Keys

    async def _handle_key(self, key: str) -> None:
        if key == "ctrl-c":
            await self._quit()
            return
        handler = {
            ViewKind.PROMPT: self._prompt_key,
            ViewKind.STARTING: self._starting_key,
            ViewKind.CLOUD_SETUP: self._cloud_setup_key,
            ViewKind.LIST: self._list_key,
            ViewKind.DETAIL: self._detail_key,
            ViewKind.LOGS: self._logs_key,
        }[self._screen.kind]
        await handler(key)

    @staticmethod
    def _edit(buffer: str, key: str) -> str:
        if key == "backspace":
            return buffer[:-1]
        if key == "ctrl-u":
            return ""
        if len(key) == 1 and key.isprintable():
            return buffer + key
        return buffer

    async def _prompt_key(self, key: str) -> None:
        screen = self._screen
        if key == "enter":
            text = screen.buffer.strip()
            if not text:
                self._state.toasts.show("Type a prompt for the agent first")
                return
            defaults = self._defaults
            request = StartRequest(
                prompt=text,
                agent=defaults.agent,
                model=defaults.model,
                mode=screen.mode,
                provider=defaults.provider,
                mount_dir=defaults.mount_dir,
                service_id=defaults.service_id,
                db_fork=defaults.db_fork,
            )
            await self._enter(NextView(ViewKind.STARTING, request=request))
        elif key == "tab":
            screen.mode = _MODES[(_MODES.index(screen.mode) + 1) % len(_MODES)]
        elif key == "escape":
            await self._enter(NextView(ViewKind.LIST))
        else:
            screen.buffer = self._edit(screen.buffer, key)

    async def _starting_key(self, key: str) -> None:
        if key == "escape":
            # The provider call keeps running; only its result is dropped.
            request = self._screen.request
            await self._enter(NextView(ViewKind.PROMPT, request=request, notice="Start abandoned"))

    async def _cloud_setup_key(self, key: str) -> None:
        screen = self._screen
        if key == "escape":
            await self._enter(NextView(ViewKind.LIST))
        elif key == "enter":
            token = screen.buffer.strip()
            if not token:
                return
            if self._credentials is None:
                raise RuntimeError("No credential store configured")
            self._credentials.save(token)
            self._state.toasts.show("Cloud token saved")
            request = screen.request
            if isinstance(request, StartRequest):
                await self._enter(
                    NextView(ViewKind.STARTING, request=request, start_at=StartStep.CHECKING_CREDENTIALS)
                )
            elif isinstance(request, ResumeRequest):
                self._resolve(Outcome(OutcomeTag.RESUME_SESSION, resume=request))
        else:
            screen.buffer = self._edit(screen.buffer, key)

    async def _list_key(self, key: str) -> None:
        visible = self._state.sessions.visible()
        selection = self._state.selection
        if key in ("up", "k"):
            selection.move(visible, -1)
        elif key in ("down", "j"):
            selection.move(visible, 1)
        elif key == "enter":
            session = selection.selected(visible)
            if session is not None:
                await self._enter(NextView(ViewKind.DETAIL, session=session))
        elif key == "n":
            await self._enter(NextView(ViewKind.PROMPT))
        elif key == "r":
            self._reconciler.request_refresh()
            self._state.toasts.show("Refreshing")
        elif key == "d":
            session = selection.selected(visible)
            if session is not None:
                self._remove(session)
        elif key == "s":
            self._resolve(
                Outcome(OutcomeTag.SHELL, provider=self._defaults.provider, shell_spec=self._defaults.shell_spec)
            )
        elif key == "q":
            await self._quit()

    async def _detail_key(self, key: str) -> None:
        screen = self._screen
        session = self._current_session()
        if session is None:
            return
        if screen.resume_prompt is not None:
            if key == "escape":
                screen.resume_prompt = None
            elif key == "enter":
                prompt = screen.resume_prompt.strip()
                if prompt:
                    screen.resume_prompt = None
                    self._spawn(self._resume_detached(session, prompt))
            else:
                screen.resume_prompt = self._edit(screen.resume_prompt, key)
            return

        if key == "a":
            if session.is_running:
                self._resolve(Outcome(OutcomeTag.ATTACH_SESSION, session=session))
            else:
                self._state.toasts.show("Session is not running; press r to resume it")
        elif key == "s":
            if session.is_running:
                self._resolve(Outcome(OutcomeTag.EXEC_SHELL, session=session))
            else:
                resume = ResumeRequest(provider=session.provider, session_id=session.id, mode=ResumeMode.SHELL)
                self._resolve(Outcome(OutcomeTag.RESUME_SESSION, session=session, resume=resume))
        elif key == "r":
            if session.is_running:
                self._state.toasts.show("Session is still running; press a to attach")
            else:
                resume = ResumeRequest(provider=session.provider, session_id=session.id)
                self._resolve(Outcome(OutcomeTag.RESUME_SESSION, session=session, resume=resume))
        elif key == "R":
            if session.is_running:
                self._state.toasts.show("Session is still running")
            else:
                screen.resume_prompt = ""
        elif key == "x":
            if session.is_running:
                self._stop(session)
        elif key == "d":
            self._remove(session)
            await self._enter(NextView(ViewKind.LIST))
        elif key == "l":
            if session.interactive:
                self._state.toasts.show("Logs are not available for interactive sessions")
            else:
                await self._enter(NextView(ViewKind.LOGS, session=session))
        elif key in ("escape", "q"):
            await self._enter(NextView(ViewKind.LIST))

    async def _logs_key(self, key: str) -> None:
        if key in ("escape", "q"):
            session = self._current_session()
            if session is not None:
                await self._enter(NextView(ViewKind.DETAIL, session=session))

    # Rendering

    def _render(self) -> RenderableType:
        screen = self._screen
        header = Text("hermes", style="bold magenta")
        header.append(f"  {screen.kind.value}", style="dim")
        pending = self._tasks.pending_count
        if pending:
            header.append(f"  ⟳ {pending} background task(s)", style="yellow")

        if screen.shutting_down:
            body: RenderableType = Text(f"Waiting for {pending} background task(s) to finish...")
        else:
            body = {
                ViewKind.PROMPT: self._render_prompt,
                ViewKind.STARTING: self._render_starting,
                ViewKind.CLOUD_SETUP: self._render_cloud_setup,
                ViewKind.LIST: self._render_list,
                ViewKind.DETAIL: self._render_detail,
                ViewKind.LOGS: self._render_logs,
            }[screen.kind]()

        parts: list[RenderableType] = [header, Text(""), body, Text("")]
        toast = self._state.toasts.current()
        if toast is not None:
            style = {"error": "bold red", "warning": "yellow"}.get(toast.kind, "cyan")
            parts.append(Text(toast.message, style=style))
        parts.append(Text(_HOTKEYS[screen.kind], style="dim"))
        return Group(*parts)

    def _render_prompt(self) -> RenderableType:
        screen = self._screen
        defaults = self._defaults
        agent = f"{defaults.agent.value}/{defaults.model}" if defaults.model else defaults.agent.value
        title = f"New session · {agent} · {defaults.provider.value} · mode: {screen.mode.value}"
        return Panel(Text(screen.buffer + "▏"), title=title, title_align="left", border_style="magenta")

    def _render_starting(self) -> RenderableType:
        screen = self._screen
        request = screen.request
        lines = Text()
        for step in STEP_ORDER:
            if step is StartStep.CHECKING_CREDENTIALS and (
                not isinstance(request, StartRequest) or request.provider is not ProviderType.CLOUD
            ):
                continue
            label = STEP_LABELS[step]
            if step in screen.completed:
                lines.append(f"✓ {label}\n", style="green")
            elif step is screen.step:
                detail = f": {screen.step_detail}" if screen.step_detail else ""
                lines.append(f"› {label}{detail}\n", style="bold")
            else:
                lines.append(f"  {label}\n", style="dim")
        prompt = truncate(request.prompt, 70) if isinstance(request, StartRequest) else ""
        return Panel(lines, title=f"Starting: {prompt}", title_align="left")

    def _render_cloud_setup(self) -> RenderableType:
        body = Text("Cloud sandboxes need a Deno Deploy access token.\n", style="bold")
        body.append("Create one in the Deno Deploy dashboard, paste it below and press enter.\n\n")
        body.append("Token: ")
        body.append("*" * len(self._screen.buffer) + "▏")
        return Panel(body, title="Cloud setup", title_align="left", border_style="cyan")

    def _render_list(self) -> RenderableType:
        sessions = self._state.sessions
        if not sessions.loaded:
            return Text("Loading sessions...", style="dim")
        visible = sessions.visible()
        if not visible:
            return Text("No sessions. Press n to start one.", style="dim")
        selected = self._state.selection.selected(visible)
        return build_table(visible, selected=selected.key if selected else None)

    def _render_detail(self) -> RenderableType:
        session = self._current_session()
        assert session is not None
        grid = Table.grid(padding=(0, 2))
        grid.add_column(style="bold")
        grid.add_column()
        status = Text(f"{status_icon(session)} {status_text(session)}", style=status_color(session))
        grid.add_row("Name", session.name)
        grid.add_row("Status", status)
        grid.add_row("Agent", f"{session.agent.value}/{session.model}" if session.model else session.agent.value)
        grid.add_row("Provider", session.provider.value + (f" ({session.region})" if session.region else ""))
        grid.add_row("Repo", session.repo)
        if session.branch:
            grid.add_row("Branch", f"hermes/{session.branch}")
        if session.mount_dir:
            grid.add_row("Mount", session.mount_dir)
        if session.resumed_from:
            grid.add_row("Resumed from", session.resumed_from)
        grid.add_row("Created", format_relative_time(session.created))
        grid.add_row("Prompt", truncate(session.prompt, 200) or "-")

        entry = self._state.prs.get(session.key)
        if session.repo and session.branch and session.repo != "local":
            if entry is None:
                grid.add_row("PR", Text("checking...", style="dim"))
            elif entry.info is None:
                grid.add_row("PR", Text("none", style="dim"))
            else:
                grid.add_row("PR", f"#{entry.info.number} {entry.info.state.lower()} {entry.info.url}")

        stats = self._reconciler.stats.get(session.id)
        if stats is None:
            stats = next(
                (value for key, value in self._reconciler.stats.items() if session.id.startswith(key)),
                None,
            )
        if stats is not None:
            grid.add_row("CPU", f"{stats.cpu_percent:.1f}%")
            grid.add_row("Memory", f"{stats.mem_usage} ({stats.mem_percent:.1f}%)")

        parts: list[RenderableType] = [grid]
        if self._screen.resume_prompt is not None:
            parts.append(
                Panel(Text(self._screen.resume_prompt + "▏"), title="Resume detached with prompt", title_align="left")
            )
        return Group(*parts)

    def _render_logs(self) -> RenderableType:
        height = max(5, self._console.size.height - 6)
        lines = list(self._screen.logs)[-height:]
        if not lines:
            return Text("Waiting for output...", style="dim")
        return Text.from_ansi("\n".join(lines))


__all__ = ["AppDefaults", "HermesApp"]
