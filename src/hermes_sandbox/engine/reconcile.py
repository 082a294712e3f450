"""Polling loop that keeps the session state within a bounded staleness of provider truth.

Providers expose no events, so each view owns a cancellable ticker on the
running event loop. Intervals are fixed constants, not adaptive backoff.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..sandbox import ProviderRegistry, list_all_sessions
from ..sessions import ProviderType, SandboxStats, Session
from .state import EngineState, PrLookup

logger = logging.getLogger(__name__)

LIST_INTERVAL = 60.0
DETAIL_INTERVAL = 5.0
STATS_INTERVAL = 1.0
VANISHED_NOTICE_DELAY = 2.0


@dataclass(frozen=True, slots=True)
class PollIntervals:
    list: float = LIST_INTERVAL
    detail: float = DETAIL_INTERVAL
    stats: float = STATS_INTERVAL
    vanished_delay: float = VANISHED_NOTICE_DELAY


class Ticker:
    """Runs ``action`` now and then every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, action: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self._interval = interval
        self._action = action
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)

    def trigger(self) -> None:
        """Run the action immediately instead of waiting out the interval."""

        self._wake.set()

    async def _loop(self) -> None:
        while True:
            try:
                await self._action()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Poll failed", extra={"poller": self.name, "error": str(exc)})
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class Reconciler:
    """Owns the list, detail and stats pollers for one orchestration loop."""

    def __init__(
        self,
        state: EngineState,
        registry: ProviderRegistry,
        *,
        pr_lookup: PrLookup | None = None,
        intervals: PollIntervals | None = None,
    ) -> None:
        self._state = state
        self._registry = registry
        self._pr_lookup = pr_lookup
        self._intervals = intervals or PollIntervals()
        self._list: Ticker | None = None
        self._detail: Ticker | None = None
        self._stats: Ticker | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._stats_snapshot: dict[str, SandboxStats] = {}

    @property
    def intervals(self) -> PollIntervals:
        return self._intervals

    @property
    def stats(self) -> dict[str, SandboxStats]:
        return self._stats_snapshot

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # List view

    async def refresh_list(self) -> None:
        sessions = await list_all_sessions(self._registry.all())
        self._state.sessions.replace_all(sessions)

    def watch_list(self) -> None:
        if self._list is None:
            self._list = Ticker("list", self._intervals.list, self.refresh_list)
        self._list.start()

    def request_refresh(self) -> None:
        if self._list is not None and self._list.running:
            self._list.trigger()
        else:
            self._spawn(self.refresh_list())

    async def unwatch_list(self) -> None:
        if self._list is not None:
            await self._list.stop()
            self._list = None

    # Detail view

    def refresh_pr(self, session: Session) -> None:
        if self._pr_lookup is not None:
            self._state.prs.read(session, self._pr_lookup, self._spawn)

    async def poll_detail(
        self,
        provider_type: ProviderType,
        session_id: str,
        on_vanished: Optional[Callable[[], None]] = None,
    ) -> Session | None:
        key = (provider_type, session_id)
        session = await self._registry.get(provider_type).get(session_id)
        if session is None:
            self._state.sessions.retire(key)
            self._state.toasts.show("Session no longer exists", "warning", self._intervals.vanished_delay)
            if self._detail is not None:
                # Stop polling a dead record; navigation happens after the notice.
                self._spawn(self._finish_vanished(on_vanished))
            elif on_vanished is not None:
                on_vanished()
            return None
        self._state.sessions.upsert(session)
        self.refresh_pr(session)
        return session

    async def _finish_vanished(self, on_vanished: Optional[Callable[[], None]]) -> None:
        await self.unwatch_detail()
        await asyncio.sleep(self._intervals.vanished_delay)
        if on_vanished is not None:
            on_vanished()

    def watch_detail(self, session: Session, on_vanished: Optional[Callable[[], None]] = None) -> None:
        self._detail = Ticker(
            f"detail:{session.id}",
            self._intervals.detail,
            lambda: self._poll_detail_quietly(session.provider, session.id, on_vanished),
        )
        self._detail.start()
        if session.provider is ProviderType.LOCAL:
            self._stats = Ticker(
                f"stats:{session.id}",
                self._intervals.stats,
                lambda: self._poll_stats(session.provider, session.id),
            )
            self._stats.start()

    async def _poll_detail_quietly(
        self,
        provider_type: ProviderType,
        session_id: str,
        on_vanished: Optional[Callable[[], None]],
    ) -> None:
        await self.poll_detail(provider_type, session_id, on_vanished)

    async def _poll_stats(self, provider_type: ProviderType, session_id: str) -> None:
        session = self._state.sessions.find((provider_type, session_id))
        if session is None or not session.is_running:
            self._stats_snapshot = {}
            return
        self._stats_snapshot = await self._registry.get(provider_type).get_stats([session_id])

    async def unwatch_detail(self) -> None:
        detail, self._detail = self._detail, None
        stats, self._stats = self._stats, None
        for ticker in (detail, stats):
            if ticker is not None:
                await ticker.stop()
        self._stats_snapshot = {}

    async def stop_all(self) -> None:
        await self.unwatch_list()
        await self.unwatch_detail()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


__all__ = [
    "DETAIL_INTERVAL",
    "LIST_INTERVAL",
    "PollIntervals",
    "Reconciler",
    "STATS_INTERVAL",
    "Ticker",
    "VANISHED_NOTICE_DELAY",
]
