"""Explicitly owned state shared by the UI, the pollers and the task queue.

Every store is created once per orchestration loop and passed by reference.
Writes always replace whole values (tuples, frozensets, new entries), so a
reader never observes a half-applied update.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from ..sessions import LOCAL_REPO, PrInfo, ProviderType, Session

logger = logging.getLogger(__name__)

SessionKey = tuple[ProviderType, str]
Listener = Callable[[], None]
Clock = Callable[[], float]

PR_CACHE_TTL = 60.0


class _Observable:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()


class SessionState(_Observable):
    """The observable session record set plus the pending-delete overlay."""

    def __init__(self) -> None:
        super().__init__()
        self._sessions: tuple[Session, ...] = ()
        self._pending_delete: frozenset[SessionKey] = frozenset()
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def pending_delete(self) -> frozenset[SessionKey]:
        return self._pending_delete

    def replace_all(self, sessions: Iterable[Session]) -> None:
        self._sessions = tuple(sessions)
        self._loaded = True
        self._notify()

    def upsert(self, session: Session) -> None:
        others = tuple(item for item in self._sessions if item.key != session.key)
        self._sessions = (session, *others)
        self._notify()

    def retire(self, key: SessionKey) -> None:
        """Drop a record whose provider no longer confirms it exists."""

        self._sessions = tuple(item for item in self._sessions if item.key != key)
        self._notify()

    def mark_pending(self, key: SessionKey) -> None:
        self._pending_delete = self._pending_delete | {key}
        self._notify()

    def clear_pending(self, key: SessionKey) -> None:
        self._pending_delete = self._pending_delete - {key}
        self._notify()

    def visible(self) -> tuple[Session, ...]:
        """Sessions as every list view must see them: pending deletes excluded."""

        pending = self._pending_delete
        return tuple(item for item in self._sessions if item.key not in pending)

    def find(self, key: SessionKey) -> Session | None:
        if key in self._pending_delete:
            return None
        for item in self._sessions:
            if item.key == key:
                return item
        return None


@dataclass(frozen=True, slots=True)
class PrCacheEntry:
    info: Optional[PrInfo]
    last_checked: float


PrLookup = Callable[[str, str], Awaitable[Optional[PrInfo]]]
Spawner = Callable[[Awaitable[None]], object]


class PrCache(_Observable):
    """Pull-request metadata per session with stale-while-revalidate reads."""

    def __init__(self, *, ttl: float = PR_CACHE_TTL, clock: Clock = time.monotonic) -> None:
        super().__init__()
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[SessionKey, PrCacheEntry] = {}
        self._inflight: set[SessionKey] = set()

    def get(self, key: SessionKey) -> PrCacheEntry | None:
        return self._entries.get(key)

    def is_stale(self, key: SessionKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or self._clock() - entry.last_checked >= self._ttl

    def put(self, key: SessionKey, info: PrInfo | None) -> None:
        self._entries = {**self._entries, key: PrCacheEntry(info=info, last_checked=self._clock())}
        self._notify()

    def read(self, session: Session, lookup: PrLookup, spawn: Spawner) -> PrCacheEntry | None:
        """Return the cached entry immediately and start a background refresh if stale."""

        key = session.key
        entry = self._entries.get(key)
        has_remote = session.repo not in ("", LOCAL_REPO) and bool(session.branch)
        if has_remote and self.is_stale(key) and key not in self._inflight:
            self._inflight.add(key)
            spawn(self._refresh(session, lookup))
        return entry

    async def _refresh(self, session: Session, lookup: PrLookup) -> None:
        try:
            info = await lookup(session.repo, session.branch)
        except Exception as exc:
            logger.debug("PR lookup failed", extra={"session_id": session.id, "error": str(exc)})
            info = None
        finally:
            self._inflight.discard(session.key)
        self.put(session.key, info)


@dataclass(frozen=True, slots=True)
class Toast:
    message: str
    kind: str
    expires_at: float


class ToastState(_Observable):
    """Transient notices shown over whatever view is active."""

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        super().__init__()
        self._clock = clock
        self._toast: Toast | None = None

    def show(self, message: str, kind: str = "info", duration: float = 4.0) -> None:
        self._toast = Toast(message=message, kind=kind, expires_at=self._clock() + duration)
        self._notify()

    def error(self, message: str, duration: float = 6.0) -> None:
        self.show(message, "error", duration)

    def current(self) -> Toast | None:
        toast = self._toast
        if toast is not None and self._clock() >= toast.expires_at:
            self._toast = None
            return None
        return toast

    def clear(self) -> None:
        self._toast = None
        self._notify()


class SelectionState(_Observable):
    """Which session the list view highlights, kept by key so reorders do not move it."""

    def __init__(self) -> None:
        super().__init__()
        self._key: SessionKey | None = None

    @property
    def key(self) -> SessionKey | None:
        return self._key

    def select(self, key: SessionKey | None) -> None:
        self._key = key
        self._notify()

    def index_in(self, sessions: tuple[Session, ...]) -> int:
        for index, session in enumerate(sessions):
            if session.key == self._key:
                return index
        return 0

    def move(self, sessions: tuple[Session, ...], delta: int) -> None:
        if not sessions:
            self.select(None)
            return
        index = max(0, min(len(sessions) - 1, self.index_in(sessions) + delta))
        self.select(sessions[index].key)

    def selected(self, sessions: tuple[Session, ...]) -> Session | None:
        if not sessions:
            return None
        return sessions[self.index_in(sessions)]


@dataclass(slots=True)
class EngineState:
    """Bundle of the stores owned by one orchestration loop."""

    sessions: SessionState
    prs: PrCache
    toasts: ToastState
    selection: SelectionState

    @classmethod
    def create(cls, *, clock: Clock = time.monotonic) -> "EngineState":
        return cls(
            sessions=SessionState(),
            prs=PrCache(clock=clock),
            toasts=ToastState(clock=clock),
            selection=SelectionState(),
        )


__all__ = [
    "EngineState",
    "PR_CACHE_TTL",
    "PrCache",
    "PrCacheEntry",
    "SelectionState",
    "SessionKey",
    "SessionState",
    "Toast",
    "ToastState",
]
