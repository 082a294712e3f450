"""Background queue for destructive operations that must not block navigation."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from .state import SessionKey, SessionState, ToastState

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class BackgroundTask:
    id: str
    label: str
    status: TaskStatus
    target: SessionKey | None = None
    error: str | None = None


class BackgroundTaskQueue:
    """Runs operations as independent asyncio tasks.

    ``enqueue`` puts the target session in the pending-delete overlay right away
    and takes it out once the operation settles, whether it succeeded or not. A
    failed removal therefore resurfaces on the next reconciliation pass.
    """

    def __init__(self, sessions: SessionState, toasts: ToastState | None = None) -> None:
        self._sessions = sessions
        self._toasts = toasts
        self._counter = itertools.count(1)
        self._tasks: dict[str, BackgroundTask] = {}
        self._handles: dict[str, asyncio.Task[None]] = {}

    def enqueue(
        self,
        label: str,
        operation: Callable[[], Awaitable[object]],
        *,
        target: SessionKey | None = None,
    ) -> str:
        task_id = f"task-{next(self._counter)}"
        self._tasks[task_id] = BackgroundTask(id=task_id, label=label, status=TaskStatus.RUNNING, target=target)
        if target is not None:
            self._sessions.mark_pending(target)
        self._handles[task_id] = asyncio.get_running_loop().create_task(
            self._run(task_id, label, operation, target)
        )
        logger.debug("Background task enqueued", extra={"task_id": task_id, "label": label})
        return task_id

    async def _run(
        self,
        task_id: str,
        label: str,
        operation: Callable[[], Awaitable[object]],
        target: SessionKey | None,
    ) -> None:
        try:
            await operation()
        except Exception as exc:
            logger.warning("Background task failed", extra={"task_id": task_id, "label": label, "error": str(exc)})
            self._tasks[task_id] = BackgroundTask(
                id=task_id, label=label, status=TaskStatus.FAILED, target=target, error=str(exc)
            )
            if self._toasts is not None:
                self._toasts.error(f"{label} failed: {exc}")
        else:
            self._tasks[task_id] = BackgroundTask(
                id=task_id, label=label, status=TaskStatus.COMPLETED, target=target
            )
        finally:
            if target is not None:
                self._sessions.clear_pending(target)
            self._handles.pop(task_id, None)

    @property
    def tasks(self) -> list[BackgroundTask]:
        return list(self._tasks.values())

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._tasks.values() if task.status is TaskStatus.RUNNING)

    async def wait_for_all(self) -> None:
        while self._handles:
            await asyncio.gather(*list(self._handles.values()), return_exceptions=True)


__all__ = ["BackgroundTask", "BackgroundTaskQueue", "TaskStatus"]
