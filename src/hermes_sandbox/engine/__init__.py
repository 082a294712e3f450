"""Session orchestration: state stores, polling, background tasks, workflows and hand-off."""

from .handoff import (
    HandoffController,
    LoginFailedError,
    NextView,
    Outcome,
    OutcomeTag,
    TerminalBusyError,
    TerminalOwnership,
    UiLoop,
    ViewKind,
)
from .reconcile import PollIntervals, Reconciler, Ticker
from .state import EngineState, PrCache, SelectionState, SessionState, ToastState
from .tasks import BackgroundTask, BackgroundTaskQueue, TaskStatus
from .workflow import (
    ForkResult,
    NeedsAgentAuth,
    NeedsCloudSetup,
    ResumeRequest,
    ResumeWorkflow,
    RunMode,
    STEP_LABELS,
    SessionReady,
    StartFailed,
    StartRequest,
    StartStep,
    StartWorkflow,
    WorkflowResult,
)

__all__ = [
    "BackgroundTask",
    "BackgroundTaskQueue",
    "EngineState",
    "ForkResult",
    "HandoffController",
    "LoginFailedError",
    "NeedsAgentAuth",
    "NeedsCloudSetup",
    "NextView",
    "Outcome",
    "OutcomeTag",
    "PollIntervals",
    "PrCache",
    "Reconciler",
    "ResumeRequest",
    "ResumeWorkflow",
    "RunMode",
    "STEP_LABELS",
    "SelectionState",
    "SessionReady",
    "SessionState",
    "StartFailed",
    "StartRequest",
    "StartStep",
    "StartWorkflow",
    "TaskStatus",
    "TerminalBusyError",
    "TerminalOwnership",
    "Ticker",
    "ToastState",
    "UiLoop",
    "ViewKind",
    "WorkflowResult",
]
