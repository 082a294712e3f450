from __future__ import annotations

import asyncio
import json

from hermes_sandbox.engine import (
    BackgroundTaskQueue,
    EngineState,
    PollIntervals,
    PrCache,
    Reconciler,
    SelectionState,
    SessionState,
    TaskStatus,
    ToastState,
)
from hermes_sandbox.sandbox import (
    CommandResult,
    DockerSandboxProvider,
    FakeCommandRunner,
    ProviderRegistry,
    SandboxError,
)
from hermes_sandbox.sessions import PrInfo, ProviderType, SandboxStats, Session


def _session(session_id: str, *, provider: str = "local", status: str = "running", created: str = "2025-01-01") -> Session:
    return Session(
        id=session_id,
        name=f"hermes-{session_id}",
        branch=session_id,
        provider=provider,
        status=status,
        repo="acme/widgets",
        created=created,
    )


class FakeProvider:
    def __init__(self, provider_type: ProviderType, sessions: list[Session] | None = None) -> None:
        self.type = provider_type
        self.sessions = {session.id: session for session in sessions or []}
        self.removed: list[str] = []
        self.fail_remove = False
        self.fail_list = False

    async def list(self) -> list[Session]:
        if self.fail_list:
            raise SandboxError("provider offline")
        return list(self.sessions.values())

    async def get(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    async def remove(self, session_id: str) -> None:
        await asyncio.sleep(0)
        if self.fail_remove:
            raise SandboxError("permission denied")
        self.removed.append(session_id)
        self.sessions.pop(session_id, None)

    async def get_stats(self, session_ids):
        return {session_id: SandboxStats(id=session_id, cpu_percent=5.0) for session_id in session_ids}


def _registry(local: FakeProvider, cloud: FakeProvider | None = None) -> ProviderRegistry:
    cloud = cloud or FakeProvider(ProviderType.CLOUD)
    return ProviderRegistry({ProviderType.LOCAL: lambda: local, ProviderType.CLOUD: lambda: cloud})


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_pending_delete_overlay_hides_sessions() -> None:
    state = SessionState()
    notifications: list[int] = []
    state.subscribe(lambda: notifications.append(1))
    a, b = _session("a"), _session("b")
    state.replace_all([a, b])

    state.mark_pending(a.key)

    assert state.visible() == (b,)
    assert state.find(a.key) is None
    state.clear_pending(a.key)
    assert state.find(a.key) == a
    assert len(notifications) == 3


def test_upsert_and_retire_replace_records_by_key() -> None:
    state = SessionState()
    state.replace_all([_session("a"), _session("b")])

    state.upsert(_session("a", status="stopped"))
    state.retire(("local", "b"))

    assert [session.id for session in state.visible()] == ["a"]
    assert state.visible()[0].status.value == "stopped"


def test_same_id_on_different_providers_are_distinct() -> None:
    state = SessionState()
    state.replace_all([_session("x"), _session("x", provider="cloud")])
    state.retire((ProviderType.CLOUD, "x"))
    assert [session.provider for session in state.visible()] == [ProviderType.LOCAL]


def test_selection_follows_key_across_reorders() -> None:
    selection = SelectionState()
    first = (_session("a"), _session("b"), _session("c"))
    selection.move(first, 1)
    assert selection.key == first[1].key

    reordered = (first[2], first[1], first[0])
    assert selection.selected(reordered) == first[1]
    selection.move(reordered, 5)
    assert selection.key == first[0].key
    selection.move((), 1)
    assert selection.key is None


def test_toast_expires() -> None:
    clock = FakeClock()
    toasts = ToastState(clock=clock)
    toasts.error("boom", duration=2.0)
    assert toasts.current().kind == "error"
    clock.now += 2.5
    assert toasts.current() is None


def test_pr_cache_serves_stale_and_refreshes_once() -> None:
    clock = FakeClock()
    cache = PrCache(ttl=60.0, clock=clock)
    session = _session("a")
    lookups: list[tuple[str, str]] = []

    async def lookup(repo: str, branch: str):
        lookups.append((repo, branch))
        return PrInfo(number=7, state="OPEN", url="https://github.com/acme/widgets/pull/7")

    async def scenario() -> None:
        spawned: list[asyncio.Task] = []

        def spawn(coro):
            spawned.append(asyncio.get_running_loop().create_task(coro))

        assert cache.read(session, lookup, spawn) is None
        assert cache.read(session, lookup, spawn) is None
        await asyncio.gather(*spawned)
        entry = cache.read(session, lookup, spawn)
        assert entry is not None and entry.info.number == 7
        clock.now += 61
        assert cache.read(session, lookup, spawn) is entry
        await asyncio.gather(*spawned)

    asyncio.run(scenario())

    assert lookups == [("acme/widgets", "a"), ("acme/widgets", "a")]


def test_pr_cache_records_lookup_failure_as_none() -> None:
    cache = PrCache(clock=FakeClock())
    session = _session("a")

    async def lookup(repo: str, branch: str):
        raise RuntimeError("gh missing")

    async def scenario() -> None:
        tasks: list[asyncio.Task] = []
        cache.read(session, lookup, lambda coro: tasks.append(asyncio.get_running_loop().create_task(coro)))
        await asyncio.gather(*tasks)

    asyncio.run(scenario())

    entry = cache.get(session.key)
    assert entry is not None and entry.info is None
    assert not cache.is_stale(session.key)


def test_failed_remove_reappears_and_reports() -> None:
    state = EngineState.create()
    provider = FakeProvider(ProviderType.LOCAL, [_session("a")])
    provider.fail_remove = True
    state.sessions.replace_all(provider.sessions.values())

    async def scenario() -> BackgroundTaskQueue:
        queue = BackgroundTaskQueue(state.sessions, state.toasts)
        target = (ProviderType.LOCAL, "a")
        queue.enqueue("Remove hermes-a", lambda: provider.remove("a"), target=target)
        assert state.sessions.visible() == ()
        assert queue.pending_count == 1
        await queue.wait_for_all()
        return queue

    queue = asyncio.run(scenario())

    assert [session.id for session in state.sessions.visible()] == ["a"]
    assert queue.tasks[0].status is TaskStatus.FAILED
    assert queue.tasks[0].error == "permission denied"
    assert "permission denied" in state.toasts.current().message


def test_queue_runs_operations_concurrently() -> None:
    state = SessionState()
    order: list[str] = []

    async def slow(label: str, delay: float) -> None:
        await asyncio.sleep(delay)
        order.append(label)

    async def scenario() -> BackgroundTaskQueue:
        queue = BackgroundTaskQueue(state)
        queue.enqueue("slow", lambda: slow("slow", 0.05))
        queue.enqueue("fast", lambda: slow("fast", 0.0))
        await queue.wait_for_all()
        return queue

    queue = asyncio.run(scenario())

    assert order == ["fast", "slow"]
    assert all(task.status is TaskStatus.COMPLETED for task in queue.tasks)


def test_refresh_list_merges_providers_and_skips_failures() -> None:
    local = FakeProvider(ProviderType.LOCAL, [_session("old", created="2025-01-01")])
    cloud = FakeProvider(ProviderType.CLOUD, [_session("new", provider="cloud", created="2025-02-01")])
    state = EngineState.create()

    asyncio.run(Reconciler(state, _registry(local, cloud)).refresh_list())
    assert [session.id for session in state.sessions.visible()] == ["new", "old"]

    cloud.fail_list = True
    asyncio.run(Reconciler(state, _registry(local, cloud)).refresh_list())
    assert [session.id for session in state.sessions.visible()] == ["old"]


def test_poll_detail_retires_vanished_session() -> None:
    local = FakeProvider(ProviderType.LOCAL, [_session("a")])
    state = EngineState.create()
    state.sessions.replace_all(local.sessions.values())
    vanished: list[bool] = []
    reconciler = Reconciler(state, _registry(local))

    local.sessions.clear()
    result = asyncio.run(reconciler.poll_detail(ProviderType.LOCAL, "a", lambda: vanished.append(True)))

    assert result is None
    assert state.sessions.visible() == ()
    assert vanished == [True]
    assert state.toasts.current().message == "Session no longer exists"


def test_watch_detail_polls_until_vanished() -> None:
    session = _session("a")
    local = FakeProvider(ProviderType.LOCAL, [session])
    state = EngineState.create()
    intervals = PollIntervals(list=0.01, detail=0.01, stats=0.01, vanished_delay=0.01)
    reconciler = Reconciler(state, _registry(local), intervals=intervals)

    async def scenario() -> None:
        done = asyncio.Event()
        reconciler.watch_detail(session, on_vanished=done.set)
        await asyncio.sleep(0.03)
        assert reconciler.stats["a"].cpu_percent == 5.0
        local.sessions.clear()
        await asyncio.wait_for(done.wait(), timeout=1.0)
        await reconciler.stop_all()

    asyncio.run(scenario())

    assert state.sessions.visible() == ()
    assert reconciler.stats == {}


def test_refresh_list_survives_container_vanishing_mid_listing() -> None:
    def container(container_id: str) -> dict:
        return {
            "Id": container_id,
            "Name": f"/hermes-{container_id}",
            "Config": {"Labels": {"hermes.managed": "true", "hermes.branch": container_id, "hermes.created": "2025-01-01"}},
            "State": {"Status": "running", "ExitCode": 0},
        }

    def handler(args):
        if args[:2] == ("docker", "ps"):
            return CommandResult(args=args, returncode=0, stdout="A\nB\n", stderr="")
        if args[:2] == ("docker", "inspect"):
            return CommandResult(
                args=args, returncode=1, stdout=json.dumps([container("A")]), stderr="Error: No such object: B"
            )
        return None

    local = DockerSandboxProvider(FakeCommandRunner(handler=handler), credentials=lambda: [])
    cloud = FakeProvider(ProviderType.CLOUD)
    registry = ProviderRegistry({ProviderType.LOCAL: lambda: local, ProviderType.CLOUD: lambda: cloud})
    state = EngineState.create()
    state.sessions.mark_pending((ProviderType.LOCAL, "B"))

    asyncio.run(Reconciler(state, registry).refresh_list())

    assert [session.id for session in state.sessions.visible()] == ["A"]


def test_watch_list_repolls_on_its_interval() -> None:
    local = FakeProvider(ProviderType.LOCAL, [_session("a")])
    state = EngineState.create()
    reconciler = Reconciler(state, _registry(local), intervals=PollIntervals(list=0.02))

    async def scenario() -> None:
        reconciler.watch_list()
        await asyncio.sleep(0.01)
        assert [session.id for session in state.sessions.visible()] == ["a"]
        local.sessions["b"] = _session("b", created="2025-02-01")
        for _ in range(100):
            if len(state.sessions.visible()) == 2:
                break
            await asyncio.sleep(0.01)
        await reconciler.unwatch_list()

    asyncio.run(scenario())

    assert [session.id for session in state.sessions.visible()] == ["b", "a"]


def test_request_refresh_fetches_immediately() -> None:
    local = FakeProvider(ProviderType.LOCAL, [_session("a")])
    state = EngineState.create()
    reconciler = Reconciler(state, _registry(local), intervals=PollIntervals(list=60.0))

    async def scenario() -> None:
        reconciler.watch_list()
        await asyncio.sleep(0.01)
        local.sessions["b"] = _session("b", created="2025-02-01")
        reconciler.request_refresh()
        await asyncio.sleep(0.02)
        seen = [session.id for session in state.sessions.visible()]
        await reconciler.unwatch_list()
        return seen

    assert asyncio.run(scenario()) == ["b", "a"]

    idle = Reconciler(state, _registry(FakeProvider(ProviderType.LOCAL)))

    async def unwatched() -> None:
        idle.request_refresh()
        await asyncio.sleep(0.01)

    asyncio.run(unwatched())
    assert state.sessions.visible() == ()
