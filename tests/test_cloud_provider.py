from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from hermes_sandbox import __version__
from hermes_sandbox.sandbox import (
    CloudApiError,
    CloudSandboxProvider,
    ConfigurationError,
    FakeCommandRunner,
    ProviderRegistry,
    SandboxError,
    SessionNotFoundError,
    SessionStore,
    SetupRequiredError,
)
from hermes_sandbox.sandbox.cloud import deno_slug
from hermes_sandbox.sandbox.deno_api import DenoSandbox, DenoSnapshot, DenoVolume, ExecResult, SshEndpoint
from hermes_sandbox.sessions import (
    CreateSessionSpec,
    ProviderType,
    RepoInfo,
    ResumeMode,
    ResumeOptions,
    Session,
    SessionStatus,
)


class DictCollection:
    def __init__(self) -> None:
        self.records: dict[str, tuple[str, dict[str, Any]]] = {}

    def upsert(self, *, documents, metadatas, ids) -> None:
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records[record_id] = (document, metadata)

    def get(self, *, ids=None, where=None, limit=None):
        def keep(record_id, metadata):
            if ids is not None and record_id not in ids:
                return False
            clauses = (where or {}).get("$and", [where] if where else [])
            return all(metadata.get(key) == value for clause in clauses for key, value in clause.items())

        selected = [(key, doc) for key, (doc, meta) in self.records.items() if keep(key, meta)]
        return {"ids": [key for key, _ in selected], "documents": [doc for _, doc in selected]}

    def delete(self, *, ids) -> None:
        for record_id in ids:
            self.records.pop(record_id, None)


class DictClient:
    def __init__(self) -> None:
        self.collection = DictCollection()

    def get_or_create_collection(self, name: str) -> DictCollection:
        return self.collection


class StubApi:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.live: set[str] = set()
        self.snapshots = [DenoSnapshot(id="snap-base", slug=f"hermes-base-{__version__}")]
        self.exec_failures: dict[str, ExecResult] = {}
        self.create_error: CloudApiError | None = None
        self.files: dict[str, str] = {}
        self._counter = 0

    async def list_snapshots(self):
        self.calls.append(("list_snapshots",))
        return self.snapshots

    async def create_volume(self, *, slug, region, capacity=None, source=None):
        self.calls.append(("create_volume", slug, source))
        return DenoVolume(id=f"vol-id-{slug}", slug=slug, region=region)

    async def delete_volume(self, volume_id):
        self.calls.append(("delete_volume", volume_id))

    async def create_sandbox(self, *, region, root=None, timeout=None, memory=None, volumes=None, labels=None, env=None):
        self.calls.append(("create_sandbox", root, dict(labels or {}), dict(env or {})))
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        sandbox_id = f"sbx-{self._counter}"
        self.live.add(sandbox_id)
        return DenoSandbox(id=sandbox_id, region=region)

    async def list_sandboxes(self, labels=None):
        return [DenoSandbox(id=sandbox_id) for sandbox_id in sorted(self.live)]

    async def kill_sandbox(self, sandbox_id):
        self.calls.append(("kill_sandbox", sandbox_id))
        if sandbox_id not in self.live:
            raise CloudApiError(f"sandbox {sandbox_id} not found", status_code=404)
        self.live.discard(sandbox_id)

    async def exec(self, sandbox_id, command, *, user=None, work_dir=None):
        script = command[-1]
        self.calls.append(("exec", sandbox_id, script))
        for marker, result in self.exec_failures.items():
            if marker in script:
                return result
        if script == "echo $HOME":
            return ExecResult(stdout="/home/hermes\n")
        return ExecResult()

    async def write_file(self, sandbox_id, path, content, *, mode=None, user=None):
        self.calls.append(("write_file", sandbox_id, path))

    async def read_file(self, sandbox_id, path):
        return self.files.get(sandbox_id, "")

    async def expose_ssh(self, sandbox_id):
        return SshEndpoint(hostname=f"{sandbox_id}.sandbox.test", username="hermes")

    async def snapshot_volume(self, volume_id, slug):
        self.calls.append(("snapshot_volume", volume_id, slug))
        return DenoSnapshot(id=f"snap-{slug}", slug=slug)

    async def delete_snapshot(self, snapshot_id):
        self.calls.append(("delete_snapshot", snapshot_id))


def _noop_sleep(_seconds: float):
    async def inner() -> None:
        return None

    return inner()


def _provider(
    tmp_path: Path,
    api: StubApi,
    *,
    token: str | None = "tok",
    runner: FakeCommandRunner | None = None,
) -> tuple[CloudSandboxProvider, SessionStore]:
    store = SessionStore(tmp_path, client_factory=DictClient)
    provider = CloudSandboxProvider(
        store,
        lambda: token,
        region="ord",
        runner=runner or FakeCommandRunner(),
        api_factory=lambda _token: api,
        credentials=lambda: [],
        clock=lambda: datetime(2025, 1, 1, tzinfo=timezone.utc),
        sleep=_noop_sleep,
    )
    return provider, store


def _stored(store: SessionStore, session_id: str, **overrides) -> Session:
    data = {
        "id": session_id,
        "name": "fix-login",
        "branch": "fix-login",
        "provider": "cloud",
        "status": "running",
        "created": "2025-01-01T00:00:00+00:00",
        "region": "ord",
        "volume_slug": "hs-fix-login-abc123",
    }
    data.update(overrides)
    return store.upsert(Session(**data))


def test_deno_slug_is_sanitized() -> None:
    slug = deno_slug("hs", "Fix Login/Flow!!")
    assert slug.startswith("hs-fix-login-flow-")
    assert len(slug.rsplit("-", 1)[1]) == 6


def test_missing_token_is_setup_required(tmp_path: Path) -> None:
    provider, _store = _provider(tmp_path, StubApi(), token=None)
    with pytest.raises(SetupRequiredError):
        asyncio.run(provider.ensure_ready())


def test_create_clones_and_starts_detached_agent(tmp_path: Path) -> None:
    api = StubApi()
    provider, store = _provider(tmp_path, api)
    spec = CreateSessionSpec(
        branch_name="fix-login",
        prompt="fix the login flow",
        repo_info=RepoInfo(owner="acme", name="widgets"),
        env_vars={"DATABASE_URL": "postgres://x"},
    )

    session = asyncio.run(provider.create(spec))

    assert session.status is SessionStatus.RUNNING
    assert session.volume_slug.startswith("hs-fix-login-")
    assert store.get(ProviderType.CLOUD, session.id) == session
    create_call = next(call for call in api.calls if call[0] == "create_sandbox")
    assert create_call[2]["hermes.repo"] == "acme/widgets"
    assert create_call[3] == {"DATABASE_URL": "postgres://x"}
    scripts = [call[2] for call in api.calls if call[0] == "exec"]
    assert any("gh repo clone acme/widgets app" in script for script in scripts)
    assert any("nohup" in script and "/work/agent.log" in script for script in scripts)


def test_create_rejects_mount_mode(tmp_path: Path) -> None:
    provider, _store = _provider(tmp_path, StubApi())
    with pytest.raises(ConfigurationError):
        asyncio.run(provider.create(CreateSessionSpec(branch_name="x", mount_dir="/src")))


def test_create_cleans_up_after_failed_setup(tmp_path: Path) -> None:
    api = StubApi()
    api.exec_failures["gh repo clone"] = ExecResult(exitCode=1, stderr="clone failed")
    provider, store = _provider(tmp_path, api)
    spec = CreateSessionSpec(branch_name="fix", repo_info=RepoInfo(owner="acme", name="widgets"))

    with pytest.raises(SandboxError):
        asyncio.run(provider.create(spec))

    assert ("kill_sandbox", "sbx-1") in api.calls
    assert any(call[0] == "delete_volume" for call in api.calls)
    assert store.list() == []


def test_create_reports_sandbox_limit(tmp_path: Path) -> None:
    api = StubApi()
    api.create_error = CloudApiError("Deno API error 429: concurrent sandbox limit", status_code=429)
    provider, store = _provider(tmp_path, api)
    _stored(store, "sbx-old")

    with pytest.raises(SandboxError) as excinfo:
        asyncio.run(provider.create(CreateSessionSpec(branch_name="x")))

    assert "limit reached (1 running)" in str(excinfo.value)


def test_list_marks_vanished_sandboxes_stopped(tmp_path: Path) -> None:
    api = StubApi()
    api.live = {"sbx-alive"}
    provider, store = _provider(tmp_path, api)
    _stored(store, "sbx-alive", created="2025-01-02T00:00:00+00:00")
    _stored(store, "sbx-gone")

    sessions = asyncio.run(provider.list())

    statuses = {session.id: session.status for session in sessions}
    assert statuses == {"sbx-alive": SessionStatus.RUNNING, "sbx-gone": SessionStatus.STOPPED}
    assert store.get(ProviderType.CLOUD, "sbx-gone").exit_code is None


def test_stop_kills_and_snapshots_volume(tmp_path: Path) -> None:
    api = StubApi()
    api.live = {"sbx-1"}
    provider, store = _provider(tmp_path, api)
    _stored(store, "sbx-1", snapshot_slug="hsnap-old")

    asyncio.run(provider.stop("sbx-1"))

    stored = store.get(ProviderType.CLOUD, "sbx-1")
    assert stored.status is SessionStatus.STOPPED
    assert stored.snapshot_slug.startswith("hsnap-fix-login-")
    assert ("delete_snapshot", "hsnap-old") in api.calls
    assert api.calls.index(("kill_sandbox", "sbx-1")) < api.calls.index(("delete_snapshot", "hsnap-old"))


def test_resume_boots_from_snapshot(tmp_path: Path) -> None:
    api = StubApi()
    provider, store = _provider(tmp_path, api)
    _stored(store, "sbx-old", status="stopped", snapshot_slug="hsnap-1")

    session = asyncio.run(
        provider.resume("sbx-old", ResumeOptions(mode=ResumeMode.DETACHED, prompt="add tests"))
    )

    assert session.resumed_from == "sbx-old"
    assert session.prompt == "add tests"
    assert not session.interactive
    volume_call = next(call for call in api.calls if call[0] == "create_volume")
    assert volume_call[2] == "hsnap-1"


def test_resume_unknown_session(tmp_path: Path) -> None:
    provider, _store = _provider(tmp_path, StubApi())
    with pytest.raises(SessionNotFoundError):
        asyncio.run(provider.resume("nope", ResumeOptions()))


def test_remove_deletes_snapshot_before_volume_and_forgets_record(tmp_path: Path) -> None:
    api = StubApi()
    provider, store = _provider(tmp_path, api)
    _stored(store, "sbx-1", status="stopped", snapshot_slug="hsnap-1")

    asyncio.run(provider.remove("sbx-1"))

    names = [call[0] for call in api.calls]
    assert names.index("delete_snapshot") < names.index("delete_volume")
    assert store.get(ProviderType.CLOUD, "sbx-1") is None


def test_stop_and_remove_of_unknown_id_succeed(tmp_path: Path) -> None:
    api = StubApi()
    provider, store = _provider(tmp_path, api)

    asyncio.run(provider.stop("sbx-missing"))
    asyncio.run(provider.remove("sbx-missing"))
    asyncio.run(provider.remove("sbx-missing"))

    assert store.get(ProviderType.CLOUD, "sbx-missing") is None
    assert [call[0] for call in api.calls] == ["kill_sandbox", "kill_sandbox"]


def test_stop_tolerates_sandbox_already_gone(tmp_path: Path) -> None:
    api = StubApi()
    provider, store = _provider(tmp_path, api)
    _stored(store, "sbx-1", volume_slug=None)

    asyncio.run(provider.stop("sbx-1"))
    asyncio.run(provider.stop("sbx-1"))

    assert store.get(ProviderType.CLOUD, "sbx-1").status is SessionStatus.STOPPED


def test_attach_runs_ssh_into_tmux(tmp_path: Path) -> None:
    runner = FakeCommandRunner()
    provider, store = _provider(tmp_path, StubApi(), runner=runner)
    _stored(store, "sbx-1", interactive=True)

    assert asyncio.run(provider.attach("sbx-1")) == 0

    args = runner.interactive_invocations[0]
    assert args[0] == "ssh"
    assert "hermes@sbx-1.sandbox.test" in args
    assert "tmux -u new-session -A -s hermes" in args[-1]


def test_stream_logs_reads_log_file_of_finished_session(tmp_path: Path) -> None:
    api = StubApi()
    api.files["sbx-1"] = "first line\nsecond line\npartial"
    provider, store = _provider(tmp_path, api)
    _stored(store, "sbx-1", status="stopped")

    async def collect() -> list[str]:
        return [line async for line in provider.stream_logs("sbx-1")]

    assert asyncio.run(collect()) == ["first line", "second line", "partial"]


def test_api_clients_are_closed_on_token_change_and_shutdown(tmp_path: Path) -> None:
    class ClosableApi(StubApi):
        def __init__(self, token: str) -> None:
            super().__init__()
            self.token = token
            self.closed = False

        async def aclose(self) -> None:
            self.closed = True

    opened: list[ClosableApi] = []
    tokens = ["first"]

    def factory(token: str) -> ClosableApi:
        opened.append(ClosableApi(token))
        return opened[-1]

    store = SessionStore(tmp_path, client_factory=DictClient)
    provider = CloudSandboxProvider(
        store, lambda: tokens[0], api_factory=factory, credentials=lambda: [], sleep=_noop_sleep
    )
    registry = ProviderRegistry({ProviderType.CLOUD: lambda: provider})

    async def scenario() -> None:
        await registry.get(ProviderType.CLOUD).remove("sbx-a")
        tokens[0] = "second"
        await provider.remove("sbx-b")
        assert not any(api.closed for api in opened)
        await registry.aclose()

    asyncio.run(scenario())

    assert [api.token for api in opened] == ["first", "second"]
    assert all(api.closed for api in opened)
