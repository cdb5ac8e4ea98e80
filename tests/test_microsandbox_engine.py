import json
import threading
import time

import pytest

from safe_code_router import BackendId, CancellationToken, Constraints, ErrorKind, ExecutionRequest, Orchestrator
from safe_code_router.errors import BackendNotAvailableError, ExecutionCancelledError
from safe_code_router.execution.config import MicrosandboxSettings
from safe_code_router.execution.microsandbox_engine import E2BSandboxProvider, MicrosandboxAdapter
from safe_code_router.execution.types import RawOutcome


class _FakeProcess:
    def __init__(self, outcome: RawOutcome | None = None, *, hang: bool = False) -> None:
        self.outcome = outcome or RawOutcome('{"result": 42}', "", 0, False)
        self.hang = hang
        self.killed = threading.Event()

    def wait(self) -> RawOutcome:
        if self.hang:
            self.killed.wait(10)
            return RawOutcome("", "killed", 137, False)
        return self.outcome

    def kill(self) -> None:
        self.killed.set()


class _FakeSession:
    sandbox_id = "sbx-1"

    def __init__(self, process: _FakeProcess) -> None:
        self.process = process
        self.files: dict[str, str] = {}
        self.started: list[tuple[list[str], dict[str, str]]] = []
        self.close_calls = 0

    def write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    def start(self, command: list[str], env) -> _FakeProcess:
        self.started.append((command, dict(env)))
        return self.process

    def close(self) -> None:
        self.close_calls += 1


class _FakeProvider:
    def __init__(self, process: _FakeProcess | None = None, *, configured: bool = True) -> None:
        self.configured = configured
        self.session = _FakeSession(process or _FakeProcess())
        self.opened: list[tuple[str, int]] = []

    def is_configured(self) -> bool:
        return self.configured

    def open(self, template: str, timeout_ms: int) -> _FakeSession:
        self.opened.append((template, timeout_ms))
        return self.session


def _adapter(provider: _FakeProvider) -> MicrosandboxAdapter:
    return MicrosandboxAdapter(provider=provider, settings=MicrosandboxSettings(api_key="test-key"))


def test_python_run_writes_source_and_passes_input() -> None:
    provider = _FakeProvider()
    request = ExecutionRequest(language="python", source_code="print(1)", input_payload={"x": 1})

    outcome = _adapter(provider).run_sync(request, 5_000, CancellationToken())

    session = provider.session
    assert outcome.returncode == 0
    assert provider.opened == [("code-interpreter-v1", 5_000)]
    assert session.files == {"/code/main.py": "print(1)"}
    command, env = session.started[0]
    assert command == ["python3", "/code/main.py"]
    assert json.loads(env["INPUT"]) == {"x": 1}
    assert session.close_calls == 1


@pytest.mark.parametrize(
    ("language", "path", "binary"),
    [("bash", "/code/main.sh", "bash"), ("javascript", "/code/main.js", "node")],
)
def test_language_selects_file_and_command(language: str, path: str, binary: str) -> None:
    provider = _FakeProvider()

    _adapter(provider).run_sync(ExecutionRequest(language=language, source_code="x"), 5_000, CancellationToken())

    assert provider.opened[0][0] == "base"
    assert provider.session.started[0][0] == [binary, path]


def test_timeout_kills_process_and_closes_session_once() -> None:
    process = _FakeProcess(hang=True)
    provider = _FakeProvider(process)

    outcome = _adapter(provider).run_sync(
        ExecutionRequest(language="python", source_code="while True: pass"),
        100,
        CancellationToken(),
    )

    assert outcome.timed_out is True
    assert outcome.returncode == 124
    assert "100ms" in outcome.error
    assert process.killed.is_set()
    assert provider.session.close_calls == 1


def test_cancellation_kills_process_and_closes_session_once() -> None:
    process = _FakeProcess(hang=True)
    provider = _FakeProvider(process)
    token = CancellationToken()
    timer = threading.Timer(0.05, token.cancel, args=("workflow aborted",))
    timer.start()
    try:
        with pytest.raises(ExecutionCancelledError, match="workflow aborted"):
            _adapter(provider).run_sync(
                ExecutionRequest(language="python", source_code="while True: pass"),
                10_000,
                token,
            )
    finally:
        timer.cancel()

    assert process.killed.is_set()
    assert provider.session.close_calls == 1


def test_session_closed_when_process_raises() -> None:
    class _BrokenProcess(_FakeProcess):
        def wait(self) -> RawOutcome:
            raise ConnectionError("sandbox connection lost")

    provider = _FakeProvider(_BrokenProcess())

    with pytest.raises(ConnectionError):
        _adapter(provider).run_sync(ExecutionRequest(language="python", source_code=""), 5_000, CancellationToken())
    assert provider.session.close_calls == 1


def test_unconfigured_provider_raises_not_available() -> None:
    provider = _FakeProvider(configured=False)

    with pytest.raises(BackendNotAvailableError) as excinfo:
        _adapter(provider).run_sync(ExecutionRequest(language="python", source_code=""), 5_000, CancellationToken())

    assert "E2B_API_KEY" in excinfo.value.remediation
    assert provider.opened == []


def test_provider_without_api_key_is_not_configured() -> None:
    assert E2BSandboxProvider(MicrosandboxSettings(api_key=None)).is_configured() is False


def test_orchestrator_timeout_through_microsandbox_cleans_up_once() -> None:
    process = _FakeProcess(hang=True)
    provider = _FakeProvider(process)
    orchestrator = Orchestrator([_adapter(provider)])

    result = orchestrator.execute(
        ExecutionRequest(
            language="python",
            source_code="while True: pass",
            constraints=Constraints(explicit_backend="microsandbox"),
            timeout_ms=100,
        )
    )

    assert result.error.kind is ErrorKind.TIMEOUT
    assert result.error.backend_id is BackendId.MICROSANDBOX
    assert provider.session.close_calls == 1


class _SlowBootProvider(_FakeProvider):
    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def open(self, template: str, timeout_ms: int) -> _FakeSession:
        self.release.wait(5)
        return super().open(template, timeout_ms)


def _eventually(condition, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def test_slow_sandbox_boot_times_out_within_budget() -> None:
    provider = _SlowBootProvider()
    orchestrator = Orchestrator([_adapter(provider)])
    started = time.monotonic()
    try:
        result = orchestrator.execute(
            ExecutionRequest(
                language="python",
                source_code="print(1)",
                constraints=Constraints(explicit_backend="microsandbox"),
                timeout_ms=200,
            )
        )
        elapsed = time.monotonic() - started
    finally:
        provider.release.set()

    assert result.error.kind is ErrorKind.TIMEOUT
    assert elapsed < 1.0
    assert _eventually(lambda: provider.session.close_calls == 1)
    assert provider.session.started == []
    assert provider.session.files == {}


def test_cancellation_during_sandbox_boot_returns_promptly() -> None:
    provider = _SlowBootProvider()
    token = CancellationToken()
    timer = threading.Timer(0.05, token.cancel, args=("workflow aborted",))
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(ExecutionCancelledError, match="workflow aborted"):
            _adapter(provider).run_sync(ExecutionRequest(language="python", source_code=""), 10_000, token)
        elapsed = time.monotonic() - started
    finally:
        timer.cancel()
        provider.release.set()

    assert elapsed < 1.0
    assert _eventually(lambda: provider.session.close_calls == 1)
    assert provider.session.started == []
