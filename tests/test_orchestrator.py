from safe_code_router import (
    BackendId,
    CancellationToken,
    Constraints,
    ErrorKind,
    ExecutionRequest,
    Language,
    Orchestrator,
    RouterSettings,
)
from safe_code_router.execution.types import RawOutcome


class _FakeSyncAdapter:
    def __init__(
        self,
        backend_id: BackendId,
        *,
        available: bool = True,
        wired: bool = True,
        outcome: RawOutcome | None = None,
        error: Exception | None = None,
    ) -> None:
        self.backend_id = backend_id
        self.wired = wired
        self.available = available
        self.outcome = outcome or RawOutcome('{"result": 42}', "", 0, False)
        self.error = error
        self.calls: list[tuple[ExecutionRequest, int]] = []
        self.closed = 0

    def check_available(self) -> bool:
        if isinstance(self.available, Exception):
            raise self.available
        return self.available

    def remediation(self) -> str:
        return f"enable {self.backend_id.value}"

    def run_sync(self, request: ExecutionRequest, budget_ms: int, token: CancellationToken) -> RawOutcome:
        self.calls.append((request, budget_ms))
        if self.error is not None:
            raise self.error
        return self.outcome

    def close(self) -> None:
        self.closed += 1


class _FakeAsyncAdapter:
    backend_id = BackendId.BATCH_CLUSTER

    def __init__(self, *, available: bool = True, wired: bool = True, statuses=None, result="42\n") -> None:
        self.available = available
        self.wired = wired
        self.statuses = list(statuses or ["completed"])
        self.result = result
        self.submitted: list[ExecutionRequest] = []

    def check_available(self) -> bool:
        return self.available

    def remediation(self) -> str:
        return "Set BACALHAU_API_HOST"

    def submit(self, request: ExecutionRequest, *, timeout_s: float | None = None) -> str:
        self.submitted.append(request)
        return "job-7"

    def get_status(self, job_id: str, *, timeout_s: float | None = None) -> str:
        return self.statuses.pop(0) if self.statuses else "running"

    def fetch_result(self, job_id: str, *, timeout_s: float | None = None) -> str:
        return self.result


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float, token: CancellationToken) -> bool:
        self.now += seconds
        return token.cancelled


def _local_adapters() -> list[_FakeSyncAdapter]:
    return [
        _FakeSyncAdapter(BackendId.LOCAL_VM),
        _FakeSyncAdapter(BackendId.LOCAL_SUBPROCESS, outcome=RawOutcome("local\n", "", 0, False)),
    ]


def _request(language: str = "python", timeout_ms: int = 30_000, **constraints) -> ExecutionRequest:
    return ExecutionRequest(
        language=language,
        source_code="print(42)",
        constraints=Constraints(**constraints),
        timeout_ms=timeout_ms,
    )


def test_long_running_request_with_cluster_down_reports_not_available() -> None:
    cluster = _FakeAsyncAdapter(available=False)
    orchestrator = Orchestrator([cluster, *_local_adapters()])

    result = orchestrator.execute(_request(long_running=True))

    assert result.success is False
    assert result.error.kind is ErrorKind.NOT_AVAILABLE
    assert result.error.backend_id is BackendId.BATCH_CLUSTER
    assert result.error.details["remediation"] == "Set BACALHAU_API_HOST"
    assert cluster.submitted == []


def test_sandboxed_fast_request_runs_on_microsandbox() -> None:
    sandbox = _FakeSyncAdapter(BackendId.MICROSANDBOX)
    orchestrator = Orchestrator([sandbox, *_local_adapters()])

    result = orchestrator.execute(_request(requires_sandbox=True, expected_duration_ms=20))

    assert result.success is True
    assert result.output == {"result": 42}
    assert result.metadata.backend_id is BackendId.MICROSANDBOX
    assert result.metadata.exit_code == 0
    assert result.metadata.fallback_from is None


def test_plain_bash_request_runs_locally() -> None:
    adapters = _local_adapters()
    orchestrator = Orchestrator(adapters)

    result = orchestrator.execute(_request("bash"))

    assert result.success is True
    assert result.output == "local"
    assert result.metadata.backend_id is BackendId.LOCAL_SUBPROCESS
    assert len(adapters[1].calls) == 1


def test_unavailable_microsandbox_falls_back_to_local_backend() -> None:
    sandbox = _FakeSyncAdapter(BackendId.MICROSANDBOX, available=False)
    adapters = _local_adapters()
    orchestrator = Orchestrator([sandbox, *adapters])

    result = orchestrator.execute(_request("javascript", explicit_backend="e2b"))

    assert result.success is True
    assert result.metadata.backend_id is BackendId.LOCAL_VM
    assert result.metadata.selected_backend is BackendId.MICROSANDBOX
    assert result.metadata.fallback_from is BackendId.MICROSANDBOX
    assert sandbox.calls == []
    assert len(adapters[0].calls) == 1


def test_unavailable_fallback_target_reports_selected_backend() -> None:
    sandbox = _FakeSyncAdapter(BackendId.MICROSANDBOX, available=False)
    vm = _FakeSyncAdapter(BackendId.LOCAL_VM, available=False)
    orchestrator = Orchestrator([sandbox, vm])

    result = orchestrator.execute(_request("javascript", explicit_backend="microsandbox"))

    assert result.error.kind is ErrorKind.NOT_AVAILABLE
    assert result.error.backend_id is BackendId.MICROSANDBOX
    assert result.error.details["fallback"] == "local-vm"
    assert result.error.details["fallback_remediation"] == "enable local-vm"


def test_unwired_cluster_falls_back_to_local_backend() -> None:
    cluster = _FakeAsyncAdapter(wired=False)
    orchestrator = Orchestrator([cluster, *_local_adapters()])

    result = orchestrator.execute(_request("python", long_running=True))

    assert result.success is True
    assert result.metadata.backend_id is BackendId.LOCAL_SUBPROCESS
    assert result.metadata.fallback_from is BackendId.BATCH_CLUSTER
    assert cluster.submitted == []


def test_unwired_wasm_without_fallback_reports_not_implemented() -> None:
    wasm = _FakeSyncAdapter(BackendId.WASM_SANDBOX, wired=False)
    orchestrator = Orchestrator([wasm, *_local_adapters()], RouterSettings(fallback_on_unwired=False))

    result = orchestrator.execute(_request("python", explicit_backend="wasm"))

    assert result.error.kind is ErrorKind.NOT_IMPLEMENTED
    assert result.error.backend_id is BackendId.WASM_SANDBOX
    assert result.error.details["steps"]


def test_explicit_backend_without_language_support_is_rejected() -> None:
    adapters = _local_adapters()
    orchestrator = Orchestrator(adapters)

    result = orchestrator.execute(_request("python", explicit_backend="local-vm"))

    assert result.error.kind is ErrorKind.UNSUPPORTED_LANGUAGE
    assert result.error.backend_id is BackendId.LOCAL_VM
    assert adapters[0].calls == []


def test_unknown_language_is_rejected_before_dispatch() -> None:
    adapters = _local_adapters()
    orchestrator = Orchestrator(adapters)
    request = _request("Ruby")

    result = orchestrator.execute(request)

    assert request.known_language is None
    assert _request("Bash").known_language is Language.BASH
    assert result.error.kind is ErrorKind.UNSUPPORTED_LANGUAGE
    assert result.error.message == "Unknown language 'ruby'"
    assert result.error.details["supported_languages"] == ["javascript", "typescript", "python", "bash"]
    assert all(adapter.calls == [] for adapter in adapters)


def test_adapter_exception_becomes_execution_error() -> None:
    crashing = _FakeSyncAdapter(BackendId.LOCAL_SUBPROCESS, error=RuntimeError("adapter bug"))
    orchestrator = Orchestrator([crashing])

    result = orchestrator.execute(_request("python"))

    assert result.success is False
    assert result.error.kind is ErrorKind.EXECUTION_ERROR
    assert result.error.message == "adapter bug"
    assert result.error.backend_id is BackendId.LOCAL_SUBPROCESS


def test_raising_availability_check_counts_as_unavailable() -> None:
    sandbox = _FakeSyncAdapter(BackendId.MICROSANDBOX, available=ConnectionError("dns"))
    orchestrator = Orchestrator([sandbox, *_local_adapters()])

    result = orchestrator.execute(_request("python", requires_sandbox=True, expected_duration_ms=5))

    assert result.success is True
    assert result.metadata.backend_id is BackendId.LOCAL_SUBPROCESS


def test_budget_is_capped_by_backend_ceiling() -> None:
    adapters = _local_adapters()
    orchestrator = Orchestrator(adapters)

    orchestrator.execute(_request("python", timeout_ms=120_000))
    orchestrator.execute(_request("python", timeout_ms=1_500))

    assert [budget for _, budget in adapters[1].calls] == [30_000, 1_500]


def test_configured_backend_limit_changes_budget() -> None:
    adapters = _local_adapters()
    settings = RouterSettings(backend_limits_ms={BackendId.LOCAL_SUBPROCESS: 5_000})
    orchestrator = Orchestrator(adapters, settings)

    plan = orchestrator.plan(_request("python", timeout_ms=60_000))

    assert plan.budget_ms == 5_000
    assert plan.fell_back is False


def test_pre_cancelled_token_short_circuits() -> None:
    adapters = _local_adapters()
    orchestrator = Orchestrator(adapters)
    token = CancellationToken()
    token.cancel("caller went away")

    result = orchestrator.execute(_request("python"), token)

    assert result.error.kind is ErrorKind.CANCELLED
    assert result.error.message == "caller went away"
    assert adapters[1].calls == []


def test_async_backend_runs_through_job_lifecycle() -> None:
    clock = _FakeClock()
    cluster = _FakeAsyncAdapter(statuses=["running", "running", "completed"])
    orchestrator = Orchestrator(
        [cluster, *_local_adapters()],
        RouterSettings(poll_interval_ms=5_000),
        clock=clock,
        sleep=clock.sleep,
    )

    result = orchestrator.execute(_request("python", long_running=True, timeout_ms=60_000))

    assert result.success is True
    assert result.output == "42"
    assert result.metadata.job_id == "job-7"
    assert result.metadata.backend_id is BackendId.BATCH_CLUSTER
    assert len(cluster.submitted) == 1


def test_plan_reports_fallback_without_running() -> None:
    sandbox = _FakeSyncAdapter(BackendId.MICROSANDBOX, available=False)
    adapters = _local_adapters()
    orchestrator = Orchestrator([sandbox, *adapters])

    plan = orchestrator.plan(_request("bash", explicit_backend="e2b"))

    assert plan.selected is BackendId.MICROSANDBOX
    assert plan.target is BackendId.LOCAL_SUBPROCESS
    assert plan.fell_back is True
    assert adapters[1].calls == []


def test_describe_backends_covers_unregistered_backends() -> None:
    orchestrator = Orchestrator(_local_adapters())

    health = {item.backend_id: item for item in orchestrator.describe_backends()}

    assert set(health) == set(BackendId)
    assert health[BackendId.LOCAL_VM].available is True
    assert health[BackendId.LOCAL_VM].remediation is None
    assert health[BackendId.BATCH_CLUSTER].registered is False
    assert "Register an adapter" in health[BackendId.BATCH_CLUSTER].remediation


def test_duplicate_adapters_are_rejected() -> None:
    try:
        Orchestrator([_FakeSyncAdapter(BackendId.LOCAL_VM), _FakeSyncAdapter(BackendId.LOCAL_VM)])
    except ValueError as exc:
        assert "local-vm" in str(exc)
    else:
        raise AssertionError("duplicate adapters should be rejected")


def test_shutdown_closes_adapters() -> None:
    adapters = _local_adapters()
    orchestrator = Orchestrator(adapters)

    orchestrator.shutdown()

    assert [adapter.closed for adapter in adapters] == [1, 1]
