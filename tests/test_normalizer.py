from safe_code_router import BackendId, ErrorKind
from safe_code_router.errors import BackendNotAvailableError, BackendNotImplementedError
from safe_code_router.execution.types import RawOutcome
from safe_code_router.normalizer import normalize_exception, normalize_outcome, parse_output


def test_parse_output_json_and_text() -> None:
    assert parse_output('{"result": 42}') == {"result": 42}
    assert parse_output("  [1, 2]\n") == [1, 2]
    assert parse_output('"done"') == "done"
    assert parse_output("{not json\n") == "{not json"


def test_parse_output_keeps_bare_scalars_as_text() -> None:
    assert parse_output("42\n") == "42"
    assert parse_output("true") == "true"
    assert parse_output("null") == "null"
    assert parse_output("hello world  ") == "hello world"


def test_parse_output_empty_echoes_input() -> None:
    assert parse_output("", {"x": 1}) == {"x": 1}
    assert parse_output("   \n", None) is None


def test_successful_outcome_keeps_exit_code_and_fallback_source() -> None:
    result = normalize_outcome(
        RawOutcome('{"result": 42}', "", 0, False),
        backend_id=BackendId.LOCAL_VM,
        duration_ms=12,
        selected_backend=BackendId.MICROSANDBOX,
    )
    assert result.success is True
    assert result.output == {"result": 42}
    assert result.metadata.exit_code == 0
    assert result.metadata.fallback_from is BackendId.MICROSANDBOX


def test_non_zero_exit_is_execution_error_with_streams() -> None:
    result = normalize_outcome(
        RawOutcome("partial", "Traceback: boom\n", 1, False),
        backend_id=BackendId.LOCAL_SUBPROCESS,
        duration_ms=3,
    )
    assert result.success is False
    assert result.output is None
    assert result.error.kind is ErrorKind.EXECUTION_ERROR
    assert result.error.message == "Traceback: boom"
    assert result.error.details == {"exit_code": 1, "stderr": "Traceback: boom\n", "stdout": "partial"}


def test_timed_out_outcome_is_timeout() -> None:
    result = normalize_outcome(
        RawOutcome("", "", 124, True, "Execution timed out after 50ms"),
        backend_id=BackendId.MICROSANDBOX,
        duration_ms=50,
    )
    assert result.error.kind is ErrorKind.TIMEOUT
    assert "50ms" in result.error.message


def test_dispatch_errors_keep_their_kind_and_details() -> None:
    unavailable = normalize_exception(
        BackendNotAvailableError("cluster down", remediation="Set BACALHAU_API_HOST"),
        backend_id=BackendId.BATCH_CLUSTER,
        duration_ms=1,
    )
    assert unavailable.error.kind is ErrorKind.NOT_AVAILABLE
    assert unavailable.error.details == {"remediation": "Set BACALHAU_API_HOST"}

    placeholder = normalize_exception(
        BackendNotImplementedError("wasm", details={"steps": ["a"]}),
        backend_id=BackendId.WASM_SANDBOX,
        duration_ms=1,
    )
    assert placeholder.error.kind is ErrorKind.NOT_IMPLEMENTED


def test_unmapped_exception_is_execution_error() -> None:
    result = normalize_exception(KeyError("missing"), backend_id=BackendId.LOCAL_VM, duration_ms=0)
    assert result.error.kind is ErrorKind.EXECUTION_ERROR
    assert result.error.details["exception"] == "KeyError"
    assert "missing" in result.error.details["message"]


def test_builtin_timeout_maps_to_timeout() -> None:
    result = normalize_exception(TimeoutError("slow"), backend_id=BackendId.LOCAL_VM, duration_ms=10)
    assert result.error.kind is ErrorKind.TIMEOUT


def test_to_dict_flattens_enums_and_keeps_output_nulls() -> None:
    result = normalize_outcome(
        RawOutcome('{"a": null}', "", 0, False),
        backend_id=BackendId.MICROSANDBOX,
        duration_ms=7,
    )
    payload = result.to_dict()
    assert payload["success"] is True
    assert payload["output"] == {"a": None}
    assert payload["metadata"] == {"backend_id": "microsandbox", "duration_ms": 7, "exit_code": 0}


def test_to_dict_of_failure_carries_error_without_output() -> None:
    result = normalize_outcome(
        RawOutcome("", "Traceback: boom", 1, False),
        backend_id=BackendId.LOCAL_SUBPROCESS,
        duration_ms=3,
    )
    payload = result.to_dict()
    assert payload["success"] is False
    assert "output" not in payload
    assert payload["error"]["kind"] == "EXECUTION_ERROR"
    assert payload["error"]["backend_id"] == "local-subprocess"
