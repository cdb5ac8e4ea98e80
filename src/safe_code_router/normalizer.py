from __future__ import annotations

import json
from typing import Any

from .errors import DispatchError, ErrorKind
from .execution.types import BackendId, RawOutcome
from .result import ErrorInfo, ExecutionMetadata, ExecutionResult


def parse_output(stdout: str, input_payload: Any = None) -> Any:
    """Parse structured JSON stdout, else return the trimmed text.

    Objects, arrays and JSON strings are decoded. Bare numbers, booleans and
    null stay as text, so `"42\\n"` becomes `"42"`. Empty output echoes the
    request input.

    Example:
        ```python
        parse_output('{"result": 42}')  # {"result": 42}
        parse_output("42\\n")             # "42"
        ```
    """
    text = stdout.strip()
    if not text:
        return input_payload
    try:
        decoded = json.loads(text)
    except ValueError:
        return text
    if isinstance(decoded, (dict, list, str)):
        return decoded
    return text


def _metadata(
    backend_id: BackendId,
    duration_ms: int,
    *,
    job_id: str | None = None,
    exit_code: int | None = None,
    selected_backend: BackendId | None = None,
) -> ExecutionMetadata:
    """Build result metadata, recording the selected backend when it differs.

    Example:
        ```python
        meta = _metadata(BackendId.LOCAL_VM, 12, selected_backend=BackendId.MICROSANDBOX)
        ```
    """
    fallback_from = selected_backend if selected_backend not in (None, backend_id) else None
    return ExecutionMetadata(
        backend_id=backend_id,
        duration_ms=max(0, int(duration_ms)),
        job_id=job_id,
        exit_code=exit_code,
        selected_backend=selected_backend,
        fallback_from=fallback_from,
    )


def normalize_outcome(
    outcome: RawOutcome,
    *,
    backend_id: BackendId,
    duration_ms: int,
    input_payload: Any = None,
    job_id: str | None = None,
    selected_backend: BackendId | None = None,
) -> ExecutionResult:
    """Convert a raw process outcome into the canonical result.

    Example:
        ```python
        result = normalize_outcome(outcome, backend_id=BackendId.MICROSANDBOX, duration_ms=31)
        ```
    """
    meta = _metadata(
        backend_id,
        duration_ms,
        job_id=job_id,
        exit_code=outcome.returncode,
        selected_backend=selected_backend,
    )
    if outcome.timed_out:
        return ExecutionResult.failed(
            ErrorInfo(
                kind=ErrorKind.TIMEOUT,
                message=outcome.error or f"Execution timed out after {duration_ms}ms",
                backend_id=backend_id,
                job_id=job_id,
            ),
            meta,
        )
    if outcome.returncode != 0 or outcome.error:
        message = outcome.error or outcome.stderr.strip() or f"Process exited with code {outcome.returncode}"
        return ExecutionResult.failed(
            ErrorInfo(
                kind=ErrorKind.EXECUTION_ERROR,
                message=message,
                backend_id=backend_id,
                job_id=job_id,
                details={
                    "exit_code": outcome.returncode,
                    "stderr": outcome.stderr,
                    "stdout": outcome.stdout,
                },
            ),
            meta,
        )
    return ExecutionResult.succeeded(parse_output(outcome.stdout, input_payload), meta)


def normalize_exception(
    exc: BaseException,
    *,
    backend_id: BackendId,
    duration_ms: int,
    job_id: str | None = None,
    selected_backend: BackendId | None = None,
) -> ExecutionResult:
    """Map an adapter or dispatch exception onto a typed failure.

    Example:
        ```python
        result = normalize_exception(TimeoutError("slow"), backend_id=BackendId.LOCAL_VM, duration_ms=5000)
        ```
    """
    if isinstance(exc, DispatchError):
        kind = exc.kind
        message = exc.message
        details = exc.details
        job_id = exc.job_id or job_id
    elif isinstance(exc, TimeoutError):
        kind = ErrorKind.TIMEOUT
        message = str(exc) or "Execution timed out"
        details = None
    else:
        kind = ErrorKind.EXECUTION_ERROR
        message = str(exc) or type(exc).__name__
        details = {"exception": type(exc).__name__, "message": str(exc)}
    return ExecutionResult.failed(
        ErrorInfo(
            kind=kind,
            message=message,
            backend_id=backend_id,
            job_id=job_id,
            details=details,
        ),
        _metadata(backend_id, duration_ms, job_id=job_id, selected_backend=selected_backend),
    )
