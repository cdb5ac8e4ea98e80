from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .errors import ErrorKind
from .execution.types import BackendId


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Typed failure description carried by a failed result.

    Example:
        ```python
        err = ErrorInfo(ErrorKind.TIMEOUT, "timed out", BackendId.MICROSANDBOX)
        ```
    """

    kind: ErrorKind
    message: str
    backend_id: BackendId
    job_id: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ExecutionMetadata:
    """Execution facts common to every backend.

    Example:
        ```python
        meta = ExecutionMetadata(BackendId.LOCAL_SUBPROCESS, duration_ms=12, exit_code=0)
        ```
    """

    backend_id: BackendId
    duration_ms: int
    job_id: str | None = None
    exit_code: int | None = None
    selected_backend: BackendId | None = None
    fallback_from: BackendId | None = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Canonical result returned to callers regardless of backend.

    Example:
        ```python
        result = ExecutionResult.succeeded({"result": 42}, ExecutionMetadata(BackendId.LOCAL_VM, 5))
        ```
    """

    success: bool
    metadata: ExecutionMetadata
    output: Any = None
    error: ErrorInfo | None = None

    def __post_init__(self) -> None:
        """Enforce that `error` is present exactly when `success` is false.

        Example:
            ```python
            ExecutionResult(success=False, metadata=meta)  # raises ValueError
            ```
        """
        if self.success and self.error is not None:
            raise ValueError("A successful result cannot carry an error")
        if not self.success and self.error is None:
            raise ValueError("A failed result must carry an error")
        if not self.success and self.output is not None:
            raise ValueError("A failed result cannot carry output")

    @classmethod
    def succeeded(cls, output: Any, metadata: ExecutionMetadata) -> "ExecutionResult":
        """Build a successful result.

        Example:
            ```python
            result = ExecutionResult.succeeded("42", meta)
            ```
        """
        return cls(success=True, metadata=metadata, output=output)

    @classmethod
    def failed(cls, error: ErrorInfo, metadata: ExecutionMetadata) -> "ExecutionResult":
        """Build a failed result.

        Example:
            ```python
            result = ExecutionResult.failed(err, meta)
            ```
        """
        return cls(success=False, metadata=metadata, error=error)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation with enum values flattened.

        Example:
            ```python
            payload = result.to_dict()
            ```
        """
        payload: dict[str, Any] = {
            "success": self.success,
            "metadata": _flatten_enums(asdict(self.metadata)),
        }
        if self.success:
            payload["output"] = self.output
        elif self.error is not None:
            payload["error"] = _flatten_enums(asdict(self.error))
        return payload


def _flatten_enums(value: Any) -> Any:
    """Replace enum members with their values recursively.

    Example:
        ```python
        _flatten_enums({"kind": ErrorKind.TIMEOUT})  # {"kind": "TIMEOUT"}
        ```
    """
    if isinstance(value, dict):
        return {key: _flatten_enums(item) for key, item in value.items() if item is not None}
    if isinstance(value, list):
        return [_flatten_enums(item) for item in value]
    if isinstance(value, (ErrorKind, BackendId)):
        return value.value
    return value
