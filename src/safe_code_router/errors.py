from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Canonical failure categories surfaced to callers.

    Example:
        ```python
        kind = ErrorKind.TIMEOUT
        ```
    """

    NOT_AVAILABLE = "NOT_AVAILABLE"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    JOB_FAILED = "JOB_FAILED"
    TIMEOUT = "TIMEOUT"
    UNSUPPORTED_LANGUAGE = "UNSUPPORTED_LANGUAGE"
    CANCELLED = "CANCELLED"


class ConfigurationError(ValueError):
    """Invalid router or backend configuration."""


class JobStateError(RuntimeError):
    """Illegal job lifecycle transition."""


class DispatchError(Exception):
    """Base exception for failures that map onto an `ErrorKind`."""

    kind: ErrorKind = ErrorKind.EXECUTION_ERROR

    def __init__(
        self,
        message: str,
        *,
        job_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Store message, optional job id and structured details.

        Example:
            ```python
            raise DispatchError("boom", details={"exit_code": 1})
            ```
        """
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.details = details


class BackendNotAvailableError(DispatchError):
    """Backend environment is not configured; operator action required."""

    kind = ErrorKind.NOT_AVAILABLE

    def __init__(self, message: str, *, remediation: str, **kwargs: Any) -> None:
        """Attach remediation text that tells operators how to enable the backend.

        Example:
            ```python
            raise BackendNotAvailableError("E2B missing", remediation="Set E2B_API_KEY")
            ```
        """
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("remediation", remediation)
        super().__init__(message, details=details, **kwargs)
        self.remediation = remediation


class BackendNotImplementedError(DispatchError):
    kind = ErrorKind.NOT_IMPLEMENTED


class ExecutionFailedError(DispatchError):
    kind = ErrorKind.EXECUTION_ERROR


class JobFailedError(DispatchError):
    kind = ErrorKind.JOB_FAILED


class ExecutionTimeoutError(DispatchError):
    kind = ErrorKind.TIMEOUT


class UnsupportedLanguageError(DispatchError):
    kind = ErrorKind.UNSUPPORTED_LANGUAGE


class ExecutionCancelledError(DispatchError):
    kind = ErrorKind.CANCELLED
