from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .types import BackendId, JobStatus, JobStatusReport, RawOutcome

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..request import ExecutionRequest


@runtime_checkable
class BackendAdapter(Protocol):
    """Contract shared by every backend adapter.

    `wired` is False for placeholder adapters that exist in the contract but
    cannot execute yet.
    """

    backend_id: BackendId
    wired: bool

    def check_available(self) -> bool:
        """Return whether the backend environment is configured and reachable.

        Example:
            ```python
            ok = adapter.check_available()
            ```
        """
        ...

    def remediation(self) -> str:
        """Return operator instructions for enabling this backend.

        Example:
            ```python
            hint = adapter.remediation()
            ```
        """
        ...


@runtime_checkable
class SyncBackendAdapter(BackendAdapter, Protocol):
    def run_sync(
        self,
        request: ExecutionRequest,
        budget_ms: int,
        token: CancellationToken,
    ) -> RawOutcome:
        """Run one request to completion within `budget_ms`.

        Example:
            ```python
            outcome = adapter.run_sync(req, 5000, CancellationToken())
            ```
        """
        ...


@runtime_checkable
class AsyncBackendAdapter(BackendAdapter, Protocol):
    """Submit-then-poll contract for job-style backends.

    `timeout_s` bounds each blocking call to what is left of the run budget;
    a call that exceeds it raises `ExecutionTimeoutError`.
    """

    def submit(self, request: ExecutionRequest, *, timeout_s: float | None = None) -> str:
        """Submit a job and return the backend-assigned job id.

        Example:
            ```python
            job_id = adapter.submit(req)
            ```
        """
        ...

    def get_status(self, job_id: str, *, timeout_s: float | None = None) -> JobStatusReport | JobStatus | str:
        """Return the current logical status of a job.

        Example:
            ```python
            report = adapter.get_status("j-123")
            ```
        """
        ...

    def fetch_result(self, job_id: str, *, timeout_s: float | None = None) -> RawOutcome | str:
        """Return raw output of a completed job.

        Example:
            ```python
            raw = adapter.fetch_result("j-123")
            ```
        """
        ...
