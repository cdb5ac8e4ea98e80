from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from .errors import (
    DispatchError,
    ExecutionCancelledError,
    ExecutionFailedError,
    ExecutionTimeoutError,
    JobFailedError,
    JobStateError,
)
from .execution.types import BackendId, JobStatus, JobStatusReport, RawOutcome
from .normalizer import normalize_exception, normalize_outcome
from .result import ErrorInfo, ExecutionMetadata, ExecutionResult
from .settings import DEFAULT_POLL_INTERVAL_MS

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .execution.engine import AsyncBackendAdapter
    from .request import ExecutionRequest

Clock = Callable[[], float]
Sleeper = Callable[[float, "CancellationToken"], bool]


class JobState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED})

_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.SUBMITTED: frozenset({JobState.POLLING, JobState.TIMED_OUT, JobState.CANCELLED}),
    JobState.POLLING: frozenset(
        {JobState.POLLING, JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED}
    ),
}


@dataclass(slots=True)
class Job:
    """Local tracking record for one remote job.

    Example:
        ```python
        job = Job(id="j-1", backend_id=BackendId.BATCH_CLUSTER, submitted_at=time.monotonic())
        ```
    """

    id: str
    backend_id: BackendId
    submitted_at: float
    state: JobState = JobState.SUBMITTED
    last_polled_at: float | None = None

    @property
    def terminal(self) -> bool:
        """Return whether the job reached a final state.

        Example:
            ```python
            done = job.terminal
            ```
        """
        return self.state in TERMINAL_STATES

    def transition(self, new_state: JobState) -> None:
        """Move to `new_state`, rejecting edges outside the lifecycle graph.

        Example:
            ```python
            job.transition(JobState.POLLING)
            ```
        """
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise JobStateError(
                f"Job {self.id} cannot move from {self.state.value} to {new_state.value}"
            )
        if new_state is not self.state:
            logger.debug("Job {} {} -> {}", self.id, self.state.value, new_state.value)
        self.state = new_state


def coerce_status(raw: JobStatusReport | JobStatus | str | None) -> JobStatusReport:
    """Map whatever an adapter reported onto running/completed/failed.

    Unrecognized values count as running so a healthy job is never abandoned
    on an ambiguous status.

    Example:
        ```python
        coerce_status("Queued").status  # JobStatus.RUNNING
        ```
    """
    if isinstance(raw, JobStatusReport):
        return raw
    if isinstance(raw, JobStatus):
        return JobStatusReport(raw)
    text = str(raw or "").strip().lower()
    try:
        return JobStatusReport(JobStatus(text), native_state=text)
    except ValueError:
        logger.debug("Unrecognized job status {!r}; treating as running", raw)
        return JobStatusReport(JobStatus.RUNNING, native_state=text or None)


def _as_outcome(raw: RawOutcome | str | None) -> RawOutcome:
    """Wrap plain-text job output as a successful raw outcome.

    Example:
        ```python
        outcome = _as_outcome("42\\n")
        ```
    """
    if isinstance(raw, RawOutcome):
        return raw
    return RawOutcome(stdout="" if raw is None else str(raw), stderr="", returncode=0, timed_out=False)


def _token_wait(seconds: float, token: CancellationToken) -> bool:
    """Default sleeper: block on the token so cancellation wakes the loop.

    Example:
        ```python
        interrupted = _token_wait(5.0, token)
        ```
    """
    return token.wait(seconds)


class JobLifecycleManager:
    """Drive one asynchronous adapter through submit, poll and fetch.

    Example:
        ```python
        manager = JobLifecycleManager(cluster_adapter, poll_interval_ms=5000)
        job = manager.submit(req)
        result = manager.run(job, budget_ms=300_000, token=CancellationToken())
        ```
    """

    def __init__(
        self,
        adapter: AsyncBackendAdapter,
        *,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        clock: Clock = time.monotonic,
        sleep: Sleeper | None = None,
        cancel_remote_on_timeout: bool = False,
    ) -> None:
        """Bind the adapter and polling policy.

        Example:
            ```python
            manager = JobLifecycleManager(adapter, poll_interval_ms=100, clock=fake_clock)
            ```
        """
        if poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        self._adapter = adapter
        self._poll_interval_ms = poll_interval_ms
        self._clock = clock
        self._sleep = sleep or _token_wait
        self._cancel_remote_on_timeout = cancel_remote_on_timeout

    @property
    def backend_id(self) -> BackendId:
        """Return the backend this manager drives.

        Example:
            ```python
            manager.backend_id  # BackendId.BATCH_CLUSTER
            ```
        """
        return self._adapter.backend_id

    def submit(self, request: ExecutionRequest, budget_ms: int | None = None) -> Job:
        """Submit a request; failures raise before any job exists.

        The submit call itself is bounded by `budget_ms` and counts against it:
        the job clock starts before the adapter is called.

        Example:
            ```python
            job = manager.submit(req, 30_000)
            ```
        """
        started = self._clock()
        timeout_s = budget_ms / 1000.0 if budget_ms is not None else None
        try:
            job_id = self._adapter.submit(request, timeout_s=timeout_s)
        except DispatchError:
            raise
        except Exception as exc:
            raise ExecutionFailedError(
                f"Job submission to {self.backend_id.value} failed: {exc}",
                details={"exception": type(exc).__name__, "message": str(exc)},
            ) from exc
        if not job_id or not str(job_id).strip():
            raise ExecutionFailedError(f"{self.backend_id.value} returned an empty job id")
        job = Job(id=str(job_id).strip(), backend_id=self.backend_id, submitted_at=started)
        logger.info("Submitted job {} to {}", job.id, job.backend_id.value)
        return job

    def run(
        self,
        job: Job,
        budget_ms: int,
        token: CancellationToken,
        *,
        input_payload: Any = None,
        selected_backend: BackendId | None = None,
    ) -> ExecutionResult:
        """Poll `job` until it is terminal, the budget runs out, or the caller aborts.

        Example:
            ```python
            result = manager.run(job, 30_000, token)
            ```
        """
        if job.terminal:
            raise JobStateError(f"Job {job.id} is already {job.state.value}")
        while True:
            if token.cancelled:
                return self._cancel(job, token, selected_backend)
            remaining = budget_ms - self._elapsed_ms(job)
            if remaining <= 0:
                return self._time_out(job, budget_ms, selected_backend)

            job.transition(JobState.POLLING)
            job.last_polled_at = self._clock()
            try:
                report = coerce_status(self._adapter.get_status(job.id, timeout_s=remaining / 1000.0))
                if report.status is JobStatus.COMPLETED:
                    remaining = budget_ms - self._elapsed_ms(job)
                    if remaining <= 0:
                        return self._time_out(job, budget_ms, selected_backend)
                    outcome = _as_outcome(self._adapter.fetch_result(job.id, timeout_s=remaining / 1000.0))
                    job.transition(JobState.COMPLETED)
                    logger.info("Job {} completed in {}ms", job.id, self._elapsed_ms(job))
                    return normalize_outcome(
                        outcome,
                        backend_id=job.backend_id,
                        duration_ms=self._elapsed_ms(job),
                        input_payload=input_payload,
                        job_id=job.id,
                        selected_backend=selected_backend,
                    )
            except ExecutionTimeoutError as exc:
                logger.warning("Job {} call to {} timed out: {}", job.id, job.backend_id.value, exc)
                return self._time_out(job, budget_ms, selected_backend)
            except Exception as exc:
                job.transition(JobState.FAILED)
                logger.warning("Polling job {} raised: {}", job.id, exc)
                return normalize_exception(
                    exc,
                    backend_id=job.backend_id,
                    duration_ms=self._elapsed_ms(job),
                    job_id=job.id,
                    selected_backend=selected_backend,
                )
            if report.status is JobStatus.FAILED:
                job.transition(JobState.FAILED)
                return self._job_failed(job, report, selected_backend)

            remaining = budget_ms - self._elapsed_ms(job)
            if remaining <= 0:
                continue
            if self._sleep(min(self._poll_interval_ms, remaining) / 1000.0, token):
                return self._cancel(job, token, selected_backend)

    def _elapsed_ms(self, job: Job) -> int:
        """Return milliseconds since the job was submitted.

        Example:
            ```python
            elapsed = manager._elapsed_ms(job)
            ```
        """
        return int((self._clock() - job.submitted_at) * 1000)

    def _failure(self, job: Job, error: DispatchError, selected_backend: BackendId | None) -> ExecutionResult:
        """Build a failed result carrying the job id.

        Example:
            ```python
            result = manager._failure(job, ExecutionTimeoutError("too slow"), None)
            ```
        """
        fallback_from = selected_backend if selected_backend not in (None, job.backend_id) else None
        return ExecutionResult.failed(
            ErrorInfo(
                kind=error.kind,
                message=error.message,
                backend_id=job.backend_id,
                job_id=job.id,
                details=error.details,
            ),
            ExecutionMetadata(
                backend_id=job.backend_id,
                duration_ms=max(0, self._elapsed_ms(job)),
                job_id=job.id,
                selected_backend=selected_backend,
                fallback_from=fallback_from,
            ),
        )

    def _job_failed(
        self,
        job: Job,
        report: JobStatusReport,
        selected_backend: BackendId | None,
    ) -> ExecutionResult:
        """Build the JOB_FAILED result from a failed status report.

        Example:
            ```python
            result = manager._job_failed(job, JobStatusReport(JobStatus.FAILED, error="OOM"), None)
            ```
        """
        message = report.error or f"Job {job.id} failed on {job.backend_id.value}"
        logger.warning("Job {} failed: {}", job.id, message)
        details = {"native_state": report.native_state} if report.native_state else None
        return self._failure(job, JobFailedError(message, job_id=job.id, details=details), selected_backend)

    def _time_out(self, job: Job, budget_ms: int, selected_backend: BackendId | None) -> ExecutionResult:
        """Mark the job timed out and optionally cancel it remotely.

        Example:
            ```python
            result = manager._time_out(job, 30_000, None)
            ```
        """
        job.transition(JobState.TIMED_OUT)
        remote_cancelled = False
        if self._cancel_remote_on_timeout:
            remote_cancelled = self._cancel_remote(job)
        else:
            logger.warning(
                "Job {} on {} exceeded {}ms; remote job left running",
                job.id,
                job.backend_id.value,
                budget_ms,
            )
        error = ExecutionTimeoutError(
            f"Job {job.id} did not finish within {budget_ms}ms",
            job_id=job.id,
            details={"budget_ms": budget_ms, "remote_cancelled": remote_cancelled},
        )
        return self._failure(job, error, selected_backend)

    def _cancel(self, job: Job, token: CancellationToken, selected_backend: BackendId | None) -> ExecutionResult:
        """Mark the job cancelled after a caller abort and try to stop it remotely.

        Example:
            ```python
            result = manager._cancel(job, token, None)
            ```
        """
        job.transition(JobState.CANCELLED)
        remote_cancelled = self._cancel_remote(job)
        error = ExecutionCancelledError(
            token.reason or "Execution cancelled",
            job_id=job.id,
            details={"remote_cancelled": remote_cancelled},
        )
        return self._failure(job, error, selected_backend)

    def _cancel_remote(self, job: Job) -> bool:
        """Best-effort remote cancel; errors are logged, never raised.

        Example:
            ```python
            stopped = manager._cancel_remote(job)
            ```
        """
        cancel = getattr(self._adapter, "cancel", None)
        if cancel is None:
            logger.warning("{} cannot cancel job {}; remote job left running", job.backend_id.value, job.id)
            return False
        try:
            cancel(job.id)
        except Exception as exc:
            logger.warning("Cancelling job {} on {} failed: {}", job.id, job.backend_id.value, exc)
            return False
        logger.info("Cancelled remote job {}", job.id)
        return True
