from __future__ import annotations

import json
import os
import subprocess
from typing import TYPE_CHECKING, Any

from loguru import logger

from ..errors import ExecutionTimeoutError
from .config import ClusterSettings
from .types import BackendId, JobStatus, JobStatusReport

if TYPE_CHECKING:
    from ..request import ExecutionRequest

CLI_TIMEOUT_SECONDS = 60
_INLINE_COMMANDS = {
    "python": ["python3", "-c"],
    "bash": ["bash", "-c"],
    "javascript": ["node", "-e"],
    "typescript": ["node", "-e"],
}
_NATIVE_STATES = {
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "stopped": JobStatus.FAILED,
    "cancelled": JobStatus.FAILED,
    "pending": JobStatus.RUNNING,
    "queued": JobStatus.RUNNING,
    "running": JobStatus.RUNNING,
    "undefined": JobStatus.RUNNING,
}


def map_native_state(state: str | None, message: str | None = None) -> JobStatusReport:
    """Map a Bacalhau job state onto the logical running/completed/failed states.

    Unknown states are reported as running.

    Example:
        ```python
        report = map_native_state("Completed")  # JobStatus.COMPLETED
        ```
    """
    native = str(state or "").strip()
    status = _NATIVE_STATES.get(native.lower(), JobStatus.RUNNING)
    error = (message or None) if status is JobStatus.FAILED else None
    return JobStatusReport(status, error=error, native_state=native or None)


def _job_state(described: dict[str, Any]) -> tuple[str | None, str | None]:
    """Pull state type and message out of `job describe` JSON.

    Example:
        ```python
        state, message = _job_state({"Job": {"State": {"StateType": "Running"}}})
        ```
    """
    job = described.get("Job", described)
    state = job.get("State", {}) if isinstance(job, dict) else {}
    if not isinstance(state, dict):
        return str(state), None
    return state.get("StateType"), state.get("Message")


class BatchClusterAdapter:
    """Submit long-running and GPU jobs to a Bacalhau cluster through its CLI.

    Example:
        ```python
        adapter = BatchClusterAdapter(ClusterSettings.from_env())
        job_id = adapter.submit(req)
        ```
    """

    backend_id = BackendId.BATCH_CLUSTER
    wired = True

    def __init__(self, settings: ClusterSettings | None = None) -> None:
        """Bind CLI location and cluster endpoint.

        Example:
            ```python
            adapter = BatchClusterAdapter(ClusterSettings(api_host="10.0.0.5"))
            ```
        """
        self._settings = settings or ClusterSettings.from_env()

    def check_available(self) -> bool:
        """Return whether the cluster is configured and the CLI is installed.

        Example:
            ```python
            ok = adapter.check_available()
            ```
        """
        return self._settings.configured and self._settings.cli_path() is not None

    def remediation(self) -> str:
        """Describe how to enable the batch cluster.

        Example:
            ```python
            hint = adapter.remediation()
            ```
        """
        missing = []
        if not self._settings.configured:
            missing.append("set BACALHAU_API_HOST (or BACALHAU_ENABLED=true for the default endpoint)")
        if self._settings.cli_path() is None:
            missing.append(f"install the '{self._settings.cli}' CLI or point BACALHAU_CLI at it")
        if not missing:
            return "Batch cluster is configured."
        return "To enable the batch cluster: " + "; ".join(missing) + "."

    def submit(self, request: ExecutionRequest, *, timeout_s: float | None = None) -> str:
        """Submit a docker job without waiting and return its id.

        Example:
            ```python
            job_id = adapter.submit(req)
            ```
        """
        submitted = self._run_cli(self._submit_args(request), timeout_s)
        if submitted.returncode != 0:
            raise RuntimeError(f"Failed to submit job: {submitted.stderr.strip()}")
        lines = [line.strip() for line in submitted.stdout.splitlines() if line.strip()]
        if not lines:
            raise RuntimeError("Job submission returned no job id")
        return lines[-1]

    def get_status(self, job_id: str, *, timeout_s: float | None = None) -> JobStatusReport:
        """Describe a job and map its state.

        Example:
            ```python
            report = adapter.get_status("j-123")
            ```
        """
        described = self._run_cli(["job", "describe", job_id, "--output", "json"], timeout_s)
        if described.returncode != 0:
            raise RuntimeError(f"Failed to describe job {job_id}: {described.stderr.strip()}")
        try:
            data = json.loads(described.stdout or "{}")
        except ValueError as exc:
            raise RuntimeError(f"Unreadable job description for {job_id}: {exc}") from exc
        if not isinstance(data, dict):
            return map_native_state(None)
        return map_native_state(*_job_state(data))

    def fetch_result(self, job_id: str, *, timeout_s: float | None = None) -> str:
        """Return the job's stdout.

        Example:
            ```python
            raw = adapter.fetch_result("j-123")
            ```
        """
        logs = self._run_cli(["job", "logs", job_id], timeout_s)
        if logs.returncode != 0:
            raise RuntimeError(f"Failed to fetch logs for job {job_id}: {logs.stderr.strip()}")
        return logs.stdout

    def cancel(self, job_id: str) -> None:
        """Stop a running job.

        Example:
            ```python
            adapter.cancel("j-123")
            ```
        """
        stopped = self._run_cli(["job", "stop", job_id])
        if stopped.returncode != 0:
            raise RuntimeError(f"Failed to stop job {job_id}: {stopped.stderr.strip()}")

    def _submit_args(self, request: ExecutionRequest) -> list[str]:
        """Build `docker run` arguments from the request and its resource hints.

        Example:
            ```python
            args = adapter._submit_args(req)
            ```
        """
        hints = request.resource_hints
        args = ["docker", "run", "--id-only", "--wait=false"]
        if hints.gpu or hints.gpu_count > 0:
            args.extend(["--gpu", str(max(1, hints.gpu_count))])
        if hints.memory:
            args.extend(["--memory", hints.memory])
        if hints.cpu:
            args.extend(["--cpu", hints.cpu])
        args.extend(["-e", f"INPUT={json.dumps(request.input_payload, default=str)}"])
        image = self._settings.images.get(request.language, self._settings.images["python"])
        inline = _INLINE_COMMANDS.get(request.language, _INLINE_COMMANDS["javascript"])
        args.extend([image, "--", *inline, request.source_code])
        return args

    def _run_cli(self, args: list[str], timeout_s: float | None = None) -> subprocess.CompletedProcess[str]:
        """Run a Bacalhau CLI command against the configured cluster.

        `timeout_s` caps the call below `CLI_TIMEOUT_SECONDS`; expiry raises
        `ExecutionTimeoutError`.

        Example:
            ```python
            completed = adapter._run_cli(["job", "list"], timeout_s=5)
            ```
        """
        cmd = [self._settings.cli, *args]
        timeout = CLI_TIMEOUT_SECONDS if timeout_s is None else max(0.0, min(CLI_TIMEOUT_SECONDS, timeout_s))
        logger.debug("Running {} (timeout {:.1f}s)", " ".join(cmd[:4]), timeout)
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                env=self._cli_env(),
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecutionTimeoutError(
                f"{' '.join(cmd[1:3])} did not return within {timeout:.1f}s",
                details={"command": cmd[1:3], "timeout_s": timeout},
            ) from exc

    def _cli_env(self) -> dict[str, str]:
        """Build environment variables for CLI targeting.

        Example:
            ```python
            env = adapter._cli_env()
            ```
        """
        env = dict(os.environ)
        if self._settings.api_host:
            env["BACALHAU_API_HOST"] = self._settings.api_host
        if self._settings.api_port:
            env["BACALHAU_API_PORT"] = self._settings.api_port
        return env
