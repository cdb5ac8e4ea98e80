from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BackendId(str, Enum):
    """Closed set of execution backends known to the router.

    Example:
        ```python
        backend = BackendId("batch-cluster")
        ```
    """

    MICROSANDBOX = "microsandbox"
    LOCAL_VM = "local-vm"
    LOCAL_SUBPROCESS = "local-subprocess"
    WASM_SANDBOX = "wasm-sandbox"
    BATCH_CLUSTER = "batch-cluster"


class IsolationLevel(str, Enum):
    NONE = "none"
    PROCESS = "process"
    VM = "vm"
    CLUSTER = "cluster"


class LatencyClass(str, Enum):
    SUB_50MS = "sub-50ms"
    SECONDS = "seconds"
    MINUTES = "minutes"


class JobStatus(str, Enum):
    """Logical remote job states every async adapter must map onto.

    Example:
        ```python
        status = JobStatus.RUNNING
        ```
    """

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    """Static description of what a backend can do.

    Example:
        ```python
        desc = BackendDescriptor(
            BackendId.LOCAL_VM,
            frozenset({"javascript"}),
            IsolationLevel.PROCESS,
            LatencyClass.SUB_50MS,
            False,
            30_000,
        )
        ```
    """

    id: BackendId
    supports_languages: frozenset[str]
    isolation_level: IsolationLevel
    startup_latency_class: LatencyClass
    supports_gpu: bool
    max_single_run_ms: int

    def supports(self, language: str) -> bool:
        """Return whether this backend can run the given language.

        Example:
            ```python
            ok = desc.supports("python")
            ```
        """
        return language in self.supports_languages


@dataclass(slots=True)
class RawOutcome:
    """Backend-native process outcome before normalization.

    Example:
        ```python
        out = RawOutcome(stdout='{"result": 42}', stderr="", returncode=0, timed_out=False)
        ```
    """

    stdout: str
    stderr: str
    returncode: int
    timed_out: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class JobStatusReport:
    """One status observation returned by an async adapter.

    Example:
        ```python
        report = JobStatusReport(JobStatus.FAILED, error="exit code 1")
        ```
    """

    status: JobStatus
    error: str | None = None
    native_state: str | None = None
