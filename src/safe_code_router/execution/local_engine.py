from __future__ import annotations

import json
import os
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from loguru import logger

from ..errors import BackendNotAvailableError, ExecutionCancelledError, UnsupportedLanguageError
from .config import LocalRuntimeSettings, memory_limit_mb
from .types import BackendId, RawOutcome

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..request import ExecutionRequest

_POLL_SECONDS = 0.05
TIMEOUT_EXIT_CODE = 124


def _worker_path() -> Path:
    """Return the absolute path to the Python worker harness.

    Example:
        ```python
        path = _worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def _vm_harness_path() -> Path:
    """Return the absolute path to the Node VM harness.

    Example:
        ```python
        path = _vm_harness_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "vm_harness.js"


def _executable_available(executable: str) -> bool:
    """Return whether an interpreter path or command name resolves.

    Example:
        ```python
        ok = _executable_available("node")
        ```
    """
    if os.sep in executable:
        return Path(executable).exists()
    return shutil.which(executable) is not None


def _stop(proc: subprocess.Popen[str]) -> tuple[str, str]:
    """Kill a running process and collect whatever it wrote.

    Example:
        ```python
        stdout, stderr = _stop(proc)
        ```
    """
    proc.kill()
    stdout, stderr = proc.communicate()
    return stdout or "", stderr or ""


def run_process(
    cmd: list[str],
    *,
    budget_ms: int,
    token: CancellationToken,
    stdin_text: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> RawOutcome:
    """Run a command, killing it when the budget expires or the token is cancelled.

    Example:
        ```python
        outcome = run_process(["bash", "main.sh"], budget_ms=5000, token=CancellationToken())
        ```
    """
    deadline = time.monotonic() + budget_ms / 1000.0
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=dict(env) if env is not None else None,
        cwd=cwd,
    )
    pending_input = stdin_text
    try:
        while True:
            try:
                stdout, stderr = proc.communicate(input=pending_input, timeout=_POLL_SECONDS)
                return RawOutcome(stdout or "", stderr or "", proc.returncode, False)
            except subprocess.TimeoutExpired:
                pending_input = None
            if token.cancelled:
                _stop(proc)
                raise ExecutionCancelledError(token.reason or "Execution cancelled")
            if time.monotonic() >= deadline:
                stdout, stderr = _stop(proc)
                return RawOutcome(
                    stdout,
                    stderr,
                    TIMEOUT_EXIT_CODE,
                    True,
                    f"Execution timed out after {budget_ms}ms",
                )
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


class LocalSubprocessAdapter:
    """Run python and bash in a child process on this host.

    Example:
        ```python
        adapter = LocalSubprocessAdapter(LocalRuntimeSettings.from_env())
        ```
    """

    backend_id = BackendId.LOCAL_SUBPROCESS
    wired = True

    def __init__(self, settings: LocalRuntimeSettings | None = None) -> None:
        """Bind interpreter locations.

        Example:
            ```python
            adapter = LocalSubprocessAdapter()
            ```
        """
        self._settings = settings or LocalRuntimeSettings.from_env()

    def check_available(self) -> bool:
        """Return whether the Python interpreter can be launched.

        Example:
            ```python
            ok = adapter.check_available()
            ```
        """
        return _executable_available(self._settings.python)

    def remediation(self) -> str:
        """Describe how to make the local interpreters available.

        Example:
            ```python
            hint = adapter.remediation()
            ```
        """
        return (
            f"Install Python and bash or point SAFE_CODE_ROUTER_PYTHON / SAFE_CODE_ROUTER_BASH "
            f"at them (python={self._settings.python}, bash={self._settings.bash})."
        )

    def run_sync(self, request: ExecutionRequest, budget_ms: int, token: CancellationToken) -> RawOutcome:
        """Run one python or bash request.

        Example:
            ```python
            outcome = adapter.run_sync(req, 5000, CancellationToken())
            ```
        """
        if request.language == "python":
            return self._run_python(request, budget_ms, token)
        if request.language == "bash":
            return self._run_bash(request, budget_ms, token)
        raise UnsupportedLanguageError(f"{self.backend_id.value} cannot run '{request.language}'")

    def _run_python(self, request: ExecutionRequest, budget_ms: int, token: CancellationToken) -> RawOutcome:
        """Execute python source through the worker harness.

        Example:
            ```python
            outcome = adapter._run_python(req, 5000, token)
            ```
        """
        if not _executable_available(self._settings.python):
            raise BackendNotAvailableError(
                f"Python interpreter not found: {self._settings.python}",
                remediation=self.remediation(),
            )
        payload: dict[str, Any] = {
            "code": request.source_code,
            "input": request.input_payload,
            "memory_limit_mb": memory_limit_mb(request.resource_hints.memory),
        }
        logger.debug("Running python via {}", self._settings.python)
        return run_process(
            [self._settings.python, str(_worker_path())],
            budget_ms=budget_ms,
            token=token,
            stdin_text=json.dumps(payload, default=str),
        )

    def _run_bash(self, request: ExecutionRequest, budget_ms: int, token: CancellationToken) -> RawOutcome:
        """Execute a bash script with the input in the `INPUT` variable.

        Example:
            ```python
            outcome = adapter._run_bash(req, 5000, token)
            ```
        """
        if not _executable_available(self._settings.bash):
            raise BackendNotAvailableError(
                f"bash not found: {self._settings.bash}",
                remediation=self.remediation(),
            )
        env = dict(os.environ)
        env["INPUT"] = json.dumps(request.input_payload, default=str)
        with tempfile.TemporaryDirectory(prefix="safe-code-router-bash-") as tmp:
            script = Path(tmp) / "main.sh"
            script.write_text(request.source_code, encoding="utf-8")
            return run_process(
                [self._settings.bash, str(script)],
                budget_ms=budget_ms,
                token=token,
                env=env,
                cwd=tmp,
            )


class LocalVMAdapter:
    """Evaluate javascript/typescript in a fresh Node `vm` context.

    TypeScript source is evaluated as-is, so only the JavaScript subset runs.

    Example:
        ```python
        adapter = LocalVMAdapter(LocalRuntimeSettings(node="/usr/local/bin/node"))
        ```
    """

    backend_id = BackendId.LOCAL_VM
    wired = True

    def __init__(self, settings: LocalRuntimeSettings | None = None) -> None:
        """Bind the Node executable location.

        Example:
            ```python
            adapter = LocalVMAdapter()
            ```
        """
        self._settings = settings or LocalRuntimeSettings.from_env()

    def check_available(self) -> bool:
        """Return whether Node can be launched.

        Example:
            ```python
            ok = adapter.check_available()
            ```
        """
        return _executable_available(self._settings.node)

    def remediation(self) -> str:
        """Describe how to make Node available.

        Example:
            ```python
            hint = adapter.remediation()
            ```
        """
        return f"Install Node.js or set SAFE_CODE_ROUTER_NODE (currently '{self._settings.node}')."

    def run_sync(self, request: ExecutionRequest, budget_ms: int, token: CancellationToken) -> RawOutcome:
        """Run one javascript/typescript request in the VM harness.

        Example:
            ```python
            outcome = adapter.run_sync(req, 5000, CancellationToken())
            ```
        """
        if request.language not in {"javascript", "typescript"}:
            raise UnsupportedLanguageError(f"{self.backend_id.value} cannot run '{request.language}'")
        if not self.check_available():
            raise BackendNotAvailableError(
                f"Node executable not found: {self._settings.node}",
                remediation=self.remediation(),
            )
        payload = {
            "code": request.source_code,
            "input": request.input_payload,
            "timeoutMs": budget_ms,
        }
        return run_process(
            [self._settings.node, str(_vm_harness_path())],
            budget_ms=budget_ms,
            token=token,
            stdin_text=json.dumps(payload, default=str),
        )
