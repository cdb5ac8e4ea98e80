from __future__ import annotations

import importlib.util
import json
import math
import shlex
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol

from loguru import logger

from ..errors import BackendNotAvailableError, ExecutionCancelledError
from .config import MicrosandboxSettings
from .types import BackendId, RawOutcome

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..request import ExecutionRequest

_POLL_SECONDS = 0.05
_SESSION_GRACE_SECONDS = 30
TIMEOUT_EXIT_CODE = 124
_FILE_NAMES = {"python": "main.py", "bash": "main.sh"}
_COMMANDS = {"python": "python3", "bash": "bash"}


class SandboxProcess(Protocol):
    def wait(self) -> RawOutcome:
        """Block until the process exits and return its outcome.

        Example:
            ```python
            outcome = process.wait()
            ```
        """
        ...

    def kill(self) -> None:
        """Terminate the process.

        Example:
            ```python
            process.kill()
            ```
        """
        ...


class SandboxSession(Protocol):
    sandbox_id: str

    def write_file(self, path: str, content: str) -> None:
        """Write a text file inside the sandbox.

        Example:
            ```python
            session.write_file("/code/main.py", "print(1)")
            ```
        """
        ...

    def start(self, command: list[str], env: Mapping[str, str]) -> SandboxProcess:
        """Start a command in the background.

        Example:
            ```python
            process = session.start(["python3", "/code/main.py"], {"INPUT": "{}"})
            ```
        """
        ...

    def close(self) -> None:
        """Destroy the sandbox.

        Example:
            ```python
            session.close()
            ```
        """
        ...


class SandboxProvider(Protocol):
    def is_configured(self) -> bool:
        """Return whether credentials and SDK are present.

        Example:
            ```python
            ok = provider.is_configured()
            ```
        """
        ...

    def open(self, template: str, timeout_ms: int) -> SandboxSession:
        """Create a fresh sandbox session.

        Example:
            ```python
            session = provider.open("code-interpreter-v1", 5000)
            ```
        """
        ...


class _E2BProcess:
    """Background command handle from the E2B SDK.

    Example:
        ```python
        process = _E2BProcess(sandbox.commands.run("python3 main.py", background=True))
        ```
    """

    def __init__(self, handle: Any) -> None:
        """Wrap an SDK command handle.

        Example:
            ```python
            process = _E2BProcess(handle)
            ```
        """
        self._handle = handle

    def wait(self) -> RawOutcome:
        """Wait for the command; non-zero exits are returned, not raised.

        Example:
            ```python
            outcome = process.wait()
            ```
        """
        from e2b import CommandExitException

        try:
            result = self._handle.wait()
        except CommandExitException as exc:
            return RawOutcome(exc.stdout or "", exc.stderr or "", int(exc.exit_code), False)
        return RawOutcome(result.stdout or "", result.stderr or "", int(result.exit_code), False)

    def kill(self) -> None:
        """Kill the remote command.

        Example:
            ```python
            process.kill()
            ```
        """
        self._handle.kill()


class _E2BSession:
    """One E2B sandbox.

    Example:
        ```python
        session = _E2BSession(Sandbox(template="base"))
        ```
    """

    def __init__(self, sandbox: Any) -> None:
        """Wrap an SDK sandbox.

        Example:
            ```python
            session = _E2BSession(sandbox)
            ```
        """
        self._sandbox = sandbox
        self.sandbox_id = str(getattr(sandbox, "sandbox_id", ""))

    def write_file(self, path: str, content: str) -> None:
        """Write a file through the sandbox filesystem API.

        Example:
            ```python
            session.write_file("/code/main.sh", "echo hi")
            ```
        """
        self._sandbox.files.write(path, content)

    def start(self, command: list[str], env: Mapping[str, str]) -> SandboxProcess:
        """Start a background command with extra environment variables.

        Example:
            ```python
            process = session.start(["bash", "/code/main.sh"], {"INPUT": "null"})
            ```
        """
        handle = self._sandbox.commands.run(
            shlex.join(command),
            background=True,
            envs=dict(env),
            timeout=0,
        )
        return _E2BProcess(handle)

    def close(self) -> None:
        """Kill the sandbox.

        Example:
            ```python
            session.close()
            ```
        """
        self._sandbox.kill()


class E2BSandboxProvider:
    """Open E2B sandboxes with the code-interpreter SDK.

    Example:
        ```python
        provider = E2BSandboxProvider(MicrosandboxSettings.from_env())
        ```
    """

    def __init__(self, settings: MicrosandboxSettings) -> None:
        """Bind API key and templates.

        Example:
            ```python
            provider = E2BSandboxProvider(MicrosandboxSettings(api_key="e2b_..."))
            ```
        """
        self._settings = settings

    def is_configured(self) -> bool:
        """Return whether an API key is set and the SDK is installed.

        Example:
            ```python
            ok = provider.is_configured()
            ```
        """
        if not self._settings.api_key:
            return False
        return importlib.util.find_spec("e2b_code_interpreter") is not None

    def open(self, template: str, timeout_ms: int) -> SandboxSession:
        """Create a sandbox that expires shortly after the run budget.

        Example:
            ```python
            session = provider.open("base", 5000)
            ```
        """
        from e2b_code_interpreter import Sandbox

        sandbox = Sandbox(
            template=template,
            api_key=self._settings.api_key,
            timeout=math.ceil(timeout_ms / 1000) + _SESSION_GRACE_SECONDS,
        )
        return _E2BSession(sandbox)


class MicrosandboxAdapter:
    """Run code in an ephemeral remote microsandbox.

    One sandbox per request: the source is written under the sandbox workdir,
    the input is passed as JSON in `INPUT`, and the sandbox is destroyed when
    the run ends whatever the outcome.

    Example:
        ```python
        adapter = MicrosandboxAdapter(settings=MicrosandboxSettings.from_env())
        ```
    """

    backend_id = BackendId.MICROSANDBOX
    wired = True

    def __init__(
        self,
        provider: SandboxProvider | None = None,
        settings: MicrosandboxSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Bind the sandbox provider.

        Example:
            ```python
            adapter = MicrosandboxAdapter(provider=fake_provider)
            ```
        """
        self._settings = settings or MicrosandboxSettings.from_env()
        self._provider = provider or E2BSandboxProvider(self._settings)
        self._clock = clock

    def check_available(self) -> bool:
        """Return whether the sandbox provider is configured.

        Example:
            ```python
            ok = adapter.check_available()
            ```
        """
        return self._provider.is_configured()

    def remediation(self) -> str:
        """Describe how to enable the microsandbox.

        Example:
            ```python
            hint = adapter.remediation()
            ```
        """
        return "Set E2B_API_KEY and install the SDK with `pip install e2b-code-interpreter`."

    def run_sync(self, request: ExecutionRequest, budget_ms: int, token: CancellationToken) -> RawOutcome:
        """Run one request, racing the whole sandbox lifecycle against the budget and the token.

        Opening the sandbox, writing the source and starting the command all
        happen on the helper thread, so a slow sandbox boot is bounded too.

        Example:
            ```python
            outcome = adapter.run_sync(req, 5000, CancellationToken())
            ```
        """
        if not self.check_available():
            raise BackendNotAvailableError(
                "Microsandbox is not configured",
                remediation=self.remediation(),
            )
        deadline = self._clock() + budget_ms / 1000.0
        path = f"{self._settings.workdir}/{_FILE_NAMES.get(request.language, 'main.js')}"
        run = _SandboxRun(
            self._provider,
            template=self._settings.template_for(request.language),
            budget_ms=budget_ms,
            path=path,
            source=request.source_code,
            command=[_COMMANDS.get(request.language, "node"), path],
            env={"INPUT": json.dumps(request.input_payload, default=str)},
        )
        threading.Thread(target=run.execute, name="microsandbox-run", daemon=True).start()
        while not run.done.is_set():
            if token.cancelled:
                run.abandon()
                raise ExecutionCancelledError(token.reason or "Execution cancelled")
            remaining = deadline - self._clock()
            if remaining <= 0:
                run.abandon()
                return RawOutcome(
                    "",
                    "",
                    TIMEOUT_EXIT_CODE,
                    True,
                    f"Microsandbox execution timed out after {budget_ms}ms",
                )
            run.done.wait(min(_POLL_SECONDS, remaining))
        run.finish()
        if run.error is not None:
            raise run.error
        return run.outcome


class _SandboxRun:
    """One sandbox lifecycle driven on a helper thread.

    The session is closed exactly once: by the caller when it has seen the
    session, otherwise by the helper as soon as `open` returns into an
    abandoned run.

    Example:
        ```python
        run = _SandboxRun(provider, template="base", budget_ms=5000, path="/code/main.js",
                          source="1", command=["node", "/code/main.js"], env={})
        ```
    """

    def __init__(
        self,
        provider: SandboxProvider,
        *,
        template: str,
        budget_ms: int,
        path: str,
        source: str,
        command: list[str],
        env: Mapping[str, str],
    ) -> None:
        """Capture everything the helper thread needs.

        Example:
            ```python
            run = _SandboxRun(provider, template="base", budget_ms=5000, path=p, source=s, command=c, env={})
            ```
        """
        self._provider = provider
        self._template = template
        self._budget_ms = budget_ms
        self._path = path
        self._source = source
        self._command = command
        self._env = env
        self._lock = threading.Lock()
        self._abandoned = False
        self.session: SandboxSession | None = None
        self.process: SandboxProcess | None = None
        self.outcome: RawOutcome | None = None
        self.error: Exception | None = None
        self.done = threading.Event()

    def execute(self) -> None:
        """Open, write, start and wait; stop early once the run is abandoned.

        Example:
            ```python
            threading.Thread(target=run.execute, daemon=True).start()
            ```
        """
        try:
            session = self._provider.open(self._template, self._budget_ms)
            logger.debug("Opened sandbox {} ({})", session.sandbox_id, self._template)
            with self._lock:
                abandoned = self._abandoned
                if not abandoned:
                    self.session = session
            if abandoned:
                _close_session(session)
                return
            session.write_file(self._path, self._source)
            with self._lock:
                if self._abandoned:
                    return
            process = session.start(self._command, self._env)
            with self._lock:
                abandoned = self._abandoned
                if not abandoned:
                    self.process = process
            if abandoned:
                _kill_process(process)
                return
            self.outcome = process.wait()
        except Exception as exc:
            self.error = exc
        finally:
            self.done.set()

    def abandon(self) -> None:
        """Give up on the run: kill what was started and close what was opened.

        Example:
            ```python
            run.abandon()
            ```
        """
        with self._lock:
            self._abandoned = True
            session, process = self.session, self.process
        if process is not None:
            _kill_process(process)
        if session is not None:
            _close_session(session)

    def finish(self) -> None:
        """Close the session after the helper thread has completed.

        Example:
            ```python
            run.finish()
            ```
        """
        if self.session is not None:
            _close_session(self.session)


def _kill_process(process: SandboxProcess) -> None:
    """Best-effort process kill; the session close that follows reclaims the rest.

    Example:
        ```python
        _kill_process(process)
        ```
    """
    try:
        process.kill()
    except Exception as exc:
        logger.warning("Killing sandbox process failed: {}", exc)


def _close_session(session: SandboxSession) -> None:
    """Destroy a session, logging failures instead of masking the run result.

    Example:
        ```python
        _close_session(session)
        ```
    """
    try:
        session.close()
    except Exception as exc:
        logger.warning("Closing sandbox {} failed: {}", session.sandbox_id, exc)
    else:
        logger.debug("Closed sandbox {}", session.sandbox_id)
