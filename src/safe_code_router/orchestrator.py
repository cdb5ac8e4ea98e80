from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from loguru import logger

from .cancellation import CancellationToken
from .errors import (
    BackendNotAvailableError,
    BackendNotImplementedError,
    ExecutionCancelledError,
    UnsupportedLanguageError,
)
from .execution.capabilities import descriptors_with_limits, local_backend_for_language
from .execution.cluster_engine import BatchClusterAdapter
from .execution.config import ClusterSettings, LocalRuntimeSettings, MicrosandboxSettings, WasmSettings
from .execution.engine import AsyncBackendAdapter, BackendAdapter, SyncBackendAdapter
from .execution.local_engine import LocalSubprocessAdapter, LocalVMAdapter
from .execution.microsandbox_engine import MicrosandboxAdapter
from .execution.types import BackendDescriptor, BackendId
from .execution.wasm_engine import WIRING_STEPS, WasmSandboxAdapter
from .jobs import JobLifecycleManager, Sleeper
from .normalizer import normalize_exception, normalize_outcome
from .request import ExecutionRequest, Language
from .result import ExecutionResult
from .selection import fallback_backend, select_backend
from .settings import RouterSettings


@dataclass(frozen=True, slots=True)
class BackendHealth:
    """Operator-facing health snapshot of one backend.

    Example:
        ```python
        health = orchestrator.describe_backends()[0]
        print(health.backend_id, health.available)
        ```
    """

    backend_id: BackendId
    descriptor: BackendDescriptor
    registered: bool
    wired: bool
    available: bool
    remediation: str | None


@dataclass(frozen=True, slots=True)
class RoutePlan:
    """Where a request will run and with what budget.

    Example:
        ```python
        plan = orchestrator.plan(req)
        print(plan.selected, plan.target, plan.budget_ms)
        ```
    """

    selected: BackendId
    target: BackendId
    budget_ms: int

    @property
    def fell_back(self) -> bool:
        """Return whether the fallback table redirected the request.

        Example:
            ```python
            if plan.fell_back:
                ...
            ```
        """
        return self.selected is not self.target


class Orchestrator:
    """Compose selection, fallback, adapters and normalization into one call.

    Example:
        ```python
        orchestrator = Orchestrator([LocalSubprocessAdapter(), LocalVMAdapter()])
        result = orchestrator.execute(ExecutionRequest(language="python", source_code="result = 2"))
        ```
    """

    def __init__(
        self,
        adapters: Iterable[BackendAdapter],
        settings: RouterSettings | None = None,
        *,
        descriptors: Mapping[BackendId, BackendDescriptor] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleeper | None = None,
    ) -> None:
        """Register adapters by their backend id.

        Example:
            ```python
            orchestrator = Orchestrator([fake_cluster], RouterSettings(poll_interval_ms=10))
            ```
        """
        self._settings = settings or RouterSettings()
        self._adapters: dict[BackendId, BackendAdapter] = {}
        for adapter in adapters:
            if adapter.backend_id in self._adapters:
                raise ValueError(f"Duplicate adapter for backend '{adapter.backend_id.value}'")
            self._adapters[adapter.backend_id] = adapter
        self._descriptors = dict(descriptors or descriptors_with_limits(self._settings.backend_limits_ms))
        self._clock = clock
        self._sleep = sleep

    @property
    def settings(self) -> RouterSettings:
        """Return the dispatch settings in use.

        Example:
            ```python
            interval = orchestrator.settings.poll_interval_ms
            ```
        """
        return self._settings

    def select(self, request: ExecutionRequest) -> BackendId:
        """Run the selection policy against a fresh availability snapshot.

        Example:
            ```python
            backend = orchestrator.select(req)
            ```
        """
        availability = {BackendId.MICROSANDBOX: self._probe(BackendId.MICROSANDBOX)}
        selected = select_backend(
            request,
            availability,
            fast_path_threshold_ms=self._settings.fast_path_threshold_ms,
        )
        logger.info("Selected {} for {} request", selected.value, request.language)
        return selected

    def plan(self, request: ExecutionRequest) -> RoutePlan:
        """Select, re-check availability and apply fallback without running anything.

        Raises the `DispatchError` that `execute` would report.

        Example:
            ```python
            plan = orchestrator.plan(req)
            ```
        """
        return self._plan(request, self.select(request))

    def execute(self, request: ExecutionRequest, token: CancellationToken | None = None) -> ExecutionResult:
        """Run one request to a canonical result; never raises.

        Example:
            ```python
            result = orchestrator.execute(req, token=CancellationToken())
            if not result.success:
                print(result.error.kind)
            ```
        """
        token = token or CancellationToken()
        started = self._clock()
        selected: BackendId | None = None
        target: BackendId | None = None
        try:
            selected = self.select(request)
            plan = self._plan(request, selected)
            target = plan.target
            budget_ms = plan.budget_ms
            if token.cancelled:
                raise ExecutionCancelledError(token.reason or "Execution cancelled")

            adapter = self._adapters[target]
            if isinstance(adapter, AsyncBackendAdapter):
                manager = JobLifecycleManager(
                    adapter,
                    poll_interval_ms=self._settings.poll_interval_ms,
                    clock=self._clock,
                    sleep=self._sleep,
                    cancel_remote_on_timeout=self._settings.cancel_remote_on_timeout,
                )
                job = manager.submit(request, budget_ms)
                return manager.run(
                    job,
                    budget_ms,
                    token,
                    input_payload=request.input_payload,
                    selected_backend=selected,
                )
            if not isinstance(adapter, SyncBackendAdapter):
                raise BackendNotImplementedError(f"Adapter for {target.value} exposes no run method")
            outcome = adapter.run_sync(request, budget_ms, token)
            return normalize_outcome(
                outcome,
                backend_id=target,
                duration_ms=self._elapsed_ms(started),
                input_payload=request.input_payload,
                selected_backend=selected,
            )
        except Exception as exc:
            backend = target or selected or local_backend_for_language(request.language)
            logger.warning("Execution on {} failed: {}", backend.value, exc)
            return normalize_exception(
                exc,
                backend_id=backend,
                duration_ms=self._elapsed_ms(started),
                selected_backend=selected,
            )

    def describe_backends(self) -> list[BackendHealth]:
        """Return health for every known backend, registered or not.

        Example:
            ```python
            for health in orchestrator.describe_backends():
                print(health.backend_id.value, health.available)
            ```
        """
        report: list[BackendHealth] = []
        for backend in BackendId:
            adapter = self._adapters.get(backend)
            available = adapter is not None and self._probe(backend)
            report.append(
                BackendHealth(
                    backend_id=backend,
                    descriptor=self._descriptors[backend],
                    registered=adapter is not None,
                    wired=adapter is not None and bool(adapter.wired),
                    available=available,
                    remediation=None if available else self._remediation(backend),
                )
            )
        return report

    def shutdown(self) -> None:
        """Close adapters that hold resources.

        Example:
            ```python
            orchestrator.shutdown()
            ```
        """
        for backend, adapter in self._adapters.items():
            close = getattr(adapter, "close", None)
            if not callable(close):
                continue
            try:
                close()
            except Exception as exc:
                logger.warning("Closing {} adapter failed: {}", backend.value, exc)

    def _plan(self, request: ExecutionRequest, selected: BackendId) -> RoutePlan:
        """Resolve the target backend and compute the run budget once.

        Example:
            ```python
            plan = orchestrator._plan(req, BackendId.MICROSANDBOX)
            ```
        """
        if request.known_language is None:
            raise UnsupportedLanguageError(
                f"Unknown language '{request.language}'",
                details={"supported_languages": [language.value for language in Language]},
            )
        target = self._resolve(selected, request.language)
        descriptor = self._descriptors[target]
        if not descriptor.supports(request.language):
            raise UnsupportedLanguageError(
                f"{target.value} does not support '{request.language}'",
                details={"supported_languages": sorted(descriptor.supports_languages)},
            )
        return RoutePlan(
            selected=selected,
            target=target,
            budget_ms=min(request.timeout_ms, descriptor.max_single_run_ms),
        )

    def _resolve(self, selected: BackendId, language: str) -> BackendId:
        """Return the backend that will run, after at most one fallback hop.

        Example:
            ```python
            target = orchestrator._resolve(BackendId.MICROSANDBOX, "python")
            ```
        """
        adapter = self._adapters.get(selected)
        wired = adapter is not None and bool(adapter.wired)
        if wired:
            if self._probe(selected):
                return selected
        elif adapter is not None and not self._settings.fallback_on_unwired:
            raise BackendNotImplementedError(
                f"{selected.value} is not wired",
                details={"steps": list(WIRING_STEPS)} if selected is BackendId.WASM_SANDBOX else None,
            )

        # An unregistered backend only counts as unwired when unwired fallback is enabled.
        treat_as_wired = wired or (adapter is None and not self._settings.fallback_on_unwired)
        fallback = fallback_backend(selected, language, wired=treat_as_wired)
        if fallback is None:
            raise BackendNotAvailableError(
                f"{selected.value} is not available",
                remediation=self._remediation(selected),
            )
        fallback_adapter = self._adapters.get(fallback)
        if fallback_adapter is None or not fallback_adapter.wired or not self._probe(fallback):
            raise BackendNotAvailableError(
                f"{selected.value} is not available and fallback {fallback.value} cannot run",
                remediation=self._remediation(selected),
                details={"fallback": fallback.value, "fallback_remediation": self._remediation(fallback)},
            )
        logger.info("Falling back from {} to {}", selected.value, fallback.value)
        return fallback

    def _probe(self, backend: BackendId) -> bool:
        """Call an adapter's availability check, treating errors as unavailable.

        Example:
            ```python
            ok = orchestrator._probe(BackendId.MICROSANDBOX)
            ```
        """
        adapter = self._adapters.get(backend)
        if adapter is None:
            return False
        try:
            return bool(adapter.check_available())
        except Exception as exc:
            logger.warning("Availability check for {} raised: {}", backend.value, exc)
            return False

    def _remediation(self, backend: BackendId) -> str:
        """Return remediation text for a backend, covering unregistered ones.

        Example:
            ```python
            hint = orchestrator._remediation(BackendId.BATCH_CLUSTER)
            ```
        """
        adapter = self._adapters.get(backend)
        if adapter is None:
            return f"Register an adapter for '{backend.value}' with the orchestrator."
        try:
            return adapter.remediation()
        except Exception as exc:
            logger.warning("Remediation lookup for {} raised: {}", backend.value, exc)
            return f"Check the configuration of '{backend.value}'."

    def _elapsed_ms(self, started: float) -> int:
        """Return milliseconds since `started` on the orchestrator clock.

        Example:
            ```python
            elapsed = orchestrator._elapsed_ms(started)
            ```
        """
        return int((self._clock() - started) * 1000)


def build_orchestrator(
    settings: RouterSettings | None = None,
    env: Mapping[str, str] | None = None,
) -> Orchestrator:
    """Compose the default adapters from environment configuration.

    Example:
        ```python
        orchestrator = build_orchestrator(RouterSettings.from_file("router.toml"))
        ```
    """
    env = os.environ if env is None else env
    local = LocalRuntimeSettings.from_env(env)
    adapters: list[BackendAdapter] = [
        MicrosandboxAdapter(settings=MicrosandboxSettings.from_env(env)),
        LocalVMAdapter(local),
        LocalSubprocessAdapter(local),
        WasmSandboxAdapter(WasmSettings.from_env(env)),
        BatchClusterAdapter(ClusterSettings.from_env(env)),
    ]
    return Orchestrator(adapters, settings)
