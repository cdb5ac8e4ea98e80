from __future__ import annotations

from typing import TYPE_CHECKING

from ..errors import BackendNotImplementedError
from .config import WasmSettings
from .types import BackendId, RawOutcome

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..request import ExecutionRequest

WIRING_STEPS = (
    "Deploy a WasmEdge execution service and set WASMEDGE_SERVICE_URL",
    "Compile the QuickJS / RustPython runtimes to WASM for the service",
    "Implement request submission and result retrieval in WasmSandboxAdapter.run_sync",
    "Set wired = True on the adapter",
)


class WasmSandboxAdapter:
    """Placeholder for a WasmEdge-backed sandbox.

    Availability is reported from configuration so operators can see the
    backend, but it is not wired: the orchestrator falls back to the local
    backend, and a direct run raises NOT_IMPLEMENTED.

    Example:
        ```python
        adapter = WasmSandboxAdapter(WasmSettings.from_env())
        ```
    """

    backend_id = BackendId.WASM_SANDBOX
    wired = False

    def __init__(self, settings: WasmSettings | None = None) -> None:
        """Bind the WasmEdge service settings.

        Example:
            ```python
            adapter = WasmSandboxAdapter(WasmSettings(enabled=True))
            ```
        """
        self._settings = settings or WasmSettings.from_env()

    def check_available(self) -> bool:
        """Return whether a WasmEdge service is configured.

        Example:
            ```python
            ok = adapter.check_available()
            ```
        """
        return bool(self._settings.service_url) or self._settings.enabled

    def remediation(self) -> str:
        """Describe how to enable the WASM sandbox.

        Example:
            ```python
            hint = adapter.remediation()
            ```
        """
        return "Set WASMEDGE_SERVICE_URL or WASMEDGE_ENABLED=true; execution is not wired yet."

    def run_sync(self, request: ExecutionRequest, budget_ms: int, token: CancellationToken) -> RawOutcome:
        """Always raise: the WASM runtime is not implemented.

        Example:
            ```python
            adapter.run_sync(req, 5000, token)  # raises BackendNotImplementedError
            ```
        """
        raise BackendNotImplementedError(
            "WASM sandbox execution is not implemented",
            details={"steps": list(WIRING_STEPS)},
        )
