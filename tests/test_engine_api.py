import pytest

from safe_code_router.execution.cluster_engine import BatchClusterAdapter
from safe_code_router.execution.config import ClusterSettings, LocalRuntimeSettings, MicrosandboxSettings, WasmSettings
from safe_code_router.execution.engine import AsyncBackendAdapter, BackendAdapter, SyncBackendAdapter
from safe_code_router.execution.local_engine import LocalSubprocessAdapter, LocalVMAdapter
from safe_code_router.execution.microsandbox_engine import MicrosandboxAdapter
from safe_code_router.execution.wasm_engine import WasmSandboxAdapter
from safe_code_router import Orchestrator, build_orchestrator

_SYNC_ADAPTERS = [
    MicrosandboxAdapter(settings=MicrosandboxSettings()),
    LocalVMAdapter(LocalRuntimeSettings()),
    LocalSubprocessAdapter(LocalRuntimeSettings()),
    WasmSandboxAdapter(WasmSettings()),
]


@pytest.mark.parametrize("adapter", _SYNC_ADAPTERS, ids=lambda adapter: adapter.backend_id.value)
def test_sync_adapters_satisfy_protocol(adapter) -> None:
    assert isinstance(adapter, BackendAdapter)
    assert isinstance(adapter, SyncBackendAdapter)
    assert not isinstance(adapter, AsyncBackendAdapter)
    assert isinstance(adapter.remediation(), str)


def test_cluster_adapter_is_asynchronous() -> None:
    adapter = BatchClusterAdapter(ClusterSettings())
    assert isinstance(adapter, AsyncBackendAdapter)
    assert not isinstance(adapter, SyncBackendAdapter)


def test_only_wasm_is_unwired() -> None:
    unwired = [adapter.backend_id for adapter in _SYNC_ADAPTERS if not adapter.wired]
    assert [backend.value for backend in unwired] == ["wasm-sandbox"]
    assert BatchClusterAdapter(ClusterSettings()).wired is True


def test_build_orchestrator_registers_every_backend() -> None:
    orchestrator = build_orchestrator(env={})
    assert isinstance(orchestrator, Orchestrator)
    health = orchestrator.describe_backends()
    assert all(item.registered for item in health)
    cluster = next(item for item in health if item.backend_id.value == "batch-cluster")
    assert cluster.available is False
    assert "BACALHAU_API_HOST" in cluster.remediation
