from __future__ import annotations

from dataclasses import replace
from typing import Mapping

from ..errors import ConfigurationError
from .types import BackendDescriptor, BackendId, IsolationLevel, LatencyClass

ALL_LANGUAGES = frozenset({"javascript", "typescript", "python", "bash"})
VM_LANGUAGES = frozenset({"javascript", "typescript"})
SUBPROCESS_LANGUAGES = frozenset({"python", "bash"})

_BACKEND_ALIASES = {
    "e2b": BackendId.MICROSANDBOX,
    "vm2": BackendId.LOCAL_VM,
    "vm": BackendId.LOCAL_VM,
    "subprocess": BackendId.LOCAL_SUBPROCESS,
    "wasmedge": BackendId.WASM_SANDBOX,
    "wasm": BackendId.WASM_SANDBOX,
    "bacalhau": BackendId.BATCH_CLUSTER,
    "cluster": BackendId.BATCH_CLUSTER,
}

DEFAULT_DESCRIPTORS: dict[BackendId, BackendDescriptor] = {
    BackendId.MICROSANDBOX: BackendDescriptor(
        BackendId.MICROSANDBOX,
        ALL_LANGUAGES,
        IsolationLevel.VM,
        LatencyClass.SUB_50MS,
        False,
        60_000,
    ),
    BackendId.LOCAL_VM: BackendDescriptor(
        BackendId.LOCAL_VM,
        VM_LANGUAGES,
        IsolationLevel.PROCESS,
        LatencyClass.SUB_50MS,
        False,
        30_000,
    ),
    BackendId.LOCAL_SUBPROCESS: BackendDescriptor(
        BackendId.LOCAL_SUBPROCESS,
        SUBPROCESS_LANGUAGES,
        IsolationLevel.PROCESS,
        LatencyClass.SUB_50MS,
        False,
        30_000,
    ),
    BackendId.WASM_SANDBOX: BackendDescriptor(
        BackendId.WASM_SANDBOX,
        frozenset({"javascript", "typescript", "python"}),
        IsolationLevel.VM,
        LatencyClass.SECONDS,
        False,
        30_000,
    ),
    BackendId.BATCH_CLUSTER: BackendDescriptor(
        BackendId.BATCH_CLUSTER,
        ALL_LANGUAGES,
        IsolationLevel.CLUSTER,
        LatencyClass.MINUTES,
        True,
        300_000,
    ),
}


def parse_backend_name(name: str | BackendId | None) -> BackendId | None:
    """Resolve a backend id or legacy alias; `None`/`auto` mean no override.

    Example:
        ```python
        backend = parse_backend_name("bacalhau")  # BackendId.BATCH_CLUSTER
        ```
    """
    if name is None or isinstance(name, BackendId):
        return name
    cleaned = str(name).strip().lower()
    if not cleaned or cleaned == "auto":
        return None
    if cleaned in _BACKEND_ALIASES:
        return _BACKEND_ALIASES[cleaned]
    try:
        return BackendId(cleaned)
    except ValueError:
        supported = ", ".join(sorted([b.value for b in BackendId] + ["auto"]))
        raise ConfigurationError(f"Unknown backend '{name}'. Supported: {supported}") from None


def local_backend_for_language(language: str) -> BackendId:
    """Return the local backend that serves a language.

    Example:
        ```python
        backend = local_backend_for_language("bash")  # BackendId.LOCAL_SUBPROCESS
        ```
    """
    if language in SUBPROCESS_LANGUAGES:
        return BackendId.LOCAL_SUBPROCESS
    return BackendId.LOCAL_VM


def descriptors_with_limits(max_single_run_ms: Mapping[BackendId, int]) -> dict[BackendId, BackendDescriptor]:
    """Return default descriptors with configured per-backend run ceilings.

    Example:
        ```python
        descs = descriptors_with_limits({BackendId.BATCH_CLUSTER: 600_000})
        ```
    """
    merged = dict(DEFAULT_DESCRIPTORS)
    for backend, limit in max_single_run_ms.items():
        if int(limit) <= 0:
            raise ConfigurationError(f"max_single_run_ms for '{backend.value}' must be positive")
        merged[backend] = replace(merged[backend], max_single_run_ms=int(limit))
    return merged
