from __future__ import annotations

from typing import Mapping

from .execution.capabilities import local_backend_for_language
from .execution.types import BackendId
from .request import ExecutionRequest
from .settings import DEFAULT_FAST_PATH_THRESHOLD_MS

_FALLBACK_WHEN_UNAVAILABLE = frozenset({BackendId.MICROSANDBOX})
_FALLBACK_WHEN_UNWIRED = frozenset({BackendId.WASM_SANDBOX, BackendId.BATCH_CLUSTER})


def _fast_path(
    request: ExecutionRequest,
    availability: Mapping[BackendId, bool],
    threshold_ms: int,
) -> bool:
    """Return whether the request qualifies for the microsandbox fast path.

    Example:
        ```python
        fast = _fast_path(req, {BackendId.MICROSANDBOX: True}, 50)
        ```
    """
    expected = request.constraints.expected_duration_ms
    if expected is None or expected >= threshold_ms:
        return False
    return bool(availability.get(BackendId.MICROSANDBOX, False))


def select_backend(
    request: ExecutionRequest,
    availability: Mapping[BackendId, bool],
    *,
    fast_path_threshold_ms: int = DEFAULT_FAST_PATH_THRESHOLD_MS,
) -> BackendId:
    """Pick the backend for a request; the first matching rule wins.

    Rules, in order: explicit override, long-running to the batch cluster,
    sandboxed requests (microsandbox on the fast path, else local), the fast
    path to microsandbox, then the local backend for the language. Pure: it
    never calls adapters.

    Example:
        ```python
        backend = select_backend(req, {BackendId.MICROSANDBOX: True})
        ```
    """
    constraints = request.constraints
    if constraints.explicit_backend is not None:
        return constraints.explicit_backend
    if constraints.long_running:
        return BackendId.BATCH_CLUSTER
    if constraints.requires_sandbox:
        if _fast_path(request, availability, fast_path_threshold_ms):
            return BackendId.MICROSANDBOX
        # Best-effort sandboxing: the local backend is used when no stronger
        # isolation backend can take the request.
        return local_backend_for_language(request.language)
    if _fast_path(request, availability, fast_path_threshold_ms):
        return BackendId.MICROSANDBOX
    return local_backend_for_language(request.language)


def fallback_backend(backend: BackendId, language: str, *, wired: bool = True) -> BackendId | None:
    """Return the single static fallback for a backend that cannot run, if any.

    Example:
        ```python
        target = fallback_backend(BackendId.MICROSANDBOX, "python")  # LOCAL_SUBPROCESS
        ```
    """
    if backend in _FALLBACK_WHEN_UNAVAILABLE:
        return local_backend_for_language(language)
    if backend in _FALLBACK_WHEN_UNWIRED and not wired:
        return local_backend_for_language(language)
    return None
