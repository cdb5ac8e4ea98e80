from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .execution.capabilities import parse_backend_name
from .execution.types import BackendId


class Language(str, Enum):
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    PYTHON = "python"
    BASH = "bash"


@dataclass(frozen=True, slots=True)
class Constraints:
    """Caller constraints that steer backend selection.

    Example:
        ```python
        c = Constraints(requires_sandbox=True, expected_duration_ms=20)
        ```
    """

    explicit_backend: BackendId | None = None
    requires_sandbox: bool = False
    long_running: bool = False
    expected_duration_ms: float | None = None

    def __post_init__(self) -> None:
        """Resolve backend names and aliases given as plain strings.

        Example:
            ```python
            Constraints(explicit_backend="e2b").explicit_backend  # BackendId.MICROSANDBOX
            ```
        """
        object.__setattr__(self, "explicit_backend", parse_backend_name(self.explicit_backend))


@dataclass(frozen=True, slots=True)
class ResourceHints:
    """Resource hints forwarded to backends that honor them.

    Example:
        ```python
        hints = ResourceHints(gpu=True, gpu_count=2, memory="4Gb", cpu="2")
        ```
    """

    gpu: bool = False
    gpu_count: int = 0
    memory: str | None = None
    cpu: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Immutable description of one unit of user code to execute.

    Example:
        ```python
        req = ExecutionRequest(language="python", source_code="result = 1 + 1", timeout_ms=5000)
        ```
    """

    language: str
    source_code: str
    input_payload: Any = None
    constraints: Constraints = field(default_factory=Constraints)
    resource_hints: ResourceHints = field(default_factory=ResourceHints)
    timeout_ms: int = 30_000

    def __post_init__(self) -> None:
        """Normalize the language tag and validate the timeout.

        Example:
            ```python
            ExecutionRequest(language="Python", source_code="", timeout_ms=1000).language  # "python"
            ```
        """
        object.__setattr__(self, "language", str(self.language).strip().lower())
        if int(self.timeout_ms) <= 0:
            raise ValueError("timeout_ms must be positive")

    @property
    def known_language(self) -> Language | None:
        """Return the language enum member, or None for unrecognized languages.

        Example:
            ```python
            lang = req.known_language
            ```
        """
        try:
            return Language(self.language)
        except ValueError:
            return None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], *, default_timeout_ms: int = 30_000) -> "ExecutionRequest":
        """Build a request from a caller payload, accepting legacy backend aliases.

        Example:
            ```python
            req = ExecutionRequest.from_dict({
                "language": "python",
                "code": "result = 42",
                "constraints": {"runtime": "e2b", "expectedDurationMs": 20},
            })
            ```
        """
        constraints_raw = _mapping(raw.get("constraints"), "constraints")
        hints_raw = _mapping(raw.get("resource_hints", raw.get("resourceHints")), "resource_hints")
        expected = _first(constraints_raw, "expected_duration_ms", "expectedDurationMs", "expectedDuration")
        constraints = Constraints(
            explicit_backend=parse_backend_name(
                _first(constraints_raw, "explicit_backend", "explicitBackend", "runtime")
            ),
            requires_sandbox=bool(_first(constraints_raw, "requires_sandbox", "requiresSandbox") or False),
            long_running=bool(_first(constraints_raw, "long_running", "longRunning", "longJob") or False),
            expected_duration_ms=float(expected) if expected is not None else None,
        )
        hints = ResourceHints(
            gpu=bool(hints_raw.get("gpu", False)),
            gpu_count=int(_first(hints_raw, "gpu_count", "gpuCount") or 0),
            memory=_optional_str(hints_raw.get("memory")),
            cpu=_optional_str(hints_raw.get("cpu")),
        )
        timeout = _first(raw, "timeout_ms", "timeoutMs", "timeout")
        return cls(
            language=str(raw.get("language", "")),
            source_code=str(_first(raw, "source_code", "sourceCode", "code") or ""),
            input_payload=_first(raw, "input_payload", "inputPayload", "input"),
            constraints=constraints,
            resource_hints=hints,
            timeout_ms=int(timeout) if timeout is not None else default_timeout_ms,
        )


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    """Validate an optional nested table.

    Example:
        ```python
        table = _mapping({"gpu": True}, "resource_hints")
        ```
    """
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"'{field_name}' must be a mapping")
    return value


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    """Return the first key present among snake_case and camelCase spellings.

    Example:
        ```python
        value = _first({"timeoutMs": 10}, "timeout_ms", "timeoutMs")
        ```
    """
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _optional_str(value: Any) -> str | None:
    """Stringify a hint value, keeping None.

    Example:
        ```python
        mem = _optional_str(512)  # "512"
        ```
    """
    return None if value is None else str(value)
