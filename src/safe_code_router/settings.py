from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from .errors import ConfigurationError
from .execution.capabilities import parse_backend_name
from .execution.types import BackendId

_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_settings.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read a settings TOML file into a plain dictionary.

    Example:
        ```python
        raw = _read_settings_toml(Path("/etc/safe-code-router.toml"))
        ```
    """
    if not path.exists():
        raise ConfigurationError(f"Settings file not found: {path}")
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid settings TOML in {path}: {exc}") from exc


def _table(raw: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a TOML sub-table, validating its type.

    Example:
        ```python
        dispatch = _table(raw, "dispatch")
        ```
    """
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{name}' must be a TOML table")
    return value


def _positive_int(value: Any, field_name: str) -> int:
    """Validate a strictly positive integer setting.

    Example:
        ```python
        interval = _positive_int(5000, "poll_interval_ms")
        ```
    """
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"'{field_name}' must be a positive integer")
    return value


def _bool(value: Any, field_name: str) -> bool:
    """Validate a boolean setting.

    Example:
        ```python
        flag = _bool(True, "fallback_on_unwired")
        ```
    """
    if not isinstance(value, bool):
        raise ConfigurationError(f"'{field_name}' must be true or false")
    return value


_DEFAULT_RAW = _read_settings_toml(_default_settings_path())
_DEFAULT_DISPATCH = _table(_DEFAULT_RAW, "dispatch")
DEFAULT_POLL_INTERVAL_MS = int(_DEFAULT_DISPATCH.get("poll_interval_ms", 5000))
DEFAULT_FAST_PATH_THRESHOLD_MS = int(_DEFAULT_DISPATCH.get("fast_path_threshold_ms", 50))
DEFAULT_TIMEOUT_MS = int(_DEFAULT_DISPATCH.get("default_timeout_ms", 30000))
DEFAULT_FALLBACK_ON_UNWIRED = bool(_DEFAULT_DISPATCH.get("fallback_on_unwired", True))
DEFAULT_CANCEL_REMOTE_ON_TIMEOUT = bool(_DEFAULT_DISPATCH.get("cancel_remote_on_timeout", False))
DEFAULT_LOG_LEVEL = str(_DEFAULT_DISPATCH.get("log_level", "INFO"))


def _backend_limits(raw: dict[str, Any]) -> dict[BackendId, int]:
    """Parse `[backends.<id>]` tables into per-backend run ceilings.

    Example:
        ```python
        limits = _backend_limits({"backends": {"batch-cluster": {"max_single_run_ms": 600000}}})
        ```
    """
    limits: dict[BackendId, int] = {}
    for name, table in _table(raw, "backends").items():
        if not isinstance(table, dict):
            raise ConfigurationError(f"'backends.{name}' must be a TOML table")
        backend = parse_backend_name(name)
        if backend is None:
            raise ConfigurationError("'backends.auto' is not a backend")
        if "max_single_run_ms" in table:
            limits[backend] = _positive_int(
                table["max_single_run_ms"], f"backends.{name}.max_single_run_ms"
            )
    return limits


DEFAULT_BACKEND_LIMITS = _backend_limits(_DEFAULT_RAW)


@dataclass(slots=True)
class RouterSettings:
    """Dispatch settings for the orchestrator and job lifecycle manager.

    Example:
        ```python
        settings = RouterSettings(poll_interval_ms=1000, cancel_remote_on_timeout=True)
        ```
    """

    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    fast_path_threshold_ms: int = DEFAULT_FAST_PATH_THRESHOLD_MS
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    fallback_on_unwired: bool = DEFAULT_FALLBACK_ON_UNWIRED
    cancel_remote_on_timeout: bool = DEFAULT_CANCEL_REMOTE_ON_TIMEOUT
    log_level: str = DEFAULT_LOG_LEVEL
    backend_limits_ms: dict[BackendId, int] = field(
        default_factory=lambda: DEFAULT_BACKEND_LIMITS.copy()
    )
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate numeric ranges and the log level.

        Example:
            ```python
            RouterSettings(poll_interval_ms=0)  # raises ConfigurationError
            ```
        """
        _positive_int(self.poll_interval_ms, "poll_interval_ms")
        _positive_int(self.fast_path_threshold_ms, "fast_path_threshold_ms")
        _positive_int(self.default_timeout_ms, "default_timeout_ms")
        self.log_level = self.log_level.upper()
        if self.log_level not in _LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of: {', '.join(sorted(_LOG_LEVELS))}")

    @classmethod
    def from_file(cls, config_path: str) -> "RouterSettings":
        """Create settings from a TOML file, falling back to bundled defaults per key.

        Example:
            ```python
            settings = RouterSettings.from_file("/etc/safe-code-router.toml")
            ```
        """
        raw = _read_settings_toml(Path(config_path))
        dispatch = _table(raw, "dispatch")
        limits = DEFAULT_BACKEND_LIMITS.copy()
        limits.update(_backend_limits(raw))
        return cls(
            poll_interval_ms=_positive_int(
                dispatch.get("poll_interval_ms", DEFAULT_POLL_INTERVAL_MS), "poll_interval_ms"
            ),
            fast_path_threshold_ms=_positive_int(
                dispatch.get("fast_path_threshold_ms", DEFAULT_FAST_PATH_THRESHOLD_MS),
                "fast_path_threshold_ms",
            ),
            default_timeout_ms=_positive_int(
                dispatch.get("default_timeout_ms", DEFAULT_TIMEOUT_MS), "default_timeout_ms"
            ),
            fallback_on_unwired=_bool(
                dispatch.get("fallback_on_unwired", DEFAULT_FALLBACK_ON_UNWIRED),
                "fallback_on_unwired",
            ),
            cancel_remote_on_timeout=_bool(
                dispatch.get("cancel_remote_on_timeout", DEFAULT_CANCEL_REMOTE_ON_TIMEOUT),
                "cancel_remote_on_timeout",
            ),
            log_level=str(dispatch.get("log_level", DEFAULT_LOG_LEVEL)),
            backend_limits_ms=limits,
            config_path=config_path,
        )


def configure_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    """Route library logs to stderr at the given level.

    Example:
        ```python
        configure_logging("DEBUG")
        ```
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    logger.enable("safe_code_router")
