from __future__ import annotations

import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from typing import Mapping

from ..errors import ConfigurationError

DEFAULT_MICROSANDBOX_TEMPLATES = {
    "python": "code-interpreter-v1",
    "bash": "base",
    "javascript": "base",
    "typescript": "base",
}
DEFAULT_CLUSTER_IMAGES = {
    "python": "python:3.11-slim",
    "bash": "ubuntu:22.04",
    "javascript": "node:20-slim",
    "typescript": "node:20-slim",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]i?b?|b)?\s*$", re.IGNORECASE)
_MEMORY_FACTORS_MB = {"": 1.0, "b": 1 / (1024 * 1024), "k": 1 / 1024, "m": 1.0, "g": 1024.0, "t": 1024.0 * 1024}


def env_flag(env: Mapping[str, str], name: str) -> bool:
    """Return whether an environment flag is set to a truthy value.

    Example:
        ```python
        enabled = env_flag(os.environ, "BACALHAU_ENABLED")
        ```
    """
    return env.get(name, "").strip().lower() in _TRUE_VALUES


def memory_limit_mb(hint: str | None) -> int | None:
    """Convert a memory hint such as `512Mb` or `4Gi` into megabytes.

    Bare numbers are read as megabytes.

    Example:
        ```python
        limit = memory_limit_mb("4Gb")  # 4096
        ```
    """
    if hint is None or not str(hint).strip():
        return None
    match = _MEMORY_PATTERN.match(str(hint))
    if match is None:
        raise ConfigurationError(f"Unrecognized memory hint: {hint!r}")
    amount = float(match.group(1))
    unit = (match.group(2) or "").lower()[:1]
    limit = int(amount * _MEMORY_FACTORS_MB[unit])
    if limit <= 0:
        raise ConfigurationError(f"Memory hint must be positive: {hint!r}")
    return limit


@dataclass(frozen=True, slots=True)
class LocalRuntimeSettings:
    """Interpreter locations for the local backends.

    Example:
        ```python
        settings = LocalRuntimeSettings(python="/usr/bin/python3", node="node", bash="bash")
        ```
    """

    python: str = sys.executable
    node: str = "node"
    bash: str = "bash"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "LocalRuntimeSettings":
        """Read interpreter overrides from `SAFE_CODE_ROUTER_*` variables.

        Example:
            ```python
            settings = LocalRuntimeSettings.from_env({"SAFE_CODE_ROUTER_NODE": "/opt/node/bin/node"})
            ```
        """
        env = os.environ if env is None else env
        return cls(
            python=env.get("SAFE_CODE_ROUTER_PYTHON") or sys.executable,
            node=env.get("SAFE_CODE_ROUTER_NODE") or "node",
            bash=env.get("SAFE_CODE_ROUTER_BASH") or "bash",
        )


@dataclass(frozen=True, slots=True)
class MicrosandboxSettings:
    """Credentials and templates for the E2B microsandbox.

    Example:
        ```python
        settings = MicrosandboxSettings(api_key="e2b_...")
        ```
    """

    api_key: str | None = None
    templates: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_MICROSANDBOX_TEMPLATES))
    workdir: str = "/code"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "MicrosandboxSettings":
        """Read `E2B_API_KEY` and optional `E2B_TEMPLATE_<LANGUAGE>` overrides.

        Example:
            ```python
            settings = MicrosandboxSettings.from_env({"E2B_API_KEY": "k", "E2B_TEMPLATE_PYTHON": "py-custom"})
            ```
        """
        env = os.environ if env is None else env
        templates = dict(DEFAULT_MICROSANDBOX_TEMPLATES)
        for language in templates:
            override = env.get(f"E2B_TEMPLATE_{language.upper()}")
            if override:
                templates[language] = override
        return cls(api_key=env.get("E2B_API_KEY") or None, templates=templates)

    def template_for(self, language: str) -> str:
        """Return the sandbox template for a language.

        Example:
            ```python
            template = settings.template_for("python")
            ```
        """
        return self.templates.get(language, DEFAULT_MICROSANDBOX_TEMPLATES["javascript"])


@dataclass(frozen=True, slots=True)
class ClusterSettings:
    """Bacalhau CLI target and per-language images.

    Example:
        ```python
        settings = ClusterSettings(cli="bacalhau", api_host="bacalhau.internal", enabled=True)
        ```
    """

    cli: str = "bacalhau"
    api_host: str | None = None
    api_port: str | None = None
    enabled: bool = False
    images: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_CLUSTER_IMAGES))

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ClusterSettings":
        """Read `BACALHAU_*` variables.

        Example:
            ```python
            settings = ClusterSettings.from_env({"BACALHAU_API_HOST": "10.0.0.5"})
            ```
        """
        env = os.environ if env is None else env
        images = dict(DEFAULT_CLUSTER_IMAGES)
        for language in images:
            override = env.get(f"BACALHAU_IMAGE_{language.upper()}")
            if override:
                images[language] = override
        return cls(
            cli=env.get("BACALHAU_CLI") or "bacalhau",
            api_host=env.get("BACALHAU_API_HOST") or None,
            api_port=env.get("BACALHAU_API_PORT") or None,
            enabled=env_flag(env, "BACALHAU_ENABLED"),
            images=images,
        )

    @property
    def configured(self) -> bool:
        """Return whether the cluster endpoint was configured explicitly.

        Example:
            ```python
            ready = settings.configured
            ```
        """
        return self.enabled or bool(self.api_host)

    def cli_path(self) -> str | None:
        """Resolve the CLI executable on PATH.

        Example:
            ```python
            path = settings.cli_path()
            ```
        """
        return shutil.which(self.cli)


@dataclass(frozen=True, slots=True)
class WasmSettings:
    """WasmEdge service location.

    Example:
        ```python
        settings = WasmSettings(service_url="http://wasmedge:8080")
        ```
    """

    service_url: str | None = None
    enabled: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "WasmSettings":
        """Read `WASMEDGE_SERVICE_URL` and `WASMEDGE_ENABLED`.

        Example:
            ```python
            settings = WasmSettings.from_env({"WASMEDGE_ENABLED": "true"})
            ```
        """
        env = os.environ if env is None else env
        return cls(
            service_url=env.get("WASMEDGE_SERVICE_URL") or None,
            enabled=env_flag(env, "WASMEDGE_ENABLED"),
        )
