from __future__ import annotations

import contextlib
import json
import sys
import traceback
from typing import Any

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except ImportError:  # pragma: no cover - platform specific
    _resource = None


def _set_memory_limit(memory_limit_mb: int | None) -> str | None:
    """Cap the address space of this process; return a warning when not applied.

    Example:
        ```python
        warning = _set_memory_limit(256)
        ```
    """
    if not memory_limit_mb:
        return None
    if _resource is None:
        return "RLIMIT_AS unavailable on this platform"
    mem_bytes = int(memory_limit_mb) * 1024 * 1024
    try:
        _, current_hard = _resource.getrlimit(_resource.RLIMIT_AS)
        if current_hard in (-1, _resource.RLIM_INFINITY):
            target_hard = mem_bytes
        else:
            target_hard = min(mem_bytes, current_hard)
        _resource.setrlimit(_resource.RLIMIT_AS, (min(mem_bytes, target_hard), target_hard))
    except (ValueError, OSError) as exc:
        return f"RLIMIT_AS not applied: {exc}"
    return None


def _exit_code(code: Any) -> int:
    """Map a `SystemExit.code` onto a process exit status.

    Example:
        ```python
        status = _exit_code("bad input")  # 1
        ```
    """
    if code is None:
        return 0
    if isinstance(code, int):
        return code
    return 1


def main() -> int:
    """Run one request read from stdin and return the process exit status.

    Example:
        ```python
        status = main()
        ```
    """
    req = json.loads(sys.stdin.read() or "{}")
    code: str = req.get("code", "")
    input_data = req.get("input")

    warning = _set_memory_limit(req.get("memory_limit_mb"))
    if warning:
        sys.stderr.write(f"{warning}\n")

    try:
        byte_code = compile(code, "<user_code>", "exec")
    except SyntaxError as exc:
        sys.stderr.write(f"SyntaxError: {exc}\n")
        return 1

    exec_globals: dict[str, Any] = {
        "__name__": "__main__",
        "input": input_data,
        "INPUT": input_data,
        "result": None,
    }
    try:
        with contextlib.redirect_stdout(sys.stderr):
            exec(byte_code, exec_globals, exec_globals)
    except SystemExit as exc:
        status = _exit_code(exc.code)
        if status != 0:
            if isinstance(exc.code, str):
                sys.stderr.write(f"{exc.code}\n")
            return status
    except MemoryError:
        sys.stderr.write("MemoryError: memory limit exceeded\n")
        return 2
    except Exception:
        sys.stderr.write(traceback.format_exc())
        return 1

    result = exec_globals.get("result")
    value = input_data if result is None else result
    if value is not None:
        sys.stdout.write(json.dumps(value, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
