from __future__ import annotations

import argparse
import json
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter
from safe_code_router import (
    ConfigurationError,
    DispatchError,
    ExecutionRequest,
    RouterSettings,
    build_orchestrator,
    configure_logging,
)

_CONSOLE = Console(no_color=False)
_EXTENSION_LANGUAGES = {
    ".py": "python",
    ".sh": "bash",
    ".bash": "bash",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
}


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m scr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _add_constraint_flags(parser: argparse.ArgumentParser) -> None:
    """Register the routing flags shared by `select` and `run`.

    Example:
        ```python
        _add_constraint_flags(run_cmd)
        ```
    """
    parser.add_argument(
        "--backend",
        default="auto",
        help=(
            "Force a backend: microsandbox, local-vm, local-subprocess,\n"
            "wasm-sandbox, batch-cluster, or auto (default).\n"
            "Legacy names e2b, vm2, subprocess, wasmedge, bacalhau are accepted."
        ),
    )
    parser.add_argument("--requires-sandbox", action="store_true", help="Ask for an isolated backend.")
    parser.add_argument("--long-running", action="store_true", help="Route to the batch cluster.")
    parser.add_argument(
        "--expected-duration-ms",
        type=float,
        help="Expected run time; under the fast-path threshold enables the microsandbox.",
    )
    parser.add_argument("--timeout-ms", type=int, help="Caller timeout (default: dispatch.default_timeout_ms).")
    parser.add_argument("--gpu-count", type=int, default=0, help="GPUs requested from the batch cluster.")
    parser.add_argument("--memory", help="Memory hint, e.g. 512Mb or 4Gb.")
    parser.add_argument("--cpu", help="CPU hint forwarded to the batch cluster.")


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for safe-code-router operations.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m scr",
        description=(
            "safe-code-router CLI\n"
            "Inspect execution backends, dry-run routing decisions and run code\n"
            "through the same orchestrator applications embed."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m scr backends\n"
            "  python -m scr select --language python --long-running\n"
            "  python -m scr run job.py --input '{\"x\": 2}'\n"
            "  python -m scr run transform.js --requires-sandbox --expected-duration-ms 20\n\n"
            "Config Examples:\n"
            "  python -m scr --config router.toml --log-level DEBUG backends"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a router settings TOML file.\n"
            "Keys missing from the file keep their bundled defaults."
        ),
    )
    parser.add_argument(
        "--log-level",
        help="Log level for router diagnostics on stderr (default: dispatch.log_level).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    sub.add_parser(
        "backends",
        help="Show backend availability and remediation.",
        description=(
            "Probe every backend and show its capabilities.\n"
            "Unavailable backends list what to configure."
        ),
        formatter_class=_HELP_FORMATTER,
    )

    select_cmd = sub.add_parser(
        "select",
        help="Dry-run backend selection and fallback.",
        description=(
            "Show which backend a request would be routed to,\n"
            "after availability checks and fallback, without running it."
        ),
        epilog=(
            "Examples:\n"
            "  python -m scr select --language python --long-running\n"
            "  python -m scr select --language javascript --expected-duration-ms 10"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    select_cmd.add_argument("--language", required=True, help="javascript, typescript, python or bash.")
    _add_constraint_flags(select_cmd)

    run_cmd = sub.add_parser(
        "run",
        help="Execute a source file and print the result.",
        description=(
            "Execute one file through the orchestrator.\n"
            "Exit code is 0 on success and 1 on any failure."
        ),
        epilog=(
            "Examples:\n"
            "  python -m scr run script.py --input '{\"x\": 9}'\n"
            "  python -m scr run build.sh --backend local-subprocess"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("file", help="Source file to execute.")
    run_cmd.add_argument("--language", help="Override the language inferred from the file extension.")
    run_cmd.add_argument("--input", help="JSON input payload passed to the code.")
    _add_constraint_flags(run_cmd)

    return parser


def _load_settings(args: argparse.Namespace) -> RouterSettings:
    """Load router settings from `--config` or bundled defaults.

    Example:
        ```python
        settings = _load_settings(args)
        ```
    """
    if args.config:
        return RouterSettings.from_file(args.config)
    return RouterSettings()


def _infer_language(path: Path) -> str | None:
    """Guess the language from a file extension.

    Example:
        ```python
        language = _infer_language(Path("job.py"))  # "python"
        ```
    """
    return _EXTENSION_LANGUAGES.get(path.suffix.lower())


def _request_from_args(
    args: argparse.Namespace,
    *,
    language: str,
    source_code: str,
    input_payload: Any,
    settings: RouterSettings,
) -> ExecutionRequest:
    """Build an execution request from parsed CLI flags.

    Example:
        ```python
        req = _request_from_args(args, language="python", source_code="", input_payload=None, settings=settings)
        ```
    """
    return ExecutionRequest.from_dict(
        {
            "language": language,
            "source_code": source_code,
            "input_payload": input_payload,
            "timeout_ms": args.timeout_ms,
            "constraints": {
                "explicit_backend": args.backend,
                "requires_sandbox": args.requires_sandbox,
                "long_running": args.long_running,
                "expected_duration_ms": args.expected_duration_ms,
            },
            "resource_hints": {
                "gpu": args.gpu_count > 0,
                "gpu_count": args.gpu_count,
                "memory": args.memory,
                "cpu": args.cpu,
            },
        },
        default_timeout_ms=settings.default_timeout_ms,
    )


def _print_backends(rows: list[Any]) -> None:
    """Render backend health in a rich table.

    Example:
        ```python
        _print_backends(orchestrator.describe_backends())
        ```
    """
    table = Table(title="Execution Backends")
    table.add_column("Backend", style="cyan")
    table.add_column("Languages", style="magenta")
    table.add_column("Isolation")
    table.add_column("Latency")
    table.add_column("GPU")
    table.add_column("Max Run (ms)", justify="right")
    table.add_column("Wired")
    table.add_column("Available")
    table.add_column("Remediation")
    for row in rows:
        descriptor = row.descriptor
        table.add_row(
            row.backend_id.value,
            ", ".join(sorted(descriptor.supports_languages)),
            descriptor.isolation_level.value,
            descriptor.startup_latency_class.value,
            "yes" if descriptor.supports_gpu else "no",
            str(descriptor.max_single_run_ms),
            "yes" if row.wired else "no",
            "[green]yes[/green]" if row.available else "[red]no[/red]",
            row.remediation or "",
        )
    _CONSOLE.print(table)


def _print_error(message: str) -> None:
    """Render a failure panel.

    Example:
        ```python
        _print_error("Invalid --input JSON")
        ```
    """
    _CONSOLE.print(Panel.fit(message, style="bold red"))


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `scr` CLI command handler.

    Example:
        ```python
        code = main(["backends"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        settings = _load_settings(args)
    except ConfigurationError as exc:
        _print_error(str(exc))
        return 2
    configure_logging(args.log_level or settings.log_level)
    orchestrator = build_orchestrator(settings)

    try:
        if args.command == "backends":
            _print_backends(orchestrator.describe_backends())
            return 0

        if args.command == "select":
            request = _request_from_args(
                args,
                language=args.language,
                source_code="",
                input_payload=None,
                settings=settings,
            )
            try:
                plan = orchestrator.plan(request)
            except DispatchError as exc:
                payload = {"kind": exc.kind.value, "message": exc.message, "details": exc.details}
                _CONSOLE.print(Panel.fit(Pretty(payload), title="Not Routable", border_style="red"))
                return 1
            summary = {
                "selected": plan.selected.value,
                "target": plan.target.value,
                "fell_back": plan.fell_back,
                "budget_ms": plan.budget_ms,
            }
            _CONSOLE.print(Panel.fit(Pretty(summary), title="Route", border_style="cyan"))
            return 0

        if args.command == "run":
            path = Path(args.file)
            if not path.is_file():
                _print_error(f"File not found: {path}")
                return 2
            language = args.language or _infer_language(path)
            if language is None:
                _print_error(f"Cannot infer language for '{path.name}'; pass --language")
                return 2
            try:
                input_payload = json.loads(args.input) if args.input is not None else None
            except ValueError as exc:
                _print_error(f"Invalid --input JSON: {exc}")
                return 2
            request = _request_from_args(
                args,
                language=language,
                source_code=path.read_text(encoding="utf-8"),
                input_payload=input_payload,
                settings=settings,
            )
            result = orchestrator.execute(request)
            _CONSOLE.print(
                Panel.fit(
                    Pretty(result.to_dict()),
                    title="Result",
                    border_style="green" if result.success else "red",
                )
            )
            return 0 if result.success else 1
    except (ConfigurationError, ValueError) as exc:
        _print_error(str(exc))
        return 2
    finally:
        orchestrator.shutdown()

    parser.error("Unhandled command")
