"""CLI entry point for courier.

Runs a Postman collection (or a single URL with -m) through the collection
runner and writes the requested reports. Exit codes: 0 when every executed
request passed, 1 on failures or errors, 130 when the run was cancelled.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Coroutine

from rich.console import Console

from . import __version__
from .config import RunConfig, load_config, validate_run_config
from .dashboard import print_summary
from .exceptions import CourierError
from .logging_config import get_logger
from .manual import build_manual_collection
from .models import CollectionRunResult, RunStatus
from .postman import dump_environment, load_environment
from .report import generate_html_report, generate_junit_report, write_json_report
from .runner import MAX_ITERATIONS, RunTargets, load_workspace, run_targets
from .store import InMemoryWorkspace
from .tree import find_folder

logger = get_logger("cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130
REPORT_TIMESTAMP_FMT = "%Y%m%d_%H%M%S"


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    return asyncio.run(coro)


def _parse_key_value_args(values: list[str] | None) -> dict[str, str]:
    if not values:
        return {}
    out: dict[str, str] = {}
    for s in values:
        if "=" in s:
            k, _, v = s.partition("=")
            out[k.strip()] = v.strip()
    return out


def _parse_header_args(values: list[str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for s in values or []:
        if ":" in s:
            k, _, v = s.partition(":")
            out[k.strip()] = v.strip()
    return out


def _resolve_report_path(report_path: str | Path) -> Path:
    p = Path(report_path)
    if p.suffix.lower() != ".html":
        if not p.suffix or p.is_dir():
            p = p / "report.html"
        else:
            p = p.with_suffix(".html")
    # Add timestamp so back-to-back runs do not overwrite each other
    stem_ts = p.stem + "_" + datetime.now(timezone.utc).strftime(REPORT_TIMESTAMP_FMT)
    return p.parent / (stem_ts + p.suffix)


def _build_config(args: argparse.Namespace) -> RunConfig:
    """Config from -f (or defaults) with CLI flags applied on top."""
    config = load_config(args.config) if args.config else RunConfig()
    options, settings = config.options, config.settings
    if args.iterations is not None:
        options.iterations = args.iterations
    if args.delay is not None:
        options.delay_ms = args.delay
    if args.stop_on_error:
        options.stop_on_error = True
    if args.script_timeout is not None:
        settings.script_timeout_ms = args.script_timeout
    if args.timeout is not None:
        settings.request_timeout_ms = args.timeout
    if args.insecure:
        settings.verify_ssl = False
    if args.http2:
        settings.http2 = True
    if args.block_unresolved:
        settings.block_unresolved = True
    if args.folder is not None:
        config.folder = args.folder
    validate_run_config(config)
    return config


def _load_targets(args: argparse.Namespace, config: RunConfig) -> RunTargets:
    global_values = _parse_key_value_args(args.global_vars)
    if args.manual_url:
        workspace = InMemoryWorkspace()
        test_script = Path(args.test_script).read_text(encoding="utf-8") if args.test_script else ""
        root = workspace.add_collection(
            build_manual_collection(
                args.manual_url,
                method=args.method,
                headers=_parse_header_args(args.header),
                body=args.data,
                test_script=test_script,
            )
        )
        for key, value in global_values.items():
            workspace.set_global(key, value)
        targets = RunTargets(workspace=workspace, collection_id=root.id)
        if args.env_file:
            targets.environment_id = workspace.add_environment(load_environment(args.env_file)).id
        return targets

    targets = load_workspace(args.collection, args.env_file, args.data_file, global_values)
    if config.folder:
        folder = find_folder(targets.workspace.collections[targets.collection_id], config.folder)
        if folder is None:
            raise CourierError(f"Folder not found: {config.folder}")
        config.options.folder_id = folder.id
    if targets.data_file_id and args.iterations is None and not args.config:
        # one iteration per data row unless told otherwise
        rows = targets.workspace.data_files[targets.data_file_id].row_count
        config.options.iterations = max(1, min(rows, MAX_ITERATIONS))
    return targets


def _write_reports(args: argparse.Namespace, result: CollectionRunResult, targets: RunTargets, console: Console) -> None:
    if args.output:
        path = generate_html_report(_resolve_report_path(args.output), result)
        console.print(f"[green]Report written to[/green] {path}")
    if args.json_path:
        write_json_report(args.json_path, result)
        console.print(f"[dim]JSON report:[/dim] {args.json_path}")
    if args.junit_path:
        generate_junit_report(args.junit_path, result)
        console.print(f"[dim]JUnit report:[/dim] {args.junit_path}")
    if args.export_environment:
        if targets.environment_id is None:
            raise CourierError("--export-environment requires an environment file (-e)")
        dump_environment(targets.workspace.environments[targets.environment_id], args.export_environment)
        console.print(f"[dim]Environment written to[/dim] {args.export_environment}")


def exit_code_for(result: CollectionRunResult) -> int:
    if result.status == RunStatus.CANCELLED:
        return EXIT_CANCELLED
    if result.status == RunStatus.FAILED or result.total_failed > 0:
        return EXIT_FAILED
    return EXIT_OK


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="courier",
        description="Run Postman Collection v2.1 requests with Python pre-request/test scripts, "
        "variables, data-driven iterations and HTML/JSON/JUnit reports.",
    )
    parser.add_argument("-c", "--collection", help="Path to Postman Collection v2.1 JSON file (required when not using -m)")
    parser.add_argument("-e", "--environment", dest="env_file", metavar="PATH", help="Postman environment export to run with")
    parser.add_argument("-d", "--data", dest="data_file", metavar="PATH", help="CSV or JSON data file; one row per iteration")
    parser.add_argument("-f", "--config", default=None, help="Path to YAML run config (run: / settings: sections)")
    parser.add_argument("-n", "--iterations", type=int, default=None, help="Number of iterations (1-100)")
    parser.add_argument("--delay", type=float, default=None, metavar="MS", help="Delay between requests in ms")
    parser.add_argument("--stop-on-error", action="store_true", help="Stop the run at the first failed request")
    parser.add_argument("--folder", default=None, metavar="ID_OR_NAME", help="Run only this folder of the collection")
    parser.add_argument("--global", action="append", dest="global_vars", metavar="KEY=VALUE", help="Workspace global variable (can be repeated)")
    parser.add_argument("-o", "--output", default=None, help="Output path for HTML report (file or directory)")
    parser.add_argument("--json", metavar="PATH", dest="json_path", help="Write the full run result as JSON to PATH")
    parser.add_argument("--junit", metavar="PATH", dest="junit_path", help="Write JUnit XML report to PATH (for CI)")
    parser.add_argument("--export-environment", metavar="PATH", help="Write the environment, with script updates, to PATH")
    parser.add_argument("--no-live", action="store_true", help="Disable live Rich progress (headless mode)")
    parser.add_argument("--script-timeout", type=float, default=None, metavar="MS", help="Per-script timeout in ms")
    parser.add_argument("--timeout", type=float, default=None, metavar="MS", help="Per-request timeout in ms")
    parser.add_argument("--insecure", action="store_true", help="Do not verify TLS certificates")
    parser.add_argument("--http2", action="store_true", help="Enable HTTP/2")
    parser.add_argument("--block-unresolved", action="store_true", help="Do not send requests whose URL still has {{variables}}")
    parser.add_argument("-m", "--manual-url", metavar="URL", dest="manual_url", help="Run a single URL (no collection)")
    parser.add_argument("-X", "--method", default="GET", help="HTTP method for -m (default GET)")
    parser.add_argument("-H", "--header", action="append", metavar="NAME:VALUE", help="Header for -m (can be repeated)")
    parser.add_argument("--body", dest="data", default=None, help="Request body for -m")
    parser.add_argument("--test-script", default=None, metavar="PATH", help="Python test script file for -m")
    parser.add_argument("-v", "--version", action="version", version=f"courier {__version__}")
    args = parser.parse_args()

    def handle_error(e: BaseException) -> int:
        if isinstance(e, CourierError):
            print(f"Error: {e.message}", file=sys.stderr)
            return EXIT_FAILED
        if isinstance(e, (FileNotFoundError, ValueError)):
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return EXIT_FAILED

    if not args.collection and not args.manual_url:
        print("Error: -c/--collection required when not using -m/--manual-url", file=sys.stderr)
        return EXIT_FAILED

    console = Console()
    try:
        config = _build_config(args)
        targets = _load_targets(args, config)
        result = _run_async(
            run_targets(targets, config.options, config.settings, live=not args.no_live, console=console)
        )
        print_summary(result, console)
        _write_reports(args, result, targets, console)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_CANCELLED
    except Exception as e:
        return handle_error(e)
    return exit_code_for(result)


if __name__ == "__main__":
    sys.exit(main())
