"""Unit tests for dashboard (counters table, live panel, progress line, summary)."""

from __future__ import annotations

from datetime import datetime, timezone
from io import StringIO

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from courier.dashboard import build_counters_table, create_live_panel, print_summary, progress_line
from courier.models import (
    CollectionRunResult,
    ExecutionResult,
    IterationResult,
    ResolvedRequest,
    ResultStatus,
    RunResult,
)
from courier.runner import Progress


def _progress(error: str | None = None) -> Progress:
    now = datetime.now(timezone.utc)
    latest = RunResult(
        request_id="r1",
        request_name="Get users",
        method="GET",
        url="https://api.example.com/users",
        status=ResultStatus.FAILED if error else ResultStatus.PASSED,
        timestamp=now,
        status_code=None if error else 200,
        response_time=12.0,
        error=error,
    )
    iteration = IterationResult(iteration=1, results=[latest], passed=0 if error else 1, failed=1 if error else 0)
    result = CollectionRunResult(collection_id="c", collection_name="API", start_time=now, total_requests=4)
    execution = ExecutionResult(request=ResolvedRequest(method="GET", url=latest.url), status=latest.status, executed_at=now)
    return Progress(result, iteration, latest, execution, iteration_count=2, requests_per_iteration=2)


def _render(renderable) -> str:
    console = Console(file=StringIO(), width=160, color_system=None)
    console.print(renderable)
    return console.file.getvalue()  # type: ignore[attr-defined]


def test_build_counters_table() -> None:
    table = build_counters_table(_progress())
    assert isinstance(table, Table)
    out = _render(table)
    assert "1 / 2" in out
    assert "1 / 4" in out


def test_create_live_panel() -> None:
    panel = create_live_panel(_progress())
    assert isinstance(panel, Panel)
    out = _render(panel)
    assert "courier" in out
    assert "Get users" in out


def test_progress_line_includes_error() -> None:
    line = progress_line(_progress(error="connection refused"))
    assert line.plain.startswith("[1/2] failed")
    assert "connection refused" in line.plain
    assert "200" not in line.plain


def test_print_summary(sample_run_result: CollectionRunResult) -> None:
    console = Console(file=StringIO(), width=200, color_system=None)
    print_summary(sample_run_result, console)
    out = console.file.getvalue()  # type: ignore[attr-defined]
    assert "Users API" in out
    assert "COMPLETED" in out
    assert "Expected 201 but got 500" in out
    assert "test script runtime: KeyError" in out
    assert "token=secret" not in out
    assert "skipped 2" in out
