"""Rich live progress panel and console summary for collection runs."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .logging_config import get_logger
from .models import CollectionRunResult, ResultStatus, RunStatus
from .report import mask_url

if TYPE_CHECKING:
    from .runner import Progress

logger = get_logger("dashboard")

STATUS_STYLES = {
    ResultStatus.PASSED: "green",
    ResultStatus.FAILED: "red",
    ResultStatus.SKIPPED: "dim",
}
RUN_STATUS_STYLES = {
    RunStatus.COMPLETED: "bold green",
    RunStatus.FAILED: "bold red",
    RunStatus.CANCELLED: "bold yellow",
    RunStatus.RUNNING: "bold cyan",
}
# Most recent results shown under the live counters
LIVE_TAIL = 8


def build_counters_table(progress: "Progress") -> Table:
    """Single Rich grid with the current run counters."""
    result = progress.result
    done = sum(len(it.results) for it in result.iterations) + len(progress.iteration.results)
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")
    table.add_row("Iteration", f"{progress.iteration.iteration} / {progress.iteration_count}")
    table.add_row("Requests", f"{done} / {result.total_requests}")
    table.add_row("Passed", str(result.total_passed))
    table.add_row("Failed", Text(str(result.total_failed), style="red" if result.total_failed else "green"))
    return table


def _result_line(status: ResultStatus, name: str, method: str, status_code: int | None, response_time: float | None) -> Text:
    line = Text()
    line.append(f"{status.value:<8}", style=STATUS_STYLES.get(status, ""))
    line.append(f" {method:<6} {name}")
    if status_code is not None:
        line.append(f"  {status_code}", style="bold")
    if response_time is not None:
        line.append(f"  {response_time:.0f} ms", style="dim")
    return line


def create_live_panel(progress: "Progress") -> Panel:
    """Create Rich Panel for live display."""
    recent = progress.iteration.results[-LIVE_TAIL:]
    lines = [_result_line(r.status, r.request_name, r.method, r.status_code, r.response_time) for r in recent]
    title = Text()
    title.append("courier ", style="bold magenta")
    title.append(f"| {progress.result.collection_name}", style="dim")
    return Panel(Group(build_counters_table(progress), Text(""), *lines), title=title, border_style="blue")


def progress_line(progress: "Progress") -> Text:
    """One line per executed request when stdout is not a TTY (CI, Docker without -it)."""
    latest = progress.latest
    line = Text(f"[{progress.iteration.iteration}/{progress.iteration_count}] ")
    line.append_text(_result_line(latest.status, latest.request_name, latest.method, latest.status_code, latest.response_time))
    if latest.error:
        line.append(f"  {latest.error}", style="red")
    return line


def print_summary(result: CollectionRunResult, console: Console | None = None) -> None:
    """Coloured end-of-run summary: per-request table with failing tests, then totals."""
    console = console or Console()
    table = Table(title=f"{result.collection_name}", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Request")
    table.add_column("Method")
    table.add_column("URL", overflow="fold")
    table.add_column("Code", justify="right")
    table.add_column("Time (ms)", justify="right")
    table.add_column("Result")
    for it in result.iterations:
        for r in it.results:
            table.add_row(
                str(it.iteration),
                r.request_name,
                r.method,
                mask_url(r.url),
                str(r.status_code) if r.status_code is not None else "-",
                f"{r.response_time:.0f}" if r.response_time is not None else "-",
                Text(r.status.value, style=STATUS_STYLES.get(r.status, "")),
            )
            details: list[Text] = []
            if r.error:
                details.append(Text(f"{r.error_kind or 'error'}: {r.error}", style="red"))
            for e in r.script_errors:
                details.append(Text(f"{e.phase} script {e.kind}: {e.message}", style="yellow"))
            if r.test_results:
                for t in r.test_results.tests:
                    if not t.passed:
                        details.append(Text(f"✗ {t.name}: {t.error or ''}", style="red"))
            if details:
                table.add_row("", Text("\n").join(details), "", "", "", "", "")
    console.print(table)

    summary = Text()
    summary.append(f"{result.status.value.upper()}", style=RUN_STATUS_STYLES.get(result.status, ""))
    summary.append(
        f"  requests {result.executed_requests}/{result.total_requests}"
        f"  passed {result.total_passed}  failed {result.total_failed}  skipped {result.total_skipped}"
        f"  time {result.total_time:.0f} ms"
    )
    console.print(summary)
