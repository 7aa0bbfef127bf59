"""Collection runner: iterations over a flattened request list, plus the file-driven run used by the CLI."""

from __future__ import annotations

import asyncio
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from rich.console import Console
from rich.live import Live

from .exceptions import CourierValidationError
from .executor import RequestExecutor
from .logging_config import bind_run_context, get_logger
from .models import (
    CollectionNode,
    CollectionRunResult,
    DataFile,
    EngineSettings,
    Environment,
    ExecutionResult,
    IterationResult,
    Request,
    ResultStatus,
    RunOptions,
    RunResult,
    RunStatus,
    StagedUpdates,
    TestSummary,
)
from .sandbox import ScriptSandbox
from .store import DataFileReader, EnvironmentReader, InMemoryWorkspace, TreeReader, VariableWriter
from .transport import HttpxTransport, create_client
from .tree import FlatRequest, find_path, flatten_requests
from .variables import Scope, ScopeSnapshot

logger = get_logger("runner")

MIN_ITERATIONS = 1
MAX_ITERATIONS = 100
# Seconds to milliseconds conversion
S_TO_MS = 1000.0
LIVE_REFRESH_PER_SEC = 4


def validate_run_options(options: RunOptions) -> None:
    """Raise CourierValidationError for out-of-range iteration count or delay."""
    if not isinstance(options.iterations, int) or not (MIN_ITERATIONS <= options.iterations <= MAX_ITERATIONS):
        raise CourierValidationError(
            f"iterations must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}",
            context={"iterations": options.iterations},
        )
    if options.delay_ms < 0:
        raise CourierValidationError("delay must be >= 0", context={"delay_ms": options.delay_ms})


@dataclass(slots=True)
class Progress:
    """Passed to the on_progress callback after every executed request."""

    result: CollectionRunResult
    iteration: IterationResult
    latest: RunResult
    execution: ExecutionResult
    iteration_count: int
    requests_per_iteration: int


@dataclass(slots=True)
class _RunPlan:
    root: CollectionNode
    requests: list[FlatRequest]
    environment: Environment | None
    data_file: DataFile | None
    globals: Scope
    iteration_count: int
    folder_scopes: dict[str, Scope] = field(default_factory=dict)


def to_run_result(request: Request, execution: ExecutionResult) -> RunResult:
    """Convert one execution into the per-request record of a collection run."""
    response = execution.response
    if execution.skipped:
        response_time = None
    elif response is not None:
        response_time = response.response_time_ms
    else:
        response_time = execution.elapsed_ms
    return RunResult(
        request_id=request.id,
        request_name=request.name,
        method=execution.request.method,
        url=execution.request.url,
        status=execution.status,
        timestamp=execution.executed_at,
        status_code=response.status if response else None,
        response_time=response_time,
        test_results=TestSummary.of(execution.test_results) if execution.test_results else None,
        error=execution.error,
        error_kind=execution.error_kind,
        script_errors=list(execution.script_errors),
    )


class CollectionRunner:
    """Drives N iterations over a collection or folder. One instance runs one collection at a time."""

    def __init__(
        self,
        trees: TreeReader,
        environments: EnvironmentReader,
        executor: RequestExecutor,
        data_files: DataFileReader | None = None,
        writer: VariableWriter | None = None,
    ) -> None:
        self.trees = trees
        self.environments = environments
        self.executor = executor
        self.data_files = data_files
        self.writer = writer
        self._cancel_requested = False

    def cancel(self) -> None:
        """Request cooperative cancellation; observed before the next request or iteration."""
        self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def _plan(self, collection_id: str, options: RunOptions) -> _RunPlan:
        validate_run_options(options)
        root = self.trees.get_subtree(collection_id)
        if root is None:
            raise CourierValidationError("Collection not found", context={"collection_id": collection_id})

        if options.folder_id:
            target = self.trees.get_subtree(collection_id, options.folder_id)
            path = find_path(root, options.folder_id) if target is not None else None
            if target is None or path is None:
                raise CourierValidationError("Folder not found", context={"folder_id": options.folder_id})
            requests = flatten_requests(target, path[1:])
        else:
            requests = flatten_requests(root)
        if not requests:
            raise CourierValidationError("No requests found to execute", context={"collection_id": collection_id})

        environment = None
        if options.environment_id:
            environment = self.environments.get_environment(options.environment_id)
            if environment is None:
                raise CourierValidationError("Environment not found", context={"environment_id": options.environment_id})

        data_file = None
        iteration_count = options.iterations
        if options.data_file_id:
            data_file = self.data_files.get_data_file(options.data_file_id) if self.data_files else None
            if data_file is None:
                raise CourierValidationError("Data file not found", context={"data_file_id": options.data_file_id})
            if data_file.row_count == 0:
                raise CourierValidationError("Data file has no rows", context={"data_file_id": options.data_file_id})
            iteration_count = min(options.iterations, data_file.row_count)

        folder_scopes: dict[str, Scope] = {}
        for flat in requests:
            for node in flat.ancestors[:-1]:
                if node.id not in folder_scopes:
                    folder_scopes[node.id] = Scope.from_variables(node.name, node.variables)

        return _RunPlan(
            root=root,
            requests=requests,
            environment=environment,
            data_file=data_file,
            globals=Scope.from_variables("globals", self.environments.get_globals()),
            iteration_count=iteration_count,
            folder_scopes=folder_scopes,
        )

    async def run(
        self,
        collection_id: str,
        options: RunOptions | None = None,
        on_progress: Callable[[Progress], None] | None = None,
    ) -> CollectionRunResult:
        """Run the collection (or options.folder_id) and return the finalized result.

        Raises CourierValidationError before any result exists; every other
        failure is captured into the returned result.
        """
        options = options or RunOptions()
        plan = self._plan(collection_id, options)
        self._cancel_requested = False

        per_iteration = len(plan.requests)
        result = CollectionRunResult(
            collection_id=collection_id,
            collection_name=plan.root.name,
            start_time=datetime.now(timezone.utc),
            total_requests=per_iteration * plan.iteration_count,
        )
        bind_run_context(logger, collection=plan.root.name).info(
            "Starting run: requests=%d, iterations=%d, folder=%s",
            per_iteration, plan.iteration_count, options.folder_id,
        )

        state = ScopeSnapshot(
            environment=Scope.from_variables(
                plan.environment.name if plan.environment else "environment",
                plan.environment.variables if plan.environment else [],
            ),
            collection_chain=(Scope.from_variables(plan.root.name, plan.root.variables),),
            globals=plan.globals,
        )
        run_updates = StagedUpdates()

        for i in range(plan.iteration_count):
            if self._cancel_requested:
                result.status = RunStatus.CANCELLED
                break
            row = plan.data_file.rows[i] if plan.data_file else None
            iteration = IterationResult(iteration=i + 1, data_row=dict(row) if row is not None else None)
            iteration_started = time.perf_counter()

            for index, flat in enumerate(plan.requests):
                if self._cancel_requested:
                    result.status = RunStatus.CANCELLED
                    break
                snapshot = state.with_data_row(row).with_collection_chain(
                    [*(plan.folder_scopes[n.id] for n in flat.ancestors[:-1]), state.collection_chain[-1]]
                )
                execution = await self.executor.execute(
                    flat.request,
                    snapshot,
                    ancestors=flat.ancestors,
                    iteration=i + 1,
                    iteration_count=plan.iteration_count,
                )
                state = state.with_updates(execution.staged_updates)
                run_updates = run_updates.merged(execution.staged_updates)

                run_result = to_run_result(flat.request, execution)
                iteration.results.append(run_result)
                if run_result.status == ResultStatus.PASSED:
                    iteration.passed += 1
                    result.total_passed += 1
                elif run_result.status == ResultStatus.FAILED:
                    iteration.failed += 1
                    result.total_failed += 1
                self._notify(on_progress, Progress(result, iteration, run_result, execution, plan.iteration_count, per_iteration))

                if options.stop_on_error and run_result.status == ResultStatus.FAILED:
                    bind_run_context(
                        logger, collection=plan.root.name, iteration=i + 1, request=flat.request.name
                    ).info("Stopping on error")
                    result.status = RunStatus.FAILED
                    break
                if options.delay_ms > 0 and index < per_iteration - 1:
                    await asyncio.sleep(options.delay_ms / S_TO_MS)

            iteration.total_time = (time.perf_counter() - iteration_started) * S_TO_MS
            result.total_time += iteration.total_time
            result.iterations.append(iteration)
            if result.status != RunStatus.RUNNING:
                break

        self._finalize(result, plan, run_updates)
        return result

    def _notify(self, on_progress: Callable[[Progress], None] | None, progress: Progress) -> None:
        if on_progress is None:
            return
        try:
            on_progress(progress)
        except Exception:
            logger.exception("Progress callback failed")

    def _finalize(self, result: CollectionRunResult, plan: _RunPlan, updates: StagedUpdates) -> None:
        result.end_time = datetime.now(timezone.utc)
        if result.status == RunStatus.RUNNING:
            result.status = RunStatus.COMPLETED
        else:
            result.total_requests = result.executed_requests
        bind_run_context(logger, collection=result.collection_name).info(
            "Run finished: status=%s, executed=%d, passed=%d, failed=%d",
            result.status.value, result.executed_requests, result.total_passed, result.total_failed,
        )
        if self.writer is None:
            return
        if updates.environment:
            if plan.environment is None:
                logger.debug("No environment selected; %d environment update(s) not persisted", len(updates.environment))
            else:
                self._persist(self.writer.persist_environment, plan.environment.id, updates.environment)
        if updates.collection:
            self._persist(self.writer.persist_collection, plan.root.id, updates.collection)

    @staticmethod
    def _persist(write: Callable[[str, Mapping[str, str | None]], None], target_id: str, updates: Mapping[str, str | None]) -> None:
        try:
            write(target_id, dict(updates))
        except Exception:
            logger.exception("Failed to persist variable updates for %s", target_id)


# --- file-driven runs (CLI) ---


@dataclass(slots=True)
class RunTargets:
    """What a file-driven run loaded into its workspace."""

    workspace: InMemoryWorkspace
    collection_id: str
    environment_id: str | None = None
    data_file_id: str | None = None


def load_workspace(
    collection_path: str | Path,
    environment_path: str | Path | None = None,
    data_path: str | Path | None = None,
    global_values: Mapping[str, str] | None = None,
) -> RunTargets:
    """Load a Postman collection, optional environment and data file into an InMemoryWorkspace."""
    from .datafile import load_data_file
    from .postman import load_collection, load_environment

    workspace = InMemoryWorkspace()
    root = workspace.add_collection(load_collection(collection_path))
    targets = RunTargets(workspace=workspace, collection_id=root.id)
    if environment_path is not None:
        targets.environment_id = workspace.add_environment(load_environment(environment_path)).id
    if data_path is not None:
        targets.data_file_id = workspace.add_data_file(load_data_file(data_path)).id
    for key, value in (global_values or {}).items():
        workspace.set_global(key, value)
    return targets


def _stdout_is_tty() -> bool:
    """True if stdout is a TTY (interactive terminal). False in Docker without -it, CI, pipes."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _install_cancel_handlers(runner: CollectionRunner) -> dict[int, Any]:
    """SIGINT/SIGTERM request cooperative cancellation. Returns the previous handlers."""

    def _handler(signum: int, frame: Any) -> None:
        logger.info("Signal %d received, cancelling after the current request", signum)
        runner.cancel()

    previous: dict[int, Any] = {}
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is None:
            continue
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            pass
    return previous


def _restore_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


async def run_targets(
    targets: RunTargets,
    options: RunOptions,
    settings: EngineSettings,
    live: bool = True,
    console: Console | None = None,
    client_kwargs: dict[str, Any] | None = None,
) -> CollectionRunResult:
    """Run a loaded workspace with a shared httpx client and optional live dashboard."""
    from .dashboard import create_live_panel, progress_line

    options.environment_id = targets.environment_id if options.environment_id is None else options.environment_id
    options.data_file_id = targets.data_file_id if options.data_file_id is None else options.data_file_id
    console = console or Console()
    async with create_client(settings, **(client_kwargs or {})) as client:
        executor = RequestExecutor(
            HttpxTransport(client),
            ScriptSandbox(timeout_ms=settings.script_timeout_ms),
            settings,
            history=targets.workspace,
        )
        runner = CollectionRunner(
            targets.workspace,
            targets.workspace,
            executor,
            data_files=targets.workspace,
            writer=targets.workspace,
        )
        previous = _install_cancel_handlers(runner)
        try:
            if live and _stdout_is_tty():
                with Live(console=console, refresh_per_second=LIVE_REFRESH_PER_SEC, transient=False) as live_ctx:
                    return await runner.run(
                        targets.collection_id,
                        options,
                        on_progress=lambda p: live_ctx.update(create_live_panel(p)),
                    )
            if live:
                return await runner.run(
                    targets.collection_id,
                    options,
                    on_progress=lambda p: console.print(progress_line(p), highlight=False),
                )
            return await runner.run(targets.collection_id, options)
        finally:
            _restore_handlers(previous)
