"""Single-request pipeline: pre-request script, resolution, HTTP call, test script.

RequestExecutor.execute never raises for transport or script problems; they
are captured into the ExecutionResult so one run always yields one report.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Sequence

from .exceptions import CourierTransportError
from .logging_config import get_logger
from .models import (
    Auth,
    CollectionNode,
    EngineSettings,
    ExecutionResult,
    HttpResponse,
    Request,
    ResolvedRequest,
    ResultStatus,
    ScriptError,
    ScriptOutcome,
    ScriptPhase,
    StagedUpdates,
    TestResult,
)
from .sandbox import ScriptSandbox
from .script_api import RequestView, ResponseView, ScriptContext, ScriptInfo
from .store import HistoryEntry, HistorySink
from .transport import Transport, TransportRequest, normalize_url, prepare_request
from .variables import ScopeSnapshot, find_unresolved, resolve, resolve_request

logger = get_logger("executor")

# Seconds to milliseconds conversion
S_TO_MS = 1000.0


def effective_auth(request: Request, ancestors: Sequence[CollectionNode]) -> Auth:
    """Request auth, or the nearest ancestor's when the request inherits."""
    if request.auth.type != "inherit":
        return request.auth
    for node in ancestors:
        if node.auth is not None and node.auth.type != "inherit":
            return node.auth
    return Auth()


def script_source(request: Request, ancestors: Sequence[CollectionNode], phase: ScriptPhase) -> str:
    """Collection and folder scripts (outermost first) followed by the request's own script."""
    own = request.pre_request_script if phase == ScriptPhase.PRE_REQUEST else request.test_script
    parts = [node.scripts.get(phase.value, "") for node in reversed(ancestors)]
    parts.append(own)
    return "\n".join(p for p in parts if p and p.strip())


def derive_status(tests: list[TestResult], response: HttpResponse | None, error: str | None) -> ResultStatus:
    """Failed if any test failed; with no tests, failed on HTTP status >= 400 or transport failure."""
    if tests:
        return ResultStatus.FAILED if any(not t.passed for t in tests) else ResultStatus.PASSED
    if error is not None or response is None or response.status >= 400:
        return ResultStatus.FAILED
    return ResultStatus.PASSED


class _Collected:
    """Accumulates outcomes of both script phases."""

    def __init__(self) -> None:
        self.tests: list[TestResult] = []
        self.console: list[str] = []
        self.errors: list[ScriptError] = []
        self.staged = StagedUpdates()

    def add(self, outcome: ScriptOutcome) -> None:
        self.tests.extend(outcome.test_results)
        self.console.extend(outcome.console_output)
        if outcome.error is not None:
            self.errors.append(outcome.error)
        self.staged = self.staged.merged(outcome.staged_updates)


class RequestExecutor:
    """Runs the four phases for one request against an immutable scope snapshot."""

    def __init__(
        self,
        transport: Transport,
        sandbox: ScriptSandbox | None = None,
        settings: EngineSettings | None = None,
        history: HistorySink | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.transport = transport
        self.sandbox = sandbox or ScriptSandbox(timeout_ms=self.settings.script_timeout_ms)
        self.history = history

    async def execute(
        self,
        request: Request,
        snapshot: ScopeSnapshot,
        *,
        ancestors: Sequence[CollectionNode] = (),
        iteration: int = 1,
        iteration_count: int = 1,
    ) -> ExecutionResult:
        started = time.perf_counter()
        executed_at = datetime.now(timezone.utc)
        collected = _Collected()

        def info(phase: ScriptPhase) -> ScriptInfo:
            return ScriptInfo(
                phase=phase.value,
                request_name=request.name,
                request_id=request.id,
                iteration=iteration,
                iteration_count=iteration_count,
            )

        # Phase 1: pre-request script against the raw request
        pre_source = script_source(request, ancestors, ScriptPhase.PRE_REQUEST)
        if pre_source:
            outcome = self.sandbox.run(
                ScriptPhase.PRE_REQUEST,
                pre_source,
                ScriptContext(ScriptPhase.PRE_REQUEST, snapshot, RequestView.from_raw(request), None, info(ScriptPhase.PRE_REQUEST)),
            )
            collected.add(outcome)
            snapshot = snapshot.with_updates(outcome.staged_updates)
            if outcome.skip_requested:
                logger.debug("Request %s skipped by pre-request script", request.name)
                scopes = snapshot.scopes()
                return self._result(
                    ResolvedRequest(method=request.method, url=resolve(request.url, scopes), auth_type=request.auth.type),
                    ResultStatus.SKIPPED,
                    executed_at,
                    started,
                    collected,
                )

        # Phase 2: resolve against the updated snapshot
        auth = effective_auth(request, ancestors)
        raw = request if auth is request.auth else replace(request, auth=auth)
        resolved = resolve_request(raw, snapshot.scopes())

        # Phase 3: HTTP call
        response: HttpResponse | None = None
        error: str | None = None
        error_kind: str | None = None
        wire: TransportRequest | None = None
        unresolved = find_unresolved(resolved.url) if self.settings.block_unresolved else []
        if unresolved:
            error = "Unresolved variables in URL: " + ", ".join(unresolved)
            error_kind = "unresolved"
        else:
            try:
                wire = prepare_request(resolved, self.settings)
                response = await self.transport.send(wire)
            except CourierTransportError as e:
                error, error_kind = e.message, e.kind
                logger.debug("Request %s failed: %s", request.name, e)
        summary = (
            wire.summary(auth.type)
            if wire is not None
            else ResolvedRequest(method=resolved.method.upper(), url=normalize_url(resolved.url), auth_type=auth.type)
        )

        # Phase 4: test script, also after a transport failure
        test_source = script_source(request, ancestors, ScriptPhase.TEST)
        if test_source:
            outcome = self.sandbox.run(
                ScriptPhase.TEST,
                test_source,
                ScriptContext(
                    ScriptPhase.TEST,
                    snapshot,
                    RequestView.from_resolved(request.name, summary),
                    ResponseView.from_response(response, error),
                    info(ScriptPhase.TEST),
                ),
            )
            collected.add(outcome)

        status = derive_status(collected.tests, response, error)
        result = self._result(summary, status, executed_at, started, collected, response, error, error_kind)
        self._record_history(request, result)
        return result

    def _result(
        self,
        summary: ResolvedRequest,
        status: ResultStatus,
        executed_at: datetime,
        started: float,
        collected: _Collected,
        response: HttpResponse | None = None,
        error: str | None = None,
        error_kind: str | None = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            request=summary,
            status=status,
            executed_at=executed_at,
            response=response,
            test_results=collected.tests or None,
            error=error,
            error_kind=error_kind,
            script_errors=collected.errors,
            console_output=collected.console,
            staged_updates=collected.staged,
            elapsed_ms=(time.perf_counter() - started) * S_TO_MS,
        )

    def _record_history(self, request: Request, result: ExecutionResult) -> None:
        if self.history is None:
            return
        response = result.response
        entry = HistoryEntry(
            request_id=request.id,
            request_name=request.name,
            method=result.request.method,
            url=result.request.url,
            executed_at=result.executed_at,
            request_headers=dict(result.request.headers),
            request_body=result.request.body,
            status_code=response.status if response else None,
            status_text=response.status_text if response else None,
            response_headers=dict(response.headers) if response else {},
            response_body=response.body if response else None,
            response_time=response.response_time_ms if response else None,
            response_size=response.size.get("total") if response else None,
            error=result.error,
        )
        loop = asyncio.get_running_loop()
        loop.run_in_executor(None, self._safe_record, entry)

    def _safe_record(self, entry: HistoryEntry) -> None:
        try:
            self.history.record(entry)  # type: ignore[union-attr]
        except Exception:
            logger.exception("History sink failed for request %s", entry.request_name)

