"""RestrictedPython sandbox for pre-request and test scripts.

Allowed: the ``pm`` API, ``console``, ``print``, ``json.loads``/``json.dumps``,
the datetime/date/timedelta classes and a small set of builtins (list, dict,
len, a capped range, sorted, ...). No module object is reachable from script
globals.

Blocked: imports, open, eval, exec, compile, underscore attribute access and
writes to anything but the script's own locals.

Each script runs in a forked worker process that is killed at its deadline,
so a long C-level call (a huge ``pow``, a builtin looping over a large
iterable) cannot stall the run. Inside the worker a SIGALRM timer stops
ordinary Python-level loops first, keeping the partial test results and
staged writes. Where ``fork`` is unavailable scripts run in-process with the
timer (or a trace deadline off the main thread).
"""

from __future__ import annotations

import json
import multiprocessing
import operator
import signal
import sys
import threading
import time
from datetime import date, datetime, timedelta
from functools import lru_cache, partial
from types import SimpleNamespace
from typing import Any, Callable

from RestrictedPython import compile_restricted, safe_builtins, utility_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.Limits import limited_builtins

from .exceptions import CourierScriptError
from .logging_config import get_logger
from .models import ScriptError, ScriptOutcome, ScriptPhase, StagedUpdates, TestResult
from .script_api import Console, PmApi, PrintCollector, ScriptContext

logger = get_logger("sandbox")

SCRIPT_ERROR_TEST_NAMES = {
    ScriptPhase.PRE_REQUEST: "Pre-request Script",
    ScriptPhase.TEST: "Test Script",
}

# Re-raise interval after the first alarm, so a bare ``except:`` in user code cannot outlive the deadline
_RETRIGGER_S = 0.05
# Time the worker gets past the deadline to report a timeout itself before it is killed
_KILL_GRACE_S = 0.25

_EXTRA_BUILTINS = (
    "list", "dict", "set", "tuple", "len", "min", "max", "sum", "abs",
    "sorted", "enumerate", "any", "all", "reversed",
)

_INPLACE_OPS: dict[str, Callable[[Any, Any], Any]] = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "|=": operator.ior,
    "&=": operator.iand,
}


class ScriptTimeout(BaseException):
    """Raised into a running script when its deadline passes.

    Derives from BaseException so ``except Exception`` in user code (and in
    ``pm.test``) does not swallow it.
    """


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    fn = _INPLACE_OPS.get(op)
    if fn is None:
        raise SyntaxError(f"Unsupported in-place operator: {op}")
    return fn(x, y)


def _apply(f: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return f(*args, **kwargs)


def _make_safe_builtins() -> dict[str, Any]:
    import builtins

    safe = dict(safe_builtins)
    safe.update(utility_builtins)
    for name in _EXTRA_BUILTINS:
        safe.setdefault(name, getattr(builtins, name))
    safe["range"] = limited_builtins["range"]
    return safe


_SAFE_BUILTINS = _make_safe_builtins()

# Functions only: a module here would expose its imports (json.codecs.sys, ...) as plain attributes
_JSON_API = SimpleNamespace(loads=json.loads, dumps=json.dumps)


@lru_cache(maxsize=256)
def compile_script(source: str, filename: str = "<script>") -> Any:
    """Compile ``source`` with RestrictedPython. Raises SyntaxError on failure."""
    code = compile_restricted(source, filename, "exec")
    if code is None:
        raise SyntaxError("RestrictedPython: compile failed")
    return code


def build_restricted_globals(pm: PmApi, console_output: list[str]) -> dict[str, Any]:
    """Globals for exec(): safe builtins, guards, json/datetime and the script API."""
    g: dict[str, Any] = {
        "__builtins__": _SAFE_BUILTINS,
        "__name__": "script",
        "__metaclass__": type,
        "_getattr_": safer_getattr,
        "_getiter_": default_guarded_getiter,
        "_getitem_": default_guarded_getitem,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
        "_print_": partial(PrintCollector, console_output),
        "json": _JSON_API,
        "datetime": datetime,
        "date": date,
        "timedelta": timedelta,
        "pm": pm,
        "console": Console(console_output),
    }
    return g


def _exec_with_alarm(code: Any, g: dict[str, Any], timeout_s: float) -> None:
    """Run exec(code, g) under SIGALRM. Only valid on the main thread."""

    def _handler(signum: int, frame: Any) -> None:
        raise ScriptTimeout()

    old = signal.signal(signal.SIGALRM, _handler)
    try:
        signal.setitimer(signal.ITIMER_REAL, timeout_s, _RETRIGGER_S)
        try:
            exec(code, g)
        finally:
            signal.setitimer(signal.ITIMER_REAL, 0)
    finally:
        signal.signal(signal.SIGALRM, old)


def _exec_with_trace(code: Any, g: dict[str, Any], timeout_s: float) -> None:
    """Run exec(code, g) with a line-trace deadline check (worker threads)."""
    deadline = time.monotonic() + timeout_s

    def _trace(frame: Any, event: str, arg: Any) -> Any:
        if time.monotonic() > deadline:
            raise ScriptTimeout()
        return _trace

    previous = sys.gettrace()
    sys.settrace(_trace)
    try:
        exec(code, g)
    finally:
        sys.settrace(previous)


def _can_use_alarm() -> bool:
    return hasattr(signal, "setitimer") and threading.current_thread() is threading.main_thread()


def _fork_context() -> Any:
    if "fork" not in multiprocessing.get_all_start_methods():
        return None
    return multiprocessing.get_context("fork")


def _outcome_to_payload(outcome: ScriptOutcome) -> dict[str, Any]:
    return {
        "tests": [t.to_dict() for t in outcome.test_results],
        "environment": dict(outcome.staged_updates.environment),
        "collection": dict(outcome.staged_updates.collection),
        "console": list(outcome.console_output),
        "error": outcome.error.to_dict() if outcome.error else None,
        "skip": outcome.skip_requested,
    }


def _outcome_from_payload(payload: dict[str, Any]) -> ScriptOutcome:
    return ScriptOutcome(
        test_results=[TestResult.from_dict(t) for t in payload["tests"]],
        staged_updates=StagedUpdates(environment=payload["environment"], collection=payload["collection"]),
        console_output=payload["console"],
        error=ScriptError.from_dict(payload["error"]) if payload["error"] else None,
        skip_requested=payload["skip"],
    )


def _isolated_worker(conn: Any, sandbox: "ScriptSandbox", phase: ScriptPhase, code: Any, context: ScriptContext) -> None:
    """Worker process entry point: run inline and send the outcome back."""
    try:
        conn.send(_outcome_to_payload(sandbox.run_inline(phase, code, context)))
    finally:
        conn.close()


class ScriptSandbox:
    """Executes user scripts with bounded globals and a wall-clock timeout.

    ``run`` never raises: compile errors, runtime errors and timeouts are
    reported in the returned ScriptOutcome. ``isolate=False`` keeps execution
    in the calling process.
    """

    def __init__(self, timeout_ms: float = 5000.0, isolate: bool = True) -> None:
        self.timeout_ms = timeout_ms
        self.isolate = isolate

    @property
    def timeout_s(self) -> float:
        return max(self.timeout_ms, 1.0) / 1000.0

    def run(self, phase: ScriptPhase, source: str, context: ScriptContext) -> ScriptOutcome:
        if not source or not source.strip():
            return ScriptOutcome()
        try:
            code = compile_script(source)
        except SyntaxError as e:
            return self._failed(phase, CourierScriptError(f"SyntaxError: {e}", kind="syntax", original_error=e))

        mp_context = _fork_context() if self.isolate else None
        if mp_context is None:
            return self.run_inline(phase, code, context)
        return self._run_isolated(mp_context, phase, code, context)

    def run_inline(self, phase: ScriptPhase, code: Any, context: ScriptContext) -> ScriptOutcome:
        """Execute compiled ``code`` in this process under the deadline timer."""
        tests: list[TestResult] = []
        console_output: list[str] = []
        env_updates: dict[str, str | None] = {}
        collection_updates: dict[str, str | None] = {}
        pm = PmApi(context, tests, console_output, env_updates, collection_updates)
        error: ScriptError | None = None
        try:
            self._execute(code, pm, console_output)
        except CourierScriptError as e:
            error = self._record(phase, e, tests, console_output)

        return ScriptOutcome(
            test_results=tests,
            staged_updates=StagedUpdates(environment=env_updates, collection=collection_updates),
            console_output=console_output,
            error=error,
            skip_requested=pm.execution.skip_requested,
        )

    def _run_isolated(self, mp_context: Any, phase: ScriptPhase, code: Any, context: ScriptContext) -> ScriptOutcome:
        receiver, sender = mp_context.Pipe(duplex=False)
        proc = mp_context.Process(target=_isolated_worker, args=(sender, self, phase, code, context), daemon=True)
        try:
            proc.start()
        except OSError as e:
            receiver.close()
            sender.close()
            logger.warning("Could not start script process (%s); running in-process", e)
            return self.run_inline(phase, code, context)
        sender.close()
        try:
            if not receiver.poll(self.timeout_s + _KILL_GRACE_S):
                logger.debug("Killing script process %s after %gms", proc.pid, self.timeout_ms)
                proc.kill()
                return self._failed(phase, self._timeout_error())
            try:
                return _outcome_from_payload(receiver.recv())
            except EOFError:
                return self._failed(
                    phase, CourierScriptError("Script process exited unexpectedly", kind="runtime")
                )
        finally:
            receiver.close()
            proc.join(_KILL_GRACE_S)
            if proc.is_alive():
                proc.kill()
                proc.join()

    def _timeout_error(self) -> CourierScriptError:
        return CourierScriptError(f"Script execution timed out after {self.timeout_ms:g}ms", kind="timeout")

    def _failed(self, phase: ScriptPhase, e: CourierScriptError) -> ScriptOutcome:
        tests: list[TestResult] = []
        console_output: list[str] = []
        error = self._record(phase, e, tests, console_output)
        return ScriptOutcome(test_results=tests, console_output=console_output, error=error)

    @staticmethod
    def _record(phase: ScriptPhase, e: CourierScriptError, tests: list[TestResult], console_output: list[str]) -> ScriptError:
        tests.append(TestResult(name=SCRIPT_ERROR_TEST_NAMES[phase], passed=False, error=e.message))
        console_output.append(f"[ERROR] {e.message}")
        logger.debug("%s script failed (%s): %s", phase.value, e.kind, e.message)
        return ScriptError(phase=phase.value, kind=e.kind, message=e.message)

    def _execute(self, code: Any, pm: PmApi, console_output: list[str]) -> None:
        g = build_restricted_globals(pm, console_output)
        timeout_s = self.timeout_s
        started = time.monotonic()
        try:
            if _can_use_alarm():
                _exec_with_alarm(code, g, timeout_s)
            else:
                _exec_with_trace(code, g, timeout_s)
        except ScriptTimeout as e:
            raise self._timeout_error() from e
        except Exception as e:
            raise CourierScriptError(f"{type(e).__name__}: {e}", kind="runtime", original_error=e) from e
        if time.monotonic() - started > timeout_s:
            # the deadline passed but user code caught every ScriptTimeout
            raise self._timeout_error()
