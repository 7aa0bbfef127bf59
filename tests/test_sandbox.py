"""Unit tests for the RestrictedPython script sandbox."""

from __future__ import annotations

import threading
import time

import pytest

from courier.models import HttpResponse, ScriptPhase
from courier.sandbox import SCRIPT_ERROR_TEST_NAMES, ScriptSandbox
from courier.script_api import RequestView, ResponseView, ScriptContext, ScriptInfo
from courier.variables import Scope, ScopeSnapshot


def _snapshot() -> ScopeSnapshot:
    return ScopeSnapshot(
        data_row=Scope.of("data", {"user": "ada"}),
        environment=Scope.of("env", {"token": "abc"}),
        collection_chain=(Scope.of("root", {"base": "https://api.example.com"}),),
        globals=Scope.of("globals", {"region": "eu"}),
    )


def _context(phase: ScriptPhase = ScriptPhase.TEST, status: int = 200, body: str = '{"id": 7, "tags": ["a"]}') -> ScriptContext:
    response = None
    if phase == ScriptPhase.TEST:
        response = ResponseView.from_response(
            HttpResponse(status=status, status_text="OK", headers={"Content-Type": "application/json"}, body=body)
        )
    return ScriptContext(
        phase=phase,
        snapshot=_snapshot(),
        request=RequestView(name="Get item", method="GET", url="https://api.example.com/items/7"),
        response=response,
        info=ScriptInfo(phase=phase.value, request_name="Get item", iteration=2, iteration_count=3),
    )


def test_empty_script_is_noop() -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, "   \n", _context())
    assert outcome.test_results == []
    assert outcome.error is None
    assert outcome.staged_updates.is_empty()


def test_passing_and_failing_tests_in_order() -> None:
    source = """
pm.test("status is 200", lambda: pm.response.to.have.status(200))
pm.test("id is 8", lambda: pm.expect(pm.response.json()["id"]).to.equal(8))
"""
    outcome = ScriptSandbox().run(ScriptPhase.TEST, source, _context())
    assert [(t.name, t.passed) for t in outcome.test_results] == [("status is 200", True), ("id is 8", False)]
    assert outcome.test_results[1].error == "Expected 8 but got 7"
    assert outcome.console_output[0] == "✓ status is 200"
    assert outcome.console_output[1] == "✗ id is 8"
    assert outcome.error is None


def test_def_functions_and_builtins_are_available() -> None:
    source = """
def check():
    data = pm.response.json()
    total = 0
    for t in data["tags"]:
        total += len(t)
    pm.expect(total).to.equal(1)
    pm.expect(sorted([3, 1, 2])).to.eql([1, 2, 3])

pm.test("helpers", check)
"""
    outcome = ScriptSandbox().run(ScriptPhase.TEST, source, _context())
    assert outcome.test_results[0].passed, outcome.test_results[0].error


def test_variable_writes_are_staged() -> None:
    source = """
pm.environment.set("token", 42)
pm.collection_variables.set("created", True)
pm.environment.unset("token2")
console.log("token now", pm.environment.get("token"))
"""
    ctx = _context(ScriptPhase.PRE_REQUEST)
    outcome = ScriptSandbox().run(ScriptPhase.PRE_REQUEST, source, ctx)
    assert outcome.staged_updates.environment == {"token": "42", "token2": None}
    assert outcome.staged_updates.collection == {"created": "true"}
    assert "Environment variable 'token' set to '42'" in outcome.console_output
    assert "token now 42" in outcome.console_output
    # the snapshot the script saw is unchanged
    assert ctx.snapshot.environment.get("token") == "abc"


def test_pm_variables_sees_staged_writes_and_chain() -> None:
    source = """
pm.environment.set("base", "https://override.example.com")
pm.test("chain", lambda: pm.expect(pm.variables.replace_in("{{base}}/{{user}}/{{region}}")).to.equal("https://override.example.com/ada/eu"))
pm.test("data", lambda: pm.expect(pm.iteration_data.get("user")).to.equal("ada"))
pm.test("info", lambda: pm.expect(pm.info.iteration).to.equal(2))
"""
    outcome = ScriptSandbox().run(ScriptPhase.TEST, source, _context())
    assert all(t.passed for t in outcome.test_results), [t.error for t in outcome.test_results]


def test_print_is_captured() -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, 'print("hello", "world")', _context())
    assert outcome.console_output == ["hello world"]


def test_runtime_error_becomes_failed_script_test() -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, "x = 1 / 0", _context())
    assert outcome.error is not None
    assert outcome.error.kind == "runtime"
    assert outcome.error.phase == "test"
    assert outcome.error.message.startswith("ZeroDivisionError")
    assert outcome.test_results[-1].name == SCRIPT_ERROR_TEST_NAMES[ScriptPhase.TEST]
    assert outcome.test_results[-1].passed is False
    assert outcome.console_output[-1].startswith("[ERROR] ")


def test_writes_before_error_are_kept() -> None:
    source = 'pm.environment.set("a", "1")\nraise ValueError("boom")'
    outcome = ScriptSandbox().run(ScriptPhase.PRE_REQUEST, source, _context(ScriptPhase.PRE_REQUEST))
    assert outcome.staged_updates.environment == {"a": "1"}
    assert outcome.error is not None and outcome.error.message == "ValueError: boom"
    assert outcome.test_results[-1].name == "Pre-request Script"


def test_syntax_error() -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, "pm.test(", _context())
    assert outcome.error is not None
    assert outcome.error.kind == "syntax"


def test_import_is_blocked() -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, "import os\nos.system('true')", _context())
    assert outcome.error is not None
    assert outcome.error.kind == "runtime"


def test_open_is_not_available() -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, "open('/etc/passwd')", _context())
    assert outcome.error is not None
    assert "NameError" in outcome.error.message


def test_dunder_access_is_rejected_at_compile_time() -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, "x = ().__class__.__bases__", _context())
    assert outcome.error is not None
    assert outcome.error.kind == "syntax"


def test_infinite_loop_times_out() -> None:
    outcome = ScriptSandbox(timeout_ms=100).run(ScriptPhase.TEST, "while True:\n    pass", _context())
    assert outcome.error is not None
    assert outcome.error.kind == "timeout"
    assert "timed out after 100ms" in outcome.error.message


def test_timeout_cannot_be_swallowed_by_except() -> None:
    source = """
while True:
    try:
        while True:
            pass
    except Exception:
        pass
"""
    outcome = ScriptSandbox(timeout_ms=100).run(ScriptPhase.TEST, source, _context())
    assert outcome.error is not None
    assert outcome.error.kind == "timeout"


def test_timeout_off_main_thread() -> None:
    outcomes = []

    def work() -> None:
        outcomes.append(ScriptSandbox(timeout_ms=100).run(ScriptPhase.TEST, "while True:\n    x = 1", _context()))

    t = threading.Thread(target=work)
    t.start()
    t.join(timeout=10)
    assert outcomes and outcomes[0].error is not None
    assert outcomes[0].error.kind == "timeout"


def test_skip_request_only_in_pre_request() -> None:
    pre = ScriptSandbox().run(ScriptPhase.PRE_REQUEST, "pm.execution.skip_request()", _context(ScriptPhase.PRE_REQUEST))
    assert pre.skip_requested is True
    assert pre.error is None

    post = ScriptSandbox().run(ScriptPhase.TEST, "pm.execution.skip_request()", _context())
    assert post.skip_requested is False
    assert post.error is not None and post.error.kind == "runtime"


def test_request_snapshot_is_read_only() -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, 'pm.request.url = "https://evil.example.com"', _context())
    assert outcome.error is not None


def test_json_helpers_are_available() -> None:
    source = """
data = json.loads(json.dumps({"a": [1, 2]}))
pm.test("json", lambda: pm.expect(data["a"]).to.eql([1, 2]))
pm.test("dates", lambda: pm.expect(date(2026, 1, 2) + timedelta(days=1)).to.equal(date(2026, 1, 3)))
"""
    outcome = ScriptSandbox().run(ScriptPhase.TEST, source, _context())
    assert outcome.error is None
    assert all(t.passed for t in outcome.test_results), [t.error for t in outcome.test_results]


@pytest.mark.parametrize("path", ["json.codecs", "json.decoder", "json.scanner", "datetime.sys", "date.time"])
def test_no_module_reachable_from_globals(path: str) -> None:
    outcome = ScriptSandbox().run(ScriptPhase.TEST, f"x = {path}", _context())
    assert outcome.error is not None
    assert outcome.error.kind == "runtime"
    assert "AttributeError" in outcome.error.message


def test_host_filesystem_and_process_are_out_of_reach() -> None:
    source = """
os = json.codecs.sys.modules["os"]
pm.environment.set("cwd", os.getcwd())
pm.environment.set("passwd", json.codecs.open("/etc/passwd").read()[:20])
"""
    outcome = ScriptSandbox().run(ScriptPhase.PRE_REQUEST, source, _context(ScriptPhase.PRE_REQUEST))
    assert outcome.error is not None
    assert outcome.staged_updates.is_empty()


def test_range_is_capped() -> None:
    outcome = ScriptSandbox(timeout_ms=1000).run(ScriptPhase.TEST, "x = sum(range(3 * 10**8))", _context())
    assert outcome.error is not None
    assert outcome.error.kind == "runtime"
    assert outcome.error.message.startswith("ValueError")


def test_long_builtin_call_is_killed_at_deadline() -> None:
    started = time.monotonic()
    outcome = ScriptSandbox(timeout_ms=200).run(ScriptPhase.TEST, "n = 10\nx = n ** n ** 8", _context())
    assert time.monotonic() - started < 5
    assert outcome.error is not None
    assert outcome.error.kind == "timeout"
    assert outcome.test_results[-1].name == "Test Script"
    assert outcome.test_results[-1].passed is False


def test_writes_before_timeout_are_kept() -> None:
    source = 'pm.environment.set("a", "1")\nwhile True:\n    pass'
    outcome = ScriptSandbox(timeout_ms=100).run(ScriptPhase.PRE_REQUEST, source, _context(ScriptPhase.PRE_REQUEST))
    assert outcome.error is not None and outcome.error.kind == "timeout"
    assert outcome.staged_updates.environment == {"a": "1"}


def test_inline_timeout_off_main_thread() -> None:
    outcomes = []

    def work() -> None:
        sandbox = ScriptSandbox(timeout_ms=100, isolate=False)
        outcomes.append(sandbox.run(ScriptPhase.TEST, "while True:\n    x = 1", _context()))

    t = threading.Thread(target=work)
    t.start()
    t.join(timeout=10)
    assert outcomes and outcomes[0].error is not None
    assert outcomes[0].error.kind == "timeout"


def test_inline_and_isolated_outcomes_match() -> None:
    source = """
pm.collection_variables.set("seen", "yes")
print("hi")
pm.test("ok", lambda: pm.response.to.have.status(200))
"""
    isolated = ScriptSandbox().run(ScriptPhase.TEST, source, _context())
    inline = ScriptSandbox(isolate=False).run(ScriptPhase.TEST, source, _context())
    assert isolated == inline
    assert isolated.staged_updates.collection == {"seen": "yes"}
