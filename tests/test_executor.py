"""Unit tests for the four-phase RequestExecutor (fake transport, no network)."""

from __future__ import annotations

import asyncio

from courier.exceptions import CourierTransportError
from courier.executor import RequestExecutor, derive_status, effective_auth, script_source
from courier.models import (
    Auth,
    CollectionNode,
    EngineSettings,
    HttpResponse,
    KeyValue,
    NodeKind,
    Request,
    ResultStatus,
    ScriptPhase,
    TestResult,
)
from courier.store import InMemoryWorkspace
from courier.transport import TransportRequest
from courier.variables import Scope, ScopeSnapshot


class FakeTransport:
    def __init__(self, status: int = 200, body: str = '{"ok": true}', error: CourierTransportError | None = None) -> None:
        self.status = status
        self.body = body
        self.error = error
        self.sent: list[TransportRequest] = []

    async def send(self, request: TransportRequest) -> HttpResponse:
        self.sent.append(request)
        if self.error is not None:
            raise self.error
        return HttpResponse(status=self.status, status_text="OK", body=self.body, timing={"total": 5.0}, size={"total": 10})


def _snapshot(**env: str) -> ScopeSnapshot:
    return ScopeSnapshot(environment=Scope.of("env", env), collection_chain=(Scope.of("root", {}),))


def _execute(executor: RequestExecutor, request: Request, snapshot: ScopeSnapshot, **kwargs):
    return asyncio.run(executor.execute(request, snapshot, **kwargs))


def test_passed_without_tests_on_2xx() -> None:
    transport = FakeTransport()
    result = _execute(RequestExecutor(transport), Request(id="r", name="r", url="https://{{host}}/x"), _snapshot(host="a.example"))
    assert result.status == ResultStatus.PASSED
    assert transport.sent[0].url == "https://a.example/x"
    assert result.request.url == "https://a.example/x"
    assert result.test_results is None
    assert result.response is not None and result.response.status == 200


def test_failed_without_tests_on_4xx() -> None:
    result = _execute(RequestExecutor(FakeTransport(status=404)), Request(id="r", name="r", url="https://a"), _snapshot())
    assert result.status == ResultStatus.FAILED


def test_tests_decide_status_over_http_code() -> None:
    request = Request(id="r", name="r", url="https://a", test_script='pm.test("404 expected", lambda: pm.response.to.have.status(404))')
    result = _execute(RequestExecutor(FakeTransport(status=404)), request, _snapshot())
    assert result.status == ResultStatus.PASSED
    assert result.test_results == [TestResult(name="404 expected", passed=True)]


def test_pre_request_write_is_visible_to_resolution() -> None:
    transport = FakeTransport()
    request = Request(
        id="r",
        name="r",
        url="https://a.example/{{id}}",
        headers=[KeyValue("Authorization", "Bearer {{token}}")],
        pre_request_script='pm.environment.set("id", "42")\npm.environment.set("token", "t-" + pm.environment.get("seed"))',
    )
    result = _execute(RequestExecutor(transport), request, _snapshot(seed="s"))
    assert transport.sent[0].url == "https://a.example/42"
    assert transport.sent[0].headers["Authorization"] == "Bearer t-s"
    assert result.staged_updates.environment == {"id": "42", "token": "t-s"}


def test_test_script_sees_pre_request_writes() -> None:
    request = Request(
        id="r",
        name="r",
        url="https://a",
        pre_request_script='pm.environment.set("k", "v")',
        test_script='pm.test("k", lambda: pm.expect(pm.environment.get("k")).to.equal("v"))',
    )
    result = _execute(RequestExecutor(FakeTransport()), request, _snapshot())
    assert result.status == ResultStatus.PASSED


def test_skip_request_does_not_send() -> None:
    transport = FakeTransport()
    request = Request(id="r", name="r", url="https://a/{{x}}", pre_request_script="pm.execution.skip_request()", test_script="pm.test('t', lambda: None)")
    result = _execute(RequestExecutor(transport), request, _snapshot(x="1"))
    assert result.status == ResultStatus.SKIPPED
    assert result.skipped
    assert transport.sent == []
    assert result.response is None
    assert result.request.url == "https://a/1"


def test_transport_error_captured_and_test_script_still_runs() -> None:
    transport = FakeTransport(error=CourierTransportError("connection refused", kind="connection"))
    request = Request(id="r", name="r", url="https://a", test_script='pm.test("has error", lambda: pm.expect(pm.response.error).to.be.ok())')
    result = _execute(RequestExecutor(transport), request, _snapshot())
    assert result.error == "connection refused"
    assert result.error_kind == "connection"
    assert result.response is None
    # the only test passed, so the result passes even though nothing came back
    assert result.status == ResultStatus.PASSED


def test_transport_error_without_tests_fails() -> None:
    transport = FakeTransport(error=CourierTransportError("boom", kind="timeout"))
    result = _execute(RequestExecutor(transport), Request(id="r", name="r", url="https://a"), _snapshot())
    assert result.status == ResultStatus.FAILED
    assert result.error_kind == "timeout"


def test_invalid_json_body_is_a_request_error() -> None:
    from courier.models import RequestBody

    transport = FakeTransport()
    request = Request(id="r", name="r", method="POST", url="https://a", body=RequestBody(type="json", content="{oops"))
    result = _execute(RequestExecutor(transport), request, _snapshot())
    assert transport.sent == []
    assert result.error == "Invalid JSON in request body"
    assert result.error_kind == "request"


def test_block_unresolved() -> None:
    transport = FakeTransport()
    executor = RequestExecutor(transport, settings=EngineSettings(block_unresolved=True))
    result = _execute(executor, Request(id="r", name="r", url="https://{{host}}/{{path}}"), _snapshot())
    assert transport.sent == []
    assert result.error_kind == "unresolved"
    assert "host, path" in (result.error or "")
    assert result.status == ResultStatus.FAILED


def test_unresolved_sent_verbatim_by_default() -> None:
    transport = FakeTransport()
    _execute(RequestExecutor(transport), Request(id="r", name="r", url="https://a/{{missing}}"), _snapshot())
    assert "{{missing}}" in transport.sent[0].url


def test_script_error_recorded() -> None:
    request = Request(id="r", name="r", url="https://a", pre_request_script="undefined_name")
    result = _execute(RequestExecutor(FakeTransport()), request, _snapshot())
    assert len(result.script_errors) == 1
    assert result.script_errors[0].phase == "pre-request"
    # the request is still sent and the synthetic test fails it
    assert result.response is not None
    assert result.status == ResultStatus.FAILED


def test_inherited_auth_and_folder_scripts() -> None:
    folder = CollectionNode(
        id="F", name="F", kind=NodeKind.FOLDER,
        scripts={"pre-request": 'pm.environment.set("order", pm.environment.get("order", "") + "F")'},
    )
    root = CollectionNode(
        id="root", name="root",
        auth=Auth(type="bearer", token="{{token}}"),
        scripts={"pre-request": 'pm.environment.set("order", pm.environment.get("order", "") + "C")'},
    )
    request = Request(
        id="r", name="r", url="https://a",
        auth=Auth(type="inherit"),
        pre_request_script='pm.environment.set("order", pm.environment.get("order", "") + "R")',
    )
    transport = FakeTransport()
    result = _execute(RequestExecutor(transport), request, _snapshot(token="tok"), ancestors=(folder, root))
    assert transport.sent[0].headers["Authorization"] == "Bearer tok"
    assert result.request.auth_type == "bearer"
    assert result.staged_updates.environment["order"] == "CFR"


def test_effective_auth_defaults_to_none() -> None:
    request = Request(id="r", name="r", auth=Auth(type="inherit"))
    assert effective_auth(request, ()).type == "none"
    explicit = Request(id="r", name="r", auth=Auth(type="basic", username="u", password="p"))
    assert effective_auth(explicit, (CollectionNode(id="c", name="c", auth=Auth(type="bearer")),)) is explicit.auth


def test_script_source_order() -> None:
    root = CollectionNode(id="c", name="c", scripts={"test": "a = 1"})
    request = Request(id="r", name="r", test_script="b = 2")
    assert script_source(request, (root,), ScriptPhase.TEST) == "a = 1\nb = 2"
    assert script_source(request, (root,), ScriptPhase.PRE_REQUEST) == ""


def test_derive_status() -> None:
    ok = HttpResponse(status=204)
    assert derive_status([], ok, None) == ResultStatus.PASSED
    assert derive_status([], HttpResponse(status=500), None) == ResultStatus.FAILED
    assert derive_status([], None, "x") == ResultStatus.FAILED
    assert derive_status([TestResult("a", True), TestResult("b", False)], ok, None) == ResultStatus.FAILED


def test_history_is_recorded() -> None:
    workspace = InMemoryWorkspace()
    executor = RequestExecutor(FakeTransport(), history=workspace)
    _execute(executor, Request(id="r", name="Get", url="https://a"), _snapshot())
    assert len(workspace.history) == 1
    entry = workspace.history[0]
    assert entry.request_name == "Get"
    assert entry.status_code == 200
    assert entry.response_time == 5.0
