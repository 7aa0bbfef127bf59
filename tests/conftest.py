"""Pytest fixtures for courier tests."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import httpx
import pytest

from courier.models import (
    Auth,
    CollectionNode,
    CollectionRunResult,
    IterationResult,
    KeyValue,
    NodeKind,
    Request,
    ResultStatus,
    RunResult,
    RunStatus,
    ScriptError,
    TestResult,
    TestSummary,
    Variable,
)

POSTMAN_SCHEMA = "https://schema.getpostman.com/json/collection/v2.1.0/collection.json"


@pytest.fixture
def sample_postman_collection_path(tmp_path: Path) -> Path:
    """Postman v2.1 collection: one root request and a folder with two requests and Python scripts."""
    content = """{
  "info": { "_postman_id": "col-1", "name": "Test", "schema": "%s" },
  "variable": [ { "key": "base", "value": "https://api.example.com" } ],
  "auth": { "type": "bearer", "bearer": [ { "key": "token", "value": "{{token}}" } ] },
  "item": [
    {
      "id": "req-root",
      "name": "Health",
      "request": { "method": "GET", "url": { "raw": "{{base}}/health" } }
    },
    {
      "id": "folder-users",
      "name": "Users",
      "variable": [ { "key": "resource", "value": "users" } ],
      "item": [
        {
          "id": "req-list",
          "name": "List users",
          "event": [
            {
              "listen": "test",
              "script": { "type": "text/x-python", "exec": [ "pm.test('status is 200', lambda: pm.response.to.have.status(200))" ] }
            }
          ],
          "request": {
            "method": "GET",
            "header": [ { "key": "Accept", "value": "application/json" } ],
            "url": {
              "raw": "{{base}}/{{resource}}?page=1",
              "query": [ { "key": "page", "value": "1" } ]
            }
          }
        },
        {
          "id": "req-create",
          "name": "Create user",
          "event": [
            {
              "listen": "prerequest",
              "script": { "type": "text/javascript", "exec": [ "pm.environment.set('x', 1)" ] }
            }
          ],
          "request": {
            "method": "POST",
            "auth": { "type": "noauth" },
            "body": { "mode": "raw", "raw": "{\\"name\\": \\"{{name}}\\"}", "options": { "raw": { "language": "json" } } },
            "url": "{{base}}/{{resource}}"
          }
        }
      ]
    }
  ]
}
""" % POSTMAN_SCHEMA
    p = tmp_path / "collection.json"
    p.write_text(content, encoding="utf-8")
    return p


@pytest.fixture
def sample_environment_path(tmp_path: Path) -> Path:
    content = """{
  "id": "env-1",
  "name": "Staging",
  "values": [
    { "key": "token", "value": "abc123", "enabled": true },
    { "key": "name", "value": "Ada", "enabled": true },
    { "key": "unused", "value": "x", "enabled": false }
  ]
}
"""
    p = tmp_path / "staging.postman_environment.json"
    p.write_text(content, encoding="utf-8")
    return p


@pytest.fixture
def sample_csv_path(tmp_path: Path) -> Path:
    p = tmp_path / "users.csv"
    p.write_text("name , role\n Ada , admin\n\nGrace,user\n", encoding="utf-8")
    return p


@pytest.fixture
def make_request() -> Callable[..., Request]:
    counter = {"n": 0}

    def _make(name: str | None = None, url: str = "https://api.example.com/items", **kwargs: object) -> Request:
        counter["n"] += 1
        rid = f"req-{counter['n']}"
        return Request(id=rid, name=name or rid, url=url, **kwargs)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def simple_tree(make_request: Callable[..., Request]) -> CollectionNode:
    """Root with requests r1, r2 and a folder F holding r3; F defines folderVar."""
    folder = CollectionNode(
        id="F",
        name="Folder",
        kind=NodeKind.FOLDER,
        parent_id="root",
        variables=[Variable("folderVar", "from-folder")],
        requests=[make_request("r3", url="https://api.example.com/{{folderVar}}")],
    )
    return CollectionNode(
        id="root",
        name="Root",
        variables=[Variable("colVar", "from-collection")],
        auth=Auth(type="bearer", token="{{token}}"),
        requests=[
            make_request("r1", order_index=0),
            make_request("r2", order_index=1, headers=[KeyValue("X-Col", "{{colVar}}")]),
        ],
        folders=[folder],
    )


@pytest.fixture
def json_transport() -> httpx.MockTransport:
    """httpx.MockTransport answering every request with 200 and a small JSON body."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    return httpx.MockTransport(handler)


@pytest.fixture
def sample_run_result() -> CollectionRunResult:
    """Two-iteration result with a passed, a failed (test + script error) and a skipped request."""
    started = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    passed = RunResult(
        request_id="r1",
        request_name="List users",
        method="GET",
        url="https://api.example.com/users?token=secret",
        status=ResultStatus.PASSED,
        timestamp=started,
        status_code=200,
        response_time=42.0,
        test_results=TestSummary.of([TestResult("status is 200", True)]),
    )
    failed = RunResult(
        request_id="r2",
        request_name="Create user",
        method="POST",
        url="https://api.example.com/users",
        status=ResultStatus.FAILED,
        timestamp=started,
        status_code=500,
        response_time=80.5,
        test_results=TestSummary.of([TestResult("created", False, "Expected 201 but got 500")]),
        script_errors=[ScriptError(phase="test", kind="runtime", message="KeyError: 'id'")],
    )
    skipped = RunResult(
        request_id="r3",
        request_name="Cleanup",
        method="DELETE",
        url="https://api.example.com/users/1",
        status=ResultStatus.SKIPPED,
        timestamp=started,
    )
    return CollectionRunResult(
        collection_id="col-1",
        collection_name="Users API",
        start_time=started,
        end_time=datetime(2026, 3, 1, 12, 0, 2, tzinfo=timezone.utc),
        total_requests=6,
        total_passed=2,
        total_failed=2,
        total_time=250.0,
        iterations=[
            IterationResult(iteration=1, results=[passed, failed, skipped], passed=1, failed=1, total_time=125.0, data_row={"user": "ada"}),
            IterationResult(iteration=2, results=[passed, failed, skipped], passed=1, failed=1, total_time=125.0, data_row={"user": "bob"}),
        ],
        status=RunStatus.COMPLETED,
    )
