"""Data models for the courier engine.

Collection trees, requests, environments and data files are read-only inputs
owned by the persistence collaborator. Run results are created and mutated by
exactly one CollectionRunner and serialize to camelCase documents so that
``CollectionRunResult.from_dict(result.to_dict()) == result``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class VariableKind(str, Enum):
    """How a variable value is displayed."""

    DEFAULT = "default"
    SECRET = "secret"


class NodeKind(str, Enum):
    COLLECTION = "COLLECTION"
    FOLDER = "FOLDER"


class RunStatus(str, Enum):
    """Collection run state. RUNNING is the only non-terminal state."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"  # stop-on-error triggered
    CANCELLED = "cancelled"  # cancel() observed at a checkpoint


class ResultStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ScriptPhase(str, Enum):
    PRE_REQUEST = "pre-request"
    TEST = "test"


# --- Inputs (read-only to the engine) ---


@dataclass(slots=True)
class Variable:
    key: str
    value: str = ""
    kind: VariableKind = VariableKind.DEFAULT
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "value": self.value, "type": self.kind.value, "enabled": self.enabled}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Variable":
        raw_kind = str(data.get("type") or data.get("kind") or "default").lower()
        kind = VariableKind.SECRET if raw_kind == "secret" else VariableKind.DEFAULT
        value = data.get("value")
        return cls(
            key=str(data.get("key", "")),
            value="" if value is None else str(value),
            kind=kind,
            enabled=data.get("enabled", True) is not False,
        )


@dataclass(slots=True)
class KeyValue:
    """A param, header or form row. Rows with enabled=False are ignored when sending."""

    key: str
    value: str = ""
    enabled: bool = True


@dataclass(slots=True)
class RequestBody:
    # none | json | raw | xml | x-www-form-urlencoded | form-data | binary
    type: str = "none"
    content: str | list[KeyValue] = ""


@dataclass(slots=True)
class Auth:
    # none | bearer | basic | apikey
    type: str = "none"
    token: str = ""
    username: str = ""
    password: str = ""
    key: str = ""
    value: str = ""
    add_to: str = "header"  # header | query


@dataclass(slots=True)
class Request:
    id: str
    name: str
    method: str = "GET"
    url: str = ""
    params: list[KeyValue] = field(default_factory=list)
    headers: list[KeyValue] = field(default_factory=list)
    body: RequestBody = field(default_factory=RequestBody)
    auth: Auth = field(default_factory=Auth)
    pre_request_script: str = ""
    test_script: str = ""
    order_index: int = 0
    timeout_ms: int | None = None
    follow_redirects: bool | None = None


@dataclass(slots=True)
class CollectionNode:
    """A collection root or a folder, with its ordered child requests and folders."""

    id: str
    name: str
    kind: NodeKind = NodeKind.COLLECTION
    parent_id: str | None = None
    order_index: int = 0
    variables: list[Variable] = field(default_factory=list)
    auth: Auth | None = None
    scripts: dict[str, str] = field(default_factory=dict)
    requests: list[Request] = field(default_factory=list)
    folders: list["CollectionNode"] = field(default_factory=list)

    def ordered_requests(self) -> list[Request]:
        # sorted() is stable: equal order_index keeps insertion order
        return sorted(self.requests, key=lambda r: r.order_index)

    def ordered_folders(self) -> list["CollectionNode"]:
        return sorted(self.folders, key=lambda f: f.order_index)


@dataclass(slots=True)
class Environment:
    id: str
    name: str
    variables: list[Variable] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "values": [v.to_dict() for v in self.variables]}


@dataclass(slots=True)
class DataFile:
    """Parsed CSV/JSON data file. One row is bound per iteration."""

    id: str
    name: str
    rows: list[dict[str, str]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass(slots=True)
class RunOptions:
    environment_id: str | None = None
    iterations: int = 1
    delay_ms: float = 0.0
    stop_on_error: bool = False
    folder_id: str | None = None
    data_file_id: str | None = None


@dataclass(slots=True)
class EngineSettings:
    """Knobs shared by the sandbox, the transport and the executor."""

    script_timeout_ms: float = 5000.0
    request_timeout_ms: float = 30000.0
    verify_ssl: bool = True
    follow_redirects: bool = True
    max_redirects: int = 5
    http2: bool = False
    block_unresolved: bool = False


# --- Script outcomes ---


@dataclass(slots=True)
class TestResult:
    __test__ = False  # not a pytest test class

    name: str
    passed: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "passed": self.passed}
        if self.error is not None:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestResult":
        return cls(name=data["name"], passed=bool(data["passed"]), error=data.get("error"))


@dataclass(slots=True)
class ScriptError:
    phase: str  # pre-request | test
    kind: str  # syntax | runtime | timeout
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "kind": self.kind, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScriptError":
        return cls(phase=data["phase"], kind=data["kind"], message=data["message"])


@dataclass(slots=True)
class StagedUpdates:
    """Variable writes produced by a script. A None value means unset."""

    environment: dict[str, str | None] = field(default_factory=dict)
    collection: dict[str, str | None] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.environment and not self.collection

    def merged(self, later: "StagedUpdates") -> "StagedUpdates":
        """Return a new StagedUpdates where writes from ``later`` win."""
        return StagedUpdates(
            environment={**self.environment, **later.environment},
            collection={**self.collection, **later.collection},
        )


@dataclass(slots=True)
class ScriptOutcome:
    test_results: list[TestResult] = field(default_factory=list)
    staged_updates: StagedUpdates = field(default_factory=StagedUpdates)
    console_output: list[str] = field(default_factory=list)
    error: ScriptError | None = None
    skip_requested: bool = False


# --- Single execution ---


@dataclass(slots=True)
class ResolvedRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    auth_type: str = "none"


@dataclass(slots=True)
class HttpResponse:
    status: int
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    cookies: list[dict[str, Any]] = field(default_factory=list)
    # total, connect, tls, first_byte, download (ms); phases the transport did not report are None
    timing: dict[str, float | None] = field(default_factory=dict)
    size: dict[str, int] = field(default_factory=dict)

    @property
    def response_time_ms(self) -> float:
        return float(self.timing.get("total") or 0.0)


@dataclass(slots=True)
class ExecutionResult:
    """Output of RequestExecutor.execute for one request."""

    request: ResolvedRequest
    status: ResultStatus
    executed_at: datetime
    response: HttpResponse | None = None
    test_results: list[TestResult] | None = None
    error: str | None = None
    error_kind: str | None = None
    script_errors: list[ScriptError] = field(default_factory=list)
    console_output: list[str] = field(default_factory=list)
    staged_updates: StagedUpdates = field(default_factory=StagedUpdates)
    elapsed_ms: float = 0.0

    @property
    def skipped(self) -> bool:
        return self.status == ResultStatus.SKIPPED


# --- Run results (serialized verbatim) ---


@dataclass(slots=True)
class TestSummary:
    __test__ = False

    passed: int = 0
    failed: int = 0
    tests: list[TestResult] = field(default_factory=list)

    @classmethod
    def of(cls, tests: list[TestResult]) -> "TestSummary":
        passed = sum(1 for t in tests if t.passed)
        return cls(passed=passed, failed=len(tests) - passed, tests=list(tests))

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "failed": self.failed, "tests": [t.to_dict() for t in self.tests]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestSummary":
        return cls(
            passed=int(data.get("passed", 0)),
            failed=int(data.get("failed", 0)),
            tests=[TestResult.from_dict(t) for t in data.get("tests") or []],
        )


@dataclass(slots=True)
class RunResult:
    request_id: str
    request_name: str
    method: str
    url: str
    status: ResultStatus
    timestamp: datetime
    status_code: int | None = None
    response_time: float | None = None
    test_results: TestSummary | None = None
    error: str | None = None
    error_kind: str | None = None
    script_errors: list[ScriptError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "requestId": self.request_id,
            "requestName": self.request_name,
            "method": self.method,
            "url": self.url,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.status_code is not None:
            out["statusCode"] = self.status_code
        if self.response_time is not None:
            out["responseTime"] = self.response_time
        if self.test_results is not None:
            out["testResults"] = self.test_results.to_dict()
        if self.error is not None:
            out["error"] = self.error
        if self.error_kind is not None:
            out["errorKind"] = self.error_kind
        if self.script_errors:
            out["scriptErrors"] = [e.to_dict() for e in self.script_errors]
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunResult":
        tr = data.get("testResults")
        return cls(
            request_id=data["requestId"],
            request_name=data["requestName"],
            method=data["method"],
            url=data["url"],
            status=ResultStatus(data["status"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            status_code=data.get("statusCode"),
            response_time=data.get("responseTime"),
            test_results=TestSummary.from_dict(tr) if tr is not None else None,
            error=data.get("error"),
            error_kind=data.get("errorKind"),
            script_errors=[ScriptError.from_dict(e) for e in data.get("scriptErrors") or []],
        )


@dataclass(slots=True)
class IterationResult:
    iteration: int  # 1-based
    results: list[RunResult] = field(default_factory=list)
    passed: int = 0
    failed: int = 0
    total_time: float = 0.0  # ms
    data_row: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "iteration": self.iteration,
            "results": [r.to_dict() for r in self.results],
            "passed": self.passed,
            "failed": self.failed,
            "totalTime": self.total_time,
        }
        if self.data_row is not None:
            out["dataRow"] = dict(self.data_row)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterationResult":
        row = data.get("dataRow")
        return cls(
            iteration=int(data["iteration"]),
            results=[RunResult.from_dict(r) for r in data.get("results") or []],
            passed=int(data.get("passed", 0)),
            failed=int(data.get("failed", 0)),
            total_time=float(data.get("totalTime", 0.0)),
            data_row=dict(row) if row is not None else None,
        )


@dataclass(slots=True)
class CollectionRunResult:
    collection_id: str
    collection_name: str
    start_time: datetime
    end_time: datetime | None = None
    total_requests: int = 0
    total_passed: int = 0
    total_failed: int = 0
    total_time: float = 0.0  # ms, sum of iteration times
    iterations: list[IterationResult] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING

    @property
    def executed_requests(self) -> int:
        return sum(len(it.results) for it in self.iterations)

    @property
    def total_skipped(self) -> int:
        return sum(1 for it in self.iterations for r in it.results if r.status == ResultStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "collectionId": self.collection_id,
            "collectionName": self.collection_name,
            "startTime": self.start_time.isoformat(),
            "totalRequests": self.total_requests,
            "totalPassed": self.total_passed,
            "totalFailed": self.total_failed,
            "totalTime": self.total_time,
            "iterations": [it.to_dict() for it in self.iterations],
            "status": self.status.value,
        }
        if self.end_time is not None:
            out["endTime"] = self.end_time.isoformat()
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CollectionRunResult":
        end = data.get("endTime")
        return cls(
            collection_id=data["collectionId"],
            collection_name=data["collectionName"],
            start_time=datetime.fromisoformat(data["startTime"]),
            end_time=datetime.fromisoformat(end) if end else None,
            total_requests=int(data.get("totalRequests", 0)),
            total_passed=int(data.get("totalPassed", 0)),
            total_failed=int(data.get("totalFailed", 0)),
            total_time=float(data.get("totalTime", 0.0)),
            iterations=[IterationResult.from_dict(it) for it in data.get("iterations") or []],
            status=RunStatus(data.get("status", RunStatus.RUNNING.value)),
        )
