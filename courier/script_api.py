"""The ``pm`` object exposed to pre-request and test scripts.

Scripts only ever see these objects (plus a few safe builtins). Request and
response are read-only snapshots; variable writes are staged into plain dicts
that the sandbox hands back to the caller, they never touch shared state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

import jsonschema
import orjson

from .models import HttpResponse, Request, ResolvedRequest, ScriptPhase, StagedUpdates, TestResult
from .variables import ScopeSnapshot, resolve

_MISSING = object()

PASS_MARK = "✓"
FAIL_MARK = "✗"


def stringify(value: Any) -> str:
    """Variables are stored as strings; mirror what a JSON-minded user expects."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return orjson.dumps(value, default=str).decode("utf-8")


def _describe(value: Any) -> str:
    try:
        return orjson.dumps(value, default=str).decode("utf-8")
    except TypeError:
        return repr(value)


# --- console capture ---


class Console:
    """console.log / info / warn / error, captured into the outcome."""

    def __init__(self, sink: list[str]) -> None:
        self._sink = sink

    def _emit(self, prefix: str, args: tuple[Any, ...]) -> None:
        self._sink.append(prefix + " ".join(str(a) for a in args))

    def log(self, *args: Any) -> None:
        self._emit("", args)

    def info(self, *args: Any) -> None:
        self._emit("[INFO] ", args)

    def warn(self, *args: Any) -> None:
        self._emit("[WARN] ", args)

    def error(self, *args: Any) -> None:
        self._emit("[ERROR] ", args)


class PrintCollector:
    """Target of RestrictedPython's rewritten ``print()`` calls."""

    def __init__(self, sink: list[str], _getattr_: Callable[..., Any] | None = None) -> None:
        self._sink = sink
        self._getattr_ = _getattr_

    def write(self, text: str) -> None:
        self._sink.append(str(text))

    def __call__(self) -> str:
        return "\n".join(self._sink)

    def _call_print(self, *objects: Any, **kwargs: Any) -> None:
        sep = kwargs.get("sep")
        self._sink.append((" " if sep is None else str(sep)).join(str(o) for o in objects))


# --- variables ---


class ReadOnlyVariables:
    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = values

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def has(self, key: str) -> bool:
        return key in self._values

    def to_object(self) -> dict[str, str]:
        return dict(self._values)


class StagedVariables(ReadOnlyVariables):
    """Reads see this script's own pending writes first; writes are staged, not applied."""

    def __init__(self, label: str, values: Mapping[str, str], staged: dict[str, str | None], console: list[str]) -> None:
        super().__init__(values)
        self._label = label
        self._staged = staged
        self._console = console

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._staged:
            value = self._staged[key]
            return default if value is None else value
        return self._values.get(key, default)

    def has(self, key: str) -> bool:
        if key in self._staged:
            return self._staged[key] is not None
        return key in self._values

    def set(self, key: str, value: Any) -> None:
        text = stringify(value)
        self._staged[str(key)] = text
        self._console.append(f"{self._label} variable '{key}' set to '{text}'")

    def unset(self, key: str) -> None:
        self._staged[str(key)] = None
        self._console.append(f"{self._label} variable '{key}' unset")

    def to_object(self) -> dict[str, str]:
        out = dict(self._values)
        for key, value in self._staged.items():
            if value is None:
                out.pop(key, None)
            else:
                out[key] = value
        return out


class ChainVariables:
    """pm.variables: read through the whole scope chain, including staged writes."""

    def __init__(self, snapshot: Callable[[], ScopeSnapshot]) -> None:
        self._snapshot = snapshot

    def get(self, key: str, default: Any = None) -> Any:
        for scope in self._snapshot().scopes():
            if key in scope.values:
                return scope.values[key]
        return default

    def has(self, key: str) -> bool:
        return any(key in scope.values for scope in self._snapshot().scopes())

    def replace_in(self, text: str) -> str:
        return resolve(str(text), self._snapshot().scopes())


# --- request / response snapshots ---


def _ci_get(headers: Mapping[str, str], name: str) -> str | None:
    if name in headers:
        return headers[name]
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


@dataclass(frozen=True, slots=True)
class RequestView:
    name: str
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    body: str | None = None
    auth_type: str = "none"

    @classmethod
    def from_raw(cls, request: Request) -> "RequestView":
        """Unresolved request fields, as the pre-request script sees them."""
        headers = {h.key: h.value for h in request.headers if h.enabled and h.key}
        body = request.body.content if isinstance(request.body.content, str) else _describe(
            {r.key: r.value for r in request.body.content if r.enabled}
        )
        return cls(
            name=request.name,
            method=request.method,
            url=request.url,
            headers=MappingProxyType(headers),
            body=body or None,
            auth_type=request.auth.type,
        )

    @classmethod
    def from_resolved(cls, name: str, request: ResolvedRequest) -> "RequestView":
        return cls(
            name=name,
            method=request.method,
            url=request.url,
            headers=MappingProxyType(dict(request.headers)),
            body=request.body,
            auth_type=request.auth_type,
        )

    def header(self, name: str) -> str | None:
        return _ci_get(self.headers, name)


@dataclass(frozen=True, slots=True)
class ResponseView:
    """Captured response. ``code`` is None when the transport failed (see ``error``)."""

    code: int | None = None
    status: str = ""
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    body: str = ""
    response_time: float = 0.0
    size: int = 0
    cookies: tuple[Mapping[str, Any], ...] = ()
    error: str | None = None
    to: "ResponseAssertions" = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "to", ResponseAssertions(self))

    @classmethod
    def from_response(cls, response: HttpResponse | None, error: str | None = None) -> "ResponseView":
        if response is None:
            return cls(error=error)
        return cls(
            code=response.status,
            status=response.status_text,
            headers=MappingProxyType(dict(response.headers)),
            body=response.body,
            response_time=response.response_time_ms,
            size=int(response.size.get("total", 0)),
            cookies=tuple(MappingProxyType(dict(c)) for c in response.cookies),
            error=error,
        )

    def header(self, name: str) -> str | None:
        return _ci_get(self.headers, name)

    def text(self) -> str:
        return self.body

    def json(self) -> Any:
        try:
            return orjson.loads(self.body or "{}")
        except orjson.JSONDecodeError as e:
            raise ValueError("Response body is not valid JSON") from e


class ResponseAssertions:
    """pm.response.to.have.status(200), pm.response.to.be.success() ..."""

    def __init__(self, response: ResponseView) -> None:
        self._response = response

    @property
    def have(self) -> "ResponseAssertions":
        return self

    @property
    def be(self) -> "ResponseAssertions":
        return self

    def status(self, expected: int | str) -> None:
        actual = self._response.code
        if isinstance(expected, str):
            if self._response.status != expected:
                raise AssertionError(f"Expected status '{expected}' but got '{self._response.status}'")
            return
        if actual != expected:
            raise AssertionError(f"Expected status {expected} but got {actual}")

    def header(self, name: str, expected: str | None = None) -> None:
        value = self._response.header(name)
        if value is None:
            raise AssertionError(f"Header '{name}' not found in response")
        if expected is not None and value != expected:
            raise AssertionError(f"Expected header '{name}' to be '{expected}' but got '{value}'")

    def body(self, expected: str) -> None:
        if self._response.body != expected:
            raise AssertionError(f"Expected body {_describe(expected)} but got {_describe(self._response.body)}")

    def json_schema(self, schema: Mapping[str, Any]) -> None:
        data = self._response.json()
        validator_cls = jsonschema.validators.validator_for(schema)
        errors = sorted(validator_cls(schema).iter_errors(data), key=lambda e: list(e.path))
        if errors:
            detail = ", ".join(f"/{'/'.join(str(p) for p in e.path)} {e.message}" for e in errors)
            raise AssertionError(f"JSON schema validation failed: {detail}")

    def _range(self, low: int, high: int, label: str) -> None:
        code = self._response.code
        if code is None or not (low <= code < high):
            raise AssertionError(f"Expected {label} status but got {code}")

    def ok(self) -> None:
        self.status(200)

    def success(self) -> None:
        self._range(200, 300, "2xx")

    def client_error(self) -> None:
        self._range(400, 500, "4xx")

    def server_error(self) -> None:
        self._range(500, 600, "5xx")


# --- expect() ---

_TYPE_NAMES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "str": (str,),
    "number": (int, float),
    "int": (int,),
    "float": (float,),
    "boolean": (bool,),
    "bool": (bool,),
    "object": (dict,),
    "dict": (dict,),
    "array": (list, tuple),
    "list": (list, tuple),
    "null": (type(None),),
    "none": (type(None),),
}


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


class Expectation:
    """Chai-style assertions: pm.expect(x).to.equal(1), pm.expect(x).not_.to.be.none()."""

    def __init__(self, actual: Any, negate: bool = False) -> None:
        self._actual = actual
        self._negate = negate

    # chain words
    @property
    def to(self) -> "Expectation":
        return self

    @property
    def be(self) -> "Expectation":
        return self

    @property
    def been(self) -> "Expectation":
        return self

    @property
    def have(self) -> "Expectation":
        return self

    @property
    def that(self) -> "Expectation":
        return self

    @property
    def at(self) -> "Expectation":
        return self

    @property
    def and_(self) -> "Expectation":
        return self

    @property
    def not_(self) -> "Expectation":
        return Expectation(self._actual, not self._negate)

    def _assert(self, condition: bool, message: str, negated_message: str) -> None:
        if self._negate:
            if condition:
                raise AssertionError(negated_message)
        elif not condition:
            raise AssertionError(message)

    def equal(self, expected: Any) -> None:
        a, e = _describe(self._actual), _describe(expected)
        self._assert(self._actual == expected, f"Expected {e} but got {a}", f"Expected {a} not to equal {e}")

    eql = equal

    def a(self, type_name: str) -> None:
        types = _TYPE_NAMES.get(type_name.lower())
        actual_type = _type_name(self._actual)
        if types is None:
            ok = actual_type == type_name
        else:
            ok = isinstance(self._actual, types) and not (
                bool not in types and isinstance(self._actual, bool)
            )
        self._assert(ok, f"Expected type {type_name} but got {actual_type}", f"Expected type not to be {type_name}")

    an = a

    def above(self, value: Any) -> None:
        self._assert(self._actual > value, f"Expected {self._actual} to be above {value}", f"Expected {self._actual} not to be above {value}")

    def below(self, value: Any) -> None:
        self._assert(self._actual < value, f"Expected {self._actual} to be below {value}", f"Expected {self._actual} not to be below {value}")

    def least(self, value: Any) -> None:
        self._assert(self._actual >= value, f"Expected {self._actual} to be at least {value}", f"Expected {self._actual} to be below {value}")

    def most(self, value: Any) -> None:
        self._assert(self._actual <= value, f"Expected {self._actual} to be at most {value}", f"Expected {self._actual} to be above {value}")

    def include(self, member: Any) -> None:
        actual = self._actual
        if isinstance(actual, Mapping) and isinstance(member, Mapping):
            ok = all(k in actual and actual[k] == v for k, v in member.items())
        else:
            try:
                ok = member in actual
            except TypeError:
                ok = False
        self._assert(ok, f"Expected {_describe(actual)} to include {_describe(member)}", f"Expected {_describe(actual)} not to include {_describe(member)}")

    contain = include

    def property(self, name: str, value: Any = _MISSING) -> None:
        actual = self._actual
        if not isinstance(actual, Mapping):
            raise AssertionError("Expected an object")
        present = name in actual
        if value is _MISSING or not present:
            self._assert(present, f"Expected property '{name}' to exist", f"Expected property '{name}' not to exist")
            return
        self._assert(
            actual[name] == value,
            f"Expected property '{name}' to be {_describe(value)} but got {_describe(actual[name])}",
            f"Expected property '{name}' not to be {_describe(value)}",
        )

    def length(self, expected: int) -> None:
        try:
            actual_len = len(self._actual)
        except TypeError:
            actual_len = None
        self._assert(actual_len == expected, f"Expected length {expected} but got {actual_len}", f"Expected length not to be {expected}")

    length_of = length

    def true(self) -> None:
        self._assert(self._actual is True, f"Expected true but got {_describe(self._actual)}", "Expected value not to be true")

    def false(self) -> None:
        self._assert(self._actual is False, f"Expected false but got {_describe(self._actual)}", "Expected value not to be false")

    def none(self) -> None:
        self._assert(self._actual is None, f"Expected null but got {_describe(self._actual)}", "Expected value not to be null")

    null = none

    def ok(self) -> None:
        self._assert(bool(self._actual), f"Expected {_describe(self._actual)} to be truthy", f"Expected {_describe(self._actual)} to be falsy")

    def empty(self) -> None:
        try:
            is_empty = len(self._actual) == 0
        except TypeError:
            is_empty = False
        self._assert(is_empty, f"Expected {_describe(self._actual)} to be empty", f"Expected {_describe(self._actual)} not to be empty")

    def match(self, pattern: str) -> None:
        ok = isinstance(self._actual, str) and re.search(pattern, self._actual) is not None
        self._assert(ok, f"Expected {_describe(self._actual)} to match {pattern}", f"Expected {_describe(self._actual)} not to match {pattern}")

    def one_of(self, options: Any) -> None:
        self._assert(self._actual in options, f"Expected {_describe(self._actual)} to be one of {_describe(options)}", f"Expected {_describe(self._actual)} not to be one of {_describe(options)}")


# --- pm ---


@dataclass(frozen=True, slots=True)
class ScriptInfo:
    phase: str
    request_name: str = ""
    request_id: str = ""
    iteration: int = 1
    iteration_count: int = 1


@dataclass(slots=True)
class ScriptContext:
    """Everything a script may read. Built fresh for each script invocation."""

    phase: ScriptPhase
    snapshot: ScopeSnapshot
    request: RequestView
    response: ResponseView | None = None
    info: ScriptInfo | None = None


class Execution:
    def __init__(self, phase: ScriptPhase) -> None:
        self._phase = phase
        self.skip_requested = False

    def skip_request(self) -> None:
        if self._phase != ScriptPhase.PRE_REQUEST:
            raise RuntimeError("skip_request() is only available in pre-request scripts")
        self.skip_requested = True


class PmApi:
    """Postman-like API handed to scripts as ``pm``."""

    def __init__(
        self,
        context: ScriptContext,
        tests: list[TestResult],
        console: list[str],
        env_updates: dict[str, str | None],
        collection_updates: dict[str, str | None],
    ) -> None:
        snapshot = context.snapshot
        self._tests = tests
        self._console = console
        self._env_updates = env_updates
        self._collection_updates = collection_updates
        self._base_snapshot = snapshot
        self.environment = StagedVariables("Environment", snapshot.environment.values, env_updates, console)
        self.collection_variables = StagedVariables("Collection", snapshot.collection_view(), collection_updates, console)
        self.globals = ReadOnlyVariables(snapshot.globals.values)
        self.iteration_data = ReadOnlyVariables(snapshot.data_row.values)
        self.variables = ChainVariables(self._current_snapshot)
        self.request = context.request
        self.response = context.response
        self.info = context.info or ScriptInfo(phase=context.phase.value)
        self.execution = Execution(context.phase)

    def _current_snapshot(self) -> ScopeSnapshot:
        return self._base_snapshot.with_updates(
            StagedUpdates(environment=dict(self._env_updates), collection=dict(self._collection_updates))
        )

    def test(self, name: str, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except Exception as e:  # noqa: BLE001 - any failure inside a test marks it failed
            message = str(e) or type(e).__name__
            self._tests.append(TestResult(name=str(name), passed=False, error=message))
            self._console.append(f"{FAIL_MARK} {name}")
            self._console.append(f"  {message}")
            return
        self._tests.append(TestResult(name=str(name), passed=True))
        self._console.append(f"{PASS_MARK} {name}")

    def expect(self, actual: Any) -> Expectation:
        return Expectation(actual)
