"""Layered {{variable}} resolution.

Precedence, highest first: data-file row > environment > collection chain
(nearest folder first, collection root last) > workspace globals.

Everything here is pure: scopes and snapshots are immutable, and applying
staged script writes returns a new snapshot.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Sequence
from urllib.parse import quote

from .models import Auth, KeyValue, Request, RequestBody, StagedUpdates, Variable

# {{variableName}}; key is whitespace-trimmed on lookup
VAR_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
# Capturing split keeps the tokens in the result list
TOKEN_SPLIT_PATTERN = re.compile(r"(\{\{[^}]+\}\})")

# Characters left unescaped in query components besides the RFC 3986 unreserved set
QUERY_SAFE_CHARS = "-_.~"

_EMPTY: Mapping[str, str] = MappingProxyType({})


@dataclass(frozen=True, slots=True)
class Scope:
    """One named, read-only layer of variables."""

    name: str
    values: Mapping[str, str] = field(default_factory=lambda: _EMPTY)

    @classmethod
    def of(cls, name: str, values: Mapping[str, str] | None) -> "Scope":
        return cls(name, MappingProxyType(dict(values or {})))

    @classmethod
    def from_variables(cls, name: str, variables: Iterable[Variable]) -> "Scope":
        """Build a scope from stored variables. Disabled entries do not participate."""
        return cls.of(name, {v.key: v.value for v in variables if v.enabled and v.key})

    def __contains__(self, key: object) -> bool:
        return key in self.values

    def get(self, key: str) -> str | None:
        return self.values.get(key)


def lookup(key: str, scopes: Sequence[Scope]) -> str | None:
    """Return the value from the first scope that defines ``key``."""
    for scope in scopes:
        if key in scope.values:
            return scope.values[key]
    return None


def resolve(text: str, scopes: Sequence[Scope]) -> str:
    """Replace each {{key}} with the first defining scope's value. Unknown tokens stay verbatim."""
    if not text or "{{" not in text:
        return text

    def repl(match: re.Match[str]) -> str:
        value = lookup(match.group(1).strip(), scopes)
        return match.group(0) if value is None else value

    return VAR_PATTERN.sub(repl, text)


def find_unresolved(text: str) -> list[str]:
    """Names of {{tokens}} still present in ``text``, in order of first appearance."""
    seen: list[str] = []
    for match in VAR_PATTERN.finditer(text or ""):
        name = match.group(1).strip()
        if name not in seen:
            seen.append(name)
    return seen


def encode_preserving_tokens(text: str) -> str:
    """Percent-encode ``text`` for a query string while leaving {{tokens}} intact."""
    parts = TOKEN_SPLIT_PATTERN.split(text or "")
    return "".join(
        part if TOKEN_SPLIT_PATTERN.fullmatch(part) else quote(part, safe=QUERY_SAFE_CHARS)
        for part in parts
    )


def build_query_string(params: Iterable[KeyValue]) -> str:
    """key=value pairs for enabled params with a non-blank key, {{tokens}} preserved."""
    return "&".join(
        f"{encode_preserving_tokens(p.key)}={encode_preserving_tokens(p.value)}"
        for p in params
        if p.enabled and p.key and p.key.strip()
    )


def _apply(values: Mapping[str, str], updates: Mapping[str, str | None]) -> dict[str, str]:
    out = dict(values)
    for key, value in updates.items():
        if value is None:
            out.pop(key, None)
        else:
            out[key] = value
    return out


@dataclass(frozen=True, slots=True)
class ScopeSnapshot:
    """Immutable view of every variable layer for one request execution.

    ``collection_chain`` is ordered nearest folder first; its last entry is the
    collection root, which receives collection variable writes.
    """

    data_row: Scope = field(default_factory=lambda: Scope("data"))
    environment: Scope = field(default_factory=lambda: Scope("environment"))
    collection_chain: tuple[Scope, ...] = ()
    globals: Scope = field(default_factory=lambda: Scope("globals"))

    def scopes(self) -> list[Scope]:
        return [self.data_row, self.environment, *self.collection_chain, self.globals]

    def collection_view(self) -> dict[str, str]:
        """Collection variables as scripts see them: nearest definition wins."""
        merged: dict[str, str] = {}
        for scope in reversed(self.collection_chain):
            merged.update(scope.values)
        return merged

    def with_data_row(self, row: Mapping[str, str] | None) -> "ScopeSnapshot":
        return ScopeSnapshot(
            data_row=Scope.of("data", row),
            environment=self.environment,
            collection_chain=self.collection_chain,
            globals=self.globals,
        )

    def with_collection_chain(self, chain: Sequence[Scope]) -> "ScopeSnapshot":
        return ScopeSnapshot(
            data_row=self.data_row,
            environment=self.environment,
            collection_chain=tuple(chain),
            globals=self.globals,
        )

    def with_updates(self, staged: StagedUpdates) -> "ScopeSnapshot":
        """Return a new snapshot with staged environment/collection writes applied."""
        if staged.is_empty():
            return self
        environment = self.environment
        if staged.environment:
            environment = Scope.of(environment.name, _apply(environment.values, staged.environment))
        chain = self.collection_chain
        if staged.collection:
            if chain:
                root = chain[-1]
                chain = (*chain[:-1], Scope.of(root.name, _apply(root.values, staged.collection)))
            else:
                chain = (Scope.of("collection", _apply({}, staged.collection)),)
        return ScopeSnapshot(
            data_row=self.data_row,
            environment=environment,
            collection_chain=chain,
            globals=self.globals,
        )


def _resolve_rows(rows: Iterable[KeyValue], scopes: Sequence[Scope]) -> list[KeyValue]:
    return [KeyValue(resolve(r.key, scopes), resolve(r.value, scopes), r.enabled) for r in rows]


def resolve_body(body: RequestBody, scopes: Sequence[Scope]) -> RequestBody:
    if isinstance(body.content, list):
        return RequestBody(body.type, _resolve_rows(body.content, scopes))
    return RequestBody(body.type, resolve(body.content, scopes))


def resolve_auth(auth: Auth, scopes: Sequence[Scope]) -> Auth:
    return Auth(
        type=auth.type,
        token=resolve(auth.token, scopes),
        username=resolve(auth.username, scopes),
        password=resolve(auth.password, scopes),
        key=resolve(auth.key, scopes),
        value=resolve(auth.value, scopes),
        add_to=auth.add_to,
    )


def resolve_request(request: Request, scopes: Sequence[Scope]) -> Request:
    """Return a copy of ``request`` with url, params, headers, body and auth resolved."""
    return Request(
        id=request.id,
        name=request.name,
        method=request.method,
        url=resolve(request.url, scopes),
        params=_resolve_rows(request.params, scopes),
        headers=_resolve_rows(request.headers, scopes),
        body=resolve_body(request.body, scopes),
        auth=resolve_auth(request.auth, scopes),
        pre_request_script=request.pre_request_script,
        test_script=request.test_script,
        order_index=request.order_index,
        timeout_ms=request.timeout_ms,
        follow_redirects=request.follow_redirects,
    )
