"""HTTP transport over httpx.

This module turns a resolved Request into bytes on the wire:
- build_url: scheme defaulting, params replacing the query string, api-key query auth
- build_headers: enabled headers plus Authorization / api-key header
- build_body: body text per body type with a default Content-Type
- HttpxTransport.send: one request with timing breakdown; failures raise CourierTransportError

The transport never looks at variables or scripts.
"""

from __future__ import annotations

import base64
import ssl
import time
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote, urlsplit, urlunsplit

import httpx
import orjson

from .exceptions import CourierTransportError
from .logging_config import get_logger
from .models import Auth, EngineSettings, HttpResponse, KeyValue, Request, RequestBody, ResolvedRequest
from .variables import QUERY_SAFE_CHARS, build_query_string

logger = get_logger("transport")

DEFAULT_MAX_CONNECTIONS = 20
DEFAULT_KEEPALIVE_EXPIRY = 30.0
# Methods that never carry a body
BODYLESS_METHODS = frozenset({"GET", "HEAD"})
DEFAULT_CONTENT_TYPES = {
    "json": "application/json",
    "x-www-form-urlencoded": "application/x-www-form-urlencoded",
    "raw": "text/plain",
    "xml": "application/xml",
}
# Seconds to milliseconds conversion
S_TO_MS = 1000.0


@dataclass(slots=True)
class TransportRequest:
    """Wire-ready request handed to a Transport."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    content: bytes | None = None
    form: list[tuple[str, str]] | None = None  # multipart form-data fields
    timeout_s: float = 30.0
    follow_redirects: bool = True

    def summary(self, auth_type: str = "none") -> ResolvedRequest:
        body: str | None
        if self.form is not None:
            body = "&".join(f"{k}={v}" for k, v in self.form)
        else:
            body = self.content.decode("utf-8", errors="replace") if self.content is not None else None
        return ResolvedRequest(
            method=self.method,
            url=self.url,
            headers=dict(self.headers),
            body=body,
            auth_type=auth_type,
        )


class Transport(Protocol):
    async def send(self, request: TransportRequest) -> HttpResponse: ...


def normalize_url(url: str) -> str:
    """Add http:// when no scheme is present."""
    url = url.strip()
    if "://" not in url.split("?", 1)[0]:
        return f"http://{url}"
    return url


def build_url(url: str, params: list[KeyValue], auth: Auth | None = None) -> str:
    """Final request URL. Enabled params replace the URL's own query string."""
    url = normalize_url(url)
    query = build_query_string(params)
    if query:
        url = url.split("?", 1)[0] + "?" + query
    if auth is not None and auth.type == "apikey" and auth.add_to == "query" and auth.key and auth.value:
        pair = f"{quote(auth.key, safe=QUERY_SAFE_CHARS)}={quote(auth.value, safe=QUERY_SAFE_CHARS)}"
        url = f"{url}&{pair}" if "?" in url else f"{url}?{pair}"
    return url


def build_headers(headers: list[KeyValue], auth: Auth | None = None) -> dict[str, str]:
    """Enabled headers with a non-blank key, then authentication headers."""
    result: dict[str, str] = {}
    for h in headers:
        if h.enabled and h.key and h.key.strip():
            result[h.key.strip()] = h.value
    if auth is None:
        return result
    if auth.type == "bearer" and auth.token:
        result["Authorization"] = f"Bearer {auth.token}"
    elif auth.type == "basic" and auth.username and auth.password:
        credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode("utf-8")).decode("ascii")
        result["Authorization"] = f"Basic {credentials}"
    elif auth.type == "apikey" and auth.key and auth.value and auth.add_to == "header":
        result[auth.key] = auth.value
    return result


def _has_header(headers: dict[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(k.lower() == lowered for k in headers)


def build_body(body: RequestBody) -> tuple[bytes | None, list[tuple[str, str]] | None]:
    """Return (content, form_fields). Raises CourierTransportError(kind="request") on invalid JSON."""
    if body.type == "none":
        return None, None
    if isinstance(body.content, list):
        rows = [(r.key, r.value) for r in body.content if r.enabled and r.key]
        if body.type == "form-data":
            return None, rows
        encoded = "&".join(
            f"{quote(k, safe=QUERY_SAFE_CHARS)}={quote(v, safe=QUERY_SAFE_CHARS)}" for k, v in rows
        )
        return encoded.encode("utf-8"), None
    if not body.content:
        return None, None
    if body.type == "json":
        try:
            orjson.loads(body.content)
        except orjson.JSONDecodeError as e:
            raise CourierTransportError("Invalid JSON in request body", kind="request", original_error=e) from e
    return body.content.encode("utf-8"), None


def prepare_request(request: Request, settings: EngineSettings) -> TransportRequest:
    """Build the wire request from an already resolved Request."""
    method = (request.method or "GET").strip().upper()
    url = build_url(request.url, request.params, request.auth)
    headers = build_headers(request.headers, request.auth)
    content: bytes | None = None
    form: list[tuple[str, str]] | None = None
    if method not in BODYLESS_METHODS:
        content, form = build_body(request.body)
        content_type = DEFAULT_CONTENT_TYPES.get(request.body.type)
        if content is not None and content_type and not _has_header(headers, "Content-Type"):
            headers["Content-Type"] = content_type
    timeout_ms = request.timeout_ms if request.timeout_ms is not None else settings.request_timeout_ms
    follow = request.follow_redirects if request.follow_redirects is not None else settings.follow_redirects
    return TransportRequest(
        method=method,
        url=url,
        headers=headers,
        content=content,
        form=form,
        timeout_s=timeout_ms / S_TO_MS,
        follow_redirects=follow,
    )


def create_client(settings: EngineSettings | None = None, **kwargs: Any) -> httpx.AsyncClient:
    """Create the shared async HTTP client for a run.

    Extra keyword arguments go to httpx.AsyncClient (tests pass ``transport=``).
    """
    settings = settings or EngineSettings()
    limits = httpx.Limits(
        max_connections=DEFAULT_MAX_CONNECTIONS,
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    return httpx.AsyncClient(
        http2=settings.http2,
        verify=settings.verify_ssl,
        timeout=settings.request_timeout_ms / S_TO_MS,
        max_redirects=settings.max_redirects,
        limits=limits,
        **kwargs,
    )


def classify_error(exc: Exception) -> str:
    """Map an httpx exception to a transport error kind."""
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return "request"
    if isinstance(exc, (httpx.ProtocolError, httpx.TooManyRedirects, httpx.DecodingError)):
        return "protocol"
    cause = exc.__cause__ or exc.__context__
    if isinstance(cause, ssl.SSLError) or "SSL" in str(exc) or "CERTIFICATE" in str(exc).upper():
        return "tls"
    return "connection"


class _TraceRecorder:
    """Collects httpcore trace events into a connect/tls/first-byte/download breakdown."""

    def __init__(self) -> None:
        self.marks: dict[str, float] = {}

    async def __call__(self, event_name: str, info: dict[str, Any]) -> None:
        # "http11.receive_response_headers.started" -> "receive_response_headers.started"
        _, _, name = event_name.partition(".")
        self.marks.setdefault(name, time.perf_counter())

    def _span(self, start: str, end: str) -> float | None:
        if start in self.marks and end in self.marks:
            return (self.marks[end] - self.marks[start]) * S_TO_MS
        return None

    def timing(self, started: float, finished: float) -> dict[str, float | None]:
        return {
            "total": (finished - started) * S_TO_MS,
            "connect": self._span("connect_tcp.started", "connect_tcp.complete"),
            "tls": self._span("start_tls.started", "start_tls.complete"),
            "first_byte": self._span("send_request_headers.started", "receive_response_headers.complete"),
            "download": self._span("receive_response_body.started", "receive_response_body.complete"),
        }


def _cookies(response: httpx.Response) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for cookie in response.cookies.jar:
        out.append(
            {
                "name": cookie.name,
                "value": cookie.value,
                "domain": cookie.domain,
                "path": cookie.path,
                "expires": cookie.expires,
                "secure": bool(cookie.secure),
                "httpOnly": cookie.has_nonstandard_attr("HttpOnly"),
            }
        )
    return out


def _headers_size(headers: httpx.Headers) -> int:
    # "Name: value\r\n" per header line
    return sum(len(k) + len(v) + 4 for k, v in headers.raw)


class HttpxTransport:
    """Transport backed by a shared httpx.AsyncClient."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(self, request: TransportRequest) -> HttpResponse:
        trace = _TraceRecorder()
        files = [(k, (None, v)) for k, v in request.form] if request.form is not None else None
        started = time.perf_counter()
        try:
            r = await self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.content,
                files=files,
                timeout=request.timeout_s,
                follow_redirects=request.follow_redirects,
                extensions={"trace": trace},
            )
        except httpx.HTTPError as e:
            kind = classify_error(e)
            logger.debug("%s %s failed (%s): %s", request.method, request.url, kind, e)
            raise CourierTransportError(str(e) or type(e).__name__, kind=kind, original_error=e) from e
        finished = time.perf_counter()

        body = r.content
        headers_size = _headers_size(r.headers)
        return HttpResponse(
            status=r.status_code,
            status_text=r.reason_phrase,
            headers={k: v for k, v in r.headers.items()},
            body=r.text,
            cookies=_cookies(r),
            timing=trace.timing(started, finished),
            size={"body": len(body), "headers": headers_size, "total": len(body) + headers_size},
        )
