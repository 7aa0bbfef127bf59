"""
Manual URL target module: run a single URL without a Postman collection.

When -m URL is used, this module builds a one-request collection from scratch.
The same runner, executor and reports are used, so iterations, delay, scripts
passed on the command line and exports work unchanged.
"""

from __future__ import annotations

import uuid
from urllib.parse import urlparse

from .exceptions import CourierValidationError
from .models import CollectionNode, KeyValue, NodeKind, Request, RequestBody

MANUAL_REQUEST_NAME = "Manual Target"
MANUAL_COLLECTION_NAME = "manual"


def build_manual_request(
    url: str,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    body: str | None = None,
    test_script: str = "",
) -> Request:
    """
    Build a single ad-hoc request for the given URL.

    Args:
        url: Target URL. A missing scheme defaults to http:// at send time.
        method: HTTP method (default GET).
        headers: Optional request headers.
        body: Optional raw body; sent as JSON when it looks like a JSON document.
        test_script: Optional Python test script.

    Raises:
        CourierValidationError: If URL is empty or has no host.
    """
    url = url.strip()
    if not url:
        raise CourierValidationError("Manual URL must not be empty")
    parsed = urlparse(url if "://" in url else f"http://{url}")
    if not parsed.netloc:
        raise CourierValidationError(f"Invalid manual URL: {url}")

    request_body = RequestBody()
    if body:
        stripped = body.lstrip()
        request_body = RequestBody(type="json" if stripped[:1] in ("{", "[") else "raw", content=body)
    return Request(
        id=str(uuid.uuid4()),
        name=MANUAL_REQUEST_NAME,
        method=method.strip().upper() or "GET",
        url=url,
        headers=[KeyValue(k, v) for k, v in (headers or {}).items()],
        body=request_body,
        test_script=test_script,
    )


def build_manual_collection(url: str, **kwargs: object) -> CollectionNode:
    """Wrap build_manual_request in a collection so it can go through CollectionRunner."""
    request = build_manual_request(url, **kwargs)  # type: ignore[arg-type]
    return CollectionNode(
        id=str(uuid.uuid4()),
        name=manual_report_name(url),
        kind=NodeKind.COLLECTION,
        requests=[request],
    )


def manual_report_name(url: str) -> str:
    """Short label for report title when using manual URL (e.g. host only)."""
    url = url.strip()
    parsed = urlparse(url if "://" in url else f"http://{url}")
    return parsed.netloc or MANUAL_COLLECTION_NAME
