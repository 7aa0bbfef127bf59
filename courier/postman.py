"""Postman Collection v2.1 and environment loader with folder structure preserved.

Collections become a CollectionNode tree: folders keep their variables, auth
and scripts, requests keep their order. Only Python scripts (script.type
"text/x-python") are loaded; JavaScript events are skipped with a log line.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any

import orjson

from .exceptions import CourierCollectionError
from .logging_config import get_logger
from .models import (
    Auth,
    CollectionNode,
    Environment,
    KeyValue,
    NodeKind,
    Request,
    RequestBody,
    Variable,
)

logger = get_logger("postman")

PYTHON_SCRIPT_TYPE = "text/x-python"
# Postman event name -> script phase key
EVENT_PHASES = {"prerequest": "pre-request", "test": "test"}


def _read_json(path: str | Path, what: str) -> Any:
    p = Path(path)
    if not p.exists():
        raise CourierCollectionError(f"{what} file not found: {path}", context={"path": str(path)})
    try:
        return orjson.loads(p.read_bytes())
    except orjson.JSONDecodeError as e:
        logger.exception("Invalid JSON in %s file", what.lower())
        raise CourierCollectionError(f"Invalid JSON in {what.lower()}: {e}", context={"path": str(path)}, original_error=e) from e
    except OSError as e:
        logger.exception("Failed to read %s file", what.lower())
        raise CourierCollectionError(f"Cannot read {what.lower()} file: {e}", context={"path": str(path)}, original_error=e) from e


def load_collection(path: str | Path) -> CollectionNode:
    """Load a Postman Collection v2.1 JSON file.

    Raises CourierCollectionError on invalid collection or file error.
    """
    raw = _read_json(path, "Collection")
    try:
        return parse_collection(raw)
    except CourierCollectionError as e:
        raise e.with_context(path=str(path))


def parse_collection(raw: Any) -> CollectionNode:
    if not isinstance(raw, dict):
        raise CourierCollectionError("Collection must be a JSON object")
    info = raw.get("info") or {}
    if not isinstance(info, dict):
        raise CourierCollectionError("Collection 'info' must be an object")
    schema = info.get("schema")
    if isinstance(schema, str) and "v2.1" not in schema and "v2.0" not in schema:
        logger.warning("Unrecognised collection schema %s; parsing as v2.1", schema)

    root = CollectionNode(
        id=str(info.get("_postman_id") or raw.get("id") or uuid.uuid4()),
        name=str(info.get("name") or "Collection"),
        kind=NodeKind.COLLECTION,
        variables=_parse_variables(raw.get("variable")),
        auth=_parse_auth(raw.get("auth")),
        scripts=_parse_events(raw.get("event"), info.get("name") or "collection"),
    )
    _walk_items(raw.get("item") or [], root)
    return root


def _walk_items(items: list[Any], parent: CollectionNode) -> None:
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "Unnamed")
        item_id = str(item.get("id") or item.get("_postman_id") or uuid.uuid4())
        if "request" in item:
            req = _parse_request_item(item, item_id, name, index)
            if req is not None:
                parent.requests.append(req)
        elif "item" in item:
            folder = CollectionNode(
                id=item_id,
                name=name,
                kind=NodeKind.FOLDER,
                parent_id=parent.id,
                order_index=index,
                variables=_parse_variables(item.get("variable")),
                auth=_parse_auth(item.get("auth")),
                scripts=_parse_events(item.get("event"), name),
            )
            parent.folders.append(folder)
            _walk_items(item.get("item") or [], folder)


def _rows(entries: Any) -> list[KeyValue]:
    rows: list[KeyValue] = []
    for e in entries or []:
        if not isinstance(e, dict) or e.get("key") is None:
            continue
        value = e.get("value")
        rows.append(KeyValue(key=str(e["key"]), value="" if value is None else str(value), enabled=not e.get("disabled", False)))
    return rows


def _parse_variables(entries: Any) -> list[Variable]:
    out: list[Variable] = []
    for e in entries or []:
        if not isinstance(e, dict) or not e.get("key"):
            continue
        v = Variable.from_dict(e)
        if e.get("disabled"):
            v.enabled = False
        out.append(v)
    return out


def _auth_params(auth: dict[str, Any], kind: str) -> dict[str, str]:
    params = auth.get(kind) or []
    if isinstance(params, dict):
        return {str(k): "" if v is None else str(v) for k, v in params.items()}
    return {str(p.get("key")): "" if p.get("value") is None else str(p.get("value")) for p in params if isinstance(p, dict)}


def _parse_auth(auth: Any) -> Auth | None:
    if not isinstance(auth, dict):
        return None
    kind = str(auth.get("type") or "noauth").lower()
    if kind == "noauth":
        return Auth(type="none")
    if kind == "bearer":
        return Auth(type="bearer", token=_auth_params(auth, "bearer").get("token", ""))
    if kind == "basic":
        p = _auth_params(auth, "basic")
        return Auth(type="basic", username=p.get("username", ""), password=p.get("password", ""))
    if kind == "apikey":
        p = _auth_params(auth, "apikey")
        return Auth(type="apikey", key=p.get("key", ""), value=p.get("value", ""), add_to=p.get("in", "header"))
    logger.info("Unsupported auth type '%s' ignored", kind)
    return Auth(type="none")


def _parse_events(events: Any, owner: str) -> dict[str, str]:
    scripts: dict[str, str] = {}
    for event in events or []:
        if not isinstance(event, dict):
            continue
        phase = EVENT_PHASES.get(str(event.get("listen")))
        script = event.get("script") or {}
        if phase is None or not isinstance(script, dict):
            continue
        source = script.get("exec") or ""
        if isinstance(source, list):
            source = "\n".join(str(line) for line in source)
        if not str(source).strip():
            continue
        if script.get("type") != PYTHON_SCRIPT_TYPE:
            logger.info("Skipping non-Python %s script on %s", phase, owner)
            continue
        scripts[phase] = str(source)
    return scripts


def _parse_url(url_raw: Any) -> tuple[str, list[KeyValue]]:
    if isinstance(url_raw, str):
        return url_raw, []
    if not isinstance(url_raw, dict):
        return "", []
    params = _rows(url_raw.get("query"))
    if url_raw.get("raw"):
        return str(url_raw["raw"]), params
    # Postman URL object without raw
    protocol = url_raw.get("protocol") or "https"
    host = url_raw.get("host") or []
    host = host if isinstance(host, str) else ".".join(h for h in host if isinstance(h, str))
    port = f":{url_raw['port']}" if url_raw.get("port") else ""
    path = url_raw.get("path") or []
    path = path if isinstance(path, str) else "/".join(p for p in path if isinstance(p, str))
    path = "/" + path if path and not path.startswith("/") else path
    return f"{protocol}://{host}{port}{path}", params


def _parse_body(body: Any) -> RequestBody:
    if not isinstance(body, dict):
        return RequestBody()
    mode = body.get("mode")
    if mode == "raw":
        language = ((body.get("options") or {}).get("raw") or {}).get("language", "text")
        body_type = {"json": "json", "xml": "xml"}.get(language, "raw")
        return RequestBody(type=body_type, content=str(body.get("raw") or ""))
    if mode == "urlencoded":
        return RequestBody(type="x-www-form-urlencoded", content=_rows(body.get("urlencoded")))
    if mode == "formdata":
        fields = [f for f in body.get("formdata") or [] if isinstance(f, dict) and f.get("type", "text") == "text"]
        if len(fields) != len(body.get("formdata") or []):
            logger.info("File fields in form-data body are not supported and were skipped")
        return RequestBody(type="form-data", content=_rows(fields))
    if mode == "graphql":
        graphql = body.get("graphql") or {}
        variables = graphql.get("variables") or "{}"
        payload = {"query": graphql.get("query", ""), "variables": orjson.loads(variables) if isinstance(variables, str) else variables}
        return RequestBody(type="json", content=orjson.dumps(payload).decode("utf-8"))
    return RequestBody()


def _parse_request_item(item: dict[str, Any], item_id: str, name: str, index: int) -> Request | None:
    req = item.get("request")
    if isinstance(req, str):
        # v2.1 allows a bare URL string
        req = {"url": req, "method": "GET"}
    if not isinstance(req, dict):
        return None
    url, params = _parse_url(req.get("url"))
    auth = _parse_auth(req.get("auth"))
    scripts = _parse_events(item.get("event"), name)
    try:
        body = _parse_body(req.get("body"))
    except orjson.JSONDecodeError as e:
        raise CourierCollectionError(f"Invalid GraphQL variables in request '{name}'", original_error=e) from e
    return Request(
        id=item_id,
        name=name,
        method=(req.get("method") or "GET").strip().upper(),
        url=url,
        params=params,
        headers=_rows(req.get("header")),
        body=body,
        # requests without their own auth inherit from the nearest folder/collection
        auth=auth if auth is not None else Auth(type="inherit"),
        pre_request_script=scripts.get("pre-request", ""),
        test_script=scripts.get("test", ""),
        order_index=index,
    )


def load_environment(path: str | Path) -> Environment:
    """Load a Postman environment export ({id, name, values: [...]})."""
    raw = _read_json(path, "Environment")
    if not isinstance(raw, dict) or not isinstance(raw.get("values", []), list):
        raise CourierCollectionError("Environment must be an object with a 'values' array", context={"path": str(path)})
    return Environment(
        id=str(raw.get("id") or uuid.uuid4()),
        name=str(raw.get("name") or Path(path).stem),
        variables=[Variable.from_dict(v) for v in raw.get("values") or [] if isinstance(v, dict) and v.get("key")],
    )


def dump_environment(environment: Environment, path: str | Path) -> Path:
    """Write an environment back out in Postman export format."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    doc = environment.to_dict()
    doc["_postman_variable_scope"] = "environment"
    p.write_bytes(orjson.dumps(doc, option=orjson.OPT_INDENT_2))
    return p
