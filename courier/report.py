"""Run exports: verbatim JSON dump, HTML report and JUnit XML.

All exports are derived from an in-memory CollectionRunResult; nothing here
touches the network.
"""

from __future__ import annotations

import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse, urlunparse

import orjson
from jinja2 import Environment, PackageLoader, select_autoescape

from . import __version__ as courier_version
from .exceptions import CourierError
from .models import CollectionRunResult, IterationResult, ResultStatus, RunResult

REDACTED_PLACEHOLDER = "[REDACTED]"


def mask_url(url: str, max_path_length: int = 120) -> str:
    """Remove query string and fragment from URL to avoid leaking tokens in reports."""
    if not url or not url.strip():
        return url
    try:
        parsed = urlparse(url)
        # Keep scheme, netloc, path; drop query and fragment
        clean = urlunparse((parsed.scheme, parsed.netloc, parsed.path or "", "", "", ""))
        if len(clean) > max_path_length:
            clean = clean[: max_path_length - 3] + "..."
        return clean
    except ValueError:
        return url[:max_path_length] + ("..." if len(url) > max_path_length else "")


def mask_error_message(msg: str | None, max_length: int = 200) -> str:
    """Truncate error message and redact URLs to avoid leaking sensitive data."""
    if not msg:
        return ""
    # Redact URL-like substrings
    msg = re.sub(r"https?://[^\s]+", REDACTED_PLACEHOLDER, msg)
    if len(msg) > max_length:
        return msg[: max_length - 3] + "..."
    return msg


# --- verbatim structured dump ---


def dump_run_result(result: CollectionRunResult, indent: bool = True) -> bytes:
    """Serialize a run result to JSON bytes (camelCase keys, ISO timestamps)."""
    option = orjson.OPT_INDENT_2 if indent else 0
    return orjson.dumps(result.to_dict(), option=option)


def load_run_result(data: bytes | str) -> CollectionRunResult:
    """Parse the output of dump_run_result back into a CollectionRunResult."""
    try:
        return CollectionRunResult.from_dict(orjson.loads(data))
    except (orjson.JSONDecodeError, KeyError, ValueError, TypeError) as e:
        raise CourierError(f"Invalid run result document: {e}", original_error=e) from e


def write_json_report(output_path: str | Path, result: CollectionRunResult) -> Path:
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(dump_run_result(result))
    return out


# --- HTML ---


def _status_class(status: ResultStatus | str) -> str:
    value = status.value if isinstance(status, ResultStatus) else str(status)
    return {"passed": "success", "failed": "danger", "skipped": "muted"}.get(value, "muted")


def _request_row(r: RunResult) -> dict[str, Any]:
    tests = r.test_results.tests if r.test_results else []
    return {
        "name": r.request_name,
        "method": r.method,
        "url": mask_url(r.url),
        "status": r.status.value,
        "status_class": _status_class(r.status),
        "status_code": r.status_code,
        "response_time": round(r.response_time, 1) if r.response_time is not None else None,
        "error": mask_error_message(r.error),
        "error_kind": r.error_kind,
        "tests": [
            {"name": t.name, "passed": t.passed, "error": mask_error_message(t.error)}
            for t in tests
        ],
        "script_errors": [
            {"phase": e.phase, "kind": e.kind, "message": mask_error_message(e.message)}
            for e in r.script_errors
        ],
    }


def _iteration_block(it: IterationResult) -> dict[str, Any]:
    return {
        "iteration": it.iteration,
        "passed": it.passed,
        "failed": it.failed,
        "total_time": round(it.total_time, 1),
        "data_row": it.data_row,
        "requests": [_request_row(r) for r in it.results],
    }


def _verdict(result: CollectionRunResult) -> tuple[str, str]:
    if result.status.value == "cancelled":
        return "Cancelled", "warning"
    if result.total_failed or result.status.value == "failed":
        return "Failed", "danger"
    return "Passed", "success"


def render_html_report(result: CollectionRunResult) -> str:
    env = Environment(
        loader=PackageLoader("courier", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )
    template = env.get_template("report.html")
    verdict, verdict_class = _verdict(result)
    tests = [t for it in result.iterations for r in it.results if r.test_results for t in r.test_results.tests]
    return template.render(
        collection_name=result.collection_name,
        status=result.status.value,
        verdict=verdict,
        verdict_class=verdict_class,
        start_datetime_str=result.start_time.strftime("%Y-%m-%d %H:%M:%S UTC"),
        end_datetime_str=result.end_time.strftime("%Y-%m-%d %H:%M:%S UTC") if result.end_time else "",
        total_requests=result.total_requests,
        executed_requests=result.executed_requests,
        total_passed=result.total_passed,
        total_failed=result.total_failed,
        total_skipped=result.total_skipped,
        total_time=round(result.total_time, 1),
        tests_passed=sum(1 for t in tests if t.passed),
        tests_failed=sum(1 for t in tests if not t.passed),
        iterations=[_iteration_block(it) for it in result.iterations],
        developer_info={
            "courier_version": courier_version,
            "report_generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        },
    )


def generate_html_report(output_path: str | Path, result: CollectionRunResult) -> Path:
    """Write a single self-contained HTML report: iterations -> requests -> tests."""
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(render_html_report(result), encoding="utf-8")
    return out


# --- JUnit ---


def generate_junit_report(output_path: str | Path, result: CollectionRunResult) -> Path:
    """Write JUnit XML for CI (e.g. Jenkins, GitLab): one testsuite per iteration, one testcase per request."""
    import xml.etree.ElementTree as ET
    from xml.dom import minidom

    root = ET.Element(
        "testsuites",
        name=f"courier.{result.collection_name}",
        tests=str(result.executed_requests),
        failures=str(result.total_failed),
        time=f"{result.total_time / 1000:.3f}",
    )
    for it in result.iterations:
        skipped = sum(1 for r in it.results if r.status == ResultStatus.SKIPPED)
        suite = ET.SubElement(
            root,
            "testsuite",
            name=f"{result.collection_name} - iteration {it.iteration}",
            tests=str(len(it.results)),
            failures=str(it.failed),
            errors="0",
            skipped=str(skipped),
            time=f"{it.total_time / 1000:.3f}",
        )
        suite.set("timestamp", result.start_time.strftime("%Y-%m-%dT%H:%M:%S"))
        for r in it.results:
            case = ET.SubElement(
                suite,
                "testcase",
                name=r.request_name,
                classname=f"courier.{result.collection_name}",
                time=f"{(r.response_time or 0) / 1000:.3f}",
            )
            if r.status == ResultStatus.SKIPPED:
                ET.SubElement(case, "skipped")
            elif r.status == ResultStatus.FAILED:
                failed_tests = [t for t in (r.test_results.tests if r.test_results else []) if not t.passed]
                message = r.error or (failed_tests[0].error if failed_tests else None) or f"HTTP {r.status_code}"
                failure = ET.SubElement(case, "failure", message=mask_error_message(message))
                failure.text = "\n".join(
                    [f"{t.name}: {mask_error_message(t.error)}" for t in failed_tests]
                    + [f"[{e.phase}/{e.kind}] {mask_error_message(e.message)}" for e in r.script_errors]
                )
            system_out = ET.SubElement(case, "system-out")
            system_out.text = f"{r.method} {mask_url(r.url)} status={r.status_code} time_ms={r.response_time}"

    xml_str = minidom.parseString(ET.tostring(root, encoding="unicode", method="xml")).toprettyxml(indent="  ")
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(xml_str, encoding="utf-8")
    return out
