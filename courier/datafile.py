"""CSV / JSON data files for data-driven runs. One row is bound per iteration."""

from __future__ import annotations

import csv
import io
import uuid
from pathlib import Path
from typing import Any

import orjson

from .exceptions import CourierDataFileError
from .logging_config import get_logger
from .models import DataFile

logger = get_logger("datafile")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return orjson.dumps(value).decode("utf-8")


def parse_csv(text: str) -> tuple[list[str], list[dict[str, str]]]:
    """Header row gives column names; headers and values are whitespace-trimmed, blank lines skipped."""
    reader = csv.reader(io.StringIO(text))
    rows = [r for r in reader if any(cell.strip() for cell in r)]
    if not rows:
        raise CourierDataFileError("CSV file must have header row with column names")
    columns = [h.strip() for h in rows[0]]
    if not any(columns):
        raise CourierDataFileError("CSV file must have header row with column names")
    data: list[dict[str, str]] = []
    for line_no, raw in enumerate(rows[1:], start=1):
        if len(raw) != len(columns):
            logger.warning("Row %d: expected %d fields, got %d", line_no, len(columns), len(raw))
        data.append({col: (raw[i].strip() if i < len(raw) else "") for i, col in enumerate(columns) if col})
    if not data:
        raise CourierDataFileError("CSV file must have at least one data row")
    return [c for c in columns if c], data


def parse_json(text: str | bytes) -> tuple[list[str], list[dict[str, str]]]:
    """A JSON array of flat objects; columns come from the first object."""
    try:
        parsed = orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise CourierDataFileError(f"Invalid JSON format: {e}", original_error=e) from e
    if not isinstance(parsed, list):
        raise CourierDataFileError("JSON file must contain an array of objects")
    if not parsed:
        raise CourierDataFileError("JSON array must have at least one item")
    if not isinstance(parsed[0], dict) or not parsed[0]:
        raise CourierDataFileError("JSON array must contain objects with at least one property")
    columns = list(parsed[0].keys())
    data: list[dict[str, str]] = []
    for index, item in enumerate(parsed, start=1):
        if not isinstance(item, dict):
            raise CourierDataFileError(f"Row {index}: Item must be an object")
        missing = [c for c in columns if c not in item]
        if missing:
            logger.warning("Row %d: missing keys: %s", index, ", ".join(missing))
        data.append({str(k): _cell(v) for k, v in item.items()})
    return columns, data


def load_data_file(path: str | Path, data_file_id: str | None = None) -> DataFile:
    """Parse a .csv or .json data file. Raises CourierDataFileError on any problem."""
    p = Path(path)
    if not p.exists():
        raise CourierDataFileError(f"Data file not found: {path}", context={"path": str(path)})
    try:
        raw = p.read_bytes()
    except OSError as e:
        logger.exception("Failed to read data file")
        raise CourierDataFileError(f"Cannot read data file: {e}", context={"path": str(path)}, original_error=e) from e

    suffix = p.suffix.lower()
    try:
        if suffix == ".json":
            columns, rows = parse_json(raw)
        elif suffix == ".csv":
            columns, rows = parse_csv(raw.decode("utf-8-sig"))
        else:
            raise CourierDataFileError("Data file must be .csv or .json", context={"path": str(path)})
    except CourierDataFileError as e:
        raise e.with_context(path=str(path))
    except UnicodeDecodeError as e:
        raise CourierDataFileError("Data file is not valid UTF-8", context={"path": str(path)}, original_error=e) from e

    logger.debug("Loaded data file %s: %d rows, columns=%s", p.name, len(rows), columns)
    return DataFile(id=data_file_id or str(uuid.uuid4()), name=p.name, rows=rows, columns=columns)
