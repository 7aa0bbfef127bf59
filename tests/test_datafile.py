"""Unit tests for CSV/JSON data file parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from courier.datafile import load_data_file, parse_csv, parse_json
from courier.exceptions import CourierDataFileError


def test_parse_csv_trims_and_skips_blank_lines() -> None:
    columns, rows = parse_csv("name , role\n Ada , admin\n\n  \nGrace,user\n")
    assert columns == ["name", "role"]
    assert rows == [{"name": "Ada", "role": "admin"}, {"name": "Grace", "role": "user"}]


def test_parse_csv_quoted_fields() -> None:
    columns, rows = parse_csv('a,b\n"x, y","say ""hi"""\n')
    assert rows == [{"a": "x, y", "b": 'say "hi"'}]


def test_parse_csv_short_row_fills_blanks() -> None:
    _, rows = parse_csv("a,b,c\n1\n")
    assert rows == [{"a": "1", "b": "", "c": ""}]


@pytest.mark.parametrize("text, message", [("", "header row"), ("a,b\n", "at least one data row")])
def test_parse_csv_errors(text: str, message: str) -> None:
    with pytest.raises(CourierDataFileError, match=message):
        parse_csv(text)


def test_parse_json_stringifies_values() -> None:
    columns, rows = parse_json('[{"id": 1, "ok": true, "tags": ["a"], "none": null}, {"id": 2.5}]')
    assert columns == ["id", "ok", "tags", "none"]
    assert rows[0] == {"id": "1", "ok": "true", "tags": '["a"]', "none": ""}
    assert rows[1] == {"id": "2.5"}


@pytest.mark.parametrize(
    "text, message",
    [
        ("{bad", "Invalid JSON format"),
        ('{"a": 1}', "array of objects"),
        ("[]", "at least one item"),
        ("[1]", "objects with at least one property"),
        ('[{"a": 1}, 2]', "Row 2: Item must be an object"),
    ],
)
def test_parse_json_errors(text: str, message: str) -> None:
    with pytest.raises(CourierDataFileError, match=message):
        parse_json(text)


def test_load_data_file_csv(sample_csv_path: Path) -> None:
    data = load_data_file(sample_csv_path, data_file_id="d1")
    assert data.id == "d1"
    assert data.name == "users.csv"
    assert data.row_count == 2
    assert data.rows[0] == {"name": "Ada", "role": "admin"}


def test_load_data_file_csv_with_bom(tmp_path: Path) -> None:
    p = tmp_path / "bom.csv"
    p.write_bytes("﻿user\nada\n".encode("utf-8"))
    assert load_data_file(p).columns == ["user"]


def test_load_data_file_json(tmp_path: Path) -> None:
    p = tmp_path / "rows.json"
    p.write_text('[{"user": "ada"}, {"user": "bob"}]')
    data = load_data_file(p)
    assert [r["user"] for r in data.rows] == ["ada", "bob"]
    assert data.id


def test_load_data_file_errors_carry_path(tmp_path: Path) -> None:
    with pytest.raises(CourierDataFileError, match="Data file not found"):
        load_data_file(tmp_path / "missing.csv")
    txt = tmp_path / "rows.txt"
    txt.write_text("a\n1\n")
    with pytest.raises(CourierDataFileError, match="must be .csv or .json"):
        load_data_file(txt)
    empty = tmp_path / "empty.csv"
    empty.write_text("a,b\n")
    with pytest.raises(CourierDataFileError) as exc:
        load_data_file(empty)
    assert exc.value.context["path"] == str(empty)
