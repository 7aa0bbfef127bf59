"""Unit tests for the in-memory workspace and variable persistence."""

from __future__ import annotations

from datetime import datetime, timezone

from courier.models import CollectionNode, Environment, NodeKind, Variable, VariableKind
from courier.store import HistoryEntry, InMemoryWorkspace, apply_updates


def test_apply_updates_in_place() -> None:
    variables = [Variable("a", "1", kind=VariableKind.SECRET), Variable("b", "2", enabled=False), Variable("c", "3")]
    apply_updates(variables, {"a": "10", "c": None, "d": "4"})
    assert variables == [
        Variable("a", "10", kind=VariableKind.SECRET),
        Variable("b", "2", enabled=False),
        Variable("d", "4"),
    ]


def test_apply_updates_unset_missing_key_is_noop() -> None:
    variables = [Variable("a", "1")]
    apply_updates(variables, {"zzz": None})
    assert variables == [Variable("a", "1")]


def test_get_subtree() -> None:
    ws = InMemoryWorkspace()
    folder = CollectionNode(id="F", name="F", kind=NodeKind.FOLDER)
    ws.add_collection(CollectionNode(id="root", name="Root", folders=[folder]))
    assert ws.get_subtree("root").id == "root"
    assert ws.get_subtree("root", "F") is folder
    assert ws.get_subtree("root", "missing") is None
    assert ws.get_subtree("missing") is None


def test_persist_environment_and_collection() -> None:
    ws = InMemoryWorkspace()
    ws.add_environment(Environment(id="env", name="Env", variables=[Variable("a", "1")]))
    ws.add_collection(CollectionNode(id="root", name="Root"))
    ws.persist_environment("env", {"a": "2", "b": "3"})
    ws.persist_collection("root", {"x": "y"})
    assert ws.get_environment("env").variables == [Variable("a", "2"), Variable("b", "3")]
    assert ws.collections["root"].variables == [Variable("x", "y")]


def test_persist_to_missing_target_is_dropped() -> None:
    ws = InMemoryWorkspace()
    ws.persist_environment("gone", {"a": "1"})
    ws.persist_collection("gone", {"a": "1"})
    assert ws.environments == {}


def test_globals_returned_as_copy() -> None:
    ws = InMemoryWorkspace()
    ws.set_global("region", "eu")
    ws.set_global("region", "us")
    globals_ = ws.get_globals()
    assert globals_ == [Variable("region", "us")]
    globals_.clear()
    assert ws.get_globals() == [Variable("region", "us")]


def test_history_entry_to_dict() -> None:
    entry = HistoryEntry(
        request_id="r",
        request_name="Get",
        method="GET",
        url="https://a",
        executed_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        status_code=200,
    )
    data = entry.to_dict()
    assert data["requestName"] == "Get"
    assert data["executedAt"] == "2026-01-02T03:04:05+00:00"
    assert data["statusCode"] == 200
    assert data["error"] is None
    ws = InMemoryWorkspace()
    ws.record(entry)
    assert ws.history == [entry]
