"""Collaborator interfaces consumed by the engine, plus an in-memory workspace.

The engine only reads collection trees, environments and data files; it hands
one history entry per executed request to a sink and, when a run finishes,
pushes net variable changes to a writer. InMemoryWorkspace implements every
interface and is what the CLI and the tests drive the engine with.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol

from .logging_config import get_logger
from .models import CollectionNode, DataFile, Environment, Variable, VariableKind
from .tree import find_path

logger = get_logger("store")


@dataclass(slots=True)
class HistoryEntry:
    """Summary of one executed request, as handed to the history sink."""

    request_id: str
    request_name: str
    method: str
    url: str
    executed_at: datetime
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    status_code: int | None = None
    status_text: str | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    response_time: float | None = None
    response_size: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "requestName": self.request_name,
            "method": self.method,
            "url": self.url,
            "executedAt": self.executed_at.isoformat(),
            "requestHeaders": dict(self.request_headers),
            "requestBody": self.request_body,
            "statusCode": self.status_code,
            "statusText": self.status_text,
            "responseHeaders": dict(self.response_headers),
            "responseBody": self.response_body,
            "responseTime": self.response_time,
            "responseSize": self.response_size,
            "error": self.error,
        }


class TreeReader(Protocol):
    def get_subtree(self, collection_id: str, folder_id: str | None = None) -> CollectionNode | None: ...


class EnvironmentReader(Protocol):
    def get_environment(self, environment_id: str) -> Environment | None: ...

    def get_globals(self) -> list[Variable]: ...


class DataFileReader(Protocol):
    def get_data_file(self, data_file_id: str) -> DataFile | None: ...


class HistorySink(Protocol):
    def record(self, entry: HistoryEntry) -> None: ...


class VariableWriter(Protocol):
    def persist_environment(self, environment_id: str, updates: Mapping[str, str | None]) -> None: ...

    def persist_collection(self, collection_id: str, updates: Mapping[str, str | None]) -> None: ...


def apply_updates(variables: list[Variable], updates: Mapping[str, str | None]) -> list[Variable]:
    """Apply set/unset updates to a stored variable list, in place.

    Existing keys keep their position, kind and enabled flag; new keys are
    appended as enabled default variables; a None value removes the key.
    """
    for key, value in updates.items():
        index = next((i for i, v in enumerate(variables) if v.key == key), None)
        if value is None:
            if index is not None:
                del variables[index]
        elif index is not None:
            variables[index].value = value
        else:
            variables.append(Variable(key=key, value=value, kind=VariableKind.DEFAULT, enabled=True))
    return variables


class InMemoryWorkspace:
    """Collections, environments, data files, globals and request history held in memory."""

    def __init__(self) -> None:
        self.collections: dict[str, CollectionNode] = {}
        self.environments: dict[str, Environment] = {}
        self.data_files: dict[str, DataFile] = {}
        self.globals: list[Variable] = []
        self.history: list[HistoryEntry] = []
        # record() is called from executor threads
        self._history_lock = threading.Lock()

    def add_collection(self, node: CollectionNode) -> CollectionNode:
        self.collections[node.id] = node
        return node

    def add_environment(self, environment: Environment) -> Environment:
        self.environments[environment.id] = environment
        return environment

    def add_data_file(self, data_file: DataFile) -> DataFile:
        self.data_files[data_file.id] = data_file
        return data_file

    def set_global(self, key: str, value: str) -> None:
        apply_updates(self.globals, {key: value})

    # TreeReader

    def get_subtree(self, collection_id: str, folder_id: str | None = None) -> CollectionNode | None:
        root = self.collections.get(collection_id)
        if root is None or folder_id is None:
            return root
        path = find_path(root, folder_id)
        return path[0] if path else None

    # EnvironmentReader

    def get_environment(self, environment_id: str) -> Environment | None:
        return self.environments.get(environment_id)

    def get_globals(self) -> list[Variable]:
        return list(self.globals)

    # DataFileReader

    def get_data_file(self, data_file_id: str) -> DataFile | None:
        return self.data_files.get(data_file_id)

    # HistorySink

    def record(self, entry: HistoryEntry) -> None:
        with self._history_lock:
            self.history.append(entry)

    # VariableWriter

    def persist_environment(self, environment_id: str, updates: Mapping[str, str | None]) -> None:
        environment = self.environments.get(environment_id)
        if environment is None:
            logger.warning("Environment %s no longer exists; %d update(s) dropped", environment_id, len(updates))
            return
        apply_updates(environment.variables, updates)

    def persist_collection(self, collection_id: str, updates: Mapping[str, str | None]) -> None:
        root = self.collections.get(collection_id)
        if root is None:
            logger.warning("Collection %s no longer exists; %d update(s) dropped", collection_id, len(updates))
            return
        apply_updates(root.variables, updates)
