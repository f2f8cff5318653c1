"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from task_tree.core.completion import CompletionService
from task_tree.core.navigation import NavigationService
from task_tree.core.tasks import TaskService
from task_tree.storage.memory import InMemoryTaskStore
from task_tree.storage.repository import SQLiteTaskStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[object]:
    """Every engine test runs against both store adapters."""
    if request.param == "memory":
        yield InMemoryTaskStore()
        return
    sqlite_store = SQLiteTaskStore(tmp_path / "tasks.db")
    sqlite_store.init_schema()
    try:
        yield sqlite_store
    finally:
        sqlite_store.close()


@pytest.fixture()
def service(store) -> TaskService:
    return TaskService(store)


@pytest.fixture()
def navigation(store) -> NavigationService:
    return NavigationService(store)


@pytest.fixture()
def completion(store) -> CompletionService:
    return CompletionService(store)

