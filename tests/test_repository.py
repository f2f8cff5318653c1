from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC
from pathlib import Path

import allure
import pytest

from task_tree.core.errors import StoreError
from task_tree.core.models import NewTask, TaskStatus
from task_tree.storage.memory import InMemoryTaskStore
from task_tree.storage.repository import SQLiteTaskStore

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Task Store"),
]


@pytest.fixture()
def sqlite_store(tmp_path: Path) -> Iterator[SQLiteTaskStore]:
    store = SQLiteTaskStore(tmp_path / "tasks.db")
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


def test_list_fields_are_stored_as_json(sqlite_store: SQLiteTaskStore) -> None:
    sqlite_store.insert(
        NewTask(
            task_number="1.0",
            name="Root",
            files=["src/app.py", "README.md"],
            docs_references=["https://example.com/guide"],
        ),
    )

    row = sqlite_store._connection.execute(
        "SELECT files_json, docs_references_json, status FROM tasks WHERE task_number = ?",
        ("1.0",),
    ).fetchone()
    task = sqlite_store.get("1.0")

    assert row["files_json"] == '["src/app.py", "README.md"]'
    assert row["docs_references_json"] == '["https://example.com/guide"]'
    assert row["status"] == "pending"
    assert task.files == ["src/app.py", "README.md"]
    assert task.created_at.tzinfo is UTC


def test_update_rewrites_status_and_lists(sqlite_store: SQLiteTaskStore) -> None:
    sqlite_store.insert(NewTask(task_number="1.0", name="Root"))

    sqlite_store.update("1.0", {"status": TaskStatus.COMPLETED, "files": ["done.txt"]})
    task = sqlite_store.get("1.0")

    assert task.status is TaskStatus.COMPLETED
    assert task.files == ["done.txt"]
    assert task.updated_at >= task.created_at


def test_update_rejects_unknown_fields(sqlite_store: SQLiteTaskStore) -> None:
    sqlite_store.insert(NewTask(task_number="1.0", name="Root"))

    with pytest.raises(ValueError, match="task_number"):
        sqlite_store.update("1.0", {"task_number": "2.0"})


def test_duplicate_number_is_a_store_error(sqlite_store: SQLiteTaskStore) -> None:
    sqlite_store.insert(NewTask(task_number="1.0", name="Root"))

    with pytest.raises(StoreError) as error_info:
        sqlite_store.insert(NewTask(task_number="1.0", name="Again"))

    assert error_info.value.code == "STORE_ERROR"
    assert error_info.value.details["db_path"].endswith("tasks.db")


def test_failed_savepoint_keeps_outer_work(sqlite_store: SQLiteTaskStore) -> None:
    def failing_insert() -> None:
        sqlite_store.insert(NewTask(task_number="2.0", name="Rolled back"))
        raise RuntimeError("abort inner")

    with sqlite_store.transaction():
        sqlite_store.insert(NewTask(task_number="1.0", name="Kept"))
        with pytest.raises(RuntimeError):
            sqlite_store.run_in_transaction(failing_insert)

    assert [task.task_number for task in sqlite_store.list_all()] == ["1.0"]


def test_failed_outer_transaction_discards_everything(sqlite_store: SQLiteTaskStore) -> None:
    with pytest.raises(RuntimeError), sqlite_store.transaction():
        sqlite_store.insert(NewTask(task_number="1.0", name="Gone"))
        raise RuntimeError("abort")

    assert sqlite_store.list_all() == []


def test_data_survives_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "tasks.db"
    first = SQLiteTaskStore(db_path)
    first.init_schema()
    parent_id = first.insert(NewTask(task_number="1.0", name="Root"))
    child_id = first.insert(NewTask(task_number="1.1", name="Child", parent_id=parent_id))
    first.add_dependency(child_id, parent_id)
    first.close()

    second = SQLiteTaskStore(db_path)
    second.init_schema()
    try:
        child = second.get("1.1")
        assert child.parent_id == parent_id
        assert child.dependencies == ["1.0"]
        assert second.list_dependency_edges() == [(child_id, parent_id)]
    finally:
        second.close()


def test_delete_removes_descendants(store) -> None:
    root_id = store.insert(NewTask(task_number="1.0", name="Root"))
    child_id = store.insert(NewTask(task_number="1.1", name="Child", parent_id=root_id))
    store.insert(NewTask(task_number="1.1.1", name="Grandchild", parent_id=child_id))
    other_id = store.insert(NewTask(task_number="2.0", name="Other"))
    store.add_dependency(other_id, child_id)

    assert store.delete("1.0") is True

    assert [task.task_number for task in store.list_all()] == ["2.0"]
    assert store.list_dependency_edges() == []
    assert store.delete("1.0") is False


def test_dependency_lookups_in_both_directions(store) -> None:
    first = store.insert(NewTask(task_number="1.0", name="First"))
    second = store.insert(NewTask(task_number="2.0", name="Second"))
    third = store.insert(NewTask(task_number="3.0", name="Third"))
    store.add_dependency(third, second)
    store.add_dependency(third, first)
    store.add_dependency(third, first)

    assert [task.task_number for task in store.list_dependencies(third)] == ["2.0", "1.0"]
    assert [task.task_number for task in store.list_dependents(first)] == ["3.0"]
    assert store.get("3.0").dependencies == ["1.0", "2.0"]
    assert len(store.list_dependency_edges()) == 2


def test_memory_store_enforces_constraints() -> None:
    store = InMemoryTaskStore()
    store.insert(NewTask(task_number="1.0", name="Root"))

    with pytest.raises(ValueError, match="UNIQUE"):
        store.insert(NewTask(task_number="1.0", name="Again"))
    with pytest.raises(ValueError, match="FOREIGN KEY"):
        store.insert(NewTask(task_number="1.1", name="Orphan", parent_id=99))


def test_memory_store_restores_snapshot_on_failure() -> None:
    store = InMemoryTaskStore()
    store.insert(NewTask(task_number="1.0", name="Root"))

    def failing() -> None:
        store.update("1.0", {"name": "Changed"})
        store.insert(NewTask(task_number="2.0", name="New"))
        raise RuntimeError("abort")

    with pytest.raises(RuntimeError):
        store.run_in_transaction(failing)

    assert [task.task_number for task in store.list_all()] == ["1.0"]
    assert store.get("1.0").name == "Root"
