from __future__ import annotations

import allure
import pytest

from task_tree.core.errors import (
    CycleError,
    DuplicateTaskError,
    StoreError,
    TaskBlockedError,
    TaskNotFoundError,
    TaskReferenceError,
    ValidationError,
)
from task_tree.core.models import TaskDefinition, TaskStatus
from task_tree.core.tasks import TaskService
from task_tree.storage.memory import InMemoryTaskStore

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Task Service"),
]


def _task(number: str, **fields) -> TaskDefinition:
    return TaskDefinition(number=number, name=fields.pop("name", f"Task {number}"), **fields)


def _numbers(tasks) -> list[str]:
    return [task.task_number for task in tasks]


def test_create_applies_defaults(store) -> None:
    service = TaskService(store, default_status=TaskStatus.IN_PROGRESS, default_priority=5)

    task = service.create(
        _task(
            "1.0",
            description="Set up the schema",
            files=["db/schema.sql"],
            docs_references=["https://sqlite.org/lang.html"],
        ),
    )

    assert task.status is TaskStatus.IN_PROGRESS
    assert task.priority == 5
    assert task.files == ["db/schema.sql"]
    assert task.docs_references == ["https://sqlite.org/lang.html"]
    assert task.parent_id is None
    assert service.find_by_id(task.id).task_number == "1.0"


def test_create_completed_task_starts_at_full_completion(service: TaskService) -> None:
    task = service.create(_task("1.0", status="completed"))

    assert task.completion_percentage == 100


def test_create_child_refreshes_parent(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.1", parent="1.0", status="completed"))
    child = service.create(_task("1.2", parent="1.0"))

    assert child.parent_id == service.find_by_number("1.0").id
    assert service.find_by_number("1.0").completion_percentage == 50


def test_create_rejects_invalid_and_conflicting_tasks(service: TaskService) -> None:
    service.create(_task("1.0"))

    with pytest.raises(ValidationError):
        service.create(_task("1.x"))
    with pytest.raises(ValidationError):
        service.create(_task("2.0", priority=11))
    with pytest.raises(DuplicateTaskError):
        service.create(_task("1.0"))
    with pytest.raises(TaskReferenceError) as parent_error:
        service.create(_task("3.1", parent="3.0"))
    with pytest.raises(TaskReferenceError) as dependency_error:
        service.create(_task("4.0", dependencies=["9.0"]))

    assert parent_error.value.code == "PARENT_NOT_FOUND"
    assert dependency_error.value.code == "DEPENDENCY_NOT_FOUND"
    assert _numbers(service.list_tasks()) == ["1.0"]


def test_update_fields(service: TaskService) -> None:
    service.create(_task("1.0"))

    updated = service.update("1.0", name="Renamed", priority=7, files=["a.py", "b.py"])

    assert (updated.name, updated.priority, updated.files) == ("Renamed", 7, ["a.py", "b.py"])


def test_update_validates_changes(service: TaskService) -> None:
    service.create(_task("1.0"))

    with pytest.raises(ValidationError):
        service.update("1.0", name="")
    with pytest.raises(ValidationError):
        service.update("1.0", docs_references=["not a url"])
    with pytest.raises(ValidationError) as error_info:
        service.update("1.0", parent="2.0")
    with pytest.raises(TaskNotFoundError):
        service.update("5.0", name="Missing")

    assert error_info.value.details["fields"] == ["parent"]
    assert service.find_by_number("1.0").name == "Task 1.0"


def test_update_status_refreshes_parent(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.1", parent="1.0"))

    service.update("1.1", status="completed")

    assert service.find_by_number("1.1").completion_percentage == 100
    assert service.find_by_number("1.0").completion_percentage == 100


def test_delete_removes_subtree_and_edges(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.1", parent="1.0", status="completed"))
    service.create(_task("1.2", parent="1.0"))
    service.create(_task("1.2.1", parent="1.2"))
    service.create(_task("2.0", dependencies=["1.2.1"]))
    assert service.find_by_number("1.0").completion_percentage == 50

    assert service.delete("1.2") is True

    assert _numbers(service.list_tasks()) == ["1.0", "1.1", "2.0"]
    assert service.find_by_number("2.0").dependencies == []
    assert service.find_by_number("1.0").completion_percentage == 100
    assert service.delete("1.2") is False


def test_add_dependency(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0"))

    task = service.add_dependency("2.0", "1.0")
    again = service.add_dependency("2.0", "1.0")

    assert task.dependencies == ["1.0"]
    assert again.dependencies == ["1.0"]
    assert len(service.store.list_dependency_edges()) == 1


def test_add_dependency_refuses_cycles(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0", dependencies=["1.0"]))
    service.create(_task("3.0", dependencies=["2.0"]))

    with pytest.raises(CycleError) as error_info:
        service.add_dependency("1.0", "3.0")
    with pytest.raises(TaskReferenceError):
        service.add_dependency("1.0", "7.0")

    assert error_info.value.details["cycle"][0] == error_info.value.details["cycle"][-1]
    assert service.find_by_number("1.0").dependencies == []


def test_list_tasks_filters(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.1", parent="1.0", status="completed"))
    service.create(_task("1.2", parent="1.0"))
    service.create(_task("2.0", status="completed"))

    assert _numbers(service.list_tasks(TaskStatus.COMPLETED)) == ["1.1", "2.0"]
    assert _numbers(service.list_tasks(parent_number="1.0")) == ["1.1", "1.2"]
    assert _numbers(service.list_tasks(include_completed=False)) == ["1.0", "1.2"]
    with pytest.raises(TaskNotFoundError):
        service.list_tasks(parent_number="3.0")


def test_stats(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0", status="in_progress"))
    service.create(_task("3.0", status="completed"))
    service.create(_task("4.0", status="cancelled"))

    stats = service.get_stats()

    assert stats.to_dict() == {
        "total": 4,
        "pending": 1,
        "inProgress": 1,
        "completed": 1,
        "cancelled": 1,
        "completionRate": 25,
    }


def test_complete_task_is_blocked_by_dependencies(service: TaskService) -> None:
    service.create(_task("1.0", name="Schema"))
    service.create(_task("2.0", dependencies=["1.0"]))

    with pytest.raises(TaskBlockedError) as error_info:
        service.complete_task("2.0")

    assert error_info.value.details["blockers"] == ["1.0 Schema (pending)"]
    assert service.find_by_number("2.0").status is TaskStatus.PENDING

    forced = service.complete_task("2.0", "shipped anyway", force=True)

    assert forced.task.status is TaskStatus.COMPLETED
    assert forced.task.completion_notes == "shipped anyway"


def test_start_task_checks_dependencies(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0", dependencies=["1.0"]))

    with pytest.raises(TaskBlockedError):
        service.start_task("2.0")

    assert service.start_task("2.0", force=True).status is TaskStatus.IN_PROGRESS
    assert service.start_task("1.0").status is TaskStatus.IN_PROGRESS


def test_status_transitions(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0"))
    service.complete_task("1.0")
    service.cancel_task("2.0", "not needed")

    with pytest.raises(ValidationError) as error_info:
        service.start_task("1.0")
    with pytest.raises(ValidationError):
        service.complete_task("2.0")
    with pytest.raises(ValidationError):
        service.cancel_task("1.0")

    assert error_info.value.code == "INVALID_TRANSITION"
    assert service.find_by_number("2.0").notes == "not needed"

    reopened = service.reopen_task("1.0")
    assert reopened.status is TaskStatus.PENDING
    assert reopened.completion_percentage == 0
    assert service.reopen_task("2.0").status is TaskStatus.PENDING


def test_reopening_a_dependency_keeps_dependents_completed(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0", dependencies=["1.0"]))
    service.complete_task("1.0")
    service.complete_task("2.0")

    service.reopen_task("1.0")

    assert service.find_by_number("2.0").status is TaskStatus.COMPLETED


def test_bulk_insert_orders_parents_and_dependencies_first(service: TaskService) -> None:
    definitions = [
        _task("1.1", parent="1.0", dependencies=["2.0"]),
        _task("2.0"),
        _task("1.0"),
    ]

    result = service.bulk_insert(definitions)

    assert result.success
    assert _numbers(result.inserted) == ["1.0", "2.0", "1.1"]
    assert result.summary.total == 3
    assert result.summary.successful == 3
    assert service.find_by_number("1.1").dependencies == ["2.0"]


def test_bulk_insert_rejects_cycles_without_writing(service: TaskService) -> None:
    definitions = [
        _task("1.0", dependencies=["2.0"]),
        _task("2.0", dependencies=["1.0"]),
        _task("3.0"),
    ]

    with pytest.raises(CycleError) as error_info:
        service.bulk_insert(definitions)

    assert error_info.value.details["validation"]["valid"] is False
    assert service.list_tasks() == []


def test_bulk_insert_reports_duplicates_before_references(service: TaskService) -> None:
    definitions = [_task("1.0"), _task("1.0"), _task("2.0", dependencies=["5.0"])]

    with pytest.raises(DuplicateTaskError):
        service.bulk_insert(definitions)
    with pytest.raises(TaskReferenceError):
        service.bulk_insert([_task("2.0", dependencies=["5.0"])])
    with pytest.raises(ValidationError):
        service.bulk_insert([_task("2.0", priority=42)])

    assert service.list_tasks() == []


def test_bulk_insert_skips_existing_numbers(service: TaskService) -> None:
    service.create(_task("1.0"))

    result = service.bulk_insert([_task("1.0"), _task("1.1", parent="1.0")])

    assert result.success
    assert [item.task.number for item in result.skipped] == ["1.0"]
    assert result.skipped[0].reason == "Already exists"
    assert _numbers(result.inserted) == ["1.1"]
    assert (result.summary.successful, result.summary.skipped) == (1, 1)


def _fail_insert_for(store, monkeypatch: pytest.MonkeyPatch, task_number: str) -> None:
    original = store.insert

    def insert(task):
        if task.task_number == task_number:
            raise RuntimeError("disk full")
        return original(task)

    monkeypatch.setattr(store, "insert", insert)


def test_bulk_insert_is_all_or_nothing(
    service: TaskService,
    store,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _fail_insert_for(store, monkeypatch, "2.0")

    with pytest.raises(StoreError) as error_info:
        service.bulk_insert([_task("1.0"), _task("2.0"), _task("3.0")])

    assert error_info.value.code == "BULK_INSERT_ERROR"
    assert service.list_tasks() == []


def test_bulk_insert_best_effort_collects_failures(
    service: TaskService,
    store,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _fail_insert_for(store, monkeypatch, "2.0")

    result = service.bulk_insert(
        [_task("1.0"), _task("2.0"), _task("3.0", dependencies=["2.0"]), _task("4.0")],
        best_effort=True,
    )

    assert not result.success
    assert _numbers(result.inserted) == ["1.0", "4.0"]
    assert [item.task.number for item in result.errors] == ["2.0", "3.0"]
    assert "Dependency task 2.0 not found" in result.errors[1].error
    assert result.summary.failed == 2
    assert _numbers(service.list_tasks()) == ["1.0", "4.0"]


def test_validate_import_knows_existing_tasks(service: TaskService) -> None:
    service.create(_task("1.0"))

    result = service.validate_import([_task("1.1", parent="1.0"), _task("2.0", parent="9.0")])

    assert not result.valid
    assert result.summary.invalid == 1
    assert [issue.task for issue in result.errors] == ["2.0"]


def test_export_round_trip(service: TaskService) -> None:
    service.create(_task("1.0", description="Root", docs_references=["https://example.com/a"]))
    service.create(_task("1.1", parent="1.0", priority=3, files=["x.py"]))
    service.create(_task("2.0", dependencies=["1.1"], notes="after the child"))
    service.complete_task("1.1", "done")

    exported = service.export_tasks()

    assert [entry["number"] for entry in exported] == ["1.0", "1.1", "2.0"]
    assert exported[1]["parent"] == "1.0"
    assert exported[2]["dependencies"] == ["1.1"]

    copy = TaskService(InMemoryTaskStore())
    copy.bulk_insert([TaskDefinition.from_mapping(entry) for entry in exported])

    assert copy.export_tasks() == exported


def _assert_parent_percentages(store) -> None:
    for task in store.list_all():
        children = store.list_children(task.id)
        if not children:
            continue
        completed = sum(1 for child in children if child.status is TaskStatus.COMPLETED)
        expected = (200 * completed + len(children)) // (2 * len(children))
        assert task.completion_percentage == expected, task.task_number


def test_create_rejects_numbers_that_do_not_fit_the_parent(service: TaskService) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.1", parent="1.0"))
    service.create(_task("1.1.1", parent="1.1"))

    with pytest.raises(ValidationError) as fewer_levels:
        service.create(_task("7.0", parent="1.1.1"))
    with pytest.raises(ValidationError):
        service.create(_task("2.1", parent="1.0"))
    with pytest.raises(ValidationError):
        service.create(_task("1.1.1.1.1", parent="1.1"))

    assert fewer_levels.value.code == "INVALID_HIERARCHY"
    assert fewer_levels.value.details["parent_number"] == "1.1.1"
    assert service.create(_task("1.0.1", parent="1.0")).parent_id is not None
    assert _numbers(service.list_tasks()) == ["1.0", "1.0.1", "1.1", "1.1.1"]


def test_bulk_insert_keeps_flexible_numbering(service: TaskService) -> None:
    result = service.bulk_insert([_task("1.0"), _task("2.1", parent="1.0")])

    assert _numbers(result.inserted) == ["1.0", "2.1"]


def test_update_to_completed_checks_dependencies(service: TaskService) -> None:
    service.create(_task("1.0", name="Schema"))
    service.create(_task("2.0", dependencies=["1.0"]))

    with pytest.raises(TaskBlockedError) as error_info:
        service.update("2.0", status="completed")

    assert error_info.value.details["blockers"] == ["1.0 Schema (pending)"]
    assert service.find_by_number("2.0").status is TaskStatus.PENDING


def test_update_to_completed_auto_completes_parent(service: TaskService, store) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.1", parent="1.0"))

    service.update("1.1", status="completed")

    parent = service.find_by_number("1.0")
    assert (parent.status, parent.completion_percentage) == (TaskStatus.COMPLETED, 100)
    _assert_parent_percentages(store)


def test_ancestor_percentages_stay_consistent_across_status_changes(
    service: TaskService,
    store,
) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.1", parent="1.0"))
    service.create(_task("1.1.1", parent="1.1"))
    service.create(_task("1.1.2", parent="1.1"))
    service.create(_task("1.2", parent="1.0", status="completed"))
    service.create(_task("1.3", parent="1.0"))

    service.complete_task("1.1.1")
    _assert_parent_percentages(store)

    service.update("1.1.2", status="completed")
    _assert_parent_percentages(store)
    assert service.find_by_number("1.1").status is TaskStatus.COMPLETED
    assert service.find_by_number("1.0").completion_percentage == 67

    service.reopen_task("1.1.1")
    _assert_parent_percentages(store)
    assert service.find_by_number("1.1").completion_percentage == 50

    service.delete("1.3")
    _assert_parent_percentages(store)
    assert service.find_by_number("1.0").completion_percentage == 100

    service.update("1.2", status="pending")
    _assert_parent_percentages(store)
    assert service.find_by_number("1.0").completion_percentage == 50


def test_same_status_writes_refresh_stale_percentages(service: TaskService, store) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.1", parent="1.0", status="completed"))
    service.create(_task("1.2", parent="1.0"))
    store.update("1.0", {"completion_percentage": 0})

    service.update("1.1", status="completed")
    assert service.find_by_number("1.0").completion_percentage == 50

    service.start_task("1.2")
    store.update("1.0", {"completion_percentage": 0})
    service.start_task("1.2")
    assert service.find_by_number("1.0").completion_percentage == 50
