from __future__ import annotations

import allure
import pytest

from task_tree.core.errors import TaskNotFoundError, ValidationError
from task_tree.core.models import TaskDefinition, TaskStatus
from task_tree.core.navigation import NavigationService
from task_tree.core.tasks import TaskService

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Navigation"),
]


def _task(number: str, **fields) -> TaskDefinition:
    return TaskDefinition(number=number, name=fields.pop("name", f"Task {number}"), **fields)


def _numbers(tasks) -> list[str]:
    return [task.task_number for task in tasks]


def test_current_task_waits_for_dependencies(
    service: TaskService,
    navigation: NavigationService,
) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0", dependencies=["1.0"]))

    assert navigation.get_current_task().task_number == "1.0"

    service.complete_task("1.0")

    assert navigation.get_current_task().task_number == "2.0"


def test_current_and_next_follow_numeric_order(
    service: TaskService,
    navigation: NavigationService,
) -> None:
    for major in range(8, 13):
        service.create(_task(f"{major}.0"))
    service.complete_task("8.0")
    service.complete_task("9.0")

    assert navigation.get_current_task().task_number == "10.0"
    assert navigation.get_next_task("10.0").task_number == "11.0"
    assert navigation.get_next_task().task_number == "10.0"
    assert navigation.get_next_task("12.0") is None


def test_diamond_dependencies(service: TaskService, navigation: NavigationService) -> None:
    service.create(_task("1.0", status="completed"))
    service.create(_task("2.0", dependencies=["1.0"]))
    service.create(_task("3.0", dependencies=["1.0"]))
    service.create(_task("4.0", dependencies=["2.0", "3.0"]))

    assert _numbers(navigation.get_ready_tasks()) == ["2.0", "3.0"]
    assert _numbers(navigation.get_blocked_tasks()) == ["4.0"]

    eligibility = navigation.can_start_task("4.0")
    assert not eligibility.can_start
    assert eligibility.blockers == ["2.0 Task 2.0 (pending)", "3.0 Task 3.0 (pending)"]
    assert navigation.can_start_task("2.0").can_start


def test_no_current_task_when_everything_is_done(
    service: TaskService,
    navigation: NavigationService,
) -> None:
    assert navigation.get_current_task() is None

    service.create(_task("1.0", status="completed"))
    service.create(_task("2.0", status="cancelled"))

    assert navigation.get_current_task() is None
    assert navigation.get_remaining_task_count() == 0


def test_in_progress_tasks_are_ready(service: TaskService, navigation: NavigationService) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0", status="in_progress"))
    service.create(_task("3.0", status="cancelled"))

    assert _numbers(navigation.get_ready_tasks()) == ["1.0", "2.0"]
    assert navigation.get_remaining_task_count() == 2


def test_previous_task(service: TaskService, navigation: NavigationService) -> None:
    for number in ("1.0", "2.0", "2.1", "3.0"):
        service.create(_task(number))
    service.complete_task("2.1")

    assert navigation.get_previous_task("3.0").task_number == "2.0"
    assert navigation.get_previous_task("1.0") is None


@pytest.mark.parametrize("before", [None, ""])
def test_previous_task_requires_a_reference(navigation: NavigationService, before) -> None:
    with pytest.raises(ValidationError):
        navigation.get_previous_task(before)


def test_next_task_rejects_malformed_reference(navigation: NavigationService) -> None:
    with pytest.raises(ValidationError) as error_info:
        navigation.get_next_task("1.x")

    assert error_info.value.code == "VALIDATION_ERROR"


def test_tasks_by_status_lists_every_status(
    service: TaskService,
    navigation: NavigationService,
) -> None:
    service.create(_task("2.0", status="completed"))
    service.create(_task("1.0"))
    service.create(_task("3.0"))

    grouped = navigation.get_tasks_by_status()

    assert set(grouped) == set(TaskStatus)
    assert _numbers(grouped[TaskStatus.PENDING]) == ["1.0", "3.0"]
    assert _numbers(grouped[TaskStatus.COMPLETED]) == ["2.0"]
    assert grouped[TaskStatus.CANCELLED] == []


def test_dependency_lookups(service: TaskService, navigation: NavigationService) -> None:
    service.create(_task("1.0"))
    service.create(_task("2.0"))
    service.create(_task("3.0", dependencies=["2.0", "1.0"]))

    assert _numbers(navigation.get_task_dependencies("3.0")) == ["1.0", "2.0"]
    assert _numbers(navigation.get_dependent_tasks("1.0")) == ["3.0"]
    with pytest.raises(TaskNotFoundError):
        navigation.get_task_dependencies("4.0")
    with pytest.raises(TaskNotFoundError):
        navigation.can_start_task("4.0")


def test_task_hierarchy(service: TaskService, navigation: NavigationService) -> None:
    service.create(_task("1.0"))
    service.create(_task("1.2", parent="1.0"))
    service.create(_task("1.1", parent="1.0"))
    service.create(_task("1.1.1", parent="1.1"))
    service.create(_task("2.0"))

    forest = navigation.get_task_hierarchy()

    assert [node.task.task_number for node in forest] == ["1.0", "2.0"]
    first = forest[0]
    assert [child.task.task_number for child in first.children] == ["1.1", "1.2"]
    grandchild = first.children[0].children[0]
    assert (grandchild.task.task_number, grandchild.level) == ("1.1.1", 2)

    subtree = navigation.get_task_hierarchy("1.1")
    assert [node.task.task_number for node in subtree] == ["1.1"]
    assert subtree[0].level == 0
    with pytest.raises(TaskNotFoundError):
        navigation.get_task_hierarchy("9.0")
