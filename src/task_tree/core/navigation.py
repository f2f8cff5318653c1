"""Readiness-aware navigation: current, next, previous, ready and blocked tasks."""

from __future__ import annotations

from collections import defaultdict

from task_tree.core.completion import format_blocker
from task_tree.core.errors import TaskNotFoundError, ValidationError
from task_tree.core.models import (
    StartEligibility,
    Task,
    TaskHierarchy,
    TaskStatus,
)
from task_tree.core.ordering import sort_by_task_number, task_number_key
from task_tree.core.validation import is_valid_task_number
from task_tree.storage.base import TaskStore


class NavigationService:
    """Answers "what should be worked on next?" from fresh store state."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def get_current_task(self) -> Task | None:
        ready = self.get_ready_tasks()
        return ready[0] if ready else None

    def get_next_task(self, after: str | None = None) -> Task | None:
        if after is None:
            return self.get_current_task()
        threshold = _number_key(after)
        for task in self.get_ready_tasks():
            if task_number_key(task.task_number) > threshold:
                return task
        return None

    def get_previous_task(self, before: str | None) -> Task | None:
        if not before:
            raise ValidationError(
                "A task number is required to find the previous task",
                details={"before": before},
            )
        threshold = _number_key(before)
        for task in reversed(self.get_ready_tasks()):
            if task_number_key(task.task_number) < threshold:
                return task
        return None

    def get_ready_tasks(self) -> list[Task]:
        tasks, by_number = self._snapshot()
        return [task for task in tasks if task.is_active and not _unmet(task, by_number)]

    def get_blocked_tasks(self) -> list[Task]:
        tasks, by_number = self._snapshot()
        return [task for task in tasks if task.is_active and _unmet(task, by_number)]

    def can_start_task(self, task_number: str) -> StartEligibility:
        task = self._require(task_number)
        blockers = [
            format_blocker(dependency)
            for dependency in sort_by_task_number(
                self.store.list_dependencies(task.id),
                number=lambda item: item.task_number,
            )
            if dependency.status is not TaskStatus.COMPLETED
        ]
        return StartEligibility(can_start=not blockers, blockers=blockers)

    def get_remaining_task_count(self) -> int:
        return sum(1 for task in self.store.list_all() if task.is_active)

    def get_tasks_by_status(self) -> dict[TaskStatus, list[Task]]:
        grouped: dict[TaskStatus, list[Task]] = {status: [] for status in TaskStatus}
        for task in self._snapshot()[0]:
            grouped[task.status].append(task)
        return grouped

    def get_task_dependencies(self, task_number: str) -> list[Task]:
        task = self._require(task_number)
        return sort_by_task_number(
            self.store.list_dependencies(task.id),
            number=lambda item: item.task_number,
        )

    def get_dependent_tasks(self, task_number: str) -> list[Task]:
        task = self._require(task_number)
        return sort_by_task_number(
            self.store.list_dependents(task.id),
            number=lambda item: item.task_number,
        )

    def get_task_hierarchy(self, root: str | None = None) -> list[TaskHierarchy]:
        """Build the parent/child forest, or the subtree under ``root``.

        Children are attached breadth-first with a visited set, so a damaged
        parent chain cannot loop.
        """

        tasks, by_number = self._snapshot()
        children: dict[int, list[Task]] = defaultdict(list)
        for task in tasks:
            if task.parent_id is not None:
                children[task.parent_id].append(task)

        if root is not None:
            if root not in by_number:
                raise TaskNotFoundError(f"Task {root} not found", details={"task_number": root})
            roots = [by_number[root]]
        else:
            known_ids = {task.id for task in tasks}
            roots = [
                task for task in tasks if task.parent_id is None or task.parent_id not in known_ids
            ]

        forest = [TaskHierarchy(task=task, level=0) for task in roots]
        visited = {node.task.id for node in forest}
        frontier = list(forest)
        while frontier:
            node = frontier.pop(0)
            for child in children.get(node.task.id, []):
                if child.id in visited:
                    continue
                visited.add(child.id)
                child_node = TaskHierarchy(task=child, level=node.level + 1)
                node.children.append(child_node)
                frontier.append(child_node)
        return forest

    def _snapshot(self) -> tuple[list[Task], dict[str, Task]]:
        tasks = sort_by_task_number(self.store.list_all(), number=lambda item: item.task_number)
        return tasks, {task.task_number: task for task in tasks}

    def _require(self, task_number: str) -> Task:
        task = self.store.get(task_number)
        if task is None:
            raise TaskNotFoundError(
                f"Task {task_number} not found",
                details={"task_number": task_number},
            )
        return task


def _unmet(task: Task, by_number: dict[str, Task]) -> list[str]:
    """Dependency numbers of ``task`` that are not completed (missing counts as unmet)."""

    return [
        number
        for number in task.dependencies
        if number not in by_number or by_number[number].status is not TaskStatus.COMPLETED
    ]


def _number_key(task_number: str) -> tuple[int, ...]:
    if not is_valid_task_number(task_number):
        raise ValidationError(
            f"Invalid task number: {task_number}",
            details={"task_number": task_number},
        )
    return task_number_key(task_number)
