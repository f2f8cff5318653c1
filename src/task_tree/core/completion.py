"""Completion percentages and the auto-completion cascade up the parent chain."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterator, Sequence

from task_tree.core.errors import TaskNotFoundError, store_errors
from task_tree.core.models import (
    CompletionEligibility,
    Task,
    TaskProgress,
    TaskStatus,
)
from task_tree.core.ordering import sort_by_task_number, task_level
from task_tree.storage.base import TaskStore

logger = logging.getLogger(__name__)


def completion_percentage(completed: int, total: int) -> int:
    """Half-up rounded share of completed items (``1/8 -> 13``)."""

    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def format_blocker(task: Task) -> str:
    return f"{task.task_number} {task.name} ({task.status.value})"


class CompletionService:
    """Keeps parent completion consistent with children."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def calculate_completion(self, task: Task) -> int:
        children = self.store.list_children(task.id)
        if not children:
            return 100 if task.status is TaskStatus.COMPLETED else 0
        return _children_percentage(children)

    def calculate_parent_completion(self, parent_id: int) -> int:
        with store_errors(
            "COMPLETION_CALC_ERROR",
            "Failed to calculate parent completion",
            parent_id=parent_id,
        ):
            return _children_percentage(self.store.list_children(parent_id))

    def update_completion_tree(self, task_number: str) -> None:
        """Recompute and persist every ancestor's percentage in one transaction.

        Unknown task numbers are a no-op.
        """

        with store_errors(
            "COMPLETION_UPDATE_ERROR",
            "Failed to update completion tree",
            task_number=task_number,
        ):
            self.store.run_in_transaction(lambda: self._update_completion_tree(task_number))

    def auto_complete_parents(self, task_number: str) -> list[str]:
        """Complete ancestors whose children are all completed; return their numbers.

        Ancestors that are already completed at 100% are walked through without
        a write and are not reported, so a second call returns ``[]``.
        """

        with store_errors(
            "AUTO_COMPLETE_ERROR",
            "Failed to auto-complete parent tasks",
            task_number=task_number,
        ):
            return self.store.run_in_transaction(lambda: self._auto_complete_parents(task_number))

    def can_complete_task(self, task_number: str) -> CompletionEligibility:
        task = self.store.get(task_number)
        if task is None:
            raise TaskNotFoundError(
                f"Task {task_number} not found",
                details={"task_number": task_number},
            )
        blockers = [
            format_blocker(dependency)
            for dependency in sort_by_task_number(
                self.store.list_dependencies(task.id),
                number=lambda item: item.task_number,
            )
            if dependency.status is not TaskStatus.COMPLETED
        ]
        return CompletionEligibility(can_complete=not blockers, blockers=blockers)

    def get_dependent_tasks(self, task_number: str) -> list[Task]:
        task = self.store.get(task_number)
        if task is None:
            return []
        return sort_by_task_number(
            self.store.list_dependents(task.id),
            number=lambda item: item.task_number,
        )

    def get_progress_tree(self, root: str | None = None) -> list[TaskProgress]:
        tasks = self.store.list_all()
        children: dict[int, list[Task]] = defaultdict(list)
        for task in tasks:
            if task.parent_id is not None:
                children[task.parent_id].append(task)

        if root is not None:
            tasks = _subtree(tasks, children, root)

        progress: list[TaskProgress] = []
        for task in sort_by_task_number(tasks, number=lambda item: item.task_number):
            own_children = children.get(task.id, [])
            completed = sum(1 for child in own_children if child.status is TaskStatus.COMPLETED)
            if own_children:
                percentage = completion_percentage(completed, len(own_children))
            else:
                percentage = 100 if task.status is TaskStatus.COMPLETED else 0
            progress.append(
                TaskProgress(
                    task_number=task.task_number,
                    name=task.name,
                    status=task.status,
                    parent_id=task.parent_id,
                    total_children=len(own_children),
                    completed_children=completed,
                    completion_percentage=percentage,
                    level=task_level(task.task_number),
                ),
            )
        return progress

    def _update_completion_tree(self, task_number: str) -> None:
        task = self.store.get(task_number)
        if task is None:
            return

        for ancestor in self._ancestors(task):
            percentage = _children_percentage(self.store.list_children(ancestor.id))
            if percentage == ancestor.completion_percentage:
                continue
            logger.debug(
                "Completion of %s: %d%% -> %d%%",
                ancestor.task_number,
                ancestor.completion_percentage,
                percentage,
            )
            self.store.update(ancestor.task_number, {"completion_percentage": percentage})

    def _auto_complete_parents(self, task_number: str) -> list[str]:
        auto_completed: list[str] = []
        task = self.store.get(task_number)
        if task is None:
            return auto_completed

        for ancestor in self._ancestors(task):
            children = self.store.list_children(ancestor.id)
            if any(child.status is not TaskStatus.COMPLETED for child in children):
                break
            if (
                ancestor.status is TaskStatus.COMPLETED
                and ancestor.completion_percentage == 100  # noqa: PLR2004
            ):
                continue
            self.store.update(
                ancestor.task_number,
                {"status": TaskStatus.COMPLETED, "completion_percentage": 100},
            )
            auto_completed.append(ancestor.task_number)

        if auto_completed:
            logger.info(
                "Auto-completed parent task(s) after %s: %s",
                task_number,
                ", ".join(auto_completed),
            )
        return auto_completed

    def _ancestors(self, task: Task) -> Iterator[Task]:
        """Yield ancestors bottom-up, re-reading each one from the store."""

        visited = {task.id}
        parent_id = task.parent_id
        while parent_id is not None:
            if parent_id in visited:
                logger.warning(
                    "Parent chain of %s loops back to task id %s; stopping.",
                    task.task_number,
                    parent_id,
                )
                return
            visited.add(parent_id)
            parent = self.store.get_by_id(parent_id)
            if parent is None:
                logger.warning(
                    "Parent chain of %s references missing task id %s; stopping.",
                    task.task_number,
                    parent_id,
                )
                return
            yield parent
            parent_id = parent.parent_id


def _children_percentage(children: Sequence[Task]) -> int:
    completed = sum(1 for child in children if child.status is TaskStatus.COMPLETED)
    return completion_percentage(completed, len(children))


def _subtree(
    tasks: Sequence[Task],
    children: dict[int, list[Task]],
    root: str,
) -> list[Task]:
    start = next((task for task in tasks if task.task_number == root), None)
    if start is None:
        raise TaskNotFoundError(f"Task {root} not found", details={"task_number": root})

    selected: list[Task] = []
    seen: set[int] = set()
    frontier = [start]
    while frontier:
        task = frontier.pop()
        if task.id in seen:
            continue
        seen.add(task.id)
        selected.append(task)
        frontier.extend(children.get(task.id, []))
    return selected
