"""In-memory task store for tests and throwaway sessions."""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any, TypeVar

from task_tree.core.models import NewTask, Task, TaskStatus
from task_tree.core.ordering import sort_by_task_number
from task_tree.storage.base import check_update_fields
from task_tree.storage.common import utc_now

T = TypeVar("T")


class InMemoryTaskStore:
    """Dict-backed ``TaskStore``; nested transactions restore snapshots on failure."""

    def __init__(self) -> None:
        self._rows: dict[int, Task] = {}
        self._edges: list[tuple[int, int]] = []
        self._next_id = 1

    def get(self, task_number: str) -> Task | None:
        for row in self._rows.values():
            if row.task_number == task_number:
                return self._to_task(row)
        return None

    def get_by_id(self, task_id: int) -> Task | None:
        row = self._rows.get(task_id)
        return self._to_task(row) if row is not None else None

    def insert(self, task: NewTask) -> int:
        if any(row.task_number == task.task_number for row in self._rows.values()):
            raise ValueError(f"UNIQUE constraint failed: tasks.task_number ({task.task_number})")
        if task.parent_id is not None and task.parent_id not in self._rows:
            raise ValueError(f"FOREIGN KEY constraint failed: parent_id={task.parent_id}")
        task_id = self._next_id
        self._next_id += 1
        now = utc_now()
        self._rows[task_id] = Task(
            id=task_id,
            task_number=task.task_number,
            name=task.name,
            status=task.status,
            priority=task.priority,
            created_at=now,
            updated_at=now,
            parent_id=task.parent_id,
            description=task.description,
            completion_percentage=task.completion_percentage,
            completion_notes=task.completion_notes,
            notes=task.notes,
            files=list(task.files),
            docs_references=list(task.docs_references),
            testing_strategy=task.testing_strategy,
        )
        return task_id

    def update(self, task_number: str, changes: Mapping[str, Any]) -> None:
        check_update_fields(changes)
        row = self._find(task_number)
        if row is None:
            return
        values = dict(changes)
        if "status" in values:
            values["status"] = TaskStatus(values["status"])
        self._rows[row.id] = replace(row, **values, updated_at=utc_now())

    def delete(self, task_number: str) -> bool:
        row = self._find(task_number)
        if row is None:
            return False
        doomed = {row.id}
        frontier = [row.id]
        while frontier:
            parent_id = frontier.pop()
            for child in self._rows.values():
                if child.parent_id == parent_id and child.id not in doomed:
                    doomed.add(child.id)
                    frontier.append(child.id)
        self._edges = [
            (task_id, depends_on_id)
            for task_id, depends_on_id in self._edges
            if task_id not in doomed and depends_on_id not in doomed
        ]
        for task_id in doomed:
            del self._rows[task_id]
        return True

    def list_all(self) -> list[Task]:
        return [self._to_task(row) for row in self._rows.values()]

    def list_children(self, parent_id: int) -> list[Task]:
        return [self._to_task(row) for row in self._rows.values() if row.parent_id == parent_id]

    def list_dependencies(self, task_id: int) -> list[Task]:
        return [
            self._to_task(self._rows[depends_on_id])
            for source_id, depends_on_id in self._edges
            if source_id == task_id
        ]

    def list_dependents(self, task_id: int) -> list[Task]:
        return [
            self._to_task(self._rows[source_id])
            for source_id, depends_on_id in self._edges
            if depends_on_id == task_id
        ]

    def list_dependency_edges(self) -> list[tuple[int, int]]:
        return list(self._edges)

    def add_dependency(self, task_id: int, depends_on_id: int) -> None:
        if task_id not in self._rows or depends_on_id not in self._rows:
            raise ValueError(f"FOREIGN KEY constraint failed: {task_id} -> {depends_on_id}")
        if (task_id, depends_on_id) not in self._edges:
            self._edges.append((task_id, depends_on_id))

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        snapshot = (copy.deepcopy(self._rows), list(self._edges), self._next_id)
        try:
            return fn()
        except BaseException:
            self._rows, self._edges, self._next_id = snapshot
            raise

    def _find(self, task_number: str) -> Task | None:
        for row in self._rows.values():
            if row.task_number == task_number:
                return row
        return None

    def _to_task(self, row: Task) -> Task:
        dependencies = [
            self._rows[depends_on_id].task_number
            for source_id, depends_on_id in self._edges
            if source_id == row.id
        ]
        return replace(
            row,
            dependencies=sort_by_task_number(dependencies),
            files=list(row.files),
            docs_references=list(row.docs_references),
        )
