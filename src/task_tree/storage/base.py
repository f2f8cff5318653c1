"""Store capability consumed by the task engine."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol, TypeVar

from task_tree.core.models import NewTask, Task

T = TypeVar("T")

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "status",
        "priority",
        "completion_percentage",
        "completion_notes",
        "notes",
        "files",
        "docs_references",
        "testing_strategy",
    },
)


class TaskStore(Protocol):
    """Interface for task persistence adapters.

    Every method joins the transaction opened by ``run_in_transaction`` when
    one is active, otherwise it runs in its own short transaction.
    """

    def get(self, task_number: str) -> Task | None:
        """Return the task with this number, if any."""
        raise NotImplementedError

    def get_by_id(self, task_id: int) -> Task | None:
        """Return the task with this surrogate id, if any."""
        raise NotImplementedError

    def insert(self, task: NewTask) -> int:
        """Persist a new task and return its id."""
        raise NotImplementedError

    def update(self, task_number: str, changes: Mapping[str, Any]) -> None:
        """Apply a partial update; keys must be in ``UPDATABLE_FIELDS``."""
        raise NotImplementedError

    def delete(self, task_number: str) -> bool:
        """Delete a task, its descendants and their dependency edges."""
        raise NotImplementedError

    def list_all(self) -> list[Task]:
        """Return every task (unordered)."""
        raise NotImplementedError

    def list_children(self, parent_id: int) -> list[Task]:
        """Return direct children of a task."""
        raise NotImplementedError

    def list_dependencies(self, task_id: int) -> list[Task]:
        """Return tasks the given task depends on."""
        raise NotImplementedError

    def list_dependents(self, task_id: int) -> list[Task]:
        """Return tasks depending on the given task."""
        raise NotImplementedError

    def list_dependency_edges(self) -> list[tuple[int, int]]:
        """Return all ``(task_id, depends_on_id)`` pairs."""
        raise NotImplementedError

    def add_dependency(self, task_id: int, depends_on_id: int) -> None:
        """Record that ``task_id`` must wait for ``depends_on_id``."""
        raise NotImplementedError

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` atomically; roll everything back if it raises."""
        raise NotImplementedError


def check_update_fields(changes: Mapping[str, Any]) -> None:
    unknown = sorted(set(changes) - UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported task fields for update: {', '.join(unknown)}")
