"""Task service: creation, updates, bulk import and status changes.

Every mutating call runs inside one store transaction. Calls made from
inside another transaction (for example ``create`` from ``bulk_insert``)
join it, so a failure anywhere rolls the whole composite operation back.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from task_tree.core.completion import CompletionService, completion_percentage
from task_tree.core.errors import (
    CycleError,
    DuplicateTaskError,
    TaskBlockedError,
    TaskNotFoundError,
    TaskReferenceError,
    TaskTreeError,
    ValidationError,
    store_errors,
)
from task_tree.core.import_order import order_for_import
from task_tree.core.models import (
    ALLOWED_TRANSITIONS,
    BulkInsertResult,
    BulkInsertSummary,
    CompletionResult,
    FailedTask,
    NewTask,
    SkippedTask,
    Task,
    TaskDefinition,
    TaskStats,
    TaskStatus,
    ValidationResult,
)
from task_tree.core.navigation import NavigationService
from task_tree.core.ordering import sort_by_task_number
from task_tree.core.validation import (
    ISSUE_CYCLE,
    ISSUE_DUPLICATE,
    ISSUE_REFERENCE,
    DependencyGraph,
    TaskValidator,
    validate_task_hierarchy,
)
from task_tree.storage.base import TaskStore

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "status",
        "priority",
        "docs_references",
        "testing_strategy",
        "files",
        "notes",
        "completion_notes",
    },
)


class TaskService:
    """Task CRUD plus the composite operations built on the engine."""

    def __init__(
        self,
        store: TaskStore,
        *,
        default_status: TaskStatus = TaskStatus.PENDING,
        default_priority: int = 0,
    ) -> None:
        self.store = store
        self.default_status = default_status
        self.default_priority = default_priority
        self.validator = TaskValidator()
        self.completion = CompletionService(store)
        self.navigation = NavigationService(store)

    def create(self, definition: TaskDefinition) -> Task:
        validation = self.validator.validate_single_task(definition)
        if not validation.valid:
            raise ValidationError(
                f"Invalid task data: {', '.join(validation.errors)}",
                details={"task_number": definition.number, "errors": validation.errors},
            )
        if definition.parent and not validate_task_hierarchy(definition.number, definition.parent):
            raise ValidationError(
                f"Task number {definition.number} does not fit under parent {definition.parent}",
                code="INVALID_HIERARCHY",
                details={"task_number": definition.number, "parent_number": definition.parent},
            )
        with store_errors(
            "CREATE_ERROR",
            f"Failed to create task {definition.number}",
            task_number=definition.number,
        ):
            return self.store.run_in_transaction(lambda: self._create(definition))

    def find_by_number(self, task_number: str) -> Task | None:
        return self.store.get(task_number)

    def find_by_id(self, task_id: int) -> Task | None:
        return self.store.get_by_id(task_id)

    def update(self, task_number: str, **changes: Any) -> Task:
        """Apply a validated partial update.

        A ``status`` change follows the same rules as the dedicated status
        operations: completing checks dependencies, and every status write
        runs the completion cascade including parent auto-completion.
        """

        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(unknown)}",
                details={"task_number": task_number, "fields": unknown},
            )

        def apply() -> Task:
            task = self._require(task_number)
            values = dict(changes)
            candidate = TaskDefinition(
                number=task.task_number,
                name=values.get("name", task.name),
                description=values.get("description", task.description),
                status=_status_value(values.get("status", task.status)),
                priority=values.get("priority", task.priority),
                docs_references=values.get("docs_references", task.docs_references),
                testing_strategy=values.get("testing_strategy", task.testing_strategy),
                files=values.get("files", task.files),
                notes=values.get("notes", task.notes),
                completion_notes=values.get("completion_notes", task.completion_notes),
            )
            validation = self.validator.validate_single_task(candidate)
            if not validation.valid:
                raise ValidationError(
                    f"Invalid task data: {', '.join(validation.errors)}",
                    details={"task_number": task_number, "errors": validation.errors},
                )

            if "status" in values:
                values["status"] = TaskStatus(_status_value(values["status"]))
                _check_transition(task, values["status"])
                if values["status"] is TaskStatus.COMPLETED:
                    self._ensure_can_complete(task_number)
            if values:
                self.store.update(task_number, values)
            if "status" in values:
                self._cascade(task_number)
            return self._require(task_number)

        with store_errors(
            "UPDATE_ERROR",
            f"Failed to update task {task_number}",
            task_number=task_number,
        ):
            return self.store.run_in_transaction(apply)

    def delete(self, task_number: str) -> bool:
        """Delete a task with its descendants; the former parent is recomputed."""

        def apply() -> bool:
            task = self.store.get(task_number)
            if task is None:
                return False
            parent = self.store.get_by_id(task.parent_id) if task.parent_id is not None else None
            self.store.delete(task_number)
            if parent is not None:
                self._refresh_completion(parent.task_number)
            return True

        with store_errors(
            "DELETE_ERROR",
            f"Failed to delete task {task_number}",
            task_number=task_number,
        ):
            return self.store.run_in_transaction(apply)

    def add_dependency(self, task_number: str, depends_on: str) -> Task:
        """Make ``task_number`` wait for ``depends_on``; refuses edges closing a cycle."""

        def apply() -> Task:
            task = self._require(task_number)
            target = self.store.get(depends_on)
            if target is None:
                raise TaskReferenceError(
                    f"Dependency task {depends_on} not found",
                    code="DEPENDENCY_NOT_FOUND",
                    details={"task_number": task_number, "dependency_number": depends_on},
                )
            if depends_on in task.dependencies:
                return task
            self._ensure_acyclic({task_number: [depends_on]})
            self.store.add_dependency(task.id, target.id)
            return self._require(task_number)

        with store_errors(
            "DEPENDENCY_ERROR",
            f"Failed to add dependency {task_number} -> {depends_on}",
            task_number=task_number,
            dependency_number=depends_on,
        ):
            return self.store.run_in_transaction(apply)

    def list_tasks(
        self,
        status: TaskStatus | None = None,
        parent_number: str | None = None,
        *,
        include_completed: bool = True,
    ) -> list[Task]:
        tasks = self.store.list_all()
        if parent_number is not None:
            parent = self._require(parent_number)
            tasks = [task for task in tasks if task.parent_id == parent.id]
        if status is not None:
            tasks = [task for task in tasks if task.status is status]
        if not include_completed:
            tasks = [task for task in tasks if task.status is not TaskStatus.COMPLETED]
        return sort_by_task_number(tasks, number=lambda item: item.task_number)

    def get_stats(self) -> TaskStats:
        stats = TaskStats()
        for task in self.store.list_all():
            stats.total += 1
            if task.status is TaskStatus.PENDING:
                stats.pending += 1
            elif task.status is TaskStatus.IN_PROGRESS:
                stats.in_progress += 1
            elif task.status is TaskStatus.COMPLETED:
                stats.completed += 1
            else:
                stats.cancelled += 1
        stats.completion_rate = completion_percentage(stats.completed, stats.total)
        return stats

    def validate_import(self, definitions: Sequence[TaskDefinition]) -> ValidationResult:
        existing = [task.task_number for task in self.store.list_all()]
        return self.validator.validate_import(definitions, existing_numbers=existing)

    def bulk_insert(
        self,
        definitions: Sequence[TaskDefinition],
        *,
        best_effort: bool = False,
    ) -> BulkInsertResult:
        """Validate the whole batch, then insert it parents-and-dependencies first.

        Structural problems raise before anything is written. Numbers already
        in the store are skipped. With ``best_effort`` each entry gets its own
        savepoint and failures are collected instead of aborting the batch.
        """

        validation = self.validate_import(definitions)
        if not validation.valid:
            raise _validation_failure(validation)

        result = BulkInsertResult(summary=BulkInsertSummary(total=len(definitions)))

        def apply() -> None:
            for definition in order_for_import(definitions):
                if self.store.get(definition.number) is not None:
                    result.skipped.append(SkippedTask(task=definition, reason="Already exists"))
                    result.summary.skipped += 1
                    continue
                if not best_effort:
                    result.inserted.append(self._create(definition))
                    result.summary.successful += 1
                    continue
                try:
                    with store_errors(
                        "BULK_INSERT_ERROR",
                        f"Failed to import task {definition.number}",
                        task_number=definition.number,
                    ):
                        inserted = self.store.run_in_transaction(
                            lambda item=definition: self._create(item),
                        )
                except TaskTreeError as error:
                    logger.warning("Skipping task %s during import: %s", definition.number, error)
                    result.errors.append(FailedTask(task=definition, error=str(error)))
                    result.summary.failed += 1
                    continue
                result.inserted.append(inserted)
                result.summary.successful += 1

        with store_errors("BULK_INSERT_ERROR", "Bulk insert failed", total=len(definitions)):
            self.store.run_in_transaction(apply)

        result.success = result.summary.failed == 0
        logger.info(
            "Imported tasks: total=%d inserted=%d skipped=%d failed=%d",
            result.summary.total,
            result.summary.successful,
            result.summary.skipped,
            result.summary.failed,
        )
        return result

    def complete_task(
        self,
        task_number: str,
        notes: str | None = None,
        *,
        force: bool = False,
    ) -> CompletionResult:
        """Complete a task, then cascade percentages and parent auto-completion.

        Dependencies are checked first unless ``force`` is set. The status
        write, the completion tree update and the auto-completion all share
        one transaction.
        """

        def apply() -> CompletionResult:
            task = self._require(task_number)
            _check_transition(task, TaskStatus.COMPLETED)
            if not force:
                self._ensure_can_complete(task_number)

            changes: dict[str, Any] = {"status": TaskStatus.COMPLETED}
            if notes:
                changes["completion_notes"] = notes
            self.store.update(task_number, changes)
            auto_completed = self._cascade(task_number)
            return CompletionResult(task=self._require(task_number), auto_completed=auto_completed)

        with store_errors(
            "COMPLETE_TASK_ERROR",
            f"Failed to complete task {task_number}",
            task_number=task_number,
        ):
            return self.store.run_in_transaction(apply)

    def start_task(self, task_number: str, *, force: bool = False) -> Task:
        def apply() -> Task:
            task = self._require(task_number)
            if not force:
                blockers = self.navigation.can_start_task(task_number).blockers
                if blockers:
                    raise TaskBlockedError(
                        f"Cannot start task {task_number}. Blocked by: {', '.join(blockers)}",
                        details={"task_number": task_number, "blockers": blockers},
                    )
            return self._change_status(task, TaskStatus.IN_PROGRESS)

        with store_errors(
            "UPDATE_ERROR",
            f"Failed to start task {task_number}",
            task_number=task_number,
        ):
            return self.store.run_in_transaction(apply)

    def reopen_task(self, task_number: str) -> Task:
        """Move a completed or cancelled task back to pending.

        Dependents completed earlier stay completed.
        """

        with store_errors(
            "UPDATE_ERROR",
            f"Failed to reopen task {task_number}",
            task_number=task_number,
        ):
            return self.store.run_in_transaction(
                lambda: self._change_status(self._require(task_number), TaskStatus.PENDING),
            )

    def cancel_task(self, task_number: str, notes: str | None = None) -> Task:
        extra = {"notes": notes} if notes else {}
        with store_errors(
            "UPDATE_ERROR",
            f"Failed to cancel task {task_number}",
            task_number=task_number,
        ):
            return self.store.run_in_transaction(
                lambda: self._change_status(
                    self._require(task_number),
                    TaskStatus.CANCELLED,
                    extra,
                ),
            )

    def export_tasks(self) -> list[dict[str, Any]]:
        """Dump every task in import format, numeric order."""

        tasks = self.store.list_all()
        numbers_by_id = {task.id: task.task_number for task in tasks}
        exported: list[dict[str, Any]] = []
        for task in sort_by_task_number(tasks, number=lambda item: item.task_number):
            definition = TaskDefinition(
                number=task.task_number,
                name=task.name,
                description=task.description,
                parent=numbers_by_id.get(task.parent_id) if task.parent_id is not None else None,
                status=task.status.value,
                priority=task.priority,
                docs_references=list(task.docs_references),
                testing_strategy=task.testing_strategy,
                dependencies=list(task.dependencies),
                files=list(task.files),
                notes=task.notes,
                completion_notes=task.completion_notes,
            )
            exported.append(definition.to_dict())
        return exported

    def _create(self, definition: TaskDefinition) -> Task:
        if self.store.get(definition.number) is not None:
            raise DuplicateTaskError(
                f"Task with number {definition.number} already exists",
                details={"task_number": definition.number},
            )

        parent_id: int | None = None
        if definition.parent:
            parent = self.store.get(definition.parent)
            if parent is None:
                raise TaskReferenceError(
                    f"Parent task {definition.parent} not found",
                    code="PARENT_NOT_FOUND",
                    details={"task_number": definition.number, "parent_number": definition.parent},
                )
            parent_id = parent.id

        dependency_ids: list[int] = []
        for number in definition.dependencies:
            dependency = self.store.get(number)
            if dependency is None:
                raise TaskReferenceError(
                    f"Dependency task {number} not found",
                    code="DEPENDENCY_NOT_FOUND",
                    details={"task_number": definition.number, "dependency_number": number},
                )
            dependency_ids.append(dependency.id)
        if definition.dependencies:
            self._ensure_acyclic({definition.number: list(definition.dependencies)})

        status = TaskStatus(definition.status) if definition.status else self.default_status
        priority = definition.priority if definition.priority is not None else self.default_priority
        task_id = self.store.insert(
            NewTask(
                task_number=definition.number,
                name=definition.name,
                status=status,
                priority=priority,
                parent_id=parent_id,
                description=definition.description,
                completion_percentage=100 if status is TaskStatus.COMPLETED else 0,
                completion_notes=definition.completion_notes,
                notes=definition.notes,
                files=list(definition.files),
                docs_references=list(definition.docs_references),
                testing_strategy=definition.testing_strategy,
            ),
        )
        for dependency_id in dependency_ids:
            self.store.add_dependency(task_id, dependency_id)

        if parent_id is not None:
            self.completion.update_completion_tree(definition.number)

        created = self.store.get_by_id(task_id)
        if created is None:
            raise TaskNotFoundError(
                f"Task {definition.number} not found after insert",
                details={"task_number": definition.number},
            )
        return created

    def _change_status(
        self,
        task: Task,
        status: TaskStatus,
        extra: dict[str, Any] | None = None,
    ) -> Task:
        _check_transition(task, status)
        self.store.update(task.task_number, {"status": status, **(extra or {})})
        self._cascade(task.task_number)
        return self._require(task.task_number)

    def _cascade(self, task_number: str) -> list[str]:
        """Refresh percentages up the chain, then auto-complete finished parents.

        Ancestors above the topmost auto-completed parent are recomputed again
        once that parent is completed.
        """

        self._refresh_completion(task_number)
        auto_completed = self.completion.auto_complete_parents(task_number)
        if auto_completed:
            self.completion.update_completion_tree(auto_completed[-1])
        return auto_completed

    def _ensure_can_complete(self, task_number: str) -> None:
        eligibility = self.completion.can_complete_task(task_number)
        if not eligibility.can_complete:
            raise TaskBlockedError(
                f"Cannot complete task {task_number}. "
                f"Blocked by: {', '.join(eligibility.blockers)}",
                details={"task_number": task_number, "blockers": eligibility.blockers},
            )

    def _refresh_completion(self, task_number: str) -> None:
        self._refresh_own_completion(task_number)
        self.completion.update_completion_tree(task_number)

    def _refresh_own_completion(self, task_number: str) -> None:
        task = self._require(task_number)
        percentage = self.completion.calculate_completion(task)
        if percentage != task.completion_percentage:
            self.store.update(task_number, {"completion_percentage": percentage})

    def _ensure_acyclic(self, additions: dict[str, list[str]]) -> None:
        dependencies: dict[str, list[str]] = {
            task.task_number: list(task.dependencies) for task in self.store.list_all()
        }
        for number, targets in additions.items():
            dependencies.setdefault(number, []).extend(targets)
        cycles = DependencyGraph.from_dependencies(dependencies).find_cycles()
        if cycles:
            path = " -> ".join(cycles[0])
            raise CycleError(
                f"Circular dependency detected: {path}",
                details={"cycle": cycles[0]},
            )

    def _require(self, task_number: str) -> Task:
        task = self.store.get(task_number)
        if task is None:
            raise TaskNotFoundError(
                f"Task {task_number} not found",
                details={"task_number": task_number},
            )
        return task


def _status_value(status: Any) -> Any:
    return status.value if isinstance(status, TaskStatus) else status


def _check_transition(task: Task, target: TaskStatus) -> None:
    if target is task.status or target in ALLOWED_TRANSITIONS[task.status]:
        return
    raise ValidationError(
        f"Cannot move task {task.task_number} from {task.status.value} to {target.value}",
        code="INVALID_TRANSITION",
        details={
            "task_number": task.task_number,
            "from": task.status.value,
            "to": target.value,
        },
    )


def _validation_failure(validation: ValidationResult) -> TaskTreeError:
    """Typed error for a rejected batch: cycles, then duplicates, then references."""

    for kind, error_type in (
        (ISSUE_CYCLE, CycleError),
        (ISSUE_DUPLICATE, DuplicateTaskError),
        (ISSUE_REFERENCE, TaskReferenceError),
    ):
        issues = validation.issues_of_kind(kind)
        if issues:
            break
    else:
        error_type = ValidationError
        issues = validation.errors

    first = issues[0]
    return error_type(
        f"Import rejected: {validation.summary.invalid} invalid task(s); "
        f"{first.task} {first.field}: {first.error}",
        details={"validation": validation.to_dict()},
    )
