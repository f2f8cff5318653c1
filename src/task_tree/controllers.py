"""Controllers for task tree CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from task_tree.config import Settings
from task_tree.core.errors import ValidationError
from task_tree.core.models import (
    BulkInsertResult,
    Task,
    TaskDefinition,
    TaskStatus,
    ValidationResult,
)
from task_tree.core.navigation import NavigationService
from task_tree.core.tasks import TaskService
from task_tree.core.validation import is_valid_task_number, validate_task_hierarchy
from task_tree.storage.repository import SQLiteTaskStore

STATUS_ICONS = {
    TaskStatus.COMPLETED: "✓",
    TaskStatus.IN_PROGRESS: "→",
    TaskStatus.CANCELLED: "✗",
    TaskStatus.PENDING: "○",
}


@dataclass(slots=True)
class StoreCommand:
    """CLI inputs for commands that only need the database."""

    db_path: Path | None
    json_output: bool = False


@dataclass(slots=True)
class TaskRefCommand:
    """CLI inputs for commands addressing one task."""

    db_path: Path | None
    task_number: str
    json_output: bool = False


@dataclass(slots=True)
class ImportCommand:
    """CLI inputs for import and validate commands."""

    db_path: Path | None
    payload: str
    validate_only: bool = False
    best_effort: bool = False
    json_output: bool = False


@dataclass(slots=True)
class ListCommand:
    """CLI inputs for list command."""

    db_path: Path | None
    status: str | None = None
    parent: str | None = None
    include_completed: bool | None = None
    json_output: bool = False


@dataclass(slots=True)
class InsertCommand:
    """CLI inputs for insert command."""

    db_path: Path | None
    definition: TaskDefinition
    json_output: bool = False


@dataclass(slots=True)
class UpdateCommand:
    """CLI inputs for update command."""

    db_path: Path | None
    task_number: str
    changes: dict[str, Any] = field(default_factory=dict)
    json_output: bool = False


@dataclass(slots=True)
class StatusCommand:
    """CLI inputs for complete, start, cancel and reopen commands."""

    db_path: Path | None
    task_number: str
    notes: str | None = None
    force: bool = False
    json_output: bool = False


@dataclass(slots=True)
class DependCommand:
    """CLI inputs for depend command."""

    db_path: Path | None
    task_number: str
    depends_on: str
    json_output: bool = False


@dataclass(slots=True)
class NavigateCommand:
    """CLI inputs for next/prev/progress commands."""

    db_path: Path | None
    task_number: str | None = None
    json_output: bool = False


@dataclass(slots=True)
class CommandResult:
    """Rendered lines plus an exit verdict."""

    lines: list[str]
    success: bool = True


class TaskCliController:
    """Coordinates task command execution."""

    def init(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            total = service.get_stats().total
        if command.json_output:
            return _json({"dbPath": str(settings.db_path), "tasks": total})
        return [f"Initialized task database: {settings.db_path} ({total} task(s))"]

    def import_tasks(self, command: ImportCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        definitions = parse_import_payload(command.payload)
        with _services(settings) as (service, _):
            if command.validate_only:
                validation = service.validate_import(definitions)
                return CommandResult(
                    lines=_render_validation(validation, definitions, command.json_output),
                    success=validation.valid,
                )
            result = service.bulk_insert(definitions, best_effort=command.best_effort)
        return CommandResult(
            lines=_render_bulk_insert(result, command.json_output),
            success=result.success,
        )

    def export_tasks(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            exported = service.export_tasks()
        return [json.dumps({"tasks": exported}, indent=2, ensure_ascii=False)]

    def list_tasks(self, command: ListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        include_completed = (
            settings.display.show_completed
            if command.include_completed is None
            else command.include_completed
        )
        with _services(settings) as (service, _):
            tasks = service.list_tasks(
                status=_parse_status(command.status),
                parent_number=command.parent,
                include_completed=include_completed,
            )
        if command.json_output:
            return _json([task.to_dict() for task in tasks])
        if not tasks:
            return ["No tasks found"]
        return [_task_line(task) for task in tasks]

    def show(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, navigation):
            task = service.find_by_number(command.task_number)
            if task is None:
                return [f"Task not found: {command.task_number}"]
            dependents = navigation.get_dependent_tasks(command.task_number)
            eligibility = service.completion.can_complete_task(command.task_number)

        if command.json_output:
            payload = task.to_dict()
            payload["dependents"] = [item.task_number for item in dependents]
            payload["blockers"] = eligibility.blockers
            return _json(payload)
        return [
            f"Task: {task.task_number} {task.name}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Completion: {task.completion_percentage}%",
            f"Description: {task.description or '-'}",
            f"Dependencies: {', '.join(task.dependencies) or '-'}",
            f"Dependents: {', '.join(item.task_number for item in dependents) or '-'}",
            f"Blockers: {', '.join(eligibility.blockers) or '-'}",
            f"Files: {', '.join(task.files) or '-'}",
            f"Docs: {', '.join(task.docs_references) or '-'}",
            f"Testing strategy: {task.testing_strategy or '-'}",
            f"Notes: {task.notes or '-'}",
            f"Completion notes: {task.completion_notes or '-'}",
        ]

    def insert(self, command: InsertCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            task = service.create(command.definition)
        return _single_task(task, "Created", command.json_output)

    def update(self, command: UpdateCommand) -> list[str]:
        if not command.changes:
            raise ValidationError(
                "Nothing to update; pass at least one field option",
                details={"task_number": command.task_number},
            )
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            task = service.update(command.task_number, **command.changes)
        return _single_task(task, "Updated", command.json_output)

    def remove(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            deleted = service.delete(command.task_number)
        if command.json_output:
            return _json({"taskNumber": command.task_number, "deleted": deleted})
        if not deleted:
            return [f"Task not found: {command.task_number}"]
        return [f"Removed {command.task_number} and its subtasks"]

    def depend(self, command: DependCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            task = service.add_dependency(command.task_number, command.depends_on)
        return _single_task(task, "Dependency added", command.json_output)

    def complete(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            result = service.complete_task(
                command.task_number,
                command.notes,
                force=command.force,
            )
        if command.json_output:
            return _json(result.to_dict())
        lines = [f"Completed {_task_line(result.task)}"]
        if result.auto_completed:
            lines.append(f"Auto-completed: {', '.join(result.auto_completed)}")
        return lines

    def start(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            task = service.start_task(command.task_number, force=command.force)
        return _single_task(task, "Started", command.json_output)

    def reopen(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            task = service.reopen_task(command.task_number)
        return _single_task(task, "Reopened", command.json_output)

    def cancel(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            task = service.cancel_task(command.task_number, command.notes)
        return _single_task(task, "Cancelled", command.json_output)

    def current(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (_, navigation):
            task = navigation.get_current_task()
        return _optional_task(task, "No ready tasks", command.json_output)

    def next_task(self, command: NavigateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (_, navigation):
            task = navigation.get_next_task(command.task_number)
        return _optional_task(task, "No next ready task", command.json_output)

    def previous_task(self, command: NavigateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (_, navigation):
            task = navigation.get_previous_task(command.task_number)
        return _optional_task(task, "No previous ready task", command.json_output)

    def ready(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (_, navigation):
            tasks = navigation.get_ready_tasks()
        if command.json_output:
            return _json([task.to_dict() for task in tasks])
        return [f"Ready: {len(tasks)}", *(f"  {_task_line(task)}" for task in tasks)]

    def blocked(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (_, navigation):
            tasks = navigation.get_blocked_tasks()
            blockers = {
                task.task_number: navigation.can_start_task(task.task_number).blockers
                for task in tasks
            }
        if command.json_output:
            return _json(
                [
                    {**task.to_dict(), "blockers": blockers[task.task_number]}
                    for task in tasks
                ],
            )
        lines = [f"Blocked: {len(tasks)}"]
        for task in tasks:
            lines.append(f"  {_task_line(task)}")
            lines.extend(f"    waits for {blocker}" for blocker in blockers[task.task_number])
        return lines

    def can_start(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (_, navigation):
            eligibility = navigation.can_start_task(command.task_number)
        if command.json_output:
            return _json(eligibility.to_dict())
        if eligibility.can_start:
            return [f"{command.task_number} can start"]
        return [
            f"{command.task_number} is blocked by:",
            *(f"  {blocker}" for blocker in eligibility.blockers),
        ]

    def remaining(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (_, navigation):
            count = navigation.get_remaining_task_count()
        if command.json_output:
            return _json({"remaining": count})
        return [f"Remaining tasks: {count}"]

    def progress(self, command: NavigateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            rows = service.completion.get_progress_tree(command.task_number)
        if command.json_output:
            return _json([row.to_dict() for row in rows])
        lines = ["Task Progress Tree:"]
        for row in rows:
            if row.total_children:
                suffix = f" [{row.completion_percentage}%]"
            else:
                suffix = ""
            indent = "  " * row.level
            icon = STATUS_ICONS[row.status]
            lines.append(f"{indent}{icon} {row.task_number} {row.name}{suffix}")
        return lines

    def tree(self, command: NavigateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (_, navigation):
            forest = navigation.get_task_hierarchy(command.task_number)
        if command.json_output:
            return _json([node.to_dict() for node in forest])
        lines: list[str] = []
        stack = list(reversed(forest))
        while stack:
            node = stack.pop()
            lines.append(f"{'  ' * node.level}{_task_line(node.task)}")
            stack.extend(reversed(node.children))
        return lines or ["No tasks found"]

    def stats(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            stats = service.get_stats()
        if command.json_output:
            return _json(stats.to_dict())
        return [
            f"Total: {stats.total}",
            f"Pending: {stats.pending}",
            f"In progress: {stats.in_progress}",
            f"Completed: {stats.completed}",
            f"Cancelled: {stats.cancelled}",
            f"Completion rate: {stats.completion_rate}%",
        ]


def parse_import_payload(payload: str) -> list[TaskDefinition]:
    """Decode an import document: ``{"tasks": [...]}`` or a bare list."""

    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as error:
        raise ValidationError(
            f"Import file is not valid JSON: {error}",
            code="INVALID_IMPORT_FILE",
        ) from error

    entries = decoded.get("tasks") if isinstance(decoded, dict) else decoded
    if not isinstance(entries, list) or not all(isinstance(item, dict) for item in entries):
        raise ValidationError(
            'Import file must contain a "tasks" list of objects',
            code="INVALID_IMPORT_FILE",
        )
    return [TaskDefinition.from_mapping(entry) for entry in entries]


@contextmanager
def _services(settings: Settings) -> Iterator[tuple[TaskService, NavigationService]]:
    settings.validate()
    store = SQLiteTaskStore(settings.db_path, busy_timeout_ms=settings.storage.busy_timeout_ms)
    try:
        store.init_schema()
        yield (
            TaskService(
                store,
                default_status=settings.default_status,
                default_priority=settings.defaults.priority,
            ),
            NavigationService(store),
        )
    finally:
        store.close()


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValidationError(
            f"Unknown task status: {value}. Allowed values: {allowed}",
            details={"status": value},
        ) from error


def _render_validation(
    validation: ValidationResult,
    definitions: Sequence[TaskDefinition],
    json_output: bool,
) -> list[str]:
    warnings = [
        f"{definition.number} is not numbered like a child of {definition.parent}"
        for definition in definitions
        if is_valid_task_number(definition.number)
        and is_valid_task_number(definition.parent)
        and not validate_task_hierarchy(definition.number, definition.parent)
    ]
    if json_output:
        payload = validation.to_dict()
        payload["warnings"] = warnings
        return _json(payload)

    summary = validation.summary
    lines = [
        f"Validation: {'passed' if validation.valid else 'failed'} "
        f"(total={summary.total} valid={summary.valid} invalid={summary.invalid})",
    ]
    lines.extend(f"  {issue.task} {issue.field}: {issue.error}" for issue in validation.errors)
    lines.extend(f"  warning: {warning}" for warning in warnings)
    return lines


def _render_bulk_insert(result: BulkInsertResult, json_output: bool) -> list[str]:
    if json_output:
        return _json(result.to_dict())
    summary = result.summary
    lines = [
        f"Imported: total={summary.total} successful={summary.successful} "
        f"skipped={summary.skipped} failed={summary.failed}",
    ]
    lines.extend(f"  skipped {item.task.number}: {item.reason}" for item in result.skipped)
    lines.extend(f"  failed {item.task.number}: {item.error}" for item in result.errors)
    return lines


def _single_task(task: Task, verb: str, json_output: bool) -> list[str]:
    if json_output:
        return _json(task.to_dict())
    return [f"{verb} {_task_line(task)}"]


def _optional_task(task: Task | None, empty_message: str, json_output: bool) -> list[str]:
    if json_output:
        return _json(task.to_dict() if task is not None else None)
    if task is None:
        return [empty_message]
    return [_task_line(task)]


def _task_line(task: Task) -> str:
    line = f"{STATUS_ICONS[task.status]} {task.task_number} {task.name} [{task.status.value}]"
    if task.dependencies:
        line += f" deps={','.join(task.dependencies)}"
    return line


def _json(payload: Any) -> list[str]:
    return [json.dumps(payload, indent=2, ensure_ascii=False)]

