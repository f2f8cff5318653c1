"""Domain models for task hierarchy, dependencies and progress."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.CANCELLED},
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.PENDING, TaskStatus.COMPLETED, TaskStatus.CANCELLED},
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
}


@dataclass(slots=True)
class Task:
    """Persisted task as seen by services and CLI."""

    id: int
    task_number: str
    name: str
    status: TaskStatus
    priority: int
    created_at: datetime
    updated_at: datetime
    parent_id: int | None = None
    description: str | None = None
    dependencies: list[str] = field(default_factory=list)
    completion_percentage: int = 0
    completion_notes: str | None = None
    notes: str | None = None
    files: list[str] = field(default_factory=list)
    docs_references: list[str] = field(default_factory=list)
    testing_strategy: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Flat JSON-compatible representation."""

        return {
            "id": self.id,
            "parentId": self.parent_id,
            "taskNumber": self.task_number,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "completionPercentage": self.completion_percentage,
            "completionNotes": self.completion_notes,
            "notes": self.notes,
            "files": list(self.files),
            "docsReferences": list(self.docs_references),
            "testingStrategy": self.testing_strategy,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class TaskDefinition:
    """Input payload for creating or importing a task."""

    number: str
    name: str
    description: str | None = None
    parent: str | None = None
    status: str | None = None
    priority: int | None = None
    docs_references: list[str] = field(default_factory=list)
    testing_strategy: str | None = None
    dependencies: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    notes: str | None = None
    completion_notes: str | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> TaskDefinition:
        """Build a definition from one decoded import entry.

        Values are carried over as-is; type and range checks are the
        validator's job so that bad entries are reported, not dropped.
        """

        return cls(
            number=payload.get("number", ""),
            name=payload.get("name", ""),
            description=payload.get("description"),
            parent=payload.get("parent"),
            status=payload.get("status"),
            priority=payload.get("priority"),
            docs_references=payload.get("docs_references") or [],
            testing_strategy=payload.get("testing_strategy"),
            dependencies=payload.get("dependencies") or [],
            files=payload.get("files") or [],
            notes=payload.get("notes"),
            completion_notes=payload.get("completion_notes"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Import-format mapping with empty optional fields omitted."""

        payload: dict[str, Any] = {"number": self.number, "name": self.name}
        optional: dict[str, Any] = {
            "description": self.description,
            "parent": self.parent,
            "status": self.status,
            "priority": self.priority,
            "docs_references": self.docs_references,
            "testing_strategy": self.testing_strategy,
            "dependencies": self.dependencies,
            "files": self.files,
            "notes": self.notes,
            "completion_notes": self.completion_notes,
        }
        for key, value in optional.items():
            if value is None or value == []:
                continue
            payload[key] = list(value) if isinstance(value, list) else value
        return payload


@dataclass(slots=True)
class NewTask:
    """Resolved insert payload handed to a task store."""

    task_number: str
    name: str
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 0
    parent_id: int | None = None
    description: str | None = None
    completion_percentage: int = 0
    completion_notes: str | None = None
    notes: str | None = None
    files: list[str] = field(default_factory=list)
    docs_references: list[str] = field(default_factory=list)
    testing_strategy: str | None = None


@dataclass(slots=True)
class ValidationIssue:
    """One validation finding for a task in a batch."""

    task: str
    field: str
    error: str
    kind: str = "validation"

    def to_dict(self) -> dict[str, str]:
        return {"task": self.task, "field": self.field, "error": self.error}


@dataclass(slots=True)
class ValidationSummary:
    total: int
    valid: int
    invalid: int


@dataclass(slots=True)
class ValidationResult:
    """Batch validation outcome."""

    valid: bool
    errors: list[ValidationIssue]
    summary: ValidationSummary

    def issues_of_kind(self, kind: str) -> list[ValidationIssue]:
        return [issue for issue in self.errors if issue.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "summary": {
                "total": self.summary.total,
                "valid": self.summary.valid,
                "invalid": self.summary.invalid,
            },
        }


@dataclass(slots=True)
class SingleTaskValidation:
    """Single definition validation outcome."""

    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskProgress:
    """Progress-tree row for one task."""

    task_number: str
    name: str
    status: TaskStatus
    total_children: int
    completed_children: int
    completion_percentage: int
    level: int
    parent_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskNumber": self.task_number,
            "name": self.name,
            "status": self.status.value,
            "parentId": self.parent_id,
            "totalChildren": self.total_children,
            "completedChildren": self.completed_children,
            "completionPercentage": self.completion_percentage,
            "level": self.level,
        }


@dataclass(slots=True)
class TaskHierarchy:
    """Task with nested children for tree rendering."""

    task: Task
    level: int
    children: list[TaskHierarchy] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "level": self.level,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass(slots=True)
class CompletionEligibility:
    can_complete: bool
    blockers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"canComplete": self.can_complete, "blockers": list(self.blockers)}


@dataclass(slots=True)
class StartEligibility:
    can_start: bool
    blockers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"canStart": self.can_start, "blockers": list(self.blockers)}


@dataclass(slots=True)
class CompletionResult:
    """Completed task plus ancestors completed by the cascade."""

    task: Task
    auto_completed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"task": self.task.to_dict(), "autoCompleted": list(self.auto_completed)}


@dataclass(slots=True)
class SkippedTask:
    task: TaskDefinition
    reason: str


@dataclass(slots=True)
class FailedTask:
    task: TaskDefinition
    error: str


@dataclass(slots=True)
class BulkInsertSummary:
    total: int
    successful: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(slots=True)
class BulkInsertResult:
    """Outcome of one bulk import."""

    summary: BulkInsertSummary
    success: bool = False
    inserted: list[Task] = field(default_factory=list)
    skipped: list[SkippedTask] = field(default_factory=list)
    errors: list[FailedTask] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "inserted": [task.to_dict() for task in self.inserted],
            "skipped": [
                {"task": item.task.to_dict(), "reason": item.reason} for item in self.skipped
            ],
            "errors": [{"task": item.task.to_dict(), "error": item.error} for item in self.errors],
            "summary": {
                "total": self.summary.total,
                "successful": self.summary.successful,
                "skipped": self.summary.skipped,
                "failed": self.summary.failed,
            },
        }


@dataclass(slots=True)
class TaskStats:
    """Status counters over the whole task set."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0
    completion_rate: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "inProgress": self.in_progress,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "completionRate": self.completion_rate,
        }
