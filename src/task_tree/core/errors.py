"""Typed errors raised by the task engine."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

STORE_ERROR_CODE = "STORE_ERROR"


@dataclass(slots=True)
class TaskTreeError(Exception):
    """Base engine error with stable code and structured context."""

    message: str
    code: str = "TASK_TREE_ERROR"
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class ValidationError(TaskTreeError):
    """Malformed number, name, priority, URL, status or transition."""

    code: str = "VALIDATION_ERROR"


@dataclass(slots=True)
class DuplicateTaskError(TaskTreeError):
    """Task number already used in the batch or the store."""

    code: str = "DUPLICATE_TASK_ERROR"


@dataclass(slots=True)
class TaskReferenceError(TaskTreeError):
    """Missing parent or dependency target."""

    code: str = "REFERENCE_ERROR"


@dataclass(slots=True)
class CycleError(TaskTreeError):
    """Dependency graph would contain a cycle."""

    code: str = "CIRCULAR_DEPENDENCY"


@dataclass(slots=True)
class TaskNotFoundError(TaskTreeError):
    """Operation addressed an unknown task number."""

    code: str = "TASK_NOT_FOUND"


@dataclass(slots=True)
class TaskBlockedError(TaskTreeError):
    """Completion attempted while dependencies are unmet."""

    code: str = "TASK_BLOCKED"


@dataclass(slots=True)
class StoreError(TaskTreeError):
    """Persistence failure; the original exception is kept as ``__cause__``."""

    code: str = STORE_ERROR_CODE


@contextmanager
def store_errors(code: str, message: str, **context: Any) -> Iterator[None]:
    """Re-raise store failures as one ``StoreError`` naming the operation.

    Domain errors pass through untouched so callers still see e.g.
    ``TaskNotFoundError`` from inside a cascade. A ``StoreError`` already
    tagged by an inner operation keeps its code.
    """

    try:
        yield
    except TaskTreeError as error:
        if not isinstance(error, StoreError) or error.code != STORE_ERROR_CODE:
            raise
        raise StoreError(
            message,
            code=code,
            details={**context, "error": str(error), "cause_code": error.code},
        ) from error
    except Exception as error:
        raise StoreError(
            message,
            code=code,
            details={**context, "error": repr(error)},
        ) from error
