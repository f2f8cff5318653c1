"""Validation of task definitions, single and in batches."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any
from urllib.parse import urlparse

from task_tree.core.models import (
    SingleTaskValidation,
    TaskDefinition,
    TaskStatus,
    ValidationIssue,
    ValidationResult,
    ValidationSummary,
)

TASK_NUMBER_PATTERN = re.compile(r"[0-9]+(\.[0-9]+)+")
ROOT_TASK_NUMBER_PATTERN = re.compile(r"[0-9]+\.0")
MAX_NAME_LENGTH = 200
MIN_PRIORITY = 0
MAX_PRIORITY = 10

ISSUE_VALIDATION = "validation"
ISSUE_DUPLICATE = "duplicate"
ISSUE_REFERENCE = "reference"
ISSUE_CYCLE = "cycle"

_UNVISITED = 0
_IN_PROGRESS = 1
_DONE = 2


def is_valid_task_number(value: object) -> bool:
    return isinstance(value, str) and TASK_NUMBER_PATTERN.fullmatch(value) is not None


def is_valid_task_status(value: object) -> bool:
    return isinstance(value, str) and value in {status.value for status in TaskStatus}


def is_valid_url(value: object) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def validate_task_hierarchy(task_number: str, parent_number: str | None = None) -> bool:
    """Check that a number fits under its parent.

    Roots look like ``N.0``. A child either extends the parent by one segment
    (``1.0 -> 1.0.1``) or stays at the parent's depth with the same prefix
    and a larger last segment (``1.0 -> 1.1``).
    """

    if not parent_number:
        return ROOT_TASK_NUMBER_PATTERN.fullmatch(task_number) is not None

    parent_parts = parent_number.split(".")
    task_parts = task_number.split(".")
    if len(task_parts) == len(parent_parts) + 1:
        return task_number.startswith(parent_number + ".")
    if len(task_parts) == len(parent_parts):
        return task_parts[:-1] == parent_parts[:-1] and int(task_parts[-1]) > int(
            parent_parts[-1],
        )
    return False


class DependencyGraph:
    """Adjacency list over task numbers with integer node indices."""

    def __init__(self, nodes: Sequence[str]) -> None:
        self.nodes: list[str] = list(nodes)
        self._index = {number: position for position, number in enumerate(self.nodes)}
        self.edges: list[list[int]] = [[] for _ in self.nodes]

    @classmethod
    def from_dependencies(cls, dependencies: Mapping[str, Iterable[str]]) -> DependencyGraph:
        """Build from ``number -> depends_on numbers``; unknown targets are ignored."""

        graph = cls(list(dependencies))
        for number, targets in dependencies.items():
            for target in targets:
                graph.add_edge(number, target)
        return graph

    def add_edge(self, source: str, target: str) -> None:
        if source not in self._index or target not in self._index:
            return
        self.edges[self._index[source]].append(self._index[target])

    def find_cycles(self) -> list[list[str]]:
        """Return one path per back-edge found, e.g. ``["1.0", "2.0", "1.0"]``.

        Iterative depth-first walk with unvisited / in-progress / done marks.
        """

        marks = [_UNVISITED] * len(self.nodes)
        cycles: list[list[str]] = []
        for start in range(len(self.nodes)):
            if marks[start] != _UNVISITED:
                continue
            marks[start] = _IN_PROGRESS
            path = [start]
            stack = [(start, iter(self.edges[start]))]
            while stack:
                node, targets = stack[-1]
                descended = False
                for target in targets:
                    if marks[target] == _IN_PROGRESS:
                        loop = path[path.index(target) :] + [target]
                        cycles.append([self.nodes[position] for position in loop])
                    elif marks[target] == _UNVISITED:
                        marks[target] = _IN_PROGRESS
                        path.append(target)
                        stack.append((target, iter(self.edges[target])))
                        descended = True
                        break
                if not descended:
                    marks[node] = _DONE
                    path.pop()
                    stack.pop()
        return cycles


class TaskValidator:
    """Validates definitions before anything is written."""

    def validate_single_task(self, definition: TaskDefinition) -> SingleTaskValidation:
        errors = [f"{field}: {message}" for field, message in _definition_issues(definition)]
        return SingleTaskValidation(valid=not errors, errors=errors)

    def validate_import(
        self,
        definitions: Sequence[TaskDefinition],
        existing_numbers: Iterable[str] = (),
    ) -> ValidationResult:
        """Validate a whole batch against itself and already stored numbers."""

        issues: list[ValidationIssue] = []
        failing: set[int] = set()
        accepted: dict[str, tuple[int, TaskDefinition]] = {}

        for position, definition in enumerate(definitions):
            label = definition.number if isinstance(definition.number, str) else ""
            field_issues = _definition_issues(definition)
            if field_issues:
                failing.add(position)
                issues.extend(
                    ValidationIssue(task=label or "unknown", field=field, error=message)
                    for field, message in field_issues
                )
                continue
            if definition.number in accepted:
                failing.add(position)
                issues.append(
                    ValidationIssue(
                        task=definition.number,
                        field="number",
                        error="Duplicate task number",
                        kind=ISSUE_DUPLICATE,
                    ),
                )
                continue
            accepted[definition.number] = (position, definition)

        known = set(accepted) | set(existing_numbers)
        for position, definition in accepted.values():
            relationship_issues = _relationship_issues(definition, known)
            if relationship_issues:
                failing.add(position)
                issues.extend(relationship_issues)

        graph = DependencyGraph.from_dependencies(
            {number: definition.dependencies for number, (_, definition) in accepted.items()},
        )
        for cycle in graph.find_cycles():
            failing.add(accepted[cycle[-2]][0])
            issues.append(
                ValidationIssue(
                    task=cycle[-2],
                    field="dependencies",
                    error=f"Circular dependency detected: {' -> '.join(cycle)}",
                    kind=ISSUE_CYCLE,
                ),
            )

        total = len(definitions)
        return ValidationResult(
            valid=not issues,
            errors=issues,
            summary=ValidationSummary(
                total=total,
                valid=total - len(failing),
                invalid=len(failing),
            ),
        )


def _relationship_issues(definition: TaskDefinition, known: set[str]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    parent = definition.parent
    if parent:
        if parent not in known:
            issues.append(
                ValidationIssue(
                    task=definition.number,
                    field="parent",
                    error=f"Parent task {parent} not found in import",
                    kind=ISSUE_REFERENCE,
                ),
            )
        if definition.number.count(".") < parent.count("."):
            issues.append(
                ValidationIssue(
                    task=definition.number,
                    field="number",
                    error=(
                        f"Task number {definition.number} cannot have fewer levels "
                        f"than parent {parent}"
                    ),
                ),
            )
    for dependency in definition.dependencies:
        if dependency not in known:
            issues.append(
                ValidationIssue(
                    task=definition.number,
                    field="dependencies",
                    error=f"Dependency {dependency} not found in import",
                    kind=ISSUE_REFERENCE,
                ),
            )
    return issues


def _definition_issues(definition: TaskDefinition) -> list[tuple[str, str]]:  # noqa: C901, PLR0912
    issues: list[tuple[str, str]] = []

    if not is_valid_task_number(definition.number):
        issues.append(("number", "Task number must follow format like 1.0, 1.1, 1.2.1"))

    name = definition.name
    if not isinstance(name, str) or not name.strip():
        issues.append(("name", "Task name is required"))
    elif len(name) > MAX_NAME_LENGTH:
        issues.append(("name", f"Task name too long (max {MAX_NAME_LENGTH} characters)"))

    if definition.parent is not None and not is_valid_task_number(definition.parent):
        issues.append(("parent", "Parent must be a task number like 1.0"))

    if definition.status is not None and not is_valid_task_status(definition.status):
        allowed = ", ".join(status.value for status in TaskStatus)
        issues.append(("status", f"Invalid status {definition.status!r}; expected one of {allowed}"))

    priority = definition.priority
    if priority is not None and (
        not isinstance(priority, int)
        or isinstance(priority, bool)
        or not MIN_PRIORITY <= priority <= MAX_PRIORITY
    ):
        issues.append(
            ("priority", f"Priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}"),
        )

    for field, value in (
        ("description", definition.description),
        ("testing_strategy", definition.testing_strategy),
        ("notes", definition.notes),
        ("completion_notes", definition.completion_notes),
    ):
        if value is not None and not isinstance(value, str):
            issues.append((field, "Expected a string"))

    issues.extend(
        _list_issues(
            "docs_references",
            definition.docs_references,
            is_valid_url,
            "Invalid URL format",
        ),
    )
    issues.extend(
        _list_issues(
            "dependencies",
            definition.dependencies,
            is_valid_task_number,
            "Dependency must be a task number like 1.0",
        ),
    )
    issues.extend(_list_issues("files", definition.files, _is_string, "Expected a string"))

    if isinstance(definition.dependencies, list) and definition.number in definition.dependencies:
        issues.append(("dependencies", "Task cannot depend on itself"))
    return issues


def _list_issues(
    field: str,
    values: Any,
    predicate: Callable[[object], bool],
    message: str,
) -> list[tuple[str, str]]:
    if not isinstance(values, list):
        return [(field, "Expected a list")]
    return [
        (f"{field}.{index}", message)
        for index, value in enumerate(values)
        if not predicate(value)
    ]


def _is_string(value: object) -> bool:
    return isinstance(value, str)
