"""Insertion order for bulk imports: parents and dependencies first."""

from __future__ import annotations

from collections.abc import Sequence

from task_tree.core.models import TaskDefinition


def order_for_import(definitions: Sequence[TaskDefinition]) -> list[TaskDefinition]:
    """Return a permutation where every in-batch parent and dependency precedes its user.

    Depth-first emission with a visited set, walking definitions in their
    original order so unconstrained entries keep their relative position.
    References to numbers outside the batch are skipped (already persisted).
    Cycles are not reported here; a node is marked on entry, so a cycle
    cannot loop forever.
    """

    by_number: dict[str, TaskDefinition] = {}
    for definition in definitions:
        by_number.setdefault(definition.number, definition)

    visited: set[str] = set()
    ordered: list[TaskDefinition] = []

    for definition in definitions:
        if definition.number in visited:
            continue
        visited.add(definition.number)
        stack = [(definition, iter(_prerequisites(definition, by_number)))]
        while stack:
            current, pending = stack[-1]
            for number in pending:
                if number in visited:
                    continue
                visited.add(number)
                prerequisite = by_number[number]
                stack.append((prerequisite, iter(_prerequisites(prerequisite, by_number))))
                break
            else:
                ordered.append(current)
                stack.pop()

    return ordered


def _prerequisites(
    definition: TaskDefinition,
    by_number: dict[str, TaskDefinition],
) -> list[str]:
    numbers: list[str] = []
    if definition.parent and definition.parent in by_number:
        numbers.append(definition.parent)
    numbers.extend(number for number in definition.dependencies if number in by_number)
    return numbers
