"""Numeric ordering for dotted task numbers (``2.0 < 10.0 < 11.0``)."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TypeVar

T = TypeVar("T")


def task_number_key(task_number: str) -> tuple[int, ...]:
    """Sort key comparing each dot-separated segment as an integer.

    Tuple comparison gives the prefix rule for free: ``1.0 < 1.0.1``.
    Input is expected to be pre-validated; a non-numeric segment raises
    ``ValueError``.
    """

    return tuple(int(segment) for segment in task_number.split("."))


def compare_task_numbers(left: str, right: str) -> int:
    """Return -1, 0 or 1 like a classic comparator."""

    left_key = task_number_key(left)
    right_key = task_number_key(right)
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


def sort_by_task_number(
    items: Iterable[T],
    *,
    number: Callable[[T], str] | None = None,
    reverse: bool = False,
) -> list[T]:
    """Sort strings, or any items with a ``number`` accessor, numerically."""

    if number is None:
        return sorted(items, key=lambda item: task_number_key(str(item)), reverse=reverse)
    return sorted(items, key=lambda item: task_number_key(number(item)), reverse=reverse)


def task_level(task_number: str) -> int:
    """Depth used by progress rendering: ``1.0`` -> 1, ``1.2.1`` -> 2."""

    return task_number.count(".")
