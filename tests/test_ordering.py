from __future__ import annotations

import random

import allure
import pytest

from task_tree.core.ordering import (
    compare_task_numbers,
    sort_by_task_number,
    task_level,
    task_number_key,
)

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Task Number Ordering"),
]


def test_numeric_ordering_puts_two_before_ten() -> None:
    numbers = [f"{index}.0" for index in range(1, 13)]
    shuffled = numbers[:]
    random.Random(7).shuffle(shuffled)

    assert sort_by_task_number(shuffled) == numbers


@pytest.mark.parametrize(
    ("left", "right", "expected"),
    [
        ("1.0", "1.0", 0),
        ("2.0", "10.0", -1),
        ("10.0", "9.0", 1),
        ("1.0", "1.0.1", -1),
        ("1.2.1", "1.10", -1),
        ("1.10", "1.9", 1),
    ],
)
def test_compare_task_numbers(left: str, right: str, expected: int) -> None:
    assert compare_task_numbers(left, right) == expected


def test_sort_by_task_number_with_accessor_and_reverse() -> None:
    items = [{"n": "1.10"}, {"n": "1.2"}, {"n": "1.2.1"}]

    ordered = sort_by_task_number(items, number=lambda item: item["n"], reverse=True)

    assert [item["n"] for item in ordered] == ["1.10", "1.2.1", "1.2"]


def test_task_number_key_rejects_non_numeric_segments() -> None:
    with pytest.raises(ValueError):
        task_number_key("1.a")


def test_task_level_counts_separators() -> None:
    assert task_level("1.0") == 1
    assert task_level("1.2.1") == 2
