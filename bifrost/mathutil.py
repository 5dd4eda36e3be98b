"""Small numeric helpers over sequences of comparable values."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TypeVar

T = TypeVar("T")


def minimum(nums: Iterable[T]) -> T | None:
    """Return the smallest item, or None when there are no items."""
    return min(nums, default=None)


def maximum(nums: Iterable[T]) -> T | None:
    """Return the largest item, or None when there are no items."""
    return max(nums, default=None)


def avg_scale(nums: Iterable[int]) -> int | None:
    """Return the integer mean, computed relative to the minimum.

    Working from the minimum keeps intermediate sums small; the result is
    the minimum plus the floored mean distance from it. None when empty.
    """
    values = list(nums)
    if not values:
        return None
    count = len(values)
    low = min(values)
    mid_abs = (sum(values) - low * count) // count
    return low + mid_abs