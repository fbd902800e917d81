"""Analysis hooks for delivered records."""

from __future__ import annotations

from pycollate.models.record import AggregateRecord


def calculate_entropy(record: AggregateRecord) -> float:
    """Identifying entropy of *record*, in bits.

    Placeholder: no population statistics are collected, so this always
    returns ``0.0``.
    """
    return 0.0
