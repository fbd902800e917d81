"""Value types produced by the correlation engine."""

from pycollate.models.record import AggregateRecord, normalize_headers, now_ms

__all__ = [
    "AggregateRecord",
    "normalize_headers",
    "now_ms",
]
