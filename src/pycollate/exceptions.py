"""Custom exception hierarchy for pycollate."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pycollate.models.record import AggregateRecord


class CollateError(Exception):
    """Base exception for all pycollate errors."""


class CollateConfigError(CollateError):
    """Invalid or inconsistent engine configuration."""


class InvalidObservationError(CollateError, ValueError):
    """A deposit was rejected before touching any record.

    Raised for empty identities or keys, non-string property values and
    header collections that are not name/value pairs.
    """


class EngineClosedError(CollateError):
    """The engine has been closed and no longer accepts observations."""


class ReadyPredicateError(CollateError):
    """The configured ready predicate raised while polling a record.

    The identity is evicted from the live map when this happens, so the
    record is attached here for the owner to inspect or persist.  The
    original exception is available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        identity: str,
        record: AggregateRecord | None = None,
    ) -> None:
        self.identity = identity
        self.record = record
        super().__init__(message)
