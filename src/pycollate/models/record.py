"""Aggregate record: everything observed about one client in one cycle.

A record is created by the engine on the first observation for an
identity, mutated by later observations while it is live, and handed to
the delivery callback once complete.  After delivery the engine no longer
holds a reference to it.
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from pycollate.config import DEFAULT_PROBE_KEY
from pycollate.exceptions import InvalidObservationError


def now_ms() -> int:
    """Current epoch timestamp in milliseconds."""
    return int(time.time() * 1000)


def normalize_headers(headers: Any) -> list[tuple[str, str]]:
    """Normalize a header collection into an ordered list of pairs.

    Accepts any mapping (multi-dicts keep their repeated names because
    ``items()`` yields every entry) or an iterable of two-item pairs.
    """
    if isinstance(headers, (str, bytes, bytearray)):
        raise InvalidObservationError("headers must be a mapping or an iterable of name/value pairs")

    if isinstance(headers, Mapping):
        items: Iterable[Any] = headers.items()
    elif isinstance(headers, Iterable):
        items = headers
    else:
        raise InvalidObservationError("headers must be a mapping or an iterable of name/value pairs")

    pairs: list[tuple[str, str]] = []
    for item in items:
        try:
            name, value = item
        except (TypeError, ValueError) as exc:
            raise InvalidObservationError(f"Invalid header entry {item!r}") from exc
        pairs.append((str(name), str(value)))
    return pairs


class AggregateRecord(BaseModel):
    """Accumulated observations for a single client identity.

    ``identity`` and ``first_seen`` are frozen; assigning to them raises
    a pydantic ``ValidationError``.
    """

    model_config = ConfigDict(extra="forbid")

    identity: str = Field(..., frozen=True, description="Opaque client identity")
    first_seen: int = Field(
        default_factory=now_ms,
        frozen=True,
        description="Epoch milliseconds of the first observation",
    )
    properties: dict[str, str] = Field(default_factory=dict)
    probe_results: set[str] = Field(default_factory=set)
    headers: list[tuple[str, str]] | None = None
    extensions: dict[str, Any] = Field(default_factory=dict)

    @field_validator("headers", mode="before")
    @classmethod
    def _normalize_headers(cls, value: Any) -> list[tuple[str, str]] | None:
        if value is None:
            return None
        return normalize_headers(value)

    @field_serializer("probe_results")
    def _serialize_probe_results(self, value: set[str]) -> list[str]:
        return sorted(value)

    @field_serializer("headers")
    def _serialize_headers(self, value: list[tuple[str, str]] | None) -> list[list[str]]:
        return [[name, header_value] for name, header_value in value or []]

    def insert(self, key: str, value: str, *, probe_key: str = DEFAULT_PROBE_KEY) -> AggregateRecord:
        """Store one observation; probe tokens go to ``probe_results``."""
        if key == probe_key:
            self.probe_results.add(value)
        else:
            self.properties[key] = value
        return self

    def merge_probe_set(self, candidate_universe: Iterable[str]) -> None:
        """Complement ``probe_results`` against the full probe universe.

        Every probe that is *absent* on the client reports in, so the tokens
        that are present are those in the universe that never did.  This is
        a plain set difference and must only be applied once, after all
        probe observations for the record have arrived.
        """
        self.probe_results = set(candidate_universe) - self.probe_results

    def snapshot(self) -> AggregateRecord:
        """Copy with fresh containers; extension values are shared, not copied.

        Extensions may hold objects that cannot be deep-copied (locks,
        sockets, generators).
        """
        return self.model_copy(
            update={
                "properties": dict(self.properties),
                "probe_results": set(self.probe_results),
                "headers": list(self.headers) if self.headers is not None else None,
                "extensions": dict(self.extensions),
            }
        )

    def header(self, name: str) -> str | None:
        """Return the first header value for *name* (case-insensitive)."""
        wanted = name.lower()
        for header_name, value in self.headers or []:
            if header_name.lower() == wanted:
                return value
        return None

    def to_json(self) -> str:
        """Serialize the record; extension values that are not JSON types fall back to ``str``."""
        return json.dumps(self.model_dump(), default=str)
