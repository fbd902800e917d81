"""Correlation engine: collate observations per identity, deliver once.

The engine keeps exactly one live :class:`AggregateRecord` per identity.
The first observation for an identity creates the record and arms its
completion schedule; later observations only merge data.  When the
schedule completes (or ``force_deliver`` is called) the record is removed
from the live map and handed to the delivery callback.

Removal from the map happens under a single lock and is the only way to
obtain a record for delivery, so racing delivery paths resolve to exactly
one callback invocation.  Callbacks always run after the lock is released.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pycollate._redact import redact_headers, redact_observation
from pycollate._schedule import CompletionReason, CompletionSchedule, running_loop
from pycollate.config import EngineConfig, HeaderPolicy
from pycollate.exceptions import (
    CollateError,
    EngineClosedError,
    InvalidObservationError,
    ReadyPredicateError,
)
from pycollate.models.record import AggregateRecord, normalize_headers, now_ms

_logger = logging.getLogger(__name__)

DeliveryCallback = Callable[[str, AggregateRecord], None]
ErrorHandler = Callable[[ReadyPredicateError], None]


@dataclass(slots=True)
class _Slot:
    """A live record together with the schedule armed for it."""

    record: AggregateRecord
    schedule: CompletionSchedule | None = None


def _require_text(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidObservationError(f"{what} must be a non-empty string")
    return value


class CorrelationEngine:
    """Per-identity observation accumulator with timed delivery.

    Usage::

        def on_record(identity: str, record: AggregateRecord) -> None:
            ...

        async with CorrelationEngine(on_record) as engine:
            engine.deposit("203.0.113.7", "screen", "1920x1080")

    Deposits may come from the owning event loop or from other threads.
    Completion timers always run on the owning loop, which is either
    passed in as ``loop`` or captured from the running loop on first use.
    """

    def __init__(
        self,
        callback: DeliveryCallback,
        config: EngineConfig | None = None,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        clock: Callable[[], int] | None = None,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self._callback = callback
        self._config = config or EngineConfig()
        self._loop = loop
        self._clock = clock or now_ms
        self._on_error = on_error
        self._lock = threading.Lock()
        self._slots: dict[str, _Slot] = {}
        self._failures: list[ReadyPredicateError] = []
        self._closed = False

        if self._config.unbounded:
            _logger.warning(
                "Automatic delivery disabled: records are retained until force_deliver() or flush_all()"
            )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> CorrelationEngine:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    def deposit(self, identity: str, key: str, value: str) -> None:
        """Merge one key/value observation into the identity's record."""
        _require_text(identity, "identity")
        _require_text(key, "key")
        if not isinstance(value, str):
            raise InvalidObservationError(f"value for {key!r} must be a string, got {type(value).__name__}")

        with self._lock:
            slot, created = self._slot_for(identity)
            slot.record.insert(key, value, probe_key=self._config.probe_key)
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("Observation for %s: %s=%s", identity, key, redact_observation(key, value))
        if created:
            self._arm(slot)

    def deposit_headers(self, identity: str, headers: Mapping[str, str] | Any) -> None:
        """Attach request headers to the identity's record."""
        _require_text(identity, "identity")
        pairs = normalize_headers(headers)

        with self._lock:
            slot, created = self._slot_for(identity)
            keep_existing = slot.record.headers is not None and self._config.header_policy == HeaderPolicy.FIRST
            if not keep_existing:
                slot.record.headers = pairs
        if keep_existing:
            _logger.debug("Headers for %s already set; ignoring repeated deposit", identity)
        elif _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("Headers for %s: %s", identity, redact_headers(pairs))
        if created:
            self._arm(slot)

    def deposit_extension(self, identity: str, key: str, value: Any) -> None:
        """Store consumer-defined auxiliary data on the identity's record."""
        _require_text(identity, "identity")
        _require_text(key, "key")

        with self._lock:
            slot, created = self._slot_for(identity)
            slot.record.extensions[key] = value
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("Extension for %s: %s=%s", identity, key, redact_observation(key, value))
        if created:
            self._arm(slot)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def force_deliver(self, identity: str) -> bool:
        """Deliver the identity's record now.

        Returns ``False`` when there is no live record, including when an
        automatic delivery got there first.  Exceptions raised by the
        callback propagate to the caller; the record is already removed.
        """
        slot = self._take(identity)
        if slot is None:
            return False
        self._deliver(slot, CompletionReason.FORCED)
        return True

    def flush_all(self) -> int:
        """Force-deliver every live record and return how many were delivered."""
        slots = self._take_all()
        first_error: Exception | None = None
        for slot in slots:
            try:
                self._deliver(slot, CompletionReason.FORCED)
            except Exception as exc:
                _logger.error("Delivery callback failed for %s", slot.record.identity, exc_info=True)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
        return len(slots)

    async def aclose(self, *, flush: bool | None = None) -> None:
        """Stop accepting observations and cancel every pending schedule.

        Remaining records are delivered when ``flush`` is true (defaults to
        ``config.flush_on_close``) and dropped otherwise.  A ready predicate
        failure that no ``on_error`` handler consumed is raised here.
        """
        if flush is None:
            flush = self._config.flush_on_close

        with self._lock:
            already_closed = self._closed
            self._closed = True
        if not already_closed:
            slots = self._take_all()
            if flush:
                for slot in slots:
                    try:
                        self._deliver(slot, CompletionReason.SHUTDOWN)
                    except Exception:
                        _logger.error("Delivery callback failed for %s", slot.record.identity, exc_info=True)
            elif slots:
                _logger.debug("Dropped %d pending record(s) on close", len(slots))
            # Let cancelled schedule tasks unwind.
            await asyncio.sleep(0)

        if self._failures:
            failures, self._failures = self._failures, []
            raise failures[0]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def peek(self, identity: str) -> AggregateRecord | None:
        """Return a copy of the live record for *identity*, if any."""
        with self._lock:
            slot = self._slots.get(identity)
            if slot is None:
                return None
            return slot.record.snapshot()

    def pending(self) -> list[str]:
        """Identities that currently have a live record."""
        with self._lock:
            return list(self._slots)

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._slots

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _slot_for(self, identity: str) -> tuple[_Slot, bool]:
        """Return the live slot for *identity*, creating it if needed.

        Must be called with ``self._lock`` held.
        """
        if self._closed:
            raise EngineClosedError("CorrelationEngine is closed")
        slot = self._slots.get(identity)
        if slot is not None:
            return slot, False

        slot = _Slot(record=AggregateRecord(identity=identity, first_seen=self._clock()))
        slot.schedule = self._build_schedule(slot)
        self._slots[identity] = slot
        _logger.debug("New record for %s", identity)
        return slot, True

    def _build_schedule(self, slot: _Slot) -> CompletionSchedule | None:
        config = self._config
        if config.quiescence_delay is None:
            return None
        snapshot = functools.partial(self._snapshot, slot) if config.ready_predicate is not None else None
        return CompletionSchedule(
            loop=self._require_loop(),
            interval=config.quiescence_delay,
            on_complete=functools.partial(self._complete, slot),
            on_error=functools.partial(self._fail, slot),
            snapshot=snapshot,
            predicate=config.ready_predicate,
            max_retention=config.max_retention,
        )

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            loop = running_loop()
            if loop is None:
                raise CollateError(
                    "CorrelationEngine needs an event loop for completion timers; "
                    "pass loop= or deposit from inside 'async with engine'"
                )
            self._loop = loop
        return self._loop

    def _arm(self, slot: _Slot) -> None:
        if slot.schedule is not None:
            slot.schedule.start()

    def _take(self, identity: str, expected: _Slot | None = None) -> _Slot | None:
        """Remove and return the live slot; ``expected`` guards against stale schedules."""
        with self._lock:
            slot = self._slots.get(identity)
            if slot is None or (expected is not None and slot is not expected):
                return None
            del self._slots[identity]
        if slot.schedule is not None:
            slot.schedule.cancel()
        return slot

    def _take_all(self) -> list[_Slot]:
        with self._lock:
            slots = list(self._slots.values())
            self._slots.clear()
        for slot in slots:
            if slot.schedule is not None:
                slot.schedule.cancel()
        return slots

    def _deliver(self, slot: _Slot, reason: CompletionReason) -> None:
        record = slot.record
        _logger.debug(
            "Delivering %s (%s): %d properties, %d probes, %d extensions",
            record.identity,
            reason,
            len(record.properties),
            len(record.probe_results),
            len(record.extensions),
        )
        self._callback(record.identity, record)

    def _snapshot(self, slot: _Slot) -> AggregateRecord:
        with self._lock:
            return slot.record.snapshot()

    def _complete(self, slot: _Slot, reason: CompletionReason) -> None:
        identity = slot.record.identity
        if self._take(identity, expected=slot) is None:
            return
        if reason == CompletionReason.EXPIRED:
            _logger.warning(
                "Ready predicate did not pass for %s within %.3fs; delivering anyway",
                identity,
                self._config.max_retention,
            )
        try:
            self._deliver(slot, reason)
        except Exception:
            _logger.error("Delivery callback failed for %s", identity, exc_info=True)

    def _fail(self, slot: _Slot, exc: BaseException) -> None:
        identity = slot.record.identity
        if self._take(identity, expected=slot) is None:
            return
        error = ReadyPredicateError(
            f"Ready predicate failed for {identity}: {exc!r}",
            identity=identity,
            record=slot.record,
        )
        error.__cause__ = exc
        _logger.error("Ready predicate failed for %s", identity, exc_info=exc)
        if self._on_error is None:
            self._failures.append(error)
            return
        try:
            self._on_error(error)
        except Exception:
            _logger.error("Error handler failed for %s", identity, exc_info=True)
            self._failures.append(error)
