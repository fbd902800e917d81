"""Engine configuration for pycollate."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pycollate.exceptions import CollateConfigError

if TYPE_CHECKING:
    from pycollate.models.record import AggregateRecord

    ReadyPredicate = Callable[[AggregateRecord], bool | Awaitable[bool]]

DEFAULT_QUIESCENCE_DELAY = 10.0
DEFAULT_PROBE_KEY = "font-name"


class HeaderPolicy(StrEnum):
    """How repeated header deposits for one record are handled."""

    OVERWRITE = "overwrite"
    FIRST = "first"


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_seconds(value: str) -> float | None:
    normalized = value.strip().lower()
    if normalized in {"", "none", "off", "false", "never"}:
        return None
    try:
        return float(normalized)
    except ValueError as exc:
        raise CollateConfigError(f"Invalid duration {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class EngineConfig:
    """Correlation engine configuration.

    Parameters
    ----------
    quiescence_delay : float or None
        Seconds to wait after the first observation for an identity before
        delivering its record.  When a ready predicate is set this is the
        poll interval instead.  ``None`` disables automatic delivery
        entirely; records are then retained until ``force_deliver`` and
        ``allow_unbounded`` must be set to acknowledge that.
    ready_predicate : callable or None
        ``predicate(record) -> bool`` (or an awaitable of ``bool``) polled
        every ``quiescence_delay`` seconds.  Delivery happens on the first
        poll that returns true.  A predicate that never returns true keeps
        the record alive forever unless ``max_retention`` is set.
    max_retention : float or None
        Upper bound in seconds on how long a polled record may wait for the
        predicate.  Once reached the record is delivered regardless.
    probe_key : str
        Observation key whose values are collected into
        ``AggregateRecord.probe_results`` instead of ``properties``.
    header_policy : HeaderPolicy
        ``overwrite`` replaces headers wholesale on every header deposit,
        ``first`` keeps the first set and ignores the rest.
    allow_unbounded : bool
        Required to accept ``quiescence_delay=None``.
    flush_on_close : bool
        Deliver still-pending records when the engine is closed.
    """

    quiescence_delay: float | None = DEFAULT_QUIESCENCE_DELAY
    ready_predicate: ReadyPredicate | None = None
    max_retention: float | None = None
    probe_key: str = DEFAULT_PROBE_KEY
    header_policy: HeaderPolicy = HeaderPolicy.OVERWRITE
    allow_unbounded: bool = False
    flush_on_close: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.header_policy, str) and not isinstance(self.header_policy, HeaderPolicy):
            try:
                object.__setattr__(self, "header_policy", HeaderPolicy(self.header_policy.strip().lower()))
            except ValueError as exc:
                raise CollateConfigError(f"Unknown header policy {self.header_policy!r}") from exc

        if not self.probe_key or not self.probe_key.strip():
            raise CollateConfigError("probe_key must be non-empty")

        if self.quiescence_delay is None:
            if not self.allow_unbounded:
                raise CollateConfigError(
                    "quiescence_delay=None never delivers automatically and retains records "
                    "until force_deliver(); pass allow_unbounded=True to accept that"
                )
            if self.ready_predicate is not None:
                raise CollateConfigError("ready_predicate needs a quiescence_delay to use as poll interval")
        elif self.quiescence_delay <= 0:
            raise CollateConfigError("quiescence_delay must be positive")

        if self.max_retention is not None:
            if self.max_retention <= 0:
                raise CollateConfigError("max_retention must be positive")
            if self.ready_predicate is None:
                raise CollateConfigError("max_retention only applies when a ready_predicate is set")

    @property
    def unbounded(self) -> bool:
        """True when records are only ever delivered explicitly."""
        return self.quiescence_delay is None

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Create configuration from ``COLLATE_*`` environment variables.

        Explicit keyword arguments override environment values.  The ready
        predicate cannot come from the environment and must be passed as an
        override.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        delay_env = env.get("COLLATE_QUIESCENCE_DELAY")
        if delay_env is not None and "quiescence_delay" not in overrides:
            config_kwargs["quiescence_delay"] = _env_seconds(delay_env)

        retention_env = env.get("COLLATE_MAX_RETENTION")
        if retention_env is not None and "max_retention" not in overrides:
            config_kwargs["max_retention"] = _env_seconds(retention_env)

        probe_env = env.get("COLLATE_PROBE_KEY")
        if probe_env is not None:
            config_kwargs["probe_key"] = probe_env

        policy_env = env.get("COLLATE_HEADER_POLICY")
        if policy_env is not None:
            config_kwargs["header_policy"] = policy_env

        if "allow_unbounded" not in overrides:
            config_kwargs["allow_unbounded"] = _env_bool(env.get("COLLATE_ALLOW_UNBOUNDED"), False)

        if "flush_on_close" not in overrides:
            config_kwargs["flush_on_close"] = _env_bool(env.get("COLLATE_FLUSH_ON_CLOSE"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
