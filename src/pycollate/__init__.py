"""pycollate - collate per-client observations into one record, delivered once."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pycollate")
except PackageNotFoundError:
    __version__ = "0+local"
from pycollate._schedule import CompletionReason
from pycollate.analysis import calculate_entropy
from pycollate.config import EngineConfig, HeaderPolicy
from pycollate.engine import CorrelationEngine
from pycollate.exceptions import (
    CollateConfigError,
    CollateError,
    EngineClosedError,
    InvalidObservationError,
    ReadyPredicateError,
)
from pycollate.models import AggregateRecord

__all__ = [
    "__version__",
    "AggregateRecord",
    "CollateConfigError",
    "CollateError",
    "CompletionReason",
    "CorrelationEngine",
    "EngineClosedError",
    "EngineConfig",
    "HeaderPolicy",
    "InvalidObservationError",
    "ReadyPredicateError",
    "calculate_entropy",
]
