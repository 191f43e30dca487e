"""Base types and error taxonomy for stabilized weight estimation.

This module provides the exception hierarchy, the treatment-kind variant and
the per-record output type shared by every stage of the weighting engine.
"""

from __future__ import annotations

import math
from collections.abc import Hashable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

__all__ = [
    "TreatmentKind",
    "ModelRole",
    "WeightRecord",
    "MISSING",
    "LAGGED_TREATMENT",
    "LAGGED_OUTCOME",
    "WeightingError",
    "DataValidationError",
    "MalformedPanelError",
    "EstimationError",
    "DegenerateFitError",
    "NonConvergenceError",
    "ZeroDenominatorError",
    "DegenerateFitWarning",
    "ExtremeWeightWarning",
]

# Column names produced by the panel index for treatment and outcome history
LAGGED_TREATMENT = "lagged_treatment"
LAGGED_OUTCOME = "lagged_outcome"


class TreatmentKind(str, Enum):
    """Supported treatment kinds for propensity modelling."""

    BINARY = "binary"
    CONTINUOUS = "continuous"


class ModelRole(str, Enum):
    """Role of a propensity model in the stabilized weight ratio."""

    NUMERATOR = "numerator"
    DENOMINATOR = "denominator"


class _MissingType:
    """Sentinel for a lag value that does not exist."""

    _instance: _MissingType | None = None

    def __new__(cls) -> _MissingType:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _MissingType()


@dataclass(frozen=True)
class WeightRecord:
    """Stabilized weight for a single unit-time observation.

    ``weight`` is the value handed to the outcome model: the cumulative weight
    after optional truncation, or NaN when the record is excluded.
    """

    unit_id: Hashable
    time_index: int
    stepwise_ratio: float
    cumulative_weight: float
    weight: float
    excluded: bool = False
    exclusion_reason: str | None = None

    @property
    def is_usable(self) -> bool:
        """Whether the record carries a finite weight for the outcome model."""
        return not self.excluded and math.isfinite(self.weight)


class WeightingError(Exception):
    """Base exception class for weighting engine errors."""

    pass


class DataValidationError(WeightingError):
    """Raised when input data or declarations fail validation."""

    pass


class MalformedPanelError(DataValidationError):
    """Raised when panel structure is invalid.

    Duplicate (unit, time) pairs, missing identifiers, non-integer time
    indices and unannounced out-of-order rows all raise this error before any
    model fitting takes place.
    """

    def __init__(
        self, message: str, records: Sequence[tuple[Any, Any]] | None = None
    ) -> None:
        super().__init__(message)
        self.records: list[tuple[Any, Any]] = list(records or [])


class EstimationError(WeightingError):
    """Raised when a fitting or composition step fails."""

    pass


class DegenerateFitError(EstimationError):
    """Raised when a propensity model yields degenerate fitted values.

    For binary treatments this means fitted probabilities of 0 or 1 (perfect
    separation); for continuous treatments it means zero residual variance.
    """

    def __init__(
        self,
        message: str,
        role: ModelRole | None = None,
        records: Sequence[tuple[Any, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.role = role
        self.records: list[tuple[Any, Any]] = list(records or [])


class NonConvergenceError(EstimationError):
    """Raised when iterative fitting exceeds its iteration budget."""

    def __init__(
        self, message: str, role: ModelRole | None = None, n_iterations: int = 0
    ) -> None:
        super().__init__(message)
        self.role = role
        self.n_iterations = n_iterations


class ZeroDenominatorError(EstimationError):
    """Raised when a denominator likelihood is numerically zero."""

    def __init__(
        self, message: str, records: Sequence[tuple[Any, Any]] | None = None
    ) -> None:
        super().__init__(message)
        self.records: list[tuple[Any, Any]] = list(records or [])


class DegenerateFitWarning(UserWarning):
    """Issued instead of DegenerateFitError when strict mode is off."""

    pass


class ExtremeWeightWarning(UserWarning):
    """Issued when cumulative weights fall outside the configured bounds."""

    pass
