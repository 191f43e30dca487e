"""Core data structures, configuration and error taxonomy."""

from .base import (
    LAGGED_OUTCOME,
    LAGGED_TREATMENT,
    MISSING,
    DataValidationError,
    DegenerateFitError,
    DegenerateFitWarning,
    EstimationError,
    ExtremeWeightWarning,
    MalformedPanelError,
    ModelRole,
    NonConvergenceError,
    TreatmentKind,
    WeightingError,
    WeightRecord,
    ZeroDenominatorError,
)
from .config import WeightingConfig
from .panel import Panel

__all__ = [
    "LAGGED_OUTCOME",
    "LAGGED_TREATMENT",
    "MISSING",
    "DataValidationError",
    "DegenerateFitError",
    "DegenerateFitWarning",
    "EstimationError",
    "ExtremeWeightWarning",
    "MalformedPanelError",
    "ModelRole",
    "NonConvergenceError",
    "Panel",
    "TreatmentKind",
    "WeightingConfig",
    "WeightingError",
    "WeightRecord",
    "ZeroDenominatorError",
]
