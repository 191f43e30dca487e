"""Stabilized inverse probability weights for marginal structural models.

Computes time-varying stabilized weights over unit-by-time panel data: pooled
numerator and denominator propensity models, per-record treatment
likelihoods, per-unit cumulative composition and weight diagnostics.
"""

__version__ = "0.1.0"

from .core import *
from .diagnostics import (
    WeightDiagnostics,
    check_extreme_weights,
    compute_weight_diagnostics,
    truncate_weights,
)
from .estimators import (
    PropensityModel,
    StabilizedWeightEstimator,
    WeightCompositor,
    WeightResult,
    compute_stabilized_weights,
    get_fitter,
)

__all__ = [
    "__version__",
    "DataValidationError",
    "DegenerateFitError",
    "DegenerateFitWarning",
    "EstimationError",
    "ExtremeWeightWarning",
    "LAGGED_OUTCOME",
    "LAGGED_TREATMENT",
    "MISSING",
    "MalformedPanelError",
    "ModelRole",
    "NonConvergenceError",
    "Panel",
    "PropensityModel",
    "StabilizedWeightEstimator",
    "TreatmentKind",
    "WeightCompositor",
    "WeightDiagnostics",
    "WeightRecord",
    "WeightResult",
    "WeightingConfig",
    "WeightingError",
    "ZeroDenominatorError",
    "check_extreme_weights",
    "compute_stabilized_weights",
    "compute_weight_diagnostics",
    "get_fitter",
    "truncate_weights",
]
