"""Weighting estimators module.

This module provides the propensity model fitters, the likelihood evaluator,
the weight compositor and the stabilized weight pipeline built from them.
"""

from .compositor import (
    CompositionResult,
    WeightCompositor,
    cumulative_product,
    stepwise_ratios,
)
from .likelihood import binary_likelihood, evaluate_likelihood, gaussian_likelihood
from .propensity import (
    BinaryPropensityFitter,
    ContinuousPropensityFitter,
    PropensityModel,
    PropensityModelFitter,
    fit_propensity_models,
    get_fitter,
    report_degenerate_fit,
)
from .stabilized import (
    StabilizedWeightEstimator,
    WeightResult,
    compute_stabilized_weights,
)

__all__ = [
    "BinaryPropensityFitter",
    "CompositionResult",
    "ContinuousPropensityFitter",
    "PropensityModel",
    "PropensityModelFitter",
    "StabilizedWeightEstimator",
    "WeightCompositor",
    "WeightResult",
    "binary_likelihood",
    "compute_stabilized_weights",
    "cumulative_product",
    "evaluate_likelihood",
    "fit_propensity_models",
    "gaussian_likelihood",
    "get_fitter",
    "report_degenerate_fit",
    "stepwise_ratios",
]
