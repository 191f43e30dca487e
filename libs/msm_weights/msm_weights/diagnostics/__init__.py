"""Diagnostics and truncation for stabilized weights."""

from .weights import (
    WeightDiagnostics,
    check_extreme_weights,
    compute_weight_diagnostics,
    truncate_weights,
)

__all__ = [
    "WeightDiagnostics",
    "check_extreme_weights",
    "compute_weight_diagnostics",
    "truncate_weights",
]
