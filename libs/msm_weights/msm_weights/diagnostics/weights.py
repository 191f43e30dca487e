"""Weight distribution diagnostics and truncation.

This module summarizes a vector of stabilized weights before it is handed to
an outcome model: location and spread, tail quantiles, effective sample size,
the share of extreme weights and the deviation of the mean from 1. It also
provides quantile truncation and the extreme-weight warning.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats

from ..core.base import ExtremeWeightWarning

__all__ = [
    "WeightDiagnostics",
    "compute_weight_diagnostics",
    "truncate_weights",
    "check_extreme_weights",
]

logger = logging.getLogger(__name__)

_QUANTILES = {"p1": 1, "p5": 5, "p50": 50, "p95": 95, "p99": 99}


@dataclass
class WeightDiagnostics:
    """Summary statistics of a weight vector.

    Missing weights (excluded records) are ignored; ``n_observations`` counts
    only finite weights.
    """

    n_observations: int
    mean_weight: float
    median_weight: float
    std_weight: float
    min_weight: float
    max_weight: float
    skewness: float
    kurtosis: float
    quantiles: dict[str, float]
    effective_sample_size: float
    extreme_weight_bounds: tuple[float, float]
    extreme_weight_count: int
    extreme_weight_percentage: float
    mean_deviation: float
    mean_within_tolerance: bool
    mean_by_period: dict[int, float] = field(default_factory=dict)

    @property
    def ess_ratio(self) -> float:
        """Effective sample size as a fraction of the observation count."""
        if self.n_observations == 0:
            return float("nan")
        return self.effective_sample_size / self.n_observations

    def to_dict(self) -> dict[str, Any]:
        """Flatten the diagnostics into a plain dictionary."""
        return {
            "n_observations": self.n_observations,
            "mean_weight": self.mean_weight,
            "median_weight": self.median_weight,
            "std_weight": self.std_weight,
            "min_weight": self.min_weight,
            "max_weight": self.max_weight,
            "skewness": self.skewness,
            "kurtosis": self.kurtosis,
            **self.quantiles,
            "effective_sample_size": self.effective_sample_size,
            "ess_ratio": self.ess_ratio,
            "extreme_weight_count": self.extreme_weight_count,
            "extreme_weight_percentage": self.extreme_weight_percentage,
            "mean_deviation": self.mean_deviation,
            "mean_within_tolerance": self.mean_within_tolerance,
        }

    def recommendations(self) -> list[str]:
        """Generate actionable recommendations from the diagnostics."""
        recommendations = []

        if not self.mean_within_tolerance:
            recommendations.append(
                f"Mean weight {self.mean_weight:.3f} deviates from 1 by "
                f"{self.mean_deviation:.3f}. Check the denominator model "
                "specification and positivity."
            )

        if self.extreme_weight_percentage > 5:
            recommendations.append(
                f"High proportion of extreme weights "
                f"({self.extreme_weight_percentage:.1f}%). Consider truncating "
                f"at the {self.quantiles['p1']:.3f} and "
                f"{self.quantiles['p99']:.3f} quantile values."
            )
        elif self.extreme_weight_count > 0:
            recommendations.append(
                f"Some extreme weights detected "
                f"({self.extreme_weight_percentage:.1f}%). Monitor for impact "
                "on variance."
            )

        if self.n_observations > 0 and self.ess_ratio < 0.5:
            recommendations.append(
                f"Low effective sample size ({self.effective_sample_size:.0f}, "
                f"{self.ess_ratio:.1%} of original). High weight variability "
                "detected."
            )

        if not recommendations:
            recommendations.append(
                "Weight distribution appears reasonable with few extreme values."
            )
        return recommendations


def compute_weight_diagnostics(
    weights: NDArray[Any] | pd.Series | Sequence[float],
    extreme_weight_bounds: tuple[float, float] = (0.1, 10.0),
    mean_weight_tolerance: float = 0.1,
    periods: NDArray[Any] | pd.Series | Sequence[int] | None = None,
) -> WeightDiagnostics:
    """Analyze a weight distribution.

    Args:
        weights: Weights to analyze; NaN entries are ignored
        extreme_weight_bounds: Weights strictly outside these are extreme
        mean_weight_tolerance: Allowed deviation of the mean weight from 1
        periods: Optional time index per weight for per-period means

    Returns:
        WeightDiagnostics for the finite weights
    """
    all_weights = np.asarray(weights, dtype=float)
    finite = np.isfinite(all_weights)
    w = all_weights[finite]
    n_obs = len(w)
    lower, upper = extreme_weight_bounds

    if n_obs == 0:
        logger.warning("No finite weights to analyze")
        nan = float("nan")
        return WeightDiagnostics(
            n_observations=0,
            mean_weight=nan,
            median_weight=nan,
            std_weight=nan,
            min_weight=nan,
            max_weight=nan,
            skewness=nan,
            kurtosis=nan,
            quantiles={name: nan for name in _QUANTILES},
            effective_sample_size=0.0,
            extreme_weight_bounds=(lower, upper),
            extreme_weight_count=0,
            extreme_weight_percentage=0.0,
            mean_deviation=nan,
            mean_within_tolerance=False,
        )

    logger.debug(f"Weight range: [{np.min(w):.6f}, {np.max(w):.6f}]")

    mean_weight = float(np.mean(w))
    std_weight = float(np.std(w))

    # Higher moments are undefined for a constant vector
    if std_weight > 0:
        skewness = float(stats.skew(w))
        kurtosis = float(stats.kurtosis(w))
    else:
        skewness = 0.0
        kurtosis = 0.0

    extreme_mask = (w < lower) | (w > upper)
    extreme_count = int(np.sum(extreme_mask))
    extreme_percentage = extreme_count / n_obs * 100
    if extreme_count > 0:
        logger.warning(
            f"Found {extreme_count} extreme weights ({extreme_percentage:.1f}%) "
            f"outside [{lower}, {upper}]"
        )

    # ESS = (sum of weights)^2 / sum of weights^2
    ess = float(np.sum(w) ** 2 / np.sum(w**2))
    ess_ratio = ess / n_obs
    logger.info(f"Effective sample size: {ess:.1f} ({ess_ratio:.1%} of original)")
    if ess_ratio < 0.5:
        logger.warning(
            f"Low effective sample size ({ess_ratio:.1%}), consider truncation"
        )

    mean_deviation = abs(mean_weight - 1.0)
    within_tolerance = mean_deviation <= mean_weight_tolerance
    if not within_tolerance:
        logger.warning(
            f"Mean weight {mean_weight:.4f} deviates from 1 by more than "
            f"{mean_weight_tolerance}"
        )

    mean_by_period: dict[int, float] = {}
    if periods is not None:
        period_values = np.asarray(periods)
        if len(period_values) != len(all_weights):
            raise ValueError(
                f"Got {len(period_values)} periods for {len(all_weights)} weights"
            )
        by_period = pd.Series(w).groupby(period_values[finite]).mean()
        mean_by_period = {int(t): float(m) for t, m in by_period.items()}

    return WeightDiagnostics(
        n_observations=n_obs,
        mean_weight=mean_weight,
        median_weight=float(np.median(w)),
        std_weight=std_weight,
        min_weight=float(np.min(w)),
        max_weight=float(np.max(w)),
        skewness=skewness,
        kurtosis=kurtosis,
        quantiles={name: float(np.percentile(w, q)) for name, q in _QUANTILES.items()},
        effective_sample_size=ess,
        extreme_weight_bounds=(lower, upper),
        extreme_weight_count=extreme_count,
        extreme_weight_percentage=extreme_percentage,
        mean_deviation=mean_deviation,
        mean_within_tolerance=within_tolerance,
        mean_by_period=mean_by_period,
    )


def truncate_weights(
    weights: NDArray[Any] | pd.Series | Sequence[float],
    lower_quantile: float,
    upper_quantile: float,
    reference: NDArray[Any] | pd.Series | Sequence[float] | None = None,
) -> tuple[NDArray[np.float64], tuple[float, float]]:
    """Clip weights to quantiles of a reference distribution.

    Weights are clipped, never removed, so the output has the input's length.
    NaN entries stay NaN and are ignored when computing quantiles.

    Args:
        weights: Weights to truncate
        lower_quantile: Lower quantile as a fraction in [0, 1]
        upper_quantile: Upper quantile as a fraction in [0, 1]
        reference: Distribution supplying the quantiles (defaults to
            ``weights``)

    Returns:
        Tuple of (truncated_weights, (lower_bound, upper_bound))
    """
    if not 0.0 <= lower_quantile < upper_quantile <= 1.0:
        raise ValueError(
            "Quantiles must satisfy 0 <= lower < upper <= 1, "
            f"got ({lower_quantile}, {upper_quantile})"
        )

    w = np.asarray(weights, dtype=float)
    ref = w if reference is None else np.asarray(reference, dtype=float)
    ref = ref[np.isfinite(ref)]
    if len(ref) == 0:
        raise ValueError("Reference distribution has no finite weights")

    lower_bound = float(np.percentile(ref, lower_quantile * 100))
    upper_bound = float(np.percentile(ref, upper_quantile * 100))

    truncated = np.clip(w, lower_bound, upper_bound)
    n_clipped = int(np.sum((w < lower_bound) | (w > upper_bound)))
    logger.info(
        f"Truncated {n_clipped} weights to [{lower_bound:.4f}, {upper_bound:.4f}]"
    )
    return truncated, (lower_bound, upper_bound)


def check_extreme_weights(
    weights: NDArray[Any] | pd.Series | Sequence[float],
    bounds: tuple[float, float] = (0.1, 10.0),
    stacklevel: int = 2,
) -> int:
    """Warn when any weight lies outside ``bounds``.

    Args:
        weights: Weights to check; NaN entries are ignored
        bounds: Lower and upper acceptable weight
        stacklevel: Passed to ``warnings.warn``

    Returns:
        Number of weights outside the bounds
    """
    w = np.asarray(weights, dtype=float)
    w = w[np.isfinite(w)]
    lower, upper = bounds
    n_extreme = int(np.sum((w < lower) | (w > upper)))
    if n_extreme > 0:
        warnings.warn(
            f"{n_extreme} of {len(w)} weights lie outside [{lower}, {upper}] "
            f"(range [{np.min(w):.4g}, {np.max(w):.4g}])",
            ExtremeWeightWarning,
            stacklevel=stacklevel,
        )
    return n_extreme
