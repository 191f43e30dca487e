"""Likelihood of the observed treatment under a fitted propensity model.

Binary treatments contribute the fitted probability of the treatment actually
received; continuous treatments contribute the Gaussian density of the observed
value around the fitted mean.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats

from ..core.base import DataValidationError, EstimationError, TreatmentKind

if TYPE_CHECKING:
    from .propensity import PropensityModel

__all__ = [
    "binary_likelihood",
    "gaussian_likelihood",
    "evaluate_likelihood",
]


def binary_likelihood(
    probabilities: NDArray[Any] | pd.Series, observed: NDArray[Any] | pd.Series
) -> NDArray[np.float64]:
    """Probability of the observed binary treatment.

    Args:
        probabilities: Fitted probabilities that treatment equals 1
        observed: Observed treatment values coded 0/1

    Returns:
        ``p`` where the observed treatment is 1 and ``1 - p`` where it is 0
    """
    p = np.asarray(probabilities, dtype=float)
    a = np.asarray(observed, dtype=float)

    if p.shape != a.shape:
        raise ValueError(
            f"Probabilities {p.shape} and observed treatments {a.shape} differ in shape"
        )

    if not np.isin(a, (0.0, 1.0)).all():
        raise DataValidationError("Binary treatment values must be coded 0/1")

    return np.where(a == 1.0, p, 1.0 - p)


def gaussian_likelihood(
    fitted_mean: NDArray[Any] | pd.Series,
    residual_std: float,
    observed: NDArray[Any] | pd.Series,
) -> NDArray[np.float64]:
    """Normal density of the observed continuous treatment.

    Args:
        fitted_mean: Fitted conditional means, one per record
        residual_std: Pooled residual standard deviation of the model
        observed: Observed treatment values

    Returns:
        Density values, one per record
    """
    if not np.isfinite(residual_std) or residual_std <= 0:
        raise EstimationError(
            f"Residual standard deviation must be positive, got {residual_std}"
        )

    mean = np.asarray(fitted_mean, dtype=float)
    a = np.asarray(observed, dtype=float)
    if mean.shape != a.shape:
        raise ValueError(
            f"Fitted means {mean.shape} and observed treatments {a.shape} differ in shape"
        )

    return stats.norm.pdf(a, loc=mean, scale=residual_std)


def evaluate_likelihood(
    model: PropensityModel, data: pd.DataFrame
) -> NDArray[np.float64]:
    """Evaluate a fitted model's likelihood for each record's observed treatment.

    Args:
        model: Fitted propensity model
        data: Records holding the model's covariates and treatment column

    Returns:
        Non-negative likelihood per record, aligned with ``data``
    """
    observed = data[model.treatment_col].to_numpy(dtype=float)
    fitted = model.predict(data)

    if model.treatment_kind is TreatmentKind.BINARY:
        return binary_likelihood(fitted, observed)

    if model.residual_std is None:
        raise EstimationError("Continuous propensity model has no residual variance")
    return gaussian_likelihood(fitted, model.residual_std, observed)
