"""Propensity models for stabilized weight estimation.

This module fits the conditional distribution of the observed treatment given
a declared covariate list. Two fits are made per run:

1. The numerator model conditions on treatment history and time-invariant
   confounders only.
2. The denominator model adds time-varying confounders and, optionally, the
   lagged outcome.

Binary treatments use a maximum likelihood logistic regression with a bounded
iteration budget; continuous treatments use ordinary least squares with a
pooled residual standard deviation.

Example Usage:
    >>> from msm_weights.core.base import ModelRole, TreatmentKind
    >>> from msm_weights.estimators.propensity import get_fitter
    >>>
    >>> fitter = get_fitter(TreatmentKind.BINARY)
    >>> denominator = fitter.fit(
    ...     ["lagged_treatment", "age", "cd4"],
    ...     fitting_data,
    ...     treatment_col="treatment",
    ...     role=ModelRole.DENOMINATOR,
    ... )
    >>> likelihood = fitter.likelihood(denominator, fitting_data)
"""

from __future__ import annotations

import abc
import logging
import warnings
from collections.abc import Hashable, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numpy.typing import NDArray
from scipy.optimize import minimize
from scipy.special import expit
from sklearn.linear_model import LinearRegression

from ..core.base import (
    DataValidationError,
    DegenerateFitError,
    DegenerateFitWarning,
    ModelRole,
    NonConvergenceError,
    TreatmentKind,
)
from ..core.config import WeightingConfig
from .likelihood import evaluate_likelihood

__all__ = [
    "PropensityModel",
    "PropensityModelFitter",
    "BinaryPropensityFitter",
    "ContinuousPropensityFitter",
    "get_fitter",
    "fit_propensity_models",
    "report_degenerate_fit",
]

logger = logging.getLogger(__name__)

INTERCEPT = "intercept"

# L-BFGS-B exit status for an exhausted iteration budget
_LBFGSB_MAXITER_STATUS = 1


@dataclass(frozen=True)
class PropensityModel:
    """Fitted conditional model of treatment given covariates.

    Instances are immutable and may be shared across threads.

    Attributes:
        treatment_kind: Binary or continuous treatment
        role: Numerator or denominator of the weight ratio
        treatment_col: Column holding the observed treatment
        covariates: Covariate column names, in design order
        params: Intercept followed by covariate coefficients
        residual_std: Pooled residual standard deviation (continuous only)
        n_observations: Number of records used for fitting
        n_iterations: Optimizer iterations (0 for closed-form fits)
        converged: Whether the optimizer reported convergence
        degenerate_records: Row labels with degenerate fitted values
    """

    treatment_kind: TreatmentKind
    role: ModelRole
    treatment_col: str
    covariates: tuple[str, ...]
    params: tuple[float, ...]
    residual_std: float | None = None
    n_observations: int = 0
    n_iterations: int = 0
    converged: bool = True
    degenerate_records: tuple[Hashable, ...] = ()

    @property
    def coefficients(self) -> pd.Series:
        """Fitted coefficients indexed by term name."""
        return pd.Series(self.params, index=(INTERCEPT,) + self.covariates)

    @property
    def is_degenerate(self) -> bool:
        """Whether any fitting record had degenerate fitted values."""
        return len(self.degenerate_records) > 0

    def linear_predictor(self, data: pd.DataFrame) -> NDArray[np.float64]:
        """Compute the linear predictor for each record.

        Args:
            data: Records holding the model's covariates

        Returns:
            Array of linear predictor values aligned with ``data``
        """
        X = _design_matrix(data, self.covariates)
        return X @ np.asarray(self.params, dtype=float)

    def predict(self, data: pd.DataFrame) -> NDArray[np.float64]:
        """Fitted probability of treatment (binary) or fitted mean (continuous).

        Args:
            data: Records holding the model's covariates

        Returns:
            Array of fitted values aligned with ``data``
        """
        eta = self.linear_predictor(data)
        if self.treatment_kind is TreatmentKind.BINARY:
            return expit(eta)
        return eta


def _design_matrix(data: pd.DataFrame, covariates: Sequence[str]) -> NDArray[Any]:
    """Build an intercept-first design matrix from covariate columns."""
    missing_cols = [col for col in covariates if col not in data.columns]
    if missing_cols:
        raise DataValidationError(f"Missing covariate columns: {missing_cols}")

    values = data[list(covariates)].to_numpy(dtype=float)
    if np.isnan(values).any():
        bad = [col for col in covariates if data[col].isna().any()]
        raise DataValidationError(f"Covariates contain missing values: {bad}")

    return np.column_stack([np.ones(len(data)), values])


class PropensityModelFitter(abc.ABC):
    """Shared interface for propensity model fitting.

    Concrete fitters implement one treatment kind and are selected with
    :func:`get_fitter`.
    """

    treatment_kind: ClassVar[TreatmentKind]

    def __init__(self, config: WeightingConfig | None = None) -> None:
        """Initialize the fitter.

        Args:
            config: Engine configuration (defaults are used when None)
        """
        self.config = config or WeightingConfig()

    def fit(
        self,
        covariates: Sequence[str],
        data: pd.DataFrame,
        treatment_col: str,
        role: ModelRole = ModelRole.DENOMINATOR,
    ) -> PropensityModel:
        """Fit the conditional model of treatment given covariates.

        Args:
            covariates: Covariate column names
            data: Fitting records, all covariates defined
            treatment_col: Column holding the observed treatment
            role: Numerator or denominator model

        Returns:
            Fitted PropensityModel

        Raises:
            DataValidationError: If columns are missing or values invalid
            NonConvergenceError: If iterative fitting exhausts its budget
            DegenerateFitError: If a continuous fit has no residual variance
        """
        covariates = tuple(covariates)
        if len(set(covariates)) != len(covariates):
            raise DataValidationError(f"Duplicate covariates declared: {covariates}")
        if treatment_col in covariates:
            raise DataValidationError(
                f"Treatment column '{treatment_col}' cannot be its own covariate"
            )
        if treatment_col not in data.columns:
            raise DataValidationError(f"Missing treatment column: {treatment_col}")

        X = _design_matrix(data, covariates)
        y = data[treatment_col].to_numpy(dtype=float)
        if np.isnan(y).any():
            raise DataValidationError("Treatment values cannot contain missing data")

        self._validate_treatment(y)

        n_params = X.shape[1]
        if len(y) <= n_params:
            raise DataValidationError(
                f"{role.value} model needs more than {n_params} records, got {len(y)}"
            )

        model = self._fit_implementation(
            X, y, data.index, covariates, treatment_col, role
        )
        logger.debug(
            "Fitted %s %s model on %d records (%d iterations)",
            role.value,
            self.treatment_kind.value,
            model.n_observations,
            model.n_iterations,
        )
        return model

    def likelihood(
        self, model: PropensityModel, data: pd.DataFrame
    ) -> NDArray[np.float64]:
        """Likelihood of each record's observed treatment under ``model``."""
        return evaluate_likelihood(model, data)

    def _validate_treatment(self, y: NDArray[Any]) -> None:
        """Validate treatment values for this treatment kind."""
        pass

    @abc.abstractmethod
    def _fit_implementation(
        self,
        X: NDArray[Any],
        y: NDArray[Any],
        index: pd.Index,
        covariates: tuple[str, ...],
        treatment_col: str,
        role: ModelRole,
    ) -> PropensityModel:
        """Implement the kind-specific fitting logic."""
        pass


class BinaryPropensityFitter(PropensityModelFitter):
    """Maximum likelihood logistic regression for binary treatments."""

    treatment_kind = TreatmentKind.BINARY

    def _validate_treatment(self, y: NDArray[Any]) -> None:
        if not np.isin(y, (0.0, 1.0)).all():
            raise DataValidationError("Binary treatment values must be coded 0/1")

    def _fit_implementation(
        self,
        X: NDArray[Any],
        y: NDArray[Any],
        index: pd.Index,
        covariates: tuple[str, ...],
        treatment_col: str,
        role: ModelRole,
    ) -> PropensityModel:
        result = minimize(
            _logistic_negative_log_likelihood,
            x0=np.zeros(X.shape[1]),
            args=(X, y),
            jac=_logistic_gradient,
            method="L-BFGS-B",
            options={
                "maxiter": self.config.max_iterations,
                "ftol": self.config.convergence_tolerance,
                "gtol": 1e-8,
            },
        )

        if not result.success:
            if result.status == _LBFGSB_MAXITER_STATUS:
                raise NonConvergenceError(
                    f"{role.value} model did not converge within "
                    f"{self.config.max_iterations} iterations",
                    role=role,
                    n_iterations=int(result.nit),
                )
            logger.warning(
                "%s model optimizer stopped early: %s", role.value, result.message
            )

        probabilities = expit(X @ result.x)
        tolerance = self.config.degenerate_tolerance
        degenerate = (probabilities <= tolerance) | (probabilities >= 1 - tolerance)

        return PropensityModel(
            treatment_kind=self.treatment_kind,
            role=role,
            treatment_col=treatment_col,
            covariates=covariates,
            params=tuple(float(b) for b in result.x),
            n_observations=len(y),
            n_iterations=int(result.nit),
            converged=bool(result.success),
            degenerate_records=tuple(index[degenerate]),
        )


class ContinuousPropensityFitter(PropensityModelFitter):
    """Least squares linear model for continuous treatments."""

    treatment_kind = TreatmentKind.CONTINUOUS

    def _fit_implementation(
        self,
        X: NDArray[Any],
        y: NDArray[Any],
        index: pd.Index,
        covariates: tuple[str, ...],
        treatment_col: str,
        role: ModelRole,
    ) -> PropensityModel:
        if covariates:
            regression = LinearRegression().fit(X[:, 1:], y)
            params = (float(regression.intercept_),) + tuple(
                float(b) for b in regression.coef_
            )
            fitted = regression.predict(X[:, 1:])
        else:
            params = (float(np.mean(y)),)
            fitted = np.full(len(y), params[0])

        # Pooled residual SD with degrees of freedom n - p, intercept included
        residuals = y - fitted
        dof = len(y) - X.shape[1]
        residual_std = float(np.sqrt(np.sum(residuals**2) / dof))

        if residual_std <= self.config.zero_tolerance:
            raise DegenerateFitError(
                f"{role.value} model has zero residual variance; "
                "treatment density is undefined",
                role=role,
            )

        return PropensityModel(
            treatment_kind=self.treatment_kind,
            role=role,
            treatment_col=treatment_col,
            covariates=covariates,
            params=params,
            residual_std=residual_std,
            n_observations=len(y),
        )


def _logistic_negative_log_likelihood(
    beta: NDArray[Any], X: NDArray[Any], y: NDArray[Any]
) -> float:
    eta = X @ beta
    return float(np.sum(np.logaddexp(0.0, eta) - y * eta))


def _logistic_gradient(
    beta: NDArray[Any], X: NDArray[Any], y: NDArray[Any]
) -> NDArray[Any]:
    return X.T @ (expit(X @ beta) - y)


_FITTERS: dict[TreatmentKind, type[PropensityModelFitter]] = {
    TreatmentKind.BINARY: BinaryPropensityFitter,
    TreatmentKind.CONTINUOUS: ContinuousPropensityFitter,
}


def get_fitter(
    treatment_kind: TreatmentKind | str, config: WeightingConfig | None = None
) -> PropensityModelFitter:
    """Select the fitter for a treatment kind.

    Args:
        treatment_kind: Binary or continuous
        config: Engine configuration

    Returns:
        Fitter instance for the treatment kind
    """
    try:
        kind = TreatmentKind(treatment_kind)
    except ValueError as e:
        allowed = [k.value for k in TreatmentKind]
        raise ValueError(f"treatment_kind must be one of {allowed}") from e
    return _FITTERS[kind](config)


def fit_propensity_models(
    fitter: PropensityModelFitter,
    numerator_covariates: Sequence[str],
    denominator_covariates: Sequence[str],
    data: pd.DataFrame,
    treatment_col: str,
) -> tuple[PropensityModel, PropensityModel]:
    """Fit the numerator and denominator models.

    The two fits are independent; with ``n_jobs != 1`` they run concurrently.

    Args:
        fitter: Fitter for the treatment kind
        numerator_covariates: Numerator covariate columns
        denominator_covariates: Denominator covariate columns
        data: Fitting records
        treatment_col: Column holding the observed treatment

    Returns:
        Tuple of (numerator_model, denominator_model)
    """
    n_jobs = 1 if fitter.config.n_jobs == 1 else 2
    numerator, denominator = Parallel(
        n_jobs=n_jobs, backend=fitter.config.parallel_backend
    )(
        delayed(fitter.fit)(covariates, data, treatment_col, role)
        for covariates, role in (
            (numerator_covariates, ModelRole.NUMERATOR),
            (denominator_covariates, ModelRole.DENOMINATOR),
        )
    )
    return numerator, denominator


def report_degenerate_fit(
    model: PropensityModel,
    records: Sequence[tuple[Any, Any]],
    strict: bool = False,
) -> DegenerateFitError | None:
    """Report degenerate fitted probabilities for a binary model.

    Args:
        model: Fitted propensity model
        records: (unit, time) identities of the degenerate records
        strict: Raise instead of warning

    Returns:
        The DegenerateFitError describing the problem, or None if the model
        is not degenerate

    Raises:
        DegenerateFitError: If the model is degenerate and ``strict`` is set
    """
    if not model.is_degenerate:
        return None

    shown = list(records[:10])
    more = f" and {len(records) - len(shown)} more" if len(records) > len(shown) else ""
    error = DegenerateFitError(
        f"{model.role.value} model produced fitted probabilities of 0 or 1 "
        f"for {len(records)} records: {shown}{more}",
        role=model.role,
        records=records,
    )
    if strict:
        raise error

    warnings.warn(str(error), DegenerateFitWarning, stacklevel=3)
    return error
