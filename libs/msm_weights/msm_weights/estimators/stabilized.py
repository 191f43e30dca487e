"""Stabilized inverse probability weights for marginal structural models.

This module wires the weighting pipeline together:

1. Lag columns are derived from the panel by exact ``time - 1`` lookup.
2. Numerator and denominator propensity models are fit on the records whose
   treatment and covariates are all defined.
3. Each record's observed treatment is scored under both models.
4. Stepwise ratios are composed into per-unit cumulative weights.
5. Weights are optionally truncated and summarized.

The numerator conditions on treatment history and time-invariant confounders
only; the denominator adds time-varying confounders and, optionally, the
lagged outcome. The resulting weights are handed to a weighted outcome model.

Example Usage:
    >>> from msm_weights import Panel, compute_stabilized_weights
    >>>
    >>> panel = Panel.build(
    ...     df,
    ...     unit_col="id",
    ...     time_col="time",
    ...     treatment_col="treatment",
    ...     outcome_col="outcome",
    ...     time_varying_cols=["cd4"],
    ...     time_invariant_cols=["age"],
    ... )
    >>> result = compute_stabilized_weights(
    ...     panel,
    ...     treatment_kind="binary",
    ...     numerator_covariates=["lagged_treatment", "age"],
    ...     denominator_covariates=["lagged_treatment", "age", "cd4"],
    ...     truncation=(0.01, 0.99),
    ... )
    >>> model_data = result.attach_to(df, weight_col="sw")
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from ..core.base import (
    LAGGED_OUTCOME,
    DataValidationError,
    EstimationError,
    ModelRole,
    TreatmentKind,
    WeightRecord,
)
from ..core.config import WeightingConfig
from ..core.panel import Panel
from ..diagnostics.weights import (
    WeightDiagnostics,
    check_extreme_weights,
    compute_weight_diagnostics,
    truncate_weights,
)
from .compositor import WeightCompositor
from .likelihood import evaluate_likelihood
from .propensity import (
    PropensityModel,
    fit_propensity_models,
    get_fitter,
    report_degenerate_fit,
)

__all__ = [
    "WeightResult",
    "StabilizedWeightEstimator",
    "compute_stabilized_weights",
]

logger = logging.getLogger(__name__)

_LAG_PREFIX = "lag_"


@dataclass
class WeightResult:
    """Stabilized weights and the models that produced them.

    Attributes:
        weights: One row per input record, in input row order, with columns
            unit, time, numerator_likelihood, denominator_likelihood,
            stepwise_ratio, cumulative_weight, weight, excluded_from_fit,
            excluded and exclusion_reason
        numerator_model: Fitted numerator propensity model
        denominator_model: Fitted denominator propensity model
        diagnostics: Summary of the final weights
        degenerate_records: (unit, time) of degenerate fitted values per model
        zero_denominator_records: (unit, time) of records with a zero
            denominator likelihood
        truncation_bounds: Weight values the final weights were clipped to
    """

    weights: pd.DataFrame
    numerator_model: PropensityModel
    denominator_model: PropensityModel
    diagnostics: WeightDiagnostics
    degenerate_records: dict[ModelRole, list[tuple[Any, Any]]] = field(
        default_factory=dict
    )
    zero_denominator_records: list[tuple[Any, Any]] = field(default_factory=list)
    truncation_bounds: tuple[float, float] | None = None

    @property
    def n_excluded(self) -> int:
        """Number of records without a usable weight."""
        return int(self.weights["excluded"].sum())

    def to_frame(self) -> pd.DataFrame:
        """Return a copy of the per-record weight table."""
        return self.weights.copy()

    def to_records(self) -> list[WeightRecord]:
        """Convert the weight table into WeightRecord instances."""
        columns = [
            "unit",
            "time",
            "stepwise_ratio",
            "cumulative_weight",
            "weight",
            "excluded",
            "exclusion_reason",
        ]
        return [
            WeightRecord(
                unit_id=unit,
                time_index=int(time),
                stepwise_ratio=float(ratio),
                cumulative_weight=float(cumulative),
                weight=float(weight),
                excluded=bool(excluded),
                exclusion_reason=reason,
            )
            for unit, time, ratio, cumulative, weight, excluded, reason in (
                self.weights[columns].itertuples(index=False, name=None)
            )
        ]

    def attach_to(self, data: pd.DataFrame, weight_col: str = "sw") -> pd.DataFrame:
        """Attach weights to the input rows for the outcome model.

        Args:
            data: The frame the panel was built from, in the same row order
            weight_col: Name of the weight column to add

        Returns:
            New frame holding the rows with a usable weight and the weight
            column; ``data`` is not modified
        """
        if len(data) != len(self.weights):
            raise ValueError(
                f"Expected {len(self.weights)} rows to attach weights to, "
                f"got {len(data)}"
            )
        if weight_col in data.columns:
            raise ValueError(f"Column '{weight_col}' already exists in data")

        weights = self.weights["weight"].to_numpy()
        usable = ~self.weights["excluded"].to_numpy() & np.isfinite(weights)

        result = data.copy()
        result[weight_col] = weights
        return result.loc[usable]

    def summary(self) -> str:
        """Provide a text summary of the weighting run."""
        d = self.diagnostics
        lines = [
            "Stabilized Weight Summary",
            "=" * 30,
            f"Treatment kind: {self.denominator_model.treatment_kind.value}",
            f"Records: {len(self.weights)}",
            f"Records used for fitting: {self.denominator_model.n_observations}",
            f"Excluded records: {self.n_excluded}",
            f"Numerator covariates: {', '.join(self.numerator_model.covariates)}",
            f"Denominator covariates: {', '.join(self.denominator_model.covariates)}",
            f"Mean weight: {d.mean_weight:.4f}",
            f"Weight range: [{d.min_weight:.4f}, {d.max_weight:.4f}]",
            f"Effective sample size: {d.effective_sample_size:.1f}",
            f"Extreme weights: {d.extreme_weight_count} "
            f"({d.extreme_weight_percentage:.1f}%)",
        ]
        if self.truncation_bounds is not None:
            lower, upper = self.truncation_bounds
            lines.append(f"Truncated to: [{lower:.4f}, {upper:.4f}]")
        return "\n".join(lines)


def _validate_covariates(
    panel: Panel,
    numerator_covariates: Sequence[str],
    denominator_covariates: Sequence[str],
) -> None:
    """Check covariate declarations against the panel roles."""
    for role, covariates in (
        (ModelRole.NUMERATOR, numerator_covariates),
        (ModelRole.DENOMINATOR, denominator_covariates),
    ):
        if panel.treatment_col in covariates:
            raise DataValidationError(
                f"Treatment column '{panel.treatment_col}' cannot be a "
                f"{role.value} covariate"
            )
        if panel.outcome_col in covariates:
            raise DataValidationError(
                f"Outcome column '{panel.outcome_col}' cannot be a "
                f"{role.value} covariate; use '{LAGGED_OUTCOME}'"
            )

    forbidden = set(panel.time_varying_cols)
    forbidden |= {_LAG_PREFIX + col for col in panel.time_varying_cols}
    forbidden |= {LAGGED_OUTCOME}
    invalid = [col for col in numerator_covariates if col in forbidden]
    if invalid:
        raise DataValidationError(
            "Numerator covariates cannot include time-varying confounders, "
            f"their lags or the lagged outcome: {invalid}"
        )

    not_in_denominator = set(numerator_covariates) - set(denominator_covariates)
    if not_in_denominator:
        logger.warning(
            "Numerator covariates missing from the denominator: %s",
            sorted(not_in_denominator),
        )


def _lag_fields(panel: Panel, covariates: Sequence[str]) -> list[str]:
    """Extra panel columns whose ``lag_`` columns are requested as covariates."""
    fields = []
    for col in covariates:
        if col.startswith(_LAG_PREFIX) and col not in panel.data.columns:
            source = col[len(_LAG_PREFIX) :]
            if source in panel.data.columns:
                fields.append(source)
    return fields


def _record_ids(
    data: pd.DataFrame, panel: Panel, labels: Sequence[Any]
) -> list[tuple[Any, int]]:
    """Translate row labels into (unit, time) identities."""
    if not labels:
        return []
    rows = data.loc[list(labels), [panel.unit_col, panel.time_col]]
    return [(unit, int(time)) for unit, time in rows.itertuples(index=False)]


def _apply_truncation(
    cumulative: NDArray[Any],
    usable: NDArray[np.bool_],
    truncation: tuple[float, float] | None,
) -> tuple[NDArray[np.float64], tuple[float, float] | None]:
    weights = np.where(usable, cumulative, np.nan)
    if truncation is None or not usable.any():
        return weights, None

    lower, upper = truncation
    truncated, bounds = truncate_weights(weights[usable], lower, upper)
    weights[usable] = truncated
    return weights, bounds


def compute_stabilized_weights(
    panel: Panel,
    treatment_kind: TreatmentKind | str,
    numerator_covariates: Sequence[str],
    denominator_covariates: Sequence[str],
    truncation: tuple[float, float] | None = None,
    config: WeightingConfig | None = None,
) -> WeightResult:
    """Compute time-varying stabilized inverse probability weights.

    Args:
        panel: Validated panel of unit-time observations
        treatment_kind: 'binary' or 'continuous'
        numerator_covariates: Treatment history and time-invariant columns
        denominator_covariates: Numerator columns plus time-varying
            confounders and optionally the lagged outcome
        truncation: Optional (lower, upper) quantiles to clip weights to;
            overrides ``config.truncation``
        config: Engine configuration

    Returns:
        WeightResult with one weight row per input record

    Raises:
        DataValidationError: If covariate declarations or values are invalid
        NonConvergenceError: If a binary propensity fit does not converge
        DegenerateFitError: If a fit is degenerate and strict mode is on, or
            a continuous fit has zero residual variance
        ZeroDenominatorError: If a denominator likelihood is zero and the
            zero-denominator policy is 'raise'
    """
    config = config or WeightingConfig()
    fitter = get_fitter(treatment_kind, config)
    if isinstance(numerator_covariates, str) or isinstance(
        denominator_covariates, str
    ):
        raise DataValidationError("Covariates must be lists of column names")
    numerator_covariates = list(numerator_covariates)
    denominator_covariates = list(denominator_covariates)
    if truncation is None:
        truncation = config.truncation
    elif not 0.0 <= truncation[0] < truncation[1] <= 1.0:
        raise DataValidationError(
            f"truncation must satisfy 0 <= lower < upper <= 1, got {truncation}"
        )

    _validate_covariates(panel, numerator_covariates, denominator_covariates)

    all_covariates = list(dict.fromkeys(numerator_covariates + denominator_covariates))
    data = panel.with_lags(_lag_fields(panel, all_covariates))

    missing_cols = [col for col in all_covariates if col not in data.columns]
    if missing_cols:
        raise DataValidationError(f"Unknown covariate columns: {missing_cols}")

    # Records whose treatment and every declared covariate are defined
    retained = data[[panel.treatment_col] + all_covariates].notna().all(axis=1)
    retained = retained.to_numpy()
    if not retained.any():
        raise DataValidationError("No records have all covariates defined")

    gaps = panel.gaps()
    if not gaps.empty:
        logger.warning(
            "Panel has %d records following a gap; their lags are missing",
            len(gaps),
        )

    fitting_data = data.loc[retained]
    logger.info(
        "Fitting %s propensity models on %d of %d records",
        fitter.treatment_kind.value,
        len(fitting_data),
        panel.n_observations,
    )
    numerator_model, denominator_model = fit_propensity_models(
        fitter,
        numerator_covariates,
        denominator_covariates,
        fitting_data,
        panel.treatment_col,
    )

    degenerate_records: dict[ModelRole, list[tuple[Any, Any]]] = {}
    for model in (numerator_model, denominator_model):
        records = _record_ids(data, panel, model.degenerate_records)
        if records:
            degenerate_records[model.role] = records
            report_degenerate_fit(model, records, strict=config.strict)

    n_records = panel.n_observations
    numerator_likelihood = np.full(n_records, np.nan)
    denominator_likelihood = np.full(n_records, np.nan)
    numerator_likelihood[retained] = evaluate_likelihood(numerator_model, fitting_data)
    denominator_likelihood[retained] = evaluate_likelihood(
        denominator_model, fitting_data
    )

    composition = WeightCompositor(config).compose(
        panel, numerator_likelihood, denominator_likelihood, retained
    )
    frame = composition.frame

    cumulative = frame["cumulative_weight"].to_numpy()
    usable = ~frame["excluded"].to_numpy() & np.isfinite(cumulative)
    weights, truncation_bounds = _apply_truncation(cumulative, usable, truncation)
    frame.insert(frame.columns.get_loc("cumulative_weight") + 1, "weight", weights)

    check_extreme_weights(
        cumulative[usable], config.extreme_weight_bounds, stacklevel=3
    )
    diagnostics = compute_weight_diagnostics(
        weights,
        extreme_weight_bounds=config.extreme_weight_bounds,
        mean_weight_tolerance=config.mean_weight_tolerance,
        periods=frame["time"].to_numpy(),
    )

    logger.info(
        "Computed stabilized weights for %d records (%d excluded); "
        "mean weight %.4f",
        n_records,
        int(frame["excluded"].sum()),
        diagnostics.mean_weight,
    )

    return WeightResult(
        weights=frame.sort_index(),
        numerator_model=numerator_model,
        denominator_model=denominator_model,
        diagnostics=diagnostics,
        degenerate_records=degenerate_records,
        zero_denominator_records=composition.zero_denominator_records,
        truncation_bounds=truncation_bounds,
    )


class StabilizedWeightEstimator:
    """Estimator-style interface to stabilized weight computation.

    Example:
        >>> estimator = StabilizedWeightEstimator(WeightingConfig(n_jobs=2))
        >>> estimator.fit(
        ...     panel,
        ...     treatment_kind="binary",
        ...     numerator_covariates=["lagged_treatment"],
        ...     denominator_covariates=["lagged_treatment", "cd4"],
        ... )
        >>> weights = estimator.get_weights()
    """

    def __init__(self, config: WeightingConfig | None = None) -> None:
        """Initialize the estimator.

        Args:
            config: Engine configuration (defaults are used when None)
        """
        self.config = config or WeightingConfig()
        self.is_fitted = False
        self.result_: WeightResult | None = None

    def fit(
        self,
        panel: Panel,
        treatment_kind: TreatmentKind | str,
        numerator_covariates: Sequence[str],
        denominator_covariates: Sequence[str],
        truncation: tuple[float, float] | None = None,
    ) -> StabilizedWeightEstimator:
        """Fit the propensity models and compute weights.

        Args:
            panel: Validated panel of unit-time observations
            treatment_kind: 'binary' or 'continuous'
            numerator_covariates: Numerator model covariate columns
            denominator_covariates: Denominator model covariate columns
            truncation: Optional (lower, upper) truncation quantiles

        Returns:
            self: Fitted estimator
        """
        self.is_fitted = False
        self.result_ = compute_stabilized_weights(
            panel,
            treatment_kind,
            numerator_covariates,
            denominator_covariates,
            truncation=truncation,
            config=self.config,
        )
        self.is_fitted = True
        return self

    def _require_result(self) -> WeightResult:
        if not self.is_fitted or self.result_ is None:
            raise EstimationError("Estimator must be fitted before accessing weights")
        return self.result_

    def get_weights(self) -> pd.Series:
        """Final weight per input record, NaN where excluded."""
        return self._require_result().weights["weight"].copy()

    def get_weight_diagnostics(self) -> dict[str, Any]:
        """Weight distribution diagnostics as a dictionary."""
        return self._require_result().diagnostics.to_dict()

    def summary(self) -> str:
        """Provide a text summary of the fitted weights."""
        return self._require_result().summary()
