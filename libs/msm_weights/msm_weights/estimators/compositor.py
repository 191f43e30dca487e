"""Composition of stepwise likelihood ratios into cumulative weights.

The stabilized weight of a record is the running product, within its unit and
in time order, of the ratio of numerator to denominator likelihoods. Units are
independent, so composition is split into chunks of units that may run in
parallel.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numpy.typing import NDArray

from ..core.base import ZeroDenominatorError
from ..core.config import WeightingConfig
from ..core.panel import Panel

__all__ = [
    "CompositionResult",
    "WeightCompositor",
    "stepwise_ratios",
    "cumulative_product",
]

logger = logging.getLogger(__name__)

FIRST_PERIOD = "first_period"
MISSING_COVARIATES = "missing_covariates"
ZERO_DENOMINATOR = "zero_denominator"


@dataclass
class CompositionResult:
    """Per-record composition output in panel order.

    Attributes:
        frame: Likelihoods, ratios, cumulative weights and exclusion flags,
            indexed like the panel data
        zero_denominator_records: (unit, time) of records whose denominator
            likelihood was numerically zero
    """

    frame: pd.DataFrame
    zero_denominator_records: list[tuple[Any, Any]] = field(default_factory=list)


def stepwise_ratios(
    numerator_likelihood: NDArray[Any],
    denominator_likelihood: NDArray[Any],
    zero_tolerance: float = 1e-12,
) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
    """Divide numerator by denominator likelihoods.

    Args:
        numerator_likelihood: Numerator likelihood per record
        denominator_likelihood: Denominator likelihood per record
        zero_tolerance: Denominators at or below this are treated as zero

    Returns:
        Tuple of (ratios, zero_mask); ratios are NaN where the denominator
        is zero
    """
    num = np.asarray(numerator_likelihood, dtype=float)
    den = np.asarray(denominator_likelihood, dtype=float)
    if num.shape != den.shape:
        raise ValueError(
            f"Numerator {num.shape} and denominator {den.shape} differ in shape"
        )

    zero = ~(den > zero_tolerance)
    ratios = np.full(num.shape, np.nan)
    np.divide(num, den, out=ratios, where=~zero)
    return ratios, zero


def cumulative_product(
    ratios: NDArray[Any],
    partitions: Mapping[Hashable, NDArray[np.intp]],
    excluded: NDArray[np.bool_] | None = None,
    n_jobs: int = 1,
    backend: str = "threading",
) -> NDArray[np.float64]:
    """Running product of ratios within each unit.

    Args:
        ratios: Stepwise ratio per record
        partitions: Unit to time-ordered record positions
        excluded: Records that do not enter the product
        n_jobs: Number of joblib workers
        backend: joblib backend

    Returns:
        Cumulative weight per record, NaN where excluded
    """
    ratios = np.asarray(ratios, dtype=float)
    if excluded is None:
        excluded = np.zeros(len(ratios), dtype=bool)

    groups = list(partitions.values())
    n_chunks = 1 if n_jobs == 1 else max(1, min(len(groups), 4 * abs(n_jobs)))
    chunks = [groups[i::n_chunks] for i in range(n_chunks)]

    composed = Parallel(n_jobs=n_jobs, backend=backend)(
        delayed(_compose_chunk)(ratios, excluded, chunk) for chunk in chunks
    )

    cumulative = np.full(len(ratios), np.nan)
    for chunk_result in composed:
        for positions, values in chunk_result:
            cumulative[positions] = values
    return cumulative


def _compose_chunk(
    ratios: NDArray[Any],
    excluded: NDArray[np.bool_],
    chunk: Sequence[NDArray[np.intp]],
) -> list[tuple[NDArray[np.intp], NDArray[np.float64]]]:
    results = []
    for positions in chunk:
        keep = positions[~excluded[positions]]
        results.append((keep, np.cumprod(ratios[keep])))
    return results


def _exclude_from_first_zero(
    zero: NDArray[np.bool_], partitions: Mapping[Hashable, NDArray[np.intp]]
) -> NDArray[np.bool_]:
    """Mark each zero-denominator record and every later record of its unit."""
    mask = np.zeros(len(zero), dtype=bool)
    for positions in partitions.values():
        if zero[positions].any():
            mask[positions] = np.logical_or.accumulate(zero[positions])
    return mask


class WeightCompositor:
    """Combine numerator and denominator likelihoods into stabilized weights."""

    def __init__(self, config: WeightingConfig | None = None) -> None:
        """Initialize the compositor.

        Args:
            config: Engine configuration supplying the zero tolerance and the
                first-period and zero-denominator policies
        """
        self.config = config or WeightingConfig()

    def compose(
        self,
        panel: Panel,
        numerator_likelihood: NDArray[Any],
        denominator_likelihood: NDArray[Any],
        retained: NDArray[np.bool_],
    ) -> CompositionResult:
        """Compose cumulative weights for every panel record.

        Args:
            panel: Panel the likelihoods were evaluated on
            numerator_likelihood: Numerator likelihood per record in panel
                order (ignored where not retained)
            denominator_likelihood: Denominator likelihood per record in panel
                order (ignored where not retained)
            retained: Records that entered model fitting

        Returns:
            CompositionResult in panel order

        Raises:
            ZeroDenominatorError: If a retained denominator is numerically zero
                and the zero-denominator policy is 'raise'
        """
        retained = np.asarray(retained, dtype=bool)
        n_records = len(retained)
        if n_records != panel.n_observations:
            raise ValueError(
                f"Expected {panel.n_observations} records, got {n_records}"
            )

        units = panel.data[panel.unit_col].to_numpy()
        times = panel.data[panel.time_col].to_numpy()

        ratios, zero = stepwise_ratios(
            numerator_likelihood, denominator_likelihood, self.config.zero_tolerance
        )
        zero &= retained
        zero_records = [(units[i], int(times[i])) for i in np.flatnonzero(zero)]

        if zero_records and self.config.zero_denominator_policy == "raise":
            raise ZeroDenominatorError(
                f"Denominator likelihood is zero for {len(zero_records)} records: "
                f"{zero_records[:10]}",
                records=zero_records,
            )

        excluded = np.zeros(n_records, dtype=bool)
        reasons = np.full(n_records, None, dtype=object)

        not_retained = ~retained
        if self.config.first_period_policy == "unit_weight":
            ratios[not_retained] = 1.0
        else:
            excluded[not_retained] = True
            reasons[not_retained] = np.where(
                panel.first_period_mask[not_retained], FIRST_PERIOD, MISSING_COVARIATES
            )

        partitions = panel.partitions()
        if zero_records:
            dropped = _exclude_from_first_zero(zero, partitions)
            excluded |= dropped
            reasons[dropped] = ZERO_DENOMINATOR
            logger.warning(
                "Excluded %d records after zero denominators at %s",
                int(dropped.sum()),
                zero_records[:10],
            )

        cumulative = cumulative_product(
            ratios,
            partitions,
            excluded=excluded,
            n_jobs=self.config.n_jobs,
            backend=self.config.parallel_backend,
        )

        frame = pd.DataFrame(
            {
                "unit": units,
                "time": times,
                "numerator_likelihood": np.where(
                    retained, numerator_likelihood, np.nan
                ),
                "denominator_likelihood": np.where(
                    retained, denominator_likelihood, np.nan
                ),
                "stepwise_ratio": np.where(excluded, np.nan, ratios),
                "cumulative_weight": cumulative,
                "excluded_from_fit": not_retained,
                "excluded": excluded,
                "exclusion_reason": reasons,
            },
            index=panel.data.index,
        )

        return CompositionResult(frame=frame, zero_denominator_records=zero_records)
