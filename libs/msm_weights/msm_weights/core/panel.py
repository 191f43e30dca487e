"""Panel index for unit-by-time data.

This module provides the validated, time-ordered panel structure consumed by
the weighting engine, together with exact lag lookups and an explicit
partition of rows by unit.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable, Mapping, Sequence
from typing import Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from pydantic import BaseModel, Field, PrivateAttr

from .base import (
    LAGGED_OUTCOME,
    LAGGED_TREATMENT,
    MISSING,
    MalformedPanelError,
)

__all__ = ["Panel"]

logger = logging.getLogger(__name__)

# Minimum records per treatment arm before a period is flagged for positivity
_MIN_ARM_COUNT = 5


class Panel(BaseModel):
    """Validated long-format panel of unit-time observations.

    Rows are ordered by unit and, within unit, by time index. The original
    position of every input row is kept as the frame index so results can be
    aligned back to the caller's row order. The caller's frame is never
    modified.
    """

    data: pd.DataFrame = Field(..., description="Panel data in long format")
    unit_col: str = Field(..., description="Column name for unit identifiers")
    time_col: str = Field(..., description="Column name for integer time indices")
    treatment_col: str = Field(..., description="Column name for the treatment")
    outcome_col: str = Field(..., description="Column name for the outcome")
    time_varying_cols: list[str] = Field(
        default_factory=list,
        description="Column names for time-varying confounders",
    )
    time_invariant_cols: list[str] = Field(
        default_factory=list,
        description="Column names for time-invariant confounders",
    )
    require_sorted: bool = Field(
        default=False,
        description="Reject input whose rows are not time-ordered within unit",
    )

    model_config = {"arbitrary_types_allowed": True}

    _keyed: pd.DataFrame | None = PrivateAttr(default=None)

    def __init__(self, **data: Any) -> None:
        """Initialize the panel with validation."""
        super().__init__(**data)
        self.data = self.data.reset_index(drop=True)
        self._validate_panel_structure()
        self._sort_data()
        logger.debug(
            "Built panel with %d units and %d observations",
            self.n_units,
            self.n_observations,
        )

    @classmethod
    def build(
        cls,
        rows: pd.DataFrame | Iterable[Mapping[str, Any]],
        unit_col: str,
        time_col: str,
        treatment_col: str,
        outcome_col: str,
        time_varying_cols: Sequence[str] = (),
        time_invariant_cols: Sequence[str] = (),
        require_sorted: bool = False,
    ) -> Panel:
        """Build a panel from a frame or an iterable of row mappings.

        Args:
            rows: Tabular input, one row per unit-time observation
            unit_col: Column holding unit identifiers
            time_col: Column holding integer time indices
            treatment_col: Column holding observed treatment values
            outcome_col: Column holding observed outcomes
            time_varying_cols: Time-varying confounder columns
            time_invariant_cols: Time-invariant confounder columns
            require_sorted: Fail if rows are not already time-ordered per unit

        Returns:
            Validated Panel

        Raises:
            MalformedPanelError: If the panel structure is invalid
        """
        if isinstance(rows, pd.DataFrame):
            frame = rows.copy()
        else:
            frame = pd.DataFrame(list(rows))

        return cls(
            data=frame,
            unit_col=unit_col,
            time_col=time_col,
            treatment_col=treatment_col,
            outcome_col=outcome_col,
            time_varying_cols=list(time_varying_cols),
            time_invariant_cols=list(time_invariant_cols),
            require_sorted=require_sorted,
        )

    def _validate_panel_structure(self) -> None:
        """Validate the panel structure."""
        required_cols = (
            [self.unit_col, self.time_col, self.treatment_col, self.outcome_col]
            + self.time_varying_cols
            + self.time_invariant_cols
        )
        missing_cols = [col for col in required_cols if col not in self.data.columns]
        if missing_cols:
            raise MalformedPanelError(f"Missing required columns: {missing_cols}")

        if self.data.empty:
            raise MalformedPanelError("Panel contains no observations")

        if self.data[self.unit_col].isna().any():
            raise MalformedPanelError("Unit identifiers cannot be missing")

        if self.data[self.time_col].isna().any():
            raise MalformedPanelError("Time indices cannot be missing")

        self._coerce_time_index()

        # Duplicate (unit, time) pairs
        duplicated = self.data.duplicated([self.unit_col, self.time_col], keep=False)
        if duplicated.any():
            pairs = sorted(
                set(
                    zip(
                        self.data.loc[duplicated, self.unit_col],
                        self.data.loc[duplicated, self.time_col],
                    )
                ),
                key=repr,
            )
            raise MalformedPanelError(
                f"Duplicate observations for unit-time combinations: {pairs}",
                records=pairs,
            )

        if self.require_sorted:
            steps = self.data.groupby(self.unit_col, sort=False)[self.time_col].diff()
            out_of_order = steps.notna() & (steps <= 0)
            if out_of_order.any():
                records = list(
                    zip(
                        self.data.loc[out_of_order, self.unit_col],
                        self.data.loc[out_of_order, self.time_col],
                    )
                )
                raise MalformedPanelError(
                    f"Time indices are not increasing within unit at {records}",
                    records=records,
                )

        if self.time_invariant_cols:
            n_values = self.data.groupby(self.unit_col)[
                self.time_invariant_cols
            ].nunique(dropna=False)
            varying = n_values[(n_values > 1).any(axis=1)]
            if not varying.empty:
                raise MalformedPanelError(
                    "Time-invariant confounders vary within units: "
                    f"{list(varying.index)}"
                )

    def _coerce_time_index(self) -> None:
        """Ensure the time column holds integer ordinals."""
        times = self.data[self.time_col]
        if pd.api.types.is_integer_dtype(times):
            self.data[self.time_col] = times.astype(np.int64)
            return

        if pd.api.types.is_float_dtype(times):
            if np.all(np.isfinite(times)) and np.all(np.mod(times, 1) == 0):
                self.data[self.time_col] = times.astype(np.int64)
                return

        raise MalformedPanelError(
            f"Time column '{self.time_col}' must contain integer ordinals"
        )

    def _sort_data(self) -> None:
        """Sort data by unit and time, keeping original row positions as index."""
        self.data = self.data.sort_values(
            [self.unit_col, self.time_col], kind="mergesort"
        )
        self._check_supplied_lags()

    def _check_supplied_lags(self) -> None:
        """Reject caller-supplied lag columns that fill first periods with values."""
        first = self.first_period_mask
        for col in (LAGGED_TREATMENT, LAGGED_OUTCOME):
            if col in self.data.columns and self.data.loc[first, col].notna().any():
                raise MalformedPanelError(
                    f"Column '{col}' must be missing on each unit's first record"
                )

    @property
    def n_units(self) -> int:
        """Number of unique units in the panel."""
        return int(self.data[self.unit_col].nunique())

    @property
    def n_time_periods(self) -> int:
        """Number of unique time periods in the panel."""
        return int(self.data[self.time_col].nunique())

    @property
    def n_observations(self) -> int:
        """Number of unit-time observations."""
        return len(self.data)

    @property
    def time_periods(self) -> list[int]:
        """Sorted list of unique time periods."""
        return sorted(int(t) for t in self.data[self.time_col].unique())

    @property
    def units(self) -> list[Hashable]:
        """Unique unit identifiers in panel order."""
        return list(pd.unique(self.data[self.unit_col]))

    @property
    def is_balanced(self) -> bool:
        """Check if every unit is observed at every time period."""
        return self.n_units * self.n_time_periods == self.n_observations

    @property
    def first_period_mask(self) -> NDArray[np.bool_]:
        """Boolean mask marking each unit's first record, in panel order."""
        return ~self.data[self.unit_col].duplicated().to_numpy()

    def partitions(self) -> dict[Hashable, NDArray[np.intp]]:
        """Partition row positions by unit.

        Returns:
            Mapping from unit identifier to the positions of its rows in
            ``data``, in increasing time order
        """
        grouped = self.data.groupby(self.unit_col, sort=False)
        return {
            unit: np.asarray(positions) for unit, positions in grouped.indices.items()
        }

    def lag(self, unit: Hashable, time: int, field: str) -> Any:
        """Look up ``field`` for ``unit`` at ``time - 1``.

        Args:
            unit: Unit identifier
            time: Time index whose predecessor is requested
            field: Column to read

        Returns:
            The value at the previous time index, or MISSING if the unit has
            no record there (first period or a gap)
        """
        if field not in self.data.columns:
            raise KeyError(f"Unknown field: {field}")

        keyed = self._keyed_data()
        key = (unit, int(time) - 1)
        if key not in keyed.index:
            return MISSING
        return keyed.loc[key, field]

    def with_lags(self, fields: Sequence[str] | None = None) -> pd.DataFrame:
        """Return a copy of the panel data with lag columns added.

        Treatment and outcome lags are named ``lagged_treatment`` and
        ``lagged_outcome``; other fields get a ``lag_`` prefix. Lags are exact
        ``time - 1`` lookups, so first periods and records after a gap carry
        NaN rather than the last observed value.

        Args:
            fields: Extra columns to lag in addition to treatment and outcome

        Returns:
            New DataFrame in panel order with lag columns
        """
        result = self.data.copy()

        lag_names = {
            self.treatment_col: LAGGED_TREATMENT,
            self.outcome_col: LAGGED_OUTCOME,
        }
        for field in fields or []:
            if field not in self.data.columns:
                raise KeyError(f"Unknown field: {field}")
            lag_names.setdefault(field, f"lag_{field}")

        # Keep caller-supplied lag columns as given
        lag_names = {
            field: name
            for field, name in lag_names.items()
            if name not in result.columns
        }
        if not lag_names:
            return result

        keyed = self._keyed_data()
        previous = pd.MultiIndex.from_arrays(
            [self.data[self.unit_col], self.data[self.time_col] - 1]
        )
        lagged = keyed[list(lag_names)].reindex(previous)
        for field, name in lag_names.items():
            result[name] = lagged[field].to_numpy()

        return result

    def gaps(self) -> pd.DataFrame:
        """Find records whose predecessor within the unit is not at ``time - 1``.

        Returns:
            DataFrame with unit, time and previous observed time for each gap
        """
        previous_time = self.data.groupby(self.unit_col, sort=False)[
            self.time_col
        ].shift(1)
        gap_mask = previous_time.notna() & (
            self.data[self.time_col] - previous_time != 1
        )
        gaps = self.data.loc[gap_mask, [self.unit_col, self.time_col]].copy()
        gaps["previous_time"] = previous_time[gap_mask].astype(np.int64)
        return gaps

    def treatment_positivity_by_period(self) -> dict[int, dict[str, Any]]:
        """Count treated and untreated records per period for binary treatment.

        Returns:
            Dictionary keyed by time period with counts, proportions and a
            positivity violation flag
        """
        results: dict[int, dict[str, Any]] = {}
        for time_period, period_data in self.data.groupby(self.time_col):
            treatment = period_data[self.treatment_col]
            n_treated = int((treatment == 1).sum())
            n_control = int((treatment == 0).sum())
            total = len(treatment)

            results[int(time_period)] = {
                "n_treated": n_treated,
                "n_control": n_control,
                "total": total,
                "prop_treated": n_treated / total if total > 0 else 0.0,
                "positivity_violation": (n_treated < _MIN_ARM_COUNT)
                or (n_control < _MIN_ARM_COUNT),
            }

        return results

    def summary(self) -> str:
        """Provide a summary of the panel structure.

        Returns:
            String summary of the panel
        """
        summary_lines = [
            "Panel Summary",
            "=" * 30,
            f"Units: {self.n_units}",
            f"Time periods: {self.n_time_periods}",
            f"Total observations: {self.n_observations}",
            f"Balanced panel: {self.is_balanced}",
            f"Gaps: {len(self.gaps())}",
            f"Treatment: {self.treatment_col}",
            f"Outcome: {self.outcome_col}",
            f"Time-varying confounders: {', '.join(self.time_varying_cols)}",
            f"Time-invariant confounders: {', '.join(self.time_invariant_cols)}",
        ]

        return "\n".join(summary_lines)

    def _keyed_data(self) -> pd.DataFrame:
        if self._keyed is None:
            self._keyed = self.data.set_index([self.unit_col, self.time_col])
        return self._keyed
