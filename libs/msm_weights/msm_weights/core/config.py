"""Configuration for stabilized weight estimation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from shared.config import WeightingSettings


class WeightingConfig(BaseModel):
    """Configuration for the stabilized weighting engine.

    Attributes:
        max_iterations: Iteration budget for the logistic likelihood optimizer
        convergence_tolerance: Relative objective tolerance for the optimizer
        degenerate_tolerance: Distance from 0 or 1 at which a fitted
            probability is treated as degenerate
        zero_tolerance: Denominator likelihoods at or below this are zero
        strict: Raise DegenerateFitError instead of warning
        zero_denominator_policy: 'raise' aborts; 'skip' excludes the record and
            the rest of its unit
        first_period_policy: 'unit_weight' gives records without lag values a
            stepwise ratio of 1; 'exclude' marks them excluded
        truncation: Optional (lower, upper) quantiles to clip weights to
        extreme_weight_bounds: Weights outside these bounds are flagged
        mean_weight_tolerance: Allowed deviation of the mean weight from 1
        n_jobs: Number of joblib workers for fitting and composition
        parallel_backend: joblib backend
    """

    max_iterations: int = Field(
        default=100, ge=1, description="Maximum optimizer iterations"
    )
    convergence_tolerance: float = Field(
        default=1e-10, gt=0.0, description="Relative objective tolerance"
    )
    degenerate_tolerance: float = Field(
        default=1e-8,
        ge=0.0,
        lt=0.5,
        description="Fitted probabilities this close to 0 or 1 are degenerate",
    )
    zero_tolerance: float = Field(
        default=1e-12, ge=0.0, lt=1.0, description="Numerical zero for denominators"
    )
    strict: bool = Field(
        default=False, description="Treat degenerate fits as fatal errors"
    )
    zero_denominator_policy: Literal["raise", "skip"] = Field(
        default="raise", description="Handling of zero denominator likelihoods"
    )
    first_period_policy: Literal["unit_weight", "exclude"] = Field(
        default="unit_weight",
        description="Handling of records without lag values",
    )
    truncation: tuple[float, float] | None = Field(
        default=None, description="Lower and upper truncation quantiles"
    )
    extreme_weight_bounds: tuple[float, float] = Field(
        default=(0.1, 10.0), description="Bounds outside which weights are extreme"
    )
    mean_weight_tolerance: float = Field(
        default=0.1, gt=0.0, description="Allowed |mean weight - 1|"
    )
    n_jobs: int = Field(default=1, description="Number of parallel jobs")
    parallel_backend: Literal["threading", "loky"] = Field(
        default="threading", description="joblib parallel backend"
    )

    model_config = {"frozen": True}

    @field_validator("truncation")
    @classmethod
    def validate_truncation(
        cls, v: tuple[float, float] | None
    ) -> tuple[float, float] | None:
        """Validate truncation quantiles are ordered fractions."""
        if v is None:
            return v
        lower, upper = v
        if not 0.0 <= lower < upper <= 1.0:
            raise ValueError(
                "truncation must satisfy 0 <= lower < upper <= 1, "
                f"got ({lower}, {upper})"
            )
        return v

    @field_validator("extreme_weight_bounds")
    @classmethod
    def validate_extreme_weight_bounds(
        cls, v: tuple[float, float]
    ) -> tuple[float, float]:
        """Validate extreme weight bounds are positive and ordered."""
        lower, upper = v
        if not 0.0 <= lower < upper:
            raise ValueError(
                f"extreme_weight_bounds must satisfy 0 <= lower < upper, got {v}"
            )
        return v

    @field_validator("n_jobs")
    @classmethod
    def validate_n_jobs(cls, v: int) -> int:
        """Validate n_jobs follows joblib conventions."""
        if v == 0:
            raise ValueError("n_jobs cannot be 0")
        return v

    @classmethod
    def from_settings(cls, settings: WeightingSettings) -> WeightingConfig:
        """Build an engine configuration from environment settings.

        Args:
            settings: Loaded weighting settings

        Returns:
            WeightingConfig carrying the settings' engine defaults
        """
        truncation = None
        if (
            settings.truncation_lower_quantile is not None
            and settings.truncation_upper_quantile is not None
        ):
            truncation = (
                settings.truncation_lower_quantile,
                settings.truncation_upper_quantile,
            )

        return cls(
            max_iterations=settings.max_iterations,
            convergence_tolerance=settings.convergence_tolerance,
            strict=settings.strict_mode,
            zero_denominator_policy=settings.zero_denominator_policy,
            first_period_policy=settings.first_period_policy,
            truncation=truncation,
            extreme_weight_bounds=(
                settings.extreme_weight_lower,
                settings.extreme_weight_upper,
            ),
            n_jobs=settings.n_jobs,
        )
