"""Weighting engine settings."""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import SettingsConfigDict

from .base import BaseConfiguration, Environment


class WeightingSettings(BaseConfiguration):
    """Environment-driven defaults for the stabilized weighting engine.

    Every field can be set through an ``MSM_WEIGHTS_``-prefixed environment
    variable, e.g. ``MSM_WEIGHTS_MAX_ITERATIONS=500``.
    """

    model_config = SettingsConfigDict(
        env_prefix="MSM_WEIGHTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str | None = Field(
        default=None, description="Overrides the environment's default log level"
    )

    # Optimizer
    max_iterations: int = Field(
        default=100, ge=1, description="Maximum propensity optimizer iterations"
    )
    convergence_tolerance: float = Field(
        default=1e-10, gt=0.0, description="Relative objective tolerance"
    )

    # Policies
    strict_mode: bool = Field(
        default=False, description="Treat degenerate fits as fatal errors"
    )
    zero_denominator_policy: Literal["raise", "skip"] = Field(
        default="raise", description="Handling of zero denominator likelihoods"
    )
    first_period_policy: Literal["unit_weight", "exclude"] = Field(
        default="unit_weight", description="Handling of records without lag values"
    )

    # Weight post-processing
    truncation_lower_quantile: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Lower truncation quantile"
    )
    truncation_upper_quantile: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Upper truncation quantile"
    )
    extreme_weight_lower: float = Field(
        default=0.1, ge=0.0, description="Weights below this are extreme"
    )
    extreme_weight_upper: float = Field(
        default=10.0, gt=0.0, description="Weights above this are extreme"
    )

    # Parallelism
    n_jobs: int = Field(default=1, description="Number of parallel jobs")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str | None) -> str | None:
        """Validate the log level name."""
        if v is None:
            return v
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return v.upper()

    @field_validator("n_jobs")
    @classmethod
    def validate_n_jobs(cls, v: int) -> int:
        """Validate n_jobs follows joblib conventions."""
        if v == 0:
            raise ValueError("n_jobs cannot be 0")
        return v

    @model_validator(mode="after")
    def validate_ranges(self) -> "WeightingSettings":
        """Validate paired bounds are ordered."""
        lower = self.truncation_lower_quantile
        upper = self.truncation_upper_quantile
        if (lower is None) != (upper is None):
            raise ValueError(
                "truncation_lower_quantile and truncation_upper_quantile "
                "must be set together"
            )
        if lower is not None and upper is not None and not lower < upper:
            raise ValueError("truncation_lower_quantile must be below the upper")
        if not self.extreme_weight_lower < self.extreme_weight_upper:
            raise ValueError("extreme_weight_lower must be below extreme_weight_upper")
        return self

    def validate_configuration(self) -> list[str]:
        """Validate weighting specific configuration."""
        issues = super().validate_configuration()

        if self.environment == Environment.PRODUCTION:
            if not self.strict_mode:
                issues.append(
                    "Strict mode is off; degenerate fits only produce warnings"
                )
            if self.log_level == "DEBUG":
                issues.append("DEBUG logging not recommended for production")

        if self.max_iterations < 25:
            issues.append("Iteration budget may be too small for logistic fits")

        if self.truncation_lower_quantile is None and self.extreme_weight_upper > 100:
            issues.append("Very wide extreme weight bounds with no truncation")

        return issues
