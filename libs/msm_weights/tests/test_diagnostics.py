"""Tests for weight diagnostics and truncation."""

import warnings

import numpy as np
import pytest

from msm_weights.core.base import ExtremeWeightWarning
from msm_weights.diagnostics.weights import (
    WeightDiagnostics,
    check_extreme_weights,
    compute_weight_diagnostics,
    truncate_weights,
)


class TestComputeWeightDiagnostics:
    """Test cases for weight distribution summaries."""

    def test_basic_statistics(self):
        """Location, spread and quantiles of the weights."""
        weights = np.array([0.5, 1.0, 1.0, 1.5])

        diagnostics = compute_weight_diagnostics(weights)

        assert isinstance(diagnostics, WeightDiagnostics)
        assert diagnostics.n_observations == 4
        assert diagnostics.mean_weight == pytest.approx(1.0)
        assert diagnostics.median_weight == pytest.approx(1.0)
        assert diagnostics.min_weight == 0.5
        assert diagnostics.max_weight == 1.5
        assert set(diagnostics.quantiles) == {"p1", "p5", "p50", "p95", "p99"}
        assert diagnostics.mean_deviation == pytest.approx(0.0)
        assert diagnostics.mean_within_tolerance is True

    def test_effective_sample_size(self):
        """ESS is (sum w)^2 / sum w^2."""
        weights = np.array([1.0, 2.0, 3.0])

        diagnostics = compute_weight_diagnostics(weights)

        assert diagnostics.effective_sample_size == pytest.approx(36 / 14)
        assert diagnostics.ess_ratio == pytest.approx(12 / 14)

    def test_constant_weights_have_full_ess(self):
        """Equal weights lose no effective sample size."""
        diagnostics = compute_weight_diagnostics(np.ones(50))

        assert diagnostics.effective_sample_size == pytest.approx(50)
        assert diagnostics.std_weight == 0.0
        assert diagnostics.skewness == 0.0

    def test_extreme_weights_counted(self):
        """Weights outside the bounds on either side are extreme."""
        weights = np.array([0.05, 1.0, 1.0, 20.0])

        diagnostics = compute_weight_diagnostics(
            weights, extreme_weight_bounds=(0.1, 10.0)
        )

        assert diagnostics.extreme_weight_count == 2
        assert diagnostics.extreme_weight_percentage == pytest.approx(50.0)

    def test_mean_deviation_outside_tolerance(self):
        """A mean far from 1 is reported."""
        diagnostics = compute_weight_diagnostics(
            np.array([2.0, 2.0, 2.0]), mean_weight_tolerance=0.1
        )

        assert diagnostics.mean_deviation == pytest.approx(1.0)
        assert diagnostics.mean_within_tolerance is False
        assert any("deviates" in r for r in diagnostics.recommendations())

    def test_missing_weights_are_ignored(self):
        """Excluded (NaN) weights do not enter the summary."""
        diagnostics = compute_weight_diagnostics(np.array([1.0, np.nan, 3.0]))

        assert diagnostics.n_observations == 2
        assert diagnostics.mean_weight == pytest.approx(2.0)

    def test_all_missing(self):
        """A vector without finite weights yields an empty summary."""
        diagnostics = compute_weight_diagnostics(np.array([np.nan, np.nan]))

        assert diagnostics.n_observations == 0
        assert np.isnan(diagnostics.mean_weight)
        assert diagnostics.mean_within_tolerance is False

    def test_mean_by_period(self):
        """Mean weight is reported for each time period."""
        weights = np.array([1.0, 2.0, np.nan, 4.0])
        periods = np.array([0, 1, 0, 1])

        diagnostics = compute_weight_diagnostics(weights, periods=periods)

        assert diagnostics.mean_by_period == {0: 1.0, 1: 3.0}

    def test_to_dict(self):
        """Diagnostics flatten to a dictionary with quantiles inlined."""
        result = compute_weight_diagnostics(np.array([0.8, 1.2])).to_dict()

        assert result["n_observations"] == 2
        assert "p95" in result
        assert "effective_sample_size" in result


class TestTruncateWeights:
    """Test cases for quantile truncation."""

    def test_clips_to_reference_quantiles(self):
        """Weights are clipped to the 5th and 95th reference percentiles."""
        reference = np.linspace(0.5, 2.0, 101)

        truncated, bounds = truncate_weights(
            np.array([0.1, 1.0, 50.0]), 0.05, 0.95, reference=reference
        )

        assert bounds == pytest.approx((0.575, 1.925))
        np.testing.assert_allclose(truncated, [0.575, 1.0, 1.925])

    def test_default_reference_is_the_weights(self):
        """Without a reference the weights' own quantiles are used."""
        weights = np.arange(1.0, 102.0)

        truncated, bounds = truncate_weights(weights, 0.01, 0.99)

        assert bounds == pytest.approx((2.0, 100.0))
        assert truncated.min() == 2.0
        assert truncated.max() == 100.0

    def test_length_and_missing_values_preserved(self):
        """Clipping never removes records and leaves NaN in place."""
        weights = np.array([0.2, np.nan, 5.0, 1.0])

        truncated, _ = truncate_weights(weights, 0.0, 0.5)

        assert len(truncated) == 4
        assert np.isnan(truncated[1])

    def test_full_range_is_identity(self):
        """Quantiles 0 and 1 leave the weights unchanged."""
        weights = np.array([0.3, 1.0, 4.0])

        truncated, _ = truncate_weights(weights, 0.0, 1.0)

        np.testing.assert_array_equal(truncated, weights)

    @pytest.mark.parametrize("lower,upper", [(0.9, 0.1), (-0.1, 0.9), (0.1, 1.5)])
    def test_invalid_quantiles(self, lower, upper):
        """Quantiles must be ordered fractions."""
        with pytest.raises(ValueError, match="Quantiles must satisfy"):
            truncate_weights(np.ones(3), lower, upper)


class TestCheckExtremeWeights:
    """Test cases for the extreme weight warning."""

    def test_warns_outside_bounds(self):
        """Weights outside the bounds trigger a warning."""
        with pytest.warns(ExtremeWeightWarning, match="2 of 4 weights"):
            n_extreme = check_extreme_weights(
                np.array([0.01, 1.0, 1.0, 30.0]), bounds=(0.1, 10.0)
            )

        assert n_extreme == 2

    def test_silent_within_bounds(self):
        """No warning when every weight is acceptable."""
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert check_extreme_weights(np.array([0.5, 1.0, 2.0, np.nan])) == 0
