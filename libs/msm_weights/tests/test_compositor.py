"""Tests for the weight compositor."""

import numpy as np
import pytest

from msm_weights.core.base import ZeroDenominatorError
from msm_weights.core.config import WeightingConfig
from msm_weights.estimators.compositor import (
    WeightCompositor,
    cumulative_product,
    stepwise_ratios,
)

# Two units x three periods; first periods carry no likelihoods
NUMERATOR = np.array([np.nan, 0.6, 0.6, np.nan, 0.6, 0.4])
DENOMINATOR = np.array([np.nan, 0.7, 0.7, np.nan, 0.7, 0.3])
RETAINED = np.array([False, True, True, False, True, True])


class TestStepwiseRatios:
    """Test cases for numerator / denominator division."""

    def test_divides_likelihoods(self):
        """Ratios are numerator over denominator."""
        ratios, zero = stepwise_ratios(np.array([0.6, 0.4]), np.array([0.7, 0.3]))

        np.testing.assert_allclose(ratios, [6 / 7, 4 / 3])
        assert not zero.any()

    def test_zero_denominator_is_flagged(self):
        """Zero denominators give NaN ratios and are flagged."""
        ratios, zero = stepwise_ratios(
            np.array([0.5, 0.5]), np.array([0.0, 1e-15]), zero_tolerance=1e-12
        )

        assert np.isnan(ratios).all()
        np.testing.assert_array_equal(zero, [True, True])

    def test_shape_mismatch(self):
        """Inputs must align."""
        with pytest.raises(ValueError, match="differ in shape"):
            stepwise_ratios(np.ones(2), np.ones(3))


class TestCumulativeProduct:
    """Test cases for per-unit running products."""

    def test_running_product_per_unit(self):
        """Each unit's weights are the running product of its own ratios."""
        ratios = np.array([2.0, 0.5, 3.0, 4.0, 0.25])
        partitions = {"a": np.array([0, 1, 2]), "b": np.array([3, 4])}

        result = cumulative_product(ratios, partitions)

        np.testing.assert_allclose(result, [2.0, 1.0, 3.0, 4.0, 1.0])

    def test_excluded_records_are_skipped(self):
        """Excluded records do not enter the product and get NaN."""
        ratios = np.array([2.0, 5.0, 3.0])
        excluded = np.array([False, True, False])

        result = cumulative_product(ratios, {"a": np.arange(3)}, excluded=excluded)

        assert result[0] == 2.0
        assert np.isnan(result[1])
        assert result[2] == 6.0

    def test_parallel_matches_sequential(self):
        """Chunked parallel composition gives identical results."""
        np.random.seed(3)
        ratios = np.random.uniform(0.5, 1.5, 200)
        partitions = {u: np.arange(u * 4, u * 4 + 4) for u in range(50)}

        sequential = cumulative_product(ratios, partitions, n_jobs=1)
        parallel = cumulative_product(ratios, partitions, n_jobs=3)

        np.testing.assert_array_equal(sequential, parallel)


class TestWeightCompositor:
    """Test cases for composing weights over a panel."""

    def test_hand_computed_two_unit_scenario(self, two_unit_panel):
        """Weights match the hand-computed running products."""
        result = WeightCompositor().compose(
            two_unit_panel, NUMERATOR, DENOMINATOR, RETAINED
        )
        frame = result.frame

        np.testing.assert_allclose(
            frame["stepwise_ratio"].to_numpy(),
            [1.0, 6 / 7, 6 / 7, 1.0, 6 / 7, 4 / 3],
            atol=1e-9,
        )
        np.testing.assert_allclose(
            frame["cumulative_weight"].to_numpy(),
            [1.0, 6 / 7, 36 / 49, 1.0, 6 / 7, 8 / 7],
            atol=1e-9,
        )
        assert list(frame["unit"]) == [1, 1, 1, 2, 2, 2]
        assert list(frame["time"]) == [0, 1, 2, 0, 1, 2]
        assert list(frame.index) == list(two_unit_panel.data.index)
        np.testing.assert_array_equal(frame["excluded_from_fit"], ~RETAINED)
        assert not frame["excluded"].any()
        assert result.zero_denominator_records == []

    def test_exclude_first_period_policy(self, two_unit_panel):
        """Under 'exclude' the first periods carry no weight."""
        config = WeightingConfig(first_period_policy="exclude")

        frame = (
            WeightCompositor(config)
            .compose(two_unit_panel, NUMERATOR, DENOMINATOR, RETAINED)
            .frame
        )

        np.testing.assert_array_equal(frame["excluded"], ~RETAINED)
        assert list(frame["exclusion_reason"][~RETAINED]) == [
            "first_period",
            "first_period",
        ]
        np.testing.assert_allclose(
            frame["cumulative_weight"].to_numpy(),
            [np.nan, 6 / 7, 36 / 49, np.nan, 6 / 7, 8 / 7],
            atol=1e-9,
        )

    def test_zero_denominator_raises(self, two_unit_panel):
        """By default a zero denominator aborts with the offending record."""
        denominator = DENOMINATOR.copy()
        denominator[4] = 0.0

        with pytest.raises(ZeroDenominatorError) as exc_info:
            WeightCompositor().compose(
                two_unit_panel, NUMERATOR, denominator, RETAINED
            )

        assert exc_info.value.records == [(2, 1)]

    def test_zero_denominator_skip(self, two_unit_panel):
        """Under 'skip' the record and the rest of its unit are excluded."""
        denominator = DENOMINATOR.copy()
        denominator[4] = 0.0
        config = WeightingConfig(zero_denominator_policy="skip")

        result = WeightCompositor(config).compose(
            two_unit_panel, NUMERATOR, denominator, RETAINED
        )
        frame = result.frame

        assert result.zero_denominator_records == [(2, 1)]
        np.testing.assert_array_equal(
            frame["excluded"], [False, False, False, False, True, True]
        )
        assert list(frame["exclusion_reason"].iloc[4:]) == [
            "zero_denominator",
            "zero_denominator",
        ]
        np.testing.assert_allclose(
            frame["cumulative_weight"].to_numpy()[:4],
            [1.0, 6 / 7, 36 / 49, 1.0],
            atol=1e-9,
        )
        assert np.isnan(frame["cumulative_weight"].iloc[4:]).all()

    def test_missing_denominator_outside_fit_is_ignored(self, two_unit_panel):
        """Records excluded from fitting never count as zero denominators."""
        denominator = DENOMINATOR.copy()
        denominator[0] = 0.0

        result = WeightCompositor().compose(
            two_unit_panel, NUMERATOR, denominator, RETAINED
        )

        assert result.zero_denominator_records == []

    def test_length_mismatch(self, two_unit_panel):
        """Likelihood vectors must cover every panel record."""
        with pytest.raises(ValueError, match="Expected 6 records"):
            WeightCompositor().compose(
                two_unit_panel, NUMERATOR[:3], DENOMINATOR[:3], RETAINED[:3]
            )
