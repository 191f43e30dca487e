"""Tests for the likelihood evaluator."""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from msm_weights.core.base import (
    DataValidationError,
    EstimationError,
    ModelRole,
    TreatmentKind,
)
from msm_weights.estimators.likelihood import (
    binary_likelihood,
    evaluate_likelihood,
    gaussian_likelihood,
)
from msm_weights.estimators.propensity import PropensityModel


class TestBinaryLikelihood:
    """Test cases for the binary treatment likelihood."""

    def test_probability_of_observed_arm(self):
        """Treated records get p, untreated records get 1 - p."""
        result = binary_likelihood(np.array([0.2, 0.7, 0.9]), np.array([1, 0, 1]))

        np.testing.assert_allclose(result, [0.2, 0.3, 0.9])

    def test_rejects_non_binary_treatment(self):
        """Treatment values must be coded 0/1."""
        with pytest.raises(DataValidationError, match="0/1"):
            binary_likelihood(np.array([0.5, 0.5]), np.array([0, 2]))

    def test_shape_mismatch(self):
        """Probabilities and treatments must align."""
        with pytest.raises(ValueError, match="differ in shape"):
            binary_likelihood(np.array([0.5, 0.5]), np.array([1]))


class TestGaussianLikelihood:
    """Test cases for the continuous treatment density."""

    def test_matches_normal_density(self):
        """Density equals the normal pdf around the fitted mean."""
        mean = np.array([0.0, 1.0, 2.0])
        observed = np.array([0.5, 1.0, 0.0])

        result = gaussian_likelihood(mean, 2.0, observed)

        np.testing.assert_allclose(
            result, stats.norm.pdf(observed, loc=mean, scale=2.0)
        )
        assert result[1] == pytest.approx(1 / (2.0 * np.sqrt(2 * np.pi)))

    @pytest.mark.parametrize("residual_std", [0.0, -1.0, np.nan, np.inf])
    def test_rejects_invalid_residual_std(self, residual_std):
        """The residual standard deviation must be positive and finite."""
        with pytest.raises(EstimationError, match="must be positive"):
            gaussian_likelihood(np.zeros(2), residual_std, np.zeros(2))


class TestEvaluateLikelihood:
    """Test cases for dispatching on the model's treatment kind."""

    def test_binary_model(self):
        """Binary models are scored with fitted probabilities."""
        model = PropensityModel(
            treatment_kind=TreatmentKind.BINARY,
            role=ModelRole.DENOMINATOR,
            treatment_col="a",
            covariates=("x",),
            params=(0.0, 1.0),
        )
        data = pd.DataFrame({"x": [0.0, np.log(3.0)], "a": [1, 0]})

        result = evaluate_likelihood(model, data)

        np.testing.assert_allclose(result, [0.5, 0.25])

    def test_continuous_model(self):
        """Continuous models are scored with the normal density."""
        model = PropensityModel(
            treatment_kind=TreatmentKind.CONTINUOUS,
            role=ModelRole.NUMERATOR,
            treatment_col="dose",
            covariates=(),
            params=(1.0,),
            residual_std=0.5,
        )
        data = pd.DataFrame({"dose": [1.0, 2.0]})

        result = evaluate_likelihood(model, data)

        np.testing.assert_allclose(
            result, stats.norm.pdf([1.0, 2.0], loc=1.0, scale=0.5)
        )

    def test_continuous_model_without_residual_std(self):
        """A continuous model must carry its residual variance."""
        model = PropensityModel(
            treatment_kind=TreatmentKind.CONTINUOUS,
            role=ModelRole.NUMERATOR,
            treatment_col="dose",
            covariates=(),
            params=(1.0,),
        )

        with pytest.raises(EstimationError, match="residual variance"):
            evaluate_likelihood(model, pd.DataFrame({"dose": [1.0]}))
