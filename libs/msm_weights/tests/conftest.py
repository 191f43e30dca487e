"""Shared test fixtures for the stabilized weighting engine.

This module provides seeded panel simulators with a time-varying confounder
affected by past treatment, plus small hand-written panels for exact checks.
"""

import numpy as np
import pandas as pd
import pytest

from msm_weights.core.config import WeightingConfig
from msm_weights.core.panel import Panel


def _expit(x):
    return 1 / (1 + np.exp(-x))


def simulate_binary_panel(n_units=300, n_periods=4, random_state=42):
    """Simulate a binary-treatment panel with treatment-confounder feedback.

    The confounder ``cd4`` depends on past treatment and drives current
    treatment, so the denominator model (lagged treatment, age, cd4) is
    correctly specified.
    """
    np.random.seed(random_state)

    rows = []
    for unit in range(n_units):
        age = np.random.normal(0, 1)
        previous_treatment = 0
        previous_outcome = 0.0
        previous_cd4 = 0.0

        for t in range(n_periods):
            cd4 = (
                0.3 * previous_cd4
                - 0.4 * previous_treatment
                + 0.2 * age
                + np.random.normal(0, 1)
            )
            propensity = _expit(
                -0.3 + 0.8 * previous_treatment + 0.2 * age - 0.5 * cd4
            )
            treatment = np.random.binomial(1, propensity)
            outcome = (
                1.0
                + 0.5 * treatment
                + 0.4 * cd4
                + 0.2 * age
                + 0.3 * previous_outcome
                + np.random.normal(0, 1)
            )

            rows.append(
                {
                    "id": unit,
                    "time": t,
                    "treatment": treatment,
                    "outcome": outcome,
                    "cd4": cd4,
                    "age": age,
                }
            )

            previous_treatment = treatment
            previous_outcome = outcome
            previous_cd4 = cd4

    return pd.DataFrame(rows)


def simulate_continuous_panel(n_units=200, n_periods=3, random_state=42):
    """Simulate a continuous-treatment (dose) panel with confounder feedback."""
    np.random.seed(random_state)

    rows = []
    for unit in range(n_units):
        age = np.random.normal(0, 1)
        previous_dose = 0.0
        previous_cd4 = 0.0

        for t in range(n_periods):
            cd4 = 0.3 * previous_cd4 - 0.2 * previous_dose + np.random.normal(0, 1)
            dose = 1.0 + 0.5 * previous_dose + 0.3 * age - 0.4 * cd4
            dose += np.random.normal(0, 1)
            outcome = 0.5 * dose + 0.4 * cd4 + np.random.normal(0, 1)

            rows.append(
                {
                    "id": unit,
                    "time": t,
                    "dose": dose,
                    "outcome": outcome,
                    "cd4": cd4,
                    "age": age,
                }
            )

            previous_dose = dose
            previous_cd4 = cd4

    return pd.DataFrame(rows)


@pytest.fixture
def random_state():
    """Provide a consistent random state for reproducible tests."""
    return 42


@pytest.fixture
def binary_panel_frame(random_state):
    """Simulated binary-treatment panel in long format."""
    return simulate_binary_panel(random_state=random_state)


@pytest.fixture
def binary_panel(binary_panel_frame):
    """Validated panel over the simulated binary-treatment data."""
    return Panel.build(
        binary_panel_frame,
        unit_col="id",
        time_col="time",
        treatment_col="treatment",
        outcome_col="outcome",
        time_varying_cols=["cd4"],
        time_invariant_cols=["age"],
    )


@pytest.fixture
def continuous_panel_frame(random_state):
    """Simulated continuous-treatment panel in long format."""
    return simulate_continuous_panel(random_state=random_state)


@pytest.fixture
def continuous_panel(continuous_panel_frame):
    """Validated panel over the simulated continuous-treatment data."""
    return Panel.build(
        continuous_panel_frame,
        unit_col="id",
        time_col="time",
        treatment_col="dose",
        outcome_col="outcome",
        time_varying_cols=["cd4"],
        time_invariant_cols=["age"],
    )


@pytest.fixture
def two_unit_panel():
    """Two units observed at three periods, rows deliberately shuffled."""
    df = pd.DataFrame(
        {
            "id": [2, 1, 1, 2, 1, 2],
            "time": [1, 0, 2, 0, 1, 2],
            "treatment": [1, 0, 1, 1, 0, 0],
            "outcome": [0.5, 1.0, 2.0, 0.0, 1.5, 3.0],
            "cd4": [0.2, 0.1, -0.3, 0.4, 0.0, 0.5],
        }
    )
    return Panel.build(
        df,
        unit_col="id",
        time_col="time",
        treatment_col="treatment",
        outcome_col="outcome",
        time_varying_cols=["cd4"],
    )


@pytest.fixture
def binary_panel_factory():
    """Factory building simulated binary-treatment frames of a given shape."""
    return simulate_binary_panel


@pytest.fixture
def default_config():
    """Engine configuration with library defaults."""
    return WeightingConfig()
