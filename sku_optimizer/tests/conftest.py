"""Shared fixtures: a small model table, a throwaway job store and a scripted fitter."""

import numpy as np
import pytest

from sku_optimizer.errors import FitError
from sku_optimizer.models.registry import ModelDefinition, ModelRegistry
from sku_optimizer.services.job_state_store import SQLiteJobStateStore


def _default_score(parameters):
    """MAPE grows with distance of the numeric parameters from a sweet spot."""
    numeric = [v for v in parameters.values() if isinstance(v, (int, float)) and not isinstance(v, bool)]
    return 5.0 + sum(abs(v - 4) * 3 for v in numeric)


class ScriptedFitter:
    """
    Deterministic ModelFitter for tests.

    `scores` maps model id -> f(parameters) -> MAPE; `fail` decides which
    combinations raise FitError. Every call is recorded.
    """

    def __init__(self, scores=None, fail=None):
        self.scores = scores or {}
        self.fail = fail or (lambda model_type, parameters: False)
        self.calls = []

    def fit(self, train, validation, model_type, parameters):
        self.calls.append((model_type, dict(parameters)))
        if self.fail(model_type, parameters):
            raise FitError(f"{model_type} diverged for {parameters}")
        mape = float(self.scores.get(model_type, _default_score)(parameters))
        return {
            'forecast': [0.0] * len(validation),
            'mape': mape,
            'rmse': mape / 10,
            'mae': mape / 20,
        }


def make_small_registry():
    return ModelRegistry([
        ModelDefinition(
            id='moving_average',
            display_name='Simple Moving Average',
            category='Naive & Simple',
            description='Average of recent observations.',
            parameter_grid={'window': [2, 3, 4, 5, 6, 7, 8, 9, 10, 12]},
            default_parameters={'window': 3},
            min_observations=2,
        ),
        ModelDefinition(
            id='simple_exponential_smoothing',
            display_name='Simple Exponential Smoothing',
            category='Exponential Smoothing',
            description='Level-only smoothing.',
            parameter_grid={'alpha': [0.1, 0.3, 0.5, 0.7, 0.9]},
            default_parameters={'alpha': 0.3},
            min_observations=2,
        ),
        ModelDefinition(
            id='holt_winters',
            display_name='Holt-Winters',
            category='Exponential Smoothing',
            description='Trend and seasonality.',
            parameter_grid={'alpha': [0.2, 0.4], 'seasonal': ['add', 'mul']},
            default_parameters={'alpha': 0.3, 'seasonal': 'add'},
            min_observations=24,
            is_seasonal=True,
        ),
        ModelDefinition(
            id='linear_trend',
            display_name='Linear Trend',
            category='Trend',
            description='No tunable parameters.',
            parameter_grid={},
            default_parameters={},
            min_observations=2,
            participates_in_grid_search=False,
        ),
    ])


@pytest.fixture
def small_registry():
    return make_small_registry()


@pytest.fixture
def scripted_fitter():
    return ScriptedFitter()


@pytest.fixture
def fitter_factory():
    return ScriptedFitter


@pytest.fixture
def store(tmp_path):
    return SQLiteJobStateStore(str(tmp_path / "jobs.db"))


@pytest.fixture
def monthly_series():
    """Three years of trending, seasonal monthly demand."""
    t = np.arange(36)
    return 100 + 2 * t + 10 * np.sin(2 * np.pi * t / 12)
