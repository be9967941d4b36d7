"""
Model Registry for SKU parameter optimization.

Static table of the forecasting models the engine can tune: the parameter
grid searched for each model, its default parameters, the minimum number of
training observations it needs, and whether it takes part in grid search.
The registry is read-only during a search; focused grids are passed to the
optimizer explicitly instead of being swapped into the table.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sku_optimizer.errors import ModelNotFoundError, ValidationError
from sku_optimizer.utils.logging_utils import log_io

logger = logging.getLogger(__name__)

# A grid is either named value lists (Cartesian product) or explicit configurations
ParameterGrid = Union[Dict[str, List[Any]], List[Dict[str, Any]]]

DEFAULT_SEASONAL_PERIOD = 12


@dataclass(frozen=True)
class ModelDefinition:
    """Registry entry for one forecasting model."""
    id: str
    display_name: str
    category: str
    description: str
    parameter_grid: ParameterGrid = field(default_factory=dict)
    default_parameters: Dict[str, Any] = field(default_factory=dict)
    min_observations: int = 2
    is_seasonal: bool = False
    # Models with nothing to tune are represented by a baseline result instead
    participates_in_grid_search: bool = True

    @property
    def requirement_description(self) -> str:
        if self.is_seasonal:
            return f"Requires at least {self.min_observations} observations for seasonal patterns"
        return f"Requires at least {self.min_observations} observations"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'display_name': self.display_name,
            'category': self.category,
            'description': self.description,
            'parameter_grid': copy.deepcopy(self.parameter_grid),
            'default_parameters': dict(self.default_parameters),
            'min_observations': self.min_observations,
            'is_seasonal': self.is_seasonal,
            'participates_in_grid_search': self.participates_in_grid_search,
        }


# Safe ranges used by validate_parameters: (min, max, integer_only)
PARAMETER_RANGES: Dict[str, Dict[str, tuple]] = {
    'simple_exponential_smoothing': {'alpha': (0.01, 0.99, False)},
    'double_exponential_smoothing': {'alpha': (0.01, 0.99, False), 'beta': (0.01, 0.99, False)},
    'holt_winters': {
        'alpha': (0.01, 0.99, False),
        'beta': (0.01, 0.99, False),
        'gamma': (0.01, 0.99, False),
    },
    'moving_average': {'window': (2, 50, True)},
    'seasonal_moving_average': {'window': (2, 20, True)},
    'arima': {'p': (0, 5, True), 'd': (0, 2, True), 'q': (0, 5, True)},
    'sarima': {
        'p': (0, 3, True), 'd': (0, 1, True), 'q': (0, 3, True),
        'P': (0, 2, True), 'D': (0, 1, True), 'Q': (0, 2, True),
    },
}


def build_model_definitions(seasonal_period: int = DEFAULT_SEASONAL_PERIOD) -> List[ModelDefinition]:
    """
    Build the default model table.

    Seasonal models scale their data requirement with the seasonal period:
    Holt-Winters and SARIMA need two full seasons, seasonal naive and
    seasonal moving average need one.
    """
    smoothing = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9]
    return [
        ModelDefinition(
            id='simple_exponential_smoothing',
            display_name='Simple Exponential Smoothing',
            category='Exponential Smoothing',
            description='Level-only smoothing for series without trend or seasonality.',
            parameter_grid={'alpha': smoothing},
            default_parameters={'alpha': 0.3},
            min_observations=2,
        ),
        ModelDefinition(
            id='double_exponential_smoothing',
            display_name='Holt Linear Trend',
            category='Exponential Smoothing',
            description='Level and trend smoothing (double exponential smoothing).',
            parameter_grid={
                'alpha': smoothing,
                'beta': [0.05, 0.1, 0.15, 0.2, 0.25, 0.3, 0.35, 0.4],
            },
            default_parameters={'alpha': 0.3, 'beta': 0.1},
            min_observations=2,
        ),
        ModelDefinition(
            id='moving_average',
            display_name='Simple Moving Average',
            category='Naive & Simple',
            description='Average of the most recent observations.',
            parameter_grid={'window': [2, 3, 4, 5, 6, 7, 8, 9, 10, 12, 15, 20]},
            default_parameters={'window': 3},
            min_observations=2,
        ),
        ModelDefinition(
            id='holt_winters',
            display_name='Holt-Winters',
            category='Exponential Smoothing',
            description='Triple exponential smoothing with trend and seasonality.',
            parameter_grid={
                'alpha': [0.1, 0.2, 0.3, 0.4, 0.5],
                'beta': [0.1, 0.2, 0.3, 0.4, 0.5],
                'gamma': [0.1, 0.2, 0.3, 0.4, 0.5],
                'seasonal_periods': sorted({4, seasonal_period}),
                'seasonal': ['add', 'mul'],
            },
            default_parameters={
                'alpha': 0.3, 'beta': 0.1, 'gamma': 0.1,
                'seasonal_periods': seasonal_period, 'seasonal': 'add',
            },
            min_observations=seasonal_period * 2,
            is_seasonal=True,
        ),
        ModelDefinition(
            id='seasonal_naive',
            display_name='Seasonal Naive',
            category='Naive & Simple',
            description='Repeats the value from the same period of the last season.',
            parameter_grid={'seasonal_periods': sorted({4, 7, seasonal_period})},
            default_parameters={'seasonal_periods': seasonal_period},
            min_observations=seasonal_period,
            is_seasonal=True,
        ),
        ModelDefinition(
            id='seasonal_moving_average',
            display_name='Seasonal Moving Average',
            category='Naive & Simple',
            description='Averages the same period across recent seasons.',
            parameter_grid={
                'seasonal_periods': sorted({4, seasonal_period}),
                'window': [2, 3, 4],
            },
            default_parameters={'seasonal_periods': seasonal_period, 'window': 3},
            min_observations=seasonal_period,
            is_seasonal=True,
        ),
        ModelDefinition(
            id='linear_trend',
            display_name='Linear Trend',
            category='Trend',
            description='Ordinary least squares trend line; no tunable parameters.',
            parameter_grid={},
            default_parameters={},
            min_observations=2,
            participates_in_grid_search=False,
        ),
        ModelDefinition(
            id='arima',
            display_name='ARIMA',
            category='ARIMA',
            description='Autoregressive integrated moving average.',
            parameter_grid=[
                {'p': 1, 'd': 1, 'q': 1},
                {'p': 2, 'd': 1, 'q': 2},
                {'p': 0, 'd': 1, 'q': 1},
                {'p': 1, 'd': 0, 'q': 0},
            ],
            default_parameters={'p': 1, 'd': 1, 'q': 1},
            min_observations=10,
        ),
        ModelDefinition(
            id='sarima',
            display_name='SARIMA',
            category='ARIMA',
            description='Seasonal ARIMA.',
            parameter_grid={
                'p': [0, 1], 'd': [1], 'q': [0, 1],
                'P': [0, 1], 'D': [0, 1], 'Q': [0],
                's': [seasonal_period],
            },
            default_parameters={'p': 1, 'd': 1, 'q': 1, 'P': 1, 'D': 0, 'Q': 0, 's': seasonal_period},
            min_observations=seasonal_period * 2,
            is_seasonal=True,
        ),
    ]


class ModelRegistry:
    """
    Read-only lookup from model id to ModelDefinition.

    Usage:
        registry = ModelRegistry.default()
        grid = registry.parameter_grid('moving_average')
    """

    def __init__(self, definitions: List[ModelDefinition]):
        self._definitions: Dict[str, ModelDefinition] = {}
        for definition in definitions:
            if definition.id in self._definitions:
                raise ValidationError(f"Duplicate model id in registry: {definition.id}")
            self._definitions[definition.id] = definition

    @classmethod
    def default(cls, seasonal_period: int = DEFAULT_SEASONAL_PERIOD) -> "ModelRegistry":
        return cls(build_model_definitions(seasonal_period))

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def get_definition(self, model_id: str) -> ModelDefinition:
        try:
            return self._definitions[model_id]
        except KeyError:
            raise ModelNotFoundError(f"Unknown model type: {model_id}") from None

    def find(self, model_id: str) -> Optional[ModelDefinition]:
        return self._definitions.get(model_id)

    def list_models(self) -> List[ModelDefinition]:
        return list(self._definitions.values())

    def model_ids(self) -> List[str]:
        return list(self._definitions.keys())

    def participates_in_grid_search(self, model_id: str) -> bool:
        return self.get_definition(model_id).participates_in_grid_search

    def parameter_grid(self, model_id: str) -> ParameterGrid:
        """Return a copy of the model's grid; callers may not mutate the registry."""
        return copy.deepcopy(self.get_definition(model_id).parameter_grid)

    def default_parameters(self, model_id: str) -> Dict[str, Any]:
        return dict(self.get_definition(model_id).default_parameters)

    def data_requirements(self, seasonal_period: Optional[int] = None) -> Dict[str, Dict[str, Any]]:
        """
        Minimum observations per model.

        With `seasonal_period`, seasonal models are re-derived from the
        default table for that period; other entries are reported as is.
        """
        definitions = dict(self._definitions)
        if seasonal_period is not None:
            for d in build_model_definitions(seasonal_period):
                if d.id in definitions and d.is_seasonal:
                    definitions[d.id] = d
        return {
            d.id: {
                'min_observations': d.min_observations,
                'description': d.requirement_description,
                'is_seasonal': d.is_seasonal,
            }
            for d in definitions.values()
        }

    @log_io
    def validate_parameters(self, model_id: str, parameters: Dict[str, Any]) -> List[str]:
        """
        Check parameter values against the safe ranges for a model.

        Returns a list of human-readable issues; empty when valid.
        """
        self.get_definition(model_id)
        issues = []
        for name, (low, high, integer_only) in PARAMETER_RANGES.get(model_id, {}).items():
            if name not in parameters:
                continue
            value = parameters[name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                issues.append(f"{name}: invalid value {value!r} - must be a finite number")
                continue
            if value != value or value in (float('inf'), float('-inf')):
                issues.append(f"{name}: invalid value {value!r} - must be a finite number")
                continue
            if value < low or value > high:
                issues.append(f"{name}: value {value} is outside safe range [{low}, {high}]")
            if integer_only and float(value) != int(value):
                issues.append(f"{name}: value {value} must be an integer")
        return issues
