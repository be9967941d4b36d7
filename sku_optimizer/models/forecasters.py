"""
Model fitting collaborator for the grid search.

Each forecaster takes a training array, a horizon and a parameter dict and
returns the point forecast for the horizon. `StatsModelsFitter` wraps them
behind the `ModelFitter` protocol the optimizer depends on, scoring every
forecast against the validation suffix. Any fitting problem surfaces as a
FitError so the optimizer can record it against that one combination.
"""

import logging
import warnings
from typing import Any, Callable, Dict, Protocol

import numpy as np
from statsmodels.tsa.arima.model import ARIMA
from statsmodels.tsa.holtwinters import ExponentialSmoothing
from statsmodels.tsa.statespace.sarimax import SARIMAX

from sku_optimizer.errors import FitError
from sku_optimizer.models.metrics import compute_metrics

logger = logging.getLogger(__name__)

Forecaster = Callable[[np.ndarray, int, Dict[str, Any]], np.ndarray]


class ModelFitter(Protocol):
    """Anything that can fit one model configuration and score it."""

    def fit(
        self,
        train: np.ndarray,
        validation: np.ndarray,
        model_type: str,
        parameters: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Return {'forecast', 'mape', 'rmse', 'mae'} or raise."""
        ...


def _require_length(train: np.ndarray, needed: int, what: str) -> None:
    if len(train) < needed:
        raise FitError(f"Need at least {needed} observations for {what} (have {len(train)})")


def _int_param(parameters: Dict[str, Any], name: str, default: int) -> int:
    value = parameters.get(name, default)
    if float(value) != int(value):
        raise FitError(f"Parameter '{name}' must be an integer, got {value}")
    return int(value)


def forecast_moving_average(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    """Recursive moving average: each step averages the last `window` values incl. prior forecasts."""
    window = _int_param(parameters, 'window', 3)
    if window < 1:
        raise FitError(f"window must be positive, got {window}")
    _require_length(train, window, f"{window}-period moving average")

    history = list(train)
    predictions = []
    for _ in range(horizon):
        value = float(np.mean(history[-window:]))
        predictions.append(value)
        history.append(value)
    return np.asarray(predictions)


def forecast_seasonal_naive(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    period = _int_param(parameters, 'seasonal_periods', 12)
    _require_length(train, period, f"seasonal naive with period {period}")
    last_season = train[-period:]
    return np.asarray([last_season[h % period] for h in range(horizon)], dtype=np.float64)


def forecast_seasonal_moving_average(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    """Average of the same seasonal position over the last `window` seasons."""
    period = _int_param(parameters, 'seasonal_periods', 12)
    window = _int_param(parameters, 'window', 3)
    _require_length(train, period, f"seasonal moving average with period {period}")

    n = len(train)
    predictions = []
    for h in range(horizon):
        position = n - period + (h % period)
        samples = [train[position - k * period] for k in range(window) if position - k * period >= 0]
        predictions.append(float(np.mean(samples)))
    return np.asarray(predictions)


def forecast_linear_trend(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    _require_length(train, 2, "linear trend")
    x = np.arange(len(train), dtype=np.float64)
    slope, intercept = np.polyfit(x, train, 1)
    future_x = np.arange(len(train), len(train) + horizon, dtype=np.float64)
    return intercept + slope * future_x


def _fit_exponential_smoothing(train: np.ndarray, horizon: int, trend, seasonal, seasonal_periods, fit_kwargs):
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        model = ExponentialSmoothing(
            train,
            trend=trend,
            seasonal=seasonal,
            seasonal_periods=seasonal_periods,
            initialization_method='estimated',
        )
        # Fixed smoothing factors; initial states are still estimated
        fitted = model.fit(optimized=True, **fit_kwargs)
        return np.asarray(fitted.forecast(steps=horizon), dtype=np.float64)


def forecast_simple_exponential_smoothing(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    _require_length(train, 2, "simple exponential smoothing")
    return _fit_exponential_smoothing(
        train, horizon, None, None, None,
        {'smoothing_level': float(parameters.get('alpha', 0.3))},
    )


def forecast_double_exponential_smoothing(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    _require_length(train, 3, "Holt linear trend")
    return _fit_exponential_smoothing(
        train, horizon, 'add', None, None,
        {
            'smoothing_level': float(parameters.get('alpha', 0.3)),
            'smoothing_trend': float(parameters.get('beta', 0.1)),
        },
    )


def forecast_holt_winters(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    period = _int_param(parameters, 'seasonal_periods', 12)
    seasonal = parameters.get('seasonal', 'add')
    _require_length(train, 2 * period, f"Holt-Winters with period {period}")
    if seasonal == 'mul' and np.any(train <= 0):
        raise FitError("Multiplicative seasonality requires strictly positive data")
    return _fit_exponential_smoothing(
        train, horizon, 'add', seasonal, period,
        {
            'smoothing_level': float(parameters.get('alpha', 0.3)),
            'smoothing_trend': float(parameters.get('beta', 0.1)),
            'smoothing_seasonal': float(parameters.get('gamma', 0.1)),
        },
    )


def forecast_arima(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    order = (
        _int_param(parameters, 'p', 1),
        _int_param(parameters, 'd', 1),
        _int_param(parameters, 'q', 1),
    )
    _require_length(train, sum(order) + 3, f"ARIMA{order}")
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        fitted = ARIMA(train, order=order).fit()
        return np.asarray(fitted.forecast(steps=horizon), dtype=np.float64)


def forecast_sarima(train: np.ndarray, horizon: int, parameters: Dict[str, Any]) -> np.ndarray:
    order = (
        _int_param(parameters, 'p', 1),
        _int_param(parameters, 'd', 1),
        _int_param(parameters, 'q', 1),
    )
    period = _int_param(parameters, 's', 12)
    seasonal_order = (
        _int_param(parameters, 'P', 1),
        _int_param(parameters, 'D', 0),
        _int_param(parameters, 'Q', 0),
        period,
    )
    _require_length(train, 2 * period, f"SARIMA with period {period}")
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        fitted = SARIMAX(
            train,
            order=order,
            seasonal_order=seasonal_order,
            enforce_stationarity=False,
            enforce_invertibility=False,
        ).fit(disp=False)
        return np.asarray(fitted.forecast(steps=horizon), dtype=np.float64)


FORECASTERS: Dict[str, Forecaster] = {
    'simple_exponential_smoothing': forecast_simple_exponential_smoothing,
    'double_exponential_smoothing': forecast_double_exponential_smoothing,
    'moving_average': forecast_moving_average,
    'holt_winters': forecast_holt_winters,
    'seasonal_naive': forecast_seasonal_naive,
    'seasonal_moving_average': forecast_seasonal_moving_average,
    'linear_trend': forecast_linear_trend,
    'arima': forecast_arima,
    'sarima': forecast_sarima,
}


class StatsModelsFitter:
    """
    Default fitter backed by numpy and statsmodels.

    Fits on the training prefix, forecasts the validation horizon and scores
    it with compute_metrics.
    """

    def __init__(self, forecasters: Dict[str, Forecaster] = None):
        self.forecasters = dict(forecasters or FORECASTERS)

    def fit(
        self,
        train: np.ndarray,
        validation: np.ndarray,
        model_type: str,
        parameters: Dict[str, Any],
    ) -> Dict[str, Any]:
        forecaster = self.forecasters.get(model_type)
        if forecaster is None:
            raise FitError(f"No forecaster registered for model type: {model_type}")

        try:
            forecast = forecaster(np.asarray(train, dtype=np.float64), len(validation), parameters)
            metrics = compute_metrics(validation, forecast)
        except FitError:
            raise
        except Exception as e:
            raise FitError(f"{model_type} fit failed: {e}") from e

        return {'forecast': forecast.tolist(), **metrics}
