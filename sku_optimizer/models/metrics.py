"""
Forecast accuracy metrics used to score every grid combination.

MAPE is expressed in percent (0-100+), RMSE and MAE in series units.
Accuracy is a monotonically decreasing transform of MAPE.
"""

import logging
from typing import Callable, Dict, Tuple

import numpy as np
from sklearn.metrics import mean_absolute_error

logger = logging.getLogger(__name__)

_MAX_REASONABLE_MAPE = 1000.0  # Above this the fit is treated as degenerate
_ZERO_EPSILON = 1e-10


def safe_smape(y_true: np.ndarray, y_pred: np.ndarray, epsilon: float = _ZERO_EPSILON) -> float:
    """Symmetric MAPE in percent, defined even when actuals are zero."""
    denominator = (np.abs(y_true) + np.abs(y_pred)) / 2.0
    mask = denominator > epsilon
    if not mask.any():
        return 0.0
    return float(np.mean(np.abs(y_true[mask] - y_pred[mask]) / denominator[mask]) * 100)


def safe_mape(y_true: np.ndarray, y_pred: np.ndarray, epsilon: float = _ZERO_EPSILON) -> float:
    """
    MAPE in percent over non-zero actuals.

    Zero actuals are excluded; if every actual is zero, SMAPE is used so the
    metric stays on a percentage scale.
    """
    non_zero_mask = np.abs(y_true) > epsilon
    if not non_zero_mask.any():
        logger.warning("MAPE undefined (all actuals zero) - falling back to SMAPE")
        return safe_smape(y_true, y_pred, epsilon)

    ape = np.abs((y_true[non_zero_mask] - y_pred[non_zero_mask]) / y_true[non_zero_mask]) * 100
    excluded = len(y_true) - int(non_zero_mask.sum())
    if excluded:
        logger.debug(f"MAPE: excluded {excluded}/{len(y_true)} zero-value points")
    return float(np.mean(ape))


def accuracy_from_mape(mape: float) -> float:
    """Default accuracy transform: 100 - MAPE (percent), floored at 0."""
    return max(0.0, 100.0 - float(mape))


AccuracyTransform = Callable[[float], float]


def compute_metrics(y_true, y_pred) -> Dict[str, float]:
    """
    Compute MAPE, RMSE and MAE for one validation horizon.

    Accuracy is not part of the fitter's output; the optimizer derives it
    from MAPE with its AccuracyTransform.

    Raises:
        ValueError: if the arrays are empty, differ in length, or the
            forecast contains NaN/Inf (the fit is unusable).
    """
    y_true = np.asarray(y_true, dtype=np.float64).ravel()
    y_pred = np.asarray(y_pred, dtype=np.float64).ravel()

    if len(y_true) == 0:
        raise ValueError("Cannot score an empty validation horizon")
    if len(y_true) != len(y_pred):
        raise ValueError(
            f"Forecast length {len(y_pred)} does not match validation length {len(y_true)}"
        )
    if not np.isfinite(y_pred).all():
        raise ValueError("Forecast contains NaN or infinite values")

    diff = y_true - y_pred
    rmse = float(np.sqrt(np.mean(diff * diff)))
    mae = float(mean_absolute_error(y_true, y_pred))
    mape = safe_mape(y_true, y_pred)

    if mape > _MAX_REASONABLE_MAPE:
        logger.warning(f"compute_metrics: MAPE={mape:.2f}% exceeds {_MAX_REASONABLE_MAPE}%, capping")
        mape = _MAX_REASONABLE_MAPE

    return {
        "mape": mape,
        "rmse": rmse,
        "mae": mae,
    }


def split_series(series, validation_ratio: float = 0.2) -> Tuple[np.ndarray, np.ndarray]:
    """Chronological split: training prefix, validation suffix."""
    values = np.asarray(series, dtype=np.float64).ravel()
    split_index = int(np.floor(len(values) * (1 - validation_ratio)))
    return values[:split_index], values[split_index:]


def standard_deviation(values) -> float:
    """Population standard deviation (ddof=0)."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return 0.0
    return float(np.std(arr))
