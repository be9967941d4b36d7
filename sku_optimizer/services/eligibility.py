"""
Eligibility filtering: does a SKU have enough history for a model?

A model needs `min_observations` points in its *training* portion. Since
the validation suffix is carved off the end, the total series must hold
ceil(min_observations / (1 - validation_ratio)) points.
"""

import logging
import math
from typing import Dict, List, Tuple

from sku_optimizer.errors import EligibilityError, ValidationError
from sku_optimizer.models.registry import ModelRegistry

logger = logging.getLogger(__name__)


def _check_ratio(validation_ratio: float) -> None:
    if not 0 <= validation_ratio < 1:
        raise ValidationError(f"validation_ratio must be in [0, 1), got {validation_ratio}")


def required_total(min_observations: int, validation_ratio: float = 0.2) -> int:
    _check_ratio(validation_ratio)
    # Round before ceil so 8 / 0.8 stays 10 instead of 10.000000000000002
    return math.ceil(round(min_observations / (1 - validation_ratio), 9))


def is_eligible(observations: int, min_observations: int, validation_ratio: float = 0.2) -> bool:
    return observations >= required_total(min_observations, validation_ratio)


def filter_eligible_models(
    observations: int,
    model_ids: List[str],
    registry: ModelRegistry,
    validation_ratio: float = 0.2,
    sku: str = "",
) -> Tuple[List[str], List[Dict]]:
    """
    Split model ids into those the SKU can support and those it can't.

    Each model goes through assert_eligible; an EligibilityError is a
    planned skip and lands in the ineligible list. Models missing from the
    registry are passed through as eligible; the worker will fail them with
    a clear error if they really don't exist.

    Returns:
        (eligible_ids, ineligible) where each ineligible entry is
        {'model_id', 'required', 'observations'}
    """
    _check_ratio(validation_ratio)
    eligible, ineligible = [], []
    for model_id in model_ids:
        try:
            assert_eligible(sku, observations, model_id, registry, validation_ratio)
        except EligibilityError as e:
            logger.debug(f"Filtered: {e}")
            ineligible.append({'model_id': e.model_id, 'required': e.required, 'observations': e.observations})
            continue
        eligible.append(model_id)
    return eligible, ineligible


def assert_eligible(
    sku: str,
    observations: int,
    model_id: str,
    registry: ModelRegistry,
    validation_ratio: float = 0.2,
) -> None:
    """Raise EligibilityError when the SKU's history is too short for the model."""
    definition = registry.find(model_id)
    if definition is None:
        logger.debug(f"Model {model_id} not in registry; keeping it")
        return
    required = required_total(definition.min_observations, validation_ratio)
    if observations < required:
        raise EligibilityError(model_id, sku, observations, required)
