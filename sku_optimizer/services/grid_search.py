"""
Grid Search Optimizer.

Fits every parameter combination of every requested model on the training
prefix of a series and scores it on the validation suffix. Individual fit
failures are recorded on that combination and never abort the search.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from sku_optimizer.errors import FitError, ValidationError
from sku_optimizer.models.forecasters import ModelFitter, StatsModelsFitter
from sku_optimizer.models.metrics import AccuracyTransform, accuracy_from_mape, split_series, standard_deviation
from sku_optimizer.models.registry import ModelRegistry, ParameterGrid
from sku_optimizer.schemas import GridSummary, ModelGridResult, OptimizationRunResult
from sku_optimizer.utils.logging_utils import log_io

logger = logging.getLogger(__name__)


@dataclass
class GridProgress:
    """Snapshot passed to the progress callback after each combination."""
    percentage: int
    completed: int
    total: int
    current_model: str
    phase: str = "grid"


ProgressCallback = Callable[[GridProgress], None]


def expand_grid(grid: ParameterGrid) -> List[Dict[str, Any]]:
    """
    Expand a parameter grid into concrete combinations.

    A dict of named value lists yields its Cartesian product in key order
    (an empty dict yields one empty combination); a list is taken as
    explicit configurations.
    """
    if isinstance(grid, list):
        return [dict(config) for config in grid]
    keys = list(grid.keys())
    return [dict(zip(keys, values)) for values in itertools.product(*(grid[k] for k in keys))]


class GridSearchOptimizer:
    """
    Exhaustive parameter search over the models in a registry.

    Usage:
        optimizer = GridSearchOptimizer(ModelRegistry.default())
        run = optimizer.run_grid_search(series, ['moving_average'])
        run.best_result.parameters
    """

    def __init__(
        self,
        registry: ModelRegistry,
        fitter: Optional[ModelFitter] = None,
        validation_ratio: float = 0.2,
        accuracy_transform: AccuracyTransform = accuracy_from_mape,
    ):
        if not 0 <= validation_ratio < 1:
            raise ValidationError(f"validation_ratio must be in [0, 1), got {validation_ratio}")
        self.registry = registry
        self.fitter = fitter or StatsModelsFitter()
        self.validation_ratio = validation_ratio
        self.accuracy_transform = accuracy_transform

    def generate_parameter_combinations(
        self, model_type: str, grid: Optional[ParameterGrid] = None
    ) -> List[Dict[str, Any]]:
        if grid is None:
            grid = self.registry.parameter_grid(model_type)
        return expand_grid(grid)

    def split_data(self, series):
        return split_series(series, self.validation_ratio)

    def evaluate_model(
        self,
        model_type: str,
        parameters: Dict[str, Any],
        train: np.ndarray,
        validation: np.ndarray,
    ) -> ModelGridResult:
        """Fit and score one combination; any failure becomes success=False."""
        try:
            scored = self.fitter.fit(train, validation, model_type, parameters)
            return ModelGridResult(
                model_type=model_type,
                parameters=parameters,
                success=True,
                accuracy=self.accuracy_transform(scored['mape']),
                mape=scored['mape'],
                rmse=scored['rmse'],
                mae=scored['mae'],
            )
        except FitError as e:
            logger.debug(f"{model_type} {parameters} failed: {e}")
            return ModelGridResult(model_type=model_type, parameters=parameters, success=False, error=str(e))
        except Exception as e:
            logger.warning(f"{model_type} {parameters} raised {type(e).__name__}: {e}")
            return ModelGridResult(
                model_type=model_type,
                parameters=parameters,
                success=False,
                error=f"{type(e).__name__}: {e}",
            )

    @log_io(log_result=False)
    def run_grid_search(
        self,
        series,
        model_types: Optional[List[str]] = None,
        on_progress: Optional[ProgressCallback] = None,
        grids: Optional[Dict[str, ParameterGrid]] = None,
        phase: str = "grid",
    ) -> OptimizationRunResult:
        """
        Run the search and return every result plus the winners.

        Args:
            series: Observations in chronological order.
            model_types: Models to search; defaults to every model that
                takes part in grid search.
            on_progress: Called after every combination with a GridProgress.
            grids: Explicit grids by model id, used instead of the registry's.
            phase: Tag copied onto every GridProgress.

        Raises:
            ValidationError: empty series, or a split that leaves the
                training or validation portion empty.
            ModelNotFoundError: a model has neither an explicit nor a
                registered grid.
        """
        values = np.asarray(series, dtype=np.float64).ravel() if series is not None else np.array([])
        if values.size == 0:
            raise ValidationError("Data cannot be empty for grid search")
        if not np.isfinite(values).all():
            raise ValidationError("Series contains NaN or infinite values")

        if model_types is None:
            model_types = [d.id for d in self.registry.list_models() if d.participates_in_grid_search]
        if not model_types:
            raise ValidationError("No model types requested for grid search")

        train, validation = self.split_data(values)
        if len(train) == 0 or len(validation) == 0:
            raise ValidationError(
                f"Insufficient data for training and validation split "
                f"({len(values)} observations, validation_ratio={self.validation_ratio})"
            )

        grids = grids or {}
        combinations_by_model = {
            model_type: self.generate_parameter_combinations(model_type, grids.get(model_type))
            for model_type in model_types
        }
        total = sum(len(c) for c in combinations_by_model.values())
        logger.info(
            f"Grid search: {len(model_types)} model(s), {total} combination(s), "
            f"train={len(train)} validation={len(validation)}"
        )

        results: List[ModelGridResult] = []
        completed = 0
        for model_type, combinations in combinations_by_model.items():
            for parameters in combinations:
                results.append(self.evaluate_model(model_type, parameters, train, validation))
                completed += 1
                if on_progress is not None:
                    on_progress(GridProgress(
                        percentage=round(completed / total * 100),
                        completed=completed,
                        total=total,
                        current_model=model_type,
                        phase=phase,
                    ))

        best_per_model = self.best_per_model(results)
        best_result = self.select_best(results)
        if best_result is None:
            logger.warning("Grid search finished without a single successful fit")

        return OptimizationRunResult(
            type="grid",
            results=results,
            best_result=best_result,
            best_per_model=best_per_model,
            summary=self.generate_summary(results),
            training_data_size=len(train),
            validation_data_size=len(validation),
        )

    @staticmethod
    def select_best(results: List[ModelGridResult]) -> Optional[ModelGridResult]:
        """Lowest MAPE among successful results; the earliest wins a tie."""
        successful = [r for r in results if r.success]
        if not successful:
            return None
        return min(successful, key=lambda r: r.mape)

    def best_per_model(self, results: List[ModelGridResult]) -> Dict[str, ModelGridResult]:
        best: Dict[str, ModelGridResult] = {}
        for result in results:
            if not result.success:
                continue
            current = best.get(result.model_type)
            if current is None or result.mape < current.mape:
                best[result.model_type] = result
        return best

    @staticmethod
    def generate_summary(results: List[ModelGridResult]) -> GridSummary:
        accuracies = [r.accuracy for r in results if r.success]
        if not accuracies:
            return GridSummary(total_models=len(results))
        return GridSummary(
            total_models=len(results),
            successful_models=len(accuracies),
            average_accuracy=float(np.mean(accuracies)),
            best_accuracy=max(accuracies),
            worst_accuracy=min(accuracies),
            accuracy_std_dev=standard_deviation(accuracies),
        )

    @staticmethod
    def top_results(results: List[ModelGridResult], n: int = 5) -> List[ModelGridResult]:
        """Top n successful results by accuracy, stable for ties."""
        successful = [r for r in results if r.success]
        return sorted(successful, key=lambda r: -r.accuracy)[:n]
