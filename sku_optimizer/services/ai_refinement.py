"""
AI-assisted refinement: explore, narrow, re-search.

1. Exploration - full grid search (progress phase 'analysis', 0-50%).
2. Range analysis - per model, the top fraction of successful results by
   accuracy (at least one) defines a {min, max, avg} range per numeric
   parameter.
3. Focused refinement - a small grid spanning each range is passed to the
   grid search explicitly (progress phase 'refinement', 50-100%).

The registry is never touched; focused grids travel as an argument.
"""

import logging
import math
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Dict, List, Optional

import numpy as np

from sku_optimizer.models.metrics import standard_deviation
from sku_optimizer.schemas import (
    AIInsights,
    ModelBreakdown,
    ModelGridResult,
    OptimizationRunResult,
    ParameterRange,
)
from sku_optimizer.services.grid_search import GridProgress, GridSearchOptimizer, ProgressCallback
from sku_optimizer.utils.logging_utils import log_io

logger = logging.getLogger(__name__)

_COLLAPSED_STEP = 0.1
_MIN_CONFIDENCE = 5.0
_MAX_CONFIDENCE = 95.0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _phase_callback(on_progress: Optional[ProgressCallback], phase: str, offset: int):
    """Map a 0-100 grid pass onto one half of the overall 0-100 scale."""
    if on_progress is None:
        return None

    def report(progress: GridProgress) -> None:
        on_progress(replace(progress, percentage=offset + progress.percentage // 2, phase=phase))

    return report


class AIRefinementOptimizer:
    """Two-pass optimizer built on top of a GridSearchOptimizer."""

    def __init__(
        self,
        grid_optimizer: GridSearchOptimizer,
        top_fraction: float = 0.2,
        focused_points: int = 5,
    ):
        if not 0 < top_fraction <= 1:
            raise ValueError(f"top_fraction must be in (0, 1], got {top_fraction}")
        if focused_points < 2:
            raise ValueError(f"focused_points must be at least 2, got {focused_points}")
        self.grid_optimizer = grid_optimizer
        self.top_fraction = top_fraction
        self.focused_points = focused_points

    @log_io(log_result=False)
    def run_ai_optimization(
        self,
        series,
        model_types: Optional[List[str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OptimizationRunResult:
        exploration = self.grid_optimizer.run_grid_search(
            series,
            model_types,
            on_progress=_phase_callback(on_progress, "analysis", 0),
            phase="analysis",
        )

        promising_ranges = self.analyze_promising_ranges(exploration.results)
        focused_grids = self.build_focused_grids(exploration.results)
        logger.info(f"Focused grids built for {len(focused_grids)} model(s): {list(focused_grids)}")

        # Models with no successful exploration fit have nothing to refine;
        # their exploration failures are carried into the final result
        carried = [r for r in exploration.results if r.model_type not in focused_grids]

        if focused_grids:
            focused = self.grid_optimizer.run_grid_search(
                series,
                list(focused_grids),
                on_progress=_phase_callback(on_progress, "refinement", 50),
                grids=focused_grids,
                phase="refinement",
            )
            results = focused.results + carried
            training_size, validation_size = focused.training_data_size, focused.validation_data_size
        else:
            logger.warning("No successful exploration results; skipping refinement pass")
            results = carried
            training_size, validation_size = exploration.training_data_size, exploration.validation_data_size

        if on_progress is not None:
            on_progress(GridProgress(
                percentage=100,
                completed=len(results),
                total=len(results),
                current_model=results[-1].model_type if results else "",
                phase="refinement",
            ))

        return OptimizationRunResult(
            type="ai",
            results=results,
            best_result=self.grid_optimizer.select_best(results),
            best_per_model=self.grid_optimizer.best_per_model(results),
            summary=self.grid_optimizer.generate_summary(results),
            training_data_size=training_size,
            validation_data_size=validation_size,
            top_results=self.grid_optimizer.top_results(results, 5),
            model_breakdown=self.model_breakdown(results),
            ai_insights=AIInsights(
                promising_ranges=promising_ranges,
                confidence=self.calculate_confidence(results),
            ),
        )

    def elite_results(self, results: List[ModelGridResult]) -> Dict[str, List[ModelGridResult]]:
        """Top `top_fraction` of successful results per model, by accuracy descending."""
        groups: Dict[str, List[ModelGridResult]] = OrderedDict()
        for result in results:
            if result.success:
                groups.setdefault(result.model_type, []).append(result)

        elites = OrderedDict()
        for model_type, model_results in groups.items():
            ranked = sorted(model_results, key=lambda r: -r.accuracy)
            keep = max(1, math.floor(len(ranked) * self.top_fraction))
            elites[model_type] = ranked[:keep]
        return elites

    def analyze_promising_ranges(self, results: List[ModelGridResult]) -> Dict[str, Dict[str, ParameterRange]]:
        ranges: Dict[str, Dict[str, ParameterRange]] = OrderedDict()
        for model_type, elite in self.elite_results(results).items():
            param_ranges = OrderedDict()
            for name in elite[0].parameters:
                values = [r.parameters.get(name) for r in elite]
                if not all(_is_number(v) for v in values):
                    continue
                param_ranges[name] = ParameterRange(
                    min=min(values), max=max(values), avg=float(np.mean(values))
                )
            ranges[model_type] = param_ranges
        return ranges

    def focused_values(self, low: float, high: float, integer: bool = False) -> List[Any]:
        """
        Evenly spaced points from low to high, clipped to [low, high].

        When the range collapses to a point the fixed 0.1 step would walk
        past `high`; clipping folds those points back onto it.
        """
        steps = self.focused_points - 1
        step = (high - low) / steps or _COLLAPSED_STEP
        raw = [low + i * step for i in range(steps)] + [high]

        values = []
        for value in raw:
            value = min(max(value, low), high)
            value = int(round(value)) if integer else round(value, 10)
            if value not in values:
                values.append(value)
        return values

    def build_focused_grids(self, results: List[ModelGridResult]) -> Dict[str, Dict[str, List[Any]]]:
        """
        Focused grid per model with at least one successful exploration result.

        Numeric parameters span their promising range; other parameters
        keep the distinct values seen among the elite results.
        """
        grids: Dict[str, Dict[str, List[Any]]] = OrderedDict()
        for model_type, elite in self.elite_results(results).items():
            grid = OrderedDict()
            for name in elite[0].parameters:
                values = [r.parameters.get(name) for r in elite]
                if all(_is_number(v) for v in values):
                    integer = all(isinstance(v, int) for v in values)
                    grid[name] = self.focused_values(min(values), max(values), integer=integer)
                else:
                    distinct = []
                    for v in values:
                        if v not in distinct:
                            distinct.append(v)
                    grid[name] = distinct
            grids[model_type] = grid
        return grids

    @staticmethod
    def calculate_confidence(results: List[ModelGridResult]) -> float:
        """
        clamp(5, 95, 100 * (0.6 * consistency + 0.4 * mean_accuracy / 100))
        where consistency = 1 - std / mean over successful accuracies.
        """
        accuracies = [r.accuracy for r in results if r.success]
        if not accuracies:
            return 0.0
        mean_accuracy = float(np.mean(accuracies))
        if mean_accuracy == 0:
            consistency = 0.0
        else:
            consistency = 1 - standard_deviation(accuracies) / mean_accuracy
        raw = (consistency * 0.6 + (mean_accuracy / 100) * 0.4) * 100
        return float(min(_MAX_CONFIDENCE, max(_MIN_CONFIDENCE, raw)))

    @staticmethod
    def model_breakdown(results: List[ModelGridResult]) -> Dict[str, ModelBreakdown]:
        accuracies: Dict[str, List[float]] = OrderedDict()
        for result in results:
            if result.success:
                accuracies.setdefault(result.model_type, []).append(result.accuracy)
        return {
            model_type: ModelBreakdown(
                count=len(values),
                best_accuracy=max(values),
                avg_accuracy=float(np.mean(values)),
            )
            for model_type, values in accuracies.items()
        }
