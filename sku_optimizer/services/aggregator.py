"""
Best-Result Aggregator.

Scores every successful result across completed jobs with a weighted,
max-normalized composite of MAPE, RMSE, MAE and accuracy, picks a winner
per (model, method, SKU, batch-or-dataset) group and fills the gaps so
callers always get a complete model x method x SKU matrix.
"""

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sku_optimizer.errors import AggregationError
from sku_optimizer.models.registry import ModelDefinition, ModelRegistry
from sku_optimizer.schemas import OPTIMIZATION_METHODS, BestResult, BestResultEntry, CompositeScoreWeights
from sku_optimizer.services.job_state_store import OptimizationJob
from sku_optimizer.utils.logging_utils import log_io

logger = logging.getLogger(__name__)

NO_RESULT_REASON = "No result available for this model/method (ineligible, failed, or not run)"
DEFAULT_PARAMETERS_NOTE = "This model uses default parameters optimized for general use."

ERROR_METRICS = ('mape', 'rmse', 'mae')


def safe_metric(value: Any, fallback: Optional[float]) -> Optional[float]:
    """Return value as a finite float, or `fallback` when missing or invalid."""
    if value is None or isinstance(value, bool) or value == "":
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return number


def normalization_maxima(results: Sequence[Dict[str, Any]]) -> Dict[str, float]:
    """Largest observed value per error metric; 1 when nothing positive was observed."""
    maxima = {}
    for metric in ERROR_METRICS:
        observed = [safe_metric(r.get(metric), 0.0) for r in results]
        largest = max(observed, default=0.0)
        maxima[metric] = largest if largest > 0 else 1.0
    return maxima


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def score_result(
    result: Dict[str, Any],
    maxima: Dict[str, float],
    weights: CompositeScoreWeights,
) -> Tuple[float, Dict[str, float]]:
    """
    Composite score of one result against its group's maxima.

    Missing or invalid error metrics count as the group maximum, a missing
    accuracy as 0, so a broken result scores worst rather than vanishing.
    """
    normalized = {
        metric: _clamp01(1 - safe_metric(result.get(metric), maxima[metric]) / maxima[metric])
        for metric in ERROR_METRICS
    }
    normalized['accuracy'] = _clamp01(safe_metric(result.get('accuracy'), 0.0) / 100)
    score = (
        weights.mape * normalized['mape']
        + weights.rmse * normalized['rmse']
        + weights.mae * normalized['mae']
        + weights.accuracy * normalized['accuracy']
    )
    return score, normalized


def score_results(
    results: Sequence[Dict[str, Any]],
    weights: CompositeScoreWeights,
) -> List[Tuple[float, Dict[str, float]]]:
    maxima = normalization_maxima(results)
    return [score_result(r, maxima, weights) for r in results]


def job_results(job: OptimizationJob) -> List[Dict[str, Any]]:
    """Per-combination result dicts stored on a completed job."""
    result = job.result
    if not isinstance(result, dict):
        raise AggregationError(f"Job {job.job_id} has no result payload")
    entries = result.get('results')
    if not isinstance(entries, list):
        raise AggregationError(f"Job {job.job_id} result has no 'results' list")
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get('model_type'):
            raise AggregationError(f"Job {job.job_id} contains a result without model_type")
    return entries


@dataclass
class _Group:
    model_type: str
    method: str
    sku: str
    batch_id: Optional[str]
    dataset_ref: str
    candidates: List[Dict[str, Any]] = field(default_factory=list)


def _combo_key(job: OptimizationJob) -> Tuple[str, str]:
    return job.sku, job.batch_id or job.dataset_ref


class BestResultAggregator:
    """
    Usage:
        aggregator = BestResultAggregator(ModelRegistry.default())
        matrix = aggregator.extract_best_results(store.list_completed_jobs(job_filter))
    """

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def collect_groups(self, jobs: Sequence[OptimizationJob], method: Optional[str] = None) -> "OrderedDict[tuple, _Group]":
        groups: "OrderedDict[tuple, _Group]" = OrderedDict()
        for job in jobs:
            if method is not None and job.method != method:
                continue
            try:
                entries = job_results(job)
            except AggregationError as e:
                logger.warning(f"Skipping job {job.job_id} during aggregation: {e}")
                continue

            sku, batch_or_dataset = _combo_key(job)
            for entry in entries:
                if not entry.get('success'):
                    continue
                key = (entry['model_type'], job.method, sku, batch_or_dataset)
                group = groups.get(key)
                if group is None:
                    group = groups[key] = _Group(
                        model_type=entry['model_type'],
                        method=job.method,
                        sku=sku,
                        batch_id=job.batch_id,
                        dataset_ref=job.dataset_ref,
                    )
                group.candidates.append({**entry, '_job': job})
        return groups

    def select_winner(self, group: _Group, weights: CompositeScoreWeights) -> BestResult:
        """Highest composite score in the group; the first seen wins a tie."""
        if not group.candidates:
            raise AggregationError(f"Group {group.model_type}/{group.method}/{group.sku} is empty")
        for candidate in group.candidates:
            if not isinstance(candidate.get('parameters', {}), dict):
                raise AggregationError(
                    f"Job {candidate['_job'].job_id}: parameters for {group.model_type} are not a mapping"
                )

        scored = score_results(group.candidates, weights)
        best_index = 0
        for i, (score, _) in enumerate(scored):
            if score > scored[best_index][0]:
                best_index = i

        winner = group.candidates[best_index]
        score, normalized = scored[best_index]
        job: OptimizationJob = winner['_job']
        return BestResult(
            accuracy=safe_metric(winner.get('accuracy'), None),
            parameters=winner.get('parameters') or {},
            mape=safe_metric(winner.get('mape'), None),
            rmse=safe_metric(winner.get('rmse'), None),
            mae=safe_metric(winner.get('mae'), None),
            normalized=normalized,
            composite_score=score,
            job_id=job.job_id,
            sku=group.sku,
            batch_id=job.batch_id,
            dataset_ref=job.dataset_ref,
            created_at=job.created_at.isoformat() if job.created_at else None,
            completed_at=job.completed_at.isoformat() if job.completed_at else None,
        )

    def _entry(self, model_type: str, method: str, sku: str, batch_id, dataset_ref, best: BestResult) -> BestResultEntry:
        definition: Optional[ModelDefinition] = self.registry.find(model_type)
        return BestResultEntry(
            model_type=model_type,
            display_name=definition.display_name if definition else model_type,
            category=definition.category if definition else "Unknown",
            description=definition.description if definition else "",
            is_seasonal=definition.is_seasonal if definition else False,
            method=method,
            sku=sku,
            batch_id=batch_id,
            dataset_ref=dataset_ref,
            best_result=best,
        )

    @log_io(log_result=False)
    def extract_best_results(
        self,
        jobs: Sequence[OptimizationJob],
        weights: Optional[CompositeScoreWeights] = None,
        method: Optional[str] = None,
    ) -> List[BestResultEntry]:
        """
        Winner per (model, method, SKU, batch-or-dataset), gap-filled.

        For every (SKU, batch-or-dataset) combination in `jobs`, every
        registered model and every method (both, or only `method`) gets
        exactly one entry: the scored winner if one exists, else a default
        baseline for models outside grid search, else an 'ineligible'
        placeholder.
        """
        weights = weights or CompositeScoreWeights()
        methods = [method] if method is not None else list(OPTIMIZATION_METHODS)

        winners: "OrderedDict[tuple, BestResultEntry]" = OrderedDict()
        for key, group in self.collect_groups(jobs, method).items():
            try:
                best = self.select_winner(group, weights)
            except AggregationError as e:
                logger.warning(f"Skipping malformed group {key}: {e}")
                continue
            winners[key] = self._entry(
                group.model_type, group.method, group.sku, group.batch_id, group.dataset_ref, best
            )

        combos: "OrderedDict[tuple, OptimizationJob]" = OrderedDict()
        for job in jobs:
            if method is None or job.method == method:
                combos.setdefault(_combo_key(job), job)

        entries: List[BestResultEntry] = []
        emitted = set()
        for (sku, batch_or_dataset), job in combos.items():
            for definition in self.registry.list_models():
                for m in methods:
                    key = (definition.id, m, sku, batch_or_dataset)
                    emitted.add(key)
                    if key in winners:
                        entries.append(winners[key])
                    elif not definition.participates_in_grid_search:
                        entries.append(self._entry(
                            definition.id, m, sku, job.batch_id, job.dataset_ref,
                            BestResult(
                                parameters=self.registry.default_parameters(definition.id),
                                sku=sku,
                                batch_id=job.batch_id,
                                dataset_ref=job.dataset_ref,
                                is_default=True,
                                note=DEFAULT_PARAMETERS_NOTE,
                            ),
                        ))
                    else:
                        entries.append(self._entry(
                            definition.id, m, sku, job.batch_id, job.dataset_ref,
                            BestResult(
                                sku=sku,
                                batch_id=job.batch_id,
                                dataset_ref=job.dataset_ref,
                                status="ineligible",
                                reason=NO_RESULT_REASON,
                            ),
                        ))

        # Winners for models no longer in the registry are still reported
        entries.extend(entry for key, entry in winners.items() if key not in emitted)

        logger.info(
            f"Aggregated {len(jobs)} job(s) into {len(entries)} entries "
            f"({len(winners)} scored winner(s))"
        )
        return entries
