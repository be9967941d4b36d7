"""
Optimization Service - the engine's entry point for callers.

Creates jobs (with eligibility filtering and grid opt-out skipping),
reports queue status, serves the best-result matrix and summary, exports
flat result reports and performs reset/clear/cancel housekeeping.
"""

import json
import logging
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from sku_optimizer.config import OptimizerConfig, priority_from_reason
from sku_optimizer.errors import AggregationError, ValidationError
from sku_optimizer.models.registry import ModelRegistry
from sku_optimizer.schemas import (
    OPTIMIZATION_METHODS,
    BestResultEntry,
    CategoryBreakdown,
    CompatibilityReport,
    CompositeScoreWeights,
    JobCreateRequest,
    JobCreationSummary,
    JobStatusSummary,
    ModelBreakdown,
    ModelCompatibility,
    ResultsSummary,
)
from sku_optimizer.services.aggregator import BestResultAggregator, job_results, safe_metric, score_results
from sku_optimizer.services.eligibility import filter_eligible_models, required_total
from sku_optimizer.services.job_state_store import (
    TERMINAL_STATUSES,
    JobFilter,
    JobStateStore,
    JobStatus,
    SQLiteJobStateStore,
)
from sku_optimizer.services.series_loader import DataFrameSeriesLoader
from sku_optimizer.utils.logging_utils import log_io

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    'Dataset Name',
    'Job ID', 'SKU', 'Model ID', 'Model Display Name', 'Model Category', 'Model Description',
    'Is Seasonal', 'Method', 'Reason', 'Batch ID',
    'Created At', 'Completed At', 'Duration (seconds)',
    'Parameters', 'Accuracy (%)', 'MAPE', 'RMSE', 'MAE',
    'Normalized Accuracy', 'Normalized MAPE', 'Normalized RMSE', 'Normalized MAE',
    'Composite Score', 'MAPE Weight', 'RMSE Weight', 'MAE Weight', 'Accuracy Weight',
    'Success', 'Error', 'Training Data Size', 'Validation Data Size', 'Is Best Result',
]


def _validate_method(method: Optional[str]) -> Optional[str]:
    """'all' and None mean no filter."""
    if method in (None, 'all'):
        return None
    if method not in OPTIMIZATION_METHODS:
        raise ValidationError(f'Method must be "grid", "ai", or "all", got {method!r}')
    return method


class OptimizationService:
    """
    Facade over the job store, registry and aggregator.

    Usage:
        service = OptimizationService(SQLiteJobStateStore("jobs.db"), ModelRegistry.default())
        summary = service.create_jobs(JobCreateRequest(dataset_ref="sales", skus=["A"],
                                                       models=["moving_average"], series={"A": values}))
        service.get_status()
    """

    def __init__(
        self,
        store: JobStateStore,
        registry: ModelRegistry,
        series_source: Optional[DataFrameSeriesLoader] = None,
        default_weights: Optional[CompositeScoreWeights] = None,
    ):
        self.store = store
        self.registry = registry
        self.series_source = series_source
        self.default_weights = default_weights or CompositeScoreWeights()
        self.aggregator = BestResultAggregator(registry)

    @classmethod
    def from_config(cls, config: OptimizerConfig, series_source: Optional[DataFrameSeriesLoader] = None):
        return cls(
            SQLiteJobStateStore(config.db_path),
            ModelRegistry.default(config.seasonal_period),
            series_source=series_source,
        )

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def _validate_request(self, request: JobCreateRequest) -> None:
        if not request.dataset_ref or not request.dataset_ref.strip():
            raise ValidationError("dataset_ref is required")
        if not request.skus:
            raise ValidationError("At least one SKU is required")
        if any(not str(sku).strip() for sku in request.skus):
            raise ValidationError("SKU identifiers cannot be blank")
        if not request.models:
            raise ValidationError("At least one model is required")
        if request.method not in OPTIMIZATION_METHODS:
            raise ValidationError(f"Unknown optimization method: {request.method}")
        if not 0 <= request.validation_ratio < 1:
            raise ValidationError(f"validation_ratio must be in [0, 1), got {request.validation_ratio}")

    def _observation_counts(self, request: JobCreateRequest) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        if self.series_source is not None and request.series is None and request.observation_counts is None:
            counts.update(self.series_source.observation_counts(request.dataset_ref))
        if request.observation_counts:
            counts.update({str(k): int(v) for k, v in request.observation_counts.items()})
        if request.series:
            counts.update({str(k): len(v) for k, v in request.series.items()})

        missing = [sku for sku in request.skus if str(sku) not in counts]
        if missing:
            raise ValidationError(f"No observations available for SKU(s): {missing}")
        return counts

    @log_io
    def create_jobs(self, request: JobCreateRequest) -> JobCreationSummary:
        """
        Queue one job per eligible (SKU, model) pair.

        Pairs failing eligibility are counted as filtered; models outside
        grid search are counted as skipped for grid requests. Neither is
        ever enqueued.
        """
        self._validate_request(request)
        counts = self._observation_counts(request)
        priority = priority_from_reason(request.reason)
        batch_id = request.batch_id or f"batch-{uuid.uuid4().hex[:12]}"

        created, skipped, filtered = [], 0, 0
        for sku in request.skus:
            sku = str(sku)
            observations = counts[sku]
            eligible, ineligible = filter_eligible_models(
                observations, request.models, self.registry, request.validation_ratio, sku=sku
            )
            for item in ineligible:
                logger.info(
                    f"Filtered out {item['model_id']} for SKU {sku}: "
                    f"{observations} data points, requires {item['required']}"
                )
            filtered += len(ineligible)

            for model_id in eligible:
                definition = self.registry.find(model_id)
                if request.method == 'grid' and definition is not None and not definition.participates_in_grid_search:
                    logger.info(f"Skipped job for SKU {sku}, model {model_id} (model opted out of grid search)")
                    skipped += 1
                    continue

                payload: Dict[str, Any] = {
                    'model_types': [model_id],
                    'validation_ratio': request.validation_ratio,
                    'dataset_name': request.dataset_ref,
                }
                if request.series and sku in request.series:
                    payload['data'] = list(request.series[sku])

                created.append(self.store.create_job(
                    dataset_ref=request.dataset_ref,
                    sku=sku,
                    model_id=model_id,
                    method=request.method,
                    payload=payload,
                    reason=request.reason,
                    batch_id=batch_id,
                    priority=priority,
                ))

        logger.info(
            f"Created {len(created)} job(s) for {len(request.skus)} SKU(s) x {len(request.models)} model(s) "
            f"[{request.method}] - skipped {skipped}, filtered {filtered}, priority {priority}"
        )
        return JobCreationSummary(
            message=f"Successfully created {len(created)} jobs",
            jobs_created=len(created),
            jobs_skipped=skipped,
            jobs_filtered=filtered,
            skus_processed=len(request.skus),
            models_per_sku=len(request.models),
            priority=priority,
            batch_id=batch_id,
            job_ids=created,
        )

    def check_compatibility(
        self,
        model_types: List[str],
        data_length: int,
        validation_ratio: float = 0.2,
    ) -> CompatibilityReport:
        if data_length < 0:
            raise ValidationError("data_length must be a non-negative number")
        report = CompatibilityReport(data_length=data_length, validation_ratio=validation_ratio)
        eligible, ineligible = filter_eligible_models(data_length, model_types, self.registry, validation_ratio)
        for model_id in eligible:
            definition = self.registry.find(model_id)
            report.compatible_models.append(ModelCompatibility(
                model_type=model_id,
                min_observations=definition.min_observations if definition else None,
                required_total=required_total(definition.min_observations, validation_ratio) if definition else None,
            ))
        for item in ineligible:
            report.incompatible_models.append(ModelCompatibility(
                model_type=item['model_id'],
                min_observations=self.registry.get_definition(item['model_id']).min_observations,
                required_total=item['required'],
                reason=f"Requires at least {item['required']} observations (you have {data_length})",
            ))
        return report

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @log_io
    def get_status(self, job_filter: Optional[JobFilter] = None) -> JobStatusSummary:
        counts = self.store.count_by_status(job_filter)
        total = sum(counts.values())
        finished = sum(counts[s.value] for s in TERMINAL_STATUSES)
        return JobStatusSummary(
            total=total,
            pending=counts[JobStatus.PENDING.value],
            running=counts[JobStatus.RUNNING.value],
            completed=counts[JobStatus.COMPLETED.value],
            failed=counts[JobStatus.FAILED.value],
            cancelled=counts[JobStatus.CANCELLED.value],
            skipped=counts[JobStatus.SKIPPED.value],
            is_optimizing=counts[JobStatus.PENDING.value] > 0 or counts[JobStatus.RUNNING.value] > 0,
            progress=round(finished / total * 100) if total else 0,
        )

    def get_job(self, job_id: int):
        return self.store.get(job_id)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _completed_jobs(self, dataset_ref=None, method=None, sku=None, batch_id=None):
        return self.store.list_completed_jobs(
            JobFilter(dataset_ref=dataset_ref, sku=sku, method=method, batch_id=batch_id)
        )

    @log_io(log_result=False)
    def get_best_results(
        self,
        dataset_ref: Optional[str] = None,
        method: Optional[str] = None,
        sku: Optional[str] = None,
        weights: Optional[CompositeScoreWeights] = None,
        batch_id: Optional[str] = None,
    ) -> List[BestResultEntry]:
        method = _validate_method(method)
        jobs = self._completed_jobs(dataset_ref, method, sku, batch_id)
        return self.aggregator.extract_best_results(jobs, weights or self.default_weights, method)

    @log_io(log_result=False)
    def get_results_summary(
        self,
        dataset_ref: Optional[str] = None,
        method: Optional[str] = None,
        weights: Optional[CompositeScoreWeights] = None,
    ) -> ResultsSummary:
        method = _validate_method(method)
        jobs = self._completed_jobs(dataset_ref, method)
        summary = ResultsSummary(
            total_jobs=len(jobs),
            method_breakdown={m: 0 for m in OPTIMIZATION_METHODS},
            best_results_per_model_method=self.aggregator.extract_best_results(
                jobs, weights or self.default_weights, method
            ),
        )

        accuracies: Dict[str, List[float]] = OrderedDict()
        categories: Dict[str, CategoryBreakdown] = OrderedDict()
        category_accuracy: Dict[str, List[float]] = {}
        totals = {'accuracy': [], 'mape': [], 'rmse': [], 'mae': []}
        best_results = []

        for job in jobs:
            summary.method_breakdown[job.method] = summary.method_breakdown.get(job.method, 0) + 1
            try:
                entries = job_results(job)
            except AggregationError as e:
                logger.warning(f"Skipping job {job.job_id} in results summary: {e}")
                continue

            for entry in entries:
                summary.total_results += 1
                definition = self.registry.find(entry['model_type'])
                category = definition.category if definition else "Unknown"
                seasonal_key = 'seasonal' if definition is not None and definition.is_seasonal else 'non_seasonal'
                summary.seasonal_vs_non_seasonal[seasonal_key] += 1
                stats = categories.setdefault(category, CategoryBreakdown())
                stats.count += 1

                accuracy = safe_metric(entry.get('accuracy'), None)
                if not entry.get('success') or accuracy is None:
                    continue
                summary.successful_results += 1
                stats.successful_count += 1
                category_accuracy.setdefault(category, []).append(accuracy)
                accuracies.setdefault(entry['model_type'], []).append(accuracy)
                for metric in totals:
                    value = safe_metric(entry.get(metric), None)
                    if value is not None:
                        totals[metric].append(value)
                if accuracy > 0:
                    best_results.append({
                        'model_type': entry['model_type'],
                        'model_display_name': definition.display_name if definition else entry['model_type'],
                        'model_category': category,
                        'accuracy': accuracy,
                        'parameters': entry.get('parameters') or {},
                        'job_id': job.job_id,
                        'sku': job.sku,
                        'method': job.method,
                    })

        summary.model_breakdown = {
            model_type: ModelBreakdown(
                count=len(values), best_accuracy=max(values), avg_accuracy=float(np.mean(values))
            )
            for model_type, values in accuracies.items()
        }
        for category, values in category_accuracy.items():
            categories[category].average_accuracy = float(np.mean(values))
        summary.category_breakdown = dict(categories)
        summary.average_metrics = {
            metric: float(np.mean(values)) if values else 0.0 for metric, values in totals.items()
        }
        summary.best_results = sorted(best_results, key=lambda r: -r['accuracy'])[:10]
        return summary

    @log_io(log_result=False)
    def export_results(
        self,
        dataset_ref: Optional[str] = None,
        method: Optional[str] = None,
        weights: Optional[CompositeScoreWeights] = None,
        best_only: bool = False,
        sku: Optional[str] = None,
    ) -> pd.DataFrame:
        """
        Flat report with one row per (job, model result).

        Metrics are normalized within each job and every row carries the
        weights used; `Is Best Result` marks the top composite score of
        each job.
        """
        method = _validate_method(method)
        weights = weights or self.default_weights
        rows = []
        for job in self._completed_jobs(dataset_ref, method, sku):
            try:
                entries = job_results(job)
            except AggregationError as e:
                logger.warning(f"Skipping job {job.job_id} in export: {e}")
                continue
            if not entries:
                continue

            scored = score_results(entries, weights)
            best_index = 0
            for i, (score, _) in enumerate(scored):
                if score > scored[best_index][0]:
                    best_index = i

            duration = None
            if job.completed_at and job.created_at:
                duration = round((job.completed_at - job.created_at).total_seconds())

            for i, (entry, (score, normalized)) in enumerate(zip(entries, scored)):
                definition = self.registry.find(entry['model_type'])
                rows.append({
                    'Dataset Name': job.payload.get('dataset_name') or job.dataset_ref,
                    'Job ID': job.job_id,
                    'SKU': job.sku,
                    'Model ID': job.model_id,
                    'Model Display Name': definition.display_name if definition else entry['model_type'],
                    'Model Category': definition.category if definition else 'Unknown',
                    'Model Description': definition.description if definition else '',
                    'Is Seasonal': 'Yes' if definition is not None and definition.is_seasonal else 'No',
                    'Method': job.method,
                    'Reason': job.reason,
                    'Batch ID': job.batch_id,
                    'Created At': job.created_at.isoformat() if job.created_at else None,
                    'Completed At': job.completed_at.isoformat() if job.completed_at else None,
                    'Duration (seconds)': duration,
                    'Parameters': _format_parameters(entry.get('parameters')),
                    'Accuracy (%)': entry.get('accuracy'),
                    'MAPE': entry.get('mape'),
                    'RMSE': entry.get('rmse'),
                    'MAE': entry.get('mae'),
                    'Normalized Accuracy': round(normalized['accuracy'], 4),
                    'Normalized MAPE': round(normalized['mape'], 4),
                    'Normalized RMSE': round(normalized['rmse'], 4),
                    'Normalized MAE': round(normalized['mae'], 4),
                    'Composite Score': round(score, 4),
                    'MAPE Weight': weights.mape,
                    'RMSE Weight': weights.rmse,
                    'MAE Weight': weights.mae,
                    'Accuracy Weight': weights.accuracy,
                    'Success': bool(entry.get('success')),
                    'Error': entry.get('error'),
                    'Training Data Size': job.result.get('training_data_size'),
                    'Validation Data Size': job.result.get('validation_data_size'),
                    'Is Best Result': i == best_index,
                })

        df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
        if best_only:
            df = df[df['Is Best Result']].reset_index(drop=True)
        logger.info(f"Exported {len(df)} result row(s)")
        return df

    def export_results_csv(self, separator: str = ',', **kwargs) -> str:
        """CSV text of export_results() using the given field separator."""
        if len(separator) != 1:
            raise ValidationError(f"CSV separator must be a single character, got {separator!r}")
        return self.export_results(**kwargs).to_csv(sep=separator, index=False)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def reset_jobs(self, job_filter: Optional[JobFilter] = None) -> int:
        """Delete every job matching the filter (all jobs when None)."""
        deleted = self.store.reset_jobs(job_filter)
        logger.info(f"Reset removed {deleted} job(s)")
        return deleted

    def clear_completed(self, job_filter: Optional[JobFilter] = None) -> int:
        return self.store.reset_jobs(self._with_status(job_filter, JobStatus.COMPLETED))

    def clear_pending(self, job_filter: Optional[JobFilter] = None) -> int:
        return self.store.reset_jobs(self._with_status(job_filter, JobStatus.PENDING))

    def cancel_pending(self, job_filter: Optional[JobFilter] = None) -> int:
        """Mark matching pending jobs cancelled. Running jobs are never interrupted."""
        pending = self.store.list_jobs(self._with_status(job_filter, JobStatus.PENDING))
        cancelled = self.store.set_status([job.job_id for job in pending], JobStatus.CANCELLED)
        logger.info(f"Cancelled {cancelled} pending job(s)")
        return cancelled

    @staticmethod
    def _with_status(job_filter: Optional[JobFilter], status: JobStatus) -> JobFilter:
        base = job_filter or JobFilter()
        return JobFilter(
            dataset_ref=base.dataset_ref,
            sku=base.sku,
            model_id=base.model_id,
            method=base.method,
            status=status,
            batch_id=base.batch_id,
        )


def _format_parameters(parameters: Any) -> str:
    if parameters is None:
        return ''
    return json.dumps(parameters, default=str)


_optimization_service: Optional[OptimizationService] = None


def get_optimization_service() -> OptimizationService:
    """Get or create singleton OptimizationService from the environment."""
    global _optimization_service
    if _optimization_service is None:
        _optimization_service = OptimizationService.from_config(OptimizerConfig.from_env())
    return _optimization_service
