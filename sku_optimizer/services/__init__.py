# Job engine services: queue persistence, optimizers, worker loop and result aggregation
from .job_state_store import (
    JobFilter,
    JobStateStore,
    JobStatus,
    OptimizationJob,
    SQLiteJobStateStore,
)
from .eligibility import filter_eligible_models, is_eligible, required_total, assert_eligible
from .grid_search import GridProgress, GridSearchOptimizer
from .ai_refinement import AIRefinementOptimizer
from .series_loader import DataFrameSeriesLoader, payload_series_loader
from .worker import OptimizationWorker
from .aggregator import BestResultAggregator
from .optimization_service import OptimizationService, get_optimization_service

__all__ = [
    # Persistence
    'JobFilter',
    'JobStateStore',
    'JobStatus',
    'OptimizationJob',
    'SQLiteJobStateStore',
    # Eligibility
    'filter_eligible_models',
    'is_eligible',
    'required_total',
    'assert_eligible',
    # Optimizers
    'GridProgress',
    'GridSearchOptimizer',
    'AIRefinementOptimizer',
    # Worker
    'DataFrameSeriesLoader',
    'payload_series_loader',
    'OptimizationWorker',
    # Results
    'BestResultAggregator',
    'OptimizationService',
    'get_optimization_service',
]
