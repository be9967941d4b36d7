"""
Pydantic models for optimization results and service input/output
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from sku_optimizer.config import DEFAULT_REASON

OPTIMIZATION_METHODS = ('grid', 'ai')


class ModelGridResult(BaseModel):
    """Outcome of evaluating one parameter combination for one model"""
    model_type: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    success: bool
    accuracy: Optional[float] = Field(None, description="0-100, higher is better")
    mape: Optional[float] = Field(None, description="Mean absolute percentage error in percent")
    rmse: Optional[float] = Field(None, description="Root mean square error")
    mae: Optional[float] = Field(None, description="Mean absolute error")
    error: Optional[str] = Field(None, description="Fit error, present only when success is False")

    @model_validator(mode="after")
    def _metrics_only_on_success(self):
        if self.success:
            if self.error is not None:
                raise ValueError("successful result cannot carry an error")
        else:
            if not self.error:
                raise ValueError("failed result must carry an error message")
            self.accuracy = self.mape = self.rmse = self.mae = None
        return self


class GridSummary(BaseModel):
    """Summary statistics over one grid pass"""
    total_models: int = 0
    successful_models: int = 0
    average_accuracy: float = 0.0
    best_accuracy: float = 0.0
    worst_accuracy: float = 0.0
    accuracy_std_dev: float = 0.0


class ParameterRange(BaseModel):
    """Promising range of one numeric parameter across the elite subset"""
    min: float
    max: float
    avg: float


class ModelBreakdown(BaseModel):
    count: int = 0
    best_accuracy: float = 0.0
    avg_accuracy: float = 0.0


class AIInsights(BaseModel):
    promising_ranges: Dict[str, Dict[str, ParameterRange]] = Field(default_factory=dict)
    confidence: float = Field(0.0, description="0 when no successful results, else clamped to [5, 95]")


class OptimizationRunResult(BaseModel):
    """Full output of one optimization job"""
    type: str = Field(..., description="'grid' or 'ai'")
    results: List[ModelGridResult] = Field(default_factory=list)
    best_result: Optional[ModelGridResult] = None
    best_per_model: Dict[str, ModelGridResult] = Field(default_factory=dict)
    summary: GridSummary = Field(default_factory=GridSummary)
    training_data_size: int = 0
    validation_data_size: int = 0
    # AI refinement only
    top_results: Optional[List[ModelGridResult]] = None
    model_breakdown: Optional[Dict[str, ModelBreakdown]] = None
    ai_insights: Optional[AIInsights] = None


class CompositeScoreWeights(BaseModel):
    """Weights of the normalized metrics in the composite score (sum not enforced)"""
    mape: float = Field(0.4, ge=0.0, le=1.0)
    rmse: float = Field(0.3, ge=0.0, le=1.0)
    mae: float = Field(0.2, ge=0.0, le=1.0)
    accuracy: float = Field(0.1, ge=0.0, le=1.0)


class JobCreateRequest(BaseModel):
    """Request to queue optimization jobs for a set of SKUs and models"""
    dataset_ref: str = Field(..., description="Dataset the SKUs belong to")
    skus: List[str] = Field(..., description="SKUs to optimize")
    models: List[str] = Field(..., description="Registered model ids to tune")
    method: str = Field(default="grid", description="'grid' or 'ai'")
    reason: str = Field(default=DEFAULT_REASON, description="Why the jobs were created; drives priority")
    batch_id: Optional[str] = Field(default=None, description="Groups jobs created together; generated when missing")
    validation_ratio: float = Field(default=0.2, description="Fraction of each series held out for validation")
    series: Optional[Dict[str, List[float]]] = Field(
        default=None, description="Optional inline series per SKU, stored in the job payload"
    )
    observation_counts: Optional[Dict[str, int]] = Field(
        default=None, description="Observation count per SKU when series are stored elsewhere"
    )


class JobCreationSummary(BaseModel):
    message: str
    jobs_created: int = 0
    jobs_cancelled: int = 0
    jobs_skipped: int = Field(0, description="Model opted out of grid search")
    jobs_filtered: int = Field(0, description="Model/SKU pair failed eligibility")
    skus_processed: int = 0
    models_per_sku: int = 0
    priority: int
    batch_id: str
    job_ids: List[int] = Field(default_factory=list)


class JobStatusSummary(BaseModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    is_optimizing: bool = False
    progress: int = Field(0, description="Share of jobs in a terminal state, percent")


class BestResult(BaseModel):
    """Winning (or synthesized) result for one model/method/SKU/dataset cell"""
    accuracy: Optional[float] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    mape: Optional[float] = None
    rmse: Optional[float] = None
    mae: Optional[float] = None
    normalized: Optional[Dict[str, float]] = None
    composite_score: Optional[float] = None
    job_id: Optional[int] = None
    sku: str
    batch_id: Optional[str] = None
    dataset_ref: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    is_default: bool = False
    status: Optional[str] = Field(None, description="'ineligible' for gap-filled cells")
    reason: Optional[str] = None
    note: Optional[str] = None


class BestResultEntry(BaseModel):
    model_type: str
    display_name: str
    category: str = "Other"
    description: str = ""
    is_seasonal: bool = False
    method: str
    sku: str
    batch_id: Optional[str] = None
    dataset_ref: Optional[str] = None
    best_result: BestResult


class CategoryBreakdown(BaseModel):
    count: int = 0
    successful_count: int = 0
    average_accuracy: float = 0.0


class ResultsSummary(BaseModel):
    total_jobs: int = 0
    total_results: int = 0
    successful_results: int = 0
    method_breakdown: Dict[str, int] = Field(default_factory=dict)
    model_breakdown: Dict[str, ModelBreakdown] = Field(default_factory=dict)
    category_breakdown: Dict[str, CategoryBreakdown] = Field(default_factory=dict)
    seasonal_vs_non_seasonal: Dict[str, int] = Field(default_factory=lambda: {"seasonal": 0, "non_seasonal": 0})
    average_metrics: Dict[str, float] = Field(default_factory=dict)
    best_results: List[Dict[str, Any]] = Field(default_factory=list, description="Top 10 by accuracy")
    best_results_per_model_method: List[BestResultEntry] = Field(default_factory=list)


class ModelCompatibility(BaseModel):
    model_type: str
    min_observations: Optional[int] = None
    required_total: Optional[int] = None
    reason: Optional[str] = None


class CompatibilityReport(BaseModel):
    """Which models a series of the given length can support"""
    data_length: int
    validation_ratio: float
    compatible_models: List[ModelCompatibility] = Field(default_factory=list)
    incompatible_models: List[ModelCompatibility] = Field(default_factory=list)
