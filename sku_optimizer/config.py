"""
Runtime configuration for the SKU optimization engine.

All values can be overridden from the environment; defaults match the
reference deployment (5 second poll, 20% validation split, monthly data).
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict

# Lower value = claimed sooner
JOB_PRIORITIES: Dict[str, int] = {
    "setup": 1,
    "data_cleaning": 2,
    "initial_import": 3,
}

_SETUP_REASONS = {"csv_upload_data_cleaning", "manual_edit_data_cleaning"}
_DATA_CLEANING_REASONS = {"settings_change", "config", "metric_weight_change"}

DEFAULT_REASON = "manual_trigger"


def priority_from_reason(reason: str) -> int:
    """Map the reason a job was created to its queue priority."""
    if reason in _DATA_CLEANING_REASONS:
        return JOB_PRIORITIES["data_cleaning"]
    if reason in _SETUP_REASONS:
        return JOB_PRIORITIES["setup"]
    return JOB_PRIORITIES["initial_import"]


@dataclass(frozen=True)
class OptimizerConfig:
    """Configuration for the job store, worker loop and optimizers."""

    db_path: str = field(
        default_factory=lambda: os.getenv("SKU_OPTIMIZER_DB_PATH", "optimization_jobs.db")
    )
    poll_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("SKU_OPTIMIZER_POLL_INTERVAL", "5"))
    )
    validation_ratio: float = field(
        default_factory=lambda: float(os.getenv("SKU_OPTIMIZER_VALIDATION_RATIO", "0.2"))
    )
    seasonal_period: int = field(
        default_factory=lambda: int(os.getenv("SKU_OPTIMIZER_SEASONAL_PERIOD", "12"))
    )

    # AI refinement
    top_fraction: float = field(
        default_factory=lambda: float(os.getenv("SKU_OPTIMIZER_TOP_FRACTION", "0.2"))
    )
    focused_points: int = field(
        default_factory=lambda: int(os.getenv("SKU_OPTIMIZER_FOCUSED_POINTS", "5"))
    )

    log_level: str = field(
        default_factory=lambda: os.getenv("SKU_OPTIMIZER_LOG_LEVEL", "INFO")
    )

    @classmethod
    def from_env(cls) -> "OptimizerConfig":
        """Create config from environment variables."""
        return cls()

    @property
    def numeric_log_level(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO
