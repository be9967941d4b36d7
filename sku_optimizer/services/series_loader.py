"""
Series loaders: resolve a job's payload to the observations to optimize on.

A loader is any callable taking an OptimizationJob and returning a 1-D
numpy array in chronological order.
"""

import logging
from typing import Callable, Dict, Mapping, Optional

import numpy as np
import pandas as pd

from sku_optimizer.errors import JobError, ValidationError
from sku_optimizer.services.job_state_store import OptimizationJob

logger = logging.getLogger(__name__)

SeriesLoader = Callable[[OptimizationJob], np.ndarray]


def payload_series_loader(job: OptimizationJob) -> np.ndarray:
    """Read the series stored inline in the job payload under 'data'."""
    data = (job.payload or {}).get('data')
    if not data:
        raise JobError(f"No data provided for optimization (job {job.job_id}, SKU {job.sku})")
    return np.asarray(data, dtype=np.float64)


class DataFrameSeriesLoader:
    """
    Serve series from in-memory long-format DataFrames, one per dataset.

    Each frame needs a SKU column, a date column and a value column; rows
    are sorted by date before the values are returned.
    """

    def __init__(
        self,
        frames: Optional[Mapping[str, pd.DataFrame]] = None,
        sku_col: str = 'sku',
        date_col: str = 'date',
        value_col: str = 'value',
    ):
        self.sku_col = sku_col
        self.date_col = date_col
        self.value_col = value_col
        self._frames: Dict[str, pd.DataFrame] = {}
        for dataset_ref, df in (frames or {}).items():
            self.add_dataset(dataset_ref, df)

    def add_dataset(self, dataset_ref: str, df: pd.DataFrame) -> None:
        missing = [c for c in (self.sku_col, self.date_col, self.value_col) if c not in df.columns]
        if missing:
            raise ValidationError(f"Dataset {dataset_ref} is missing column(s): {missing}")
        frame = df[[self.sku_col, self.date_col, self.value_col]].copy()
        frame[self.sku_col] = frame[self.sku_col].astype(str)
        frame[self.date_col] = pd.to_datetime(frame[self.date_col])
        frame[self.value_col] = pd.to_numeric(frame[self.value_col], errors='coerce')
        self._frames[dataset_ref] = frame.sort_values([self.sku_col, self.date_col]).reset_index(drop=True)
        logger.info(f"Registered dataset {dataset_ref}: {len(frame)} rows, {frame[self.sku_col].nunique()} SKUs")

    def series_for(self, dataset_ref: str, sku: str) -> pd.Series:
        frame = self._frames.get(dataset_ref)
        if frame is None:
            raise JobError(f"Unknown dataset: {dataset_ref}")
        rows = frame[frame[self.sku_col] == str(sku)]
        if rows.empty:
            raise JobError(f"SKU {sku} not found in dataset {dataset_ref}")
        return rows.set_index(self.date_col)[self.value_col].dropna()

    def observation_counts(self, dataset_ref: str) -> Dict[str, int]:
        """Non-null observations per SKU, used for eligibility at job creation."""
        frame = self._frames.get(dataset_ref)
        if frame is None:
            raise ValidationError(f"Unknown dataset: {dataset_ref}")
        counts = frame.dropna(subset=[self.value_col]).groupby(self.sku_col)[self.value_col].count()
        return {str(sku): int(n) for sku, n in counts.items()}

    def __call__(self, job: OptimizationJob) -> np.ndarray:
        return self.series_for(job.dataset_ref, job.sku).to_numpy(dtype=np.float64)
