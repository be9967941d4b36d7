"""
Optimization worker loop.

A single worker claims one pending job at a time, runs the grid search or
AI refinement for it and records the terminal state. A failing job is
marked failed and never retried; the loop itself keeps going.
"""

import asyncio
import logging
import threading
import time
from typing import Optional

from sku_optimizer.errors import JobError, ValidationError
from sku_optimizer.schemas import OptimizationRunResult
from sku_optimizer.services.ai_refinement import AIRefinementOptimizer
from sku_optimizer.services.grid_search import GridProgress, GridSearchOptimizer
from sku_optimizer.services.job_state_store import JobStateStore, OptimizationJob
from sku_optimizer.services.series_loader import SeriesLoader, payload_series_loader
from sku_optimizer.utils.logging_utils import log_io

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


class OptimizationWorker:
    """
    Polls the job store and processes jobs one at a time.

    Usage:
        worker = OptimizationWorker(store, GridSearchOptimizer(registry))
        worker.tick()                  # process at most one job
        await worker.run_forever()     # poll until stop() is called
    """

    def __init__(
        self,
        store: JobStateStore,
        grid_optimizer: GridSearchOptimizer,
        ai_optimizer: Optional[AIRefinementOptimizer] = None,
        series_loader: SeriesLoader = payload_series_loader,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.store = store
        self.grid_optimizer = grid_optimizer
        self.ai_optimizer = ai_optimizer or AIRefinementOptimizer(grid_optimizer)
        self.series_loader = series_loader
        self.poll_interval = poll_interval
        self.current_job_id: Optional[int] = None

        self._busy = threading.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping = False

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    def tick(self) -> Optional[OptimizationJob]:
        """
        Claim and process the next pending job, if any.

        Returns the job in its terminal state, or None when the worker was
        busy, another job is running, or nothing is pending.
        """
        if not self._busy.acquire(blocking=False):
            logger.debug("Worker is busy, skipping poll")
            return None
        try:
            job = self.store.claim_next_pending()
            if job is None:
                return None
            self.current_job_id = job.job_id
            self.process_job(job)
            return self.store.get(job.job_id)
        finally:
            self.current_job_id = None
            self._busy.release()

    def process_job(self, job: OptimizationJob) -> None:
        """Run a claimed job to completion or failure."""
        logger.info(f"[Worker] Picked up job {job.job_id}: {job.model_id}/{job.method} for SKU {job.sku}")
        started = time.perf_counter()
        try:
            series = self.series_loader(job)
            result = self.run_job(job, series)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"[Worker] Optimization failed for job {job.job_id}: {message}")
            self.store.fail_job(job.job_id, message)
            return

        self.store.complete_job(job.job_id, result.model_dump(mode="json"))
        logger.info(
            f"[Worker] Optimization completed for job {job.job_id} "
            f"({len(result.results)} results, {time.perf_counter() - started:.2f}s)"
        )

    @log_io(log_result=False)
    def run_job(self, job: OptimizationJob, series) -> OptimizationRunResult:
        """Dispatch on the job's method with progress written to the store."""
        model_types = list(job.payload.get('model_types') or [job.model_id])

        def report(progress: GridProgress) -> None:
            self.store.update_job_progress(job.job_id, progress.percentage)
            logger.debug(f"[Worker] Job {job.job_id} {progress.phase} progress: {progress.percentage}%")

        grid_optimizer, ai_optimizer = self._optimizers_for(job)
        if job.method == 'grid':
            return grid_optimizer.run_grid_search(series, model_types, on_progress=report)
        if job.method == 'ai':
            return ai_optimizer.run_ai_optimization(series, model_types, on_progress=report)
        raise JobError(f"Unknown optimization type: {job.method}")

    def _optimizers_for(self, job: OptimizationJob):
        """Honour a validation ratio recorded on the job at creation time."""
        ratio = job.payload.get('validation_ratio')
        if ratio is None or ratio == self.grid_optimizer.validation_ratio:
            return self.grid_optimizer, self.ai_optimizer
        try:
            grid = GridSearchOptimizer(
                self.grid_optimizer.registry,
                self.grid_optimizer.fitter,
                float(ratio),
                self.grid_optimizer.accuracy_transform,
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid validation_ratio in job payload: {ratio!r}") from e
        ai = AIRefinementOptimizer(grid, self.ai_optimizer.top_fraction, self.ai_optimizer.focused_points)
        return grid, ai

    def recover_stale_jobs(self) -> int:
        """
        Fail jobs a previous worker left running.

        Only one job may run at a time, so a row stuck in running after a
        crash would otherwise block every later claim. Call this once at
        startup, never while another worker shares the store.
        """
        recovered = self.store.recover_stale_running()
        if recovered:
            logger.warning(f"[Worker] Recovered {recovered} job(s) left running by a previous worker")
        return recovered

    @log_io
    async def run_forever(self, interval: Optional[float] = None) -> None:
        """Recover stale jobs, then poll immediately and every `interval` seconds until stop() is called."""
        interval = self.poll_interval if interval is None else interval
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        if self._stopping:
            self._stop_event.set()
        await asyncio.to_thread(self.recover_stale_jobs)
        logger.info(f"[Worker] Starting polling for jobs every {interval}s")

        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(self.tick)
            except Exception:
                logger.exception("[Worker] Error polling for jobs")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("[Worker] Polling stopped")
        self._stopping = False
        self._loop = None
        self._stop_event = None

    def start_polling(self, interval: Optional[float] = None) -> None:
        """Blocking entry point: run the polling loop in a fresh event loop."""
        asyncio.run(self.run_forever(interval))

    def stop(self) -> None:
        """Ask the polling loop to exit after the current tick. Safe from any thread."""
        self._stopping = True
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)
