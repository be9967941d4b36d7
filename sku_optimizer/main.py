"""
Command line entry point for the SKU optimization engine.

Usage:
    sku-optimizer enqueue --input sales.csv --dataset sales_2024 --models moving_average,holt_winters
    sku-optimizer worker                 # poll forever
    sku-optimizer worker --once          # process at most one job
    sku-optimizer status --dataset sales_2024
    sku-optimizer status --job-id 7
    sku-optimizer export --dataset sales_2024 --output results.csv --separator ";"

Input CSVs are long format: one row per (sku, date, value).
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

import pandas as pd

from sku_optimizer.config import DEFAULT_REASON, OptimizerConfig
from sku_optimizer.errors import JobError, OptimizerError
from sku_optimizer.models.forecasters import StatsModelsFitter
from sku_optimizer.models.registry import ModelRegistry
from sku_optimizer.schemas import CompositeScoreWeights, JobCreateRequest
from sku_optimizer.services.ai_refinement import AIRefinementOptimizer
from sku_optimizer.services.grid_search import GridSearchOptimizer
from sku_optimizer.services.job_state_store import JobFilter, SQLiteJobStateStore
from sku_optimizer.services.optimization_service import OptimizationService
from sku_optimizer.services.series_loader import DataFrameSeriesLoader
from sku_optimizer.services.worker import OptimizationWorker
from sku_optimizer.utils.logging_utils import configure_logging

logger = logging.getLogger(__name__)


def load_data(file_path: str) -> pd.DataFrame:
    """Load data from CSV file."""
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"File not found: {file_path}")

    df = pd.read_csv(file_path)
    logger.info(f"Loaded {len(df)} rows from {file_path}")
    return df


def build_worker(config: OptimizerConfig) -> OptimizationWorker:
    registry = ModelRegistry.default(config.seasonal_period)
    grid = GridSearchOptimizer(registry, StatsModelsFitter(), config.validation_ratio)
    ai = AIRefinementOptimizer(grid, config.top_fraction, config.focused_points)
    return OptimizationWorker(
        SQLiteJobStateStore(config.db_path),
        grid,
        ai,
        poll_interval=config.poll_interval_seconds,
    )


def cmd_enqueue(args, config: OptimizerConfig) -> int:
    df = load_data(args.input)
    loader = DataFrameSeriesLoader({args.dataset: df}, args.sku_col, args.date_col, args.value_col)
    counts = loader.observation_counts(args.dataset)
    skus = args.skus.split(',') if args.skus else sorted(counts)

    request = JobCreateRequest(
        dataset_ref=args.dataset,
        skus=skus,
        models=[m.strip() for m in args.models.split(',')] if args.models else ModelRegistry.default(
            config.seasonal_period).model_ids(),
        method=args.method,
        reason=args.reason,
        batch_id=args.batch_id,
        validation_ratio=config.validation_ratio,
        # The worker runs in another process, so the series travel in the payload
        series={sku: loader.series_for(args.dataset, sku).tolist() for sku in skus if sku in counts},
    )
    service = OptimizationService.from_config(config)
    summary = service.create_jobs(request)
    print(json.dumps(summary.model_dump(), indent=2))
    return 0


def cmd_worker(args, config: OptimizerConfig) -> int:
    worker = build_worker(config)
    if args.once:
        worker.recover_stale_jobs()
        job = worker.tick()
        if job is None:
            print("No pending job")
        else:
            print(f"Job {job.job_id}: {job.status.value}" + (f" ({job.error})" if job.error else ""))
        return 0

    try:
        worker.start_polling(args.interval)
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    return 0


def cmd_status(args, config: OptimizerConfig) -> int:
    service = OptimizationService.from_config(config)
    if args.job_id is not None:
        job = service.get_job(args.job_id)
        if job is None:
            raise JobError(f"Job {args.job_id} not found")
        print(json.dumps(job.to_dict(), indent=2))
        return 0
    status = service.get_status(JobFilter(dataset_ref=args.dataset, batch_id=args.batch_id))
    print(json.dumps(status.model_dump(), indent=2))
    return 0


def cmd_export(args, config: OptimizerConfig) -> int:
    service = OptimizationService.from_config(config)
    weights = CompositeScoreWeights(**json.loads(args.weights)) if args.weights else None
    csv_text = service.export_results_csv(
        separator=args.separator,
        dataset_ref=args.dataset,
        method=args.method,
        weights=weights,
        best_only=args.best_only,
    )
    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(csv_text)
        print(f"Results written to {args.output}")
    else:
        sys.stdout.write(csv_text)
    return 0


def cmd_reset(args, config: OptimizerConfig) -> int:
    service = OptimizationService.from_config(config)
    job_filter = JobFilter(dataset_ref=args.dataset, batch_id=args.batch_id)
    if args.scope == 'all':
        count = service.reset_jobs(job_filter)
    elif args.scope == 'completed':
        count = service.clear_completed(job_filter)
    elif args.scope == 'pending':
        count = service.clear_pending(job_filter)
    else:
        count = service.cancel_pending(job_filter)
    print(f"{args.scope}: {count} job(s) affected")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sku-optimizer',
        description="SKU forecasting parameter optimization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument(
        '--db',
        help='SQLite job database (default: $SKU_OPTIMIZER_DB_PATH or optimization_jobs.db)'
    )
    sub = parser.add_subparsers(dest='command', required=True)

    enqueue = sub.add_parser('enqueue', help='Create optimization jobs from a CSV file')
    enqueue.add_argument('--input', '-i', required=True, help='Input CSV file path')
    enqueue.add_argument('--dataset', '-d', required=True, help='Dataset reference for the jobs')
    enqueue.add_argument('--skus', help='Comma-separated SKUs (default: every SKU in the file)')
    enqueue.add_argument('--models', help='Comma-separated model ids (default: every registered model)')
    enqueue.add_argument('--method', choices=['grid', 'ai'], default='grid', help='Optimization method (default: grid)')
    enqueue.add_argument('--reason', default=DEFAULT_REASON, help=f'Job reason, drives priority (default: {DEFAULT_REASON})')
    enqueue.add_argument('--batch-id', help='Batch id (default: generated)')
    enqueue.add_argument('--sku-col', default='sku', help='SKU column name (default: sku)')
    enqueue.add_argument('--date-col', default='date', help='Date column name (default: date)')
    enqueue.add_argument('--value-col', default='value', help='Value column name (default: value)')
    enqueue.set_defaults(handler=cmd_enqueue)

    worker = sub.add_parser('worker', help='Run the optimization worker')
    worker.add_argument('--once', action='store_true', help='Process at most one job and exit')
    worker.add_argument('--interval', type=float, help='Poll interval in seconds (default: from config)')
    worker.set_defaults(handler=cmd_worker)

    status = sub.add_parser('status', help='Show job counts and progress')
    status.add_argument('--dataset', '-d', help='Dataset reference')
    status.add_argument('--batch-id', help='Batch id')
    status.add_argument('--job-id', type=int, help='Show one job record instead of counts')
    status.set_defaults(handler=cmd_status)

    export = sub.add_parser('export', help='Export results as CSV')
    export.add_argument('--dataset', '-d', help='Dataset reference')
    export.add_argument('--method', choices=['grid', 'ai', 'all'], default='all')
    export.add_argument('--output', '-o', help='Output file (default: stdout)')
    export.add_argument('--separator', default=',', help='CSV field separator (default: ,)')
    export.add_argument('--best-only', action='store_true', help='Only the best result of each job')
    export.add_argument('--weights', help='Composite weights as JSON, e.g. \'{"mape": 1, "rmse": 0, "mae": 0, "accuracy": 0}\'')
    export.set_defaults(handler=cmd_export)

    reset = sub.add_parser('reset', help='Delete or cancel jobs')
    reset.add_argument('scope', choices=['all', 'completed', 'pending', 'cancel'])
    reset.add_argument('--dataset', '-d', help='Dataset reference')
    reset.add_argument('--batch-id', help='Batch id')
    reset.set_defaults(handler=cmd_reset)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = OptimizerConfig.from_env()
    if args.db:
        config = OptimizerConfig(
            db_path=args.db,
            poll_interval_seconds=config.poll_interval_seconds,
            validation_ratio=config.validation_ratio,
            seasonal_period=config.seasonal_period,
            top_fraction=config.top_fraction,
            focused_points=config.focused_points,
            log_level=config.log_level,
        )
    configure_logging(config.numeric_log_level)

    try:
        return args.handler(args, config)
    except (OptimizerError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
