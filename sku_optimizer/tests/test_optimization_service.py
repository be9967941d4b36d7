"""
Tests for the optimization service: job creation, status, results,
export and housekeeping, end to end over a SQLite store.
"""

import pandas as pd
import pytest

from sku_optimizer.config import OptimizerConfig
from sku_optimizer.errors import ValidationError
from sku_optimizer.schemas import CompositeScoreWeights, JobCreateRequest
from sku_optimizer.services.grid_search import GridSearchOptimizer
from sku_optimizer.services.job_state_store import JobFilter, JobStatus
from sku_optimizer.services.optimization_service import EXPORT_COLUMNS, OptimizationService
from sku_optimizer.services.series_loader import DataFrameSeriesLoader
from sku_optimizer.services.worker import OptimizationWorker


LONG = [float(100 + (i % 12) * 4 + i) for i in range(30)]
SHORT = [10.0, 12.0, 11.0, 13.0]
MODELS = ['moving_average', 'holt_winters', 'linear_trend']


def _request(**overrides):
    fields = dict(
        dataset_ref="sales",
        skus=["A", "B"],
        models=MODELS,
        series={"A": LONG, "B": SHORT},
        batch_id="batch-1",
    )
    fields.update(overrides)
    return JobCreateRequest(**fields)


@pytest.fixture
def service(store, small_registry):
    return OptimizationService(store, small_registry)


@pytest.fixture
def drain(store, small_registry, scripted_fitter):
    """Process every pending job with the scripted fitter."""
    worker = OptimizationWorker(store, GridSearchOptimizer(small_registry, scripted_fitter))

    def run():
        while worker.tick() is not None:
            pass

    return run


class TestCreateJobs:

    def test_eligibility_and_skips(self, service, store):
        summary = service.create_jobs(_request())

        assert summary.jobs_created == 3
        assert summary.jobs_skipped == 2
        assert summary.jobs_filtered == 1
        assert summary.skus_processed == 2
        assert summary.models_per_sku == 3
        assert summary.priority == 3
        assert summary.batch_id == "batch-1"
        assert summary.message == "Successfully created 3 jobs"

        jobs = store.list_jobs()
        assert [(j.sku, j.model_id) for j in jobs] == [
            ("A", "moving_average"), ("A", "holt_winters"), ("B", "moving_average"),
        ]
        assert jobs[0].payload == {
            'model_types': ['moving_average'],
            'validation_ratio': 0.2,
            'dataset_name': 'sales',
            'data': LONG,
        }
        assert all(j.status == JobStatus.PENDING for j in jobs)

    def test_ai_jobs_include_models_without_grid(self, service, store):
        summary = service.create_jobs(_request(method="ai", skus=["A"]))
        assert summary.jobs_created == 3
        assert summary.jobs_skipped == 0
        assert {j.model_id for j in store.list_jobs()} == set(MODELS)

    def test_priority_from_reason(self, service):
        assert service.create_jobs(_request(reason="settings_change")).priority == 2
        assert service.create_jobs(_request(reason="csv_upload_data_cleaning")).priority == 1
        assert service.create_jobs(_request(reason="scheduled")).priority == 3

    def test_generated_batch_id(self, service):
        first = service.create_jobs(_request(batch_id=None))
        second = service.create_jobs(_request(batch_id=None))
        assert first.batch_id.startswith("batch-")
        assert first.batch_id != second.batch_id

    def test_observation_counts_without_series(self, service, store):
        summary = service.create_jobs(_request(series=None, observation_counts={"A": 40, "B": 2}))
        assert summary.jobs_created == 2
        assert summary.jobs_filtered == 3
        assert summary.jobs_skipped == 1
        assert 'data' not in store.list_jobs()[0].payload

    def test_series_source(self, store, small_registry):
        frame = pd.DataFrame({
            'sku': ['A'] * 30 + ['B'] * 4,
            'date': list(pd.date_range('2022-01-01', periods=30, freq='MS')) + list(pd.date_range('2022-01-01', periods=4, freq='MS')),
            'value': LONG + SHORT,
        })
        service = OptimizationService(store, small_registry, series_source=DataFrameSeriesLoader({'sales': frame}))
        summary = service.create_jobs(_request(series=None))
        assert summary.jobs_created == 3
        assert summary.jobs_filtered == 1

    def test_sku_without_observations(self, service):
        with pytest.raises(ValidationError, match="No observations"):
            service.create_jobs(_request(skus=["A", "C"]))

    @pytest.mark.parametrize("overrides", [
        {'skus': []},
        {'models': []},
        {'method': 'bayesian'},
        {'dataset_ref': '  '},
        {'validation_ratio': 1.0},
        {'skus': ['A', ' ']},
    ])
    def test_invalid_requests(self, service, store, overrides):
        with pytest.raises(ValidationError):
            service.create_jobs(_request(**overrides))
        assert store.list_jobs() == []


class TestCompatibility:

    def test_report(self, service):
        report = service.check_compatibility(['moving_average', 'holt_winters', 'custom'], 20)
        assert [m.model_type for m in report.compatible_models] == ['moving_average', 'custom']
        assert report.compatible_models[0].required_total == 3
        assert report.compatible_models[1].min_observations is None

        incompatible = report.incompatible_models[0]
        assert incompatible.model_type == 'holt_winters'
        assert incompatible.required_total == 30
        assert incompatible.reason == "Requires at least 30 observations (you have 20)"

    def test_negative_length(self, service):
        with pytest.raises(ValidationError):
            service.check_compatibility(['moving_average'], -1)


class TestStatusAndHousekeeping:

    def test_status_lifecycle(self, service, drain):
        service.create_jobs(_request())
        status = service.get_status()
        assert (status.total, status.pending, status.progress, status.is_optimizing) == (3, 3, 0, True)

        drain()
        status = service.get_status(JobFilter(dataset_ref="sales"))
        assert status.completed == 3
        assert status.progress == 100
        assert status.is_optimizing is False

    def test_cancel_pending(self, service):
        service.create_jobs(_request())
        assert service.cancel_pending() == 3
        status = service.get_status()
        assert status.cancelled == 3
        assert status.is_optimizing is False
        assert status.progress == 100

    def test_clear_completed_and_pending(self, service, store, small_registry, scripted_fitter):
        service.create_jobs(_request())
        OptimizationWorker(store, GridSearchOptimizer(small_registry, scripted_fitter)).tick()

        assert service.clear_completed() == 1
        assert service.clear_pending(JobFilter(sku="B")) == 1
        assert [j.sku for j in store.list_jobs()] == ["A"]

    def test_reset_by_batch(self, service, store):
        service.create_jobs(_request(batch_id="one"))
        service.create_jobs(_request(batch_id="two"))
        assert service.reset_jobs(JobFilter(batch_id="one")) == 3
        assert {j.batch_id for j in store.list_jobs()} == {"two"}
        assert service.reset_jobs() == 3

    def test_get_job(self, service):
        job_id = service.create_jobs(_request()).job_ids[0]
        assert service.get_job(job_id).sku == "A"


class TestResults:

    def test_best_results_matrix(self, service, small_registry, drain):
        service.create_jobs(_request())
        drain()

        entries = service.get_best_results(dataset_ref="sales", method="grid")
        assert len(entries) == 2 * len(small_registry)
        best = [e for e in entries if e.model_type == 'moving_average' and e.sku == 'A'][0].best_result
        assert best.parameters == {'window': 4}
        assert best.composite_score is not None

        only_b = service.get_best_results(dataset_ref="sales", method="all", sku="B")
        assert {e.sku for e in only_b} == {"B"}
        assert len(only_b) == 2 * len(small_registry)

    def test_invalid_method(self, service):
        with pytest.raises(ValidationError):
            service.get_best_results(method="bayesian")

    def test_results_summary(self, service, drain):
        service.create_jobs(_request())
        drain()

        summary = service.get_results_summary(dataset_ref="sales")
        assert summary.total_jobs == 3
        assert summary.total_results == 24
        assert summary.successful_results == 24
        assert summary.method_breakdown == {'grid': 3, 'ai': 0}
        assert summary.seasonal_vs_non_seasonal == {'seasonal': 4, 'non_seasonal': 20}
        assert summary.category_breakdown['Naive & Simple'].count == 20
        assert summary.category_breakdown['Exponential Smoothing'].successful_count == 4
        assert summary.model_breakdown['moving_average'].count == 20
        assert summary.model_breakdown['moving_average'].best_accuracy == 95.0
        assert len(summary.best_results) == 10
        assert summary.best_results[0]['accuracy'] == 95.0
        assert set(summary.average_metrics) == {'accuracy', 'mape', 'rmse', 'mae'}
        assert len(summary.best_results_per_model_method) == 2 * 2 * 4

    def test_empty_summary(self, service):
        summary = service.get_results_summary()
        assert summary.total_jobs == 0
        assert summary.average_metrics == {'accuracy': 0.0, 'mape': 0.0, 'rmse': 0.0, 'mae': 0.0}
        assert summary.best_results_per_model_method == []


class TestExport:

    def test_rows_and_columns(self, service, drain):
        service.create_jobs(_request())
        drain()

        df = service.export_results(dataset_ref="sales")
        assert list(df.columns) == EXPORT_COLUMNS
        assert len(df) == 24
        assert df.groupby('Job ID')['Is Best Result'].sum().tolist() == [1, 1, 1]
        assert set(df['Dataset Name']) == {"sales"}
        assert (df['MAPE Weight'] == 0.4).all()
        assert df['Composite Score'].between(0, 1).all()

        best = df[(df['SKU'] == 'A') & (df['Model ID'] == 'moving_average') & df['Is Best Result']]
        assert best['Parameters'].tolist() == ['{"window": 4}']
        assert best['Training Data Size'].tolist() == [24]

    def test_best_only(self, service, drain):
        service.create_jobs(_request())
        drain()
        df = service.export_results(best_only=True)
        assert len(df) == 3
        assert df['Is Best Result'].all()

    def test_failed_results_are_exported(self, store, small_registry, fitter_factory):
        service = OptimizationService(store, small_registry)
        fitter = fitter_factory(fail=lambda model, params: params.get('window') == 2)
        service.create_jobs(_request(skus=["A"], models=["moving_average"]))
        OptimizationWorker(store, GridSearchOptimizer(small_registry, fitter)).tick()

        df = service.export_results()
        failed = df[~df['Success']]
        assert len(failed) == 1
        assert "diverged" in failed['Error'].iloc[0]
        assert pd.isna(failed["MAPE"].iloc[0])
        assert failed['Normalized MAPE'].iloc[0] == 0.0

    def test_custom_weights(self, service, drain):
        service.create_jobs(_request(skus=["A"], models=["moving_average"]))
        drain()
        weights = CompositeScoreWeights(mape=1, rmse=0, mae=0, accuracy=0)
        df = service.export_results(weights=weights)
        assert (df["MAPE Weight"] == 1).all()
        assert (df["Accuracy Weight"] == 0).all()
        assert df["Composite Score"].max() == df["Normalized MAPE"].max()

    def test_empty_export(self, service):
        df = service.export_results()
        assert df.empty
        assert list(df.columns) == EXPORT_COLUMNS

    def test_csv_separator(self, service, drain):
        service.create_jobs(_request(skus=["A"], models=["moving_average"]))
        drain()
        text = service.export_results_csv(separator=';', best_only=True)
        header, row = text.strip().splitlines()
        assert header.startswith("Dataset Name;Job ID;SKU;Model ID")
        assert row.startswith("sales;1;A;moving_average")

    def test_bad_separator(self, service):
        with pytest.raises(ValidationError):
            service.export_results_csv(separator=';;')


class TestFromConfig:

    def test_from_config(self, tmp_path):
        config = OptimizerConfig(db_path=str(tmp_path / "cfg.db"), seasonal_period=4)
        service = OptimizationService.from_config(config)
        assert service.store.db_path.endswith("cfg.db")
        assert service.registry.get_definition('holt_winters').min_observations == 8
