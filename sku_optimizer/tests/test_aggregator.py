"""
Unit tests for composite scoring and best-result aggregation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from sku_optimizer.errors import AggregationError
from sku_optimizer.schemas import CompositeScoreWeights
from sku_optimizer.services.aggregator import (
    DEFAULT_PARAMETERS_NOTE,
    NO_RESULT_REASON,
    BestResultAggregator,
    job_results,
    normalization_maxima,
    safe_metric,
    score_result,
    score_results,
)
from sku_optimizer.services.job_state_store import JobStatus, OptimizationJob

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
MAPE_ONLY = CompositeScoreWeights(mape=1, rmse=0, mae=0, accuracy=0)


def _result(model_type="moving_average", mape=10.0, success=True, **parameters):
    if not success:
        return {'model_type': model_type, 'parameters': parameters, 'success': False, 'error': 'diverged'}
    return {
        'model_type': model_type,
        'parameters': parameters,
        'success': True,
        'mape': mape,
        'rmse': mape / 10,
        'mae': mape / 20,
        'accuracy': 100 - mape,
    }


def _job(job_id, results, sku="A", method="grid", batch_id="b1", model_id="moving_average"):
    return OptimizationJob(
        job_id=job_id,
        dataset_ref="sales",
        sku=sku,
        model_id=model_id,
        method=method,
        batch_id=batch_id,
        status=JobStatus.COMPLETED,
        result={'type': method, 'results': results},
        created_at=T0 + timedelta(minutes=job_id),
        completed_at=T0 + timedelta(minutes=job_id, seconds=30),
    )


def _lookup(entries, model_type, method="grid", sku="A"):
    matches = [e for e in entries if (e.model_type, e.method, e.sku) == (model_type, method, sku)]
    assert len(matches) == 1
    return matches[0]


class TestScoring:

    def test_mape_only_weights(self):
        scored = score_results([_result(mape=10.0), _result(mape=20.0)], MAPE_ONLY)
        assert [s for s, _ in scored] == [pytest.approx(0.5), pytest.approx(0.0)]

    def test_default_weights(self):
        results = [_result(mape=10.0), _result(mape=20.0)]
        score, normalized = score_results(results, CompositeScoreWeights())[0]
        assert normalized == {
            'mape': pytest.approx(0.5), 'rmse': pytest.approx(0.5),
            'mae': pytest.approx(0.5), 'accuracy': pytest.approx(0.9),
        }
        assert score == pytest.approx(0.4 * 0.5 + 0.3 * 0.5 + 0.2 * 0.5 + 0.1 * 0.9)

    def test_missing_metrics_score_worst(self):
        maxima = {'mape': 20.0, 'rmse': 2.0, 'mae': 1.0}
        score, normalized = score_result({'accuracy': None, 'mape': 'n/a'}, maxima, CompositeScoreWeights())
        assert score == 0.0
        assert normalized == {'mape': 0.0, 'rmse': 0.0, 'mae': 0.0, 'accuracy': 0.0}

    def test_terms_clamped_to_unit_interval(self):
        maxima = {'mape': 10.0, 'rmse': 1.0, 'mae': 1.0}
        score, normalized = score_result(
            {'mape': -5.0, 'rmse': 0.5, 'mae': 0.5, 'accuracy': 150.0}, maxima, CompositeScoreWeights()
        )
        assert all(0.0 <= v <= 1.0 for v in normalized.values())
        assert 0.0 <= score <= 1.0

    def test_maxima_default_to_one(self):
        assert normalization_maxima([_result(mape=0.0)]) == {'mape': 1.0, 'rmse': 1.0, 'mae': 1.0}
        assert normalization_maxima([]) == {'mape': 1.0, 'rmse': 1.0, 'mae': 1.0}

    def test_safe_metric(self):
        assert safe_metric("12.5", None) == 12.5
        assert safe_metric(float('inf'), 3.0) == 3.0
        assert safe_metric(None, 0.0) == 0.0
        assert safe_metric(True, None) is None
        assert safe_metric("", 1.0) == 1.0


class TestJobResults:

    def test_valid(self):
        assert len(job_results(_job(1, [_result()]))) == 1

    def test_missing_payload(self):
        job = _job(1, [])
        job.result = None
        with pytest.raises(AggregationError):
            job_results(job)

    def test_entry_without_model_type(self):
        with pytest.raises(AggregationError):
            job_results(_job(1, [{'success': True}]))


class TestExtractBestResults:

    def test_winner_is_highest_score(self, small_registry):
        jobs = [_job(1, [_result(mape=20.0, window=2), _result(mape=10.0, window=4)])]
        entries = BestResultAggregator(small_registry).extract_best_results(jobs, MAPE_ONLY, method="grid")

        best = _lookup(entries, 'moving_average').best_result
        assert best.parameters == {'window': 4}
        assert best.mape == 10.0
        assert best.composite_score == pytest.approx(0.5)
        assert best.normalized['mape'] == pytest.approx(0.5)
        assert best.job_id == 1
        assert best.batch_id == "b1"
        assert best.is_default is False

    def test_candidates_pooled_across_jobs(self, small_registry):
        jobs = [
            _job(1, [_result(mape=15.0, window=3)]),
            _job(2, [_result(mape=12.0, window=5)]),
        ]
        entries = BestResultAggregator(small_registry).extract_best_results(jobs, method="grid")
        best = _lookup(entries, 'moving_average').best_result
        assert best.job_id == 2
        assert best.parameters == {'window': 5}

    def test_first_seen_wins_tie(self, small_registry):
        jobs = [_job(1, [_result(mape=10.0, window=3), _result(mape=10.0, window=5)])]
        entries = BestResultAggregator(small_registry).extract_best_results(jobs, method="grid")
        assert _lookup(entries, 'moving_average').best_result.parameters == {'window': 3}

    def test_matrix_is_complete(self, small_registry):
        jobs = [_job(1, [_result(mape=10.0, window=4)])]
        entries = BestResultAggregator(small_registry).extract_best_results(jobs)

        assert len(entries) == len(small_registry) * 2
        cells = {(e.model_type, e.method) for e in entries}
        assert len(cells) == len(entries)

        baseline = _lookup(entries, 'linear_trend', method='ai').best_result
        assert baseline.is_default is True
        assert baseline.note == DEFAULT_PARAMETERS_NOTE
        assert baseline.parameters == {}

        placeholder = _lookup(entries, 'holt_winters').best_result
        assert placeholder.status == "ineligible"
        assert placeholder.reason == NO_RESULT_REASON
        assert placeholder.composite_score is None

        assert _lookup(entries, 'moving_average', method='ai').best_result.status == "ineligible"

    def test_entry_carries_model_metadata(self, small_registry):
        entries = BestResultAggregator(small_registry).extract_best_results([_job(1, [_result()])], method="grid")
        entry = _lookup(entries, 'holt_winters')
        assert entry.display_name == 'Holt-Winters'
        assert entry.category == 'Exponential Smoothing'
        assert entry.is_seasonal is True
        assert entry.dataset_ref == "sales"

    def test_method_filter(self, small_registry):
        jobs = [_job(1, [_result()], method="grid"), _job(2, [_result(mape=5.0)], method="ai")]
        entries = BestResultAggregator(small_registry).extract_best_results(jobs, method="ai")
        assert {e.method for e in entries} == {"ai"}
        assert _lookup(entries, 'moving_average', method='ai').best_result.job_id == 2

    def test_combinations_per_sku_and_batch(self, small_registry):
        jobs = [
            _job(1, [_result()], sku="A", batch_id="b1"),
            _job(2, [_result()], sku="A", batch_id="b2"),
            _job(3, [_result()], sku="B", batch_id="b1"),
        ]
        entries = BestResultAggregator(small_registry).extract_best_results(jobs, method="grid")
        assert len(entries) == 3 * len(small_registry)

    def test_failed_results_ignored(self, small_registry):
        jobs = [_job(1, [_result(success=False, window=2)])]
        entries = BestResultAggregator(small_registry).extract_best_results(jobs, method="grid")
        assert _lookup(entries, 'moving_average').best_result.status == "ineligible"

    def test_malformed_jobs_skipped(self, small_registry):
        broken = _job(1, [])
        broken.result = {'results': 'oops'}
        bad_params = _job(2, [{**_result(), 'parameters': [3]}])
        good = _job(3, [_result(model_type='simple_exponential_smoothing', alpha=0.3)])

        entries = BestResultAggregator(small_registry).extract_best_results([broken, bad_params, good], method="grid")
        assert len(entries) == len(small_registry)
        assert _lookup(entries, 'moving_average').best_result.status == "ineligible"
        assert _lookup(entries, 'simple_exponential_smoothing').best_result.parameters == {'alpha': 0.3}

    def test_unregistered_model_reported(self, small_registry):
        jobs = [_job(1, [_result(model_type='prophet', changepoint_prior_scale=0.05)], model_id='prophet')]
        entries = BestResultAggregator(small_registry).extract_best_results(jobs, method="grid")
        assert len(entries) == len(small_registry) + 1
        assert entries[-1].model_type == 'prophet'
        assert entries[-1].category == "Unknown"

    def test_no_jobs(self, small_registry):
        assert BestResultAggregator(small_registry).extract_best_results([]) == []
