"""
Unit tests for the grid search optimizer.
"""

import numpy as np
import pytest

from sku_optimizer.errors import ModelNotFoundError, ValidationError
from sku_optimizer.models.forecasters import StatsModelsFitter
from sku_optimizer.models.registry import ModelRegistry
from sku_optimizer.services.grid_search import GridSearchOptimizer, expand_grid


SERIES = np.array([float(100 + (i % 6) * 5 + i) for i in range(30)])


class TestExpandGrid:

    def test_cartesian_product_in_key_order(self):
        combos = expand_grid({'a': [1, 2], 'b': ['x', 'y', 'z']})
        assert len(combos) == 6
        assert combos[0] == {'a': 1, 'b': 'x'}
        assert combos[-1] == {'a': 2, 'b': 'z'}

    def test_explicit_configurations(self):
        grid = [{'p': 1, 'd': 1, 'q': 1}, {'p': 0, 'd': 1, 'q': 1}]
        combos = expand_grid(grid)
        assert combos == grid
        combos[0]['p'] = 9
        assert grid[0]['p'] == 1

    def test_empty_grid_yields_one_combination(self):
        assert expand_grid({}) == [{}]

    def test_default_grid_sizes(self):
        optimizer = GridSearchOptimizer(ModelRegistry.default())
        assert len(optimizer.generate_parameter_combinations('double_exponential_smoothing')) == 72
        assert len(optimizer.generate_parameter_combinations('arima')) == 4
        assert len(optimizer.generate_parameter_combinations('holt_winters')) == 500


class TestRunGridSearch:

    def test_exhaustive_and_best_by_mape(self, small_registry, scripted_fitter):
        optimizer = GridSearchOptimizer(small_registry, scripted_fitter)
        run = optimizer.run_grid_search(SERIES, ['moving_average'])

        assert run.type == "grid"
        assert len(run.results) == 10
        assert [r.parameters['window'] for r in run.results] == [2, 3, 4, 5, 6, 7, 8, 9, 10, 12]
        assert run.best_result.parameters == {'window': 4}
        assert run.best_result.mape == 5.0
        assert run.best_per_model['moving_average'].parameters == {'window': 4}
        assert run.training_data_size == 24
        assert run.validation_data_size == 6

    def test_defaults_to_participating_models(self, small_registry, scripted_fitter):
        optimizer = GridSearchOptimizer(small_registry, scripted_fitter)
        run = optimizer.run_grid_search(SERIES)

        assert len(run.results) == 10 + 5 + 4
        assert {r.model_type for r in run.results} == {'moving_average', 'simple_exponential_smoothing', 'holt_winters'}
        assert set(run.best_per_model) == {'moving_average', 'simple_exponential_smoothing', 'holt_winters'}

    def test_progress_reported_after_each_combination(self, small_registry, scripted_fitter):
        updates = []
        optimizer = GridSearchOptimizer(small_registry, scripted_fitter)
        optimizer.run_grid_search(SERIES, ['moving_average', 'simple_exponential_smoothing'], on_progress=updates.append)

        assert len(updates) == 15
        percentages = [u.percentage for u in updates]
        assert percentages == sorted(percentages)
        assert percentages[-1] == 100
        assert updates[0].percentage == 7
        assert updates[0].current_model == 'moving_average'
        assert updates[-1].current_model == 'simple_exponential_smoothing'
        assert all(u.phase == "grid" and u.total == 15 for u in updates)

    def test_fit_failures_do_not_abort(self, small_registry, fitter_factory):
        fitter = fitter_factory(fail=lambda model, params: params.get('window') in (2, 4))
        run = GridSearchOptimizer(small_registry, fitter).run_grid_search(SERIES, ['moving_average'])

        assert len(run.results) == 10
        failed = [r for r in run.results if not r.success]
        assert [r.parameters['window'] for r in failed] == [2, 4]
        assert all("diverged" in r.error for r in failed)
        assert all(r.mape is None and r.accuracy is None for r in failed)
        assert run.best_result.parameters['window'] in (3, 5)
        assert run.summary.total_models == 10
        assert run.summary.successful_models == 8

    def test_unexpected_exceptions_are_recorded(self, small_registry):
        class ExplodingFitter:
            def fit(self, train, validation, model_type, parameters):
                raise RuntimeError("boom")

        run = GridSearchOptimizer(small_registry, ExplodingFitter()).run_grid_search(SERIES, ['simple_exponential_smoothing'])
        assert all(not r.success for r in run.results)
        assert run.results[0].error == "RuntimeError: boom"
        assert run.best_result is None
        assert run.best_per_model == {}
        assert run.summary.successful_models == 0

    def test_first_seen_wins_a_tie(self, small_registry, fitter_factory):
        fitter = fitter_factory(scores={'moving_average': lambda p: 10.0})
        run = GridSearchOptimizer(small_registry, fitter).run_grid_search(SERIES, ['moving_average'])
        assert run.best_result.parameters == {'window': 2}

    def test_explicit_grids_override_registry(self, small_registry, scripted_fitter):
        optimizer = GridSearchOptimizer(small_registry, scripted_fitter)
        run = optimizer.run_grid_search(SERIES, ['moving_average'], grids={'moving_average': {'window': [3, 5]}})
        assert [r.parameters for r in run.results] == [{'window': 3}, {'window': 5}]
        assert small_registry.parameter_grid('moving_average')['window'][0] == 2

    def test_summary_statistics(self, small_registry, fitter_factory):
        scores = {'moving_average': lambda p: {2: 10.0, 3: 20.0}.get(p['window'], 30.0)}
        fitter = fitter_factory(scores=scores)
        optimizer = GridSearchOptimizer(small_registry, fitter)
        run = optimizer.run_grid_search(SERIES, ['moving_average'], grids={'moving_average': {'window': [2, 3, 4]}})

        assert run.summary.best_accuracy == 90.0
        assert run.summary.worst_accuracy == 70.0
        assert run.summary.average_accuracy == pytest.approx(80.0)
        assert run.summary.accuracy_std_dev == pytest.approx(np.std([90.0, 80.0, 70.0]))

    def test_accuracy_derived_from_mape(self, small_registry):
        class ErrorMetricsFitter:
            def fit(self, train, validation, model_type, parameters):
                mape = 2.0 * parameters['window']
                return {'forecast': [0.0] * len(validation), 'mape': mape, 'rmse': 1.0, 'mae': 0.5}

        optimizer = GridSearchOptimizer(small_registry, ErrorMetricsFitter())
        run = optimizer.run_grid_search(SERIES, ['moving_average'], grids={'moving_average': {'window': [2, 3, 4]}})

        assert all(r.success for r in run.results)
        assert [r.accuracy for r in run.results] == [96.0, 94.0, 92.0]
        assert run.best_result.parameters == {'window': 2}

    def test_custom_accuracy_transform(self, small_registry, scripted_fitter):
        optimizer = GridSearchOptimizer(
            small_registry, scripted_fitter, accuracy_transform=lambda mape: 1 / (1 + mape)
        )
        run = optimizer.run_grid_search(SERIES, ['moving_average'], grids={'moving_average': {'window': [4]}})
        assert run.results[0].mape == 5.0
        assert run.results[0].accuracy == pytest.approx(1 / 6)

    def test_top_results(self, small_registry, scripted_fitter):
        run = GridSearchOptimizer(small_registry, scripted_fitter).run_grid_search(SERIES, ['moving_average'])
        top = GridSearchOptimizer.top_results(run.results, 3)
        assert [r.parameters['window'] for r in top] == [4, 3, 5]


class TestRunGridSearchValidation:

    def test_empty_series(self, small_registry, scripted_fitter):
        with pytest.raises(ValidationError, match="empty"):
            GridSearchOptimizer(small_registry, scripted_fitter).run_grid_search([], ['moving_average'])

    def test_non_finite_series(self, small_registry, scripted_fitter):
        with pytest.raises(ValidationError, match="NaN"):
            GridSearchOptimizer(small_registry, scripted_fitter).run_grid_search(
                [1.0, float('nan'), 3.0, 4.0, 5.0], ['moving_average']
            )

    def test_no_models(self, small_registry, scripted_fitter):
        with pytest.raises(ValidationError, match="No model types"):
            GridSearchOptimizer(small_registry, scripted_fitter).run_grid_search(SERIES, [])

    def test_split_leaves_nothing_to_validate(self, small_registry, scripted_fitter):
        optimizer = GridSearchOptimizer(small_registry, scripted_fitter, validation_ratio=0.0)
        with pytest.raises(ValidationError, match="Insufficient data"):
            optimizer.run_grid_search(SERIES, ['moving_average'])

    def test_split_leaves_nothing_to_train(self, small_registry, scripted_fitter):
        with pytest.raises(ValidationError, match="Insufficient data"):
            GridSearchOptimizer(small_registry, scripted_fitter).run_grid_search([5.0], ['moving_average'])

    def test_unknown_model(self, small_registry, scripted_fitter):
        with pytest.raises(ModelNotFoundError):
            GridSearchOptimizer(small_registry, scripted_fitter).run_grid_search(SERIES, ['prophet'])
        assert scripted_fitter.calls == []

    def test_invalid_ratio(self, small_registry):
        with pytest.raises(ValidationError):
            GridSearchOptimizer(small_registry, validation_ratio=1.0)


class TestGridSearchWithStatsModels:

    def test_moving_average_windows(self):
        values = [12.0, 15.0, 14.0, 16.0, 18.0, 17.0, 19.0, 21.0, 20.0, 22.0, 24.0, 23.0,
                  25.0, 27.0, 26.0, 28.0, 30.0, 29.0, 31.0, 33.0, 32.0, 34.0, 36.0, 35.0]
        optimizer = GridSearchOptimizer(ModelRegistry.default(), StatsModelsFitter())
        run = optimizer.run_grid_search(values, ['moving_average'], grids={'moving_average': {'window': [2, 3, 4]}})

        assert len(run.results) == 3
        assert all(r.success for r in run.results)
        assert run.training_data_size == 19
        assert run.validation_data_size == 5
        best = min(run.results, key=lambda r: r.mape)
        assert run.best_result.parameters == best.parameters
        # An upward trend punishes longer windows
        assert run.best_result.parameters == {'window': 2}
        assert all(r.accuracy == pytest.approx(100 - r.mape) for r in run.results)
