import os
import sys
import pytest
import numpy as np
import pandas as pd
from sklearn.model_selection import RepeatedStratifiedKFold

# Add src to path for imports
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from data import load_dataset, split_data
from model import build_workflow, finalize_workflow, to_estimator_params, from_estimator_params
from tuning import (
    TuneResults, make_resamples, regular_grid, random_grid, tune_grid,
    collect_metrics, show_best, select_best, select_by_one_std_err
)


def make_results():
    """Three candidates scored on four resamples"""
    grid = pd.DataFrame({
        'cost': [1.0, 4.0, 0.5],
        'degree': [1, 3, 2],
        'scale_factor': [0.01, 0.01, 0.01],
    })
    roc_auc = np.array([
        [0.90, 0.92, 0.91, 0.93],
        [0.95, 0.97, 0.96, 0.96],
        [0.95, 0.96, 0.96, 0.962],
    ])
    accuracy = np.array([
        [0.80, 0.80, 0.80, 0.80],
        [0.90, 0.90, 0.90, 0.90],
        [0.85, 0.85, 0.85, 0.85],
    ])
    cv_results = {}
    for k in range(4):
        cv_results[f'split{k}_test_roc_auc'] = roc_auc[:, k]
        cv_results[f'split{k}_test_accuracy'] = accuracy[:, k]
    return TuneResults(grid, cv_results, ['accuracy', 'roc_auc'], n_splits=4)


class TestGrids:
    """Test suite for tuning grids"""

    def test_regular_grid_default(self):
        grid = regular_grid()

        assert len(grid) == 27
        assert list(grid.columns) == ['cost', 'degree', 'scale_factor']
        assert np.allclose(sorted(grid['cost'].unique()), [2 ** -10, 2 ** -2.5, 2 ** 5])
        assert sorted(grid['degree'].unique()) == [1, 2, 3]
        assert np.allclose(sorted(grid['scale_factor'].unique()), [1e-10, 10 ** -5.5, 1e-1])

    def test_regular_grid_integer_levels_deduplicated(self):
        grid = regular_grid(levels={'cost': 2, 'degree': 5, 'scale_factor': 1})

        # Only three integer degrees exist in [1, 3]
        assert sorted(grid['degree'].unique()) == [1, 2, 3]
        assert len(grid) == 2 * 3 * 1
        assert grid['scale_factor'].unique().tolist() == [pytest.approx(1e-10)]

    def test_regular_grid_custom_ranges(self):
        grid = regular_grid(levels=2, ranges={'cost': (0, 1), 'degree': (2, 2)})

        assert sorted(grid['cost'].unique()) == [1.0, 2.0]
        assert grid['degree'].unique().tolist() == [2]

    def test_regular_grid_invalid(self):
        with pytest.raises(ValueError, match="at least 1"):
            regular_grid(levels=0)
        with pytest.raises(ValueError, match="Unknown tuning parameter"):
            regular_grid(ranges={'gamma': (0, 1)})

    def test_random_grid(self):
        grid = random_grid(size=20, random_state=1)

        assert 0 < len(grid) <= 20
        assert grid['cost'].between(2 ** -10, 2 ** 5).all()
        assert grid['degree'].isin([1, 2, 3]).all()
        assert grid['scale_factor'].between(1e-10, 1e-1).all()
        assert random_grid(size=20, random_state=1).equals(grid)

    def test_random_grid_invalid_size(self):
        with pytest.raises(ValueError):
            random_grid(size=0)


class TestWorkflow:
    """Test suite for the SVM workflow"""

    def test_workflow_steps(self):
        workflow = build_workflow()
        calibrated = workflow.named_steps['svm']
        svm = calibrated.estimator

        assert list(workflow.named_steps) == ['recipe', 'svm']
        assert svm.kernel == 'poly'
        assert svm.coef0 == 1.0
        assert calibrated.method == 'sigmoid'
        assert calibrated.ensemble is False

    @pytest.mark.filterwarnings("error::FutureWarning")
    def test_workflow_probabilities_without_deprecated_svc_option(self):
        X_train, X_test, y_train, _ = split_data(load_dataset())
        workflow = finalize_workflow(build_workflow(), {'cost': 1.0, 'degree': 2, 'scale_factor': 0.1})
        workflow.fit(X_train, y_train)

        probabilities = workflow.predict_proba(X_test)
        assert workflow.named_steps['svm'].estimator.probability is False
        assert probabilities.shape == (len(X_test), 3)
        assert np.allclose(probabilities.sum(axis=1), 1.0)
        # one refitted SVM, not an ensemble of fold models
        assert len(workflow.named_steps['svm'].calibrated_classifiers_) == 1

    def test_parameter_mapping(self):
        params = {'cost': 2.0, 'degree': 2.0, 'scale_factor': 0.1}
        estimator_params = to_estimator_params(params)

        assert estimator_params == {
            'svm__estimator__C': 2.0, 'svm__estimator__degree': 2, 'svm__estimator__gamma': 0.1
        }
        assert isinstance(estimator_params['svm__estimator__degree'], int)
        assert from_estimator_params(estimator_params) == {'cost': 2.0, 'degree': 2, 'scale_factor': 0.1}

    def test_unknown_parameter(self):
        with pytest.raises(ValueError, match="Unknown tuning parameter"):
            to_estimator_params({'kernel': 'rbf'})

    def test_finalize_workflow_leaves_original_untouched(self):
        workflow = build_workflow()
        final = finalize_workflow(workflow, {'cost': 8.0, 'degree': 3, 'scale_factor': 0.01})

        assert final.named_steps['svm'].estimator.C == 8.0
        assert final.named_steps['svm'].estimator.degree == 3
        assert final.named_steps['svm'].estimator.gamma == 0.01
        assert workflow.named_steps['svm'].estimator.C == 1.0


class TestResultSelection:
    """Test suite for collecting and selecting tuning results"""

    def test_collect_metrics_shape(self):
        metrics = collect_metrics(make_results())

        assert len(metrics) == 6
        assert set(metrics['.metric']) == {'accuracy', 'roc_auc'}
        assert metrics['.config'].tolist()[:3] == ['Model01', 'Model02', 'Model03']
        assert (metrics['n'] == 4).all()

    def test_collect_metrics_mean_and_std_err(self):
        metrics = collect_metrics(make_results())
        row = metrics[(metrics['.metric'] == 'roc_auc') & (metrics['.config'] == 'Model02')].iloc[0]

        assert row['mean'] == pytest.approx(0.96)
        # sample standard deviation over four resamples, divided by sqrt(4)
        assert row['std_err'] == pytest.approx(np.std([0.95, 0.97, 0.96, 0.96], ddof=1) / 2)

        accuracy = metrics[metrics['.metric'] == 'accuracy']
        assert np.allclose(accuracy['std_err'], 0.0)

    def test_collect_metrics_ignores_failed_resamples(self):
        results = make_results()
        results.cv_results['split0_test_accuracy'] = np.array([np.nan, 0.9, 0.85])
        metrics = collect_metrics(results)
        first = metrics[(metrics['.metric'] == 'accuracy') & (metrics['.config'] == 'Model01')].iloc[0]

        assert first['n'] == 3
        assert first['mean'] == pytest.approx(0.8)

    def test_show_best(self):
        best = show_best(make_results(), metric='roc_auc', n=2)

        assert len(best) == 2
        assert best['.config'].tolist() == ['Model02', 'Model03']
        assert best['mean'].is_monotonic_decreasing

    def test_select_best(self):
        params = select_best(make_results(), metric='roc_auc')

        assert params == {'cost': 4.0, 'degree': 3, 'scale_factor': 0.01}
        assert isinstance(params['degree'], int)

    def test_select_best_by_accuracy(self):
        assert select_best(make_results(), metric='accuracy')['cost'] == 4.0

    def test_select_by_one_std_err_prefers_simpler_model(self):
        params = select_by_one_std_err(make_results(), metric='roc_auc')

        # Model03 (degree 2) is within one standard error of Model02 (degree 3)
        assert params == {'cost': 0.5, 'degree': 2, 'scale_factor': 0.01}

    def test_select_by_one_std_err_zero_spread(self):
        # No resampling noise: only the best candidate qualifies
        params = select_by_one_std_err(make_results(), metric='accuracy')

        assert params['cost'] == 4.0

    @pytest.mark.filterwarnings("ignore::RuntimeWarning")
    def test_all_candidates_failed(self):
        results = make_results()
        for k in range(4):
            results.cv_results[f'split{k}_test_roc_auc'] = np.full(3, np.nan)

        with pytest.raises(ValueError, match="All candidates failed for 'roc_auc'"):
            select_best(results, metric='roc_auc')
        with pytest.raises(ValueError, match="All candidates failed"):
            select_by_one_std_err(results, metric='roc_auc')
        # accuracy is still usable
        assert select_best(results, metric='accuracy')['cost'] == 4.0

    def test_unknown_metric(self):
        with pytest.raises(ValueError, match="was not computed"):
            select_best(make_results(), metric='kap')
        with pytest.raises(ValueError, match="Unknown tuning parameter"):
            select_by_one_std_err(make_results(), order=('kernel',))


class TestTuneGrid:
    """Resampled tuning on the wine data"""

    @pytest.fixture(scope="class")
    def training_data(self):
        df = load_dataset()
        X_train, _, y_train, _ = split_data(df)
        return X_train, y_train

    def test_make_resamples(self):
        resamples = make_resamples()

        assert isinstance(resamples, RepeatedStratifiedKFold)
        assert resamples.get_n_splits() == 25

    def test_tune_grid(self, training_data):
        X_train, y_train = training_data
        grid = regular_grid(levels=2)
        results = tune_grid(build_workflow(), grid, make_resamples(folds=3, repeats=1), X_train, y_train, n_jobs=1)

        assert len(results) == 8
        assert results.n_splits == 3

        metrics = collect_metrics(results)
        assert len(metrics) == 16
        valid = metrics['mean'].dropna()
        assert valid.between(0, 1).all()

        best = show_best(results, metric='roc_auc', n=1).iloc[0]
        assert best['mean'] > 0.9
        assert set(select_best(results)) == {'cost', 'degree', 'scale_factor'}

    def test_tune_grid_unknown_metric(self, training_data):
        X_train, y_train = training_data

        with pytest.raises(ValueError, match="Unknown metric"):
            tune_grid(build_workflow(), regular_grid(levels=1), make_resamples(2, 1), X_train, y_train,
                      metrics=('brier',))

    def test_tune_grid_empty_grid(self, training_data):
        X_train, y_train = training_data

        with pytest.raises(ValueError, match="empty"):
            tune_grid(build_workflow(), regular_grid().iloc[:0], make_resamples(2, 1), X_train, y_train)
