import os
import sys
import logging
import itertools

import numpy as np
import pandas as pd
from sklearn.metrics import cohen_kappa_score, make_scorer
from sklearn.model_selection import GridSearchCV, RepeatedStratifiedKFold

sys.path.append(os.path.dirname(os.path.abspath(__file__)))
from model import PARAMETERS, to_estimator_params

logger = logging.getLogger(__name__)

# Metric name -> scorer. roc_auc is the multiclass Hand & Till AUC.
METRICS = {
    'accuracy': 'accuracy',
    'roc_auc': 'roc_auc_ovo',
    'kap': make_scorer(cohen_kappa_score),
}


def make_resamples(folds=5, repeats=5, random_state=42):
    """Repeated stratified v-fold cross-validation"""
    return RepeatedStratifiedKFold(n_splits=folds, n_repeats=repeats, random_state=random_state)


def _untransform(values, param_def):
    if param_def['transform'] == 'log2':
        return 2.0 ** values
    if param_def['transform'] == 'log10':
        return 10.0 ** values
    return values


def _back_transform(values, param_def):
    values = _untransform(values, param_def)
    if param_def['type'] is int:
        values = np.unique(np.round(values).astype(int))
    return values


def _resolve_ranges(ranges):
    resolved = {name: param_def['range'] for name, param_def in PARAMETERS.items()}
    for name, value in (ranges or {}).items():
        if name not in PARAMETERS:
            raise ValueError(f"Unknown tuning parameter: {name}")
        resolved[name] = value
    return resolved


def regular_grid(levels=3, ranges=None):
    """Full factorial grid of evenly spaced values on each parameter's transformed scale.

    ``levels`` is either one count for every parameter or a dict of counts per
    parameter. ``ranges`` overrides the default (transformed) ranges.
    """
    ranges = _resolve_ranges(ranges)
    if not isinstance(levels, dict):
        levels = {name: levels for name in PARAMETERS}

    axes = []
    for name, param_def in PARAMETERS.items():
        n = int(levels.get(name, 3))
        if n < 1:
            raise ValueError(f"levels for '{name}' must be at least 1, got {n}")
        low, high = ranges[name]
        axes.append(_back_transform(np.linspace(low, high, n), param_def))

    grid = pd.DataFrame(list(itertools.product(*axes)), columns=list(PARAMETERS))
    grid['degree'] = grid['degree'].astype(int)
    return grid


def random_grid(size=10, ranges=None, random_state=42):
    """Candidates drawn uniformly on each parameter's transformed scale"""
    if size < 1:
        raise ValueError(f"size must be at least 1, got {size}")
    ranges = _resolve_ranges(ranges)
    rng = np.random.default_rng(random_state)

    columns = {}
    for name, param_def in PARAMETERS.items():
        low, high = ranges[name]
        if param_def['type'] is int:
            columns[name] = rng.integers(int(low), int(high) + 1, size=size)
        else:
            columns[name] = _untransform(rng.uniform(low, high, size=size), param_def)

    grid = pd.DataFrame(columns).drop_duplicates().reset_index(drop=True)
    grid['degree'] = grid['degree'].astype(int)
    return grid


class TuneResults:
    """Resampled performance of every grid candidate"""

    def __init__(self, grid, cv_results, metrics, n_splits):
        self.grid = grid.reset_index(drop=True)
        self.cv_results = cv_results
        self.metrics = list(metrics)
        self.n_splits = n_splits

    def split_scores(self, metric):
        """Array of shape (n_candidates, n_splits)"""
        self._check_metric(metric)
        return np.column_stack([
            self.cv_results[f'split{k}_test_{metric}'] for k in range(self.n_splits)
        ])

    def _check_metric(self, metric):
        if metric not in self.metrics:
            raise ValueError(f"Metric '{metric}' was not computed; available: {self.metrics}")

    def __len__(self):
        return len(self.grid)

    def __repr__(self):
        return (f"TuneResults(candidates={len(self.grid)}, "
                f"resamples={self.n_splits}, metrics={self.metrics})")


def tune_grid(workflow, grid, resamples, X, y, metrics=('accuracy', 'roc_auc'), n_jobs=None):
    """Evaluate every grid candidate on every resample"""
    for metric in metrics:
        if metric not in METRICS:
            raise ValueError(f"Unknown metric: {metric}")
    if len(grid) == 0:
        raise ValueError("Tuning grid is empty")

    if n_jobs is None:
        n_jobs = int(os.getenv("N_JOBS", -1))

    param_grid = [
        {k: [v] for k, v in to_estimator_params(row).items()}
        for row in grid.to_dict('records')
    ]
    scoring = {metric: METRICS[metric] for metric in metrics}

    logger.info(f"Tuning {len(grid)} candidates over {resamples.get_n_splits()} resamples...")
    search = GridSearchCV(
        workflow, param_grid, scoring=scoring, cv=resamples,
        refit=False, n_jobs=n_jobs, error_score=np.nan, verbose=1
    )
    search.fit(X, y)

    return TuneResults(grid, search.cv_results_, metrics, search.n_splits_)


def collect_metrics(results):
    """One row per candidate and metric, with the mean and standard error over resamples"""
    width = len(str(len(results)))
    configs = [f"Model{i + 1:0{max(width, 2)}d}" for i in range(len(results))]

    frames = []
    for metric in results.metrics:
        scores = results.split_scores(metric)
        n = np.sum(~np.isnan(scores), axis=1)
        with np.errstate(invalid='ignore', divide='ignore'):
            mean = np.nanmean(scores, axis=1)
            std_err = np.nanstd(scores, axis=1, ddof=1) / np.sqrt(n)

        frame = results.grid.copy()
        frame['.metric'] = metric
        frame['mean'] = mean
        frame['n'] = n
        frame['std_err'] = std_err
        frame['.config'] = configs
        frames.append(frame)

    return pd.concat(frames, ignore_index=True)


def show_best(results, metric='roc_auc', n=5):
    """Top ``n`` candidates by mean resampled ``metric``"""
    results._check_metric(metric)
    metrics_df = collect_metrics(results)
    metrics_df = metrics_df[metrics_df['.metric'] == metric]
    if metrics_df['mean'].isna().all():
        raise ValueError(f"All candidates failed for '{metric}'")
    return metrics_df.sort_values('mean', ascending=False, kind='mergesort').head(n).reset_index(drop=True)


def _row_params(row):
    return {name: PARAMETERS[name]['type'](row[name]) for name in PARAMETERS}


def select_best(results, metric='roc_auc'):
    """Hyperparameters of the candidate with the best mean ``metric``"""
    best = show_best(results, metric, n=1).iloc[0]
    params = _row_params(best)
    logger.info(f"Best parameters by {metric}: {params} (mean={best['mean']:.4f})")
    return params


def select_by_one_std_err(results, metric='roc_auc', order=('degree', 'cost')):
    """Simplest candidate whose mean is within one standard error of the best.

    Simplicity is the ascending sort over ``order``.
    """
    for name in order:
        if name not in PARAMETERS:
            raise ValueError(f"Unknown tuning parameter: {name}")

    ranked = show_best(results, metric, n=len(results))
    best = ranked.iloc[0]
    std_err = 0.0 if np.isnan(best['std_err']) else best['std_err']
    threshold = best['mean'] - std_err

    within = ranked[ranked['mean'] >= threshold]
    simplest = within.sort_values(list(order), kind='mergesort').iloc[0]
    params = _row_params(simplest)
    logger.info(f"One-standard-error choice by {metric}: {params} (threshold={threshold:.4f})")
    return params
