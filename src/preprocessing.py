import logging

import numpy as np
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.impute import KNNImputer
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.utils.validation import check_is_fitted

logger = logging.getLogger(__name__)


class NearZeroVarianceFilter(BaseEstimator, TransformerMixin):
    """Drop columns that are constant or nearly so.

    A column is removed when it holds a single distinct value, or when the
    ratio of the most common value's count to the second most common exceeds
    ``freq_cut`` while the percentage of distinct values is at or below
    ``unique_cut``.
    """

    def __init__(self, freq_cut=95 / 5, unique_cut=10):
        self.freq_cut = freq_cut
        self.unique_cut = unique_cut

    def _column_stats(self, column):
        # percent unique is taken over every row, missing ones included
        n_rows = column.size
        column = column[~np.isnan(column)]
        if column.size == 0:
            return np.inf, 0.0, 0

        _, counts = np.unique(column, return_counts=True)
        n_unique = len(counts)
        if n_unique == 1:
            return np.inf, 100.0 / n_rows, n_unique

        top_two = np.sort(counts)[-2:]
        freq_ratio = top_two[1] / top_two[0]
        percent_unique = 100.0 * n_unique / n_rows
        return freq_ratio, percent_unique, n_unique

    def fit(self, X, y=None):
        if hasattr(X, 'columns'):
            self.feature_names_in_ = np.asarray(X.columns, dtype=object)
        X = np.asarray(X, dtype=float)
        if X.ndim != 2:
            raise ValueError(f"Expected a 2D array, got {X.ndim}D")

        self.n_features_in_ = X.shape[1]
        self.freq_ratio_ = np.empty(X.shape[1])
        self.percent_unique_ = np.empty(X.shape[1])
        support = np.ones(X.shape[1], dtype=bool)

        for i in range(X.shape[1]):
            freq_ratio, percent_unique, n_unique = self._column_stats(X[:, i])
            self.freq_ratio_[i] = freq_ratio
            self.percent_unique_[i] = percent_unique
            if n_unique <= 1:
                support[i] = False
            elif freq_ratio > self.freq_cut and percent_unique <= self.unique_cut:
                support[i] = False

        if not support.any():
            raise ValueError("All columns have near-zero variance")

        self.support_ = support
        removed = int((~support).sum())
        if removed:
            logger.info(f"Removing {removed} near-zero-variance column(s)")
        return self

    def transform(self, X):
        check_is_fitted(self, 'support_')
        X = np.asarray(X, dtype=float)
        if X.shape[1] != self.n_features_in_:
            raise ValueError(
                f"X has {X.shape[1]} features, but NearZeroVarianceFilter "
                f"is expecting {self.n_features_in_} features"
            )
        return X[:, self.support_]

    def get_support(self, indices=False):
        check_is_fitted(self, 'support_')
        if indices:
            return np.flatnonzero(self.support_)
        return self.support_

    def get_feature_names_out(self, input_features=None):
        check_is_fitted(self, 'support_')
        if input_features is None:
            input_features = getattr(
                self, 'feature_names_in_',
                np.asarray([f"x{i}" for i in range(self.n_features_in_)], dtype=object)
            )
        input_features = np.asarray(input_features, dtype=object)
        return input_features[self.support_]


def build_recipe(neighbors=5, freq_cut=95 / 5, unique_cut=10):
    """KNN imputation, centering and scaling, then near-zero-variance removal"""
    return Pipeline([
        ('impute', KNNImputer(n_neighbors=neighbors)),
        ('normalize', StandardScaler()),
        ('nzv', NearZeroVarianceFilter(freq_cut=freq_cut, unique_cut=unique_cut)),
    ])


def recipe_feature_names(recipe):
    """Names of the columns that come out of a fitted recipe"""
    return list(recipe.get_feature_names_out())
