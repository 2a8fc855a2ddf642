import os
import sys
import logging

from sklearn.base import clone
from sklearn.calibration import CalibratedClassifierCV
from sklearn.pipeline import Pipeline
from sklearn.svm import SVC

sys.path.append(os.path.dirname(os.path.abspath(__file__)))
from preprocessing import build_recipe

logger = logging.getLogger(__name__)

# Tunable hyperparameters: estimator parameter, value range, transform, type.
# Ranges are given on the transformed scale.
PARAMETERS = {
    'cost': {'param': 'svm__estimator__C', 'range': (-10, 5), 'transform': 'log2', 'type': float},
    'degree': {'param': 'svm__estimator__degree', 'range': (1, 3), 'transform': None, 'type': int},
    'scale_factor': {'param': 'svm__estimator__gamma', 'range': (-10, -1), 'transform': 'log10', 'type': float},
}


def build_svm(calibration_folds=5):
    """Polynomial-kernel SVM with Platt-scaled class probabilities.

    The sigmoid is fitted on out-of-fold decision values and a single SVM is
    then refitted on all rows, so prediction uses one model.
    """
    # (scale_factor * <x, x'> + 1) ** degree
    svm = SVC(kernel='poly', coef0=1.0)
    return CalibratedClassifierCV(svm, method='sigmoid', cv=calibration_folds, ensemble=False)


def build_workflow(recipe=None, calibration_folds=5):
    """Recipe followed by a polynomial-kernel SVM"""
    if recipe is None:
        recipe = build_recipe()
    return Pipeline([
        ('recipe', recipe),
        ('svm', build_svm(calibration_folds)),
    ])


def to_estimator_params(params):
    """Map tuning parameter names (cost, degree, scale_factor) to pipeline parameters"""
    estimator_params = {}
    for name, value in params.items():
        if name not in PARAMETERS:
            raise ValueError(f"Unknown tuning parameter: {name}")
        param_def = PARAMETERS[name]
        estimator_params[param_def['param']] = param_def['type'](value)
    return estimator_params


def from_estimator_params(estimator_params):
    """Inverse of to_estimator_params; other pipeline parameters are ignored"""
    params = {}
    for name, param_def in PARAMETERS.items():
        if param_def['param'] not in estimator_params:
            continue
        value = estimator_params[param_def['param']]
        # gamma may still be one of SVC's string defaults
        params[name] = value if isinstance(value, str) else param_def['type'](value)
    return params


def finalize_workflow(workflow, params):
    """Unfitted copy of the workflow with the selected hyperparameters set"""
    final = clone(workflow)
    final.set_params(**to_estimator_params(params))
    logger.info(f"Finalized workflow with parameters: {params}")
    return final
