import os
import sys
import math
import numpy as np
import pandas as pd
from dotenv import load_dotenv
import logging
from datetime import datetime
import json

# Add src to path for imports
sys.path.append(os.path.dirname(os.path.abspath(__file__)))
from data import FEATURE_NAMES
from model import from_estimator_params
from utils import load_production_model

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()

# Observed ranges of the UCI wine data
FEATURE_RANGES = {
    'alcohol': (11.0, 15.0),
    'malic_acid': (0.7, 5.8),
    'ash': (1.4, 3.2),
    'alcalinity_of_ash': (10.0, 30.0),
    'magnesium': (70, 162),
    'total_phenols': (0.98, 3.9),
    'flavanoids': (0.34, 5.1),
    'nonflavanoid_phenols': (0.13, 0.66),
    'proanthocyanins': (0.41, 3.6),
    'color_intensity': (1.3, 13.0),
    'hue': (0.48, 1.71),
    'od280/od315_of_diluted_wines': (1.27, 4.0),
    'proline': (278, 1680)
}


class VarietalPredictor:
    def __init__(self, model=None, model_version=None):
        self.model = model
        self.model_version = model_version
        self.feature_names = list(FEATURE_NAMES)
        if self.model is None:
            self.load_model()
        else:
            self._sync_with_model()

    def _sync_with_model(self):
        # A fitted pipeline remembers the columns it was trained on
        if hasattr(self.model, 'feature_names_in_'):
            self.feature_names = [str(name) for name in self.model.feature_names_in_]

    @property
    def class_names(self):
        if self.model is not None and hasattr(self.model, 'classes_'):
            return [str(c) for c in self.model.classes_]
        return []

    def load_model(self):
        """Load the production model"""
        logger.info("Loading production model...")
        self.model = load_production_model()

        if self.model is None:
            logger.error("No model available")
            self.model_version = None
            return False

        self.model_version = "production"
        self._sync_with_model()
        logger.info(f"Model loaded successfully: {self.model_version}")
        return True

    def validate_input(self, features):
        """Validate input features.

        ``features`` is a list in training column order or a dict keyed by
        feature name. Missing values (None/NaN) are passed through as NaN and
        imputed by the model's recipe.
        """
        n_expected = len(self.feature_names)

        if isinstance(features, dict):
            unknown = set(features) - set(self.feature_names)
            if unknown:
                raise ValueError(f"Unknown features: {sorted(unknown)}")
            features = [features.get(name) for name in self.feature_names]
        elif not isinstance(features, (list, tuple, np.ndarray)):
            raise ValueError("Features must be a list, numpy array or dict")

        if len(features) != n_expected:
            raise ValueError(f"Expected {n_expected} features, got {len(features)}")

        values = []
        for value in features:
            if value is None:
                values.append(float('nan'))
                continue
            if isinstance(value, (bool, np.bool_)):
                raise ValueError("All features must be numeric")
            try:
                values.append(float(value))
            except (ValueError, TypeError):
                raise ValueError("All features must be numeric")

        if all(math.isnan(v) for v in values):
            raise ValueError("At least one feature value is required")

        warnings = []
        for name, value in zip(self.feature_names, values):
            if math.isnan(value):
                warnings.append(f"{name}: missing (will be imputed)")
            elif name in FEATURE_RANGES:
                min_val, max_val = FEATURE_RANGES[name]
                if not (min_val <= value <= max_val):
                    warnings.append(f"{name}: {value} (expected: {min_val}-{max_val})")

        return values, warnings

    def predict_single(self, features, return_probabilities=False):
        """Make prediction for single sample"""
        if self.model is None:
            raise RuntimeError("Model not loaded")

        features, warnings = self.validate_input(features)
        df = pd.DataFrame([features], columns=self.feature_names)

        prediction = self.model.predict(df)
        result = {
            'prediction': str(prediction[0]),
            'model_version': self.model_version,
            'timestamp': datetime.now().isoformat(),
            'warnings': warnings
        }

        if return_probabilities and hasattr(self.model, 'predict_proba'):
            probabilities = self.model.predict_proba(df)[0]
            result['probabilities'] = {
                cls: float(prob) for cls, prob in zip(self.class_names, probabilities)
            }
            result['confidence'] = float(max(probabilities))

        return result

    def predict_batch(self, features_list, return_probabilities=False):
        """Make predictions for multiple samples"""
        if self.model is None:
            raise RuntimeError("Model not loaded")

        results = []
        for i, features in enumerate(features_list):
            try:
                result = self.predict_single(features, return_probabilities)
                result['sample_id'] = i
                results.append(result)
            except ValueError as e:
                results.append({
                    'sample_id': i,
                    'error': str(e),
                    'timestamp': datetime.now().isoformat()
                })

        return results

    def get_model_info(self):
        """Get model information"""
        info = {
            'model_loaded': self.model is not None,
            'model_version': self.model_version,
            'model_type': type(self.model).__name__ if self.model is not None else None,
            'expected_features': len(self.feature_names),
            'feature_names': self.feature_names,
            'class_names': self.class_names
        }

        # Tuned SVM hyperparameters of a fitted workflow
        if self.model is not None and hasattr(self.model, 'named_steps') and 'svm' in self.model.named_steps:
            info['model_params'] = from_estimator_params(self.model.get_params())

        return info


def main():
    """Score a sample wine with the production model"""
    predictor = VarietalPredictor()
    if predictor.model is None:
        logger.error("No model available, run train.py first")
        return False

    sample_features = [13.20, 1.78, 2.14, 11.2, 100, 2.65, 2.76, 0.26, 1.28, 4.38, 1.05, 3.40, 1050]

    try:
        result = predictor.predict_single(sample_features, return_probabilities=True)
        print("\nSingle Prediction:")
        print(json.dumps(result, indent=2))

        # A sample with a missing measurement
        incomplete = list(sample_features)
        incomplete[4] = None
        batch_results = predictor.predict_batch([sample_features, incomplete], return_probabilities=True)
        print("\nBatch Prediction:")
        print(json.dumps(batch_results, indent=2))

        print("\nModel Info:")
        print(json.dumps(predictor.get_model_info(), indent=2))
        return True

    except Exception as e:
        logger.error(f"Prediction failed: {e}")
        return False


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
