import os
import re
import sys
import numpy as np
import pandas as pd
import mlflow
import mlflow.sklearn
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.metrics import (
    accuracy_score, precision_score, recall_score, f1_score, cohen_kappa_score,
    confusion_matrix, classification_report, roc_curve, roc_auc_score, auc
)
from dotenv import load_dotenv
import json
from datetime import datetime
import logging

# Add src to path for imports
sys.path.append(os.path.dirname(os.path.abspath(__file__)))
from data import VARIETAL_NAMES, load_dataset, split_data, get_label_column
from utils import load_production_model, get_model_name

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()


def metric_key(name):
    return re.sub(r'[^0-9A-Za-z_]+', '_', str(name)).strip('_')


def collect_predictions(model, X, y=None, label_column=None, predicted=None, probabilities=None):
    """Predicted class and per-class probabilities, one row per sample.

    Pass ``predicted`` and ``probabilities`` when the model has already scored ``X``.
    """
    label_column = get_label_column(label_column)
    predictions = pd.DataFrame(index=X.index)
    if y is not None:
        predictions[label_column] = np.asarray(y)
    predictions['.pred_class'] = model.predict(X) if predicted is None else predicted
    if probabilities is None and hasattr(model, 'predict_proba'):
        probabilities = model.predict_proba(X)
    if probabilities is not None:
        for i, cls in enumerate(model.classes_):
            predictions[f'.pred_{cls}'] = probabilities[:, i]
    return predictions


class ModelEvaluator:
    def __init__(self, class_names=None):
        self.model = None
        self.model_name = get_model_name()
        # same order as a fitted model's classes_ and predict_proba columns
        self.class_names = [str(c) for c in class_names] if class_names is not None else sorted(VARIETAL_NAMES)
        self.label_column = get_label_column()
        self.feature_names = None

    def load_model_for_evaluation(self, model_version="production"):
        """Load the aliased production model or a specific registry version"""
        try:
            if model_version == "production":
                self.model = load_production_model()
                logger.info("Loaded production model")
            else:
                model_uri = f"models:/{self.model_name}/{model_version}"
                self.model = mlflow.sklearn.load_model(model_uri)
                logger.info(f"Loaded model version: {model_version}")
        except Exception as e:
            logger.error(f"Failed to load model: {e}")
            return False

        if self.model is not None and hasattr(self.model, 'classes_'):
            self.class_names = [str(c) for c in self.model.classes_]

        return self.model is not None

    def load_test_data(self, test_size=0.25, random_state=42):
        """Reproduce the held-out split used for training"""
        df = load_dataset(label_column=self.label_column)
        _, X_test, _, y_test = split_data(
            df, self.label_column, test_size=test_size, random_state=random_state
        )
        self.feature_names = list(X_test.columns)

        logger.info(f"Test dataset loaded: {len(X_test)} samples")
        return X_test, y_test

    def _as_labels(self, y):
        return np.asarray(y).astype(str)

    def roc_curve_data(self, y_true, y_prob):
        """One-vs-all ROC curve for every class present in ``y_true``"""
        y_true = self._as_labels(y_true)
        curves = {}
        for i, cls in enumerate(self.class_names):
            positives = y_true == cls
            if positives.all() or not positives.any():
                logger.warning(f"Skipping ROC curve for '{cls}': needs both positive and negative samples")
                continue
            fpr, tpr, thresholds = roc_curve(positives, y_prob[:, i])
            curves[cls] = {
                'fpr': fpr,
                'tpr': tpr,
                'thresholds': thresholds,
                'auc': auc(fpr, tpr)
            }
        return curves

    def calculate_metrics(self, y_true, y_pred, y_prob=None):
        """Calculate evaluation metrics; ``y_prob`` columns follow ``class_names``"""
        y_true = self._as_labels(y_true)
        y_pred = self._as_labels(y_pred)
        labels = self.class_names

        metrics = {
            'accuracy': accuracy_score(y_true, y_pred),
            'kap': cohen_kappa_score(y_true, y_pred, labels=labels),
            'precision_macro': precision_score(y_true, y_pred, labels=labels, average='macro', zero_division=0),
            'precision_weighted': precision_score(y_true, y_pred, labels=labels, average='weighted', zero_division=0),
            'recall_macro': recall_score(y_true, y_pred, labels=labels, average='macro', zero_division=0),
            'recall_weighted': recall_score(y_true, y_pred, labels=labels, average='weighted', zero_division=0),
            'f1_macro': f1_score(y_true, y_pred, labels=labels, average='macro', zero_division=0),
            'f1_weighted': f1_score(y_true, y_pred, labels=labels, average='weighted', zero_division=0)
        }

        # Per-class metrics
        precision_per_class = precision_score(y_true, y_pred, labels=labels, average=None, zero_division=0)
        recall_per_class = recall_score(y_true, y_pred, labels=labels, average=None, zero_division=0)
        f1_per_class = f1_score(y_true, y_pred, labels=labels, average=None, zero_division=0)

        for i, cls in enumerate(labels):
            key = metric_key(cls)
            metrics[f'precision_{key}'] = precision_per_class[i]
            metrics[f'recall_{key}'] = recall_per_class[i]
            metrics[f'f1_{key}'] = f1_per_class[i]

        if y_prob is not None:
            y_prob = np.asarray(y_prob)
            try:
                if len(labels) == 2:
                    metrics['roc_auc'] = roc_auc_score(y_true == labels[1], y_prob[:, 1])
                else:
                    # Hand & Till multiclass AUC; sklearn wants the labels sorted
                    order = np.argsort(labels)
                    metrics['roc_auc'] = roc_auc_score(
                        y_true, y_prob[:, order], multi_class='ovo', average='macro',
                        labels=[labels[i] for i in order]
                    )
            except ValueError as e:
                logger.warning(f"Could not calculate ROC AUC: {e}")

            for cls, curve in self.roc_curve_data(y_true, y_prob).items():
                metrics[f'roc_auc_{metric_key(cls)}'] = curve['auc']

        return {k: float(v) for k, v in metrics.items()}

    def create_confusion_matrix(self, y_true, y_pred, save_path=None):
        """Create and optionally save confusion matrix"""
        cm = confusion_matrix(self._as_labels(y_true), self._as_labels(y_pred), labels=self.class_names)

        fig, ax = plt.subplots(figsize=(8, 6))
        sns.heatmap(cm, annot=True, fmt='d', cmap='Blues',
                    xticklabels=self.class_names,
                    yticklabels=self.class_names, ax=ax)
        ax.set_title('Confusion Matrix')
        ax.set_xlabel('Predicted Label')
        ax.set_ylabel('True Label')

        if save_path:
            fig.savefig(save_path, dpi=300, bbox_inches='tight')
            logger.info(f"Confusion matrix saved to {save_path}")

        plt.close(fig)
        return cm

    def plot_roc_curves(self, curves, save_path):
        fig, ax = plt.subplots(figsize=(8, 6))
        for cls, curve in curves.items():
            ax.plot(curve['fpr'], curve['tpr'], lw=2, label=f"{cls} (AUC = {curve['auc']:.3f})")
        ax.plot([0, 1], [0, 1], color='grey', lw=1, linestyle='--')
        ax.set_xlim([0.0, 1.0])
        ax.set_ylim([0.0, 1.05])
        ax.set_xlabel('False Positive Rate')
        ax.set_ylabel('True Positive Rate')
        ax.set_title('ROC Curves (one vs. all)')
        ax.legend(loc='lower right')
        ax.grid(True, alpha=0.3)

        fig.savefig(save_path, dpi=300, bbox_inches='tight')
        plt.close(fig)
        logger.info(f"ROC curves saved to {save_path}")
        return save_path

    def plot_tuning_results(self, tuning_metrics, save_path):
        """Mean resampled metric against cost, one line per degree and scale factor"""
        metric_names = list(tuning_metrics['.metric'].unique())
        fig, axes = plt.subplots(1, len(metric_names), figsize=(7 * len(metric_names), 5), squeeze=False)

        data = tuning_metrics.assign(
            scale_factor=tuning_metrics['scale_factor'].map('{:.1e}'.format)
        )
        for ax, metric in zip(axes[0], metric_names):
            sns.lineplot(data=data[data['.metric'] == metric], x='cost', y='mean',
                         hue='degree', style='scale_factor', marker='o', ax=ax)
            ax.set_xscale('log', base=2)
            ax.set_title(metric)
            ax.set_ylabel(f'mean {metric}')

        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        plt.close(fig)
        logger.info(f"Tuning plot saved to {save_path}")
        return save_path

    def create_classification_report(self, y_true, y_pred):
        """Generate detailed classification report"""
        y_true = self._as_labels(y_true)
        y_pred = self._as_labels(y_pred)
        report = classification_report(
            y_true, y_pred,
            labels=self.class_names,
            target_names=self.class_names,
            output_dict=True,
            zero_division=0
        )

        report_str = classification_report(
            y_true, y_pred,
            labels=self.class_names,
            target_names=self.class_names,
            zero_division=0
        )

        return report, report_str

    def evaluate_predictions(self, model, X_test, y_test):
        """Metrics, classification report and confusion matrix for a fitted model"""
        if hasattr(model, 'classes_'):
            self.class_names = [str(c) for c in model.classes_]
        predictions = model.predict(X_test)
        probabilities = model.predict_proba(X_test) if hasattr(model, 'predict_proba') else None

        metrics = self.calculate_metrics(y_test, predictions, probabilities)
        classification_dict, classification_str = self.create_classification_report(y_test, predictions)
        return predictions, probabilities, metrics, classification_dict, classification_str

    def evaluate_model_performance(self, model_version="production", save_plots=True,
                                   output_dir="evaluation_results"):
        """Complete model evaluation pipeline"""
        if not self.load_model_for_evaluation(model_version):
            raise RuntimeError("Failed to load model for evaluation")

        X_test, y_test = self.load_test_data()

        try:
            predictions, probabilities, metrics, classification_dict, classification_str = \
                self.evaluate_predictions(self.model, X_test, y_test)
        except Exception as e:
            logger.error(f"Prediction failed: {e}")
            raise

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        if save_plots:
            os.makedirs(output_dir, exist_ok=True)
            cm = self.create_confusion_matrix(
                y_test, predictions, os.path.join(output_dir, f"confusion_matrix_{timestamp}.png")
            )
            if probabilities is not None:
                self.plot_roc_curves(
                    self.roc_curve_data(y_test, probabilities),
                    os.path.join(output_dir, f"roc_curves_{timestamp}.png")
                )
        else:
            cm = self.create_confusion_matrix(y_test, predictions)

        evaluation_results = {
            'model_version': model_version,
            'evaluation_timestamp': datetime.now().isoformat(),
            'test_samples': len(X_test),
            'class_names': self.class_names,
            'metrics': metrics,
            'classification_report': classification_dict,
            'confusion_matrix': cm.tolist()
        }

        if save_plots:
            results_path = os.path.join(output_dir, f"evaluation_results_{timestamp}.json")
            with open(results_path, 'w') as f:
                json.dump(evaluation_results, f, indent=2, default=str)
            logger.info(f"Evaluation results saved to {results_path}")

            self.write_summary_report(
                evaluation_results, classification_str,
                os.path.join(output_dir, f"report_{timestamp}.md")
            )

        self.print_evaluation_summary(evaluation_results, classification_str)

        return evaluation_results

    def write_summary_report(self, results, classification_str, path, tuning_metrics=None):
        """Markdown report of the held-out evaluation"""
        metrics = results['metrics']
        lines = [
            "# Wine Varietal Classifier Report",
            "",
            f"- Model version: {results['model_version']}",
            f"- Evaluated: {results['evaluation_timestamp']}",
            f"- Test samples: {results['test_samples']}",
            "",
            "## Test set metrics",
            "",
            "| metric | value |",
            "|---|---|",
        ]
        for name in ('accuracy', 'roc_auc', 'kap', 'f1_macro', 'f1_weighted'):
            if name in metrics:
                lines.append(f"| {name} | {metrics[name]:.4f} |")

        lines += ["", "## Confusion matrix", "", "| truth \\ prediction | " + " | ".join(results['class_names']) + " |",
                  "|---" * (len(results['class_names']) + 1) + "|"]
        for cls, row in zip(results['class_names'], results['confusion_matrix']):
            lines.append(f"| {cls} | " + " | ".join(str(v) for v in row) + " |")

        lines += ["", "## Classification report", "", "```", classification_str.rstrip(), "```"]

        if tuning_metrics is not None:
            lines += ["", "## Resampled tuning results", "", "```",
                      tuning_metrics.to_string(index=False), "```"]

        with open(path, 'w') as f:
            f.write("\n".join(lines) + "\n")
        logger.info(f"Summary report saved to {path}")
        return path

    def print_evaluation_summary(self, results, classification_str):
        """Print evaluation summary"""
        print("\n" + "=" * 60)
        print("MODEL EVALUATION RESULTS")
        print("=" * 60)
        print(f"Model Version: {results['model_version']}")
        print(f"Test Samples: {results['test_samples']}")
        print(f"Evaluation Time: {results['evaluation_timestamp']}")
        print("\n" + "-" * 40)
        print("KEY METRICS:")
        print("-" * 40)
        metrics = results['metrics']
        print(f"Accuracy: {metrics['accuracy']:.4f}")
        if 'roc_auc' in metrics:
            print(f"ROC AUC (Hand-Till): {metrics['roc_auc']:.4f}")
        print(f"Kappa: {metrics['kap']:.4f}")
        print(f"F1 Score (Macro): {metrics['f1_macro']:.4f}")
        print(f"F1 Score (Weighted): {metrics['f1_weighted']:.4f}")
        print("\n" + "-" * 40)
        print("DETAILED CLASSIFICATION REPORT:")
        print("-" * 40)
        print(classification_str)
        print("=" * 60)

    def compare_models(self, model_versions):
        """Compare multiple registered model versions"""
        comparison_results = {}

        for version in model_versions:
            logger.info(f"Evaluating model version: {version}")
            try:
                results = self.evaluate_model_performance(version, save_plots=False)
                comparison_results[version] = results['metrics']
            except Exception as e:
                logger.error(f"Failed to evaluate version {version}: {e}")
                comparison_results[version] = {"error": str(e)}

        comparison_df = pd.DataFrame(comparison_results).T

        print("\n" + "=" * 80)
        print("MODEL COMPARISON")
        print("=" * 80)
        print(comparison_df)

        return comparison_df


def main():
    evaluator = ModelEvaluator()
    versions = sys.argv[1:]
    try:
        if len(versions) > 1:
            evaluator.compare_models(versions)
        else:
            evaluator.evaluate_model_performance(versions[0] if versions else "production")
        return True
    except Exception as e:
        logger.error(f"Evaluation failed: {e}")
        return False


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
