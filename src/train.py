import os
import sys
import tempfile
import mlflow
import mlflow.sklearn
from mlflow.models.signature import infer_signature
import numpy as np
from dotenv import load_dotenv
import joblib
from datetime import datetime
import logging

# Add src to path for imports
sys.path.append(os.path.dirname(os.path.abspath(__file__)))
from data import load_dataset, split_data, get_label_column, class_counts
from model import build_workflow, finalize_workflow
from preprocessing import recipe_feature_names
from tuning import make_resamples, regular_grid, tune_grid, collect_metrics, select_best, show_best
from evaluate import ModelEvaluator, collect_predictions
from utils import promote_model

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()


class VarietalTrainer:
    def __init__(self, experiment_name="wine-varietal-svm", folds=5, repeats=5,
                 levels=3, select_metric="roc_auc", random_state=42):
        self.experiment_name = experiment_name
        self.folds = folds
        self.repeats = repeats
        self.levels = levels
        self.select_metric = select_metric
        self.random_state = random_state
        self.label_column = get_label_column()
        self.mlflow_uri = os.getenv("MLFLOW_TRACKING_URI", "http://localhost:5000")
        mlflow.set_tracking_uri(self.mlflow_uri)
        mlflow.set_experiment(experiment_name)
        logger.info(f"MLflow tracking URI: {self.mlflow_uri}")
        logger.info(f"Experiment: {experiment_name}")

    def load_and_prepare_data(self):
        """Load the wine dataset with a categorical varietal label"""
        logger.info("Loading wine dataset...")
        return load_dataset(label_column=self.label_column)

    def split_data(self, df, test_size=0.25):
        """Split data into train and test sets, stratified by varietal"""
        return split_data(df, self.label_column, test_size=test_size, random_state=self.random_state)

    def hyperparameter_tuning(self, X_train, y_train, grid=None):
        """Tune cost, degree and scale_factor with repeated cross-validation"""
        logger.info("Starting hyperparameter tuning...")

        if grid is None:
            grid = regular_grid(levels=self.levels)

        workflow = build_workflow()
        resamples = make_resamples(self.folds, self.repeats, self.random_state)
        results = tune_grid(workflow, grid, resamples, X_train, y_train)

        best_params = select_best(results, metric=self.select_metric)
        best = show_best(results, metric=self.select_metric, n=1).iloc[0]
        logger.info(f"Best parameters: {best_params}")
        logger.info(f"Best CV {self.select_metric}: {best['mean']:.4f} (std_err {best['std_err']:.4f})")

        return workflow, results, best_params

    def fit_final_model(self, workflow, best_params, X_train, y_train, X_test, y_test):
        """Fit the finalized workflow on the full training set and score the test set"""
        model = finalize_workflow(workflow, best_params)
        model.fit(X_train, y_train)
        logger.info(f"Features after preprocessing: {recipe_feature_names(model.named_steps['recipe'])}")

        evaluator = ModelEvaluator(class_names=list(model.classes_))
        predictions, probabilities, metrics, _, report_str = evaluator.evaluate_predictions(model, X_test, y_test)

        logger.info(f"Test accuracy: {metrics['accuracy']:.4f}")
        if 'roc_auc' in metrics:
            logger.info(f"Test ROC AUC: {metrics['roc_auc']:.4f}")
        logger.info("Classification Report:")
        logger.info("\n" + report_str)

        evaluation = {
            'predictions': predictions,
            'probabilities': probabilities,
            'metrics': metrics,
            'report': report_str,
        }
        return model, evaluation

    def log_report_artifacts(self, model, results, evaluation, X_test, y_test):
        """Write the tuning table and plots, test predictions and report as run artifacts"""
        evaluator = ModelEvaluator(class_names=list(model.classes_))
        predictions = evaluation['predictions']
        probabilities = evaluation['probabilities']
        metrics = evaluation['metrics']
        tuning_metrics = collect_metrics(results)

        with tempfile.TemporaryDirectory() as tmp_dir:
            tuning_metrics.to_csv(os.path.join(tmp_dir, "tuning_metrics.csv"), index=False)
            collect_predictions(
                model, X_test, y_test, self.label_column,
                predicted=predictions, probabilities=probabilities
            ).to_csv(os.path.join(tmp_dir, "test_predictions.csv"))
            evaluator.plot_tuning_results(tuning_metrics, os.path.join(tmp_dir, "tuning_results.png"))
            cm = evaluator.create_confusion_matrix(
                y_test, predictions, os.path.join(tmp_dir, "confusion_matrix.png")
            )
            evaluator.plot_roc_curves(
                evaluator.roc_curve_data(y_test, probabilities), os.path.join(tmp_dir, "roc_curves.png")
            )
            evaluator.write_summary_report(
                {
                    'model_version': 'candidate',
                    'evaluation_timestamp': datetime.now().isoformat(),
                    'test_samples': len(X_test),
                    'class_names': evaluator.class_names,
                    'metrics': metrics,
                    'confusion_matrix': cm.tolist()
                },
                evaluation['report'],
                os.path.join(tmp_dir, "report.md"),
                tuning_metrics=show_best(results, metric=self.select_metric, n=10)
            )
            mlflow.log_artifacts(tmp_dir, artifact_path="report")

    def train_with_mlflow(self):
        """Complete training pipeline with MLflow logging"""
        run_name = f"varietal_svm_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        with mlflow.start_run(run_name=run_name) as run:
            logger.info(f"Started MLflow run: {run.info.run_id}")

            df = self.load_and_prepare_data()
            X_train, X_test, y_train, y_test = self.split_data(df)

            mlflow.log_params({
                "dataset_size": len(df),
                "n_features": X_train.shape[1],
                "n_classes": len(np.unique(y_train)),
                "test_size": len(X_test),
                "train_size": len(X_train),
                "folds": self.folds,
                "repeats": self.repeats,
                "grid_levels": self.levels,
                "select_metric": self.select_metric,
            })
            logger.info(f"Training class counts: {class_counts(y_train)}")

            workflow, results, best_params = self.hyperparameter_tuning(X_train, y_train)
            mlflow.log_params(best_params)

            model, evaluation = self.fit_final_model(
                workflow, best_params, X_train, y_train, X_test, y_test
            )
            metrics = evaluation['metrics']
            mlflow.log_metrics({f"test_{k}": float(v) for k, v in metrics.items()})
            self.log_report_artifacts(model, results, evaluation, X_test, y_test)

            signature = infer_signature(X_train, model.predict(X_train))
            mlflow.sklearn.log_model(
                model,
                "model",
                signature=signature,
                input_example=X_train.iloc[:1],
                registered_model_name=os.getenv("MODEL_NAME", "WineVarietalModel")
            )

            # Save local backup
            os.makedirs("models", exist_ok=True)
            joblib.dump(model, f"models/model_{run.info.run_id}.pkl")
            joblib.dump(model, "models/best_model.pkl")  # Latest model

            logger.info(f"Model saved locally: models/model_{run.info.run_id}.pkl")
            logger.info(f"MLflow run completed: {run.info.run_id}")

            return model, metrics, run.info.run_id


def main():
    """Main training function"""
    trainer = VarietalTrainer()

    try:
        model, metrics, run_id = trainer.train_with_mlflow()

        logger.info("=" * 50)
        logger.info("TRAINING COMPLETED SUCCESSFULLY!")
        logger.info(f"Run ID: {run_id}")
        logger.info(f"Final Accuracy: {metrics['accuracy']:.4f}")
        if 'roc_auc' in metrics:
            logger.info(f"Final ROC AUC: {metrics['roc_auc']:.4f}")
        logger.info("=" * 50)

        # Point the serving alias at this run's model if it is good enough
        threshold = float(os.getenv("PROMOTION_THRESHOLD", 0.85))
        if metrics['accuracy'] > threshold:
            promote_model(run_id=run_id)
        else:
            logger.warning(f"Accuracy {metrics['accuracy']:.4f} below {threshold}, model not promoted")

        return True

    except Exception as e:
        logger.error(f"Training failed: {e}")
        import traceback
        traceback.print_exc()
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
