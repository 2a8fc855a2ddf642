import os
import mlflow
import mlflow.sklearn
import joblib
from dotenv import load_dotenv
from mlflow.tracking import MlflowClient
import logging

load_dotenv()

logger = logging.getLogger(__name__)


def get_model_name(model_name=None):
    return model_name or os.getenv("MODEL_NAME", "WineVarietalModel")


def get_model_alias(alias=None):
    return alias or os.getenv("MODEL_ALIAS", "champion")


def get_local_model_path():
    return os.getenv("LOCAL_MODEL_PATH", "models/best_model.pkl")


def get_model_client():
    """Get MLflow client instance"""
    tracking_uri = os.getenv("MLFLOW_TRACKING_URI", "http://localhost:5000")
    return MlflowClient(tracking_uri=tracking_uri)


def load_production_model():
    """Load the aliased model from the MLflow registry, or the local backup"""
    model_name = get_model_name()
    alias = get_model_alias()

    try:
        model_uri = f"models:/{model_name}@{alias}"
        model = mlflow.sklearn.load_model(model_uri)
        logger.info(f"Loaded production model from registry: {model_uri}")
        return model

    except Exception as e:
        logger.warning(f"Failed to load from registry: {e}")

    local_model_path = get_local_model_path()
    if not os.path.exists(local_model_path):
        logger.error(f"Local model not found: {local_model_path}")
        return None

    try:
        model = joblib.load(local_model_path)
        logger.info(f"Loaded local model: {local_model_path}")
        return model
    except Exception as e:
        logger.error(f"Failed to load local model: {e}")
        return None


def promote_model(version=None, run_id=None, model_name=None, alias=None):
    """Point the serving alias at a model version.

    The version is taken from ``version``, else the newest version logged by
    ``run_id``, else the newest registered version.
    """
    model_name = get_model_name(model_name)
    alias = get_model_alias(alias)

    try:
        client = get_model_client()

        if version is None:
            query = f"name='{model_name}'"
            if run_id is not None:
                query += f" and run_id='{run_id}'"
            versions = client.search_model_versions(query)
            if not versions:
                logger.error(f"No registered version found for {model_name}")
                return False
            version = max(versions, key=lambda v: int(v.version)).version

        client.set_registered_model_alias(model_name, alias, str(version))
        logger.info(f"Model {model_name} v{version} is now '{alias}'")
        return True

    except Exception as e:
        logger.error(f"Failed to promote model: {e}")
        return False


def get_model_metadata(model_name=None, alias=None):
    """Get metadata of the aliased model version from the registry"""
    model_name = get_model_name(model_name)
    alias = get_model_alias(alias)

    try:
        client = get_model_client()
        version = client.get_model_version_by_alias(model_name, alias)

        metadata = {
            'name': model_name,
            'alias': alias,
            'version': version.version,
            'description': version.description,
            'creation_timestamp': version.creation_timestamp,
            'last_updated_timestamp': version.last_updated_timestamp,
            'run_id': version.run_id,
            'source': version.source,
            'status': version.status
        }

        # Get run details
        try:
            run = client.get_run(version.run_id)
            metadata['run_metrics'] = run.data.metrics
            metadata['run_params'] = run.data.params
        except Exception as e:
            logger.warning(f"Failed to get run details: {e}")

        return metadata

    except Exception as e:
        logger.error(f"Failed to get model metadata: {e}")
        return None


def list_model_versions(model_name=None, max_results=10):
    """List the newest versions of a model"""
    model_name = get_model_name(model_name)

    try:
        client = get_model_client()
        model_versions = client.search_model_versions(f"name='{model_name}'")

        # Sort by version number (descending)
        model_versions = sorted(
            model_versions,
            key=lambda x: int(x.version),
            reverse=True
        )[:max_results]

        return [
            {
                'version': version.version,
                'aliases': list(getattr(version, 'aliases', []) or []),
                'description': version.description,
                'creation_timestamp': version.creation_timestamp,
                'run_id': version.run_id,
                'status': version.status
            }
            for version in model_versions
        ]

    except Exception as e:
        logger.error(f"Failed to list model versions: {e}")
        return []


def health_check():
    """Check health of MLflow connection and model availability"""
    health_status = {
        'mlflow_connection': False,
        'model_available': False,
        'model_metadata': None,
        'timestamp': None
    }

    try:
        client = get_model_client()
        client.search_experiments(max_results=1)
        health_status['mlflow_connection'] = True
        logger.info("MLflow connection: OK")
    except Exception as e:
        logger.error(f"MLflow connection failed: {e}")

    model = load_production_model()
    if model is not None:
        health_status['model_available'] = True
        if health_status['mlflow_connection']:
            health_status['model_metadata'] = get_model_metadata()
        logger.info("Production model: OK")
    else:
        logger.warning("Production model: NOT AVAILABLE")

    from datetime import datetime
    health_status['timestamp'] = datetime.now().isoformat()

    return health_status


def main(argv):
    usage = (
        "Usage: python utils.py <command> [args...]\n"
        "Commands:\n"
        "  health-check          - Check system health\n"
        "  list-versions         - List model versions\n"
        "  promote <version>     - Point the serving alias at a version\n"
        "  model-info            - Get production model info"
    )

    if len(argv) < 1:
        print(usage)
        return 1

    command = argv[0]

    if command == "health-check":
        status = health_check()
        print("System Health Check:")
        print(f"MLflow Connection: {'✓' if status['mlflow_connection'] else '✗'}")
        print(f"Model Available: {'✓' if status['model_available'] else '✗'}")
        return 0 if status['model_available'] else 1

    if command == "list-versions":
        print("Model Versions:")
        for v in list_model_versions():
            aliases = ', '.join(v['aliases']) or '-'
            print(f"  v{v['version']} [{aliases}] - {v['description'] or 'No description'}")
        return 0

    if command == "promote":
        if len(argv) < 2:
            print("Usage: python utils.py promote <version>")
            return 1
        success = promote_model(version=argv[1])
        print(f"Promotion {'successful' if success else 'failed'}")
        return 0 if success else 1

    if command == "model-info":
        metadata = get_model_metadata()
        if not metadata:
            print("No production model found")
            return 1
        print("Production Model Info:")
        for key, value in metadata.items():
            print(f"  {key}: {value}")
        return 0

    print(f"Unknown command: {command}")
    return 1


if __name__ == "__main__":
    import sys
    sys.exit(main(sys.argv[1:]))
