from flask import Flask, request, jsonify
import os
import logging
import sys
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from datetime import datetime
from dotenv import load_dotenv

# Add src to path for imports
sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'src'))
from predict import VarietalPredictor
from utils import load_production_model, get_model_metadata

load_dotenv()

app = Flask(__name__)
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Prometheus metrics
REQUEST_COUNT = Counter('api_request_count', 'API request count', ['method', 'endpoint', 'status'])
REQUEST_DURATION = Histogram('api_request_duration_seconds', 'API request duration')
PREDICTION_COUNT = Counter('model_prediction_count', 'Model prediction count', ['predicted_class'])
MODEL_ERRORS = Counter('model_error_count', 'Model error count', ['error_type'])

MODEL_RELOAD_SECONDS = int(os.getenv("MODEL_RELOAD_SECONDS", 300))

# Global model cache
model_cache = {
    'predictor': None,
    'metadata': None,
    'last_loaded': None
}


def load_model():
    """Return a predictor for the production model, reloading it periodically"""
    last_loaded = model_cache['last_loaded']
    if last_loaded is not None and (datetime.now() - last_loaded).total_seconds() <= MODEL_RELOAD_SECONDS:
        return model_cache['predictor']

    logger.info("Loading/reloading model...")
    try:
        model = load_production_model()
    except Exception as e:
        logger.error(f"Model loading failed: {e}")
        MODEL_ERRORS.labels(error_type='model_loading').inc()
        return model_cache['predictor']

    if model is None:
        logger.error("No model available - neither registry nor local")
        return model_cache['predictor']

    model_cache['predictor'] = VarietalPredictor(model=model, model_version='production')
    model_cache['metadata'] = get_model_metadata() or {'source': 'local_fallback', 'version': 'unknown'}
    model_cache['last_loaded'] = datetime.now()
    logger.info("Model loaded successfully")
    return model_cache['predictor']


@app.before_request
def before_request():
    """Log request start time"""
    request.start_time = datetime.now()


@app.after_request
def after_request(response):
    """Log request metrics"""
    if hasattr(request, 'start_time'):
        duration = (datetime.now() - request.start_time).total_seconds()
        REQUEST_DURATION.observe(duration)

    REQUEST_COUNT.labels(
        method=request.method,
        endpoint=request.endpoint or 'unknown',
        status=response.status_code
    ).inc()

    return response


def _model_version():
    metadata = model_cache['metadata'] or {}
    return metadata.get('version', 'unknown')


@app.route('/predict', methods=['POST'])
def predict():
    """Main prediction endpoint"""
    predictor = load_model()
    if predictor is None:
        MODEL_ERRORS.labels(error_type='model_unavailable').inc()
        return jsonify({"error": "Model not available"}), 503

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or 'features' not in payload:
        return jsonify({"error": "Missing 'features' in request"}), 400

    try:
        result = predictor.predict_single(payload['features'], return_probabilities=True)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.exception(f"Prediction error: {e}")
        MODEL_ERRORS.labels(error_type='prediction_error').inc()
        return jsonify({"error": f"Prediction failed: {str(e)}"}), 500

    result['model_version'] = _model_version()
    PREDICTION_COUNT.labels(predicted_class=result['prediction']).inc()
    return jsonify(result)


@app.route('/batch_predict', methods=['POST'])
def batch_predict():
    """Batch prediction endpoint"""
    predictor = load_model()
    if predictor is None:
        return jsonify({"error": "Model not available"}), 503

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or 'features_list' not in payload:
        return jsonify({"error": "Missing 'features_list' in request"}), 400

    features_list = payload['features_list']
    if not isinstance(features_list, list):
        return jsonify({"error": "'features_list' must be a list"}), 400

    try:
        results = predictor.predict_batch(features_list, return_probabilities=True)
    except Exception as e:
        logger.exception(f"Batch prediction error: {e}")
        MODEL_ERRORS.labels(error_type='batch_prediction_error').inc()
        return jsonify({"error": "Batch prediction failed"}), 500

    for result in results:
        if 'error' in result:
            MODEL_ERRORS.labels(error_type='invalid_sample').inc()
        else:
            PREDICTION_COUNT.labels(predicted_class=result['prediction']).inc()

    return jsonify({
        "results": results,
        "processed_count": len([r for r in results if 'error' not in r]),
        "error_count": len([r for r in results if 'error' in r]),
        "timestamp": datetime.now().isoformat()
    })


@app.route('/health', methods=['GET'])
def health():
    """Health check endpoint"""
    predictor = load_model()

    health_info = {
        "status": "healthy" if predictor is not None else "unhealthy",
        "model_available": predictor is not None,
        "timestamp": datetime.now().isoformat(),
        "mlflow_uri": os.getenv("MLFLOW_TRACKING_URI", "http://localhost:5000")
    }

    if model_cache['metadata']:
        health_info["model_info"] = model_cache['metadata']

    status_code = 200 if predictor is not None else 503
    return jsonify(health_info), status_code


@app.route('/info', methods=['GET'])
def info():
    """Model information endpoint"""
    predictor = load_model()
    if predictor is None:
        return jsonify({"model_loaded": False, "timestamp": datetime.now().isoformat()}), 503

    info_data = predictor.get_model_info()
    info_data["timestamp"] = datetime.now().isoformat()
    if model_cache['metadata']:
        info_data["model_metadata"] = model_cache['metadata']

    return jsonify(info_data)


@app.route('/metrics')
def metrics():
    """Prometheus metrics endpoint"""
    return generate_latest(), 200, {'Content-Type': CONTENT_TYPE_LATEST}


@app.route('/reload_model', methods=['POST'])
def reload_model():
    """Force model reload"""
    model_cache['last_loaded'] = None
    model_cache['predictor'] = None
    model_cache['metadata'] = None

    predictor = load_model()

    if predictor is not None:
        return jsonify({
            "status": "success",
            "message": "Model reloaded successfully",
            "timestamp": datetime.now().isoformat(),
            "model_info": model_cache['metadata']
        })

    return jsonify({
        "status": "error",
        "message": "Failed to reload model",
        "timestamp": datetime.now().isoformat()
    }), 503


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Endpoint not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(500)
def internal_error(error):
    logger.error(f"Internal server error: {error}")
    return jsonify({"error": "Internal server error"}), 500


if __name__ == '__main__':
    logger.info("Starting Wine Varietal Prediction API...")
    logger.info(f"MLflow Tracking URI: {os.getenv('MLFLOW_TRACKING_URI', 'http://localhost:5000')}")

    if load_model() is not None:
        logger.info("Model loaded successfully on startup")
    else:
        logger.warning("Model not available on startup - will try to load on first request")

    app.run(
        host='0.0.0.0',
        port=int(os.getenv("API_PORT", 5001)),
        debug=os.getenv("FLASK_DEBUG", "False").lower() == "true"
    )
