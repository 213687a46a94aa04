"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for training
categorizing networks.

This module provides endpoints for:
- Creating networks with a chosen topology and activation function
- Training networks on posted samples with real-time progress updates
  via WebSockets
- Testing saved models against posted samples
- Listing and deleting models kept in the model registry

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- ``.darj`` files plus a SQLite registry for model persistence
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional, Tuple

import gevent
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Local imports
from nodenet.errors import (
    NodenetError,
    ModelRegistrationFailed,
    TrainingDidNotConverge
)
from nodenet.inputs import Input
from nodenet.network import NeuralNetwork, DEFAULT_MAX_EPOCHS
from nodenet.model_persistence import (
    register_model,
    load_registered_model,
    list_saved_models,
    delete_model,
    delete_old_models
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug', 'matplotlib']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('nodenet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

MODEL_DIR = os.getenv('MODEL_DIR', 'models')
MODEL_RETENTION_DAYS = int(os.getenv('MODEL_RETENTION_DAYS', '2'))

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently held in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_models_task() -> None:
    """
    Background task that runs immediately on startup, then every 24 hours to:
    - Delete registered models older than MODEL_RETENTION_DAYS
    - Remove completed/failed training jobs from memory
    """
    logger.info("Model cleanup task started")

    while True:
        try:
            deleted_count = delete_old_models(
                days=MODEL_RETENTION_DAYS, model_dir=MODEL_DIR
            )

            if deleted_count > 0:
                logger.info(f"Cleanup completed: deleted {deleted_count} model(s)")
            elif deleted_count == 0:
                logger.info("Cleanup completed: no old models found to delete")
            else:
                logger.error("Cleanup returned error code")

            cleanup_finished_training_jobs()

            logger.info("Next cleanup scheduled in 24 hours")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during model cleanup: {e}")
            gevent.sleep(3600)  # 1 hour
            continue


def cleanup_finished_training_jobs() -> None:
    """
    Remove completed or failed training jobs from memory.

    Only removes jobs that are no longer active (completed or failed).
    """
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    Idempotent: calling it multiple times has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_models_task)


# ============================================================================
# REQUEST PARSING
# ============================================================================

def parse_samples(raw_samples: Any) -> List[Input]:
    """
    Convert posted samples into `Input` objects.

    Each sample is ``{"features": [...], "label": ...}``; the label may be
    omitted for pure inference.

    Raises:
        ValueError: If the payload is not a list of such objects
    """
    if not isinstance(raw_samples, list) or not raw_samples:
        raise ValueError('data must be a non-empty list of samples')

    samples = []
    for index, raw in enumerate(raw_samples):
        if not isinstance(raw, dict) or not isinstance(raw.get('features'), list):
            raise ValueError(f'sample {index} must have a features list')
        try:
            samples.append(Input(raw['features'], raw.get('label')))
        except (TypeError, ValueError) as e:
            raise ValueError(f'sample {index} has invalid features: {e}')
    return samples


def active_training_job(network_id: str) -> Optional[str]:
    """Return the id of a pending or running job for the network, if any."""
    for job_id, job in training_jobs.items():
        if (job.get('network_id') == network_id
                and job.get('status') in ('pending', 'training')):
            return job_id
    return None


def error_response(error: NodenetError, status: int) -> Tuple[Any, int]:
    """Serialize a library error with its code and context."""
    return jsonify({
        'error': error.message,
        'error_code': error.error_code,
        'context': {k: v for k, v in error.context.items()
                    if isinstance(v, (str, int, float, bool, type(None)))}
    }), status


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Counts only training jobs that are pending or in progress.
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network.

    Request body:
        {
            'sensors': 2,
            'hidden': 2,
            'answers': 2,
            'hidden_layers': 1,
            'activation': 'sigmoid',
            'seed': null
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json() or {}

    try:
        net = NeuralNetwork(
            data.get('sensors'),
            data.get('hidden', 0),
            data.get('answers'),
            data.get('hidden_layers', 1),
            data.get('activation', 'sigmoid'),
            seed=data.get('seed')
        )
    except NodenetError as e:
        logger.warning(f"Invalid network requested: {e}")
        return error_response(e, 400)

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'architecture': net.architecture,
        'activation': str(net.activation_function),
        'trained': False,
        'accuracy': None,
        'model_id': None,
        'history': []
    }

    logger.info(f"Created network {network_id} with architecture {net.architecture}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture,
        'activation': str(net.activation_function),
        'parameters': net.parameters,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body:
        {
            'data': [{'features': [0, 1], 'label': 1}, ...],
            'categories': [0, 1],
            'learning_rate': 0.5,
            'target_accuracy': 100.0,
            'max_epochs': 10000,
            'name': 'xor'
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    # A network trains under one category binding at a time
    running_job = active_training_job(network_id)
    if running_job is not None:
        logger.warning(
            f"Training requested for network {network_id} while job "
            f"{running_job} is still running"
        )
        return jsonify({
            'error': 'Network is already training',
            'job_id': running_job
        }), 409

    data = request.get_json() or {}
    categories = data.get('categories')
    learning_rate = data.get('learning_rate', 0.5)
    target_accuracy = data.get('target_accuracy', 100.0)
    max_epochs = data.get('max_epochs', DEFAULT_MAX_EPOCHS)
    name = data.get('name', network_id[:8])

    try:
        samples = parse_samples(data.get('data'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    if not isinstance(categories, list) or not categories:
        return jsonify({'error': 'categories must be a non-empty list'}), 400
    if not isinstance(learning_rate, (int, float)) or learning_rate <= 0:
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if not isinstance(target_accuracy, (int, float)) or not 0 <= target_accuracy <= 100:
        return jsonify({'error': 'target_accuracy must be between 0 and 100'}), 400
    if not isinstance(max_epochs, int) or max_epochs < 1:
        return jsonify({'error': 'max_epochs must be a positive integer'}), 400
    if not isinstance(name, str) or not name or '/' in name:
        return jsonify({'error': 'name must be a non-empty string without /'}), 400

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'epoch': 0,
        'max_epochs': max_epochs
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"samples={len(samples)}, lr={learning_rate}, "
        f"target={target_accuracy}, max_epochs={max_epochs}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_network_task,
        network_id, job_id, samples, categories, learning_rate,
        target_accuracy, max_epochs, name
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    samples: List[Input],
    categories: List[Any],
    learning_rate: float,
    target_accuracy: float,
    max_epochs: int,
    name: str
) -> None:
    """
    Background task that trains a network, saves and registers the model.

    Sends progress updates via WebSocket as training progresses.
    """
    net_info = active_networks[network_id]
    net = net_info['network']
    net_info['history'] = []

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['epoch'] = data['epoch']
        training_jobs[job_id]['accuracy'] = data['accuracy']
        net_info['history'].append(data['accuracy'])

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'max_epochs': data['max_epochs'],
            'accuracy': data['accuracy'],
            'mse': data['mse'],
            'elapsed_time': data['elapsed_time'],
            'correct': data['correct'],
            'total': data['total']
        })

    def yield_to_other_tasks():
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        model_path, accuracy, mse = net.learn(
            samples,
            categories,
            learning_rate,
            name,
            target_accuracy,
            max_epochs=max_epochs,
            model_dir=MODEL_DIR,
            callback=on_epoch_complete,
            yield_func=yield_to_other_tasks
        )

        model_id = register_model(
            model_path, net, categories, accuracy, mse, model_dir=MODEL_DIR
        )
        if model_id is None:
            # An unregistered file would never be listed or cleaned up
            discard_unregistered_model(model_path)
            raise ModelRegistrationFailed(model_path)

        net_info['trained'] = True
        net_info['accuracy'] = accuracy
        net_info['model_id'] = model_id

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = accuracy
        training_jobs[job_id]['mse'] = mse
        training_jobs[job_id]['model_id'] = model_id

        logger.info(
            f"Training completed for job {job_id}: accuracy {accuracy:.2f}%, "
            f"model {model_id}"
        )

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'model_id': model_id,
            'status': 'completed',
            'accuracy': accuracy,
            'mse': mse
        })
        gevent.sleep(0)

    except TrainingDidNotConverge as e:
        logger.warning(f"Training job {job_id} did not converge: {e}")
        fail_training_job(network_id, job_id, e)

    except ModelRegistrationFailed as e:
        logger.error(f"Training job {job_id} finished but failed: {e}")
        fail_training_job(network_id, job_id, e)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")
        fail_training_job(network_id, job_id, e)


def discard_unregistered_model(model_path: str) -> None:
    try:
        os.remove(model_path)
    except OSError as e:
        logger.warning(f"Could not remove unregistered model {model_path}: {e}")


def fail_training_job(network_id: str, job_id: str, error: Exception) -> None:
    """Mark a job as failed and notify connected clients."""
    training_jobs[job_id]['status'] = 'failed'
    training_jobs[job_id]['error'] = str(error)

    socketio.emit('training_error', {
        'job_id': job_id,
        'network_id': network_id,
        'status': 'failed',
        'error': str(error)
    })
    gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List the networks held in memory."""
    networks = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'activation': info['activation'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'model_id': info['model_id']
        }
        for nid, info in active_networks.items()
    ]
    logger.debug(f"Listing {len(networks)} networks")
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Forget an in-memory network. Its saved model, if any, is kept."""
    if network_id not in active_networks:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    del active_networks[network_id]
    logger.info(f"Deleted network {network_id} from memory")
    return jsonify({'network_id': network_id, 'deleted': True}), 200


@app.route('/api/networks/<network_id>/training_plot', methods=['GET'])
def get_training_plot(network_id: str):
    """Return a base64-encoded PNG of training accuracy per epoch."""
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    history = active_networks[network_id]['history']
    if not history:
        return jsonify({'error': 'Network has no training history'}), 404

    return jsonify({
        'network_id': network_id,
        'epochs': len(history),
        'image_data': create_accuracy_plot(history)
    }), 200


@app.route('/api/models', methods=['GET'])
def list_models():
    """List every registered model."""
    return jsonify({'models': list_saved_models(MODEL_DIR)}), 200


@app.route('/api/models/<model_id>', methods=['DELETE'])
def delete_model_endpoint(model_id: str):
    """Delete a registered model and its file."""
    if not delete_model(model_id, MODEL_DIR):
        return jsonify({'error': 'Model not found'}), 404

    for info in active_networks.values():
        if info['model_id'] == model_id:
            info['model_id'] = None

    return jsonify({'model_id': model_id, 'deleted': True}), 200


@app.route('/api/models/<model_id>/test', methods=['POST'])
def test_model(model_id: str):
    """
    Run a registered model over posted samples.

    Request body:
        {'data': [{'features': [0, 1], 'label': 1}, {'features': [1, 1]}]}

    Returns:
        JSON with one prediction per sample, plus accuracy and MSE over
        the samples that carried a label
    """
    data = request.get_json() or {}
    try:
        samples = parse_samples(data.get('data'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    try:
        loaded = load_registered_model(model_id, MODEL_DIR)
        if loaded is None:
            return jsonify({'error': 'Model not found'}), 404
        net, _ = loaded
        result = net.evaluate(samples)
    except NodenetError as e:
        logger.warning(f"Testing model {model_id} failed: {e}")
        return error_response(e, 400 if e.error_code == 'CONFIG_ERROR' else 500)

    return jsonify({
        'model_id': model_id,
        'predictions': result.predictions,
        'accuracy': result.accuracy,
        'mse': result.mse
    }), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def create_accuracy_plot(history: List[float]) -> str:
    """
    Create a base64-encoded PNG of accuracy over epochs.

    Args:
        history: Accuracy (percent) of each epoch

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(5, 3))
    plt.plot(range(1, len(history) + 1), history)
    plt.xlabel('Epoch')
    plt.ylabel('Accuracy (%)')
    plt.ylim(0, 100)
    plt.title(f"Training accuracy ({len(history)} epochs)")

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    start_cleanup_task()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
