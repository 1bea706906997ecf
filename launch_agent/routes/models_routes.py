"""
Model routes - configured models, manual runs and configuration reload.
"""

from flask import Blueprint, jsonify

from launch_agent.auth import token_required
from launch_agent.models import ModelConfig
from launch_agent.routes import get_scheduler, get_store


bp = Blueprint('models', __name__, url_prefix='/api/models')


def _model_summary(model: ModelConfig) -> dict:
    return {
        'name': model.name,
        'schedule': str(model.schedule),
        'schedule_enabled': model.schedule.enabled,
        'databases': [d.name for d in model.databases],
        'storages': [s.name for s in model.storages],
        'default_storage': model.default_storage,
        'compress_with': model.compress_with.type,
    }


@bp.route('', methods=['GET'])
@token_required
def list_models():
    """
    Get list of all configured models.

    Returns:
        JSON array of models
    """
    return jsonify([_model_summary(m) for m in get_store().models])


@bp.route('/<name>', methods=['GET'])
@token_required
def get_model(name):
    """
    Get a single model by name.

    Settings of databases and storages are not exposed since they carry
    credentials.
    """
    model = get_store().get_model(name)
    if model is None:
        return jsonify({'error': f"Model not found: {name}"}), 404

    data = _model_summary(model)
    data.update({
        'schedule': {
            'enabled': model.schedule.enabled,
            'cron': model.schedule.cron or None,
            'every': model.schedule.every or None,
            'at': model.schedule.at or None,
        },
        'databases': [{'name': d.name, 'type': d.type} for d in model.databases],
        'storages': [{'name': s.name, 'type': s.type, 'keep': s.keep} for s in model.storages],
        'archive': {
            'includes': list(model.archive.includes),
            'excludes': list(model.archive.excludes),
        } if model.archive else None,
        'split': model.compress_with.split,
        'webhook': model.webhook.url if model.webhook else None,
    })
    return jsonify(data)


@bp.route('/<name>/perform', methods=['POST'])
@token_required
def perform_model(name):
    """
    Run a model now.

    Queued on the scheduler when it is running, otherwise executed within
    the request.

    Returns:
        202 with the job id when queued, 200/500 with the run result otherwise
    """
    if get_store().get_model(name) is None:
        return jsonify({'error': f"Model not found: {name}"}), 404

    scheduler = get_scheduler()
    try:
        if scheduler.running:
            job_id = scheduler.trigger_now(name)
            return jsonify({
                'message': f"Model '{name}' has been queued for immediate execution",
                'job_id': job_id
            }), 202

        result = scheduler.perform_now(name)
    except Exception as e:
        return jsonify({'error': str(e)}), 500

    return jsonify(result.to_payload()), 200 if result.succeeded else 500


@bp.route('/reload', methods=['POST'])
@token_required
def reload_config():
    """
    Reload the configuration file and rebuild the schedule.

    Returns:
        JSON with the active model names; 400 if the new file was rejected
    """
    store = get_store()
    if not store.reload():
        return jsonify({
            'error': 'Configuration rejected, previous configuration kept',
            'models': store.snapshot.model_names
        }), 400

    return jsonify({
        'message': 'Configuration reloaded',
        'models': store.snapshot.model_names
    })
