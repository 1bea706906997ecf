"""
Status routes - overview and scheduler diagnostics.
"""

from flask import Blueprint, jsonify

from launch_agent.auth import token_required
from launch_agent.routes import get_scheduler, get_store


bp = Blueprint('status', __name__, url_prefix='/api/status')


@bp.route('/overview', methods=['GET'])
@token_required
def get_overview():
    """
    Get agent overview.

    Returns:
        JSON with overview stats:
        - total_models: Number of configured models
        - scheduled_models: Number of models with an enabled schedule
        - config_file: Active configuration file
        - config_loaded_at: When the active configuration was loaded
        - scheduler_status: Scheduler running status
    """
    snapshot = get_store().snapshot
    scheduler = get_scheduler()

    return jsonify({
        'total_models': len(snapshot.models),
        'scheduled_models': sum(1 for m in snapshot.models if m.schedule.enabled),
        'config_file': snapshot.config_file,
        'config_loaded_at': snapshot.updated_at.isoformat() if snapshot.updated_at else None,
        'pulse_enabled': snapshot.pulse.enabled,
        'supervisor_enabled': snapshot.supervisor.enabled,
        'scheduler_status': 'running' if scheduler.running else 'stopped'
    })


@bp.route('/scheduler', methods=['GET'])
@token_required
def get_scheduler_status():
    """
    Get scheduler diagnostics.

    Returns:
        JSON with scheduler state and scheduled jobs
    """
    return jsonify(get_scheduler().get_diagnostics())
