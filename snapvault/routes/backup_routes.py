"""
Backup routes - manual trigger and status.

Authentication is expected to be handled in front of this service.
"""

from flask import Blueprint, jsonify, current_app

from snapvault.backup.models import JobType
from snapvault.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('backup', __name__, url_prefix='/api/v1/backup')


def _orchestrator():
    return current_app.extensions['backup_orchestrator']


@bp.route('/start', methods=['POST'])
def start_backup():
    """
    Run a manual backup over all configured paths.

    Blocks until the run finishes.

    Returns:
        200 with the job result if every path succeeded,
        409 if another backup is in progress,
        500 with the job result if any path failed
    """
    orchestrator = _orchestrator()
    current_app.logger.info("Manual backup requested via API")

    result = orchestrator.run_job(JobType.MANUAL)

    if result.rejected:
        return jsonify(result.to_dict()), 409

    if not result.succeeded:
        current_app.logger.warning(f"Manual backup completed with failures: {result.failure_count} failed")
        return jsonify(result.to_dict()), 500

    return jsonify(result.to_dict())


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Get backup system status.

    Returns:
        JSON with settings, running flag, scheduled jobs and the last result
    """
    orchestrator = _orchestrator()
    last_result = orchestrator.last_result

    status = orchestrator.settings.to_dict()
    status.update({
        'running': orchestrator.is_running(),
        'scheduler_running': is_scheduler_running(),
        'scheduled_jobs': get_scheduled_jobs(),
        'last_result': last_result.to_dict() if last_result else None
    })

    return jsonify(status)
