"""
Backup routes - list artifacts, run backups, cleanup, health and schedule.
"""

import logging
from flask import Blueprint, current_app, jsonify, request

from backvault.config import get_backup_settings
from backvault.backup.errors import BackupError
from backvault.backup.monitor import check_backup_health
from backvault.backup.orchestrator import run_backup
from backvault.backup.retention import RetentionManager, enforce_retention_policies, list_artifacts
from backvault.backup.storage import StorageError, create_backends
from backvault.scheduler import get_scheduled_jobs, is_scheduler_running

logger = logging.getLogger(__name__)

bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _publisher():
    return current_app.extensions.get('backup_publisher')


@bp.route('/', methods=['GET'])
def list_backups():
    """
    List the artifacts stored on every configured destination.

    Returns:
        JSON with one entry per destination: artifacts (newest first) and stats
    """
    settings = get_backup_settings(current_app)

    try:
        backends = create_backends(settings.destinations, settings.destination_disks)
    except (StorageError, ValueError) as e:
        return jsonify({'error': f'Failed to initialize destinations: {e}'}), 500

    manager = RetentionManager(settings.retention, prefix=settings.filename_prefix)
    result = []
    for backend in backends:
        artifacts = sorted(list_artifacts(backend, settings.filename_prefix),
                           key=lambda a: a.timestamp, reverse=True)
        result.append({
            'name': backend.name,
            'stats': manager.stats(backend),
            'artifacts': [
                {
                    'path': artifact.path,
                    'location': backend.path(artifact.path),
                    'size': artifact.size,
                    'size_mb': round(artifact.size / 1024 / 1024, 2),
                    'created_at': artifact.timestamp.isoformat()
                }
                for artifact in artifacts
            ]
        })

    return jsonify({'destinations': result})


@bp.route('/run', methods=['POST'])
def run():
    """
    Run a backup now.

    JSON body (optional):
        - only_db: Skip files
        - only_files: Skip databases

    Returns:
        JSON with run result, or the error details
    """
    data = request.get_json(silent=True) or {}
    only_db = bool(data.get('only_db', False))
    only_files = bool(data.get('only_files', False))

    if only_db and only_files:
        return jsonify({'error': 'only_db and only_files cannot both be set'}), 400

    settings = get_backup_settings(current_app)

    try:
        result = run_backup(settings, _publisher(), only_db=only_db, only_files=only_files)
    except BackupError as e:
        logger.error(f"Backup run failed: {e}")
        return jsonify(e.to_dict()), 500
    except ValueError as e:
        logger.error(f"Invalid backup configuration: {e}")
        return jsonify({'error': f'Invalid backup configuration: {e}'}), 500

    return jsonify(result.to_dict()), 200


@bp.route('/cleanup', methods=['POST'])
def cleanup():
    """
    Enforce the retention policy on every destination.

    Returns:
        JSON summary of deleted artifacts per destination
    """
    settings = get_backup_settings(current_app)

    try:
        summary = enforce_retention_policies(settings, _publisher())
    except (StorageError, ValueError) as e:
        return jsonify({'error': f'Failed to initialize destinations: {e}'}), 500

    return jsonify(summary), 200


@bp.route('/health', methods=['GET'])
def health():
    """
    Check backup health.

    Returns:
        JSON health report; 503 when unhealthy
    """
    settings = get_backup_settings(current_app)

    try:
        report = check_backup_health(settings, _publisher())
    except (StorageError, ValueError) as e:
        return jsonify({'healthy': False, 'issues': [str(e)], 'backends': {}}), 503

    return jsonify(report.to_dict()), 200 if report.healthy else 503


@bp.route('/schedule', methods=['GET'])
def schedule():
    """
    Get scheduler status and the scheduled backup jobs.

    Returns:
        JSON with scheduler_status and jobs (id, name, next_run, trigger)
    """
    return jsonify({
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'jobs': get_scheduled_jobs()
    }), 200
