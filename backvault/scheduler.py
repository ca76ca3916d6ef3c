"""
APScheduler configuration and job scheduling for backvault.

Manages:
- Scheduled backup runs (BACKUP_SCHEDULE_CRON)
- Retention policy enforcement (BACKUP_CLEANUP_CRON)
- Health monitoring (BACKUP_MONITOR_CRON)
"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from backvault.config import get_backup_settings
from backvault.backup.errors import BackupError
from backvault.backup.monitor import check_backup_health
from backvault.backup.orchestrator import run_backup
from backvault.backup.retention import enforce_retention_policies
from backvault.backup.storage import StorageError

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    timezone = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    jobs = [
        ('backup_run', 'Backup Run', _run_backup_wrapper, app.config.get('BACKUP_SCHEDULE_CRON')),
        ('retention_cleanup', 'Retention Cleanup', _cleanup_wrapper, app.config.get('BACKUP_CLEANUP_CRON')),
        ('backup_monitor', 'Backup Health Monitor', _monitor_wrapper, app.config.get('BACKUP_MONITOR_CRON')),
    ]

    for job_id, name, func, cron in jobs:
        if not cron:
            logger.info(f"No schedule configured for {name}, skipping")
            continue

        scheduler.add_job(
            func=func,
            trigger=CronTrigger.from_crontab(cron, timezone=timezone),
            id=job_id,
            name=name,
            replace_existing=True
        )
        logger.info(f"Scheduled {name} ({cron})")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _run_backup_wrapper():
    """Run a scheduled backup inside the app context."""
    global flask_app

    with flask_app.app_context():
        settings = get_backup_settings(flask_app)
        try:
            result = run_backup(settings, flask_app.extensions.get('backup_publisher'))
            logger.info(f"Scheduled backup completed: {result.filename}")
        except (BackupError, ValueError) as e:
            logger.error(f"Scheduled backup failed: {e}")


def _cleanup_wrapper():
    """Enforce retention inside the app context."""
    global flask_app

    with flask_app.app_context():
        settings = get_backup_settings(flask_app)
        try:
            summary = enforce_retention_policies(settings, flask_app.extensions.get('backup_publisher'))
            logger.info(f"Scheduled cleanup deleted {summary['deleted_count']} artifacts")
        except (StorageError, ValueError) as e:
            logger.error(f"Scheduled cleanup failed: {e}")


def _monitor_wrapper():
    """Run health checks inside the app context."""
    global flask_app

    with flask_app.app_context():
        settings = get_backup_settings(flask_app)
        try:
            report = check_backup_health(settings, flask_app.extensions.get('backup_publisher'))
            logger.info(f"Scheduled health check: healthy={report.healthy}")
        except (StorageError, ValueError) as e:
            logger.error(f"Scheduled health check failed: {e}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    global scheduler
    return scheduler is not None and scheduler.running
