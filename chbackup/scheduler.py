"""
APScheduler configuration and job scheduling for server mode.

Manages:
- Manual upload triggers from the REST API
- Optional cron-scheduled retention enforcement
- Status of upload runs
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from chbackup.backup.executor import Backuper
from chbackup.backup.storage import create_destination
from chbackup.clickhouse import ClickHouse
from chbackup.exceptions import BackupError, UploadInProgressError


logger = logging.getLogger(__name__)

MAX_RUN_HISTORY = 100

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

_runs: List[Dict] = []
_current_backuper: Optional[Backuper] = None
_runs_lock = threading.Lock()


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance with the Config under app.config['CHBACKUP']
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    config = app.config['CHBACKUP']

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    if config.api.retention_cron:
        scheduler.add_job(
            func=_enforce_retention,
            trigger=CronTrigger.from_crontab(config.api.retention_cron, timezone='UTC'),
            id='retention_cleanup',
            name='Remote Retention Cleanup',
            replace_existing=True
        )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler, cancelling a running upload first."""
    cancel_upload()
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _find_run(run_id: str) -> Optional[Dict]:
    for run in _runs:
        if run['id'] == run_id:
            return run
    return None


def _execute_upload_wrapper(run_id: str, backup_name: str, options: Dict):
    """
    Run one upload in scheduler context and record its outcome.

    Args:
        run_id: Status entry created by trigger_upload_now()
        backup_name: Local backup to upload
        options: Keyword arguments for Backuper.upload()
    """
    global _current_backuper

    with flask_app.app_context():
        backuper = Backuper(flask_app.config['CHBACKUP'])

        with _runs_lock:
            run = _find_run(run_id)
            run['status'] = 'in progress'
            run['started_at'] = datetime.now(timezone.utc).isoformat()
            _current_backuper = backuper

        try:
            backuper.upload(backup_name, **options)
            status, error = 'success', None
            logger.info(f"Upload of {backup_name} completed")
        except (BackupError, ValueError) as e:
            status, error = 'error', str(e)
            logger.error(f"Upload of {backup_name} failed: {e}")
        except Exception as e:
            status, error = 'error', f"unexpected error: {e}"
            logger.exception(f"Upload of {backup_name} failed unexpectedly")
        finally:
            with _runs_lock:
                _current_backuper = None

        with _runs_lock:
            run['status'] = status
            run['error'] = error
            run['finished_at'] = datetime.now(timezone.utc).isoformat()
            run['logs'] = list(backuper.logs)


def trigger_upload_now(backup_name: str, **options) -> str:
    """
    Schedule an upload to run immediately.

    Args:
        backup_name: Local backup to upload
        **options: Keyword arguments for Backuper.upload()

    Returns:
        Run ID to look up in get_upload_status()

    Raises:
        UploadInProgressError: If another upload is pending or running
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    run_id = f"upload_{backup_name}_{int(now.timestamp())}"

    with _runs_lock:
        if any(r['status'] in ('pending', 'in progress') for r in _runs):
            raise UploadInProgressError("another upload is already running")

        _runs.append({
            'id': run_id,
            'command': 'upload',
            'backup_name': backup_name,
            'options': dict(options),
            'status': 'pending',
            'error': None,
            'created_at': now.isoformat(),
            'started_at': None,
            'finished_at': None,
            'logs': []
        })
        del _runs[:-MAX_RUN_HISTORY]

    # 1 second delay to avoid racing the response
    scheduler.add_job(
        func=_execute_upload_wrapper,
        args=[run_id, backup_name, options],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=run_id,
        name=f"Upload: {backup_name}",
        replace_existing=False
    )

    logger.info(f"Triggered upload of {backup_name} ({run_id})")
    return run_id


def cancel_upload() -> bool:
    """
    Cancel the running upload.

    Returns:
        True if an upload was running
    """
    with _runs_lock:
        backuper = _current_backuper
    if backuper is None:
        return False
    backuper.cancel()
    logger.info("Running upload cancelled")
    return True


def is_upload_running() -> bool:
    with _runs_lock:
        return any(r['status'] in ('pending', 'in progress') for r in _runs)


def get_upload_status() -> List[Dict]:
    """
    Status of recent upload runs, oldest first.

    Logs of the running upload are read live from its Backuper.
    """
    with _runs_lock:
        runs = [dict(r) for r in _runs]
        if _current_backuper is not None:
            for run in runs:
                if run['status'] == 'in progress':
                    run['logs'] = list(_current_backuper.logs)
    return runs


def _enforce_retention():
    """Delete remote backups beyond general->backups_to_keep_remote."""
    config = flask_app.config['CHBACKUP']
    keep = config.general.backups_to_keep_remote
    if keep <= 0 or config.general.remote_storage in ('none', 'custom'):
        return

    if is_upload_running():
        logger.info("Upload in progress, skipping retention cleanup")
        return

    ch = ClickHouse(config.clickhouse)
    try:
        destination = create_destination(config, ch)
        destination.connect()
        try:
            deleted = destination.remove_old_backups(keep)
        finally:
            destination.close()
        logger.info(f"Retention cleanup deleted {len(deleted)} backups")
    except BackupError as e:
        logger.error(f"Retention cleanup failed: {e}")
    finally:
        ch.close()


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
