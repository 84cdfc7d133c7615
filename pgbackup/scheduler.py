"""
APScheduler host for pgbackup.

Manages:
- Start-up checks (storage access, database connectivity)
- Scheduled backups (cron expression, UTC)
- Optional backup on start
- Graceful shutdown on SIGINT/SIGTERM, cancelling any running backup
"""

import logging
import signal
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from pgbackup.backup.dump import DumpError
from pgbackup.backup.executor import BackupExecutor, BackupResult, UploadError
from pgbackup.backup.probe import ConnectionCheckError
from pgbackup.backup.process import BackupCancelled, CancellationToken
from pgbackup.backup.storage import StorageError, create_storage
from pgbackup.config import Config


logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = 'scheduled_backup'

# Failures a backup run reports; anything else is a bug and is logged with a traceback
BACKUP_ERRORS = (ConnectionCheckError, DumpError, UploadError)

# Global scheduler state
scheduler = None
backup_executor = None
cancel_token = None


def init_scheduler(config: Config, executor: BackupExecutor, token: Optional[CancellationToken] = None):
    """
    Initialize and configure APScheduler.

    Args:
        config: Service configuration (schedule, run_on_start)
        executor: Executor invoked for every backup
        token: Cancellation token shared by all runs

    Returns:
        The BlockingScheduler instance
    """
    global scheduler, backup_executor, cancel_token

    if scheduler is not None:
        return scheduler

    backup_executor = executor
    cancel_token = token or CancellationToken()

    # A single worker keeps backups strictly sequential
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine missed runs into one
        'max_instances': 1,  # Never overlap runs
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=run_backup_job,
        trigger=CronTrigger.from_crontab(config.schedule, timezone='UTC'),
        id=SCHEDULED_JOB_ID,
        name=f"Backup: {config.postgres.database}",
        replace_existing=True
    )
    logger.info(f"Scheduled backups of '{config.postgres.database}' ({config.schedule} UTC)")

    if config.run_on_start:
        trigger_backup_now()

    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until stop_scheduler() is called.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info("Scheduler already running")
        return

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else 'pending start'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")

    logger.info("Scheduler started")
    scheduler.start()


def stop_scheduler():
    """Stop the scheduler without waiting for a running backup."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def run_backup_job() -> Optional[BackupResult]:
    """
    Execute one backup in scheduler context.

    Errors are logged, not raised, so the schedule keeps running.

    Returns:
        BackupResult on success, None on failure
    """
    global backup_executor, cancel_token

    if backup_executor is None:
        raise RuntimeError("Scheduler not initialized")

    try:
        result = backup_executor.run(cancel_token)
        logger.info(f"Backup {result.name} finished in {result.duration_seconds:.1f}s")
        return result
    except BackupCancelled as e:
        logger.warning(f"Backup cancelled: {e}")
    except BACKUP_ERRORS as e:
        logger.error(f"Backup failed: {e}")
    except Exception:
        logger.exception("Backup failed with an unexpected error")
    return None


def trigger_backup_now():
    """Schedule a one-time backup to start immediately."""
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=run_backup_job,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{int(now.timestamp())}",
        name="Backup on start",
        replace_existing=False
    )
    logger.info("Triggered immediate backup")


def handle_shutdown(signum, frame):
    """Signal handler: cancel the running backup and stop scheduling."""
    global cancel_token

    logger.info(f"Received signal {signal.Signals(signum).name}, shutting down...")
    if cancel_token is not None:
        cancel_token.cancel()
    stop_scheduler()


def install_signal_handlers():
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)


def run_service(config: Config, once: bool = False, check_only: bool = False) -> int:
    """
    Run the backup service.

    Args:
        config: Validated configuration
        once: Run a single backup and exit instead of scheduling
        check_only: Only verify storage and database connectivity

    Returns:
        Process exit status
    """
    global cancel_token

    logger.info("Starting PostgreSQL Backup Service...")
    for line in config.describe():
        logger.info(line)

    try:
        storage = create_storage(config.storage)
        if hasattr(storage, 'test_connection'):
            storage.test_connection()
    except StorageError as e:
        logger.error(f"Storage check failed: {e}")
        return 1

    executor = BackupExecutor(config.postgres, storage, config.temp_dir)

    cancel_token = CancellationToken()
    install_signal_handlers()

    try:
        executor.test_connection(cancel_token)
    except ConnectionCheckError as e:
        logger.error(str(e))
        return 1
    except BackupCancelled:
        logger.warning("Start-up cancelled")
        return 1

    if check_only:
        logger.info("Connectivity checks passed")
        return 0

    if once:
        try:
            executor.run(cancel_token)
            return 0
        except BackupCancelled as e:
            logger.warning(f"Backup cancelled: {e}")
        except BACKUP_ERRORS as e:
            logger.error(f"Backup failed: {e}")
        return 1

    init_scheduler(config, executor, cancel_token)
    start_scheduler()
    return 0
