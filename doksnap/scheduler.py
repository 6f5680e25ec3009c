"""
APScheduler configuration and job scheduling for DokSnap.

Manages:
- One cron job per configured source
- Manual "run now" triggers
- Delayed removal of finished running markers
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from doksnap.models import Source


logger = logging.getLogger(__name__)

# Global scheduler instance and the job manager it drives
scheduler = None
job_manager = None
sources = {}


def init_scheduler(manager, backup_sources: List[Source]):
    """
    Initialize and configure APScheduler.

    Args:
        manager: BackupJobManager executing the backups
        backup_sources: Sources to schedule
    """
    global scheduler, job_manager, sources

    if scheduler is not None:
        return scheduler

    job_manager = manager
    sources = {source.name: source for source in backup_sources}

    jobstores = {
        'default': MemoryJobStore()
    }

    # One thread per source so sources never wait on each other,
    # plus headroom for manual triggers and marker eviction
    executors = {
        'default': ThreadPoolExecutor(max_workers=len(sources) + 2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 1  # A late fire is dropped, not caught up
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    manager.on_job_finished = _schedule_marker_eviction

    for source in sources.values():
        _add_scheduled_job(source)

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after the app is initialized.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} scheduled jobs:")
            for job in jobs:
                logger.info(f"  - {job.id}: {job.name} (next run: {_format_next_run(job) or 'N/A'})")
        else:
            logger.info("No scheduled jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler(wait: bool = True):
    """
    Stop the APScheduler.

    With wait=True no new triggers fire and the call blocks until in-flight
    backups finish.
    """
    global scheduler

    if scheduler and scheduler.running:
        logger.info("Stopping scheduler, waiting for running backups to finish...")
        scheduler.shutdown(wait=wait)
        logger.info("APScheduler stopped")


def _add_scheduled_job(source: Source):
    """
    Add a backup job for a source.

    Raises:
        ValueError: If the cron expression is invalid
    """
    global scheduler

    trigger = CronTrigger.from_crontab(source.schedule, timezone='UTC')

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[source.name],
        trigger=trigger,
        id=f"backup_{source.name}",
        name=f"Backup: {source.name}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup job: {source.name} ({source.schedule})")


def _execute_backup_wrapper(source_name: str):
    """
    Wrapper executed by APScheduler threads.

    Never raises: every failure is already a failed JobRecord, anything
    else is logged so the scheduler keeps firing.
    """
    global job_manager

    source = sources.get(source_name)
    if source is None:
        logger.error(f"Scheduled backup for unknown source: {source_name}")
        return

    try:
        job_manager.execute_backup(source)
    except Exception as e:
        logger.exception(f"Scheduler backup job {source_name} crashed: {e}")


def _schedule_marker_eviction(source_name: str, job_id: str, run_at: datetime):
    """Remove a finished running marker once its grace period is over."""
    global scheduler

    if scheduler is None or not scheduler.running:
        return

    scheduler.add_job(
        func=job_manager.evict_running_marker,
        args=[source_name, job_id],
        trigger=DateTrigger(run_date=run_at),
        id=f"evict_{job_id}",
        name=f"Evict marker: {source_name}",
        misfire_grace_time=None,
        replace_existing=True
    )


def trigger_backup_now(source_name: str):
    """
    Manually trigger a backup immediately.

    The per-source running guard still applies.

    Raises:
        ValueError: If the source is unknown
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if source_name not in sources:
        raise ValueError(f"Backup source not found: {source_name}")

    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[source_name],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{source_name}_{int(now.timestamp())}",
        name=f"Manual: {source_name}",
        misfire_grace_time=None,
        replace_existing=False
    )

    logger.info(f"Manually triggered backup: {source_name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled backup jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        if job.id.startswith('evict_'):
            continue
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': _format_next_run(job),
            'trigger': str(job.trigger)
        })

    return jobs


def get_next_run_time(source_name: str) -> Optional[str]:
    global scheduler

    if scheduler is None:
        return None

    job = scheduler.get_job(f"backup_{source_name}")
    if job is None:
        return None
    return _format_next_run(job)


def _format_next_run(job) -> Optional[str]:
    # Jobs added before the scheduler starts have no next_run_time yet
    next_run = getattr(job, 'next_run_time', None)
    return next_run.isoformat() if next_run else None


def is_scheduler_running() -> bool:
    global scheduler
    return scheduler is not None and scheduler.running


def reset_scheduler():
    """Forget the global scheduler state (used by tests and app teardown)."""
    global scheduler, job_manager, sources

    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
    scheduler = None
    job_manager = None
    sources = {}
