"""
Embedded ingestion worker — drains the ingestion queue from inside the API
process on a BackgroundScheduler interval, so one uvicorn process can serve
HTTP and run jobs. `python cli.py worker` is the standalone alternative.

outputs/dashboard.py starts it on startup and stops it on shutdown.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger("lacquer.embedded_scheduler")

DRAIN_JOB_ID = "ingestion_drain"

_scheduler: Optional[BackgroundScheduler] = None
_queue_name: Optional[str] = None


def _on_drain_event(event):
    if event.exception:
        # worker.drain already guards per message; this is a receive/DB failure
        logger.error(f"Queue drain crashed: {event.exception}", exc_info=event.traceback)
    elif event.retval:
        logger.info(f"Queue drain acknowledged {event.retval} message(s)")


def _add_drain_job(scheduler: BackgroundScheduler, worker, queue, ingestion_config):
    scheduler.add_job(
        worker.drain,
        IntervalTrigger(seconds=ingestion_config.poll_interval),
        args=[queue, ingestion_config.drain_batch_size],
        id=DRAIN_JOB_ID,
        name="Ingestion queue drain",
        replace_existing=True,
    )
    logger.info(
        f"Draining '{ingestion_config.queue_name}' every {ingestion_config.poll_interval}s "
        f"(batch {ingestion_config.drain_batch_size})"
    )


def start_scheduler(worker, queue, ingestion_config) -> BackgroundScheduler:
    """Start draining in the background. A second call returns the running scheduler."""
    global _scheduler, _queue_name

    if _scheduler is not None and _scheduler.running:
        logger.warning("Embedded worker already running")
        return _scheduler

    scheduler = BackgroundScheduler(job_defaults={
        # one drain at a time; a late tick is merged, not replayed
        "coalesce": True,
        "max_instances": 1,
        "misfire_grace_time": ingestion_config.poll_interval,
    })
    scheduler.add_listener(_on_drain_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
    _add_drain_job(scheduler, worker, queue, ingestion_config)
    scheduler.start()
    _scheduler = scheduler
    _queue_name = ingestion_config.queue_name
    return scheduler


def stop_scheduler(wait: bool = True):
    """Stop draining. Safe to call when nothing is running."""
    global _scheduler, _queue_name
    scheduler, _scheduler, _queue_name = _scheduler, None, None
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("Embedded worker stopped")


def get_scheduler_status() -> dict:
    """Snapshot for GET /worker/status."""
    checked_at = datetime.now(timezone.utc).isoformat()
    if _scheduler is None or not _scheduler.running:
        return {"running": False, "queueName": None, "jobCount": 0, "jobs": [], "checkedAt": checked_at}

    jobs = [
        {
            "id": job.id,
            "name": job.name,
            "nextRun": job.next_run_time.isoformat() if job.next_run_time else None,
        }
        for job in _scheduler.get_jobs()
    ]
    return {
        "running": True,
        "queueName": _queue_name,
        "jobCount": len(jobs),
        "jobs": jobs,
        "checkedAt": checked_at,
    }
