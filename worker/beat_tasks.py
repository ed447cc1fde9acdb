"""
Celery Beat tasks: retry sweep and retention cleanup for import jobs.
"""
import logging
from datetime import datetime
from typing import Optional

from app.database.session import get_db_session
from app.services.config_service import config_service
from app.services.import_queue import CeleryJobDispatcher, ImportQueue, JobDispatcher

from worker.celery_app import celery_app

logger = logging.getLogger("worker.beat_tasks")


def dispatch_due_jobs(queue: ImportQueue, dispatcher: JobDispatcher, now: Optional[datetime] = None) -> int:
    """
    Send every due pending job to the workers.

    Jobs waiting for a retry become due once ``next_retry_at`` has passed;
    nothing relies on in-process timers.

    Returns:
        Number of jobs dispatched
    """
    due = queue.due_jobs(now or config_service.now())
    for job in due:
        dispatcher.dispatch_job(job.id)
    return len(due)


@celery_app.task
def dispatch_due_import_jobs():
    """
    Re-enqueue pending jobs that are due.
    This task runs every cleanup interval.
    """
    logger.info("Starting due import job sweep")

    try:
        with get_db_session() as db:
            dispatched = dispatch_due_jobs(ImportQueue(db), CeleryJobDispatcher())

            logger.info(f"Due import job sweep dispatched {dispatched} jobs")

            return {
                "status": "success",
                "dispatched": dispatched,
                "timestamp": config_service.now().isoformat()
            }

    except Exception as e:
        logger.error(f"Error in dispatch_due_import_jobs: {e}")
        return {
            "status": "error",
            "error": str(e),
            "timestamp": config_service.now().isoformat()
        }


@celery_app.task
def cleanup_import_jobs():
    """
    Remove items and uploads of old finished jobs.
    """
    logger.info("Starting import job cleanup")

    try:
        with get_db_session() as db:
            removed = ImportQueue(db).cleanup(config_service.now())

            logger.info(f"Import job cleanup removed {removed} items")

            return {
                "status": "success",
                "removed_items": removed,
                "timestamp": config_service.now().isoformat()
            }

    except Exception as e:
        logger.error(f"Error in cleanup_import_jobs: {e}")
        return {
            "status": "error",
            "error": str(e),
            "timestamp": config_service.now().isoformat()
        }
