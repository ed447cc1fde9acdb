"""
Celery tasks for import jobs and rollbacks.
"""
import logging
import os
import socket
from typing import Any, Dict

from app.database.session import get_db_session
from app.services.import_job_processor import ImportJobProcessor
from app.services.import_queue import CeleryJobDispatcher
from app.services.rollback_service import RollbackEngine

from worker.celery_app import celery_app

logger = logging.getLogger("worker.tasks")

dispatcher = CeleryJobDispatcher()
processor = ImportJobProcessor(dispatcher=dispatcher)


def worker_identity(task_id: str) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{task_id}"


@celery_app.task(bind=True)
def process_import_job(self, job_id: str) -> Dict[str, Any]:
    """
    Process import job in background.

    Claiming is done in the database, so duplicate deliveries of the same
    job id are harmless.

    Args:
        job_id: Import job ID to process
    """
    logger.info(f"Starting import job processing: {job_id}")

    try:
        result = processor.process_job(job_id, worker_identity(self.request.id or "local"))
        logger.info(f"Import job {job_id} finished attempt: {result['status']}")
        return result
    except Exception as e:
        logger.error(f"Import job processing crashed: {job_id} - {e}")
        return {"status": "error", "job_id": job_id, "error": str(e)}


@celery_app.task
def process_rollback_operation(operation_id: str) -> Dict[str, Any]:
    """
    Execute a pending rollback operation.

    Args:
        operation_id: RollbackOperation ID
    """
    logger.info(f"Starting rollback operation: {operation_id}")

    try:
        with get_db_session() as db:
            operation = RollbackEngine(db).execute(operation_id)
            logger.info(f"Rollback operation {operation_id} finished: {operation.status}")
            return {"status": operation.status, "operation_id": operation_id}
    except Exception as e:
        logger.error(f"Rollback operation failed: {operation_id} - {e}")
        return {"status": "error", "operation_id": operation_id, "error": str(e)}
