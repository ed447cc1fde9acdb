"""
Persistent import queue: claiming, retry scheduling and retention.

The database is the queue; Celery only carries job ids. Every state change
is a conditional UPDATE so several worker processes can share it.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from app.models.import_models import (
    ImportJob,
    ImportJobItem,
    ImportJobStatus,
    JobStep,
    TERMINAL_STATUSES,
)
from app.models.import_schemas import ImportQueueStats
from app.services.config_service import ImportQueueConfiguration, config_service, get_queue_configuration

logger = logging.getLogger("app.import.queue")


class JobDispatcher:
    """Hands job and rollback ids to whatever executes them."""

    def dispatch_job(self, job_id: str) -> None:
        raise NotImplementedError

    def dispatch_rollback(self, operation_id: str) -> None:
        raise NotImplementedError


class CeleryJobDispatcher(JobDispatcher):
    """Sends work to the ``ingest`` Celery queue."""

    def dispatch_job(self, job_id: str) -> None:
        from worker.tasks import process_import_job

        task = process_import_job.delay(job_id)
        logger.info(f"Import job dispatched: {job_id}, task: {task.id}")

    def dispatch_rollback(self, operation_id: str) -> None:
        from worker.tasks import process_rollback_operation

        task = process_rollback_operation.delay(operation_id)
        logger.info(f"Rollback operation dispatched: {operation_id}, task: {task.id}")


class ImportQueue:
    """Database-backed job queue operations."""

    def __init__(self, db: Session, configuration: Optional[ImportQueueConfiguration] = None):
        self.db = db
        self.configuration = configuration or get_queue_configuration()

    def claim(self, job_id: str, worker_id: str, now: Optional[datetime] = None) -> bool:
        """
        Atomically take ownership of a job.

        A pending job, or a processing job parked at ``ready_to_commit`` after
        preview approval, can be claimed when no other worker holds it.

        Returns:
            True for exactly one of any number of concurrent callers
        """
        now = now or config_service.now()
        claimable = and_(
            ImportJob.id == job_id,
            ImportJob.locked_by.is_(None),
            or_(
                ImportJob.status == ImportJobStatus.PENDING.value,
                and_(
                    ImportJob.status == ImportJobStatus.PROCESSING.value,
                    ImportJob.current_step == JobStep.READY_TO_COMMIT.value,
                ),
            ),
        )
        updated = self.db.query(ImportJob).filter(claimable).update(
            {
                ImportJob.status: ImportJobStatus.PROCESSING.value,
                ImportJob.locked_by: worker_id,
                ImportJob.locked_at: now,
                ImportJob.next_retry_at: None,
                ImportJob.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()
        if updated:
            logger.info(f"Job {job_id} claimed by {worker_id}")
        else:
            logger.info(f"Job {job_id} not claimable by {worker_id}")
        return updated == 1

    def release(self, job_id: str, worker_id: str) -> None:
        self.db.query(ImportJob).filter(
            ImportJob.id == job_id,
            ImportJob.locked_by == worker_id,
        ).update({ImportJob.locked_by: None, ImportJob.locked_at: None}, synchronize_session=False)
        self.db.commit()

    def retry_delay(self, retry_count: int) -> timedelta:
        """Backoff before the attempt following ``retry_count`` earlier retries."""
        seconds = self.configuration.retry_delay * (2 ** retry_count)
        return timedelta(seconds=min(seconds, self.configuration.max_retry_delay))

    def schedule_retry(self, job: ImportJob, now: datetime) -> datetime:
        """Put a claimed job back in the queue with exponential backoff. Caller commits."""
        next_retry_at = now + self.retry_delay(job.retry_count)
        job.retry_count += 1
        job.status = ImportJobStatus.PENDING.value
        job.current_step = JobStep.WAITING_FOR_RETRY.value
        job.next_retry_at = next_retry_at
        job.locked_by = None
        job.locked_at = None
        job.updated_at = now
        logger.info(f"Job {job.id} scheduled for retry {job.retry_count}/{job.max_retries} at {next_retry_at}")
        return next_retry_at

    def queue_length(self) -> int:
        return self.db.query(ImportJob).filter(ImportJob.status == ImportJobStatus.PENDING.value).count()

    def is_full(self) -> bool:
        return self.queue_length() >= self.configuration.max_queue_size

    def due_jobs(self, now: datetime, limit: Optional[int] = None) -> List[ImportJob]:
        """
        Pending jobs ready to run, highest priority first, FIFO within a priority.

        The number returned is limited by the worker slots not taken by
        jobs currently being processed.
        """
        running = self.db.query(ImportJob).filter(
            ImportJob.status == ImportJobStatus.PROCESSING.value,
            ImportJob.locked_by.isnot(None),
        ).count()
        free_slots = max(self.configuration.max_concurrent_jobs - running, 0)
        if limit is not None:
            free_slots = min(free_slots, limit)
        if free_slots == 0:
            return []

        return self.db.query(ImportJob).filter(
            ImportJob.status == ImportJobStatus.PENDING.value,
            ImportJob.locked_by.is_(None),
            or_(ImportJob.next_retry_at.is_(None), ImportJob.next_retry_at <= now),
        ).order_by(ImportJob.priority.desc(), ImportJob.created_at.asc()).limit(free_slots).all()

    def queue_stats(self, now: Optional[datetime] = None) -> ImportQueueStats:
        now = now or config_service.now()
        counts = dict(
            self.db.query(ImportJob.status, func.count(ImportJob.id)).group_by(ImportJob.status).all()
        )
        total_processing_time = self.db.query(func.coalesce(func.sum(ImportJob.processing_time), 0)).scalar()

        pending = self.db.query(ImportJob.created_at).filter(
            ImportJob.status == ImportJobStatus.PENDING.value
        ).all()
        waits = [(now - created_at).total_seconds() * 1000 for (created_at,) in pending if created_at]
        average_wait = int(sum(waits) / len(waits)) if waits else 0

        return ImportQueueStats(
            pending=counts.get(ImportJobStatus.PENDING.value, 0),
            processing=counts.get(ImportJobStatus.PROCESSING.value, 0),
            completed=counts.get(ImportJobStatus.COMPLETED.value, 0),
            failed=counts.get(ImportJobStatus.FAILED.value, 0),
            cancelled=counts.get(ImportJobStatus.CANCELLED.value, 0),
            total_processing_time=int(total_processing_time or 0),
            average_wait_time=average_wait,
            queue_length=counts.get(ImportJobStatus.PENDING.value, 0),
        )

    def cleanup(self, now: datetime) -> int:
        """
        Delete items of terminal jobs older than ``max_history_age`` days and
        the uploaded files those jobs referenced.

        Returns:
            Number of items removed
        """
        cutoff = now - timedelta(days=self.configuration.max_history_age)
        old_jobs = self.db.query(ImportJob).filter(
            ImportJob.status.in_(TERMINAL_STATUSES),
            ImportJob.updated_at < cutoff,
        ).all()
        if not old_jobs:
            return 0

        job_ids = [job.id for job in old_jobs]
        removed = self.db.query(ImportJobItem).filter(
            ImportJobItem.import_job_id.in_(job_ids)
        ).delete(synchronize_session=False)

        for job in old_jobs:
            if job.file_name and os.path.exists(job.file_name):
                try:
                    os.remove(job.file_name)
                    logger.info(f"Removed upload {job.file_name} of job {job.id}")
                except OSError as e:
                    logger.error(f"Failed to remove upload {job.file_name}: {e}")

        self.db.commit()
        logger.info(f"Cleanup removed {removed} items from {len(job_ids)} jobs older than {cutoff}")
        return removed
