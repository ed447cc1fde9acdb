"""
Import service: the operations behind the Job Status API.
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.models.import_models import (
    ConflictResolution,
    ImportConflict,
    ImportJob,
    ImportJobItem,
    ImportJobStatus,
    ImportJobType,
    ImportPreview,
    ImportSource,
    JobStep,
    RollbackOperation,
)
from app.models.import_schemas import (
    ApprovePreviewRequest,
    BatchImportRequest,
    CreateImportJobRequest,
    ImportJobOptions,
    ImportJobValidation,
    ImportProgress,
    ImportQueueStats,
    ResolveConflictRequest,
    RollbackRequest,
    UpdateImportJobRequest,
    ValidationIssue,
)
from app.services.config_service import ImportQueueConfiguration, config_service, get_queue_configuration
from app.services.conflict_resolution import is_valid_resolution
from app.services.import_errors import (
    ImportConflictError,
    ImportNotFoundError,
    ImportValidationError,
    QueueFullError,
)
from app.services.import_events import ImportEventBus, default_event_bus
from app.services.import_preview import PreviewGate
from app.services.import_queue import CeleryJobDispatcher, ImportQueue, JobDispatcher
from app.services.parsers.registry import PARSER_REGISTRY
from app.services.rollback_service import RollbackEngine

logger = logging.getLogger("app.import")

ALLOWED_UPLOAD_EXTENSIONS = (".txt", ".csv", ".json", ".dec", ".dek")
MAX_RAW_DATA_LENGTH = 5 * 1024 * 1024
LARGE_INPUT_LINES = 5000
ESTIMATED_MS_PER_LINE = 25
PAUSED_STEPS = (JobStep.AWAITING_CONFLICT_RESOLUTION.value, JobStep.AWAITING_PREVIEW_APPROVAL.value)


class ImportService:
    """Service for creating, inspecting and steering import jobs."""

    def __init__(
        self,
        dispatcher: Optional[JobDispatcher] = None,
        events: Optional[ImportEventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        queue_configuration: Optional[ImportQueueConfiguration] = None,
        upload_dir: Optional[str] = None,
    ):
        self.dispatcher = dispatcher or CeleryJobDispatcher()
        self.events = events or default_event_bus()
        self.clock = clock or config_service.now
        self.queue_configuration = queue_configuration or get_queue_configuration()
        self.upload_dir = Path(upload_dir or config_service.get_setting("UPLOAD_DIR", "uploads"))
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    # Creation

    def validate_request(self, request: CreateImportJobRequest) -> ImportJobValidation:
        """
        Check a create request without creating anything.

        Args:
            request: Create request

        Returns:
            Validation result with errors, warnings and a processing time estimate
        """
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        inputs = [name for name in ("raw_data", "source_url", "file_name") if getattr(request, name)]
        if len(inputs) != 1:
            errors.append(ValidationIssue(
                field="raw_data",
                message="Exactly one of raw_data, source_url or file_name must be provided",
                code="input_required" if not inputs else "multiple_inputs",
            ))

        if request.source.value not in PARSER_REGISTRY:
            errors.append(ValidationIssue(field="source", message=f"Unsupported source: {request.source.value}",
                                          code="invalid_source"))

        options_issue = self._options_issue(request.options)
        if options_issue is not None:
            errors.append(options_issue)

        if request.type != ImportJobType.SINGLE:
            errors.append(ValidationIssue(field="type", message="Use the batch endpoint for batch and bulk jobs",
                                          code="invalid_type"))

        if request.source_url and not request.source_url.lower().startswith(("http://", "https://")):
            errors.append(ValidationIssue(field="source_url", message="URL must use http or https",
                                          code="invalid_url"))

        estimated = None
        if request.raw_data:
            if len(request.raw_data) > MAX_RAW_DATA_LENGTH:
                errors.append(ValidationIssue(field="raw_data", message="Input is larger than 5 MB",
                                              code="too_large"))
            lines = request.raw_data.count("\n") + 1
            estimated = lines * ESTIMATED_MS_PER_LINE
            if lines > LARGE_INPUT_LINES:
                warnings.append(ValidationIssue(
                    field="raw_data",
                    message=f"Large input ({lines} lines) will take a while to process",
                    code="performance_warning",
                    suggestion="Split the import into several jobs",
                ))

        if request.file_name and not self._is_upload(request.file_name):
            errors.append(ValidationIssue(field="file_name", message="file_name must reference an uploaded file",
                                          code="invalid_file"))

        if request.source == ImportSource.CUSTOM and not (request.options or {}).get("custom_fields"):
            errors.append(ValidationIssue(field="options.custom_fields",
                                          message="Custom imports require custom_fields",
                                          code="custom_fields_required"))

        return ImportJobValidation(is_valid=not errors, errors=errors, warnings=warnings,
                                   estimated_processing_time=estimated)

    def create_import_job(self, db: Session, user_id: str, request: CreateImportJobRequest) -> ImportJob:
        validation = self.validate_request(request)
        if not validation.is_valid:
            raise ImportValidationError("; ".join(issue.message for issue in validation.errors))
        return self._enqueue(db, ImportJob(
            user_id=user_id,
            type=ImportJobType.SINGLE.value,
            source=request.source.value,
            priority=self._priority(request.priority),
            raw_data=request.raw_data,
            source_url=request.source_url,
            file_name=request.file_name,
            options=self._options(request.options),
            conflict_resolution=(request.conflict_resolution or ConflictResolution.ASK_USER).value,
        ))

    def create_batch_import_job(self, db: Session, user_id: str, request: BatchImportRequest) -> ImportJob:
        """
        Create one job covering several inputs.

        The inputs are stored as a JSON envelope in ``raw_data`` and split into
        items when the job is parsed.
        """
        if not request.items:
            raise ImportValidationError("Batch import requires at least one item")
        options_issue = self._options_issue(request.options)
        if options_issue is not None:
            raise ImportValidationError(options_issue.message)

        envelope = []
        for index, item in enumerate(request.items):
            if bool(item.raw_data) == bool(item.source_url):
                raise ImportValidationError(f"Item {index + 1}: exactly one of raw_data or source_url is required")
            envelope.append({
                "source": item.source.value,
                "raw_data": item.raw_data,
                "source_url": item.source_url,
                "identifier": item.identifier or f"item {index + 1}",
            })

        if request.type == ImportJobType.SINGLE:
            raise ImportValidationError("Batch imports must be of type batch or bulk")
        sources = {entry["source"] for entry in envelope}
        return self._enqueue(db, ImportJob(
            user_id=user_id,
            type=request.type.value,
            source=sources.pop() if len(sources) == 1 else request.items[0].source.value,
            priority=self._priority(request.priority),
            raw_data=json.dumps(envelope),
            options=self._options(request.options),
            conflict_resolution=(request.conflict_resolution or ConflictResolution.ASK_USER).value,
        ))

    def create_upload_import_job(self, db: Session, user_id: str, source: ImportSource, filename: str,
                                 content: bytes, mime_type: Optional[str] = None,
                                 options: Optional[Dict[str, Any]] = None,
                                 conflict_resolution: Optional[ConflictResolution] = None,
                                 priority: int = 0) -> ImportJob:
        if not filename.lower().endswith(ALLOWED_UPLOAD_EXTENSIONS):
            raise ImportValidationError(f"Only {', '.join(ALLOWED_UPLOAD_EXTENSIONS)} files are allowed")
        if len(content) > MAX_RAW_DATA_LENGTH:
            raise ImportValidationError("Uploaded file is larger than 5 MB")
        options_issue = self._options_issue(options)
        if options_issue is not None:
            raise ImportValidationError(options_issue.message)

        file_path = self.save_uploaded_file(content, filename)
        return self._enqueue(db, ImportJob(
            user_id=user_id,
            type=ImportJobType.SINGLE.value,
            source=source.value,
            priority=self._priority(priority),
            file_name=file_path,
            file_size=len(content),
            mime_type=mime_type,
            options=self._options(options),
            conflict_resolution=(conflict_resolution or ConflictResolution.ASK_USER).value,
        ))

    def _enqueue(self, db: Session, job: ImportJob) -> ImportJob:
        queue = ImportQueue(db, self.queue_configuration)
        if queue.is_full():
            raise QueueFullError(f"Import queue is full ({self.queue_configuration.max_queue_size} jobs)")

        now = self.clock()
        job.max_retries = self.queue_configuration.retry_attempts
        job.created_at = now
        job.updated_at = now
        db.add(job)
        db.commit()
        db.refresh(job)

        self.events.job_event("job_created", job.id, job.user_id, source=job.source, type=job.type)
        logger.info(f"Import job created: {job.id} ({job.type}/{job.source}) for user {job.user_id}")
        self.dispatcher.dispatch_job(job.id)
        return job

    # Inspection

    def get_import_job(self, db: Session, user_id: str, job_id: str) -> ImportJob:
        job = db.query(ImportJob).filter(ImportJob.id == job_id, ImportJob.user_id == user_id).first()
        if job is None:
            raise ImportNotFoundError(f"Import job {job_id} not found")
        return job

    def get_user_import_jobs(self, db: Session, user_id: str, status: Optional[str] = None,
                             source: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[ImportJob]:
        query = db.query(ImportJob).filter(ImportJob.user_id == user_id)
        if status:
            query = query.filter(ImportJob.status == status)
        if source:
            query = query.filter(ImportJob.source == source)
        return query.order_by(ImportJob.created_at.desc(), ImportJob.id).offset(offset).limit(limit).all()

    def get_job_items(self, db: Session, user_id: str, job_id: str) -> List[ImportJobItem]:
        job = self.get_import_job(db, user_id, job_id)
        return db.query(ImportJobItem).filter(
            ImportJobItem.import_job_id == job.id
        ).order_by(ImportJobItem.item_index).all()

    def get_job_conflicts(self, db: Session, user_id: str, job_id: str) -> List[ImportConflict]:
        job = self.get_import_job(db, user_id, job_id)
        return db.query(ImportConflict).filter(
            ImportConflict.import_job_id == job.id
        ).order_by(ImportConflict.created_at, ImportConflict.id).all()

    def get_import_progress(self, db: Session, user_id: str, job_id: str) -> ImportProgress:
        """Poll-friendly projection of a job."""
        job = self.get_import_job(db, user_id, job_id)
        items = db.query(ImportJobItem.status, ImportJobItem.errors, ImportJobItem.warnings).filter(
            ImportJobItem.import_job_id == job.id
        ).all()
        errors = list(job.errors or [])
        warnings = list(job.warnings or [])
        for _, item_errors, item_warnings in items:
            for error in item_errors or []:
                if error not in errors:
                    errors.append(error)
            warnings.extend(item_warnings or [])

        return ImportProgress(
            job_id=job.id,
            status=ImportJobStatus(job.status),
            progress=job.progress,
            current_step=job.current_step,
            total_steps=job.total_steps,
            estimated_time_remaining=job.estimated_time_remaining,
            items_completed=sum(1 for status, _, _ in items if status == ImportJobStatus.COMPLETED.value),
            items_total=len(items),
            errors=errors,
            warnings=warnings,
            last_updated=job.updated_at,
        )

    def get_queue_stats(self, db: Session) -> ImportQueueStats:
        return ImportQueue(db, self.queue_configuration).queue_stats(self.clock())

    # Control

    def update_import_job(self, db: Session, user_id: str, job_id: str,
                          request: UpdateImportJobRequest) -> ImportJob:
        job = self.get_import_job(db, user_id, job_id)
        if job.status != ImportJobStatus.PENDING.value or job.locked_by:
            raise ImportConflictError(f"Import job {job.id} can only be updated while pending")

        if request.options is not None:
            options_issue = self._options_issue({**(job.options or {}), **request.options})
            if options_issue is not None:
                raise ImportValidationError(options_issue.message)
            job.options = self._options({**(job.options or {}), **request.options})
        if request.conflict_resolution is not None:
            job.conflict_resolution = request.conflict_resolution.value
        if request.priority is not None:
            job.priority = self._priority(request.priority)
        job.updated_at = self.clock()
        db.commit()
        db.refresh(job)
        logger.info(f"Import job updated: {job.id}")
        return job

    def cancel_import_job(self, db: Session, user_id: str, job_id: str) -> ImportJob:
        """
        Cancel a pending or processing job.

        Pending jobs and jobs parked at a checkpoint are cancelled at once; a
        job a worker is running is flagged and stops at its next checkpoint.
        """
        job = self.get_import_job(db, user_id, job_id)
        if job.is_terminal:
            raise ImportConflictError(f"Import job {job.id} is already {job.status}")

        now = self.clock()
        stoppable = (
            (ImportJob.status == ImportJobStatus.PENDING.value)
            | ((ImportJob.status == ImportJobStatus.PROCESSING.value) & ImportJob.current_step.in_(PAUSED_STEPS))
        )
        cancelled = db.query(ImportJob).filter(
            ImportJob.id == job.id,
            ImportJob.locked_by.is_(None),
            stoppable,
        ).update(
            {
                ImportJob.status: ImportJobStatus.CANCELLED.value,
                ImportJob.cancel_requested: True,
                ImportJob.processing_completed_at: now,
                ImportJob.updated_at: now,
            },
            synchronize_session=False,
        )
        if not cancelled:
            db.query(ImportJob).filter(ImportJob.id == job.id).update(
                {ImportJob.cancel_requested: True, ImportJob.updated_at: now},
                synchronize_session=False,
            )
        db.commit()
        db.refresh(job)

        if cancelled:
            self.events.job_event("job_cancelled", job.id, job.user_id, step=job.current_step)
            logger.info(f"Import job cancelled: {job.id}")
        else:
            logger.info(f"Cancellation requested for running job {job.id}")
        return job

    def resolve_conflict(self, db: Session, user_id: str, job_id: str,
                         request: ResolveConflictRequest) -> ImportConflict:
        """
        Record the user's resolution for one conflict.

        When the last blocking conflict of a job parked at
        ``awaiting_conflict_resolution`` is resolved the job is resumed.
        """
        job = self.get_import_job(db, user_id, job_id)
        conflict = db.query(ImportConflict).filter(
            ImportConflict.id == request.conflict_id,
            ImportConflict.import_job_id == job.id,
        ).first()
        if conflict is None:
            raise ImportNotFoundError(f"Conflict {request.conflict_id} not found in job {job.id}")
        if job.is_terminal:
            raise ImportConflictError(f"Import job {job.id} is already {job.status}")
        if conflict.is_resolved:
            raise ImportConflictError(f"Conflict {conflict.id} is already resolved as {conflict.resolution}")
        if request.resolution == ConflictResolution.ASK_USER:
            raise ImportValidationError("ask_user is not a resolution")
        if not is_valid_resolution(conflict.conflict_type, request.resolution.value):
            raise ImportValidationError(
                f"Resolution '{request.resolution.value}' is not valid for {conflict.conflict_type}"
            )

        now = self.clock()
        conflict.resolution = request.resolution.value
        conflict.resolved_at = now
        conflict.resolved_by = user_id
        conflict.updated_at = now
        db.commit()
        self.events.conflict_event("conflict_resolved", job.id, conflict.id, user_id,
                                   resolution=conflict.resolution)
        logger.info(f"Conflict {conflict.id} of job {job.id} resolved as {conflict.resolution}")

        if job.current_step == JobStep.AWAITING_CONFLICT_RESOLUTION.value:
            remaining = db.query(ImportConflict).filter(
                ImportConflict.import_job_id == job.id,
                ImportConflict.blocking.is_(True),
                ImportConflict.resolution.is_(None),
            ).count()
            if remaining == 0:
                job.current_step = JobStep.READY_TO_COMMIT.value
                job.updated_at = now
                db.commit()
                logger.info(f"All blocking conflicts of job {job.id} resolved, resuming")
                self.dispatcher.dispatch_job(job.id)
        return conflict

    # Preview

    def generate_preview(self, db: Session, user_id: str, job_id: str) -> ImportPreview:
        """Build (or rebuild) the preview of a job parked at a checkpoint."""
        job = self.get_import_job(db, user_id, job_id)
        if job.current_step not in PAUSED_STEPS or job.status != ImportJobStatus.PROCESSING.value:
            raise ImportConflictError(f"Import job {job.id} has no processed data to preview yet")
        preview = self._preview_gate(db).build_preview(job)
        job.current_step = JobStep.AWAITING_PREVIEW_APPROVAL.value
        job.updated_at = self.clock()
        db.commit()
        db.refresh(preview)
        return preview

    def get_preview(self, db: Session, user_id: str, job_id: str) -> ImportPreview:
        job = self.get_import_job(db, user_id, job_id)
        preview = db.query(ImportPreview).filter(ImportPreview.import_job_id == job.id).first()
        if preview is None:
            raise ImportNotFoundError(f"No preview for import job {job.id}")
        return preview

    def approve_preview(self, db: Session, user_id: str, request: ApprovePreviewRequest) -> ImportPreview:
        return self._preview_gate(db).approve(user_id, request)

    def _preview_gate(self, db: Session) -> PreviewGate:
        return PreviewGate(db, clock=self.clock, events=self.events, dispatcher=self.dispatcher)

    # Rollback

    def request_rollback(self, db: Session, user_id: str, request: RollbackRequest) -> RollbackOperation:
        return RollbackEngine(db, clock=self.clock, dispatcher=self.dispatcher).request(user_id, request)

    def get_rollback_operation(self, db: Session, user_id: str, operation_id: str) -> RollbackOperation:
        operation = db.query(RollbackOperation).filter(
            RollbackOperation.id == operation_id,
            RollbackOperation.user_id == user_id,
        ).first()
        if operation is None:
            raise ImportNotFoundError(f"Rollback operation {operation_id} not found")
        return operation

    # Files

    def save_uploaded_file(self, file_content: bytes, filename: str) -> str:
        """
        Save uploaded file to disk.

        Args:
            file_content: File content as bytes
            filename: Original filename

        Returns:
            Path to saved file
        """
        timestamp = self.clock().strftime("%Y%m%d_%H%M%S_%f")
        safe_filename = "".join(c for c in filename if c.isalnum() or c in "._-")
        file_path = self.upload_dir / f"{timestamp}_{safe_filename}"

        with open(file_path, "wb") as f:
            f.write(file_content)

        logger.info(f"File saved: {file_path}")
        return str(file_path)

    # Helpers

    def _priority(self, priority: int) -> int:
        return max(0, min(priority, self.queue_configuration.priority_levels - 1))

    def _is_upload(self, file_name: str) -> bool:
        path = Path(file_name).resolve()
        return path.parent == self.upload_dir.resolve() and path.exists()

    @staticmethod
    def _options_issue(options: Optional[Dict[str, Any]]) -> Optional[ValidationIssue]:
        try:
            ImportJobOptions.model_validate(options or {})
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ()))
            return ValidationIssue(field=f"options.{field}", message=f"Invalid option {field}: {first.get('msg')}",
                                   code="invalid_option")
        return None

    @staticmethod
    def _options(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return ImportJobOptions.model_validate(options or {}).model_dump(mode="json")
