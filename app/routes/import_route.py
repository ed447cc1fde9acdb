"""
Import job routes: creation, progress polling, conflicts, preview and rollback.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile
from sqlalchemy.orm import Session

from app.database.session import get_session
from app.models.import_models import (
    ConflictResolution,
    ImportConflict,
    ImportJob,
    ImportJobItem,
    ImportPreview,
    ImportSource,
    RollbackOperation,
)
from app.models.import_schemas import (
    ApprovePreviewRequest,
    BatchImportRequest,
    CreateImportJobRequest,
    ResolveConflictRequest,
    RollbackRequest,
    UpdateImportJobRequest,
)
from app.services.import_errors import (
    ImportConflictError,
    ImportNotFoundError,
    ImportPipelineError,
    ImportValidationError,
    InvalidFormatError,
    PreviewExpiredError,
    QueueFullError,
)
from app.services.import_preview import conflict_to_dict
from app.services.import_service import ImportService

router = APIRouter(prefix="/imports", tags=["import"])
logger = logging.getLogger("app.import")

_import_service: Optional[ImportService] = None


def get_import_service() -> ImportService:
    """Dependency returning the process-wide import service."""
    global _import_service
    if _import_service is None:
        _import_service = ImportService()
    return _import_service


def get_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    """User id supplied by the authenticating proxy in front of this service."""
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id.strip()


def _http_error(e: ImportPipelineError) -> HTTPException:
    if isinstance(e, ImportNotFoundError):
        status_code = 404
    elif isinstance(e, PreviewExpiredError):
        status_code = 410
    elif isinstance(e, QueueFullError):
        status_code = 503
    elif isinstance(e, ImportConflictError):
        status_code = 409
    elif isinstance(e, (ImportValidationError, InvalidFormatError)):
        status_code = 400
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail={"type": e.error_type, "message": e.message})


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _job_to_dict(job: ImportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "user_id": job.user_id,
        "type": job.type,
        "source": job.source,
        "status": job.status,
        "priority": job.priority,
        "source_url": job.source_url,
        "file_name": job.file_name,
        "options": job.options,
        "conflict_resolution": job.conflict_resolution,
        "progress": job.progress,
        "current_step": job.current_step,
        "total_steps": job.total_steps,
        "estimated_time_remaining": job.estimated_time_remaining,
        "decks_found": job.decks_found,
        "decks_imported": job.decks_imported,
        "cards_processed": job.cards_processed,
        "cards_resolved": job.cards_resolved,
        "errors": job.errors,
        "warnings": job.warnings,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "next_retry_at": _iso(job.next_retry_at),
        "cancel_requested": job.cancel_requested,
        "processing_started_at": _iso(job.processing_started_at),
        "processing_completed_at": _iso(job.processing_completed_at),
        "processing_time": job.processing_time,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
    }


def _item_to_dict(item: ImportJobItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "item_index": item.item_index,
        "status": item.status,
        "source": item.source,
        "source_identifier": item.source_identifier,
        "deck_id": item.deck_id,
        "deck_name": item.deck_name,
        "cards_found": item.cards_found,
        "cards_imported": item.cards_imported,
        "errors": item.errors,
        "warnings": item.warnings,
        "processing_time": item.processing_time,
    }


def _preview_to_dict(preview: ImportPreview) -> Dict[str, Any]:
    return {
        "id": preview.id,
        "import_job_id": preview.import_job_id,
        "preview_data": preview.preview_data,
        "decks_preview": preview.decks_preview,
        "statistics": preview.statistics,
        "warnings": preview.warnings,
        "conflicts": preview.conflicts,
        "is_approved": preview.is_approved,
        "approved_at": _iso(preview.approved_at),
        "expires_at": _iso(preview.expires_at),
        "consumed": preview.consumed,
    }


def _rollback_to_dict(operation: RollbackOperation) -> Dict[str, Any]:
    return {
        "id": operation.id,
        "import_job_id": operation.import_job_id,
        "history_id": operation.history_id,
        "description": operation.description,
        "status": operation.status,
        "rollback_data": operation.rollback_data,
        "created_at": _iso(operation.created_at),
        "completed_at": _iso(operation.completed_at),
    }


@router.post("", status_code=201)
def create_import_job(
    request: CreateImportJobRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    """
    Create an import job from raw text, a URL or a previously uploaded file.

    Args:
        request: Create request
        user_id: Caller from X-User-Id
        db: Database session

    Returns:
        Created import job
    """
    logger.info(f"Import job requested: source={request.source.value} user={user_id}")
    try:
        job = service.create_import_job(db, user_id, request)
    except ImportPipelineError as e:
        logger.warning(f"Import job rejected: {e.message}")
        raise _http_error(e)
    return {"status": "success", "job": _job_to_dict(job)}


@router.post("/validate")
def validate_import_request(
    request: CreateImportJobRequest,
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    validation = service.validate_request(request)
    return validation.model_dump()


@router.post("/batch", status_code=201)
def create_batch_import_job(
    request: BatchImportRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    logger.info(f"Batch import requested: {len(request.items)} items user={user_id}")
    try:
        job = service.create_batch_import_job(db, user_id, request)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "job": _job_to_dict(job)}


@router.post("/upload", status_code=201)
async def upload_import_file(
    file: UploadFile = File(...),
    source: ImportSource = Form(...),
    options: Optional[str] = Form(None),
    conflict_resolution: Optional[ConflictResolution] = Form(None),
    priority: int = Form(0),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    """
    Upload a deck list file and start an import job.

    Args:
        file: Uploaded deck list (.txt, .csv, .json, .dec, .dek)
        source: Format of the file
        options: ImportJobOptions as a JSON string
    """
    logger.info(f"File upload requested: {file.filename}")

    try:
        parsed_options = json.loads(options) if options else None
    except ValueError:
        raise HTTPException(status_code=400, detail={"type": "validation_error", "message": "options must be JSON"})

    content = await file.read()
    try:
        job = service.create_upload_import_job(
            db, user_id, source, file.filename or "upload.txt", content,
            mime_type=file.content_type, options=parsed_options,
            conflict_resolution=conflict_resolution, priority=priority,
        )
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "message": "File uploaded successfully", "job": _job_to_dict(job)}


@router.get("")
def list_import_jobs(
    status: Optional[str] = None,
    source: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    jobs = service.get_user_import_jobs(db, user_id, status=status, source=source,
                                        limit=max(1, min(limit, 200)), offset=max(offset, 0))
    return {"status": "success", "jobs": [_job_to_dict(job) for job in jobs], "total": len(jobs)}


@router.get("/queue/stats")
def queue_stats(
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    return service.get_queue_stats(db).model_dump()


@router.post("/previews/approve")
def approve_preview(
    request: ApprovePreviewRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    """
    Approve or reject a preview.

    Approval resumes the job at commit; rejection cancels it.
    """
    logger.info(f"Preview decision: preview={request.preview_id} approved={request.approved}")
    try:
        preview = service.approve_preview(db, user_id, request)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "preview": _preview_to_dict(preview)}


@router.post("/rollbacks", status_code=202)
def request_rollback(
    request: RollbackRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    logger.info(f"Rollback requested for job {request.import_job_id}")
    try:
        operation = service.request_rollback(db, user_id, request)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "rollback": _rollback_to_dict(operation)}


@router.get("/rollbacks/{operation_id}")
def get_rollback(
    operation_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        operation = service.get_rollback_operation(db, user_id, operation_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "rollback": _rollback_to_dict(operation)}


@router.get("/{job_id}")
def get_import_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        job = service.get_import_job(db, user_id, job_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "job": _job_to_dict(job)}


@router.patch("/{job_id}")
def update_import_job(
    job_id: str,
    request: UpdateImportJobRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        job = service.update_import_job(db, user_id, job_id, request)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "job": _job_to_dict(job)}


@router.get("/{job_id}/progress")
def get_import_progress(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        progress = service.get_import_progress(db, user_id, job_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return progress.model_dump(mode="json")


@router.get("/{job_id}/items")
def get_import_items(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        items = service.get_job_items(db, user_id, job_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "items": [_item_to_dict(item) for item in items]}


@router.get("/{job_id}/conflicts")
def get_import_conflicts(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        conflicts = service.get_job_conflicts(db, user_id, job_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "conflicts": [conflict_to_dict(c) for c in conflicts]}


@router.post("/{job_id}/conflicts/resolve")
def resolve_conflict(
    job_id: str,
    request: ResolveConflictRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    logger.info(f"Conflict resolution: job={job_id} conflict={request.conflict_id} -> {request.resolution.value}")
    try:
        conflict: ImportConflict = service.resolve_conflict(db, user_id, job_id, request)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "conflict": conflict_to_dict(conflict)}


@router.post("/{job_id}/cancel")
def cancel_import_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        job = service.cancel_import_job(db, user_id, job_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "job": _job_to_dict(job)}


@router.post("/{job_id}/preview")
def generate_preview(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        preview = service.generate_preview(db, user_id, job_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "preview": _preview_to_dict(preview)}


@router.get("/{job_id}/preview")
def get_preview(
    job_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_session),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any]:
    try:
        preview = service.get_preview(db, user_id, job_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"status": "success", "preview": _preview_to_dict(preview)}
