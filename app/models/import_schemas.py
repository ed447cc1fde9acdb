"""
Request and response schemas for the import API.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel

from app.models.import_models import (
    ConflictResolution,
    ImportJobStatus,
    ImportJobType,
    ImportSource,
)

DEFAULT_PREVIEW_TIMEOUT_MS = 24 * 60 * 60 * 1000


class ImportJobOptions(SQLModel):
    """Per-job processing options, stored as JSON on the job."""

    # Processing
    validate_cards: bool = False
    resolve_card_names: bool = True
    preserve_categories: bool = True
    include_metadata: bool = True
    custom_fields: Optional[List[str]] = None
    timeout: Optional[int] = None  # ms per step, queue default when unset

    # Batch processing
    batch_size: int = Field(default=50, ge=1)
    concurrency: int = Field(default=1, ge=1, le=16)
    continue_on_error: bool = False

    # Conflicts
    default_conflict_resolution: ConflictResolution = ConflictResolution.ASK_USER
    auto_resolve_conflicts: bool = False

    # Preview
    generate_preview: bool = False
    preview_timeout: int = DEFAULT_PREVIEW_TIMEOUT_MS  # ms

    # Rollback
    enable_rollback: bool = True
    rollback_timeout: Optional[int] = None  # ms after completion, unlimited when unset


class CreateImportJobRequest(SQLModel):
    type: ImportJobType = ImportJobType.SINGLE
    source: ImportSource
    raw_data: Optional[str] = None
    source_url: Optional[str] = None
    file_name: Optional[str] = None
    options: Optional[Dict[str, Any]] = None
    conflict_resolution: Optional[ConflictResolution] = None
    priority: int = 0


class BatchImportItem(SQLModel):
    source: ImportSource
    raw_data: Optional[str] = None
    source_url: Optional[str] = None
    identifier: Optional[str] = None


class BatchImportRequest(SQLModel):
    type: ImportJobType = ImportJobType.BATCH
    items: List[BatchImportItem]
    options: Optional[Dict[str, Any]] = None
    conflict_resolution: Optional[ConflictResolution] = None
    priority: int = 0


class UpdateImportJobRequest(SQLModel):
    conflict_resolution: Optional[ConflictResolution] = None
    options: Optional[Dict[str, Any]] = None
    priority: Optional[int] = None


class ResolveConflictRequest(SQLModel):
    conflict_id: str
    resolution: ConflictResolution
    custom_data: Optional[Dict[str, Any]] = None


class ApprovePreviewRequest(SQLModel):
    preview_id: str
    approved: bool
    conflict_resolutions: Optional[Dict[str, ConflictResolution]] = None


class SelectiveRollback(SQLModel):
    deck_ids: Optional[List[str]] = None
    item_ids: Optional[List[str]] = None


class RollbackRequest(SQLModel):
    import_job_id: str
    reason: Optional[str] = None
    selective_rollback: Optional[SelectiveRollback] = None


class ImportProgress(SQLModel):
    job_id: str
    status: ImportJobStatus
    progress: int
    current_step: Optional[str] = None
    total_steps: Optional[int] = None
    estimated_time_remaining: Optional[int] = None
    items_completed: int
    items_total: int
    errors: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    last_updated: datetime


class ImportQueueStats(SQLModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total_processing_time: int = 0
    average_wait_time: int = 0
    queue_length: int = 0


class ValidationIssue(SQLModel):
    field: str
    message: str
    code: Optional[str] = None
    suggestion: Optional[str] = None


class ImportJobValidation(SQLModel):
    is_valid: bool
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    estimated_processing_time: Optional[int] = None  # ms
