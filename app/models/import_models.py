"""
Import job models.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id(prefix: str):
    def factory() -> str:
        return f"{prefix}_{uuid.uuid4().hex[:16]}"
    return factory


class ImportJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    ImportJobStatus.COMPLETED.value,
    ImportJobStatus.FAILED.value,
    ImportJobStatus.CANCELLED.value,
)


class ImportJobType(str, Enum):
    SINGLE = "single"
    BATCH = "batch"
    BULK = "bulk"


class ImportSource(str, Enum):
    MOXFIELD = "moxfield"
    ARCHIDEKT = "archidekt"
    TAPPEDOUT = "tappedout"
    EDHREC = "edhrec"
    MTGGOLDFISH = "mtggoldfish"
    CSV = "csv"
    TEXT = "text"
    CUSTOM = "custom"


class ConflictResolution(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    MERGE = "merge"
    RENAME = "rename"
    ASK_USER = "ask_user"


class ConflictType(str, Enum):
    DUPLICATE_DECK_NAME = "duplicate-deck-name"
    CARD_ALREADY_OWNED = "card-already-owned"
    FOLDER_NAME_COLLISION = "folder-name-collision"
    AMBIGUOUS_CARD_MATCH = "ambiguous-card-match"


class JobStep(str, Enum):
    """Values exposed as ImportJob.current_step."""

    QUEUED = "queued"
    PARSING = "parsing"
    RESOLVING_CARDS = "resolving_cards"
    DETECTING_CONFLICTS = "detecting_conflicts"
    AWAITING_CONFLICT_RESOLUTION = "awaiting_conflict_resolution"
    AWAITING_PREVIEW_APPROVAL = "awaiting_preview_approval"
    READY_TO_COMMIT = "ready_to_commit"
    COMMITTING = "committing"
    WAITING_FOR_RETRY = "waiting_for_retry"
    DONE = "done"


class RollbackStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class HistoryAction(str, Enum):
    IMPORT = "import"
    ROLLBACK = "rollback"
    PARTIAL_ROLLBACK = "partial_rollback"


class ImportJob(SQLModel, table=True):
    """Import job tracking model."""

    __tablename__ = "import_jobs"

    id: str = Field(default_factory=_new_id("job"), primary_key=True, max_length=50)
    user_id: str = Field(index=True, max_length=100)
    type: str = Field(default=ImportJobType.SINGLE.value, max_length=20)
    source: str = Field(index=True, max_length=20)
    status: str = Field(default=ImportJobStatus.PENDING.value, index=True, max_length=20)
    priority: int = Field(default=0, index=True)

    # Input data, exactly one of raw_data / source_url / file_name
    raw_data: Optional[str] = Field(default=None)
    source_url: Optional[str] = Field(default=None, max_length=2000)
    file_name: Optional[str] = Field(default=None, max_length=500)
    file_size: Optional[int] = Field(default=None)
    mime_type: Optional[str] = Field(default=None, max_length=100)

    # Processing configuration
    options: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    conflict_resolution: str = Field(default=ConflictResolution.ASK_USER.value, max_length=20)

    # Progress tracking
    progress: int = Field(default=0)
    current_step: Optional[str] = Field(default=JobStep.QUEUED.value, max_length=50)
    total_steps: Optional[int] = Field(default=None)
    estimated_time_remaining: Optional[int] = Field(default=None)  # ms

    # Results
    decks_found: int = Field(default=0)
    decks_imported: int = Field(default=0)
    cards_processed: int = Field(default=0)
    cards_resolved: int = Field(default=0)
    errors: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    warnings: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    # Processing metadata
    processing_started_at: Optional[datetime] = Field(default=None)
    processing_completed_at: Optional[datetime] = Field(default=None)
    processing_time: Optional[int] = Field(default=None)  # ms
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    next_retry_at: Optional[datetime] = Field(default=None, index=True)
    cancel_requested: bool = Field(default=False)
    locked_by: Optional[str] = Field(default=None, max_length=100)
    locked_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=_utcnow, index=True)
    updated_at: datetime = Field(default_factory=_utcnow)

    # Relationships
    items: List["ImportJobItem"] = Relationship(back_populates="job")
    conflicts: List["ImportConflict"] = Relationship(back_populates="job")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ImportJobItem(SQLModel, table=True):
    """One deck within an import job."""

    __tablename__ = "import_job_items"

    id: str = Field(default_factory=_new_id("item"), primary_key=True, max_length=50)
    import_job_id: str = Field(foreign_key="import_jobs.id", index=True, max_length=50)
    item_index: int = Field()
    status: str = Field(default=ImportJobStatus.PENDING.value, index=True, max_length=20)

    raw_data: str = Field(default="")
    source: Optional[str] = Field(default=None, max_length=20)
    source_identifier: Optional[str] = Field(default=None, max_length=500)

    deck_id: Optional[str] = Field(default=None, index=True, max_length=50)
    deck_name: Optional[str] = Field(default=None, max_length=255)
    parsed_deck: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    resolved_cards: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON))
    cards_found: int = Field(default=0)
    cards_imported: int = Field(default=0)
    conflicts_checked: bool = Field(default=False)
    errors: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    warnings: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    rollback_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    processing_started_at: Optional[datetime] = Field(default=None)
    processing_completed_at: Optional[datetime] = Field(default=None)
    processing_time: Optional[int] = Field(default=None)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    job: ImportJob = Relationship(back_populates="items")


class ImportConflict(SQLModel, table=True):
    """Collision between incoming data and what the user already has."""

    __tablename__ = "import_conflicts"

    id: str = Field(default_factory=_new_id("conflict"), primary_key=True, max_length=50)
    import_job_id: str = Field(foreign_key="import_jobs.id", index=True, max_length=50)
    item_id: Optional[str] = Field(default=None, foreign_key="import_job_items.id", max_length=50)
    conflict_type: str = Field(max_length=50)
    description: str = Field(max_length=1000)
    blocking: bool = Field(default=True)
    existing_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    new_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    resolution: Optional[str] = Field(default=None, index=True, max_length=20)
    resolved_at: Optional[datetime] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None, max_length=100)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    job: ImportJob = Relationship(back_populates="conflicts")

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None


class ImportPreview(SQLModel, table=True):
    """Dry-run summary awaiting user approval."""

    __tablename__ = "import_previews"

    id: str = Field(default_factory=_new_id("preview"), primary_key=True, max_length=50)
    import_job_id: str = Field(foreign_key="import_jobs.id", unique=True, max_length=50)
    preview_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    decks_preview: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    statistics: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    warnings: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    conflicts: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    is_approved: bool = Field(default=False)
    approved_at: Optional[datetime] = Field(default=None)
    consumed: bool = Field(default=False)
    expires_at: datetime = Field(index=True)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ImportHistory(SQLModel, table=True):
    """Append-only audit ledger holding the data needed to undo an import."""

    __tablename__ = "import_history"

    id: str = Field(default_factory=_new_id("history"), primary_key=True, max_length=50)
    user_id: str = Field(index=True, max_length=100)
    import_job_id: str = Field(foreign_key="import_jobs.id", index=True, max_length=50)
    action: str = Field(max_length=50)
    description: Optional[str] = Field(default=None, max_length=1000)
    # "metadata" is reserved on declarative models
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    can_rollback: bool = Field(default=False)
    rollback_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    rolled_back_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=_utcnow, index=True)


class RollbackOperation(SQLModel, table=True):
    """Requested reversal of an import history entry."""

    __tablename__ = "rollback_operations"

    id: str = Field(default_factory=_new_id("rollback"), primary_key=True, max_length=50)
    import_job_id: str = Field(foreign_key="import_jobs.id", index=True, max_length=50)
    history_id: str = Field(foreign_key="import_history.id", index=True, max_length=50)
    user_id: str = Field(max_length=100)
    description: str = Field(default="", max_length=1000)
    rollback_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default=RollbackStatus.PENDING.value, max_length=20)

    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = Field(default=None)
