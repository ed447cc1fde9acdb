"""
Preview/approval gate between conflict detection and commit.
"""
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.import_models import (
    ConflictResolution,
    ImportConflict,
    ImportJob,
    ImportJobItem,
    ImportJobStatus,
    ImportPreview,
    JobStep,
)
from app.models.import_schemas import DEFAULT_PREVIEW_TIMEOUT_MS, ApprovePreviewRequest
from app.services.card_resolver import CardResolution
from app.services.config_service import config_service
from app.services.conflict_resolution import is_valid_resolution
from app.services.import_errors import (
    ImportConflictError,
    ImportNotFoundError,
    ImportValidationError,
    PreviewExpiredError,
    make_error,
)
from app.services.import_events import ImportEventBus, default_event_bus
from app.services.import_queue import JobDispatcher
from app.services.parsers.base import ParsedDeck

logger = logging.getLogger("app.import.preview")

# Rough commit cost used for the preview estimate
ESTIMATED_MS_PER_CARD = 20


def conflict_to_dict(conflict: ImportConflict) -> Dict[str, Any]:
    return {
        "id": conflict.id,
        "item_id": conflict.item_id,
        "conflict_type": conflict.conflict_type,
        "description": conflict.description,
        "blocking": conflict.blocking,
        "existing_data": conflict.existing_data,
        "new_data": conflict.new_data,
        "resolution": conflict.resolution,
        "resolved_at": conflict.resolved_at.isoformat() if conflict.resolved_at else None,
        "resolved_by": conflict.resolved_by,
    }


class PreviewGate:
    """Builds previews from persisted job state and applies approval decisions."""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None,
                 events: Optional[ImportEventBus] = None, dispatcher: Optional[JobDispatcher] = None):
        self.db = db
        self.clock = clock or config_service.now
        self.events = events or default_event_bus()
        self.dispatcher = dispatcher

    def build_preview(self, job: ImportJob) -> ImportPreview:
        """
        Materialize what commit would do for ``job``.

        Only items, resolved cards and conflicts already stored on the job are
        read; nothing is resolved again.

        Args:
            job: Job whose parse, resolve and detect steps have run

        Returns:
            The job's preview, created or refreshed; the caller commits
        """
        now = self.clock()
        items = self.db.query(ImportJobItem).filter(
            ImportJobItem.import_job_id == job.id,
            ImportJobItem.status != ImportJobStatus.FAILED.value,
        ).order_by(ImportJobItem.item_index).all()
        conflicts = self.db.query(ImportConflict).filter(
            ImportConflict.import_job_id == job.id
        ).order_by(ImportConflict.created_at, ImportConflict.id).all()

        decks_preview: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = list(job.warnings or [])
        total_cards = resolved_cards = unresolved_cards = 0
        unique_cards = set()
        formats: Counter = Counter()
        colors: Counter = Counter()
        rarities: Counter = Counter()

        for item in items:
            deck = ParsedDeck.from_dict(item.parsed_deck or {})
            cards = [CardResolution.from_dict(data) for data in item.resolved_cards or []]
            resolved = [card for card in cards if card.resolved]
            formats[deck.format] += 1
            for card in cards:
                total_cards += card.quantity
                unique_cards.add(card.card_id or card.raw_name.lower())
            for card in resolved:
                resolved_cards += card.quantity
                rarities[card.rarity or "unknown"] += card.quantity
                for color in (card.colors or "C").split(","):
                    colors[color.strip() or "C"] += card.quantity
            unresolved_cards += sum(card.quantity for card in cards if not card.resolved)
            warnings.extend(item.warnings or [])

            item_conflicts = [c for c in conflicts if c.item_id == item.id]
            decks_preview.append({
                "item_id": item.id,
                "name": item.deck_name or deck.name,
                "commander": deck.commander,
                "format": deck.format,
                "folder": deck.folder,
                "card_count": sum(card.quantity for card in cards),
                "resolved_cards": len(resolved),
                "unresolved_cards": [card.raw_name for card in cards if not card.resolved],
                "conflicts": [c.id for c in item_conflicts],
            })

        statistics = {
            "total_decks": len(items),
            "total_cards": total_cards,
            "unique_cards": len(unique_cards),
            "resolved_cards": resolved_cards,
            "unresolved_cards": unresolved_cards,
            "estimated_processing_time": resolved_cards * ESTIMATED_MS_PER_CARD,
            "format_distribution": dict(formats),
            "color_distribution": dict(colors),
            "rarity_distribution": dict(rarities),
        }

        timeout_ms = (job.options or {}).get("preview_timeout") or DEFAULT_PREVIEW_TIMEOUT_MS
        preview = self.db.query(ImportPreview).filter(ImportPreview.import_job_id == job.id).first()
        if preview is None:
            preview = ImportPreview(import_job_id=job.id, expires_at=now)
            self.db.add(preview)

        preview.preview_data = {
            "job_id": job.id,
            "source": job.source,
            "type": job.type,
            "decks_found": len(items),
            "blocking_conflicts": sum(1 for c in conflicts if c.blocking and not c.is_resolved),
        }
        preview.decks_preview = decks_preview
        preview.statistics = statistics
        preview.warnings = warnings
        preview.conflicts = [conflict_to_dict(c) for c in conflicts]
        preview.is_approved = False
        preview.approved_at = None
        preview.consumed = False
        preview.expires_at = now + timedelta(milliseconds=timeout_ms)
        preview.updated_at = now

        logger.info(f"Preview built for job {job.id}: {len(items)} decks, {total_cards} cards, "
                    f"expires at {preview.expires_at}")
        return preview

    def approve(self, user_id: str, request: ApprovePreviewRequest) -> ImportPreview:
        """
        Apply the user's decision on a preview.

        Raises:
            ImportNotFoundError: preview or job does not exist for this user
            ImportConflictError: preview already used, or blocking conflicts left unresolved
            PreviewExpiredError: preview expired, the job is failed
        """
        preview = self.db.query(ImportPreview).filter(ImportPreview.id == request.preview_id).first()
        if preview is None:
            raise ImportNotFoundError(f"Preview {request.preview_id} not found")
        job = self.db.query(ImportJob).filter(ImportJob.id == preview.import_job_id).first()
        if job is None or job.user_id != user_id:
            raise ImportNotFoundError(f"Preview {request.preview_id} not found")

        if preview.consumed:
            raise ImportConflictError(f"Preview {preview.id} has already been used")
        if job.is_terminal or job.current_step != JobStep.AWAITING_PREVIEW_APPROVAL.value:
            raise ImportConflictError(f"Job {job.id} is not awaiting preview approval")

        now = self.clock()
        if now >= preview.expires_at:
            job.status = ImportJobStatus.FAILED.value
            job.errors = list(job.errors or []) + [
                make_error("validation_error", f"Preview {preview.id} expired at {preview.expires_at.isoformat()}")
            ]
            job.processing_completed_at = now
            job.updated_at = now
            preview.consumed = True
            self.db.commit()
            self.events.job_event("job_failed", job.id, job.user_id, reason="preview_expired")
            logger.warning(f"Preview {preview.id} for job {job.id} expired")
            raise PreviewExpiredError(f"Preview {preview.id} expired")

        if not request.approved:
            preview.consumed = True
            preview.updated_at = now
            job.status = ImportJobStatus.CANCELLED.value
            job.processing_completed_at = now
            job.updated_at = now
            self.db.commit()
            self.events.job_event("job_cancelled", job.id, job.user_id, reason="preview_rejected")
            logger.info(f"Preview {preview.id} rejected, job {job.id} cancelled")
            return preview

        conflicts = {
            c.id: c for c in self.db.query(ImportConflict).filter(ImportConflict.import_job_id == job.id).all()
        }
        overrides = {
            conflict_id: ConflictResolution(resolution).value
            for conflict_id, resolution in (request.conflict_resolutions or {}).items()
            if ConflictResolution(resolution) != ConflictResolution.ASK_USER
        }
        for conflict_id, resolution in overrides.items():
            conflict = conflicts.get(conflict_id)
            if conflict is None:
                raise ImportNotFoundError(f"Conflict {conflict_id} not found in job {job.id}")
            if conflict.is_resolved and conflict.resolution != resolution:
                raise ImportConflictError(f"Conflict {conflict_id} is already resolved as {conflict.resolution}")
            if not is_valid_resolution(conflict.conflict_type, resolution):
                raise ImportValidationError(f"Resolution '{resolution}' is not valid for {conflict.conflict_type}")

        still_blocking = [
            c.id for c in conflicts.values()
            if c.blocking and not c.is_resolved and c.id not in overrides
        ]
        if still_blocking:
            raise ImportConflictError(
                f"Blocking conflicts must be resolved before approval: {', '.join(sorted(still_blocking))}"
            )

        resolved_now = []
        for conflict_id, resolution in overrides.items():
            conflict = conflicts[conflict_id]
            if conflict.is_resolved:
                continue
            conflict.resolution = resolution
            conflict.resolved_at = now
            conflict.resolved_by = user_id
            conflict.updated_at = now
            resolved_now.append(conflict)

        preview.is_approved = True
        preview.approved_at = now
        preview.consumed = True
        preview.updated_at = now
        job.current_step = JobStep.READY_TO_COMMIT.value
        job.updated_at = now
        self.db.commit()

        for conflict in resolved_now:
            self.events.conflict_event("conflict_resolved", job.id, conflict.id, job.user_id,
                                       resolution=conflict.resolution)
        logger.info(f"Preview {preview.id} approved, job {job.id} ready to commit")
        if self.dispatcher is not None:
            self.dispatcher.dispatch_job(job.id)
        return preview
