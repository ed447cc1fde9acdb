"""
Import job orchestration.

A job runs parse -> resolve -> detect conflicts -> (preview / conflict
checkpoint) -> commit. Every step persists its results on the job's items,
so a retried or resumed job picks up where the previous attempt stopped.
"""
import json
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.database.session import SessionLocal
from app.models.import_models import (
    ConflictResolution,
    HistoryAction,
    ImportConflict,
    ImportHistory,
    ImportJob,
    ImportJobItem,
    ImportJobStatus,
    ImportJobType,
    ImportPreview,
    JobStep,
)
from app.models.import_schemas import ImportJobOptions
from app.services.card_resolver import CardResolution, CardResolver, SqlCardCatalog
from app.services.config_service import ImportQueueConfiguration, config_service, get_queue_configuration
from app.services.conflict_detector import ConflictDetector
from app.services.conflict_resolution import (
    CREATE,
    FOLDER_NONE,
    FOLDER_RENAME,
    OVERWRITE,
    DeckCommitPlan,
    apply_resolution,
    default_resolution_for,
)
from app.services.deck_store import DeckStore, split_folder_path
from app.services.import_errors import (
    ImportPipelineError,
    ImportTimeoutError,
    InvalidFormatError,
    error_from_exception,
    make_error,
    make_warning,
)
from app.services.import_events import ImportEventBus, default_event_bus
from app.services.import_preview import PreviewGate
from app.services.import_queue import ImportQueue, JobDispatcher
from app.services.parsers.base import ParsedDeck
from app.services.parsers.registry import get_parser
from app.services.source_fetcher import SourceFetcher

logger = logging.getLogger("app.import.processor")

# (start, weight) of each step on the 0-100 progress scale
STEP_PROGRESS = {
    JobStep.PARSING.value: (0, 10),
    JobStep.RESOLVING_CARDS.value: (10, 30),
    JobStep.DETECTING_CONFLICTS.value: (40, 10),
    JobStep.COMMITTING.value: (50, 50),
}
TOTAL_STEPS = len(STEP_PROGRESS)

SYSTEM_RESOLVER = "system"


class ItemFailedError(ImportPipelineError):
    """An item failed and the job does not continue on error."""

    def __init__(self, record: Dict[str, Any]):
        super().__init__(
            record.get("message", "Import item failed"),
            recoverable=bool(record.get("recoverable", False)),
            suggestions=record.get("suggestions"),
            context=record.get("context"),
        )
        self.error_type = record.get("type", "system_error")


class StepTimer:
    """Cooperative deadline for one pipeline step."""

    def __init__(self, step: str, timeout_ms: int):
        self.step = step
        self.timeout_ms = timeout_ms
        self.deadline = time.monotonic() + timeout_ms / 1000

    def remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0.0)

    def check(self) -> None:
        if time.monotonic() > self.deadline:
            raise ImportTimeoutError(f"Step {self.step} exceeded {self.timeout_ms} ms")


class ImportJobProcessor:
    """
    Runs import jobs claimed from the queue.

    Collaborators are injected so tests can replace the card catalog, the
    dispatcher and the clock.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        resolver: Optional[CardResolver] = None,
        dispatcher: Optional[JobDispatcher] = None,
        events: Optional[ImportEventBus] = None,
        fetcher: Optional[SourceFetcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        queue_configuration: Optional[ImportQueueConfiguration] = None,
        detector: Optional[ConflictDetector] = None,
        store_factory: Callable[[Session], DeckStore] = DeckStore,
    ):
        self.session_factory = session_factory
        self.resolver = resolver or CardResolver(SqlCardCatalog(session_factory))
        self.dispatcher = dispatcher
        self.events = events or default_event_bus()
        self.fetcher = fetcher or SourceFetcher()
        self.clock = clock or config_service.now
        self.queue_configuration = queue_configuration or get_queue_configuration()
        self.detector = detector or ConflictDetector()
        self.store_factory = store_factory

    def process_job(self, job_id: str, worker_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Claim and run one job.

        Args:
            job_id: Import job ID
            worker_id: Identity of the calling worker, generated when omitted

        Returns:
            Status dict describing where the job stopped
        """
        worker_id = worker_id or f"worker_{uuid.uuid4().hex[:8]}"
        db = self.session_factory()
        try:
            queue = ImportQueue(db, self.queue_configuration)
            if not queue.claim(job_id, worker_id, self.clock()):
                return {"status": "skipped", "job_id": job_id}

            job = self._load_job(db, job_id)
            try:
                return self._run(db, job)
            except Exception as e:
                logger.error(f"Import job {job_id} attempt failed: {e}")
                return self._handle_failure(db, queue, job_id, e)
        finally:
            db.close()

    # Orchestration

    def _run(self, db: Session, job: ImportJob) -> Dict[str, Any]:
        options = ImportJobOptions.model_validate(job.options or {})
        now = self.clock()
        if job.processing_started_at is None:
            job.processing_started_at = now
        job.total_steps = TOTAL_STEPS
        if job.current_step in (JobStep.QUEUED.value, JobStep.WAITING_FOR_RETRY.value, None):
            self.events.job_event("job_started", job.id, job.user_id, retry_count=job.retry_count)
        db.commit()

        resume_commit = job.current_step == JobStep.READY_TO_COMMIT.value
        if not resume_commit:
            if self._cancel_requested(db, job):
                return self._cancel(db, job)

            items = self._items(db, job)
            if not items:
                self._parse_step(db, job, options)
                if self._cancel_requested(db, job):
                    return self._cancel(db, job)

            self._resolve_step(db, job, options)
            if self._cancel_requested(db, job):
                return self._cancel(db, job)

            self._detect_step(db, job, options)
            if self._cancel_requested(db, job):
                return self._cancel(db, job)

            self._auto_resolve(db, job, options, blocking_only=True)

            if options.generate_preview and not self._preview_approved(db, job):
                PreviewGate(db, clock=self.clock, events=self.events).build_preview(job)
                return self._pause(db, job, JobStep.AWAITING_PREVIEW_APPROVAL)

            if self._unresolved_conflicts(db, job, blocking_only=True):
                return self._pause(db, job, JobStep.AWAITING_CONFLICT_RESOLUTION)
        elif self._cancel_requested(db, job):
            return self._cancel(db, job)

        self._auto_resolve(db, job, options, blocking_only=False)
        if self._unresolved_conflicts(db, job, blocking_only=False):
            return self._pause(db, job, JobStep.AWAITING_CONFLICT_RESOLUTION)

        self._commit_step(db, job, options)
        return self._complete(db, job, options)

    def _parse_step(self, db: Session, job: ImportJob, options: ImportJobOptions) -> None:
        self._enter_step(db, job, JobStep.PARSING)
        timer = self._timer(JobStep.PARSING, options)

        entries = self._input_entries(job, options)
        items: List[ImportJobItem] = []
        job_warnings = list(job.warnings or [])
        for position, (source, raw, identifier) in enumerate(entries):
            timer.check()
            try:
                if raw is None:
                    raise InvalidFormatError(f"No input data for entry {identifier or position}")
                payload = get_parser(source).parse(raw, source_hint=identifier,
                                                options=options.model_dump(mode="json"))
            except ImportTimeoutError:
                raise
            except ImportPipelineError as e:
                if e.recoverable:
                    raise
                items.append(self._failed_item(job, len(items), source, raw or "", identifier, [e.to_record()]))
                continue

            job_warnings.extend(payload.warnings)
            if not payload.decks:
                items.append(self._failed_item(job, len(items), source, raw, identifier, payload.errors))
                continue
            if payload.errors:
                job_warnings.extend(
                    make_warning("data_loss", error.get("message", ""), context=error.get("context"), impact="medium")
                    for error in payload.errors
                )
            for deck in payload.decks:
                items.append(ImportJobItem(
                    import_job_id=job.id,
                    item_index=len(items),
                    raw_data=raw,
                    source=source,
                    source_identifier=identifier,
                    deck_name=deck.name,
                    parsed_deck=deck.to_dict(),
                    cards_found=len(deck.cards),
                ))
            self._set_progress(job, JobStep.PARSING, position + 1, len(entries))

        db.add_all(items)
        job.warnings = job_warnings
        job.decks_found = sum(1 for item in items if item.status != ImportJobStatus.FAILED.value)
        self._set_progress(job, JobStep.PARSING, 1, 1)
        db.commit()
        logger.info(f"Job {job.id} parsed {len(entries)} inputs into {len(items)} items")

        failed = [item for item in items if item.status == ImportJobStatus.FAILED.value]
        if failed and (not options.continue_on_error or len(failed) == len(items)):
            raise ItemFailedError(failed[0].errors[0])
        self.events.job_event("job_progress", job.id, job.user_id, step=JobStep.PARSING.value,
                              progress=job.progress)

    def _resolve_step(self, db: Session, job: ImportJob, options: ImportJobOptions) -> None:
        self._enter_step(db, job, JobStep.RESOLVING_CARDS)
        timer = self._timer(JobStep.RESOLVING_CARDS, options)

        items = [item for item in self._active_items(db, job) if item.resolved_cards is None]
        decks = [ParsedDeck.from_dict(item.parsed_deck or {}) for item in items]
        allow_fuzzy = options.resolve_card_names

        if options.concurrency > 1 and len(items) > 1:
            pool = ThreadPoolExecutor(max_workers=options.concurrency)
            try:
                futures = [pool.submit(self.resolver.resolve_deck, deck, allow_fuzzy) for deck in decks]
                results = [future.result(timeout=timer.remaining()) for future in futures]
            except FutureTimeoutError:
                raise ImportTimeoutError(f"Step {timer.step} exceeded {timer.timeout_ms} ms")
            finally:
                # resolutions still running past the deadline are abandoned, not awaited
                pool.shutdown(wait=False, cancel_futures=True)
        else:
            results = []
            for deck in decks:
                timer.check()
                results.append(self.resolver.resolve_deck(deck, allow_fuzzy))

        failures: List[ImportJobItem] = []
        for done, (item, cards) in enumerate(zip(items, results), start=1):
            self._store_resolution(job, item, cards)
            if options.validate_cards and any(not card.resolved for card in cards):
                missing = ", ".join(card.raw_name for card in cards if not card.resolved)
                failures.append(self._fail_item(job, item, make_error(
                    "validation_error",
                    f"Deck '{item.deck_name}' has unresolved cards: {missing}",
                    context=item.id,
                ), options))
            elif cards and not any(card.resolved for card in cards):
                failures.append(self._fail_item(job, item, make_error(
                    "validation_error",
                    f"No cards in deck '{item.deck_name}' could be resolved",
                    context=item.id,
                ), options))
            self._set_progress(job, JobStep.RESOLVING_CARDS, done, len(items))
            if done % options.batch_size == 0:
                db.commit()

        self._set_progress(job, JobStep.RESOLVING_CARDS, 1, 1)
        db.commit()
        logger.info(f"Job {job.id} resolved cards for {len(items)} items, "
                    f"{job.cards_resolved}/{job.cards_processed} cards resolved")

        if failures and not options.continue_on_error:
            raise ItemFailedError(failures[0].errors[-1])
        self.events.job_event("job_progress", job.id, job.user_id, step=JobStep.RESOLVING_CARDS.value,
                              progress=job.progress)

    def _detect_step(self, db: Session, job: ImportJob, options: ImportJobOptions) -> None:
        self._enter_step(db, job, JobStep.DETECTING_CONFLICTS)
        timer = self._timer(JobStep.DETECTING_CONFLICTS, options)

        store = self.store_factory(db)
        conflicts = self.detector.detect(job, self._active_items(db, job), store)
        timer.check()
        db.add_all(conflicts)
        self._set_progress(job, JobStep.DETECTING_CONFLICTS, 1, 1)
        db.commit()

        for conflict in conflicts:
            self.events.conflict_event("conflict_detected", job.id, conflict.id, job.user_id,
                                       conflict_type=conflict.conflict_type, blocking=conflict.blocking)
        self.events.job_event("job_progress", job.id, job.user_id, step=JobStep.DETECTING_CONFLICTS.value,
                              progress=job.progress, conflicts=len(conflicts))

    def _commit_step(self, db: Session, job: ImportJob, options: ImportJobOptions) -> None:
        self._enter_step(db, job, JobStep.COMMITTING)
        timer = self._timer(JobStep.COMMITTING, options)

        conflicts = self._conflicts(db, job)
        items = [item for item in self._active_items(db, job) if item.status != ImportJobStatus.COMPLETED.value]
        store = self.store_factory(db)

        for done, item in enumerate(items, start=1):
            timer.check()
            plan = DeckCommitPlan.for_item(item, preserve_categories=options.preserve_categories)
            for conflict in conflicts:
                if conflict.item_id == item.id:
                    apply_resolution(plan, conflict)

            item_id = item.id
            try:
                self._commit_deck(store, job, item, plan)
                self._set_progress(job, JobStep.COMMITTING, done, len(items))
                job.updated_at = self.clock()
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error(f"Commit of item {item_id} in job {job.id} failed: {e}")
                item = db.query(ImportJobItem).filter(ImportJobItem.id == item_id).first()
                record = error_from_exception(e)
                record["context"] = item_id
                if options.continue_on_error or not record.get("recoverable"):
                    self._fail_item(job, item, record, options)
                else:
                    # left pending so the retry commits it again
                    item.errors = list(item.errors or []) + [record]
                db.commit()
                if not options.continue_on_error:
                    raise ItemFailedError(record)

        logger.info(f"Job {job.id} committed {len(items)} items")

    def _commit_deck(self, store: DeckStore, job: ImportJob, item: ImportJobItem,
                     plan: DeckCommitPlan) -> None:
        """
        Write one deck. Runs inside a single transaction the caller commits
        or rolls back.
        """
        now = self.clock()
        item.processing_started_at = now
        store.lock_user(job.user_id)

        if plan.skip_deck:
            item.status = ImportJobStatus.COMPLETED.value
            item.deck_id = None
            item.cards_imported = 0
            item.warnings = list(item.warnings or []) + [
                {"type": "data_loss", "message": f"Deck '{plan.deck_name}' skipped by conflict resolution",
                 "impact": "high"}
            ]
            item.processing_completed_at = now
            return

        cards = [
            {"card_id": card.card_id, "card_name": card.name, "quantity": card.quantity, "category": card.category}
            for card in plan.cards_to_commit()
        ]
        record: Dict[str, Any] = {
            "item_id": item.id,
            "deck_id": None,
            "mode": plan.target_mode,
            "created_deck": False,
            "card_row_ids": [],
            "previous_cards": None,
            "folder_membership_id": None,
            "created_folder_ids": [],
            "reversed": False,
        }

        existing = store.find_deck_by_name(job.user_id, plan.deck_name)
        if plan.target_mode != CREATE and existing is not None:
            deck = existing
            if plan.target_mode == OVERWRITE:
                record["previous_cards"] = store.snapshot_deck_cards(deck.id)
                store.clear_deck_cards(deck.id)
        else:
            name = plan.deck_name
            if plan.rename_deck or existing is not None:
                name = store.unique_deck_name(job.user_id, name)
            deck = store.create_deck(job.user_id, name, commander=plan.commander, format=plan.format,
                                     import_job_id=job.id)
            record["created_deck"] = True

        record["deck_id"] = deck.id
        record["card_row_ids"] = store.add_deck_cards(deck.id, cards)

        if plan.folder_path and plan.folder_mode != FOLDER_NONE:
            folder_id, created = self._file_deck(store, job.user_id, plan)
            record["created_folder_ids"] = created
            record["folder_membership_id"] = store.add_folder_membership(folder_id, deck.id)

        item.status = ImportJobStatus.COMPLETED.value
        item.deck_id = deck.id
        item.deck_name = deck.name
        item.cards_imported = sum(card["quantity"] for card in cards)
        item.rollback_data = record
        item.processing_completed_at = now
        if item.processing_started_at:
            item.processing_time = int((now - item.processing_started_at).total_seconds() * 1000)
        item.updated_at = now

    @staticmethod
    def _file_deck(store: DeckStore, user_id: str, plan: DeckCommitPlan) -> Tuple[int, List[int]]:
        """Find or create the folder chain for ``plan.folder_path``; returns leaf id and created ids."""
        parts = split_folder_path(plan.folder_path)
        created: List[int] = []
        parent_id = None
        for index, part in enumerate(parts):
            folder = store.find_folder(user_id, part, parent_id)
            is_leaf = index == len(parts) - 1
            if is_leaf and folder is not None and plan.folder_mode == FOLDER_RENAME:
                folder = store.create_folder(user_id, store.unique_folder_name(user_id, part, parent_id), parent_id)
                created.append(folder.id)
            elif folder is None:
                folder = store.create_folder(user_id, part, parent_id)
                created.append(folder.id)
            parent_id = folder.id
        return parent_id, created

    def _complete(self, db: Session, job: ImportJob, options: ImportJobOptions) -> Dict[str, Any]:
        now = self.clock()
        items = self._items(db, job)
        committed = [item for item in items if item.status == ImportJobStatus.COMPLETED.value]
        job.decks_imported = sum(1 for item in committed if item.deck_id)
        job.status = ImportJobStatus.COMPLETED.value
        job.current_step = JobStep.DONE.value
        job.progress = 100
        job.estimated_time_remaining = 0
        job.processing_completed_at = now
        if job.processing_started_at:
            job.processing_time = int((now - job.processing_started_at).total_seconds() * 1000)
        job.locked_by = None
        job.locked_at = None
        job.updated_at = now

        self._record_history(db, job, items, options, now)
        db.commit()

        self.events.job_event("job_completed", job.id, job.user_id, decks_imported=job.decks_imported,
                              errors=len(job.errors or []))
        logger.info(f"Import job completed: {job.id} - {job.decks_imported}/{job.decks_found} decks, "
                    f"{job.cards_resolved}/{job.cards_processed} cards")
        return {"status": ImportJobStatus.COMPLETED.value, "job_id": job.id, "decks_imported": job.decks_imported}

    def _record_history(self, db: Session, job: ImportJob, items: List[ImportJobItem],
                        options: ImportJobOptions, now: datetime) -> None:
        """Add the ``import`` history entry holding what the committed items wrote."""
        if not options.enable_rollback:
            return
        records = [item.rollback_data for item in items
                   if item.status == ImportJobStatus.COMPLETED.value and item.rollback_data]
        if job.status == ImportJobStatus.FAILED.value and not records:
            return
        db.add(ImportHistory(
            user_id=job.user_id,
            import_job_id=job.id,
            action=HistoryAction.IMPORT.value,
            description=f"Imported {job.decks_imported} of {job.decks_found} decks from {job.source}",
            details={
                "status": job.status,
                "decks_imported": job.decks_imported,
                "cards_processed": job.cards_processed,
                "cards_resolved": job.cards_resolved,
                "failed_items": [item.id for item in items if item.status == ImportJobStatus.FAILED.value],
            },
            can_rollback=bool(records),
            rollback_data={"decks": records},
            created_at=now,
        ))

    def _handle_failure(self, db: Session, queue: ImportQueue, job_id: str, exc: Exception) -> Dict[str, Any]:
        db.rollback()
        job = self._load_job(db, job_id)
        now = self.clock()
        record = error_from_exception(exc)
        job.errors = list(job.errors or []) + [record]

        if record.get("recoverable") and job.retry_count < job.max_retries:
            next_retry_at = queue.schedule_retry(job, now)
            db.commit()
            self.events.job_event("job_progress", job.id, job.user_id, step=JobStep.WAITING_FOR_RETRY.value,
                                  progress=job.progress, retry_count=job.retry_count,
                                  next_retry_at=next_retry_at.isoformat())
            return {"status": "retry_scheduled", "job_id": job.id, "retry_count": job.retry_count,
                    "next_retry_at": next_retry_at.isoformat()}

        job.status = ImportJobStatus.FAILED.value
        job.processing_completed_at = now
        if job.processing_started_at:
            job.processing_time = int((now - job.processing_started_at).total_seconds() * 1000)
        job.locked_by = None
        job.locked_at = None
        job.updated_at = now
        items = self._items(db, job)
        job.decks_imported = sum(
            1 for item in items if item.status == ImportJobStatus.COMPLETED.value and item.deck_id
        )
        self._record_history(db, job, items, ImportJobOptions.model_validate(job.options or {}), now)
        db.commit()
        self.events.job_event("job_failed", job.id, job.user_id, error=record)
        logger.error(f"Import job failed: {job.id} - {record['type']}: {record['message']}")
        return {"status": ImportJobStatus.FAILED.value, "job_id": job.id, "error": record}

    # Checkpoints

    def _pause(self, db: Session, job: ImportJob, step: JobStep) -> Dict[str, Any]:
        job.current_step = step.value
        job.locked_by = None
        job.locked_at = None
        job.updated_at = self.clock()
        db.commit()
        logger.info(f"Job {job.id} paused at {step.value}")
        return {"status": step.value, "job_id": job.id}

    def _cancel_requested(self, db: Session, job: ImportJob) -> bool:
        return bool(db.query(ImportJob.cancel_requested).filter(ImportJob.id == job.id).scalar())

    def _cancel(self, db: Session, job: ImportJob) -> Dict[str, Any]:
        now = self.clock()
        job.status = ImportJobStatus.CANCELLED.value
        job.processing_completed_at = now
        job.locked_by = None
        job.locked_at = None
        job.updated_at = now
        db.commit()
        self.events.job_event("job_cancelled", job.id, job.user_id, step=job.current_step)
        logger.info(f"Import job cancelled: {job.id} at {job.current_step}")
        return {"status": ImportJobStatus.CANCELLED.value, "job_id": job.id}

    def _auto_resolve(self, db: Session, job: ImportJob, options: ImportJobOptions, blocking_only: bool) -> None:
        """
        Resolve what the job's policy can decide on its own.

        Blocking conflicts are only decided before the checkpoint when the user
        asked for it (auto_resolve_conflicts or an explicit job policy);
        non-blocking ones are settled right before commit.
        """
        if blocking_only:
            explicit_policy = job.conflict_resolution != ConflictResolution.ASK_USER.value
            if not (options.auto_resolve_conflicts or explicit_policy):
                return

        now = self.clock()
        resolved = []
        for conflict in self._unresolved_conflicts(db, job, blocking_only=blocking_only):
            resolution = default_resolution_for(conflict, job)
            if resolution is None:
                continue
            conflict.resolution = resolution
            conflict.resolved_at = now
            conflict.resolved_by = SYSTEM_RESOLVER
            conflict.updated_at = now
            resolved.append(conflict)
        db.commit()
        for conflict in resolved:
            self.events.conflict_event("conflict_resolved", job.id, conflict.id, job.user_id,
                                       resolution=conflict.resolution, automatic=True)

    @staticmethod
    def _unresolved_conflicts(db: Session, job: ImportJob, blocking_only: bool) -> List[ImportConflict]:
        query = db.query(ImportConflict).filter(
            ImportConflict.import_job_id == job.id,
            ImportConflict.resolution.is_(None),
        )
        if blocking_only:
            query = query.filter(ImportConflict.blocking.is_(True))
        return query.order_by(ImportConflict.created_at, ImportConflict.id).all()

    @staticmethod
    def _conflicts(db: Session, job: ImportJob) -> List[ImportConflict]:
        return db.query(ImportConflict).filter(
            ImportConflict.import_job_id == job.id
        ).order_by(ImportConflict.created_at, ImportConflict.id).all()

    @staticmethod
    def _preview_approved(db: Session, job: ImportJob) -> bool:
        preview = db.query(ImportPreview).filter(ImportPreview.import_job_id == job.id).first()
        return preview is not None and preview.is_approved

    # Helpers

    def _input_entries(self, job: ImportJob, options: ImportJobOptions) -> List[Tuple[str, Optional[str], Optional[str]]]:
        """(source, raw text, identifier) per input of the job."""
        if job.type in (ImportJobType.BATCH.value, ImportJobType.BULK.value):
            try:
                envelope = json.loads(job.raw_data or "[]")
            except ValueError:
                raise InvalidFormatError(f"Batch payload of job {job.id} is not valid JSON")
            entries = []
            for index, entry in enumerate(envelope):
                raw = entry.get("raw_data")
                if raw is None and entry.get("source_url"):
                    raw = self.fetcher.fetch(entry["source_url"], options.timeout)
                identifier = entry.get("identifier") or entry.get("source_url") or f"item {index + 1}"
                entries.append((entry.get("source") or job.source, raw, identifier))
            return entries

        if job.raw_data is not None:
            return [(job.source, job.raw_data, None)]
        if job.source_url:
            return [(job.source, self.fetcher.fetch(job.source_url, options.timeout), job.source_url)]
        if job.file_name:
            path = Path(job.file_name)
            if not path.exists():
                raise InvalidFormatError(f"Uploaded file {job.file_name} no longer exists")
            return [(job.source, path.read_bytes().decode("utf-8-sig", errors="replace"), path.name)]
        raise InvalidFormatError(f"Job {job.id} has no input")

    @staticmethod
    def _failed_item(job: ImportJob, index: int, source: str, raw: str, identifier: Optional[str],
                     errors: List[Dict[str, Any]]) -> ImportJobItem:
        return ImportJobItem(
            import_job_id=job.id,
            item_index=index,
            status=ImportJobStatus.FAILED.value,
            raw_data=raw,
            source=source,
            source_identifier=identifier,
            errors=list(errors) or [make_error("parsing_error", "Input could not be parsed")],
        )

    def _fail_item(self, job: ImportJob, item: ImportJobItem, record: Dict[str, Any],
                   options: ImportJobOptions) -> ImportJobItem:
        item.status = ImportJobStatus.FAILED.value
        item.errors = list(item.errors or []) + [record]
        item.updated_at = self.clock()
        if options.continue_on_error:
            job.errors = list(job.errors or []) + [record]
        return item

    @staticmethod
    def _store_resolution(job: ImportJob, item: ImportJobItem, cards: List[CardResolution]) -> None:
        warnings = list(item.warnings or [])
        errors = list(item.errors or [])
        for card in cards:
            warnings.extend(card.warnings)
            if card.error:
                errors.append(card.error)
        item.resolved_cards = [card.to_dict() for card in cards]
        item.warnings = warnings
        item.errors = errors
        job.cards_processed += len(cards)
        job.cards_resolved += sum(1 for card in cards if card.resolved)

    def _enter_step(self, db: Session, job: ImportJob, step: JobStep) -> None:
        job.current_step = step.value
        job.updated_at = self.clock()
        db.commit()
        logger.info(f"Job {job.id} entering step {step.value}")

    def _timer(self, step: JobStep, options: ImportJobOptions) -> StepTimer:
        return StepTimer(step.value, options.timeout or self.queue_configuration.default_timeout)

    def _set_progress(self, job: ImportJob, step: JobStep, done: int, total: int) -> None:
        start, weight = STEP_PROGRESS[step.value]
        fraction = done / total if total else 1
        value = min(int(start + weight * fraction), 100)
        if value > (job.progress or 0):
            job.progress = value
        if job.processing_started_at and 0 < job.progress < 100:
            elapsed_ms = (self.clock() - job.processing_started_at).total_seconds() * 1000
            job.estimated_time_remaining = max(int(elapsed_ms / job.progress * (100 - job.progress)), 0)

    @staticmethod
    def _load_job(db: Session, job_id: str) -> ImportJob:
        return db.query(ImportJob).filter(ImportJob.id == job_id).first()

    @staticmethod
    def _items(db: Session, job: ImportJob) -> List[ImportJobItem]:
        return db.query(ImportJobItem).filter(
            ImportJobItem.import_job_id == job.id
        ).order_by(ImportJobItem.item_index).all()

    def _active_items(self, db: Session, job: ImportJob) -> List[ImportJobItem]:
        return [
            item for item in self._items(db, job)
            if item.status != ImportJobStatus.FAILED.value and item.parsed_deck is not None
        ]

