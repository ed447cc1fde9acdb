"""
Rollback of committed imports.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.import_models import (
    HistoryAction,
    ImportHistory,
    ImportJob,
    ImportJobStatus,
    RollbackOperation,
    RollbackStatus,
)
from app.models.import_schemas import RollbackRequest
from app.services.config_service import config_service
from app.services.deck_store import DeckStore
from app.services.import_errors import ImportConflictError, ImportNotFoundError, ImportValidationError
from app.services.import_queue import JobDispatcher

logger = logging.getLogger("app.import.rollback")

ACTIVE_ROLLBACK_STATUSES = (RollbackStatus.PENDING.value, RollbackStatus.PROCESSING.value)
# failed jobs may have committed some decks before failing
ROLLBACK_JOB_STATUSES = (ImportJobStatus.COMPLETED.value, ImportJobStatus.FAILED.value)


class RollbackEngine:
    """Requests and executes reversals of ``import`` history entries."""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None,
                 dispatcher: Optional[JobDispatcher] = None,
                 store_factory: Callable[[Session], DeckStore] = DeckStore):
        self.db = db
        self.clock = clock or config_service.now
        self.dispatcher = dispatcher
        self.store = store_factory(db)

    def request(self, user_id: str, request: RollbackRequest) -> RollbackOperation:
        """
        Create a pending rollback operation and dispatch it.

        Args:
            user_id: Owner of the import
            request: Job to roll back, optional reason and selection

        Returns:
            The pending RollbackOperation

        Raises:
            ImportNotFoundError: job does not exist for this user
            ImportConflictError: nothing to roll back, already rolled back, or a rollback is in flight
            ImportValidationError: selection matches no committed deck
        """
        job = self.db.query(ImportJob).filter(
            ImportJob.id == request.import_job_id,
            ImportJob.user_id == user_id,
        ).first()
        if job is None:
            raise ImportNotFoundError(f"Import job {request.import_job_id} not found")
        if job.status not in ROLLBACK_JOB_STATUSES:
            raise ImportConflictError(f"Import job {job.id} is {job.status}, only finished imports can be rolled back")

        history = self._import_entry(job.id)
        if history is None:
            raise ImportConflictError(f"Import job {job.id} has no rollback data")
        if history.rolled_back_at is not None:
            raise ImportConflictError(f"Import job {job.id} was already rolled back at {history.rolled_back_at}")
        if not history.can_rollback:
            raise ImportConflictError(f"Import job {job.id} cannot be rolled back")

        now = self.clock()
        rollback_timeout = (job.options or {}).get("rollback_timeout")
        if rollback_timeout and job.processing_completed_at:
            window_end = job.processing_completed_at + timedelta(milliseconds=rollback_timeout)
            if now > window_end:
                raise ImportConflictError(f"Rollback window for job {job.id} closed at {window_end}")

        in_flight = self.db.query(RollbackOperation).filter(
            RollbackOperation.history_id == history.id,
            RollbackOperation.status.in_(ACTIVE_ROLLBACK_STATUSES),
        ).first()
        if in_flight is not None:
            raise ImportConflictError(f"Rollback {in_flight.id} for job {job.id} is already {in_flight.status}")

        selection = request.selective_rollback
        deck_ids = list(selection.deck_ids or []) if selection else []
        item_ids = list(selection.item_ids or []) if selection else []
        selective = bool(deck_ids or item_ids)
        records = self._select(history, deck_ids, item_ids, selective)
        if not records:
            if selective:
                raise ImportValidationError(f"Selection matches no committed deck of job {job.id}")
            raise ImportConflictError(f"Every deck of job {job.id} is already rolled back")

        operation = RollbackOperation(
            import_job_id=job.id,
            history_id=history.id,
            user_id=user_id,
            description=request.reason or f"Rollback of import {job.id}",
            rollback_data={
                "selective": selective,
                "deck_ids": deck_ids,
                "item_ids": item_ids,
                "reason": request.reason,
                "errors": [],
            },
            created_at=now,
        )
        self.db.add(operation)
        self.db.commit()
        logger.info(f"Rollback {operation.id} requested for job {job.id} ({len(records)} decks)")

        if self.dispatcher is not None:
            self.dispatcher.dispatch_rollback(operation.id)
        return operation

    def execute(self, operation_id: str) -> RollbackOperation:
        """
        Reverse the selected writes of an import.

        Steps run in reverse dependency order (folder memberships, deck cards,
        decks, folders created by the import). Each write is committed on its
        own and failures are collected; the operation ends ``failed`` if any
        step failed. Finished steps are recorded in the import entry and
        skipped when the rollback is requested again.
        """
        operation = self.db.query(RollbackOperation).filter(RollbackOperation.id == operation_id).first()
        if operation is None:
            raise ImportNotFoundError(f"Rollback operation {operation_id} not found")
        if operation.status != RollbackStatus.PENDING.value:
            logger.info(f"Rollback {operation_id} is {operation.status}, nothing to do")
            return operation

        operation.status = RollbackStatus.PROCESSING.value
        self.db.commit()

        history = self.db.query(ImportHistory).filter(ImportHistory.id == operation.history_id).first()
        history_id = history.id
        selection = operation.rollback_data or {}
        selective = bool(selection.get("selective"))
        records = self._select(history, selection.get("deck_ids") or [], selection.get("item_ids") or [], selective)
        errors: List[Dict[str, Any]] = []
        failed_items = set()
        steps_done = {record["item_id"]: set(record.get("steps_done") or []) for record in records}
        # decks this rollback deletes get no restored cards
        deleted_decks = {record["deck_id"] for record in records if record.get("created_deck")}

        def run(step: str, record: Dict[str, Any], action: Callable[[], Any]) -> None:
            item_id = record["item_id"]
            if step in steps_done[item_id]:
                return
            try:
                action()
                steps_done[item_id].add(step)
                self._mark_step_done(history_id, item_id, step)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                steps_done[item_id].discard(step)
                failed_items.add(item_id)
                errors.append({"step": step, "item_id": item_id, "deck_id": record.get("deck_id"),
                               "message": str(e)})
                logger.error(f"Rollback {operation_id} step {step} failed for deck {record.get('deck_id')}: {e}")

        for record in records:
            if record.get("folder_membership_id"):
                run("remove_folder_membership", record,
                    lambda r=record: self.store.remove_folder_membership(r["folder_membership_id"]))

        for record in records:
            run("remove_deck_cards", record, lambda r=record: self.store.delete_deck_cards(r.get("card_row_ids") or []))

        for record in records:
            if record.get("created_deck"):
                run("remove_deck", record, lambda r=record: self.store.delete_deck(r["deck_id"]))
            elif record.get("previous_cards") is not None and record["deck_id"] not in deleted_decks:
                run("restore_deck_cards", record,
                    lambda r=record: self.store.restore_deck_cards(r["deck_id"], r["previous_cards"]))

        for record in records:
            for folder_id in reversed(record.get("created_folder_ids") or []):
                run(f"remove_folder:{folder_id}", record, lambda f=folder_id: self.store.delete_folder_if_empty(f))

        history = self.db.query(ImportHistory).filter(ImportHistory.id == history_id).first()
        now = self.clock()
        reversed_ids = [record["item_id"] for record in records if record["item_id"] not in failed_items]
        decks = []
        for record in (history.rollback_data or {}).get("decks", []):
            if record["item_id"] in reversed_ids:
                record = {**record, "reversed": True, "reversed_at": now.isoformat()}
            decks.append(record)
        history.rollback_data = {**(history.rollback_data or {}), "decks": decks}
        if all(record.get("reversed") for record in decks):
            history.rolled_back_at = now
            history.can_rollback = False

        action = HistoryAction.PARTIAL_ROLLBACK if selective else HistoryAction.ROLLBACK
        self.db.add(ImportHistory(
            user_id=operation.user_id,
            import_job_id=operation.import_job_id,
            action=action.value,
            description=operation.description,
            details={
                "rollback_operation_id": operation.id,
                "history_id": history.id,
                "item_ids": reversed_ids,
                "deck_ids": [record.get("deck_id") for record in records if record["item_id"] in reversed_ids],
                "errors": len(errors),
            },
            can_rollback=False,
            created_at=now,
        ))

        operation.status = RollbackStatus.FAILED.value if errors else RollbackStatus.COMPLETED.value
        operation.rollback_data = {**selection, "errors": errors}
        operation.completed_at = now
        self.db.commit()

        logger.info(f"Rollback {operation.id} {operation.status}: {len(reversed_ids)} decks reversed, "
                    f"{len(errors)} errors")
        return operation

    def _mark_step_done(self, history_id: str, item_id: str, step: str) -> None:
        """Record a finished step inside the import entry, in the same transaction as the step."""
        history = self.db.query(ImportHistory).filter(ImportHistory.id == history_id).first()
        decks = []
        for record in (history.rollback_data or {}).get("decks", []):
            if record["item_id"] == item_id:
                record = {**record, "steps_done": sorted(set(record.get("steps_done") or []) | {step})}
            decks.append(record)
        history.rollback_data = {**(history.rollback_data or {}), "decks": decks}

    def _import_entry(self, job_id: str) -> Optional[ImportHistory]:
        return self.db.query(ImportHistory).filter(
            ImportHistory.import_job_id == job_id,
            ImportHistory.action == HistoryAction.IMPORT.value,
        ).order_by(ImportHistory.created_at.desc()).first()

    @staticmethod
    def _select(history: ImportHistory, deck_ids: List[str], item_ids: List[str],
                selective: bool) -> List[Dict[str, Any]]:
        records = [r for r in (history.rollback_data or {}).get("decks", []) if not r.get("reversed")]
        if not selective:
            return records
        return [r for r in records if r.get("deck_id") in deck_ids or r.get("item_id") in item_ids]
