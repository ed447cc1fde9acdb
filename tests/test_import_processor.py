"""
Tests for the import job pipeline.
"""
import threading
import time
from datetime import timedelta

import pytest

from app.models.deck_models import CollectionCard, Deck, DeckCard, Folder, FolderDeck
from app.models.import_models import (
    ImportConflict,
    ImportHistory,
    ImportJob,
    ImportJobItem,
    ImportSource,
    JobStep,
)
from app.models.import_schemas import BatchImportItem, BatchImportRequest, ResolveConflictRequest
from app.services.card_resolver import CardResolver
from app.services.deck_store import DeckStore
from app.services.import_errors import ImportConflictError, ImportTimeoutError, ImportValidationError
from app.services.import_job_processor import ImportJobProcessor, StepTimer
from app.services.parsers.base import DEFAULT_DECK_NAME

from tests.conftest import TEST_USER


def load_job(db, job_id):
    db.expire_all()
    return db.query(ImportJob).filter(ImportJob.id == job_id).one()


def deck_cards(db, deck):
    return sorted((row.card_name, row.quantity) for row in db.query(DeckCard).filter(DeckCard.deck_id == deck.id))


class FlakyResolver(CardResolver):
    """Times out a fixed number of times before resolving normally."""

    def __init__(self, catalog, failures):
        super().__init__(catalog)
        self.failures = failures
        self.calls = 0

    def resolve_deck(self, deck, allow_fuzzy=True):
        self.calls += 1
        if self.calls <= self.failures:
            raise ImportTimeoutError("Card lookup timed out")
        return super().resolve_deck(deck, allow_fuzzy)


class BlockingResolver(CardResolver):
    """Holds every deck resolution until released."""

    def __init__(self, catalog):
        super().__init__(catalog)
        self.release = threading.Event()

    def resolve_deck(self, deck, allow_fuzzy=True):
        self.release.wait(5)
        return super().resolve_deck(deck, allow_fuzzy)


class DeckRejectingStore(DeckStore):
    """Refuses to create the deck named Beta."""

    def create_deck(self, user_id, name, **kwargs):
        if name == "Beta":
            raise ImportValidationError("Beta is not allowed")
        return super().create_deck(user_id, name, **kwargs)


class FolderFailingStore(DeckStore):
    """Fails while filing a deck into a folder, after the deck and its cards were written."""

    def add_folder_membership(self, folder_id, deck_id):
        raise RuntimeError("folder write failed")


class FakeFetcher:
    def __init__(self, body):
        self.body = body
        self.urls = []

    def fetch(self, url, timeout_ms=None):
        self.urls.append(url)
        return self.body


class TestHappyPath:
    def test_csv_import_completes(self, db, create_job, processor, events):
        job = create_job("name,quantity\nSol Ring,1\nCommand Tower,1\n", source="csv")

        result = processor.process_job(job.id, "worker-1")

        assert result["status"] == "completed"
        job = load_job(db, job.id)
        assert (job.status, job.current_step, job.progress) == ("completed", JobStep.DONE.value, 100)
        assert (job.decks_found, job.decks_imported) == (1, 1)
        assert (job.cards_processed, job.cards_resolved) == (2, 2)
        assert job.locked_by is None
        assert db.query(ImportConflict).count() == 0

        deck = db.query(Deck).one()
        assert deck.name == DEFAULT_DECK_NAME
        assert deck.import_job_id == job.id
        assert deck_cards(db, deck) == [("Command Tower", 1), ("Sol Ring", 1)]

        _, received = events
        types = [event.type for event in received]
        assert types[0] == "job_created"
        assert "job_started" in types
        assert types[-1] == "job_completed"

    def test_history_entry_records_writes(self, db, create_job, processor):
        job = create_job("// Deck: Filed\n// Folder: Commander/Esper\n1 Sol Ring\n1 Counterspell")

        processor.process_job(job.id)

        history = db.query(ImportHistory).filter(ImportHistory.import_job_id == job.id).one()
        assert history.action == "import"
        assert history.can_rollback is True
        record = history.rollback_data["decks"][0]
        assert record["created_deck"] is True
        assert len(record["card_row_ids"]) == 2
        assert len(record["created_folder_ids"]) == 2
        assert record["folder_membership_id"] is not None

        leaf = db.query(Folder).filter(Folder.name == "Esper").one()
        membership = db.query(FolderDeck).one()
        assert membership.folder_id == leaf.id

    def test_no_history_without_rollback(self, db, create_job, processor):
        job = create_job("1 Sol Ring", options={"enable_rollback": False})

        processor.process_job(job.id)

        assert db.query(ImportHistory).count() == 0

    def test_commander_and_categories(self, db, create_job, processor):
        job = create_job("Commander\n1 Atraxa, Praetors' Voice\nDeck\n1 Sol Ring\nSideboard\n1 Counterspell")

        processor.process_job(job.id)

        deck = db.query(Deck).one()
        assert deck.commander == "Atraxa, Praetors' Voice"
        categories = {row.card_name: row.category for row in db.query(DeckCard)}
        assert categories == {"Atraxa, Praetors' Voice": "commander", "Sol Ring": "main",
                              "Counterspell": "sideboard"}

    def test_preserve_categories_off_folds_sideboard_into_main(self, db, create_job, processor):
        job = create_job("1 Sol Ring\nSideboard\n1 Counterspell", options={"preserve_categories": False})

        processor.process_job(job.id)

        assert {row.category for row in db.query(DeckCard)} == {"main"}

    def test_claimed_job_is_skipped(self, db, create_job, processor):
        job = create_job("1 Sol Ring")
        processor.process_job(job.id)

        assert processor.process_job(job.id)["status"] == "skipped"
        assert db.query(Deck).count() == 1

    def test_parallel_resolution(self, db, create_job, processor):
        text = "// Deck: One\n1 Sol Ring\n// Deck: Two\n1 Counterspell\n// Deck: Three\n1 Arcane Signet"
        job = create_job(text, options={"concurrency": 3})

        assert processor.process_job(job.id)["status"] == "completed"
        assert sorted(d.name for d in db.query(Deck)) == ["One", "Three", "Two"]

    def test_source_url_is_fetched(self, db, import_service, make_processor):
        from app.models.import_schemas import CreateImportJobRequest

        fetcher = FakeFetcher("1 Sol Ring\n1 Command Tower")
        job = import_service.create_import_job(db, TEST_USER, CreateImportJobRequest(
            source="text", source_url="https://decks.example.com/list.txt",
        ))

        assert make_processor(fetcher=fetcher).process_job(job.id)["status"] == "completed"
        assert fetcher.urls == ["https://decks.example.com/list.txt"]
        assert load_job(db, job.id).cards_resolved == 2

    def test_uploaded_file(self, db, import_service, processor):
        job = import_service.create_upload_import_job(db, TEST_USER, ImportSource.TEXT, "deck.txt",
                                                     b"1 Sol Ring\n")

        assert processor.process_job(job.id)["status"] == "completed"
        assert load_job(db, job.id).decks_imported == 1


class TestConflicts:
    def existing_deck(self, db, name="My Deck"):
        deck = Deck(user_id=TEST_USER, name=name)
        db.add(deck)
        db.commit()
        db.add(DeckCard(deck_id=deck.id, card_id="old", card_name="Old Card", quantity=1))
        db.commit()
        return deck

    def test_duplicate_name_blocks_until_renamed(self, db, create_job, processor, import_service, dispatcher):
        self.existing_deck(db)
        job = create_job("// Deck: My Deck\n1 Sol Ring (CMR)")

        result = processor.process_job(job.id)

        assert result["status"] == JobStep.AWAITING_CONFLICT_RESOLUTION.value
        job = load_job(db, job.id)
        assert (job.status, job.locked_by) == ("processing", None)
        conflict = db.query(ImportConflict).one()
        assert conflict.conflict_type == "duplicate-deck-name"
        assert conflict.blocking is True and conflict.resolution is None
        assert db.query(Deck).count() == 1

        import_service.resolve_conflict(db, TEST_USER, job.id,
                                        ResolveConflictRequest(conflict_id=conflict.id, resolution="rename"))

        assert dispatcher.jobs == [job.id, job.id]
        assert load_job(db, job.id).current_step == JobStep.READY_TO_COMMIT.value
        assert processor.process_job(job.id)["status"] == "completed"
        assert sorted(d.name for d in db.query(Deck)) == ["My Deck", "My Deck (2)"]

    def test_overwrite_replaces_existing_cards(self, db, create_job, processor, import_service):
        existing = self.existing_deck(db)
        job = create_job("// Deck: My Deck\n1 Sol Ring (CMR)")
        processor.process_job(job.id)
        conflict = db.query(ImportConflict).one()
        db.expire_all()
        import_service.resolve_conflict(db, TEST_USER, job.id,
                                        ResolveConflictRequest(conflict_id=conflict.id, resolution="overwrite"))
        processor.process_job(job.id)

        assert db.query(Deck).count() == 1
        assert deck_cards(db, existing) == [("Sol Ring", 1)]
        record = db.query(ImportHistory).one().rollback_data["decks"][0]
        assert record["created_deck"] is False
        assert record["previous_cards"][0]["card_name"] == "Old Card"

    def test_job_policy_merges_without_pausing(self, db, create_job, processor):
        existing = self.existing_deck(db)
        job = create_job("// Deck: My Deck\n1 Sol Ring (CMR)", conflict_resolution="merge")

        assert processor.process_job(job.id)["status"] == "completed"
        assert deck_cards(db, existing) == [("Old Card", 1), ("Sol Ring", 1)]
        conflict = db.query(ImportConflict).one()
        assert (conflict.resolution, conflict.resolved_by) == ("merge", "system")

    def test_skip_leaves_existing_deck_alone(self, db, create_job, processor):
        existing = self.existing_deck(db)
        job = create_job("// Deck: My Deck\n1 Sol Ring", options={"auto_resolve_conflicts": True,
                                                                  "default_conflict_resolution": "skip"})

        assert processor.process_job(job.id)["status"] == "completed"
        assert load_job(db, job.id).decks_imported == 0
        assert deck_cards(db, existing) == [("Old Card", 1)]
        item = db.query(ImportJobItem).one()
        assert item.warnings[-1]["type"] == "data_loss"

    def test_folder_collision_rename_creates_sibling(self, db, create_job, processor):
        db.add(Folder(user_id=TEST_USER, name="Box"))
        db.commit()
        job = create_job("// Deck: New\n// Folder: Box\n1 Sol Ring", conflict_resolution="rename")

        processor.process_job(job.id)

        assert sorted(f.name for f in db.query(Folder)) == ["Box", "Box (2)"]

    def test_every_conflict_resolved_before_completion(self, db, create_job, processor):
        db.add(CollectionCard(user_id=TEST_USER, card_id="command-tower-cmr", card_name="Command Tower",
                              quantity=1))
        db.commit()
        job = create_job("1 Sol Ring\n1 Sol Rimg\n1 Command Tower")

        assert processor.process_job(job.id)["status"] == "completed"
        conflicts = db.query(ImportConflict).all()
        assert {c.conflict_type for c in conflicts} == {"card-already-owned", "ambiguous-card-match"}
        assert all(c.resolution is not None for c in conflicts)

    def test_resolving_twice_is_rejected(self, db, create_job, processor, import_service):
        self.existing_deck(db)
        job = create_job("// Deck: My Deck\n1 Sol Ring")
        processor.process_job(job.id)
        conflict = db.query(ImportConflict).one()
        db.expire_all()
        request = ResolveConflictRequest(conflict_id=conflict.id, resolution="rename")
        import_service.resolve_conflict(db, TEST_USER, job.id, request)

        with pytest.raises(ImportConflictError):
            import_service.resolve_conflict(db, TEST_USER, job.id, request)


class TestErrors:
    def test_unknown_card_with_continue_on_error(self, db, create_job, processor):
        job = create_job("1 Sol Ring\n1 Not A Real Card", options={"continue_on_error": True})

        assert processor.process_job(job.id)["status"] == "completed"
        job = load_job(db, job.id)
        assert (job.cards_processed, job.cards_resolved) == (2, 1)
        item = db.query(ImportJobItem).one()
        assert item.errors[0]["type"] == "card_not_found"
        assert deck_cards(db, db.query(Deck).one()) == [("Sol Ring", 1)]

    def test_validate_cards_fails_job(self, db, create_job, processor):
        job = create_job("1 Sol Ring\n1 Not A Real Card", options={"validate_cards": True})

        result = processor.process_job(job.id)

        assert result["status"] == "failed"
        job = load_job(db, job.id)
        assert job.status == "failed"
        assert job.errors[-1]["type"] == "validation_error"
        assert job.locked_by is None
        assert db.query(Deck).count() == 0

    def test_validate_cards_continue_on_error_keeps_good_decks(self, db, create_job, processor):
        text = "// Deck: Good\n1 Sol Ring\n// Deck: Bad\n1 Not A Real Card\n1 Sol Ring"
        job = create_job(text, options={"validate_cards": True, "continue_on_error": True})

        assert processor.process_job(job.id)["status"] == "completed"
        job = load_job(db, job.id)
        assert (job.decks_found, job.decks_imported) == (2, 1)
        assert job.errors[0]["type"] == "validation_error"
        assert [d.name for d in db.query(Deck)] == ["Good"]

    def test_unparseable_input_fails_without_retry(self, db, create_job, processor):
        job = create_job("{broken", source="moxfield")

        assert processor.process_job(job.id)["status"] == "failed"
        job = load_job(db, job.id)
        assert job.retry_count == 0
        assert job.errors[0]["type"] == "invalid_format"
        assert db.query(ImportJobItem).one().status == "failed"

    def test_timeouts_are_retried_until_success(self, db, create_job, make_processor, catalog, clock):
        job = create_job("1 Sol Ring")
        processor = make_processor(resolver=FlakyResolver(catalog, failures=2))

        first = processor.process_job(job.id)
        assert first["status"] == "retry_scheduled"
        assert load_job(db, job.id).next_retry_at == clock() + timedelta(seconds=30)

        second = processor.process_job(job.id)
        assert second["retry_count"] == 2
        assert load_job(db, job.id).next_retry_at == clock() + timedelta(seconds=60)

        assert processor.process_job(job.id)["status"] == "completed"
        job = load_job(db, job.id)
        assert (job.status, job.retry_count, job.max_retries) == ("completed", 2, 3)
        assert [e["type"] for e in job.errors] == ["timeout_error", "timeout_error"]

    def test_retries_are_bounded(self, db, create_job, make_processor, catalog):
        job = create_job("1 Sol Ring")
        processor = make_processor(resolver=FlakyResolver(catalog, failures=10))

        statuses = [processor.process_job(job.id)["status"] for _ in range(4)]

        assert statuses == ["retry_scheduled", "retry_scheduled", "retry_scheduled", "failed"]
        job = load_job(db, job.id)
        assert (job.status, job.retry_count) == ("failed", 3)
        assert len(job.errors) == 4

    def test_parallel_resolution_stops_at_the_deadline(self, db, create_job, make_processor, catalog):
        job = create_job("// Deck: One\n1 Sol Ring\n// Deck: Two\n1 Counterspell",
                         options={"concurrency": 2, "timeout": 100})
        resolver = BlockingResolver(catalog)

        started = time.monotonic()
        try:
            result = make_processor(resolver=resolver).process_job(job.id)
            elapsed = time.monotonic() - started
        finally:
            resolver.release.set()

        assert result["status"] == "retry_scheduled"
        assert elapsed < 3
        assert load_job(db, job.id).errors[-1]["type"] == "timeout_error"

    def test_step_timer(self):
        timer = StepTimer("parsing", 1000)
        timer.deadline -= 2

        with pytest.raises(ImportTimeoutError):
            timer.check()
        assert timer.remaining() == 0.0


class TestCommitAtomicity:
    def test_failed_deck_leaves_nothing_behind(self, db, create_job, make_processor):
        job = create_job("// Deck: Bad\n// Folder: Box\n1 Sol Ring\n1 Command Tower")

        result = make_processor(store_factory=FolderFailingStore).process_job(job.id)

        assert result["status"] == "retry_scheduled"
        assert db.query(Deck).count() == 0
        assert db.query(DeckCard).count() == 0
        assert db.query(Folder).count() == 0
        item = db.query(ImportJobItem).one()
        assert item.status == "pending"
        assert item.errors[-1]["type"] == "system_error"

        # the retry commits the deck once the store works again
        assert make_processor().process_job(job.id)["status"] == "completed"
        assert deck_cards(db, db.query(Deck).one()) == [("Command Tower", 1), ("Sol Ring", 1)]

    def test_continue_on_error_commits_other_decks(self, db, create_job, make_processor):
        text = "// Deck: Good\n1 Sol Ring\n// Deck: Bad\n// Folder: Box\n1 Counterspell"
        job = create_job(text, options={"continue_on_error": True})

        result = make_processor(store_factory=FolderFailingStore).process_job(job.id)

        assert result["status"] == "completed"
        assert [d.name for d in db.query(Deck)] == ["Good"]
        assert [row.card_name for row in db.query(DeckCard)] == ["Sol Ring"]
        assert db.query(Folder).count() == 0
        statuses = {item.deck_name: item.status for item in db.query(ImportJobItem)}
        assert statuses == {"Good": "completed", "Bad": "failed"}
        assert load_job(db, job.id).errors[0]["message"] == "folder write failed"

    def test_failed_job_keeps_history_of_committed_decks(self, db, create_job, make_processor):
        job = create_job("// Deck: Alpha\n1 Sol Ring\n// Deck: Beta\n1 Counterspell")

        result = make_processor(store_factory=DeckRejectingStore).process_job(job.id)

        assert result["status"] == "failed"
        assert [d.name for d in db.query(Deck)] == ["Alpha"]
        job = load_job(db, job.id)
        assert job.decks_imported == 1
        history = db.query(ImportHistory).filter(ImportHistory.import_job_id == job.id).one()
        assert history.can_rollback is True
        assert [record["deck_id"] for record in history.rollback_data["decks"]] == [db.query(Deck).one().id]
        assert history.details["status"] == "failed"

    def test_failed_job_without_commits_has_no_history(self, db, create_job, processor):
        job = create_job("{broken", source="moxfield")

        assert processor.process_job(job.id)["status"] == "failed"
        assert db.query(ImportHistory).count() == 0



class TestProgress:
    def test_progress_never_decreases(self, db, create_job, processor, events, session_factory):
        bus, _ = events
        seen = []

        def record_progress(event):
            session = session_factory()
            try:
                job = session.query(ImportJob).filter(ImportJob.id == event.job_id).first()
                seen.append(job.progress)
            finally:
                session.close()

        bus.subscribe(record_progress)
        text = "// Deck: One\n1 Sol Ring\n// Deck: Two\n1 Counterspell\n// Deck: Three\n1 Command Tower"
        job = create_job(text, options={"batch_size": 1})

        processor.process_job(job.id)

        assert seen == sorted(seen)
        assert seen[-1] == 100

    def test_progress_read_mid_flight(self, db, create_job, processor, import_service):
        db.add(Deck(user_id=TEST_USER, name="Taken"))
        db.commit()
        job = create_job("// Deck: Taken\n1 Sol Ring")
        processor.process_job(job.id)

        db.expire_all()
        progress = import_service.get_import_progress(db, TEST_USER, job.id)

        assert progress.status == "processing"
        assert progress.current_step == JobStep.AWAITING_CONFLICT_RESOLUTION.value
        assert 0 < progress.progress < 100
        assert (progress.items_completed, progress.items_total) == (0, 1)


class TestCancellation:
    def test_pending_job_cancelled_at_once(self, db, create_job, processor, import_service):
        job = create_job("1 Sol Ring")

        cancelled = import_service.cancel_import_job(db, TEST_USER, job.id)

        assert cancelled.status == "cancelled"
        assert processor.process_job(job.id)["status"] == "skipped"
        assert db.query(Deck).count() == 0

    def test_running_job_stops_at_next_checkpoint(self, db, create_job, processor, events, session_factory):
        bus, _ = events

        def cancel_on_start(event):
            if event.type != "job_started":
                return
            session = session_factory()
            try:
                session.query(ImportJob).filter(ImportJob.id == event.job_id).update(
                    {ImportJob.cancel_requested: True}, synchronize_session=False
                )
                session.commit()
            finally:
                session.close()

        bus.subscribe(cancel_on_start)
        job = create_job("1 Sol Ring")

        assert processor.process_job(job.id)["status"] == "cancelled"
        job = load_job(db, job.id)
        assert (job.status, job.locked_by) == ("cancelled", None)
        assert db.query(Deck).count() == 0

    def test_paused_job_cancelled_at_once(self, db, create_job, processor, import_service):
        db.add(Deck(user_id=TEST_USER, name="Taken"))
        db.commit()
        job = create_job("// Deck: Taken\n1 Sol Ring")
        processor.process_job(job.id)
        conflict = db.query(ImportConflict).one()
        db.expire_all()

        assert import_service.cancel_import_job(db, TEST_USER, job.id).status == "cancelled"
        with pytest.raises(ImportConflictError):
            import_service.resolve_conflict(db, TEST_USER, job.id,
                                            ResolveConflictRequest(conflict_id=conflict.id, resolution="rename"))
        with pytest.raises(ImportConflictError):
            import_service.cancel_import_job(db, TEST_USER, job.id)


class TestBatch:
    def test_batch_items_become_decks(self, db, import_service, processor):
        request = BatchImportRequest(items=[
            BatchImportItem(source="text", raw_data="1 Sol Ring", identifier="Deck A"),
            BatchImportItem(source="csv", raw_data="name,quantity\nCounterspell,2\n", identifier="Deck B"),
        ])
        job = import_service.create_batch_import_job(db, TEST_USER, request)

        assert job.type == "batch"
        assert processor.process_job(job.id)["status"] == "completed"
        items = db.query(ImportJobItem).order_by(ImportJobItem.item_index).all()
        assert [(i.source, i.source_identifier) for i in items] == [("text", "Deck A"), ("csv", "Deck B")]
        assert sorted(d.name for d in db.query(Deck)) == ["Deck A", "Deck B"]
        assert load_job(db, job.id).decks_found == 2

    def test_bad_batch_item_fails_job(self, db, import_service, processor):
        request = BatchImportRequest(type="bulk", items=[
            BatchImportItem(source="text", raw_data="1 Sol Ring"),
            BatchImportItem(source="moxfield", raw_data="{broken"),
        ])
        job = import_service.create_batch_import_job(db, TEST_USER, request)

        assert processor.process_job(job.id)["status"] == "failed"
        assert db.query(Deck).count() == 0

    def test_bad_batch_item_skipped_with_continue_on_error(self, db, import_service, processor):
        request = BatchImportRequest(options={"continue_on_error": True}, items=[
            BatchImportItem(source="text", raw_data="1 Sol Ring", identifier="Good"),
            BatchImportItem(source="moxfield", raw_data="{broken", identifier="Broken"),
        ])
        job = import_service.create_batch_import_job(db, TEST_USER, request)

        assert processor.process_job(job.id)["status"] == "completed"
        job = load_job(db, job.id)
        assert (job.decks_found, job.decks_imported) == (1, 1)
        failed = db.query(ImportJobItem).filter(ImportJobItem.status == "failed").one()
        assert failed.source_identifier == "Broken"
