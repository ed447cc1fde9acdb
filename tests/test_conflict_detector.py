"""
Tests for conflict detection and the resolution table.
"""
import pytest

from app.models.deck_models import CollectionCard, Deck, Folder
from app.models.import_models import ConflictType, ImportConflict, ImportJob, ImportJobItem
from app.services.card_resolver import CardResolution
from app.services.conflict_detector import ConflictDetector
from app.services.conflict_resolution import (
    FOLDER_NONE,
    FOLDER_RENAME,
    MERGE,
    OVERWRITE,
    DeckCommitPlan,
    apply_resolution,
    default_resolution_for,
    is_valid_resolution,
)
from app.services.deck_store import DeckStore
from app.services.import_errors import ImportConflictError
from app.services.parsers.base import ParsedCard, ParsedDeck

from tests.conftest import TEST_USER


def make_item(job, index, name, cards, folder=None):
    deck = ParsedDeck(name=name, folder=folder, cards=[ParsedCard(raw_name=c.raw_name, quantity=c.quantity)
                                                       for c in cards])
    return ImportJobItem(
        import_job_id=job.id,
        item_index=index,
        deck_name=name,
        parsed_deck=deck.to_dict(),
        resolved_cards=[c.to_dict() for c in cards],
    )


def resolved(name, card_id, quantity=1, confidence=1.0):
    return CardResolution(raw_name=name, quantity=quantity, card_id=card_id, name=name, set_code="cmr",
                          confidence=confidence)


@pytest.fixture
def job():
    return ImportJob(user_id=TEST_USER, source="text")


@pytest.fixture
def store(db):
    return DeckStore(db)


def test_duplicate_of_existing_deck_is_blocking(db, store, job):
    db.add(Deck(user_id=TEST_USER, name="Atraxa Superfriends"))
    db.commit()
    item = make_item(job, 0, "atraxa superfriends", [resolved("Sol Ring", "sol")])

    conflicts = ConflictDetector().detect(job, [item], store)

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.conflict_type == ConflictType.DUPLICATE_DECK_NAME.value
    assert conflict.blocking is True
    assert conflict.existing_data["name"] == "Atraxa Superfriends"
    assert conflict.item_id == item.id


def test_duplicate_within_same_import(store, job):
    first = make_item(job, 0, "Same", [resolved("Sol Ring", "sol")])
    second = make_item(job, 1, "Same", [resolved("Command Tower", "tower")])

    conflicts = ConflictDetector().detect(job, [first, second], store)

    assert [c.item_id for c in conflicts] == [second.id]
    assert conflicts[0].existing_data["item_id"] == first.id


def test_folder_collision(db, store, job):
    parent = Folder(user_id=TEST_USER, name="Commander")
    db.add(parent)
    db.commit()
    db.add(Folder(user_id=TEST_USER, name="Superfriends", parent_id=parent.id))
    db.commit()
    item = make_item(job, 0, "New Deck", [resolved("Sol Ring", "sol")], folder="commander/superfriends")

    conflicts = ConflictDetector().detect(job, [item], store)

    assert [c.conflict_type for c in conflicts] == [ConflictType.FOLDER_NAME_COLLISION.value]
    assert conflicts[0].blocking is True


def test_new_folder_path_is_not_a_conflict(store, job):
    item = make_item(job, 0, "New Deck", [resolved("Sol Ring", "sol")], folder="Commander/New")

    assert ConflictDetector().detect(job, [item], store) == []


def test_duplicate_name_wins_over_folder_collision(db, store, job):
    db.add_all([Deck(user_id=TEST_USER, name="Dup"), Folder(user_id=TEST_USER, name="Box")])
    db.commit()
    item = make_item(job, 0, "Dup", [], folder="Box")

    conflicts = ConflictDetector().detect(job, [item], store)

    assert [c.conflict_type for c in conflicts] == [ConflictType.DUPLICATE_DECK_NAME.value]


def test_card_already_owned_is_not_blocking(db, store, job):
    db.add(CollectionCard(user_id=TEST_USER, card_id="sol", card_name="Sol Ring", quantity=2))
    db.commit()
    item = make_item(job, 0, "Deck", [resolved("Sol Ring", "sol"), resolved("Command Tower", "tower")])

    conflicts = ConflictDetector().detect(job, [item], store)

    assert len(conflicts) == 1
    assert conflicts[0].conflict_type == ConflictType.CARD_ALREADY_OWNED.value
    assert conflicts[0].blocking is False
    assert conflicts[0].new_data["card_index"] == 0


def test_other_users_collection_is_ignored(db, store, job):
    db.add(CollectionCard(user_id="someone_else", card_id="sol", card_name="Sol Ring", quantity=2))
    db.commit()
    item = make_item(job, 0, "Deck", [resolved("Sol Ring", "sol")])

    assert ConflictDetector().detect(job, [item], store) == []


def test_ambiguous_match_between_thresholds(store, job):
    cards = [resolved("Sol Ring", "sol", confidence=0.8), resolved("Command Tower", "tower", confidence=0.95)]
    item = make_item(job, 0, "Deck", cards)

    conflicts = ConflictDetector().detect(job, [item], store)

    assert [c.conflict_type for c in conflicts] == [ConflictType.AMBIGUOUS_CARD_MATCH.value]
    assert conflicts[0].new_data["confidence"] == 0.8


def test_unresolved_cards_are_not_conflicts(store, job):
    item = make_item(job, 0, "Deck", [CardResolution(raw_name="Not A Real Card")])

    assert ConflictDetector().detect(job, [item], store) == []


def test_items_are_checked_once(db, store, job):
    db.add(Deck(user_id=TEST_USER, name="Deck"))
    db.commit()
    item = make_item(job, 0, "Deck", [resolved("Sol Ring", "sol")])
    detector = ConflictDetector()

    assert len(detector.detect(job, [item], store)) == 1
    assert item.conflicts_checked is True
    assert detector.detect(job, [item], store) == []


class TestResolutions:
    """Resolution table and defaults."""

    def plan(self, job):
        item = make_item(job, 0, "Deck", [resolved("Sol Ring", "sol"), resolved("Command Tower", "tower")],
                         folder="Box")
        return DeckCommitPlan.for_item(item)

    def conflict(self, conflict_type, resolution=None, blocking=True, card_index=None):
        return ImportConflict(
            import_job_id="job",
            conflict_type=conflict_type.value,
            description="test",
            blocking=blocking,
            new_data={"card_index": card_index} if card_index is not None else {},
            resolution=resolution,
        )

    def test_deck_resolutions(self, job):
        for resolution, check in [
            ("skip", lambda p: p.skip_deck),
            ("overwrite", lambda p: p.target_mode == OVERWRITE),
            ("merge", lambda p: p.target_mode == MERGE),
            ("rename", lambda p: p.rename_deck),
        ]:
            plan = self.plan(job)
            apply_resolution(plan, self.conflict(ConflictType.DUPLICATE_DECK_NAME, resolution))
            assert check(plan), resolution

    def test_card_skip_drops_only_that_card(self, job):
        plan = self.plan(job)
        apply_resolution(plan, self.conflict(ConflictType.CARD_ALREADY_OWNED, "skip", blocking=False,
                                             card_index=0))

        assert [c.name for c in plan.cards_to_commit()] == ["Command Tower"]

    def test_folder_resolutions(self, job):
        plan = self.plan(job)
        apply_resolution(plan, self.conflict(ConflictType.FOLDER_NAME_COLLISION, "skip"))
        assert plan.folder_mode == FOLDER_NONE

        plan = self.plan(job)
        apply_resolution(plan, self.conflict(ConflictType.FOLDER_NAME_COLLISION, "rename"))
        assert plan.folder_mode == FOLDER_RENAME

    def test_unresolved_conflict_cannot_be_applied(self, job):
        with pytest.raises(ImportConflictError):
            apply_resolution(self.plan(job), self.conflict(ConflictType.DUPLICATE_DECK_NAME))

    def test_ask_user_is_not_a_resolution(self):
        assert not is_valid_resolution(ConflictType.DUPLICATE_DECK_NAME.value, "ask_user")
        assert is_valid_resolution(ConflictType.AMBIGUOUS_CARD_MATCH.value, "merge")

    def test_default_resolution(self):
        blocking = self.conflict(ConflictType.DUPLICATE_DECK_NAME)
        soft = self.conflict(ConflictType.AMBIGUOUS_CARD_MATCH, blocking=False)

        ask = ImportJob(user_id=TEST_USER, source="text", conflict_resolution="ask_user", options={})
        assert default_resolution_for(blocking, ask) is None
        assert default_resolution_for(soft, ask) == "merge"

        from_options = ImportJob(user_id=TEST_USER, source="text", conflict_resolution="ask_user",
                                 options={"default_conflict_resolution": "rename"})
        assert default_resolution_for(blocking, from_options) == "rename"

        policy = ImportJob(user_id=TEST_USER, source="text", conflict_resolution="skip",
                           options={"default_conflict_resolution": "rename"})
        assert default_resolution_for(blocking, policy) == "skip"
