"""
Detect collisions between incoming decks and the user's existing data.
"""
import logging
from typing import Dict, List, Optional

from app.models.import_models import ConflictType, ImportConflict, ImportJob, ImportJobItem
from app.services.card_resolver import FUZZY_THRESHOLD, SAFE_CONFIDENCE, CardResolution
from app.services.deck_store import DeckStore
from app.services.parsers.base import ParsedDeck

logger = logging.getLogger("app.import.conflicts")

BLOCKING_TYPES = {
    ConflictType.DUPLICATE_DECK_NAME.value,
    ConflictType.FOLDER_NAME_COLLISION.value,
}


class ConflictDetector:
    """
    Rules are checked in priority order and the first match wins per target:
    deck-level (duplicate name, then folder collision) and card-level
    (already owned, then ambiguous match).
    """

    def __init__(self, safe_confidence: float = SAFE_CONFIDENCE, fuzzy_threshold: float = FUZZY_THRESHOLD):
        self.safe_confidence = safe_confidence
        self.fuzzy_threshold = fuzzy_threshold

    def detect(self, job: ImportJob, items: List[ImportJobItem], store: DeckStore) -> List[ImportConflict]:
        conflicts: List[ImportConflict] = []
        owned = store.owned_quantities(job.user_id)
        seen_names: Dict[str, ImportJobItem] = {}

        for item in sorted(items, key=lambda i: i.item_index):
            if item.parsed_deck is None:
                continue
            deck = ParsedDeck.from_dict(item.parsed_deck)
            deck_name = item.deck_name or deck.name
            key = deck_name.strip().lower()

            if not item.conflicts_checked:
                deck_conflict = self._deck_conflict(job, item, deck, deck_name, store, seen_names.get(key))
                if deck_conflict is not None:
                    conflicts.append(deck_conflict)

                for index, data in enumerate(item.resolved_cards or []):
                    card = CardResolution.from_dict(data)
                    card_conflict = self._card_conflict(job, item, index, card, owned)
                    if card_conflict is not None:
                        conflicts.append(card_conflict)

                item.conflicts_checked = True

            seen_names.setdefault(key, item)

        logger.info(f"Detected {len(conflicts)} conflicts for job {job.id}")
        return conflicts

    def _deck_conflict(self, job: ImportJob, item: ImportJobItem, deck: ParsedDeck, deck_name: str,
                       store: DeckStore, earlier_item: Optional[ImportJobItem]) -> Optional[ImportConflict]:
        existing = store.find_deck_by_name(job.user_id, deck_name)
        if existing is not None or earlier_item is not None:
            if existing is not None:
                existing_data = {
                    "deck_id": existing.id,
                    "name": existing.name,
                    "card_count": store.count_deck_cards(existing.id),
                }
                where = "an existing deck"
            else:
                existing_data = {"item_id": earlier_item.id, "name": earlier_item.deck_name}
                where = "another deck in this import"
            return self._conflict(
                job, item, ConflictType.DUPLICATE_DECK_NAME,
                f"Deck '{deck_name}' has the same name as {where}",
                existing_data,
                {"name": deck_name, "card_count": deck.card_count},
            )

        if deck.folder:
            folder, parent_exists = store.locate_folder_path(job.user_id, deck.folder)
            if folder is not None and parent_exists:
                return self._conflict(
                    job, item, ConflictType.FOLDER_NAME_COLLISION,
                    f"Folder '{deck.folder}' already exists",
                    {"folder_id": folder.id, "name": folder.name, "parent_id": folder.parent_id},
                    {"folder": deck.folder, "deck_name": deck_name},
                )
        return None

    def _card_conflict(self, job: ImportJob, item: ImportJobItem, index: int, card: CardResolution,
                       owned: Dict[str, int]) -> Optional[ImportConflict]:
        if not card.resolved:
            return None

        owned_quantity = owned.get((card.name or card.raw_name).lower(), 0)
        if owned_quantity and owned_quantity >= card.quantity:
            return self._conflict(
                job, item, ConflictType.CARD_ALREADY_OWNED,
                f"{card.name} is already in your collection ({owned_quantity} owned)",
                {"card_name": card.name, "quantity": owned_quantity},
                {"card_index": index, "card_name": card.name, "card_id": card.card_id, "quantity": card.quantity},
            )

        if self.fuzzy_threshold <= card.confidence < self.safe_confidence:
            return self._conflict(
                job, item, ConflictType.AMBIGUOUS_CARD_MATCH,
                f"'{card.raw_name}' was matched to '{card.name}' with {card.confidence:.0%} confidence",
                {"raw_name": card.raw_name},
                {"card_index": index, "card_name": card.name, "card_id": card.card_id,
                 "confidence": card.confidence},
            )
        return None

    @staticmethod
    def _conflict(job: ImportJob, item: ImportJobItem, conflict_type: ConflictType, description: str,
                  existing_data: dict, new_data: dict) -> ImportConflict:
        return ImportConflict(
            import_job_id=job.id,
            item_id=item.id,
            conflict_type=conflict_type.value,
            description=description,
            blocking=conflict_type.value in BLOCKING_TYPES,
            existing_data=existing_data,
            new_data=new_data,
        )
