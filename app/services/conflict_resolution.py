"""
Conflict resolutions applied to a deck commit plan.

Each (conflict type, resolution) pair maps to a handler that edits the
``DeckCommitPlan`` for the conflict's item; the committer then executes the
plan without knowing about conflicts.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from app.models.import_models import (
    ConflictResolution,
    ConflictType,
    ImportConflict,
    ImportJob,
    ImportJobItem,
)
from app.services.card_resolver import CardResolution
from app.services.import_errors import ImportConflictError
from app.services.parsers.base import ParsedDeck

# Deck target modes
CREATE = "create"
OVERWRITE = "overwrite"
MERGE = "merge"

# Folder modes
FOLDER_CREATE_OR_REUSE = "create_or_reuse"
FOLDER_RENAME = "rename"
FOLDER_NONE = "none"


@dataclass
class DeckCommitPlan:
    item_id: str
    deck_name: str
    commander: Optional[str]
    format: str
    cards: List[CardResolution]
    folder_path: Optional[str] = None
    skip_deck: bool = False
    target_mode: str = CREATE
    rename_deck: bool = False
    folder_mode: str = FOLDER_CREATE_OR_REUSE
    dropped_cards: Set[int] = field(default_factory=set)

    @classmethod
    def for_item(cls, item: ImportJobItem, preserve_categories: bool = True) -> "DeckCommitPlan":
        deck = ParsedDeck.from_dict(item.parsed_deck or {})
        cards = [CardResolution.from_dict(data) for data in item.resolved_cards or []]
        if not preserve_categories:
            for card in cards:
                if card.category != "commander":
                    card.category = "main"
        return cls(
            item_id=item.id,
            deck_name=item.deck_name or deck.name,
            commander=deck.commander,
            format=deck.format,
            cards=cards,
            folder_path=deck.folder,
        )

    def cards_to_commit(self) -> List[CardResolution]:
        return [card for i, card in enumerate(self.cards) if card.resolved and i not in self.dropped_cards]


def _card_index(conflict: ImportConflict) -> int:
    return int((conflict.new_data or {}).get("card_index", -1))


def _skip_deck(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.skip_deck = True


def _overwrite_deck(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.target_mode = OVERWRITE


def _merge_deck(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.target_mode = MERGE


def _rename_deck(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.target_mode = CREATE
    plan.rename_deck = True


def _drop_card(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.dropped_cards.add(_card_index(conflict))


def _keep_card(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.dropped_cards.discard(_card_index(conflict))


def _no_folder(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.folder_mode = FOLDER_NONE


def _reuse_folder(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.folder_mode = FOLDER_CREATE_OR_REUSE


def _rename_folder(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    plan.folder_mode = FOLDER_RENAME


Handler = Callable[[DeckCommitPlan, ImportConflict], None]

RESOLUTION_HANDLERS: Dict[Tuple[str, str], Handler] = {
    (ConflictType.DUPLICATE_DECK_NAME.value, ConflictResolution.SKIP.value): _skip_deck,
    (ConflictType.DUPLICATE_DECK_NAME.value, ConflictResolution.OVERWRITE.value): _overwrite_deck,
    (ConflictType.DUPLICATE_DECK_NAME.value, ConflictResolution.MERGE.value): _merge_deck,
    (ConflictType.DUPLICATE_DECK_NAME.value, ConflictResolution.RENAME.value): _rename_deck,

    (ConflictType.CARD_ALREADY_OWNED.value, ConflictResolution.SKIP.value): _drop_card,
    (ConflictType.CARD_ALREADY_OWNED.value, ConflictResolution.OVERWRITE.value): _keep_card,
    (ConflictType.CARD_ALREADY_OWNED.value, ConflictResolution.MERGE.value): _keep_card,
    (ConflictType.CARD_ALREADY_OWNED.value, ConflictResolution.RENAME.value): _keep_card,

    (ConflictType.FOLDER_NAME_COLLISION.value, ConflictResolution.SKIP.value): _no_folder,
    (ConflictType.FOLDER_NAME_COLLISION.value, ConflictResolution.OVERWRITE.value): _reuse_folder,
    (ConflictType.FOLDER_NAME_COLLISION.value, ConflictResolution.MERGE.value): _reuse_folder,
    (ConflictType.FOLDER_NAME_COLLISION.value, ConflictResolution.RENAME.value): _rename_folder,

    (ConflictType.AMBIGUOUS_CARD_MATCH.value, ConflictResolution.SKIP.value): _drop_card,
    (ConflictType.AMBIGUOUS_CARD_MATCH.value, ConflictResolution.OVERWRITE.value): _keep_card,
    (ConflictType.AMBIGUOUS_CARD_MATCH.value, ConflictResolution.MERGE.value): _keep_card,
    (ConflictType.AMBIGUOUS_CARD_MATCH.value, ConflictResolution.RENAME.value): _keep_card,
}


def apply_resolution(plan: DeckCommitPlan, conflict: ImportConflict) -> None:
    if conflict.resolution is None:
        raise ImportConflictError(f"Conflict {conflict.id} is not resolved")
    handler = RESOLUTION_HANDLERS.get((conflict.conflict_type, conflict.resolution))
    if handler is None:
        raise ImportConflictError(
            f"Resolution '{conflict.resolution}' is not valid for {conflict.conflict_type}"
        )
    handler(plan, conflict)


def is_valid_resolution(conflict_type: str, resolution: str) -> bool:
    return (conflict_type, resolution) in RESOLUTION_HANDLERS


def default_resolution_for(conflict: ImportConflict, job: ImportJob) -> Optional[str]:
    """
    Resolution the pipeline may apply on its own, or None when the user has
    to decide.

    The job's policy wins over ``options.default_conflict_resolution``; with
    both at ``ask_user`` non-blocking conflicts fall back to ``merge``.
    """
    policy = job.conflict_resolution
    if policy == ConflictResolution.ASK_USER.value:
        policy = (job.options or {}).get("default_conflict_resolution", ConflictResolution.ASK_USER.value)
    if policy != ConflictResolution.ASK_USER.value and is_valid_resolution(conflict.conflict_type, policy):
        return policy
    if not conflict.blocking:
        return ConflictResolution.MERGE.value
    return None
