"""
Persistence store for decks, deck cards and folders.

Every method works inside the caller's session and never commits; the job
processor owns the transaction boundary (one deck per transaction).
"""
import logging
import zlib
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from app.models.deck_models import CollectionCard, Deck, DeckCard, Folder, FolderDeck

logger = logging.getLogger("app.import.store")


def split_folder_path(path: Optional[str]) -> List[str]:
    if not path:
        return []
    return [part.strip() for part in path.split("/") if part.strip()]


class DeckStore:
    """Deck/card/folder CRUD used by the import pipeline."""

    def __init__(self, db: Session):
        self.db = db

    # Locking

    def lock_user(self, user_id: str) -> None:
        """
        Take a transaction-scoped advisory lock serializing commits per user.

        SQLite has a single database-level write lock, so only PostgreSQL
        needs the explicit lock.
        """
        if self.db.get_bind().dialect.name != "postgresql":
            return
        key = zlib.crc32(f"deck-import:{user_id}".encode("utf-8"))
        self.db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})

    # Decks

    def find_deck_by_name(self, user_id: str, name: str) -> Optional[Deck]:
        return self.db.query(Deck).filter(
            Deck.user_id == user_id,
            func.lower(Deck.name) == name.strip().lower(),
        ).order_by(Deck.created_at).first()

    def get_deck(self, deck_id: str) -> Optional[Deck]:
        return self.db.query(Deck).filter(Deck.id == deck_id).first()

    def unique_deck_name(self, user_id: str, name: str) -> str:
        candidate = name
        counter = 2
        while self.find_deck_by_name(user_id, candidate) is not None:
            candidate = f"{name} ({counter})"
            counter += 1
        return candidate

    def create_deck(self, user_id: str, name: str, commander: Optional[str] = None,
                    format: str = "commander", import_job_id: Optional[str] = None) -> Deck:
        deck = Deck(user_id=user_id, name=name, commander=commander, format=format, import_job_id=import_job_id)
        self.db.add(deck)
        self.db.flush()
        return deck

    def delete_deck(self, deck_id: str) -> bool:
        deck = self.get_deck(deck_id)
        if deck is None:
            return False
        self.db.query(DeckCard).filter(DeckCard.deck_id == deck_id).delete(synchronize_session=False)
        self.db.query(FolderDeck).filter(FolderDeck.deck_id == deck_id).delete(synchronize_session=False)
        self.db.delete(deck)
        self.db.flush()
        return True

    # Deck cards

    def add_deck_cards(self, deck_id: str, cards: List[Dict[str, Any]]) -> List[int]:
        rows = [
            DeckCard(
                deck_id=deck_id,
                card_id=card["card_id"],
                card_name=card["card_name"],
                quantity=card.get("quantity", 1),
                category=card.get("category", "main"),
            )
            for card in cards
        ]
        self.db.add_all(rows)
        self.db.flush()
        return [row.id for row in rows]

    def restore_deck_cards(self, deck_id: str, cards: List[Dict[str, Any]]) -> List[int]:
        """Put back cards an overwrite replaced; a deck deleted since then gets nothing."""
        if self.get_deck(deck_id) is None:
            logger.warning(f"Deck {deck_id} no longer exists, previous cards not restored")
            return []
        return self.add_deck_cards(deck_id, cards)

    def snapshot_deck_cards(self, deck_id: str) -> List[Dict[str, Any]]:
        rows = self.db.query(DeckCard).filter(DeckCard.deck_id == deck_id).order_by(DeckCard.id).all()
        return [
            {"card_id": row.card_id, "card_name": row.card_name, "quantity": row.quantity, "category": row.category}
            for row in rows
        ]

    def clear_deck_cards(self, deck_id: str) -> int:
        return self.db.query(DeckCard).filter(DeckCard.deck_id == deck_id).delete(synchronize_session=False)

    def delete_deck_cards(self, row_ids: List[int]) -> int:
        if not row_ids:
            return 0
        return self.db.query(DeckCard).filter(DeckCard.id.in_(row_ids)).delete(synchronize_session=False)

    def count_deck_cards(self, deck_id: str) -> int:
        return self.db.query(func.coalesce(func.sum(DeckCard.quantity), 0)).filter(
            DeckCard.deck_id == deck_id
        ).scalar()

    # Collection

    def owned_quantities(self, user_id: str) -> Dict[str, int]:
        """Owned quantity per lower-cased card name."""
        rows = self.db.query(
            func.lower(CollectionCard.card_name), func.sum(CollectionCard.quantity)
        ).filter(CollectionCard.user_id == user_id).group_by(func.lower(CollectionCard.card_name)).all()
        return {name: int(quantity or 0) for name, quantity in rows}

    # Folders

    def find_folder(self, user_id: str, name: str, parent_id: Optional[int]) -> Optional[Folder]:
        query = self.db.query(Folder).filter(
            Folder.user_id == user_id,
            func.lower(Folder.name) == name.strip().lower(),
        )
        if parent_id is None:
            query = query.filter(Folder.parent_id.is_(None))
        else:
            query = query.filter(Folder.parent_id == parent_id)
        return query.order_by(Folder.id).first()

    def locate_folder_path(self, user_id: str, path: Optional[str]) -> Tuple[Optional[Folder], bool]:
        """
        Walk ``path`` through existing folders.

        Returns the existing leaf folder (or None) and whether the whole parent
        chain exists.
        """
        parts = split_folder_path(path)
        if not parts:
            return None, False
        parent_id = None
        for part in parts[:-1]:
            folder = self.find_folder(user_id, part, parent_id)
            if folder is None:
                return None, False
            parent_id = folder.id
        return self.find_folder(user_id, parts[-1], parent_id), True

    def create_folder(self, user_id: str, name: str, parent_id: Optional[int]) -> Folder:
        folder = Folder(user_id=user_id, name=name, parent_id=parent_id)
        self.db.add(folder)
        self.db.flush()
        return folder

    def unique_folder_name(self, user_id: str, name: str, parent_id: Optional[int]) -> str:
        candidate = name
        counter = 2
        while self.find_folder(user_id, candidate, parent_id) is not None:
            candidate = f"{name} ({counter})"
            counter += 1
        return candidate

    def add_folder_membership(self, folder_id: int, deck_id: str) -> int:
        membership = FolderDeck(folder_id=folder_id, deck_id=deck_id)
        self.db.add(membership)
        self.db.flush()
        return membership.id

    def remove_folder_membership(self, membership_id: int) -> bool:
        return self.db.query(FolderDeck).filter(FolderDeck.id == membership_id).delete(
            synchronize_session=False
        ) > 0

    def delete_folder_if_empty(self, folder_id: int) -> bool:
        if self.db.query(FolderDeck).filter(FolderDeck.folder_id == folder_id).count():
            return False
        if self.db.query(Folder).filter(Folder.parent_id == folder_id).count():
            return False
        return self.db.query(Folder).filter(Folder.id == folder_id).delete(synchronize_session=False) > 0
