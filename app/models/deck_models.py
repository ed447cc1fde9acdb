"""
Deck, folder and card catalog models written to by imports.
"""
from datetime import datetime, timezone
from typing import Optional
import uuid

from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Card(SQLModel, table=True):
    """Reference card printing (one row per set printing)."""

    __tablename__ = "cards"

    card_id: str = Field(primary_key=True, max_length=64)  # Scryfall id
    name: str = Field(index=True, max_length=255)
    set_code: str = Field(max_length=10)
    collector_number: Optional[str] = Field(default=None, max_length=20)
    released_at: Optional[str] = Field(default=None, max_length=10)  # YYYY-MM-DD
    rarity: Optional[str] = Field(default=None, max_length=20)
    colors: Optional[str] = Field(default=None, max_length=20)  # "W,U"


class Deck(SQLModel, table=True):
    """User deck."""

    __tablename__ = "decks"

    id: str = Field(default_factory=lambda: f"deck_{uuid.uuid4().hex[:16]}", primary_key=True, max_length=50)
    user_id: str = Field(index=True, max_length=100)
    name: str = Field(max_length=255)
    commander: Optional[str] = Field(default=None, max_length=255)
    format: str = Field(default="commander", max_length=50)
    import_job_id: Optional[str] = Field(default=None, max_length=50)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class DeckCard(SQLModel, table=True):
    """Card row inside a deck."""

    __tablename__ = "deck_cards"

    id: Optional[int] = Field(default=None, primary_key=True)
    deck_id: str = Field(foreign_key="decks.id", index=True, max_length=50)
    card_id: str = Field(max_length=64)
    card_name: str = Field(max_length=255)
    quantity: int = Field(default=1)
    category: str = Field(default="main", max_length=50)  # commander, main, sideboard


class Folder(SQLModel, table=True):
    """Deck folder; parent_id is None for top level folders."""

    __tablename__ = "folders"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=100)
    name: str = Field(max_length=255)
    parent_id: Optional[int] = Field(default=None, foreign_key="folders.id")
    created_at: datetime = Field(default_factory=_utcnow)


class FolderDeck(SQLModel, table=True):
    """Folder membership of a deck."""

    __tablename__ = "folder_decks"

    id: Optional[int] = Field(default=None, primary_key=True)
    folder_id: int = Field(foreign_key="folders.id", index=True)
    deck_id: str = Field(foreign_key="decks.id", index=True, max_length=50)


class CollectionCard(SQLModel, table=True):
    """Cards a user owns outside of decks."""

    __tablename__ = "collection_cards"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=100)
    card_id: str = Field(max_length=64)
    card_name: str = Field(index=True, max_length=255)
    quantity: int = Field(default=1)
