"""
Parsers for JSON deck exports (Moxfield, Archidekt).

Both accept either a single deck object or a list of deck objects. Input
that is not JSON is handed to the text parser, since users frequently paste
the site's plain-text export instead.
"""
import json
from typing import Any, Dict, Iterable, List, Optional

from app.services.import_errors import InvalidFormatError, make_warning
from app.services.parsers.base import (
    DEFAULT_DECK_NAME,
    ParsedCard,
    ParsedDeck,
    ParsedImportPayload,
    Parser,
)
from app.services.parsers.text_parser import TextParser

MOXFIELD_BOARDS = {
    "commanders": "commander",
    "companions": "sideboard",
    "mainboard": "main",
    "sideboard": "sideboard",
    "maybeboard": "maybeboard",
}


def _as_deck_list(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        decks = data
    elif isinstance(data, dict) and isinstance(data.get("decks"), list):
        decks = data["decks"]
    else:
        decks = [data]
    if not all(isinstance(deck, dict) for deck in decks):
        raise InvalidFormatError("Expected a deck object or a list of deck objects")
    return decks


class JsonDeckParser(Parser):
    """Common JSON handling; subclasses convert one deck object."""

    def __init__(self):
        self._text_fallback = TextParser()

    def _parse(self, text: str, source_hint: Optional[str], options: Dict[str, Any]) -> ParsedImportPayload:
        stripped = text.lstrip()
        if not stripped.startswith(("{", "[")):
            payload = self._text_fallback._parse(text, source_hint, options)
            payload.warnings.insert(0, make_warning(
                "format_assumption",
                f"Input is not a {self.name} JSON export, parsed as a plain-text deck list",
            ))
            return payload

        try:
            data = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise InvalidFormatError(f"Invalid {self.name} JSON: {e.msg} (line {e.lineno})")

        payload = ParsedImportPayload()
        for deck_data in _as_deck_list(data):
            deck = self._convert_deck(deck_data, source_hint, payload)
            if deck.cards:
                payload.decks.append(deck)
        return payload

    def _convert_deck(self, data: Dict[str, Any], source_hint: Optional[str],
                      payload: ParsedImportPayload) -> ParsedDeck:
        raise NotImplementedError

    @staticmethod
    def _quantity(value: Any) -> int:
        try:
            return max(int(value), 0)
        except (TypeError, ValueError):
            return 0


class MoxfieldParser(JsonDeckParser):
    """Moxfield deck export (API v2 board dicts or v3 ``boards`` layout)."""

    name = "moxfield"

    def _convert_deck(self, data: Dict[str, Any], source_hint: Optional[str],
                      payload: ParsedImportPayload) -> ParsedDeck:
        deck = ParsedDeck(
            name=data.get("name") or source_hint or DEFAULT_DECK_NAME,
            folder=data.get("folder"),
            format=data.get("format") or "commander",
        )
        boards = data.get("boards") if isinstance(data.get("boards"), dict) else data
        for board_name, category in MOXFIELD_BOARDS.items():
            board = boards.get(board_name) or {}
            if isinstance(board, dict) and isinstance(board.get("cards"), dict):
                board = board["cards"]
            for entry in self._entries(board):
                card_data = entry.get("card") or {}
                name = card_data.get("name") or entry.get("name")
                quantity = self._quantity(entry.get("quantity", 1))
                if not name or quantity < 1:
                    payload.warnings.append(make_warning(
                        "data_loss", f"Skipped malformed {board_name} entry in '{deck.name}'", impact="medium",
                    ))
                    continue
                set_code = card_data.get("set")
                deck.cards.append(ParsedCard(
                    raw_name=name,
                    quantity=quantity,
                    set_code=set_code.lower() if set_code else None,
                    collector_number=card_data.get("cn"),
                    condition=entry.get("condition"),
                    language=entry.get("language") or card_data.get("lang"),
                    category=category,
                ))
                if category == "commander" and not deck.commander:
                    deck.commander = name
        return deck

    @staticmethod
    def _entries(board: Any) -> Iterable[Dict[str, Any]]:
        if isinstance(board, dict):
            return [entry for entry in board.values() if isinstance(entry, dict)]
        if isinstance(board, list):
            return [entry for entry in board if isinstance(entry, dict)]
        return []


class ArchidektParser(JsonDeckParser):
    """Archidekt deck export (``cards`` list with categories)."""

    name = "archidekt"

    def _convert_deck(self, data: Dict[str, Any], source_hint: Optional[str],
                      payload: ParsedImportPayload) -> ParsedDeck:
        deck = ParsedDeck(
            name=data.get("name") or source_hint or DEFAULT_DECK_NAME,
            folder=data.get("folder"),
        )
        for entry in data.get("cards") or []:
            if not isinstance(entry, dict):
                continue
            card_data = entry.get("card") or {}
            oracle = card_data.get("oracleCard") or {}
            edition = card_data.get("edition") or {}
            name = oracle.get("name") or card_data.get("name") or entry.get("name")
            quantity = self._quantity(entry.get("quantity", 1))
            if not name or quantity < 1:
                payload.warnings.append(make_warning(
                    "data_loss", f"Skipped malformed card entry in '{deck.name}'", impact="medium",
                ))
                continue

            categories = [str(c).lower() for c in entry.get("categories") or []]
            if "commander" in categories:
                category = "commander"
            elif "sideboard" in categories:
                category = "sideboard"
            elif "maybeboard" in categories:
                category = "maybeboard"
            else:
                category = "main"

            set_code = edition.get("editioncode")
            deck.cards.append(ParsedCard(
                raw_name=name,
                quantity=quantity,
                set_code=set_code.lower() if set_code else None,
                collector_number=card_data.get("collectorNumber"),
                condition=entry.get("condition"),
                language=entry.get("language"),
                category=category,
            ))
            if category == "commander" and not deck.commander:
                deck.commander = name
        return deck
