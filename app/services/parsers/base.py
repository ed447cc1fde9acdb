"""
Shared types for deck list parsers.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from app.services.import_errors import ImportPipelineError, make_error

logger = logging.getLogger("app.import.parsers")

DEFAULT_DECK_NAME = "Imported Deck"


@dataclass
class ParsedCard:
    raw_name: str
    quantity: int = 1
    set_code: Optional[str] = None
    collector_number: Optional[str] = None
    condition: Optional[str] = None
    language: Optional[str] = None
    category: str = "main"  # commander, main, sideboard


@dataclass
class ParsedDeck:
    name: str = DEFAULT_DECK_NAME
    commander: Optional[str] = None
    folder: Optional[str] = None  # "Parent/Child"
    format: str = "commander"
    cards: List[ParsedCard] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParsedDeck":
        cards = [ParsedCard(**card) for card in data.get("cards", [])]
        return cls(
            name=data.get("name") or DEFAULT_DECK_NAME,
            commander=data.get("commander"),
            folder=data.get("folder"),
            format=data.get("format") or "commander",
            cards=cards,
        )

    @property
    def card_count(self) -> int:
        return sum(card.quantity for card in self.cards)


@dataclass
class ParsedImportPayload:
    decks: List[ParsedDeck] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class Parser:
    """
    Base class for format parsers.

    Subclasses implement ``_parse``; ``parse`` never raises and reports any
    failure as a ``parsing_error`` (or the error type carried by an
    ImportPipelineError) in the returned payload.
    """

    name = "base"

    def parse(self, raw: Union[str, bytes], source_hint: Optional[str] = None,
              options: Optional[Dict[str, Any]] = None) -> ParsedImportPayload:
        options = options or {}
        try:
            text = self._decode(raw)
            if not text.strip():
                return ParsedImportPayload(errors=[make_error("parsing_error", "Input is empty")])
            payload = self._parse(text, source_hint=source_hint, options=options)
        except ImportPipelineError as e:
            logger.warning(f"{self.name} parser rejected input: {e.message}")
            record = e.to_record()
            record["recoverable"] = False
            return ParsedImportPayload(errors=[record])
        except Exception as e:
            logger.warning(f"{self.name} parser failed: {e}")
            return ParsedImportPayload(errors=[make_error("parsing_error", f"Could not parse input: {e}")])

        if not payload.decks and not payload.errors:
            payload.errors.append(make_error("parsing_error", "No cards found in input"))
        return payload

    def _parse(self, text: str, source_hint: Optional[str], options: Dict[str, Any]) -> ParsedImportPayload:
        raise NotImplementedError

    @staticmethod
    def _decode(raw: Union[str, bytes]) -> str:
        if isinstance(raw, bytes):
            # utf-8-sig strips the BOM some spreadsheet exports prepend
            return raw.decode("utf-8-sig", errors="replace")
        return raw.lstrip("﻿")
