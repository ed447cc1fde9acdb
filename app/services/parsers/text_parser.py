"""
Plain-text deck list parser.

Accepted line shapes (one card per line)::

    1 Sol Ring
    1x Sol Ring
    1 Sol Ring (C21) 263
    Sol Ring                      -> quantity 1
    1x Atraxa, Praetors' Voice *CMDR*   (TappedOut)

Other directives:

* ``// Deck: Name`` or ``Deck: Name`` starts a new deck.
* ``// Folder: Parent/Child`` files the current deck in a folder.
* ``Commander``, ``Deck``/``Mainboard``, ``Sideboard`` and ``Maybeboard``
  lines switch the section of the following cards.
* other lines starting with ``//`` or ``#`` are comments.
* with ``blank_line_sideboard`` (MTGGoldfish exports) the first blank line
  after any card switches to the sideboard.
"""
import re
from typing import Any, Dict, List, Optional

from app.services.import_errors import make_warning
from app.services.parsers.base import (
    DEFAULT_DECK_NAME,
    ParsedCard,
    ParsedDeck,
    ParsedImportPayload,
    Parser,
)

_CARD_LINE_RE = re.compile(r"^\s*(\d+)\s*[xX]?\s+(.*)$")
_SET_SUFFIX_RE = re.compile(r"^(?P<name>.*?)\s+\((?P<set>[A-Za-z0-9]{2,6})\)(?:\s+(?P<number>[\w★-]+))?\s*$")
_DECK_HEADER_RE = re.compile(r"^(?://|#)?\s*(?:deck|name)\s*:\s*(?P<name>.+)$", re.IGNORECASE)
_FOLDER_HEADER_RE = re.compile(r"^(?://|#)?\s*folder\s*:\s*(?P<folder>.+)$", re.IGNORECASE)
_SECTION_RE = re.compile(
    r"^(?://|#)?\s*(?P<section>commanders?|deck|main(?:board)?|sideboard|maybeboard|companion)"
    r"\s*(?:\(\d+\))?\s*:?\s*$",
    re.IGNORECASE,
)
_CMDR_MARKER_RE = re.compile(r"\s*\*CMDR\*\s*", re.IGNORECASE)
_FOIL_MARKER_RE = re.compile(r"\s*\*[FE]\*\s*$")

_SECTION_CATEGORIES = {
    "commander": "commander",
    "commanders": "commander",
    "deck": "main",
    "main": "main",
    "mainboard": "main",
    "sideboard": "sideboard",
    "maybeboard": "maybeboard",
    "companion": "sideboard",
}

MAX_QUANTITY = 999


class TextParser(Parser):
    """Parser for ``qty name`` deck lists."""

    name = "text"

    def __init__(self, blank_line_sideboard: bool = False):
        self.blank_line_sideboard = blank_line_sideboard

    def _parse(self, text: str, source_hint: Optional[str], options: Dict[str, Any]) -> ParsedImportPayload:
        payload = ParsedImportPayload()
        decks: List[ParsedDeck] = []
        current = ParsedDeck(name=source_hint or DEFAULT_DECK_NAME)
        category = "main"
        seen_blank_split = False

        for line_number, line in enumerate(text.splitlines(), start=1):
            stripped = line.strip()

            if not stripped:
                if self.blank_line_sideboard and current.cards and not seen_blank_split:
                    category = "sideboard"
                    seen_blank_split = True
                continue

            header = _DECK_HEADER_RE.match(stripped)
            if header:
                if current.cards:
                    decks.append(current)
                    current = ParsedDeck()
                current.name = header.group("name").strip()
                category = "main"
                seen_blank_split = False
                continue

            folder = _FOLDER_HEADER_RE.match(stripped)
            if folder:
                current.folder = folder.group("folder").strip().strip("/")
                continue

            section = _SECTION_RE.match(stripped)
            if section:
                category = _SECTION_CATEGORIES[section.group("section").lower()]
                continue

            if stripped.startswith("//") or stripped.startswith("#"):
                continue

            card = self._parse_card_line(stripped, category, line_number, payload)
            if card is None:
                continue
            if card.category == "commander" and not current.commander:
                current.commander = card.raw_name
            current.cards.append(card)

        if current.cards:
            decks.append(current)

        payload.decks = decks
        return payload

    def _parse_card_line(self, line: str, category: str, line_number: int,
                         payload: ParsedImportPayload) -> Optional[ParsedCard]:
        quantity = 1
        name = line
        match = _CARD_LINE_RE.match(line)
        if match:
            quantity = int(match.group(1))
            name = match.group(2).strip()

        if quantity < 1 or quantity > MAX_QUANTITY:
            payload.warnings.append(make_warning(
                "data_loss",
                f"Line {line_number}: quantity {quantity} out of range, line skipped",
                context=line,
                impact="medium",
            ))
            return None

        if _CMDR_MARKER_RE.search(name):
            name = _CMDR_MARKER_RE.sub(" ", name).strip()
            category = "commander"
        name = _FOIL_MARKER_RE.sub("", name).strip()

        set_code = None
        collector_number = None
        suffix = _SET_SUFFIX_RE.match(name)
        if suffix:
            name = suffix.group("name").strip()
            set_code = suffix.group("set").lower()
            collector_number = suffix.group("number")

        if not name:
            payload.warnings.append(make_warning(
                "data_loss",
                f"Line {line_number}: missing card name, line skipped",
                context=line,
                impact="medium",
            ))
            return None

        return ParsedCard(
            raw_name=name,
            quantity=quantity,
            set_code=set_code,
            collector_number=collector_number,
            category=category,
        )
