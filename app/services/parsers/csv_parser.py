"""
CSV / spreadsheet-export parser.

Column mapping, in order of precedence:

1. ``options["custom_fields"]`` entries of the form ``field=Column Header``
   map header cells to fields; bare field names (``quantity``, ``name``, ...)
   map columns by position and mark the file as headerless. A
   ``delimiter=;`` entry forces the delimiter.
2. Header aliases (``Card Name``, ``Qty``, ``Edition``...) when the first row
   looks like a header.
3. Default schema for headerless files: ``quantity,name,set_code``.

``name`` and ``quantity`` are required; failing to map them is a
validation error. The delimiter is detected from the first line
(``,`` ``;`` tab ``|``) when not configured.
"""
import logging
from io import StringIO
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from app.services.import_errors import ImportValidationError, ParsingError, make_warning
from app.services.parsers.base import (
    DEFAULT_DECK_NAME,
    ParsedCard,
    ParsedDeck,
    ParsedImportPayload,
    Parser,
)

logger = logging.getLogger("app.import.parsers")

FIELDS = (
    "name",
    "quantity",
    "set_code",
    "collector_number",
    "condition",
    "language",
    "deck",
    "commander",
    "folder",
    "category",
)
REQUIRED_FIELDS = ("name", "quantity")
DEFAULT_SCHEMA = ("quantity", "name", "set_code")
DELIMITERS = (",", ";", "\t", "|")

ALIASES = {
    "name": ["name", "card name", "card", "cardname", "card title"],
    "quantity": ["quantity", "qty", "count", "amount", "copies"],
    "set_code": ["set", "set code", "edition", "edition code", "expansion", "set_code"],
    "collector_number": ["collector number", "number", "cn", "collector no"],
    "condition": ["condition", "cond"],
    "language": ["language", "lang"],
    "deck": ["deck", "deck name"],
    "commander": ["commander", "is commander"],
    "folder": ["folder", "folder path"],
    "category": ["category", "board", "section"],
}

_TRUTHY = {"1", "true", "yes", "y", "x"}


def _normalize_header(value: str) -> str:
    return " ".join(str(value).strip().lower().replace("_", " ").replace("-", " ").split())


def detect_delimiter(text: str) -> str:
    """Pick the candidate delimiter that occurs most often on the first line."""
    first_line = next((line for line in text.splitlines() if line.strip()), "")
    counts = [(first_line.count(d), -i, d) for i, d in enumerate(DELIMITERS)]
    best = max(counts)
    return best[2] if best[0] > 0 else ","


class CsvParser(Parser):
    """Parser for delimited card lists."""

    name = "csv"

    def __init__(self, require_custom_fields: bool = False):
        self.require_custom_fields = require_custom_fields

    def _parse(self, text: str, source_hint: Optional[str], options: Dict[str, Any]) -> ParsedImportPayload:
        custom_fields = options.get("custom_fields") or []
        if self.require_custom_fields and not custom_fields:
            logger.info("Custom import without custom_fields, falling back to column auto-detection")

        header_map, positional, delimiter = self._parse_custom_fields(custom_fields)
        delimiter = delimiter or detect_delimiter(text)

        try:
            frame = pd.read_csv(
                StringIO(text),
                sep=delimiter,
                header=None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                skipinitialspace=True,
                on_bad_lines="skip",
                engine="python",
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise ParsingError(f"Could not read delimited data: {e}")

        frame = frame.fillna("")
        rows = [[str(cell).strip() for cell in row] for row in frame.itertuples(index=False, name=None)]
        rows = [row for row in rows if any(row)]
        if not rows:
            raise ParsingError("No rows found in input")

        mapping, data_rows = self._map_columns(rows, header_map, positional)
        payload = ParsedImportPayload()
        payload.decks = self._build_decks(data_rows, mapping, source_hint, payload)
        return payload

    def _parse_custom_fields(self, custom_fields: List[str]) -> Tuple[Dict[str, str], List[str], Optional[str]]:
        header_map: Dict[str, str] = {}
        positional: List[str] = []
        delimiter = None
        for entry in custom_fields:
            if "=" in entry:
                field_name, column = entry.split("=", 1)
                field_name = field_name.strip().lower()
                if field_name == "delimiter":
                    delimiter = "\t" if column in ("\\t", "tab") else column
                    continue
                if field_name not in FIELDS:
                    raise ImportValidationError(f"Unknown custom field: {field_name}")
                header_map[field_name] = _normalize_header(column)
            else:
                field_name = entry.strip().lower()
                if field_name and field_name not in FIELDS:
                    raise ImportValidationError(f"Unknown custom field: {field_name}")
                positional.append(field_name)
        return header_map, positional, delimiter

    def _map_columns(self, rows: List[List[str]], header_map: Dict[str, str],
                     positional: List[str]) -> Tuple[Dict[str, int], List[List[str]]]:
        mapping: Dict[str, int] = {}

        if positional:
            mapping = {field_name: i for i, field_name in enumerate(positional) if field_name}
            data_rows = rows
        else:
            header = [_normalize_header(cell) for cell in rows[0]]
            if header_map:
                for field_name, column in header_map.items():
                    if column in header:
                        mapping[field_name] = header.index(column)
            for field_name, aliases in ALIASES.items():
                if field_name in mapping:
                    continue
                for alias in aliases:
                    if alias in header and header.index(alias) not in mapping.values():
                        mapping[field_name] = header.index(alias)
                        break

            if "name" in mapping or header_map:
                data_rows = rows[1:]
            else:
                # headerless: fall back to quantity,name,set_code
                mapping = {field_name: i for i, field_name in enumerate(DEFAULT_SCHEMA) if i < len(rows[0])}
                data_rows = rows
                if len(rows[0]) < 2 or not rows[0][0].isdigit():
                    raise ImportValidationError(
                        "Could not map required columns (name, quantity); add a header row or custom_fields"
                    )

        missing = [field_name for field_name in REQUIRED_FIELDS if field_name not in mapping]
        if missing:
            raise ImportValidationError(f"Could not map required columns: {', '.join(missing)}")
        return mapping, data_rows

    def _build_decks(self, rows: List[List[str]], mapping: Dict[str, int], source_hint: Optional[str],
                     payload: ParsedImportPayload) -> List[ParsedDeck]:
        decks: Dict[str, ParsedDeck] = {}
        default_name = source_hint or DEFAULT_DECK_NAME

        def cell(row: List[str], field_name: str) -> str:
            index = mapping.get(field_name)
            if index is None or index >= len(row):
                return ""
            return row[index]

        for row_number, row in enumerate(rows, start=1):
            name = cell(row, "name")
            raw_quantity = cell(row, "quantity") or "1"
            try:
                quantity = int(float(raw_quantity))
            except ValueError:
                quantity = 0
            if not name or quantity < 1:
                payload.warnings.append(make_warning(
                    "data_loss",
                    f"Row {row_number}: invalid name or quantity, row skipped",
                    context=",".join(row),
                    impact="medium",
                ))
                continue

            deck_name = cell(row, "deck") or default_name
            deck = decks.get(deck_name)
            if deck is None:
                deck = decks[deck_name] = ParsedDeck(name=deck_name)
            folder = cell(row, "folder")
            if folder and not deck.folder:
                deck.folder = folder.strip("/")

            category = cell(row, "category").lower()
            if cell(row, "commander").lower() in _TRUTHY or "commander" in category:
                category = "commander"
            elif "side" in category:
                category = "sideboard"
            else:
                category = "main"

            card = ParsedCard(
                raw_name=name,
                quantity=quantity,
                set_code=(cell(row, "set_code").lower() or None),
                collector_number=cell(row, "collector_number") or None,
                condition=cell(row, "condition") or None,
                language=cell(row, "language") or None,
                category=category,
            )
            if category == "commander" and not deck.commander:
                deck.commander = name
            deck.cards.append(card)

        return [deck for deck in decks.values() if deck.cards]
