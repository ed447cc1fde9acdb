"""
Parser registry keyed by import source.

Adding a source means registering a parser here; the job processor only
talks to ``get_parser``.
"""
from typing import Dict

from app.models.import_models import ImportSource
from app.services.import_errors import InvalidFormatError
from app.services.parsers.base import Parser
from app.services.parsers.csv_parser import CsvParser
from app.services.parsers.json_parsers import ArchidektParser, MoxfieldParser
from app.services.parsers.text_parser import TextParser

PARSER_REGISTRY: Dict[str, Parser] = {
    ImportSource.MOXFIELD.value: MoxfieldParser(),
    ImportSource.ARCHIDEKT.value: ArchidektParser(),
    ImportSource.TAPPEDOUT.value: TextParser(),
    ImportSource.EDHREC.value: TextParser(),
    ImportSource.MTGGOLDFISH.value: TextParser(blank_line_sideboard=True),
    ImportSource.CSV.value: CsvParser(),
    ImportSource.TEXT.value: TextParser(),
    ImportSource.CUSTOM.value: CsvParser(require_custom_fields=True),
}


def register_parser(source: str, parser: Parser) -> None:
    PARSER_REGISTRY[source] = parser


def get_parser(source: str) -> Parser:
    parser = PARSER_REGISTRY.get(source)
    if parser is None:
        raise InvalidFormatError(f"No parser found for source: {source}")
    return parser
