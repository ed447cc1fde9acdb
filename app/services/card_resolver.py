"""
Card name resolution against the reference card catalog.

Resolution policy:

* exact name and set           -> confidence 1.0, no warning
* exact name, set missing or
  unmatched, several printings -> most recent printing, confidence 0.95,
                                  ``card_variant`` warning
* fuzzy match >= FUZZY_THRESHOLD -> best match, confidence = similarity,
                                  ``card_variant`` warning
* otherwise                    -> unresolved, recoverable ``card_not_found``
                                  error with up to MAX_SUGGESTIONS suggestions

Matches scoring between FUZZY_THRESHOLD and SAFE_CONFIDENCE are reported by
the conflict detector as ``ambiguous-card-match``. Resolution is
deterministic: ties are broken by name and card id.
"""
import difflib
import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.models.deck_models import Card
from app.services.import_errors import make_error, make_warning
from app.services.parsers.base import ParsedCard, ParsedDeck

logger = logging.getLogger("app.import.resolver")

SAFE_CONFIDENCE = 0.90
FUZZY_THRESHOLD = 0.75
SUGGESTION_CUTOFF = 0.5
MAX_SUGGESTIONS = 5
VARIANT_CONFIDENCE = 0.95


def normalize_card_name(name: str) -> str:
    name = name.replace("’", "'").replace("‘", "'").replace("`", "'")
    return " ".join(name.casefold().split())


@dataclass
class CardPrinting:
    card_id: str
    name: str
    set_code: str
    collector_number: Optional[str] = None
    released_at: Optional[str] = None
    rarity: Optional[str] = None
    colors: Optional[str] = None


@dataclass
class CardResolution:
    raw_name: str
    quantity: int = 1
    category: str = "main"
    requested_set: Optional[str] = None
    card_id: Optional[str] = None
    name: Optional[str] = None
    set_code: Optional[str] = None
    rarity: Optional[str] = None
    colors: Optional[str] = None
    confidence: float = 0.0
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def resolved(self) -> bool:
        return self.card_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardResolution":
        return cls(**data)


class CardCatalog:
    """Lookup interface onto the reference card database."""

    def find_printings(self, name: str) -> List[CardPrinting]:
        """Return every printing whose name (or front face) equals ``name``, case-insensitively."""
        raise NotImplementedError

    def candidate_names(self, name: str) -> List[str]:
        """Return the card names a fuzzy match may pick from."""
        raise NotImplementedError


class SqlCardCatalog(CardCatalog):
    """CardCatalog backed by the ``cards`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._names: Optional[List[str]] = None
        self._lock = threading.Lock()

    def find_printings(self, name: str) -> List[CardPrinting]:
        lowered = name.strip().lower()
        session = self.session_factory()
        try:
            rows = session.query(Card).filter(
                or_(
                    func.lower(Card.name) == lowered,
                    func.lower(Card.name).like(f"{lowered} // %"),
                )
            ).all()
            return [
                CardPrinting(
                    card_id=row.card_id,
                    name=row.name,
                    set_code=row.set_code,
                    collector_number=row.collector_number,
                    released_at=row.released_at,
                    rarity=row.rarity,
                    colors=row.colors,
                )
                for row in rows
            ]
        finally:
            session.close()

    def candidate_names(self, name: str) -> List[str]:
        with self._lock:
            if self._names is None:
                session = self.session_factory()
                try:
                    self._names = sorted({row[0] for row in session.query(Card.name).distinct().all()})
                finally:
                    session.close()
                logger.info(f"Loaded {len(self._names)} card names for fuzzy matching")
            return self._names


class CardResolver:
    """Applies the resolution policy on top of a CardCatalog."""

    def __init__(self, catalog: CardCatalog, fuzzy_threshold: float = FUZZY_THRESHOLD,
                 max_suggestions: int = MAX_SUGGESTIONS):
        self.catalog = catalog
        self.fuzzy_threshold = fuzzy_threshold
        self.max_suggestions = max_suggestions

    def resolve(self, raw_name: str, set_code: Optional[str] = None, allow_fuzzy: bool = True) -> CardResolution:
        result = CardResolution(raw_name=raw_name, requested_set=set_code)

        printings = self.catalog.find_printings(raw_name)
        if printings:
            self._pick_printing(result, printings, set_code)
            return result

        normalized = normalize_card_name(raw_name)
        names = self.catalog.candidate_names(raw_name)
        by_normalized = {}
        for candidate in sorted(names):
            by_normalized.setdefault(normalize_card_name(candidate), candidate)

        close = difflib.get_close_matches(normalized, list(by_normalized), n=self.max_suggestions,
                                          cutoff=SUGGESTION_CUTOFF)
        scored = sorted(
            ((difflib.SequenceMatcher(None, normalized, match).ratio(), by_normalized[match]) for match in close),
            key=lambda pair: (-pair[0], pair[1]),
        )

        if allow_fuzzy and scored and scored[0][0] >= self.fuzzy_threshold:
            score, best_name = scored[0]
            best_printings = self.catalog.find_printings(best_name)
            if best_printings:
                self._pick_printing(result, best_printings, set_code)
                result.confidence = round(score, 4)
                result.warnings.append(make_warning(
                    "card_variant",
                    f"'{raw_name}' matched to '{result.name}' ({score:.0%} similar)",
                    suggestion=result.name,
                    context=raw_name,
                    impact="medium",
                ))
                return result

        suggestions = [name for _, name in scored]
        result.error = make_error(
            "card_not_found",
            f"Card not found: {raw_name}",
            recoverable=True,
            context=raw_name,
            suggestions=suggestions,
        )
        logger.debug(f"Unresolved card '{raw_name}', suggestions: {suggestions}")
        return result

    def _pick_printing(self, result: CardResolution, printings: List[CardPrinting],
                       set_code: Optional[str]) -> None:
        chosen = None
        if set_code:
            wanted = set_code.lower()
            matching = sorted((p for p in printings if p.set_code.lower() == wanted), key=lambda p: p.card_id)
            if matching:
                chosen = matching[0]

        if chosen is not None:
            result.confidence = 1.0
        else:
            ordered = sorted(printings, key=lambda p: (p.released_at or "", p.card_id), reverse=True)
            chosen = ordered[0]
            distinct_sets = {p.set_code.lower() for p in printings}
            if set_code or len(distinct_sets) > 1:
                result.confidence = VARIANT_CONFIDENCE
                reason = f"set '{set_code}' not found" if set_code else "no set given"
                result.warnings.append(make_warning(
                    "card_variant",
                    f"{chosen.name}: {reason}, using most recent printing ({chosen.set_code.upper()})",
                    context=result.raw_name,
                ))
            else:
                result.confidence = 1.0

        result.card_id = chosen.card_id
        result.name = chosen.name
        result.set_code = chosen.set_code
        result.rarity = chosen.rarity
        result.colors = chosen.colors

    def resolve_card(self, card: ParsedCard, allow_fuzzy: bool = True) -> CardResolution:
        result = self.resolve(card.raw_name, card.set_code, allow_fuzzy=allow_fuzzy)
        result.quantity = card.quantity
        result.category = card.category
        return result

    def resolve_deck(self, deck: ParsedDeck, allow_fuzzy: bool = True) -> List[CardResolution]:
        cache: Dict[tuple, CardResolution] = {}
        results = []
        for card in deck.cards:
            key = (normalize_card_name(card.raw_name), (card.set_code or "").lower())
            if key not in cache:
                cache[key] = self.resolve(card.raw_name, card.set_code, allow_fuzzy=allow_fuzzy)
            template = cache[key]
            results.append(CardResolution(
                **{**template.to_dict(), "raw_name": card.raw_name, "quantity": card.quantity,
                   "category": card.category}
            ))
        return results
