"""Query parsing plus exact, substring and fuzzy matching over the snapshot."""

import re
from dataclasses import dataclass
from enum import Enum

import similarity
from config import FUZZY_MIN_QUERY_LEN, FUZZY_THRESHOLD, NOTE_QUERY_PREFIX
from records import Note, Photo, haystack, newest_first, searchable_tokens


class QueryMode(Enum):
    NONE = "none"
    NOTE = "note"
    EXACT = "exact"
    FREE = "free"


@dataclass(frozen=True)
class ParsedQuery:
    raw: str
    mode: QueryMode
    term: str  # lower-cased; the note remainder or the unquoted phrase

    @property
    def wants_semantic(self) -> bool:
        return self.mode is QueryMode.FREE and bool(self.term)


def parse_query(text: str) -> ParsedQuery:
    """Classify a search string into one of the query modes.

      'note: milk'  -> NOTE, term 'milk'
      '"red shoes"' -> EXACT, term 'red shoes'
      'Cozy'        -> FREE, term 'cozy'
      '   '         -> NONE
    """
    raw = text.strip()
    lowered = raw.lower()
    if not raw:
        return ParsedQuery(raw, QueryMode.NONE, "")
    if lowered.startswith(NOTE_QUERY_PREFIX):
        return ParsedQuery(raw, QueryMode.NOTE, lowered[len(NOTE_QUERY_PREFIX):].strip())
    if len(raw) > 1 and raw.startswith('"') and raw.endswith('"'):
        return ParsedQuery(raw, QueryMode.EXACT, raw[1:-1].strip().lower())
    return ParsedQuery(raw, QueryMode.FREE, lowered)


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


def match_notes(term: str, notes: list[Note]) -> list[Note]:
    """Notes whose body contains term, newest first. Empty term keeps all."""
    if not term:
        return newest_first(notes)
    return newest_first([n for n in notes if term in (n.body or "").lower()])


# ---------------------------------------------------------------------------
# Substring / exact phrase
# ---------------------------------------------------------------------------


def phrase_pattern(phrase: str) -> re.Pattern | None:
    phrase = phrase.strip()
    if not phrase:
        return None
    return re.compile(rf"\b{re.escape(phrase)}\b", re.IGNORECASE)


def substring_matches(query: ParsedQuery, photos: list[Photo]) -> list[Photo]:
    """Filter photos by their haystack, preserving input order.

    Exact phrases need word boundaries on both sides; other queries are
    plain substring tests.
    """
    if query.mode is QueryMode.NONE:
        return list(photos)

    if query.mode is QueryMode.EXACT:
        pattern = phrase_pattern(query.term)
        if pattern is None:
            return list(photos)
        return [p for p in photos if pattern.search(haystack(p))]

    return [p for p in photos if query.term in haystack(p)]


# ---------------------------------------------------------------------------
# Fuzzy
# ---------------------------------------------------------------------------


_WORD_RE = re.compile(r"\w+")


def fuzzy_tokens(photo: Photo) -> list[str]:
    """Each searchable value, followed by its words when it has several."""
    tokens = []
    for value in searchable_tokens(photo):
        tokens.append(value)
        words = _WORD_RE.findall(value)
        if len(words) > 1:
            tokens.extend(words)
    return tokens


def fuzzy_score(term: str, photo: Photo) -> float:
    best = 0.0
    for token in fuzzy_tokens(photo):
        if term in token:
            return 1.0
        best = max(best, similarity.similarity(term, token))
    return best


def fuzzy_matches(term: str, photos: list[Photo]) -> list[Photo]:
    """Photos scoring at least FUZZY_THRESHOLD, best first (stable on ties).

    Queries shorter than FUZZY_MIN_QUERY_LEN are never fuzzy scored.
    """
    if len(term) < FUZZY_MIN_QUERY_LEN:
        return []
    scored = [(photo, fuzzy_score(term, photo)) for photo in photos]
    kept = [(p, s) for p, s in scored if s >= FUZZY_THRESHOLD]
    kept.sort(key=lambda x: x[1], reverse=True)
    return [p for p, _ in kept]
