"""Text normalization shared by the flow resolvers and the catalog matcher."""

import re
import unicodedata
from typing import Iterable

_REPEATED_LETTERS = re.compile(r"([a-z])\1{2,}")
_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def strip_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_for_token(value: str | None) -> str:
    """Lowercase, strip accents and collapse spaces. Punctuation is kept."""
    if not value:
        return ""
    return _SPACES.sub(" ", strip_diacritics(value.strip()).lower()).strip()


def normalize_for_search(value: str | None) -> str:
    """Lowercase, strip accents, turn punctuation into spaces."""
    if not value:
        return ""
    normalized = strip_diacritics(value.lower())
    normalized = _NON_WORD.sub(" ", normalized)
    return _SPACES.sub(" ", normalized).strip()


def normalize_user_reply(value: str | None) -> str:
    """Like normalize_for_search but squeezes emphasis ("siiii" -> "sii")."""
    if not value:
        return ""
    normalized = strip_diacritics(value.lower())
    normalized = _REPEATED_LETTERS.sub(r"\1\1", normalized)
    normalized = _NON_WORD.sub(" ", normalized)
    return _SPACES.sub(" ", normalized).strip()


def contains_term(normalized_text: str, normalized_term: str) -> bool:
    """Whole-word containment of an already normalized term."""
    if not normalized_term or not normalized_text:
        return False
    return f" {normalized_term} " in f" {normalized_text} "


def contains_any_term(normalized_text: str, terms: Iterable[str]) -> bool:
    return any(contains_term(normalized_text, term) for term in terms)


def word_count(normalized_text: str) -> int:
    return len(normalized_text.split()) if normalized_text else 0
