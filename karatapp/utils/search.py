"""Tolerant search matching.

Queries and texts are normalised the same way before comparison so that
"cafe" finds "Café" and curly quotes match straight ones.
"""

from __future__ import annotations

import re

_DIACRITICS = str.maketrans(
    "àáâãäåèéêëìíîïòóôõöùúûüýÿçñÀÁÂÃÄÅÈÉÊËÌÍÎÏÒÓÔÕÖÙÚÛÜÝÇÑ",
    "aaaaaaeeeeiiiiooooouuuuyycnAAAAAAEEEEIIIIOOOOOUUUUYCN",
)
_PUNCTUATION = str.maketrans({"‘": "'", "’": "'", "“": '"', "”": '"', "–": "-", "—": "-"})
_WHITESPACE_RE = re.compile(r"\s+")
_WORD_SPLIT_RE = re.compile(r"[\s\-._]+")


def normalize_search_text(text: str) -> str:
    if not text:
        return text
    normalized = text.lower().translate(_DIACRITICS)
    normalized = _WHITESPACE_RE.sub(" ", normalized).strip()
    return normalized.translate(_PUNCTUATION)


def matches_normalized(text: str, query: str) -> bool:
    return normalize_search_text(query) in normalize_search_text(text)


def starts_with_normalized(text: str, query: str) -> bool:
    return normalize_search_text(text).startswith(normalize_search_text(query))


def split_into_words(text: str) -> list[str]:
    return [word for word in _WORD_SPLIT_RE.split(normalize_search_text(text)) if word]


_NUMBER_QUERY_RE = re.compile(r"^(?:ohyo|o|0)[\s\-._]?(\d+)$", re.IGNORECASE)
_STANDALONE_NUMBER_RE = re.compile(r"\b\d+\b")

_WORD_ORDINALS = {
    1: "first",
    2: "second",
    3: "third",
    4: "fourth",
    5: "fifth",
    6: "sixth",
    7: "seventh",
    8: "eighth",
    9: "ninth",
    10: "tenth",
    11: "eleventh",
    12: "twelfth",
    13: "thirteenth",
    14: "fourteenth",
    15: "fifteenth",
    16: "sixteenth",
    17: "seventeenth",
    18: "eighteenth",
    19: "nineteenth",
    20: "twentieth",
}
_SUFFIXES = {1: "st", 2: "nd", 3: "rd"}


def search_number(query: str) -> str | None:
    """The number a query asks for, if it is one.

    Accepts plain digits and the shorthands ``ohyo5``, ``o-5``, ``o 5`` and
    ``05`` (a zero typed for the letter o).
    """
    for candidate in (normalize_search_text(query), query.strip().lower()):
        match = _NUMBER_QUERY_RE.match(candidate)
        if match:
            return match.group(1)
    normalized = normalize_search_text(query)
    return normalized if normalized.isdigit() else None


def ordinal_forms(number: str) -> list[str]:
    """``"5"`` -> ``["5", "5th", "fifth"]``."""
    if not number.isdigit():
        return []
    value = int(number)
    forms = [number, f"{number}{_SUFFIXES.get(value, 'th')}"]
    if value in _WORD_ORDINALS:
        forms.append(_WORD_ORDINALS[value])
    return forms


def matches_exact_number(text: str, number: str, ordinals: list[str] | None = None) -> bool:
    """Whether ``text`` contains ``number`` as a whole number or ordinal.

    "7" matches "ohyo 7" and "seventh" but not "17" or "70".
    """
    if not number.isdigit():
        return False
    lowered = text.lower()
    wanted = int(number)
    if any(int(found) == wanted for found in _STANDALONE_NUMBER_RE.findall(lowered)):
        return True
    for ordinal in ordinals if ordinals is not None else ordinal_forms(number):
        if re.search(rf"\b{re.escape(ordinal.lower())}\b", lowered):
            return True
    return False
