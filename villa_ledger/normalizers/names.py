"""
Cardholder name splitting.

The gateway wants given and family names as separate fields, while guests type
a single free-form "name on card". The rules below cover the orders we see in
practice:

- "Family, Given Middle" (explicit comma form) in any locale
- Western order, with surname particles (van, de la, bin, ...) kept on the family name
- Spanish-speaking countries: two trailing surnames when three or more words are given
- East Asian countries: family name first when written in CJK/Hangul script, or
  when the first word is in capitals ("TANAKA Hiroshi")
- Mononyms: the single name fills both given and family
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional

import structlog

from villa_ledger.errors import ValidationError

logger = structlog.get_logger(__name__)

FAMILY_FIRST_COUNTRIES = {"CN", "JP", "KR", "KP", "TW", "HK", "MO", "VN"}

SPANISH_SURNAME_COUNTRIES = {
    "AR", "BO", "CL", "CO", "CR", "CU", "DO", "EC", "ES", "GT",
    "HN", "MX", "NI", "PA", "PE", "PR", "PY", "SV", "UY", "VE",
}

SURNAME_PARTICLES = {
    "al", "bin", "binti", "da", "das", "de", "del", "della", "den", "der",
    "di", "do", "dos", "du", "el", "la", "le", "st", "ter", "van", "von", "y",
}

TITLES = {"mr", "mrs", "ms", "miss", "mx", "dr", "prof", "sir", "madam", "mme", "mlle", "herr", "frau"}
SUFFIXES = {"jr", "sr", "ii", "iii", "iv"}


@dataclass(frozen=True)
class NameParts:
    given: str
    family: str
    middle: Optional[str] = None


def _is_cjk(text: str) -> bool:
    for char in text:
        name = unicodedata.name(char, "")
        if name.startswith(("CJK UNIFIED", "HANGUL", "HIRAGANA", "KATAKANA")):
            return True
    return False


def _bare(token: str) -> str:
    return token.lower().rstrip(".")


def _strip_titles(tokens: List[str]) -> List[str]:
    while len(tokens) > 1 and _bare(tokens[0]) in TITLES:
        tokens = tokens[1:]
    return tokens


def _family_start(tokens: List[str], surname_words: int) -> int:
    """Index of the first family-name token, pulling in preceding particles."""
    start = max(1, len(tokens) - surname_words)
    while start > 1 and _bare(tokens[start - 1]) in SURNAME_PARTICLES:
        start -= 1
    return start


def _split_cjk(full_name: str, tokens: List[str]) -> NameParts:
    if len(tokens) >= 2:
        family, given = tokens[0], " ".join(tokens[1:])
    else:
        # Unspaced CJK names: the surname is the first character
        family, given = full_name[0], full_name[1:]
    return NameParts(given=given or family, family=family)


def split_full_name(full_name: str, country: Optional[str] = None) -> NameParts:
    """
    Split a full name into given, middle and family components.

    Args:
        full_name: Name as typed by the cardholder
        country: ISO 3166-1 alpha-2 code of the billing country, if known

    Returns:
        NameParts: given and family are always non-empty; middle may be None

    Raises:
        ValidationError: If the name has no letters at all

    Example:
        >>> split_full_name("Ludwig van Beethoven")
        NameParts(given='Ludwig', family='van Beethoven', middle=None)
        >>> split_full_name("Gabriel García Márquez", country="CO")
        NameParts(given='Gabriel', family='García Márquez', middle=None)
    """
    cleaned = re.sub(r"\s+", " ", (full_name or "").strip())
    if not any(char.isalpha() for char in cleaned):
        raise ValidationError("Cardholder name must contain letters", code="invalid_name")

    country = (country or "").upper() or None

    if "," in cleaned:
        family_part, _, given_part = cleaned.partition(",")
        family_part, given_part = family_part.strip(), given_part.strip()
        given_tokens = _strip_titles(given_part.split()) if given_part else []
        if family_part and given_tokens:
            middle = " ".join(given_tokens[1:]) or None
            return NameParts(given=given_tokens[0], family=family_part, middle=middle)
        cleaned = (family_part or given_part).strip()

    tokens = _strip_titles(cleaned.split(" "))

    suffix = None
    if len(tokens) > 2 and _bare(tokens[-1]) in SUFFIXES:
        suffix = tokens[-1]
        tokens = tokens[:-1]

    if _is_cjk(cleaned):
        return _split_cjk(cleaned, tokens)

    if len(tokens) == 1:
        return NameParts(given=tokens[0], family=tokens[0])

    if country in FAMILY_FIRST_COUNTRIES and tokens[0].isupper() and not tokens[-1].isupper():
        middle = " ".join(tokens[2:]) or None
        return NameParts(given=tokens[1], family=tokens[0], middle=middle)

    surname_words = 1
    if country in SPANISH_SURNAME_COUNTRIES and len(tokens) >= 3:
        surname_words = 2

    start = _family_start(tokens, surname_words)
    family = " ".join(tokens[start:])
    if suffix:
        family = f"{family} {suffix}"
    middle = " ".join(tokens[1:start]) or None

    logger.debug("name_split", tokens=len(tokens), country=country, has_middle=middle is not None)
    return NameParts(given=tokens[0], family=family, middle=middle)
