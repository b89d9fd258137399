"""
Unit tests for cardholder name splitting.
"""

from __future__ import annotations

import pytest

from villa_ledger.errors import ValidationError
from villa_ledger.normalizers.names import NameParts, split_full_name


@pytest.mark.unit
@pytest.mark.parametrize(
    "full_name,country,expected",
    [
        ("Jane Doe", None, NameParts(given="Jane", family="Doe")),
        ("Ludwig van Beethoven", None, NameParts(given="Ludwig", family="van Beethoven")),
        ("Gabriel García Márquez", "CO", NameParts(given="Gabriel", family="García Márquez")),
        ("TANAKA Hiroshi", "JP", NameParts(given="Hiroshi", family="TANAKA")),
        ("Martin Luther King Jr.", None, NameParts(given="Martin", family="King Jr.", middle="Luther")),
        ("Smith, John Paul", None, NameParts(given="John", family="Smith", middle="Paul")),
        ("山田太郎", "JP", NameParts(given="田太郎", family="山")),
        ("Madonna", None, NameParts(given="Madonna", family="Madonna")),
    ],
)
def test_split_full_name(full_name: str, country: str | None, expected: NameParts) -> None:
    """Test name splitting across Western, Spanish, East Asian and comma forms."""
    assert split_full_name(full_name, country) == expected


@pytest.mark.unit
def test_split_full_name_strips_titles_and_whitespace() -> None:
    """Test that honorifics and repeated whitespace are dropped."""
    parts = split_full_name("  Dr.   Ayu   Lestari ")

    assert parts.given == "Ayu"
    assert parts.family == "Lestari"
    assert parts.middle is None


@pytest.mark.unit
def test_split_full_name_keeps_western_order_outside_family_first_countries() -> None:
    """Test that an all-caps first word only means family-first for East Asian countries."""
    parts = split_full_name("JOHN Smith", "US")

    assert parts.given == "JOHN"
    assert parts.family == "Smith"


@pytest.mark.unit
def test_split_full_name_rejects_names_without_letters() -> None:
    """Test that a name with no letters raises ValidationError."""
    with pytest.raises(ValidationError) as exc_info:
        split_full_name("1234 5678")

    assert exc_info.value.code == "invalid_name"
