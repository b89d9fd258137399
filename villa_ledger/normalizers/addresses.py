"""
Billing address parsing for international guests.

Accepts either a structured mapping (with the key spellings different checkout
forms use) or a single free-form string such as
"Jl. Sunset Road 88, Kuta, Bali 80361, Indonesia", and returns the
street/city/region/postal/country shape the payment gateway expects.
"""

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from villa_ledger.errors import InvalidAddress

logger = structlog.get_logger(__name__)

FIELD_ALIASES: Dict[str, tuple[str, ...]] = {
    "street_line1": ("street_line1", "street", "line1", "address1", "address_line1", "address"),
    "street_line2": ("street_line2", "line2", "address2", "address_line2"),
    "city": ("city", "locality", "town"),
    "region": ("region", "state", "province", "province_state", "county", "prefecture"),
    "postal_code": ("postal_code", "postcode", "post_code", "zip", "zip_code"),
    "country": ("country", "country_code"),
}

COUNTRY_NAMES: Dict[str, str] = {
    "australia": "AU",
    "austria": "AT",
    "belgium": "BE",
    "brazil": "BR",
    "canada": "CA",
    "china": "CN",
    "denmark": "DK",
    "france": "FR",
    "germany": "DE",
    "deutschland": "DE",
    "hong kong": "HK",
    "india": "IN",
    "indonesia": "ID",
    "ireland": "IE",
    "italy": "IT",
    "japan": "JP",
    "korea": "KR",
    "south korea": "KR",
    "republic of korea": "KR",
    "malaysia": "MY",
    "mexico": "MX",
    "netherlands": "NL",
    "the netherlands": "NL",
    "new zealand": "NZ",
    "norway": "NO",
    "philippines": "PH",
    "poland": "PL",
    "portugal": "PT",
    "russia": "RU",
    "singapore": "SG",
    "spain": "ES",
    "sweden": "SE",
    "switzerland": "CH",
    "taiwan": "TW",
    "thailand": "TH",
    "united arab emirates": "AE",
    "uae": "AE",
    "united kingdom": "GB",
    "uk": "GB",
    "great britain": "GB",
    "england": "GB",
    "scotland": "GB",
    "united states": "US",
    "united states of america": "US",
    "usa": "US",
    "vietnam": "VN",
    "viet nam": "VN",
}

ISO3_CODES: Dict[str, str] = {
    "AUS": "AU", "AUT": "AT", "BEL": "BE", "BRA": "BR", "CAN": "CA", "CHN": "CN",
    "DEU": "DE", "DNK": "DK", "ESP": "ES", "FRA": "FR", "GBR": "GB", "HKG": "HK",
    "IDN": "ID", "IND": "IN", "IRL": "IE", "ITA": "IT", "JPN": "JP", "KOR": "KR",
    "MEX": "MX", "MYS": "MY", "NLD": "NL", "NOR": "NO", "NZL": "NZ", "PHL": "PH",
    "POL": "PL", "PRT": "PT", "RUS": "RU", "SGP": "SG", "SWE": "SE", "CHE": "CH",
    "THA": "TH", "TWN": "TW", "ARE": "AE", "USA": "US", "VNM": "VN",
}

POSTAL_PATTERNS: Dict[str, str] = {
    "AU": r"\d{4}",
    "CA": r"[A-Za-z]\d[A-Za-z] ?\d[A-Za-z]\d",
    "CN": r"\d{6}",
    "DE": r"\d{5}",
    "ES": r"\d{5}",
    "FR": r"\d{5}",
    "GB": r"[A-Za-z]{1,2}\d[A-Za-z\d]? ?\d[A-Za-z]{2}",
    "ID": r"\d{5}",
    "IN": r"\d{6}",
    "IT": r"\d{5}",
    "JP": r"\d{3}-?\d{4}",
    "KR": r"\d{5}",
    "MY": r"\d{5}",
    "NL": r"\d{4} ?[A-Za-z]{2}",
    "NZ": r"\d{4}",
    "RU": r"\d{6}",
    "SG": r"\d{6}",
    "TH": r"\d{5}",
    "US": r"\d{5}(-\d{4})?",
    "VN": r"\d{5,6}",
}

# Card address verification needs a postal code in these countries
POSTAL_REQUIRED = {"CA", "GB", "US"}

GENERIC_POSTAL = re.compile(r"\b([A-Za-z]{0,2}\d[\dA-Za-z\- ]{1,8}\d[A-Za-z]{0,2}|\d{3,})\b")


@dataclass(frozen=True)
class BillingAddress:
    street_line1: str
    city: str
    country: str
    street_line2: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


def normalize_country(value: Optional[str]) -> str:
    """
    Map a country name, ISO alpha-2 or alpha-3 code to ISO alpha-2.

    Raises:
        InvalidAddress: If the country is missing or not recognized.
    """
    raw = (value or "").strip().rstrip(".")
    if not raw:
        raise InvalidAddress("Billing country is required")
    if len(raw) == 2 and raw.isalpha():
        return raw.upper()
    if len(raw) == 3 and raw.upper() in ISO3_CODES:
        return ISO3_CODES[raw.upper()]
    code = COUNTRY_NAMES.get(raw.lower())
    if code is None:
        raise InvalidAddress(f"Unrecognized billing country: {raw}")
    return code


def _validate_postal(postal_code: Optional[str], country: str) -> Optional[str]:
    if not postal_code:
        if country in POSTAL_REQUIRED:
            raise InvalidAddress(f"A postal code is required for {country}")
        return None
    postal_code = postal_code.strip().upper() if country in ("GB", "CA", "NL") else postal_code.strip()
    pattern = POSTAL_PATTERNS.get(country)
    if pattern and not re.fullmatch(pattern, postal_code):
        raise InvalidAddress(f"Invalid postal code {postal_code!r} for {country}")
    return postal_code


def _pick(data: Mapping[str, Any], field: str) -> Optional[str]:
    for key in FIELD_ALIASES[field]:
        value = data.get(key)
        if value is not None and str(value).strip():
            return re.sub(r"\s+", " ", str(value).strip())
    return None


def _from_mapping(data: Mapping[str, Any]) -> BillingAddress:
    lowered = {str(k).lower(): v for k, v in data.items()}
    country = normalize_country(_pick(lowered, "country"))
    street = _pick(lowered, "street_line1")
    city = _pick(lowered, "city")
    if not street:
        raise InvalidAddress("Billing street address is required")
    if not city:
        raise InvalidAddress("Billing city is required")

    return BillingAddress(
        street_line1=street,
        street_line2=_pick(lowered, "street_line2"),
        city=city,
        region=_pick(lowered, "region"),
        postal_code=_validate_postal(_pick(lowered, "postal_code"), country),
        country=country,
    )


def _extract_postal(part: str, country: str) -> tuple[Optional[str], str]:
    """Pull a postal code out of one address segment, returning (code, remainder)."""
    pattern = POSTAL_PATTERNS.get(country)
    match = re.search(rf"\b({pattern})\b", part) if pattern else GENERIC_POSTAL.search(part)
    if not match:
        return None, part
    remainder = (part[: match.start()] + part[match.end():]).strip(" ,")
    return match.group(1), remainder


def _from_text(text: str) -> BillingAddress:
    parts: List[str] = [p.strip() for p in re.split(r"[,\n]", text) if p.strip()]
    if len(parts) < 3:
        raise InvalidAddress("Billing address needs at least street, city and country")

    country = normalize_country(parts.pop())

    postal_code = None
    for index in range(len(parts) - 1, 0, -1):
        code, remainder = _extract_postal(parts[index], country)
        if code:
            postal_code = code
            if remainder:
                parts[index] = remainder
            else:
                parts.pop(index)
            break

    if len(parts) < 2:
        raise InvalidAddress("Billing address needs at least street, city and country")

    street = parts[0]
    region = None
    street_line2 = None
    if len(parts) == 2:
        city = parts[1]
    elif len(parts) == 3:
        city, region = parts[1], parts[2]
    else:
        street_line2 = ", ".join(parts[1:-2])
        city, region = parts[-2], parts[-1]

    return BillingAddress(
        street_line1=street,
        street_line2=street_line2,
        city=city,
        region=region,
        postal_code=_validate_postal(postal_code, country),
        country=country,
    )


def parse_billing_address(raw: Union[Mapping[str, Any], str]) -> BillingAddress:
    """
    Parse a billing address into structured fields.

    Args:
        raw: Structured mapping or free-form comma/newline separated string.
            In free-form input the last segment is the country and the first
            is the street.

    Returns:
        BillingAddress: Normalized address with an ISO alpha-2 country

    Raises:
        InvalidAddress: If a required part is missing or the postal code does
            not match the country's format.

    Example:
        >>> parse_billing_address("221B Baker Street, London NW1 6XE, United Kingdom")
        BillingAddress(street_line1='221B Baker Street', city='London', country='GB', ...)
    """
    if isinstance(raw, str):
        address = _from_text(raw)
    elif isinstance(raw, Mapping):
        address = _from_mapping(raw)
    else:
        raise InvalidAddress("Billing address must be an object or a string")

    logger.debug("billing_address_parsed", country=address.country, has_region=address.region is not None)
    return address
