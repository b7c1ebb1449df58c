"""
Name and address normalization for stable mileage cache keys.

RouteGenie exports the same street in several spellings ("Main Street",
"main st", "Main St,"). Every cache lookup and insert goes through these
functions so that such variants collapse onto one key.
"""

import re
from typing import List, Optional, Tuple

from .models import CacheKey


_WHITESPACE = re.compile(r"\s+")

# (pattern, canonical) pairs, applied in order. "County Road" must be matched
# before "Road" so it is not reduced to "COUNTY RD".
_STREET_TYPES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\bCounty\s+Road\b", re.IGNORECASE), "CO RD"),
    (re.compile(r"\bCo\s+Rd\b", re.IGNORECASE), "CO RD"),
    (re.compile(r"\bStreet\b", re.IGNORECASE), "ST"),
    (re.compile(r"\bSt\b", re.IGNORECASE), "ST"),
    (re.compile(r"\bAvenue\b", re.IGNORECASE), "AVE"),
    (re.compile(r"\bAve\b", re.IGNORECASE), "AVE"),
    (re.compile(r"\bRoad\b", re.IGNORECASE), "RD"),
    (re.compile(r"\bRd\b", re.IGNORECASE), "RD"),
    (re.compile(r"\bDrive\b", re.IGNORECASE), "DR"),
    (re.compile(r"\bDr\b", re.IGNORECASE), "DR"),
    (re.compile(r"\bCourt\b", re.IGNORECASE), "CT"),
    (re.compile(r"\bCt\b", re.IGNORECASE), "CT"),
    (re.compile(r"\bPlace\b", re.IGNORECASE), "PL"),
    (re.compile(r"\bPl\b", re.IGNORECASE), "PL"),
    (re.compile(r"\bBoulevard\b", re.IGNORECASE), "BLVD"),
    (re.compile(r"\bBlvd\b", re.IGNORECASE), "BLVD"),
]

_STATE_TOKEN = re.compile(r",\s*(?:wisconsin|wi)\b\s*", re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*$")


def normalize_name(name: Optional[str]) -> str:
    """Trim, collapse internal whitespace and upper-case a passenger name."""
    if not name:
        return ""
    return _WHITESPACE.sub(" ", name.strip()).upper()


def normalize_address(address: Optional[str]) -> str:
    """
    Normalize an address string for cache storage and lookup.

    Street types are reduced to one abbreviation each, the Wisconsin state
    token is written as ", WI ", a trailing comma is dropped and the result
    is upper-cased.

    Args:
        address: Raw address text from the billing export

    Returns:
        Normalized address, or "" for empty input
    """
    if not address:
        return ""

    normalized = _WHITESPACE.sub(" ", address.strip())
    for pattern, canonical in _STREET_TYPES:
        normalized = pattern.sub(canonical, normalized)

    normalized = _STATE_TOKEN.sub(", WI ", normalized)
    normalized = _TRAILING_COMMA.sub("", normalized)
    # the state substitution can leave a double space before the zip code
    return _WHITESPACE.sub(" ", normalized).strip().upper()


def create_cache_key(first_name: str, last_name: str, pu_address: str, do_address: str) -> CacheKey:
    """Build the normalized cache key for one trip."""
    return CacheKey(
        last_name=normalize_name(last_name),
        first_name=normalize_name(first_name),
        pu_address=normalize_address(pu_address),
        do_address=normalize_address(do_address),
    )
