"""
Cross-Source Deduplication - Match Keys for Listings

The same apartment is often advertised on several sources. A match key
groups listings that are very probably the same unit: normalised address,
bedroom count and a coarse price bucket. Keys are only a candidate filter;
`matches` makes the final decision so that two prices straddling a bucket
boundary still match.
"""

from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from typing import Final, Optional, Protocol


# =============================================================================
# Address Normalisation
# =============================================================================

STREET_SUFFIXES: Final[dict[str, str]] = {
    "street": "st",
    "avenue": "ave",
    "av": "ave",
    "road": "rd",
    "boulevard": "blvd",
    "place": "pl",
    "drive": "dr",
    "lane": "ln",
    "court": "ct",
    "terrace": "ter",
    "parkway": "pkwy",
    "square": "sq",
    "highway": "hwy",
}

DIRECTIONS: Final[dict[str, str]] = {
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
}

UNIT_MARKERS: Final[frozenset[str]] = frozenset({"apt", "apartment", "unit", "ste", "suite"})

# Trailing locality tokens carry no information within one metro area
LOCALITY_TOKENS: Final[frozenset[str]] = frozenset({
    "new", "york", "ny", "nyc", "usa", "us",
    "manhattan", "brooklyn", "queens", "bronx", "staten", "island",
})

_ORDINAL_RE: Final = re.compile(r"\b(\d+)(st|nd|rd|th)\b")
_ZIP_RE: Final = re.compile(r"\b\d{5}(?:-\d{4})?\b")


def normalize_address(address: Optional[str]) -> Optional[str]:
    """
    Reduce an address to a comparable form.

    "123 West 45th Street, Apt 4B, New York, NY 10036" becomes
    "123 w 45 st #4b". Returns None when nothing usable remains.
    """
    if not address:
        return None

    text = address.lower()
    text = _ZIP_RE.sub(" ", text)
    text = text.replace("#", " # ")
    text = _ORDINAL_RE.sub(r"\1", text)
    text = re.sub(r"[^a-z0-9# ]+", " ", text)

    tokens = text.split()
    out: list[str] = []
    pending_unit = False
    for i, token in enumerate(tokens):
        if token in UNIT_MARKERS or token == "#":
            pending_unit = True
            continue
        if pending_unit:
            out.append(f"#{token}")
            pending_unit = False
            continue
        # Only drop locality words after the street part has been seen
        if token in LOCALITY_TOKENS and i > 0 and len(out) >= 2:
            continue
        token = STREET_SUFFIXES.get(token, token)
        token = DIRECTIONS.get(token, token)
        out.append(token)

    normalized = " ".join(out).strip()
    return normalized or None


# =============================================================================
# Match Key Strategies
# =============================================================================


class Matchable(Protocol):
    address_text: str
    beds: int
    price: float


class MatchKeyStrategy(ABC):
    """Pluggable definition of "same unit"."""

    @abstractmethod
    def key(self, listing: Matchable) -> Optional[str]:
        """Primary key for the listing, or None if it cannot be matched."""
        ...

    @abstractmethod
    def candidate_keys(self, listing: Matchable) -> list[str]:
        """Keys to look up when searching for an existing canonical listing."""
        ...

    @abstractmethod
    def matches(self, a: Matchable, b: Matchable) -> bool:
        ...


class AddressBedsPriceStrategy(MatchKeyStrategy):
    """
    Same normalised address, same bedrooms, price within a tolerance.

    Prices are bucketed by `price_tolerance`; probing the neighbouring
    buckets catches pairs that fall on either side of a boundary, and the
    final |delta| check rejects pairs that are two buckets apart.
    """

    def __init__(self, price_tolerance: float = 100.0):
        if price_tolerance <= 0:
            raise ValueError("price_tolerance must be positive")
        self.price_tolerance = price_tolerance

    def _bucket(self, price: float) -> int:
        return math.floor(price / self.price_tolerance)

    def _prefix(self, listing: Matchable) -> Optional[str]:
        address = normalize_address(listing.address_text)
        if address is None:
            return None
        return f"{address}|{listing.beds}"

    def key(self, listing: Matchable) -> Optional[str]:
        prefix = self._prefix(listing)
        if prefix is None:
            return None
        return f"{prefix}|{self._bucket(listing.price)}"

    def candidate_keys(self, listing: Matchable) -> list[str]:
        prefix = self._prefix(listing)
        if prefix is None:
            return []
        bucket = self._bucket(listing.price)
        return [f"{prefix}|{b}" for b in (bucket - 1, bucket, bucket + 1)]

    def matches(self, a: Matchable, b: Matchable) -> bool:
        address_a = normalize_address(a.address_text)
        if address_a is None or address_a != normalize_address(b.address_text):
            return False
        if a.beds != b.beds:
            return False
        return abs(a.price - b.price) <= self.price_tolerance
