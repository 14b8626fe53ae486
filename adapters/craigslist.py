"""
Craigslist NYC adapter.

Reads apartment search result pages directly. Each result row already
carries the preview fields (URL, price, housing summary, neighbourhood),
so no detail page is fetched per listing. Craigslist pages hold 120 rows
and are addressed by an `s=<offset>` query parameter.

Classifieds attract spam; rows with implausible prices or known scam
phrasing are rejected at normalisation.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Final, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from adapters.base import (
    Page,
    PagedSourceAdapter,
    clean_address,
    clean_price,
    infer_borough,
    infer_neighborhood,
    parse_baths,
    parse_beds,
    parse_sqft,
)
from ingestion.errors import ConfigurationError
from ingestion.schema import NormalizedListing
from ingestion.sources import DirectHtmlConnection


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

RESULTS_PER_PAGE: Final[int] = 120
MIN_PLAUSIBLE_RENT: Final[float] = 500
MAX_PLAUSIBLE_RENT: Final[float] = 50_000

# Minimum believable rent by bedroom count; cheaper rows are almost always bait
MIN_RENT_BY_BEDS: Final[dict[int, float]] = {0: 1200, 1: 1500}
MIN_RENT_LARGER_UNITS: Final[float] = 1800

SPAM_PHRASES: Final[tuple[str, ...]] = (
    "section 8",
    "voucher",
    "send me your",
    "western union",
    "wire transfer",
    "first and last month",
    "move in today",
    "no credit check no",
    "call or text",
    "must see pics",
    "dont miss",
)

_PHONE_RE: Final = re.compile(r"\d{3}[-.\s]?\d{3}[-.\s]?\d{4}")
_POSTING_ID_RE: Final = re.compile(r"/(\d+)\.html")
_NO_FEE_RE: Final = re.compile(r"no\s*fee|no\s*broker|by\s*owner|landlord", re.I)


# =============================================================================
# Parser
# =============================================================================


class CraigslistSearchParser:
    """Extracts result rows from a Craigslist search page."""

    ROW_SELECTOR = "li.cl-search-result, li.result-row, .result-row"

    @classmethod
    def parse(cls, html: str, base_url: str) -> list[dict[str, Any]]:
        soup = BeautifulSoup(html, "html.parser")
        rows = []

        for element in soup.select(cls.ROW_SELECTOR):
            link = element.select_one("a.cl-app-anchor, a.result-title, a.posting-title, a")
            href = link.get("href") if link else None
            if not href:
                continue

            url = urljoin(base_url, href)
            id_match = _POSTING_ID_RE.search(url)

            title_el = element.select_one(".label, .result-title, .titlestring")
            title = (title_el or link).get_text(" ", strip=True)

            price_el = element.select_one(".priceinfo, .result-price, .price")
            housing_el = element.select_one(".housing, .meta")
            hood_el = element.select_one(".result-hood, .supertitle, .nearby")

            rows.append({
                "id": element.get("data-pid") or (id_match.group(1) if id_match else None),
                "url": url,
                "title": title,
                "price": price_el.get_text(strip=True) if price_el else None,
                "housing": housing_el.get_text(" ", strip=True) if housing_el else "",
                "hood": hood_el.get_text(" ", strip=True).strip("() ") if hood_el else "",
                "address": element.get("data-address") or "",
            })

        return rows


def is_likely_spam(title: str, description: str, price: float, beds: int) -> bool:
    """Heuristic scam detection for classifieds rows."""
    minimum = MIN_RENT_BY_BEDS.get(beds, MIN_RENT_LARGER_UNITS)
    if price < minimum:
        return True

    text = f"{title} {description}".lower()
    if any(phrase in text for phrase in SPAM_PHRASES):
        return True

    return len(_PHONE_RE.findall(text)) > 3


# =============================================================================
# Adapter
# =============================================================================


class CraigslistAdapter(PagedSourceAdapter):
    """
    Direct HTML adapter for Craigslist apartment search.

    Page tokens are result offsets as strings ("120", "240", ...).
    """

    def __init__(self, config, borough: Optional[str] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.borough = borough
        self._session.headers.update({
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        })

    @property
    def connection(self) -> DirectHtmlConnection:
        return self.config.connection

    def preflight(self) -> None:
        if not isinstance(self.connection, DirectHtmlConnection):
            raise ConfigurationError(f"{self.source_id}: craigslist parser needs a direct-html connection")
        if self.borough and self.borough.lower() not in self.connection.borough_filters:
            raise ConfigurationError(f"{self.source_id}: no filter for borough {self.borough!r}")

    def search_url(self, offset: int = 0) -> str:
        connection = self.connection
        path = connection.search_path
        if self.borough:
            path = f"{path}{connection.borough_filters[self.borough.lower()]}"
        url = urljoin(connection.base_url, path)
        if offset > 0:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}s={offset}"
        return url

    def fetch_page(self, page_token: Optional[str] = None) -> Page:
        offset = int(page_token) if page_token else 0
        url = self.search_url(offset)

        response = self._request("GET", url)
        rows = CraigslistSearchParser.parse(response.text, self.connection.base_url)
        logger.info("Fetched %d rows from %s", len(rows), url)

        next_token = str(offset + RESULTS_PER_PAGE) if len(rows) >= RESULTS_PER_PAGE else None
        return Page(items=rows, next_token=next_token)

    def normalize(self, raw: dict[str, Any]) -> NormalizedListing:
        url = raw.get("url")
        if not url:
            raise self._parse_error(raw, "missing listing URL")

        price = clean_price(raw.get("price"))
        if price is None or price < MIN_PLAUSIBLE_RENT or price > MAX_PLAUSIBLE_RENT:
            raise self._parse_error(raw, f"implausible price {raw.get('price')!r}")

        title = (raw.get("title") or "").strip()
        housing = raw.get("housing") or ""
        description = raw.get("description") or ""
        beds = parse_beds(housing) or parse_beds(title)
        baths = parse_baths(housing)

        if is_likely_spam(title, description, price, beds):
            raise self._parse_error(raw, "looks like spam")

        hood = raw.get("hood") or ""
        context = f"{raw.get('address', '')} {hood} {title}"
        neighborhood = infer_neighborhood(context) or (hood or None)
        address = clean_address(raw.get("address")) or clean_address(neighborhood)
        if not address:
            raise self._parse_error(raw, "missing location")

        return self._build_listing(
            raw,
            source_listing_id=raw.get("id"),
            source_url=url,
            title=title or None,
            price=price,
            beds=beds,
            baths=baths,
            sqft=parse_sqft(housing),
            address_text=address,
            neighborhood=neighborhood,
            borough=infer_borough(context),
            description=description or None,
            no_fee=bool(_NO_FEE_RE.search(f"{title} {description}")),
        )
