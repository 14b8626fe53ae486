"""
Broker feed adapter.

Cursor-paginated JSON API exposed by partner brokerages:

    GET <endpoint>?limit=<page_size>[&cursor=<token>]
    -> {"listings": [...], "next_cursor": "..." | null}

The API key, when the source defines one, is read from the environment
variable named in the connection and sent as a bearer token.
"""

from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any, Optional

from adapters.base import (
    Page,
    PagedSourceAdapter,
    clean_address,
    clean_price,
    infer_borough,
    parse_baths,
    parse_beds,
    parse_sqft,
)
from ingestion.errors import AuthenticationError, ConfigurationError, FatalFetchError
from ingestion.schema import NormalizedListing
from ingestion.sources import ApiConnection


logger = logging.getLogger(__name__)


class BrokerApiAdapter(PagedSourceAdapter):
    """Paged adapter for broker JSON feeds."""

    def __init__(self, config, api_key: Optional[str] = None, **kwargs):
        super().__init__(config, **kwargs)
        self._api_key = api_key
        self._session.headers.update({"Accept": "application/json"})

    @property
    def connection(self) -> ApiConnection:
        return self.config.connection

    @property
    def credentialed(self) -> bool:  # type: ignore[override]
        return bool(self.connection.api_key_env) or self._api_key is not None

    @property
    def api_key(self) -> Optional[str]:
        if self._api_key is not None:
            return self._api_key
        if self.connection.api_key_env:
            return os.getenv(self.connection.api_key_env) or None
        return None

    def preflight(self) -> None:
        if not isinstance(self.connection, ApiConnection):
            raise ConfigurationError(f"{self.source_id}: broker-api parser needs an api connection")
        if not self.connection.endpoint:
            raise ConfigurationError(f"{self.source_id}: endpoint is required")
        if self.connection.api_key_env and not self.api_key:
            raise AuthenticationError(
                f"{self.source_id}: {self.connection.api_key_env} is not configured"
            )

    def fetch_page(self, page_token: Optional[str] = None) -> Page:
        params: dict[str, Any] = {"limit": self.connection.page_size}
        if page_token:
            params["cursor"] = page_token

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = self._request("GET", self.connection.endpoint, params=params, headers=headers)
        try:
            payload = response.json()
        except ValueError as e:
            raise FatalFetchError(f"{self.source_id}: response is not JSON") from e

        items = payload.get("listings")
        if not isinstance(items, list):
            raise FatalFetchError(f"{self.source_id}: response has no listings array")

        return Page(items=items, next_token=payload.get("next_cursor") or None)

    def normalize(self, raw: dict[str, Any]) -> NormalizedListing:
        url = raw.get("url")
        if not url:
            raise self._parse_error(raw, "missing url")

        price = clean_price(raw.get("price"))
        if not price:
            raise self._parse_error(raw, "missing price")

        address = clean_address(raw.get("address"))
        if not address:
            raise self._parse_error(raw, "missing address")

        available = None
        if raw.get("available_date"):
            try:
                available = date.fromisoformat(str(raw["available_date"])[:10])
            except ValueError:
                available = None

        neighborhood = raw.get("neighborhood")
        return self._build_listing(
            raw,
            source_listing_id=str(raw["id"]) if raw.get("id") is not None else None,
            source_url=url,
            title=raw.get("title"),
            price=price,
            beds=parse_beds(raw.get("beds")),
            baths=parse_baths(raw.get("baths")),
            sqft=parse_sqft(raw.get("sqft")),
            address_text=address,
            neighborhood=neighborhood,
            borough=raw.get("borough") or infer_borough(f"{address} {neighborhood or ''}"),
            zip_code=raw.get("zip"),
            latitude=raw.get("latitude"),
            longitude=raw.get("longitude"),
            images=tuple(raw.get("images") or ()),
            description=raw.get("description"),
            amenities=tuple(raw.get("amenities") or ()),
            broker_company=raw.get("broker"),
            no_fee=raw.get("no_fee"),
            available_date=available,
        )
