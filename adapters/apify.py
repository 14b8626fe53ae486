"""
StreetEasy via Apify.

StreetEasy is not scraped directly; a hosted Apify actor crawls it and
stores results in a per-run dataset. This adapter reads the dataset of the
actor's latest run and can trigger and poll new runs.

Dataset items are GraphQL-style wrappers: {"node": {...}}.
"""

from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any, Final, Optional

from adapters.base import RunBasedSourceAdapter, RunStatus, borough_for_neighborhood, infer_borough
from ingestion.errors import AuthenticationError, ConfigurationError, FatalFetchError
from ingestion.schema import NormalizedListing
from ingestion.sources import RunServiceConnection


logger = logging.getLogger(__name__)


STREETEASY_BASE_URL: Final[str] = "https://streeteasy.com"
PHOTO_URL_TEMPLATE: Final[str] = "https://photos.zillowstatic.com/fp/{key}-se_extra_large_1500_800.webp"
DEFAULT_SEARCH_URL: Final[str] = "https://streeteasy.com/for-rent/nyc"

BOROUGH_SEARCH_PATHS: Final[dict[str, str]] = {
    "manhattan": "manhattan",
    "brooklyn": "brooklyn",
    "queens": "queens",
    "bronx": "bronx",
    "staten island": "staten-island",
}

_RUN_STATUS_MAP: Final[dict[str, RunStatus]] = {
    "READY": RunStatus.PENDING,
    "RUNNING": RunStatus.PENDING,
    "TIMING-OUT": RunStatus.PENDING,
    "ABORTING": RunStatus.PENDING,
    "SUCCEEDED": RunStatus.SUCCEEDED,
    "FAILED": RunStatus.FAILED,
    "TIMED-OUT": RunStatus.FAILED,
    "ABORTED": RunStatus.FAILED,
}


class ApifyStreetEasyAdapter(RunBasedSourceAdapter):
    """Run-based adapter for the StreetEasy Apify actor."""

    def __init__(self, config, api_token: Optional[str] = None, **kwargs):
        super().__init__(config, **kwargs)
        self._api_token = api_token

    @property
    def connection(self) -> RunServiceConnection:
        return self.config.connection

    @property
    def api_token(self) -> str:
        if self._api_token is not None:
            return self._api_token
        return os.getenv(self.connection.token_env, "")

    def preflight(self) -> None:
        if not isinstance(self.connection, RunServiceConnection):
            raise ConfigurationError(f"{self.source_id}: apify parser needs a run-based connection")
        if not self.api_token:
            raise AuthenticationError(
                f"{self.source_id}: {self.connection.token_env} is not configured"
            )

    def _actor_url(self, suffix: str) -> str:
        base = self.connection.api_base_url.rstrip("/")
        return f"{base}/acts/{self.connection.actor_id}/{suffix}"

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}"}

    # =========================================================================
    # Runs
    # =========================================================================

    def trigger_run(self, options: Optional[dict[str, Any]] = None) -> str:
        options = options or {}
        search_url = options.get("search_url")
        if not search_url:
            borough_path = BOROUGH_SEARCH_PATHS.get(str(options.get("borough", "")).lower())
            search_url = (
                f"{STREETEASY_BASE_URL}/for-rent/{borough_path}" if borough_path else DEFAULT_SEARCH_URL
            )

        response = self._request(
            "POST",
            self._actor_url("runs"),
            headers=self._auth_headers(),
            json={
                "startUrls": [{"url": search_url}],
                "maxItems": int(options.get("max_items", 100)),
            },
        )
        run_id = response.json().get("data", {}).get("id")
        if not run_id:
            raise FatalFetchError(f"{self.source_id}: run response had no id")
        logger.info("Triggered Apify run %s for %s (%s)", run_id, self.source_id, search_url)
        return run_id

    def get_run_status(self, run_id: str) -> RunStatus:
        response = self._request("GET", self._actor_url(f"runs/{run_id}"), headers=self._auth_headers())
        raw_status = str(response.json().get("data", {}).get("status", "")).upper()
        return _RUN_STATUS_MAP.get(raw_status, RunStatus.PENDING)

    def fetch_dataset(self, limit: int) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            self._actor_url("runs/last/dataset/items"),
            params={"token": self.api_token, "limit": limit},
            headers={"Accept": "application/json"},
            allowed_statuses=(404,),
        )
        if response.status_code == 404:
            logger.warning("No Apify dataset for %s yet; trigger a run first", self.source_id)
            return []

        items = response.json()
        if not isinstance(items, list):
            raise FatalFetchError(f"{self.source_id}: dataset response is not a list")
        return items[:limit]

    # =========================================================================
    # Normalisation
    # =========================================================================

    def item_ref(self, raw: dict[str, Any]) -> str:
        node = raw.get("node") or {}
        return str(node.get("id") or node.get("urlPath") or "")

    def _number(self, raw: dict[str, Any], node: dict[str, Any], name: str, cast):
        """Numeric node field; missing is 0, anything non-numeric rejects the item."""
        value = node.get(name)
        if value is None or value == "":
            return cast(0)
        if isinstance(value, bool):
            raise self._parse_error(raw, f"{name} is not a number: {value!r}")
        try:
            return cast(value)
        except (TypeError, ValueError):
            raise self._parse_error(raw, f"{name} is not a number: {value!r}") from None

    def normalize(self, raw: dict[str, Any]) -> NormalizedListing:
        node = raw.get("node")
        if not isinstance(node, dict):
            raise self._parse_error(raw, "missing node")
        if not node.get("id") and not node.get("urlPath"):
            raise self._parse_error(raw, "missing id and urlPath")

        price_field = "price" if node.get("price") else "netEffectivePrice"
        if not node.get(price_field):
            raise self._parse_error(raw, "missing price")

        street = (node.get("street") or "").strip()
        if not street:
            raise self._parse_error(raw, "missing street")
        unit = node.get("unit")
        address = f"{street} #{unit}" if unit else street

        price = self._number(raw, node, price_field, float)
        beds = self._number(raw, node, "bedroomCount", int)
        baths = self._number(raw, node, "fullBathroomCount", float) + 0.5 * self._number(
            raw, node, "halfBathroomCount", float
        )
        sqft = self._number(raw, node, "livingAreaSize", int) or None
        area = node.get("areaName")

        if node.get("urlPath"):
            url = f"{STREETEASY_BASE_URL}{node['urlPath']}"
        else:
            url = f"{STREETEASY_BASE_URL}/rental/{node['id']}"

        geo = node.get("geoPoint") or {}
        images = tuple(
            PHOTO_URL_TEMPLATE.format(key=photo["key"])
            for photo in node.get("photos") or []
            if isinstance(photo, dict) and photo.get("key")
        )

        available = None
        if node.get("availableAt"):
            try:
                available = date.fromisoformat(str(node["availableAt"])[:10])
            except ValueError:
                available = None

        return self._build_listing(
            raw,
            source_listing_id=str(node["id"]) if node.get("id") else None,
            source_url=url,
            title=f"{'Studio' if beds == 0 else f'{beds}BR'} in {area or 'NYC'}",
            price=price,
            beds=beds,
            baths=baths,
            sqft=sqft,
            address_text=address,
            neighborhood=area,
            borough=(borough_for_neighborhood(area) or infer_borough(area)) if area else None,
            latitude=geo.get("latitude"),
            longitude=geo.get("longitude"),
            images=images,
            broker_company=node.get("sourceGroupLabel"),
            no_fee=node.get("noFee"),
            available_date=available,
        )
