"""
Mock source adapter for development and testing.
Generates realistic placeholder rentals without external requests.
"""

import random
from typing import Any, Optional

from adapters.base import Page, PagedSourceAdapter, clean_price, parse_baths, parse_beds
from ingestion.schema import NormalizedListing


class MockSourceAdapter(PagedSourceAdapter):
    """Mock adapter that serves a fixed, seeded inventory of listings."""

    # Sample data for generating realistic listings
    NEIGHBORHOODS = {
        "Manhattan": ["East Village", "Upper West Side", "Chelsea", "Harlem", "Murray Hill"],
        "Brooklyn": ["Williamsburg", "Bushwick", "Park Slope", "Greenpoint", "Crown Heights"],
        "Queens": ["Astoria", "Long Island City", "Sunnyside", "Ridgewood"],
    }

    STREETS = ["Bedford Ave", "Broadway", "Atlantic Ave", "Ditmars Blvd", "E 7th St", "W 110th St"]

    def __init__(
        self,
        config,
        inventory_size: int = 60,
        seed: Optional[int] = 7,
        **kwargs,
    ):
        """
        Initialize mock adapter.

        Args:
            config: Source configuration (page size comes from the api connection)
            inventory_size: Total number of listings the mock source holds
            seed: Random seed for reproducible inventory
        """
        super().__init__(config, **kwargs)
        rng = random.Random(seed)
        self._inventory = [self._generate_item(rng, i) for i in range(inventory_size)]

    @property
    def page_size(self) -> int:
        return getattr(self.config.connection, "page_size", 20)

    def request_delay_seconds(self) -> float:
        return 0.0

    def fetch_page(self, page_token: Optional[str] = None) -> Page:
        start = int(page_token) if page_token else 0
        end = start + self.page_size
        items = [dict(item) for item in self._inventory[start:end]]
        next_token = str(end) if end < len(self._inventory) else None
        return Page(items=items, next_token=next_token)

    def normalize(self, raw: dict[str, Any]) -> NormalizedListing:
        return self._build_listing(
            raw,
            source_listing_id=raw["id"],
            source_url=raw["url"],
            title=raw["title"],
            price=clean_price(raw["price"]),
            beds=parse_beds(raw["beds"]),
            baths=parse_baths(raw["baths"]),
            sqft=raw.get("sqft"),
            address_text=raw["address"],
            neighborhood=raw["neighborhood"],
            borough=raw["borough"],
            images=tuple(raw.get("images", ())),
            no_fee=raw.get("no_fee"),
        )

    def _generate_item(self, rng: random.Random, index: int) -> dict[str, Any]:
        """Generate a single mock listing."""
        borough = rng.choice(list(self.NEIGHBORHOODS))
        neighborhood = rng.choice(self.NEIGHBORHOODS[borough])
        beds = rng.randint(0, 3)
        baths = 1 if beds < 2 else rng.choice([1, 1.5, 2])

        # Rough NYC rents, rounded to the nearest 25
        base_rent = 2400 + beds * 900 + rng.randint(-300, 600)
        if borough == "Manhattan":
            base_rent *= 1.25
        price = round(base_rent / 25) * 25

        listing_id = f"mock-{index:04d}"
        return {
            "id": listing_id,
            "url": f"https://example.com/rentals/{listing_id}",
            "title": f"{'Studio' if beds == 0 else f'{beds}BR'} in {neighborhood}",
            "price": price,
            "beds": beds,
            "baths": baths,
            "sqft": 350 + beds * 250 + rng.randint(0, 150),
            "address": f"{rng.randint(1, 400)} {rng.choice(self.STREETS)} #{rng.randint(1, 6)}{rng.choice('ABCD')}",
            "neighborhood": neighborhood,
            "borough": borough,
            "images": [f"https://example.com/img/{listing_id}/{n}.jpg" for n in range(rng.randint(1, 4))],
            "no_fee": rng.random() < 0.4,
        }
