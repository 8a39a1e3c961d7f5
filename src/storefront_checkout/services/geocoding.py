"""
Geocoding service facade.

Turns a free-text delivery address into coordinates. An empty answer is not
an error: the workflow then applies the floor delivery fee. Only transport
problems raise (TransportError), so the activity retry policy can back off.
"""

import asyncio
import logging
from typing import Protocol

import requests

from storefront_checkout.domain.errors import TransportError
from storefront_checkout.domain.models import DeliveryAddress, GeoPoint

logger = logging.getLogger(__name__)


class Geocoder(Protocol):
    async def geocode(self, address: DeliveryAddress, country: str) -> GeoPoint | None: ...


class NominatimGeocoder:
    """OpenStreetMap Nominatim search API, limited to one country."""

    def __init__(self, url: str, user_agent: str, timeout: float = 5.0) -> None:
        self.url = url
        self.user_agent = user_agent
        self.timeout = timeout

    async def geocode(self, address: DeliveryAddress, country: str) -> GeoPoint | None:
        return await asyncio.to_thread(self._search, address.as_query(), country)

    def _search(self, query: str, country: str) -> GeoPoint | None:
        try:
            response = requests.get(
                self.url,
                params={"q": query, "format": "json", "countrycodes": country, "limit": 1, "addressdetails": 1},
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"Geocoder unreachable: {e}") from e

        matches = response.json()
        if not matches:
            logger.info("No geocoding match for %r", query)
            return None
        return GeoPoint(lat=float(matches[0]["lat"]), lon=float(matches[0]["lon"]))


class StaticGeocoder:
    """Answers from a fixed address table. Unknown addresses have no match."""

    def __init__(self, points: dict[str, GeoPoint] | None = None) -> None:
        self.points = dict(points or {})
        self.transport_failures = 0
        self.calls = 0

    async def geocode(self, address: DeliveryAddress, country: str) -> GeoPoint | None:
        self.calls += 1
        if self.transport_failures > 0:
            self.transport_failures -= 1
            raise TransportError("Simulated geocoder timeout")
        return self.points.get(address.as_query())
