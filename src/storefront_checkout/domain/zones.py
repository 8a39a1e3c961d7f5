"""
Delivery zone resolution.

Maps a geocoded destination to a delivery fee. Pure and deterministic, so it
runs directly inside the checkout workflow; the geocode lookup itself is an
activity.

Zones are scanned in ascending `max_distance_km` order and the first zone
whose bound is >= the distance wins (bounds are inclusive).
"""

import math
from decimal import ROUND_HALF_UP, Decimal

from storefront_checkout.config import DeliveryConfig
from storefront_checkout.domain.errors import OutOfCountry, OutOfRange
from storefront_checkout.domain.models import DeliveryQuote, DeliveryZone, GeoPoint

EARTH_RADIUS_KM = 6371.0
TENTH = Decimal("0.1")
# Shown when the address could not be geocoded and the floor fee was applied.
FLOOR_FEE_LABEL = "fee confirmed at order time"


def haversine_km(origin: GeoPoint, destination: GeoPoint) -> Decimal:
    """Great-circle distance in km, rounded half-up to one decimal."""
    lat1, lon1 = math.radians(origin.lat), math.radians(origin.lon)
    lat2, lon2 = math.radians(destination.lat), math.radians(destination.lon)
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    distance = 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))
    return Decimal(str(distance)).quantize(TENTH, rounding=ROUND_HALF_UP)


def zone_for_distance(distance_km: Decimal, zones: list[DeliveryZone]) -> int:
    """Index of the first zone covering `distance_km`. Raises OutOfRange past the last bound."""
    for index, zone in enumerate(zones):
        if distance_km <= zone.max_distance_km:
            return index
    raise OutOfRange(distance_km)


def zone_label(index: int, zones: list[DeliveryZone]) -> str:
    lower = zones[index - 1].max_distance_km if index > 0 else Decimal("0")
    return f"{lower}-{zones[index].max_distance_km} km"


def floor_quote(zones: list[DeliveryZone]) -> DeliveryQuote:
    """Quote used when the address cannot be geocoded: the cheapest zone's fee."""
    index, cheapest = min(enumerate(zones), key=lambda pair: pair[1].fee)
    return DeliveryQuote(
        distance_km=None,
        fee=cheapest.fee,
        zone_index=index,
        label=FLOOR_FEE_LABEL,
        confirmed_manually=True,
    )


def resolve_delivery(origin: GeoPoint, destination: GeoPoint | None, config: DeliveryConfig) -> DeliveryQuote:
    """Resolve the delivery fee from `origin` to `destination`.

    `destination=None` means the geocoder found no match; that degrades to the
    floor fee instead of failing. A destination outside the serviced country
    raises OutOfCountry before any distance is computed.
    """
    if destination is None:
        return floor_quote(config.zones)
    if not config.country.contains(destination):
        raise OutOfCountry(destination.lat, destination.lon)

    distance = haversine_km(origin, destination)
    index = zone_for_distance(distance, config.zones)
    zone = config.zones[index]
    return DeliveryQuote(
        distance_km=distance,
        fee=zone.fee,
        zone_index=index,
        label=zone_label(index, config.zones),
        minimum_order=zone.minimum_order,
    )
