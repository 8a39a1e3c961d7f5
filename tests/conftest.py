from types import SimpleNamespace

import pytest

from storefront_checkout.config import CheckoutConfig
from storefront_checkout.domain.models import DeliveryAddress, GeoPoint
from storefront_checkout.services.factory import ServiceFactory
from storefront_checkout.services.geocoding import StaticGeocoder
from storefront_checkout.services.notify import NotificationService
from storefront_checkout.services.payment import SimulatedGateway
from storefront_checkout.services.stores import InMemoryCouponStore, InMemoryOrderStore


@pytest.fixture
def services():
    """Installs in-memory services into the ServiceFactory for one test.

    `address` geocodes to `point`, six kilometres due north of the default
    delivery origin.
    """
    address = DeliveryAddress(street="Aleksanterinkatu 1", postal_code="15110", city="Lahti")
    point = GeoPoint(lat=61.03716, lon=25.6608)
    ns = SimpleNamespace(
        address=address,
        point=point,
        config=CheckoutConfig(),
        gateway=SimulatedGateway(),
        geocoder=StaticGeocoder({address.as_query(): point}),
        orders=InMemoryOrderStore(),
        coupons=InMemoryCouponStore(),
        notification=NotificationService(),
    )
    ServiceFactory.configure(
        config=ns.config,
        gateway=ns.gateway,
        geocoder=ns.geocoder,
        orders=ns.orders,
        coupons=ns.coupons,
        notification=ns.notification,
    )
    yield ns
    ServiceFactory.reset()
