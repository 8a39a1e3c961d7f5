"""
Simple factory for service singletons.

The **Factory pattern** centralises service construction. Activities call
`ServiceFactory.get_*()` instead of instantiating services themselves.

Benefits:
  - Single point of change if services need constructor args (e.g. API keys).
  - Cached instances avoid repeated object creation.
  - Easy to swap implementations for testing (`ServiceFactory.configure`).
"""

from temporalio import activity

from storefront_checkout.config import CheckoutConfig, load_config
from storefront_checkout.services.geocoding import Geocoder, NominatimGeocoder
from storefront_checkout.services.notify import NotificationService
from storefront_checkout.services.payment import PaymentGateway, SimulatedGateway, StripeGateway
from storefront_checkout.services.reconciliation import CheckoutSignaller, PaymentReconciler, TemporalSignaller
from storefront_checkout.services.stores import CouponStore, InMemoryCouponStore, InMemoryOrderStore, OrderStore


class ServiceFactory:
    """Lazily creates and caches service instances (class-level singletons)."""

    _config: CheckoutConfig | None = None
    _gateway: PaymentGateway | None = None
    _geocoder: Geocoder | None = None
    _orders: OrderStore | None = None
    _coupons: CouponStore | None = None
    _notification: NotificationService | None = None
    _signaller: CheckoutSignaller | None = None
    _reconciler: PaymentReconciler | None = None

    @classmethod
    def configure(
        cls,
        *,
        config: CheckoutConfig | None = None,
        gateway: PaymentGateway | None = None,
        geocoder: Geocoder | None = None,
        orders: OrderStore | None = None,
        coupons: CouponStore | None = None,
        notification: NotificationService | None = None,
        signaller: CheckoutSignaller | None = None,
    ) -> None:
        """Install explicit instances. Anything left as None is built lazily."""
        cls._config = config
        cls._gateway = gateway
        cls._geocoder = geocoder
        cls._orders = orders
        cls._coupons = coupons
        cls._notification = notification
        cls._signaller = signaller
        cls._reconciler = None

    @classmethod
    def reset(cls) -> None:
        cls.configure()

    @classmethod
    def get_config(cls) -> CheckoutConfig:
        if cls._config is None:
            cls._config = load_config()
        return cls._config

    @classmethod
    def get_payment_gateway(cls) -> PaymentGateway:
        if cls._gateway is None:
            secret = cls.get_config().stripe_secret_key
            cls._gateway = StripeGateway(secret) if secret else SimulatedGateway(latency=0.5)
        return cls._gateway

    @classmethod
    def get_geocoder(cls) -> Geocoder:
        if cls._geocoder is None:
            config = cls.get_config()
            cls._geocoder = NominatimGeocoder(config.geocoder_url, config.geocoder_user_agent)
        return cls._geocoder

    @classmethod
    def get_order_store(cls) -> OrderStore:
        if cls._orders is None:
            cls._orders = InMemoryOrderStore()
        return cls._orders

    @classmethod
    def get_coupon_store(cls) -> CouponStore:
        if cls._coupons is None:
            cls._coupons = InMemoryCouponStore()
        return cls._coupons

    @classmethod
    def get_notification_service(cls) -> NotificationService:
        if cls._notification is None:
            cls._notification = NotificationService(cls.get_config().email_api_url)
        return cls._notification

    @classmethod
    def get_checkout_signaller(cls) -> CheckoutSignaller:
        """Signals checkout workflows through the client of the running activity's worker."""
        if cls._signaller is None:
            cls._signaller = TemporalSignaller(activity.client())
        return cls._signaller

    @classmethod
    def get_reconciler(cls) -> PaymentReconciler:
        # One per worker process, so `unreconciled` collects every miss it saw.
        if cls._reconciler is None:
            cls._reconciler = PaymentReconciler(cls.get_order_store(), cls.get_checkout_signaller())
        return cls._reconciler
