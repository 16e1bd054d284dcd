from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

from referral_pricing.config import Settings
from referral_pricing.core.dates import utc_now
from referral_pricing.core.exceptions import SubscriptionNotFoundError
from referral_pricing.database import Base, build_engine, build_session_factory
from referral_pricing.models import import_all_models
from referral_pricing.schemas.referral import ReferralContext
from referral_pricing.services.billing_gateway import SubscriptionSnapshot
from referral_pricing.services.container import build_pricing_services


class FakeBillingGateway:
    """In-memory billing system with scripted failures."""

    def __init__(self):
        self.subscriptions = {}
        self.price_updates = []
        self.get_errors = []
        self.set_errors = []
        self.on_set_price = None

    def add_subscription(self, subscription_id, price, *, status="active", customer_id=None, next_payment_in_days=7):
        self.subscriptions[subscription_id] = SubscriptionSnapshot(
            subscription_id=subscription_id,
            status=status,
            price=Decimal(str(price)),
            next_payment_date=utc_now() + timedelta(days=next_payment_in_days),
            customer_id=customer_id if customer_id is not None else subscription_id * 10,
        )
        return self.subscriptions[subscription_id]

    def update(self, subscription_id, **changes):
        self.subscriptions[subscription_id] = replace(self.subscriptions[subscription_id], **changes)

    def get_subscription(self, subscription_id):
        if self.get_errors:
            raise self.get_errors.pop(0)
        if subscription_id not in self.subscriptions:
            raise SubscriptionNotFoundError("Subscription {} not found".format(subscription_id))
        return self.subscriptions[subscription_id]

    def set_subscription_price(self, subscription_id, new_price, note=""):
        if self.on_set_price is not None:
            self.on_set_price(subscription_id)
        if self.set_errors:
            raise self.set_errors.pop(0)
        self.update(subscription_id, price=Decimal(str(new_price)))
        self.price_updates.append((subscription_id, Decimal(str(new_price)), note))


def make_session_factory():
    engine = build_engine("sqlite://")
    import_all_models()
    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)


def make_settings(**overrides):
    values = {
        "DATABASE_URL": "sqlite://",
        "PRICING_CONTRIBUTION_PERCENT": Decimal("20"),
        "BILLING_API_URL": None,
        "NOTIFY_WEBHOOK_URL": None,
    }
    values.update(overrides)
    return Settings(**values)


def make_services(billing=None, session_factory=None, **overrides):
    billing = billing or FakeBillingGateway()
    return build_pricing_services(
        make_settings(**overrides),
        billing=billing,
        session_factory=session_factory or make_session_factory(),
    )


def referral_context(**overrides):
    values = dict(
        referrer_subscription_id=7001,
        referred_order_id=8001,
        referrer_price=Decimal("100.00"),
        referred_contribution=Decimal("50.00"),
        referred_customer_id=99,
        referred_product_ids=[11, 12],
    )
    values.update(overrides)
    return ReferralContext(**values)
