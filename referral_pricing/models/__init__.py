import importlib

from referral_pricing.models.price_change_history import PriceChangeHistory
from referral_pricing.models.scheduled_price_change import ScheduledPriceChange


def import_all_models() -> None:
    for module_name in (
        "referral_pricing.models.price_change_history",
        "referral_pricing.models.scheduled_price_change",
    ):
        importlib.import_module(module_name)


__all__ = [
    "PriceChangeHistory",
    "ScheduledPriceChange",
    "import_all_models",
]
