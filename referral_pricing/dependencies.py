from functools import lru_cache

from referral_pricing.services.container import PricingServices, build_pricing_services


@lru_cache
def get_services() -> PricingServices:
    """Process-wide pricing components; override in tests via ``dependency_overrides``."""
    return build_pricing_services()


__all__ = ["get_services"]
