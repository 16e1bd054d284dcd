class PricingError(Exception):
    """Base class for referral pricing errors."""


class InvalidInputError(PricingError, ValueError):
    pass


class AlreadyScheduledError(PricingError):
    def __init__(self, referrer_subscription_id, existing_id=None):
        self.referrer_subscription_id = referrer_subscription_id
        self.existing_id = existing_id
        super().__init__(
            "A price change is already pending for subscription {} (entry {})".format(
                referrer_subscription_id, existing_id
            )
        )


class StorageError(PricingError):
    pass


class BillingError(PricingError):
    transient = True


class BillingTimeoutError(BillingError):
    transient = True


class BillingUnavailableError(BillingError):
    transient = True


class BillingConflictError(BillingError):
    transient = True


class SubscriptionNotFoundError(BillingError):
    transient = False


class BillingRejectedError(BillingError):
    transient = False


__all__ = [
    "AlreadyScheduledError",
    "BillingConflictError",
    "BillingError",
    "BillingRejectedError",
    "BillingTimeoutError",
    "BillingUnavailableError",
    "InvalidInputError",
    "PricingError",
    "StorageError",
    "SubscriptionNotFoundError",
]
