"""Payment processor connector implementations."""
from craftlocal_checkout.connectors.base import PaymentProcessor
from craftlocal_checkout.connectors.stripe import StripeConnector

__all__ = [
    "PaymentProcessor",
    "StripeConnector",
]
