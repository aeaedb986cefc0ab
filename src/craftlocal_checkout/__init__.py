"""
Craft Local checkout verification and escrow settlement engine.

Re-prices untrusted carts against the listing table of record, splits them
per seller with a platform fee, builds tamper-proof processor requests, and
runs the escrow lifecycle through to seller payout.
"""
from craftlocal_checkout.config import CheckoutSettings, FeePolicy, load_settings, validate_settings
from craftlocal_checkout.escrow import EscrowLedger, InMemoryEscrowStore
from craftlocal_checkout.exceptions import (
    CheckoutException,
    CheckoutValidationError,
    InsufficientInventory,
    MetadataIntegrityError,
    ProcessorError,
    ProductNotFound,
    ProductUnavailable,
    StateConflictError,
    VerificationError,
    WebhookSignatureError,
)
from craftlocal_checkout.fees import FeeBreakdown, FeeCalculator
from craftlocal_checkout.grouping import SellerGrouper
from craftlocal_checkout.intent_builder import CheckoutIntentBuilder
from craftlocal_checkout.models import (
    CartLineRequest,
    CheckoutIntent,
    CheckoutMode,
    EscrowRecord,
    EscrowState,
    FulfillmentMethod,
    InventoryRecord,
    Order,
    Reminder,
    ReminderType,
    SellerGroup,
    VerifiedLine,
)
from craftlocal_checkout.orchestrator import CheckoutRequest, CheckoutService
from craftlocal_checkout.reminders import ReminderScheduler
from craftlocal_checkout.settlement import SettlementReport, SettlementWorker
from craftlocal_checkout.verifier import CartVerifier
from craftlocal_checkout.webhooks import WebhookReconciler

__version__ = "0.1.0"

__all__ = [
    "CartLineRequest",
    "CartVerifier",
    "CheckoutException",
    "CheckoutIntent",
    "CheckoutIntentBuilder",
    "CheckoutMode",
    "CheckoutRequest",
    "CheckoutService",
    "CheckoutSettings",
    "CheckoutValidationError",
    "EscrowLedger",
    "EscrowRecord",
    "EscrowState",
    "FeeBreakdown",
    "FeeCalculator",
    "FeePolicy",
    "FulfillmentMethod",
    "InMemoryEscrowStore",
    "InsufficientInventory",
    "InventoryRecord",
    "MetadataIntegrityError",
    "Order",
    "ProcessorError",
    "ProductNotFound",
    "ProductUnavailable",
    "Reminder",
    "ReminderScheduler",
    "ReminderType",
    "SellerGroup",
    "SellerGrouper",
    "SettlementReport",
    "SettlementWorker",
    "StateConflictError",
    "VerificationError",
    "VerifiedLine",
    "WebhookReconciler",
    "WebhookSignatureError",
    "load_settings",
    "validate_settings",
]
