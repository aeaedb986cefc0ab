"""Checkout engine data models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
import uuid


# Processor metadata values are capped at 500 characters each.
METADATA_VALUE_MAX_LENGTH = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FulfillmentMethod(str, Enum):
    """How the buyer receives the goods."""
    LOCAL_PICKUP = "local_pickup"
    SHIPPING = "shipping"


class CheckoutMode(str, Enum):
    """Checkout variant; selects the fee policy."""
    STANDARD = "standard"
    ESCROW = "escrow"


class ListingStatus(str, Enum):
    """Listing status in the canonical pricing store."""
    ACTIVE = "active"
    DRAFT = "draft"
    SOLD = "sold"
    INACTIVE = "inactive"
    REMOVED = "removed"


class PaymentStatus(str, Enum):
    """Order payment status."""
    PENDING = "pending"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class EscrowState(str, Enum):
    """Escrow lifecycle states.

    INITIATED → AUTHORIZED → CAPTURED → RELEASED
                    ↓→ REFUNDED    ↓→ REFUNDED
                    ↓→ DISPUTED    ↓→ DISPUTED
    """
    INITIATED = "initiated"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


# Only explicit transitions are allowed
VALID_TRANSITIONS: dict[EscrowState, frozenset[EscrowState]] = {
    EscrowState.INITIATED: frozenset({EscrowState.AUTHORIZED, EscrowState.REFUNDED}),
    EscrowState.AUTHORIZED: frozenset({
        EscrowState.CAPTURED,
        EscrowState.REFUNDED,
        EscrowState.DISPUTED,
    }),
    EscrowState.CAPTURED: frozenset({
        EscrowState.RELEASED,
        EscrowState.REFUNDED,
        EscrowState.DISPUTED,
    }),
    EscrowState.RELEASED: frozenset(),  # Terminal state
    EscrowState.REFUNDED: frozenset(),  # Terminal state
    EscrowState.DISPUTED: frozenset(),  # Terminal state
}

TERMINAL_ESCROW_STATES = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)


class ReminderType(str, Enum):
    """Scheduled reminder types."""
    SELLER_PREPARE = "seller_prepare"
    PICKUP_READY = "pickup_ready"


class LineItemKind(str, Enum):
    LISTING = "listing"
    PLATFORM_FEE = "platform_fee"


# =============================================================================
# Cart and pricing
# =============================================================================

@dataclass
class CartLineRequest:
    """Client-supplied cart line. `price` is advisory and never trusted."""
    listing_id: str
    quantity: int
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class InventoryRecord:
    """Canonical pricing store row for a listing."""
    listing_id: str
    seller_id: str
    title: str
    price: Decimal
    status: str = ListingStatus.ACTIVE.value
    # None means inventory is not tracked (unlimited)
    available_quantity: Optional[int] = None


@dataclass(frozen=True, slots=True)
class VerifiedLine:
    """Server-derived cart line. Price and quantity are authoritative."""
    listing_id: str
    seller_id: str
    title: str
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class SellerGroup:
    """Verified lines belonging to one seller.

    `subtotal` is set by the grouper; the cent amounts are filled in by
    the fee calculator.
    """
    seller_id: str
    lines: tuple[VerifiedLine, ...]
    subtotal: Decimal
    connect_destination: Optional[str] = None
    line_amounts_cents: tuple[int, ...] = ()
    subtotal_cents: int = 0
    payout_amount: int = 0
    platform_fee_share: int = 0


@dataclass(frozen=True)
class SellerAccount:
    """Seller payout account readiness."""
    seller_id: str
    connect_account_id: Optional[str] = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def payout_ready(self) -> bool:
        return bool(self.connect_account_id and self.charges_enabled and self.payouts_enabled)


# =============================================================================
# Checkout intent
# =============================================================================

@dataclass(frozen=True)
class LineItem:
    """One external line item in the processor request."""
    name: str
    unit_amount_cents: int
    quantity: int
    kind: LineItemKind = LineItemKind.LISTING
    listing_id: Optional[str] = None
    seller_id: Optional[str] = None

    @property
    def metadata(self) -> dict[str, str]:
        if self.kind is LineItemKind.PLATFORM_FEE:
            return {"kind": self.kind.value}
        return {"listing_id": self.listing_id or "", "seller_id": self.seller_id or ""}


@dataclass(frozen=True)
class TransferInstruction:
    """Route a seller's payout to their connected account."""
    seller_id: str
    destination: str
    amount_cents: int


@dataclass(frozen=True)
class CheckoutIntent:
    """Immutable record of one checkout attempt.

    `metadata_blob` is canonical JSON of what was actually charged and
    `signature` is its HMAC; together they are the source of truth for
    webhook reconciliation.
    """
    intent_id: str
    verified_lines: tuple[VerifiedLine, ...]
    seller_groups: tuple[SellerGroup, ...]
    line_items: tuple[LineItem, ...]
    transfers: tuple[TransferInstruction, ...]
    subtotal_cents: int
    platform_fee: int
    total: int
    fulfillment_method: FulfillmentMethod
    metadata_blob: str
    signature: str
    currency: str = "usd"
    buyer_id: Optional[str] = None
    customer_email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def transfer_group(self) -> str:
        return f"checkout_{self.intent_id}"


@dataclass
class IntentRecord:
    """Persisted form of a CheckoutIntent, keyed by processor session id."""
    intent_id: str
    processor_session_id: str
    metadata_blob: str
    signature: str
    total_cents: int
    created_at: datetime = field(default_factory=utcnow)


# =============================================================================
# Processor results
# =============================================================================

@dataclass
class ProcessorSession:
    """Hosted checkout session created by the processor."""
    session_id: str
    url: Optional[str] = None
    payment_intent_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessorPaymentIntent:
    """Payment intent as returned by the processor."""
    payment_intent_id: str
    status: str
    amount_cents: int
    client_secret: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Orders, escrow and reminders
# =============================================================================

@dataclass
class Order:
    """Order finalized from a confirmed payment, one per seller."""
    order_id: str
    processor_ref: str
    buyer_id: Optional[str]
    seller_id: str
    lines: list[dict[str, Any]]
    subtotal_cents: int
    platform_fee_cents: int
    total_cents: int
    fulfillment_method: FulfillmentMethod
    payment_status: PaymentStatus = PaymentStatus.COMPLETED
    shipping_address: Optional[dict[str, str]] = None
    notes: Optional[str] = None
    customer_email: Optional[str] = None
    intent_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class EscrowRecord:
    """Escrowed payment held for a single seller order."""
    order_id: str
    payment_intent_ref: str
    seller_id: str
    buyer_id: Optional[str]
    seller_amount: int
    platform_fee: int
    state: EscrowState = EscrowState.INITIATED
    created_at: datetime = field(default_factory=utcnow)

    authorized_at: Optional[datetime] = None
    release_due_at: Optional[datetime] = None

    # Payout routing
    payout_destination: Optional[str] = None
    destination_charge: bool = False

    # Pending-release marker, written before any external money movement
    release_claimed_at: Optional[datetime] = None

    captured_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    transfer_ref: Optional[str] = None

    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    updated_at: datetime = field(default_factory=utcnow)

    @property
    def total_amount(self) -> int:
        return self.seller_amount + self.platform_fee

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ESCROW_STATES

    def can_transition_to(self, new_state: EscrowState) -> bool:
        """Check if state transition is valid."""
        return new_state in VALID_TRANSITIONS.get(self.state, frozenset())

    def is_due(self, now: datetime) -> bool:
        return self.release_due_at is not None and now >= self.release_due_at


@dataclass
class Reminder:
    """Time-scheduled notification task for an order."""
    order_id: str
    type: ReminderType
    scheduled_for: datetime
    recipient_id: str
    reminder_id: str = field(default_factory=lambda: f"rem_{uuid.uuid4().hex[:16]}")
    delivered: bool = False
    delivered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
