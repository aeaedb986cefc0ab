"""PostgreSQL-backed stores (asyncpg).

Every conditional write is a single statement so that concurrent engine
instances see a consistent compare-and-swap.
"""
from __future__ import annotations

import json
import logging
from dataclasses import fields
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from craftlocal_checkout.database import Database
from craftlocal_checkout.escrow import EscrowStore
from craftlocal_checkout.intent_builder import CheckoutIntentStore
from craftlocal_checkout.models import (
    EscrowRecord,
    EscrowState,
    FulfillmentMethod,
    IntentRecord,
    InventoryRecord,
    Order,
    PaymentStatus,
    Reminder,
    ReminderType,
    SellerAccount,
)
from craftlocal_checkout.orders import OrderStore
from craftlocal_checkout.pricing import CanonicalPricingStore
from craftlocal_checkout.reminders import ReminderStore
from craftlocal_checkout.sellers import SellerAccountStore

logger = logging.getLogger(__name__)

_ESCROW_COLUMNS = tuple(f.name for f in fields(EscrowRecord))


def _json_value(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


# =============================================================================
# Pricing
# =============================================================================

class PostgresPricingStore(CanonicalPricingStore):
    """Listing table of record."""

    async def fetch_many(self, listing_ids: Sequence[str]) -> Dict[str, InventoryRecord]:
        async with Database.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, seller_id, title, price, status, inventory_count
                FROM listings
                WHERE id = ANY($1::text[])
                """,
                list(listing_ids),
            )
        return {
            row["id"]: InventoryRecord(
                listing_id=row["id"],
                seller_id=row["seller_id"],
                title=row["title"],
                price=Decimal(row["price"]),
                status=row["status"],
                available_quantity=row["inventory_count"],
            )
            for row in rows
        }

    async def decrement_inventory(self, listing_id: str, quantity: int) -> Optional[int]:
        async with Database.connection() as conn:
            remaining = await conn.fetchval(
                """
                UPDATE listings
                SET inventory_count = GREATEST(inventory_count - $2, 0), updated_at = NOW()
                WHERE id = $1 AND inventory_count IS NOT NULL
                RETURNING inventory_count
                """,
                listing_id,
                quantity,
            )
        return remaining


# =============================================================================
# Seller accounts
# =============================================================================

class PostgresSellerAccountStore(SellerAccountStore):

    @staticmethod
    def _row_to_account(row) -> SellerAccount:
        return SellerAccount(
            seller_id=row["seller_id"],
            connect_account_id=row["connect_account_id"],
            charges_enabled=row["charges_enabled"],
            payouts_enabled=row["payouts_enabled"],
            updated_at=row["updated_at"],
        )

    async def get(self, seller_id: str) -> Optional[SellerAccount]:
        async with Database.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM seller_accounts WHERE seller_id = $1", seller_id)
        return self._row_to_account(row) if row else None

    async def get_many(self, seller_ids: Iterable[str]) -> Dict[str, SellerAccount]:
        async with Database.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM seller_accounts WHERE seller_id = ANY($1::text[])",
                list(seller_ids),
            )
        return {row["seller_id"]: self._row_to_account(row) for row in rows}

    async def get_by_connect_account(self, connect_account_id: str) -> Optional[SellerAccount]:
        async with Database.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM seller_accounts WHERE connect_account_id = $1",
                connect_account_id,
            )
        return self._row_to_account(row) if row else None

    async def upsert(self, account: SellerAccount) -> SellerAccount:
        async with Database.connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO seller_accounts (seller_id, connect_account_id, charges_enabled, payouts_enabled, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (seller_id) DO UPDATE SET
                    connect_account_id = EXCLUDED.connect_account_id,
                    charges_enabled = EXCLUDED.charges_enabled,
                    payouts_enabled = EXCLUDED.payouts_enabled,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                account.seller_id,
                account.connect_account_id,
                account.charges_enabled,
                account.payouts_enabled,
                account.updated_at,
            )
        return self._row_to_account(row)


# =============================================================================
# Checkout intents
# =============================================================================

class PostgresCheckoutIntentStore(CheckoutIntentStore):

    async def save(self, record: IntentRecord) -> None:
        async with Database.connection() as conn:
            await conn.execute(
                """
                INSERT INTO checkout_intents (intent_id, processor_session_id, metadata_blob, signature, total_cents, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (intent_id) DO NOTHING
                """,
                record.intent_id,
                record.processor_session_id,
                record.metadata_blob,
                record.signature,
                record.total_cents,
                record.created_at,
            )

    async def get_by_session(self, processor_session_id: str) -> Optional[IntentRecord]:
        async with Database.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM checkout_intents WHERE processor_session_id = $1",
                processor_session_id,
            )
        if row is None:
            return None
        return IntentRecord(
            intent_id=row["intent_id"],
            processor_session_id=row["processor_session_id"],
            metadata_blob=row["metadata_blob"],
            signature=row["signature"],
            total_cents=row["total_cents"],
            created_at=row["created_at"],
        )


# =============================================================================
# Orders
# =============================================================================

class PostgresOrderStore(OrderStore):

    @staticmethod
    def _row_to_order(row) -> Order:
        return Order(
            order_id=row["order_id"],
            processor_ref=row["processor_ref"],
            buyer_id=row["buyer_id"],
            seller_id=row["seller_id"],
            lines=_json_value(row["lines"]),
            subtotal_cents=row["subtotal_cents"],
            platform_fee_cents=row["platform_fee_cents"],
            total_cents=row["total_cents"],
            fulfillment_method=FulfillmentMethod(row["fulfillment_method"]),
            payment_status=PaymentStatus(row["payment_status"]),
            shipping_address=_json_value(row["shipping_address"]),
            notes=row["notes"],
            customer_email=row["customer_email"],
            intent_id=row["intent_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def upsert(self, order: Order) -> Tuple[Order, bool]:
        async with Database.transaction() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO orders (
                    order_id, processor_ref, intent_id, buyer_id, seller_id, lines,
                    subtotal_cents, platform_fee_cents, total_cents, fulfillment_method,
                    payment_status, shipping_address, notes, customer_email, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11, $12::jsonb, $13, $14, $15, $16)
                ON CONFLICT (processor_ref, seller_id) DO NOTHING
                RETURNING *
                """,
                order.order_id,
                order.processor_ref,
                order.intent_id,
                order.buyer_id,
                order.seller_id,
                json.dumps(order.lines),
                order.subtotal_cents,
                order.platform_fee_cents,
                order.total_cents,
                order.fulfillment_method.value,
                order.payment_status.value,
                json.dumps(order.shipping_address) if order.shipping_address is not None else None,
                order.notes,
                order.customer_email,
                order.created_at,
                order.updated_at,
            )
            if row is not None:
                return self._row_to_order(row), True
            existing = await conn.fetchrow(
                "SELECT * FROM orders WHERE processor_ref = $1 AND seller_id = $2",
                order.processor_ref,
                order.seller_id,
            )
        return self._row_to_order(existing), False

    async def get(self, order_id: str) -> Optional[Order]:
        async with Database.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE order_id = $1", order_id)
        return self._row_to_order(row) if row else None

    async def list_by_processor_ref(self, processor_ref: str) -> list[Order]:
        async with Database.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM orders WHERE processor_ref = $1 ORDER BY created_at",
                processor_ref,
            )
        return [self._row_to_order(row) for row in rows]

    async def update_payment_status(self, processor_ref: str, status: PaymentStatus) -> int:
        async with Database.connection() as conn:
            result = await conn.execute(
                "UPDATE orders SET payment_status = $2, updated_at = NOW() WHERE processor_ref = $1",
                processor_ref,
                status.value,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 2"
        return int(result.split()[-1])


# =============================================================================
# Escrow
# =============================================================================

class PostgresEscrowStore(EscrowStore):
    """Escrow records with conditional UPDATE ... RETURNING transitions."""

    @staticmethod
    def _row_to_record(row) -> EscrowRecord:
        values = {name: row[name] for name in _ESCROW_COLUMNS}
        values["state"] = EscrowState(values["state"])
        return EscrowRecord(**values)

    async def insert(self, record: EscrowRecord) -> bool:
        values = [
            record.state.value if name == "state" else getattr(record, name)
            for name in _ESCROW_COLUMNS
        ]
        placeholders = ", ".join(f"${i}" for i in range(1, len(values) + 1))
        async with Database.connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO escrow_records ({", ".join(_ESCROW_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT (order_id) DO NOTHING
                RETURNING order_id
                """,
                *values,
            )
        return row is not None

    async def get(self, order_id: str) -> Optional[EscrowRecord]:
        async with Database.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM escrow_records WHERE order_id = $1", order_id)
        return self._row_to_record(row) if row else None

    async def get_by_payment_intent(self, payment_intent_ref: str) -> Optional[EscrowRecord]:
        async with Database.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM escrow_records WHERE payment_intent_ref = $1",
                payment_intent_ref,
            )
        return self._row_to_record(row) if row else None

    async def transition(
        self,
        order_id: str,
        expected: Iterable[EscrowState],
        changes: Dict[str, Any],
        require_unclaimed: bool = False,
    ) -> Optional[EscrowRecord]:
        unknown = set(changes) - set(_ESCROW_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown escrow columns: {sorted(unknown)}")
        names = list(changes)
        values = [v.value if isinstance(v, EscrowState) else v for v in changes.values()]
        assignments = ", ".join(f"{name} = ${i + 3}" for i, name in enumerate(names))
        unclaimed = "AND release_claimed_at IS NULL" if require_unclaimed else ""
        async with Database.connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE escrow_records
                SET {assignments}
                WHERE order_id = $1 AND state = ANY($2::text[])
                {unclaimed}
                RETURNING *
                """,
                order_id,
                [s.value for s in expected],
                *values,
            )
        return self._row_to_record(row) if row else None

    async def claim(
        self,
        order_id: str,
        now: datetime,
        stale_before: datetime,
    ) -> Optional[EscrowRecord]:
        async with Database.connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE escrow_records
                SET release_claimed_at = $2, updated_at = $2
                WHERE order_id = $1
                  AND state IN ('authorized', 'captured')
                  AND release_due_at <= $2
                  AND NOT (state = 'captured' AND payout_destination IS NULL AND NOT destination_charge)
                  AND (release_claimed_at IS NULL OR release_claimed_at <= $3)
                RETURNING *
                """,
                order_id,
                now,
                stale_before,
            )
        return self._row_to_record(row) if row else None

    async def list_due(self, now: datetime, limit: int) -> list[EscrowRecord]:
        async with Database.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM escrow_records
                WHERE state IN ('authorized', 'captured')
                  AND release_due_at <= $1
                  AND NOT (state = 'captured' AND payout_destination IS NULL AND NOT destination_charge)
                ORDER BY release_due_at
                LIMIT $2
                """,
                now,
                limit,
            )
        return [self._row_to_record(row) for row in rows]


# =============================================================================
# Reminders
# =============================================================================

class PostgresReminderStore(ReminderStore):

    @staticmethod
    def _row_to_reminder(row) -> Reminder:
        return Reminder(
            reminder_id=row["reminder_id"],
            order_id=row["order_id"],
            type=ReminderType(row["reminder_type"]),
            scheduled_for=row["scheduled_for"],
            recipient_id=row["recipient_id"],
            delivered=row["delivered"],
            delivered_at=row["delivered_at"],
            created_at=row["created_at"],
        )

    async def add_batch(self, reminders: Sequence[Reminder]) -> bool:
        try:
            async with Database.transaction() as conn:
                for reminder in reminders:
                    inserted = await conn.fetchval(
                        """
                        INSERT INTO order_reminders (
                            reminder_id, order_id, reminder_type, recipient_id, scheduled_for, created_at
                        ) VALUES ($1, $2, $3, $4, $5, $6)
                        ON CONFLICT (order_id, reminder_type) DO NOTHING
                        RETURNING reminder_id
                        """,
                        reminder.reminder_id,
                        reminder.order_id,
                        reminder.type.value,
                        reminder.recipient_id,
                        reminder.scheduled_for,
                        reminder.created_at,
                    )
                    if inserted is None:
                        # Leaving the block rolls back the partial batch
                        raise _BatchExists()
        except _BatchExists:
            return False
        return True

    async def list_for_order(self, order_id: str) -> list[Reminder]:
        async with Database.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM order_reminders WHERE order_id = $1 ORDER BY scheduled_for",
                order_id,
            )
        return [self._row_to_reminder(row) for row in rows]

    async def list_due(self, now: datetime, limit: int) -> list[Reminder]:
        async with Database.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM order_reminders
                WHERE delivered = FALSE AND scheduled_for <= $1
                ORDER BY scheduled_for
                LIMIT $2
                """,
                now,
                limit,
            )
        return [self._row_to_reminder(row) for row in rows]

    async def mark_delivered(self, reminder_id: str, delivered_at: datetime) -> Optional[Reminder]:
        async with Database.connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE order_reminders
                SET delivered = TRUE, delivered_at = $2
                WHERE reminder_id = $1
                RETURNING *
                """,
                reminder_id,
                delivered_at,
            )
        return self._row_to_reminder(row) if row else None


class _BatchExists(Exception):
    pass
