"""
Escrow ledger for manual-capture checkouts.

Funds are authorized at checkout, held for the hold period, then captured
and released to the seller by the settlement worker. The ledger is the only
writer of EscrowRecord.state, and every write is a compare-and-swap on the
record's current state so that concurrent workers and webhook redeliveries
can never apply a transition twice.

Lifecycle:
  initiated → authorized → captured → released
  initiated/authorized → refunded (payment failed or canceled)
  initiated/authorized/captured → refunded (withdrawn by the platform before release)
  authorized/captured → disputed (chargeback opened before release)
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from craftlocal_checkout.exceptions import RecordNotFound, StateConflictError
from craftlocal_checkout.models import EscrowRecord, EscrowState, utcnow

logger = logging.getLogger(__name__)

RELEASABLE_STATES = frozenset({EscrowState.AUTHORIZED, EscrowState.CAPTURED})
WITHDRAWABLE_STATES = frozenset({EscrowState.INITIATED, EscrowState.AUTHORIZED, EscrowState.CAPTURED})
WITHDRAWN_PREFIX = "withdrawn:"


def awaiting_manual_payout(record: EscrowRecord) -> bool:
    """Captured funds with nowhere to send them automatically."""
    return (
        record.state is EscrowState.CAPTURED
        and not record.destination_charge
        and not record.payout_destination
    )


class EscrowStore(ABC):
    """Abstract interface for escrow record storage.

    `transition` and `claim` must be atomic with respect to each other
    across every process sharing the store.
    """

    @abstractmethod
    async def insert(self, record: EscrowRecord) -> bool:
        """Insert a new record. Returns False if the order id already exists."""
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[EscrowRecord]:
        pass

    @abstractmethod
    async def get_by_payment_intent(self, payment_intent_ref: str) -> Optional[EscrowRecord]:
        pass

    @abstractmethod
    async def transition(
        self,
        order_id: str,
        expected: Iterable[EscrowState],
        changes: Dict[str, Any],
        require_unclaimed: bool = False,
    ) -> Optional[EscrowRecord]:
        """
        Apply `changes` only if the record's state is one of `expected`
        and, with `require_unclaimed`, no release marker is set.

        Returns the updated record, or None if the precondition failed.
        """
        pass

    @abstractmethod
    async def claim(
        self,
        order_id: str,
        now: datetime,
        stale_before: datetime,
    ) -> Optional[EscrowRecord]:
        """
        Write the pending-release marker.

        Succeeds only for a releasable, due record whose marker is absent or
        older than `stale_before`. Returns None if the claim was lost.
        """
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int) -> list[EscrowRecord]:
        """Releasable records due at `now`, oldest first.

        Records awaiting a manual payout are excluded.
        """
        pass


class InMemoryEscrowStore(EscrowStore):
    """In-memory escrow store for development and testing.

    A single asyncio.Lock serialises every conditional write.
    """

    def __init__(self):
        self._records: Dict[str, EscrowRecord] = {}
        self._lock = asyncio.Lock()

    async def insert(self, record: EscrowRecord) -> bool:
        async with self._lock:
            if record.order_id in self._records:
                return False
            self._records[record.order_id] = replace(record)
            return True

    async def get(self, order_id: str) -> Optional[EscrowRecord]:
        record = self._records.get(order_id)
        return replace(record) if record else None

    async def get_by_payment_intent(self, payment_intent_ref: str) -> Optional[EscrowRecord]:
        for record in self._records.values():
            if record.payment_intent_ref == payment_intent_ref:
                return replace(record)
        return None

    async def transition(
        self,
        order_id: str,
        expected: Iterable[EscrowState],
        changes: Dict[str, Any],
        require_unclaimed: bool = False,
    ) -> Optional[EscrowRecord]:
        expected = frozenset(expected)
        async with self._lock:
            current = self._records.get(order_id)
            if current is None or current.state not in expected:
                return None
            if require_unclaimed and current.release_claimed_at is not None:
                return None
            updated = replace(current, **changes)
            self._records[order_id] = updated
            return replace(updated)

    async def claim(
        self,
        order_id: str,
        now: datetime,
        stale_before: datetime,
    ) -> Optional[EscrowRecord]:
        async with self._lock:
            current = self._records.get(order_id)
            if current is None or current.state not in RELEASABLE_STATES:
                return None
            if not current.is_due(now) or awaiting_manual_payout(current):
                return None
            if current.release_claimed_at is not None and current.release_claimed_at > stale_before:
                return None
            updated = replace(current, release_claimed_at=now, updated_at=now)
            self._records[order_id] = updated
            return replace(updated)

    async def list_due(self, now: datetime, limit: int) -> list[EscrowRecord]:
        due = [
            r for r in self._records.values()
            if r.state in RELEASABLE_STATES and r.is_due(now) and not awaiting_manual_payout(r)
        ]
        due.sort(key=lambda r: r.release_due_at)
        return [replace(r) for r in due[:limit]]


class EscrowLedger:
    """
    Owns escrow state transitions.

    Usage:
        ledger = EscrowLedger(store, hold_period=timedelta(days=7))
        await ledger.open(order_id, payment_intent_ref, ...)
        await ledger.authorize(order_id)
    """

    def __init__(
        self,
        store: EscrowStore,
        hold_period: timedelta = timedelta(days=7),
        release_claim_timeout: timedelta = timedelta(minutes=15),
    ):
        self.store = store
        self.hold_period = hold_period
        self.release_claim_timeout = release_claim_timeout

    async def get(self, order_id: str) -> EscrowRecord:
        record = await self.store.get(order_id)
        if record is None:
            raise RecordNotFound("Escrow", order_id)
        return record

    async def find_by_payment_intent(self, payment_intent_ref: str) -> Optional[EscrowRecord]:
        return await self.store.get_by_payment_intent(payment_intent_ref)

    async def _transition(
        self,
        order_id: str,
        expected: Iterable[EscrowState],
        changes: Dict[str, Any],
        require_unclaimed: bool = False,
    ) -> EscrowRecord:
        expected = frozenset(expected)
        updated = await self.store.transition(order_id, expected, changes, require_unclaimed)
        if updated is None:
            current = await self.get(order_id)
            raise StateConflictError(order_id, expected, current.state)
        logger.info(f"Escrow {order_id} → {updated.state.value}")
        return updated

    async def open(
        self,
        order_id: str,
        payment_intent_ref: str,
        seller_id: str,
        buyer_id: Optional[str],
        seller_amount: int,
        platform_fee: int,
        payout_destination: Optional[str] = None,
        destination_charge: bool = False,
    ) -> EscrowRecord:
        """Create an escrow record in `initiated`.

        Opening an order id that already exists returns the existing record.
        """
        record = EscrowRecord(
            order_id=order_id,
            payment_intent_ref=payment_intent_ref,
            seller_id=seller_id,
            buyer_id=buyer_id,
            seller_amount=seller_amount,
            platform_fee=platform_fee,
            payout_destination=payout_destination,
            destination_charge=destination_charge,
        )
        if not await self.store.insert(record):
            logger.info(f"Escrow {order_id} already open")
            return await self.get(order_id)
        logger.info(
            f"Escrow {order_id} opened for seller {seller_id}: "
            f"seller_amount={seller_amount} platform_fee={platform_fee}"
        )
        return record

    async def authorize(self, order_id: str, authorized_at: Optional[datetime] = None) -> EscrowRecord:
        """
        Mark funds authorized and start the hold period.

        A replayed authorization for a record already past `initiated` is a
        no-op that returns the record unchanged.
        """
        authorized_at = authorized_at or utcnow()
        current = await self.get(order_id)
        if current.authorized_at is not None and current.state is not EscrowState.REFUNDED:
            logger.debug(f"Escrow {order_id} already authorized; ignoring replay")
            return current
        return await self._transition(
            order_id,
            {EscrowState.INITIATED},
            {
                "state": EscrowState.AUTHORIZED,
                "authorized_at": authorized_at,
                "release_due_at": authorized_at + self.hold_period,
                "updated_at": authorized_at,
            },
        )

    async def claim_release(self, order_id: str, now: Optional[datetime] = None) -> Optional[EscrowRecord]:
        """Write the pending-release marker. Returns None if another worker holds it."""
        now = now or utcnow()
        claimed = await self.store.claim(order_id, now, stale_before=now - self.release_claim_timeout)
        if claimed is None:
            logger.debug(f"Escrow {order_id} release claim not acquired")
        return claimed

    async def mark_captured(self, order_id: str, now: Optional[datetime] = None) -> EscrowRecord:
        now = now or utcnow()
        return await self._transition(
            order_id,
            {EscrowState.AUTHORIZED},
            {"state": EscrowState.CAPTURED, "captured_at": now, "updated_at": now},
        )

    async def mark_released(
        self,
        order_id: str,
        transfer_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        now = now or utcnow()
        return await self._transition(
            order_id,
            {EscrowState.CAPTURED},
            {
                "state": EscrowState.RELEASED,
                "released_at": now,
                "transfer_ref": transfer_ref,
                "release_claimed_at": None,
                "closed_at": now,
                "close_reason": "released",
                "updated_at": now,
            },
        )

    async def await_manual_payout(self, order_id: str, now: Optional[datetime] = None) -> EscrowRecord:
        """Drop the release marker on a captured record left for ops to pay out."""
        now = now or utcnow()
        return await self._transition(
            order_id,
            {EscrowState.CAPTURED},
            {"release_claimed_at": None, "updated_at": now},
        )

    async def release_manual_payout(
        self,
        order_id: str,
        transfer_ref: str,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """Close a captured record after ops paid the seller out of band."""
        now = now or utcnow()
        return await self._transition(
            order_id,
            {EscrowState.CAPTURED},
            {
                "state": EscrowState.RELEASED,
                "released_at": now,
                "transfer_ref": transfer_ref,
                "release_claimed_at": None,
                "closed_at": now,
                "close_reason": "manual_payout",
                "updated_at": now,
            },
        )

    async def cancel(self, order_id: str, reason: str, now: Optional[datetime] = None) -> EscrowRecord:
        """Refund before capture: the authorization failed or was canceled."""
        now = now or utcnow()
        return await self._transition(
            order_id,
            {EscrowState.INITIATED, EscrowState.AUTHORIZED},
            {
                "state": EscrowState.REFUNDED,
                "release_claimed_at": None,
                "closed_at": now,
                "close_reason": reason,
                "updated_at": now,
            },
        )

    async def withdraw(self, order_id: str, reason: str, now: Optional[datetime] = None) -> EscrowRecord:
        """
        Close a record the platform is canceling before release.

        Refused while a settlement worker holds the release marker, so a
        withdrawal never races a capture or transfer in flight.
        """
        now = now or utcnow()
        return await self._transition(
            order_id,
            WITHDRAWABLE_STATES,
            {
                "state": EscrowState.REFUNDED,
                "closed_at": now,
                "close_reason": f"{WITHDRAWN_PREFIX}{reason}",
                "updated_at": now,
            },
            require_unclaimed=True,
        )

    async def record_dispute(self, order_id: str, reason: str, now: Optional[datetime] = None) -> EscrowRecord:
        """Freeze a record the buyer disputed before release."""
        now = now or utcnow()
        return await self._transition(
            order_id,
            {EscrowState.AUTHORIZED, EscrowState.CAPTURED},
            {
                "state": EscrowState.DISPUTED,
                "release_claimed_at": None,
                "closed_at": now,
                "close_reason": reason,
                "updated_at": now,
            },
        )

    async def due_for_release(self, now: Optional[datetime] = None, limit: int = 100) -> list[EscrowRecord]:
        return await self.store.list_due(now or utcnow(), limit)
