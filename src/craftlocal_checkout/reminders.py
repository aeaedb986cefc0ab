"""Time-scheduled order reminders.

Pickup orders get two reminders: the seller is told to prepare the order
immediately, and the buyer is told it is ready after a buffer. Shipped
orders get none. Each order's reminders are scheduled exactly once.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence, Tuple

from craftlocal_checkout.exceptions import RecordNotFound
from craftlocal_checkout.models import FulfillmentMethod, Order, Reminder, ReminderType, utcnow

logger = logging.getLogger(__name__)


class ReminderStore(ABC):
    """Abstract interface for reminder storage.

    Reminders are unique per (order_id, type).
    """

    @abstractmethod
    async def add_batch(self, reminders: Sequence[Reminder]) -> bool:
        """
        Insert all reminders, or none if any (order_id, type) already exists.

        Returns True if inserted.
        """
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> list[Reminder]:
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int) -> list[Reminder]:
        pass

    @abstractmethod
    async def mark_delivered(self, reminder_id: str, delivered_at: datetime) -> Optional[Reminder]:
        pass


class InMemoryReminderStore(ReminderStore):
    """In-memory reminder store for development and testing."""

    def __init__(self):
        self._reminders: Dict[Tuple[str, ReminderType], Reminder] = {}

    async def add_batch(self, reminders: Sequence[Reminder]) -> bool:
        keys = [(r.order_id, r.type) for r in reminders]
        if any(key in self._reminders for key in keys):
            return False
        for key, reminder in zip(keys, reminders):
            self._reminders[key] = reminder
        return True

    async def list_for_order(self, order_id: str) -> list[Reminder]:
        return [r for (oid, _), r in self._reminders.items() if oid == order_id]

    async def list_due(self, now: datetime, limit: int) -> list[Reminder]:
        due = [r for r in self._reminders.values() if not r.delivered and r.scheduled_for <= now]
        due.sort(key=lambda r: r.scheduled_for)
        return due[:limit]

    async def mark_delivered(self, reminder_id: str, delivered_at: datetime) -> Optional[Reminder]:
        for key, reminder in self._reminders.items():
            if reminder.reminder_id == reminder_id:
                updated = replace(reminder, delivered=True, delivered_at=delivered_at)
                self._reminders[key] = updated
                return updated
        return None


class ReminderScheduler:
    """Creates and tracks reminders for finalized orders."""

    def __init__(self, store: ReminderStore, pickup_ready_buffer: timedelta = timedelta(minutes=60)):
        self.store = store
        self.pickup_ready_buffer = pickup_ready_buffer

    async def schedule(
        self,
        order: Order,
        fulfillment_method: Optional[FulfillmentMethod] = None,
        now: Optional[datetime] = None,
    ) -> list[Reminder]:
        """
        Schedule reminders for an order.

        Returns the reminders for the order; calling again for the same
        order returns the ones already scheduled.
        """
        method = fulfillment_method or order.fulfillment_method
        if method is not FulfillmentMethod.LOCAL_PICKUP:
            return []

        now = now or utcnow()
        reminders = [
            Reminder(
                order_id=order.order_id,
                type=ReminderType.SELLER_PREPARE,
                scheduled_for=now,
                recipient_id=order.seller_id,
            ),
        ]
        # Guest checkouts are reached by email
        buyer_contact = order.buyer_id or order.customer_email
        if buyer_contact:
            reminders.append(
                Reminder(
                    order_id=order.order_id,
                    type=ReminderType.PICKUP_READY,
                    scheduled_for=now + self.pickup_ready_buffer,
                    recipient_id=buyer_contact,
                )
            )
        else:
            logger.warning(f"Order {order.order_id} has no buyer contact; skipping pickup_ready reminder")

        if not await self.store.add_batch(reminders):
            logger.debug(f"Reminders for order {order.order_id} already scheduled")
            return await self.store.list_for_order(order.order_id)

        logger.info(f"Scheduled {len(reminders)} reminder(s) for order {order.order_id}")
        return reminders

    async def due(self, now: Optional[datetime] = None, limit: int = 100) -> list[Reminder]:
        """Undelivered reminders whose time has come, for the notifier."""
        return await self.store.list_due(now or utcnow(), limit)

    async def mark_delivered(self, reminder_id: str, now: Optional[datetime] = None) -> Reminder:
        reminder = await self.store.mark_delivered(reminder_id, now or utcnow())
        if reminder is None:
            raise RecordNotFound("Reminder", reminder_id)
        return reminder
