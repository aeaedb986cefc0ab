"""Order storage, unique per (processor reference, seller)."""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Optional, Tuple

from craftlocal_checkout.models import Order, PaymentStatus, utcnow

logger = logging.getLogger(__name__)


def generate_order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:20]}"


class OrderStore(ABC):
    """Abstract interface for order storage."""

    @abstractmethod
    async def upsert(self, order: Order) -> Tuple[Order, bool]:
        """
        Insert an order unless one exists for its (processor_ref, seller_id).

        Returns the stored order and whether it was created by this call.
        An existing order is returned unchanged.
        """
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_by_processor_ref(self, processor_ref: str) -> list[Order]:
        pass

    @abstractmethod
    async def update_payment_status(self, processor_ref: str, status: PaymentStatus) -> int:
        """Set the payment status of every order for a processor reference.

        Returns the number of orders updated.
        """
        pass


class InMemoryOrderStore(OrderStore):
    """In-memory order store for development and testing."""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._by_ref: Dict[Tuple[str, str], str] = {}

    async def upsert(self, order: Order) -> Tuple[Order, bool]:
        key = (order.processor_ref, order.seller_id)
        existing_id = self._by_ref.get(key)
        if existing_id is not None:
            return self._orders[existing_id], False
        self._orders[order.order_id] = order
        self._by_ref[key] = order.order_id
        return order, True

    async def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    async def list_by_processor_ref(self, processor_ref: str) -> list[Order]:
        return [o for o in self._orders.values() if o.processor_ref == processor_ref]

    async def update_payment_status(self, processor_ref: str, status: PaymentStatus) -> int:
        updated = 0
        for order in await self.list_by_processor_ref(processor_ref):
            self._orders[order.order_id] = replace(order, payment_status=status, updated_at=utcnow())
            updated += 1
        return updated
