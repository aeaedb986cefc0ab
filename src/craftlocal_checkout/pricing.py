"""Canonical pricing store: the listing/inventory table of record."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, Optional, Sequence

from craftlocal_checkout.models import InventoryRecord

logger = logging.getLogger(__name__)


class CanonicalPricingStore(ABC):
    """Abstract interface for authoritative listing prices and inventory."""

    @abstractmethod
    async def fetch_many(self, listing_ids: Sequence[str]) -> Dict[str, InventoryRecord]:
        """
        Fetch listings by id in one batch.

        Ids that do not exist are absent from the result.
        """
        pass

    @abstractmethod
    async def decrement_inventory(self, listing_id: str, quantity: int) -> Optional[int]:
        """
        Decrement tracked inventory, clamped at zero.

        Returns the remaining quantity, or None for unlimited listings.
        """
        pass


class InMemoryPricingStore(CanonicalPricingStore):
    """In-memory pricing store for development and testing."""

    def __init__(self, records: Iterable[InventoryRecord] = ()):
        self._records: Dict[str, InventoryRecord] = {r.listing_id: r for r in records}
        self.fetch_calls = 0

    def add(self, record: InventoryRecord) -> None:
        self._records[record.listing_id] = record

    async def fetch_many(self, listing_ids: Sequence[str]) -> Dict[str, InventoryRecord]:
        self.fetch_calls += 1
        return {
            listing_id: self._records[listing_id]
            for listing_id in listing_ids
            if listing_id in self._records
        }

    async def decrement_inventory(self, listing_id: str, quantity: int) -> Optional[int]:
        record = self._records.get(listing_id)
        if record is None:
            logger.warning(f"Cannot decrement inventory for unknown listing '{listing_id}'")
            return None
        if record.available_quantity is None:
            return None
        remaining = max(record.available_quantity - quantity, 0)
        self._records[listing_id] = replace(record, available_quantity=remaining)
        return remaining
