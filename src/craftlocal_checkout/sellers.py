"""Seller payout account readiness."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from craftlocal_checkout.models import SellerAccount

logger = logging.getLogger(__name__)


class SellerAccountStore(ABC):
    """Abstract interface for seller payout account storage."""

    @abstractmethod
    async def get(self, seller_id: str) -> Optional[SellerAccount]:
        pass

    @abstractmethod
    async def get_many(self, seller_ids: Iterable[str]) -> Dict[str, SellerAccount]:
        """Fetch accounts for several sellers. Unknown sellers are absent."""
        pass

    @abstractmethod
    async def get_by_connect_account(self, connect_account_id: str) -> Optional[SellerAccount]:
        pass

    @abstractmethod
    async def upsert(self, account: SellerAccount) -> SellerAccount:
        pass


class InMemorySellerAccountStore(SellerAccountStore):
    """In-memory seller account store for development and testing."""

    def __init__(self, accounts: Iterable[SellerAccount] = ()):
        self._accounts: Dict[str, SellerAccount] = {a.seller_id: a for a in accounts}

    async def get(self, seller_id: str) -> Optional[SellerAccount]:
        return self._accounts.get(seller_id)

    async def get_many(self, seller_ids: Iterable[str]) -> Dict[str, SellerAccount]:
        return {
            seller_id: self._accounts[seller_id]
            for seller_id in seller_ids
            if seller_id in self._accounts
        }

    async def get_by_connect_account(self, connect_account_id: str) -> Optional[SellerAccount]:
        for account in self._accounts.values():
            if account.connect_account_id == connect_account_id:
                return account
        return None

    async def upsert(self, account: SellerAccount) -> SellerAccount:
        self._accounts[account.seller_id] = account
        return account
