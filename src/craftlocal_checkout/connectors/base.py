"""Base payment processor interface."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from craftlocal_checkout.models import ProcessorPaymentIntent, ProcessorSession


class PaymentProcessor(ABC):
    """Abstract interface for the external payment processor.

    Every money-moving call takes an idempotency key so that a retried call
    never moves money twice.
    """

    @abstractmethod
    async def create_checkout_session(
        self,
        payload: Dict[str, Any],
        idempotency_key: str,
    ) -> ProcessorSession:
        """
        Create a hosted checkout session.

        Args:
            payload: Session request built by CheckoutIntentBuilder
            idempotency_key: Key for safe retries

        Returns:
            ProcessorSession with the redirect URL
        """
        pass

    @abstractmethod
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        capture_method: str = "manual",
        transfer_data: Optional[Dict[str, Any]] = None,
        application_fee_amount: Optional[int] = None,
    ) -> ProcessorPaymentIntent:
        """
        Create a payment intent, by default authorize-only.

        `transfer_data` makes it a destination charge: on capture the
        processor pays the seller directly, keeping `application_fee_amount`.
        """
        pass

    @abstractmethod
    async def capture_payment_intent(
        self,
        payment_intent_id: str,
        idempotency_key: str,
    ) -> ProcessorPaymentIntent:
        pass

    @abstractmethod
    async def cancel_payment_intent(
        self,
        payment_intent_id: str,
        idempotency_key: str,
    ) -> ProcessorPaymentIntent:
        pass

    @abstractmethod
    async def create_transfer(
        self,
        amount_cents: int,
        destination: str,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Move funds to a connected account. Returns the transfer id."""
        pass

    @abstractmethod
    async def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: Optional[int] = None,
    ) -> str:
        """Refund a captured payment. Returns the refund id."""
        pass

    @abstractmethod
    def construct_event(self, payload: bytes, signature_header: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: signature missing, stale or invalid
        """
        pass

    async def close(self) -> None:
        pass
