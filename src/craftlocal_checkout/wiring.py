"""Composition root: builds the engine from settings."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from craftlocal_checkout.api import CheckoutDeps
from craftlocal_checkout.config import CheckoutSettings, validate_settings
from craftlocal_checkout.connectors.base import PaymentProcessor
from craftlocal_checkout.connectors.stripe import StripeConnector
from craftlocal_checkout.database import Database, init_database
from craftlocal_checkout.escrow import EscrowLedger, EscrowStore, InMemoryEscrowStore
from craftlocal_checkout.intent_builder import (
    CheckoutIntentBuilder,
    CheckoutIntentStore,
    InMemoryCheckoutIntentStore,
)
from craftlocal_checkout.logging_config import setup_logging
from craftlocal_checkout.orchestrator import CheckoutService
from craftlocal_checkout.orders import InMemoryOrderStore, OrderStore
from craftlocal_checkout.pricing import CanonicalPricingStore, InMemoryPricingStore
from craftlocal_checkout.reminders import InMemoryReminderStore, ReminderScheduler, ReminderStore
from craftlocal_checkout.scheduler import CheckoutScheduler, register_settlement_job
from craftlocal_checkout.sellers import InMemorySellerAccountStore, SellerAccountStore
from craftlocal_checkout.settlement import SettlementWorker
from craftlocal_checkout.state import RedisStateStore
from craftlocal_checkout.verifier import CartVerifier
from craftlocal_checkout.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class Stores:
    pricing: CanonicalPricingStore
    sellers: SellerAccountStore
    intents: CheckoutIntentStore
    orders: OrderStore
    escrow: EscrowStore
    reminders: ReminderStore


@dataclass
class Engine:
    settings: CheckoutSettings
    stores: Stores
    processor: PaymentProcessor
    state: RedisStateStore
    ledger: EscrowLedger
    reminders: ReminderScheduler
    service: CheckoutService
    reconciler: WebhookReconciler
    settlement: SettlementWorker

    @property
    def deps(self) -> CheckoutDeps:
        return CheckoutDeps(service=self.service, reconciler=self.reconciler, processor=self.processor)


def in_memory_stores() -> Stores:
    return Stores(
        pricing=InMemoryPricingStore(),
        sellers=InMemorySellerAccountStore(),
        intents=InMemoryCheckoutIntentStore(),
        orders=InMemoryOrderStore(),
        escrow=InMemoryEscrowStore(),
        reminders=InMemoryReminderStore(),
    )


def postgres_stores() -> Stores:
    from craftlocal_checkout.postgres import (
        PostgresCheckoutIntentStore,
        PostgresEscrowStore,
        PostgresOrderStore,
        PostgresPricingStore,
        PostgresReminderStore,
        PostgresSellerAccountStore,
    )

    return Stores(
        pricing=PostgresPricingStore(),
        sellers=PostgresSellerAccountStore(),
        intents=PostgresCheckoutIntentStore(),
        orders=PostgresOrderStore(),
        escrow=PostgresEscrowStore(),
        reminders=PostgresReminderStore(),
    )


def build_engine(
    settings: CheckoutSettings,
    stores: Optional[Stores] = None,
    processor: Optional[PaymentProcessor] = None,
) -> Engine:
    """Wire every component. Stores default to PostgreSQL when a database URL is set."""
    if stores is None:
        stores = postgres_stores() if settings.database_url else in_memory_stores()
    if processor is None:
        processor = StripeConnector(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_base=settings.stripe_api_base,
            timeout=settings.processor_timeout_seconds,
            currency=settings.currency,
        )

    builder = CheckoutIntentBuilder(settings.metadata_signing_secret, currency=settings.currency)
    ledger = EscrowLedger(
        stores.escrow,
        hold_period=settings.hold_period,
        release_claim_timeout=settings.release_claim_timeout,
    )
    reminders = ReminderScheduler(stores.reminders, pickup_ready_buffer=settings.pickup_ready_buffer)
    state = RedisStateStore(namespace="webhooks", redis_url=settings.redis_url)

    service = CheckoutService(
        settings=settings,
        verifier=CartVerifier(stores.pricing),
        seller_store=stores.sellers,
        intent_builder=builder,
        intent_store=stores.intents,
        processor=processor,
        ledger=ledger,
    )
    reconciler = WebhookReconciler(
        state=state,
        intent_builder=builder,
        intent_store=stores.intents,
        order_store=stores.orders,
        pricing_store=stores.pricing,
        seller_store=stores.sellers,
        ledger=ledger,
        reminders=reminders,
        processor=processor,
        event_ttl_seconds=settings.webhook_event_ttl_seconds,
    )
    settlement = SettlementWorker(ledger, processor, batch_size=settings.settlement_batch_size)

    return Engine(
        settings=settings,
        stores=stores,
        processor=processor,
        state=state,
        ledger=ledger,
        reminders=reminders,
        service=service,
        reconciler=reconciler,
        settlement=settlement,
    )


async def start_engine(settings: CheckoutSettings) -> tuple[Engine, CheckoutScheduler]:
    """Validate configuration, prepare storage and start the settlement schedule."""
    validate_settings(settings)
    setup_logging(level=settings.log_level, json_format=settings.log_json)
    if settings.database_url:
        Database.configure(settings.database_url)
        await init_database()

    engine = build_engine(settings)
    scheduler = CheckoutScheduler()
    register_settlement_job(scheduler, engine.settlement, interval_seconds=settings.settlement_interval_seconds)
    await scheduler.start()
    logger.info("Checkout engine started (environment=%s)", settings.environment)
    return engine, scheduler


async def stop_engine(engine: Engine, scheduler: CheckoutScheduler) -> None:
    await scheduler.shutdown()
    await engine.processor.close()
    await engine.state.close()
    await Database.close()
