"""Canonical configuration surface for the checkout engine."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from craftlocal_checkout.exceptions import ConfigurationError
from craftlocal_checkout.models import CheckoutMode

# Standard multi-item checkout earns 10%; escrow / manual-capture earns 5%.
DEFAULT_STANDARD_FEE_RATE = Decimal("0.10")
DEFAULT_ESCROW_FEE_RATE = Decimal("0.05")
DEFAULT_HOLD_PERIOD_DAYS = 7
DEFAULT_PICKUP_READY_BUFFER_MINUTES = 60


@dataclass(frozen=True)
class FeePolicy:
    """Platform fee policy selected per checkout mode.

    Standard mode adds the fee on top of the cart subtotal (buyer pays).
    Escrow mode deducts the fee from each seller group (seller receives less).
    """
    mode: CheckoutMode
    rate: Decimal

    @property
    def is_additive(self) -> bool:
        return self.mode is CheckoutMode.STANDARD

    @property
    def fee_percentage(self) -> str:
        return f"{self.rate * 100:.2f}%"


class CheckoutSettings(BaseSettings):
    """Checkout engine configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    currency: str = "usd"

    # Fee policy per checkout mode
    standard_fee_rate: Decimal = DEFAULT_STANDARD_FEE_RATE
    escrow_fee_rate: Decimal = DEFAULT_ESCROW_FEE_RATE

    # Escrow and reminders
    hold_period_days: int = DEFAULT_HOLD_PERIOD_DAYS
    pickup_ready_buffer_minutes: int = DEFAULT_PICKUP_READY_BUFFER_MINUTES

    # Settlement worker
    settlement_interval_seconds: int = 300
    settlement_batch_size: int = 100
    release_claim_timeout_seconds: int = 900
    # Escrow payouts: destination charge (paid on capture) or a separate
    # transfer after capture
    escrow_destination_charges: bool = False

    # Payment processor
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base: str = "https://api.stripe.com/v1"
    processor_timeout_seconds: float = 30.0

    # HMAC key for the checkout metadata blob
    metadata_signing_secret: str = ""

    success_url: str = "https://craftlocal.co/checkout/success?session_id={CHECKOUT_SESSION_ID}"
    cancel_url: str = "https://craftlocal.co/cart"

    # Storage
    database_url: str = Field(default="", validate_default=True)
    redis_url: str = Field(default="", validate_default=True)
    webhook_event_ttl_seconds: int = 24 * 60 * 60

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "CRAFTLOCAL_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("database_url", mode="before")
    @classmethod
    def set_database_default(cls, v: str) -> str:
        """Use DATABASE_URL if not set."""
        if not v:
            v = os.getenv("DATABASE_URL", "")
        return v

    @field_validator("redis_url", mode="before")
    @classmethod
    def set_redis_default(cls, v: str) -> str:
        if not v:
            v = os.getenv("REDIS_URL", "")
        return v

    @property
    def hold_period(self) -> timedelta:
        return timedelta(days=self.hold_period_days)

    @property
    def pickup_ready_buffer(self) -> timedelta:
        return timedelta(minutes=self.pickup_ready_buffer_minutes)

    @property
    def release_claim_timeout(self) -> timedelta:
        return timedelta(seconds=self.release_claim_timeout_seconds)

    def fee_policy(self, mode: CheckoutMode) -> FeePolicy:
        """Resolve the configured fee policy for a checkout mode."""
        if mode is CheckoutMode.ESCROW:
            return FeePolicy(mode=mode, rate=self.escrow_fee_rate)
        return FeePolicy(mode=mode, rate=self.standard_fee_rate)


def validate_settings(settings: CheckoutSettings) -> CheckoutSettings:
    """Fail fast on configuration the engine cannot run with.

    Called once at startup, never per request.

    Raises:
        ConfigurationError: describing every problem found
    """
    problems: list[str] = []

    for name in ("standard_fee_rate", "escrow_fee_rate"):
        rate = getattr(settings, name)
        if rate < 0 or rate >= 1:
            problems.append(f"{name} must be in [0, 1), got {rate}")

    if settings.hold_period_days < 0:
        problems.append("hold_period_days must not be negative")
    if settings.pickup_ready_buffer_minutes < 0:
        problems.append("pickup_ready_buffer_minutes must not be negative")
    if settings.settlement_interval_seconds <= 0:
        problems.append("settlement_interval_seconds must be positive")

    if settings.environment != "dev":
        if not settings.stripe_secret_key:
            problems.append("stripe_secret_key is required outside dev")
        if not settings.stripe_webhook_secret:
            problems.append("stripe_webhook_secret is required outside dev")
        if len(settings.metadata_signing_secret) < 32:
            problems.append("metadata_signing_secret must be at least 32 characters outside dev")
        if not settings.redis_url:
            problems.append("redis_url is required outside dev")

    if problems:
        raise ConfigurationError(
            "Invalid checkout configuration: " + "; ".join(problems),
            details={"problems": problems},
        )
    return settings


@lru_cache
def load_settings(env_file: str | None = None) -> CheckoutSettings:
    """Load CheckoutSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return CheckoutSettings(_env_file=env_path)
