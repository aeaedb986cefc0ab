"""
Settlement worker: captures and releases escrowed funds once the hold
period has elapsed.

Safe to run as several concurrent instances. Each record is claimed with a
pending-release marker before any money moves, and every processor call
carries a per-order idempotency key, so a record is captured and paid out
at most once even across crashes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from craftlocal_checkout.connectors.base import PaymentProcessor
from craftlocal_checkout.escrow import EscrowLedger
from craftlocal_checkout.exceptions import StateConflictError
from craftlocal_checkout.logging_config import set_order_context
from craftlocal_checkout.models import EscrowRecord, EscrowState, utcnow

logger = logging.getLogger("craftlocal.settlement")


def capture_key(order_id: str) -> str:
    return f"capture:{order_id}"


def transfer_key(order_id: str) -> str:
    return f"transfer:{order_id}"


@dataclass
class SettlementReport:
    """Outcome counts for one settlement run."""

    examined: int = 0
    released: int = 0
    captured_only: int = 0
    skipped: int = 0
    failed: int = 0
    failed_order_ids: list[str] = field(default_factory=list)


class SettlementWorker:
    """Releases due escrow records."""

    def __init__(
        self,
        ledger: EscrowLedger,
        processor: PaymentProcessor,
        batch_size: int = 100,
    ):
        self.ledger = ledger
        self.processor = processor
        self.batch_size = batch_size

    async def run_once(self, now: Optional[datetime] = None) -> SettlementReport:
        """Process every due record once. Failures are left for the next run."""
        now = now or utcnow()
        report = SettlementReport()
        due = await self.ledger.due_for_release(now, limit=self.batch_size)
        for record in due:
            report.examined += 1
            set_order_context(record.order_id)
            try:
                outcome = await self._settle(record, now)
            except StateConflictError as e:
                # Lost a race with another worker or a webhook
                logger.warning(f"Settlement of {record.order_id} skipped: {e.message}")
                report.skipped += 1
                continue
            except Exception as e:
                logger.error(f"Settlement of {record.order_id} failed: {e}", exc_info=True)
                report.failed += 1
                report.failed_order_ids.append(record.order_id)
                continue

            if outcome == "released":
                report.released += 1
            elif outcome == "captured":
                report.captured_only += 1
            else:
                report.skipped += 1

        if report.examined:
            logger.info(
                f"Settlement run: examined={report.examined} released={report.released} "
                f"captured_only={report.captured_only} skipped={report.skipped} failed={report.failed}"
            )
        return report

    async def _settle(self, record: EscrowRecord, now: datetime) -> str:
        current = await self.ledger.get(record.order_id)
        if current.state not in (EscrowState.AUTHORIZED, EscrowState.CAPTURED):
            logger.info(f"Escrow {current.order_id} is {current.state.value}; not releasing")
            return "skipped"

        claimed = await self.ledger.claim_release(current.order_id, now)
        if claimed is None:
            return "skipped"

        if claimed.state is EscrowState.AUTHORIZED:
            await self.processor.capture_payment_intent(
                claimed.payment_intent_ref,
                idempotency_key=capture_key(claimed.order_id),
            )
            claimed = await self.ledger.mark_captured(claimed.order_id, now)

        if claimed.destination_charge:
            # The processor paid the seller on capture
            await self.ledger.mark_released(claimed.order_id, now=now)
            return "released"

        if claimed.payout_destination:
            transfer_ref = await self.processor.create_transfer(
                amount_cents=claimed.seller_amount,
                destination=claimed.payout_destination,
                idempotency_key=transfer_key(claimed.order_id),
                transfer_group=f"escrow_{claimed.order_id}",
                metadata={"order_id": claimed.order_id, "seller_id": claimed.seller_id},
            )
            await self.ledger.mark_released(claimed.order_id, transfer_ref=transfer_ref, now=now)
            return "released"

        logger.warning(
            f"Escrow {claimed.order_id} captured but seller {claimed.seller_id} "
            "has no payout destination; awaiting manual payout"
        )
        await self.ledger.await_manual_payout(claimed.order_id, now)
        return "captured"


async def run_settlement(worker: SettlementWorker) -> None:
    """Scheduled job entrypoint."""
    try:
        logger.info("Starting settlement job")
        await worker.run_once()
    except Exception as e:
        logger.error(f"Settlement job failed: {e}", exc_info=True)
        raise
