"""
Escrow ledger state machine tests.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from craftlocal_checkout.escrow import EscrowLedger, InMemoryEscrowStore, awaiting_manual_payout
from craftlocal_checkout.exceptions import RecordNotFound, StateConflictError
from craftlocal_checkout.models import EscrowRecord, EscrowState

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _ledger() -> EscrowLedger:
    return EscrowLedger(InMemoryEscrowStore(), hold_period=timedelta(days=7))


async def _open(ledger: EscrowLedger, order_id: str = "ord_1", destination: str | None = "acct_c") -> EscrowRecord:
    return await ledger.open(
        order_id=order_id,
        payment_intent_ref=f"pi_{order_id}",
        seller_id="seller_c",
        buyer_id="buyer_1",
        seller_amount=9500,
        platform_fee=500,
        payout_destination=destination,
    )


class TestEscrowRecord:
    """Transition table."""

    def test_valid_transitions(self):
        record = EscrowRecord("ord_1", "pi_1", "seller_c", None, 9500, 500)
        assert record.can_transition_to(EscrowState.AUTHORIZED)
        assert record.can_transition_to(EscrowState.REFUNDED)
        assert not record.can_transition_to(EscrowState.CAPTURED)
        assert not record.can_transition_to(EscrowState.RELEASED)

    def test_terminal_states(self):
        for state in (EscrowState.RELEASED, EscrowState.REFUNDED, EscrowState.DISPUTED):
            record = EscrowRecord("ord_1", "pi_1", "seller_c", None, 9500, 500, state=state)
            assert record.is_terminal
            assert not any(record.can_transition_to(s) for s in EscrowState)

    def test_total_amount(self):
        assert EscrowRecord("ord_1", "pi_1", "seller_c", None, 9500, 500).total_amount == 10000


class TestEscrowLedger:
    """Compare-and-swap transitions."""

    @pytest.mark.asyncio
    async def test_open_is_idempotent(self):
        ledger = _ledger()
        first = await _open(ledger)
        second = await _open(ledger)

        assert first.state is EscrowState.INITIATED
        assert second.order_id == first.order_id
        assert second.state is EscrowState.INITIATED

    @pytest.mark.asyncio
    async def test_authorize_sets_release_due(self):
        ledger = _ledger()
        await _open(ledger)
        record = await ledger.authorize("ord_1", authorized_at=T0)

        assert record.state is EscrowState.AUTHORIZED
        assert record.authorized_at == T0
        assert record.release_due_at == T0 + timedelta(days=7)
        assert not record.is_due(T0 + timedelta(days=6))
        assert record.is_due(T0 + timedelta(days=7))

    @pytest.mark.asyncio
    async def test_authorize_replay_is_noop(self):
        """A redelivered authorization keeps the original hold start."""
        ledger = _ledger()
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)
        replay = await ledger.authorize("ord_1", authorized_at=T0 + timedelta(days=2))

        assert replay.authorized_at == T0
        assert replay.release_due_at == T0 + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_capture_then_release(self):
        ledger = _ledger()
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)
        await ledger.mark_captured("ord_1", now=T0 + timedelta(days=7))
        record = await ledger.mark_released("ord_1", transfer_ref="tr_1", now=T0 + timedelta(days=7))

        assert record.state is EscrowState.RELEASED
        assert record.transfer_ref == "tr_1"
        assert record.close_reason == "released"
        assert record.release_claimed_at is None

    @pytest.mark.asyncio
    async def test_release_before_capture_conflicts(self):
        ledger = _ledger()
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)

        with pytest.raises(StateConflictError) as exc_info:
            await ledger.mark_released("ord_1")
        assert exc_info.value.actual is EscrowState.AUTHORIZED
        assert exc_info.value.details["expected"] == ["captured"]

    @pytest.mark.asyncio
    async def test_released_is_terminal(self):
        ledger = _ledger()
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)
        await ledger.mark_captured("ord_1")
        await ledger.mark_released("ord_1")

        with pytest.raises(StateConflictError):
            await ledger.cancel("ord_1", reason="late")
        with pytest.raises(StateConflictError):
            await ledger.record_dispute("ord_1", reason="fraudulent")

    @pytest.mark.asyncio
    async def test_cancel_before_capture(self):
        ledger = _ledger()
        await _open(ledger)
        record = await ledger.cancel("ord_1", reason="payment_intent.payment_failed")

        assert record.state is EscrowState.REFUNDED
        assert record.close_reason == "payment_intent.payment_failed"

    @pytest.mark.asyncio
    async def test_cancel_after_capture_conflicts(self):
        ledger = _ledger()
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)
        await ledger.mark_captured("ord_1")

        with pytest.raises(StateConflictError):
            await ledger.cancel("ord_1", reason="payment_intent.canceled")

    @pytest.mark.asyncio
    async def test_dispute_freezes_captured_record(self):
        ledger = _ledger()
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)
        await ledger.mark_captured("ord_1")
        record = await ledger.record_dispute("ord_1", reason="product_not_received")

        assert record.state is EscrowState.DISPUTED
        assert await ledger.due_for_release(T0 + timedelta(days=30)) == []

    @pytest.mark.asyncio
    async def test_missing_record(self):
        with pytest.raises(RecordNotFound):
            await _ledger().get("ord_missing")

    @pytest.mark.asyncio
    async def test_find_by_payment_intent(self):
        ledger = _ledger()
        await _open(ledger)
        record = await ledger.find_by_payment_intent("pi_ord_1")
        assert record is not None and record.order_id == "ord_1"
        assert await ledger.find_by_payment_intent("pi_other") is None

    @pytest.mark.asyncio
    async def test_concurrent_captures_apply_once(self):
        ledger = _ledger()
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)

        results = await asyncio.gather(
            ledger.mark_captured("ord_1"),
            ledger.mark_captured("ord_1"),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, EscrowRecord)) == 1
        assert sum(1 for r in results if isinstance(r, StateConflictError)) == 1


class TestReleaseClaim:
    """Pending-release marker."""

    @pytest.mark.asyncio
    async def test_claim_only_when_due(self):
        ledger = _ledger()
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)

        assert await ledger.claim_release("ord_1", T0 + timedelta(days=6)) is None
        claimed = await ledger.claim_release("ord_1", T0 + timedelta(days=7))
        assert claimed is not None
        assert claimed.release_claimed_at == T0 + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_second_claim_lost_until_stale(self):
        ledger = EscrowLedger(
            InMemoryEscrowStore(),
            hold_period=timedelta(days=7),
            release_claim_timeout=timedelta(minutes=15),
        )
        await _open(ledger)
        await ledger.authorize("ord_1", authorized_at=T0)
        due = T0 + timedelta(days=7)

        assert await ledger.claim_release("ord_1", due) is not None
        assert await ledger.claim_release("ord_1", due + timedelta(minutes=5)) is None
        assert await ledger.claim_release("ord_1", due + timedelta(minutes=16)) is not None

    @pytest.mark.asyncio
    async def test_manual_payout_records_not_due(self):
        ledger = _ledger()
        await _open(ledger, destination=None)
        await ledger.authorize("ord_1", authorized_at=T0)
        await ledger.mark_captured("ord_1")
        record = await ledger.get("ord_1")

        assert awaiting_manual_payout(record)
        assert await ledger.due_for_release(T0 + timedelta(days=8)) == []
        assert await ledger.claim_release("ord_1", T0 + timedelta(days=8)) is None

        released = await ledger.release_manual_payout("ord_1", transfer_ref="manual_123")
        assert released.state is EscrowState.RELEASED
        assert released.close_reason == "manual_payout"

    @pytest.mark.asyncio
    async def test_due_for_release_oldest_first(self):
        ledger = _ledger()
        for i, offset in enumerate([2, 0, 1]):
            await _open(ledger, order_id=f"ord_{i}")
            await ledger.authorize(f"ord_{i}", authorized_at=T0 + timedelta(hours=offset))

        due = await ledger.due_for_release(T0 + timedelta(days=8), limit=2)
        assert [r.order_id for r in due] == ["ord_1", "ord_2"]
