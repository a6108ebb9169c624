#!/usr/bin/env python3
"""Unit tests for the RequestLedger module."""

import asyncio
import logging

import pytest

from src.anyrand_operator.models import (
    EventKind,
    FulfillmentOutcome,
    RandomnessRequest,
    RandomnessRequestedEvent,
    RequestResolvedEvent,
    RequestState,
)
from src.anyrand_operator.request_ledger import RequestLedger
from src.anyrand_operator.round_clock import RoundClock

REQUESTER = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb7"
KEY_ID = "0x" + "ab" * 32


def requested(request_id: int, deadline: int = 1600, fee_paid: int = 10**15, log_index: int = 0):
    return RandomnessRequestedEvent(
        request_id=request_id,
        requester=REQUESTER,
        beacon_key_id=KEY_ID,
        deadline=deadline,
        callback_gas_budget=100_000,
        fee_paid=fee_paid,
        block_number=100,
        transaction_hash=f"0x{request_id:064x}",
        log_index=log_index
    )


def resolved(request_id: int, kind: EventKind = EventKind.FULFILLED, tx_hash: str | None = None):
    return RequestResolvedEvent(
        request_id=request_id,
        requester=REQUESTER,
        kind=kind,
        randomness=12345,
        actual_gas_used=50_000,
        block_number=200,
        transaction_hash=tx_hash or f"0x{request_id + 1000:064x}",
        log_index=1
    )


def snapshot_row(request_id: int, state: RequestState = RequestState.PENDING, round: int | None = None):
    terminal = state.is_terminal
    return RandomnessRequest(
        request_id=request_id,
        requester=REQUESTER,
        deadline=1600,
        callback_gas_budget=100_000,
        fee_paid=10**15,
        beacon_key_id=KEY_ID,
        round=round,
        state=state,
        randomness=777 if terminal else None,
        callback_succeeded=(state == RequestState.FULFILLED) if terminal else None,
        actual_gas_used=40_000 if terminal else None
    )


@pytest.fixture
def ledger():
    """Create a ledger on a 30 second round schedule starting at 1000."""
    return RequestLedger(RoundClock(genesis_time=1000, period=30), max_terminal_entries=100)


class TestEventApplication:
    """Tests for applying chain events."""

    @pytest.mark.asyncio
    async def test_requested_creates_pending_entry(self, ledger):
        """Test a Requested event inserts a pending request with its derived round."""
        assert await ledger.apply_event(requested(1)) is True

        request = ledger.get(1)
        assert request.state == RequestState.PENDING
        assert request.round == 21
        assert request.creation_tx_hash == f"0x{1:064x}"
        assert request.randomness is None

    @pytest.mark.asyncio
    async def test_duplicate_requested_is_idempotent(self, ledger):
        """Test applying the same event twice changes nothing the second time."""
        await ledger.apply_event(requested(1))
        before = ledger.get(1)

        assert await ledger.apply_event(requested(1)) is False
        assert ledger.get(1) == before
        assert ledger.events_ignored == 1

    @pytest.mark.asyncio
    async def test_fulfilled_event(self, ledger):
        """Test a Fulfilled event resolves a pending request."""
        await ledger.apply_event(requested(1))
        await ledger.apply_event(resolved(1))

        request = ledger.get(1)
        assert request.state == RequestState.FULFILLED
        assert request.randomness == 12345
        assert request.callback_succeeded is True
        assert request.actual_gas_used == 50_000
        assert request.round == 21

    @pytest.mark.asyncio
    async def test_first_terminal_state_wins(self, ledger):
        """Test a later conflicting resolution is ignored."""
        await ledger.apply_event(requested(1))
        await ledger.apply_event(resolved(1, EventKind.CALLBACK_FAILED))

        assert await ledger.apply_event(resolved(1, EventKind.FULFILLED)) is False
        request = ledger.get(1)
        assert request.state == RequestState.FAILED
        assert request.callback_succeeded is False

    @pytest.mark.asyncio
    async def test_resolution_before_request_creates_placeholder(self, ledger):
        """Test an early resolution is kept and later completed by the Requested event."""
        await ledger.apply_event(resolved(7))

        placeholder = ledger.get(7)
        assert placeholder.state == RequestState.FULFILLED
        assert placeholder.details_known is False
        assert placeholder.round is None

        await ledger.apply_event(requested(7))

        request = ledger.get(7)
        assert request.state == RequestState.FULFILLED
        assert request.details_known is True
        assert request.deadline == 1600
        assert request.round == 21
        assert request.randomness == 12345

    @pytest.mark.asyncio
    async def test_malformed_events_dropped(self, ledger, caplog):
        """Test malformed input is dropped with a warning instead of raising."""
        caplog.set_level(logging.WARNING)
        bad = RandomnessRequestedEvent(
            request_id=1,
            requester="",
            beacon_key_id=KEY_ID,
            deadline=1600,
            callback_gas_budget=100_000,
            fee_paid=1,
            block_number=1,
            transaction_hash="0x01",
            log_index=0
        )

        assert await ledger.apply_event(bad) is False
        assert await ledger.apply_event({"requestId": 1}) is False
        assert len(ledger) == 0
        assert ledger.events_dropped == 2
        assert "Dropping malformed ledger event" in caplog.text


class TestSnapshots:
    """Tests for merging snapshot reads."""

    @pytest.mark.asyncio
    async def test_snapshot_inserts_unknown_rows(self, ledger):
        """Test unknown rows are inserted and nonexistent rows skipped."""
        nonexistent = snapshot_row(3, RequestState.NONEXISTENT)

        changed = await ledger.apply_snapshot([snapshot_row(1), snapshot_row(2, RequestState.FAILED), nonexistent])

        assert changed == 2
        assert ledger.get(1).state == RequestState.PENDING
        assert ledger.get(1).round == 21
        assert ledger.get(2).state == RequestState.FAILED
        assert ledger.get(3) is None

    @pytest.mark.asyncio
    async def test_stale_snapshot_never_downgrades(self, ledger):
        """Test a pending snapshot row read after a Fulfilled event keeps Fulfilled."""
        await ledger.apply_event(requested(5))
        await ledger.apply_event(resolved(5))

        changed = await ledger.apply_snapshot([snapshot_row(5, RequestState.PENDING)])

        assert changed == 0
        request = ledger.get(5)
        assert request.state == RequestState.FULFILLED
        assert request.randomness == 12345

    @pytest.mark.asyncio
    async def test_snapshot_advances_pending(self, ledger):
        """Test a terminal snapshot row resolves a pending entry."""
        await ledger.apply_event(requested(1))

        assert await ledger.apply_snapshot([snapshot_row(1, RequestState.FULFILLED)]) == 1
        request = ledger.get(1)
        assert request.state == RequestState.FULFILLED
        assert request.randomness == 777
        assert request.actual_gas_used == 40_000

    @pytest.mark.asyncio
    async def test_round_is_immutable(self, ledger, caplog):
        """Test a snapshot reporting a different round does not rewrite the known one."""
        caplog.set_level(logging.WARNING)
        await ledger.apply_event(requested(1))

        await ledger.apply_snapshot([snapshot_row(1, round=99)])

        assert ledger.get(1).round == 21
        assert "differs from deadline-derived round 21" in caplog.text

    @pytest.mark.asyncio
    async def test_contract_round_preferred_on_insert(self, ledger):
        """Test a row's own round is used for a new entry."""
        await ledger.apply_snapshot([snapshot_row(1, round=22)])
        assert ledger.get(1).round == 22


class TestPendingView:
    """Tests for the fulfillable view and local outcomes."""

    @pytest.mark.asyncio
    async def test_list_pending_filters_by_deadline(self, ledger):
        """Test only pending requests past their deadline are listed, by id."""
        await ledger.apply_event(requested(3, deadline=1500))
        await ledger.apply_event(requested(1, deadline=1500))
        await ledger.apply_event(requested(2, deadline=5000))
        await ledger.apply_event(requested(4, deadline=1500))
        await ledger.apply_event(resolved(4))

        pending = ledger.list_pending(now=2000)

        assert [r.request_id for r in pending] == [1, 3]
        assert ledger.pending_ids() == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_deadline_is_exclusive(self, ledger):
        """Test a request is not fulfillable at exactly its deadline."""
        await ledger.apply_event(requested(1, deadline=1600))

        assert ledger.list_pending(now=1600) == []
        assert len(ledger.list_pending(now=1601)) == 1

    @pytest.mark.asyncio
    async def test_local_outcome_hides_request_until_reconciled(self, ledger):
        """Test a confirmed local fulfillment hides the request until its event arrives."""
        await ledger.apply_event(requested(1, deadline=1500))
        ledger.record_local_outcome(FulfillmentOutcome(
            request_id=1, transaction_hash="0x" + "cd" * 32, randomness=12345, block_number=200
        ))

        assert ledger.list_pending(now=2000) == []
        assert ledger.get(1).state == RequestState.PENDING
        assert ledger.local_outcome(1) is not None

        await ledger.apply_event(resolved(1, tx_hash="0x" + "cd" * 32))

        assert ledger.local_outcome(1) is None
        assert ledger.get(1).state == RequestState.FULFILLED
        assert ledger.get_metrics()["local_outcomes"] == 0

    @pytest.mark.asyncio
    async def test_snapshot_reconciles_local_outcome(self, ledger):
        """Test a terminal snapshot row also clears the overlay."""
        await ledger.apply_event(requested(1, deadline=1500))
        ledger.record_local_outcome(FulfillmentOutcome(request_id=1, transaction_hash="0xaa"))

        await ledger.apply_snapshot([snapshot_row(1, RequestState.FULFILLED)])

        assert ledger.local_outcome(1) is None

    @pytest.mark.asyncio
    async def test_list_by_requester(self, ledger):
        """Test requester lookups ignore address case."""
        await ledger.apply_event(requested(2))
        await ledger.apply_event(requested(1))

        assert [r.request_id for r in ledger.list_by_requester(REQUESTER.lower())] == [1, 2]
        assert ledger.list_by_requester("0x" + "00" * 20) == []


class TestEviction:
    """Tests for bounding resolved entries."""

    @pytest.mark.asyncio
    async def test_oldest_terminal_entries_evicted(self):
        """Test resolved entries beyond the bound are evicted oldest first."""
        ledger = RequestLedger(RoundClock(genesis_time=1000, period=30), max_terminal_entries=2)
        for request_id in (1, 2, 3):
            await ledger.apply_event(requested(request_id))
            await ledger.apply_event(resolved(request_id))
        await ledger.apply_event(requested(4))

        assert ledger.get(1) is None
        assert ledger.tracked_ids() == [2, 3, 4]

        # A replayed Requested event must not resurrect an evicted request
        assert await ledger.apply_event(requested(1)) is False
        assert ledger.get(1) is None

    @pytest.mark.asyncio
    async def test_duplicate_resolution_of_evicted_request_ignored(self):
        """Test a replayed resolution neither resurrects an evicted id nor evicts newer entries."""
        ledger = RequestLedger(RoundClock(genesis_time=1000, period=30), max_terminal_entries=1)
        await ledger.apply_event(resolved(1))
        await ledger.apply_event(resolved(2))
        assert ledger.get(1) is None

        assert await ledger.apply_event(resolved(1)) is False
        assert ledger.get(1) is None
        assert ledger.get(2).state == RequestState.FULFILLED

        assert await ledger.apply_snapshot([snapshot_row(1, RequestState.FULFILLED)]) == 0
        assert ledger.get(1) is None
        assert ledger.get(2) is not None


class TestChannel:
    """Tests for the event channel consumer."""

    @pytest.mark.asyncio
    async def test_consume_applies_published_events_in_order(self, ledger):
        """Test the consumer drains the channel in arrival order."""
        consumer = asyncio.create_task(ledger.consume())
        try:
            await ledger.publish(requested(1))
            await ledger.publish(resolved(1))
            await ledger.publish("not an event")
            await asyncio.wait_for(ledger.channel.join(), timeout=1)
        finally:
            consumer.cancel()
            with pytest.raises(asyncio.CancelledError):
                await consumer

        assert ledger.get(1).state == RequestState.FULFILLED
        metrics = ledger.get_metrics()
        assert metrics["events_applied"] == 2
        assert metrics["events_dropped"] == 1
