#!/usr/bin/env python3
"""
Request Ledger for the Anyrand operator.

Holds the lifecycle state of every known randomness request and reconciles
the two independent inputs that move it forward: periodic snapshot reads of
the contract and pushed chain events. Events are delivered through an
asyncio queue drained by a single consumer task; snapshot application and
event application share one lock so no partial merge is ever visible.

State only moves forward: Pending -> Fulfilled | Failed. Whichever terminal
state is observed first is kept.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import replace
from typing import Any

from .models import (
    FulfillmentOutcome,
    LedgerEvent,
    RandomnessRequest,
    RandomnessRequestedEvent,
    RequestResolvedEvent,
    RequestState,
)
from .round_clock import RoundClock

# Get logger for this module
logger = logging.getLogger(__name__)


class RequestLedger:
    """Single source of truth for request lifecycle state."""

    def __init__(self, clock: RoundClock, max_terminal_entries: int = 10000) -> None:
        """
        Initialize the RequestLedger.

        Args:
            clock: Round schedule used to derive a request's round from its deadline
            max_terminal_entries: Resolved requests kept in memory before the
                oldest are evicted (pending requests are never evicted)
        """
        self.clock = clock
        self.max_terminal_entries = max_terminal_entries

        self._requests: dict[int, RandomnessRequest] = {}
        self._terminal_order: OrderedDict[int, None] = OrderedDict()
        self._evicted: OrderedDict[int, None] = OrderedDict()
        self._local_outcomes: dict[str, FulfillmentOutcome] = {}
        self._lock = asyncio.Lock()

        # Event channel (producers: listeners, consumer: consume())
        self.channel: asyncio.Queue[LedgerEvent] = asyncio.Queue()

        # Metrics tracking
        self.events_applied = 0
        self.events_ignored = 0
        self.events_dropped = 0
        self.snapshot_rows_applied = 0

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    async def publish(self, event: LedgerEvent) -> None:
        """Push an event onto the ledger channel."""
        await self.channel.put(event)

    async def consume(self) -> None:
        """Drain the event channel forever, applying events in arrival order."""
        logger.info("Ledger consumer started")
        while True:
            event = await self.channel.get()
            try:
                await self.apply_event(event)
            finally:
                self.channel.task_done()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def apply_event(self, event: Any) -> bool:
        """
        Apply one chain event.

        Malformed events are dropped with a warning; this method never raises
        on bad input.

        Args:
            event: A RandomnessRequestedEvent or RequestResolvedEvent

        Returns:
            True if the ledger changed, False otherwise
        """
        if problem := self._validate_event(event):
            self.events_dropped += 1
            logger.warning(f"Dropping malformed ledger event ({problem}): {event!r}")
            return False

        async with self._lock:
            if isinstance(event, RandomnessRequestedEvent):
                changed = self._apply_requested(event)
            else:
                changed = self._apply_resolved(event)

            if changed:
                self.events_applied += 1
                self._evict_overflow()
            else:
                self.events_ignored += 1
            return changed

    async def apply_snapshot(self, rows: Iterable[RandomnessRequest]) -> int:
        """
        Merge a bulk snapshot read into the ledger.

        Unknown rows are inserted; known rows are merged keeping the most
        advanced state, so a stale Pending row never downgrades a resolved
        request.

        Args:
            rows: Requests as currently reported by the contract

        Returns:
            Number of entries that changed
        """
        changed = 0
        async with self._lock:
            for row in rows:
                if row.state == RequestState.NONEXISTENT:
                    logger.debug(f"Skipping nonexistent request {row.request_id} in snapshot")
                    continue
                if self._merge_row(row):
                    changed += 1
            self.snapshot_rows_applied += changed
            if changed:
                self._evict_overflow()

        if changed:
            logger.debug(f"Snapshot changed {changed} ledger entries")
        return changed

    def _validate_event(self, event: Any) -> str | None:
        if not isinstance(event, (RandomnessRequestedEvent, RequestResolvedEvent)):
            return f"unsupported type {type(event).__name__}"

        if not isinstance(event.request_id, int) or event.request_id < 0:
            return "missing request id"
        if not event.requester:
            return "missing requester"
        if not event.transaction_hash:
            return "missing transaction hash"

        if isinstance(event, RandomnessRequestedEvent):
            for name in ("deadline", "callback_gas_budget", "fee_paid"):
                if not isinstance(getattr(event, name), int):
                    return f"missing {name}"
        elif not isinstance(event.randomness, int):
            return "missing randomness"
        return None

    def _apply_requested(self, event: RandomnessRequestedEvent) -> bool:
        existing = self._requests.get(event.request_id)

        if existing is None:
            if event.request_id in self._evicted:
                logger.debug(f"Ignoring Requested event for evicted request {event.request_id}")
                return False
            request = RandomnessRequest(
                request_id=event.request_id,
                requester=event.requester,
                deadline=event.deadline,
                callback_gas_budget=event.callback_gas_budget,
                fee_paid=event.fee_paid,
                beacon_key_id=event.beacon_key_id,
                round=self.clock.round_for_timestamp(event.deadline),
                creation_tx_hash=event.transaction_hash,
                creation_block=event.block_number
            )
            self._requests[event.request_id] = request
            logger.info(f"New request tracked: {request}")
            return True

        updates: dict[str, Any] = {}
        if not existing.details_known:
            updates.update(
                requester=event.requester,
                deadline=event.deadline,
                callback_gas_budget=event.callback_gas_budget,
                fee_paid=event.fee_paid,
                beacon_key_id=event.beacon_key_id,
                details_known=True
            )
        if existing.round is None:
            updates["round"] = self.clock.round_for_timestamp(event.deadline)
        if existing.creation_tx_hash is None:
            updates["creation_tx_hash"] = event.transaction_hash
            updates["creation_block"] = event.block_number

        if not updates:
            return False

        self._requests[event.request_id] = replace(existing, **updates)
        logger.debug(f"Request {event.request_id} details confirmed by Requested event")
        return True

    def _apply_resolved(self, event: RequestResolvedEvent) -> bool:
        existing = self._requests.get(event.request_id)
        target = event.target_state
        self._reconcile_overlay(event.request_id, event.transaction_hash)

        if existing is None:
            if event.request_id in self._evicted:
                logger.debug(f"Ignoring resolution event for evicted request {event.request_id}")
                return False
            # Resolution seen before the request itself: keep a placeholder
            self._requests[event.request_id] = RandomnessRequest(
                request_id=event.request_id,
                requester=event.requester,
                deadline=0,
                callback_gas_budget=0,
                fee_paid=0,
                beacon_key_id="",
                round=None,
                state=target,
                randomness=event.randomness,
                callback_succeeded=event.callback_succeeded,
                actual_gas_used=event.actual_gas_used,
                fulfillment_tx_hash=event.transaction_hash,
                fulfillment_block=event.block_number,
                details_known=False
            )
            self._mark_terminal(event.request_id)
            logger.info(f"Request {event.request_id} resolved ({target.name}) before it was seen")
            return True

        if existing.state.is_terminal:
            # First terminal state wins; only fill in missing provenance
            if existing.fulfillment_tx_hash is None and existing.state == target:
                self._requests[event.request_id] = replace(
                    existing,
                    fulfillment_tx_hash=event.transaction_hash,
                    fulfillment_block=event.block_number
                )
                return True
            return False

        self._requests[event.request_id] = replace(
            existing,
            state=target,
            randomness=event.randomness,
            callback_succeeded=event.callback_succeeded,
            actual_gas_used=event.actual_gas_used,
            fulfillment_tx_hash=event.transaction_hash,
            fulfillment_block=event.block_number
        )
        self._mark_terminal(event.request_id)
        logger.info(
            f"Request {event.request_id} {target.name.lower()} "
            f"in tx {event.transaction_hash} (block {event.block_number})"
        )
        return True

    def _merge_row(self, row: RandomnessRequest) -> bool:
        existing = self._requests.get(row.request_id)
        derived_round = self.clock.round_for_timestamp(row.deadline)

        if row.round and row.round != derived_round:
            logger.warning(
                f"Request {row.request_id}: contract round {row.round} differs "
                f"from deadline-derived round {derived_round}"
            )

        if existing is None:
            if row.request_id in self._evicted:
                logger.debug(f"Ignoring snapshot row for evicted request {row.request_id}")
                return False
            row = replace(
                row,
                round=row.round or derived_round,
                details_known=True,
                **self._terminal_fields(row)
            )
            self._requests[row.request_id] = row
            if row.state.is_terminal:
                self._mark_terminal(row.request_id)
                self._reconcile_overlay(row.request_id)
            return True

        updates: dict[str, Any] = {}
        if not existing.details_known:
            updates.update(
                requester=row.requester,
                deadline=row.deadline,
                callback_gas_budget=row.callback_gas_budget,
                fee_paid=row.fee_paid,
                beacon_key_id=row.beacon_key_id,
                details_known=True
            )
        if existing.round is None:
            updates["round"] = row.round or derived_round

        if row.state.rank > existing.state.rank:
            updates.update(state=row.state, **self._terminal_fields(row))
            updates.update(
                fulfillment_tx_hash=row.fulfillment_tx_hash,
                fulfillment_block=row.fulfillment_block
            )
        elif row.state.rank < existing.state.rank:
            logger.debug(
                f"Ignoring stale snapshot state {row.state.name} for "
                f"{existing.state.name} request {row.request_id}"
            )

        if not updates:
            return False

        merged = replace(existing, **updates)
        self._requests[row.request_id] = merged
        if merged.state.is_terminal and not existing.state.is_terminal:
            self._mark_terminal(row.request_id)
            self._reconcile_overlay(row.request_id)
        return True

    @staticmethod
    def _terminal_fields(row: RandomnessRequest) -> dict[str, Any]:
        if row.state.is_terminal:
            return {
                "randomness": row.randomness if row.randomness is not None else 0,
                "callback_succeeded": row.callback_succeeded,
                "actual_gas_used": row.actual_gas_used,
            }
        return {"randomness": None, "callback_succeeded": None, "actual_gas_used": None}

    # ------------------------------------------------------------------
    # Optimistic local outcomes
    # ------------------------------------------------------------------

    def record_local_outcome(self, outcome: FulfillmentOutcome) -> None:
        """
        Record a confirmed local fulfillment ahead of its chain event.

        The overlay hides the request from ``list_pending`` until a matching
        event or snapshot row resolves it in the authoritative ledger.
        """
        if not outcome.is_confirmed or not outcome.transaction_hash:
            return
        existing = self._requests.get(outcome.request_id)
        if existing is not None and existing.state.is_terminal:
            return
        self._local_outcomes[outcome.transaction_hash] = outcome
        logger.debug(f"Recorded local outcome for request {outcome.request_id}")

    def local_outcome(self, request_id: int) -> FulfillmentOutcome | None:
        for outcome in self._local_outcomes.values():
            if outcome.request_id == request_id:
                return outcome
        return None

    def _reconcile_overlay(self, request_id: int, tx_hash: str | None = None) -> None:
        stale = [
            key for key, outcome in self._local_outcomes.items()
            if key == tx_hash or outcome.request_id == request_id
        ]
        for key in stale:
            del self._local_outcomes[key]
            logger.debug(f"Reconciled local outcome {key} for request {request_id}")

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _mark_terminal(self, request_id: int) -> None:
        self._terminal_order[request_id] = None
        self._terminal_order.move_to_end(request_id)

    def _evict_overflow(self) -> None:
        while len(self._terminal_order) > self.max_terminal_entries:
            request_id, _ = self._terminal_order.popitem(last=False)
            self._requests.pop(request_id, None)
            self._evicted[request_id] = None
            if len(self._evicted) > self.max_terminal_entries:
                self._evicted.popitem(last=False)
            logger.debug(f"Evicted resolved request {request_id}")

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get(self, request_id: int) -> RandomnessRequest | None:
        return self._requests.get(request_id)

    def list_pending(self, now: int) -> list[RandomnessRequest]:
        """Return fulfillable requests: Pending with deadline < now, ordered by id."""
        claimed = {outcome.request_id for outcome in self._local_outcomes.values()}
        return sorted(
            (
                request for request in self._requests.values()
                if request.is_fulfillable(now) and request.request_id not in claimed
            ),
            key=lambda request: request.request_id
        )

    def list_by_requester(self, address: str) -> list[RandomnessRequest]:
        address = address.lower()
        return sorted(
            (r for r in self._requests.values() if r.requester.lower() == address),
            key=lambda request: request.request_id
        )

    def tracked_ids(self) -> list[int]:
        return sorted(self._requests)

    def pending_ids(self) -> list[int]:
        """Ids of all unresolved requests, fulfillable or not."""
        return sorted(
            request_id for request_id, request in self._requests.items()
            if request.state == RequestState.PENDING
        )

    def __len__(self) -> int:
        return len(self._requests)

    def get_metrics(self) -> dict[str, int]:
        """Get current ledger counters."""
        counts = {state: 0 for state in RequestState}
        placeholders = 0
        for request in self._requests.values():
            counts[request.state] += 1
            if not request.details_known:
                placeholders += 1
        return {
            "tracked": len(self._requests),
            "pending": counts[RequestState.PENDING],
            "fulfilled": counts[RequestState.FULFILLED],
            "failed": counts[RequestState.FAILED],
            "placeholders": placeholders,
            "local_outcomes": len(self._local_outcomes),
            "events_applied": self.events_applied,
            "events_ignored": self.events_ignored,
            "events_dropped": self.events_dropped,
            "snapshot_rows_applied": self.snapshot_rows_applied,
        }

    def log_metrics(self) -> None:
        """Log current ledger counters."""
        metrics = self.get_metrics()
        logger.info(
            f"Ledger: {metrics['tracked']} tracked, {metrics['pending']} pending, "
            f"{metrics['fulfilled']} fulfilled, {metrics['failed']} failed, "
            f"{metrics['events_dropped']} dropped events"
        )
