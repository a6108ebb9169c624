#!/usr/bin/env python3
"""Data models for the Anyrand operator.

This module provides immutable data classes for randomness requests, beacon
pulses, chain events and fulfillment results used throughout the operator.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any

from .errors import AttemptStep, FailureKind, RetryAdvice, RevertReason


class RequestState(IntEnum):
    """Lifecycle state of a request, numbered as the contract enum."""

    NONEXISTENT = 0
    PENDING = 1
    FULFILLED = 2
    FAILED = 3

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.FULFILLED, RequestState.FAILED)

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle; both terminal states share a rank."""
        return min(int(self), 2)


class Priority(Enum):
    """Operator desirability tier of a fulfillable request."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def order(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class BeaconHealth(Enum):
    """Beacon liveness classification derived from round staleness."""

    ACTIVE = "active"
    DELAYED = "delayed"
    OFFLINE = "offline"


class EventKind(Enum):
    """Chain events that drive request lifecycle transitions."""

    REQUESTED = "RandomnessRequested"
    FULFILLED = "RandomnessFulfilled"
    CALLBACK_FAILED = "RandomnessCallbackFailed"


@dataclass(frozen=True, slots=True)
class RandomnessRequest:
    """One randomness ticket as known to the operator.

    ``details_known`` is False for a placeholder created by a resolution
    event that arrived before anything else about the request; the request
    details are filled in by the first Requested event or snapshot row.

    Attributes:
        request_id: Unique request identifier
        requester: Checksummed address of the requesting contract
        deadline: Unix timestamp after which the request is fulfillable
        callback_gas_budget: Gas forwarded to the requester's callback
        fee_paid: Fee paid by the requester in wei
        beacon_key_id: Hash of the beacon public key the request is bound to
        round: Beacon round the request resolves against
        state: Lifecycle state
        randomness: Delivered randomness, set only in a terminal state
        callback_succeeded: Whether the callback succeeded, terminal only
        actual_gas_used: Gas used by the callback, terminal only
    """

    request_id: int
    requester: str
    deadline: int
    callback_gas_budget: int
    fee_paid: int
    beacon_key_id: str
    round: int | None
    state: RequestState = RequestState.PENDING
    randomness: int | None = None
    callback_succeeded: bool | None = None
    actual_gas_used: int | None = None
    creation_tx_hash: str | None = None
    creation_block: int | None = None
    fulfillment_tx_hash: str | None = None
    fulfillment_block: int | None = None
    details_known: bool = True

    @property
    def fee_per_gas_unit(self) -> int:
        if self.callback_gas_budget <= 0:
            return 0
        return self.fee_paid // self.callback_gas_budget

    def is_fulfillable(self, now: int) -> bool:
        return self.state == RequestState.PENDING and self.details_known and self.deadline < now

    def __str__(self) -> str:
        return (
            f"RandomnessRequest(id={self.request_id}, "
            f"state={self.state.name}, "
            f"round={self.round}, "
            f"deadline={self.deadline})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "request_id": self.request_id,
            "requester": self.requester,
            "deadline": self.deadline,
            "callback_gas_budget": self.callback_gas_budget,
            "fee_paid": self.fee_paid,
            "fee_per_gas_unit": self.fee_per_gas_unit,
            "beacon_key_id": self.beacon_key_id,
            "round": self.round,
            "state": self.state.name,
            "randomness": self.randomness,
            "callback_succeeded": self.callback_succeeded,
            "actual_gas_used": self.actual_gas_used,
            "creation_tx_hash": self.creation_tx_hash,
            "creation_block": self.creation_block,
            "fulfillment_tx_hash": self.fulfillment_tx_hash,
            "fulfillment_block": self.fulfillment_block,
        }


@dataclass(frozen=True, slots=True)
class RandomnessRequestedEvent:
    """A RandomnessRequested log."""

    request_id: int
    requester: str
    beacon_key_id: str
    deadline: int
    callback_gas_budget: int
    fee_paid: int
    block_number: int
    transaction_hash: str
    log_index: int

    @property
    def unique_key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)


@dataclass(frozen=True, slots=True)
class RequestResolvedEvent:
    """A RandomnessFulfilled or RandomnessCallbackFailed log."""

    request_id: int
    requester: str
    kind: EventKind
    randomness: int
    actual_gas_used: int
    block_number: int
    transaction_hash: str
    log_index: int

    @property
    def callback_succeeded(self) -> bool:
        return self.kind == EventKind.FULFILLED

    @property
    def target_state(self) -> RequestState:
        return RequestState.FULFILLED if self.callback_succeeded else RequestState.FAILED

    @property
    def unique_key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)


LedgerEvent = RandomnessRequestedEvent | RequestResolvedEvent


@dataclass(frozen=True, slots=True)
class BeaconPulse:
    """One published beacon round.

    The signature is kept in its hex wire form; decoding it into a curve
    point is the verification step of a fulfillment attempt.
    """

    round: int
    randomness: str
    signature: str
    fetched_at: float
    network: str

    def __str__(self) -> str:
        return f"BeaconPulse(network={self.network}, round={self.round})"


@dataclass(frozen=True, slots=True)
class BeaconInfo:
    """Chain parameters published by a beacon's /info endpoint."""

    public_key: str
    period: int
    genesis_time: int
    chain_hash: str
    scheme_id: str


@dataclass(frozen=True, slots=True)
class BeaconStatus:
    """Snapshot of beacon liveness."""

    health: BeaconHealth
    latest_round: int
    expected_round: int
    staleness: int
    latency: int


@dataclass(frozen=True, slots=True)
class ContractLimits:
    """Request limits enforced by the Anyrand contract."""

    max_callback_gas_budget: int
    max_deadline_delta: int
    next_request_id: int


@dataclass(frozen=True, slots=True)
class FulfillmentQueueEntry:
    """A ranked, fulfillable request. Recomputed on every ranking pass."""

    request_id: int
    priority: Priority
    queue_position: int
    estimated_fulfillment_time: int
    fee_per_gas_unit: int


@dataclass(frozen=True, slots=True)
class FulfillmentEstimate:
    """Where a not-yet-submitted request would land in the current queue."""

    priority: Priority
    queue_position: int
    estimated_fulfillment_time: int
    confidence: str


@dataclass(frozen=True, slots=True)
class QueueSummary:
    """Aggregate view of the ranked fulfillment queue."""

    total: int
    high: int
    medium: int
    low: int
    average_fee_per_gas_unit: int
    average_wait: int  # seconds

    def __str__(self) -> str:
        return (
            f"Queue: {self.total} fulfillable "
            f"(high={self.high}, medium={self.medium}, low={self.low}), "
            f"avg wait {self.average_wait}s"
        )


@dataclass(frozen=True, slots=True)
class TransactionConfirmation:
    """A fulfillment transaction that reached the required confirmations."""

    transaction_hash: str
    block_number: int
    gas_used: int
    randomness: int | None
    callback_succeeded: bool | None


@dataclass(frozen=True, slots=True)
class FulfillmentFailure:
    """Classified failure of one fulfillment attempt.

    Attributes:
        kind: Error class
        step: Attempt step that failed
        retry: Whether to retry now, after a delay, or never
        message: Human-readable detail
        retry_after: Suggested delay in seconds for RETRY_AFTER_DELAY
        revert_reason: Stable revert code for REVERTED failures
        transaction_hash: Hash of the transaction, if one was sent
    """

    kind: FailureKind
    step: AttemptStep
    retry: RetryAdvice
    message: str
    retry_after: float = 0
    revert_reason: RevertReason | None = None
    transaction_hash: str | None = None


@dataclass(frozen=True, slots=True)
class FulfillmentOutcome:
    """Result of one FulfillmentExecutor run."""

    request_id: int
    transaction_hash: str | None = None
    randomness: int | None = None
    block_number: int | None = None
    failure: FulfillmentFailure | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.failure is None

    def __str__(self) -> str:
        if self.failure is None:
            return f"FulfillmentOutcome(id={self.request_id}, confirmed tx={self.transaction_hash})"
        return (
            f"FulfillmentOutcome(id={self.request_id}, "
            f"failed={self.failure.kind.value} at {self.failure.step.value}, "
            f"retry={self.failure.retry.value})"
        )
