#!/usr/bin/env python3
"""Error taxonomy for the Anyrand fulfillment pipeline.

Lower layers (beacon HTTP, signature decoding, chain RPC) raise the
exceptions defined here. The FulfillmentExecutor converts every one of them
into a ``FailureKind`` plus ``RetryAdvice`` before returning, so callers of
the executor never need to inspect transport-level exceptions.
"""

from enum import Enum


class AttemptStep(Enum):
    """States of a single fulfillment attempt."""

    PREPARING = "preparing"
    SIGNATURE_FETCHED = "signature_fetched"
    VERIFIED = "verified"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"

    @property
    def is_final(self) -> bool:
        return self in (AttemptStep.CONFIRMED, AttemptStep.REVERTED, AttemptStep.TIMED_OUT)


class FailureKind(Enum):
    """Classified reason a fulfillment attempt did not confirm."""

    NETWORK_ERROR = "network_error"
    ROUND_NOT_READY = "round_not_ready"
    TIMED_OUT = "timed_out"
    STALE_REQUEST = "stale_request"
    INVALID_SIGNATURE = "invalid_signature"
    REVERTED = "reverted"
    BEACON_INTEGRITY = "beacon_integrity"


class RetryAdvice(Enum):
    """What the caller should do after a failed attempt."""

    RETRY_NOW = "retry_now"
    RETRY_AFTER_DELAY = "retry_after_delay"
    FINAL = "final"


class RevertReason(Enum):
    """Stable codes for on-chain fulfillment rejections."""

    ALREADY_FULFILLED = "already_fulfilled"
    BAD_SIGNATURE = "bad_signature"
    ROUND_MISMATCH = "round_mismatch"
    DEADLINE_NOT_REACHED = "deadline_not_reached"
    UNKNOWN = "unknown"

    @property
    def is_retryable(self) -> bool:
        """Only unexplained reverts and early submissions are worth another try."""
        return self in (RevertReason.UNKNOWN, RevertReason.DEADLINE_NOT_REACHED)


class OperatorError(Exception):
    """Base class for all errors raised inside the operator core."""


class BeaconError(OperatorError):
    """Base class for beacon retrieval failures."""


class BeaconNetworkError(BeaconError):
    """The beacon HTTP endpoint was unreachable or returned a server error."""


class RoundNotPublishedError(BeaconError):
    """The beacon has not published the requested round yet.

    Attributes:
        round: The round that was requested
        retry_after: Seconds until the round is expected to be available
    """

    def __init__(self, round: int, retry_after: int = 0) -> None:
        self.round = round
        self.retry_after = retry_after
        super().__init__(f"Round {round} not published yet (retry in {retry_after}s)")


class BeaconIntegrityError(BeaconError):
    """The beacon returned a payload that is malformed or inconsistent."""


class SignatureDecodeError(OperatorError):
    """A beacon signature could not be decoded into a valid curve point."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid signature encoding: {reason}")


class ChainRpcError(OperatorError):
    """A chain RPC call failed for transport or node reasons."""


class TransactionRevertedError(OperatorError):
    """The fulfillment transaction was rejected by the contract.

    Attributes:
        reason: Stable reason code
        raw_reason: Revert string or custom error data as returned by the node
        tx_hash: Hash of the mined transaction, None if rejected at estimation
    """

    def __init__(
        self,
        reason: RevertReason,
        raw_reason: str = "",
        tx_hash: str | None = None
    ) -> None:
        self.reason = reason
        self.raw_reason = raw_reason
        self.tx_hash = tx_hash
        super().__init__(f"Transaction reverted ({reason.value}): {raw_reason}")


class ConfirmationTimeoutError(OperatorError):
    """A submitted transaction did not reach the required confirmations in time."""

    def __init__(self, tx_hash: str, timeout: float) -> None:
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout}s")
