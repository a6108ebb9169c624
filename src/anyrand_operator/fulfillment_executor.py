#!/usr/bin/env python3
"""Fulfillment execution for the Anyrand operator.

Drives one request through a fulfillment attempt:

    PREPARING -> SIGNATURE_FETCHED -> VERIFIED -> SUBMITTED -> CONFIRMED | REVERTED | TIMED_OUT

Every lower-layer error is converted into a FulfillmentFailure carrying the
failed step, a FailureKind and RetryAdvice. An attempt may be cancelled up
to the point of submission; from then on the transaction is tracked to its
end even if the caller is cancelled.
"""

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from .errors import (
    AttemptStep,
    BeaconIntegrityError,
    BeaconNetworkError,
    ChainRpcError,
    ConfirmationTimeoutError,
    FailureKind,
    RetryAdvice,
    RoundNotPublishedError,
    SignatureDecodeError,
    TransactionRevertedError,
)
from .models import FulfillmentFailure, FulfillmentOutcome, RandomnessRequest, RequestState
from .utils.bn254 import G1Point

if TYPE_CHECKING:
    from .beacon_client import BeaconClient
    from .fulfillment_submitter import FulfillmentSubmitter
    from .request_ledger import RequestLedger

# Get logger for this module
logger = logging.getLogger(__name__)


class FulfillmentExecutor:
    """Runs fulfillment attempts and classifies their outcome."""

    def __init__(
        self,
        ledger: "RequestLedger",
        beacon_client: "BeaconClient",
        submitter: "FulfillmentSubmitter",
        network: str,
        confirmations: int = 1,
        confirmation_timeout: float = 300,
        max_attempts: int = 3,
        base_backoff: float = 1.0,
        max_backoff: float = 60.0,
        time_fn: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        """
        Initialize the FulfillmentExecutor.

        Args:
            ledger: Authoritative request state
            beacon_client: Source of beacon signatures
            submitter: Chain writer for fulfillRandomness transactions
            network: Beacon network the requests resolve against
            confirmations: Blocks required before a fulfillment counts as confirmed
            confirmation_timeout: Seconds to wait for confirmation
            max_attempts: Attempts made by ``fulfill_with_retry``
            base_backoff: First retry delay for network errors, in seconds
            max_backoff: Upper bound of the retry delay, in seconds
            time_fn: Wall-clock source in unix seconds
            sleep: Coroutine used to wait between retries
        """
        self.ledger = ledger
        self.beacon_client = beacon_client
        self.submitter = submitter
        self.network = network
        self.confirmations = confirmations
        self.confirmation_timeout = confirmation_timeout
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.time_fn = time_fn
        self.sleep = sleep

        # Current step of every attempt in progress, keyed by request id
        self.steps: dict[int, AttemptStep] = {}

        # Metrics tracking
        self.attempts = 0
        self.confirmed = 0
        self.failures: Counter[FailureKind] = Counter()

    def backoff(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (0-based): min(base * 2**n, max)."""
        return min(self.base_backoff * (2 ** retry_number), self.max_backoff)

    def current_step(self, request_id: int) -> AttemptStep | None:
        return self.steps.get(request_id)

    def is_submitted(self, request_id: int) -> bool:
        """True once the attempt for ``request_id`` can no longer be cancelled."""
        step = self.steps.get(request_id)
        return step is not None and step not in (
            AttemptStep.PREPARING, AttemptStep.SIGNATURE_FETCHED, AttemptStep.VERIFIED
        )

    def _stale_reason(self, request: RandomnessRequest | None, now: int) -> str | None:
        if request is None:
            return "request is not tracked"
        if request.state != RequestState.PENDING:
            return f"request is already {request.state.name.lower()}"
        if not request.details_known or request.round is None:
            return "request details are not known yet"
        if request.round < 1:
            return f"deadline {request.deadline} precedes the beacon genesis"
        if request.deadline >= now:
            return f"deadline {request.deadline} has not passed"
        if self.ledger.local_outcome(request.request_id) is not None:
            return "request was already fulfilled locally"
        return None

    def _fail(
        self,
        request_id: int,
        kind: FailureKind,
        step: AttemptStep,
        retry: RetryAdvice,
        message: str,
        **details: object
    ) -> FulfillmentOutcome:
        self.failures[kind] += 1
        failure = FulfillmentFailure(kind=kind, step=step, retry=retry, message=message, **details)
        outcome = FulfillmentOutcome(
            request_id=request_id,
            transaction_hash=failure.transaction_hash,
            failure=failure
        )
        log = logger.info if retry != RetryAdvice.FINAL else logger.warning
        log(f"Request {request_id}: {kind.value} at {step.value} ({message}), {retry.value}")
        return outcome

    async def fulfill(self, request_id: int) -> FulfillmentOutcome:
        """
        Run one fulfillment attempt.

        Args:
            request_id: Request selected for fulfillment

        Returns:
            A confirmed outcome or a classified failure
        """
        self.attempts += 1
        try:
            return await self._attempt(request_id)
        finally:
            self.steps.pop(request_id, None)

    async def _attempt(self, request_id: int) -> FulfillmentOutcome:
        # PREPARING: re-check the ledger, the queue may be stale
        self.steps[request_id] = AttemptStep.PREPARING
        request = self.ledger.get(request_id)
        if reason := self._stale_reason(request, int(self.time_fn())):
            return self._fail(
                request_id, FailureKind.STALE_REQUEST, AttemptStep.PREPARING, RetryAdvice.FINAL, reason
            )

        # SIGNATURE_FETCHED
        try:
            pulse = await self.beacon_client.fetch_round(self.network, request.round)
        except RoundNotPublishedError as e:
            return self._fail(
                request_id, FailureKind.ROUND_NOT_READY, AttemptStep.SIGNATURE_FETCHED,
                RetryAdvice.RETRY_AFTER_DELAY, str(e), retry_after=max(1, e.retry_after)
            )
        except BeaconNetworkError as e:
            return self._fail(
                request_id, FailureKind.NETWORK_ERROR, AttemptStep.SIGNATURE_FETCHED,
                RetryAdvice.RETRY_AFTER_DELAY, str(e), retry_after=self.backoff(0)
            )
        except BeaconIntegrityError as e:
            return self._fail(
                request_id, FailureKind.BEACON_INTEGRITY, AttemptStep.SIGNATURE_FETCHED,
                RetryAdvice.FINAL, str(e)
            )
        self.steps[request_id] = AttemptStep.SIGNATURE_FETCHED
        logger.debug(f"Request {request_id}: fetched {pulse}")

        # VERIFIED: never submit a signature that does not decode to a curve point
        try:
            signature = self.beacon_client.decode_signature(pulse.signature)
        except SignatureDecodeError as e:
            return self._fail(
                request_id, FailureKind.INVALID_SIGNATURE, AttemptStep.VERIFIED, RetryAdvice.FINAL, str(e)
            )
        self.steps[request_id] = AttemptStep.VERIFIED

        # Last chance to notice another operator got there first
        current = self.ledger.get(request_id)
        if reason := self._stale_reason(current, int(self.time_fn())):
            return self._fail(
                request_id, FailureKind.STALE_REQUEST, AttemptStep.VERIFIED, RetryAdvice.FINAL, reason
            )

        # SUBMITTED onwards runs to completion even if this coroutine is cancelled
        tracking = asyncio.ensure_future(self._submit_and_track(request, signature))
        try:
            return await asyncio.shield(tracking)
        except asyncio.CancelledError:
            logger.warning(f"Request {request_id}: cancellation requested while in flight, tracking to completion")
            while not tracking.done():
                try:
                    await asyncio.shield(tracking)
                except asyncio.CancelledError:
                    continue
            if not tracking.cancelled() and tracking.exception() is None:
                logger.info(f"Request {request_id}: in-flight attempt finished: {tracking.result()}")
            raise

    async def _submit_and_track(self, request: RandomnessRequest, signature: G1Point) -> FulfillmentOutcome:
        request_id = request.request_id

        try:
            tx_hash = await self.submitter.submit_fulfillment(request, signature)
        except TransactionRevertedError as e:
            return self._revert_failure(request_id, e, AttemptStep.SUBMITTED)
        except ChainRpcError as e:
            return self._fail(
                request_id, FailureKind.NETWORK_ERROR, AttemptStep.SUBMITTED,
                RetryAdvice.RETRY_AFTER_DELAY, str(e), retry_after=self.backoff(0)
            )
        self.steps[request_id] = AttemptStep.SUBMITTED

        try:
            confirmation = await self.submitter.wait_for_confirmation(
                tx_hash, self.confirmations, self.confirmation_timeout
            )
        except ConfirmationTimeoutError as e:
            self.steps[request_id] = AttemptStep.TIMED_OUT
            return self._fail(
                request_id, FailureKind.TIMED_OUT, AttemptStep.TIMED_OUT,
                RetryAdvice.RETRY_NOW, str(e), transaction_hash=tx_hash
            )
        except TransactionRevertedError as e:
            self.steps[request_id] = AttemptStep.REVERTED
            return self._revert_failure(request_id, e, AttemptStep.REVERTED, tx_hash)
        except ChainRpcError as e:
            return self._fail(
                request_id, FailureKind.NETWORK_ERROR, AttemptStep.SUBMITTED,
                RetryAdvice.RETRY_AFTER_DELAY, str(e),
                retry_after=self.backoff(0), transaction_hash=tx_hash
            )

        self.steps[request_id] = AttemptStep.CONFIRMED
        self.confirmed += 1
        outcome = FulfillmentOutcome(
            request_id=request_id,
            transaction_hash=confirmation.transaction_hash,
            randomness=confirmation.randomness,
            block_number=confirmation.block_number
        )
        self.ledger.record_local_outcome(outcome)
        logger.info(f"✓ Request {request_id} fulfilled in block {confirmation.block_number}")
        return outcome

    def _revert_failure(
        self,
        request_id: int,
        error: TransactionRevertedError,
        step: AttemptStep,
        tx_hash: str | None = None
    ) -> FulfillmentOutcome:
        retry = RetryAdvice.RETRY_AFTER_DELAY if error.reason.is_retryable else RetryAdvice.FINAL
        return self._fail(
            request_id, FailureKind.REVERTED, step, retry, str(error),
            retry_after=self.backoff(0) if error.reason.is_retryable else 0,
            revert_reason=error.reason,
            transaction_hash=tx_hash or error.tx_hash
        )

    async def fulfill_with_retry(self, request_id: int) -> FulfillmentOutcome:
        """
        Run attempts until one confirms, fails finally, or attempts run out.

        RoundNotReady waits for the round; other delayed retries back off
        exponentially; TimedOut retries immediately with a fresh fetch.

        Returns:
            The outcome of the last attempt
        """
        outcome = await self.fulfill(request_id)
        for retry_number in range(self.max_attempts - 1):
            if outcome.failure is None or outcome.failure.retry == RetryAdvice.FINAL:
                break

            failure = outcome.failure
            match failure.retry:
                case RetryAdvice.RETRY_NOW:
                    delay = 0.0
                case _ if failure.kind == FailureKind.ROUND_NOT_READY:
                    delay = float(failure.retry_after)
                case _:
                    delay = max(float(failure.retry_after), self.backoff(retry_number))

            logger.info(
                f"Retrying request {request_id} in {delay:.1f}s "
                f"(attempt {retry_number + 2}/{self.max_attempts})"
            )
            if delay > 0:
                await self.sleep(delay)
            outcome = await self.fulfill(request_id)

        return outcome

    def get_metrics(self) -> dict[str, int]:
        """Get current executor counters."""
        metrics = {
            "attempts": self.attempts,
            "confirmed": self.confirmed,
            "in_progress": len(self.steps),
        }
        for kind in FailureKind:
            metrics[f"failed_{kind.value}"] = self.failures[kind]
        return metrics

    def log_metrics(self) -> None:
        """Log current executor counters."""
        failed = sum(self.failures.values())
        logger.info(
            f"Executor: {self.attempts} attempts, {self.confirmed} confirmed, "
            f"{failed} failed, {len(self.steps)} in progress"
        )
