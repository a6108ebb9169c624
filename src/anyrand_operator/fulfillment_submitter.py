#!/usr/bin/env python3
"""Fulfillment submission for the Anyrand operator.

This module sends fulfillRandomness transactions to the Anyrand contract,
tracks them to the required number of confirmations, and maps contract
reverts to stable reason codes.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
    Web3ValidationError,
)
from web3.logs import DISCARD
from web3.types import TxReceipt

from .errors import (
    ChainRpcError,
    ConfirmationTimeoutError,
    RevertReason,
    TransactionRevertedError,
)
from .models import RandomnessRequest, TransactionConfirmation
from .utils.bn254 import G1Point

if TYPE_CHECKING:
    from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class FulfillmentSubmitter:
    """Handles fulfillRandomness submission to the Anyrand contract."""

    # Custom errors and the stable reason each one maps to
    CUSTOM_ERROR_REASONS: dict[str, RevertReason] = {
        "InvalidRequestState": RevertReason.ALREADY_FULFILLED,
        "InvalidSignature": RevertReason.BAD_SIGNATURE,
        "InvalidRequestHash": RevertReason.ROUND_MISMATCH,
        "InvalidRound": RevertReason.ROUND_MISMATCH,
        "DeadlineNotReached": RevertReason.DEADLINE_NOT_REACHED,
    }

    # Fallback matching on plain revert strings
    REVERT_MESSAGE_REASONS: tuple[tuple[str, RevertReason], ...] = (
        ("already fulfilled", RevertReason.ALREADY_FULFILLED),
        ("invalid request state", RevertReason.ALREADY_FULFILLED),
        ("signature", RevertReason.BAD_SIGNATURE),
        ("round", RevertReason.ROUND_MISMATCH),
        ("deadline", RevertReason.DEADLINE_NOT_REACHED),
    )

    def __init__(
        self,
        contract_util: "ContractUtility",
        contract_address: str,
        gas_overhead: int = 150_000,
        gas_multiplier: float = 1.2,
        poll_interval: float = 1.0
    ) -> None:
        """
        Initialize the FulfillmentSubmitter.

        Args:
            contract_util: Utility for contract interactions (must be in signing mode)
            contract_address: Address of the Anyrand contract
            gas_overhead: Gas added on top of the callback budget for the transaction limit
            gas_multiplier: Safety factor applied to the gas estimate
            poll_interval: Seconds between receipt and block number polls
        """
        self.contract_util: ContractUtility = contract_util
        self.w3: Web3 = contract_util.w3
        self.contract_address: str = Web3.to_checksum_address(contract_address)
        self.gas_overhead = gas_overhead
        self.gas_multiplier = gas_multiplier
        self.poll_interval = poll_interval

        self.anyrand_abi: list[dict[str, Any]] = self.contract_util.get_contract_abi("Anyrand")
        self.contract: Contract = self.w3.eth.contract(
            address=self.contract_address,
            abi=self.anyrand_abi
        )
        self.error_selectors: dict[str, str] = self._build_error_selectors(self.anyrand_abi)

        logger.info(f"FulfillmentSubmitter initialized for Anyrand at {self.contract_address}")

    @staticmethod
    def _build_error_selectors(abi: list[dict[str, Any]]) -> dict[str, str]:
        """Map 4-byte custom error selectors (0x-prefixed hex) to error names."""
        selectors = {}
        for entry in abi:
            if entry.get("type") != "error":
                continue
            signature = f"{entry['name']}({','.join(arg['type'] for arg in entry.get('inputs', []))})"
            selectors[Web3.to_hex(Web3.keccak(text=signature)[:4])] = entry["name"]
        return selectors

    def classify_revert(self, error: Exception) -> tuple[RevertReason, str]:
        """
        Map a contract revert to a stable reason code.

        Args:
            error: ContractLogicError (or subclass) raised by web3

        Returns:
            Tuple of (reason code, raw reason text)
        """
        data = getattr(error, "data", None)
        message = str(getattr(error, "message", None) or error)

        if isinstance(data, str) and len(data) >= 10:
            if name := self.error_selectors.get(data[:10].lower()):
                return self.CUSTOM_ERROR_REASONS.get(name, RevertReason.UNKNOWN), name

        lowered = message.lower()
        for needle, reason in self.REVERT_MESSAGE_REASONS:
            if needle in lowered:
                return reason, message
        return RevertReason.UNKNOWN, message

    async def submit_fulfillment(self, request: RandomnessRequest, signature: G1Point) -> str:
        """
        Submit a fulfillRandomness transaction.

        Gas is estimated first, so a request that would revert is rejected
        without spending gas.

        Args:
            request: The request being fulfilled (round and budget are used as-is)
            signature: Verified beacon signature for the request's round

        Returns:
            Transaction hash (0x-prefixed hex)

        Raises:
            TransactionRevertedError: If the contract rejects the call
            ChainRpcError: If the RPC node cannot be reached
        """
        if request.round is None:
            raise ValueError(f"Request {request.request_id} has no round")

        logger.info(f"Submitting fulfillment for request {request.request_id}, round {request.round}")

        try:
            function = self.contract.functions.fulfillRandomness(
                request.request_id,
                Web3.to_checksum_address(request.requester),
                HexBytes(request.beacon_key_id),
                request.round,
                request.callback_gas_budget,
                signature.as_uint256_pair()
            )
        except (Web3ValidationError, ValueError, TypeError) as e:
            logger.warning(f"✗ Fulfillment of request {request.request_id} has invalid arguments: {e}")
            raise TransactionRevertedError(RevertReason.UNKNOWN, f"invalid fulfillment arguments: {e}") from e

        try:
            estimate = await asyncio.to_thread(function.estimate_gas)
            gas_limit = max(
                int(estimate * self.gas_multiplier),
                request.callback_gas_budget + self.gas_overhead
            )
            logger.debug(f"Gas estimate {estimate}, using limit {gas_limit}")

            tx_hash: HexBytes = await asyncio.to_thread(function.transact, {"gas": gas_limit})

        except ContractLogicError as e:
            reason, raw = self.classify_revert(e)
            logger.warning(f"✗ Fulfillment of request {request.request_id} rejected: {reason.value} ({raw})")
            raise TransactionRevertedError(reason, raw) from e
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"Failed to submit fulfillment for request {request.request_id}: {e}") from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.info(f"✓ Fulfillment transaction submitted: {tx_hex}")
        return tx_hex

    async def wait_for_confirmation(
        self,
        tx_hash: str,
        confirmations: int,
        timeout: float
    ) -> TransactionConfirmation:
        """
        Wait for a transaction to be mined and reach ``confirmations`` blocks.

        Args:
            tx_hash: Transaction hash (0x-prefixed hex)
            confirmations: Required confirmations (1 = included in a block)
            timeout: Seconds to wait in total

        Returns:
            TransactionConfirmation with the delivered randomness when the
            fulfillment log is present

        Raises:
            ConfirmationTimeoutError: If not confirmed within ``timeout``
            TransactionRevertedError: If the transaction was mined but reverted
            ChainRpcError: If the RPC node cannot be reached
        """
        started = time.monotonic()

        try:
            receipt: TxReceipt = await asyncio.to_thread(
                self.w3.eth.wait_for_transaction_receipt,
                HexBytes(tx_hash),
                timeout=timeout,
                poll_latency=self.poll_interval
            )
        except TimeExhausted:
            raise ConfirmationTimeoutError(tx_hash, timeout) from None
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"Failed to fetch receipt for {tx_hash}: {e}") from e

        block_number = receipt["blockNumber"]

        if (status := receipt.get("status", 0)) != 1:
            reason, raw = await self._replay_revert(tx_hash, block_number)
            logger.error(f"✗ Transaction {tx_hash} reverted (status={status}): {reason.value}")
            raise TransactionRevertedError(reason, raw, tx_hash)

        try:
            while True:
                head = await asyncio.to_thread(lambda: self.w3.eth.block_number)
                if head - block_number + 1 >= confirmations:
                    break
                if time.monotonic() - started >= timeout:
                    raise ConfirmationTimeoutError(tx_hash, timeout)
                await asyncio.sleep(self.poll_interval)

            if confirmations > 1:
                # Re-read the receipt so a reorged-out transaction is not reported as confirmed
                receipt = await asyncio.to_thread(self.w3.eth.get_transaction_receipt, HexBytes(tx_hash))
                block_number = receipt["blockNumber"]
        except TransactionNotFound:
            raise ConfirmationTimeoutError(tx_hash, timeout) from None
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"Failed to track confirmations for {tx_hash}: {e}") from e

        randomness, callback_succeeded = self._decode_fulfillment(receipt)
        logger.info(f"✓ Transaction {tx_hash} confirmed in block {block_number}")

        return TransactionConfirmation(
            transaction_hash=tx_hash,
            block_number=block_number,
            gas_used=receipt.get("gasUsed", 0),
            randomness=randomness,
            callback_succeeded=callback_succeeded
        )

    async def _replay_revert(self, tx_hash: str, block_number: int) -> tuple[RevertReason, str]:
        """Re-execute a reverted transaction with eth_call to recover its reason."""
        try:
            tx = await asyncio.to_thread(self.w3.eth.get_transaction, HexBytes(tx_hash))
            await asyncio.to_thread(
                self.w3.eth.call,
                {"from": tx["from"], "to": tx["to"], "data": tx["input"], "gas": tx["gas"]},
                block_number
            )
        except ContractLogicError as e:
            return self.classify_revert(e)
        except (Web3Exception, OSError) as e:
            logger.warning(f"Could not replay reverted transaction {tx_hash}: {e}")
            return RevertReason.UNKNOWN, str(e)
        return RevertReason.UNKNOWN, "reverted without reason"

    def _decode_fulfillment(self, receipt: TxReceipt) -> tuple[int | None, bool | None]:
        """Extract randomness and callback result from the receipt's Anyrand logs."""
        for fulfilled in self.contract.events.RandomnessFulfilled().process_receipt(receipt, errors=DISCARD):
            return int(fulfilled["args"]["randomness"]), bool(fulfilled["args"]["callbackSuccess"])
        for failed in self.contract.events.RandomnessCallbackFailed().process_receipt(receipt, errors=DISCARD):
            return int(failed["args"]["randomness"]), False
        return None, None
