#!/usr/bin/env python3
"""Chain reads against the Anyrand contract.

Provides request snapshots and contract limits to the ledger and to
would-be requesters. Web3 calls block, so each one runs in a worker thread.
"""

import asyncio
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import Web3Exception

from .errors import ChainRpcError
from .models import ContractLimits, RandomnessRequest, RequestState

if TYPE_CHECKING:
    from .utils.contract_utility import ContractUtility

# Get logger for this module
logger = logging.getLogger(__name__)


class RequestReader:
    """Reads request rows and limits from the Anyrand contract."""

    def __init__(
        self,
        contract_util: "ContractUtility",
        contract_address: str,
        batch_size: int = 50
    ) -> None:
        """
        Initialize the RequestReader.

        Args:
            contract_util: Utility holding the Web3 connection
            contract_address: Address of the Anyrand contract
            batch_size: Most recent request ids read when no ids are given
        """
        self.contract_util = contract_util
        self.batch_size = batch_size
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract: Contract = contract_util.get_contract("Anyrand", self.contract_address)

    async def _call(self, fn_name: str, *args: object) -> object:
        function = getattr(self.contract.functions, fn_name)(*args)
        try:
            return await asyncio.to_thread(function.call)
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"{fn_name}({', '.join(map(str, args))}) failed: {e}") from e

    async def get_request(self, request_id: int) -> RandomnessRequest:
        """
        Read one request row.

        Returns:
            The request as reported by the contract; state NONEXISTENT if unknown

        Raises:
            ChainRpcError: If the RPC call fails
        """
        row = await self._call("getRequest", request_id)
        state = RequestState(int(await self._call("getRequestState", request_id)))

        (
            _,
            requester,
            deadline,
            callback_gas_limit,
            fee_paid,
            _effective_fee_per_gas,
            pub_key_hash,
            round,
            randomness,
            callback_success,
            actual_gas_used,
        ) = row

        terminal = state.is_terminal
        return RandomnessRequest(
            request_id=request_id,
            requester=Web3.to_checksum_address(requester),
            deadline=int(deadline),
            callback_gas_budget=int(callback_gas_limit),
            fee_paid=int(fee_paid),
            beacon_key_id=Web3.to_hex(HexBytes(pub_key_hash)),
            round=int(round) or None,
            state=state,
            randomness=int(randomness) if terminal else None,
            callback_succeeded=bool(callback_success) if terminal else None,
            actual_gas_used=int(actual_gas_used) if terminal else None
        )

    async def get_request_snapshot(self, ids: Iterable[int] | None = None) -> list[RandomnessRequest]:
        """
        Read a batch of requests.

        Args:
            ids: Request ids to read; None reads the most recent ids up to nextRequestId

        Returns:
            Rows for every id that exists on-chain
        """
        if ids is None:
            next_id = int(await self._call("nextRequestId"))
            ids = range(max(1, next_id - self.batch_size), next_id)

        rows = []
        for request_id in ids:
            row = await self.get_request(request_id)
            if row.state == RequestState.NONEXISTENT:
                logger.debug(f"Request {request_id} does not exist on-chain")
                continue
            rows.append(row)

        logger.debug(f"Snapshot read {len(rows)} requests")
        return rows

    async def get_contract_limits(self) -> ContractLimits:
        """Read the contract's request limits."""
        max_gas, max_delta, next_id = await asyncio.gather(
            self._call("maxCallbackGasLimit"),
            self._call("maxDeadlineDelta"),
            self._call("nextRequestId"),
        )
        return ContractLimits(
            max_callback_gas_budget=int(max_gas),
            max_deadline_delta=int(max_delta),
            next_request_id=int(next_id)
        )

    async def current_beacon_key_id(self) -> str:
        return Web3.to_hex(HexBytes(await self._call("currentBeaconPubKeyHash")))


def is_valid_callback_gas_budget(callback_gas_budget: int, limits: ContractLimits) -> bool:
    """Check a requested callback gas budget against the contract maximum."""
    return 0 < callback_gas_budget <= limits.max_callback_gas_budget


def is_valid_deadline(deadline: int, now: int, limits: ContractLimits) -> bool:
    """Check a requested deadline is in the future and within the allowed delta."""
    return now < deadline <= now + limits.max_deadline_delta
