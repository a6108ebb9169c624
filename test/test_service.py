#!/usr/bin/env python3
"""Unit tests for the AnyrandOperator service wiring."""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from hexbytes import HexBytes
from web3 import Web3

from src.anyrand_operator.config import BeaconConfig, ChainConfig, OperatorConfig
from src.anyrand_operator.errors import BeaconIntegrityError, BeaconNetworkError, ChainRpcError
from src.anyrand_operator.models import (
    EventKind,
    RandomnessRequest,
    RandomnessRequestedEvent,
    RequestResolvedEvent,
    RequestState,
)
from src.anyrand_operator.service import AnyrandOperator

ABI_PATH = Path(__file__).parent.parent / "src" / "anyrand_operator" / "contracts" / "Anyrand.json"
CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
REQUESTER = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb7"
NOW = 1727521075 + 30_000


def requested(request_id: int, fee_paid: int = 10**15) -> RandomnessRequestedEvent:
    return RandomnessRequestedEvent(
        request_id=request_id,
        requester=REQUESTER,
        beacon_key_id="0x" + "ab" * 32,
        deadline=NOW - 100,
        callback_gas_budget=100_000,
        fee_paid=fee_paid,
        block_number=100,
        transaction_hash=f"0x{request_id:064x}",
        log_index=0
    )


@pytest.fixture
def config():
    return OperatorConfig(
        chain=ChainConfig(rpc_url="https://test.rpc", contract_address=CONTRACT_ADDRESS),
        beacon=BeaconConfig(),
        private_key="0x" + "1" * 64
    )


@pytest.fixture
def operator(config):
    """Create an operator over a mocked chain connection."""
    with ABI_PATH.open() as file:
        abi = json.load(file)["abi"]

    with patch('src.anyrand_operator.service.ContractUtility') as mock_contract_utility:
        contract_util = MagicMock()
        contract_util.w3.eth.chain_id = 534351
        contract_util.operator_address = REQUESTER
        contract_util.get_contract_abi.return_value = abi
        contract_util.get_contract.return_value = Web3().eth.contract(address=CONTRACT_ADDRESS, abi=abi)
        mock_contract_utility.return_value = contract_util

        operator = AnyrandOperator(config)

    operator.time_fn = lambda: NOW
    operator.executor.fulfill_with_retry = AsyncMock()
    return operator


class TestAnyrandOperator:
    """Test suite for operator wiring and scheduling."""

    def test_init(self, operator):
        """Test components are wired from configuration."""
        assert operator.config.chain.chain_id == 534351
        assert operator.executor.confirmations == 1
        assert operator.network == "evmnet"
        assert [listener.event_name for listener in operator.polling_listeners] == [
            kind.value for kind in EventKind
        ]
        assert operator.websocket_listener is None

    def test_init_with_websocket(self):
        """Test a WebSocket endpoint adds a push listener."""
        with patch('src.anyrand_operator.service.ContractUtility') as mock_contract_utility, \
                patch('src.anyrand_operator.service.FulfillmentSubmitter'), \
                patch('src.anyrand_operator.service.RequestReader'), \
                patch('src.anyrand_operator.service.EventProcessor'), \
                patch('src.anyrand_operator.service.PollingEventListener'):
            mock_contract_utility.return_value.w3.eth.chain_id = 534351
            operator = AnyrandOperator(OperatorConfig(
                chain=ChainConfig(
                    rpc_url="https://test.rpc",
                    contract_address=CONTRACT_ADDRESS,
                    websocket_url="wss://test.rpc"
                ),
                beacon=BeaconConfig(),
                private_key="0x" + "1" * 64
            ))

        assert operator.websocket_listener is not None
        assert operator.websocket_listener.websocket_url == "wss://test.rpc"

    @pytest.mark.asyncio
    async def test_handle_chain_event_publishes(self, operator):
        """Test decoded chain events are published to the ledger channel."""
        await operator.handle_chain_event({
            "event": "RandomnessRequested",
            "args": {
                "requestId": 1,
                "requester": REQUESTER,
                "pubKeyHash": HexBytes("0x" + "ab" * 32),
                "deadline": NOW - 100,
                "callbackGasLimit": 100_000,
                "feePaid": 10**15,
            },
            "transactionHash": HexBytes("0x" + "01" * 32),
            "blockNumber": 100,
            "logIndex": 0,
        })

        assert operator.ledger.channel.qsize() == 1
        event = operator.ledger.channel.get_nowait()
        assert event.request_id == 1

    @pytest.mark.asyncio
    async def test_refresh_snapshot(self, operator):
        """Test snapshot rows are merged into the ledger."""
        row = RandomnessRequest(
            request_id=3,
            requester=REQUESTER,
            deadline=NOW - 100,
            callback_gas_budget=100_000,
            fee_paid=10**15,
            beacon_key_id="0x" + "ab" * 32,
            round=None
        )
        operator.reader.get_request_snapshot = AsyncMock(side_effect=[[], [row]])

        assert await operator.refresh_snapshot() == 1
        assert operator.ledger.get(3).state == RequestState.PENDING

    @pytest.mark.asyncio
    async def test_refresh_snapshot_rpc_failure(self, operator):
        """Test a failed snapshot read is logged and skipped."""
        operator.reader.get_request_snapshot = AsyncMock(side_effect=ChainRpcError("down"))

        assert await operator.refresh_snapshot() == 0

    @pytest.mark.asyncio
    async def test_schedule_respects_priority_and_concurrency(self, operator):
        """Test the best paying requests are started first, up to the limit."""
        for request_id in range(1, 7):
            await operator.ledger.apply_event(requested(request_id, fee_paid=request_id * 10**15))

        started = operator.schedule_fulfillments()

        assert started == 4
        assert sorted(operator.attempts) == [3, 4, 5, 6]
        assert operator.schedule_fulfillments() == 0
        await asyncio.gather(*operator.attempts.values())

    @pytest.mark.asyncio
    async def test_reap_cancels_attempts_resolved_elsewhere(self, operator):
        """Test an attempt whose request was fulfilled by someone else is cancelled."""
        await operator.ledger.apply_event(requested(1))
        attempt = asyncio.create_task(asyncio.Event().wait())
        operator.attempts[1] = attempt

        await operator.ledger.apply_event(RequestResolvedEvent(
            request_id=1,
            requester=REQUESTER,
            kind=EventKind.FULFILLED,
            randomness=5,
            actual_gas_used=1,
            block_number=101,
            transaction_hash="0x" + "22" * 32,
            log_index=0
        ))
        operator._reap_attempts()

        with pytest.raises(asyncio.CancelledError):
            await attempt
        operator._reap_attempts()
        assert operator.attempts == {}

    @pytest.mark.asyncio
    async def test_verify_beacon_tolerates_network_errors(self, operator):
        """Test an unreachable beacon at startup is only a warning."""
        operator.beacon_client.verify_network = AsyncMock(side_effect=BeaconNetworkError("down"))

        await operator._verify_beacon()

    @pytest.mark.asyncio
    async def test_run_stops_on_beacon_mismatch(self, operator):
        """Test a beacon that disagrees with the configured schedule stops the operator."""
        operator.beacon_client.verify_network = AsyncMock(side_effect=BeaconIntegrityError("period"))

        with pytest.raises(BeaconIntegrityError):
            await operator.run()

        assert operator.running is False

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, operator):
        """Test the main loop starts its tasks and shuts down cleanly on stop."""
        operator.beacon_client.verify_network = AsyncMock()
        operator.refresh_snapshot = AsyncMock(return_value=0)
        for listener in operator.polling_listeners:
            listener.start_polling = AsyncMock()

        run_task = asyncio.create_task(operator.run())
        await asyncio.sleep(0.05)
        operator.stop()
        await asyncio.wait_for(run_task, timeout=5)

        assert operator.running is False
        operator.refresh_snapshot.assert_awaited()
