"""
HTTP log polling for one Anyrand event.

Each listener tails a single event (RandomnessRequested, RandomnessFulfilled
or RandomnessCallbackFailed) with eth_getLogs. Web3 calls block, so every
RPC round trip runs in a worker thread.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from web3 import Web3
from web3.types import EventData

EventCallback = Callable[[EventData], Awaitable[Any]]


class PollingEventListener:
    """Tails one Anyrand event over HTTP RPC and hands each log to a callback."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        event_name: str,
        abi: list[dict[str, Any]],
        lookback_blocks: int = 100,
        request_timeout: int = 30
    ) -> None:
        """
        Args:
            rpc_url: HTTP RPC endpoint of the chain hosting Anyrand
            contract_address: Anyrand contract address
            event_name: Anyrand event to tail
            abi: Anyrand ABI
            lookback_blocks: Blocks replayed on startup so requests made while
                the operator was down are not missed
            request_timeout: HTTP timeout for RPC requests in seconds
        """
        self.rpc_url = rpc_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.event_name = event_name
        self.lookback_blocks = lookback_blocks

        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=abi)

        if not hasattr(self.contract.events, event_name):
            raise ValueError(f"{event_name} is not an event in the Anyrand ABI")
        self.event_obj = getattr(self.contract.events, event_name)

        # None until the lookback replay has run
        self.last_processed_block: int | None = None
        self.is_running = False

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _head(self) -> int:
        return await asyncio.to_thread(lambda: self.w3.eth.block_number)

    async def _fetch_logs(self, from_block: int, to_block: int) -> list[EventData]:
        return list(await asyncio.to_thread(
            self.event_obj.get_logs,
            from_block=from_block,
            to_block=to_block
        ))

    @staticmethod
    async def _deliver(logs: Sequence[EventData], callback: EventCallback) -> None:
        for log in logs:
            await callback(log)

    async def initial_sync(self, callback: EventCallback) -> None:
        """Replay the lookback window so the ledger starts with recent requests.

        Errors propagate; the operator treats a failed replay as a dead listener.
        """
        try:
            head = await self._head()
            from_block = max(0, head - self.lookback_blocks)
            logs = await self._fetch_logs(from_block, head)
        except Exception as e:
            self.logger.error(f"{self.event_name} replay of the last {self.lookback_blocks} blocks failed: {e}")
            raise

        self.logger.info(f"{self.event_name}: replayed blocks {from_block}-{head}, {len(logs)} logs")
        await self._deliver(logs, callback)
        self.last_processed_block = head

    async def poll_for_events(self, callback: EventCallback) -> int:
        """
        Fetch logs from the block after the last one processed up to the head.

        A failed fetch leaves the position unchanged so the range is retried
        on the next poll.

        Returns:
            Number of logs delivered
        """
        try:
            head = await self._head()
            if self.last_processed_block is not None and head <= self.last_processed_block:
                return 0

            from_block = head if self.last_processed_block is None else self.last_processed_block + 1
            logs = await self._fetch_logs(from_block, head)
            if logs:
                self.logger.info(f"{self.event_name}: {len(logs)} logs in blocks {from_block}-{head}")
            await self._deliver(logs, callback)

        except Exception as e:
            self.logger.error(f"{self.event_name} poll failed, will retry from the same block: {e}")
            return 0

        self.last_processed_block = head
        return len(logs)

    async def start_polling(self, callback: EventCallback, interval: int = 12) -> None:
        """Replay the lookback window, then poll every ``interval`` seconds until stopped."""
        if self.is_running:
            self.logger.warning(f"{self.event_name} listener is already polling")
            return

        self.is_running = True
        self.logger.info(f"Tailing {self.event_name} on {self.contract_address} every {interval}s")

        await self.initial_sync(callback)

        while self.is_running:
            try:
                await asyncio.sleep(interval)
                await self.poll_for_events(callback)
            except asyncio.CancelledError:
                self.logger.info(f"{self.event_name} listener cancelled")
                raise

    async def stop(self) -> None:
        self.logger.info(f"{self.event_name} listener stopping at block {self.last_processed_block}")
        self.is_running = False

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_processed_block": self.last_processed_block,
            "contract_address": self.contract_address,
            "event_name": self.event_name,
            "rpc_url": self.rpc_url
        }
