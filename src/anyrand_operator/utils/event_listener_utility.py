"""
Event Listener Utility for real-time Anyrand event monitoring.

Provides WebSocket-based log subscriptions with automatic reconnection.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any

from web3 import AsyncWeb3, Web3
from web3.exceptions import ProviderConnectionError
from web3.providers import WebSocketProvider
from web3.utils.subscriptions import LogsSubscription, LogsSubscriptionContext

LogCallback = Callable[[dict[str, Any]], Awaitable[Any]]


class ConnectionState(Enum):
    """Connection state for event listener."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class EventListenerUtility:
    """
    Utility for listening to contract events via WebSocket.

    Features:
    - One eth_subscribe log subscription covering several event topics
    - Automatic reconnection with exponential backoff
    - Delivery of normalized raw logs to an async callback
    """

    def __init__(
        self,
        rpc_url: str,
        websocket_url: str | None = None,
        max_retries: int = 5
    ) -> None:
        """
        Initialize the EventListenerUtility.

        Args:
            rpc_url: HTTP RPC endpoint URL (used for WebSocket URL generation if websocket_url not provided)
            websocket_url: WebSocket RPC endpoint URL (auto-generated if not provided)
            max_retries: Maximum consecutive failed connection attempts
        """
        self.rpc_url = rpc_url
        self.websocket_url = websocket_url or self._convert_to_websocket_url(rpc_url)
        self.max_retries = max_retries

        # Connection state
        self.connection_state = ConnectionState.DISCONNECTED
        self.async_w3: AsyncWeb3 | None = None
        self.is_running = False

        # Event processing
        self.event_callback: LogCallback | None = None
        self.logs_received = 0

        # Retry configuration
        self.base_delay = 1
        self.max_delay = 60

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @staticmethod
    def _convert_to_websocket_url(http_url: str) -> str:
        """Convert HTTP RPC URL to WebSocket URL."""
        if http_url.startswith("https://"):
            return http_url.replace("https://", "wss://", 1)
        if http_url.startswith("http://"):
            return http_url.replace("http://", "ws://", 1)
        return http_url

    async def listen_for_contract_events(
        self,
        contract_address: str,
        event_objs: Sequence[Any],  # e.g. [contract.events.RandomnessRequested(), ...]
        callback: LogCallback
    ) -> None:
        """
        Main entry point for WebSocket event listening.

        Args:
            contract_address: Address of the contract to listen to
            event_objs: Contract event objects whose topics to subscribe to
            callback: Async function called with each normalized log
        """
        self.event_callback = callback
        self.is_running = True
        names = ", ".join(event_obj.event_name for event_obj in event_objs)
        self.logger.info(f"Starting WebSocket event listener for {names}")

        await self._websocket_listener(contract_address, event_objs)

    async def _websocket_listener(self, contract_address: str, event_objs: Sequence[Any]) -> None:
        """WebSocket-based event listening with reconnect on connection loss."""
        retry_count = 0
        # A list in the first topic position matches any of the event signatures
        topics = [[event_obj.topic for event_obj in event_objs]]

        while self.is_running:
            try:
                self.connection_state = ConnectionState.CONNECTING
                self.logger.info(f"Connecting to WebSocket: {self.websocket_url}")

                async with AsyncWeb3(
                    WebSocketProvider(
                        self.websocket_url,
                        request_timeout=60,
                        subscription_response_queue_size=10000,
                    )
                ) as w3:
                    self.async_w3 = w3
                    self.connection_state = ConnectionState.CONNECTED
                    retry_count = 0
                    self.logger.info("WebSocket connected successfully")

                    logs_subscription = LogsSubscription(
                        label="anyrand-logs-subscription",
                        address=Web3.to_checksum_address(contract_address),
                        topics=topics,
                        handler=self._log_handler,
                    )

                    self.logger.info(
                        f"Subscribing to {len(topics[0])} event topics on {contract_address}"
                    )
                    await w3.subscription_manager.subscribe([logs_subscription])
                    await w3.subscription_manager.handle_subscriptions()

            except (ConnectionError, OSError, ProviderConnectionError) as e:
                retry_count += 1
                delay = min(self.base_delay * (2 ** retry_count), self.max_delay)

                self.logger.warning(
                    f"WebSocket connection failed (attempt {retry_count}/{self.max_retries}): {e}"
                )

                if retry_count < self.max_retries:
                    self.logger.info(f"Retrying in {delay} seconds...")
                    self.connection_state = ConnectionState.RECONNECTING
                    await asyncio.sleep(delay)
                else:
                    self.logger.error("Max WebSocket retries reached")
                    self.connection_state = ConnectionState.FAILED
                    raise
            finally:
                self.async_w3 = None

    @staticmethod
    def _to_int(value: Any) -> int:
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            return int(value, 16) if value.startswith("0x") else int(value)
        return 0

    def normalize_log(self, log_receipt: Any) -> dict[str, Any]:
        """Convert a subscription log (dict or attribute object) into a plain dict."""
        if hasattr(log_receipt, "get") and callable(log_receipt.get):
            get = log_receipt.get
        else:
            def get(key: str, default: Any = None) -> Any:
                return getattr(log_receipt, key, default)

        return {
            "address": get("address"),
            "blockHash": get("blockHash"),
            "blockNumber": self._to_int(get("blockNumber", 0)),
            "data": get("data"),
            "logIndex": self._to_int(get("logIndex", 0)),
            "topics": list(get("topics", []) or []),
            "transactionHash": get("transactionHash"),
            "transactionIndex": self._to_int(get("transactionIndex", 0)),
        }

    async def _log_handler(self, handler_context: LogsSubscriptionContext) -> None:
        """
        Handler for LogsSubscription events.

        Args:
            handler_context: Context containing the log receipt and subscription details
        """
        try:
            event_data = self.normalize_log(handler_context.result)
            self.logs_received += 1

            if self.event_callback:
                await self.event_callback(event_data)

        except Exception as e:
            self.logger.error(f"Error processing subscription event: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop the event listener and clean up resources."""
        self.logger.info("Stopping event listener...")
        self.is_running = False

        try:
            if self.async_w3 and hasattr(self.async_w3, "subscription_manager"):
                await self.async_w3.subscription_manager.unsubscribe_all()

            if self.async_w3 and hasattr(self.async_w3.provider, "disconnect"):
                await self.async_w3.provider.disconnect()

        except Exception as e:
            self.logger.warning(f"Error during cleanup: {e}")
        finally:
            self.connection_state = ConnectionState.DISCONNECTED
            self.async_w3 = None
