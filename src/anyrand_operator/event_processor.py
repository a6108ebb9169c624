#!/usr/bin/env python3
"""Event processing module for the Anyrand operator.

This module handles the decoding, validation, and deduplication of Anyrand
contract events (RandomnessRequested, RandomnessFulfilled and
RandomnessCallbackFailed) into typed ledger events.
"""

import logging
from collections import OrderedDict
from typing import Any

from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract
from web3.types import EventData

from .models import EventKind, LedgerEvent, RandomnessRequestedEvent, RequestResolvedEvent

# Get logger for this module
logger = logging.getLogger(__name__)


class EventProcessor:
    """Processes and validates Anyrand events for the ledger.

    This class is responsible for:
    - Decoding raw WebSocket logs with the contract ABI
    - Converting decoded EventData into typed ledger events
    - Preventing duplicate event processing (at-least-once delivery)
    - Maintaining metrics on processed events
    """

    def __init__(self, contract: Contract, dedupe_window: int = 1000) -> None:
        """Initialize the EventProcessor.

        Args:
            contract: Anyrand contract used to decode raw logs
            dedupe_window: Maximum number of events to track for deduplication
        """
        self.contract = contract
        self.dedupe_window = dedupe_window

        # Map topic0 -> event name for raw log decoding
        self.topic_to_event: dict[HexBytes, str] = {}
        for kind in EventKind:
            event_obj = getattr(self.contract.events, kind.value)()
            self.topic_to_event[HexBytes(event_obj.topic)] = kind.value

        # Deduplication cache using OrderedDict for O(1) lookups
        self.processed_events: OrderedDict[tuple[str, int], None] = OrderedDict()

        # Metrics tracking
        self.events_processed = 0
        self.events_filtered = 0
        self.events_duplicated = 0
        self.events_invalid = 0

        logger.info(f"EventProcessor initialized with dedupe window of {dedupe_window} events")

    async def process_event(self, event_data: Any) -> LedgerEvent | None:
        """Process a polled or pushed event into a typed ledger event.

        Args:
            event_data: Decoded EventData from polling, or a raw log dict from WebSocket

        Returns:
            The ledger event if valid and not a duplicate, None otherwise
        """
        try:
            decoded = self._decode(event_data)
            if decoded is None:
                return None

            parsed_event = self._parse_event_data(decoded)
            if parsed_event is None:
                return None

            if self._is_duplicate(parsed_event):
                self.events_duplicated += 1
                logger.debug(f"Duplicate event detected: {parsed_event}")
                return None

            self._mark_processed(parsed_event)
            self.events_processed += 1

            logger.debug(f"Processed event: {parsed_event}")
            return parsed_event

        except Exception as e:
            self.events_invalid += 1
            logger.error(f"Error processing event: {e}", exc_info=True)
            return None

    def _decode(self, event_data: Any) -> EventData | None:
        """Return decoded EventData, decoding raw logs with the contract ABI."""
        if "event" in event_data and "args" in event_data:
            return event_data

        topics = event_data.get("topics") or []
        if not topics:
            logger.warning("Raw log without topics")
            self.events_invalid += 1
            return None

        event_name = self.topic_to_event.get(HexBytes(topics[0]))
        if event_name is None:
            self.events_filtered += 1
            logger.debug(f"Ignoring log with unknown topic {Web3.to_hex(HexBytes(topics[0]))}")
            return None

        log = dict(event_data)
        log["topics"] = [HexBytes(topic) for topic in topics]
        log["data"] = HexBytes(event_data.get("data") or b"")
        for key in ("transactionHash", "blockHash"):
            if log.get(key) is not None:
                log[key] = HexBytes(log[key])

        return getattr(self.contract.events, event_name)().process_log(log)

    def _parse_event_data(self, event_data: EventData) -> LedgerEvent | None:
        """Convert decoded EventData into a ledger event.

        Args:
            event_data: Decoded event

        Returns:
            Parsed ledger event or None if a required field is missing
        """
        try:
            args = event_data["args"]
            tx_hash = Web3.to_hex(HexBytes(event_data["transactionHash"]))
            block_number = int(event_data["blockNumber"])
            log_index = int(event_data["logIndex"])
            requester = Web3.to_checksum_address(args["requester"])

            match event_data["event"]:
                case EventKind.REQUESTED.value:
                    return RandomnessRequestedEvent(
                        request_id=int(args["requestId"]),
                        requester=requester,
                        beacon_key_id=Web3.to_hex(HexBytes(args["pubKeyHash"])),
                        deadline=int(args["deadline"]),
                        callback_gas_budget=int(args["callbackGasLimit"]),
                        fee_paid=int(args["feePaid"]),
                        block_number=block_number,
                        transaction_hash=tx_hash,
                        log_index=log_index
                    )
                case EventKind.FULFILLED.value | EventKind.CALLBACK_FAILED.value as name:
                    # A Fulfilled log whose callback reverted resolves to Failed
                    succeeded = name == EventKind.FULFILLED.value and bool(
                        args.get("callbackSuccess", True)
                    )
                    return RequestResolvedEvent(
                        request_id=int(args["requestId"]),
                        requester=requester,
                        kind=EventKind.FULFILLED if succeeded else EventKind.CALLBACK_FAILED,
                        randomness=int(args["randomness"]),
                        actual_gas_used=int(args["actualGasUsed"]),
                        block_number=block_number,
                        transaction_hash=tx_hash,
                        log_index=log_index
                    )
                case other:
                    self.events_filtered += 1
                    logger.debug(f"Ignoring unrelated event {other}")
                    return None

        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to parse event data: {e}")
            self.events_invalid += 1
            return None

    def _is_duplicate(self, event: LedgerEvent) -> bool:
        return event.unique_key in self.processed_events

    def _mark_processed(self, event: LedgerEvent) -> None:
        """Mark an event as processed, evicting the oldest key at capacity."""
        event_key = event.unique_key

        if event_key in self.processed_events:
            self.processed_events.move_to_end(event_key)
        else:
            if len(self.processed_events) >= self.dedupe_window:
                self.processed_events.popitem(last=False)
            self.processed_events[event_key] = None

    def get_metrics(self) -> dict[str, int]:
        """Get current processing metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "events_processed": self.events_processed,
            "events_filtered": self.events_filtered,
            "events_duplicated": self.events_duplicated,
            "events_invalid": self.events_invalid,
            "cache_size": len(self.processed_events)
        }

    def log_metrics(self) -> None:
        """Log current processing metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"EventProcessor Metrics: "
            f"Processed={metrics['events_processed']}, "
            f"Filtered={metrics['events_filtered']}, "
            f"Duplicates={metrics['events_duplicated']}, "
            f"Invalid={metrics['events_invalid']}, "
            f"Cache={metrics['cache_size']}/{self.dedupe_window}"
        )
