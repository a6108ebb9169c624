"""
Anyrand operator service.

Wires the chain listeners, request ledger, prioritizer and fulfillment
executor together and supervises their tasks.
"""

import asyncio
import logging
import time
from typing import Any

from .beacon_client import BeaconClient
from .config import OperatorConfig
from .errors import BeaconIntegrityError, BeaconError, ChainRpcError
from .event_processor import EventProcessor
from .fulfillment_executor import FulfillmentExecutor
from .fulfillment_submitter import FulfillmentSubmitter
from .models import EventKind, FulfillmentOutcome
from .prioritizer import FulfillmentPrioritizer
from .request_ledger import RequestLedger
from .request_reader import RequestReader
from .utils.contract_utility import ContractUtility
from .utils.event_listener_utility import EventListenerUtility
from .utils.polling_event_listener import PollingEventListener

# Get logger for this module
logger = logging.getLogger(__name__)


class AnyrandOperator:
    """
    Operator service that watches Anyrand requests and fulfills them.

    This class focuses on coordination and lifecycle management: request
    state lives in the RequestLedger, ranking in the FulfillmentPrioritizer,
    and each fulfillment runs as its own FulfillmentExecutor task.
    """

    def __init__(self, config: OperatorConfig) -> None:
        """
        Initialize the operator with configuration.

        Args:
            config: Operator configuration
        """
        self.config = config
        logger.info("Starting AnyrandOperator initialization")

        try:
            self.config.log_config()

            logger.debug("Initializing contract utility...")
            self.contract_utility = ContractUtility(
                config.chain.rpc_url,
                config.private_key,
                request_timeout=config.monitoring.request_timeout
            )

            logger.debug("Fetching chain ID...")
            chain_id = self.contract_utility.w3.eth.chain_id
            self.config = self.config.with_chain_id(chain_id)

            self.network = config.beacon.network
            self.beacon_client = BeaconClient(
                config.beacon,
                request_timeout=config.monitoring.request_timeout
            )
            self.clock = self.beacon_client.clock(self.network)

            self.ledger = RequestLedger(self.clock)
            self.prioritizer = FulfillmentPrioritizer(config.prioritization)

            self.reader = RequestReader(
                self.contract_utility,
                config.chain.contract_address,
                batch_size=config.monitoring.snapshot_batch_size
            )
            self.submitter = FulfillmentSubmitter(
                self.contract_utility,
                config.chain.contract_address,
                gas_overhead=config.fulfillment.gas_overhead
            )
            self.executor = FulfillmentExecutor(
                ledger=self.ledger,
                beacon_client=self.beacon_client,
                submitter=self.submitter,
                network=self.network,
                confirmations=config.fulfillment.confirmations_for(chain_id),
                confirmation_timeout=config.fulfillment.confirmation_timeout,
                max_attempts=config.fulfillment.max_attempts,
                base_backoff=config.fulfillment.base_backoff,
                max_backoff=config.fulfillment.max_backoff
            )
            self.event_processor = EventProcessor(self.reader.contract, dedupe_window=1000)

            anyrand_abi = self.contract_utility.get_contract_abi("Anyrand")
            self.polling_listeners = [
                PollingEventListener(
                    rpc_url=config.chain.rpc_url,
                    contract_address=config.chain.contract_address,
                    event_name=kind.value,
                    abi=anyrand_abi,
                    lookback_blocks=config.monitoring.lookback_blocks,
                    request_timeout=config.monitoring.request_timeout
                )
                for kind in EventKind
            ]
            self.websocket_listener: EventListenerUtility | None = None
            if config.chain.websocket_url:
                self.websocket_listener = EventListenerUtility(
                    rpc_url=config.chain.rpc_url,
                    websocket_url=config.chain.websocket_url
                )

            logger.info(
                f"AnyrandOperator initialized (chain: {chain_id}, "
                f"operator: {self.contract_utility.operator_address})"
            )

        except Exception as e:
            logger.error(f"AnyrandOperator initialization failed: {e}")
            logger.error(f"Exception type: {type(e).__name__}", exc_info=True)
            raise

        self.time_fn = time.time
        self.running = False
        self.shutdown_event = asyncio.Event()
        self.attempts: dict[int, asyncio.Task[FulfillmentOutcome]] = {}

    async def handle_chain_event(self, event_data: Any) -> None:
        """Decode a polled or pushed log and publish it to the ledger channel."""
        if event := await self.event_processor.process_event(event_data):
            await self.ledger.publish(event)

    async def refresh_snapshot(self) -> int:
        """Read pending and recent requests from the contract into the ledger."""
        try:
            rows = await self.reader.get_request_snapshot(self.ledger.pending_ids())
            rows += await self.reader.get_request_snapshot()
        except ChainRpcError as e:
            logger.warning(f"Snapshot poll failed: {e}")
            return 0
        return await self.ledger.apply_snapshot(rows)

    async def _snapshot_loop(self) -> None:
        """Periodically reconcile the ledger with contract state."""
        while self.running:
            await self.refresh_snapshot()
            await asyncio.sleep(self.config.monitoring.polling_interval)

    def _reap_attempts(self) -> None:
        """Collect finished attempts and cancel ones made pointless by chain state."""
        for request_id, task in list(self.attempts.items()):
            if task.done():
                del self.attempts[request_id]
                if task.cancelled():
                    logger.info(f"Fulfillment of request {request_id} cancelled")
                elif (error := task.exception()) is not None:
                    logger.error(f"Fulfillment of request {request_id} crashed: {error}", exc_info=error)
                else:
                    logger.info(f"Fulfillment finished: {task.result()}")
                continue

            request = self.ledger.get(request_id)
            if (request is None or request.state.is_terminal) and not self.executor.is_submitted(request_id):
                logger.info(f"Request {request_id} resolved elsewhere, cancelling attempt")
                task.cancel()

    def schedule_fulfillments(self) -> int:
        """
        Start attempts for the highest ranked requests, up to the concurrency limit.

        Returns:
            Number of attempts started
        """
        self._reap_attempts()

        now = int(self.time_fn())
        queue = self.prioritizer.rank(self.ledger.list_pending(now), now)

        started = 0
        for entry in queue:
            if len(self.attempts) >= self.config.fulfillment.max_concurrent:
                break
            if entry.request_id in self.attempts:
                continue
            logger.info(
                f"Scheduling request {entry.request_id} "
                f"(priority {entry.priority.value}, position {entry.queue_position})"
            )
            self.attempts[entry.request_id] = asyncio.create_task(
                self.executor.fulfill_with_retry(entry.request_id)
            )
            started += 1
        return started

    async def _fulfillment_scheduler(self) -> None:
        """Rank the queue once per beacon period and start attempts."""
        interval = max(1, self.clock.period)
        while self.running:
            self.schedule_fulfillments()
            await asyncio.sleep(interval)

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.config.monitoring.status_log_interval)
            now = int(self.time_fn())
            queue = self.prioritizer.rank(self.ledger.list_pending(now), now)
            status = await self.beacon_client.health(self.network)
            logger.info(
                f"Status: beacon {status.health.value} (round {status.latest_round}), "
                f"{self.prioritizer.summarize(queue, now)}, {len(self.attempts)} attempts running"
            )
            self.ledger.log_metrics()
            self.executor.log_metrics()
            self.event_processor.log_metrics()

    async def _verify_beacon(self) -> None:
        """Check the configured round schedule against the beacon before starting."""
        try:
            await self.beacon_client.verify_network(self.network)
        except BeaconIntegrityError:
            raise
        except BeaconError as e:
            logger.warning(f"Could not verify beacon {self.network} at startup: {e}")

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed."""
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Clean up all tasks and listeners."""
        for listener in self.polling_listeners:
            await listener.stop()
        if self.websocket_listener:
            await self.websocket_listener.stop()

        # In-flight attempts finish tracking their transaction before exiting
        pending = list(tasks.values()) + list(self.attempts.values())
        for task in pending:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Task ended with error during shutdown: {result}")
        self.attempts.clear()

    async def run(self) -> None:
        """Main event loop for the operator service."""
        self.running = True
        logger.info("Anyrand operator starting...")
        logger.info(f"Polling interval: {self.config.monitoring.polling_interval}s")
        logger.info(f"Max concurrent fulfillments: {self.config.fulfillment.max_concurrent}")

        tasks: dict[str, asyncio.Task] = {}
        try:
            await self._verify_beacon()
            await self.refresh_snapshot()

            tasks = {
                "ledger": asyncio.create_task(self.ledger.consume()),
                "snapshot": asyncio.create_task(self._snapshot_loop()),
                "scheduler": asyncio.create_task(self._fulfillment_scheduler()),
                "status": asyncio.create_task(self._periodic_status_logger()),
            }
            for listener in self.polling_listeners:
                tasks[listener.event_name] = asyncio.create_task(
                    listener.start_polling(
                        callback=self.handle_chain_event,
                        interval=self.config.monitoring.polling_interval
                    )
                )
            if self.websocket_listener:
                events = [getattr(self.reader.contract.events, kind.value)() for kind in EventKind]
                tasks["websocket"] = asyncio.create_task(
                    self.websocket_listener.listen_for_contract_events(
                        self.config.chain.contract_address,
                        events,
                        self.handle_chain_event
                    )
                )

            logger.info("Event monitoring started, waiting for requests...")

            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            logger.info("Anyrand operator stopped")

    def stop(self) -> None:
        """Stop the operator service."""
        self.running = False
        self.shutdown_event.set()
