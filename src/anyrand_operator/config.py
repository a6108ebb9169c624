#!/usr/bin/env python3
"""Configuration management for the Anyrand operator.

This module provides type-safe configuration dataclasses with validation
for the operator. Configuration is loaded from environment variables
with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .round_clock import RoundClock

# Get logger for this module
logger = logging.getLogger(__name__)

GWEI = 10**9


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for the chain hosting the Anyrand contract.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint
        contract_address: Checksummed address of the Anyrand contract
        websocket_url: Optional WebSocket endpoint for push event delivery
        chain_id: Chain ID (fetched from RPC, not configured)
    """

    rpc_url: str
    contract_address: str
    websocket_url: str | None = None
    chain_id: int | None = None  # Set after connecting to RPC

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.rpc_url:
            raise ValueError("RPC URL is required (RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        if self.websocket_url and urlparse(self.websocket_url).scheme not in ('ws', 'wss'):
            raise ValueError(
                f"Invalid WebSocket URL: {self.websocket_url}. Expected ws or wss"
            )

        if not self.contract_address:
            raise ValueError("Anyrand contract address is required (ANYRAND_ADDRESS)")

        if not Web3.is_address(self.contract_address):
            raise ValueError(f"Invalid Anyrand contract address: {self.contract_address}")

        checksummed = Web3.to_checksum_address(self.contract_address)
        if checksummed != self.contract_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'contract_address', checksummed)


@dataclass(frozen=True, slots=True)
class BeaconConfig:
    """Configuration for the drand beacon network.

    Attributes:
        network: Beacon network name
        base_url: Beacon HTTP relay
        chain_hash: drand chain hash used in request paths
        genesis_time: Unix timestamp of round 1
        period: Seconds between rounds
        active_staleness: Rounds of lag still considered active
        delayed_staleness: Rounds of lag still considered delayed
    """

    network: str = "evmnet"
    base_url: str = "https://api.drand.sh"
    chain_hash: str = ""
    genesis_time: int = 0
    period: int = 0
    active_staleness: int = 1
    delayed_staleness: int = 3

    # Supported networks (BN254 signatures on G1)
    SUPPORTED_NETWORKS: ClassVar[dict[str, dict[str, int | str]]] = {
        "evmnet": {
            "chain_hash": "04f1e9062b8a81f848fded9c12306733282b2727ecced50032187751166ec8c3",
            "genesis_time": 1727521075,
            "period": 3,
        },
    }

    def __post_init__(self) -> None:
        """Validate beacon configuration and fill network defaults."""
        if self.network not in self.SUPPORTED_NETWORKS:
            raise ValueError(
                f"Unsupported beacon network: {self.network}. "
                f"Supported networks: {', '.join(sorted(self.SUPPORTED_NETWORKS))}"
            )

        defaults = self.SUPPORTED_NETWORKS[self.network]
        for name in ("chain_hash", "genesis_time", "period"):
            if not getattr(self, name):
                object.__setattr__(self, name, defaults[name])

        if urlparse(self.base_url).scheme not in ('http', 'https'):
            raise ValueError(f"Invalid beacon URL: {self.base_url}. Expected http or https")
        if self.genesis_time <= 0:
            raise ValueError(f"Beacon genesis time must be positive, got {self.genesis_time}")
        if self.period <= 0:
            raise ValueError(f"Beacon period must be positive, got {self.period}")
        if not 0 <= self.active_staleness <= self.delayed_staleness:
            raise ValueError(
                "Beacon staleness thresholds must satisfy 0 <= active <= delayed, "
                f"got {self.active_staleness}/{self.delayed_staleness}"
            )

    @property
    def network_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.chain_hash}"

    def clock(self) -> RoundClock:
        return RoundClock(
            genesis_time=self.genesis_time,
            period=self.period,
            active_staleness=self.active_staleness,
            delayed_staleness=self.delayed_staleness
        )


@dataclass(frozen=True, slots=True)
class PrioritizationConfig:
    """Thresholds and ETA model for ranking fulfillable requests.

    Fee thresholds are in wei per callback gas unit. ETA slopes and floors
    are seconds per queue position and minimum seconds.
    """

    high_fee_threshold: int = 50 * GWEI
    low_fee_threshold: int = 10 * GWEI
    urgent_window: int = 300
    relaxed_window: int = 3600
    eta_slope: dict[str, int] = field(
        default_factory=lambda: {"high": 30, "medium": 60, "low": 120}
    )
    eta_floor: dict[str, int] = field(
        default_factory=lambda: {"high": 60, "medium": 120, "low": 300}
    )

    def __post_init__(self) -> None:
        """Validate prioritization configuration."""
        if self.low_fee_threshold < 0:
            raise ValueError(f"Low fee threshold must be non-negative, got {self.low_fee_threshold}")
        if self.low_fee_threshold > self.high_fee_threshold:
            raise ValueError(
                f"Low fee threshold ({self.low_fee_threshold}) must not exceed "
                f"high fee threshold ({self.high_fee_threshold})"
            )
        if not 0 < self.urgent_window < self.relaxed_window:
            raise ValueError(
                f"Deadline windows must satisfy 0 < urgent < relaxed, "
                f"got {self.urgent_window}/{self.relaxed_window}"
            )

        for name, table in (("slope", self.eta_slope), ("floor", self.eta_floor)):
            if set(table) != {"high", "medium", "low"}:
                raise ValueError(f"ETA {name} must define high, medium and low tiers")
            if not 0 < table["high"] <= table["medium"] <= table["low"]:
                raise ValueError(
                    f"ETA {name} must be positive and ordered high <= medium <= low, got {table}"
                )


@dataclass(frozen=True, slots=True)
class FulfillmentConfig:
    """Configuration for submitting and confirming fulfillments."""

    confirmations: int | None = None  # None: derive from chain id
    confirmation_timeout: int = 300  # seconds
    max_attempts: int = 3
    base_backoff: float = 1.0
    max_backoff: float = 60.0
    max_concurrent: int = 4
    gas_overhead: int = 150_000  # gas on top of the callback budget

    # Confirmations by chain id (mainnets 3, testnets 1)
    CHAIN_CONFIRMATIONS: ClassVar[dict[int, int]] = {
        534352: 3,  # Scroll
        534351: 1,  # Scroll Sepolia
        8453: 3,  # Base
        84532: 1,  # Base Sepolia
    }

    def __post_init__(self) -> None:
        """Validate fulfillment configuration."""
        if self.confirmations is not None and not 1 <= self.confirmations <= 64:
            raise ValueError(f"Confirmations must be between 1 and 64, got {self.confirmations}")
        if self.confirmation_timeout <= 0:
            raise ValueError(
                f"Confirmation timeout must be positive, got {self.confirmation_timeout}"
            )
        if not 1 <= self.max_attempts <= 10:
            raise ValueError(f"Max attempts must be between 1 and 10, got {self.max_attempts}")
        if not 0 < self.base_backoff <= self.max_backoff:
            raise ValueError(
                f"Backoff must satisfy 0 < base <= max, got {self.base_backoff}/{self.max_backoff}"
            )
        if self.max_concurrent <= 0:
            raise ValueError(f"Max concurrent fulfillments must be positive, got {self.max_concurrent}")
        if self.gas_overhead < 0:
            raise ValueError(f"Gas overhead must be non-negative, got {self.gas_overhead}")

    def confirmations_for(self, chain_id: int | None) -> int:
        if self.confirmations is not None:
            return self.confirmations
        return self.CHAIN_CONFIRMATIONS.get(chain_id or 0, 1)


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for event monitoring and state polling."""
    polling_interval: int = 12  # seconds between event and snapshot polls
    lookback_blocks: int = 100  # blocks to look back on startup
    request_timeout: int = 30  # HTTP request timeout in seconds
    snapshot_batch_size: int = 50  # max requests read per snapshot poll
    status_log_interval: int = 30  # seconds between status lines

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.lookback_blocks <= 0:
            raise ValueError(f"Lookback blocks must be positive, got {self.lookback_blocks}")
        if self.lookback_blocks > 10000:
            raise ValueError(f"Lookback blocks too high (max 10000), got {self.lookback_blocks}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if not 1 <= self.snapshot_batch_size <= 1000:
            raise ValueError(
                f"Snapshot batch size must be between 1 and 1000, got {self.snapshot_batch_size}"
            )
        if self.status_log_interval <= 0:
            raise ValueError(
                f"Status log interval must be positive, got {self.status_log_interval}"
            )


@dataclass(frozen=True, slots=True)
class OperatorConfig:
    """Main configuration for the Anyrand operator.

    Attributes:
        chain: Chain and contract configuration
        beacon: Beacon network configuration
        private_key: Operator signing key
        prioritization: Queue ranking configuration
        fulfillment: Submission and retry configuration
        monitoring: Polling configuration
    """

    chain: ChainConfig
    beacon: BeaconConfig
    private_key: str
    prioritization: PrioritizationConfig = field(default_factory=PrioritizationConfig)
    fulfillment: FulfillmentConfig = field(default_factory=FulfillmentConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def __post_init__(self) -> None:
        """Validate operator configuration."""
        if not self.private_key:
            raise ValueError("Operator private key is required (OPERATOR_PRIVATE_KEY)")

        # Basic private key validation (64 hex chars, optionally with 0x prefix)
        key = self.private_key
        if key.startswith('0x'):
            key = key[2:]

        if len(key) != 64:
            raise ValueError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )

        try:
            int(key, 16)
        except ValueError:
            raise ValueError(
                "Invalid private key format. Must be hexadecimal"
            ) from None

    @classmethod
    def from_env(cls) -> "OperatorConfig":
        """Load configuration from environment variables.

        Returns:
            OperatorConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        rpc_url = os.environ.get("RPC_URL", "")
        if not rpc_url:
            raise ValueError(
                "RPC_URL environment variable is required. "
                "This should be an RPC endpoint of the chain hosting Anyrand."
            )

        contract_address = os.environ.get("ANYRAND_ADDRESS", "")
        if not contract_address:
            raise ValueError(
                "ANYRAND_ADDRESS environment variable is required. "
                "This should be the Anyrand contract address."
            )

        chain_config = ChainConfig(
            rpc_url=rpc_url,
            contract_address=contract_address,
            websocket_url=os.environ.get("WS_RPC_URL") or None
        )

        beacon_config = BeaconConfig(
            network=os.environ.get("BEACON_NETWORK", "evmnet"),
            base_url=os.environ.get("BEACON_URL", "https://api.drand.sh"),
            genesis_time=int(os.environ.get("BEACON_GENESIS_TIME", "0")),
            period=int(os.environ.get("BEACON_PERIOD", "0")),
            active_staleness=int(os.environ.get("BEACON_ACTIVE_STALENESS", "1")),
            delayed_staleness=int(os.environ.get("BEACON_DELAYED_STALENESS", "3"))
        )

        prioritization_config = PrioritizationConfig(
            high_fee_threshold=int(os.environ.get("HIGH_FEE_THRESHOLD", str(50 * GWEI))),
            low_fee_threshold=int(os.environ.get("LOW_FEE_THRESHOLD", str(10 * GWEI)))
        )

        confirmations = os.environ.get("CONFIRMATIONS")
        fulfillment_config = FulfillmentConfig(
            confirmations=int(confirmations) if confirmations else None,
            confirmation_timeout=int(os.environ.get("CONFIRMATION_TIMEOUT", "300")),
            max_attempts=int(os.environ.get("RETRY_COUNT", "3")),
            max_concurrent=int(os.environ.get("MAX_CONCURRENT_FULFILLMENTS", "4"))
        )

        monitoring_config = MonitoringConfig(
            polling_interval=int(os.environ.get("POLLING_INTERVAL", "12")),
            lookback_blocks=int(os.environ.get("LOOKBACK_BLOCKS", "100")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
            snapshot_batch_size=int(os.environ.get("SNAPSHOT_BATCH_SIZE", "50"))
        )

        return cls(
            chain=chain_config,
            beacon=beacon_config,
            private_key=os.environ.get("OPERATOR_PRIVATE_KEY", ""),
            prioritization=prioritization_config,
            fulfillment=fulfillment_config,
            monitoring=monitoring_config
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Anyrand Operator Configuration")
        logger.info("=" * 60)

        logger.info("Chain:")
        logger.info(f"  RPC URL: {self.chain.rpc_url}")
        logger.info(f"  WebSocket URL: {self.chain.websocket_url or '[POLLING ONLY]'}")
        logger.info(f"  Anyrand: {self.chain.contract_address}")
        if self.chain.chain_id:
            logger.info(f"  Chain ID: {self.chain.chain_id}")

        logger.info("Beacon:")
        logger.info(f"  Network: {self.beacon.network} ({self.beacon.chain_hash[:12]}...)")
        logger.info(f"  URL: {self.beacon.base_url}")
        logger.info(f"  Genesis: {self.beacon.genesis_time}, Period: {self.beacon.period}s")

        logger.info("Prioritization:")
        logger.info(f"  High Fee Threshold: {self.prioritization.high_fee_threshold} wei/gas")
        logger.info(f"  Low Fee Threshold: {self.prioritization.low_fee_threshold} wei/gas")

        logger.info("Fulfillment:")
        logger.info(
            f"  Confirmations: {self.fulfillment.confirmations_for(self.chain.chain_id)}"
        )
        logger.info(f"  Confirmation Timeout: {self.fulfillment.confirmation_timeout} seconds")
        logger.info(f"  Max Attempts: {self.fulfillment.max_attempts}")
        logger.info(f"  Max Concurrent: {self.fulfillment.max_concurrent}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Lookback Blocks: {self.monitoring.lookback_blocks}")
        logger.info(f"  Request Timeout: {self.monitoring.request_timeout} seconds")
        logger.info(f"  Snapshot Batch Size: {self.monitoring.snapshot_batch_size}")

        logger.info("  Operator Key: [CONFIGURED]")
        logger.info("=" * 60)

    def with_chain_id(self, chain_id: int) -> "OperatorConfig":
        """Create a new config with the chain ID set.

        Since the config is frozen, we need to create a new instance
        to update the chain ID after connecting to the RPC.

        Args:
            chain_id: The chain ID from the connected RPC

        Returns:
            New OperatorConfig instance with chain_id set
        """
        chain_config = ChainConfig(
            rpc_url=self.chain.rpc_url,
            contract_address=self.chain.contract_address,
            websocket_url=self.chain.websocket_url,
            chain_id=chain_id
        )

        return OperatorConfig(
            chain=chain_config,
            beacon=self.beacon,
            private_key=self.private_key,
            prioritization=self.prioritization,
            fulfillment=self.fulfillment,
            monitoring=self.monitoring
        )
