#!/usr/bin/env python3
"""Client for the drand beacon HTTP API.

Fetches pulses for exact rounds or the latest round, checks payload
integrity, and caches results. Historical rounds never change, so a fetched
round is cached for the life of the process; the latest pulse is cached for
roughly one beacon period.
"""

import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from .config import BeaconConfig
from .errors import (
    BeaconError,
    BeaconIntegrityError,
    BeaconNetworkError,
    RoundNotPublishedError,
)
from .models import BeaconHealth, BeaconInfo, BeaconPulse, BeaconStatus
from .round_clock import RoundClock
from .utils.bn254 import G1Point, decode_g1

# Get logger for this module
logger = logging.getLogger(__name__)


class BeaconClient:
    """Fetches, validates and caches beacon pulses for one or more networks."""

    # Status codes drand relays use for rounds that are not out yet
    NOT_PUBLISHED_STATUSES: frozenset[int] = frozenset({404, 425})

    def __init__(
        self,
        networks: BeaconConfig | Mapping[str, BeaconConfig],
        request_timeout: float = 30.0,
        latest_ttl: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        time_fn: Callable[[], float] = time.time,
        monotonic_fn: Callable[[], float] = time.monotonic
    ) -> None:
        """Initialize the BeaconClient.

        Args:
            networks: A single beacon configuration or a mapping of network name to configuration
            request_timeout: HTTP timeout in seconds
            latest_ttl: Cache lifetime of the latest pulse (defaults to the network period)
            transport: Optional httpx transport (used for testing)
            time_fn: Wall-clock source in unix seconds
            monotonic_fn: Monotonic clock for cache expiry
        """
        if isinstance(networks, BeaconConfig):
            networks = {networks.network: networks}
        self.networks: dict[str, BeaconConfig] = dict(networks)
        self.clocks: dict[str, RoundClock] = {
            name: config.clock() for name, config in self.networks.items()
        }
        self.request_timeout = request_timeout
        self.latest_ttl = latest_ttl
        self.transport = transport
        self.time_fn = time_fn
        self.monotonic_fn = monotonic_fn

        self._rounds: dict[tuple[str, int], BeaconPulse] = {}
        self._latest: dict[str, tuple[BeaconPulse, float]] = {}
        self._info: dict[str, BeaconInfo] = {}

        # Metrics tracking
        self.http_requests = 0
        self.cache_hits = 0

        logger.info(f"BeaconClient initialized for networks: {', '.join(sorted(self.networks))}")

    def _network(self, network: str) -> BeaconConfig:
        try:
            return self.networks[network]
        except KeyError:
            raise ValueError(f"Unknown beacon network: {network}") from None

    def clock(self, network: str) -> RoundClock:
        self._network(network)
        return self.clocks[network]

    async def _get_json(self, url: str, round: int | None = None, network: str = "") -> dict[str, Any]:
        """GET a JSON object from the beacon.

        Raises:
            BeaconNetworkError: Transport failure, rate limiting or server error
            RoundNotPublishedError: The requested round is not available yet
            BeaconIntegrityError: Any other unexpected response
        """
        self.http_requests += 1
        try:
            async with httpx.AsyncClient(
                transport=self.transport,
                timeout=self.request_timeout,
                headers={"Accept": "application/json"}
            ) as client:
                logger.debug(f"GET {url}")
                response: httpx.Response = await client.get(url)
        except httpx.TransportError as e:
            raise BeaconNetworkError(f"Beacon unreachable at {url}: {e}") from e

        status = response.status_code
        if round is not None and status in self.NOT_PUBLISHED_STATUSES:
            retry_after = self.clocks[network].time_until_round(round, self.time_fn())
            raise RoundNotPublishedError(round, max(1, retry_after))
        if status == 429 or status >= 500:
            raise BeaconNetworkError(f"Beacon returned HTTP {status} for {url}")
        if status != 200:
            raise BeaconIntegrityError(f"Beacon returned HTTP {status} for {url}")

        try:
            payload = response.json()
        except ValueError as e:
            raise BeaconIntegrityError(f"Beacon returned invalid JSON for {url}: {e}") from None
        if not isinstance(payload, dict):
            raise BeaconIntegrityError(f"Beacon returned a non-object payload for {url}")
        return payload

    def _parse_pulse(
        self,
        payload: dict[str, Any],
        network: str,
        expected_round: int | None = None
    ) -> BeaconPulse:
        """Validate a /public payload and build a pulse from it.

        Raises:
            BeaconIntegrityError: On missing fields, wrong round, or a
                randomness value that is not sha256(signature)
        """
        round = payload.get("round")
        randomness = payload.get("randomness")
        signature = payload.get("signature")

        if not isinstance(round, int) or isinstance(round, bool) or round < 1:
            raise BeaconIntegrityError(f"Pulse has invalid round: {round!r}")
        if expected_round is not None and round != expected_round:
            raise BeaconIntegrityError(f"Requested round {expected_round}, beacon returned {round}")
        if not isinstance(randomness, str) or not isinstance(signature, str) or not signature:
            raise BeaconIntegrityError(f"Pulse {round} is missing randomness or signature")

        signature = signature.lower().removeprefix("0x")
        randomness = randomness.lower().removeprefix("0x")
        try:
            signature_bytes = bytes.fromhex(signature)
        except ValueError:
            raise BeaconIntegrityError(f"Pulse {round} signature is not hex") from None

        if hashlib.sha256(signature_bytes).hexdigest() != randomness:
            raise BeaconIntegrityError(f"Pulse {round} randomness does not match its signature")

        return BeaconPulse(
            round=round,
            randomness=randomness,
            signature=signature,
            fetched_at=self.time_fn(),
            network=network
        )

    async def fetch_latest(self, network: str) -> BeaconPulse:
        """Return the most recent pulse, served from cache within the TTL."""
        config = self._network(network)
        ttl = self.latest_ttl if self.latest_ttl is not None else config.period

        if cached := self._latest.get(network):
            pulse, cached_at = cached
            if self.monotonic_fn() - cached_at < ttl:
                self.cache_hits += 1
                return pulse

        payload = await self._get_json(f"{config.network_url}/public/latest")
        pulse = self._parse_pulse(payload, network)

        self._latest[network] = (pulse, self.monotonic_fn())
        self._rounds.setdefault((network, pulse.round), pulse)
        logger.debug(f"Latest {network} round: {pulse.round}")
        return pulse

    async def fetch_round(self, network: str, round: int) -> BeaconPulse:
        """Return the pulse for an exact round.

        Raises:
            RoundNotPublishedError: If the round is still in the future
            BeaconNetworkError: If the beacon is unreachable
            BeaconIntegrityError: If the payload is malformed
        """
        config = self._network(network)
        if round < 1:
            raise ValueError(f"Beacon rounds start at 1, got {round}")

        if (pulse := self._rounds.get((network, round))) is not None:
            self.cache_hits += 1
            return pulse

        now = self.time_fn()
        clock = self.clocks[network]
        if round > clock.current_round(now):
            raise RoundNotPublishedError(round, max(1, clock.time_until_round(round, now)))

        payload = await self._get_json(
            f"{config.network_url}/public/{round}", round=round, network=network
        )
        pulse = self._parse_pulse(payload, network, expected_round=round)

        self._rounds[(network, round)] = pulse
        logger.debug(f"Fetched and cached {pulse}")
        return pulse

    async def fetch_info(self, network: str) -> BeaconInfo:
        """Fetch the beacon chain parameters (cached permanently)."""
        config = self._network(network)
        if (info := self._info.get(network)) is not None:
            return info

        payload = await self._get_json(f"{config.network_url}/info")
        try:
            info = BeaconInfo(
                public_key=str(payload["public_key"]),
                period=int(payload["period"]),
                genesis_time=int(payload["genesis_time"]),
                chain_hash=str(payload.get("hash", config.chain_hash)),
                scheme_id=str(payload.get("schemeID", ""))
            )
        except (KeyError, TypeError, ValueError) as e:
            raise BeaconIntegrityError(f"Malformed beacon info for {network}: {e}") from None

        self._info[network] = info
        return info

    async def verify_network(self, network: str) -> BeaconInfo:
        """Check the configured round schedule against the beacon's /info.

        Raises:
            BeaconIntegrityError: If genesis time, period or chain hash disagree
        """
        config = self._network(network)
        info = await self.fetch_info(network)

        if (info.genesis_time, info.period) != (config.genesis_time, config.period):
            raise BeaconIntegrityError(
                f"Beacon {network} reports genesis={info.genesis_time} period={info.period}, "
                f"configured genesis={config.genesis_time} period={config.period}"
            )
        if info.chain_hash and info.chain_hash != config.chain_hash:
            raise BeaconIntegrityError(
                f"Beacon {network} reports chain hash {info.chain_hash}, "
                f"configured {config.chain_hash}"
            )

        logger.info(f"Beacon {network} verified (scheme: {info.scheme_id or 'unknown'})")
        return info

    async def health(self, network: str) -> BeaconStatus:
        """Classify beacon liveness from the latest pulse.

        An unreachable or misbehaving beacon is reported as offline rather
        than raised.
        """
        clock = self.clock(network)
        now = self.time_fn()
        expected = clock.current_round(now)

        try:
            latest = await self.fetch_latest(network)
        except BeaconError as e:
            logger.warning(f"Beacon {network} health check failed: {e}")
            return BeaconStatus(
                health=BeaconHealth.OFFLINE,
                latest_round=0,
                expected_round=expected,
                staleness=expected,
                latency=0
            )

        return BeaconStatus(
            health=clock.health(latest.round, now),
            latest_round=latest.round,
            expected_round=expected,
            staleness=clock.staleness(latest.round, now),
            latency=max(0, int(now) - clock.timestamp_for_round(latest.round))
        )

    @staticmethod
    def decode_signature(signature: str | bytes) -> G1Point:
        """Decode a pulse signature into a BN254 G1 point.

        Raises:
            SignatureDecodeError: If the encoding is malformed or off-curve
        """
        return decode_g1(signature)

    def get_metrics(self) -> dict[str, int]:
        return {
            "http_requests": self.http_requests,
            "cache_hits": self.cache_hits,
            "cached_rounds": len(self._rounds),
        }
