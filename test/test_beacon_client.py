#!/usr/bin/env python3
"""Tests for the BeaconClient module using httpx.MockTransport."""

import hashlib
import json

import httpx
import pytest

from src.anyrand_operator.beacon_client import BeaconClient
from src.anyrand_operator.config import BeaconConfig
from src.anyrand_operator.errors import (
    BeaconIntegrityError,
    BeaconNetworkError,
    RoundNotPublishedError,
    SignatureDecodeError,
)
from src.anyrand_operator.models import BeaconHealth
from src.anyrand_operator.utils.bn254 import G1Point

GENESIS = 1727521075
NOW = GENESIS + 3 * 1000  # current round 1001
CHAIN_HASH = "04f1e9062b8a81f848fded9c12306733282b2727ecced50032187751166ec8c3"

# Uncompressed encoding of the generator (1, 2)
SIGNATURE = (1).to_bytes(32, "big").hex() + (2).to_bytes(32, "big").hex()


def pulse_payload(round: int, signature: str = SIGNATURE) -> dict:
    return {
        "round": round,
        "randomness": hashlib.sha256(bytes.fromhex(signature)).hexdigest(),
        "signature": signature,
    }


class FakeBeacon:
    """Request handler recording calls and serving canned responses."""

    def __init__(self):
        self.calls: list[str] = []
        self.responses: dict[str, httpx.Response] = {}
        self.error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        if self.error:
            raise self.error
        suffix = request.url.path.rsplit("/", 1)[-1]
        if suffix in self.responses:
            return self.responses[suffix]
        if suffix == "latest":
            return httpx.Response(200, json=pulse_payload(1001))
        if suffix == "info":
            return httpx.Response(200, json={
                "public_key": "07e1d1d3",
                "period": 3,
                "genesis_time": GENESIS,
                "hash": CHAIN_HASH,
                "schemeID": "bls-bn254-unchained-on-g1",
            })
        return httpx.Response(200, json=pulse_payload(int(suffix)))


@pytest.fixture
def beacon():
    return FakeBeacon()


@pytest.fixture
def monotonic():
    """Controllable monotonic clock (seconds)."""
    return [0.0]


@pytest.fixture
def client(beacon, monotonic):
    """Create a BeaconClient backed by the fake beacon."""
    return BeaconClient(
        BeaconConfig(),
        request_timeout=5,
        transport=httpx.MockTransport(beacon),
        time_fn=lambda: NOW,
        monotonic_fn=lambda: monotonic[0]
    )


class TestFetchRound:
    """Tests for exact round retrieval."""

    @pytest.mark.asyncio
    async def test_fetch_round(self, client, beacon):
        """Test a published round is fetched from the network path."""
        pulse = await client.fetch_round("evmnet", 1000)

        assert pulse.round == 1000
        assert pulse.signature == SIGNATURE
        assert pulse.network == "evmnet"
        assert beacon.calls == [f"/{CHAIN_HASH}/public/1000"]

    @pytest.mark.asyncio
    async def test_round_cached_permanently(self, client, beacon):
        """Test a fetched round is served from cache afterwards."""
        first = await client.fetch_round("evmnet", 1000)
        second = await client.fetch_round("evmnet", 1000)

        assert first is second
        assert len(beacon.calls) == 1
        assert client.get_metrics()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_future_round_not_requested(self, client, beacon):
        """Test a future round raises without any HTTP request."""
        with pytest.raises(RoundNotPublishedError) as exc_info:
            await client.fetch_round("evmnet", 1005)

        assert exc_info.value.round == 1005
        assert exc_info.value.retry_after == 12
        assert beacon.calls == []

    @pytest.mark.asyncio
    async def test_not_published_status(self, client, beacon):
        """Test a 404 for a current round is reported as not yet published."""
        beacon.responses["1001"] = httpx.Response(404, text="not found")

        with pytest.raises(RoundNotPublishedError) as exc_info:
            await client.fetch_round("evmnet", 1001)
        assert exc_info.value.retry_after >= 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_server_errors_are_network_errors(self, client, beacon, status):
        """Test rate limiting and server errors are retryable network errors."""
        beacon.responses["1000"] = httpx.Response(status)

        with pytest.raises(BeaconNetworkError):
            await client.fetch_round("evmnet", 1000)

    @pytest.mark.asyncio
    async def test_transport_error(self, client, beacon):
        """Test connection failures become network errors and are not cached."""
        beacon.error = httpx.ConnectError("connection refused")

        with pytest.raises(BeaconNetworkError):
            await client.fetch_round("evmnet", 1000)

        beacon.error = None
        pulse = await client.fetch_round("evmnet", 1000)
        assert pulse.round == 1000
        assert len(beacon.calls) == 2

    @pytest.mark.asyncio
    async def test_unexpected_status_is_integrity_error(self, client, beacon):
        """Test other client errors signal an integrity problem."""
        beacon.responses["1000"] = httpx.Response(400)

        with pytest.raises(BeaconIntegrityError):
            await client.fetch_round("evmnet", 1000)

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, beacon):
        """Test a non-JSON body is an integrity error."""
        beacon.responses["1000"] = httpx.Response(200, text="<html>")

        with pytest.raises(BeaconIntegrityError, match="invalid JSON"):
            await client.fetch_round("evmnet", 1000)

    @pytest.mark.asyncio
    async def test_randomness_mismatch(self, client, beacon):
        """Test randomness that is not sha256(signature) is rejected."""
        payload = pulse_payload(1000)
        payload["randomness"] = "00" * 32
        beacon.responses["1000"] = httpx.Response(200, json=payload)

        with pytest.raises(BeaconIntegrityError, match="does not match"):
            await client.fetch_round("evmnet", 1000)
        assert client.get_metrics()["cached_rounds"] == 0

    @pytest.mark.asyncio
    async def test_round_mismatch(self, client, beacon):
        """Test a payload for a different round is rejected."""
        beacon.responses["1000"] = httpx.Response(200, json=pulse_payload(999))

        with pytest.raises(BeaconIntegrityError, match="beacon returned 999"):
            await client.fetch_round("evmnet", 1000)

    @pytest.mark.asyncio
    async def test_missing_signature(self, client, beacon):
        """Test a payload without a signature is rejected."""
        beacon.responses["1000"] = httpx.Response(200, json={"round": 1000, "randomness": "ab"})

        with pytest.raises(BeaconIntegrityError, match="missing"):
            await client.fetch_round("evmnet", 1000)

    @pytest.mark.asyncio
    async def test_unknown_network(self, client):
        """Test an unconfigured network is a caller error."""
        with pytest.raises(ValueError, match="Unknown beacon network"):
            await client.fetch_round("quicknet", 1)


class TestFetchLatest:
    """Tests for latest pulse retrieval."""

    @pytest.mark.asyncio
    async def test_latest_cached_within_ttl(self, client, beacon, monotonic):
        """Test the latest pulse is reused for one period."""
        await client.fetch_latest("evmnet")
        monotonic[0] = 2.0
        await client.fetch_latest("evmnet")
        assert len(beacon.calls) == 1

        monotonic[0] = 3.5
        await client.fetch_latest("evmnet")
        assert len(beacon.calls) == 2

    @pytest.mark.asyncio
    async def test_latest_fills_round_cache(self, client, beacon):
        """Test the latest pulse is also cached by its round."""
        latest = await client.fetch_latest("evmnet")
        pulse = await client.fetch_round("evmnet", latest.round)

        assert pulse is latest
        assert beacon.calls == [f"/{CHAIN_HASH}/public/latest"]


class TestInfoAndHealth:
    """Tests for /info verification and health status."""

    @pytest.mark.asyncio
    async def test_verify_network(self, client):
        """Test matching /info parameters verify cleanly."""
        info = await client.verify_network("evmnet")
        assert info.period == 3
        assert info.genesis_time == GENESIS

    @pytest.mark.asyncio
    async def test_verify_network_mismatch(self, client, beacon):
        """Test a different period is detected."""
        beacon.responses["info"] = httpx.Response(200, content=json.dumps({
            "public_key": "07", "period": 30, "genesis_time": GENESIS, "hash": CHAIN_HASH
        }))

        with pytest.raises(BeaconIntegrityError, match="period=30"):
            await client.verify_network("evmnet")

    @pytest.mark.asyncio
    async def test_health_active(self, client):
        """Test an up-to-date beacon is active."""
        status = await client.health("evmnet")

        assert status.health == BeaconHealth.ACTIVE
        assert status.latest_round == 1001
        assert status.expected_round == 1001
        assert status.staleness == 0

    @pytest.mark.asyncio
    async def test_health_delayed(self, client, beacon):
        """Test a beacon three rounds behind is delayed."""
        beacon.responses["latest"] = httpx.Response(200, json=pulse_payload(998))

        status = await client.health("evmnet")
        assert status.health == BeaconHealth.DELAYED

    @pytest.mark.asyncio
    async def test_health_unreachable(self, client, beacon):
        """Test an unreachable beacon reports offline instead of raising."""
        beacon.error = httpx.ConnectTimeout("timed out")

        status = await client.health("evmnet")
        assert status.health == BeaconHealth.OFFLINE


class TestDecodeSignature:
    """Tests for signature decoding."""

    def test_decode(self):
        """Test a valid signature decodes to its point."""
        assert BeaconClient.decode_signature(SIGNATURE) == G1Point(1, 2)

    def test_off_curve(self):
        """Test an off-curve signature is rejected."""
        bad = (1).to_bytes(32, "big").hex() + (3).to_bytes(32, "big").hex()
        with pytest.raises(SignatureDecodeError):
            BeaconClient.decode_signature(bad)
