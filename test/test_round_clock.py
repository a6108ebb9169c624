#!/usr/bin/env python3
"""Tests for the RoundClock module."""

import pytest

from src.anyrand_operator.models import BeaconHealth
from src.anyrand_operator.round_clock import RoundClock


@pytest.fixture
def clock():
    """Create a RoundClock with a 30 second period."""
    return RoundClock(genesis_time=1000, period=30)


class TestRoundForTimestamp:
    """Tests for time to round conversion."""

    def test_round_boundaries(self, clock):
        """Test rounds change exactly at period boundaries."""
        assert clock.round_for_timestamp(1000) == 1
        assert clock.round_for_timestamp(1029) == 1
        assert clock.round_for_timestamp(1030) == 2

    def test_before_genesis(self, clock):
        """Test timestamps before genesis map to round 0."""
        assert clock.round_for_timestamp(999) == 0
        assert clock.round_for_timestamp(0) == 0

    def test_fractional_timestamp_floors(self, clock):
        """Test sub-second timestamps do not round up."""
        assert clock.round_for_timestamp(1029.999) == 1

    @pytest.mark.parametrize("t", [1000, 1001, 1029, 1030, 1059, 4321, 10_000_000])
    def test_round_brackets_timestamp(self, clock, t):
        """Test the round's start is at or before t and the next round's start after it."""
        round = clock.round_for_timestamp(t)
        assert clock.timestamp_for_round(round) <= t < clock.timestamp_for_round(round + 1)


class TestRoundTiming:
    """Tests for round timing helpers."""

    def test_timestamp_for_round(self, clock):
        """Test the inverse conversion."""
        assert clock.timestamp_for_round(1) == 1000
        assert clock.timestamp_for_round(3) == 1060

    def test_time_until_round(self, clock):
        """Test time until a future round and clamping for past rounds."""
        assert clock.time_until_round(3, now=1050) == 10
        assert clock.time_until_round(1, now=1050) == 0

    def test_time_until_next_round(self, clock):
        """Test time until the next round is published."""
        assert clock.time_until_next_round(1000) == 30
        assert clock.time_until_next_round(1029) == 1

    def test_evmnet_schedule(self):
        """Test the evmnet 3 second period."""
        clock = RoundClock(genesis_time=1727521075, period=3)
        assert clock.round_for_timestamp(1727521075 + 3 * 100) == 101


class TestHealth:
    """Tests for beacon health classification."""

    @pytest.mark.parametrize("lag,expected", [
        (0, BeaconHealth.ACTIVE),
        (1, BeaconHealth.ACTIVE),
        (2, BeaconHealth.DELAYED),
        (3, BeaconHealth.DELAYED),
        (4, BeaconHealth.OFFLINE),
        (50, BeaconHealth.OFFLINE),
    ])
    def test_staleness_thresholds(self, clock, lag, expected):
        """Test the 1/3 round staleness thresholds."""
        now = 1000 + 30 * 99  # round 100
        assert clock.staleness(100 - lag, now) == lag
        assert clock.health(100 - lag, now) == expected

    def test_custom_thresholds(self):
        """Test overridden thresholds."""
        clock = RoundClock(genesis_time=1000, period=30, active_staleness=0, delayed_staleness=1)
        assert clock.health(1, 1030) == BeaconHealth.DELAYED


class TestValidation:
    """Tests for construction validation."""

    def test_non_positive_period(self):
        """Test that a zero period is rejected."""
        with pytest.raises(ValueError, match="period must be positive"):
            RoundClock(genesis_time=1000, period=0)

    def test_unordered_thresholds(self):
        """Test that active > delayed is rejected."""
        with pytest.raises(ValueError, match="Staleness thresholds"):
            RoundClock(genesis_time=1000, period=3, active_staleness=4, delayed_staleness=3)
