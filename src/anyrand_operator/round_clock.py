#!/usr/bin/env python3
"""Conversions between wall-clock time and beacon round numbers.

All round math is integer floor division; a round is never derived from a
floating point quotient.
"""

from dataclasses import dataclass

from .models import BeaconHealth


@dataclass(frozen=True, slots=True)
class RoundClock:
    """Round schedule of one beacon network.

    Attributes:
        genesis_time: Unix timestamp of round 1
        period: Seconds between rounds
        active_staleness: Maximum staleness still classified as active
        delayed_staleness: Maximum staleness still classified as delayed
    """

    genesis_time: int
    period: int
    active_staleness: int = 1
    delayed_staleness: int = 3

    def __post_init__(self) -> None:
        if self.period <= 0:
            raise ValueError(f"Beacon period must be positive, got {self.period}")
        if not 0 <= self.active_staleness <= self.delayed_staleness:
            raise ValueError(
                "Staleness thresholds must satisfy 0 <= active <= delayed, "
                f"got {self.active_staleness}/{self.delayed_staleness}"
            )

    def round_for_timestamp(self, timestamp: int | float) -> int:
        """Return the round expected to be available at ``timestamp`` (0 before genesis)."""
        t = int(timestamp)
        if t < self.genesis_time:
            return 0
        return (t - self.genesis_time) // self.period + 1

    def timestamp_for_round(self, round: int) -> int:
        return self.genesis_time + (round - 1) * self.period

    def time_until_round(self, round: int, now: int | float) -> int:
        return max(0, self.timestamp_for_round(round) - int(now))

    def current_round(self, now: int | float) -> int:
        return self.round_for_timestamp(now)

    def time_until_next_round(self, now: int | float) -> int:
        return self.time_until_round(self.round_for_timestamp(now) + 1, now)

    def staleness(self, observed_round: int, now: int | float) -> int:
        return self.round_for_timestamp(now) - observed_round

    def health(self, observed_round: int, now: int | float) -> BeaconHealth:
        """Classify beacon liveness from how far ``observed_round`` lags."""
        match self.staleness(observed_round, now):
            case lag if lag <= self.active_staleness:
                return BeaconHealth.ACTIVE
            case lag if lag <= self.delayed_staleness:
                return BeaconHealth.DELAYED
            case _:
                return BeaconHealth.OFFLINE
