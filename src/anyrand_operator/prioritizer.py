#!/usr/bin/env python3
"""Ranking of fulfillable requests by operator desirability.

A request is High priority when it pays well OR its deadline is close, Low
only when it pays little AND its deadline is far, and Medium otherwise.
Within a tier the higher fee per gas unit ranks first, ties broken by the
lower request id.
"""

import logging
from collections.abc import Iterable, Sequence

from .config import PrioritizationConfig
from .models import (
    FulfillmentEstimate,
    FulfillmentQueueEntry,
    Priority,
    QueueSummary,
    RandomnessRequest,
)

# Get logger for this module
logger = logging.getLogger(__name__)


class FulfillmentPrioritizer:
    """Classifies, ranks and estimates wait times for fulfillable requests."""

    def __init__(self, config: PrioritizationConfig | None = None) -> None:
        self.config = config or PrioritizationConfig()

    def classify(self, fee_per_gas_unit: int, deadline: int, now: int) -> Priority:
        """
        Classify a request into a priority tier.

        Args:
            fee_per_gas_unit: Fee paid divided by callback gas budget, in wei
            deadline: Request deadline (unix seconds)
            now: Current time (unix seconds)

        Returns:
            The priority tier
        """
        time_to_deadline = deadline - now

        if (fee_per_gas_unit > self.config.high_fee_threshold
                or time_to_deadline < self.config.urgent_window):
            return Priority.HIGH
        if (fee_per_gas_unit < self.config.low_fee_threshold
                and time_to_deadline > self.config.relaxed_window):
            return Priority.LOW
        return Priority.MEDIUM

    @staticmethod
    def _sort_key(priority: Priority, fee_per_gas_unit: int, request_id: int) -> tuple[int, int, int]:
        return (priority.order, -fee_per_gas_unit, request_id)

    def estimate_fulfillment_time(self, priority: Priority, queue_position: int, now: int) -> int:
        """
        Estimate when the request at ``queue_position`` will be fulfilled.

        The wait grows with queue position at a per-tier rate, with a per-tier
        minimum, so for equal positions High <= Medium <= Low.

        Returns:
            Estimated fulfillment time (unix seconds)
        """
        if queue_position < 1:
            raise ValueError(f"Queue positions start at 1, got {queue_position}")
        tier = priority.value
        wait = max(self.config.eta_floor[tier], queue_position * self.config.eta_slope[tier])
        return now + wait

    def rank(self, requests: Iterable[RandomnessRequest], now: int) -> list[FulfillmentQueueEntry]:
        """
        Rank fulfillable requests.

        Requests that are not fulfillable at ``now`` are skipped.

        Returns:
            Queue entries, High first, with 1-based queue positions
        """
        classified = []
        for request in requests:
            if not request.is_fulfillable(now):
                continue
            fee_per_gas = request.fee_per_gas_unit
            priority = self.classify(fee_per_gas, request.deadline, now)
            classified.append((self._sort_key(priority, fee_per_gas, request.request_id), priority, request))

        classified.sort(key=lambda item: item[0])

        return [
            FulfillmentQueueEntry(
                request_id=request.request_id,
                priority=priority,
                queue_position=position,
                estimated_fulfillment_time=self.estimate_fulfillment_time(priority, position, now),
                fee_per_gas_unit=request.fee_per_gas_unit
            )
            for position, (_, priority, request) in enumerate(classified, start=1)
        ]

    def estimate_for_hypothetical(
        self,
        fee_paid: int,
        callback_gas_budget: int,
        deadline: int,
        existing_queue: Sequence[FulfillmentQueueEntry],
        now: int
    ) -> FulfillmentEstimate:
        """
        Estimate where a new request would land without touching the queue.

        The new request ranks behind every existing entry it would tie with,
        since it would receive a higher request id.

        Args:
            fee_paid: Fee the requester would pay, in wei
            callback_gas_budget: Callback gas limit the requester would set
            deadline: Deadline the requester would set (unix seconds)
            existing_queue: Current ranked queue
            now: Current time (unix seconds)

        Returns:
            FulfillmentEstimate for the hypothetical request
        """
        fee_per_gas = fee_paid // callback_gas_budget if callback_gas_budget > 0 else 0
        priority = self.classify(fee_per_gas, deadline, now)
        new_key = (priority.order, -fee_per_gas)

        ahead = sum(
            1 for entry in existing_queue
            if (entry.priority.order, -entry.fee_per_gas_unit) <= new_key
        )
        position = ahead + 1

        total = len(existing_queue)
        confidence = "high" if total > 10 else "medium" if total > 5 else "low"

        return FulfillmentEstimate(
            priority=priority,
            queue_position=position,
            estimated_fulfillment_time=self.estimate_fulfillment_time(priority, position, now),
            confidence=confidence
        )

    @staticmethod
    def summarize(queue: Sequence[FulfillmentQueueEntry], now: int) -> QueueSummary:
        """Count entries per tier and average their fee and estimated wait."""
        counts = {priority: 0 for priority in Priority}
        for entry in queue:
            counts[entry.priority] += 1

        total = len(queue)
        if total == 0:
            return QueueSummary(total=0, high=0, medium=0, low=0, average_fee_per_gas_unit=0, average_wait=0)

        average_fee = sum(entry.fee_per_gas_unit for entry in queue) // total
        average_wait = sum(max(0, entry.estimated_fulfillment_time - now) for entry in queue) // total

        return QueueSummary(
            total=total,
            high=counts[Priority.HIGH],
            medium=counts[Priority.MEDIUM],
            low=counts[Priority.LOW],
            average_fee_per_gas_unit=average_fee,
            average_wait=average_wait
        )


def calculate_operator_reward(fee_paid: int, gas_used: int, gas_price: int) -> int:
    """Fee left for the operator after paying for gas, never negative."""
    return max(0, fee_paid - gas_used * gas_price)


def fulfillment_efficiency(callback_gas_budget: int, actual_gas_used: int) -> int:
    """Percentage of the callback gas budget actually used."""
    if callback_gas_budget <= 0:
        return 0
    return actual_gas_used * 100 // callback_gas_budget
