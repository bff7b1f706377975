"""Sliding window of clock measurements.

Each successful probe yields a round-trip delay and a time origin, the value
such that ``server_time ~= local_monotonic + time_origin``. The window keeps the
most recent ``capacity`` pairs and smooths them with a plain arithmetic mean.

A new origin that disagrees with the current average by more than the round
trip that measured it cannot be network jitter, so the history is dropped and
the window restarts from the new sample.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import structlog

logger = structlog.get_logger(__name__)

NUM_SAMPLES = 5


def average(values: Sequence[float]) -> float:
    if not values:
        raise ValueError("average of an empty sequence")
    return sum(values) / len(values)


@dataclass(frozen=True)
class ProbeSample:
    """Timing data from one round trip (monotonic ms locally, epoch ms remote)."""
    request_sent: float
    response_received: float
    server_time: float

    @property
    def delay(self) -> float:
        return self.response_received - self.request_sent

    @property
    def time_origin(self) -> float:
        # Assumes the outbound and inbound legs take equally long.
        return ((self.server_time - self.request_sent) + (self.server_time - self.response_received)) / 2


class SampleWindow:
    """FIFO of (delay, origin) pairs with drift detection."""

    def __init__(self, capacity: int = NUM_SAMPLES):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.delays: List[float] = []
        self.origins: List[float] = []

    def __len__(self) -> int:
        return len(self.origins)

    def is_full(self) -> bool:
        return len(self.origins) >= self.capacity

    def clear(self) -> None:
        self.delays = []
        self.origins = []

    def push(self, delay: float, origin: float) -> None:
        """Append a pair, evicting the oldest one when at capacity."""
        if len(self.origins) >= self.capacity:
            self.delays.pop(0)
            self.origins.pop(0)
        self.delays.append(delay)
        self.origins.append(origin)

    def drift_check(self, new_origin: float, new_delay: float) -> bool:
        """Clear the window if ``new_origin`` is a real clock change.

        Returns True when the history was discarded.
        """
        if not self.origins:
            return False
        old_origin = average(self.origins)
        if abs(old_origin - new_origin) > new_delay:
            logger.info(
                "clock_drift_detected",
                old_origin=old_origin,
                new_origin=new_origin,
                delay=new_delay,
                discarded=len(self.origins),
            )
            self.clear()
            return True
        return False

    def add(self, sample: ProbeSample) -> bool:
        """Drift-check then push one sample. Returns True if drift was detected."""
        delay, origin = sample.delay, sample.time_origin
        drifted = self.drift_check(origin, delay)
        self.push(delay, origin)
        return drifted

    def average_delay(self) -> float:
        return average(self.delays)

    def average_origin(self) -> float:
        return average(self.origins)
