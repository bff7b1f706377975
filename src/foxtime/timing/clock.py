"""Local clock readings in milliseconds.

The engine stamps probes on a monotonic clock and only touches the wall clock
when publishing, so a stepped system clock never corrupts a round-trip delay.
``time_origin`` is the wall-clock time (epoch ms) at which the monotonic clock
read zero; two processes generally disagree on it.
"""

from __future__ import annotations

import time


class LocalClock:
    def __init__(self) -> None:
        self.time_origin = time.time() * 1000 - time.monotonic() * 1000

    def now(self) -> float:
        """Monotonic milliseconds."""
        return time.monotonic() * 1000

    def epoch_now(self) -> float:
        """Wall-clock milliseconds since the Unix epoch."""
        return time.time() * 1000
