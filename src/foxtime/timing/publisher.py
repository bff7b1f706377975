"""Turning the smoothed window into messages, and back into a clock.

The engine and its consumer may run with different monotonic epochs, so the
engine never publishes its raw time origin. It publishes the distance between
its own epoch origin and the measured origin; the consumer subtracts that from
its epoch origin to get an origin valid on its own monotonic clock.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from foxtime.api.messages import OffsetMessage
from foxtime.timing.clock import LocalClock
from foxtime.timing.window import SampleWindow

logger = structlog.get_logger(__name__)


class OffsetPublisher:
    def __init__(self, clock: LocalClock, emit: Callable[[OffsetMessage], None]):
        self._clock = clock
        self._emit = emit

    def publish(self, window: SampleWindow) -> OffsetMessage:
        delay = window.average_delay()
        time_origin = window.average_origin()
        message = OffsetMessage(
            delay=delay,
            time_origin_offset=self._clock.time_origin - time_origin,
            offset=self._clock.epoch_now() - (self._clock.now() + time_origin),
        )
        logger.debug("offset_published", **message.model_dump())
        self._emit(message)
        return message


class SyncedClock:
    """Consumer-side clock driven by offset messages.

    Until the first message arrives it runs from ``initial_server_time`` (epoch
    ms sampled when the consumer started) or, failing that, the local clock.
    """

    def __init__(self, clock: Optional[LocalClock] = None, initial_server_time: Optional[float] = None):
        self._clock = clock or LocalClock()
        if initial_server_time is not None:
            self.time_origin = initial_server_time - self._clock.now()
        else:
            self.time_origin = self._clock.time_origin
        self.delay: Optional[float] = None
        self.offset: Optional[float] = None

    def apply(self, message: OffsetMessage) -> None:
        self.time_origin = self._clock.time_origin - message.time_origin_offset
        self.delay = message.delay
        self.offset = message.offset

    def now(self) -> float:
        """Estimated server time, epoch ms."""
        return self._clock.now() + self.time_origin

    def datetime(self, tz: Optional[timezone] = None) -> datetime:
        return datetime.fromtimestamp(self.now() / 1000, tz=tz or timezone.utc)
