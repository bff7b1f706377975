"""Measurement loop timing.

The scheduler runs one probe cycle at a time. After each cycle it arms a single
timer: the long interval once the window is settled (full) and the cycle
succeeded, the short interval otherwise. Hiding the display cancels the timer;
showing it again arms a short one.

Phases and the events moving between them are explicit; "no timer pending" is
the IDLE/PAUSED/PROBING/SUCCEEDED/FAILED phases, never a None check.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple

import structlog

from foxtime.timing.clock import LocalClock

logger = structlog.get_logger(__name__)

SHORT_DELAY_MS = 1000.0
LONG_DELAY_MS = 60000.0


class SyncPhase(Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    PROBING = "probing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PAUSED = "paused"


class SyncEvent(Enum):
    ARM = "arm"
    FIRE = "fire"
    SUCCEED = "succeed"
    FAIL = "fail"
    PAUSE = "pause"


TRANSITIONS: Dict[Tuple[SyncPhase, SyncEvent], SyncPhase] = {
    (SyncPhase.IDLE, SyncEvent.ARM): SyncPhase.SCHEDULED,
    (SyncPhase.PAUSED, SyncEvent.ARM): SyncPhase.SCHEDULED,
    (SyncPhase.SUCCEEDED, SyncEvent.ARM): SyncPhase.SCHEDULED,
    (SyncPhase.FAILED, SyncEvent.ARM): SyncPhase.SCHEDULED,
    (SyncPhase.SCHEDULED, SyncEvent.FIRE): SyncPhase.PROBING,
    (SyncPhase.PROBING, SyncEvent.SUCCEED): SyncPhase.SUCCEEDED,
    (SyncPhase.PROBING, SyncEvent.FAIL): SyncPhase.FAILED,
    (SyncPhase.IDLE, SyncEvent.PAUSE): SyncPhase.PAUSED,
    (SyncPhase.SCHEDULED, SyncEvent.PAUSE): SyncPhase.PAUSED,
    (SyncPhase.SUCCEEDED, SyncEvent.PAUSE): SyncPhase.PAUSED,
    (SyncPhase.FAILED, SyncEvent.PAUSE): SyncPhase.PAUSED,
    (SyncPhase.PAUSED, SyncEvent.PAUSE): SyncPhase.PAUSED,
}


class InvalidTransition(RuntimeError):
    pass


class SyncScheduler:
    def __init__(
        self,
        cycle: Callable[[], Awaitable[bool]],
        settled: Callable[[], bool],
        clock: Optional[LocalClock] = None,
        short_delay_ms: float = SHORT_DELAY_MS,
        long_delay_ms: float = LONG_DELAY_MS,
    ):
        self._cycle = cycle
        self._settled = settled
        self._clock = clock or LocalClock()
        self.short_delay_ms = short_delay_ms
        self.long_delay_ms = long_delay_ms

        self.phase = SyncPhase.IDLE
        self.running = False
        self.hidden = False
        self.last_probe_sent_at: Optional[float] = None
        self.next_delay_ms: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._probe: Optional[asyncio.Task] = None

    def next_delay(self, succeeded: bool) -> float:
        if succeeded and self._settled():
            return self.long_delay_ms
        return self.short_delay_ms

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        if self.hidden:
            self._transition(SyncEvent.PAUSE)
        else:
            self._arm(self.short_delay_ms)

    def set_hidden(self, hidden: bool) -> None:
        self.hidden = hidden
        if not self.running:
            return
        if hidden:
            self._cancel_timer()
            if self.phase is not SyncPhase.PROBING:
                self._transition(SyncEvent.PAUSE)
            logger.info("measurements_paused", phase=self.phase.value)
        elif self.phase in (SyncPhase.PAUSED, SyncPhase.IDLE):
            logger.info("measurements_resumed")
            self._arm(self.short_delay_ms)

    async def stop(self) -> None:
        self.running = False
        self._cancel_timer()
        probe, self._probe = self._probe, None
        if probe is not None and not probe.done():
            probe.cancel()
            with suppress(asyncio.CancelledError):
                await probe
        self.phase = SyncPhase.IDLE

    def _transition(self, event: SyncEvent) -> None:
        try:
            new_phase = TRANSITIONS[(self.phase, event)]
        except KeyError:
            raise InvalidTransition(f"{event.value} not allowed while {self.phase.value}") from None
        self.phase = new_phase

    def _arm(self, delay_ms: float) -> None:
        self._cancel_timer()
        self._transition(SyncEvent.ARM)
        self.next_delay_ms = delay_ms
        self._timer = asyncio.get_running_loop().call_later(delay_ms / 1000, self._fire)

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _fire(self) -> None:
        self._timer = None
        self._transition(SyncEvent.FIRE)
        self.last_probe_sent_at = self._clock.now()
        self._probe = asyncio.create_task(self._run_cycle())

    async def _run_cycle(self) -> None:
        try:
            succeeded = await self._cycle()
        except Exception:
            logger.exception("cycle_crashed")
            succeeded = False
        self._probe = None

        self._transition(SyncEvent.SUCCEED if succeeded else SyncEvent.FAIL)
        if not self.running:
            return
        if self.hidden:
            self._transition(SyncEvent.PAUSE)
            return
        delay = self.next_delay(succeeded)
        logger.debug("next_probe_scheduled", delay_ms=delay, succeeded=succeeded)
        self._arm(delay)
