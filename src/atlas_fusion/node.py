"""
Fixed-rate fusion loop.

The node owns the cycle boundaries: every 1/loop_rate seconds it calls
FusionCycle.tick() on its own thread. Observations may be submitted to the
cycle from any other thread in the meantime; per-entity locks in the cycle
keep accumulation and extraction from interleaving.
"""

import threading
import time
from typing import Callable, List, Optional
import logging

from .fusion.cycle import FusedPose, FusionCycle

logger = logging.getLogger(__name__)


class FusionNode:
    """
    Drives a FusionCycle at a fixed rate.

    Usage:
        node = FusionNode(cycle, loop_rate=60.0)
        node.start()        # background thread
        ...
        node.stop()

        # or, blocking
        node.run(duration=10.0)

    If a tick starts late, the schedule restarts from that moment (no
    catch-up bursts) and the overrun is counted.
    """

    def __init__(self, cycle: FusionCycle, loop_rate: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        loop_rate = loop_rate if loop_rate is not None else cycle.options.loop_rate
        if loop_rate <= 0:
            raise ValueError(f"Loop rate must be positive, got {loop_rate}")

        self.cycle = cycle
        self.loop_rate = loop_rate
        self.period = 1.0 / loop_rate
        self._clock = clock
        self._sleep = sleep

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.tick_count = 0
        self.overrun_count = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def step(self, now: Optional[float] = None) -> List[FusedPose]:
        """Run a single cycle boundary."""
        now = self._clock() if now is None else now
        poses = self.cycle.tick(now)
        self.tick_count += 1
        return poses

    def run(self, duration: Optional[float] = None,
            on_tick: Optional[Callable[[float], None]] = None) -> int:
        """
        Tick until stop() is called or `duration` seconds have elapsed.

        Args:
            duration: Run time in seconds (None runs until stop())
            on_tick: Called with the tick time before each boundary, e.g. to
                inject observations in single-threaded setups

        Returns:
            Number of ticks performed
        """
        start = self._clock()
        next_tick = start + self.period
        ticks = 0
        logger.info(f"Fusion loop running at {self.loop_rate:g} Hz")

        while not self._stop_event.is_set():
            now = self._clock()
            if duration is not None and now - start >= duration:
                break

            delay = next_tick - now
            if delay > 0:
                self._sleep(delay)
                now = self._clock()
            elif delay < 0:
                self.overrun_count += 1
                logger.debug(f"Fusion loop overrun by {-delay:.4f}s")
                next_tick = now

            if on_tick is not None:
                on_tick(now)
            self.step(now)
            ticks += 1
            next_tick += self.period

        self._stop_event.clear()
        logger.info(f"Fusion loop stopped after {ticks} ticks")
        return ticks

    def start(self) -> None:
        """Run the loop on a daemon thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="atlas-fusion-loop", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
