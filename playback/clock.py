"""
Simulated playback clock.

Each tick moves simulated time forward by ``speed`` seconds and fires every
``1 / speed`` wall-clock seconds while playing. Time never moves past the
configured maximum; at the end of the window ticks become no-ops and the
clock stays in the playing state.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from .exceptions import InvalidSpeedError

logger = logging.getLogger(__name__)

SPEED_OPTIONS = (1, 2, 5)
TICK_STEP = timedelta(seconds=1)

TimeListener = Callable[[datetime], Any]


class PlaybackClock:
    def __init__(
        self,
        start_time: datetime,
        max_time: datetime,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        if max_time < start_time:
            raise ValueError("max_time must not precede start_time")
        self.start_time = start_time
        self.max_time = max_time
        self._timer_factory = timer_factory
        self._sim_time = start_time
        self._speed = SPEED_OPTIONS[0]
        self._playing = False
        self._timer = None
        # Bumped on every transition so a timer that already fired cannot tick
        # after the transition that should have cancelled it.
        self._generation = 0
        self._listeners: List[TimeListener] = []
        self._lock = threading.RLock()

    @property
    def sim_time(self) -> datetime:
        with self._lock:
            return self._sim_time

    @property
    def speed(self) -> int:
        with self._lock:
            return self._speed

    @property
    def is_playing(self) -> bool:
        with self._lock:
            return self._playing

    @property
    def tick_interval(self) -> float:
        """Wall-clock seconds between ticks at the current speed."""
        return 1.0 / self.speed

    def add_listener(self, listener: TimeListener) -> None:
        self._listeners.append(listener)

    def play(self) -> None:
        with self._lock:
            if self._playing:
                return
            self._playing = True
            self._schedule()
        logger.info("Playback started at %s (x%s)", self.sim_time.isoformat(), self.speed)

    def pause(self) -> None:
        with self._lock:
            if not self._playing:
                return
            self._playing = False
            self._cancel_timer()
        logger.info("Playback paused at %s", self.sim_time.isoformat())

    def toggle_play(self) -> bool:
        with self._lock:
            if self._playing:
                self.pause()
            else:
                self.play()
            return self._playing

    def set_speed(self, speed: Any) -> None:
        if isinstance(speed, bool) or speed not in SPEED_OPTIONS:
            raise InvalidSpeedError(
                f"Speed must be one of {', '.join(str(s) for s in SPEED_OPTIONS)}; got {speed!r}"
            )
        with self._lock:
            if speed == self._speed:
                return
            self._speed = int(speed)
            if self._playing:
                self._cancel_timer()
                self._schedule()
        logger.info("Playback speed set to x%s", speed)

    def tick(self) -> bool:
        """
        Advance simulated time by one step. Returns True when time moved.
        """
        with self._lock:
            if not self._playing:
                return False
            following = self._sim_time + TICK_STEP * self._speed
            if following > self.max_time:
                return False
            self._sim_time = following
        logger.debug("Tick -> %s", following.isoformat())
        self._notify(following)
        return True

    def seek(self, instant: datetime) -> datetime:
        """Jump straight to ``instant``, clamped to the playback window."""
        with self._lock:
            self._sim_time = min(max(instant, self.start_time), self.max_time)
            current = self._sim_time
        self._notify(current)
        return current

    def close(self) -> None:
        """Release the timer; safe to call more than once."""
        with self._lock:
            self._playing = False
            self._cancel_timer()

    def _notify(self, sim_time: datetime) -> None:
        for listener in list(self._listeners):
            listener(sim_time)

    def _schedule(self) -> None:
        generation = self._generation
        timer = self._timer_factory(1.0 / self._speed, self._on_timer, args=(generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, generation: int) -> None:
        with self._lock:
            if not self._playing or generation != self._generation:
                return
            self.tick()
            if self._playing and generation == self._generation:
                self._schedule()
