"""Cancellable interval and delay timers for sampling and auto-reset."""

import itertools
import threading
from enum import Enum
from typing import Callable, Optional

from ..logging_config import get_logger

logger = get_logger("timers")

Executor = Callable[[Callable[[], None]], None]


class TimerKind(Enum):
    """Kinds of timer; at most one of each is live."""
    INTERVAL = "interval"
    DELAY = "delay"


class TimerHandle:
    """Handle to a started timer."""

    _ids = itertools.count(1)

    def __init__(self, kind: TimerKind, period_ms: int, callback: Callable[[], None]):
        self.handle_id = next(self._ids)
        self.kind = kind
        self.period_ms = period_ms
        self.callback = callback
        self.cancelled = False
        self.fired = False
        self.paused = False
        self._timer = None

    @property
    def active(self) -> bool:
        if self.cancelled:
            return False
        return not (self.kind == TimerKind.DELAY and self.fired)

    def __repr__(self) -> str:
        return (f"TimerHandle(id={self.handle_id}, kind={self.kind.value}, "
                f"period_ms={self.period_ms}, active={self.active}, paused={self.paused})")


class TimerService:
    """Interval and delay timers with last-writer-wins per kind.

    Timer threads never run callbacks themselves: they hand a delivery
    closure to ``executor``, which the orchestrator points at its event
    queue so callbacks run on the event thread. Delivery re-checks the
    handle, so a handle cancelled on the event thread before its callback
    is dequeued never runs.
    """

    def __init__(self, executor: Optional[Executor] = None,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self._executor: Executor = executor or (lambda fn: fn())
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._interval: Optional[TimerHandle] = None
        self._delay: Optional[TimerHandle] = None

    @property
    def interval_handle(self) -> Optional[TimerHandle]:
        return self._interval

    @property
    def delay_handle(self) -> Optional[TimerHandle]:
        return self._delay

    def start_interval(self, period_ms: int, callback: Callable[[], None]) -> TimerHandle:
        """Start the periodic timer, replacing any live one."""
        if period_ms <= 0:
            raise ValueError(f"Interval period must be positive, got {period_ms}")

        with self._lock:
            self.cancel(self._interval)
            handle = TimerHandle(TimerKind.INTERVAL, period_ms, callback)
            self._interval = handle
            self._arm(handle)

        logger.debug(f"Started interval timer {handle.handle_id} every {period_ms} ms")
        return handle

    def start_delay(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        """Start the one-shot timer, replacing any live one."""
        if delay_ms < 0:
            raise ValueError(f"Delay must not be negative, got {delay_ms}")

        with self._lock:
            self.cancel(self._delay)
            handle = TimerHandle(TimerKind.DELAY, delay_ms, callback)
            self._delay = handle
            self._arm(handle)

        logger.debug(f"Started delay timer {handle.handle_id} for {delay_ms} ms")
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        """Cancel a timer. Fired, cancelled or missing handles are ignored."""
        if handle is None:
            return

        with self._lock:
            if not handle.active:
                return

            handle.cancelled = True
            if handle._timer is not None:
                handle._timer.cancel()

            if self._interval is handle:
                self._interval = None
            if self._delay is handle:
                self._delay = None

        logger.debug(f"Cancelled {handle.kind.value} timer {handle.handle_id}")

    def cancel_all(self) -> None:
        with self._lock:
            self.cancel(self._interval)
            self.cancel(self._delay)

    def pause_interval(self) -> None:
        """Suppress interval ticks without destroying the timer."""
        with self._lock:
            if self._interval is not None and not self._interval.paused:
                self._interval.paused = True
                logger.debug(f"Paused interval timer {self._interval.handle_id}")

    def resume_interval(self) -> None:
        with self._lock:
            if self._interval is not None and self._interval.paused:
                self._interval.paused = False
                logger.debug(f"Resumed interval timer {self._interval.handle_id}")

    def _arm(self, handle: TimerHandle) -> None:
        timer = self._timer_factory(handle.period_ms / 1000.0, self._on_fire, args=(handle,))
        timer.daemon = True
        handle._timer = timer
        timer.start()

    def _on_fire(self, handle: TimerHandle) -> None:
        """Runs on the timer thread."""
        with self._lock:
            if not handle.active:
                return

            if handle.kind == TimerKind.INTERVAL:
                self._arm(handle)
                if handle.paused:
                    return

        self._executor(lambda: self._deliver(handle))

    def _deliver(self, handle: TimerHandle) -> None:
        """Runs on the executor's thread."""
        with self._lock:
            if not handle.active:
                return
            if handle.kind == TimerKind.INTERVAL and handle.paused:
                return
            if handle.kind == TimerKind.DELAY:
                handle.fired = True
                if self._delay is handle:
                    self._delay = None

        handle.callback()
