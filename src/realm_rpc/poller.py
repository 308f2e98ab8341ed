"""Adaptive backoff scheduler for background callback polling."""

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

POLL_COMMAND: str = "callbacks_poll"
POLL_TIMEOUT_FLOOR_MS: int = 10
POLL_TIMEOUT_CEILING_MS: int = 1000


class TimerHandle(Protocol):
    """One-shot timer as returned by ``threading.Timer``."""

    def start(self) -> None:
        """Start counting down."""
        ...

    def cancel(self) -> None:
        """Stop the timer if it has not fired yet."""
        ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def _thread_timer(interval: float, function: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


class PollScheduler:
    """Keep one pending poll armed and adapt its delay to activity.

    The delay resets to the floor after any cycle that was not an idle poll
    and doubles, up to the ceiling, after each idle poll.
    """

    _floor_ms: int
    _ceiling_ms: int
    _poll_timeout_ms: int
    _timer_factory: TimerFactory
    _timer: TimerHandle | None
    _generation: int
    _lock: threading.Lock

    def __init__(
        self,
        floor_ms: int = POLL_TIMEOUT_FLOOR_MS,
        ceiling_ms: int = POLL_TIMEOUT_CEILING_MS,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        """Initialize the scheduler.

        :param floor_ms: Shortest poll delay in milliseconds.
        :param ceiling_ms: Longest poll delay in milliseconds.
        :param timer_factory: Factory taking ``(seconds, function)``; defaults to daemon ``threading.Timer``.
        :raises ValueError: If the bounds are not positive and ordered.
        """
        if floor_ms <= 0:
            raise ValueError("floor_ms must be positive")
        if ceiling_ms < floor_ms:
            raise ValueError("ceiling_ms must not be smaller than floor_ms")
        self._floor_ms = floor_ms
        self._ceiling_ms = ceiling_ms
        self._poll_timeout_ms = floor_ms
        if timer_factory is None:
            self._timer_factory = _thread_timer
        else:
            self._timer_factory = timer_factory
        self._timer = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def poll_timeout_ms(self) -> int:
        """Return the delay before the next poll.

        :returns: Delay in milliseconds.
        """
        return self._poll_timeout_ms

    @property
    def floor_ms(self) -> int:
        return self._floor_ms

    @property
    def ceiling_ms(self) -> int:
        return self._ceiling_ms

    @property
    def is_armed(self) -> bool:
        """Report whether a poll is pending.

        :returns: ``True`` when a timer is armed.
        """
        with self._lock:
            return self._timer is not None

    def record_cycle(self, command: str, had_callback: bool) -> int:
        """Update the delay after one request/response cycle.

        :param command: Command that was sent.
        :param had_callback: Whether the response asked for a callback.
        :returns: Updated delay in milliseconds.
        """
        with self._lock:
            previous: int = self._poll_timeout_ms
            is_idle_poll: bool = command == POLL_COMMAND and had_callback is False
            if is_idle_poll is False:
                self._poll_timeout_ms = self._floor_ms
            else:
                self._poll_timeout_ms = min(self._poll_timeout_ms * 2, self._ceiling_ms)
            if previous != self._poll_timeout_ms:
                logger.debug("Poll timeout %d ms -> %d ms", previous, self._poll_timeout_ms)
            return self._poll_timeout_ms

    def cancel(self) -> None:
        """Cancel the pending poll, if any."""
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        self._generation += 1
        timer: TimerHandle | None = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def arm(self, action: Callable[[int], None]) -> int:
        """Replace any pending poll with a new one after the current delay.

        :param action: Function called with the timer generation when it fires.
        :returns: Generation of the armed timer.
        """
        with self._lock:
            self._cancel_locked()
            generation: int = self._generation
            delay_seconds: float = self._poll_timeout_ms / 1000.0
            timer: TimerHandle = self._timer_factory(delay_seconds, lambda: action(generation))
            self._timer = timer
            timer.start()
            return generation

    def claim(self, generation: int) -> bool:
        """Consume a fired timer if it has not been superseded.

        :param generation: Generation passed to the timer action.
        :returns: ``True`` when no ``cancel``/``arm`` happened since it was armed.
        """
        with self._lock:
            is_current: bool = generation == self._generation and self._timer is not None
            if is_current is True:
                self._timer = None
            return is_current

    def reset(self) -> None:
        """Cancel the pending poll and return the delay to the floor."""
        with self._lock:
            self._cancel_locked()
            self._poll_timeout_ms = self._floor_ms
