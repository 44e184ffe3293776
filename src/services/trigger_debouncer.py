import threading
import time
from typing import Callable, Optional


class TriggerDebouncer:
    """
    Drops worker triggers while one is already in flight, unless the in-flight
    trigger is older than the window (a hung trigger never blocks forever).
    """

    def __init__(self, window_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.clock = clock
        self._in_flight = False
        self._last_trigger_at: Optional[float] = None
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        with self._lock:
            now = self.clock()
            if self._in_flight and self._last_trigger_at is not None:
                if now - self._last_trigger_at < self.window_seconds:
                    return False
            self._in_flight = True
            self._last_trigger_at = now
            return True

    def release(self) -> None:
        with self._lock:
            self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight
