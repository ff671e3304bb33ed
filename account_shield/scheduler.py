import logging
import threading
from typing import Callable, Optional

from .config import seconds

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs `func` every `interval` on a daemon thread.

    A run never overlaps with itself: a tick that arrives while the
    previous run is still in flight is skipped, not queued. Exceptions
    are logged and the timer keeps going.
    """

    def __init__(self, name: str, interval, func: Callable[[], object]):
        self.name = name
        self.interval = seconds(interval)
        self.func = func
        self._in_flight = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._loop, args=(self._stop_event,), name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Periodic task '{self.name}' started (every {self.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug(f"Periodic task '{self.name}' stopped")

    def run_once(self) -> bool:
        """Run now unless a run is already in flight. Returns whether it ran."""
        if not self._in_flight.acquire(blocking=False):
            logger.debug(f"Periodic task '{self.name}' still running, skipping tick")
            return False
        try:
            self.func()
        except Exception:
            logger.exception(f"Periodic task '{self.name}' failed")
        finally:
            self._in_flight.release()
        return True

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            self.run_once()
