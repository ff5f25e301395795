"""
Background timers used by the periodic session tasks
"""

import threading
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class BackgroundTimer:
    """
    Runs a function after an interval on a daemon thread, optionally
    repeating until cancelled.
    """

    def __init__(self, interval: float, function: Callable[[], None],
                 repeats: bool = True, name: Optional[str] = None):
        self.interval = interval
        self.repeats = repeats
        self.function = function
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=name or "VPN-Timer"
        )

    def start(self) -> 'BackgroundTimer':
        self._thread.start()
        return self

    def _run(self):
        while not self._stopped.wait(self.interval):
            try:
                self.function()
            except Exception as e:
                logger.error(f"Timer {self._thread.name} error: {e}", exc_info=True)

            if not self.repeats:
                self._stopped.set()

    def cancel(self):
        """Stop the timer. Waits for a running callback unless called from it."""
        self._stopped.set()
        if (self._thread.is_alive() and
                threading.current_thread() is not self._thread):
            self._thread.join(timeout=5)

    @property
    def is_valid(self) -> bool:
        return not self._stopped.is_set()


class TimerFactory:
    """Creates started timers. Swapped for a manual factory in tests."""

    def schedule(self, interval: float, function: Callable[[], None],
                 repeats: bool = True,
                 name: Optional[str] = None) -> BackgroundTimer:
        return BackgroundTimer(interval, function, repeats, name).start()
