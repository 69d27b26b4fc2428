"""Repeating tick timer used while a simulation is PLAYING.

One daemon thread per play() call waits `interval` seconds between calls
to the callback. The callback receives the scheduler itself so the owner
can ignore calls from a timer it has already replaced: after pause() and
play(), the old thread may wake once more, but it finds it is no longer
the owner's current scheduler and exits without ticking.

Ticks never overlap: the simulation serializes every tick and every
external mutation on one re-entrant lock, so cancellation takes effect at
the next tick boundary, never mid-tick.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

_ids = itertools.count()


class TickScheduler:
    """Calls callback(self) every `interval` seconds until cancelled."""

    def __init__(
        self,
        callback: Callable[['TickScheduler'], None],
        interval: float = 0.0,
        name: Optional[str] = None,
    ) -> None:
        if interval < 0:
            raise ValueError(f"interval must be >= 0, got {interval}")
        self._callback = callback
        self.interval = float(interval)
        self.name = name or f"epiagents-tick-{next(_ids)}"
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("%s started (interval=%.3fs)", self.name, self.interval)

    def cancel(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """Stop scheduling further callbacks.

        Args:
            wait: Join the timer thread (ignored when called from the timer
                thread itself, e.g. an auto-stop inside a tick).
            timeout: Join timeout in seconds.
        """
        self._cancelled.set()
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the timer thread to exit. Returns True if it has."""
        if self._thread is None:
            return True
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def running(self) -> bool:
        return (self._thread is not None and self._thread.is_alive()
                and not self._cancelled.is_set())

    # -- Timer loop ---------------------------------------------------------

    def _loop(self) -> None:
        while not self._cancelled.wait(self.interval):
            self._callback(self)
        logger.debug("%s exited", self.name)
