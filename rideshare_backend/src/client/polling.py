"""Background refresh of one ride's detail."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from src.client.stores import RideStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 15.0


class RideDetailPoller:
    """
    Refresh `ride_id` through store.fetch_ride() every `interval` seconds.

    The first refresh happens as soon as start() is called. stop() may be
    called any number of times.
    """

    def __init__(self, store: RideStore, ride_id: str, interval: float = DEFAULT_INTERVAL_SECONDS):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.store = store
        self.ride_id = ride_id
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"ride-poller-{self.ride_id}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.store.fetch_ride(self.ride_id)
            except Exception:
                # The store reports API errors itself; anything else is logged and retried.
                logger.exception("Refreshing ride %s failed", self.ride_id)
            # Returns early once stop() is called.
            self._stop.wait(self.interval)
        logger.debug("Stopped polling ride %s", self.ride_id)
