"""
Background reconciliation loops.

Each worker is a daemon thread calling one function at a fixed interval. The
functions talk to the rest of the system only through the database, so a
restarted process resumes where the previous one stopped.
"""

import logging
import threading
from typing import Callable, List, Optional

from satshunt import db_storage

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Run ``fn`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[], object]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self):
        """Single pass; errors are logged and the loop keeps going."""
        try:
            return self.fn()
        except Exception as e:
            logger.error(f"{self.name} pass failed: {e}", exc_info=True)
            return None

    def _loop(self) -> None:
        logger.info(f"🔄 {self.name} started (every {self.interval}s)")
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)
        logger.info(f"{self.name} stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def build_workers(cfg, tracker, protocol) -> List[PeriodicWorker]:
    """Donation reconciliation, the pending-withdrawal sweep and k1 cleanup."""
    return [
        PeriodicWorker("donation-tracker", cfg["DONATION_POLL_INTERVAL_SECONDS"], tracker.run_once),
        PeriodicWorker("withdraw-sweep", cfg["WITHDRAW_SWEEP_INTERVAL_SECONDS"], protocol.reconcile_pending),
        PeriodicWorker(
            "challenge-cleanup",
            cfg["WITHDRAW_SWEEP_INTERVAL_SECONDS"],
            lambda: db_storage.purge_expired_challenges(protocol.ledger.clock()),
        ),
    ]
