from __future__ import annotations

import logging
import threading
from typing import Optional

from agendasync.config_manager import ConfigManager
from agendasync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

# Records processed per wake-up at most.
MAX_PASSES_PER_TICK = 20


class SyncScheduler:
    """Background worker that drains the inbox on an interval or on demand."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._worker: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._wake = threading.Event()

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stopping.clear()
        self._worker = threading.Thread(target=self._loop, name="agendasync-scheduler", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        self._stopping.set()
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout=5)

    def trigger_manual(self) -> None:
        self._wake.set()

    def _interval(self) -> int:
        return max(30, int(self.config_manager.load().sync.interval_seconds))

    def _tick(self, trigger: str) -> int:
        """Process pending records until the inbox is drained; returns passes run."""
        passes = 0
        while passes < MAX_PASSES_PER_TICK and not self._stopping.is_set():
            try:
                result = self.sync_engine.run_pending(trigger=trigger)
            except Exception:
                logger.exception("Scheduled pass crashed")
                break
            if result is None:
                break
            passes += 1
            logger.info("Pass %s for record %s: %s", result.status, result.record_id, result.message)
            # A failed or skipped record stays pending; retry it next interval.
            if result.status != "success":
                break
        return passes

    def _loop(self) -> None:
        self._tick("startup")
        while not self._stopping.is_set():
            woken = self._wake.wait(timeout=self._interval())
            self._wake.clear()
            if self._stopping.is_set():
                break
            self._tick("manual" if woken else "scheduled")
