from __future__ import annotations

import logging
import threading
from typing import Optional

from cadence.config_manager import ConfigManager
from cadence.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Background loop that syncs every enabled calendar on an interval or on demand."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="cadence-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _run(self, trigger: str) -> None:
        if not self.sync_engine.client.is_configured():
            logger.info("Provider access token not configured, skipping %s sync", trigger)
            return
        results = self.sync_engine.sync_enabled_calendars(trigger=trigger)
        failed = sum(1 for result in results if result.status == "error")
        logger.info("%s sync finished: %d calendar(s), %d failed", trigger, len(results), failed)

    def _loop(self) -> None:
        self._run("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run("manual" if manual else "scheduled")
