from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from eventsync.config_manager import ConfigManager
from eventsync.models import TRIGGER_MANUAL, TRIGGER_SCHEDULED, FleetSyncResult
from eventsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 60


class SyncScheduler:
    """Runs a fleet sync every `sync.interval_seconds`, or sooner when triggered by an operator."""

    def __init__(self, engine_factory: Callable[[], SyncEngine], config_manager: ConfigManager) -> None:
        self.engine_factory = engine_factory
        self.config_manager = config_manager
        self.last_result: Optional[FleetSyncResult] = None
        self._worker: Optional[threading.Thread] = None
        self._shutdown = threading.Event()
        self._wakeup = threading.Event()

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._shutdown.clear()
        self._worker = threading.Thread(target=self._run_forever, name="eventsync-scheduler", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._shutdown.set()
        self._wakeup.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)

    def trigger_manual(self) -> None:
        self._wakeup.set()

    def run_pass(self, triggered_by: str) -> Optional[FleetSyncResult]:
        # A fresh engine per pass keeps the client's rate-limit window scoped to this pass.
        try:
            engine = self.engine_factory()
            self.last_result = engine.sync_all_calendars(triggered_by=triggered_by)
        except Exception:
            logger.exception("Fleet sync pass could not run", extra={"triggered_by": triggered_by})
            return None
        return self.last_result

    def _wait_for_trigger(self) -> Optional[str]:
        interval = max(MIN_INTERVAL_SECONDS, int(self.config_manager.load().sync.interval_seconds))
        woken = self._wakeup.wait(timeout=interval)
        self._wakeup.clear()
        if self._shutdown.is_set():
            return None
        return TRIGGER_MANUAL if woken else TRIGGER_SCHEDULED

    def _run_forever(self) -> None:
        if self.config_manager.load().sync.run_on_startup:
            self.run_pass(TRIGGER_SCHEDULED)
        while not self._shutdown.is_set():
            trigger = self._wait_for_trigger()
            if trigger is None:
                break
            self.run_pass(trigger)
        logger.info("Scheduler stopped")
