from __future__ import annotations

import logging
import threading
from typing import Optional

from icsync.config_manager import ConfigManager
from icsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager, run_at_startup: bool = True) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.run_at_startup = run_at_startup
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="icsync-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _run(self, trigger: str) -> None:
        try:
            self.sync_engine.run_once(trigger=trigger)
        except Exception:
            # run_once reports its own failures; anything else must not kill the thread.
            logger.exception("Scheduled sync raised")

    def _loop(self) -> None:
        if self.run_at_startup:
            self._run("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run("manual" if manual else "scheduled")
