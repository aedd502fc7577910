import threading
import unittest
from unittest import mock

from icsync.models import AppConfig
from icsync.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def _scheduler(self, run_once) -> SyncScheduler:
        engine = mock.Mock()
        engine.run_once.side_effect = run_once
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig()
        return SyncScheduler(engine, config_manager)

    def test_startup_then_manual_trigger(self) -> None:
        triggers: list[str] = []
        manual_seen = threading.Event()

        def run_once(trigger: str) -> None:
            triggers.append(trigger)
            if trigger == "manual":
                manual_seen.set()

        scheduler = self._scheduler(run_once)
        scheduler.start()
        try:
            scheduler.trigger_manual()
            self.assertTrue(manual_seen.wait(timeout=5))
        finally:
            scheduler.stop()
        self.assertEqual(triggers[0], "startup")
        self.assertIn("manual", triggers)
        self.assertFalse(scheduler.is_alive)

    def test_loop_survives_engine_exceptions(self) -> None:
        calls: list[str] = []
        second_call = threading.Event()

        def run_once(trigger: str) -> None:
            calls.append(trigger)
            if len(calls) == 1:
                raise RuntimeError("boom")
            second_call.set()

        scheduler = self._scheduler(run_once)
        scheduler.start()
        try:
            scheduler.trigger_manual()
            self.assertTrue(second_call.wait(timeout=5))
        finally:
            scheduler.stop()
        self.assertEqual(calls[:2], ["startup", "manual"])


if __name__ == "__main__":
    unittest.main()
