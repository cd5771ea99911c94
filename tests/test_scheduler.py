import time
import unittest
from datetime import datetime

from tripengine.models import Trip
from tripengine.schedules.scheduler import WindowScheduler

from tests.helpers import MONDAY, ScratchDatabase, fixed_clock, make_route, make_schedule, seed_fleet


class WindowSchedulerTest(unittest.TestCase):

    def setUp(self):
        self.database = ScratchDatabase()
        self.db = self.database.Session()
        self.clock = fixed_clock(MONDAY)
        fleet = seed_fleet(self.db)
        make_schedule(self.db, fleet, make_route(self.db, fleet), days=["MONDAY", "FRIDAY"])

    def tearDown(self):
        self.db.close()
        self.database.close()

    def test_run_once_fills_the_window_and_is_idempotent(self):
        scheduler = WindowScheduler(self.database.Session, interval_seconds=60, clock=self.clock, window_days=7)

        self.assertEqual(scheduler.run_once(), 2)
        self.assertEqual(scheduler.run_once(), 0)

        self.clock.advance(days=7)
        self.assertEqual(scheduler.run_once(), 2)
        starts = sorted(t.scheduled_start for t in self.db.query(Trip).all())
        self.assertEqual(starts[-1], datetime(2024, 1, 12, 7, 0))

    def test_background_thread_runs_until_stopped(self):
        scheduler = WindowScheduler(self.database.Session, interval_seconds=0.05, clock=self.clock, window_days=7)

        scheduler.start()
        deadline = time.time() + 5
        while self.db.query(Trip).count() < 2 and time.time() < deadline:
            time.sleep(0.02)
        scheduler.stop()

        self.assertFalse(scheduler.running)
        self.assertEqual(self.db.query(Trip).count(), 2)


if __name__ == "__main__":
    unittest.main()
